#!/usr/bin/env python3
#
# This package renders the node configuration documents of a cluster from a
# bootstrap bundle. Every node type shares a base document; the init and
# control plane documents add the material that only masters may hold.

import base64
import enum
import trustboot.bootstrap
import trustboot.tls.crypto
import trustboot.utility
import typing
import yaml

VERSION = "v1alpha1"
API_SERVER_PORT = 6443


class ConfigType(enum.Enum):
    "Enumerates the node configuration documents"
    # The first master, which runs kubeadm init
    INIT = "init"
    # Additional masters, which join the control plane
    CONTROL_PLANE = "controlplane"
    # Workers
    JOIN = "join"


def _b64(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def _certificate(
    pem: trustboot.tls.crypto.PEMEncodedCertificateAndKey, *, with_key: bool
) -> dict:
    certificate = {"crt": _b64(pem.crt)}
    if with_key:
        certificate["key"] = _b64(pem.key)
    return certificate


def _base_configuration(
    config_type: ConfigType, bootstrap_input: trustboot.bootstrap.BootstrapInput
) -> dict:
    return {
        "version": VERSION,
        "machine": {
            "type": config_type.value,
            "token": bootstrap_input.trustd_info.token,
            "ca": _certificate(bootstrap_input.certs.os, with_key=False),
            "kubelet": {},
            "network": {},
        },
        "cluster": {
            "clusterName": bootstrap_input.cluster_name,
            "controlPlane": {
                "endpoint": bootstrap_input.control_plane_endpoint_address(),
                "version": bootstrap_input.kubernetes_version,
            },
            "network": {
                "dnsDomain": bootstrap_input.service_domain,
                "podSubnets": list(bootstrap_input.pod_net),
                "serviceSubnets": list(bootstrap_input.service_net),
            },
            "token": bootstrap_input.kubeadm_tokens.bootstrap_token,
            "ca": _certificate(bootstrap_input.certs.k8s, with_key=False),
        },
    }


def _master_configuration(
    config_type: ConfigType, bootstrap_input: trustboot.bootstrap.BootstrapInput
) -> dict:
    cluster: dict = {
        "apiServer": {"certSANs": bootstrap_input.api_server_sans()},
        "aescbcEncryptionSecret": bootstrap_input.kubeadm_tokens.aescbc_encryption_secret,
        "certificateKey": bootstrap_input.kubeadm_tokens.certificate_key,
        "ca": _certificate(bootstrap_input.certs.k8s, with_key=True),
    }
    if not bootstrap_input.external_etcd:
        cluster["etcd"] = {
            "ca": _certificate(bootstrap_input.certs.etcd, with_key=True),
        }
    return {
        "machine": {
            "ca": _certificate(bootstrap_input.certs.os, with_key=True),
            "certSANs": [],
        },
        "cluster": cluster,
    }


def generate(
    config_type: ConfigType, bootstrap_input: trustboot.bootstrap.BootstrapInput
) -> dict:
    """
    Returns the configuration document of the given node type. Raises
    TopologyError if the bundle has no control plane address.
    """
    if not isinstance(config_type, ConfigType):
        raise ValueError(f"unknown config type {config_type!r}")

    base = _base_configuration(config_type, bootstrap_input)
    if config_type == ConfigType.JOIN:
        return trustboot.utility.merge_complex_dictionaries(
            base,
            {
                "cluster": {
                    "controlPlane": {
                        "endpoint": bootstrap_input.api_server_endpoint(API_SERVER_PORT)
                        if not bootstrap_input.control_plane_endpoint
                        else bootstrap_input.control_plane_endpoint,
                    }
                }
            },
        )
    return trustboot.utility.merge_complex_dictionaries(
        base, _master_configuration(config_type, bootstrap_input)
    )


def config(
    config_type: ConfigType, bootstrap_input: trustboot.bootstrap.BootstrapInput
) -> str:
    "Returns the configuration document of the given node type as YAML"
    return yaml.safe_dump(generate(config_type, bootstrap_input), sort_keys=False)


def generate_all(
    bootstrap_input: trustboot.bootstrap.BootstrapInput,
) -> typing.Dict[ConfigType, str]:
    return {t: config(t, bootstrap_input) for t in ConfigType}
