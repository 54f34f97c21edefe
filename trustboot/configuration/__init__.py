#!/usr/bin/env python3
#
# This package contains modules related to loading, validating and accessing
# bootstrap configuration.

import dacite
import dataclasses
import ipaddress
import trustboot.configuration.defaults as defaults
import trustboot.errors
import typing
import yaml


@dataclasses.dataclass(frozen=True)
class NetworkDefaults:
    "Default cluster networks, selected by the address family of the masters"
    ipv4_pod_net: str = defaults.IPV4_POD_NET
    ipv4_service_net: str = defaults.IPV4_SERVICE_NET
    ipv6_pod_net: str = defaults.IPV6_POD_NET
    ipv6_service_net: str = defaults.IPV6_SERVICE_NET
    ipv4_loopback: str = defaults.IPV4_LOOPBACK
    ipv6_loopback: str = defaults.IPV6_LOOPBACK
    service_domain: str = defaults.SERVICE_DOMAIN


@dataclasses.dataclass(frozen=True)
class PKIConfiguration:
    "Parameters of the root certificate authorities"
    etcd_organization: str = defaults.ETCD_ORGANIZATION
    kubernetes_organization: str = defaults.KUBERNETES_ORGANIZATION
    os_organization: str = defaults.OS_ORGANIZATION
    # Validity of the root certificate authorities, in hours
    certificate_authority_validity_hours: int = int(
        defaults.CERTIFICATE_AUTHORITY_VALIDITY.total_seconds() // 3600
    )


@dataclasses.dataclass(frozen=True)
class TrustConfiguration:
    "Settings used to request an identity from the trust service"
    endpoints: typing.List[str] = dataclasses.field(default_factory=list)
    port: int = defaults.TRUST_SERVICE_PORT
    scheme: str = defaults.TRUST_SERVICE_SCHEME
    # No CA is trusted before the node has its identity, so TLS verification
    # is off unless a CA bundle path is given
    verify: typing.Union[bool, str] = False
    token: str = ""
    poll_interval_seconds: float = defaults.POLL_INTERVAL_SECONDS
    deadline_seconds: float = defaults.ISSUANCE_DEADLINE_SECONDS
    dial_timeout_seconds: float = defaults.DIAL_TIMEOUT_SECONDS


@dataclasses.dataclass(frozen=True)
class BootstrapConfiguration:
    "Struct that contains user-configurable settings"
    # Name of the cluster
    cluster_name: str
    # IP addresses of the master nodes; the first one is the API server
    # endpoint
    master_ips: typing.List[str] = dataclasses.field(default_factory=list)
    # Version of Kubernetes
    kubernetes_version: str = "1.18.2"
    # Canonical address of the control plane (DNS name, load balancer IP);
    # defaults to the first master IP
    control_plane_endpoint: str = ""
    # Extra names for the API server certificate
    additional_subject_alt_names: typing.List[str] = dataclasses.field(
        default_factory=list
    )
    external_etcd: bool = False
    network: NetworkDefaults = dataclasses.field(default_factory=NetworkDefaults)
    pki: PKIConfiguration = dataclasses.field(default_factory=PKIConfiguration)
    trust: TrustConfiguration = dataclasses.field(default_factory=TrustConfiguration)


def load_bootstrap_configuration(f: typing.IO) -> BootstrapConfiguration:
    """
    Load the given configuration YAML or JSON file. The configuration will be
    validated during loading. If the configuration is valid, return a
    configuration struct. Otherwise, raises a ConfigurationError.
    """
    data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise trustboot.errors.ConfigurationError(
            "configuration must be a YAML mapping"
        )
    try:
        configuration = dacite.from_dict(
            data_class=BootstrapConfiguration,
            data=data,
            config=dacite.Config(strict=True, cast=[float]),
        )
    except dacite.DaciteError as e:
        raise trustboot.errors.ConfigurationError(str(e)) from e
    validate_configuration(configuration)
    return configuration


def validate_configuration(configuration: BootstrapConfiguration) -> None:
    """
    Check if the given configuration struct has any obvious mistakes. If the
    configuration is valid, runs to completion. Otherwise, raises a
    ConfigurationError.
    """
    validators = [
        validate_cluster_name,
        validate_master_ips,
        validate_networks,
        validate_trust,
    ]

    for f in validators:
        f(configuration)


def validate_cluster_name(configuration: BootstrapConfiguration) -> None:
    if not configuration.cluster_name:
        raise trustboot.errors.ConfigurationError("cluster_name must be defined")


def validate_master_ips(configuration: BootstrapConfiguration) -> None:
    if not configuration.master_ips:
        raise trustboot.errors.ConfigurationError("master_ips must not be empty")
    for address in configuration.master_ips:
        try:
            ipaddress.ip_address(address)
        except ValueError:
            raise trustboot.errors.ConfigurationError(
                f"master_ips must contain IP addresses, got {address!r}"
            )


def validate_networks(configuration: BootstrapConfiguration) -> None:
    network = configuration.network
    for name, cidr, version in (
        ("ipv4_pod_net", network.ipv4_pod_net, 4),
        ("ipv4_service_net", network.ipv4_service_net, 4),
        ("ipv6_pod_net", network.ipv6_pod_net, 6),
        ("ipv6_service_net", network.ipv6_service_net, 6),
    ):
        try:
            parsed = ipaddress.ip_network(cidr)
        except ValueError:
            raise trustboot.errors.ConfigurationError(
                f"network.{name} must be a CIDR, got {cidr!r}"
            )
        if parsed.version != version:
            raise trustboot.errors.ConfigurationError(
                f"network.{name} must be an IPv{version} network"
            )


def validate_trust(configuration: BootstrapConfiguration) -> None:
    trust = configuration.trust
    if not 0 < trust.port < 65536:
        raise trustboot.errors.ConfigurationError("trust.port must be a valid port")
    if trust.scheme not in ("http", "https"):
        raise trustboot.errors.ConfigurationError(
            "trust.scheme must be one of http, https"
        )
    if trust.poll_interval_seconds <= 0 or trust.deadline_seconds <= 0:
        raise trustboot.errors.ConfigurationError(
            "trust.poll_interval_seconds and trust.deadline_seconds must be positive"
        )
