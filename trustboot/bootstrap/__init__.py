#!/usr/bin/env python3
#
# This package assembles the one-shot bootstrap bundle of a cluster: its
# certificate authorities, the admin identity, the shared secrets and the
# topology that the node configuration renderers need.

import dataclasses
import trustboot.configuration
import trustboot.errors
import trustboot.logging
import trustboot.tls.crypto
import trustboot.tls.pki
import trustboot.tls.secrets
import trustboot.utility
import typing

logger = trustboot.logging.get_logger(__name__)


@dataclasses.dataclass(frozen=True)
class Certs:
    admin: trustboot.tls.crypto.PEMEncodedCertificateAndKey
    etcd: trustboot.tls.crypto.PEMEncodedCertificateAndKey
    k8s: trustboot.tls.crypto.PEMEncodedCertificateAndKey
    os: trustboot.tls.crypto.PEMEncodedCertificateAndKey


@dataclasses.dataclass(frozen=True)
class KubeadmTokens:
    "Sensitive kubeadm data"
    bootstrap_token: str
    aescbc_encryption_secret: str
    certificate_key: str


@dataclasses.dataclass(frozen=True)
class TrustdInfo:
    "Credentials of the trust service"
    token: str


@dataclasses.dataclass
class BootstrapInput:
    certs: Certs
    kubeadm_tokens: KubeadmTokens
    trustd_info: TrustdInfo

    cluster_name: str
    master_ips: typing.List[str]
    pod_net: typing.List[str]
    service_net: typing.List[str]
    kubernetes_version: str
    service_domain: str = trustboot.configuration.defaults.SERVICE_DOMAIN
    # Canonical address of the Kubernetes control plane. It can be a DNS
    # name, the IP address of a load balancer, or (default) the IP address of
    # the first master node. It is not multi-valued and may optionally specify
    # the port.
    control_plane_endpoint: str = ""
    additional_subject_alt_names: typing.List[str] = dataclasses.field(
        default_factory=list
    )
    external_etcd: bool = False

    def __require_master_ips(self, operation: str) -> None:
        if not self.master_ips:
            raise trustboot.errors.TopologyError(
                f"cannot determine {operation} without any master IPs"
            )

    def endpoints(self) -> str:
        "Returns the comma separated master IP addresses"
        self.__require_master_ips("endpoints")
        return ",".join(self.master_ips)

    def api_server_endpoint(self, port: typing.Union[str, int] = "") -> str:
        """
        Returns host:port of the API server endpoint. The API server endpoint
        always targets the first master.
        """
        self.__require_master_ips("the API server endpoint")
        if port == "":
            return trustboot.utility.format_address(self.master_ips[0])
        return trustboot.utility.join_host_port(self.master_ips[0], port)

    def control_plane_endpoint_address(self) -> str:
        """
        Returns the canonical control plane address, defaulting to the first
        master IP.
        """
        if self.control_plane_endpoint:
            return self.control_plane_endpoint
        self.__require_master_ips("the control plane endpoint")
        return trustboot.utility.format_address(self.master_ips[0])

    def api_server_sans(self) -> typing.List[str]:
        """
        Returns the Subject Alternative Names of the API server. Duplicates
        are kept.
        """
        return (
            [
                trustboot.configuration.defaults.IPV4_LOOPBACK,
                trustboot.configuration.defaults.IPV6_LOOPBACK,
            ]
            + list(self.master_ips)
            + list(self.additional_subject_alt_names)
        )

    def serialize(self) -> dict:
        "Returns the bundle as a dict of plain types, PEM data decoded to text"

        def pem(c: trustboot.tls.crypto.PEMEncodedCertificateAndKey) -> dict:
            return {"crt": c.crt.decode(), "key": c.key.decode()}

        return {
            "cluster_name": self.cluster_name,
            "kubernetes_version": self.kubernetes_version,
            "master_ips": list(self.master_ips),
            "control_plane_endpoint": self.control_plane_endpoint,
            "additional_subject_alt_names": list(self.additional_subject_alt_names),
            "pod_net": list(self.pod_net),
            "service_net": list(self.service_net),
            "service_domain": self.service_domain,
            "external_etcd": self.external_etcd,
            "certs": {
                "admin": pem(self.certs.admin),
                "etcd": pem(self.certs.etcd),
                "k8s": pem(self.certs.k8s),
                "os": pem(self.certs.os),
            },
            "kubeadm_tokens": dataclasses.asdict(self.kubeadm_tokens),
            "trustd_info": dataclasses.asdict(self.trustd_info),
        }


def new_input(
    cluster_name: str,
    master_ips: typing.Sequence[str],
    kubernetes_version: str,
    *,
    configuration: typing.Optional[trustboot.configuration.BootstrapConfiguration] = None,
    random_source: typing.Optional[trustboot.tls.secrets.RandomSource] = None,
) -> BootstrapInput:
    """
    Generate the sensitive data required to generate all node configuration
    types. Any failure propagates; a partial bundle is never returned.

    The optional configuration supplies network defaults, CA parameters and
    the control plane endpoint; cluster_name, master_ips and
    kubernetes_version always come from the arguments.
    """
    network = (
        configuration.network if configuration else trustboot.configuration.NetworkDefaults()
    )
    pki = configuration.pki if configuration else trustboot.configuration.PKIConfiguration()
    secret_options: dict = {}
    if random_source is not None:
        secret_options["random_source"] = random_source

    if trustboot.utility.is_ipv6(*master_ips):
        loopback_ip = network.ipv6_loopback
        pod_net = network.ipv6_pod_net
        service_net = network.ipv6_service_net
    else:
        loopback_ip = network.ipv4_loopback
        pod_net = network.ipv4_pod_net
        service_net = network.ipv4_service_net

    logger.info(f"Generating secrets for cluster {cluster_name}...")
    kubeadm_tokens = KubeadmTokens(
        bootstrap_token=trustboot.tls.secrets.bootstrap_token(**secret_options),
        certificate_key=trustboot.tls.secrets.certificate_key(**secret_options),
        aescbc_encryption_secret=trustboot.tls.secrets.encryption_token(**secret_options),
    )
    trustd_info = TrustdInfo(token=trustboot.tls.secrets.trustd_token(**secret_options))

    certificate_authorities = trustboot.tls.pki.create_cluster_certificate_authorities(
        configuration=pki
    )
    admin = trustboot.tls.pki.mint_admin_identity(
        certificate_authorities.os, [loopback_ip]
    )

    return BootstrapInput(
        certs=Certs(
            admin=admin,
            etcd=certificate_authorities.etcd.pem,
            k8s=certificate_authorities.kubernetes.pem,
            os=certificate_authorities.os.pem,
        ),
        kubeadm_tokens=kubeadm_tokens,
        trustd_info=trustd_info,
        cluster_name=cluster_name,
        master_ips=list(master_ips),
        pod_net=[pod_net],
        service_net=[service_net],
        service_domain=network.service_domain,
        kubernetes_version=kubernetes_version,
        control_plane_endpoint=configuration.control_plane_endpoint
        if configuration
        else "",
        additional_subject_alt_names=list(configuration.additional_subject_alt_names)
        if configuration
        else [],
        external_etcd=configuration.external_etcd if configuration else False,
    )
