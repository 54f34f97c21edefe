#!/usr/bin/env python3
#
# This module creates the root certificate authorities of a cluster and the
# identities signed by them.

import cryptography.x509
import dataclasses
import datetime
import ipaddress
import trustboot.configuration
import trustboot.logging
import trustboot.tls.crypto
import typing

logger = trustboot.logging.get_logger(__name__)

CertificateAuthorityMaterial = typing.Union[
    trustboot.tls.crypto.CertificateAuthority,
    trustboot.tls.crypto.PEMEncodedCertificateAndKey,
]


@dataclasses.dataclass(frozen=True)
class ClusterCertificateAuthorities:
    etcd: trustboot.tls.crypto.CertificateAuthority
    kubernetes: trustboot.tls.crypto.CertificateAuthority
    os: trustboot.tls.crypto.CertificateAuthority


def create_certificate_authority(
    organization: str, *, rsa: bool, not_after: datetime.datetime
) -> trustboot.tls.crypto.CertificateAuthority:
    algorithm = (
        trustboot.tls.crypto.KeyAlgorithm.RSA
        if rsa
        else trustboot.tls.crypto.KeyAlgorithm.ECDSA
    )
    logger.info(f"Generating {algorithm.value} certificate authority {organization}...")
    return trustboot.tls.crypto.generate_self_signed_certificate_authority(
        organization=organization, algorithm=algorithm, not_after=not_after,
    )


def create_cluster_certificate_authorities(
    *,
    configuration: trustboot.configuration.PKIConfiguration = trustboot.configuration.PKIConfiguration(),
) -> ClusterCertificateAuthorities:
    """
    Create the three independent root CAs of a cluster. etcd and Kubernetes
    use RSA keys, the OS CA uses an elliptic curve key. Any failure aborts the
    whole operation.
    """
    not_after = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
        hours=configuration.certificate_authority_validity_hours
    )
    return ClusterCertificateAuthorities(
        etcd=create_certificate_authority(
            configuration.etcd_organization, rsa=True, not_after=not_after
        ),
        kubernetes=create_certificate_authority(
            configuration.kubernetes_organization, rsa=True, not_after=not_after
        ),
        os=create_certificate_authority(
            configuration.os_organization, rsa=False, not_after=not_after
        ),
    )


def _certificate_authority_keypair(
    certificate_authority: CertificateAuthorityMaterial,
) -> trustboot.tls.crypto.Keypair:
    if isinstance(certificate_authority, trustboot.tls.crypto.CertificateAuthority):
        return certificate_authority.keypair
    return trustboot.tls.crypto.load_keypair(certificate_authority)


def mint_identity(
    certificate_authority: CertificateAuthorityMaterial,
    *,
    name: cryptography.x509.Name,
    ip_addresses: typing.Sequence[str],
) -> trustboot.tls.crypto.PEMEncodedCertificateAndKey:
    """
    Generate a fresh elliptic curve key and a CSR carrying the given IP
    addresses as SANs, and sign it with the certificate authority. Raises
    MalformedCredentialError if the CA is given as unusable PEM.
    """
    signing_keypair = _certificate_authority_keypair(certificate_authority)

    private_key = trustboot.tls.crypto.generate_private_key()
    request = trustboot.tls.crypto.generate_certificate_signing_request(
        private_key,
        ip_addresses=[ipaddress.ip_address(ip) for ip in ip_addresses],
        name=name,
    )
    certificate = trustboot.tls.crypto.sign_certificate_signing_request(
        request, certificate_authority_keypair=signing_keypair,
    )
    return trustboot.tls.crypto.serialize_keypair(
        trustboot.tls.crypto.Keypair(private_key=private_key, public_key=certificate)
    )


def mint_admin_identity(
    os_certificate_authority: CertificateAuthorityMaterial,
    loopback_addresses: typing.Sequence[str],
) -> trustboot.tls.crypto.PEMEncodedCertificateAndKey:
    logger.info("Generating admin identity...")
    return mint_identity(
        os_certificate_authority,
        name=trustboot.tls.crypto.generate_subject_name(
            "admin", organization="os:admin"
        ),
        ip_addresses=loopback_addresses,
    )
