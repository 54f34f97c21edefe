#!/usr/bin/env python3
#
# Provides the certificate authority primitives used to bootstrap the cluster
# trust fabric: key generation, self-signed CAs, CSRs and CSR signing. Every
# generator returns the parsed objects alongside their PEM encoding so that
# callers never have to decode what was just produced.

import cryptography.exceptions
import cryptography.hazmat.backends as crypto_backends
import cryptography.hazmat.primitives.asymmetric.ec as ellipic_curve
import cryptography.hazmat.primitives.asymmetric.padding as padding
import cryptography.hazmat.primitives.asymmetric.rsa as rsa
import cryptography.hazmat.primitives.hashes
import cryptography.hazmat.primitives.serialization as serialization
import cryptography.x509 as x509
import dataclasses
import datetime
import enum
import ipaddress
import secrets
import trustboot.configuration.defaults
import trustboot.errors
import typing

PrivateKey = typing.Union[
    ellipic_curve.EllipticCurvePrivateKey, rsa.RSAPrivateKey,
]

IPAddress = typing.Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

RSA_KEY_SIZE = 4096


class KeyAlgorithm(enum.Enum):
    RSA = "RSA"
    ECDSA = "ECDSA"


@dataclasses.dataclass(frozen=True)
class Keypair:
    private_key: PrivateKey
    public_key: x509.Certificate


@dataclasses.dataclass(frozen=True)
class PEMEncodedCertificateAndKey:
    "One PEM-encoded certificate and its private key"
    crt: bytes
    key: bytes

    def __post_init__(self):
        if not self.crt or not self.key:
            raise trustboot.errors.MalformedCredentialError(
                "certificate and key must both be set"
            )


@dataclasses.dataclass(frozen=True)
class CertificateAuthority:
    "A self-signed root certificate authority"
    keypair: Keypair
    pem: PEMEncodedCertificateAndKey
    organization: str
    algorithm: KeyAlgorithm

    @property
    def not_after(self) -> datetime.datetime:
        return _not_valid_after(self.keypair.public_key)


@dataclasses.dataclass(frozen=True)
class CertificateSigningRequest:
    request: x509.CertificateSigningRequest
    pem: bytes
    ip_addresses: typing.Tuple[IPAddress, ...]


def standard_hash_algorithm() -> cryptography.hazmat.primitives.hashes.HashAlgorithm:
    return cryptography.hazmat.primitives.hashes.SHA256()


def _random_serial_number() -> int:
    # https://tools.ietf.org/html/rfc3280#section-4.1.2.2
    # Serial numbers must be positive and at most 20 octets
    return secrets.randbits(19 * 8) + 1


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _not_valid_after(certificate: x509.Certificate) -> datetime.datetime:
    # not_valid_after_utc only exists in cryptography >= 42
    value = getattr(certificate, "not_valid_after_utc", None)
    if value is None:
        value = certificate.not_valid_after.replace(tzinfo=datetime.timezone.utc)
    return value


def generate_private_key() -> ellipic_curve.EllipticCurvePrivateKey:
    # P-256 is significantly faster than P-384 and P-521 and is used here.
    return ellipic_curve.generate_private_key(
        curve=ellipic_curve.SECP256R1(), backend=crypto_backends.default_backend(),
    )


def generate_rsa_private_key(key_size: typing.Optional[int] = None) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size or RSA_KEY_SIZE,
        backend=crypto_backends.default_backend(),
    )


def standard_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        content_commitment=False,
        crl_sign=False,
        data_encipherment=False,
        decipher_only=False,
        digital_signature=True,
        encipher_only=False,
        key_agreement=False,
        key_cert_sign=False,
        key_encipherment=True,
    )


def generate_subject_name(
    common_name: typing.Optional[str] = None, *, organization: str
) -> x509.Name:
    attributes = [x509.NameAttribute(x509.oid.NameOID.ORGANIZATION_NAME, organization)]
    if common_name:
        attributes.append(
            x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, common_name)
        )
    return x509.Name(attributes)


def serialize_private_key(private_key: PrivateKey) -> bytes:
    # "EC PRIVATE KEY" / "RSA PRIVATE KEY" blocks, as kubeadm expects
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def serialize_certificate(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


def serialize_keypair(keypair: Keypair) -> PEMEncodedCertificateAndKey:
    return PEMEncodedCertificateAndKey(
        crt=serialize_certificate(keypair.public_key),
        key=serialize_private_key(keypair.private_key),
    )


def load_certificate(data: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(data, crypto_backends.default_backend())
    except (ValueError, TypeError) as e:
        raise trustboot.errors.MalformedCredentialError(
            f"failed to decode certificate PEM: {e}"
        ) from e


def load_private_key(data: bytes) -> PrivateKey:
    try:
        private_key = serialization.load_pem_private_key(
            data, password=None, backend=crypto_backends.default_backend()
        )
    except (ValueError, TypeError, cryptography.exceptions.UnsupportedAlgorithm) as e:
        raise trustboot.errors.MalformedCredentialError(
            f"failed to decode private key PEM: {e}"
        ) from e
    if not isinstance(
        private_key, (ellipic_curve.EllipticCurvePrivateKey, rsa.RSAPrivateKey)
    ):
        raise trustboot.errors.MalformedCredentialError(
            f"unsupported private key type {type(private_key).__name__}"
        )
    return private_key


def load_keypair(pem: PEMEncodedCertificateAndKey) -> Keypair:
    return Keypair(
        private_key=load_private_key(pem.key), public_key=load_certificate(pem.crt),
    )


def load_certificate_signing_request(data: bytes) -> CertificateSigningRequest:
    try:
        request = x509.load_pem_x509_csr(data, crypto_backends.default_backend())
    except (ValueError, TypeError) as e:
        raise trustboot.errors.MalformedCredentialError(
            f"failed to decode certificate signing request PEM: {e}"
        ) from e
    if not request.is_signature_valid:
        raise trustboot.errors.MalformedCredentialError(
            "certificate signing request signature is invalid"
        )
    return CertificateSigningRequest(
        request=request,
        pem=data,
        ip_addresses=tuple(_requested_ip_addresses(request)),
    )


def _requested_ip_addresses(
    request: x509.CertificateSigningRequest,
) -> typing.List[IPAddress]:
    try:
        extension = request.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        )
    except x509.ExtensionNotFound:
        return []
    return list(extension.value.get_values_for_type(x509.IPAddress))


def generate_self_signed_certificate_authority(
    *,
    organization: str,
    algorithm: KeyAlgorithm = KeyAlgorithm.ECDSA,
    not_after: typing.Optional[datetime.datetime] = None,
) -> CertificateAuthority:
    """
    Generate a new signing key and a self-signed CA certificate for it. The
    certificate expires at not_after, 10 years from now by default.
    """
    if algorithm == KeyAlgorithm.RSA:
        signing_key: PrivateKey = generate_rsa_private_key()
    else:
        signing_key = generate_private_key()

    now = _now()
    if not_after is None:
        not_after = (
            now + trustboot.configuration.defaults.CERTIFICATE_AUTHORITY_VALIDITY
        )
    elif not_after.tzinfo is None:
        not_after = not_after.replace(tzinfo=datetime.timezone.utc)
    if not_after <= now:
        raise ValueError("not_after must be in the future")

    name = generate_subject_name(organization=organization)
    # https://cryptography.io/en/latest/x509/reference/#x-509-certificate-builder
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .add_extension(
            # https://tools.ietf.org/html/rfc3280#section-4.2.1.10
            x509.BasicConstraints(ca=True, path_length=None),
            critical=True,
        )
        .add_extension(
            x509.KeyUsage(
                content_commitment=False,
                crl_sign=True,
                data_encipherment=False,
                decipher_only=False,
                digital_signature=True,
                encipher_only=False,
                key_agreement=False,
                key_cert_sign=True,
                key_encipherment=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                usages=[
                    x509.oid.ExtendedKeyUsageOID.SERVER_AUTH,
                    x509.oid.ExtendedKeyUsageOID.CLIENT_AUTH,
                ]
            ),
            critical=False,
        )
        .add_extension(
            # https://tools.ietf.org/html/rfc3280#section-4.2.1.2
            x509.SubjectKeyIdentifier.from_public_key(signing_key.public_key()),
            critical=False,
        )
        .serial_number(_random_serial_number())
        .not_valid_before(now)
        .not_valid_after(not_after)
        .public_key(signing_key.public_key())
        .sign(
            private_key=signing_key,
            algorithm=standard_hash_algorithm(),
            backend=crypto_backends.default_backend(),
        )
    )
    keypair = Keypair(private_key=signing_key, public_key=certificate)
    return CertificateAuthority(
        keypair=keypair,
        pem=serialize_keypair(keypair),
        organization=organization,
        algorithm=algorithm,
    )


def generate_certificate_signing_request(
    private_key: PrivateKey,
    *,
    ip_addresses: typing.Sequence[IPAddress] = (),
    dns_names: typing.Sequence[str] = (),
    name: typing.Optional[x509.Name] = None,
) -> CertificateSigningRequest:
    if name is None:
        name = x509.Name([])
    csr_builder = x509.CertificateSigningRequestBuilder().subject_name(name)
    alternative_names: typing.List[x509.GeneralName] = [
        x509.IPAddress(ip) for ip in ip_addresses
    ]
    alternative_names.extend(x509.DNSName(n) for n in dns_names)
    if alternative_names:
        csr_builder = csr_builder.add_extension(
            x509.SubjectAlternativeName(alternative_names), critical=False
        )
    request = csr_builder.sign(
        private_key=private_key,
        algorithm=standard_hash_algorithm(),
        backend=crypto_backends.default_backend(),
    )
    return CertificateSigningRequest(
        request=request,
        pem=request.public_bytes(serialization.Encoding.PEM),
        ip_addresses=tuple(ip_addresses),
    )


def sign_certificate_signing_request(
    request: CertificateSigningRequest,
    *,
    certificate_authority_keypair: Keypair,
    key_usage: typing.Optional[x509.KeyUsage] = None,
    validity: datetime.timedelta = trustboot.configuration.defaults.IDENTITY_VALIDITY,
) -> x509.Certificate:
    "Sign the given request with the CA, copying the requested extensions"
    if not request.request.is_signature_valid:
        raise trustboot.errors.MalformedCredentialError(
            "certificate signing request signature is invalid"
        )
    now = _now()
    not_after = min(
        now + validity, _not_valid_after(certificate_authority_keypair.public_key)
    )
    certificate_builder = (
        x509.CertificateBuilder()
        .subject_name(request.request.subject)
        .public_key(request.request.public_key())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(key_usage or standard_key_usage(), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(request.request.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                certificate_authority_keypair.private_key.public_key()
            ),
            critical=False,
        )
        .add_extension(
            # crypto/tls requires client auth extension
            # https://etcd.io/docs/v3.4.0/op-guide/security/#im-seeing-a-sslv3-alert-handshake-failure-when-using-tls-client-authentication
            x509.ExtendedKeyUsage(
                usages=[
                    x509.oid.ExtendedKeyUsageOID.SERVER_AUTH,
                    x509.oid.ExtendedKeyUsageOID.CLIENT_AUTH,
                ]
            ),
            critical=False,
        )
        .issuer_name(certificate_authority_keypair.public_key.subject)
        .serial_number(_random_serial_number())
        .not_valid_before(now)
        .not_valid_after(not_after)
    )

    for extension in request.request.extensions:
        certificate_builder = certificate_builder.add_extension(
            extension.value, critical=extension.critical
        )

    return certificate_builder.sign(
        private_key=certificate_authority_keypair.private_key,
        algorithm=standard_hash_algorithm(),
        backend=crypto_backends.default_backend(),
    )


def verify_certificate(
    certificate: x509.Certificate, *, certificate_authority: x509.Certificate
) -> bool:
    """
    Returns True if the certificate was issued by the given certificate
    authority, i.e. the issuer name matches and the signature verifies with
    the authority's public key.
    """
    if certificate.issuer != certificate_authority.subject:
        return False
    public_key = certificate_authority.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                certificate.signature,
                certificate.tbs_certificate_bytes,
                padding.PKCS1v15(),
                certificate.signature_hash_algorithm,
            )
        elif isinstance(public_key, ellipic_curve.EllipticCurvePublicKey):
            public_key.verify(
                certificate.signature,
                certificate.tbs_certificate_bytes,
                ellipic_curve.ECDSA(certificate.signature_hash_algorithm),
            )
        else:
            return False
    except cryptography.exceptions.InvalidSignature:
        return False
    return True
