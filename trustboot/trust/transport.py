#!/usr/bin/env python3
#
# This module contains the client side of the trust service certificate API.
# A node that has no identity yet authenticates with a static bearer token
# and sends its CSR; the service answers with the issuing CA and the signed
# certificate once an operator approved the request.

import abc
import base64
import binascii
import dataclasses
import requests
import requests.auth
import socket
import trustboot.logging
import typing
import yarl

logger = trustboot.logging.get_logger(__name__)

CERTIFICATE_PATH = "/v1/certificate"


@dataclasses.dataclass(frozen=True)
class RemoteEndpoint:
    "A candidate trust service address"
    host: str
    port: int

    @classmethod
    def parse(cls, address: str, *, default_port: int) -> "RemoteEndpoint":
        """
        Parse host, host:port, [v6]:port or a bare IPv6 address into an
        endpoint.
        """
        if address.count(":") > 1 and not address.startswith("["):
            return cls(host=address, port=default_port)
        url = yarl.URL(f"tcp://{address}")
        if not url.host:
            raise ValueError(f"invalid trust service endpoint {address!r}")
        return cls(host=url.host, port=url.port or default_port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclasses.dataclass(frozen=True)
class CertificateRequest:
    csr: bytes


@dataclasses.dataclass(frozen=True)
class CertificateResponse:
    ca: bytes = b""
    crt: bytes = b""

    @property
    def issued(self) -> bool:
        "An empty CA or certificate means the request is not approved yet"
        return bool(self.ca) and bool(self.crt)


class BearerTokenAuth(requests.auth.AuthBase):
    "Attaches the trust service token to every request"

    def __init__(self, token: str):
        self.__token = token

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        request.headers["Authorization"] = f"Bearer {self.__token}"
        return request


class TrustServiceClient(abc.ABC):
    """
    A connection to one trust service endpoint.
    """

    @abc.abstractmethod
    def certificate(
        self, request: CertificateRequest, *, timeout: typing.Optional[float] = None
    ) -> CertificateResponse:
        """
        Submit the CSR. The call must be idempotent: the service returns the
        previously issued certificate if there is one.
        """
        pass

    def close(self) -> None:
        pass


class HTTPTrustServiceClient(TrustServiceClient):
    def __init__(
        self,
        *,
        endpoint: RemoteEndpoint,
        token: str,
        scheme: str = "https",
        verify: typing.Union[bool, str] = False,
        session: typing.Optional[requests.Session] = None,
    ):
        self.__url = yarl.URL.build(
            scheme=scheme, host=endpoint.host, port=endpoint.port, path=CERTIFICATE_PATH
        )
        self.__session = session or requests.Session()
        self.__session.auth = BearerTokenAuth(token)
        self.__session.verify = verify

    @property
    def url(self) -> yarl.URL:
        return self.__url

    def certificate(
        self, request: CertificateRequest, *, timeout: typing.Optional[float] = None
    ) -> CertificateResponse:
        response = self.__session.post(
            str(self.__url),
            json={"csr": base64.standard_b64encode(request.csr).decode("ascii")},
            timeout=timeout,
        )
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"unexpected response from {self.__url}: {body!r}")
        return CertificateResponse(ca=self.__field(body, "ca"), crt=self.__field(body, "crt"))

    def __field(self, body: dict, name: str) -> bytes:
        "Decode a base64 response field. Missing or null means not issued yet."
        value = body.get(name)
        if value is None:
            return b""
        if not isinstance(value, str):
            raise ValueError(
                f"unexpected {name} in response from {self.__url}: {value!r}"
            )
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ValueError(f"invalid base64 {name} from {self.__url}: {e}") from e

    def close(self) -> None:
        self.__session.close()


def connect(
    endpoint: RemoteEndpoint,
    *,
    token: str,
    timeout: float,
    scheme: str = "https",
    verify: typing.Union[bool, str] = False,
) -> TrustServiceClient:
    """
    Dial the endpoint to make sure it is reachable, then return a client for
    it. Raises OSError if the endpoint refuses the connection or the dial
    times out.
    """
    logger.info(f"Connecting to trust service {endpoint}...")
    with socket.create_connection((endpoint.host, endpoint.port), timeout=timeout):
        pass
    return HTTPTrustServiceClient(
        endpoint=endpoint, token=token, scheme=scheme, verify=verify
    )
