import base64
import pytest
import requests
import trustboot.trust.transport as transport
from unittest.mock import MagicMock, patch


@pytest.mark.parametrize(
    "address,expected",
    [
        ("10.0.0.1", transport.RemoteEndpoint("10.0.0.1", 50001)),
        ("10.0.0.1:4000", transport.RemoteEndpoint("10.0.0.1", 4000)),
        ("trust.example.com", transport.RemoteEndpoint("trust.example.com", 50001)),
        ("fd00::1", transport.RemoteEndpoint("fd00::1", 50001)),
        ("[fd00::1]:4000", transport.RemoteEndpoint("fd00::1", 4000)),
    ],
)
def test_parse_endpoint(address, expected):
    assert transport.RemoteEndpoint.parse(address, default_port=50001) == expected


def test_endpoint_str():
    assert str(transport.RemoteEndpoint("10.0.0.1", 4000)) == "10.0.0.1:4000"
    assert str(transport.RemoteEndpoint("fd00::1", 4000)) == "[fd00::1]:4000"


def test_response_issued():
    assert transport.CertificateResponse(ca=b"ca", crt=b"crt").issued
    assert not transport.CertificateResponse(ca=b"ca").issued
    assert not transport.CertificateResponse().issued


def test_bearer_token_auth():
    request = requests.Request("POST", "https://10.0.0.1/v1/certificate").prepare()
    transport.BearerTokenAuth("abcdef.0123456789abcdef")(request)
    assert request.headers["Authorization"] == "Bearer abcdef.0123456789abcdef"


def _session(body):
    session = MagicMock(spec=requests.Session)
    session.post.return_value.json.return_value = body
    return session


def test_http_client_submits_csr():
    session = _session(
        {
            "ca": base64.b64encode(b"ca-pem").decode(),
            "crt": base64.b64encode(b"crt-pem").decode(),
        }
    )
    client = transport.HTTPTrustServiceClient(
        endpoint=transport.RemoteEndpoint("10.0.0.1", 50001),
        token="abcdef.0123456789abcdef",
        session=session,
    )
    response = client.certificate(transport.CertificateRequest(csr=b"csr-pem"), timeout=3)

    assert response == transport.CertificateResponse(ca=b"ca-pem", crt=b"crt-pem")
    session.post.assert_called_once_with(
        "https://10.0.0.1:50001/v1/certificate",
        json={"csr": base64.b64encode(b"csr-pem").decode()},
        timeout=3,
    )
    assert isinstance(session.auth, transport.BearerTokenAuth)
    session.post.return_value.raise_for_status.assert_called_once()


def test_http_client_pending_response():
    client = transport.HTTPTrustServiceClient(
        endpoint=transport.RemoteEndpoint("10.0.0.1", 50001),
        token="token",
        scheme="http",
        session=_session({"ca": None}),
    )
    assert str(client.url) == "http://10.0.0.1:50001/v1/certificate"
    assert not client.certificate(transport.CertificateRequest(csr=b"csr")).issued


def test_http_client_rejects_unexpected_body():
    client = transport.HTTPTrustServiceClient(
        endpoint=transport.RemoteEndpoint("10.0.0.1", 50001),
        token="token",
        session=_session(["not", "a", "dict"]),
    )
    with pytest.raises(ValueError):
        client.certificate(transport.CertificateRequest(csr=b"csr"))


def test_connect_dials_endpoint():
    endpoint = transport.RemoteEndpoint("10.0.0.1", 50001)
    with patch("socket.create_connection") as create_connection:
        client = transport.connect(endpoint, token="token", timeout=2.5)
    create_connection.assert_called_once_with(("10.0.0.1", 50001), timeout=2.5)
    assert isinstance(client, transport.HTTPTrustServiceClient)


def test_connect_refused():
    endpoint = transport.RemoteEndpoint("10.0.0.1", 50001)
    with patch("socket.create_connection", side_effect=ConnectionRefusedError()):
        with pytest.raises(OSError):
            transport.connect(endpoint, token="token", timeout=2.5)


@pytest.mark.parametrize(
    "body",
    [
        {"ca": 5, "crt": "Y3J0"},
        {"ca": "Y2E=", "crt": ["Y3J0"]},
        {"ca": "Y2E=", "crt": {"pem": "Y3J0"}},
        {"ca": "not base64!", "crt": "Y3J0"},
    ],
)
def test_http_client_rejects_malformed_fields(body):
    client = transport.HTTPTrustServiceClient(
        endpoint=transport.RemoteEndpoint("10.0.0.1", 50001),
        token="token",
        session=_session(body),
    )
    with pytest.raises(ValueError):
        client.certificate(transport.CertificateRequest(csr=b"csr"))


def test_malformed_poll_response_keeps_polling():
    import trustboot.trust.issuer as issuer
    from conftest import FakeClock

    session = MagicMock(spec=requests.Session)
    session.post.return_value.json.side_effect = [
        {},
        {"ca": 5, "crt": 5},
        {
            "ca": base64.b64encode(b"ca-pem").decode(),
            "crt": base64.b64encode(b"crt-pem").decode(),
        },
    ]
    endpoint = transport.RemoteEndpoint("10.0.0.1", 50001)
    client = transport.HTTPTrustServiceClient(
        endpoint=endpoint, token="token", session=session
    )
    identity = issuer.RemoteIdentityIssuer(
        "token", [endpoint], connect=lambda *_, **__: client, clock=FakeClock()
    ).identity(b"csr")
    assert identity.crt == b"crt-pem"
    assert session.post.call_count == 3
