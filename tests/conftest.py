import pytest
import threading
import trustboot.bootstrap
import trustboot.tls.crypto
import trustboot.trust.issuer
import trustboot.trust.transport as transport
import typing

# 4096 bit RSA keys make the suite needlessly slow
trustboot.tls.crypto.RSA_KEY_SIZE = 2048


class FakeClock(trustboot.trust.issuer.Clock):
    "Advances time instantly instead of sleeping"

    def __init__(self, on_wait: typing.Optional[typing.Callable[[int], None]] = None):
        self.now = 0.0
        self.waits: typing.List[float] = []
        self.__on_wait = on_wait

    def monotonic(self) -> float:
        return self.now

    def wait(self, event: threading.Event, timeout: float) -> bool:
        self.waits.append(timeout)
        if self.__on_wait:
            self.__on_wait(len(self.waits))
        if event.is_set():
            return True
        self.now += timeout
        return False


class FakeClient(transport.TrustServiceClient):
    """
    Replays the given responses; an exception in the list is raised instead.
    Once exhausted, every call answers "not issued yet".
    """

    def __init__(self, responses=(), on_call=None):
        self.responses = list(responses)
        self.requests: typing.List[transport.CertificateRequest] = []
        self.closed = False
        self.__on_call = on_call

    def certificate(self, request, *, timeout=None):
        self.requests.append(request)
        if self.__on_call:
            self.__on_call(len(self.requests))
        if not self.responses:
            return transport.CertificateResponse()
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def close(self):
        self.closed = True


class FakeConnector:
    "Maps endpoints to clients, or to the exception raised when dialing them"

    def __init__(self, targets: dict):
        self.targets = targets
        self.dialed: typing.List[transport.RemoteEndpoint] = []
        self.tokens: typing.List[str] = []

    def __call__(self, endpoint, *, token, timeout):
        self.dialed.append(endpoint)
        self.tokens.append(token)
        target = self.targets[endpoint]
        if isinstance(target, BaseException):
            raise target
        return target


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture(scope="session")
def bootstrap_input():
    return trustboot.bootstrap.new_input(
        "test-cluster", ["10.0.0.1", "10.0.0.2", "10.0.0.3"], "1.18.2"
    )
