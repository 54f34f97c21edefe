#!/usr/bin/env python3
#
# This module contains the remote identity issuer. A node that cannot sign
# its own identity submits a CSR to one of several trust service endpoints
# and polls until an operator approved it, the deadline passed, or the caller
# canceled.

import abc
import concurrent.futures
import dataclasses
import enum
import functools
import threading
import time
import trustboot.configuration.defaults
import trustboot.errors
import trustboot.logging
import trustboot.tls.crypto
import trustboot.trust.transport as transport
import typing

logger = trustboot.logging.get_logger(__name__)

Connect = typing.Callable[..., transport.TrustServiceClient]
StateObserver = typing.Callable[["IssuerState"], None]

# How often a blocked network call looks at the cancel event and the deadline
CALL_CHECK_INTERVAL_SECONDS = 0.05


class IssuerState(enum.Enum):
    SELECT_ENDPOINT = enum.auto()
    CONNECTING = enum.auto()
    POLLING = enum.auto()
    ISSUED = enum.auto()
    TIMED_OUT = enum.auto()
    FAILED = enum.auto()


class Clock(abc.ABC):
    "Source of time and waits, replaceable in tests"

    @abc.abstractmethod
    def monotonic(self) -> float:
        pass

    @abc.abstractmethod
    def wait(self, event: threading.Event, timeout: float) -> bool:
        """
        Block until the event is set or the timeout elapsed. Returns True if
        the event is set.
        """
        pass


class SystemClock(Clock):
    def monotonic(self) -> float:
        return time.monotonic()

    def wait(self, event: threading.Event, timeout: float) -> bool:
        return event.wait(timeout)


@dataclasses.dataclass(frozen=True)
class IssuedIdentity:
    ca: bytes
    crt: bytes
    # Endpoint that issued the certificate
    endpoint: transport.RemoteEndpoint
    # Endpoints that were tried and failed before it
    endpoint_failures: typing.List[trustboot.errors.EndpointFailure]


def _close_late_client(future: concurrent.futures.Future) -> None:
    if not future.cancelled() and future.exception() is None:
        future.result().close()


class _Session:
    """
    State of a single issuance call. Network calls run on a worker thread so
    that the caller can abandon them when canceled or out of time.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        deadline: float,
        cancel: threading.Event,
        observer: typing.Optional[StateObserver],
    ):
        self.clock = clock
        self.deadline_at = clock.monotonic() + deadline
        self.cancel = cancel
        self.observer = observer
        self.state = IssuerState.SELECT_ENDPOINT
        self.failures: typing.List[trustboot.errors.EndpointFailure] = []
        self.__executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="trustboot-issuer"
        )
        if observer:
            observer(self.state)

    def __enter__(self) -> "_Session":
        return self

    def __exit__(self, *exc_info) -> None:
        # Abandoned calls finish on their own once their timeout expires
        self.__executor.shutdown(wait=False)

    def transition(self, state: IssuerState) -> None:
        logger.debug(f"Issuer state {self.state.name} -> {state.name}")
        self.state = state
        if self.observer:
            self.observer(state)

    def remaining(self) -> float:
        return self.deadline_at - self.clock.monotonic()

    def check(self) -> None:
        "Raise if the caller canceled or the deadline passed"
        if self.cancel.is_set():
            self.transition(IssuerState.FAILED)
            raise trustboot.errors.CanceledError("certificate request canceled")
        if self.remaining() <= 0:
            self.transition(IssuerState.TIMED_OUT)
            raise trustboot.errors.DeadlineExceededError(
                "timeout waiting for certificate"
            )

    def call(
        self,
        function: typing.Callable[..., typing.Any],
        *args,
        on_abandon: typing.Optional[
            typing.Callable[[concurrent.futures.Future], None]
        ] = None,
        **kwargs,
    ) -> typing.Any:
        """
        Run the function on the worker thread and return its result. Raises
        CanceledError or DeadlineExceededError as soon as either fires, without
        waiting for the function to return.
        """
        future = self.__executor.submit(function, *args, **kwargs)
        while not future.done():
            try:
                self.check()
            except trustboot.errors.IssuanceError:
                if not future.cancel() and on_abandon:
                    future.add_done_callback(on_abandon)
                raise
            concurrent.futures.wait(
                [future],
                timeout=max(
                    min(CALL_CHECK_INTERVAL_SECONDS, self.remaining()), 0.0
                ),
            )
        return future.result()


class RemoteIdentityIssuer:
    """
    Client of the trust service. Endpoints are tried strictly in order and
    the first reachable one is used for the whole call.
    """

    def __init__(
        self,
        token: str,
        endpoints: typing.Sequence[transport.RemoteEndpoint],
        *,
        connect: typing.Optional[Connect] = None,
        clock: typing.Optional[Clock] = None,
        poll_interval: float = trustboot.configuration.defaults.POLL_INTERVAL_SECONDS,
        deadline: float = trustboot.configuration.defaults.ISSUANCE_DEADLINE_SECONDS,
        dial_timeout: float = trustboot.configuration.defaults.DIAL_TIMEOUT_SECONDS,
        scheme: str = trustboot.configuration.defaults.TRUST_SERVICE_SCHEME,
        verify: typing.Union[bool, str] = False,
    ):
        if not endpoints:
            raise ValueError("at least one trust service endpoint is required")
        self.__token = token
        self.__endpoints = tuple(endpoints)
        self.__connect = connect or functools.partial(
            transport.connect, scheme=scheme, verify=verify
        )
        self.__clock = clock or SystemClock()
        self.__poll_interval = poll_interval
        self.__deadline = deadline
        self.__dial_timeout = dial_timeout

    @property
    def endpoints(self) -> typing.Tuple[transport.RemoteEndpoint, ...]:
        return self.__endpoints

    def __new_session(
        self,
        cancel: typing.Optional[threading.Event],
        observer: typing.Optional[StateObserver],
    ) -> _Session:
        return _Session(
            clock=self.__clock,
            deadline=self.__deadline,
            cancel=cancel if cancel is not None else threading.Event(),
            observer=observer,
        )

    def __timeout(self, session: _Session) -> float:
        return max(min(self.__dial_timeout, session.remaining()), 0.001)

    def __select_endpoint(
        self, session: _Session
    ) -> typing.Tuple[transport.RemoteEndpoint, transport.TrustServiceClient]:
        for endpoint in self.__endpoints:
            session.check()
            try:
                client = session.call(
                    self.__connect,
                    endpoint,
                    token=self.__token,
                    timeout=self.__timeout(session),
                    on_abandon=_close_late_client,
                )
            except OSError as e:
                logger.warning(f"Unable to connect to trust service {endpoint}: {e}")
                session.failures.append(
                    trustboot.errors.EndpointFailure(endpoint=endpoint, error=e)
                )
                continue
            try:
                session.check()
            except trustboot.errors.IssuanceError:
                client.close()
                raise
            logger.info(f"Connected to trust service {endpoint}")
            return endpoint, client

        session.transition(IssuerState.FAILED)
        raise trustboot.errors.EndpointUnreachableError(session.failures)

    def __submit(
        self,
        session: _Session,
        client: transport.TrustServiceClient,
        request: transport.CertificateRequest,
    ) -> transport.CertificateResponse:
        response = session.call(
            client.certificate, request, timeout=self.__timeout(session)
        )
        session.check()
        return response

    def certificate(
        self,
        request: transport.CertificateRequest,
        *,
        cancel: typing.Optional[threading.Event] = None,
    ) -> transport.CertificateResponse:
        "Submit the request once to the first reachable endpoint"
        with self.__new_session(cancel, None) as session:
            _, client = self.__select_endpoint(session)
            try:
                session.transition(IssuerState.CONNECTING)
                return self.__submit(session, client, request)
            finally:
                client.close()

    def identity(
        self,
        csr: typing.Union[trustboot.tls.crypto.CertificateSigningRequest, bytes],
        *,
        cancel: typing.Optional[threading.Event] = None,
        observer: typing.Optional[StateObserver] = None,
    ) -> IssuedIdentity:
        """
        Request an identity certificate for the CSR and wait until it is
        issued. Raises EndpointUnreachableError if no endpoint accepted a
        connection, DeadlineExceededError if no certificate was issued before
        the deadline and CanceledError if the cancel event was set. A dial or
        request still in flight at that point is abandoned.
        """
        pem = csr.pem if isinstance(csr, trustboot.tls.crypto.CertificateSigningRequest) else csr
        request = transport.CertificateRequest(csr=pem)

        with self.__new_session(cancel, observer) as session:
            endpoint, client = self.__select_endpoint(session)
            try:
                return self.__poll(session, endpoint, client, request)
            finally:
                client.close()

    def __poll(
        self,
        session: _Session,
        endpoint: transport.RemoteEndpoint,
        client: transport.TrustServiceClient,
        request: transport.CertificateRequest,
    ) -> IssuedIdentity:
        session.transition(IssuerState.CONNECTING)
        try:
            response = self.__submit(session, client, request)
        except (OSError, ValueError) as e:
            # The service may still have accepted the request, so keep
            # polling for it
            logger.warning(f"Certificate request to {endpoint} failed: {e}")
        else:
            if response.issued:
                session.transition(IssuerState.ISSUED)
                return IssuedIdentity(
                    ca=response.ca,
                    crt=response.crt,
                    endpoint=endpoint,
                    endpoint_failures=list(session.failures),
                )

        session.transition(IssuerState.POLLING)
        while True:
            session.check()
            # Wakes early on cancel; the deadline caps the last wait
            self.__clock.wait(
                session.cancel, min(self.__poll_interval, session.remaining())
            )
            session.check()

            try:
                response = self.__submit(session, client, request)
            except (OSError, ValueError) as e:
                logger.warning(f"Polling {endpoint} for certificate failed: {e}")
                continue

            if response.issued:
                logger.info(f"Certificate issued by {endpoint}")
                session.transition(IssuerState.ISSUED)
                return IssuedIdentity(
                    ca=response.ca,
                    crt=response.crt,
                    endpoint=endpoint,
                    endpoint_failures=list(session.failures),
                )
            logger.info(f"Certificate request pending approval at {endpoint}")
