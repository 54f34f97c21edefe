#!/usr/bin/env python3
#
# This module contains the exception hierarchy raised by trustboot. Callers
# can catch TrustbootError to handle every failure the bootstrap can produce,
# or a subclass to tell apart which bound or precondition failed.

import dataclasses
import typing

if typing.TYPE_CHECKING:
    import trustboot.trust.transport


class TrustbootError(Exception):
    "Base class for all trustboot errors"


class EntropyError(TrustbootError):
    """
    The secure random source failed. This always aborts the bootstrap, since
    a host that cannot produce entropy cannot produce trustworthy secrets.
    """


# Name used by the secret generator contract
RandomSourceError = EntropyError


class MalformedCredentialError(TrustbootError):
    "A PEM block, certificate or private key could not be decoded"


class TopologyError(TrustbootError):
    "An operation requires master IP addresses but none were supplied"


class ConfigurationError(TrustbootError):
    "The bootstrap configuration file is invalid"


class IssuanceError(TrustbootError):
    "Base class for failures of a remote identity issuance call"


@dataclasses.dataclass(frozen=True)
class EndpointFailure:
    "Records why a single trust service endpoint could not be used"
    endpoint: "trustboot.trust.transport.RemoteEndpoint"
    error: BaseException

    def __str__(self) -> str:
        return f"{self.endpoint}: {self.error}"


class EndpointUnreachableError(IssuanceError):
    """
    Every trust service endpoint failed. The individual failures are kept in
    input order so that callers can report which address failed and why.
    """

    def __init__(self, failures: typing.Sequence[EndpointFailure]):
        self.failures: typing.List[EndpointFailure] = list(failures)
        details = "; ".join(str(f) for f in self.failures)
        super().__init__(
            f"unable to connect to any of {len(self.failures)} trust service endpoint(s): {details}"
        )

    def causes(self) -> typing.List[BaseException]:
        return [f.error for f in self.failures]


class DeadlineExceededError(IssuanceError):
    "Polling for an issued certificate exceeded the overall deadline"


class CanceledError(IssuanceError):
    "The caller canceled the issuance call"
