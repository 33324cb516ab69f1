"""Error taxonomy and provider error classification.

Every Route53 call made by the engine runs inside :func:`provider_call`, which
is the only place where raw botocore error codes are inspected. Call sites
branch on the exception classes defined here, never on provider codes.

Taxonomy:

    not-ready         NotReadyError and subclasses. Transient, the caller
                      requeues without treating it as a failure.
    already-converged HostedZoneNotFoundError, NotFoundError,
                      AlreadyExistsError. Absorbed by the engine where the
                      end state already holds.
    rate-limited      ThrottlingError. Retryable with backoff.
    hard failure      ProviderError. Anything unclassified.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from botocore.exceptions import BotoCoreError, ClientError

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "PriorRequestNotComplete",
        "RequestLimitExceeded",
        "TooManyRequestsException",
    }
)
HOSTED_ZONE_NOT_FOUND_CODES = frozenset({"NoSuchHostedZone", "HostedZoneNotFound"})
ALREADY_EXISTS_CODES = frozenset({"HostedZoneAlreadyExists"})
INVALID_CHANGE_BATCH_CODE = "InvalidChangeBatch"


# =============================================================================
# Error Kinds
# =============================================================================


class DNSError(Exception):
    """Base class for every error surfaced by the reconciliation engine."""

    def __init__(self, message: str = "", *, operation: str = "", zone_id: str = ""):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.zone_id = zone_id

    def __str__(self) -> str:
        context = self.operation
        if self.zone_id:
            context = f"{context} (zone {self.zone_id})" if context else f"zone {self.zone_id}"
        if context and self.message:
            return f"{context}: {self.message}"
        return context or self.message


class HostedZoneNotFoundError(DNSError):
    """Hosted zone lookup came back empty or with a different name."""


class NotFoundError(DNSError):
    """A change batch referenced a record set that does not exist."""


class AlreadyExistsError(DNSError):
    """The resource a create-style call targets already exists."""


class ThrottlingError(DNSError):
    """The provider rejected the call because of rate limiting."""


class ProviderError(DNSError):
    """Unclassified provider failure."""


class NotReadyError(DNSError):
    """A precondition is not met yet; retry later."""


class APIEndpointNotReadyError(NotReadyError):
    """The cluster has no API endpoint yet."""


class IngressNotReadyError(NotReadyError):
    """The ingress load balancer exists but has no address assigned."""


class ServiceNotReadyError(NotReadyError):
    """The workload cluster lookup failed for a reason other than ingress readiness."""


class InvalidConfigError(ValueError):
    """Configuration or scope parameters are invalid."""


# =============================================================================
# Classification
# =============================================================================


def error_code(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Code", ""))


def error_message(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Message", "")) or str(err)


def classify_error(err: Exception, operation: str, zone_id: str = "") -> DNSError:
    """Map a raw provider exception onto the engine's error taxonomy."""
    if isinstance(err, DNSError):
        return err

    if isinstance(err, ClientError):
        code = error_code(err)
        message = error_message(err)

        if code in THROTTLING_CODES:
            return ThrottlingError(message, operation=operation, zone_id=zone_id)
        if code in HOSTED_ZONE_NOT_FOUND_CODES:
            return HostedZoneNotFoundError(message, operation=operation, zone_id=zone_id)
        if code in ALREADY_EXISTS_CODES:
            return AlreadyExistsError(message, operation=operation, zone_id=zone_id)
        if code == INVALID_CHANGE_BATCH_CODE:
            if "not found" in message.lower():
                return NotFoundError(message, operation=operation, zone_id=zone_id)
            return AlreadyExistsError(message, operation=operation, zone_id=zone_id)
        return ProviderError(f"{code}: {message}", operation=operation, zone_id=zone_id)

    if isinstance(err, BotoCoreError):
        return ProviderError(str(err), operation=operation, zone_id=zone_id)

    return ProviderError(f"{type(err).__name__}: {err}", operation=operation, zone_id=zone_id)


@contextmanager
def provider_call(operation: str, zone_id: str = "") -> Iterator[None]:
    """Run a Route53 call and translate provider exceptions on the way out."""
    try:
        yield
    except (ClientError, BotoCoreError) as err:
        raise classify_error(err, operation, zone_id) from err


@contextmanager
def workload_lookup(operation: str) -> Iterator[None]:
    """Run a workload cluster lookup.

    Connection failures and timeouts (OSError) mean the workload cluster could
    not be asked and are reported as ServiceNotReadyError. Engine errors such
    as IngressNotReadyError and programming errors pass through unchanged.
    """
    try:
        yield
    except OSError as err:
        raise ServiceNotReadyError(str(err), operation=operation) from err
