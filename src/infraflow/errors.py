"""Error taxonomy and provider error classification.

Every failure the reconciler can surface falls into one of these classes:

- SpecValidationError: malformed desired state. Fails fast, nothing executes.
- TransientProviderError: rate limits, timeouts, 5xx, network trouble.
  Retried with backoff up to the attempt ceiling.
- PermanentProviderError: permission, quota, invalid argument. Fails the
  step immediately.
- PersistenceError: flow state could not be read or written. Fatal for the
  call because losing progress after a real create risks duplicates.
- DriftError: an immutable field differs between desired and observed.
  Reported, never resolved by delete and recreate.
- PartialFailureError: some steps failed while others made progress.

Azure SDK exceptions are mapped onto this taxonomy by
classify_provider_error(), which also attaches coarse error codes that are
persisted next to failed steps for operators.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from enum import Enum

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)


class ErrorCode(str, Enum):
    """Coarse error codes attached to failed steps."""

    UNAUTHENTICATED = "ERR_INFRA_UNAUTHENTICATED"
    UNAUTHORIZED = "ERR_INFRA_UNAUTHORIZED"
    QUOTA_EXCEEDED = "ERR_INFRA_QUOTA_EXCEEDED"
    RATE_LIMITS_EXCEEDED = "ERR_INFRA_RATE_LIMITS_EXCEEDED"
    DEPENDENCIES = "ERR_INFRA_DEPENDENCIES"
    RETRYABLE_DEPENDENCIES = "ERR_RETRYABLE_INFRA_DEPENDENCIES"
    RESOURCES_DEPLETED = "ERR_INFRA_RESOURCES_DEPLETED"
    CONFIGURATION_PROBLEM = "ERR_CONFIGURATION_PROBLEM"


class InfraFlowError(Exception):
    """Base class for reconciler errors."""

    pass


class SpecValidationError(InfraFlowError):
    """Raised when the desired state is structurally invalid."""

    pass


class ProviderError(InfraFlowError):
    """Raised when a provider call fails.

    Attributes:
        codes: Coarse error codes derived from the provider response.
        status_code: HTTP status of the provider response, if any.
    """

    transient = False

    def __init__(
        self,
        message: str,
        *,
        codes: Iterable[ErrorCode] = (),
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.codes: list[ErrorCode] = list(codes)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Provider failure that is expected to clear on retry."""

    transient = True


class PermanentProviderError(ProviderError):
    """Provider failure that retrying will not fix."""

    pass


class PersistenceError(InfraFlowError):
    """Raised when flow state cannot be loaded or saved."""

    pass


class DriftError(InfraFlowError):
    """Raised when an immutable field differs from the desired value.

    Attributes:
        resource: Logical key of the drifted resource.
        fields: Names of the drifted fields.
    """

    def __init__(self, resource: str, fields: Iterable[str]) -> None:
        self.resource = resource
        self.fields = sorted(fields)
        super().__init__(
            f"Immutable field drift on {resource}: {', '.join(self.fields)} "
            "(manual intervention required)"
        )


class PartialFailureError(InfraFlowError):
    """Raised when one or more steps did not complete.

    Attributes:
        failed_steps: Step id to last error message for failed steps.
        blocked_steps: Steps that could not run because a dependency failed.
    """

    def __init__(
        self,
        failed_steps: Mapping[str, str],
        blocked_steps: Iterable[str] = (),
    ) -> None:
        self.failed_steps = dict(failed_steps)
        self.blocked_steps = sorted(blocked_steps)
        message = f"{len(self.failed_steps)} step(s) failed"
        if self.failed_steps:
            message += ": " + "; ".join(
                f"{step_id}: {error}" for step_id, error in sorted(self.failed_steps.items())
            )
        if self.blocked_steps:
            message += f" ({len(self.blocked_steps)} blocked)"
        super().__init__(message)


# ARM error codes and message fragments per coarse code.
# Order matters: the first matching pattern wins for transient/permanent choice.
KNOWN_CODES: tuple[tuple[ErrorCode, re.Pattern[str]], ...] = (
    (
        ErrorCode.UNAUTHENTICATED,
        re.compile(r"InvalidAuthenticationToken|AuthenticationFailed|ExpiredAuthenticationToken"),
    ),
    (
        ErrorCode.UNAUTHORIZED,
        re.compile(r"AuthorizationFailed|LinkedAuthorizationFailed|Forbidden"),
    ),
    (
        ErrorCode.QUOTA_EXCEEDED,
        re.compile(r"QuotaExceeded|quota", re.IGNORECASE),
    ),
    (
        ErrorCode.RATE_LIMITS_EXCEEDED,
        re.compile(r"TooManyRequests|throttl|rate limit", re.IGNORECASE),
    ),
    (
        ErrorCode.RETRYABLE_DEPENDENCIES,
        re.compile(r"AnotherOperationInProgress|RetryableError|OperationNotAllowedWhileUpdating"),
    ),
    (
        ErrorCode.DEPENDENCIES,
        re.compile(r"InUse\w*CannotBeDeleted|InUse|ParentResourceNotFound|CannotDelete"),
    ),
    (
        ErrorCode.RESOURCES_DEPLETED,
        re.compile(r"SkuNotAvailable|AllocationFailed|ZonalAllocationFailed"),
    ),
    (
        ErrorCode.CONFIGURATION_PROBLEM,
        re.compile(
            r"InvalidParameter|InvalidRequestFormat|InvalidResourceName|"
            r"NetcfgInvalid\w*|SubnetsNotInSameVnet|LocationNotAvailableForResourceType"
        ),
    ),
)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
TRANSIENT_CODES = frozenset({ErrorCode.RATE_LIMITS_EXCEEDED, ErrorCode.RETRYABLE_DEPENDENCIES})


def _arm_error_code(error: HttpResponseError) -> str:
    odata = getattr(error, "error", None)
    return getattr(odata, "code", None) or ""


def determine_error_codes(error: BaseException) -> list[ErrorCode]:
    """Derive coarse error codes from a provider exception.

    Args:
        error: Exception raised by the Azure SDK or the reconciler.

    Returns:
        Matching error codes in declaration order, possibly empty.
    """
    if isinstance(error, ProviderError):
        return list(error.codes)

    text = str(error)
    status_code: int | None = None
    if isinstance(error, HttpResponseError):
        text = f"{_arm_error_code(error)} {text}"
        status_code = error.status_code

    codes = [code for code, pattern in KNOWN_CODES if pattern.search(text)]

    if isinstance(error, ClientAuthenticationError) or status_code == 401:
        if ErrorCode.UNAUTHENTICATED not in codes:
            codes.insert(0, ErrorCode.UNAUTHENTICATED)
    elif status_code == 403 and ErrorCode.UNAUTHORIZED not in codes:
        codes.insert(0, ErrorCode.UNAUTHORIZED)
    elif status_code == 429 and ErrorCode.RATE_LIMITS_EXCEEDED not in codes:
        codes.insert(0, ErrorCode.RATE_LIMITS_EXCEEDED)

    return codes


def classify_provider_error(error: BaseException, operation: str) -> ProviderError:
    """Map an Azure SDK exception onto the transient/permanent taxonomy.

    Args:
        error: Exception raised by a provider call.
        operation: Human-readable description of the failed call.

    Returns:
        A TransientProviderError or PermanentProviderError wrapping the
        original message. The caller is expected to raise it from ``error``.
    """
    codes = determine_error_codes(error)
    message = f"{operation} failed: {error}"

    if isinstance(error, ProviderError):
        return error

    if isinstance(error, TimeoutError):
        return TransientProviderError(f"{operation} timed out", codes=codes)

    if isinstance(error, ClientAuthenticationError):
        return PermanentProviderError(message, codes=codes, status_code=error.status_code)

    if isinstance(error, HttpResponseError):
        status_code = error.status_code
        if (
            status_code in TRANSIENT_STATUS_CODES
            or (status_code is not None and status_code >= 500)
            or any(code in TRANSIENT_CODES for code in codes)
        ):
            return TransientProviderError(message, codes=codes, status_code=status_code)
        return PermanentProviderError(message, codes=codes, status_code=status_code)

    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return TransientProviderError(message, codes=codes)

    if isinstance(error, AzureError):
        return PermanentProviderError(message, codes=codes)

    return PermanentProviderError(message, codes=codes)
