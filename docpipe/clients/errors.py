"""
Collaborator error classification.

Maps exceptions raised by AWS SDK calls onto the stage error taxonomy:

  Retryable: throttling, 5xx, service unavailable, connection / read timeouts
  Fatal:     invalid or unsupported documents, access denied, missing objects,
             any other client-side (4xx) rejection
"""

from __future__ import annotations

import asyncio

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from docpipe.core.errors import FatalStageError, RetryableStageError, StageError

_RETRYABLE_ERROR_CODES = frozenset({
    "ThrottlingException",
    "Throttling",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "LimitExceededException",
    "RequestLimitExceeded",
    "InternalServerError",
    "InternalError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeoutException",
})

_RETRYABLE_EXCEPTION_TYPES = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,   # distinct from the builtin before 3.11
)


def is_retryable(exc: BaseException) -> bool:
    """True if the exception is a transient provider failure."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return code in _RETRYABLE_ERROR_CODES or status >= 500
    return isinstance(exc, _RETRYABLE_EXCEPTION_TYPES)


def to_stage_error(exc: BaseException, operation: str) -> StageError:
    """Wrap a collaborator exception as a retryable or fatal stage error."""
    if isinstance(exc, StageError):
        return exc

    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "Unknown")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        reason = f"{operation} failed: {code}: {message}"
    else:
        reason = f"{operation} failed: {type(exc).__name__}: {exc}"

    if is_retryable(exc):
        return RetryableStageError(reason)
    return FatalStageError(reason)
