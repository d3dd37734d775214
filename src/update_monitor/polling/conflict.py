"""
Classification of provider errors raised while polling.

The Bot API answers 409 when another consumer is already long-polling with the
same token. The same status is used by other methods for unrelated reasons, so
the error must also name the polling endpoint to count as recoverable. Transport
failures that never reached the provider are classified separately.
"""

from collections.abc import Mapping
from typing import Any

import httpx

CONFLICT_ERROR_CODE = 409
POLL_METHOD_MARKER = "getupdates"


def _field(error: Any, *names: str) -> Any:
    for name in names:
        if isinstance(error, Mapping):
            value = error.get(name)
        else:
            value = getattr(error, name, None)
        if value is not None:
            return value
    return None


def is_recoverable_conflict(error: Any) -> bool:
    """
    Check whether an error means another poller holds the update stream.

    Args:
        error: Exception or mapping describing a provider error

    Returns:
        True only for a 409 whose method/description/message names getUpdates
    """
    if error is None or isinstance(error, (str, bytes, int, float, bool)):
        return False

    error_code = _field(error, "error_code", "errorCode", "status_code")
    if error_code != CONFLICT_ERROR_CODE:
        return False

    texts = [_field(error, name) for name in ("method", "description", "message")]
    if isinstance(error, BaseException):
        texts.append(str(error))
    haystack = " ".join(text for text in texts if isinstance(text, str)).lower()
    return POLL_METHOD_MARKER in haystack


def is_transient_network_error(error: Any) -> bool:
    """
    Check whether a provider error is a dropped connection rather than a reply.

    Args:
        error: Exception raised by the Bot API client

    Returns:
        True for a failure with no provider status caused by an httpx
        transport error (connect, read, DNS, proxy, timeout)
    """
    if not isinstance(error, BaseException):
        return False
    if _field(error, "error_code", "errorCode", "status_code") is not None:
        return False
    return isinstance(error.__cause__, httpx.TransportError)
