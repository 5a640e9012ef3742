"""
Failure classification — maps remote errors to a FailureClass.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from ..config import THROTTLE_STATUS_CODES
from ..errors import RemoteError, TransportError
from ..results import Failure, FailureClass

# 403s caused by Azure Policy, Conditional Access, or Key Vault access policies
POLICY_WORDING = re.compile(r"polic(y|ies)", re.IGNORECASE)


def classify_status(status: Optional[int], message: str = "") -> FailureClass:
    """Classify an HTTP status plus its error text."""
    if status == 404:
        return FailureClass.NOT_FOUND
    if status == 403:
        if POLICY_WORDING.search(message or ""):
            return FailureClass.POLICY_FORBIDDEN
        return FailureClass.PERMISSION_FORBIDDEN
    if status in THROTTLE_STATUS_CODES:
        return FailureClass.TRANSIENT
    return FailureClass.UNKNOWN


def classify_error(error: BaseException) -> FailureClass:
    """Classify an exception raised while doing a unit of work."""
    if isinstance(error, RemoteError):
        return classify_status(error.status_code, error.message)
    if isinstance(error, TransportError):
        return FailureClass.TRANSIENT
    return FailureClass.UNKNOWN


def error_message(body: Any) -> str:
    """Pull the human-readable message out of a Graph/ARM error body."""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code", "")
            message = error.get("message", "")
            if code and message:
                return f"{code}: {message}"
            return message or code
        if isinstance(error, str):
            return error
        return str(body)[:200] if body else ""
    if body is None:
        return ""
    return str(body)[:200]


def failure_from_status(target: str, status: int, body: Any) -> Failure:
    message = error_message(body)
    return Failure(
        failure_class=classify_status(status, message),
        target=target,
        status=status,
        message=message,
    )


def failure_from_error(target: str, error: BaseException) -> Failure:
    status = error.status_code if isinstance(error, RemoteError) else None
    return Failure(
        failure_class=classify_error(error),
        target=target,
        status=status,
        message=f"{type(error).__name__}: {error}",
    )
