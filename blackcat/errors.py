"""
Error taxonomy for the access layer.

Per-item failures inside a batch or a fan-out are returned as data
(see results.py). The exceptions here are raised for failures that the
immediate caller must handle: credentials, transport, remote status on
single calls, and broken invariants.
"""

from __future__ import annotations

from typing import Optional


class AccessLayerError(Exception):
    """Base class for all access layer errors."""
    pass


class AuthError(AccessLayerError):
    """Raised when a credential cannot be acquired for an audience."""
    def __init__(self, message: str, audience: Optional[str] = None):
        self.audience = audience
        prefix = f"[{audience}] " if audience else ""
        super().__init__(f"{prefix}{message}")


class InteractionRequiredError(AuthError):
    """The identity provider needs the user to sign in again."""
    def __init__(
        self,
        message: str,
        audience: Optional[str] = None,
        hint: str = "Run an interactive sign-in (e.g. --delegated) and retry.",
    ):
        self.hint = hint
        super().__init__(message, audience)


class TransportError(AccessLayerError):
    """Network-level failure (connect, timeout, protocol)."""
    def __init__(self, url: str, cause: Exception):
        self.url = url
        self.cause = cause
        super().__init__(f"Transport error for {url}: {type(cause).__name__}: {cause}")


class RemoteError(AccessLayerError):
    """Raised when a remote API returns a non-recoverable status."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.message = message
        self.url = url
        super().__init__(f"API Error {status_code} for {url}: {message}")

    @property
    def failure_class(self):
        from .fanout.classify import classify_status
        return classify_status(self.status_code, self.message)


class CacheCorruption(AccessLayerError):
    """A stored cache entry could not be decoded. Never leaves the store."""
    def __init__(self, segment: str, key: str, cause: Exception):
        self.segment = segment
        self.key = key
        self.cause = cause
        super().__init__(f"Corrupt cache entry {segment}/{key}: {cause}")


class InvariantViolation(AccessLayerError):
    """An internal invariant broke; aborts the current logical operation."""
    pass
