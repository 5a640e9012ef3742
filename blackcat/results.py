"""
Result records shared by the batch client and the fan-out executor.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class FailureClass(str, Enum):
    NOT_FOUND = "NotFound"
    POLICY_FORBIDDEN = "PolicyForbidden"
    PERMISSION_FORBIDDEN = "PermissionForbidden"
    TRANSIENT = "Transient"
    UNKNOWN = "Unknown"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class Failure:
    """Why a single unit of work did not succeed."""
    failure_class: FailureClass
    target: str
    status: Optional[int] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "class": self.failure_class.value,
            "target": self.target,
            "status": self.status,
            "message": self.message,
        }


@dataclass(frozen=True)
class Result:
    """Either a value or a Failure, never both."""
    value: Any = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Any) -> "Result":
        return cls(value=value)

    @classmethod
    def failed(cls, failure: Failure) -> "Result":
        return cls(failure=failure)
