from .classify import classify_error, classify_status
from .executor import Aggregate, FanOutExecutor, WorkState, WorkUnit

__all__ = [
    "Aggregate",
    "FanOutExecutor",
    "WorkState",
    "WorkUnit",
    "classify_error",
    "classify_status",
]
