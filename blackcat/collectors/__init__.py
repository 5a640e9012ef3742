from .base import BaseCollector, CollectorResult, aggregate_results
from .key_vaults import KeyVaultCollector
from .principals import PrincipalCollector

ALL_COLLECTORS = [
    KeyVaultCollector,
    PrincipalCollector,
]

__all__ = [
    "BaseCollector",
    "CollectorResult",
    "aggregate_results",
    "KeyVaultCollector",
    "PrincipalCollector",
    "ALL_COLLECTORS",
]
