"""
Base collector class — Abstract interface for access-layer consumers.
A collector gathers one kind of security data, usually by fanning out
over many targets, and returns a CollectorResult wrapping the Aggregate.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..config import DEFAULT_CACHE_TTL_SECONDS
from ..errors import RemoteError, TransportError
from ..fanout.classify import failure_from_error
from ..fanout.executor import Aggregate
from ..graph.models import CachePolicy
from ..layer import AccessLayer
from ..results import Result

logger = logging.getLogger("blackcat.collectors")


class CollectorResult:
    """Standardized result from a collector."""

    def __init__(self, collector_name: str):
        self.collector_name = collector_name
        self.aggregate = Aggregate()
        self.metadata: dict[str, Any] = {
            "collector": collector_name,
            "started_at": None,
            "completed_at": None,
            "duration_seconds": 0,
            "warnings": [],
        }

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.collector_name}] {warning}")

    def to_dict(self) -> dict:
        return {
            "metadata": self.metadata,
            "summary": self.aggregate.to_dict(),
            "items": self.aggregate.successes,
        }


def aggregate_results(results: dict[str, Result], duration: float = 0.0) -> Aggregate:
    """Fold an id -> Result map (from a batch) into an Aggregate."""
    aggregate = Aggregate(total_duration=duration)
    for result in results.values():
        if result.ok:
            aggregate.successes.append(result.value)
        else:
            cls = result.failure.failure_class
            aggregate.counts_by_class[cls] = aggregate.counts_by_class.get(cls, 0) + 1
            aggregate.failures.append(result.failure)
    return aggregate


class BaseCollector(ABC):
    """
    Abstract base class for all collectors.

    Subclasses implement collect() to gather data through the access layer.
    The base class provides:
      - Timing and metadata
      - Cache policy defaults per segment
      - Conversion of remote errors into Results for fan-out workers
    """

    name: str = "base"
    description: str = "Base collector"

    def __init__(
        self,
        layer: AccessLayer,
        throttle: Optional[int] = None,
        deadline: Optional[float] = None,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
    ):
        self.layer = layer
        self.throttle = throttle
        self.deadline = deadline
        self.cache_ttl = cache_ttl

    async def execute(self) -> CollectorResult:
        """
        Execute the collector with timing and summary logging.
        Auth failures and invariant violations propagate to the caller.
        """
        result = CollectorResult(self.name)
        result.metadata["started_at"] = time.time()
        logger.info(f"[{self.name}] Starting collection...")

        result.aggregate = await self.collect(result)

        result.metadata["completed_at"] = time.time()
        result.metadata["duration_seconds"] = round(
            result.metadata["completed_at"] - result.metadata["started_at"], 2
        )
        counts = {k.value: v for k, v in result.aggregate.counts_by_class.items()}
        logger.info(
            f"[{self.name}] Completed in {result.metadata['duration_seconds']}s — "
            f"{len(result.aggregate.successes)} items, failures {counts or 'none'}"
        )
        return result

    @abstractmethod
    async def collect(self, result: CollectorResult) -> Aggregate:
        """Implement data collection logic and return the Aggregate."""
        raise NotImplementedError

    def cache_policy(self, segment: str, compress: bool = False) -> Optional[CachePolicy]:
        if self.layer.cache is None:
            return None
        return CachePolicy(segment=segment, ttl=self.cache_ttl, compress=compress)

    @staticmethod
    async def as_result(target: str, call) -> Result:
        """Await a call and turn expected remote failures into a failed Result."""
        try:
            return Result.success(await call)
        except (RemoteError, TransportError) as e:
            return Result.failed(failure_from_error(target, e))
