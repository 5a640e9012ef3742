"""
Concurrent fan-out executor — runs one worker per target under a throttle.

Failures are data: every target ends in exactly one terminal state and is
reported once to the Aggregate. A deadline stops scheduling new targets;
work already running is allowed to finish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar, Union

from ..config import DEFAULT_THROTTLE
from ..errors import AuthError, InvariantViolation
from ..results import Failure, FailureClass, Result
from .classify import failure_from_error

logger = logging.getLogger("blackcat.fanout")

T = TypeVar("T")

Worker = Callable[[T], Awaitable[Union[Result, Any]]]


class WorkState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    WorkState.PENDING: {WorkState.RUNNING, WorkState.CANCELLED},
    WorkState.RUNNING: {WorkState.SUCCEEDED, WorkState.FAILED},
    WorkState.SUCCEEDED: set(),
    WorkState.FAILED: set(),
    WorkState.CANCELLED: set(),
}


@dataclass
class WorkUnit(Generic[T]):
    """Tracks a single target through Pending -> Running -> terminal."""
    target: T
    label: str
    state: WorkState = WorkState.PENDING
    result: Optional[Result] = None

    def advance(self, new_state: WorkState, result: Optional[Result] = None) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvariantViolation(
                f"Illegal work transition for {self.label}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.result = result

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


@dataclass
class Aggregate:
    """Outcome of a fan-out run."""
    successes: list = field(default_factory=list)
    counts_by_class: dict[FailureClass, int] = field(default_factory=dict)
    failures: list[Failure] = field(default_factory=list)
    total_duration: float = 0.0
    peak_concurrency: int = 0

    @property
    def total(self) -> int:
        return len(self.successes) + sum(self.counts_by_class.values())

    def failures_of(self, failure_class: FailureClass) -> list[Failure]:
        return [f for f in self.failures if f.failure_class is failure_class]

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": len(self.successes),
            "failed_by_class": {k.value: v for k, v in self.counts_by_class.items()},
            "duration_seconds": round(self.total_duration, 2),
            "peak_concurrency": self.peak_concurrency,
            "failures": [f.to_dict() for f in self.failures],
        }


class FanOutExecutor:
    """
    Bounded concurrent runner.
    Features:
      - At most `throttle` workers in flight
      - Exceptions from one worker never cancel the others
      - An AuthError stops scheduling and is re-raised once in-flight work ends
      - Failures classified into FailureClass counts
      - Optional overall deadline; unscheduled targets become Cancelled
    """

    def __init__(
        self,
        default_throttle: int = DEFAULT_THROTTLE,
        label: Callable[[Any], str] = str,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_throttle = default_throttle
        self._label = label
        self._clock = clock

    async def run(
        self,
        targets: Iterable[T],
        worker: Worker,
        throttle: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> Aggregate:
        """
        Run worker(target) for every target.

        Args:
            targets: Items to process; each becomes one unit of work.
            worker: Async callable returning a Result (or a plain value).
            throttle: Max units in flight; defaults to default_throttle.
            deadline: Seconds from now after which nothing new is scheduled.

        Raises:
            AuthError: the first credential failure seen by any worker.
        """
        throttle = self.default_throttle if throttle is None else throttle
        if throttle < 1:
            raise ValueError(f"throttle must be >= 1, got {throttle}")

        started = self._clock()
        stop_at = started + deadline if deadline is not None else None
        units = [WorkUnit(target=t, label=self._label(t)) for t in targets]
        semaphore = asyncio.Semaphore(throttle)
        in_flight = 0
        peak = 0
        tasks: list[asyncio.Task] = []

        auth_failure: Optional[AuthError] = None

        async def drive(unit: WorkUnit) -> None:
            nonlocal in_flight, auth_failure
            try:
                try:
                    result = await self._invoke(worker, unit)
                except AuthError as e:
                    if auth_failure is None:
                        auth_failure = e
                    result = Result.failed(failure_from_error(unit.label, e))
                if result.ok:
                    unit.advance(WorkState.SUCCEEDED, result)
                else:
                    unit.advance(WorkState.FAILED, result)
            finally:
                in_flight -= 1
                semaphore.release()

        logger.info(f"Fan-out over {len(units)} targets (throttle {throttle})")

        for unit in units:
            if auth_failure is not None or not await self._acquire(semaphore, stop_at):
                break
            if auth_failure is not None:
                semaphore.release()
                break
            unit.advance(WorkState.RUNNING)
            in_flight += 1
            peak = max(peak, in_flight)
            tasks.append(asyncio.create_task(drive(unit)))

        if tasks:
            await asyncio.gather(*tasks)

        if auth_failure is not None:
            # work already in flight has finished
            logger.error(f"Fan-out aborted on credential failure: {auth_failure}")
            raise auth_failure

        cancelled = 0
        for unit in units:
            if unit.state is WorkState.PENDING:
                unit.advance(WorkState.CANCELLED, Result.failed(Failure(
                    failure_class=FailureClass.CANCELLED,
                    target=unit.label,
                    message="Deadline reached before this target was scheduled",
                )))
                cancelled += 1
        if cancelled:
            logger.warning(f"Deadline reached: {cancelled} targets were not scheduled")

        aggregate = self._aggregate(units)
        aggregate.total_duration = self._clock() - started
        aggregate.peak_concurrency = peak
        logger.info(
            f"Fan-out completed in {aggregate.total_duration:.2f}s — "
            f"{len(aggregate.successes)} succeeded, "
            f"{sum(aggregate.counts_by_class.values())} failed"
        )
        return aggregate

    async def _acquire(self, semaphore: asyncio.Semaphore, stop_at: Optional[float]) -> bool:
        """Wait for a free slot; False once the deadline has passed."""
        if stop_at is None:
            await semaphore.acquire()
            return True

        remaining = stop_at - self._clock()
        if remaining <= 0:
            return False
        try:
            await asyncio.wait_for(semaphore.acquire(), timeout=remaining)
        except asyncio.TimeoutError:
            return False
        if self._clock() >= stop_at:
            semaphore.release()
            return False
        return True

    async def _invoke(self, worker: Worker, unit: WorkUnit) -> Result:
        try:
            outcome = worker(unit.target)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except AuthError:
            raise
        except Exception as e:
            failure = failure_from_error(unit.label, e)
            if isinstance(e, InvariantViolation):
                logger.error(f"Worker for {unit.label} aborted: {e}")
            else:
                logger.debug(f"Worker for {unit.label} raised {type(e).__name__}: {e}")
            return Result.failed(failure)

        if isinstance(outcome, Result):
            if outcome.failure is not None and outcome.failure.target != unit.label:
                # Keep the target identifier so callers can retry narrowly
                return Result.failed(Failure(
                    failure_class=outcome.failure.failure_class,
                    target=unit.label,
                    status=outcome.failure.status,
                    message=outcome.failure.message,
                ))
            return outcome
        return Result.success(outcome)

    @staticmethod
    def _aggregate(units: list[WorkUnit]) -> Aggregate:
        aggregate = Aggregate()
        counts: Counter = Counter()
        for unit in units:
            if not unit.terminal or unit.result is None:
                raise InvariantViolation(f"Unit {unit.label} finished in state {unit.state.value}")
            if unit.state is WorkState.SUCCEEDED:
                aggregate.successes.append(unit.result.value)
            else:
                failure = unit.result.failure
                counts[failure.failure_class] += 1
                aggregate.failures.append(failure)
        aggregate.counts_by_class = dict(counts)
        return aggregate
