"""
Tests for blackcat.fanout (executor and failure classification).
"""

import asyncio

import pytest

from blackcat.errors import InteractionRequiredError, InvariantViolation, RemoteError, TransportError
from blackcat.fanout import FanOutExecutor, WorkState, WorkUnit, classify_error, classify_status
from blackcat.results import Failure, FailureClass, Result


class TestRun:
    """Test fan-out outcomes and aggregation."""

    @pytest.mark.asyncio
    async def test_mixed_outcomes_are_counted_by_class(self) -> None:
        """Ten vaults: one missing, two policy-denied, seven readable."""
        denied = {"kv-3", "kv-7"}

        async def worker(name: str):
            await asyncio.sleep(0)
            if name == "kv-5":
                raise RemoteError(404, "VaultNotFound: vault kv-5 not found", f"https://{name}")
            if name in denied:
                raise RemoteError(
                    403, "ForbiddenByPolicy: Access denied by the vault's access policy", f"https://{name}"
                )
            return {"vault": name}

        targets = [f"kv-{i}" for i in range(10)]
        aggregate = await FanOutExecutor().run(targets, worker, throttle=4)

        assert len(aggregate.successes) == 7
        assert aggregate.counts_by_class == {
            FailureClass.NOT_FOUND: 1,
            FailureClass.POLICY_FORBIDDEN: 2,
        }
        assert {f.target for f in aggregate.failures_of(FailureClass.POLICY_FORBIDDEN)} == denied
        assert aggregate.total == 10

    @pytest.mark.asyncio
    async def test_returned_failure_keeps_target_label(self) -> None:
        """A worker's failed Result is attributed to the unit's label."""
        async def worker(target: dict):
            return Result.failed(Failure(FailureClass.TRANSIENT, target="inner", status=503))

        executor = FanOutExecutor(label=lambda t: t["name"])
        aggregate = await executor.run([{"name": "alpha"}], worker)
        assert aggregate.failures[0].target == "alpha"
        assert aggregate.failures[0].status == 503

    @pytest.mark.asyncio
    async def test_exceptions_do_not_cancel_siblings(self) -> None:
        """An early crash leaves slower workers running to completion."""
        finished = []

        async def worker(n: int):
            if n == 0:
                raise ValueError("bad input")
            await asyncio.sleep(0.01 * n)
            finished.append(n)
            return n

        aggregate = await FanOutExecutor().run(range(6), worker, throttle=6)
        assert sorted(finished) == [1, 2, 3, 4, 5]
        assert sorted(aggregate.successes) == [1, 2, 3, 4, 5]
        assert aggregate.counts_by_class == {FailureClass.UNKNOWN: 1}
        assert "ValueError" in aggregate.failures[0].message

    @pytest.mark.asyncio
    async def test_credential_failure_is_raised_after_in_flight_work(self) -> None:
        """Sign-in failures stop scheduling and reach the caller intact."""
        finished = []

        async def worker(n: int):
            if n == 0:
                raise InteractionRequiredError("consent required", "KEY_VAULT")
            await asyncio.sleep(0.01 * n)
            finished.append(n)
            return n

        with pytest.raises(InteractionRequiredError) as exc_info:
            await FanOutExecutor().run(range(10), worker, throttle=3)
        assert exc_info.value.audience == "KEY_VAULT"
        assert exc_info.value.hint
        assert sorted(finished) == [1, 2]

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self) -> None:
        """Network failures surface as Transient."""
        async def worker(n: int):
            raise TransportError("https://example", ConnectionError("reset"))

        aggregate = await FanOutExecutor().run([1, 2], worker)
        assert aggregate.counts_by_class == {FailureClass.TRANSIENT: 2}

    @pytest.mark.asyncio
    async def test_sync_worker_accepted(self) -> None:
        """Plain callables returning values count as successes."""
        aggregate = await FanOutExecutor().run([1, 2, 3], lambda n: n * 10)
        assert sorted(aggregate.successes) == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_empty_targets(self) -> None:
        """No targets produce an empty aggregate."""
        aggregate = await FanOutExecutor().run([], lambda n: n)
        assert aggregate.total == 0
        assert aggregate.counts_by_class == {}

    @pytest.mark.asyncio
    async def test_invalid_throttle_rejected(self) -> None:
        """Throttle must allow at least one worker."""
        with pytest.raises(ValueError):
            await FanOutExecutor().run([1], lambda n: n, throttle=0)

    @pytest.mark.asyncio
    async def test_to_dict_uses_class_names(self) -> None:
        """Serialized counts use the failure class values."""
        async def worker(n: int):
            raise RemoteError(404, "gone", "u")

        aggregate = await FanOutExecutor().run([1], worker)
        data = aggregate.to_dict()
        assert data["failed_by_class"] == {"NotFound": 1}
        assert data["failures"][0]["class"] == "NotFound"


class TestThrottle:
    """Test the concurrency bound."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("throttle", [1, 10, 100])
    async def test_in_flight_never_exceeds_throttle(self, throttle: int) -> None:
        """Observed concurrency stays within the bound and reaches it."""
        in_flight = 0
        observed = 0

        async def worker(n: int):
            nonlocal in_flight, observed
            in_flight += 1
            observed = max(observed, in_flight)
            await asyncio.sleep(0.002)
            in_flight -= 1
            return n

        aggregate = await FanOutExecutor().run(range(100), worker, throttle=throttle)
        assert observed <= throttle
        assert observed == throttle
        assert aggregate.peak_concurrency == throttle
        assert len(aggregate.successes) == 100


class TestDeadline:
    """Test deadline-driven cancellation."""

    @pytest.mark.asyncio
    async def test_expired_deadline_cancels_everything(self) -> None:
        """With no time left nothing is scheduled."""
        calls = []
        aggregate = await FanOutExecutor().run([1, 2, 3], calls.append, deadline=0)
        assert calls == []
        assert aggregate.counts_by_class == {FailureClass.CANCELLED: 3}

    @pytest.mark.asyncio
    async def test_unscheduled_targets_cancelled(self) -> None:
        """Running work finishes; work not yet started is cancelled."""
        async def worker(n: int):
            await asyncio.sleep(0.2)
            return n

        aggregate = await FanOutExecutor().run(range(5), worker, throttle=1, deadline=0.3)
        assert aggregate.successes == [0, 1]
        assert aggregate.counts_by_class == {FailureClass.CANCELLED: 3}
        assert [f.target for f in aggregate.failures] == ["2", "3", "4"]


class TestWorkUnit:
    """Test state transitions."""

    def test_legal_path(self) -> None:
        unit = WorkUnit(target="x", label="x")
        unit.advance(WorkState.RUNNING)
        unit.advance(WorkState.SUCCEEDED, Result.success(1))
        assert unit.terminal

    def test_terminal_states_are_final(self) -> None:
        """A finished unit cannot be moved again."""
        unit = WorkUnit(target="x", label="x")
        unit.advance(WorkState.CANCELLED)
        with pytest.raises(InvariantViolation):
            unit.advance(WorkState.RUNNING)

    def test_cannot_skip_running(self) -> None:
        unit = WorkUnit(target="x", label="x")
        with pytest.raises(InvariantViolation):
            unit.advance(WorkState.SUCCEEDED)


class TestClassify:
    """Test status and error classification."""

    @pytest.mark.parametrize("status,message,expected", [
        (404, "", FailureClass.NOT_FOUND),
        (403, "Access denied due to Conditional Access policies", FailureClass.POLICY_FORBIDDEN),
        (403, "The user does not have secrets list permission on key vault", FailureClass.PERMISSION_FORBIDDEN),
        (429, "", FailureClass.TRANSIENT),
        (503, "", FailureClass.TRANSIENT),
        (504, "", FailureClass.TRANSIENT),
        (500, "", FailureClass.UNKNOWN),
        (400, "", FailureClass.UNKNOWN),
        (None, "", FailureClass.UNKNOWN),
    ])
    def test_classify_status(self, status, message, expected) -> None:
        assert classify_status(status, message) is expected

    def test_policy_wording_is_case_insensitive(self) -> None:
        assert classify_status(403, "Blocked by POLICY") is FailureClass.POLICY_FORBIDDEN

    def test_classify_error(self) -> None:
        assert classify_error(RemoteError(404, "", "u")) is FailureClass.NOT_FOUND
        assert classify_error(TransportError("u", OSError("x"))) is FailureClass.TRANSIENT
        assert classify_error(KeyError("x")) is FailureClass.UNKNOWN
