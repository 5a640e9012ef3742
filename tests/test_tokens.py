"""
Tests for blackcat.auth.tokens.
"""

import asyncio
import threading

import pytest

from blackcat.auth.tokens import Audience, Credential, TokenManager
from blackcat.errors import AuthError, InteractionRequiredError

from conftest import FakeClock, FakeIdentity


class TestGetAuthHeader:
    """Test header retrieval and refresh timing."""

    @pytest.mark.asyncio
    async def test_first_use_acquires(self, clock: FakeClock) -> None:
        """First call for an audience goes to the identity provider."""
        identity = FakeIdentity(clock)
        tokens = TokenManager(identity, clock=clock)
        header = await tokens.get_auth_header(Audience.GRAPH)
        assert header == {"Authorization": "Bearer token-GRAPH-1"}
        assert identity.calls == [Audience.GRAPH]

    @pytest.mark.asyncio
    async def test_fresh_credential_reused(self, clock: FakeClock) -> None:
        """A credential outside the guard window is reused."""
        identity = FakeIdentity(clock, lifetime=3600)
        tokens = TokenManager(identity, clock=clock)
        await tokens.get_auth_header(Audience.GRAPH)
        clock.advance(3600 - 301)
        await tokens.get_auth_header(Audience.GRAPH)
        assert len(identity.calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_inside_guard_window(self, clock: FakeClock) -> None:
        """Within five minutes of expiry the credential is replaced."""
        identity = FakeIdentity(clock, lifetime=3600)
        tokens = TokenManager(identity, clock=clock)
        await tokens.get_auth_header(Audience.GRAPH)
        clock.advance(3600 - 300)
        header = await tokens.get_auth_header(Audience.GRAPH)
        assert header["Authorization"] == "Bearer token-GRAPH-2"

    @pytest.mark.asyncio
    async def test_audiences_are_independent(self, clock: FakeClock) -> None:
        """Each audience holds its own credential."""
        identity = FakeIdentity(clock)
        tokens = TokenManager(identity, clock=clock)
        await tokens.get_auth_header(Audience.GRAPH)
        await tokens.get_auth_header(Audience.ARM)
        await tokens.get_auth_header(Audience.GRAPH)
        assert identity.calls == [Audience.GRAPH, Audience.ARM]

    @pytest.mark.asyncio
    async def test_force_refresh_ignores_fresh_credential(self, clock: FakeClock) -> None:
        """Forced refresh never reuses the cached credential."""
        identity = FakeIdentity(clock)
        tokens = TokenManager(identity, clock=clock)
        await tokens.get_auth_header(Audience.GRAPH)
        header = await tokens.get_auth_header(Audience.GRAPH, force_refresh=True)
        assert header["Authorization"] == "Bearer token-GRAPH-2"

    @pytest.mark.asyncio
    async def test_reset_drops_credentials(self, clock: FakeClock) -> None:
        """After reset() every audience is acquired again."""
        identity = FakeIdentity(clock)
        tokens = TokenManager(identity, clock=clock)
        await tokens.get_auth_header(Audience.GRAPH)
        tokens.reset()
        assert tokens.credential(Audience.GRAPH) is None
        await tokens.get_auth_header(Audience.GRAPH)
        assert len(identity.calls) == 2


class TestSingleFlight:
    """Test that concurrent callers share one refresh."""

    @pytest.mark.asyncio
    async def test_fifty_callers_one_acquisition(self, clock: FakeClock) -> None:
        """50 concurrent calls for an expired credential refresh exactly once."""
        identity = FakeIdentity(clock, lifetime=3600, delay=0.05)
        tokens = TokenManager(identity, clock=clock)
        await tokens.get_auth_header(Audience.GRAPH)
        clock.advance(7200)

        headers = await asyncio.gather(
            *(tokens.get_auth_header(Audience.GRAPH) for _ in range(50))
        )
        assert len(identity.calls) == 2
        assert {h["Authorization"] for h in headers} == {"Bearer token-GRAPH-2"}

    @pytest.mark.asyncio
    async def test_concurrent_first_use(self, clock: FakeClock) -> None:
        """Concurrent first use of an audience acquires once."""
        identity = FakeIdentity(clock, delay=0.02)
        tokens = TokenManager(identity, clock=clock)
        await asyncio.gather(*(tokens.get_auth_header(Audience.ARM) for _ in range(20)))
        assert identity.calls == [Audience.ARM]

    @pytest.mark.asyncio
    async def test_concurrent_forced_refreshes_coalesce(self, clock: FakeClock) -> None:
        """Forced callers queued behind one refresh reuse its credential."""
        identity = FakeIdentity(clock, delay=0.02)
        tokens = TokenManager(identity, clock=clock)
        await tokens.get_auth_header(Audience.GRAPH)
        await asyncio.gather(
            *(tokens.get_auth_header(Audience.GRAPH, force_refresh=True) for _ in range(10))
        )
        assert len(identity.calls) == 2


class BrokenIdentity:
    def __init__(self, error: Exception) -> None:
        self.error = error

    def acquire_credential(self, audience: Audience) -> Credential:
        raise self.error


class TestFailures:
    """Test error surfacing."""

    @pytest.mark.asyncio
    async def test_interaction_required_surfaces_distinctly(self) -> None:
        """Interactive-auth-required is not folded into a generic error."""
        tokens = TokenManager(BrokenIdentity(InteractionRequiredError("sign in", "GRAPH")))
        with pytest.raises(InteractionRequiredError) as exc_info:
            await tokens.get_auth_header(Audience.GRAPH)
        assert exc_info.value.hint

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self) -> None:
        """Arbitrary provider errors become AuthError with the audience."""
        tokens = TokenManager(BrokenIdentity(RuntimeError("boom")))
        with pytest.raises(AuthError) as exc_info:
            await tokens.get_auth_header(Audience.ARM)
        assert exc_info.value.audience == "ARM"
        assert not isinstance(exc_info.value, InteractionRequiredError)

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_nothing(self) -> None:
        """A failed acquisition installs no credential."""
        tokens = TokenManager(BrokenIdentity(AuthError("denied", "GRAPH")))
        with pytest.raises(AuthError):
            await tokens.get_auth_header(Audience.GRAPH)
        assert tokens.credential(Audience.GRAPH) is None


class GatedIdentity(FakeIdentity):
    """Blocks inside acquire_credential until released."""

    def __init__(self, clock) -> None:
        super().__init__(clock)
        self.started = threading.Event()
        self.release = threading.Event()

    def acquire_credential(self, audience: Audience) -> Credential:
        self.started.set()
        self.release.wait(2)
        credential = super().acquire_credential(audience)
        return Credential(audience, f"old-{credential.token}", credential.expires_at)


class TestIdentitySwitch:
    """Test reset() while a refresh is in flight."""

    @pytest.mark.asyncio
    async def test_refresh_started_before_reset_is_discarded(self, clock: FakeClock) -> None:
        """The previous identity's credential is never installed after reset()."""
        old = GatedIdentity(clock)
        tokens = TokenManager(old, clock=clock)
        pending = asyncio.create_task(tokens.get_auth_header(Audience.GRAPH))
        assert await asyncio.to_thread(old.started.wait, 2)

        new = FakeIdentity(clock)
        tokens.identity = new
        tokens.reset()
        old.release.set()

        header = await pending
        assert header == {"Authorization": "Bearer token-GRAPH-1"}
        assert tokens.credential(Audience.GRAPH).token == "token-GRAPH-1"
        assert new.calls == [Audience.GRAPH]
