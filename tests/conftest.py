"""Shared fixtures: fake identity, controllable clock, mocked HTTP layer."""

from __future__ import annotations

import threading
import time
from typing import Callable

import httpx
import pytest

from blackcat.auth.tokens import Audience, Credential, TokenManager
from blackcat.cache.store import CacheStore
from blackcat.config import AccessConfig
from blackcat.graph.client import ApiClient
from blackcat.layer import AccessLayer


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentity:
    """Identity provider that counts acquisitions (thread-safe)."""

    def __init__(self, clock: Callable[[], float] = time.time, lifetime: float = 3600, delay: float = 0.0) -> None:
        self.clock = clock
        self.lifetime = lifetime
        self.delay = delay
        self.calls: list[Audience] = []
        self._lock = threading.Lock()

    def acquire_credential(self, audience: Audience) -> Credential:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.calls.append(audience)
            n = len(self.calls)
        return Credential(audience=audience, token=f"token-{audience.name}-{n}", expires_at=self.clock() + self.lifetime)


async def no_sleep(seconds: float) -> None:
    return None


def make_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_client(handler, cache: CacheStore | None = None, batch_path: str | None = "/$batch", identity=None) -> ApiClient:
    tokens = TokenManager(identity or FakeIdentity())
    return ApiClient(
        make_http(handler),
        tokens,
        Audience.GRAPH,
        "https://graph.microsoft.com/v1.0",
        cache=cache,
        batch_path=batch_path,
        sleep=no_sleep,
    )


async def make_layer(handler, config: AccessConfig | None = None, identity=None) -> AccessLayer:
    return await AccessLayer.open(identity or FakeIdentity(), config or AccessConfig(), http=make_http(handler))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
