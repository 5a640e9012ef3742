"""
Token manager — one bearer credential per audience, refreshed on demand.

Refresh happens on first use of an audience and whenever the credential is
within the guard window of its expiry. At most one refresh per audience is
in flight; concurrent callers wait for it and share its result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from ..config import TOKEN_REFRESH_GUARD_SECONDS
from ..errors import AuthError

logger = logging.getLogger("blackcat.auth.tokens")


class Audience(str, Enum):
    """Remote API families a credential can be scoped to."""
    GRAPH = "https://graph.microsoft.com"
    ARM = "https://management.azure.com"
    KEY_VAULT = "https://vault.azure.net"

    @property
    def scope(self) -> str:
        return f"{self.value}/.default"


@dataclass(frozen=True)
class Credential:
    audience: Audience
    token: str
    expires_at: float

    def needs_refresh(self, now: float, guard: float = TOKEN_REFRESH_GUARD_SECONDS) -> bool:
        return now >= self.expires_at - guard

    def __repr__(self) -> str:
        return f"Credential(audience={self.audience.name}, expires_at={self.expires_at})"


class IdentityProvider(Protocol):
    """Anything that can mint a credential for an audience (blocking call)."""

    def acquire_credential(self, audience: Audience) -> Credential:
        ...


class TokenManager:
    """
    Holds the live credential for each audience.
    Features:
      - Proactive refresh inside the 5 minute guard window
      - Single-flight refresh per audience
      - Forced refresh after an identity context switch
      - Blocking identity calls are run off the event loop
    """

    def __init__(
        self,
        identity: IdentityProvider,
        guard_seconds: float = TOKEN_REFRESH_GUARD_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.identity = identity
        self.guard_seconds = guard_seconds
        self._clock = clock
        self._credentials: dict[Audience, Credential] = {}
        self._locks: dict[Audience, asyncio.Lock] = {}
        self._generation: dict[Audience, int] = {}
        self._epoch = 0
        self._refresh_count = 0

    def _lock_for(self, audience: Audience) -> asyncio.Lock:
        lock = self._locks.get(audience)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[audience] = lock
        return lock

    def _is_fresh(self, credential: Optional[Credential]) -> bool:
        return credential is not None and not credential.needs_refresh(
            self._clock(), self.guard_seconds
        )

    async def get_credential(self, audience: Audience, force_refresh: bool = False) -> Credential:
        """Return a usable credential for the audience, refreshing if needed."""
        current = self._credentials.get(audience)
        if not force_refresh and self._is_fresh(current):
            return current  # type: ignore[return-value]

        seen_generation = self._generation.get(audience, 0)
        async with self._lock_for(audience):
            current = self._credentials.get(audience)
            refreshed_meanwhile = self._generation.get(audience, 0) != seen_generation
            if self._is_fresh(current) and (not force_refresh or refreshed_meanwhile):
                return current  # type: ignore[return-value]
            return await self._refresh(audience)

    async def get_auth_header(self, audience: Audience, force_refresh: bool = False) -> dict[str, str]:
        """Authorization header ready to attach to a request."""
        credential = await self.get_credential(audience, force_refresh=force_refresh)
        return {"Authorization": f"Bearer {credential.token}"}

    async def _refresh(self, audience: Audience) -> Credential:
        """Acquire and install a new credential. Caller holds the audience lock."""
        while True:
            epoch = self._epoch
            logger.info(f"Acquiring credential for {audience.name}...")
            try:
                credential = await asyncio.to_thread(self.identity.acquire_credential, audience)
            except Exception as e:
                if epoch != self._epoch:
                    continue
                if isinstance(e, AuthError):
                    raise
                raise AuthError(f"Credential acquisition failed: {type(e).__name__}: {e}", audience.name) from e
            if epoch == self._epoch:
                break
            # reset() ran while this call was in flight
            logger.info(f"Discarding credential for {audience.name} from the previous identity")

        if credential.audience != audience:
            raise AuthError(
                f"Identity provider returned a credential for {credential.audience.name}",
                audience.name,
            )

        self._credentials[audience] = credential
        self._generation[audience] = self._generation.get(audience, 0) + 1
        self._refresh_count += 1
        logger.debug(f"Credential for {audience.name} valid until {credential.expires_at:.0f}")
        return credential

    def credential(self, audience: Audience) -> Optional[Credential]:
        """Peek at the current credential without refreshing."""
        return self._credentials.get(audience)

    def reset(self) -> None:
        """Forget every credential, e.g. after switching tenant or identity."""
        self._credentials.clear()
        self._epoch += 1
        logger.info("Credential cache reset.")

    def get_stats(self) -> dict:
        return {
            "refreshes": self._refresh_count,
            "audiences": sorted(a.name for a in self._credentials),
        }
