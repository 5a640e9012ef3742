"""
AccessLayer — the context object handed to every operation.

Holds the token manager, the cache store and one shared HTTP connection
pool, and hands out API clients per audience and fan-out executors.

    async with await AccessLayer.open(identity, config) as layer:
        graph = layer.client(Audience.GRAPH)
        ...
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import httpx

from .auth.tokens import Audience, IdentityProvider, TokenManager
from .cache.store import CacheStore
from .config import (
    AccessConfig,
    ARM_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BASE_URL,
    GRAPH_BETA_VERSION,
)
from .fanout.executor import FanOutExecutor
from .graph.client import ApiClient

logger = logging.getLogger("blackcat.layer")


class AccessLayer:
    def __init__(
        self,
        tokens: TokenManager,
        cache: Optional[CacheStore],
        http: httpx.AsyncClient,
        config: AccessConfig,
        owns_http: bool = True,
    ):
        self.tokens = tokens
        self.cache = cache
        self.http = http
        self.config = config
        self._owns_http = owns_http
        self._clients: dict[Any, ApiClient] = {}
        self._closed = False

    @classmethod
    async def open(
        cls,
        identity: IdentityProvider,
        config: Optional[AccessConfig] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> "AccessLayer":
        """Create the shared state for one identity context."""
        config = config or AccessConfig()
        cache = None
        if config.cache.enabled:
            cache = CacheStore(
                segments=config.cache.segments,
                default_max_entries=config.cache.default_max_entries,
                compression_threshold=config.cache.compression_threshold,
            )

        owns_http = http is None
        if http is None:
            http = httpx.AsyncClient(
                timeout=httpx.Timeout(config.request_timeout, connect=config.connect_timeout),
                limits=httpx.Limits(
                    max_connections=config.throttle * 2,
                    max_keepalive_connections=config.throttle,
                ),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "ConsistencyLevel": "eventual",  # Required for $count, $search
                },
            )

        logger.debug(f"Access layer opened (cache {'on' if cache else 'off'}, throttle {config.throttle})")
        return cls(TokenManager(identity), cache, http, config, owns_http=owns_http)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_http:
            await self.http.aclose()
        logger.debug("Access layer closed")

    async def __aenter__(self) -> "AccessLayer":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    # ── Clients ─────────────────────────────────────────────────────────────

    def client(self, audience: Audience, beta: bool = False) -> ApiClient:
        """Shared client for Graph or ARM."""
        if audience is Audience.KEY_VAULT:
            raise ValueError("Key Vault clients are per vault; use vault_client(vault_uri)")
        key = (audience, beta)
        if key not in self._clients:
            if audience is Audience.GRAPH:
                version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
                client = ApiClient(
                    self.http, self.tokens, audience, f"{GRAPH_BASE_URL}/{version}",
                    cache=self.cache,
                )
            else:
                # ARM has no JSON $batch endpoint in this wire format
                client = ApiClient(
                    self.http, self.tokens, audience, ARM_BASE_URL,
                    cache=self.cache, batch_path=None,
                )
            self._clients[key] = client
        return self._clients[key]

    def vault_client(self, vault_uri: str) -> ApiClient:
        """Data-plane client for one Key Vault (e.g. https://kv1.vault.azure.net)."""
        key = (Audience.KEY_VAULT, vault_uri.rstrip("/").lower())
        if key not in self._clients:
            self._clients[key] = ApiClient(
                self.http, self.tokens, Audience.KEY_VAULT, vault_uri,
                cache=self.cache, batch_path=None,
            )
        return self._clients[key]

    def executor(self, label: Callable[[Any], str] = str) -> FanOutExecutor:
        return FanOutExecutor(default_throttle=self.config.throttle, label=label)

    # ── Identity context ────────────────────────────────────────────────────

    def switch_identity(self, identity: IdentityProvider) -> None:
        """
        Point the layer at a different identity. Cached credentials and
        cached results belong to the old identity and are dropped.
        """
        self.tokens.identity = identity
        self.tokens.reset()
        if self.cache is not None:
            self.cache.clear()
        logger.info("Identity context switched; credentials and cache cleared.")

    def get_stats(self) -> dict:
        return {
            "tokens": self.tokens.get_stats(),
            "clients": [c.get_stats() for c in self._clients.values()],
            "cache": self.cache.stats() if self.cache is not None else {},
        }
