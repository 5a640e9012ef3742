"""
Async API client with batching, pagination, throttling retry and caching.
One instance per audience; safe to share between concurrent workers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Iterable, Optional

import httpx

from ..auth.tokens import Audience, TokenManager
from ..cache.store import MISS, CacheStore, derive_key
from ..config import (
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    MAX_PAGES_PER_ENDPOINT,
    BATCH_SIZE,
    THROTTLE_STATUS_CODES,
)
from ..errors import InvariantViolation, RemoteError, TransportError
from ..fanout.classify import error_message, failure_from_error, failure_from_status
from ..results import Failure, FailureClass, Result
from .models import BatchResponse, CachePolicy, ListRequest, LogicalRequest

logger = logging.getLogger("blackcat.graph")


class ApiClient:
    """
    Async client for one remote API family.
    Features:
      - Bearer header per audience from the token manager
      - $batch execution in chunks of BATCH_SIZE, correlated by id
      - Per-item fallback when a whole chunk fails
      - Cursor pagination with repeated-cursor detection
      - Exponential backoff on 429/503/504
      - Read-through caching per call
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: TokenManager,
        audience: Audience,
        base_url: str,
        cache: Optional[CacheStore] = None,
        batch_path: Optional[str] = "/$batch",
        batch_size: int = BATCH_SIZE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not 1 <= batch_size <= BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {BATCH_SIZE}")
        self.http = http
        self.tokens = tokens
        self.audience = audience
        self.base_url = base_url.rstrip("/")
        self.cache = cache
        self.batch_path = batch_path
        self.batch_size = batch_size
        self._sleep = sleep
        self._request_count = 0
        self._throttle_count = 0
        self._chunk_fallbacks = 0
        self._cache_hits = 0

    def build_url(self, endpoint: str) -> str:
        """Build full URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    # ── Single calls ────────────────────────────────────────────────────────

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        cache: Optional[CachePolicy] = None,
    ) -> Any:
        """
        Execute a single GET. Raises RemoteError on a non-2xx status.
        """
        url = self.build_url(endpoint)
        key = derive_key(f"GET {url}", params)
        cached = self._cache_get(cache, key)
        if cached is not MISS:
            return cached

        response = await self._send("GET", url, params=params, transport_retries=1)
        body = _parse_body(response)
        if not response.is_success:
            raise RemoteError(response.status_code, error_message(body), url)

        self._cache_put(cache, key, body)
        return body

    async def request(self, method: str, endpoint: str, body: Optional[dict] = None) -> Any:
        """Execute a single write (POST/PATCH/PUT/DELETE). Never cached."""
        url = self.build_url(endpoint)
        response = await self._send(method, url, json_body=body)
        data = _parse_body(response)
        if not response.is_success:
            raise RemoteError(response.status_code, error_message(data), url)
        return data

    # ── Batch ───────────────────────────────────────────────────────────────

    async def execute(
        self,
        requests: Iterable[LogicalRequest],
        cache: Optional[CachePolicy] = None,
    ) -> dict[str, Result]:
        """
        Run many logical requests with as few wire calls as possible.
        Returns a map of request id to Result; per-item failures are data.
        Only GET requests are read from / written to the cache.
        """
        requests = list(requests)
        ids = [r.id for r in requests]
        if len(set(ids)) != len(ids):
            raise ValueError("Logical request ids must be unique within one execute() call")

        results: dict[str, Result] = {}
        pending: list[LogicalRequest] = []
        for req in requests:
            if _cacheable(req, cache):
                cached = self._cache_get(cache, req.cache_key(self.base_url))
                if cached is not MISS:
                    results[req.id] = Result.success(cached)
                    continue
            pending.append(req)

        if self.batch_path is None:
            chunk_results = await self._execute_individually(pending)
            self._store_results(pending, chunk_results, cache)
            results.update(chunk_results)
            return results

        for i in range(0, len(pending), self.batch_size):
            chunk = pending[i:i + self.batch_size]
            chunk_results = await self._execute_chunk(chunk)
            self._store_results(chunk, chunk_results, cache)
            results.update(chunk_results)

        return results

    async def _execute_chunk(self, chunk: list[LogicalRequest]) -> dict[str, Result]:
        """One $batch POST; falls back to per-item calls if the POST itself fails."""
        batch_url = self.build_url(self.batch_path or "")
        batch_body = {"requests": [r.to_wire() for r in chunk]}

        try:
            response = await self._send("POST", batch_url, json_body=batch_body)
        except TransportError as e:
            logger.warning(f"Batch of {len(chunk)} failed in transport ({e}); retrying items one by one")
            return await self._fallback(chunk)

        data = _parse_body(response)
        if not response.is_success or not isinstance(data, dict) or not isinstance(data.get("responses"), list):
            logger.warning(
                f"Batch of {len(chunk)} returned {response.status_code}: "
                f"{error_message(data) or 'malformed body'}; retrying items one by one"
            )
            return await self._fallback(chunk)

        wanted = {r.id for r in chunk}
        results: dict[str, Result] = {}
        for raw in data["responses"]:
            try:
                resp = BatchResponse.from_wire(raw)
            except ValueError as e:
                logger.warning(f"Malformed batch response entry skipped: {e}")
                continue
            if resp.id not in wanted:
                logger.warning(f"Batch response for unknown id {resp.id!r} ignored")
                continue
            results[resp.id] = self._to_result(resp)

        for req in chunk:
            if req.id not in results:
                results[req.id] = Result.failed(Failure(
                    failure_class=FailureClass.UNKNOWN,
                    target=req.id,
                    message=f"No response for {req.method} {req.url} in batch",
                ))
        return results

    async def _fallback(self, chunk: list[LogicalRequest]) -> dict[str, Result]:
        self._chunk_fallbacks += 1
        return await self._execute_individually(chunk)

    async def _execute_individually(self, requests: list[LogicalRequest]) -> dict[str, Result]:
        """Issue each request on its own, sequentially."""
        results: dict[str, Result] = {}
        for req in requests:
            url = self.build_url(req.url)
            try:
                response = await self._send(req.method.upper(), url, json_body=req.body)
            except TransportError as e:
                logger.warning(f"Request {req.id} ({req.method} {req.url}) failed: {e}")
                results[req.id] = Result.failed(failure_from_error(req.id, e))
                continue
            results[req.id] = self._to_result(
                BatchResponse(id=req.id, status=response.status_code, body=_parse_body(response))
            )
        return results

    def _to_result(self, resp: BatchResponse) -> Result:
        if resp.ok:
            return Result.success(resp.body)
        failure = failure_from_status(resp.id, resp.status, resp.body)
        # 403/404 are expected gaps handled by the caller; keep them quiet.
        if resp.status in (403, 404):
            logger.debug(f"Sub-request {resp.id} returned {resp.status}: {failure.message}")
        else:
            logger.warning(f"Sub-request {resp.id} failed: {resp.status} — {failure.message}")
        return Result.failed(failure)

    def _store_results(
        self,
        requests: list[LogicalRequest],
        results: dict[str, Result],
        cache: Optional[CachePolicy],
    ) -> None:
        for req in requests:
            result = results.get(req.id)
            if result is not None and result.ok and _cacheable(req, cache):
                self._cache_put(cache, req.cache_key(self.base_url), result.value)

    # ── Pagination ──────────────────────────────────────────────────────────

    async def fetch_all_pages(
        self,
        request: ListRequest,
        cache: Optional[CachePolicy] = None,
    ) -> list:
        """
        Fetch every page of a list endpoint into one list, in arrival order.
        Use iter_items() for very large datasets.
        """
        key = request.cache_key(self.base_url)
        cached = self._cache_get(cache, key)
        if cached is not MISS:
            return cached

        items = []
        async for item in self.iter_items(request):
            items.append(item)

        self._cache_put(cache, key, items)
        return items

    async def iter_items(self, request: ListRequest) -> AsyncGenerator[Any, None]:
        """
        Stream all pages of a list endpoint as an async generator.
        The list is complete only when a page carries no cursor.
        """
        url = self.build_url(request.url)
        params: Optional[dict] = dict(request.params) or None
        seen_cursors: set[str] = set()
        pages = 0

        while True:
            if pages >= MAX_PAGES_PER_ENDPOINT:
                raise InvariantViolation(
                    f"Pagination safety cap reached ({MAX_PAGES_PER_ENDPOINT} pages) for {request.url}"
                )

            response = await self._send("GET", url, params=params, transport_retries=1)
            data = _parse_body(response)
            if not response.is_success:
                raise RemoteError(response.status_code, error_message(data), url)

            data = data if isinstance(data, dict) else {}
            for item in data.get(request.items_field) or []:
                yield item
            pages += 1

            cursor = data.get(request.cursor_field)
            if not cursor:
                return
            if cursor in seen_cursors:
                raise InvariantViolation(
                    f"Server repeated pagination cursor after {pages} pages for {request.url}"
                )
            seen_cursors.add(cursor)

            if str(cursor).startswith("http"):
                # nextLink carries all query parameters
                url, params = cursor, None
            else:
                params = {**request.params, request.cursor_param: cursor}

    # ── Wire ────────────────────────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        transport_retries: int = 0,
    ) -> httpx.Response:
        """
        Execute one HTTP call with backoff on throttling.
        Returns the last response (possibly still 429) once retries run out.
        A 401 triggers one forced token refresh.
        """
        backoff = INITIAL_BACKOFF_SECONDS
        refreshed = False
        force_refresh = False
        transport_attempts = 0
        attempt = 0

        while True:
            headers = await self.tokens.get_auth_header(self.audience, force_refresh=force_refresh)
            force_refresh = False
            try:
                response = await self.http.request(
                    method, url, params=params, json=json_body, headers=headers
                )
            except httpx.TransportError as e:
                transport_attempts += 1
                if transport_attempts > transport_retries:
                    raise TransportError(url, e) from e
                logger.warning(f"Transport error on {url}: {e}; retrying")
                await self._sleep(backoff)
                continue
            self._request_count += 1

            if response.status_code == 401 and not refreshed:
                logger.info(f"401 on {url}; forcing token refresh for {self.audience.name}")
                refreshed = True
                force_refresh = True
                continue

            if response.status_code in THROTTLE_STATUS_CODES and attempt < MAX_RETRIES:
                self._throttle_count += 1
                attempt += 1
                wait_time = max(_retry_after(response, backoff), backoff)
                logger.warning(
                    f"Throttled ({response.status_code}) on {url}. "
                    f"Retry {attempt}/{MAX_RETRIES} in {wait_time:.1f}s"
                )
                await self._sleep(wait_time)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            return response

    # ── Cache helpers ───────────────────────────────────────────────────────

    def _cache_get(self, policy: Optional[CachePolicy], key: str) -> Any:
        if policy is None or self.cache is None:
            return MISS
        value = self.cache.get(policy.segment, key)
        if value is not MISS:
            self._cache_hits += 1
        return value

    def _cache_put(self, policy: Optional[CachePolicy], key: str, value: Any) -> None:
        if policy is None or self.cache is None:
            return
        self.cache.put(policy.segment, key, value, ttl=policy.ttl, compress=policy.compress)

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "audience": self.audience.name,
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
            "chunk_fallbacks": self._chunk_fallbacks,
            "cache_hits": self._cache_hits,
        }


def _cacheable(request: LogicalRequest, policy: Optional[CachePolicy]) -> bool:
    return policy is not None and request.method.upper() == "GET"


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except ValueError:
        return default


def _parse_body(response: httpx.Response) -> Any:
    """Decode a JSON body; empty bodies become None, non-JSON becomes text."""
    if not response.content or not response.content.strip():
        return None
    try:
        return response.json()
    except ValueError:
        logger.debug(f"{response.status_code} response with non-JSON body from {response.request.url}")
        return response.text
