"""
Ordered lookup strategies with first-success-wins semantics.

Resolving an identifier (object id, UPN, appId, display name) often means
trying several endpoints in turn. Each strategy answers with a tagged
outcome instead of raising; resolve_first() walks them in order.
"""

from __future__ import annotations

import logging
from urllib.parse import quote
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Union

from .errors import RemoteError, TransportError
from .fanout.classify import failure_from_error
from .graph.client import ApiClient
from .graph.models import CachePolicy
from .results import Failure, FailureClass

logger = logging.getLogger("blackcat.lookup")


@dataclass(frozen=True)
class Found:
    value: Any
    strategy: str = ""


@dataclass(frozen=True)
class NotFound:
    key: str


@dataclass(frozen=True)
class LookupFailed:
    failure: Failure


LookupOutcome = Union[Found, NotFound, LookupFailed]


class LookupStrategy(Protocol):
    name: str

    async def lookup(self, key: str) -> LookupOutcome:
        ...


class PathLookup:
    """GET a single object at a path template, e.g. /users/{key}."""

    def __init__(self, client: ApiClient, template: str, name: str = "", cache: Optional[CachePolicy] = None):
        self.client = client
        self.template = template
        self.name = name or template
        self.cache = cache

    async def lookup(self, key: str) -> LookupOutcome:
        try:
            value = await self.client.get(self.template.format(key=quote(key, safe="@")), cache=self.cache)
        except RemoteError as e:
            if e.status_code in (400, 404):
                # Graph answers 400 when the key is not a valid id for this type
                return NotFound(key)
            return LookupFailed(failure_from_error(key, e))
        except TransportError as e:
            return LookupFailed(failure_from_error(key, e))
        return Found(value, self.name)


class FilterLookup:
    """
    Query a collection with an OData filter and take the first match,
    e.g. /servicePrincipals with "appId eq '{key}'".
    """

    def __init__(
        self,
        client: ApiClient,
        collection: str,
        filter_template: str,
        name: str = "",
        cache: Optional[CachePolicy] = None,
    ):
        self.client = client
        self.collection = collection
        self.filter_template = filter_template
        self.name = name or f"{collection}?{filter_template}"
        self.cache = cache

    async def lookup(self, key: str) -> LookupOutcome:
        escaped = key.replace("'", "''")
        params = {"$filter": self.filter_template.format(key=escaped), "$top": "1"}
        try:
            data = await self.client.get(self.collection, params=params, cache=self.cache)
        except RemoteError as e:
            if e.status_code == 404:
                return NotFound(key)
            return LookupFailed(failure_from_error(key, e))
        except TransportError as e:
            return LookupFailed(failure_from_error(key, e))

        matches = (data or {}).get("value", []) if isinstance(data, dict) else []
        if not matches:
            return NotFound(key)
        return Found(matches[0], self.name)


async def resolve_first(strategies: Iterable[LookupStrategy], key: str) -> LookupOutcome:
    """
    Try strategies in order and return the first Found.
    If none found it, return NotFound when every strategy said so,
    otherwise the last LookupFailed.
    """
    last_failure: Optional[LookupFailed] = None
    for strategy in strategies:
        outcome = await strategy.lookup(key)
        if isinstance(outcome, Found):
            logger.debug(f"Resolved {key} via {strategy.name}")
            return outcome
        if isinstance(outcome, LookupFailed):
            logger.debug(f"Lookup {strategy.name} failed for {key}: {outcome.failure.message}")
            last_failure = outcome
    if last_failure is not None:
        return last_failure
    return NotFound(key)


def outcome_failure(outcome: LookupOutcome) -> Optional[Failure]:
    """Failure record for a non-Found outcome (None when Found)."""
    if isinstance(outcome, Found):
        return None
    if isinstance(outcome, NotFound):
        return Failure(FailureClass.NOT_FOUND, outcome.key, 404, "Not found by any lookup strategy")
    return outcome.failure
