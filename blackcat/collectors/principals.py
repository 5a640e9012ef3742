"""
Principal Collector
Resolves object ids, UPNs, appIds and display names to directory objects.
Known object ids are resolved in one batched pass; free-form identifiers
go through ordered lookup strategies.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable

from ..auth.tokens import Audience
from ..graph.models import LogicalRequest
from ..lookup import FilterLookup, Found, PathLookup, outcome_failure, resolve_first
from ..results import Result
from .base import BaseCollector, CollectorResult, aggregate_results

logger = logging.getLogger("blackcat.collectors.principals")

SELECT_FIELDS = "id,displayName,userPrincipalName,appId,servicePrincipalType,mail"


def summarize_principal(obj: dict) -> dict:
    return {
        "id": obj.get("id"),
        "type": (obj.get("@odata.type") or "").split(".")[-1] or None,
        "displayName": obj.get("displayName"),
        "userPrincipalName": obj.get("userPrincipalName"),
        "appId": obj.get("appId"),
    }


class PrincipalCollector(BaseCollector):
    name = "principals"
    description = "Directory object resolution for users, groups and service principals"

    def __init__(self, layer, identifiers: Iterable[str], **kwargs):
        super().__init__(layer, **kwargs)
        self.identifiers = list(dict.fromkeys(identifiers))

    def strategies(self):
        """Lookup order: most specific first."""
        graph = self.layer.client(Audience.GRAPH)
        cache = self.cache_policy("graph")
        return [
            PathLookup(graph, "/users/{key}", "users", cache=cache),
            PathLookup(graph, "/servicePrincipals/{key}", "servicePrincipals", cache=cache),
            FilterLookup(graph, "/servicePrincipals", "appId eq '{key}'", "servicePrincipals.appId", cache=cache),
            PathLookup(graph, "/groups/{key}", "groups", cache=cache),
            FilterLookup(graph, "/servicePrincipals", "displayName eq '{key}'", "servicePrincipals.displayName", cache=cache),
            FilterLookup(graph, "/groups", "displayName eq '{key}'", "groups.displayName", cache=cache),
        ]

    async def resolve_object_ids(self, object_ids: list[str]):
        """One batched directoryObjects lookup for every id."""
        graph = self.layer.client(Audience.GRAPH)
        started = time.monotonic()
        results = await graph.execute(
            [
                LogicalRequest(id=oid, url=f"/directoryObjects/{oid}?$select={SELECT_FIELDS}")
                for oid in object_ids
            ],
            cache=self.cache_policy("graph"),
        )
        summarized = {
            oid: Result.success(summarize_principal(r.value)) if r.ok else r
            for oid, r in results.items()
        }
        return aggregate_results(summarized, duration=time.monotonic() - started)

    async def find_principal(self, identifier: str) -> Result:
        """Worker: resolve a free-form identifier through the strategies."""
        outcome = await resolve_first(self.strategies(), identifier)
        if isinstance(outcome, Found):
            summary = summarize_principal(outcome.value)
            summary["resolvedVia"] = outcome.strategy
            summary["query"] = identifier
            return Result.success(summary)
        return Result.failed(outcome_failure(outcome))

    async def collect(self, result: CollectorResult):
        if self.identifiers and all(_looks_like_guid(i) for i in self.identifiers):
            result.metadata["mode"] = "batch"
            logger.info(f"Resolving {len(self.identifiers)} object ids in batch mode")
            return await self.resolve_object_ids(self.identifiers)

        result.metadata["mode"] = "lookup"
        logger.info(f"Resolving {len(self.identifiers)} identifiers through lookup strategies")
        executor = self.layer.executor()
        return await executor.run(
            self.identifiers, self.find_principal, throttle=self.throttle, deadline=self.deadline
        )


def _looks_like_guid(value: str) -> bool:
    parts = value.split("-")
    return [len(p) for p in parts] == [8, 4, 4, 4, 12] and all(
        c in "0123456789abcdefABCDEF" for c in value.replace("-", "")
    )
