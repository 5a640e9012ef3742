"""
Request/response records for the batch and list endpoints.
Serialized to JSON only at the wire boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from ..cache.store import derive_key


@dataclass(frozen=True)
class CachePolicy:
    """Where and for how long a call's result may be cached."""
    segment: str
    ttl: float
    compress: bool = False


@dataclass(frozen=True)
class LogicalRequest:
    """One caller-level operation before it is packed into a batch chunk."""
    id: str
    url: str
    method: str = "GET"
    body: Optional[dict] = None

    def to_wire(self) -> dict:
        entry: dict[str, Any] = {
            "id": self.id,
            "method": self.method.upper(),
            "url": self.url if self.url.startswith("/") else f"/{self.url}",
        }
        if self.body is not None:
            entry["body"] = self.body
        return entry

    def cache_key(self, base_url: str) -> str:
        """Cache key including the API root (Graph version or vault host)."""
        return derive_key(
            f"{self.method.upper()} {base_url.rstrip('/')}{self.to_wire()['url']}", _flatten(self.body)
        )


@dataclass(frozen=True)
class BatchResponse:
    id: str
    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @classmethod
    def from_wire(cls, data: Any) -> "BatchResponse":
        """Parse one entry of a $batch "responses" array. Raises ValueError if malformed."""
        if not isinstance(data, dict) or data.get("id") is None:
            raise ValueError(f"expected an object with an id, got {data!r:.100}")
        try:
            status = int(data.get("status"))
        except (TypeError, ValueError):
            raise ValueError(f"non-numeric status {data.get('status')!r} for id {data['id']!r}")
        return cls(id=str(data["id"]), status=status, body=data.get("body"))


@dataclass(frozen=True)
class ListRequest:
    """
    A paginated GET. cursor_field is API-specific: Graph uses
    @odata.nextLink, ARM and Key Vault use nextLink.
    """
    url: str
    params: dict[str, str] = field(default_factory=dict)
    cursor_field: str = "@odata.nextLink"
    items_field: str = "value"
    cursor_param: str = "$skiptoken"  # used when the cursor is a bare token, not a URL

    def cache_key(self, base_url: str) -> str:
        url = self.url if self.url.startswith("http") else f"{base_url.rstrip('/')}/{self.url.lstrip('/')}"
        return derive_key(f"LIST {url}", self.params)


def _flatten(body: Optional[dict]) -> list[tuple[str, Any]]:
    if not body:
        return []
    return [(k, v) for k, v in body.items()]
