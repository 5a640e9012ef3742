"""
Tests for blackcat.lookup.
"""

import httpx
import pytest

from blackcat.errors import AuthError
from blackcat.lookup import (
    FilterLookup,
    Found,
    LookupFailed,
    NotFound,
    PathLookup,
    outcome_failure,
    resolve_first,
)
from blackcat.results import Failure, FailureClass

from conftest import make_client


class Scripted:
    """Strategy returning a fixed outcome and recording calls."""

    def __init__(self, name, outcome):
        self.name = name
        self.outcome = outcome
        self.calls = 0

    async def lookup(self, key):
        self.calls += 1
        return self.outcome


def failed(failure_class=FailureClass.TRANSIENT):
    return LookupFailed(Failure(failure_class, "k"))


class TestResolveFirst:
    """Test ordered first-success resolution."""

    @pytest.mark.asyncio
    async def test_first_found_wins_and_stops(self) -> None:
        """Later strategies are not consulted once one succeeds."""
        a = Scripted("a", NotFound("k"))
        b = Scripted("b", Found({"id": 1}, "b"))
        c = Scripted("c", Found({"id": 2}, "c"))
        outcome = await resolve_first([a, b, c], "k")
        assert outcome == Found({"id": 1}, "b")
        assert c.calls == 0

    @pytest.mark.asyncio
    async def test_all_not_found(self) -> None:
        outcome = await resolve_first([Scripted("a", NotFound("k")), Scripted("b", NotFound("k"))], "k")
        assert outcome == NotFound("k")

    @pytest.mark.asyncio
    async def test_failure_reported_when_nothing_found(self) -> None:
        """A real failure outranks a plain miss."""
        outcome = await resolve_first(
            [Scripted("a", failed()), Scripted("b", NotFound("k"))], "k"
        )
        assert isinstance(outcome, LookupFailed)
        assert outcome.failure.failure_class is FailureClass.TRANSIENT

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_strategies(self) -> None:
        outcome = await resolve_first(
            [Scripted("a", failed(FailureClass.PERMISSION_FORBIDDEN)), Scripted("b", Found("v", "b"))], "k"
        )
        assert isinstance(outcome, Found)

    @pytest.mark.asyncio
    async def test_no_strategies(self) -> None:
        assert await resolve_first([], "k") == NotFound("k")

    def test_outcome_failure(self) -> None:
        assert outcome_failure(Found(1)) is None
        assert outcome_failure(NotFound("k")).failure_class is FailureClass.NOT_FOUND
        assert outcome_failure(failed()).failure_class is FailureClass.TRANSIENT


class TestHttpStrategies:
    """Test the Graph-backed strategies."""

    @pytest.mark.asyncio
    async def test_path_lookup_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1.0/users/alice@contoso.com"
            return httpx.Response(200, json={"id": "1", "userPrincipalName": "alice@contoso.com"})

        lookup = PathLookup(make_client(handler), "/users/{key}", "users")
        outcome = await lookup.lookup("alice@contoso.com")
        assert outcome == Found({"id": "1", "userPrincipalName": "alice@contoso.com"}, "users")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404])
    async def test_path_lookup_not_found(self, status: int) -> None:
        """Graph's 400 for a malformed id counts as not found."""
        client = make_client(lambda request: httpx.Response(status, json={"error": {"message": "x"}}))
        assert await PathLookup(client, "/groups/{key}").lookup("abc") == NotFound("abc")

    @pytest.mark.asyncio
    async def test_path_lookup_forbidden_is_failure(self) -> None:
        client = make_client(lambda request: httpx.Response(403, json={"error": {"message": "Insufficient privileges"}}))
        outcome = await PathLookup(client, "/users/{key}").lookup("bob")
        assert isinstance(outcome, LookupFailed)
        assert outcome.failure.failure_class is FailureClass.PERMISSION_FORBIDDEN
        assert outcome.failure.target == "bob"

    @pytest.mark.asyncio
    async def test_filter_lookup_escapes_quotes(self) -> None:
        """Single quotes in the key are doubled inside the OData literal."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json={"value": [{"id": "g1"}, {"id": "g2"}]})

        lookup = FilterLookup(make_client(handler), "/groups", "displayName eq '{key}'", "groups")
        outcome = await lookup.lookup("O'Brien team")
        assert seen["$filter"] == "displayName eq 'O''Brien team'"
        assert seen["$top"] == "1"
        assert outcome == Found({"id": "g1"}, "groups")

    @pytest.mark.asyncio
    async def test_filter_lookup_empty_is_not_found(self) -> None:
        client = make_client(lambda request: httpx.Response(200, json={"value": []}))
        lookup = FilterLookup(client, "/servicePrincipals", "appId eq '{key}'")
        assert await lookup.lookup("app") == NotFound("app")

    @pytest.mark.asyncio
    async def test_auth_errors_propagate(self) -> None:
        """Credential failures are not turned into lookup outcomes."""
        class NoIdentity:
            def acquire_credential(self, audience):
                raise AuthError("no credential", audience.name)

        client = make_client(lambda request: httpx.Response(200, json={}), identity=NoIdentity())
        with pytest.raises(AuthError):
            await PathLookup(client, "/users/{key}").lookup("x")
