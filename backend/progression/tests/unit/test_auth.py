"""Tests for caller authentication and route auth policy."""

from __future__ import annotations

import pytest
from starlette.authentication import AuthCredentials
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from progression.server.auth import (
    AUTH_POLICY_ATTR,
    HeaderAuthBackend,
    player_only,
    public_route,
    service_only,
    validate_route_auth_policy,
)

SERVICE_TOKEN = "race-service-token-0123456789"


def _request(headers: dict[str, str] | None = None, scopes: list[str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "root_path": "",
        "server": ("testserver", 80),
        "scheme": "http",
    }
    if scopes is not None:
        scope["auth"] = AuthCredentials(scopes)
    return Request(scope)


async def _handler(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True})


class TestHeaderAuthBackend:
    @pytest.fixture
    def backend(self) -> HeaderAuthBackend:
        return HeaderAuthBackend(SERVICE_TOKEN)

    async def test_service_token(self, backend):
        credentials, caller = await backend.authenticate(_request({"X-Service-Token": SERVICE_TOKEN}))
        assert credentials.scopes == ["authenticated", "service"]
        assert caller.is_service

    async def test_wrong_token_is_not_service(self, backend):
        assert await backend.authenticate(_request({"X-Service-Token": "wrong"})) is None

    async def test_player_header(self, backend):
        credentials, caller = await backend.authenticate(_request({"X-Player-Id": " p-42 "}))
        assert credentials.scopes == ["authenticated", "player"]
        assert caller.identity == "p-42"
        assert not caller.is_service

    async def test_service_token_wins_over_player_header(self, backend):
        _, caller = await backend.authenticate(_request({"X-Service-Token": SERVICE_TOKEN, "X-Player-Id": "p-42"}))
        assert caller.is_service

    async def test_anonymous(self, backend):
        assert await backend.authenticate(_request({"X-Player-Id": "  "})) is None


class TestPolicyDecorators:
    async def test_service_only_rejects_anonymous(self):
        response = await service_only(_handler)(_request(scopes=[]))
        assert response.status_code == 401

    async def test_service_only_rejects_player(self):
        response = await service_only(_handler)(_request(scopes=["authenticated", "player"]))
        assert response.status_code == 403

    async def test_service_only_admits_service(self):
        response = await service_only(_handler)(_request(scopes=["authenticated", "service"]))
        assert response.status_code == 200

    async def test_player_only_rejects_service(self):
        response = await player_only(_handler)(_request(scopes=["authenticated", "service"]))
        assert response.status_code == 403

    def test_markers(self):
        assert getattr(service_only(_handler), AUTH_POLICY_ATTR) == "service_only"
        assert getattr(player_only(_handler), AUTH_POLICY_ATTR) == "player_only"
        assert getattr(public_route(_handler), AUTH_POLICY_ATTR) == "public"
        assert not hasattr(_handler, AUTH_POLICY_ATTR)


class TestValidateRouteAuthPolicy:
    def test_accepts_marked_routes(self):
        validate_route_auth_policy([Route("/a", public_route(_handler)), Route("/b", service_only(_handler))])

    def test_rejects_unmarked_route(self):
        with pytest.raises(RuntimeError, match="/naked"):
            validate_route_auth_policy([Route("/ok", public_route(_handler)), Route("/naked", _handler)])
