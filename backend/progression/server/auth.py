"""Caller identity and per-route authorization for the progression server.

Two kinds of caller reach this service: the race session service, which
authenticates with a shared token in ``X-Service-Token``, and players,
whose identity the upstream gateway has already verified and forwards in
``X-Player-Id``. Every route must declare which of them it admits;
``validate_route_auth_policy`` refuses to build an app otherwise.
"""

from __future__ import annotations

import functools
import hmac
from typing import TYPE_CHECKING

from starlette.authentication import AuthCredentials, AuthenticationBackend, BaseUser, has_required_scope
from starlette.responses import JSONResponse
from starlette.routing import Route

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import HTTPConnection, Request
    from starlette.responses import Response
    from starlette.routing import BaseRoute

    Endpoint = Callable[..., Awaitable[Response]]

AUTH_POLICY_ATTR = "__auth_policy__"

SERVICE_SCOPE = "service"
PLAYER_SCOPE = "player"


class Caller(BaseUser):
    def __init__(self, identity: str, *, is_service: bool) -> None:
        self._identity = identity
        self._is_service = is_service

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def display_name(self) -> str:  # pragma: no cover
        return self._identity

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def is_service(self) -> bool:
        return self._is_service


class HeaderAuthBackend(AuthenticationBackend):
    """Accept the service token first, then a forwarded player id."""

    def __init__(self, service_token: str) -> None:
        self._service_token = service_token.encode()

    async def authenticate(self, conn: HTTPConnection) -> tuple[AuthCredentials, Caller] | None:
        token = conn.headers.get("x-service-token")
        if token and hmac.compare_digest(token.encode(), self._service_token):
            return AuthCredentials(["authenticated", SERVICE_SCOPE]), Caller("race-service", is_service=True)

        player_id = conn.headers.get("x-player-id", "").strip()
        if player_id:
            return AuthCredentials(["authenticated", PLAYER_SCOPE]), Caller(player_id, is_service=False)
        return None


def _require(scope: str, policy: str) -> Callable[[Endpoint], Endpoint]:
    def decorate(endpoint: Endpoint) -> Endpoint:
        @functools.wraps(endpoint)
        async def wrapper(request: Request, **kwargs: str) -> Response:
            if not has_required_scope(request, ["authenticated"]):
                return JSONResponse({"error": "Authentication required"}, status_code=401)
            if not has_required_scope(request, [scope]):
                return JSONResponse({"error": f"{scope.capitalize()} credentials required"}, status_code=403)
            return await endpoint(request, **kwargs)

        setattr(wrapper, AUTH_POLICY_ATTR, policy)
        return wrapper

    return decorate


service_only = _require(SERVICE_SCOPE, "service_only")
player_only = _require(PLAYER_SCOPE, "player_only")


def public_route(endpoint: Endpoint) -> Endpoint:
    """Mark an endpoint as readable without credentials.

    The marker goes on a fresh wrapper so reusing the same function on
    another route does not inherit the policy.
    """

    @functools.wraps(endpoint)
    async def wrapper(request: Request, **kwargs: str) -> Response:
        return await endpoint(request, **kwargs)

    setattr(wrapper, AUTH_POLICY_ATTR, "public")
    return wrapper


def validate_route_auth_policy(routes: list[BaseRoute]) -> None:
    """Raise RuntimeError naming every Route that lacks an auth policy marker."""
    unclassified = [
        f"{route.path} ({route.name})"
        for route in routes
        if isinstance(route, Route) and not hasattr(route.endpoint, AUTH_POLICY_ATTR)
    ]
    if unclassified:
        msg = f"Unclassified routes missing auth policy: {', '.join(unclassified)}"
        raise RuntimeError(msg)
