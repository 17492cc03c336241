from __future__ import annotations

import contextlib
import json
from http import HTTPStatus
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from progression.errors import (
    ConcurrencyRetryError,
    ConflictError,
    DanglingReferenceError,
    InputValidationError,
    ProgressionError,
    SubmissionRejectedError,
    TransientStoreError,
)
from progression.results.service import ProgressionService
from progression.results.types import JoinLobbyRequest, SubmitResultsRequest
from progression.server.auth import (
    HeaderAuthBackend,
    player_only,
    public_route,
    service_only,
    validate_route_auth_policy,
)
from progression.server.settings import ProgressionServerSettings
from progression.settings import ProgressionSettings
from shared.db import Database
from shared.logging import setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from pydantic import BaseModel
    from starlette.requests import Request

logger = structlog.get_logger()

RETRY_AFTER_SECONDS = "1"

_CONFLICT_CODES = {cls.code for cls in (ConflictError, *ConflictError.__subclasses__())}


def _status_for(exc: ProgressionError) -> HTTPStatus:
    if isinstance(exc, SubmissionRejectedError):
        if exc.codes <= _CONFLICT_CODES:
            return HTTPStatus.CONFLICT
        if exc.codes == {DanglingReferenceError.code}:
            return HTTPStatus.NOT_FOUND
        return HTTPStatus.UNPROCESSABLE_ENTITY
    if isinstance(exc, InputValidationError):
        return HTTPStatus.UNPROCESSABLE_ENTITY
    if isinstance(exc, ConflictError):
        return HTTPStatus.CONFLICT
    if isinstance(exc, DanglingReferenceError):
        return HTTPStatus.NOT_FOUND
    if isinstance(exc, (ConcurrencyRetryError, TransientStoreError)):
        return HTTPStatus.SERVICE_UNAVAILABLE
    return HTTPStatus.INTERNAL_SERVER_ERROR


async def _progression_error_handler(_request: Request, exc: Exception) -> Response:
    """Map engine errors to JSON responses; retryable errors carry Retry-After."""
    assert isinstance(exc, ProgressionError)  # noqa: S101
    status = _status_for(exc)
    body: dict[str, object] = {"error": str(exc), "code": exc.code}
    if isinstance(exc, SubmissionRejectedError):
        body["failures"] = [
            {"player_id": f.player_id, "code": f.code, "message": f.message} for f in exc.failures
        ]
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if status == HTTPStatus.SERVICE_UNAVAILABLE else None
    if status == HTTPStatus.INTERNAL_SERVER_ERROR:  # pragma: no cover
        logger.error("unclassified progression error", error=str(exc), code=exc.code)
    return JSONResponse(body, status_code=status, headers=headers)


def _reject_constant(name: str) -> float:
    raise ValueError(f"{name} is not valid JSON")


async def _parse_body[M: BaseModel](request: Request, model: type[M]) -> M | JSONResponse:
    raw_body = await request.body()
    try:
        body = json.loads(raw_body, parse_constant=_reject_constant) if raw_body.strip() else {}
    except (ValueError, json.JSONDecodeError):  # fmt: skip
        return JSONResponse({"error": "Invalid JSON body"}, status_code=422)
    if not isinstance(body, dict):
        return JSONResponse({"error": "JSON body must be an object"}, status_code=422)
    try:
        return model.model_validate(body)
    except ValidationError as e:
        details = e.errors(include_url=False, include_context=False)
        return JSONResponse({"error": "Invalid request", "details": details}, status_code=422)


def _limit(request: Request) -> int | None:
    raw = request.query_params.get("limit")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise InputValidationError(f"limit must be an integer, got {raw!r}") from exc
    if not 1 <= value <= 1000:  # noqa: PLR2004
        raise InputValidationError(f"limit must be between 1 and 1000, got {value}")
    return value


def _service(request: Request) -> ProgressionService:
    return request.app.state.service


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def submit_results(request: Request) -> Response:
    parsed = await _parse_body(request, SubmitResultsRequest)
    if isinstance(parsed, JSONResponse):
        return parsed
    ack = await _service(request).submit_results(request.path_params["race_id"], parsed.results)
    return JSONResponse(ack.model_dump(mode="json"), status_code=201)


async def abandon_race(request: Request) -> JSONResponse:
    race = await _service(request).abandon_race(request.path_params["race_id"])
    return JSONResponse(race.model_dump(mode="json"))


async def recent_races(request: Request) -> JSONResponse:
    races = await _service(request).recent_races(limit=_limit(request))
    return JSONResponse({"races": [r.model_dump(mode="json") for r in races]})


async def player_profile(request: Request) -> JSONResponse:
    profile = await _service(request).player_profile(request.path_params["player_id"])
    return JSONResponse(profile.model_dump(mode="json"))


async def player_achievements(request: Request) -> JSONResponse:
    unlocked = await _service(request).player_achievements(request.path_params["player_id"])
    return JSONResponse({"achievements": [a.model_dump(mode="json") for a in unlocked]})


async def global_ranking(request: Request) -> JSONResponse:
    ranking = await _service(request).global_ranking(limit=_limit(request))
    return JSONResponse({"players": [r.model_dump(mode="json") for r in ranking]})


async def track_leaderboard(request: Request) -> JSONResponse:
    entries = await _service(request).track_leaderboard(
        request.path_params["track"],
        request.path_params["mode"],
        limit=_limit(request),
    )
    return JSONResponse({"entries": [e.model_dump(mode="json") for e in entries]})


async def active_lobbies(request: Request) -> JSONResponse:
    viewer = request.user.identity if request.user.is_authenticated and not request.user.is_service else None
    lobbies = await _service(request).active_lobbies(viewer_id=viewer)
    return JSONResponse({"lobbies": [lobby.model_dump(mode="json") for lobby in lobbies]})


async def join_lobby(request: Request) -> Response:
    parsed = await _parse_body(request, JoinLobbyRequest)
    if isinstance(parsed, JSONResponse):
        return parsed
    membership = await _service(request).join_lobby(
        request.path_params["lobby_id"],
        request.user.identity,
        car_model=parsed.car_model,
        car_color=parsed.car_color,
    )
    return JSONResponse(membership.model_dump(mode="json"), status_code=201)


async def leave_lobby(request: Request) -> JSONResponse:
    left = await _service(request).leave_lobby(request.path_params["lobby_id"], request.user.identity)
    return JSONResponse({"left": left})


def create_app(
    settings: ProgressionServerSettings | None = None,
    progression_settings: ProgressionSettings | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = ProgressionServerSettings()  # type: ignore[call-arg]
    if progression_settings is None:  # pragma: no cover
        progression_settings = ProgressionSettings()

    routes = [
        Route("/health", public_route(health), methods=["GET"], name="health"),
        Route("/races/recent", public_route(recent_races), methods=["GET"], name="recent_races"),
        Route("/races/{race_id}/results", service_only(submit_results), methods=["POST"], name="submit_results"),
        Route("/races/{race_id}/abandon", service_only(abandon_race), methods=["POST"], name="abandon_race"),
        Route("/players/{player_id}", public_route(player_profile), methods=["GET"], name="player_profile"),
        Route(
            "/players/{player_id}/achievements",
            public_route(player_achievements),
            methods=["GET"],
            name="player_achievements",
        ),
        Route("/rankings", public_route(global_ranking), methods=["GET"], name="global_ranking"),
        Route(
            "/leaderboards/{track}/{mode}",
            public_route(track_leaderboard),
            methods=["GET"],
            name="track_leaderboard",
        ),
        Route("/lobbies", public_route(active_lobbies), methods=["GET"], name="active_lobbies"),
        Route("/lobbies/{lobby_id}/members", player_only(join_lobby), methods=["POST"], name="join_lobby"),
        Route("/lobbies/{lobby_id}/members", player_only(leave_lobby), methods=["DELETE"], name="leave_lobby"),
    ]
    validate_route_auth_policy(routes)

    db = Database(progression_settings.database_path, busy_timeout_ms=progression_settings.busy_timeout_ms)
    db.connect()
    service = ProgressionService(db, progression_settings)

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:  # pragma: no cover
        yield
        db.close()

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={ProgressionError: _progression_error_handler},
    )
    app.add_middleware(AuthenticationMiddleware, backend=HeaderAuthBackend(settings.service_token))  # type: ignore[arg-type]
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Player-Id"],
    )

    app.state.db = db
    app.state.settings = settings
    app.state.service = service

    logger.info("progression server ready", database_path=progression_settings.database_path)
    return app


def get_app() -> Starlette:  # pragma: no cover
    """Factory function for uvicorn --factory progression.server.app:get_app."""
    s = ProgressionServerSettings()  # type: ignore[call-arg]
    setup_logging("progression", log_dir=s.log_dir)
    return create_app(settings=s)
