"""HTTP API server for managing user LED configurations."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
import uvicorn

from .commands import build_command, effect_kind_for
from .config import Config
from .gateway import PublishGateway, render_topic
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .store import LightConfigStore, NotFoundError, UserLightConfig, ValidationError
from .transitions import TransitionKind

_COMMAND_KINDS = {"join": TransitionKind.JOIN, "leave": TransitionKind.LEAVE}


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key and not config.api_bearer_token:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if config.api_key and api_key_header == config.api_key:
            return
        if config.api_key and auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        if config.api_bearer_token and auth_header and auth_header.startswith("Bearer "):
            if auth_header.split(" ", 1)[1] == config.api_bearer_token:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _auth_guard


class UserConfigIn(BaseModel):
    """Upsert payload; omitted settings fall back to their defaults."""

    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = None
    device: Optional[str] = None
    led: Optional[int] = None
    color: Optional[str] = None
    join_effect: Optional[str] = None
    join_duration: Optional[int] = None
    next_effect: Optional[str] = None
    speed: Optional[str] = None
    brightness: Optional[int] = None
    leave_effect: Optional[str] = None
    leave_duration: Optional[int] = None


class UserConfigOut(BaseModel):
    """Stored user configuration."""

    user_id: str
    username: Optional[str]
    device: str
    led: int
    color: str
    join_effect: str
    join_duration: int
    next_effect: str
    speed: str
    brightness: int
    leave_effect: str
    leave_duration: int
    enabled: bool
    created_at: Optional[str]
    updated_at: Optional[str]


class CommandPreview(BaseModel):
    user_id: str
    kind: str
    effect: str
    topic: str
    command: dict[str, Any]


def _out(config: UserLightConfig) -> UserConfigOut:
    return UserConfigOut(**config.as_dict())


def _command_kind(kind: str) -> TransitionKind:
    try:
        return _COMMAND_KINDS[kind]
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="kind must be 'join' or 'leave'",
        ) from None


def create_app(
    config: Config,
    store: LightConfigStore,
    gateway: Optional[PublishGateway] = None,
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("voiceled.api")
    request_logger = get_logger("voiceled.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    app = FastAPI(
        title="Voice LED Bridge API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    def _broker_state() -> str:
        return gateway.state.value if gateway else "unavailable"

    async def _require(user_id: str) -> UserLightConfig:
        stored = await store.get(user_id)
        if stored is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return stored

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception as exc:  # pragma: no cover - surfaced as 500
            logger.exception("Unhandled API error")
            raise HTTPException(status_code=500, detail="Internal server error") from exc
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        duration_seconds = time.perf_counter() - start
        observe_request(request.method, path_template, response.status_code, duration_seconds)
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors()},
        )

    @app.get("/health", dependencies=[Depends(auth_dependency)])
    async def health() -> dict[str, str]:
        return {"status": "ok", "broker": _broker_state()}

    @app.get("/status", dependencies=[Depends(auth_dependency)])
    async def status_view() -> dict[str, Any]:
        stats = await store.stats()
        return {"broker": _broker_state(), **stats}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/users", dependencies=[Depends(auth_dependency)], response_model=list[UserConfigOut])
    async def list_users(enabled_only: bool = False) -> list[UserConfigOut]:
        rows = await (store.list_enabled() if enabled_only else store.all_configs())
        return [_out(row) for row in rows]

    @app.get("/users/{user_id}", dependencies=[Depends(auth_dependency)], response_model=UserConfigOut)
    async def get_user(user_id: str) -> UserConfigOut:
        return _out(await _require(user_id))

    @app.put("/users/{user_id}", dependencies=[Depends(auth_dependency)], response_model=UserConfigOut)
    async def put_user(user_id: str, payload: UserConfigIn) -> UserConfigOut:
        fields = payload.model_dump(exclude_none=True)
        username = fields.pop("username", None)
        try:
            stored = await store.upsert(user_id, username, fields)
        except ValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _out(stored)

    @app.delete("/users/{user_id}", dependencies=[Depends(auth_dependency)], status_code=status.HTTP_204_NO_CONTENT)
    async def delete_user(user_id: str) -> Response:
        try:
            await store.delete(user_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/users/{user_id}/enable", dependencies=[Depends(auth_dependency)], response_model=UserConfigOut)
    async def enable_user(user_id: str) -> UserConfigOut:
        try:
            return _out(await store.set_enabled(user_id, True))
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @app.post("/users/{user_id}/disable", dependencies=[Depends(auth_dependency)], response_model=UserConfigOut)
    async def disable_user(user_id: str) -> UserConfigOut:
        try:
            return _out(await store.set_enabled(user_id, False))
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @app.get("/users/{user_id}/preview", dependencies=[Depends(auth_dependency)], response_model=CommandPreview)
    async def preview_user(user_id: str, kind: str = "join") -> CommandPreview:
        transition_kind = _command_kind(kind)
        stored = await _require(user_id)
        topic = render_topic(config.topic_template, stored.device)
        return CommandPreview(
            user_id=user_id,
            kind=transition_kind.value,
            effect=effect_kind_for(stored, transition_kind).value,
            topic=topic,
            command=build_command(stored, transition_kind),
        )

    @app.post("/users/{user_id}/test", dependencies=[Depends(auth_dependency)])
    async def test_user(user_id: str, kind: str = "join") -> dict[str, Any]:
        transition_kind = _command_kind(kind)
        stored = await _require(user_id)
        if gateway is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="MQTT gateway unavailable",
            )
        command = build_command(stored, transition_kind)
        outcome = await gateway.publish(
            gateway.topic_for(stored.device), command, stored.username or user_id
        )
        return {**outcome.as_dict(), "command": command}

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(
        self,
        config: Config,
        store: LightConfigStore,
        gateway: Optional[PublishGateway] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.gateway = gateway
        self.logger = get_logger("voiceled.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.store, self.gateway)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
