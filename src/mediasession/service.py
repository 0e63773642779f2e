"""FastAPI integration entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any, Iterable

from fastapi import Depends, FastAPI, HTTPException, Response, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .acquirer import (
    AcquireError,
    CaptureBackend,
    ConstraintsUnsatisfiableError,
    DeviceInUseError,
    DeviceNotFoundError,
    DeviceStreamAcquirer,
    PermissionDeniedError,
    PlatformUnsupportedError,
)
from .binder import AttachmentSurfaceBinder
from .bridge import CredentialProvider, NotActiveError, PublishError, RemoteSessionBridge, TransportFactory
from .config import Settings, load_settings
from .controller import SessionEvent, SessionLifecycleController, SessionStateError
from .livekit_transport import LiveKitTokenIssuer, LiveKitTransport
from .media import TrackKind
from .opencv_backend import OpenCVCaptureBackend
from .registry import StreamRegistry, default_registry
from .surfaces import PreviewSurface

SERVICE_NAME = "mediasession"
CONFIG_ENV_VAR = "MEDIASESSION_CONFIG_PATH"
CONFIG_SEARCH_PATHS_ENV_VAR = "MEDIASESSION_CONFIG_SEARCH_PATHS"
DEFAULT_CONFIG_FILENAME = "config.yaml"
API_TOKEN_ENV_VAR = "MEDIASESSION_API_TOKEN"  # noqa: S105 - env var name, not a secret
LOG_LEVEL_ENV_VAR = "MEDIASESSION_LOG_LEVEL"
DEFAULT_CONFIG_SEARCH_PATHS: tuple[Path, ...] = (
    Path("config.yaml"),
    Path("config/config.yaml"),
    Path(__file__).resolve().parent / DEFAULT_CONFIG_FILENAME,
)
ACQUIRE_ERROR_STATUS: tuple[tuple[type[AcquireError], int], ...] = (
    (PermissionDeniedError, 403),
    (DeviceNotFoundError, 404),
    (DeviceInUseError, 409),
    (ConstraintsUnsatisfiableError, 422),
    (PlatformUnsupportedError, 501),
)

logger = logging.getLogger(SERVICE_NAME)
auth_scheme = HTTPBearer(auto_error=False)
AuthCredentials = Annotated[HTTPAuthorizationCredentials | None, Security(auth_scheme)]


class StartRequest(BaseModel):
    video: bool | None = None
    audio: bool | None = None
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    frame_rate: float | None = Field(default=None, gt=0)
    facing_mode: str | None = None
    device_id: str | None = None


class TrackRequest(BaseModel):
    enabled: bool


def create_app(
    *,
    config_path: str | None = None,
    capture_backend: CaptureBackend | None = None,
    credentials: CredentialProvider | None = None,
    transport_factory: TransportFactory | None = None,
    registry: StreamRegistry | None = None,
    api_token: str | None = None,
    config_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""

    _configure_logging()

    state: dict[str, Any] = {
        "settings": None,
        "controller": None,
        "bridge": None,
        "config_path": config_path,
        "api_token": api_token or os.getenv(API_TOKEN_ENV_VAR),
        "config_search_paths": tuple(config_search_paths or ()),
    }
    previews: dict[str, tuple[AttachmentSurfaceBinder, PreviewSurface]] = {}
    pending_starts: set[asyncio.Future[Any]] = set()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via tests
        resolved_path = _resolve_config_path(state["config_path"], state["config_search_paths"])
        try:
            settings = load_settings(resolved_path)
        except Exception:
            _log_event("config.load_failed", path=str(resolved_path))
            raise

        state["settings"] = settings
        state["config_path"] = str(resolved_path)
        _log_event("config.loaded", path=str(resolved_path))

        backend = capture_backend or OpenCVCaptureBackend(
            device_index=settings.capture.device_index,
            read_failure_limit=settings.capture.read_failure_limit,
        )
        controller = SessionLifecycleController(
            acquirer=DeviceStreamAcquirer(backend),
            registry=registry or default_registry(),
            default_constraints=settings.capture.constraints(),
        )
        controller.add_listener(_log_transition)
        state["controller"] = controller
        state["bridge"] = _build_bridge(settings, controller)
        try:
            yield
        finally:
            bridge = state["bridge"]
            if bridge is not None:
                await bridge.aclose()
            for binder, _surface in previews.values():
                binder.unbind()
            previews.clear()
            controller.shutdown()
            if pending_starts:
                await asyncio.gather(*pending_starts, return_exceptions=True)
            state["controller"] = None
            state["bridge"] = None
            state["settings"] = None
            _log_event("config.unloaded")

    app = FastAPI(
        title="Media Session Manager",
        description="Own camera streams independently of the surfaces that display them.",
        version="1.0.0",
        lifespan=_lifespan,
    )

    def _build_bridge(settings: Settings, controller: SessionLifecycleController) -> RemoteSessionBridge | None:
        provider = credentials
        if provider is None and settings.livekit is not None:
            try:
                provider = LiveKitTokenIssuer.from_env(
                    url=settings.livekit.url,
                    identity=settings.livekit.identity,
                    ttl_seconds=settings.livekit.token_ttl_seconds,
                )
            except ValueError as exc:
                _log_event("bridge.disabled", reason=str(exc))
                return None
        if provider is None:
            return None

        factory = transport_factory or _livekit_transport_factory(settings.capture.frame_rate or 30.0)
        bridge = RemoteSessionBridge(controller=controller, credentials=provider, transport_factory=factory)
        bridge.on_error(lambda key, exc: _log_event("bridge.failed", session=key, reason=str(exc)))
        return bridge

    def _require_settings() -> Settings:
        settings = state.get("settings")
        if settings is None:
            raise HTTPException(status_code=503, detail={"message": "Service not initialized"})
        return settings

    def _require_controller() -> SessionLifecycleController:
        controller = state.get("controller")
        if controller is None:
            raise HTTPException(status_code=503, detail={"message": "Service not initialized"})
        return controller

    def _require_bridge() -> RemoteSessionBridge:
        bridge = state.get("bridge")
        if bridge is None:
            raise HTTPException(status_code=503, detail={"message": "Remote sessions are not configured"})
        return bridge

    async def _authorize(credentials: AuthCredentials) -> None:
        token = state.get("api_token")
        if token is None:
            return
        if credentials is None or credentials.credentials != token:
            raise HTTPException(status_code=401, detail={"message": "Invalid or missing API token"})

    def _settle_start(task: asyncio.Future[Any]) -> None:
        pending_starts.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Start task finished with %r", exc)

    @app.get("/")
    async def root() -> dict[str, Any]:
        settings = state.get("settings")
        return {
            "service": SERVICE_NAME,
            "version": app.version,
            "config_path": state.get("config_path"),
            "acquire_timeout": settings.acquire_timeout if settings else None,
            "auth_enabled": bool(state.get("api_token")),
            "bridge_enabled": state.get("bridge") is not None,
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        controller = _require_controller()
        sessions = [status.as_dict() for status in controller.sessions()]
        failing = [entry for entry in sessions if entry["phase"] == "error"]
        status_text = "issues" if failing else "healthy"
        _log_event("health.reported", status=status_text, sessions=len(sessions))
        return {"service": SERVICE_NAME, "status": status_text, "sessions": sessions}

    @app.get("/sessions/{session_key}")
    async def session_status(session_key: str, _: None = Depends(_authorize)) -> dict[str, Any]:
        controller = _require_controller()
        payload = controller.status(session_key).as_dict()
        bridge = state.get("bridge")
        payload["published"] = bool(bridge and bridge.is_published(session_key))
        return payload

    @app.post("/sessions/{session_key}/start")
    async def start(
        session_key: str,
        request: StartRequest | None = None,
        _: None = Depends(_authorize),
    ) -> dict[str, Any]:
        settings = _require_settings()
        controller = _require_controller()
        constraints = settings.capture.constraints()
        if request is not None:
            constraints = constraints.with_overrides(**request.model_dump(exclude_none=True))

        task = asyncio.ensure_future(controller.start(session_key, constraints))
        pending_starts.add(task)
        task.add_done_callback(_settle_start)

        _log_event("start.requested", session=session_key)
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=settings.acquire_timeout)
        except asyncio.TimeoutError as exc:
            controller.stop(session_key)
            _log_event("start.failed", session=session_key, reason="timeout")
            raise HTTPException(
                status_code=504,
                detail={"message": "Camera did not respond in time", "reason": "timeout"},
            ) from exc
        except AcquireError as exc:
            _log_event("start.failed", session=session_key, reason=exc.reason)
            raise HTTPException(
                status_code=_acquire_status(exc),
                detail={"message": exc.user_message, "reason": exc.reason},
            ) from exc
        except SessionStateError as exc:
            _log_event("start.failed", session=session_key, reason=str(exc))
            raise HTTPException(status_code=409, detail={"message": str(exc)}) from exc
        except Exception as exc:
            _log_event("start.failed", session=session_key, reason=AcquireError.reason, error=repr(exc))
            raise HTTPException(
                status_code=500,
                detail={"message": AcquireError.user_message, "reason": AcquireError.reason},
            ) from exc

        status = controller.status(session_key)
        _log_event("start.success", session=session_key, phase=status.phase.name.lower())
        return status.as_dict()

    @app.post("/sessions/{session_key}/stop")
    async def stop(session_key: str, _: None = Depends(_authorize)) -> dict[str, Any]:
        controller = _require_controller()
        controller.stop(session_key)
        status = controller.status(session_key)
        _log_event("stop.success", session=session_key, phase=status.phase.name.lower())
        return status.as_dict()

    @app.post("/sessions/{session_key}/tracks/{kind}")
    async def set_track(
        session_key: str,
        kind: TrackKind,
        request: TrackRequest,
        _: None = Depends(_authorize),
    ) -> dict[str, Any]:
        controller = _require_controller()
        try:
            controller.set_track_enabled(session_key, kind, request.enabled)
        except SessionStateError as exc:
            raise HTTPException(status_code=409, detail={"message": str(exc)}) from exc
        except LookupError as exc:
            raise HTTPException(status_code=404, detail={"message": str(exc)}) from exc
        _log_event("track.updated", session=session_key, kind=kind.value, enabled=request.enabled)
        return controller.status(session_key).as_dict()

    @app.post("/sessions/{session_key}/publish")
    async def publish(session_key: str, _: None = Depends(_authorize)) -> dict[str, Any]:
        bridge = _require_bridge()
        try:
            await bridge.publish(session_key)
        except NotActiveError as exc:
            _log_event("publish.failed", session=session_key, reason="not_active")
            raise HTTPException(status_code=409, detail={"message": str(exc), "reason": "not_active"}) from exc
        except PublishError as exc:
            _log_event("publish.failed", session=session_key, reason=str(exc))
            raise HTTPException(status_code=502, detail={"message": str(exc), "reason": "publish_failed"}) from exc
        _log_event("publish.success", session=session_key)
        return {"service": SERVICE_NAME, "session_key": session_key, "published": True}

    @app.post("/sessions/{session_key}/unpublish")
    async def unpublish(session_key: str, _: None = Depends(_authorize)) -> dict[str, Any]:
        bridge = _require_bridge()
        try:
            await bridge.unpublish(session_key)
        except PublishError as exc:
            _log_event("unpublish.failed", session=session_key, reason=str(exc))
            raise HTTPException(status_code=502, detail={"message": str(exc)}) from exc
        _log_event("unpublish.success", session=session_key)
        return {"service": SERVICE_NAME, "session_key": session_key, "published": False}

    @app.get("/sessions/{session_key}/preview.jpg")
    async def preview(session_key: str, _: None = Depends(_authorize)) -> Response:
        controller = _require_controller()
        entry = previews.get(session_key)
        if entry is None:
            _, generation = controller.registry.current(session_key)
            if generation == 0:
                raise HTTPException(status_code=404, detail={"message": f"Unknown session '{session_key}'"})
            binder = AttachmentSurfaceBinder(controller.registry, binder_id=f"preview:{session_key}")
            surface = PreviewSurface(name=session_key)
            binder.bind(surface, session_key)
            entry = previews[session_key] = (binder, surface)

        data = entry[1].jpeg()
        if data is None:
            raise HTTPException(status_code=404, detail={"message": "No frame available"})
        return Response(content=data, media_type="image/jpeg")

    return app


def _livekit_transport_factory(frame_rate: float) -> TransportFactory:
    def factory(_session_key: str) -> LiveKitTransport:
        return LiveKitTransport(frame_rate=frame_rate)

    return factory


def _acquire_status(exc: AcquireError) -> int:
    for error_type, status_code in ACQUIRE_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _resolve_config_path(
    override: str | None = None,
    extra_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> Path:
    candidate = override or os.getenv(CONFIG_ENV_VAR)
    if candidate:
        path = _normalize_path(candidate)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found at {path}")
        return path

    search_candidates: list[Path] = []
    env_search = os.getenv(CONFIG_SEARCH_PATHS_ENV_VAR)
    if env_search:
        for raw in env_search.split(os.pathsep):
            cleaned = raw.strip()
            if cleaned:
                search_candidates.append(Path(cleaned))

    if extra_search_paths:
        for configured in extra_search_paths:
            search_candidates.append(Path(str(configured)))

    search_candidates.extend(DEFAULT_CONFIG_SEARCH_PATHS)

    evaluated_paths: list[Path] = []
    for candidate_path in search_candidates:
        path = _normalize_path(candidate_path)
        evaluated_paths.append(path)
        if path.exists():
            return path

    searched = ", ".join(str(p) for p in evaluated_paths)
    raise FileNotFoundError(
        (
            "Unable to locate configuration file. Set "
            f"{CONFIG_ENV_VAR} or place config.yaml in one of: {searched}"
        )
    )


def _normalize_path(candidate: str | os.PathLike[str]) -> Path:
    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def _configure_logging() -> None:
    level_name = os.getenv(LOG_LEVEL_ENV_VAR, "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(message)s")


def _log_transition(event: SessionEvent) -> None:
    _log_event(
        "session.transition",
        session=event.session_key,
        previous=event.previous.name.lower(),
        phase=event.phase.name.lower(),
        reason=event.reason.value if event.reason else None,
    )


def _log_event(event: str, **fields: Any) -> None:
    record = {"event": event, "service": SERVICE_NAME, **fields}
    logger.info(json.dumps(record, sort_keys=True))
