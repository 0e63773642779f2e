from __future__ import annotations

import asyncio
import time
from collections.abc import Iterator
from pathlib import Path

import numpy as np
import pytest
from fastapi.testclient import TestClient

from mediasession.acquirer import PermissionDeniedError
from mediasession.bridge import RemoteTrackCallback, RoomCredentials
from mediasession.media import MediaConstraints, MediaStreamHandle, MediaTrack
from mediasession.registry import StreamRegistry
from mediasession.service import (
    CONFIG_ENV_VAR,
    CONFIG_SEARCH_PATHS_ENV_VAR,
    _resolve_config_path,
    create_app,
)


class StaticFrames:
    def __init__(self) -> None:
        self.frame = np.zeros((24, 32, 3), dtype=np.uint8)

    def latest(self) -> np.ndarray:
        return self.frame


class StubBackend:
    def __init__(self, *, delay: float = 0.0, error: Exception | None = None) -> None:
        self.delay = delay
        self.error = error
        self.calls: list[MediaConstraints] = []
        self.handles: list[MediaStreamHandle] = []

    async def open(self, constraints: MediaConstraints) -> MediaStreamHandle:
        self.calls.append(constraints)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        handle = MediaStreamHandle(
            [MediaTrack(kind, source=StaticFrames()) for kind in constraints.kinds],
            label="stub camera",
        )
        handle.mark_producing()
        self.handles.append(handle)
        return handle


class StubCredentials:
    async def issue(self, session_key: str) -> RoomCredentials:
        await asyncio.sleep(0)
        return RoomCredentials(url="wss://rooms.test", token="token", room=session_key, identity="tester")


class StubTransport:
    def __init__(self) -> None:
        self.published: list[str] = []
        self.connected = False

    async def connect(self, credentials: RoomCredentials, on_remote: RemoteTrackCallback) -> None:
        self.connected = True

    async def publish(self, handle: MediaStreamHandle) -> None:
        self.published.append(handle.id)

    async def unpublish(self, handle: MediaStreamHandle) -> None:
        if handle.id in self.published:
            self.published.remove(handle.id)

    async def disconnect(self) -> None:
        self.connected = False


def _write_config(tmp_path: Path, *, timeout: float = 3) -> Path:
    yaml_text = f"""
    settings:
      acquire_timeout_seconds: {timeout}
      capture:
        device_index: 0
        width: 32
        height: 24
        audio: false
        read_failure_limit: 5
    """
    path = tmp_path / "config.yaml"
    path.write_text(yaml_text, encoding="utf-8")
    return path


@pytest.fixture
def app(tmp_path: Path) -> Iterator[tuple[TestClient, StubBackend]]:
    config_path = _write_config(tmp_path)
    backend = StubBackend()
    application = create_app(
        config_path=str(config_path),
        capture_backend=backend,
        registry=StreamRegistry(),
    )
    with TestClient(application) as client:
        yield client, backend


@pytest.fixture
def bridged_app(tmp_path: Path) -> Iterator[tuple[TestClient, list[StubTransport]]]:
    config_path = _write_config(tmp_path)
    transports: list[StubTransport] = []

    def factory(_session_key: str) -> StubTransport:
        transport = StubTransport()
        transports.append(transport)
        return transport

    application = create_app(
        config_path=str(config_path),
        capture_backend=StubBackend(),
        credentials=StubCredentials(),
        transport_factory=factory,
        registry=StreamRegistry(),
    )
    with TestClient(application) as client:
        yield client, transports


def test_root_reports_service_metadata(app: tuple[TestClient, StubBackend]) -> None:
    client, _ = app
    response = client.get("/")
    data = response.json()

    assert response.status_code == 200
    assert data["service"] == "mediasession"
    assert data["acquire_timeout"] == 3
    assert data["auth_enabled"] is False
    assert data["bridge_enabled"] is False


def test_start_activates_session(app: tuple[TestClient, StubBackend]) -> None:
    client, backend = app

    response = client.post("/sessions/room-1/start")
    data = response.json()

    assert response.status_code == 200
    assert data["phase"] == "active"
    assert data["generation"] == 1
    assert data["stream"]["id"] == backend.handles[0].id
    assert backend.calls[0].width == 32


def test_repeated_start_reuses_stream(app: tuple[TestClient, StubBackend]) -> None:
    client, backend = app

    client.post("/sessions/room-1/start")
    response = client.post("/sessions/room-1/start")

    assert response.status_code == 200
    assert response.json()["generation"] == 1
    assert len(backend.calls) == 1


def test_start_applies_request_overrides(app: tuple[TestClient, StubBackend]) -> None:
    client, backend = app

    response = client.post("/sessions/room-1/start", json={"audio": True, "width": 640})

    assert response.status_code == 200
    assert backend.calls[0].audio is True
    assert backend.calls[0].width == 640
    kinds = [track["kind"] for track in response.json()["stream"]["tracks"]]
    assert kinds == ["video", "audio"]


def test_start_maps_permission_denied(app: tuple[TestClient, StubBackend]) -> None:
    client, backend = app
    backend.error = PermissionDeniedError("prompt dismissed")

    response = client.post("/sessions/room-1/start")

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["reason"] == "permission_denied"
    assert detail["message"] == PermissionDeniedError.user_message

    health = client.get("/health").json()
    assert health["status"] == "issues"
    assert health["sessions"][0]["reason"] == "permission_denied"


def test_start_maps_unexpected_failure(app: tuple[TestClient, StubBackend]) -> None:
    client, backend = app
    backend.error = RuntimeError("driver crashed")

    response = client.post("/sessions/room-1/start")

    assert response.status_code == 500
    assert response.json()["detail"]["reason"] == "acquire_failed"
    status = client.get("/sessions/room-1").json()
    assert status["phase"] == "error"
    assert status["reason"] == "acquire_failed"


def test_start_times_out_and_releases_late_stream(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, timeout=0.05)
    backend = StubBackend(delay=0.3)
    application = create_app(
        config_path=str(config_path),
        capture_backend=backend,
        registry=StreamRegistry(),
    )

    with TestClient(application) as client:
        response = client.post("/sessions/room-1/start")
        assert response.status_code == 504
        assert response.json()["detail"]["reason"] == "timeout"

        time.sleep(0.5)
        status = client.get("/sessions/room-1").json()

    assert status["phase"] == "idle"
    assert status["generation"] == 2
    assert backend.handles[0].stopped


def test_stop_releases_session(app: tuple[TestClient, StubBackend]) -> None:
    client, backend = app
    client.post("/sessions/room-1/start")

    response = client.post("/sessions/room-1/stop")
    data = response.json()

    assert response.status_code == 200
    assert data["phase"] == "idle"
    assert data["generation"] == 2
    assert data["stream"] is None
    assert backend.handles[0].stopped


def test_track_toggle(app: tuple[TestClient, StubBackend]) -> None:
    client, backend = app
    client.post("/sessions/room-1/start", json={"audio": True})

    response = client.post("/sessions/room-1/tracks/audio", json={"enabled": False})

    assert response.status_code == 200
    tracks = {track["kind"]: track for track in response.json()["stream"]["tracks"]}
    assert tracks["audio"]["enabled"] is False
    assert tracks["video"]["enabled"] is True
    assert response.json()["generation"] == 1
    assert len(backend.calls) == 1


def test_track_toggle_errors(app: tuple[TestClient, StubBackend]) -> None:
    client, _ = app

    inactive = client.post("/sessions/room-1/tracks/video", json={"enabled": False})
    assert inactive.status_code == 409

    client.post("/sessions/room-1/start")
    missing = client.post("/sessions/room-1/tracks/audio", json={"enabled": False})
    assert missing.status_code == 404

    unknown = client.post("/sessions/room-1/tracks/screen", json={"enabled": False})
    assert unknown.status_code == 422


def test_preview_serves_jpeg(app: tuple[TestClient, StubBackend]) -> None:
    client, _ = app

    before = client.get("/sessions/room-1/preview.jpg")
    assert before.status_code == 404

    client.post("/sessions/room-1/start")
    response = client.get("/sessions/room-1/preview.jpg")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    assert response.content[:2] == b"\xff\xd8"


def test_preview_of_unknown_session_keeps_no_state(tmp_path: Path) -> None:
    registry = StreamRegistry()
    application = create_app(
        config_path=str(_write_config(tmp_path)),
        capture_backend=StubBackend(),
        registry=registry,
    )

    with TestClient(application) as client:
        for index in range(3):
            response = client.get(f"/sessions/ghost-{index}/preview.jpg")
            assert response.status_code == 404

    assert registry.keys() == []


def test_publish_requires_bridge(app: tuple[TestClient, StubBackend]) -> None:
    client, _ = app
    client.post("/sessions/room-1/start")

    response = client.post("/sessions/room-1/publish")

    assert response.status_code == 503


def test_publish_round_trip(bridged_app: tuple[TestClient, list[StubTransport]]) -> None:
    client, transports = bridged_app

    not_active = client.post("/sessions/room-1/publish")
    assert not_active.status_code == 409
    assert not_active.json()["detail"]["reason"] == "not_active"

    client.post("/sessions/room-1/start")
    published = client.post("/sessions/room-1/publish")
    assert published.status_code == 200
    assert client.get("/sessions/room-1").json()["published"] is True
    assert len(transports[0].published) == 1

    left = client.post("/sessions/room-1/unpublish")
    assert left.status_code == 200
    assert left.json()["published"] is False
    assert transports[0].connected is False
    assert client.get("/sessions/room-1").json()["published"] is False


def test_requires_token_when_enabled(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    token = "secret-token"  # noqa: S105 - test-only token literal
    application = create_app(
        config_path=str(config_path),
        capture_backend=StubBackend(),
        registry=StreamRegistry(),
        api_token=token,
    )

    with TestClient(application) as client:
        unauthorized = client.post("/sessions/room-1/start")
        assert unauthorized.status_code == 401

        response = client.post("/sessions/room-1/start", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

        health = client.get("/health")
        assert health.status_code == 200


def test_config_path_resolution(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.setenv(CONFIG_SEARCH_PATHS_ENV_VAR, str(tmp_path / "missing.yaml"))

    assert _resolve_config_path(None, [config_path]) == config_path

    with pytest.raises(FileNotFoundError, match="Configuration file not found"):
        _resolve_config_path(str(tmp_path / "absent.yaml"))
