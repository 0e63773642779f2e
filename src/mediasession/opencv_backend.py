"""Camera capture backend using OpenCV."""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import suppress
from typing import Any, Callable

import cv2

from .acquirer import (
    ConstraintsUnsatisfiableError,
    DeviceInUseError,
    DeviceNotFoundError,
    PlatformUnsupportedError,
)
from .media import MediaConstraints, MediaStreamHandle, MediaTrack, TrackKind

logger = logging.getLogger(__name__)

DEFAULT_READ_FAILURE_LIMIT = 30
READ_RETRY_DELAY = 0.05


def _camera_support_available() -> bool:
    return bool(cv2.videoio_registry.getCameraBackends())


class _CaptureReader:
    """Owns one ``cv2.VideoCapture`` and keeps its newest frame.

    Reads happen on a dedicated thread. The only way back into asyncio is
    ``call_soon_threadsafe`` for the device-lost signal. ``close`` never
    waits for that thread: a reader still inside ``read()`` releases the
    capture itself once the read returns.
    """

    def __init__(self, capture: Any, first_frame: Any, *, name: str, read_failure_limit: int) -> None:
        self._capture = capture
        self._name = name
        self._read_failure_limit = read_failure_limit
        self._frame = first_frame
        self._lock = threading.Lock()
        self._exited = False
        self._released = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_lost: Callable[[], None] | None = None
        self.frames_read = 1

    def latest(self) -> Any | None:
        with self._lock:
            return self._frame

    def start(self, loop: asyncio.AbstractEventLoop, on_lost: Callable[[], None]) -> None:
        self._loop = loop
        self._on_lost = on_lost
        self._thread = threading.Thread(target=self._run, name=f"capture-{self._name}", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        with self._lock:
            self._frame = None
            reader_running = self._thread is not None and not self._exited
        if not reader_running or self._thread is threading.current_thread():
            self._release_capture()

    def _release_capture(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._capture.release()
        logger.debug("Released camera %s after %d frames", self._name, self.frames_read)

    def _run(self) -> None:
        try:
            self._read_loop()
        finally:
            with self._lock:
                self._exited = True
            if self._stop.is_set():
                self._release_capture()

    def _read_loop(self) -> None:
        failures = 0
        while not self._stop.is_set():
            ok, frame = self._capture.read()
            if ok and frame is not None:
                failures = 0
                self.frames_read += 1
                with self._lock:
                    if not self._stop.is_set():
                        self._frame = frame
                continue

            failures += 1
            if failures >= self._read_failure_limit:
                logger.warning("Camera %s stopped delivering frames after %d failed reads", self._name, failures)
                self._signal_lost()
                return
            self._stop.wait(READ_RETRY_DELAY)

    def _signal_lost(self) -> None:
        loop, callback = self._loop, self._on_lost
        if loop is None or callback is None or self._stop.is_set():
            return
        with suppress(RuntimeError):
            loop.call_soon_threadsafe(callback)


class OpenCVCaptureBackend:
    """Captures video from a local camera through ``cv2.VideoCapture``."""

    def __init__(
        self,
        *,
        device_index: int = 0,
        read_failure_limit: int = DEFAULT_READ_FAILURE_LIMIT,
        api_preference: int | None = None,
    ) -> None:
        if read_failure_limit <= 0:
            raise ValueError("read_failure_limit must be > 0")
        self._device_index = device_index
        self._read_failure_limit = read_failure_limit
        self._api_preference = api_preference

    async def open(self, constraints: MediaConstraints) -> MediaStreamHandle:
        if TrackKind.AUDIO in constraints.kinds:
            raise ConstraintsUnsatisfiableError("The OpenCV backend captures video only")
        if not _camera_support_available():
            raise PlatformUnsupportedError("OpenCV was built without camera support")

        loop = asyncio.get_running_loop()
        capture, first_frame, settings = await loop.run_in_executor(None, self._open_device, constraints)

        name = str(settings["device"])
        reader = _CaptureReader(
            capture,
            first_frame,
            name=name,
            read_failure_limit=self._read_failure_limit,
        )
        track = MediaTrack(
            TrackKind.VIDEO,
            label=f"camera {name}",
            source=reader,
            release=reader.close,
            settings=settings,
        )
        handle = MediaStreamHandle([track], label=f"camera {name}")
        handle.mark_producing()
        reader.start(loop, track.end)
        logger.info(
            "Opened camera %s at %sx%s",
            name,
            settings["width"],
            settings["height"],
        )
        return handle

    def _open_device(self, constraints: MediaConstraints) -> tuple[Any, Any, dict[str, Any]]:
        device = self._resolve_device(constraints)
        if self._api_preference is None:
            capture = cv2.VideoCapture(device)
        else:
            capture = cv2.VideoCapture(device, self._api_preference)

        if not capture.isOpened():
            capture.release()
            raise DeviceNotFoundError(f"Camera {device} could not be opened")

        if constraints.width:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        if constraints.height:
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        if constraints.frame_rate:
            capture.set(cv2.CAP_PROP_FPS, constraints.frame_rate)

        ok, frame = capture.read()
        if not ok or frame is None:
            capture.release()
            raise DeviceInUseError(f"Camera {device} opened but delivered no frames")

        height, width = frame.shape[:2]
        reported_fps = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
        settings = {
            "device": device,
            "width": int(width),
            "height": int(height),
            "frame_rate": reported_fps or constraints.frame_rate,
            "facing_mode": constraints.facing_mode,
        }
        return capture, frame, settings

    def _resolve_device(self, constraints: MediaConstraints) -> int | str:
        device_id = constraints.device_id
        if device_id is None or device_id == "":
            return self._device_index
        if device_id.isdigit():
            return int(device_id)
        return device_id
