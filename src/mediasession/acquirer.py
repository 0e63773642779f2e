"""Camera and microphone acquisition."""

from __future__ import annotations

import errno
import logging
from typing import Protocol

from .media import MediaConstraints, MediaStreamHandle

logger = logging.getLogger(__name__)


class AcquireError(RuntimeError):
    """Base class for failed capture requests. Terminal for the call."""

    reason = "acquire_failed"
    user_message = "The camera could not be started. Please try again."


class PermissionDeniedError(AcquireError):
    reason = "permission_denied"
    user_message = (
        "Camera or microphone access was denied. Allow access for this application "
        "and start the session again."
    )


class DeviceNotFoundError(AcquireError):
    reason = "device_not_found"
    user_message = "No camera or microphone was found. Check that the device is connected."


class DeviceInUseError(AcquireError):
    reason = "device_in_use"
    user_message = (
        "The camera is being used by another application. Close other video apps "
        "(Zoom, Teams, Skype) and try again."
    )


class ConstraintsUnsatisfiableError(AcquireError):
    reason = "constraints_unsatisfiable"
    user_message = "The camera does not support the requested settings."


class PlatformUnsupportedError(AcquireError):
    reason = "platform_unsupported"
    user_message = "Media capture is not available on this platform."


_ERRNO_MAP: dict[int, type[AcquireError]] = {
    errno.EACCES: PermissionDeniedError,
    errno.EPERM: PermissionDeniedError,
    errno.ENOENT: DeviceNotFoundError,
    errno.ENODEV: DeviceNotFoundError,
    errno.ENXIO: DeviceNotFoundError,
    errno.EBUSY: DeviceInUseError,
}


class CaptureBackend(Protocol):
    async def open(self, constraints: MediaConstraints) -> MediaStreamHandle:
        ...


class DeviceStreamAcquirer:
    """Turns one capture request into one handle or one typed error.

    Each call reaches the backend exactly once. Reuse of a live stream is the
    registry's concern, serialising calls is the controller's.
    """

    def __init__(self, backend: CaptureBackend) -> None:
        self._backend = backend
        self.attempts = 0

    async def acquire(self, constraints: MediaConstraints) -> MediaStreamHandle:
        kinds = constraints.kinds
        if not kinds:
            raise ConstraintsUnsatisfiableError("At least one of video or audio must be requested")

        self.attempts += 1
        logger.debug("Acquiring %s (attempt %d)", "+".join(kind.value for kind in kinds), self.attempts)
        try:
            handle = await self._backend.open(constraints)
        except AcquireError as exc:
            logger.info("Acquisition failed: %s (%s)", exc.reason, exc)
            raise
        except OSError as exc:
            mapped = _classify_os_error(exc)
            if mapped is None:
                raise
            logger.info("Acquisition failed: %s (%s)", mapped.reason, exc)
            raise mapped(str(exc)) from exc

        logger.info("Acquired stream %s with %d track(s)", handle.id, len(handle.tracks))
        return handle


def _classify_os_error(exc: OSError) -> type[AcquireError] | None:
    if exc.errno in _ERRNO_MAP:
        return _ERRNO_MAP[exc.errno]
    if isinstance(exc, PermissionError):
        return PermissionDeniedError
    if isinstance(exc, FileNotFoundError):
        return DeviceNotFoundError
    return None
