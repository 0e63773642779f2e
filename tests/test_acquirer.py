from __future__ import annotations

import asyncio
import errno

import pytest

from mediasession.acquirer import (
    AcquireError,
    ConstraintsUnsatisfiableError,
    DeviceInUseError,
    DeviceNotFoundError,
    DeviceStreamAcquirer,
    PermissionDeniedError,
)
from mediasession.media import MediaConstraints, MediaStreamHandle, MediaTrack


class StubBackend:
    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error
        self.calls: list[MediaConstraints] = []

    async def open(self, constraints: MediaConstraints) -> MediaStreamHandle:
        self.calls.append(constraints)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return MediaStreamHandle([MediaTrack(kind) for kind in constraints.kinds])


@pytest.mark.asyncio
async def test_acquire_returns_backend_handle() -> None:
    backend = StubBackend()
    acquirer = DeviceStreamAcquirer(backend)
    constraints = MediaConstraints(video=True, audio=True, width=640)

    handle = await acquirer.acquire(constraints)

    assert backend.calls == [constraints]
    assert len(handle.tracks) == 2
    assert acquirer.attempts == 1


@pytest.mark.asyncio
async def test_acquire_rejects_empty_request_without_touching_hardware() -> None:
    backend = StubBackend()
    acquirer = DeviceStreamAcquirer(backend)

    with pytest.raises(ConstraintsUnsatisfiableError):
        await acquirer.acquire(MediaConstraints(video=False, audio=False))

    assert backend.calls == []
    assert acquirer.attempts == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("raised", "expected"),
    [
        (OSError(errno.EBUSY, "Device or resource busy"), DeviceInUseError),
        (OSError(errno.ENODEV, "No such device"), DeviceNotFoundError),
        (PermissionError("camera access blocked"), PermissionDeniedError),
        (FileNotFoundError("/dev/video9"), DeviceNotFoundError),
    ],
)
async def test_acquire_maps_os_errors(raised: OSError, expected: type[AcquireError]) -> None:
    acquirer = DeviceStreamAcquirer(StubBackend(error=raised))

    with pytest.raises(expected) as info:
        await acquirer.acquire(MediaConstraints())

    assert info.value.__cause__ is raised


@pytest.mark.asyncio
async def test_acquire_propagates_typed_and_unknown_errors() -> None:
    denied = PermissionDeniedError("user dismissed the prompt")
    with pytest.raises(PermissionDeniedError) as info:
        await DeviceStreamAcquirer(StubBackend(error=denied)).acquire(MediaConstraints())
    assert info.value is denied

    with pytest.raises(OSError) as os_info:
        await DeviceStreamAcquirer(StubBackend(error=OSError(errno.EIO, "I/O error"))).acquire(
            MediaConstraints()
        )
    assert not isinstance(os_info.value, AcquireError)


def test_permission_and_in_use_messages_are_distinct() -> None:
    reasons = {
        PermissionDeniedError.reason,
        DeviceNotFoundError.reason,
        DeviceInUseError.reason,
        ConstraintsUnsatisfiableError.reason,
    }

    assert len(reasons) == 4
    assert PermissionDeniedError.user_message != DeviceInUseError.user_message
    assert "denied" in PermissionDeniedError.user_message
    assert "another application" in DeviceInUseError.user_message
