"""Stream and track primitives shared by every layer."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Protocol

logger = logging.getLogger(__name__)


class TrackKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class ReadyState(str, Enum):
    LIVE = "live"
    ENDED = "ended"


class FrameSource(Protocol):
    def latest(self) -> Any | None:
        ...


TrackEndedListener = Callable[["MediaTrack"], None]
HandleEndedListener = Callable[["MediaStreamHandle", "MediaTrack"], None]


def _new_id() -> str:
    return uuid.uuid4().hex


class MediaTrack:
    """A single audio or video signal inside a stream.

    ``stop()`` is the explicit teardown path and stays silent. ``end()`` is
    the hardware path (device unplugged, capture failure) and fires the
    ended listeners.
    """

    def __init__(
        self,
        kind: TrackKind,
        *,
        label: str = "",
        source: FrameSource | None = None,
        release: Callable[[], None] | None = None,
        settings: Mapping[str, Any] | None = None,
    ) -> None:
        self.id = _new_id()
        self.kind = TrackKind(kind)
        self.label = label
        self.enabled = True
        self.ready_state = ReadyState.LIVE
        self.settings: dict[str, Any] = dict(settings or {})
        self._source = source
        self._release = release
        self._listeners: list[TrackEndedListener] = []

    @property
    def live(self) -> bool:
        return self.ready_state is ReadyState.LIVE

    def latest_frame(self) -> Any | None:
        if not self.live or not self.enabled or self._source is None:
            return None
        return self._source.latest()

    def add_ended_listener(self, listener: TrackEndedListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def stop(self) -> None:
        if not self.live:
            return
        self.ready_state = ReadyState.ENDED
        self._release_resource()

    def end(self) -> None:
        if not self.live:
            return
        self.ready_state = ReadyState.ENDED
        self._release_resource()
        logger.info("Track %s (%s) ended unexpectedly", self.id, self.kind.value)
        for listener in list(self._listeners):
            listener(self)

    def _release_resource(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()

    def __repr__(self) -> str:
        return (
            f"MediaTrack(id={self.id[:8]!r}, kind={self.kind.value!r}, "
            f"enabled={self.enabled}, ready_state={self.ready_state.value!r})"
        )


class MediaStreamHandle:
    """Opaque owner-facing handle for a captured stream.

    The ``id`` is generated here rather than borrowed from the platform
    object so that provenance survives reacquisition.
    """

    def __init__(
        self,
        tracks: Iterable[MediaTrack],
        *,
        origin: str = "local",
        label: str = "",
    ) -> None:
        self.id = _new_id()
        self.tracks: tuple[MediaTrack, ...] = tuple(tracks)
        self.origin = origin
        self.label = label
        self._producing = False
        self._stopped = False
        self._lost = False
        self._listeners: list[HandleEndedListener] = []
        for track in self.tracks:
            track.add_ended_listener(self._on_track_ended)

    @property
    def active(self) -> bool:
        return self._producing and not self._stopped and not self._lost

    @property
    def stopped(self) -> bool:
        return self._stopped

    def mark_producing(self) -> None:
        if not self._stopped:
            self._producing = True

    def get_tracks(self, kind: TrackKind | None = None) -> list[MediaTrack]:
        if kind is None:
            return list(self.tracks)
        return [track for track in self.tracks if track.kind is TrackKind(kind)]

    def latest_frame(self, kind: TrackKind = TrackKind.VIDEO) -> Any | None:
        for track in self.get_tracks(kind):
            frame = track.latest_frame()
            if frame is not None:
                return frame
        return None

    def add_ended_listener(self, listener: HandleEndedListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks:
            track.stop()

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin,
            "active": self.active,
            "tracks": [
                {
                    "id": track.id,
                    "kind": track.kind.value,
                    "label": track.label,
                    "enabled": track.enabled,
                    "ready_state": track.ready_state.value,
                }
                for track in self.tracks
            ],
        }

    def _on_track_ended(self, track: MediaTrack) -> None:
        if self._stopped:
            return
        self._lost = True
        for listener in list(self._listeners):
            listener(self, track)

    def __repr__(self) -> str:
        return f"MediaStreamHandle(id={self.id[:8]!r}, origin={self.origin!r}, tracks={len(self.tracks)})"


@dataclass(slots=True, frozen=True)
class MediaConstraints:
    """Capture request hints. Only presence is checked, values pass through."""

    video: bool = True
    audio: bool = False
    width: int | None = None
    height: int | None = None
    frame_rate: float | None = None
    facing_mode: str | None = None
    device_id: str | None = None

    @property
    def kinds(self) -> tuple[TrackKind, ...]:
        requested: list[TrackKind] = []
        if self.video:
            requested.append(TrackKind.VIDEO)
        if self.audio:
            requested.append(TrackKind.AUDIO)
        return tuple(requested)

    def with_overrides(self, **changes: Any) -> MediaConstraints:
        known = {field.name for field in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown constraint fields: {', '.join(sorted(unknown))}")
        present = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **present)
