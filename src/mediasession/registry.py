"""Process-wide ownership of local media streams.

The registry is the single writer for stream hardware: it is the only
component that stops tracks or flips their enabled flag. Rendering surfaces
come and go through binders, which only read ``current()`` and subscribe to
changes. Handles therefore outlive any particular view of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from .media import MediaStreamHandle, TrackKind

logger = logging.getLogger(__name__)

SubscriberCallback = Callable[[MediaStreamHandle | None, int], None]


@dataclass(slots=True)
class RegistryEntry:
    key: str
    handle: MediaStreamHandle | None = None
    generation: int = 0
    subscribers: dict[str, SubscriberCallback] = field(default_factory=dict)


class StreamRegistry:
    """Holds at most one handle per session key plus a generation counter.

    Every replacement or release bumps the generation. Entries are kept for
    the life of the registry so a key's generation never goes backwards.
    Notifications are synchronous and follow subscription order.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}

    def install(self, key: str, handle: MediaStreamHandle) -> int:
        if handle.stopped:
            raise ValueError(f"Cannot install stopped stream {handle.id} for '{key}'")
        entry = self._entry(key)
        if entry.handle is handle:
            return entry.generation

        previous = entry.handle
        if previous is not None:
            logger.info("Replacing stream %s for '%s'", previous.id, key)
            previous.stop()

        entry.handle = handle
        entry.generation += 1
        logger.debug("Installed stream %s for '%s' at generation %d", handle.id, key, entry.generation)
        self._notify(entry)
        return entry.generation

    def current(self, key: str) -> tuple[MediaStreamHandle | None, int]:
        entry = self._entries.get(key)
        if entry is None:
            return None, 0
        return entry.handle, entry.generation

    def release(self, key: str) -> int:
        entry = self._entries.get(key)
        if entry is None or entry.handle is None:
            return entry.generation if entry else 0

        handle, entry.handle = entry.handle, None
        handle.stop()
        entry.generation += 1
        logger.info("Released stream %s for '%s' at generation %d", handle.id, key, entry.generation)
        self._notify(entry)
        return entry.generation

    def release_all(self) -> None:
        for key in list(self._entries):
            self.release(key)

    def subscribe(self, key: str, subscriber_id: str, callback: SubscriberCallback) -> None:
        entry = self._entry(key)
        if subscriber_id in entry.subscribers:
            raise ValueError(f"Subscriber '{subscriber_id}' already registered for '{key}'")
        entry.subscribers[subscriber_id] = callback

    def unsubscribe(self, key: str, subscriber_id: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        return entry.subscribers.pop(subscriber_id, None) is not None

    def subscribers(self, key: str) -> tuple[str, ...]:
        entry = self._entries.get(key)
        return tuple(entry.subscribers) if entry else ()

    def toggle_track(self, key: str, kind: TrackKind, enabled: bool) -> None:
        handle, _ = self.current(key)
        if handle is None:
            raise LookupError(f"No stream installed for '{key}'")
        tracks = handle.get_tracks(kind)
        if not tracks:
            raise LookupError(f"Stream for '{key}' has no {TrackKind(kind).value} track")
        for track in tracks:
            track.enabled = enabled
        logger.debug("Set %s enabled=%s for '%s'", TrackKind(kind).value, enabled, key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def _entry(self, key: str) -> RegistryEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = RegistryEntry(key=key)
            self._entries[key] = entry
        return entry

    def _notify(self, entry: RegistryEntry) -> None:
        handle, generation = entry.handle, entry.generation
        for subscriber_id, callback in list(entry.subscribers.items()):
            if entry.subscribers.get(subscriber_id) is not callback:
                continue
            try:
                callback(handle, generation)
            except Exception:
                logger.exception("Subscriber '%s' failed for '%s'", subscriber_id, entry.key)


_default_registry = StreamRegistry()


def default_registry() -> StreamRegistry:
    """Return the registry shared by the whole process."""

    return _default_registry
