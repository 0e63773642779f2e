"""Publishing local streams to a remote room and receiving remote ones."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Protocol

from .controller import SessionLifecycleController, SessionPhase
from .media import MediaStreamHandle
from .registry import StreamRegistry

logger = logging.getLogger(__name__)


class BridgeError(RuntimeError):
    """Base class for remote session failures."""


class NotActiveError(BridgeError):
    """Raised when publishing a session that has no active local stream."""


class PublishError(BridgeError):
    """Raised when the remote collaborator rejects or fails an operation."""


@dataclass(slots=True, frozen=True)
class RoomCredentials:
    url: str
    token: str
    room: str
    identity: str


RemoteTrackCallback = Callable[[str, MediaStreamHandle | None], None]


class CredentialProvider(Protocol):
    async def issue(self, session_key: str) -> RoomCredentials:
        ...


class RoomTransport(Protocol):
    async def connect(self, credentials: RoomCredentials, on_remote: RemoteTrackCallback) -> None:
        ...

    async def publish(self, handle: MediaStreamHandle) -> None:
        ...

    async def unpublish(self, handle: MediaStreamHandle) -> None:
        ...

    async def disconnect(self) -> None:
        ...


TransportFactory = Callable[[str], RoomTransport]
RemoteStreamListener = Callable[[str, str, MediaStreamHandle | None], None]
BridgeErrorListener = Callable[[str, BridgeError], None]


def remote_session_key(session_key: str, remote_id: str) -> str:
    return f"{session_key}/remote/{remote_id}"


@dataclass(slots=True)
class _RoomLink:
    session_key: str
    transport: RoomTransport
    published: MediaStreamHandle | None = None
    published_generation: int | None = None
    remote_keys: set[str] = field(default_factory=set)
    closed: bool = False


class RemoteSessionBridge:
    """Hands a session's local stream to a room and surfaces remote streams.

    Remote streams are installed in the same registry as local ones, under
    ``remote_session_key``, so rendering code binds to both the same way.
    """

    def __init__(
        self,
        *,
        controller: SessionLifecycleController,
        credentials: CredentialProvider,
        transport_factory: TransportFactory,
        registry: StreamRegistry | None = None,
    ) -> None:
        self._controller = controller
        self._credentials = credentials
        self._transport_factory = transport_factory
        self._registry = registry or controller.registry
        self._links: dict[str, _RoomLink] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._remote_listeners: list[RemoteStreamListener] = []
        self._error_listeners: list[BridgeErrorListener] = []
        self._tasks: set[asyncio.Task[None]] = set()

    def is_published(self, session_key: str) -> bool:
        link = self._links.get(session_key)
        return link is not None and link.published is not None

    def remote_keys(self, session_key: str) -> list[str]:
        link = self._links.get(session_key)
        return sorted(link.remote_keys) if link else []

    def on_remote_stream(self, listener: RemoteStreamListener) -> Callable[[], None]:
        self._remote_listeners.append(listener)
        return partial(_discard, self._remote_listeners, listener)

    def on_error(self, listener: BridgeErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return partial(_discard, self._error_listeners, listener)

    async def publish(self, session_key: str) -> None:
        if self._controller.phase(session_key) is not SessionPhase.ACTIVE:
            raise NotActiveError(f"Session '{session_key}' has no active local stream")

        async with self._lock(session_key):
            link = self._links.get(session_key)
            if link is None:
                link = await self._connect(session_key)
            await self._sync(link)

    async def unpublish(self, session_key: str) -> None:
        async with self._lock(session_key):
            link = self._links.pop(session_key, None)
            if link is None:
                return
            self._registry.unsubscribe(session_key, self._subscriber_id(session_key))
            self._close_link(link)

            published, link.published = link.published, None
            link.published_generation = None
            try:
                if published is not None:
                    await link.transport.unpublish(published)
                await link.transport.disconnect()
            except Exception as exc:
                raise PublishError(f"Failed to leave room for '{session_key}': {exc}") from exc
            logger.info("Left room for '%s'", session_key)

    async def aclose(self) -> None:
        for session_key in list(self._links):
            try:
                await self.unpublish(session_key)
            except PublishError as exc:
                logger.warning("%s", exc)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _connect(self, session_key: str) -> _RoomLink:
        link = _RoomLink(session_key=session_key, transport=self._transport_factory(session_key))
        try:
            credentials = await self._credentials.issue(session_key)
            await link.transport.connect(credentials, partial(self._on_remote_track, link))
        except Exception as exc:
            self._close_link(link)
            with suppress(Exception):
                await link.transport.disconnect()
            if isinstance(exc, BridgeError):
                raise
            raise PublishError(f"Failed to join room for '{session_key}': {exc}") from exc

        self._links[session_key] = link
        self._registry.subscribe(
            session_key,
            self._subscriber_id(session_key),
            partial(self._on_local_change, session_key),
        )
        logger.info("Joined room '%s' as '%s'", credentials.room, credentials.identity)
        return link

    async def _sync(self, link: _RoomLink) -> None:
        handle, generation = self._registry.current(link.session_key)
        if link.published_generation == generation:
            return

        previous = link.published
        try:
            if previous is not None:
                link.published = None
                await link.transport.unpublish(previous)
            if handle is not None:
                await link.transport.publish(handle)
        except Exception as exc:
            raise PublishError(f"Failed to publish '{link.session_key}': {exc}") from exc

        link.published = handle
        link.published_generation = generation
        if handle is not None:
            logger.info("Published stream %s for '%s'", handle.id, link.session_key)

    def _on_local_change(self, session_key: str, _handle: MediaStreamHandle | None, _generation: int) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop to republish '%s'", session_key)
            return
        task = loop.create_task(self._resync(session_key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resync(self, session_key: str) -> None:
        async with self._lock(session_key):
            link = self._links.get(session_key)
            if link is None:
                return
            try:
                await self._sync(link)
            except PublishError as exc:
                logger.warning("%s", exc)
                for listener in list(self._error_listeners):
                    listener(session_key, exc)

    def _on_remote_track(self, link: _RoomLink, remote_id: str, handle: MediaStreamHandle | None) -> None:
        if link.closed:
            if handle is not None:
                handle.stop()
            return
        remote_key = remote_session_key(link.session_key, remote_id)
        if handle is None:
            self._registry.release(remote_key)
            link.remote_keys.discard(remote_key)
        else:
            self._registry.install(remote_key, handle)
            link.remote_keys.add(remote_key)
        for listener in list(self._remote_listeners):
            try:
                listener(link.session_key, remote_key, handle)
            except Exception:
                logger.exception("Remote stream listener failed for '%s'", remote_key)

    def _close_link(self, link: _RoomLink) -> None:
        link.closed = True
        for remote_key in sorted(link.remote_keys):
            self._registry.release(remote_key)
        link.remote_keys.clear()

    def _lock(self, session_key: str) -> asyncio.Lock:
        lock = self._locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_key] = lock
        return lock

    @staticmethod
    def _subscriber_id(session_key: str) -> str:
        return f"bridge:{session_key}"


def _discard(items: list, item: object) -> None:
    if item in items:
        items.remove(item)
