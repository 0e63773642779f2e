"""State machine coordinating capture sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from functools import partial
from typing import Any, Callable

from .acquirer import AcquireError, DeviceStreamAcquirer
from .media import MediaConstraints, MediaStreamHandle, MediaTrack, TrackKind
from .registry import StreamRegistry, default_registry

logger = logging.getLogger(__name__)


class SessionPhase(Enum):
    IDLE = auto()
    ACQUIRING = auto()
    ACTIVE = auto()
    STOPPING = auto()
    ERROR = auto()


class FailureReason(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_IN_USE = "device_in_use"
    CONSTRAINTS_UNSATISFIABLE = "constraints_unsatisfiable"
    PLATFORM_UNSUPPORTED = "platform_unsupported"
    DEVICE_LOST = "device_lost"
    ACQUIRE_FAILED = "acquire_failed"


class SessionStateError(RuntimeError):
    """Raised when an operation is not valid in the session's current phase."""


@dataclass(slots=True, frozen=True)
class SessionEvent:
    session_key: str
    phase: SessionPhase
    previous: SessionPhase
    reason: FailureReason | None = None
    message: str | None = None


@dataclass(slots=True, frozen=True)
class SessionStatus:
    session_key: str
    phase: SessionPhase
    generation: int
    reason: FailureReason | None
    message: str | None
    stream: dict[str, Any] | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_key": self.session_key,
            "phase": self.phase.name.lower(),
            "generation": self.generation,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "stream": self.stream,
        }


@dataclass(slots=True)
class _Session:
    key: str
    phase: SessionPhase = SessionPhase.IDLE
    reason: FailureReason | None = None
    message: str | None = None
    stop_requested: bool = False
    handle_id: str | None = None
    detach_lost: Callable[[], None] | None = None


SessionListener = Callable[[SessionEvent], None]


class SessionLifecycleController:
    """Drives one capture session per key through its phases.

    The ``ACQUIRING`` phase is the only guard against duplicate permission
    prompts: a start that arrives while one is in flight is ignored, and a
    stop is deferred until the acquisition resolves.
    """

    def __init__(
        self,
        *,
        acquirer: DeviceStreamAcquirer,
        registry: StreamRegistry | None = None,
        default_constraints: MediaConstraints | None = None,
    ) -> None:
        self._acquirer = acquirer
        self.registry = registry or default_registry()
        self._default_constraints = default_constraints or MediaConstraints()
        self._sessions: dict[str, _Session] = {}
        self._listeners: list[SessionListener] = []

    def phase(self, session_key: str) -> SessionPhase:
        session = self._sessions.get(session_key)
        return session.phase if session else SessionPhase.IDLE

    def status(self, session_key: str) -> SessionStatus:
        session = self._sessions.get(session_key) or _Session(key=session_key)
        handle, generation = self.registry.current(session_key)
        return SessionStatus(
            session_key=session_key,
            phase=session.phase,
            generation=generation,
            reason=session.reason,
            message=session.message,
            stream=handle.describe() if handle else None,
        )

    def sessions(self) -> list[SessionStatus]:
        return [self.status(key) for key in self._sessions]

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(
        self,
        session_key: str,
        constraints: MediaConstraints | None = None,
    ) -> MediaStreamHandle | None:
        session = self._session(session_key)
        if session.phase is SessionPhase.ACTIVE:
            logger.debug("Session '%s' already active", session_key)
            handle, _ = self.registry.current(session_key)
            return handle
        if session.phase is SessionPhase.ACQUIRING:
            logger.info("Ignoring start for '%s': acquisition already in flight", session_key)
            return None
        if session.phase is SessionPhase.STOPPING:
            raise SessionStateError(f"Session '{session_key}' is stopping")

        session.stop_requested = False
        self._transition(session, SessionPhase.ACQUIRING)
        try:
            handle = await self._acquirer.acquire(constraints or self._default_constraints)
        except AcquireError as exc:
            if session.stop_requested:
                session.stop_requested = False
                self._transition(session, SessionPhase.IDLE)
            else:
                self._transition(
                    session,
                    SessionPhase.ERROR,
                    reason=_failure_reason(exc),
                    message=exc.user_message,
                )
            raise
        except Exception:
            logger.exception("Acquisition for '%s' failed unexpectedly", session_key)
            if session.stop_requested:
                session.stop_requested = False
                self._transition(session, SessionPhase.IDLE)
            else:
                self._transition(
                    session,
                    SessionPhase.ERROR,
                    reason=FailureReason.ACQUIRE_FAILED,
                    message=AcquireError.user_message,
                )
            raise
        except BaseException:
            session.stop_requested = False
            self._transition(session, SessionPhase.IDLE)
            raise

        self._detach_lost_listener(session)
        self.registry.install(session_key, handle)
        session.handle_id = handle.id
        session.detach_lost = handle.add_ended_listener(partial(self._on_track_ended, session_key))

        if session.stop_requested:
            logger.info("Releasing '%s' right after acquisition: stop was requested", session_key)
            session.stop_requested = False
            self._release(session)
            return None

        # A track may have ended before the listener above was attached.
        dead = next((track for track in handle.tracks if not track.live), None)
        if dead is not None:
            self._device_lost(session, dead)
            return None

        self._transition(session, SessionPhase.ACTIVE)
        return handle

    def stop(self, session_key: str) -> None:
        session = self._sessions.get(session_key)
        if session is None or session.phase is SessionPhase.IDLE:
            return
        if session.phase is SessionPhase.ACQUIRING:
            logger.info("Deferring stop for '%s' until acquisition resolves", session_key)
            session.stop_requested = True
            return
        if session.phase is SessionPhase.STOPPING:
            return
        self._release(session)

    def set_track_enabled(self, session_key: str, kind: TrackKind, enabled: bool) -> None:
        phase = self.phase(session_key)
        if phase is not SessionPhase.ACTIVE:
            raise SessionStateError(
                f"Session '{session_key}' must be active to change tracks (phase={phase.name})"
            )
        self.registry.toggle_track(session_key, kind, enabled)

    def shutdown(self) -> None:
        for key in list(self._sessions):
            self.stop(key)

    def _release(self, session: _Session) -> None:
        self._transition(session, SessionPhase.STOPPING)
        self._detach_lost_listener(session)
        session.handle_id = None
        self.registry.release(session.key)
        self._transition(session, SessionPhase.IDLE)

    def _on_track_ended(self, session_key: str, handle: MediaStreamHandle, track: MediaTrack) -> None:
        session = self._sessions.get(session_key)
        if session is None or session.handle_id != handle.id:
            return
        if session.phase is not SessionPhase.ACTIVE:
            return
        self._device_lost(session, track)

    def _device_lost(self, session: _Session, track: MediaTrack) -> None:
        self._transition(
            session,
            SessionPhase.ERROR,
            reason=FailureReason.DEVICE_LOST,
            message=f"The {track.kind.value} device was disconnected. Start the session again.",
        )

    def _detach_lost_listener(self, session: _Session) -> None:
        detach, session.detach_lost = session.detach_lost, None
        if detach is not None:
            detach()

    def _session(self, session_key: str) -> _Session:
        session = self._sessions.get(session_key)
        if session is None:
            session = _Session(key=session_key)
            self._sessions[session_key] = session
        return session

    def _transition(
        self,
        session: _Session,
        phase: SessionPhase,
        *,
        reason: FailureReason | None = None,
        message: str | None = None,
    ) -> None:
        previous = session.phase
        session.phase = phase
        session.reason = reason
        session.message = message
        logger.info(
            "Session '%s': %s -> %s%s",
            session.key,
            previous.name,
            phase.name,
            f" ({reason.value})" if reason else "",
        )
        event = SessionEvent(
            session_key=session.key,
            phase=phase,
            previous=previous,
            reason=reason,
            message=message,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed for '%s'", session.key)


def _failure_reason(exc: AcquireError) -> FailureReason:
    try:
        return FailureReason(exc.reason)
    except ValueError:
        return FailureReason.ACQUIRE_FAILED


async def wait_for_phase(
    controller: SessionLifecycleController,
    session_key: str,
    phase: SessionPhase,
) -> SessionEvent:
    """Wait until the controller reports ``phase`` for ``session_key``."""

    loop = asyncio.get_running_loop()
    future: asyncio.Future[SessionEvent] = loop.create_future()

    def listener(event: SessionEvent) -> None:
        if event.session_key == session_key and event.phase is phase and not future.done():
            future.set_result(event)

    remove = controller.add_listener(listener)
    try:
        return await future
    finally:
        remove()
