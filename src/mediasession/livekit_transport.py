"""LiveKit room transport and access-token issuing."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

import cv2
import numpy as np
from livekit import api, rtc

from .bridge import RemoteTrackCallback, RoomCredentials
from .media import MediaStreamHandle, MediaTrack, TrackKind

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "LIVEKIT_API_KEY"
API_SECRET_ENV_VAR = "LIVEKIT_API_SECRET"  # noqa: S105 - env var name, not a secret
DEFAULT_FRAME_SIZE = (1280, 720)


class LiveKitTokenIssuer:
    """Issues room-join tokens where the session key is the room name."""

    def __init__(
        self,
        *,
        url: str,
        api_key: str,
        api_secret: str,
        identity: str,
        ttl_seconds: float = 3600.0,
    ) -> None:
        if not api_key or not api_secret:
            raise ValueError("LiveKit API key and secret are required")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._url = url
        self._api_key = api_key
        self._api_secret = api_secret
        self._identity = identity
        self._ttl = timedelta(seconds=ttl_seconds)

    @classmethod
    def from_env(cls, *, url: str, identity: str, ttl_seconds: float = 3600.0) -> LiveKitTokenIssuer:
        api_key = (os.getenv(API_KEY_ENV_VAR) or "").strip()
        api_secret = (os.getenv(API_SECRET_ENV_VAR) or "").strip()
        if not api_key or not api_secret:
            raise ValueError(f"Set {API_KEY_ENV_VAR} and {API_SECRET_ENV_VAR} to publish to LiveKit")
        return cls(
            url=url,
            api_key=api_key,
            api_secret=api_secret,
            identity=identity,
            ttl_seconds=ttl_seconds,
        )

    async def issue(self, session_key: str) -> RoomCredentials:
        grants = api.VideoGrants(
            room_join=True,
            room=session_key,
            can_publish=True,
            can_subscribe=True,
        )
        token = (
            api.AccessToken(self._api_key, self._api_secret)
            .with_identity(self._identity)
            .with_name(self._identity)
            .with_grants(grants)
            .with_ttl(self._ttl)
            .to_jwt()
        )
        return RoomCredentials(url=self._url, token=token, room=session_key, identity=self._identity)


class _RemoteVideoReader:
    """Keeps the newest frame of a subscribed remote video track as BGR."""

    def __init__(self, track: rtc.Track) -> None:
        self._track = track
        self._frame: Any | None = None
        self._task: asyncio.Task[None] | None = None
        self._finished = False

    def latest(self) -> Any | None:
        return self._frame

    def start(self, on_first_frame: Callable[[], None], on_ended: Callable[[], None]) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run(on_first_frame, on_ended))

    def close(self) -> None:
        self._frame = None
        task = self._task
        if task is not None and not task.done() and not self._finished:
            task.cancel()

    async def _run(self, on_first_frame: Callable[[], None], on_ended: Callable[[], None]) -> None:
        stream = rtc.VideoStream(self._track)
        try:
            async for event in stream:
                rgba = event.frame.convert(rtc.VideoBufferType.RGBA)
                pixels = np.frombuffer(rgba.data, dtype=np.uint8).reshape(rgba.height, rgba.width, 4)
                first = self._frame is None
                self._frame = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGR)
                if first:
                    on_first_frame()
        finally:
            await stream.aclose()
        self._finished = True
        on_ended()


@dataclass(slots=True)
class _LocalPublication:
    sid: str
    pump: asyncio.Task[None]


class LiveKitTransport:
    """``RoomTransport`` backed by a ``livekit.rtc.Room``.

    Video tracks are fed to a ``VideoSource`` by a pump task sampling
    ``latest_frame()``; a disabled track is sent as black frames. Audio
    tracks are not published.
    """

    def __init__(self, *, frame_rate: float = 30.0) -> None:
        if frame_rate <= 0:
            raise ValueError("frame_rate must be > 0")
        self._frame_interval = 1.0 / frame_rate
        self._room: rtc.Room | None = None
        self._on_remote: RemoteTrackCallback | None = None
        self._publications: dict[str, list[_LocalPublication]] = {}
        self._remote: dict[str, MediaStreamHandle] = {}

    @property
    def connected(self) -> bool:
        return self._room is not None

    async def connect(self, credentials: RoomCredentials, on_remote: RemoteTrackCallback) -> None:
        if self._room is not None:
            return
        room = rtc.Room()
        room.on("track_subscribed", self._on_track_subscribed)
        room.on("track_unsubscribed", self._on_track_unsubscribed)
        self._on_remote = on_remote
        await room.connect(credentials.url, credentials.token, options=rtc.RoomOptions(auto_subscribe=True))
        self._room = room
        logger.info("Connected to LiveKit room '%s' at %s", credentials.room, credentials.url)

    async def publish(self, handle: MediaStreamHandle) -> None:
        room = self._require_room()
        publications: list[_LocalPublication] = []
        for track in handle.tracks:
            if not track.live:
                continue
            if track.kind is not TrackKind.VIDEO:
                logger.warning("Skipping %s track %s: only video is published", track.kind.value, track.id)
                continue
            width = int(track.settings.get("width") or DEFAULT_FRAME_SIZE[0])
            height = int(track.settings.get("height") or DEFAULT_FRAME_SIZE[1])
            source = rtc.VideoSource(width, height)
            local_track = rtc.LocalVideoTrack.create_video_track(f"camera-{track.id[:8]}", source)
            options = rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_CAMERA)
            publication = await room.local_participant.publish_track(local_track, options)
            pump = asyncio.get_running_loop().create_task(self._pump_video(track, source, width, height))
            publications.append(_LocalPublication(sid=publication.sid, pump=pump))
        self._publications[handle.id] = publications

    async def unpublish(self, handle: MediaStreamHandle) -> None:
        publications = self._publications.pop(handle.id, [])
        room = self._room
        for publication in publications:
            publication.pump.cancel()
            if room is not None:
                await room.local_participant.unpublish_track(publication.sid)

    async def disconnect(self) -> None:
        for handle_id in list(self._publications):
            for publication in self._publications.pop(handle_id):
                publication.pump.cancel()
        on_remote = self._on_remote
        for remote_id in list(self._remote):
            self._remote.pop(remote_id)
            if on_remote is not None:
                on_remote(remote_id, None)
        room, self._room = self._room, None
        self._on_remote = None
        if room is not None:
            await room.disconnect()
            logger.info("Disconnected from LiveKit room")

    async def _pump_video(self, track: MediaTrack, source: rtc.VideoSource, width: int, height: int) -> None:
        black = np.zeros((height, width, 4), dtype=np.uint8)
        while track.live:
            frame = track.latest_frame()
            if frame is not None:
                rgba = cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)
            elif not track.enabled:
                rgba = black
            else:
                rgba = None
            if rgba is not None:
                frame_height, frame_width = rgba.shape[:2]
                source.capture_frame(
                    rtc.VideoFrame(frame_width, frame_height, rtc.VideoBufferType.RGBA, rgba.tobytes())
                )
            await asyncio.sleep(self._frame_interval)

    def _on_track_subscribed(
        self,
        track: rtc.Track,
        publication: rtc.RemoteTrackPublication,
        participant: rtc.RemoteParticipant,
    ) -> None:
        remote_id = f"{participant.identity}/{publication.sid}"
        label = participant.identity
        if track.kind == rtc.TrackKind.KIND_VIDEO:
            reader = _RemoteVideoReader(track)
            media_track = MediaTrack(TrackKind.VIDEO, label=label, source=reader, release=reader.close)
            handle = MediaStreamHandle([media_track], origin="remote", label=label)
            reader.start(handle.mark_producing, media_track.end)
        else:
            media_track = MediaTrack(TrackKind.AUDIO, label=label)
            handle = MediaStreamHandle([media_track], origin="remote", label=label)
            handle.mark_producing()

        self._remote[remote_id] = handle
        logger.info("Subscribed to %s track from '%s'", media_track.kind.value, participant.identity)
        if self._on_remote is not None:
            self._on_remote(remote_id, handle)

    def _on_track_unsubscribed(
        self,
        track: rtc.Track,
        publication: rtc.RemoteTrackPublication,
        participant: rtc.RemoteParticipant,
    ) -> None:
        remote_id = f"{participant.identity}/{publication.sid}"
        if self._remote.pop(remote_id, None) is None:
            return
        logger.info("Unsubscribed from track %s of '%s'", publication.sid, participant.identity)
        if self._on_remote is not None:
            self._on_remote(remote_id, None)

    def _require_room(self) -> rtc.Room:
        if self._room is None:
            raise RuntimeError("LiveKit transport is not connected")
        return self._room
