from __future__ import annotations

from mediasession.binder import AttachmentSurfaceBinder
from mediasession.media import MediaStreamHandle, MediaTrack, TrackKind
from mediasession.registry import StreamRegistry


class RecordingSurface:
    def __init__(self) -> None:
        self.sources: list[MediaStreamHandle | None] = []

    def set_source(self, handle: MediaStreamHandle | None) -> None:
        self.sources.append(handle)


def _handle() -> MediaStreamHandle:
    handle = MediaStreamHandle([MediaTrack(TrackKind.VIDEO), MediaTrack(TrackKind.AUDIO)])
    handle.mark_producing()
    return handle


def test_bind_twice_attaches_once() -> None:
    registry = StreamRegistry()
    handle = _handle()
    registry.install("room-1", handle)
    surface = RecordingSurface()
    binder = AttachmentSurfaceBinder(registry)

    binder.bind(surface, "room-1")
    binder.bind(surface, "room-1")

    assert surface.sources == [handle]
    assert binder.bound_generation == 1


def test_bind_before_install_follows_registry() -> None:
    registry = StreamRegistry()
    surface = RecordingSurface()
    binder = AttachmentSurfaceBinder(registry)

    binder.bind(surface, "room-1")
    handle = _handle()
    registry.install("room-1", handle)

    assert surface.sources == [None, handle]
    assert binder.bound_generation == 1


def test_unbind_detaches_without_stopping_stream() -> None:
    registry = StreamRegistry()
    handle = _handle()
    registry.install("room-1", handle)
    surface = RecordingSurface()
    binder = AttachmentSurfaceBinder(registry, binder_id="preview")
    binder.bind(surface, "room-1")

    binder.unbind()
    binder.unbind()

    assert surface.sources == [handle, None]
    assert registry.current("room-1") == (handle, 1)
    assert all(track.live for track in handle.tracks)
    assert registry.subscribers("room-1") == ()
    assert binder.bound is False


def test_remount_reattaches_same_stream_to_new_surface() -> None:
    registry = StreamRegistry()
    handle = _handle()
    registry.install("room-1", handle)
    first, second = RecordingSurface(), RecordingSurface()
    binder = AttachmentSurfaceBinder(registry)

    binder.bind(first, "room-1")
    binder.unbind()
    binder.bind(second, "room-1")

    assert first.sources == [handle, None]
    assert second.sources == [handle]
    assert registry.current("room-1") == (handle, 1)


def test_rebinding_to_other_surface_detaches_previous() -> None:
    registry = StreamRegistry()
    handle = _handle()
    registry.install("room-1", handle)
    first, second = RecordingSurface(), RecordingSurface()
    binder = AttachmentSurfaceBinder(registry)

    binder.bind(first, "room-1")
    binder.bind(second, "room-1")

    assert first.sources == [handle, None]
    assert second.sources == [handle]
    assert registry.subscribers("room-1") == (binder.id,)


def test_multiple_surfaces_share_one_stream() -> None:
    registry = StreamRegistry()
    preview, fullscreen = RecordingSurface(), RecordingSurface()
    AttachmentSurfaceBinder(registry).bind(preview, "room-1")
    AttachmentSurfaceBinder(registry).bind(fullscreen, "room-1")

    first = _handle()
    registry.install("room-1", first)
    replacement = _handle()
    registry.install("room-1", replacement)
    registry.release("room-1")

    assert preview.sources == [None, first, replacement, None]
    assert fullscreen.sources == [None, first, replacement, None]
    assert first.stopped and replacement.stopped


def test_track_toggle_causes_no_rebind() -> None:
    registry = StreamRegistry()
    handle = _handle()
    registry.install("room-1", handle)
    surface = RecordingSurface()
    AttachmentSurfaceBinder(registry).bind(surface, "room-1")

    registry.toggle_track("room-1", TrackKind.VIDEO, False)
    registry.toggle_track("room-1", TrackKind.VIDEO, True)

    assert surface.sources == [handle]


def test_moving_to_other_key_unsubscribes_old_key() -> None:
    registry = StreamRegistry()
    handle = _handle()
    registry.install("room-2", handle)
    surface = RecordingSurface()
    binder = AttachmentSurfaceBinder(registry)

    binder.bind(surface, "room-1")
    binder.bind(surface, "room-2")
    registry.install("room-1", _handle())

    assert surface.sources == [None, None, handle]
    assert registry.subscribers("room-1") == ()
    assert binder.session_key == "room-2"


def test_nested_install_during_attach_settles_on_latest_generation() -> None:
    registry = StreamRegistry()
    replacement = _handle()

    class SwappingSurface(RecordingSurface):
        def set_source(self, handle: MediaStreamHandle | None) -> None:
            super().set_source(handle)
            if len(self.sources) == 1 and handle is not None:
                registry.install("room-1", replacement)

    first = _handle()
    registry.install("room-1", first)
    surface = SwappingSurface()
    binder = AttachmentSurfaceBinder(registry)

    binder.bind(surface, "room-1")

    assert surface.sources == [first, replacement]
    assert binder.bound_generation == 2
