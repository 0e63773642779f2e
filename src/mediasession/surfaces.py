"""Rendering surfaces that need no UI toolkit."""

from __future__ import annotations

from typing import Any

import cv2

from .media import MediaStreamHandle


class PreviewSurface:
    """Headless surface exposing the bound stream's newest frame.

    Anything with ``set_source`` can be bound; this one backs still
    previews served over HTTP.
    """

    def __init__(self, name: str = "preview") -> None:
        self.name = name
        self.source: MediaStreamHandle | None = None
        self.attachments = 0

    def set_source(self, handle: MediaStreamHandle | None) -> None:
        self.source = handle
        if handle is not None:
            self.attachments += 1

    def snapshot(self) -> Any | None:
        if self.source is None:
            return None
        return self.source.latest_frame()

    def jpeg(self, quality: int = 85) -> bytes | None:
        frame = self.snapshot()
        if frame is None:
            return None
        ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
        if not ok:
            raise RuntimeError(f"JPEG encoding failed for surface '{self.name}'")
        return buffer.tobytes()
