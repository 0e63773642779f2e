"""Configuration loading helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .media import MediaConstraints

LIVEKIT_URL_PATTERN = re.compile(r"^wss?://[\w.-]+(:\d+)?(/[\w./-]*)?$")
IDENTITY_PATTERN = re.compile(r"^[\w.@-]+$")
FACING_MODES = ("user", "environment")


@dataclass(slots=True, frozen=True)
class CaptureSettings:
    device_index: int
    width: int | None
    height: int | None
    frame_rate: float | None
    facing_mode: str | None
    audio: bool
    read_failure_limit: int

    def constraints(self) -> MediaConstraints:
        return MediaConstraints(
            video=True,
            audio=self.audio,
            width=self.width,
            height=self.height,
            frame_rate=self.frame_rate,
            facing_mode=self.facing_mode,
        )


@dataclass(slots=True, frozen=True)
class LiveKitSettings:
    url: str
    identity: str
    token_ttl_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    capture: CaptureSettings
    acquire_timeout: float
    livekit: LiveKitSettings | None = None


def load_settings(path: Path) -> Settings:
    """Load configuration from a YAML document."""

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    settings_raw = raw.get("settings") or {}
    capture_raw = settings_raw.get("capture") or {}

    capture = CaptureSettings(
        device_index=_optional_int(capture_raw, "device_index", 0),
        width=_optional_positive_int(capture_raw, "width"),
        height=_optional_positive_int(capture_raw, "height"),
        frame_rate=_optional_positive_float(capture_raw, "frame_rate"),
        facing_mode=_optional_facing_mode(capture_raw, "facing_mode"),
        audio=bool(capture_raw.get("audio", False)),
        read_failure_limit=_optional_int(capture_raw, "read_failure_limit", 30),
    )
    if capture.read_failure_limit <= 0:
        raise ValueError("settings.capture.read_failure_limit must be > 0")

    timeout = float(settings_raw.get("acquire_timeout_seconds", 30))
    if timeout <= 0:
        raise ValueError("settings.acquire_timeout_seconds must be > 0")

    livekit_raw = settings_raw.get("livekit")
    livekit = _load_livekit(livekit_raw) if livekit_raw else None

    return Settings(capture=capture, acquire_timeout=timeout, livekit=livekit)


def _load_livekit(source: dict[str, Any]) -> LiveKitSettings:
    url = _require_str(source, "url")
    if not LIVEKIT_URL_PATTERN.fullmatch(url):
        raise ValueError("Field 'url' must be a ws:// or wss:// URL")

    identity = _require_str(source, "identity")
    if not IDENTITY_PATTERN.fullmatch(identity):
        raise ValueError(
            "Field 'identity' must only contain letters, numbers, dots, underscores, '@' or hyphens"
        )

    ttl = _optional_positive_float(source, "token_ttl_seconds") or 3600.0
    return LiveKitSettings(url=url, identity=identity, token_ttl_seconds=ttl)


def _require_str(source: dict[str, Any], key: str) -> str:
    value = source.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Field '{key}' must be a non-empty string")
    return value.strip()


def _optional_int(source: dict[str, Any], key: str, default: int) -> int:
    value = source.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field '{key}' must be an integer") from exc


def _optional_positive_int(source: dict[str, Any], key: str) -> int | None:
    if source.get(key) is None:
        return None
    value = _optional_int(source, key, 0)
    if value <= 0:
        raise ValueError(f"Field '{key}' must be > 0")
    return value


def _optional_positive_float(source: dict[str, Any], key: str) -> float | None:
    value = source.get(key)
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field '{key}' must be numeric") from exc
    if number <= 0:
        raise ValueError(f"Field '{key}' must be > 0")
    return number


def _optional_facing_mode(source: dict[str, Any], key: str) -> str | None:
    value = source.get(key)
    if value is None:
        return None
    if value not in FACING_MODES:
        raise ValueError(f"Field '{key}' must be one of: {', '.join(FACING_MODES)}")
    return value
