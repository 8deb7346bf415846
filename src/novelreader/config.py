from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .library import Library
from .paging import DEFAULT_PAGE_SIZE
from .speech import DEFAULT_ENGINE_URL, DEFAULT_RATE, DEFAULT_SPEAKER_ID, clamp_rate

HOME_ENV = "NOVELREADER_HOME"
DEFAULT_HOME = Path("~/.novelreader")
DEFAULT_SYNC_DEBOUNCE = 3.0
DEFAULT_SYNC_TIMEOUT = 10.0

RATE_KEY = "selected_rate"
VOICE_NAME_KEY = "selected_voice_name"
VOICE_FILTER_KEY = "voice_filter"
SYNC_KEY = "sync"


@dataclass(slots=True)
class ReaderConfig:
    home: Path
    page_size: int = DEFAULT_PAGE_SIZE
    sync_debounce: float = DEFAULT_SYNC_DEBOUNCE
    sync_timeout: float = DEFAULT_SYNC_TIMEOUT
    engine_url: str = DEFAULT_ENGINE_URL
    engine_timeout: float = 30.0
    speaker: int = DEFAULT_SPEAKER_ID
    ffplay_path: str = "ffplay"

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError("Page size must be positive.")
        if self.sync_debounce < 0:
            raise ValueError("Sync debounce delay cannot be negative.")


def resolve_home(value: str | os.PathLike[str] | None = None) -> Path:
    if value:
        return Path(value).expanduser().resolve()
    env_value = os.environ.get(HOME_ENV)
    if env_value:
        return Path(env_value).expanduser().resolve()
    return DEFAULT_HOME.expanduser()


@dataclass(slots=True)
class SyncSettings:
    sync_url: str = ""
    sync_token: str = ""
    enabled: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.sync_url)

    def as_payload(self) -> dict[str, object]:
        return {"syncUrl": self.sync_url, "syncToken": self.sync_token, "enabled": self.enabled}


class ReaderSettings:
    """Global (not per-book) settings kept in the library's settings file."""

    def __init__(self, library: Library) -> None:
        self.library = library

    @property
    def rate(self) -> float:
        value = self.library.get_setting(RATE_KEY)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return DEFAULT_RATE
        return clamp_rate(value)

    def save_rate(self, rate: float) -> float:
        clamped = clamp_rate(rate)
        self.library.put_setting(RATE_KEY, clamped)
        return clamped

    @property
    def voice_name(self) -> str | None:
        value = self.library.get_setting(VOICE_NAME_KEY)
        return value if isinstance(value, str) and value else None

    def save_voice_name(self, name: str) -> None:
        self.library.put_setting(VOICE_NAME_KEY, name)

    @property
    def voice_filter(self) -> str:
        value = self.library.get_setting(VOICE_FILTER_KEY)
        return value if isinstance(value, str) else ""

    def save_voice_filter(self, query: str) -> None:
        self.library.put_setting(VOICE_FILTER_KEY, query)

    def sync(self) -> SyncSettings:
        raw = self.library.get_setting(SYNC_KEY)
        if not isinstance(raw, dict):
            return SyncSettings()
        url = raw.get("syncUrl")
        token = raw.get("syncToken")
        return SyncSettings(
            sync_url=url.rstrip("/") if isinstance(url, str) else "",
            sync_token=token if isinstance(token, str) else "",
            enabled=raw.get("enabled") is True,
        )

    def save_sync(self, settings: SyncSettings) -> None:
        self.library.put_setting(SYNC_KEY, settings.as_payload())


__all__ = [
    "ReaderConfig",
    "ReaderSettings",
    "SyncSettings",
    "resolve_home",
    "HOME_ENV",
]
