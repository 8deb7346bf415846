from __future__ import annotations

import asyncio
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

import requests

from .logging_utils import debug_log

DEFAULT_RATE = 1.0
RATE_CHOICES = tuple(round(step / 10, 1) for step in range(8, 21))
DEFAULT_ENGINE_URL = "http://127.0.0.1:50021"
DEFAULT_SPEAKER_ID = 2


class VoiceUnavailableError(RuntimeError):
    """Raised when playback is requested but the engine exposes no voices."""


class PlaybackError(RuntimeError):
    """Raised when the speech engine fails while speaking an utterance."""


class VoiceVoxError(RuntimeError):
    """Raised when the VoiceVox engine returns an unexpected response."""


class VoiceVoxUnavailableError(ConnectionError):
    """Raised when the VoiceVox engine is unreachable."""


@dataclass(frozen=True, slots=True)
class Voice:
    id: str
    name: str
    lang: str | None = None

    @property
    def label(self) -> str:
        return f"{self.name} ({self.lang})" if self.lang else self.name


def clamp_rate(rate: float) -> float:
    low, high = RATE_CHOICES[0], RATE_CHOICES[-1]
    return min(high, max(low, float(rate)))


def filter_voices(voices: Iterable[Voice], query: str = "") -> list[Voice]:
    needle = query.strip().casefold()
    if not needle:
        return list(voices)
    return [
        voice
        for voice in voices
        if needle in voice.name.casefold() or (voice.lang and needle in voice.lang.casefold())
    ]


def select_voice(
    voices: Iterable[Voice],
    query: str = "",
    saved_name: str | None = None,
) -> Voice | None:
    """Pick the saved voice if it survives the filter, else the first match."""
    candidates = filter_voices(voices, query)
    if saved_name:
        for voice in candidates:
            if voice.name == saved_name:
                return voice
    return candidates[0] if candidates else None


class SpeechEngine:
    """
    Platform speech capability.

    ``speak`` resolves when the utterance finishes and raises ``PlaybackError``
    on failure. Cancelling the awaiting task, or calling ``cancel``, stops the
    audio. Engines whose voice list fills in late call
    ``_notify_voices_changed`` once it changes.
    """

    def __init__(self) -> None:
        self._voice_listeners: list[Callable[[], None]] = []

    async def list_voices(self) -> list[Voice]:
        raise NotImplementedError

    async def speak(self, text: str, voice: Voice | None, rate: float) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError

    def on_voices_changed(self, callback: Callable[[], None]) -> None:
        self._voice_listeners.append(callback)

    def _notify_voices_changed(self) -> None:
        for callback in list(self._voice_listeners):
            callback()

    async def close(self) -> None:
        self.cancel()


class VoiceVoxClient:
    """
    Thin wrapper around the VoiceVox HTTP API.
    """

    def __init__(self, base_url: str = DEFAULT_ENGINE_URL, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def speakers(self) -> list[dict[str, object]]:
        try:
            resp = self._session.get(f"{self.base_url}/speakers", timeout=self.timeout)
        except requests.RequestException as exc:
            raise VoiceVoxUnavailableError(
                f"Failed to contact VoiceVox engine at {self.base_url}"
            ) from exc
        if resp.status_code != 200:
            raise VoiceVoxError(f"/speakers failed with status {resp.status_code}: {resp.text}")
        try:
            payload = resp.json()
        except json.JSONDecodeError as exc:
            raise VoiceVoxError("VoiceVox returned invalid JSON for /speakers") from exc
        if not isinstance(payload, list):
            raise VoiceVoxError("VoiceVox returned an unexpected /speakers payload")
        return [entry for entry in payload if isinstance(entry, dict)]

    def _post(
        self,
        endpoint: str,
        params: dict[str, object],
        payload: dict | None = None,
    ) -> requests.Response:
        try:
            resp = self._session.post(
                f"{self.base_url}{endpoint}",
                params=params,
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise VoiceVoxUnavailableError(
                f"VoiceVox engine at {self.base_url} did not answer {endpoint}"
            ) from exc
        if resp.status_code != 200:
            raise VoiceVoxError(f"{endpoint} returned {resp.status_code}: {resp.text}")
        return resp

    def audio_query(self, text: str, speaker_id: int, speed_scale: float | None = None) -> dict:
        resp = self._post("/audio_query", {"text": text, "speaker": speaker_id})
        try:
            query = resp.json()
        except ValueError as exc:
            raise VoiceVoxError("/audio_query did not return JSON") from exc
        if not isinstance(query, dict):
            raise VoiceVoxError("/audio_query returned an unexpected payload")
        if speed_scale is not None:
            query["speedScale"] = float(speed_scale)
        return query

    def synthesize_wav(self, text: str, speaker_id: int, speed_scale: float | None = None) -> bytes:
        """Render one paragraph to WAV bytes at the given speaking rate."""
        query = self.audio_query(text, speaker_id, speed_scale)
        return self._post("/synthesis", {"speaker": speaker_id}, query).content

    def close(self) -> None:
        self._session.close()


def voices_from_speakers(speakers: Iterable[dict[str, object]]) -> list[Voice]:
    voices: list[Voice] = []
    for speaker in speakers:
        speaker_name = speaker.get("name")
        styles = speaker.get("styles")
        if not isinstance(speaker_name, str) or not isinstance(styles, list):
            continue
        for style in styles:
            if not isinstance(style, dict):
                continue
            style_id = style.get("id")
            if isinstance(style_id, bool) or not isinstance(style_id, int):
                continue
            style_name = style.get("name")
            name = f"{speaker_name} {style_name}" if isinstance(style_name, str) else speaker_name
            voices.append(Voice(id=str(style_id), name=name, lang="ja"))
    return voices


class VoiceVoxSpeech(SpeechEngine):
    """Speak through a VoiceVox engine, playing each utterance with ffplay."""

    def __init__(
        self,
        client: VoiceVoxClient,
        *,
        ffplay_path: str = "ffplay",
        default_speaker: int = DEFAULT_SPEAKER_ID,
    ) -> None:
        super().__init__()
        self.client = client
        self.ffplay_path = ffplay_path
        self.default_speaker = default_speaker
        self._voices: list[Voice] = []
        self._process: asyncio.subprocess.Process | None = None
        self._killed: asyncio.subprocess.Process | None = None

    async def list_voices(self) -> list[Voice]:
        try:
            speakers = await asyncio.to_thread(self.client.speakers)
        except (VoiceVoxError, VoiceVoxUnavailableError) as exc:
            debug_log(f"voice enumeration failed: {exc}")
            return []
        voices = voices_from_speakers(speakers)
        if voices != self._voices:
            changed = bool(voices) and not self._voices
            self._voices = voices
            if changed:
                self._notify_voices_changed()
        return list(voices)

    async def watch_voices(self, interval: float = 1.0, timeout: float | None = None) -> bool:
        """Poll the engine until it reports voices; returns False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if await self.list_voices():
                return True
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(interval)

    def _speaker_for(self, voice: Voice | None) -> int:
        if voice is None:
            return self.default_speaker
        try:
            return int(voice.id)
        except ValueError:
            return self.default_speaker

    async def speak(self, text: str, voice: Voice | None, rate: float) -> None:
        speaker = self._speaker_for(voice)
        try:
            wav_bytes = await asyncio.to_thread(self.client.synthesize_wav, text, speaker, rate)
        except (VoiceVoxError, VoiceVoxUnavailableError) as exc:
            raise PlaybackError(str(exc)) from exc

        fd, tmp_name = tempfile.mkstemp(prefix="novelreader-", suffix=".wav")
        wav_path = Path(tmp_name)
        with os.fdopen(fd, "wb") as fh:
            fh.write(wav_bytes)
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    self.ffplay_path,
                    "-nodisp",
                    "-autoexit",
                    "-loglevel",
                    "error",
                    str(wav_path),
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                raise PlaybackError(f"Failed to launch {self.ffplay_path}: {exc}") from exc
            self._process = process
            try:
                _, stderr = await process.communicate()
            except asyncio.CancelledError:
                self._terminate(process)
                raise
            finally:
                if self._process is process:
                    self._process = None
                killed = self._killed is process
                if killed:
                    self._killed = None
            if killed:
                raise asyncio.CancelledError()
            if process.returncode not in (0, None):
                message = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
                raise PlaybackError(
                    f"{self.ffplay_path} exited with status {process.returncode}: {message}"
                )
        finally:
            wav_path.unlink(missing_ok=True)

    @staticmethod
    def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def cancel(self) -> None:
        process = self._process
        self._process = None
        if process is not None:
            self._killed = process
            self._terminate(process)

    async def close(self) -> None:
        self.cancel()
        self.client.close()


__all__ = [
    "DEFAULT_RATE",
    "RATE_CHOICES",
    "Voice",
    "SpeechEngine",
    "VoiceVoxClient",
    "VoiceVoxSpeech",
    "VoiceUnavailableError",
    "PlaybackError",
    "VoiceVoxError",
    "VoiceVoxUnavailableError",
    "clamp_rate",
    "filter_voices",
    "select_voice",
    "voices_from_speakers",
]
