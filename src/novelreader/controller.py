from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

from .book_io import Book, Progress
from .logging_utils import debug_log, warn
from .paging import DEFAULT_PAGE_SIZE, clamp_page, page_of, range_of, total_pages
from .progress import ProgressStore
from .speech import (
    DEFAULT_RATE,
    PlaybackError,
    SpeechEngine,
    Voice,
    VoiceUnavailableError,
    clamp_rate,
    select_voice,
)

if TYPE_CHECKING:
    from .config import ReaderSettings

PAGE_CHANGED = "page_changed"
HIGHLIGHT_CHANGED = "highlight_changed"
PROGRESS_CHANGED = "progress_changed"
STATE_CHANGED = "state_changed"
PLAYBACK_ERROR = "playback_error"
BOOK_CLOSED = "book_closed"

_NO_PENDING = object()


class PlaybackState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    PAUSED = "paused"


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[..., None]]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callable[..., None]) -> Callable[[], None]:
        self._listeners[event].append(callback)

        def unsubscribe() -> None:
            try:
                self._listeners[event].remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event: str, *args: object) -> None:
        for callback in list(self._listeners.get(event, ())):
            callback(*args)


@dataclass(slots=True)
class PlaybackSession:
    book: Book
    page: int
    cursor: int
    state: PlaybackState = PlaybackState.IDLE
    voice: Voice | None = None
    rate: float = DEFAULT_RATE
    highlight: int | None = None
    hidden_pause: bool = False


class PlaybackController:
    """
    Speech-synchronized reading state machine.

    One session per open book. While speaking, a single task dispatches
    paragraphs one at a time; each completion advances the cursor by one,
    moves the displayed page along and persists progress before the next
    dispatch. ``stop``/``pause`` cancel the task synchronously and bump a
    generation counter so a late completion can never advance the cursor.
    """

    def __init__(
        self,
        engine: SpeechEngine,
        store: ProgressStore,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        rate: float = DEFAULT_RATE,
        voice_name: str | None = None,
        voice_filter: str = "",
        settings: "ReaderSettings | None" = None,
        retry_on_voices: bool = True,
    ) -> None:
        if page_size <= 0:
            raise ValueError("Page size must be positive.")
        self.engine = engine
        self.store = store
        self.page_size = page_size
        self.settings = settings
        self.events = EventEmitter()
        self.session: PlaybackSession | None = None
        self.last_error: Exception | None = None
        self.retry_on_voices = retry_on_voices
        self._rate = clamp_rate(rate)
        self._voice_name = voice_name
        self._voice_filter = voice_filter
        self._voice: Voice | None = None
        self._task: asyncio.Task[None] | None = None
        self._generation = 0
        self._pending_start: object = _NO_PENDING
        self._retry_task: asyncio.Task[None] | None = None
        self._settled: asyncio.Event | None = None
        engine.on_voices_changed(self._handle_voices_changed)

    # ----- session -----

    @property
    def state(self) -> PlaybackState:
        if self.session is None:
            return PlaybackState.IDLE
        return self.session.state

    @property
    def book(self) -> Book | None:
        return self.session.book if self.session is not None else None

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def voice(self) -> Voice | None:
        return self._voice

    @property
    def voice_filter(self) -> str:
        return self._voice_filter

    def _require_session(self) -> PlaybackSession:
        if self.session is None:
            raise RuntimeError("No book is open.")
        return self.session

    def _settled_event(self) -> asyncio.Event:
        if self._settled is None:
            self._settled = asyncio.Event()
            if self.state is not PlaybackState.SPEAKING:
                self._settled.set()
        return self._settled

    def _page_for_progress(self, book: Book) -> int:
        total = len(book.paragraphs)
        if book.has_paragraph(book.progress.paragraph_index):
            return page_of(book.progress.paragraph_index, self.page_size)
        return clamp_page(book.progress.page, total, self.page_size)

    async def open_book(self, book: Book) -> PlaybackSession:
        if self.session is not None:
            await self.stop()
        page = self._page_for_progress(book)
        start, _ = range_of(page, self.page_size, len(book.paragraphs))
        cursor = book.progress.paragraph_index if book.has_paragraph(book.progress.paragraph_index) else start
        self.session = PlaybackSession(
            book=book,
            page=page,
            cursor=cursor,
            voice=self._voice,
            rate=self._rate,
        )
        self._pending_start = _NO_PENDING
        debug_log(f"opened {book.id} at page {page}, paragraph {cursor}")
        self.events.emit(PAGE_CHANGED, page)
        self.events.emit(STATE_CHANGED, PlaybackState.IDLE)
        return self.session

    async def close_book(self) -> None:
        if self.session is None:
            return
        await self.stop()
        book_id = self.session.book.id
        self.session = None
        self._pending_start = _NO_PENDING
        self.events.emit(BOOK_CLOSED, book_id)

    async def forget_book(self, book_id: str) -> bool:
        """Drop the session if it belongs to ``book_id`` (the book is being deleted)."""
        if self.session is None or self.session.book.id != book_id:
            return False
        await self.close_book()
        return True

    async def refresh(self) -> None:
        """Re-derive the displayed page after the book's progress changed elsewhere."""
        session = self._require_session()
        book = session.book
        if session.state is not PlaybackState.IDLE:
            await self._cancel_inflight()
            self._set_highlight(None)
            self._set_state(session, PlaybackState.IDLE)
        session.cursor = (
            book.progress.paragraph_index
            if book.has_paragraph(book.progress.paragraph_index)
            else range_of(session.page, self.page_size, len(book.paragraphs))[0]
        )
        self._show_page(self._page_for_progress(book))

    # ----- voices and rate -----

    def _resolve_voice(self, voices: list[Voice]) -> Voice | None:
        chosen = select_voice(voices, self._voice_filter, self._voice_name)
        if chosen is not None and chosen.name != self._voice_name:
            self._voice_name = chosen.name
            if self.settings is not None:
                self.settings.save_voice_name(chosen.name)
        self._voice = chosen
        if self.session is not None:
            self.session.voice = chosen
        return chosen

    async def voices(self, query: str | None = None) -> list[Voice]:
        voices = await self.engine.list_voices()
        if query is not None:
            self._voice_filter = query
            if self.settings is not None:
                self.settings.save_voice_filter(query)
        if voices:
            self._resolve_voice(voices)
        return voices

    async def set_voice(self, name: str) -> Voice:
        voices = await self.engine.list_voices()
        for voice in voices:
            if voice.name == name:
                self._voice_name = name
                self._voice = voice
                if self.session is not None:
                    self.session.voice = voice
                if self.settings is not None:
                    self.settings.save_voice_name(name)
                return voice
        raise LookupError(f"Voice not found: {name}")

    def set_rate(self, rate: float) -> float:
        self._rate = clamp_rate(rate)
        if self.session is not None:
            self.session.rate = self._rate
        if self.settings is not None:
            self.settings.save_rate(self._rate)
        return self._rate

    def _handle_voices_changed(self) -> None:
        if not self.retry_on_voices or self._pending_start is _NO_PENDING:
            return
        if self._retry_task is not None and not self._retry_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._retry_task = loop.create_task(self._retry_start())

    async def retry_pending(self) -> None:
        """Wait for a start that was rejected for lack of voices to be retried."""
        task = self._retry_task
        if task is not None and not task.done():
            await task
        elif self._pending_start is not _NO_PENDING:
            await self._retry_start()

    async def _retry_start(self) -> None:
        target = self._pending_start
        if target is _NO_PENDING or self.session is None:
            return
        if self.session.state is not PlaybackState.IDLE:
            self._pending_start = _NO_PENDING
            return
        debug_log("voices became available; retrying start")
        try:
            await self.start(target)  # type: ignore[arg-type]
        except VoiceUnavailableError:
            debug_log("still no voices after availability signal")

    # ----- transitions -----

    async def start(self, target_index: int | None = None) -> None:
        session = self._require_session()
        if not session.book.paragraphs:
            raise ValueError(f"Book has no paragraphs: {session.book.id}")
        if target_index is not None and not session.book.has_paragraph(target_index):
            raise IndexError(f"Paragraph {target_index} is out of range.")
        if target_index is None:
            if session.state is PlaybackState.SPEAKING:
                return
            if session.state is PlaybackState.PAUSED:
                await self.resume()
                return

        voices = await self.engine.list_voices()
        if not voices:
            self._pending_start = target_index
            raise VoiceUnavailableError("No speech voices are available yet.")
        self._pending_start = _NO_PENDING
        self._resolve_voice(voices)
        if target_index is None and session.state is PlaybackState.SPEAKING:
            # Another start won the race while voices were being listed.
            return

        if session.state is not PlaybackState.IDLE:
            await self.stop()
        session.cursor = self._resolve_start_cursor(session, target_index)
        self._launch(session)

    def _resolve_start_cursor(self, session: PlaybackSession, target_index: int | None) -> int:
        book = session.book
        if target_index is not None:
            return target_index
        if book.has_paragraph(book.progress.paragraph_index):
            return book.progress.paragraph_index
        start, _ = range_of(session.page, self.page_size, len(book.paragraphs))
        return start

    def _launch(self, session: PlaybackSession) -> None:
        self._generation += 1
        self.last_error = None
        session.hidden_pause = False
        session.voice = self._voice
        session.rate = self._rate
        self._set_state(session, PlaybackState.SPEAKING)
        self._task = asyncio.get_running_loop().create_task(self._run(session, self._generation))

    async def _run(self, session: PlaybackSession, generation: int) -> None:
        paragraphs = session.book.paragraphs
        while True:
            index = session.cursor
            self._show_page(page_of(index, self.page_size))
            self._set_highlight(index)
            await self._persist(session)
            if generation != self._generation:
                return
            try:
                await self.engine.speak(paragraphs[index], session.voice, session.rate)
            except Exception as exc:
                if generation != self._generation:
                    return
                if not isinstance(exc, PlaybackError):
                    exc = PlaybackError(str(exc) or type(exc).__name__)
                self._fail(session, exc)
                return
            if generation != self._generation:
                return
            if index + 1 >= len(paragraphs):
                self._set_highlight(None)
                await self._persist(session)
                if generation != self._generation:
                    return
                self._task = None
                self._generation += 1
                self._set_state(session, PlaybackState.IDLE)
                debug_log(f"finished {session.book.id}")
                return
            session.cursor = index + 1

    def _fail(self, session: PlaybackSession, exc: Exception) -> None:
        self._task = None
        self._generation += 1
        self.last_error = exc
        self._set_highlight(None)
        self._set_state(session, PlaybackState.IDLE)
        warn(f"Playback failed at paragraph {session.cursor}: {exc}")
        self.events.emit(PLAYBACK_ERROR, exc)

    async def _cancel_inflight(self) -> None:
        self._generation += 1
        task = self._task
        self._task = None
        self.engine.cancel()
        if task is None or task.done():
            return
        task.cancel()
        if task is not asyncio.current_task():
            await asyncio.wait({task})

    async def pause(self) -> None:
        session = self._require_session()
        if session.state is not PlaybackState.SPEAKING:
            return
        await self._cancel_inflight()
        self._set_state(session, PlaybackState.PAUSED)
        await self._persist(session)

    async def resume(self) -> None:
        session = self._require_session()
        if session.state is not PlaybackState.PAUSED:
            return
        self._launch(session)

    async def toggle(self) -> None:
        session = self._require_session()
        if session.state is PlaybackState.SPEAKING:
            await self.pause()
        elif session.state is PlaybackState.PAUSED:
            await self.resume()
        else:
            await self.start()

    async def stop(self) -> None:
        if self.session is None:
            return
        session = self.session
        await self._cancel_inflight()
        self._set_highlight(None)
        self._set_state(session, PlaybackState.IDLE)
        await self._persist(session)

    async def visibility_changed(self, hidden: bool) -> None:
        session = self._require_session()
        if hidden and session.state is PlaybackState.SPEAKING:
            await self.pause()
            session.hidden_pause = True
        elif not hidden and session.state is PlaybackState.PAUSED and session.hidden_pause:
            await self.resume()

    async def wait_idle(self) -> PlaybackState:
        await self._settled_event().wait()
        return self.state

    # ----- navigation -----

    async def jump_to(self, index: int) -> None:
        session = self._require_session()
        if not session.book.has_paragraph(index):
            raise IndexError(f"Paragraph {index} is out of range.")
        if session.state is PlaybackState.SPEAKING:
            await self.stop()
            await self.start(index)
            return
        if session.state is PlaybackState.PAUSED:
            await self.stop()
        session.cursor = index
        self._show_page(page_of(index, self.page_size))
        await self._persist(session)

    async def goto_page(self, page: int) -> int:
        session = self._require_session()
        total = len(session.book.paragraphs)
        target = clamp_page(page, total, self.page_size)
        start, end = range_of(target, self.page_size, total)
        if session.state is PlaybackState.SPEAKING:
            await self.stop()
            self._show_page(target)
            if start < end:
                await self.start(start)
            return target
        if session.state is PlaybackState.PAUSED:
            await self.stop()
        self._show_page(target)
        if not start <= session.cursor < end:
            session.cursor = start
        await self._persist(session)
        return target

    async def next_page(self) -> int:
        session = self._require_session()
        last = total_pages(len(session.book.paragraphs), self.page_size) - 1
        if session.page >= last:
            return session.page
        return await self.goto_page(session.page + 1)

    async def prev_page(self) -> int:
        session = self._require_session()
        if session.page <= 0:
            return session.page
        return await self.goto_page(session.page - 1)

    # ----- side effects -----

    def _set_state(self, session: PlaybackSession, state: PlaybackState) -> None:
        settled = self._settled_event()
        if state is PlaybackState.SPEAKING:
            settled.clear()
        else:
            settled.set()
        if session.state is state:
            return
        session.state = state
        self.events.emit(STATE_CHANGED, state)

    def _show_page(self, page: int) -> None:
        session = self._require_session()
        if session.page == page:
            return
        session.page = page
        self.events.emit(PAGE_CHANGED, page)

    def _set_highlight(self, index: int | None) -> None:
        session = self._require_session()
        if session.highlight == index:
            return
        session.highlight = index
        self.events.emit(HIGHLIGHT_CHANGED, index)

    async def _persist(self, session: PlaybackSession) -> None:
        if not session.book.paragraphs:
            return
        progress = Progress.at(session.cursor, self.page_size)
        try:
            await self.store.persist(session.book, progress)
        except OSError as exc:
            warn(f"Could not save progress for {session.book.id}: {exc}")
            return
        self.events.emit(PROGRESS_CHANGED, progress)


__all__ = [
    "PlaybackController",
    "PlaybackSession",
    "PlaybackState",
    "EventEmitter",
    "PAGE_CHANGED",
    "HIGHLIGHT_CHANGED",
    "PROGRESS_CHANGED",
    "STATE_CHANGED",
    "PLAYBACK_ERROR",
    "BOOK_CLOSED",
]
