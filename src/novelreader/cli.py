from __future__ import annotations

import argparse
import asyncio
import sys
import threading
from importlib import metadata
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from .book_io import Book, Progress, ingest_file, reingest
from .config import ReaderConfig, ReaderSettings, resolve_home
from .controller import (
    HIGHLIGHT_CHANGED,
    PAGE_CHANGED,
    PLAYBACK_ERROR,
    PlaybackController,
    PlaybackState,
)
from .library import Library
from .logging_utils import build_uvicorn_log_config, set_debug_logging
from .paging import DEFAULT_PAGE_SIZE, clamp_page, page_of, percent_read, range_of, total_pages
from .progress import ProgressStore, RemoteMirror
from .search import search
from .server import ServerConfig, create_app, hash_token
from .speech import (
    RATE_CHOICES,
    PlaybackError,
    VoiceUnavailableError,
    VoiceVoxClient,
    VoiceVoxSpeech,
    filter_voices,
)
from .sync import (
    NetworkFailureError,
    SyncClient,
    SyncError,
    SyncReconciler,
    UnauthorizedError,
    configure_sync,
)

try:
    __version__ = metadata.version("novelreader")
except metadata.PackageNotFoundError:
    __version__ = "0.0.0+unknown"

console = Console()
err_console = Console(stderr=True)


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"novelreader {__version__}",
    )


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--home",
        help="Data directory for books and settings (default: $NOVELREADER_HOME or ~/.novelreader).",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=DEFAULT_PAGE_SIZE,
        help=f"Paragraphs per page (default: {DEFAULT_PAGE_SIZE}).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging (sync requests, playback transitions).",
    )


def _add_engine_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--engine-url",
        default="http://127.0.0.1:50021",
        help="Base URL for the VoiceVox engine (default: http://127.0.0.1:50021).",
    )
    parser.add_argument(
        "--engine-wait",
        type=float,
        default=30.0,
        help="Seconds to wait for the engine to report voices (default: 30).",
    )
    parser.add_argument(
        "--speaker",
        type=int,
        default=2,
        help="VoiceVox speaker ID used when no voice is selected (default: 2).",
    )
    parser.add_argument(
        "--ffplay",
        default="ffplay",
        help="Path to ffplay executable (default: ffplay).",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelreader",
        description=(
            "Plain-text reader with paged display, text-to-speech playback and progress sync. "
            "Commands: add, list, delete, show, search, read, voices, sync-config, sync, serve, hash-token."
        ),
    )
    _add_version_flag(ap)
    return ap


def build_add_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelreader add", description="Add a .txt file to the library.")
    _add_common_options(ap)
    ap.add_argument("path", help="Path to a plain-text file.")
    return ap


def build_list_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelreader list", description="List books in the library.")
    _add_common_options(ap)
    ap.add_argument(
        "--sort",
        choices=["name", "recent"],
        default="name",
        help="Sort by display name or by last update (default: name).",
    )
    return ap


def build_delete_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelreader delete", description="Remove a book from the library.")
    _add_common_options(ap)
    ap.add_argument("book_id", help="Book id (the file name it was added from).")
    ap.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation.")
    return ap


def build_show_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelreader show", description="Print one page of a book.")
    _add_common_options(ap)
    ap.add_argument("book_id", nargs="?", help="Book id (default: last read book).")
    ap.add_argument("--page", type=int, help="1-based page number (default: page of saved progress).")
    return ap


def build_search_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelreader search", description="Search paragraphs of a book.")
    _add_common_options(ap)
    ap.add_argument("book_id", help="Book id.")
    ap.add_argument("query", help="Case-insensitive text to look for.")
    ap.add_argument(
        "--go",
        type=int,
        metavar="N",
        help="Move the saved progress to the N-th result (1-based).",
    )
    return ap


def build_read_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelreader read", description="Read a book aloud.")
    _add_common_options(ap)
    _add_engine_options(ap)
    ap.add_argument("book_id", nargs="?", help="Book id (default: last read book).")
    start = ap.add_mutually_exclusive_group()
    start.add_argument("--paragraph", type=int, help="1-based paragraph to start from.")
    start.add_argument("--page", type=int, help="1-based page to start from.")
    ap.add_argument(
        "--rate",
        type=float,
        help=f"Speaking rate between {RATE_CHOICES[0]} and {RATE_CHOICES[-1]} (saved as default).",
    )
    ap.add_argument(
        "-i",
        "--interactive",
        action="store_true",
        help="Read commands from stdin: p (pause/resume), s (stop), n/b (next/previous page), j N (jump), q (quit).",
    )
    return ap


def build_voices_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelreader voices", description="List or select speech voices.")
    _add_common_options(ap)
    _add_engine_options(ap)
    ap.add_argument("--filter", help="Only show voices whose name or language contains this text (saved).")
    ap.add_argument("--select", metavar="NAME", help="Remember NAME as the voice to use.")
    return ap


def build_sync_config_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelreader sync-config",
        description="Configure the progress sync service (a health check runs before saving).",
    )
    _add_common_options(ap)
    ap.add_argument("url", nargs="?", help="Sync service base URL.")
    ap.add_argument("token", nargs="?", default="", help="Bearer token for the sync service.")
    toggle = ap.add_mutually_exclusive_group()
    toggle.add_argument("--on", action="store_true", help="Enable sync with the saved settings.")
    toggle.add_argument("--off", action="store_true", help="Disable background sync.")
    ap.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds (default: 10).")
    return ap


def build_sync_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelreader sync",
        description="Fetch remote progress for a book, adopt it if ahead, then push local state.",
    )
    _add_common_options(ap)
    ap.add_argument("book_id", nargs="?", help="Book id (default: last read book).")
    ap.add_argument("-y", "--yes", action="store_true", help="Adopt remote progress without asking.")
    ap.add_argument("--no-push", action="store_true", help="Only fetch; do not push local progress.")
    ap.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds (default: 10).")
    return ap


def build_serve_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelreader serve",
        description=(
            "Run the progress sync service. Requires NOVELREADER_SECRET_KEY and "
            "NOVELREADER_TOKEN_HASH (see `novelreader hash-token`)."
        ),
    )
    ap.add_argument("--host", default="0.0.0.0", help="Host interface (default: 0.0.0.0).")
    ap.add_argument("--port", type=int, default=8000, help="Port (default: 8000).")
    ap.add_argument("--database", help="SQLite database path (default: ./novelreader-sync.sqlite).")
    ap.add_argument("--debug", action="store_true", help="Log requests at debug level.")
    return ap


def build_hash_token_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelreader hash-token",
        description="Print the token hash the sync service expects in NOVELREADER_TOKEN_HASH.",
    )
    ap.add_argument("secret_key", help="Value of NOVELREADER_SECRET_KEY.")
    ap.add_argument("token", help="Bearer token clients will send.")
    return ap


def _config_from_args(args: argparse.Namespace) -> ReaderConfig:
    set_debug_logging(bool(getattr(args, "debug", False)))
    return ReaderConfig(
        home=resolve_home(getattr(args, "home", None)),
        page_size=args.page_size,
        sync_timeout=getattr(args, "timeout", 10.0),
        engine_url=getattr(args, "engine_url", "http://127.0.0.1:50021"),
        speaker=getattr(args, "speaker", 2),
        ffplay_path=getattr(args, "ffplay", "ffplay"),
    )


def _resolve_book(library: Library, book_id: str | None) -> Book:
    resolved = book_id or library.last_book_id()
    if not resolved:
        raise SystemExit("No book given and no last read book recorded.")
    book = library.get_book(resolved)
    if book is None:
        raise SystemExit(f"Book not found: {resolved}")
    return book


def _print_page(book: Book, page: int, page_size: int, *, highlight: int | None = None) -> None:
    total = len(book.paragraphs)
    start, end = range_of(page, page_size, total)
    console.rule(f"{book.name} · page {page + 1} / {total_pages(total, page_size)}")
    for index in range(start, end):
        marker = "▶" if index == highlight else " "
        console.print(f"{marker} [dim]{index + 1:>5}[/dim] {book.paragraphs[index]}", highlight=False)
    console.print(f"[dim]Progress: {percent_read(page, page_size, total)}%[/dim]")


def _run_add(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    library = Library(config.home)
    path = Path(args.path).expanduser()
    book = ingest_file(path, page_size=config.page_size)
    existing = library.get_book(book.id)
    if existing is not None:
        book = reingest(existing, book.text, page_size=config.page_size)
        verb = "Updated"
    else:
        verb = "Added"
    library.put_book(book)
    pages = total_pages(len(book.paragraphs), config.page_size)
    console.print(f"{verb} [bold]{book.name}[/bold] ({len(book.paragraphs)} paragraphs, {pages} pages).")
    return 0


def _run_list(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    library = Library(config.home)
    books = library.list_books(args.sort)
    if not books:
        console.print("Library is empty. Add a book with `novelreader add FILE`.")
        return 0
    last_id = library.last_book_id()
    table = Table(show_edge=False)
    table.add_column("")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Page", justify="right")
    table.add_column("Read", justify="right")
    table.add_column("Synced")
    for book in books:
        total = len(book.paragraphs)
        page = page_of(book.progress.paragraph_index, config.page_size)
        table.add_row(
            "*" if book.id == last_id else "",
            book.id,
            book.name,
            f"{page + 1}/{total_pages(total, config.page_size)}",
            f"{percent_read(page, config.page_size, total)}%",
            "yes" if book.synced else "no",
        )
    console.print(table)
    return 0


def _run_delete(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    library = Library(config.home)
    book = library.get_book(args.book_id)
    if book is None:
        raise SystemExit(f"Book not found: {args.book_id}")
    if not args.yes and not Confirm.ask(f"Delete [bold]{book.name}[/bold]?", default=False):
        return 1
    library.delete_book(book.id)
    console.print(f"Deleted {book.name}.")
    return 0


def _run_show(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    library = Library(config.home)
    book = _resolve_book(library, args.book_id)
    total = len(book.paragraphs)
    if args.page is not None:
        page = clamp_page(args.page - 1, total, config.page_size)
    else:
        page = clamp_page(page_of(book.progress.paragraph_index, config.page_size), total, config.page_size)
    _print_page(book, page, config.page_size, highlight=book.progress.paragraph_index)
    return 0


def _run_search(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    library = Library(config.home)
    book = _resolve_book(library, args.book_id)
    hits = search(book.paragraphs, args.query)
    if not hits:
        console.print("No matches found.")
        return 1
    for number, hit in enumerate(hits, start=1):
        page = page_of(hit.paragraph_index, config.page_size)
        console.print(
            f"[bold]{number:>3}[/bold] [dim]p{page + 1} ¶{hit.paragraph_index + 1}[/dim] {hit.text}",
            highlight=False,
        )
    if args.go is not None:
        if not 1 <= args.go <= len(hits):
            raise SystemExit(f"--go must be between 1 and {len(hits)}.")
        target = hits[args.go - 1].paragraph_index
        book.progress = Progress.at(target, config.page_size)
        library.put_book(book)
        library.set_last_book(book.id)
        console.print(f"Progress moved to paragraph {target + 1}.")
    return 0


def _build_engine(config: ReaderConfig) -> VoiceVoxSpeech:
    client = VoiceVoxClient(config.engine_url, timeout=config.engine_timeout)
    return VoiceVoxSpeech(client, ffplay_path=config.ffplay_path, default_speaker=config.speaker)


def _build_store(config: ReaderConfig, library: Library, settings: ReaderSettings) -> ProgressStore:
    store = ProgressStore(library)
    sync_settings = settings.sync()
    if sync_settings.configured and sync_settings.enabled:
        client = SyncClient.from_settings(sync_settings, timeout=config.sync_timeout)
        reconciler = SyncReconciler(client, store, page_size=config.page_size)
        store.attach_mirror(RemoteMirror(reconciler.push, config.sync_debounce))
    return store


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None]) -> None:
    def pump() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.strip())
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=pump, name="novelreader-stdin", daemon=True).start()


async def _interactive_commands(controller: PlaybackController) -> None:
    queue: asyncio.Queue[str | None] = asyncio.Queue()
    _start_stdin_reader(asyncio.get_running_loop(), queue)
    while True:
        line = await queue.get()
        if line is None or line in {"q", "quit"}:
            return
        command, _, argument = line.partition(" ")
        try:
            if command in {"p", ""}:
                await controller.toggle()
            elif command == "s":
                await controller.stop()
            elif command == "n":
                await controller.next_page()
            elif command == "b":
                await controller.prev_page()
            elif command == "j":
                await controller.jump_to(int(argument) - 1)
            else:
                err_console.print(f"Unknown command: {line}")
        except (ValueError, IndexError) as exc:
            err_console.print(f"[red]{exc}[/red]")
        except VoiceUnavailableError as exc:
            err_console.print(f"[red]{exc}[/red]")


async def _read_async(args: argparse.Namespace, config: ReaderConfig) -> int:
    library = Library(config.home)
    settings = ReaderSettings(library)
    book = _resolve_book(library, args.book_id)
    if not book.paragraphs:
        raise SystemExit(f"Book has no text: {book.id}")
    if args.rate is not None:
        settings.save_rate(args.rate)

    engine = _build_engine(config)
    store = _build_store(config, library, settings)
    controller = PlaybackController(
        engine,
        store,
        page_size=config.page_size,
        rate=settings.rate,
        voice_name=settings.voice_name,
        voice_filter=settings.voice_filter,
        settings=settings,
    )
    total = len(book.paragraphs)

    def on_page(page: int) -> None:
        console.rule(f"{book.name} · page {page + 1} / {total_pages(total, config.page_size)}")

    def on_highlight(index: int | None) -> None:
        if index is not None:
            console.print(f"[dim]{index + 1:>5}[/dim] {book.paragraphs[index]}", highlight=False)

    def on_error(exc: Exception) -> None:
        err_console.print(f"[red]Playback stopped: {exc}[/red]")

    controller.events.subscribe(PAGE_CHANGED, on_page)
    controller.events.subscribe(HIGHLIGHT_CHANGED, on_highlight)
    controller.events.subscribe(PLAYBACK_ERROR, on_error)

    target: int | None = None
    if args.paragraph is not None:
        target = min(max(0, args.paragraph - 1), total - 1)
    elif args.page is not None:
        target = range_of(clamp_page(args.page - 1, total, config.page_size), config.page_size, total)[0]

    await controller.open_book(book)
    try:
        try:
            await controller.start(target)
        except VoiceUnavailableError:
            err_console.print("Waiting for the speech engine to report voices...")
            if not await engine.watch_voices(timeout=args.engine_wait):
                raise SystemExit("No speech voices available; is the VoiceVox engine running?")
            await controller.retry_pending()
            if controller.state is PlaybackState.IDLE:
                raise SystemExit("Speech voices appeared but playback could not start.")
        if args.interactive:
            await _interactive_commands(controller)
        else:
            await controller.wait_idle()
    finally:
        await controller.stop()
        await store.close()
        await engine.close()
    if isinstance(controller.last_error, PlaybackError):
        return 1
    return 0


def _run_read(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    try:
        return asyncio.run(_read_async(args, config))
    except KeyboardInterrupt:
        console.print("\nStopped.")
        return 130


async def _voices_async(args: argparse.Namespace, config: ReaderConfig) -> int:
    library = Library(config.home)
    settings = ReaderSettings(library)
    engine = _build_engine(config)
    controller = PlaybackController(
        engine,
        ProgressStore(library),
        page_size=config.page_size,
        rate=settings.rate,
        voice_name=settings.voice_name,
        voice_filter=settings.voice_filter,
        settings=settings,
        retry_on_voices=False,
    )
    try:
        voices = await controller.voices(args.filter)
        if voices and args.select:
            try:
                await controller.set_voice(args.select)
            except LookupError as exc:
                raise SystemExit(str(exc)) from exc
    finally:
        await engine.close()
    if not voices:
        err_console.print("No voices reported; is the VoiceVox engine running?")
        return 1
    selected = controller.voice
    for voice in filter_voices(voices, controller.voice_filter):
        marker = "*" if voice == selected else " "
        console.print(f"{marker} {voice.label} [dim]#{voice.id}[/dim]", highlight=False)
    return 0


def _run_voices(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    return asyncio.run(_voices_async(args, config))


def _run_sync_config(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    settings = ReaderSettings(Library(config.home))
    current = settings.sync()
    if args.on or args.off:
        if not current.configured:
            raise SystemExit("Sync is not configured yet; pass a URL and token first.")
        current.enabled = bool(args.on)
        settings.save_sync(current)
        console.print(f"Sync {'enabled' if current.enabled else 'disabled'}.")
        return 0
    if not args.url:
        if current.configured:
            state = "enabled" if current.enabled else "disabled"
            console.print(f"{current.sync_url} ({state})")
        else:
            console.print("Sync is not configured.")
        return 0
    try:
        saved = asyncio.run(configure_sync(settings, args.url, args.token, timeout=config.sync_timeout))
    except UnauthorizedError as exc:
        err_console.print(f"[red]The sync service rejected the token: {exc}[/red]")
        return 1
    except (NetworkFailureError, SyncError) as exc:
        err_console.print(f"[red]Health check failed, check the sync URL: {exc}[/red]")
        return 1
    console.print(f"Sync settings saved for {saved.sync_url}.")
    return 0


async def _sync_async(args: argparse.Namespace, config: ReaderConfig) -> int:
    library = Library(config.home)
    settings = ReaderSettings(library)
    sync_settings = settings.sync()
    if not sync_settings.configured:
        raise SystemExit("Sync is not configured; run `novelreader sync-config URL TOKEN`.")
    book = _resolve_book(library, args.book_id)
    store = ProgressStore(library)
    client = SyncClient.from_settings(sync_settings, timeout=config.sync_timeout)
    reconciler = SyncReconciler(client, store, page_size=config.page_size)

    async def confirm(local: Progress, remote: Progress) -> bool:
        if args.yes:
            return True
        question = (
            f"Remote progress is ahead (paragraph {remote.paragraph_index + 1}, page {remote.page + 1}; "
            f"local paragraph {local.paragraph_index + 1}, page {local.page + 1}). Jump to it?"
        )
        return await asyncio.to_thread(Confirm.ask, question, default=True)

    before = book.progress
    try:
        book = await reconciler.reconcile(book, confirm)
        if book.progress != before:
            console.print(f"Adopted remote progress: paragraph {book.progress.paragraph_index + 1}.")
        else:
            console.print("Local progress kept.")
        if not args.no_push:
            await reconciler.push(book)
            console.print("Local progress pushed.")
    except UnauthorizedError as exc:
        err_console.print(f"[red]The sync service rejected the token, reconfigure sync: {exc}[/red]")
        return 1
    except NetworkFailureError as exc:
        err_console.print(f"[red]Sync service unreachable: {exc}[/red]")
        return 1
    except SyncError as exc:
        err_console.print(f"[red]Sync failed: {exc}[/red]")
        return 1
    finally:
        client.close()
    return 0


def _run_sync(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    return asyncio.run(_sync_async(args, config))


def _run_serve(args: argparse.Namespace) -> int:
    set_debug_logging(args.debug)
    database = Path(args.database).expanduser() if args.database else None
    config = ServerConfig.from_env(database)
    if not config.secret_key or not config.token_hash:
        err_console.print(
            "[yellow]NOVELREADER_SECRET_KEY / NOVELREADER_TOKEN_HASH are not set; "
            "every request will be rejected with 401.[/yellow]"
        )
    app = create_app(config)
    print(f"Serving novelreader sync from {config.database}")
    print(f"Sync URL: http://{args.host}:{args.port}")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(app, host=args.host, port=args.port, log_config=build_uvicorn_log_config())
    return 0


def _run_hash_token(args: argparse.Namespace) -> int:
    print(hash_token(args.secret_key, args.token))
    return 0


_COMMANDS = {
    "add": (build_add_parser, _run_add),
    "list": (build_list_parser, _run_list),
    "ls": (build_list_parser, _run_list),
    "delete": (build_delete_parser, _run_delete),
    "rm": (build_delete_parser, _run_delete),
    "show": (build_show_parser, _run_show),
    "search": (build_search_parser, _run_search),
    "read": (build_read_parser, _run_read),
    "voices": (build_voices_parser, _run_voices),
    "sync-config": (build_sync_config_parser, _run_sync_config),
    "sync": (build_sync_parser, _run_sync),
    "serve": (build_serve_parser, _run_serve),
    "hash-token": (build_hash_token_parser, _run_hash_token),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] in _COMMANDS:
        build, run = _COMMANDS[argv[0]]
        args = build().parse_args(argv[1:])
        try:
            return run(args)
        except (FileNotFoundError, ValueError) as exc:
            err_console.print(f"[red]{exc}[/red]")
            return 1

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    parser.error(f"unknown command: {argv[0]}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
