from __future__ import annotations

import asyncio
import json

import pytest
import requests

from conftest import make_book
from novelreader.book_io import Progress
from novelreader.config import ReaderSettings
from novelreader.sync import (
    InvalidInputError,
    NetworkFailureError,
    SyncClient,
    SyncError,
    SyncReconciler,
    UnauthorizedError,
    configure_sync,
)


class DummyResponse:
    def __init__(self, status_code: int, payload: object | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    def __init__(self, routes: dict[tuple[str, str], DummyResponse] | None = None) -> None:
        self.routes = routes or {}
        self.calls: list[tuple[str, str, object]] = []
        self.headers: list[dict[str, str]] = []
        self.closed = False

    def request(self, method, url, headers=None, json=None, timeout=None):
        path = url.split("://", 1)[1].split("/", 1)[1]
        path = "/" + path
        self.calls.append((method, path, json))
        self.headers.append(headers or {})
        response = self.routes.get((method, path))
        if isinstance(response, Exception):
            raise response
        return response or DummyResponse(404, {"error": "Not Found"})

    def close(self) -> None:
        self.closed = True


def _client(monkeypatch, session: DummySession) -> SyncClient:
    monkeypatch.setattr("novelreader.sync.requests.Session", lambda: session)
    return SyncClient("https://sync.example/", "secret-token", timeout=1.0)


def test_fetch_progress_sends_bearer_and_parses(monkeypatch) -> None:
    session = DummySession(
        {("GET", "/sync/book.txt"): DummyResponse(200, {"bookId": "book.txt", "progress": {"page": 3, "paragraphIndex": 70}})}
    )
    client = _client(monkeypatch, session)

    assert client.fetch_progress("book.txt") == Progress(3, 70)
    assert session.headers[0]["Authorization"] == "Bearer secret-token"
    assert client.base_url == "https://sync.example"


def test_fetch_progress_quotes_book_id(monkeypatch) -> None:
    session = DummySession()
    client = _client(monkeypatch, session)

    assert client.fetch_progress("dir/小説.txt") is None
    assert session.calls[0][1] == "/sync/dir%2F%E5%B0%8F%E8%AA%AC.txt"


def test_status_codes_map_to_errors(monkeypatch) -> None:
    session = DummySession(
        {
            ("GET", "/health"): DummyResponse(401, {"error": "Unauthorized: Invalid token"}),
            ("POST", "/sync"): DummyResponse(400, {"error": "Invalid request body"}),
            ("POST", "/book"): DummyResponse(500, None),
        }
    )
    client = _client(monkeypatch, session)

    with pytest.raises(UnauthorizedError, match="Invalid token"):
        client.health()
    with pytest.raises(InvalidInputError, match="Invalid request body"):
        client.push_progress("a.txt", Progress(0, 1))
    with pytest.raises(SyncError):
        client.push_book("a.txt", "text")


def test_connection_errors_become_network_failures(monkeypatch) -> None:
    session = DummySession({("GET", "/health"): requests.ConnectionError("refused")})
    client = _client(monkeypatch, session)

    with pytest.raises(NetworkFailureError):
        client.health()


def test_client_validates_inputs_before_sending(monkeypatch) -> None:
    session = DummySession()
    client = _client(monkeypatch, session)

    with pytest.raises(InvalidInputError):
        client.push_book("", "text")
    with pytest.raises(InvalidInputError):
        client.push_progress("a.txt", Progress(0, -1))
    with pytest.raises(InvalidInputError):
        SyncClient("  ", "token")
    assert session.calls == []


def _reconciler(monkeypatch, store, remote: dict | None) -> tuple[SyncReconciler, DummySession]:
    routes = {}
    if remote is not None:
        routes[("GET", "/sync/novel.txt")] = DummyResponse(
            200, {"bookId": "novel.txt", "progress": remote}
        )
    session = DummySession(routes)
    return SyncReconciler(_client(monkeypatch, session), store, page_size=20), session


def test_remote_ahead_is_adopted_when_confirmed(monkeypatch, store, library) -> None:
    reconciler, _ = _reconciler(monkeypatch, store, {"page": 3, "paragraphIndex": 70})
    book = make_book(100)
    book.progress = Progress.at(25, 20)
    asked: list[tuple[Progress, Progress]] = []

    def confirm(local, remote) -> bool:
        asked.append((local, remote))
        return True

    asyncio.run(reconciler.reconcile(book, confirm))

    assert asked == [(Progress(1, 25), Progress(3, 70))]
    assert book.progress == Progress(3, 70)
    assert library.get_book(book.id).progress == Progress(3, 70)


def test_remote_ahead_is_ignored_when_declined(monkeypatch, store, library) -> None:
    reconciler, _ = _reconciler(monkeypatch, store, {"page": 3, "paragraphIndex": 70})
    book = make_book(100)
    book.progress = Progress.at(25, 20)

    async def decline(local, remote) -> bool:
        return False

    asyncio.run(reconciler.reconcile(book, decline))

    assert book.progress == Progress(1, 25)
    assert library.get_book(book.id) is None


def test_remote_behind_never_prompts(monkeypatch, store) -> None:
    reconciler, _ = _reconciler(monkeypatch, store, {"page": 1, "paragraphIndex": 25})
    book = make_book(100)
    book.progress = Progress.at(70, 20)

    def confirm(local, remote) -> bool:
        raise AssertionError("should not ask")

    asyncio.run(reconciler.reconcile(book, confirm))
    assert book.progress == Progress(3, 70)


def test_remote_equal_never_prompts(monkeypatch, store) -> None:
    reconciler, _ = _reconciler(monkeypatch, store, {"page": 1, "paragraphIndex": 25})
    book = make_book(100)
    book.progress = Progress.at(25, 20)

    asyncio.run(reconciler.reconcile(book, lambda local, remote: pytest.fail("asked")))
    assert book.progress == Progress(1, 25)


def test_remote_beyond_book_is_clamped(monkeypatch, store) -> None:
    reconciler, _ = _reconciler(monkeypatch, store, {"page": 9, "paragraphIndex": 180})
    book = make_book(100)

    asyncio.run(reconciler.reconcile(book, lambda local, remote: True))
    assert book.progress == Progress(4, 99)


def test_missing_remote_progress_keeps_local(monkeypatch, store) -> None:
    reconciler, session = _reconciler(monkeypatch, store, None)
    book = make_book(100)
    book.progress = Progress.at(5, 20)

    asyncio.run(reconciler.reconcile(book, lambda local, remote: True))
    assert book.progress == Progress(0, 5)
    assert session.calls[0][:2] == ("GET", "/sync/novel.txt")


def test_reconcile_propagates_unauthorized(monkeypatch, store) -> None:
    session = DummySession({("GET", "/sync/novel.txt"): DummyResponse(401, {"error": "Unauthorized: Invalid token"})})
    reconciler = SyncReconciler(_client(monkeypatch, session), store, page_size=20)
    book = make_book(10)

    with pytest.raises(UnauthorizedError):
        asyncio.run(reconciler.reconcile(book, lambda local, remote: True))
    assert book.progress == Progress()


def test_push_sends_text_once_before_progress(monkeypatch, store, library) -> None:
    session = DummySession(
        {
            ("POST", "/book"): DummyResponse(200, {"status": "success"}),
            ("POST", "/sync"): DummyResponse(200, {"status": "success"}),
        }
    )
    reconciler = SyncReconciler(_client(monkeypatch, session), store, page_size=20)
    book = make_book(30)
    book.progress = Progress.at(22, 20)

    async def main() -> None:
        await reconciler.push(book)
        await reconciler.push(book, Progress.at(23, 20))

    asyncio.run(main())

    assert [call[:2] for call in session.calls] == [
        ("POST", "/book"),
        ("POST", "/sync"),
        ("POST", "/sync"),
    ]
    assert session.calls[0][2] == {"bookId": "novel.txt", "content": book.text}
    assert session.calls[1][2] == {"bookId": "novel.txt", "progress": {"page": 1, "paragraphIndex": 22}}
    assert session.calls[2][2]["progress"] == {"page": 1, "paragraphIndex": 23}
    assert book.synced is True
    assert library.get_book(book.id).synced is True


def test_failed_text_upload_keeps_book_unsynced(monkeypatch, store) -> None:
    session = DummySession({("POST", "/book"): requests.Timeout("slow")})
    reconciler = SyncReconciler(_client(monkeypatch, session), store, page_size=20)
    book = make_book(3)

    with pytest.raises(NetworkFailureError):
        asyncio.run(reconciler.push(book))
    assert book.synced is False
    assert [call[1] for call in session.calls] == ["/book"]


def test_configure_sync_saves_after_health_check(monkeypatch, library) -> None:
    session = DummySession({("GET", "/health"): DummyResponse(200, {"status": "ok"})})
    monkeypatch.setattr("novelreader.sync.requests.Session", lambda: session)
    settings = ReaderSettings(library)

    saved = asyncio.run(configure_sync(settings, "https://sync.example/", "tok"))

    assert saved.enabled is True
    assert settings.sync().sync_url == "https://sync.example"
    assert settings.sync().sync_token == "tok"
    assert session.closed is True


def test_configure_sync_does_not_save_on_rejection(monkeypatch, library) -> None:
    session = DummySession({("GET", "/health"): DummyResponse(401, {"error": "Unauthorized: Invalid token"})})
    monkeypatch.setattr("novelreader.sync.requests.Session", lambda: session)
    settings = ReaderSettings(library)

    with pytest.raises(UnauthorizedError):
        asyncio.run(configure_sync(settings, "https://sync.example", "bad"))
    assert settings.sync().configured is False
