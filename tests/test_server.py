from __future__ import annotations

import asyncio
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient

from conftest import make_book
from novelreader.book_io import Progress
from novelreader.progress import ProgressStore
from novelreader.server import ServerConfig, create_app, hash_token
from novelreader.sync import SyncClient, SyncReconciler

SECRET = "server-secret"
TOKEN = "reader-token"


@pytest.fixture
def client(tmp_path) -> TestClient:
    config = ServerConfig(
        database=tmp_path / "sync.sqlite",
        secret_key=SECRET,
        token_hash=hash_token(SECRET, TOKEN),
    )
    return TestClient(create_app(config))


def _auth(token: str = TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_health_requires_valid_token(client) -> None:
    missing = client.get("/health")
    assert missing.status_code == 401
    assert missing.json() == {"error": "Unauthorized: Missing token or server configuration"}

    wrong = client.get("/health", headers=_auth("nope"))
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Unauthorized: Invalid token"}

    ok = client.get("/health", headers=_auth())
    assert ok.status_code == 200
    assert ok.json() == {"status": "ok"}


def test_unconfigured_server_rejects_everything(tmp_path) -> None:
    client = TestClient(create_app(ServerConfig(database=tmp_path / "db.sqlite")))
    response = client.get("/health", headers=_auth())
    assert response.status_code == 401
    assert response.json()["error"].startswith("Unauthorized: Missing token")


def test_progress_round_trip(client) -> None:
    push = client.post(
        "/sync",
        json={"bookId": "小説.txt", "progress": {"page": 3, "paragraphIndex": 70}},
        headers=_auth(),
    )
    assert push.status_code == 200
    assert push.json() == {"status": "success"}

    fetched = client.get(f"/sync/{quote('小説.txt')}", headers=_auth())
    assert fetched.status_code == 200
    assert fetched.json() == {"bookId": "小説.txt", "progress": {"page": 3, "paragraphIndex": 70}}


def test_progress_accepts_legacy_key_and_overwrites(client) -> None:
    client.post("/sync", json={"bookId": "a.txt", "progress": {"page": 0, "paragraphIndex": 5}}, headers=_auth())
    client.post("/sync", json={"bookId": "a.txt", "progress": {"page": 1, "paraIndex": 21}}, headers=_auth())

    fetched = client.get("/sync/a.txt", headers=_auth())
    assert fetched.json()["progress"] == {"page": 1, "paragraphIndex": 21}


def test_unknown_book_is_not_found(client) -> None:
    response = client.get("/sync/never.txt", headers=_auth())
    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}


@pytest.mark.parametrize(
    "body",
    [
        {"bookId": "a.txt"},
        {"bookId": "", "progress": {"page": 0, "paragraphIndex": 0}},
        {"bookId": "a.txt", "progress": {"page": 0, "paragraphIndex": -1}},
        {"bookId": "a.txt", "progress": {"page": "1", "paragraphIndex": 2}},
        [1, 2, 3],
    ],
)
def test_invalid_progress_bodies_are_rejected(client, body) -> None:
    response = client.post("/sync", json=body, headers=_auth())
    assert response.status_code == 400
    assert "error" in response.json()


def test_book_upload(client) -> None:
    ok = client.post("/book", json={"bookId": "a.txt", "content": "one\ntwo"}, headers=_auth())
    assert ok.status_code == 200
    assert ok.json() == {"status": "success"}

    bad = client.post("/book", json={"bookId": "a.txt"}, headers=_auth())
    assert bad.status_code == 400
    assert bad.json() == {"error": "Invalid request body"}


def test_malformed_json_is_bad_request(client) -> None:
    response = client.post(
        "/book",
        content=b"{not json",
        headers={**_auth(), "Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request body"}


def test_reconciler_against_running_app(monkeypatch, client, store, library) -> None:
    monkeypatch.setattr("novelreader.sync.requests.Session", lambda: client)
    sync_client = SyncClient(str(client.base_url), TOKEN)
    reconciler = SyncReconciler(sync_client, store, page_size=20)

    ahead = make_book(100)
    ahead.progress = Progress.at(70, 20)
    asyncio.run(reconciler.push(ahead))

    behind = make_book(100)
    asyncio.run(reconciler.reconcile(behind, lambda local, remote: True))

    assert behind.progress == Progress(3, 70)
    assert library.get_book(behind.id).progress == Progress(3, 70)
