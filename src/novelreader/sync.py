from __future__ import annotations

import asyncio
import inspect
import json
from typing import TYPE_CHECKING, Awaitable, Callable, Union
from urllib.parse import quote

import requests

from .book_io import Book, Progress, progress_from_payload
from .config import DEFAULT_SYNC_TIMEOUT, ReaderSettings, SyncSettings
from .logging_utils import debug_log

if TYPE_CHECKING:
    from .progress import ProgressStore

ConfirmCallback = Callable[[Progress, Progress], Union[bool, Awaitable[bool]]]


class SyncError(RuntimeError):
    """Raised when the sync service returns an unexpected response."""


class InvalidInputError(SyncError, ValueError):
    """Raised for request bodies the sync service would reject."""


class UnauthorizedError(SyncError):
    """Raised when the sync service rejects the bearer token."""


class NetworkFailureError(SyncError, ConnectionError):
    """Raised when the sync service cannot be reached or times out."""


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except (json.JSONDecodeError, ValueError):
        return resp.text.strip() or f"HTTP {resp.status_code}"
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return f"HTTP {resp.status_code}"


class SyncClient:
    """
    Client for the reading-progress sync service.

    All calls are blocking; async callers run them in a worker thread.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
    ) -> None:
        base = base_url.strip().rstrip("/")
        if not base:
            raise InvalidInputError("Sync URL cannot be empty.")
        self.base_url = base
        self.token = token
        self.timeout = timeout
        self._session = requests.Session()

    @classmethod
    def from_settings(cls, settings: SyncSettings, timeout: float = DEFAULT_SYNC_TIMEOUT) -> "SyncClient":
        return cls(settings.sync_url, settings.sync_token, timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token}",
        }

    def _request(self, method: str, path: str, payload: dict[str, object] | None = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        debug_log(f"{method} {url}")
        try:
            resp = self._session.request(
                method,
                url,
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkFailureError(f"Failed to contact sync service at {self.base_url}") from exc
        if resp.status_code == 401:
            raise UnauthorizedError(_error_message(resp))
        if resp.status_code == 400:
            raise InvalidInputError(_error_message(resp))
        return resp

    @staticmethod
    def _expect_status(resp: requests.Response, path: str) -> dict[str, object]:
        if resp.status_code != 200:
            raise SyncError(f"{path} failed with status {resp.status_code}: {_error_message(resp)}")
        try:
            payload = resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise SyncError(f"Sync service returned invalid JSON for {path}") from exc
        if not isinstance(payload, dict):
            raise SyncError(f"Sync service returned an unexpected payload for {path}")
        return payload

    def health(self) -> bool:
        payload = self._expect_status(self._request("GET", "/health"), "/health")
        return payload.get("status") == "ok"

    def push_book(self, book_id: str, content: str) -> None:
        if not book_id or not content:
            raise InvalidInputError("Both book id and content are required.")
        payload = self._expect_status(
            self._request("POST", "/book", {"bookId": book_id, "content": content}),
            "/book",
        )
        if payload.get("status") != "success":
            raise SyncError(f"/book was not accepted: {payload}")

    def push_progress(self, book_id: str, progress: Progress) -> None:
        if not book_id:
            raise InvalidInputError("Book id is required.")
        if progress.page < 0 or progress.paragraph_index < 0:
            raise InvalidInputError("Progress values cannot be negative.")
        payload = self._expect_status(
            self._request(
                "POST",
                "/sync",
                {"bookId": book_id, "progress": progress.as_payload()},
            ),
            "/sync",
        )
        if payload.get("status") != "success":
            raise SyncError(f"/sync was not accepted: {payload}")

    def fetch_progress(self, book_id: str) -> Progress | None:
        if not book_id:
            raise InvalidInputError("Book id is required.")
        path = f"/sync/{quote(book_id, safe='')}"
        resp = self._request("GET", path)
        if resp.status_code == 404:
            return None
        payload = self._expect_status(resp, "/sync")
        progress = progress_from_payload(payload.get("progress"))
        if progress is None:
            raise SyncError(f"Sync service returned malformed progress for {book_id}")
        return progress

    def close(self) -> None:
        self._session.close()


class SyncReconciler:
    """Reconcile local progress with the sync service."""

    def __init__(self, client: SyncClient, store: "ProgressStore", *, page_size: int) -> None:
        self.client = client
        self.store = store
        self.page_size = page_size

    async def reconcile(self, book: Book, confirm: ConfirmCallback) -> Book:
        """
        Adopt remote progress only when it is strictly ahead and confirmed.

        Local progress is never moved backwards. Network and auth errors
        propagate without touching local state.
        """
        remote = await asyncio.to_thread(self.client.fetch_progress, book.id)
        if remote is None:
            debug_log(f"no remote progress for {book.id}")
            return book
        local = book.progress
        if remote.paragraph_index <= local.paragraph_index:
            debug_log(
                f"remote progress for {book.id} is not ahead "
                f"({remote.paragraph_index} <= {local.paragraph_index})"
            )
            return book
        decision = confirm(local, remote)
        if inspect.isawaitable(decision):
            decision = await decision
        if not decision:
            return book
        adopted = book.clamp_progress(remote, self.page_size)
        if adopted.paragraph_index <= local.paragraph_index:
            return book
        await self.store.persist(book, adopted, mirror=False)
        return book

    async def push(self, book: Book, progress: Progress | None = None) -> None:
        """Mirror the book text once, then its progress."""
        if not book.synced:
            await asyncio.to_thread(self.client.push_book, book.id, book.text)
            book.synced = True
            await self.store.save_book(book)
        await asyncio.to_thread(
            self.client.push_progress,
            book.id,
            progress if progress is not None else book.progress,
        )


async def configure_sync(
    settings: ReaderSettings,
    sync_url: str,
    sync_token: str,
    *,
    timeout: float = DEFAULT_SYNC_TIMEOUT,
) -> SyncSettings:
    """Save sync settings after the service passes a health check."""
    client = SyncClient(sync_url, sync_token, timeout=timeout)
    try:
        healthy = await asyncio.to_thread(client.health)
    finally:
        client.close()
    if not healthy:
        raise SyncError("Health check failed; check the sync URL.")
    saved = SyncSettings(sync_url=client.base_url, sync_token=sync_token, enabled=True)
    settings.save_sync(saved)
    return saved


__all__ = [
    "SyncClient",
    "SyncReconciler",
    "SyncError",
    "InvalidInputError",
    "UnauthorizedError",
    "NetworkFailureError",
    "configure_sync",
]
