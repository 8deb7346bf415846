from __future__ import annotations

import hashlib
import hmac
import os
import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

SECRET_KEY_ENV = "NOVELREADER_SECRET_KEY"
TOKEN_HASH_ENV = "NOVELREADER_TOKEN_HASH"
DEFAULT_DATABASE = Path("novelreader-sync.sqlite")

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS books (id TEXT PRIMARY KEY, content TEXT)",
    "CREATE TABLE IF NOT EXISTS progress (book_id TEXT PRIMARY KEY, page INTEGER, para_index INTEGER)",
)


@dataclass(slots=True)
class ServerConfig:
    database: Path = DEFAULT_DATABASE
    secret_key: str | None = None
    token_hash: str | None = None

    @classmethod
    def from_env(cls, database: Path | None = None) -> "ServerConfig":
        return cls(
            database=database or DEFAULT_DATABASE,
            secret_key=os.environ.get(SECRET_KEY_ENV) or None,
            token_hash=os.environ.get(TOKEN_HASH_ENV) or None,
        )


def hash_token(secret_key: str, token: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), token.encode("utf-8"), hashlib.md5).hexdigest()


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def _is_non_negative_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def create_app(config: ServerConfig) -> FastAPI:
    database = config.database.expanduser()
    database.parent.mkdir(parents=True, exist_ok=True)

    app = FastAPI(title="novelreader sync")
    app.state.config = config
    db_lock = threading.Lock()

    def _connect() -> sqlite3.Connection:
        return sqlite3.connect(database)

    with db_lock, closing(_connect()) as conn:
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.commit()

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    def require_token(authorization: str | None = Header(default=None)) -> None:
        token = _bearer_token(authorization)
        if not token or not config.secret_key or not config.token_hash:
            raise HTTPException(
                status_code=401,
                detail="Unauthorized: Missing token or server configuration",
            )
        if not hmac.compare_digest(hash_token(config.secret_key, token), config.token_hash):
            raise HTTPException(status_code=401, detail="Unauthorized: Invalid token")

    @app.get("/health", dependencies=[Depends(require_token)])
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.post("/book", dependencies=[Depends(require_token)])
    def push_book(payload: dict[str, object] = Body(...)) -> JSONResponse:
        book_id = payload.get("bookId")
        content = payload.get("content")
        if not isinstance(book_id, str) or not book_id or not isinstance(content, str) or not content:
            raise HTTPException(status_code=400, detail="Invalid request body")
        try:
            with db_lock, closing(_connect()) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO books (id, content) VALUES (?, ?)",
                    (book_id, content),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"status": "success"})

    @app.post("/sync", dependencies=[Depends(require_token)])
    def push_progress(payload: dict[str, object] = Body(...)) -> JSONResponse:
        book_id = payload.get("bookId")
        progress = payload.get("progress")
        if not isinstance(book_id, str) or not book_id or not isinstance(progress, dict):
            raise HTTPException(status_code=400, detail="Invalid request body")
        page = progress.get("page")
        index = progress.get("paragraphIndex", progress.get("paraIndex"))
        if not _is_non_negative_int(page) or not _is_non_negative_int(index):
            raise HTTPException(status_code=400, detail="Invalid request body")
        try:
            with db_lock, closing(_connect()) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO progress (book_id, page, para_index) VALUES (?, ?, ?)",
                    (book_id, page, index),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"status": "success"})

    @app.get("/sync/{book_id:path}", dependencies=[Depends(require_token)])
    def fetch_progress(book_id: str) -> JSONResponse:
        try:
            with db_lock, closing(_connect()) as conn:
                row = conn.execute(
                    "SELECT book_id, page, para_index FROM progress WHERE book_id = ?",
                    (book_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if row is None:
            raise HTTPException(status_code=404, detail="Not Found")
        return JSONResponse(
            {
                "bookId": row[0],
                "progress": {"page": row[1], "paragraphIndex": row[2]},
            }
        )

    return app


__all__ = ["ServerConfig", "create_app", "hash_token", "SECRET_KEY_ENV", "TOKEN_HASH_ENV"]
