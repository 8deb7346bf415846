from .book_io import Book, Progress, ingest_file, ingest_text, reingest
from .controller import PlaybackController, PlaybackState
from .library import Library
from .paging import DEFAULT_PAGE_SIZE, clamp_page, page_of, percent_read, range_of, total_pages
from .progress import ProgressStore, RemoteMirror
from .search import SearchHit, search
from .segment import segment
from .speech import (
    PlaybackError,
    SpeechEngine,
    Voice,
    VoiceUnavailableError,
    VoiceVoxClient,
    VoiceVoxSpeech,
)
from .sync import (
    InvalidInputError,
    NetworkFailureError,
    SyncClient,
    SyncError,
    SyncReconciler,
    UnauthorizedError,
)

__all__ = [
    "Book",
    "Progress",
    "ingest_file",
    "ingest_text",
    "reingest",
    "segment",
    "DEFAULT_PAGE_SIZE",
    "page_of",
    "range_of",
    "total_pages",
    "clamp_page",
    "percent_read",
    "SearchHit",
    "search",
    "Library",
    "ProgressStore",
    "RemoteMirror",
    "PlaybackController",
    "PlaybackState",
    "SpeechEngine",
    "Voice",
    "VoiceVoxClient",
    "VoiceVoxSpeech",
    "VoiceUnavailableError",
    "PlaybackError",
    "SyncClient",
    "SyncReconciler",
    "SyncError",
    "InvalidInputError",
    "UnauthorizedError",
    "NetworkFailureError",
]
