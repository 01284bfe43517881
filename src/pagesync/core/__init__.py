"""Core remote client and async helpers shared by the sync engine."""

from .async_utils import retry_async, run_sync, run_sync_limited
from .client import (
    BatchResult,
    CreatedDocument,
    HttpContentClient,
    RemoteClient,
    RemoteDocument,
    UpdatedDocument,
)

__all__ = [
    "BatchResult",
    "CreatedDocument",
    "HttpContentClient",
    "RemoteClient",
    "RemoteDocument",
    "UpdatedDocument",
    "retry_async",
    "run_sync",
    "run_sync_limited",
]
