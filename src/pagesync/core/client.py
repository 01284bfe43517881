"""Remote content service client.

``RemoteClient`` is the contract the sync core relies on.  ``HttpContentClient``
implements it against a Confluence-style REST API (``/rest/api/content``)
using one ``requests.Session`` per thread, so the engine can call it from
its worker threads.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

import requests
from pydantic import BaseModel

from ..errors import RemoteError, RemoteNotFoundError, VersionMismatchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Transport records
# ---------------------------------------------------------------------------


class RemoteDocument(BaseModel):
    """A document as currently stored by the remote service."""

    id: str
    version: int
    title: str
    content: str
    parent_id: str | None = None
    space_id: str | None = None

    model_config = {"frozen": True}


class UpdatedDocument(BaseModel):
    id: str
    version: int

    model_config = {"frozen": True}


class CreatedDocument(BaseModel):
    id: str
    version: int
    title: str = ""

    model_config = {"frozen": True}


class DocumentDraft(BaseModel):
    """Input for a batch create."""

    space_id: str
    title: str
    content: str
    parent_id: str | None = None

    model_config = {"frozen": True}


class DocumentUpdate(BaseModel):
    """Input for a batch update."""

    id: str
    content: str
    expected_version: int
    title: str

    model_config = {"frozen": True}


@dataclass
class BatchResult(Generic[T]):
    """Outcome of a batch call: per-item successes and failures.

    ``failures`` maps the item key (document id, or title for creates) to
    the error message.
    """

    successes: list[T] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


class RemoteClient(Protocol):
    """Operations the sync core needs from the remote content service."""

    def get_document(self, document_id: str) -> RemoteDocument: ...

    def update_document(
        self,
        document_id: str,
        content: str,
        expected_version: int,
        title: str,
    ) -> UpdatedDocument: ...

    def create_document(
        self,
        space_id: str,
        title: str,
        content: str,
        parent_id: str | None = None,
    ) -> CreatedDocument: ...

    def get_documents(
        self, document_ids: list[str]
    ) -> BatchResult[RemoteDocument]: ...

    def create_documents(
        self, drafts: list[DocumentDraft]
    ) -> BatchResult[CreatedDocument]: ...

    def update_documents(
        self, updates: list[DocumentUpdate]
    ) -> BatchResult[UpdatedDocument]: ...


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------


class HttpContentClient:
    """REST client for a Confluence-compatible content API.

    Args:
        base_url: Service root, e.g. ``https://example.atlassian.net/wiki``.
        username: Account name or e-mail.
        token: API token used as the basic-auth password.
        timeout: Read timeout per request in seconds.
        insecure: Skip TLS verification.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        token: str,
        timeout: float = 60.0,
        insecure: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.token = token
        self.timeout = timeout
        self.insecure = insecure
        self._thread_local = threading.local()

    @classmethod
    def from_config(cls, remote: Any) -> "HttpContentClient":
        """Build a client from a ``RemoteConfig`` section.

        Raises:
            ValueError: If url, username or token is missing.
        """
        missing = [
            name
            for name in ("url", "username", "token")
            if not getattr(remote, name)
        ]
        if missing:
            raise ValueError(
                f"Remote configuration incomplete, missing: {', '.join(missing)}"
            )
        if remote.insecure:
            logger.warning(
                "SSL verification disabled (insecure=True). Use only for development."
            )
        return cls(
            remote.url,
            remote.username,
            remote.token,
            timeout=remote.timeout,
            insecure=remote.insecure,
        )

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = requests.Session()
            session.auth = (self.username, self.token)
            session.verify = not self.insecure
            session.headers.update({"Accept": "application/json"})
            self._thread_local.session = session
        return self._thread_local.session

    def _request(
        self, method: str, path: str, **kwargs: Any
    ) -> requests.Response:
        url = f"{self.base_url}/rest/api/content{path}"
        try:
            response = self._get_session().request(
                method, url, timeout=(10, self.timeout), **kwargs
            )
        except requests.RequestException as e:
            raise RemoteError(f"{method} {url} failed: {e}") from e

        if response.status_code == 404:
            raise RemoteNotFoundError(
                f"Not found: {url}", status_code=404
            )
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.status_code >= 400:
            raise RemoteError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    @staticmethod
    def _to_document(data: dict) -> RemoteDocument:
        ancestors = data.get("ancestors") or []
        return RemoteDocument(
            id=str(data["id"]),
            version=int(data["version"]["number"]),
            title=data.get("title", ""),
            content=data.get("body", {})
            .get("storage", {})
            .get("value", ""),
            parent_id=str(ancestors[-1]["id"]) if ancestors else None,
            space_id=data.get("space", {}).get("key"),
        )

    # ------------------------------------------------------------------
    # Single-document operations
    # ------------------------------------------------------------------

    def get_document(self, document_id: str) -> RemoteDocument:
        """Fetch a document with its body, version and ancestors."""
        response = self._request(
            "GET",
            f"/{document_id}",
            params={"expand": "body.storage,version,ancestors,space"},
        )
        self._raise_for_status(response)
        return self._to_document(response.json())

    def update_document(
        self,
        document_id: str,
        content: str,
        expected_version: int,
        title: str,
    ) -> UpdatedDocument:
        """Write a new version, asserting it becomes *expected_version*.

        Raises:
            VersionMismatchError: The document moved since it was read.
        """
        payload = {
            "id": document_id,
            "type": "page",
            "title": title,
            "version": {"number": expected_version},
            "body": {
                "storage": {"value": content, "representation": "storage"}
            },
        }
        response = self._request("PUT", f"/{document_id}", json=payload)
        if response.status_code == 409:
            raise VersionMismatchError(document_id, expected_version)
        self._raise_for_status(response)
        data = response.json()
        return UpdatedDocument(
            id=document_id, version=int(data["version"]["number"])
        )

    def create_document(
        self,
        space_id: str,
        title: str,
        content: str,
        parent_id: str | None = None,
    ) -> CreatedDocument:
        """Create a document, optionally under *parent_id*."""
        payload: dict[str, Any] = {
            "type": "page",
            "title": title,
            "space": {"key": space_id},
            "body": {
                "storage": {"value": content, "representation": "storage"}
            },
        }
        if parent_id:
            payload["ancestors"] = [{"id": parent_id}]
        response = self._request("POST", "", json=payload)
        self._raise_for_status(response)
        data = response.json()
        return CreatedDocument(
            id=str(data["id"]),
            version=int(data["version"]["number"]),
            title=data.get("title", title),
        )

    # ------------------------------------------------------------------
    # Batch operations (best-effort, per-item failures collected)
    # ------------------------------------------------------------------

    def get_documents(
        self, document_ids: list[str]
    ) -> BatchResult[RemoteDocument]:
        result: BatchResult[RemoteDocument] = BatchResult()
        for document_id in document_ids:
            try:
                result.successes.append(self.get_document(document_id))
            except RemoteError as e:
                result.failures[document_id] = str(e)
        return result

    def create_documents(
        self, drafts: list[DocumentDraft]
    ) -> BatchResult[CreatedDocument]:
        result: BatchResult[CreatedDocument] = BatchResult()
        for draft in drafts:
            try:
                result.successes.append(
                    self.create_document(
                        draft.space_id,
                        draft.title,
                        draft.content,
                        draft.parent_id,
                    )
                )
            except RemoteError as e:
                result.failures[draft.title] = str(e)
        return result

    def update_documents(
        self, updates: list[DocumentUpdate]
    ) -> BatchResult[UpdatedDocument]:
        result: BatchResult[UpdatedDocument] = BatchResult()
        for update in updates:
            try:
                result.successes.append(
                    self.update_document(
                        update.id,
                        update.content,
                        update.expected_version,
                        update.title,
                    )
                )
            except RemoteError as e:
                result.failures[update.id] = str(e)
        return result
