"""Remote blob storage: named files inside a named folder."""
import itertools
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx

from wordplay.config import settings
from wordplay.exceptions import AuthExpiredError, SyncError

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
CONTENT_MIME_TYPE = "application/json"
SESSION_EXPIRED_MESSAGE = "Google Drive session expired. Please sign in again to use sync features."


class BlobStorage(ABC):
    """Folder-scoped named-file API used by the sync orchestrator.

    Implementations raise AuthExpiredError when the session is no longer
    valid and SyncError for any other failure.
    """

    @abstractmethod
    async def find_or_create_folder(self, name: str) -> str:
        """Return the id of the folder with this name, creating it if needed."""

    @abstractmethod
    async def find_file(self, folder_id: str, name: str) -> Optional[str]:
        """Return the id of the named file in the folder, or None."""

    @abstractmethod
    async def create_file(self, folder_id: str, name: str, content: str) -> str:
        """Create a file in the folder and return its id."""

    @abstractmethod
    async def update_file(self, file_id: str, content: str) -> None:
        """Replace the content of an existing file."""

    @abstractmethod
    async def fetch_content(self, file_id: str) -> str:
        """Return the raw content of a file."""


class InMemoryBlobStorage(BlobStorage):
    """Blob storage kept in process memory, for offline use and tests."""

    def __init__(self):
        self.folders: Dict[str, str] = {}  # name -> folder id
        self.files: Dict[str, Tuple[str, str, str]] = {}  # id -> (folder id, name, content)
        self._ids = itertools.count(1)

    async def find_or_create_folder(self, name: str) -> str:
        if name not in self.folders:
            self.folders[name] = f"folder-{next(self._ids)}"
        return self.folders[name]

    async def find_file(self, folder_id: str, name: str) -> Optional[str]:
        for file_id, (parent, file_name, _) in self.files.items():
            if parent == folder_id and file_name == name:
                return file_id
        return None

    async def create_file(self, folder_id: str, name: str, content: str) -> str:
        file_id = f"file-{next(self._ids)}"
        self.files[file_id] = (folder_id, name, content)
        return file_id

    async def update_file(self, file_id: str, content: str) -> None:
        if file_id not in self.files:
            raise SyncError(f"File {file_id} not found")
        folder_id, name, _ = self.files[file_id]
        self.files[file_id] = (folder_id, name, content)

    async def fetch_content(self, file_id: str) -> str:
        if file_id not in self.files:
            raise SyncError(f"File {file_id} not found")
        return self.files[file_id][2]


class GoogleDriveStorage(BlobStorage):
    """Blob storage backed by the Google Drive v3 REST API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_url: Optional[str] = None,
        upload_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize with an OAuth access token; a client may be injected."""
        self.access_token = settings.sync.access_token if access_token is None else access_token
        self.api_url = (api_url or settings.sync.drive_api_url).rstrip("/")
        self.upload_url = (upload_url or settings.sync.drive_upload_url).rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "GoogleDriveStorage":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this storage created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.sync.request_timeout)
        return self._client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if not self.access_token:
            raise AuthExpiredError("Not authenticated with Google Drive. Please sign in to use sync features.")
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self.access_token}"
        try:
            response = await self._get_client().request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise SyncError(f"Google Drive request failed: {e}") from e

        if response.status_code == 401:
            raise AuthExpiredError(SESSION_EXPIRED_MESSAGE)
        if response.status_code >= 400:
            raise SyncError(self._error_message(response))
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            message = response.json().get("error", {}).get("message")
        except (ValueError, AttributeError):
            message = None
        return message or f"Google Drive request failed: {response.status_code} {response.reason_phrase}"

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise SyncError(f"Unexpected response from Google Drive: {e}") from e

    def _id(self, response: httpx.Response) -> str:
        file_id = self._json(response).get("id")
        if not file_id:
            raise SyncError("Google Drive response did not include an id")
        return file_id

    async def _search(self, query: str) -> Optional[str]:
        response = await self._request(
            "GET", f"{self.api_url}/files", params={"q": query, "fields": "files(id,name)"}
        )
        files = self._json(response).get("files") or []
        return files[0]["id"] if files else None

    async def find_or_create_folder(self, name: str) -> str:
        folder_id = await self._search(
            f"name='{name}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        )
        if folder_id:
            return folder_id

        response = await self._request(
            "POST", f"{self.api_url}/files", json={"name": name, "mimeType": FOLDER_MIME_TYPE}
        )
        folder_id = self._id(response)
        logger.info("Created Google Drive folder %s (%s)", name, folder_id)
        return folder_id

    async def find_file(self, folder_id: str, name: str) -> Optional[str]:
        return await self._search(f"name='{name}' and '{folder_id}' in parents and trashed=false")

    async def create_file(self, folder_id: str, name: str, content: str) -> str:
        boundary = uuid.uuid4().hex
        metadata = {"name": name, "mimeType": CONTENT_MIME_TYPE, "parents": [folder_id]}
        body = (
            f"--{boundary}\r\n"
            f"Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n"
            f"--{boundary}\r\n"
            f"Content-Type: {CONTENT_MIME_TYPE}\r\n\r\n"
            f"{content}\r\n"
            f"--{boundary}--"
        )
        response = await self._request(
            "POST",
            f"{self.upload_url}/files",
            params={"uploadType": "multipart"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=body.encode("utf-8"),
        )
        return self._id(response)

    async def update_file(self, file_id: str, content: str) -> None:
        await self._request(
            "PATCH",
            f"{self.upload_url}/files/{file_id}",
            params={"uploadType": "media"},
            headers={"Content-Type": CONTENT_MIME_TYPE},
            content=content.encode("utf-8"),
        )

    async def fetch_content(self, file_id: str) -> str:
        response = await self._request("GET", f"{self.api_url}/files/{file_id}", params={"alt": "media"})
        return response.text
