"""
GitHub Gist backend.

Stores the bookmark document as one file of a secret gist and uses the
response ETag as the version token. Writes send ``If-Match`` so GitHub
rejects them when the gist moved on since the caller last read it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from gistmarks.constants import (
    DEFAULT_FILENAME, DEFAULT_REQUEST_TIMEOUT, GIST_LIST_PAGE_SIZE,
    GITHUB_ACCEPT, GITHUB_API_URL, GITHUB_API_VERSION,
)
from gistmarks.errors import (
    ApiError, ConflictError, GistmarksError, NetworkError, NotFoundError, ValidationError,
)
from gistmarks.result import Result, failure, success
from gistmarks.store import RemoteDocument, RemoteInfo, RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class _Reply:
    status: int
    etag: Optional[str] = None
    body: Any = None


def _history_version(body: Any) -> Optional[str]:
    """Revision id from the gist payload, used when no ETag came back."""
    if isinstance(body, dict):
        history = body.get("history") or []
        if history:
            return history[0].get("version")
    return None


def error_for_status(status: int, subject: str) -> GistmarksError:
    """Map an HTTP error status to the Gistmarks error taxonomy."""
    if status == 401:
        return ApiError("Authentication failed: check the GitHub token", status)
    if status == 403:
        return ApiError("Permission denied: the token needs the 'gist' scope", status)
    if status == 404:
        return NotFoundError(f"{subject} not found")
    if status in (409, 412):
        return ConflictError(f"{subject} was modified by another writer")
    if status == 422:
        return ValidationError(f"GitHub rejected the request for {subject}")
    return ApiError(f"GitHub API error {status} for {subject}", status)


class GistStore(RemoteStore):
    """RemoteStore backed by the GitHub Gists REST API.

    Args:
        token: GitHub token with the ``gist`` scope
        filename: Name of the file inside the gist holding the document
        api_base_url: API root, overridable for GitHub Enterprise
        timeout: Per-request timeout in seconds
        session: Existing aiohttp session to use; one is created otherwise

    Use as an async context manager, or call :meth:`close` when done.
    """

    def __init__(
        self,
        token: str,
        filename: str = DEFAULT_FILENAME,
        api_base_url: str = GITHUB_API_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.token = token
        self.filename = filename
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._etags: Dict[str, str] = {}

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": GITHUB_ACCEPT,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        text: bool = False
    ) -> _Reply:
        """Perform one API call. Raises NetworkError on transport failure."""
        url = path if path.startswith("http") else f"{self.api_base_url}{path}"
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                json=json,
                headers=self._headers(headers),
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                body = None
                if method != "HEAD" and 200 <= response.status < 300:
                    if text:
                        body = await response.text()
                    else:
                        body = await response.json(content_type=None)
                return _Reply(status=response.status, etag=response.headers.get("ETag"), body=body)
        except asyncio.TimeoutError:
            raise NetworkError(f"{method} {url} timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} {url} failed: {e}")

    async def create(self, description: str, content: str) -> Result:
        payload = {
            "description": description,
            "public": False,
            "files": {self.filename: {"content": content}},
        }
        try:
            reply = await self._request("POST", "/gists", json=payload)
        except NetworkError as e:
            return failure(e)
        if reply.status != 201:
            return failure(error_for_status(reply.status, "New gist"))

        remote_id = reply.body["id"]
        version = reply.etag or _history_version(reply.body)
        self._etags[remote_id] = version
        logger.info(f"Created gist {remote_id}")
        return success(RemoteInfo(id=remote_id, version=version))

    async def read(self, remote_id: str) -> Result:
        try:
            reply = await self._request("GET", f"/gists/{remote_id}")
            if reply.status != 200:
                return failure(error_for_status(reply.status, f"Gist '{remote_id}'"))

            entry = (reply.body.get("files") or {}).get(self.filename)
            if entry is None:
                return failure(NotFoundError(f"Gist '{remote_id}' has no file '{self.filename}'"))

            content = entry.get("content") or ""
            if entry.get("truncated") and entry.get("raw_url"):
                raw = await self._request("GET", entry["raw_url"], text=True)
                if raw.status != 200:
                    return failure(error_for_status(raw.status, f"Content of gist '{remote_id}'"))
                content = raw.body
        except NetworkError as e:
            return failure(e)

        version = reply.etag or _history_version(reply.body)
        self._etags[remote_id] = version
        return success(RemoteDocument(content=content, version=version))

    async def update(self, remote_id: str, content: str, expected_version: str) -> Result:
        payload = {"files": {self.filename: {"content": content}}}
        try:
            reply = await self._request(
                "PATCH", f"/gists/{remote_id}", json=payload,
                headers={"If-Match": expected_version}
            )
        except NetworkError as e:
            return failure(e)
        if reply.status != 200:
            if reply.status in (409, 412):
                logger.info(f"Gist {remote_id} moved past {expected_version}, write rejected")
            return failure(error_for_status(reply.status, f"Gist '{remote_id}'"))

        # Use the response token; the commits listing may lag behind
        version = reply.etag or _history_version(reply.body)
        self._etags[remote_id] = version
        logger.info(f"Updated gist {remote_id}")
        return success(version)

    async def exists(self, remote_id: str) -> Result:
        try:
            reply = await self._request("HEAD", f"/gists/{remote_id}")
        except NetworkError as e:
            return failure(e)
        if reply.status == 200:
            return success(True)
        if reply.status == 404:
            return success(False)
        return failure(error_for_status(reply.status, f"Gist '{remote_id}'"))

    async def get_version(self, remote_id: str) -> Result:
        """Probe the version with a conditional HEAD; 304 means unchanged."""
        known = self._etags.get(remote_id)
        headers = {"If-None-Match": known} if known else None
        try:
            reply = await self._request("HEAD", f"/gists/{remote_id}", headers=headers)
        except NetworkError as e:
            return failure(e)
        if reply.status == 304 and known:
            return success(known)
        if reply.status == 200 and reply.etag:
            self._etags[remote_id] = reply.etag
            return success(reply.etag)
        if reply.status == 200:
            return await super().get_version(remote_id)
        return failure(error_for_status(reply.status, f"Gist '{remote_id}'"))

    async def find_by_filename(self, filename: Optional[str] = None) -> Result:
        """Id of the first of the user's gists holding ``filename``, or None."""
        filename = filename or self.filename
        try:
            reply = await self._request("GET", f"/gists?per_page={GIST_LIST_PAGE_SIZE}")
        except NetworkError as e:
            return failure(e)
        if reply.status != 200:
            return failure(error_for_status(reply.status, "Gist list"))

        for gist in reply.body or []:
            if filename in (gist.get("files") or {}):
                logger.info(f"Found '{filename}' in gist {gist['id']}")
                return success(gist["id"])
        return success(None)
