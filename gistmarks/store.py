"""
Remote document stores.

A store holds versioned text documents and offers one concurrency primitive:
a conditional write that succeeds only while the caller's version token is
still current. Version tokens are opaque; they are only ever compared for
equality.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from gistmarks.errors import ConflictError, NotFoundError
from gistmarks.result import Result, failure, success

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteInfo:
    """Identity of a remote document at a specific revision."""
    id: str
    version: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "version": self.version}


@dataclass(frozen=True)
class RemoteDocument:
    content: str
    version: str


class RemoteStore(ABC):
    """Interface every remote backend implements.

    All methods return a Result; none of them raise for remote failures.
    """

    @abstractmethod
    async def create(self, description: str, content: str) -> Result:
        """Create a new document. Returns Result[RemoteInfo]."""
        pass

    @abstractmethod
    async def read(self, remote_id: str) -> Result:
        """Fetch a document. Returns Result[RemoteDocument]."""
        pass

    @abstractmethod
    async def update(self, remote_id: str, content: str, expected_version: str) -> Result:
        """Replace a document's content if it is still at ``expected_version``.

        Returns Result[str] holding the new version, or ConflictError when
        another writer got there first.
        """
        pass

    @abstractmethod
    async def exists(self, remote_id: str) -> Result:
        """Returns Result[bool]."""
        pass

    async def get_version(self, remote_id: str) -> Result:
        """Current version token. Backends with a cheaper probe override this."""
        document = await self.read(remote_id)
        return document.map(lambda d: d.version)

    async def close(self):
        """Release any connections held by the store."""
        pass

    async def __aenter__(self) -> "RemoteStore":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class MemoryStore(RemoteStore):
    """In-process store, used for tests and offline work."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, str]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _new_version() -> str:
        return uuid.uuid4().hex

    async def create(self, description: str, content: str) -> Result:
        async with self._lock:
            remote_id = uuid.uuid4().hex[:20]
            version = self._new_version()
            self._documents[remote_id] = {
                "description": description,
                "content": content,
                "version": version,
            }
        logger.info(f"Created document {remote_id}")
        return success(RemoteInfo(id=remote_id, version=version))

    async def read(self, remote_id: str) -> Result:
        document = self._documents.get(remote_id)
        if document is None:
            return failure(NotFoundError(f"Document '{remote_id}' not found"))
        return success(RemoteDocument(content=document["content"], version=document["version"]))

    async def update(self, remote_id: str, content: str, expected_version: str) -> Result:
        async with self._lock:
            document = self._documents.get(remote_id)
            if document is None:
                return failure(NotFoundError(f"Document '{remote_id}' not found"))
            if document["version"] != expected_version:
                logger.info(f"Rejected stale write to {remote_id}")
                return failure(ConflictError(
                    f"Document '{remote_id}' has changed since version {expected_version}"))
            document["content"] = content
            document["version"] = self._new_version()
            return success(document["version"])

    async def exists(self, remote_id: str) -> Result:
        return success(remote_id in self._documents)

    async def get_version(self, remote_id: str) -> Result:
        document = self._documents.get(remote_id)
        if document is None:
            return failure(NotFoundError(f"Document '{remote_id}' not found"))
        return success(document["version"])

    def description(self, remote_id: str) -> Optional[str]:
        document = self._documents.get(remote_id)
        return document["description"] if document else None
