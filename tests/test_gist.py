"""Tests for the GitHub Gist backed store."""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from gistmarks.errors import ApiError, ConflictError, NetworkError, NotFoundError, ValidationError
from gistmarks.gist import GistStore, error_for_status
from gistmarks.store import RemoteDocument, RemoteInfo


def _reply(status, body=None, etag=None, text=None):
    """Async context manager standing in for ``session.request(...)``."""
    response = MagicMock()
    response.status = status
    response.headers = {"ETag": etag} if etag else {}
    response.json = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=text)
    return AsyncMock(
        __aenter__=AsyncMock(return_value=response),
        __aexit__=AsyncMock(return_value=False)
    )


def _store(*replies):
    session = MagicMock()
    session.request = MagicMock(side_effect=list(replies))
    session.close = AsyncMock()
    return GistStore("tok", session=session), session


def _gist(content="# Dev", **file_fields):
    entry = {"content": content}
    entry.update(file_fields)
    return {"id": "g1", "files": {"bookmarks.md": entry}, "history": [{"version": "h1"}]}


class TestCreate:
    """Tests for GistStore.create."""

    @pytest.mark.asyncio
    async def test_create_posts_private_gist(self):
        store, session = _store(_reply(201, _gist(), etag='"e1"'))
        result = await store.create("My bookmarks", "# Dev")

        assert result.unwrap() == RemoteInfo(id="g1", version='"e1"')
        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert (method, url) == ("POST", "https://api.github.com/gists")
        assert kwargs["json"] == {
            "description": "My bookmarks",
            "public": False,
            "files": {"bookmarks.md": {"content": "# Dev"}},
        }
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["X-GitHub-Api-Version"] == "2022-11-28"

    @pytest.mark.asyncio
    async def test_create_without_etag_uses_history(self):
        store, _ = _store(_reply(201, _gist()))
        assert (await store.create("d", "x")).unwrap().version == "h1"

    @pytest.mark.asyncio
    async def test_create_bad_token(self):
        store, _ = _store(_reply(401))
        error = (await store.create("d", "x")).error
        assert isinstance(error, ApiError)
        assert error.status == 401


class TestRead:
    """Tests for GistStore.read."""

    @pytest.mark.asyncio
    async def test_read_returns_file_and_etag(self):
        store, session = _store(_reply(200, _gist("# Dev"), etag='"e2"'))
        document = (await store.read("g1")).unwrap()
        assert document == RemoteDocument(content="# Dev", version='"e2"')
        assert session.request.call_args.args == ("GET", "https://api.github.com/gists/g1")

    @pytest.mark.asyncio
    async def test_read_follows_truncated_content(self):
        raw_url = "https://gist.githubusercontent.com/raw/bookmarks.md"
        store, session = _store(
            _reply(200, _gist("# Dev (cut", truncated=True, raw_url=raw_url), etag='"e3"'),
            _reply(200, text="# Dev\n\nfull"),
        )
        document = (await store.read("g1")).unwrap()
        assert document.content == "# Dev\n\nfull"
        assert document.version == '"e3"'
        assert session.request.call_args.args == ("GET", raw_url)

    @pytest.mark.asyncio
    async def test_read_missing_file(self):
        store, _ = _store(_reply(200, {"id": "g1", "files": {"other.md": {"content": ""}}}))
        assert isinstance((await store.read("g1")).error, NotFoundError)

    @pytest.mark.asyncio
    async def test_read_missing_gist(self):
        store, _ = _store(_reply(404))
        assert isinstance((await store.read("g1")).error, NotFoundError)

    @pytest.mark.asyncio
    async def test_custom_filename_and_api_url(self):
        session = MagicMock()
        session.request = MagicMock(return_value=_reply(
            200, {"files": {"links.md": {"content": "# A"}}}, etag='"e"'))
        store = GistStore("tok", filename="links.md", api_base_url="https://ghe.example/api/v3/",
                          session=session)
        assert (await store.read("g1")).unwrap().content == "# A"
        assert session.request.call_args.args[1] == "https://ghe.example/api/v3/gists/g1"


class TestUpdate:
    """Tests for GistStore.update."""

    @pytest.mark.asyncio
    async def test_update_is_conditional(self):
        store, session = _store(_reply(200, _gist("# New"), etag='"e4"'))
        version = (await store.update("g1", "# New", '"e3"')).unwrap()
        assert version == '"e4"'
        kwargs = session.request.call_args.kwargs
        assert session.request.call_args.args[0] == "PATCH"
        assert kwargs["headers"]["If-Match"] == '"e3"'
        assert kwargs["json"] == {"files": {"bookmarks.md": {"content": "# New"}}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [409, 412])
    async def test_stale_update_is_a_conflict(self, status):
        store, _ = _store(_reply(status))
        assert isinstance((await store.update("g1", "x", '"old"')).error, ConflictError)


class TestProbes:
    """Tests for exists and get_version."""

    @pytest.mark.asyncio
    async def test_exists(self):
        store, session = _store(_reply(200), _reply(404))
        assert (await store.exists("g1")).unwrap() is True
        assert (await store.exists("g2")).unwrap() is False
        assert session.request.call_args.args[0] == "HEAD"

    @pytest.mark.asyncio
    async def test_exists_server_error(self):
        store, _ = _store(_reply(502))
        assert isinstance((await store.exists("g1")).error, ApiError)

    @pytest.mark.asyncio
    async def test_get_version_uses_conditional_head(self):
        store, session = _store(
            _reply(200, _gist(), etag='"e1"'),
            _reply(304),
            _reply(200, etag='"e2"'),
        )
        await store.read("g1")

        assert (await store.get_version("g1")).unwrap() == '"e1"'
        assert session.request.call_args.kwargs["headers"]["If-None-Match"] == '"e1"'
        assert (await store.get_version("g1")).unwrap() == '"e2"'

    @pytest.mark.asyncio
    async def test_get_version_falls_back_to_read(self):
        store, _ = _store(_reply(200), _reply(200, _gist()))
        assert (await store.get_version("g1")).unwrap() == "h1"

    @pytest.mark.asyncio
    async def test_get_version_missing_gist(self):
        store, _ = _store(_reply(404))
        assert isinstance((await store.get_version("g1")).error, NotFoundError)


class TestFailures:
    """Tests for transport failures."""

    @pytest.mark.asyncio
    async def test_connection_error_becomes_network_error(self):
        session = MagicMock()
        session.request = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        store = GistStore("tok", session=session)
        for result in (await store.read("g1"), await store.exists("g1"),
                       await store.update("g1", "x", "v"), await store.create("d", "x")):
            assert isinstance(result.error, NetworkError)

    @pytest.mark.asyncio
    async def test_timeout_becomes_network_error(self):
        session = MagicMock()
        session.request = MagicMock(side_effect=asyncio.TimeoutError())
        store = GistStore("tok", session=session, timeout=3)
        error = (await store.get_version("g1")).error
        assert isinstance(error, NetworkError)
        assert "timed out" in str(error)

    @pytest.mark.parametrize("status,expected", [
        (401, ApiError),
        (403, ApiError),
        (404, NotFoundError),
        (409, ConflictError),
        (412, ConflictError),
        (422, ValidationError),
        (500, ApiError),
    ])
    def test_error_for_status(self, status, expected):
        assert isinstance(error_for_status(status, "Gist"), expected)


class TestLifecycle:
    """Tests for session ownership and gist discovery."""

    @pytest.mark.asyncio
    async def test_injected_session_is_not_closed(self):
        store, session = _store()
        async with store:
            pass
        session.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_without_session(self):
        store = GistStore("tok")
        await store.close()

    @pytest.mark.asyncio
    async def test_find_by_filename(self):
        listing = [
            {"id": "a", "files": {"notes.txt": {}}},
            {"id": "b", "files": {"bookmarks.md": {}}},
        ]
        store, session = _store(_reply(200, listing), _reply(200, listing))
        assert (await store.find_by_filename()).unwrap() == "b"
        assert "per_page=100" in session.request.call_args.args[1]
        assert (await store.find_by_filename("missing.md")).unwrap() is None
