import os
import pytest
from datetime import datetime, timedelta, timezone

from gistmarks import config as config_module
from gistmarks import entity, utils
from gistmarks.models import BookmarkInput, Root, RootMetadata
from gistmarks.store import MemoryStore


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Fixed point in time, ``seconds`` after BASE_TIME."""
    return BASE_TIME + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def clean_gistmarks_env(monkeypatch, tmp_path):
    """Isolate every test from the user's config, token and home directory."""
    for key in list(os.environ):
        if key.startswith("GISTMARKS_"):
            monkeypatch.delenv(key)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setattr(config_module, "_config", None)
    yield


@pytest.fixture
def ticking_now(monkeypatch):
    """Make utils.now_utc() return a strictly increasing time, one second per call.

    Returns a function giving the last time handed out.
    """
    state = {"now": at(1000)}

    def fake_now():
        state["now"] = state["now"] + timedelta(seconds=1)
        return state["now"]

    monkeypatch.setattr(utils, "now_utc", fake_now)
    return lambda: state["now"]


@pytest.fixture
def sample_root():
    """Two categories, three bookmarks, all stamped at t=10."""
    now = at(10)
    root = Root(metadata=RootMetadata())
    root = entity.add_category(root, "Dev", now=now).unwrap()
    root = entity.add_bundle(root, "Dev", "Python", now=now).unwrap()
    root = entity.add_bookmarks(root, "Dev", "Python", [
        BookmarkInput("Python Docs", "https://docs.python.org", tags=("python", "docs")),
        BookmarkInput("PyPI", "https://pypi.org", notes="Package index"),
    ], now=now).unwrap()
    root = entity.add_category(root, "Reading", now=now).unwrap()
    root = entity.add_bundle(root, "Reading", "Articles", now=now).unwrap()
    root = entity.add_bookmark(root, "Reading", "Articles",
                               BookmarkInput("Blog", "https://blog.example.com", tags=("Python",)),
                               now=now).unwrap()
    return root


@pytest.fixture
def memory_store():
    return MemoryStore()
