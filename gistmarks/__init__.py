"""
Gistmarks - bookmarks in a markdown gist

Keeps a bookmark collection (categories, bundles, bookmarks) as one
markdown document in a GitHub Gist and syncs it across devices.

Design Principles:
- Immutable tree; every edit returns a new tree wrapped in a Result
- Human-editable markdown as the only remote format
- Optimistic concurrency: writes carry the last version seen
- Timestamp-based merge against the last sync, with explicit conflicts

Example Usage:
    >>> from gistmarks import SyncCoordinator, GistStore, BookmarkInput
    >>> async with GistStore(token) as store:
    ...     coordinator = SyncCoordinator(store, gist_id)
    ...     await coordinator.load()
    ...     coordinator.add_category("Reading")
    ...     outcome = (await coordinator.sync()).unwrap()
"""

__version__ = "0.3.0"
__author__ = "Gistmarks Contributors"

# Model
from gistmarks.models import (
    Bookmark, Bundle, Category, Root, NodeMetadata, RootMetadata,
    BookmarkInput, BookmarkUpdate, BookmarkFilter,
)
from gistmarks.result import Result, success, failure
from gistmarks.errors import (
    GistmarksError, ValidationError, NotFoundError, DuplicateError,
    ConflictError, NetworkError, ApiError, ParseError,
)

# Document format
from gistmarks.codec import generate, parse, parse_document

# Remote storage
from gistmarks.store import RemoteStore, MemoryStore, RemoteInfo, RemoteDocument
from gistmarks.gist import GistStore

# Sync
from gistmarks.merge import (
    MergeStrategy, MergeConflict, MergeResult, ConflictResolution, Side,
    merge_roots, resolve_conflicts,
)
from gistmarks.clock import Clock, SystemClock, ManualClock
from gistmarks.detector import ChangeDetector
from gistmarks.sync import SyncCoordinator, SyncOutcome

# Configuration
from gistmarks.config import GistmarksConfig, get_config, init_config

__all__ = [
    # Model
    "Bookmark",
    "Bundle",
    "Category",
    "Root",
    "NodeMetadata",
    "RootMetadata",
    "BookmarkInput",
    "BookmarkUpdate",
    "BookmarkFilter",
    "Result",
    "success",
    "failure",
    # Errors
    "GistmarksError",
    "ValidationError",
    "NotFoundError",
    "DuplicateError",
    "ConflictError",
    "NetworkError",
    "ApiError",
    "ParseError",
    # Document format
    "generate",
    "parse",
    "parse_document",
    # Remote storage
    "RemoteStore",
    "MemoryStore",
    "RemoteInfo",
    "RemoteDocument",
    "GistStore",
    # Sync
    "MergeStrategy",
    "MergeConflict",
    "MergeResult",
    "ConflictResolution",
    "Side",
    "merge_roots",
    "resolve_conflicts",
    "Clock",
    "SystemClock",
    "ManualClock",
    "ChangeDetector",
    "SyncCoordinator",
    "SyncOutcome",
    # Config
    "GistmarksConfig",
    "get_config",
    "init_config",
]
