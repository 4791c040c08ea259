"""
Immutable bookmark tree for Gistmarks.

The collection is a four-level hierarchy: Root -> Category -> Bundle -> Bookmark.
Every node is a frozen dataclass holding tuples, so a tree can be shared
freely; every change produces a new tree and leaves the old one intact.

Deleted nodes stay in the tree as tombstones (``metadata.is_deleted``) until
a conflict-free merge or an explicit compaction removes them, so concurrent
edits against a deleted node can still be detected.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from gistmarks.constants import ROOT_VERSION
from gistmarks.utils import EPOCH, format_timestamp, parse_timestamp, normalize_tags


@dataclass(frozen=True)
class NodeMetadata:
    """Bookkeeping carried by categories, bundles and bookmarks."""
    last_modified: datetime = EPOCH
    last_synced: Optional[datetime] = None
    is_deleted: bool = False
    renamed_to: Optional[str] = None  # successor name left on a rename tombstone


@dataclass(frozen=True)
class RootMetadata:
    last_modified: datetime = EPOCH
    last_sync: datetime = EPOCH


class _Node:
    """Accessors shared by the metadata-carrying nodes."""

    @property
    def last_modified(self) -> datetime:
        return self.metadata.last_modified if self.metadata else EPOCH

    @property
    def is_deleted(self) -> bool:
        return bool(self.metadata and self.metadata.is_deleted)

    def touched(self, now: datetime, **changes):
        """Copy with ``last_modified`` advanced to ``now`` plus any field changes."""
        metadata = self.metadata or NodeMetadata()
        return replace(self, metadata=replace(metadata, last_modified=now), **changes)

    def tombstoned(self, now: datetime, renamed_to: Optional[str] = None):
        metadata = self.metadata or NodeMetadata()
        return replace(self, metadata=replace(
            metadata, last_modified=now, is_deleted=True, renamed_to=renamed_to))


@dataclass(frozen=True)
class Bookmark(_Node):
    id: str
    title: str
    url: str
    tags: Tuple[str, ...] = ()
    notes: Optional[str] = None
    metadata: Optional[NodeMetadata] = None


@dataclass(frozen=True)
class Bundle(_Node):
    name: str
    bookmarks: Tuple[Bookmark, ...] = ()
    metadata: Optional[NodeMetadata] = None

    @property
    def live_bookmarks(self) -> Tuple[Bookmark, ...]:
        return tuple(b for b in self.bookmarks if not b.is_deleted)


@dataclass(frozen=True)
class Category(_Node):
    name: str
    bundles: Tuple[Bundle, ...] = ()
    metadata: Optional[NodeMetadata] = None

    @property
    def live_bundles(self) -> Tuple[Bundle, ...]:
        return tuple(b for b in self.bundles if not b.is_deleted)


@dataclass(frozen=True)
class Root:
    version: int = ROOT_VERSION
    categories: Tuple[Category, ...] = ()
    metadata: Optional[RootMetadata] = None

    @property
    def live_categories(self) -> Tuple[Category, ...]:
        return tuple(c for c in self.categories if not c.is_deleted)

    @property
    def last_modified(self) -> datetime:
        return self.metadata.last_modified if self.metadata else EPOCH

    @property
    def last_sync(self) -> datetime:
        return self.metadata.last_sync if self.metadata else EPOCH

    def synced(self, now: datetime) -> "Root":
        """Copy with ``last_sync`` advanced to ``now``."""
        metadata = self.metadata or RootMetadata()
        return replace(self, metadata=replace(metadata, last_sync=now))


# =============================================================================
# Caller-facing input types
# =============================================================================

@dataclass(frozen=True)
class BookmarkInput:
    title: str
    url: str
    tags: Tuple[str, ...] = ()
    notes: Optional[str] = None


@dataclass(frozen=True)
class BookmarkUpdate:
    """Partial update; fields left as None are not touched.

    An empty ``notes`` string clears the notes and an empty ``tags`` tuple
    clears the tags.
    """
    title: Optional[str] = None
    url: Optional[str] = None
    tags: Optional[Tuple[str, ...]] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class BookmarkFilter:
    search_term: Optional[str] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)
    category_name: Optional[str] = None
    bundle_name: Optional[str] = None


# =============================================================================
# Structural content, ignoring ids, timestamps and tombstoned children
# =============================================================================

def bookmark_content(bookmark: Bookmark) -> tuple:
    return (bookmark.title, bookmark.url, bookmark.tags, bookmark.notes or None)


def bundle_content(bundle: Bundle) -> tuple:
    return (bundle.name, tuple(bookmark_content(b) for b in bundle.live_bookmarks))


def category_content(category: Category) -> tuple:
    """Comparable shape of a category, including its tombstone state."""
    metadata = category.metadata
    renamed_to = metadata.renamed_to if metadata else None
    if category.is_deleted:
        return (category.name, True, renamed_to, ())
    return (category.name, False, None,
            tuple(bundle_content(b) for b in category.live_bundles))


def root_content(root: Root) -> tuple:
    return tuple(category_content(c) for c in root.live_categories)


def same_content(a: Root, b: Root) -> bool:
    """True when two trees hold the same live bookmarks in the same places."""
    return root_content(a) == root_content(b)


# =============================================================================
# Dict (JSON) conversion
# =============================================================================

def _metadata_to_dict(metadata: Optional[NodeMetadata]) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    data = {"lastModified": format_timestamp(metadata.last_modified)}
    if metadata.last_synced is not None:
        data["lastSynced"] = format_timestamp(metadata.last_synced)
    if metadata.is_deleted:
        data["isDeleted"] = True
    if metadata.renamed_to is not None:
        data["renamedTo"] = metadata.renamed_to
    return data


def _metadata_from_dict(data: Optional[Dict[str, Any]]) -> Optional[NodeMetadata]:
    if not data:
        return None
    last_synced = data.get("lastSynced")
    return NodeMetadata(
        last_modified=parse_timestamp(data["lastModified"]) if data.get("lastModified") else EPOCH,
        last_synced=parse_timestamp(last_synced) if last_synced else None,
        is_deleted=bool(data.get("isDeleted", False)),
        renamed_to=data.get("renamedTo"),
    )


def _with_metadata(data: Dict[str, Any], metadata: Optional[NodeMetadata]) -> Dict[str, Any]:
    converted = _metadata_to_dict(metadata)
    if converted is not None:
        data["metadata"] = converted
    return data


def bookmark_to_dict(bookmark: Bookmark) -> Dict[str, Any]:
    data = {"id": bookmark.id, "title": bookmark.title, "url": bookmark.url}
    if bookmark.tags:
        data["tags"] = list(bookmark.tags)
    if bookmark.notes:
        data["notes"] = bookmark.notes
    return _with_metadata(data, bookmark.metadata)


def root_to_dict(root: Root) -> Dict[str, Any]:
    """Convert a tree to plain JSON-compatible data (camelCase keys)."""
    data = {
        "version": root.version,
        "categories": [
            _with_metadata({
                "name": category.name,
                "bundles": [
                    _with_metadata({
                        "name": bundle.name,
                        "bookmarks": [bookmark_to_dict(b) for b in bundle.bookmarks],
                    }, bundle.metadata)
                    for bundle in category.bundles
                ],
            }, category.metadata)
            for category in root.categories
        ],
    }
    if root.metadata is not None:
        data["metadata"] = {
            "lastModified": format_timestamp(root.metadata.last_modified),
            "lastSync": format_timestamp(root.metadata.last_sync),
        }
    return data


def bookmark_from_dict(data: Dict[str, Any]) -> Bookmark:
    return Bookmark(
        id=data["id"],
        title=data["title"],
        url=data["url"],
        tags=normalize_tags(data.get("tags")),
        notes=data.get("notes") or None,
        metadata=_metadata_from_dict(data.get("metadata")),
    )


def root_from_dict(data: Dict[str, Any]) -> Root:
    """Inverse of :func:`root_to_dict`. Raises KeyError/ValueError on malformed data."""
    metadata = data.get("metadata")
    root_metadata = None
    if metadata:
        root_metadata = RootMetadata(
            last_modified=parse_timestamp(metadata["lastModified"]) if metadata.get("lastModified") else EPOCH,
            last_sync=parse_timestamp(metadata["lastSync"]) if metadata.get("lastSync") else EPOCH,
        )
    return Root(
        version=data.get("version", ROOT_VERSION),
        categories=tuple(
            Category(
                name=category["name"],
                bundles=tuple(
                    Bundle(
                        name=bundle["name"],
                        bookmarks=tuple(bookmark_from_dict(b) for b in bundle.get("bookmarks", [])),
                        metadata=_metadata_from_dict(bundle.get("metadata")),
                    )
                    for bundle in category.get("bundles", [])
                ),
                metadata=_metadata_from_dict(category.get("metadata")),
            )
            for category in data.get("categories", [])
        ),
        metadata=root_metadata,
    )


def find_live(nodes: Sequence, name: str):
    """First non-deleted node in ``nodes`` with the given name, or None."""
    for node in nodes:
        if node.name == name and not node.is_deleted:
            return node
    return None


def subtree_modified(category: Category) -> datetime:
    """Latest modification anywhere inside a category, tombstones included.

    Mutations only stamp the node they touch, so the merge looks at the
    whole subtree to decide whether a category changed.
    """
    latest = category.last_modified
    for bundle in category.bundles:
        latest = max(latest, bundle.last_modified)
        for bookmark in bundle.bookmarks:
            latest = max(latest, bookmark.last_modified)
    return latest
