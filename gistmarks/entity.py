"""
Pure mutation API over the bookmark tree.

Every function takes a Root and returns a Result: a new Root on success or a
typed failure, never both. Inputs are never modified. A successful mutation
stamps ``last_modified`` only on the node it creates, changes or tombstones
(and on a container that physically loses a child when something is moved
out of it).

Example:
    >>> root = add_category(Root(), "Dev").unwrap()
    >>> root = add_bundle(root, "Dev", "Python").unwrap()
    >>> root = add_bookmark(root, "Dev", "Python",
    ...                     BookmarkInput("Docs", "https://docs.python.org")).unwrap()
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional, Sequence, Tuple

from gistmarks import utils
from gistmarks.errors import DuplicateError, NotFoundError, ValidationError
from gistmarks.models import (
    Bookmark, BookmarkFilter, BookmarkInput, BookmarkUpdate, Bundle, Category,
    NodeMetadata, Root, RootMetadata, find_live,
)
from gistmarks.result import Result, failure, success
from gistmarks.utils import EPOCH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHit:
    bookmark: Bookmark
    category_name: str
    bundle_name: str


@dataclass(frozen=True)
class TreeStats:
    categories: int
    bundles: int
    bookmarks: int
    tags: int


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else utils.now_utc()


# =============================================================================
# Validation
# =============================================================================

def _has_newline(text: str) -> bool:
    return "\n" in text or "\r" in text


def _clean_name(name: Optional[str], kind: str) -> Result:
    if name is None or not name.strip():
        return failure(ValidationError(f"{kind} name cannot be empty"))
    if _has_newline(name):
        return failure(ValidationError(f"{kind} name cannot contain line breaks"))
    return success(name.strip())


def _clean_title(title: Optional[str]) -> Result:
    if title is None or not title.strip():
        return failure(ValidationError("Bookmark title cannot be empty"))
    if _has_newline(title):
        return failure(ValidationError("Bookmark title cannot contain line breaks"))
    if "](" in title:
        return failure(ValidationError("Bookmark title cannot contain ']('"))
    return success(title.strip())


def _clean_url(url: Optional[str]) -> Result:
    url = (url or "").strip()
    if not utils.is_valid_url(url):
        return failure(ValidationError(f"Invalid URL: {url!r}"))
    return success(url)


def _clean_tags(tags: Optional[Iterable[str]]) -> Result:
    tags = tuple(tags or ())
    for tag in tags:
        if "," in tag or _has_newline(tag):
            return failure(ValidationError(f"Invalid tag: {tag!r}"))
    return success(utils.normalize_tags(tags))


def _clean_notes(notes: Optional[str]) -> Result:
    if notes is None or not notes.strip():
        return success(None)
    if _has_newline(notes):
        return failure(ValidationError("Bookmark notes cannot contain line breaks"))
    return success(notes.strip())


def create_bookmark(data: BookmarkInput, now: Optional[datetime] = None) -> Result:
    """Validate input and build a new Bookmark with a fresh id."""
    title = _clean_title(data.title)
    url = _clean_url(data.url)
    tags = _clean_tags(data.tags)
    notes = _clean_notes(data.notes)
    for checked in (title, url, tags, notes):
        if not checked.ok:
            return checked
    return success(Bookmark(
        id=utils.generate_bookmark_id(),
        title=title.value,
        url=url.value,
        tags=tags.value,
        notes=notes.value,
        metadata=NodeMetadata(last_modified=_now(now)),
    ))


# =============================================================================
# Navigation helpers
# =============================================================================

def _put(nodes: tuple, index: int, node) -> tuple:
    return nodes[:index] + (node,) + nodes[index + 1:]


def _drop(nodes: tuple, index: int) -> tuple:
    return nodes[:index] + nodes[index + 1:]


def _without_tombstone(nodes: tuple, name: str) -> tuple:
    """Remove tombstones a new live node of the same name replaces."""
    return tuple(n for n in nodes if not (n.name == name and n.is_deleted))


def _index_of(nodes: Sequence, name: str) -> int:
    for index, node in enumerate(nodes):
        if node.name == name and not node.is_deleted:
            return index
    return -1


def _locate_category(root: Root, name: str) -> Result:
    index = _index_of(root.categories, name)
    if index < 0:
        return failure(NotFoundError(f"Category '{name}' not found"))
    return success(index)


def _locate_bundle(category: Category, name: str) -> Result:
    index = _index_of(category.bundles, name)
    if index < 0:
        return failure(NotFoundError(
            f"Bundle '{name}' not found in category '{category.name}'"))
    return success(index)


def _locate_bookmark(bundle: Bundle, bookmark_id: str) -> Result:
    for index, bookmark in enumerate(bundle.bookmarks):
        if bookmark.id == bookmark_id and not bookmark.is_deleted:
            return success(index)
    return failure(NotFoundError(
        f"Bookmark '{bookmark_id}' not found in bundle '{bundle.name}'"))


def _with_category(root: Root, category_name: str,
                   change: Callable[[Category], Result]) -> Result:
    located = _locate_category(root, category_name)
    if not located.ok:
        return located
    changed = change(root.categories[located.value])
    if not changed.ok:
        return changed
    return success(replace(root, categories=_put(root.categories, located.value, changed.value)))


def _with_bundle(root: Root, category_name: str, bundle_name: str,
                 change: Callable[[Bundle], Result]) -> Result:
    def change_category(category: Category) -> Result:
        located = _locate_bundle(category, bundle_name)
        if not located.ok:
            return located
        changed = change(category.bundles[located.value])
        if not changed.ok:
            return changed
        return success(replace(category, bundles=_put(category.bundles, located.value, changed.value)))

    return _with_category(root, category_name, change_category)


def _rename_in(nodes: tuple, index: int, new_name: str, now: datetime) -> tuple:
    """Replace ``nodes[index]`` by a live successor plus a rename tombstone."""
    node = nodes[index]
    successor = replace(node, name=new_name,
                        metadata=replace(node.metadata or NodeMetadata(),
                                         last_modified=now, is_deleted=False, renamed_to=None))
    tombstone = node.tombstoned(now, renamed_to=new_name)
    nodes = nodes[:index] + (successor, tombstone) + nodes[index + 1:]
    return tuple(n for n in nodes if not (n.name == new_name and n.is_deleted))


# =============================================================================
# Categories
# =============================================================================

def add_category(root: Root, name: str, now: Optional[datetime] = None) -> Result:
    cleaned = _clean_name(name, "Category")
    if not cleaned.ok:
        return cleaned
    name = cleaned.value
    if find_live(root.categories, name) is not None:
        return failure(DuplicateError(f"Category '{name}' already exists"))
    category = Category(name=name, metadata=NodeMetadata(last_modified=_now(now)))
    return success(replace(root, categories=_without_tombstone(root.categories, name) + (category,)))


def remove_category(root: Root, name: str, now: Optional[datetime] = None) -> Result:
    located = _locate_category(root, name)
    if not located.ok:
        return located
    index = located.value
    tombstone = root.categories[index].tombstoned(_now(now))
    return success(replace(root, categories=_put(root.categories, index, tombstone)))


def rename_category(root: Root, old_name: str, new_name: str,
                    now: Optional[datetime] = None) -> Result:
    """Rename a category, leaving a tombstone that records the successor."""
    located = _locate_category(root, old_name)
    if not located.ok:
        return located
    cleaned = _clean_name(new_name, "Category")
    if not cleaned.ok:
        return cleaned
    new_name = cleaned.value
    if new_name == old_name:
        return success(root)
    if find_live(root.categories, new_name) is not None:
        return failure(DuplicateError(f"Category '{new_name}' already exists"))
    categories = _rename_in(root.categories, located.value, new_name, _now(now))
    return success(replace(root, categories=categories))


# =============================================================================
# Bundles
# =============================================================================

def add_bundle(root: Root, category_name: str, name: str,
               now: Optional[datetime] = None) -> Result:
    cleaned = _clean_name(name, "Bundle")
    if not cleaned.ok:
        return cleaned
    name = cleaned.value

    def change(category: Category) -> Result:
        if find_live(category.bundles, name) is not None:
            return failure(DuplicateError(
                f"Bundle '{name}' already exists in category '{category.name}'"))
        bundle = Bundle(name=name, metadata=NodeMetadata(last_modified=_now(now)))
        return success(replace(category, bundles=_without_tombstone(category.bundles, name) + (bundle,)))

    return _with_category(root, category_name, change)


def remove_bundle(root: Root, category_name: str, name: str,
                  now: Optional[datetime] = None) -> Result:
    def change(category: Category) -> Result:
        located = _locate_bundle(category, name)
        if not located.ok:
            return located
        tombstone = category.bundles[located.value].tombstoned(_now(now))
        return success(replace(category, bundles=_put(category.bundles, located.value, tombstone)))

    return _with_category(root, category_name, change)


def rename_bundle(root: Root, category_name: str, old_name: str, new_name: str,
                  now: Optional[datetime] = None) -> Result:
    def change(category: Category) -> Result:
        located = _locate_bundle(category, old_name)
        if not located.ok:
            return located
        cleaned = _clean_name(new_name, "Bundle")
        if not cleaned.ok:
            return cleaned
        if cleaned.value == old_name:
            return success(category)
        if find_live(category.bundles, cleaned.value) is not None:
            return failure(DuplicateError(
                f"Bundle '{cleaned.value}' already exists in category '{category.name}'"))
        bundles = _rename_in(category.bundles, located.value, cleaned.value, _now(now))
        return success(replace(category, bundles=bundles))

    return _with_category(root, category_name, change)


# =============================================================================
# Bookmarks
# =============================================================================

def add_bookmarks(root: Root, category_name: str, bundle_name: str,
                  items: Iterable[BookmarkInput], now: Optional[datetime] = None) -> Result:
    """Add several bookmarks at once; one invalid item fails the whole batch."""
    now = _now(now)
    created = []
    for item in items:
        bookmark = create_bookmark(item, now)
        if not bookmark.ok:
            return bookmark
        created.append(bookmark.value)

    def change(bundle: Bundle) -> Result:
        return success(replace(bundle, bookmarks=bundle.bookmarks + tuple(created)))

    return _with_bundle(root, category_name, bundle_name, change)


def add_bookmark(root: Root, category_name: str, bundle_name: str,
                 item: BookmarkInput, now: Optional[datetime] = None) -> Result:
    return add_bookmarks(root, category_name, bundle_name, [item], now)


def update_bookmark(root: Root, category_name: str, bundle_name: str, bookmark_id: str,
                    update: BookmarkUpdate, now: Optional[datetime] = None) -> Result:
    changes = {}
    if update.title is not None:
        changes["title"] = _clean_title(update.title)
    if update.url is not None:
        changes["url"] = _clean_url(update.url)
    if update.tags is not None:
        changes["tags"] = _clean_tags(update.tags)
    if update.notes is not None:
        changes["notes"] = _clean_notes(update.notes)
    for checked in changes.values():
        if not checked.ok:
            return checked
    values = {key: checked.value for key, checked in changes.items()}

    def change(bundle: Bundle) -> Result:
        located = _locate_bookmark(bundle, bookmark_id)
        if not located.ok:
            return located
        bookmark = bundle.bookmarks[located.value].touched(_now(now), **values)
        return success(replace(bundle, bookmarks=_put(bundle.bookmarks, located.value, bookmark)))

    return _with_bundle(root, category_name, bundle_name, change)


def remove_bookmark(root: Root, category_name: str, bundle_name: str, bookmark_id: str,
                    now: Optional[datetime] = None) -> Result:
    def change(bundle: Bundle) -> Result:
        located = _locate_bookmark(bundle, bookmark_id)
        if not located.ok:
            return located
        tombstone = bundle.bookmarks[located.value].tombstoned(_now(now))
        return success(replace(bundle, bookmarks=_put(bundle.bookmarks, located.value, tombstone)))

    return _with_bundle(root, category_name, bundle_name, change)


def move_bookmark(root: Root, from_category: str, from_bundle: str,
                  to_category: str, to_bundle: str, bookmark_id: str,
                  now: Optional[datetime] = None) -> Result:
    """Move a bookmark between bundles, keeping its id."""
    now = _now(now)
    moved = []

    def take(bundle: Bundle) -> Result:
        located = _locate_bookmark(bundle, bookmark_id)
        if not located.ok:
            return located
        moved.append(bundle.bookmarks[located.value])
        return success(bundle.touched(now, bookmarks=_drop(bundle.bookmarks, located.value)))

    def put(bundle: Bundle) -> Result:
        return success(replace(bundle, bookmarks=bundle.bookmarks + (moved[0].touched(now),)))

    # Check the target first so a failure there leaves nothing half-moved
    target = _with_bundle(root, to_category, to_bundle, success)
    if not target.ok:
        return target
    taken = _with_bundle(root, from_category, from_bundle, take)
    if not taken.ok:
        return taken
    if from_category == to_category and from_bundle == to_bundle:
        return success(root)
    return _with_bundle(taken.value, to_category, to_bundle, put)


def move_bundle(root: Root, from_category: str, to_category: str, name: str,
                now: Optional[datetime] = None) -> Result:
    """Move a bundle with all its bookmarks into another category."""
    now = _now(now)
    moved = []

    def take(category: Category) -> Result:
        located = _locate_bundle(category, name)
        if not located.ok:
            return located
        moved.append(category.bundles[located.value])
        return success(category.touched(now, bundles=_drop(category.bundles, located.value)))

    def put(category: Category) -> Result:
        if find_live(category.bundles, name) is not None:
            return failure(DuplicateError(
                f"Bundle '{name}' already exists in category '{category.name}'"))
        bundles = _without_tombstone(category.bundles, name) + (moved[0].touched(now),)
        return success(replace(category, bundles=bundles))

    target = _locate_category(root, to_category)
    if not target.ok:
        return target
    taken = _with_category(root, from_category, take)
    if not taken.ok:
        return taken
    if from_category == to_category:
        return success(root)
    return _with_category(taken.value, to_category, put)


# =============================================================================
# Queries
# =============================================================================

def bookmark_matches(bookmark: Bookmark, query: BookmarkFilter) -> bool:
    """Case-insensitive substring match on text fields and tags."""
    tags = [t.lower() for t in bookmark.tags]
    if query.tags:
        for wanted in query.tags:
            wanted = wanted.lower()
            if not any(wanted in tag for tag in tags):
                return False

    if query.search_term:
        term = query.search_term.lower()
        fields = [bookmark.title.lower(), bookmark.url.lower(), (bookmark.notes or "").lower()]
        if not any(term in f for f in fields) and not any(term in tag for tag in tags):
            return False

    return True


class SearchResults:
    """Lazy, re-iterable view of the bookmarks matching a filter."""

    def __init__(self, root: Root, query: BookmarkFilter):
        self.root = root
        self.query = query

    def __iter__(self) -> Iterator[SearchHit]:
        query = self.query
        for category in self.root.live_categories:
            if query.category_name and category.name != query.category_name:
                continue
            for bundle in category.live_bundles:
                if query.bundle_name and bundle.name != query.bundle_name:
                    continue
                for bookmark in bundle.live_bookmarks:
                    if bookmark_matches(bookmark, query):
                        yield SearchHit(bookmark, category.name, bundle.name)

    def __repr__(self):
        return f"SearchResults({self.query!r})"


def search(root: Root, query: Optional[BookmarkFilter] = None) -> SearchResults:
    return SearchResults(root, query or BookmarkFilter())


def stats(root: Root) -> TreeStats:
    categories = bundles = bookmarks = 0
    tags = set()
    for category in root.live_categories:
        categories += 1
        for bundle in category.live_bundles:
            bundles += 1
            for bookmark in bundle.live_bookmarks:
                bookmarks += 1
                tags.update(t.lower() for t in bookmark.tags)
    return TreeStats(categories=categories, bundles=bundles, bookmarks=bookmarks, tags=len(tags))


# =============================================================================
# Maintenance
# =============================================================================

def _fold(node, dropped: Sequence) -> object:
    """Carry the newest dropped tombstone time onto the parent."""
    if not dropped:
        return node
    latest = max(d.last_modified for d in dropped)
    if latest <= node.last_modified:
        return node
    return replace(node, metadata=replace(node.metadata or NodeMetadata(), last_modified=latest))


def compact(root: Root) -> Root:
    """Physically drop every tombstone.

    A parent inherits the deletion time of the children it loses so the
    subtree still reads as modified when the merge compares timestamps.
    """
    categories = []
    for category in root.categories:
        if category.is_deleted:
            continue
        bundles = []
        for bundle in category.bundles:
            if bundle.is_deleted:
                continue
            dead = [b for b in bundle.bookmarks if b.is_deleted]
            if dead:
                bundle = _fold(replace(bundle, bookmarks=bundle.live_bookmarks), dead)
            bundles.append(bundle)
        dead_bundles = [b for b in category.bundles if b.is_deleted]
        category = replace(category, bundles=tuple(bundles))
        categories.append(_fold(category, dead_bundles))
    dropped = len(root.categories) - len(categories)
    if dropped:
        logger.debug(f"Compacted {dropped} category tombstone(s)")
    return replace(root, categories=tuple(categories))


def ensure_metadata(root: Root) -> Root:
    """Fill in missing metadata with the epoch.

    A root without metadata has never been synced. A category without
    metadata counts as unmodified, so any remote edit to it wins.
    """
    metadata = root.metadata or RootMetadata(last_modified=EPOCH, last_sync=EPOCH)
    categories = tuple(
        c if c.metadata is not None else replace(c, metadata=NodeMetadata(last_modified=EPOCH))
        for c in root.categories
    )
    return replace(root, categories=categories, metadata=metadata)
