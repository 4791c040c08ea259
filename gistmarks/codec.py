"""
Markdown document format for a bookmark tree.

    # Category
    <!-- lastModified: 2024-05-01T10:00:00.000Z -->

    ## Bundle

    - [Title](https://example.com)
      - tags: a, b
      - notes: free text

The metadata comment is optional and invisible when rendered; it carries the
category's modification time so other devices can merge against it.
Tombstoned nodes are not written. Parsing is a single forward pass that skips
anything it does not recognize.
"""
import logging
import re
from typing import List, Optional

from gistmarks.constants import (
    EMPTY_DOCUMENT_MESSAGE, EMPTY_DOCUMENT_TITLE, ROOT_VERSION,
    UNTITLED_BUNDLE, UNTITLED_CATEGORY,
)
from gistmarks.errors import ParseError
from gistmarks.models import (
    Bookmark, Bundle, Category, NodeMetadata, Root, RootMetadata, subtree_modified,
)
from gistmarks.result import Result, failure, success
from gistmarks.utils import (
    EPOCH, format_timestamp, generate_bookmark_id, normalize_tags, parse_timestamp,
)

logger = logging.getLogger(__name__)

EMPTY_DOCUMENT = f"{EMPTY_DOCUMENT_TITLE}\n\n{EMPTY_DOCUMENT_MESSAGE}"

# Headers and comments are matched on the stripped line
CATEGORY_RE = re.compile(r"^#(?:\s+(.*))?$")
BUNDLE_RE = re.compile(r"^##(?:\s+(.*))?$")
BOOKMARK_RE = re.compile(r"^-\s+\[(.+?)\]\((.+)\)\s*$")
METADATA_RE = re.compile(r"^<!--\s*lastModified:\s*(\S+)\s*-->$")

# Continuation lines are matched on the raw line, indentation included
TAGS_RE = re.compile(r"^ {2}- tags:\s*(.*)$")
NOTES_RE = re.compile(r"^ {2}- notes:\s*(.*)$")


# =============================================================================
# Generation
# =============================================================================

def _bookmark_lines(bookmark: Bookmark) -> List[str]:
    lines = [f"- [{bookmark.title}]({bookmark.url})"]
    tags = normalize_tags(bookmark.tags)
    if tags:
        lines.append(f"  - tags: {', '.join(tags)}")
    if bookmark.notes and bookmark.notes.strip():
        lines.append(f"  - notes: {bookmark.notes.strip()}")
    return lines


def generate(root: Root, with_metadata: bool = True) -> str:
    """Serialize a tree to markdown. Deterministic for a given tree."""
    categories = root.live_categories
    if not categories:
        return EMPTY_DOCUMENT

    lines = []
    for category in categories:
        lines.append(f"# {category.name.strip() or UNTITLED_CATEGORY}")
        if with_metadata:
            lines.append(f"<!-- lastModified: {format_timestamp(subtree_modified(category))} -->")
        lines.append("")

        for bundle in category.live_bundles:
            lines.append(f"## {bundle.name.strip() or UNTITLED_BUNDLE}")
            lines.append("")

            bookmarks = bundle.live_bookmarks
            for index, bookmark in enumerate(bookmarks):
                lines.extend(_bookmark_lines(bookmark))
                if index < len(bookmarks) - 1:
                    lines.append("")

            lines.append("")

    while lines and lines[-1] == "":
        lines.pop()

    return "\n".join(lines)


# =============================================================================
# Parsing
# =============================================================================

class _Cursor:
    """Open category/bundle/bookmark while scanning a document."""

    def __init__(self):
        self.categories: List[Category] = []
        self.category: Optional[dict] = None
        self.bundle: Optional[dict] = None
        self.bookmark: Optional[dict] = None

    def flush_bookmark(self):
        if self.bookmark is not None and self.bundle is not None:
            self.bundle["bookmarks"].append(Bookmark(
                id=generate_bookmark_id(),
                title=self.bookmark["title"],
                url=self.bookmark["url"],
                tags=self.bookmark["tags"],
                notes=self.bookmark["notes"],
            ))
        self.bookmark = None

    def flush_bundle(self):
        self.flush_bookmark()
        if self.bundle is not None and self.category is not None:
            self.category["bundles"].append(Bundle(
                name=self.bundle["name"],
                bookmarks=tuple(self.bundle["bookmarks"]),
            ))
        self.bundle = None

    def flush_category(self):
        self.flush_bundle()
        if self.category is not None:
            self.categories.append(Category(
                name=self.category["name"],
                bundles=tuple(self.category["bundles"]),
                metadata=NodeMetadata(last_modified=self.category["last_modified"]),
            ))
        self.category = None


def _skip_front_matter(lines: List[str]) -> List[str]:
    if lines and lines[0].strip() == "---":
        for index in range(1, len(lines)):
            if lines[index].strip() == "---":
                return lines[index + 1:]
    return lines


def parse(text: str) -> Root:
    """Parse markdown into a tree, skipping lines it does not understand.

    Every parsed bookmark gets a fresh id; categories without a metadata
    comment get the epoch as their modification time.
    """
    lines = _skip_front_matter(text.splitlines())
    if "\n".join(lines).strip() == EMPTY_DOCUMENT:
        return Root(metadata=RootMetadata())

    cursor = _Cursor()
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line:
            continue

        match = BUNDLE_RE.match(line)
        if match:
            cursor.flush_bundle()
            if cursor.category is None:
                logger.debug(f"Line {number}: bundle outside a category, skipped")
                continue
            cursor.bundle = {"name": (match.group(1) or "").strip() or UNTITLED_BUNDLE,
                             "bookmarks": []}
            continue

        match = CATEGORY_RE.match(line)
        if match:
            cursor.flush_category()
            cursor.category = {"name": (match.group(1) or "").strip() or UNTITLED_CATEGORY,
                               "bundles": [], "last_modified": EPOCH}
            continue

        match = METADATA_RE.match(line)
        if match:
            if cursor.category is not None and cursor.bundle is None:
                try:
                    cursor.category["last_modified"] = parse_timestamp(match.group(1))
                except ValueError:
                    logger.warning(f"Line {number}: bad timestamp {match.group(1)!r}")
            continue

        match = BOOKMARK_RE.match(line)
        if match:
            cursor.flush_bookmark()
            if cursor.bundle is None:
                logger.debug(f"Line {number}: bookmark outside a bundle, skipped")
                continue
            cursor.bookmark = {"title": match.group(1), "url": match.group(2),
                               "tags": (), "notes": None}
            continue

        if cursor.bookmark is not None:
            match = TAGS_RE.match(raw.rstrip())
            if match:
                cursor.bookmark["tags"] = normalize_tags(match.group(1).split(","))
                continue
            match = NOTES_RE.match(raw.rstrip())
            if match:
                cursor.bookmark["notes"] = match.group(1).strip() or None
                continue

        logger.debug(f"Line {number}: unrecognized, skipped")

    cursor.flush_category()

    latest = max((c.last_modified for c in cursor.categories), default=EPOCH)
    return Root(
        version=ROOT_VERSION,
        categories=tuple(cursor.categories),
        metadata=RootMetadata(last_modified=latest, last_sync=EPOCH),
    )


def validate(root: Root) -> Result:
    """Check the structural invariants a parsed document must satisfy."""
    if root.version != ROOT_VERSION:
        return failure(ParseError(f"Unsupported document version: {root.version}"))

    seen = set()
    for category in root.live_categories:
        if category.name in seen:
            return failure(ParseError(f"Duplicate category: '{category.name}'"))
        seen.add(category.name)

        bundle_names = set()
        for bundle in category.live_bundles:
            if bundle.name in bundle_names:
                return failure(ParseError(
                    f"Duplicate bundle '{bundle.name}' in category '{category.name}'"))
            bundle_names.add(bundle.name)

    return success(root)


def parse_document(text: str) -> Result:
    """Parse and validate; the entry point used when loading a remote document."""
    return validate(parse(text))

