"""
Tests for gistmarks/entity.py

Tests the pure mutation API including:
- Category, bundle and bookmark add/remove/rename
- Validation and duplicate detection
- Tombstones and rename successors
- Moves between bundles and categories
- Search, statistics and compaction
"""
import pytest

from conftest import at
from gistmarks import entity
from gistmarks.errors import DuplicateError, NotFoundError, ValidationError
from gistmarks.models import (
    BookmarkFilter, BookmarkInput, BookmarkUpdate, Category, Root, RootMetadata,
    find_live, same_content, subtree_modified,
)
from gistmarks.utils import EPOCH


def _bookmark(root, category, bundle, index=0):
    return find_live(find_live(root.categories, category).bundles, bundle).live_bookmarks[index]


class TestCategories:
    """Test category operations."""

    def test_add_category(self):
        root = Root(metadata=RootMetadata())
        result = entity.add_category(root, "Dev", now=at(1))
        assert result.ok
        assert [c.name for c in result.value.categories] == ["Dev"]
        assert result.value.categories[0].last_modified == at(1)
        assert root.categories == ()

    def test_add_category_strips_name(self):
        root = entity.add_category(Root(), "  Dev  ").unwrap()
        assert root.categories[0].name == "Dev"

    @pytest.mark.parametrize("name", ["", "   ", None, "two\nlines"])
    def test_add_category_rejects_bad_names(self, name):
        result = entity.add_category(Root(), name)
        assert isinstance(result.error, ValidationError)

    def test_add_duplicate_category_fails(self, sample_root):
        result = entity.add_category(sample_root, "Dev")
        assert isinstance(result.error, DuplicateError)

    def test_remove_category_leaves_tombstone(self, sample_root):
        root = entity.remove_category(sample_root, "Dev", now=at(20)).unwrap()
        assert [c.name for c in root.live_categories] == ["Reading"]
        tombstone = root.categories[0]
        assert tombstone.name == "Dev"
        assert tombstone.is_deleted
        assert tombstone.last_modified == at(20)

    def test_remove_missing_category_fails(self, sample_root):
        result = entity.remove_category(sample_root, "Nope")
        assert isinstance(result.error, NotFoundError)

    def test_add_then_remove_is_content_neutral(self, sample_root):
        added = entity.add_category(sample_root, "Temp").unwrap()
        removed = entity.remove_category(added, "Temp").unwrap()
        assert same_content(removed, sample_root)

    def test_re_adding_replaces_tombstone(self, sample_root):
        root = entity.remove_category(sample_root, "Dev", now=at(20)).unwrap()
        root = entity.add_category(root, "Dev", now=at(21)).unwrap()
        named_dev = [c for c in root.categories if c.name == "Dev"]
        assert len(named_dev) == 1
        assert not named_dev[0].is_deleted
        assert named_dev[0].bundles == ()

    def test_rename_category(self, sample_root):
        root = entity.rename_category(sample_root, "Dev", "Code", now=at(30)).unwrap()
        assert [c.name for c in root.live_categories] == ["Code", "Reading"]

        code = find_live(root.categories, "Code")
        assert code.last_modified == at(30)
        assert [b.name for b in code.bundles] == ["Python"]

        tombstone = root.categories[1]
        assert tombstone.name == "Dev"
        assert tombstone.is_deleted
        assert tombstone.metadata.renamed_to == "Code"

    def test_rename_to_same_name_is_noop(self, sample_root):
        assert entity.rename_category(sample_root, "Dev", "Dev").unwrap() is sample_root

    def test_rename_onto_existing_name_fails(self, sample_root):
        result = entity.rename_category(sample_root, "Dev", "Reading")
        assert isinstance(result.error, DuplicateError)

    def test_rename_missing_category_fails(self, sample_root):
        result = entity.rename_category(sample_root, "Nope", "Other")
        assert isinstance(result.error, NotFoundError)


class TestBundles:
    """Test bundle operations."""

    def test_add_bundle_stamps_only_the_bundle(self, sample_root):
        root = entity.add_bundle(sample_root, "Dev", "Rust", now=at(40)).unwrap()
        dev = find_live(root.categories, "Dev")
        assert [b.name for b in dev.bundles] == ["Python", "Rust"]
        assert dev.last_modified == at(10)
        assert subtree_modified(dev) == at(40)

    def test_add_bundle_to_missing_category_fails(self, sample_root):
        result = entity.add_bundle(sample_root, "Nope", "Rust")
        assert isinstance(result.error, NotFoundError)

    def test_add_duplicate_bundle_fails(self, sample_root):
        result = entity.add_bundle(sample_root, "Dev", "Python")
        assert isinstance(result.error, DuplicateError)

    def test_same_bundle_name_in_other_category_is_allowed(self, sample_root):
        assert entity.add_bundle(sample_root, "Reading", "Python").ok

    def test_remove_bundle(self, sample_root):
        root = entity.remove_bundle(sample_root, "Dev", "Python", now=at(50)).unwrap()
        dev = find_live(root.categories, "Dev")
        assert dev.live_bundles == ()
        assert dev.bundles[0].is_deleted

    def test_rename_bundle_keeps_bookmarks(self, sample_root):
        root = entity.rename_bundle(sample_root, "Dev", "Python", "Py", now=at(60)).unwrap()
        dev = find_live(root.categories, "Dev")
        assert [b.name for b in dev.live_bundles] == ["Py"]
        assert len(dev.live_bundles[0].live_bookmarks) == 2
        assert dev.bundles[1].metadata.renamed_to == "Py"

    def test_move_bundle(self, sample_root):
        root = entity.move_bundle(sample_root, "Dev", "Reading", "Python", now=at(70)).unwrap()
        dev = find_live(root.categories, "Dev")
        reading = find_live(root.categories, "Reading")
        assert dev.bundles == ()
        assert dev.last_modified == at(70)
        assert [b.name for b in reading.bundles] == ["Articles", "Python"]
        assert len(reading.bundles[1].bookmarks) == 2

    def test_move_bundle_collision_fails(self, sample_root):
        root = entity.add_bundle(sample_root, "Reading", "Python").unwrap()
        result = entity.move_bundle(root, "Dev", "Reading", "Python")
        assert isinstance(result.error, DuplicateError)

    def test_move_bundle_to_missing_category_fails(self, sample_root):
        result = entity.move_bundle(sample_root, "Dev", "Nope", "Python")
        assert isinstance(result.error, NotFoundError)


class TestBookmarks:
    """Test bookmark operations."""

    def test_add_bookmark_normalizes_input(self, sample_root):
        item = BookmarkInput("  Rust  ", " https://rust-lang.org ", tags=(" rust ", "", "rust"), notes="   ")
        root = entity.add_bookmark(sample_root, "Dev", "Python", item, now=at(80)).unwrap()
        bookmark = _bookmark(root, "Dev", "Python", 2)
        assert bookmark.title == "Rust"
        assert bookmark.url == "https://rust-lang.org"
        assert bookmark.tags == ("rust",)
        assert bookmark.notes is None
        assert bookmark.id
        assert bookmark.last_modified == at(80)

    @pytest.mark.parametrize("item", [
        BookmarkInput("", "https://example.com"),
        BookmarkInput("Title", "not a url"),
        BookmarkInput("Title", "example.com"),
        BookmarkInput("Bad](title", "https://example.com"),
        BookmarkInput("Title", "https://example.com", tags=("a,b",)),
        BookmarkInput("Title", "https://example.com", notes="line\nbreak"),
    ])
    def test_add_bookmark_rejects_invalid_input(self, sample_root, item):
        result = entity.add_bookmark(sample_root, "Dev", "Python", item)
        assert isinstance(result.error, ValidationError)

    def test_add_bookmark_to_missing_bundle_fails(self, sample_root):
        result = entity.add_bookmark(sample_root, "Dev", "Nope", BookmarkInput("T", "https://t.example"))
        assert isinstance(result.error, NotFoundError)

    def test_add_bookmarks_is_all_or_nothing(self, sample_root):
        result = entity.add_bookmarks(sample_root, "Dev", "Python", [
            BookmarkInput("Good", "https://good.example"),
            BookmarkInput("Bad", "nope"),
        ])
        assert not result.ok

    def test_bookmark_ids_are_unique(self, sample_root):
        ids = [b.id for b in find_live(sample_root.categories, "Dev").bundles[0].bookmarks]
        assert len(set(ids)) == len(ids)

    def test_update_bookmark(self, sample_root):
        target = _bookmark(sample_root, "Dev", "Python", 1)
        update = BookmarkUpdate(title="PyPI Index", tags=("packages",), notes="")
        root = entity.update_bookmark(sample_root, "Dev", "Python", target.id, update, now=at(90)).unwrap()
        updated = _bookmark(root, "Dev", "Python", 1)
        assert updated.id == target.id
        assert updated.title == "PyPI Index"
        assert updated.url == target.url
        assert updated.tags == ("packages",)
        assert updated.notes is None
        assert updated.last_modified == at(90)

    def test_update_with_invalid_url_fails(self, sample_root):
        target = _bookmark(sample_root, "Dev", "Python")
        result = entity.update_bookmark(sample_root, "Dev", "Python", target.id, BookmarkUpdate(url="nope"))
        assert isinstance(result.error, ValidationError)

    def test_update_missing_bookmark_fails(self, sample_root):
        result = entity.update_bookmark(sample_root, "Dev", "Python", "missing", BookmarkUpdate(title="x"))
        assert isinstance(result.error, NotFoundError)

    def test_remove_bookmark(self, sample_root):
        target = _bookmark(sample_root, "Dev", "Python")
        root = entity.remove_bookmark(sample_root, "Dev", "Python", target.id, now=at(95)).unwrap()
        bundle = find_live(root.categories, "Dev").bundles[0]
        assert [b.title for b in bundle.live_bookmarks] == ["PyPI"]
        assert bundle.bookmarks[0].is_deleted

        again = entity.remove_bookmark(root, "Dev", "Python", target.id)
        assert isinstance(again.error, NotFoundError)

    def test_move_bookmark_keeps_id(self, sample_root):
        target = _bookmark(sample_root, "Dev", "Python")
        root = entity.move_bookmark(sample_root, "Dev", "Python", "Reading", "Articles",
                                    target.id, now=at(100)).unwrap()
        source = find_live(root.categories, "Dev").bundles[0]
        articles = find_live(root.categories, "Reading").bundles[0]
        assert target.id not in [b.id for b in source.bookmarks]
        assert source.last_modified == at(100)
        assert articles.bookmarks[-1].id == target.id
        assert articles.bookmarks[-1].last_modified == at(100)

    def test_move_bookmark_to_missing_target_changes_nothing(self, sample_root):
        target = _bookmark(sample_root, "Dev", "Python")
        result = entity.move_bookmark(sample_root, "Dev", "Python", "Reading", "Nope", target.id)
        assert isinstance(result.error, NotFoundError)

    def test_move_bookmark_to_same_bundle_is_noop(self, sample_root):
        target = _bookmark(sample_root, "Dev", "Python")
        result = entity.move_bookmark(sample_root, "Dev", "Python", "Dev", "Python", target.id)
        assert result.unwrap() is sample_root


class TestQueries:
    """Test search and statistics."""

    def test_search_everything(self, sample_root):
        hits = list(entity.search(sample_root))
        assert len(hits) == 3
        assert hits[0].category_name == "Dev"
        assert hits[0].bundle_name == "Python"

    def test_search_term_matches_title_url_notes_and_tags(self, sample_root):
        def titles(term):
            return [h.bookmark.title for h in entity.search(sample_root, BookmarkFilter(search_term=term))]

        assert titles("docs") == ["Python Docs"]
        assert titles("PYPI.ORG") == ["PyPI"]
        assert titles("package") == ["PyPI"]
        assert titles("python") == ["Python Docs", "Blog"]

    def test_search_by_tags_requires_all(self, sample_root):
        hits = entity.search(sample_root, BookmarkFilter(tags=("python", "docs")))
        assert [h.bookmark.title for h in hits] == ["Python Docs"]

    def test_search_scoped_to_category_and_bundle(self, sample_root):
        query = BookmarkFilter(category_name="Reading", bundle_name="Articles")
        assert [h.bookmark.title for h in entity.search(sample_root, query)] == ["Blog"]

    def test_search_results_are_reiterable(self, sample_root):
        results = entity.search(sample_root)
        assert len(list(results)) == len(list(results)) == 3

    def test_search_skips_deleted(self, sample_root):
        root = entity.remove_category(sample_root, "Reading").unwrap()
        assert [h.category_name for h in entity.search(root)] == ["Dev", "Dev"]

    def test_stats(self, sample_root):
        counts = entity.stats(sample_root)
        assert counts.categories == 2
        assert counts.bundles == 2
        assert counts.bookmarks == 3
        # "python" and "Python" count once
        assert counts.tags == 2


class TestMaintenance:
    """Test compaction and metadata defaults."""

    def test_compact_drops_tombstones_and_folds_time(self, sample_root):
        target = _bookmark(sample_root, "Dev", "Python")
        root = entity.remove_bookmark(sample_root, "Dev", "Python", target.id, now=at(200)).unwrap()
        root = entity.remove_category(root, "Reading", now=at(150)).unwrap()
        compacted = entity.compact(root)

        assert [c.name for c in compacted.categories] == ["Dev"]
        bundle = compacted.categories[0].bundles[0]
        assert len(bundle.bookmarks) == 1
        assert bundle.last_modified == at(200)
        assert subtree_modified(compacted.categories[0]) == at(200)
        assert same_content(root, compacted)

    def test_compact_without_tombstones_is_identity(self, sample_root):
        assert entity.compact(sample_root) == sample_root

    def test_ensure_metadata_fills_in_epoch(self):
        bare = Root(categories=(Category(name="Dev"),))
        root = entity.ensure_metadata(bare)
        assert root.last_sync == EPOCH
        assert root.categories[0].metadata is not None
        assert root.categories[0].last_modified == EPOCH

    def test_ensure_metadata_keeps_existing(self, sample_root):
        assert entity.ensure_metadata(sample_root) == sample_root
