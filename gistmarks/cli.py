#!/usr/bin/env python3
"""
Gistmarks - bookmarks in a markdown gist

Command-line interface. Edits are made to a local working copy and pushed,
pulled or merged against the remote gist with the ``remote`` commands.
"""
import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from gistmarks import codec, entity
from gistmarks.config import GistmarksConfig, init_config
from gistmarks.errors import NotFoundError, ValidationError
from gistmarks.gist import GistStore
from gistmarks.merge import ConflictResolution, Side
from gistmarks.models import (
    BookmarkFilter, BookmarkInput, BookmarkUpdate, Root, root_to_dict, find_live,
)
from gistmarks.result import Result, success
from gistmarks.storage import LocalState, load_state, save_state
from gistmarks.sync import SyncCoordinator
from gistmarks.utils import format_timestamp

logger = logging.getLogger(__name__)


console = Console()


def _split_tags(value: Optional[str]):
    if value is None:
        return None
    return tuple(t.strip() for t in value.split(",") if t.strip())


def _state(config: GistmarksConfig) -> LocalState:
    return load_state(config.get_state_path())


def _commit(config: GistmarksConfig, state: LocalState, result: Result, message: str):
    """Store a successful local edit; raises the carried error otherwise."""
    state.root = result.unwrap()
    state.dirty = True
    save_state(state, config.get_state_path())
    console.print(f"[green]{message}[/green]")


def _resolve_bookmark_id(root: Root, category: str, bundle: str, prefix: str) -> str:
    """Expand a unique id prefix, as shown in listings, to the full id."""
    cat = find_live(root.categories, category)
    if cat is None:
        raise NotFoundError(f"Category '{category}' not found")
    bun = find_live(cat.bundles, bundle)
    if bun is None:
        raise NotFoundError(f"Bundle '{bundle}' not found in category '{category}'")
    matches = [b.id for b in bun.live_bookmarks if b.id.startswith(prefix)]
    if not matches:
        raise NotFoundError(f"Bookmark '{prefix}' not found in bundle '{bundle}'")
    if len(matches) > 1:
        raise ValidationError(f"Bookmark id '{prefix}' is ambiguous")
    return matches[0]


# =============================================================================
# Local edits
# =============================================================================

def cmd_category(args):
    config = init_config()
    state = _state(config)
    if args.category_command == "add":
        _commit(config, state, entity.add_category(state.root, args.name),
                f"Added category '{args.name}'")
    elif args.category_command == "rm":
        _commit(config, state, entity.remove_category(state.root, args.name),
                f"Removed category '{args.name}'")
    elif args.category_command == "rename":
        _commit(config, state, entity.rename_category(state.root, args.old, args.new),
                f"Renamed category '{args.old}' to '{args.new}'")


def cmd_bundle(args):
    config = init_config()
    state = _state(config)
    if args.bundle_command == "add":
        result = entity.add_bundle(state.root, args.category, args.name)
        message = f"Added bundle '{args.name}' to '{args.category}'"
    elif args.bundle_command == "rm":
        result = entity.remove_bundle(state.root, args.category, args.name)
        message = f"Removed bundle '{args.name}' from '{args.category}'"
    elif args.bundle_command == "rename":
        result = entity.rename_bundle(state.root, args.category, args.old, args.new)
        message = f"Renamed bundle '{args.old}' to '{args.new}'"
    else:  # mv
        result = entity.move_bundle(state.root, args.from_category, args.to_category, args.name)
        message = f"Moved bundle '{args.name}' to '{args.to_category}'"
    _commit(config, state, result, message)


def cmd_bookmark(args):
    config = init_config()
    state = _state(config)
    root = state.root

    if args.bookmark_command == "add":
        item = BookmarkInput(title=args.title or args.url, url=args.url,
                             tags=_split_tags(args.tags) or (), notes=args.notes)
        _commit(config, state, entity.add_bookmark(root, args.category, args.bundle, item),
                f"Added {args.url}")
        return

    if args.bookmark_command == "mv":
        bookmark_id = _resolve_bookmark_id(root, args.from_category, args.from_bundle, args.id)
        _commit(config, state,
                entity.move_bookmark(root, args.from_category, args.from_bundle,
                                     args.to_category, args.to_bundle, bookmark_id),
                f"Moved bookmark to '{args.to_category}/{args.to_bundle}'")
        return

    bookmark_id = _resolve_bookmark_id(root, args.category, args.bundle, args.id)
    if args.bookmark_command == "update":
        update = BookmarkUpdate(title=args.title, url=args.url,
                                tags=_split_tags(args.tags), notes=args.notes)
        _commit(config, state,
                entity.update_bookmark(root, args.category, args.bundle, bookmark_id, update),
                f"Updated bookmark {bookmark_id[:8]}")
    else:  # rm
        _commit(config, state,
                entity.remove_bookmark(root, args.category, args.bundle, bookmark_id),
                f"Removed bookmark {bookmark_id[:8]}")


# =============================================================================
# Queries
# =============================================================================

def cmd_list(args):
    config = init_config()
    root = _state(config).root

    if args.output == "json":
        print(json.dumps(root_to_dict(entity.compact(root)), indent=2, ensure_ascii=False))
        return

    if not root.live_categories:
        console.print("[yellow]No bookmarks yet[/yellow]")
        return

    tree = Tree("[bold]Bookmarks[/bold]")
    for category in root.live_categories:
        if args.category and category.name != args.category:
            continue
        branch = tree.add(f"[bold cyan]{category.name}[/bold cyan]")
        for bundle in category.live_bundles:
            leaf = branch.add(f"[magenta]{bundle.name}[/magenta]")
            for bookmark in bundle.live_bookmarks:
                tags = " ".join(f"#{t}" for t in bookmark.tags)
                leaf.add(f"[dim]{bookmark.id[:8]}[/dim] {bookmark.title} "
                         f"[blue]{bookmark.url}[/blue] [yellow]{tags}[/yellow]")
    console.print(tree)


def cmd_search(args):
    config = init_config()
    root = _state(config).root
    query = BookmarkFilter(
        search_term=args.query or None,
        tags=_split_tags(args.tags) or (),
        category_name=args.category,
        bundle_name=args.bundle,
    )
    hits = list(entity.search(root, query))

    if args.output == "json":
        print(json.dumps([
            {"id": h.bookmark.id, "title": h.bookmark.title, "url": h.bookmark.url,
             "tags": list(h.bookmark.tags), "category": h.category_name, "bundle": h.bundle_name}
            for h in hits
        ], indent=2, ensure_ascii=False))
        return

    if not hits:
        console.print("[yellow]No results found[/yellow]")
        return

    table = Table(title=f"Search results ({len(hits)})")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="green")
    table.add_column("URL", style="blue")
    table.add_column("Location", style="magenta")
    table.add_column("Tags", style="yellow")
    for hit in hits:
        table.add_row(hit.bookmark.id[:8], hit.bookmark.title, hit.bookmark.url,
                      f"{hit.category_name}/{hit.bundle_name}", ", ".join(hit.bookmark.tags))
    console.print(table)


def cmd_stats(args):
    config = init_config()
    state = _state(config)
    counts = entity.stats(state.root)

    if args.output == "json":
        print(json.dumps({"categories": counts.categories, "bundles": counts.bundles,
                          "bookmarks": counts.bookmarks, "tags": counts.tags}))
        return

    table = Table(title="Collection")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Categories", str(counts.categories))
    table.add_row("Bundles", str(counts.bundles))
    table.add_row("Bookmarks", str(counts.bookmarks))
    table.add_row("Distinct tags", str(counts.tags))
    table.add_row("Unsynced changes", "yes" if state.dirty else "no")
    table.add_row("Last sync", format_timestamp(state.root.last_sync))
    console.print(table)


# =============================================================================
# Import/Export
# =============================================================================

def cmd_export(args):
    config = init_config()
    root = _state(config).root
    if args.format == "markdown":
        content = codec.generate(root, with_metadata=not args.plain)
    else:
        content = json.dumps(root_to_dict(entity.compact(root)), indent=2, ensure_ascii=False)

    if args.file:
        Path(args.file).write_text(content + "\n", encoding="utf-8")
        console.print(f"[green]Exported to {args.file}[/green]")
    else:
        print(content)


def import_tree(root: Root, imported: Root) -> Root:
    """Add the categories, bundles and bookmarks of ``imported`` to ``root``.

    Existing categories and bundles with the same name are reused, so
    their bookmarks are appended rather than replaced.
    """
    for category in imported.live_categories:
        if find_live(root.categories, category.name) is None:
            root = entity.add_category(root, category.name).unwrap()
        for bundle in category.live_bundles:
            target = find_live(root.categories, category.name)
            if find_live(target.bundles, bundle.name) is None:
                root = entity.add_bundle(root, category.name, bundle.name).unwrap()
            items = [BookmarkInput(b.title, b.url, b.tags, b.notes) for b in bundle.live_bookmarks]
            if items:
                root = entity.add_bookmarks(root, category.name, bundle.name, items).unwrap()
    return root


def cmd_import(args):
    config = init_config()
    state = _state(config)
    text = Path(args.file).read_text(encoding="utf-8")
    imported = codec.parse_document(text).unwrap()
    counts = entity.stats(imported)
    _commit(config, state, success(import_tree(state.root, imported)),
            f"Imported {counts.bookmarks} bookmarks in {counts.categories} categories")


# =============================================================================
# Remote
# =============================================================================

def _gist_store(config: GistmarksConfig) -> GistStore:
    if not config.github_token:
        raise ValidationError("No GitHub token configured (set GISTMARKS_GITHUB_TOKEN)")
    return GistStore(config.github_token, filename=config.filename,
                     api_base_url=config.api_base_url, timeout=config.timeout)


def _print_conflicts(conflicts):
    table = Table(title="Conflicts")
    table.add_column("Category", style="cyan")
    table.add_column("Local", style="green")
    table.add_column("Remote", style="yellow")
    for conflict in conflicts:
        local = "deleted" if conflict.local_data.is_deleted else "modified"
        remote = "deleted" if conflict.remote_data.is_deleted else "modified"
        table.add_row(conflict.category_name,
                      f"{local} {format_timestamp(conflict.local_last_modified)}",
                      f"{remote} {format_timestamp(conflict.remote_last_modified)}")
    console.print(table)
    console.print("Resolve with: gistmarks remote resolve --local NAME / --remote NAME")


async def _run_remote(config: GistmarksConfig, action: Callable, **coordinator_args):
    """Run ``action(coordinator)`` against the gist and store the resulting state."""
    state = _state(config)
    async with _gist_store(config) as store:
        coordinator = SyncCoordinator(
            store,
            state.remote_id or config.gist_id,
            root=state.root,
            version=state.version if state.remote_id else None,
            dirty=state.dirty,
            description=config.description,
            interval_ms=config.poll_interval_ms,
            **coordinator_args
        )
        value = await action(coordinator)

    state.root = coordinator.root
    state.remote_id = coordinator.remote_id
    state.version = coordinator.version
    state.dirty = coordinator.is_dirty()
    save_state(state, config.get_state_path())
    return value


def cmd_remote(args):
    config = init_config()
    command = args.remote_command

    if command == "info":
        state = _state(config)
        table = Table(title="Remote")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Gist", state.remote_id or config.gist_id or "-")
        table.add_row("Version", state.version or "-")
        table.add_row("File", config.filename)
        table.add_row("Unsynced changes", "yes" if state.dirty else "no")
        console.print(table)
        return

    if command == "find":
        async def find():
            async with _gist_store(config) as store:
                return (await store.find_by_filename()).unwrap()
        gist_id = asyncio.run(find())
        if gist_id is None:
            console.print(f"[yellow]No gist holds '{config.filename}'[/yellow]")
            return
        state = _state(config)
        if state.remote_id != gist_id:
            state.remote_id, state.version = gist_id, None
            save_state(state, config.get_state_path())
        console.print(f"[green]Using gist {gist_id}[/green]")
        return

    if command == "pull":
        async def pull(c: SyncCoordinator):
            return (await c.load()).unwrap()
        root = asyncio.run(_run_remote(config, pull))
        counts = entity.stats(root)
        console.print(f"[green]Pulled {counts.bookmarks} bookmarks[/green]")

    elif command == "push":
        async def push(c: SyncCoordinator):
            return (await c.save()).unwrap()
        info = asyncio.run(_run_remote(config, push))
        console.print(f"[green]Pushed to gist {info.id}[/green]")

    elif command in ("sync", "check"):
        async def run(c: SyncCoordinator):
            if command == "check":
                return (await c.check_conflicts()).unwrap()
            return (await c.sync()).unwrap()
        outcome = asyncio.run(_run_remote(config, run))
        conflicts = outcome if command == "check" else outcome.conflicts
        if conflicts:
            _print_conflicts(conflicts)
            sys.exit(2)
        if command == "check":
            console.print("[green]No conflicts[/green]")
        elif outcome.created:
            console.print(f"[green]Created gist {outcome.remote.id}[/green]")
        elif outcome.persisted:
            console.print("[green]Synced and saved[/green]")
        else:
            console.print("[green]Already up to date[/green]")

    elif command == "resolve":
        resolutions = [ConflictResolution(n, Side.LOCAL) for n in args.local or []]
        resolutions += [ConflictResolution(n, Side.REMOTE) for n in args.remote or []]

        async def resolve(c: SyncCoordinator):
            if args.all:
                # Explicit --local/--remote picks take precedence
                picked = {r.category_name for r in resolutions}
                pending = (await c.check_conflicts()).unwrap()
                resolutions.extend(ConflictResolution(p.category_name, Side(args.all))
                                   for p in pending if p.category_name not in picked)
            return (await c.sync_with_conflict_resolution(resolutions)).unwrap()
        asyncio.run(_run_remote(config, resolve))
        console.print("[green]Conflicts resolved and saved[/green]")

    elif command == "watch":
        def announce(version: str):
            console.print(f"[yellow]Remote changed (version {version}); run 'gistmarks remote sync'[/yellow]")

        async def watch(c: SyncCoordinator):
            if c.version is None:
                (await c.sync()).unwrap()
            (await c.start_change_detection()).unwrap()
            console.print(f"Watching gist {c.remote_id} (Ctrl-C to stop)")
            try:
                while True:
                    await asyncio.sleep(3600)
            finally:
                c.stop_change_detection()
        asyncio.run(_run_remote(config, watch, on_remote_change=announce))


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Gistmarks: bookmarks kept in a markdown gist, synced across devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  gistmarks category add Dev
  gistmarks bundle add Dev Python
  gistmarks bookmark add Dev Python https://docs.python.org --title "Docs" --tags "python,docs"
  gistmarks search python
  gistmarks remote sync

Configuration:
  Config file: ~/.config/gistmarks/config.toml or ./gistmarks.toml
  Environment: GISTMARKS_GITHUB_TOKEN, GISTMARKS_GIST_ID, GISTMARKS_STATE_FILE
        """
    )

    # Global options
    parser.add_argument("--config", help="Config file path")
    parser.add_argument("--state", help="Local state file")
    parser.add_argument("-o", "--output", choices=["table", "json"], help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command groups")

    # =================
    # CATEGORY GROUP
    # =================
    category_parser = subparsers.add_parser("category", help="Category operations")
    category_sub = category_parser.add_subparsers(dest="category_command", required=True)
    cat_add = category_sub.add_parser("add", help="Add a category")
    cat_add.add_argument("name")
    cat_rm = category_sub.add_parser("rm", help="Remove a category")
    cat_rm.add_argument("name")
    cat_rename = category_sub.add_parser("rename", help="Rename a category")
    cat_rename.add_argument("old")
    cat_rename.add_argument("new")
    category_parser.set_defaults(func=cmd_category)

    # =================
    # BUNDLE GROUP
    # =================
    bundle_parser = subparsers.add_parser("bundle", help="Bundle operations")
    bundle_sub = bundle_parser.add_subparsers(dest="bundle_command", required=True)
    bun_add = bundle_sub.add_parser("add", help="Add a bundle to a category")
    bun_add.add_argument("category")
    bun_add.add_argument("name")
    bun_rm = bundle_sub.add_parser("rm", help="Remove a bundle")
    bun_rm.add_argument("category")
    bun_rm.add_argument("name")
    bun_rename = bundle_sub.add_parser("rename", help="Rename a bundle")
    bun_rename.add_argument("category")
    bun_rename.add_argument("old")
    bun_rename.add_argument("new")
    bun_mv = bundle_sub.add_parser("mv", help="Move a bundle to another category")
    bun_mv.add_argument("from_category")
    bun_mv.add_argument("to_category")
    bun_mv.add_argument("name")
    bundle_parser.set_defaults(func=cmd_bundle)

    # =================
    # BOOKMARK GROUP
    # =================
    bookmark_parser = subparsers.add_parser("bookmark", help="Bookmark operations")
    bookmark_sub = bookmark_parser.add_subparsers(dest="bookmark_command", required=True)

    bm_add = bookmark_sub.add_parser("add", help="Add a bookmark")
    bm_add.add_argument("category")
    bm_add.add_argument("bundle")
    bm_add.add_argument("url")
    bm_add.add_argument("--title", help="Bookmark title (defaults to the URL)")
    bm_add.add_argument("--tags", help="Comma-separated tags")
    bm_add.add_argument("--notes", help="Notes")

    bm_update = bookmark_sub.add_parser("update", help="Update a bookmark")
    bm_update.add_argument("category")
    bm_update.add_argument("bundle")
    bm_update.add_argument("id", help="Bookmark id or unique prefix")
    bm_update.add_argument("--title")
    bm_update.add_argument("--url")
    bm_update.add_argument("--tags", help="Comma-separated tags (empty string clears)")
    bm_update.add_argument("--notes", help="Notes (empty string clears)")

    bm_rm = bookmark_sub.add_parser("rm", help="Remove a bookmark")
    bm_rm.add_argument("category")
    bm_rm.add_argument("bundle")
    bm_rm.add_argument("id", help="Bookmark id or unique prefix")

    bm_mv = bookmark_sub.add_parser("mv", help="Move a bookmark to another bundle")
    bm_mv.add_argument("from_category")
    bm_mv.add_argument("from_bundle")
    bm_mv.add_argument("to_category")
    bm_mv.add_argument("to_bundle")
    bm_mv.add_argument("id", help="Bookmark id or unique prefix")
    bookmark_parser.set_defaults(func=cmd_bookmark)

    # =================
    # QUERIES
    # =================
    list_parser = subparsers.add_parser("list", help="Show the bookmark tree")
    list_parser.add_argument("--category", help="Only this category")
    list_parser.set_defaults(func=cmd_list)

    search_parser = subparsers.add_parser("search", help="Search bookmarks")
    search_parser.add_argument("query", nargs="?", default="", help="Text to look for")
    search_parser.add_argument("--tags", help="Required tags (comma-separated)")
    search_parser.add_argument("--category", help="Only this category")
    search_parser.add_argument("--bundle", help="Only this bundle")
    search_parser.set_defaults(func=cmd_search)

    stats_parser = subparsers.add_parser("stats", help="Collection statistics")
    stats_parser.set_defaults(func=cmd_stats)

    # =================
    # IMPORT/EXPORT
    # =================
    export_parser = subparsers.add_parser("export", help="Export the collection")
    export_parser.add_argument("format", choices=["markdown", "json"])
    export_parser.add_argument("file", nargs="?", help="Output file (default: stdout)")
    export_parser.add_argument("--plain", action="store_true",
                               help="Leave out metadata comments in markdown")
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Merge a markdown file into the collection")
    import_parser.add_argument("file")
    import_parser.set_defaults(func=cmd_import)

    # =================
    # REMOTE GROUP
    # =================
    remote_parser = subparsers.add_parser("remote", help="Gist synchronization")
    remote_sub = remote_parser.add_subparsers(dest="remote_command", required=True)
    remote_sub.add_parser("info", help="Show the configured gist")
    remote_sub.add_parser("find", help="Find the gist holding the bookmarks file")
    remote_sub.add_parser("pull", help="Replace local bookmarks with the gist")
    remote_sub.add_parser("push", help="Write local bookmarks to the gist")
    remote_sub.add_parser("sync", help="Merge with the gist and save")
    remote_sub.add_parser("check", help="Report conflicts without saving")
    resolve = remote_sub.add_parser("resolve", help="Resolve conflicts and save")
    resolve.add_argument("--local", action="append", metavar="CATEGORY",
                         help="Keep the local version of CATEGORY")
    resolve.add_argument("--remote", action="append", metavar="CATEGORY",
                         help="Keep the remote version of CATEGORY")
    resolve.add_argument("--all", choices=["local", "remote"],
                         help="Resolve every conflict the same way")
    remote_sub.add_parser("watch", help="Report remote changes as they happen")
    remote_parser.set_defaults(func=cmd_remote)

    args = parser.parse_args(argv)

    config_args = {"output_format": args.output, "state_file": args.state}
    config = init_config(config_file=Path(args.config) if args.config else None, **config_args)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.log_level,
        format="%(levelname)s: %(message)s"
    )

    if not args.output:
        args.output = config.output_format

    try:
        args.func(args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
