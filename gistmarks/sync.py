"""
Synchronization between a local bookmark tree and its remote document.

The SyncCoordinator owns the working tree, the cached remote id and version
token, and the dirty flag. It writes with the last version it saw and never
retries a rejected write on its own: a ConflictError goes back to the caller,
who decides whether to sync (merge) and try again.

Example:
    >>> coordinator = SyncCoordinator(store, "abc123")
    >>> await coordinator.load()
    >>> coordinator.add_category("Reading")
    >>> outcome = (await coordinator.sync()).unwrap()
    >>> if outcome.has_conflicts:
    ...     choices = [ConflictResolution(c.category_name, "local") for c in outcome.conflicts]
    ...     await coordinator.sync_with_conflict_resolution(choices)
"""
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

from gistmarks import codec, entity, utils
from gistmarks.clock import Clock
from gistmarks.constants import DEFAULT_DESCRIPTION, DEFAULT_POLL_INTERVAL_MS
from gistmarks.detector import ChangeDetector
from gistmarks.errors import ConflictError, NotFoundError
from gistmarks.merge import ConflictResolution, MergeConflict, merge_roots, resolve_conflicts
from gistmarks.models import BookmarkInput, BookmarkUpdate, Root, RootMetadata
from gistmarks.result import Result, failure, success
from gistmarks.store import RemoteInfo, RemoteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncOutcome:
    """What a sync did.

    ``persisted`` is True when the remote document was written; with
    conflicts nothing was written and ``root`` is the untouched local tree.
    """
    remote: Optional[RemoteInfo]
    root: Root
    conflicts: Tuple[MergeConflict, ...] = field(default_factory=tuple)
    persisted: bool = False
    created: bool = False

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class SyncCoordinator:
    """Load, save and merge a bookmark tree against one remote document.

    Args:
        store: Remote backend
        remote_id: Document to use; None until one is created
        on_remote_change: Called with the new version when the change
            detector sees the remote document move
        has_unresolved_conflict: Guard consulted before reporting a remote
            change; while it returns True notifications are suppressed
        on_conflicts: Called with the conflicts a sync found
        description: Description given to newly created documents
        interval_ms: Change detection polling interval
        clock: Clock for change detection
        root: Initial working tree
        version: Cached version token matching ``remote_id``
        dirty: Restored dirty flag for a working tree persisted earlier

    Only one write may be in flight per coordinator; callers await each
    operation before starting the next.
    """

    def __init__(
        self,
        store: RemoteStore,
        remote_id: Optional[str] = None,
        *,
        on_remote_change: Optional[Callable[[str], Any]] = None,
        has_unresolved_conflict: Optional[Callable[[], bool]] = None,
        on_conflicts: Optional[Callable[[Sequence[MergeConflict]], Any]] = None,
        description: str = DEFAULT_DESCRIPTION,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        clock: Optional[Clock] = None,
        root: Optional[Root] = None,
        version: Optional[str] = None,
        dirty: bool = False
    ):
        self.store = store
        self.remote_id = remote_id
        self.version = version
        self.root = root if root is not None else Root(metadata=RootMetadata())
        self.on_remote_change = on_remote_change
        self.has_unresolved_conflict = has_unresolved_conflict
        self.on_conflicts = on_conflicts
        self.description = description
        self.interval_ms = interval_ms
        self.clock = clock
        self._dirty = dirty
        self._detector: Optional[ChangeDetector] = None

    # =========================================================================
    # State
    # =========================================================================

    def is_dirty(self) -> bool:
        """True while local changes have not been written or replaced."""
        return self._dirty

    def get_remote_info(self) -> Optional[RemoteInfo]:
        if not self.remote_id:
            return None
        return RemoteInfo(id=self.remote_id, version=self.version)

    def _remember(self, remote_id: str, version: str):
        if self._detector is not None and self._detector.remote_id != remote_id:
            self._detector.stop()
            self._detector = None
        self.remote_id = remote_id
        self.version = version
        if self._detector is not None:
            self._detector.acknowledge(version)

    # =========================================================================
    # Mutations
    # =========================================================================

    def _apply(self, result: Result) -> Result:
        if result.ok:
            self.root = result.value
            self._dirty = True
        return result

    def add_category(self, name: str) -> Result:
        return self._apply(entity.add_category(self.root, name))

    def remove_category(self, name: str) -> Result:
        return self._apply(entity.remove_category(self.root, name))

    def rename_category(self, old_name: str, new_name: str) -> Result:
        return self._apply(entity.rename_category(self.root, old_name, new_name))

    def add_bundle(self, category_name: str, name: str) -> Result:
        return self._apply(entity.add_bundle(self.root, category_name, name))

    def remove_bundle(self, category_name: str, name: str) -> Result:
        return self._apply(entity.remove_bundle(self.root, category_name, name))

    def rename_bundle(self, category_name: str, old_name: str, new_name: str) -> Result:
        return self._apply(entity.rename_bundle(self.root, category_name, old_name, new_name))

    def add_bookmark(self, category_name: str, bundle_name: str, item: BookmarkInput) -> Result:
        return self._apply(entity.add_bookmark(self.root, category_name, bundle_name, item))

    def add_bookmarks(self, category_name: str, bundle_name: str,
                      items: Iterable[BookmarkInput]) -> Result:
        return self._apply(entity.add_bookmarks(self.root, category_name, bundle_name, items))

    def update_bookmark(self, category_name: str, bundle_name: str, bookmark_id: str,
                        update: BookmarkUpdate) -> Result:
        return self._apply(entity.update_bookmark(
            self.root, category_name, bundle_name, bookmark_id, update))

    def remove_bookmark(self, category_name: str, bundle_name: str, bookmark_id: str) -> Result:
        return self._apply(entity.remove_bookmark(self.root, category_name, bundle_name, bookmark_id))

    def move_bookmark(self, from_category: str, from_bundle: str, to_category: str,
                      to_bundle: str, bookmark_id: str) -> Result:
        return self._apply(entity.move_bookmark(
            self.root, from_category, from_bundle, to_category, to_bundle, bookmark_id))

    def move_bundle(self, from_category: str, to_category: str, name: str) -> Result:
        return self._apply(entity.move_bundle(self.root, from_category, to_category, name))

    # =========================================================================
    # Remote operations
    # =========================================================================

    async def _fetch(self, remote_id: str) -> Result:
        """Read and parse the remote document: Result[(Root, version)]."""
        document = await self.store.read(remote_id)
        if not document.ok:
            return document
        parsed = codec.parse_document(document.value.content)
        if not parsed.ok:
            return parsed
        return success((parsed.value, document.value.version))

    async def _persist(self, root: Root, remote_id: Optional[str], expected_version: Optional[str],
                       description: Optional[str] = None) -> Result:
        """Write ``root`` and adopt it as the synced working tree."""
        content = codec.generate(root)
        if remote_id is None:
            created = await self.store.create(description or self.description, content)
            if not created.ok:
                return created
            info = created.value
        else:
            written = await self.store.update(remote_id, content, expected_version)
            if not written.ok:
                return written
            info = RemoteInfo(id=remote_id, version=written.value)

        self.root = root.synced(utils.now_utc())
        self._remember(info.id, info.version)
        self._dirty = False
        logger.info(f"Saved {info.id} at version {info.version}")
        return success(info)

    def _adopt(self, root: Root, remote_id: str, version: str):
        self.root = root.synced(utils.now_utc())
        self._remember(remote_id, version)
        self._dirty = False

    async def _report(self, conflicts: Sequence[MergeConflict]):
        if self.on_conflicts is None:
            return
        try:
            outcome = self.on_conflicts(conflicts)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Conflict callback raised")

    async def load(self, remote_id: Optional[str] = None) -> Result:
        """Replace the working tree with the remote document. Returns Result[Root]."""
        remote_id = remote_id or self.remote_id
        if not remote_id:
            return failure(NotFoundError("No remote document to load"))
        fetched = await self._fetch(remote_id)
        if not fetched.ok:
            return fetched
        root, version = fetched.value
        self._adopt(root, remote_id, version)
        logger.info(f"Loaded {remote_id} at version {version}")
        return success(self.root)

    async def save(self, root: Optional[Root] = None, remote_id: Optional[str] = None,
                   description: Optional[str] = None) -> Result:
        """Write a tree: update the known document, or create one when there is none.

        The update is conditional on the cached version; writing to a
        document this coordinator has not read fails with ConflictError.
        Returns Result[RemoteInfo].
        """
        root = root if root is not None else self.root
        remote_id = remote_id or self.remote_id
        if remote_id is not None and (remote_id != self.remote_id or self.version is None):
            return failure(ConflictError(
                f"No known version of '{remote_id}'; load or sync before saving"))
        return await self._persist(root, remote_id, self.version, description)

    async def sync(self, root: Optional[Root] = None, remote_id: Optional[str] = None) -> Result:
        """Merge with the remote document and write the result.

        Creates the document when it does not exist yet. With conflicts,
        nothing is written and the conflicts come back in the outcome.
        Returns Result[SyncOutcome].
        """
        local = entity.ensure_metadata(root if root is not None else self.root)
        remote_id = remote_id or self.remote_id

        if remote_id:
            found = await self.store.exists(remote_id)
            if not found.ok:
                return found
            if not found.value:
                logger.warning(f"Remote document {remote_id} is gone, creating a new one")
                remote_id = None

        if not remote_id:
            created = await self._persist(local, None, None)
            if not created.ok:
                return created
            return success(SyncOutcome(remote=created.value, root=self.root,
                                       persisted=True, created=True))

        fetched = await self._fetch(remote_id)
        if not fetched.ok:
            return fetched
        remote_root, version = fetched.value

        result = merge_roots(local, remote_root, last_sync=local.last_sync)
        if result.has_conflicts:
            await self._report(result.conflicts)
            return success(SyncOutcome(remote=RemoteInfo(remote_id, version), root=local,
                                       conflicts=result.conflicts))

        if not result.has_changes:
            self._adopt(result.merged_root, remote_id, version)
            logger.info(f"{remote_id} already up to date")
            return success(SyncOutcome(remote=RemoteInfo(remote_id, version), root=self.root))

        written = await self._persist(result.merged_root, remote_id, version)
        if not written.ok:
            return written
        return success(SyncOutcome(remote=written.value, root=self.root, persisted=True))

    async def sync_with_conflict_resolution(
        self,
        resolutions: Iterable[ConflictResolution],
        root: Optional[Root] = None,
        remote_id: Optional[str] = None
    ) -> Result:
        """Merge again applying the caller's choices, then write. Returns Result[SyncOutcome]."""
        local = entity.ensure_metadata(root if root is not None else self.root)
        remote_id = remote_id or self.remote_id
        if not remote_id:
            return failure(NotFoundError("No remote document to resolve against"))

        fetched = await self._fetch(remote_id)
        if not fetched.ok:
            return fetched
        remote_root, version = fetched.value

        resolved = resolve_conflicts(local, remote_root, resolutions, last_sync=local.last_sync)
        if not resolved.ok:
            return resolved
        result = resolved.value

        if not result.has_changes:
            self._adopt(result.merged_root, remote_id, version)
            return success(SyncOutcome(remote=RemoteInfo(remote_id, version), root=self.root))

        written = await self._persist(result.merged_root, remote_id, version)
        if not written.ok:
            return written
        return success(SyncOutcome(remote=written.value, root=self.root, persisted=True))

    async def check_conflicts(self, root: Optional[Root] = None,
                              remote_id: Optional[str] = None) -> Result:
        """Dry-run merge. Returns Result[tuple of MergeConflict]; writes nothing."""
        local = entity.ensure_metadata(root if root is not None else self.root)
        remote_id = remote_id or self.remote_id
        if not remote_id:
            return success(())
        fetched = await self._fetch(remote_id)
        if not fetched.ok:
            return fetched
        remote_root, _ = fetched.value
        return success(merge_roots(local, remote_root, last_sync=local.last_sync).conflicts)

    # =========================================================================
    # Change detection
    # =========================================================================

    def _on_detected(self, version: str):
        if self.on_remote_change is not None:
            return self.on_remote_change(version)

    def _guard(self) -> bool:
        return bool(self.has_unresolved_conflict and self.has_unresolved_conflict())

    @property
    def is_watching(self) -> bool:
        return self._detector is not None and self._detector.is_running

    async def start_change_detection(self) -> Result:
        """Start polling the remote document for changes made elsewhere."""
        if not self.remote_id:
            return failure(NotFoundError("No remote document to watch"))
        if self._detector is None:
            self._detector = ChangeDetector(
                self.store,
                self.remote_id,
                self._on_detected,
                interval_ms=self.interval_ms,
                guard=self._guard,
                clock=self.clock,
            )
        await self._detector.start(known_version=self.version)
        return success(None)

    def stop_change_detection(self):
        if self._detector is not None:
            self._detector.stop()
