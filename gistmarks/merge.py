"""
Three-way merge of bookmark trees using timestamps.

Instead of a stored common ancestor, the merge compares each category's
latest modification against ``last_sync``, the moment the two sides were
last known to agree:

- a category changed on one side only is taken from that side;
- a category changed on both sides with different content is a conflict,
  excluded from the merged tree until the caller picks a side;
- a tombstone newer than a concurrent modification wins, a modification
  newer than a concurrent deletion is reported as a conflict.

A category renamed on a side leaves a tombstone naming its successor; the
successors of a conflicted category are held back along with it.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from gistmarks.entity import compact
from gistmarks.errors import ConflictError, ValidationError
from gistmarks.models import (
    Category, Root, RootMetadata, category_content, same_content, subtree_modified,
)
from gistmarks.result import Result, failure, success
from gistmarks.utils import EPOCH, format_timestamp

logger = logging.getLogger(__name__)


class Side(Enum):
    """Which copy of a category wins."""
    LOCAL = "local"
    REMOTE = "remote"


class MergeStrategy(Enum):
    TIMESTAMP = "timestamp"
    LOCAL_WINS = "local"
    REMOTE_WINS = "remote"


@dataclass(frozen=True)
class MergeConflict:
    """A category both sides changed since the last sync, differently."""
    category_name: str
    local_data: Category
    remote_data: Category
    local_last_modified: datetime
    remote_last_modified: datetime

    def to_dict(self) -> Dict:
        return {
            "categoryName": self.category_name,
            "localDeleted": self.local_data.is_deleted,
            "remoteDeleted": self.remote_data.is_deleted,
            "localLastModified": format_timestamp(self.local_last_modified),
            "remoteLastModified": format_timestamp(self.remote_last_modified),
        }


@dataclass(frozen=True)
class ConflictResolution:
    category_name: str
    resolution: Union[Side, str]


@dataclass(frozen=True)
class MergeResult:
    merged_root: Root
    conflicts: Tuple[MergeConflict, ...] = field(default_factory=tuple)
    has_changes: bool = False

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


def _by_name(categories: Iterable[Category]) -> Dict[str, Category]:
    """Index categories by name; a live node shadows a tombstone of the same name."""
    index: Dict[str, Category] = {}
    for category in categories:
        current = index.get(category.name)
        if current is None or (current.is_deleted and not category.is_deleted):
            index[category.name] = category
    return index


def _successor(category: Optional[Category]) -> Optional[str]:
    if category is not None and category.is_deleted and category.metadata:
        return category.metadata.renamed_to
    return None


def _decide(local: Category, remote: Category, last_sync: datetime,
            strategy: MergeStrategy) -> Optional[Category]:
    """Pick the surviving copy of a category present on both sides.

    Returns None when the two sides conflict.
    """
    local_time = subtree_modified(local)
    remote_time = subtree_modified(remote)
    local_changed = local_time > last_sync
    remote_changed = remote_time > last_sync

    # Unchanged locally means the remote copy is at least as new
    if not local_changed:
        return remote
    if not remote_changed:
        return local

    if category_content(local) == category_content(remote):
        return local if local_time >= remote_time else remote
    if strategy is MergeStrategy.LOCAL_WINS:
        return local
    if strategy is MergeStrategy.REMOTE_WINS:
        return remote

    # Delete against modify: the deletion wins only when it is newer
    if local.is_deleted and not remote.is_deleted and local_time > remote_time:
        return local
    if remote.is_deleted and not local.is_deleted and remote_time > local_time:
        return remote
    return None


def _parse_resolutions(resolutions: Iterable[ConflictResolution]) -> Result:
    chosen: Dict[str, Side] = {}
    for item in resolutions:
        resolution = item.resolution
        try:
            chosen[item.category_name] = resolution if isinstance(resolution, Side) else Side(resolution)
        except ValueError:
            return failure(ValidationError(
                f"Unknown resolution {item.resolution!r} for '{item.category_name}'"))
    return success(chosen)


def _merge(local: Root, remote: Root, last_sync: datetime, strategy: MergeStrategy,
           chosen: Dict[str, Side]) -> MergeResult:
    local_index = _by_name(local.categories)
    remote_index = _by_name(remote.categories)
    names = list(local_index) + [n for n in remote_index if n not in local_index]

    kept: Dict[str, Category] = {}
    conflicts: List[MergeConflict] = []
    held: Set[str] = set()      # successors of open conflicts
    dropped: Set[str] = set()   # successors of the losing side of a resolved conflict

    for name in names:
        ours = local_index.get(name)
        theirs = remote_index.get(name)

        if ours is None or theirs is None:
            node = ours if ours is not None else theirs
            if not node.is_deleted or subtree_modified(node) > last_sync:
                kept[name] = node
            continue

        decision = _decide(ours, theirs, last_sync, strategy)
        if decision is not None:
            kept[name] = decision
            continue

        side = chosen.get(name)
        if side is None:
            conflicts.append(MergeConflict(
                category_name=name,
                local_data=ours,
                remote_data=theirs,
                local_last_modified=subtree_modified(ours),
                remote_last_modified=subtree_modified(theirs),
            ))
            held.update(s for s in (_successor(ours), _successor(theirs)) if s)
            continue

        winner, loser = (ours, theirs) if side is Side.LOCAL else (theirs, ours)
        kept[name] = winner
        if _successor(loser) and _successor(loser) != _successor(winner):
            dropped.add(_successor(loser))

    def one_sided(name: str) -> bool:
        return (name in local_index) != (name in remote_index)

    categories = tuple(
        kept[name] for name in names
        if name in kept and not ((name in held or name in dropped) and one_sided(name))
    )
    metadata = RootMetadata(
        last_modified=max(local.last_modified, remote.last_modified),
        last_sync=local.last_sync,
    )
    merged = Root(version=local.version, categories=categories, metadata=metadata)
    if not conflicts:
        merged = compact(merged)

    if conflicts:
        logger.info(f"Merge found {len(conflicts)} conflict(s): "
                    f"{', '.join(c.category_name for c in conflicts)}")
    return MergeResult(
        merged_root=merged,
        conflicts=tuple(conflicts),
        has_changes=not same_content(merged, remote),
    )


def _baseline(local: Root, last_sync: Optional[datetime]) -> datetime:
    if last_sync is not None:
        return last_sync
    return local.last_sync if local.metadata else EPOCH


def merge_roots(local: Root, remote: Root, last_sync: Optional[datetime] = None,
                strategy: Union[MergeStrategy, str] = MergeStrategy.TIMESTAMP) -> MergeResult:
    """Merge two trees that last agreed at ``last_sync``.

    Args:
        local: This device's tree
        remote: The tree currently stored remotely
        last_sync: Agreement point; defaults to ``local.metadata.last_sync``
        strategy: How to settle categories both sides changed differently

    Returns:
        MergeResult; when it has conflicts, the conflicted categories (and
        any categories they were renamed to) are missing from ``merged_root``
    """
    return _merge(local, remote, _baseline(local, last_sync), MergeStrategy(strategy), {})


def resolve_conflicts(local: Root, remote: Root, resolutions: Iterable[ConflictResolution],
                      last_sync: Optional[datetime] = None) -> Result:
    """Merge again, settling each named conflict with the caller's choice.

    Fails with ConflictError when a conflict has no resolution; resolutions
    for categories that do not conflict are ignored.
    """
    chosen = _parse_resolutions(resolutions)
    if not chosen.ok:
        return chosen
    result = _merge(local, remote, _baseline(local, last_sync), MergeStrategy.TIMESTAMP, chosen.value)
    if result.has_conflicts:
        names = ", ".join(c.category_name for c in result.conflicts)
        return failure(ConflictError(f"Unresolved conflicts remain: {names}"))
    return success(result)
