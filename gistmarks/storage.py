"""
Local persisted state: the working tree plus the cached remote id and version.

Everything lives in one JSON file so the CLI can pick up where it left off.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from gistmarks.errors import ParseError
from gistmarks.models import Root, RootMetadata, root_from_dict, root_to_dict
from gistmarks.utils import ensure_dir

logger = logging.getLogger(__name__)


@dataclass
class LocalState:
    root: Root = field(default_factory=lambda: Root(metadata=RootMetadata()))
    remote_id: Optional[str] = None
    version: Optional[str] = None
    dirty: bool = False

    def to_dict(self):
        return {
            "root": root_to_dict(self.root),
            "remote": {"id": self.remote_id, "version": self.version},
            "dirty": self.dirty,
        }

    @classmethod
    def from_dict(cls, data) -> "LocalState":
        remote = data.get("remote") or {}
        return cls(
            root=root_from_dict(data.get("root") or {}),
            remote_id=remote.get("id"),
            version=remote.get("version"),
            dirty=bool(data.get("dirty", False)),
        )


def load_state(path: Union[str, Path]) -> LocalState:
    """Load state from ``path``; a missing file gives an empty state.

    Raises:
        ParseError: the file exists but is not valid state
    """
    path = Path(os.path.expanduser(str(path)))
    if not path.exists():
        logger.debug(f"No state file at {path}, starting empty")
        return LocalState()
    try:
        with open(path, "r", encoding="utf-8") as f:
            state = LocalState.from_dict(json.load(f))
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
        raise ParseError(f"Corrupt state file {path}: {e}") from e
    logger.debug(f"Loaded state from {path}")
    return state


def save_state(state: LocalState, path: Union[str, Path]):
    path = Path(os.path.expanduser(str(path)))
    ensure_dir(path.parent)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(state.to_dict(), f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)
    logger.debug(f"Saved state to {path}")
