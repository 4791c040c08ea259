"""
Small helpers shared across Gistmarks: timestamps, ids, url checks.
"""
import os
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse

# Timestamp every node falls back to when it carries no metadata
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Schemes that are valid without a network location
_OPAQUE_SCHEMES = ("mailto", "file", "about", "data", "javascript", "tel")


def now_utc() -> datetime:
    """Current UTC time truncated to milliseconds.

    Documents store millisecond timestamps, so anything finer would not
    survive a round trip through the codec.
    """
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def format_timestamp(value: datetime) -> str:
    """Format as ISO-8601 UTC with millisecond precision and a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_bookmark_id() -> str:
    """Random bookmark id. Uniqueness across devices is probabilistic only."""
    return str(uuid.uuid4())


def is_valid_url(url: str) -> bool:
    """Check the URL is absolute: a scheme plus a host, or an opaque scheme with a body."""
    if not url or any(ch.isspace() for ch in url):
        return False
    parsed = urlparse(url)
    if not parsed.scheme:
        return False
    if parsed.netloc:
        return True
    return parsed.scheme.lower() in _OPAQUE_SCHEMES and bool(parsed.path)


def normalize_tags(tags: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Strip tags, drop empties and duplicates, keep first-seen order."""
    if not tags:
        return ()
    seen = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return tuple(seen)


def ensure_dir(path):
    os.makedirs(path, exist_ok=True)
