"""Provide utility helpers for timestamps and digests."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # If a naive timestamp slips in, assume UTC to avoid crashes.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _byte_size(text: str) -> int:
    return len(text.encode("utf-8"))


def _digest(text: str, length: int = 16) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


_VOLATILE_RE = re.compile(r"\b\d+(\.\d+)?(s|ms)?\b|0x[0-9a-f]+", re.I)


def _normalized_digest(text: str) -> str:
    """Digest text after masking numbers, so reruns of one failure hash alike."""
    masked = _VOLATILE_RE.sub("#", text or "")
    lines = [line.strip() for line in masked.splitlines() if line.strip()]
    return _digest("\n".join(lines))


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return text[:max_chars]
    return text[: max_chars - 3] + "..."
