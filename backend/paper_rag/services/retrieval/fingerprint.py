"""Content hashing for skip-if-unchanged re-indexing."""

from __future__ import annotations

import hashlib


def hash_text(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()
