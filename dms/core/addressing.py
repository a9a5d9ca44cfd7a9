"""
Content addressing for uploaded files.

The SHA-256 digest of the raw bytes is both the deduplication key
(documents.sha256 is UNIQUE) and the first component of the blob path:

    documents/<sha256-hex>/<sanitized-original-filename>
"""

from __future__ import annotations

import hashlib
import re

STORAGE_PREFIX = "documents"

_UNSAFE_CHARS_RE = re.compile(r"[^\w.\-]", re.UNICODE)


def compute_sha256(data: bytes) -> str:
    """Return the lowercase SHA-256 hex digest (64 chars) of *data*."""
    return hashlib.sha256(data).hexdigest()


def sanitize_filename(filename: str) -> str:
    """
    Strip path components and replace characters unsafe in object keys.
    Unicode letters (umlauts etc.) are kept.
    """
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1].strip()
    safe = _UNSAFE_CHARS_RE.sub("_", basename).lstrip(".")
    return safe[:200] or "upload"


def build_storage_path(sha256: str, filename: str) -> str:
    return f"{STORAGE_PREFIX}/{sha256}/{sanitize_filename(filename)}"
