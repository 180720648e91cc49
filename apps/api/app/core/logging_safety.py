"""Utilities for safe structured logging fields."""

from __future__ import annotations

import hashlib
from typing import Any


def safe_log_identifier(value: Any, *, prefix: str) -> str:
    """Return a deterministic non-reversible token for log correlation fields."""
    text = str(value or "").strip()
    if not text:
        return f"{prefix}-missing"

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def safe_script_fingerprint(script: str | None) -> str:
    """Summarize a script as length plus digest so content never reaches the logs."""
    text = script or ""
    return f"len={len(text)} {safe_log_identifier(text, prefix='sid')}"
