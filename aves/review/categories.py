"""
Rejection categories.

A rejection note carries its category as a bracketed prefix, e.g.
"[TOO_SMALL] box too tiny". The prefix is the only place the category is
stored, so building and parsing must stay symmetric.
"""

import re
from typing import Optional

_CATEGORY_PREFIX = re.compile(r"^\[([A-Z_]+)\]")


def extract_rejection_category(notes: Optional[str]) -> Optional[str]:
    """Return the bracketed category at the start of notes, or None."""
    if not notes:
        return None
    match = _CATEGORY_PREFIX.match(notes)
    return match.group(1) if match else None


def build_rejection_message(
    category: Optional[str] = None,
    notes: Optional[str] = None,
    reason: Optional[str] = None,
) -> str:
    """
    Compose the stored rejection note.
    With a category: "[CATEGORY] notes" (or just "[CATEGORY]").
    Without: reason, falling back to notes.
    """
    notes = (notes or "").strip()
    reason = (reason or "").strip()
    if category:
        body = notes or reason
        return f"[{category}] {body}" if body else f"[{category}]"
    return reason or notes
