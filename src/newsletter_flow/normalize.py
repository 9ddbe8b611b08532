"""Normalization functions for audience CSV ingestion and contact storage.

Functions that accept str | None return the appropriate type or None, except
the email_key / split_tags helpers used by the import pipeline, which always
return a (possibly empty) value so rows can be compared directly.
"""

from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_HEADER_KEY_RE = re.compile(r"[^a-z0-9]")
_TAG_SPLIT_RE = re.compile(r"[;,|]")
_WORD_SPLIT_RE = re.compile(r"[\s_-]+")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_email / email_key
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


def email_key(value: str | None) -> str:
    """Comparison key for duplicate detection: trimmed + lowercased, '' for None."""
    return (value or "").strip().lower()


def is_likely_email(value: str | None) -> bool:
    """Return True if the value has the minimal local@domain.tld shape.

    The check runs on the trimmed, lowercased value so that stray padding
    from spreadsheet exports does not make an address invalid.
    """
    return bool(_EMAIL_RE.match(email_key(value)))


# ---------------------------------------------------------------------------
# Rule 3: normalize_header_key
# ---------------------------------------------------------------------------

def normalize_header_key(value: str | None) -> str:
    """Lowercase and drop everything outside [a-z0-9].

    'First Name', 'first_name' and 'FIRST-NAME' all map to 'firstname'.
    """
    return _HEADER_KEY_RE.sub("", (value or "").lower())


# ---------------------------------------------------------------------------
# Rule 4: split_tags
# ---------------------------------------------------------------------------

def split_tags(raw: str | None) -> list[str]:
    """Split a tag cell on ';', ',' or '|' into unique lowercase tags.

    Order of first appearance is kept; empty tokens are dropped.
    """
    if not raw or not raw.strip():
        return []
    tags: list[str] = []
    seen: set[str] = set()
    for token in _TAG_SPLIT_RE.split(raw):
        tag = token.strip().lower()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    return tags


def merge_tags(existing: list[str] | None, incoming: list[str] | None) -> list[str]:
    """Union of two tag lists, existing order first, lowercase, no duplicates."""
    merged: list[str] = []
    seen: set[str] = set()
    for tag in [*(existing or []), *(incoming or [])]:
        t = (tag or "").strip().lower()
        if t and t not in seen:
            seen.add(t)
            merged.append(t)
    return merged


# ---------------------------------------------------------------------------
# Helper: title_case_tag
# ---------------------------------------------------------------------------

def title_case_tag(tag: str | None) -> str | None:
    """Display name for a tag-derived segment: 'past_clients' -> 'Past Clients'."""
    v = trim(tag)
    if v is None:
        return None
    parts = [p for p in _WORD_SPLIT_RE.split(v) if p]
    if not parts:
        return None
    return " ".join(p[:1].upper() + p[1:] for p in parts)
