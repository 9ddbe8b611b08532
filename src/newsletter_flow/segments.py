"""newsletter_flow.segments

Segments are named, tag-defined views over a client's audience; they never
copy contacts.  Segment names are unique per client, case-insensitively.

The reserved tag 'all' backs the default "All" segment and is never
materialized from imported tags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

import psycopg

from newsletter_flow.normalize import merge_tags, split_tags, title_case_tag, trim
from newsletter_flow.shared import NotFoundError

log = logging.getLogger(__name__)

RESERVED_TAG = "all"
DEFAULT_SEGMENT_NAME = "All"

_SEGMENT_COLS = "id, client_id, name, tags, is_default"


class SegmentNotFoundError(NotFoundError):
    """Raised when a segment id does not exist for the client."""


@dataclass
class Segment:
    id: str
    client_id: str
    name: str
    tags: list[str]
    is_default: bool

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "Segment":
        return cls(
            id=str(row[0]),
            client_id=str(row[1]),
            name=row[2],
            tags=list(row[3] or []),
            is_default=bool(row[4]),
        )


def _find_by_name(conn: psycopg.Connection, client_id: str, name: str) -> Segment | None:
    row = conn.execute(
        f"SELECT {_SEGMENT_COLS} FROM contact_segments WHERE client_id = %s AND lower(name) = lower(%s)",
        (client_id, name),
    ).fetchone()
    return Segment.from_row(row) if row else None


def _get_segment(conn: psycopg.Connection, client_id: str, segment_id: str) -> Segment:
    row = conn.execute(
        f"SELECT {_SEGMENT_COLS} FROM contact_segments WHERE id = %s AND client_id = %s",
        (segment_id, client_id),
    ).fetchone()
    if row is None:
        raise SegmentNotFoundError(f"Segment {segment_id} not found")
    return Segment.from_row(row)


def list_segments(conn: psycopg.Connection, client_id: str) -> list[Segment]:
    rows = conn.execute(
        f"""
        SELECT {_SEGMENT_COLS} FROM contact_segments
        WHERE client_id = %s
        ORDER BY is_default DESC, lower(name) ASC
        """,
        (client_id,),
    ).fetchall()
    return [Segment.from_row(r) for r in rows]


def create_segment(
    conn: psycopg.Connection,
    client_id: str,
    name: str,
    tags: list[str] | None = None,
    is_default: bool = False,
) -> Segment:
    """Insert a segment.  Empty tags default to the lowercased name."""
    seg_name = trim(name)
    if not seg_name:
        raise ValueError("segment name is required")
    tag_list = split_tags(",".join(tags or [])) or [seg_name.lower()]
    row = conn.execute(
        f"""
        INSERT INTO contact_segments (client_id, name, tags, is_default)
        VALUES (%s, %s, %s, %s)
        RETURNING {_SEGMENT_COLS}
        """,
        (client_id, seg_name, tag_list, is_default),
    ).fetchone()
    return Segment.from_row(row)


def ensure_default_segment(conn: psycopg.Connection, client_id: str) -> Segment:
    existing = _find_by_name(conn, client_id, DEFAULT_SEGMENT_NAME)
    if existing is not None:
        return existing
    return create_segment(conn, client_id, DEFAULT_SEGMENT_NAME, [RESERVED_TAG], is_default=True)


def create_segments_from_tags(
    conn: psycopg.Connection,
    client_id: str,
    tags: Iterable[str],
) -> int:
    """One segment per tag; existing names are left untouched.

    Returns the number of segments created.
    """
    created = 0
    for tag in sorted({t.strip().lower() for t in tags if t and t.strip()}):
        if tag == RESERVED_TAG:
            continue
        name = title_case_tag(tag)
        if not name or _find_by_name(conn, client_id, name) is not None:
            continue
        create_segment(conn, client_id, name, [tag])
        created += 1
    if created:
        log.info("created %d segment(s) from imported tags for client %s", created, client_id)
    return created


def merge_segments(
    conn: psycopg.Connection,
    client_id: str,
    source_id: str,
    target_id: str,
) -> int:
    """Fold source into target.

    1. Every visible contact carrying any source tag gains the target's tags.
    2. The source tags are appended to the target's tag list.
    3. The source segment is deleted.

    Returns the number of contacts updated.
    """
    if source_id == target_id:
        raise ValueError("source and target segment must differ")
    source = _get_segment(conn, client_id, source_id)
    target = _get_segment(conn, client_id, target_id)
    if source.is_default:
        raise ValueError("the default segment cannot be merged away")

    rows = conn.execute(
        """
        SELECT id, tags FROM contacts
        WHERE client_id = %s AND archived_at IS NULL AND tags && %s
        FOR UPDATE
        """,
        (client_id, source.tags),
    ).fetchall()
    updated = 0
    for contact_id, tags in rows:
        new_tags = merge_tags(list(tags or []), target.tags)
        if new_tags == list(tags or []):
            continue
        conn.execute(
            "UPDATE contacts SET tags = %s, updated_at = now() WHERE id = %s",
            (new_tags, contact_id),
        )
        updated += 1

    conn.execute(
        "UPDATE contact_segments SET tags = %s WHERE id = %s",
        (merge_tags(target.tags, source.tags), target.id),
    )
    conn.execute("DELETE FROM contact_segments WHERE id = %s", (source.id,))
    log.info(
        "merged segment %r into %r for client %s (%d contacts updated)",
        source.name, target.name, client_id, updated,
    )
    return updated
