"""newsletter_flow.audience_import

Audience CSV commit pipeline.

Consumes raw CSV text for one client, classifies it with
audience_csv.parse_audience_csv, then writes each row independently:

  - contacts             -- insert new emails, merge tags/names into active ones
  - contact_segments     -- optional, one segment per selected imported tag
  - contact_import_jobs  -- one row per run with final counts and errors

Row outcomes:
  invalid email           -> invalid_rows_count (downloadable CSV)
  new email               -> imported_count
  existing active contact -> updated_count (tags unioned, non-empty names win)
  existing archived       -> skipped_count; never restored implicitly
  DB error on the row     -> skipped_count + db_errors; the row's SAVEPOINT is
                             rolled back and the run continues

The import is not atomic across the file: a failure on one row never rolls
back rows that already succeeded.  Caller manages the outer transaction.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import psycopg

from newsletter_flow.audience_csv import (
    AudienceImportSummary,
    AudiencePreviewRow,
    build_invalid_rows_csv,
    parse_audience_csv,
)
from newsletter_flow.contact_lifecycle import fetch_existing_emails
from newsletter_flow.import_settings import DEFAULT_IMPORT_SETTINGS, ImportSettings
from newsletter_flow.normalize import merge_tags, trim
from newsletter_flow.segments import create_segments_from_tags

log = logging.getLogger(__name__)

NOTHING_TO_IMPORT = "nothing to import"


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    total_rows: int = 0
    imported_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    invalid_rows_count: int = 0
    segments_created: int = 0
    db_errors: int = 0
    job_id: str | None = None
    job_status: str | None = None
    warnings: list[str] = field(default_factory=list)
    invalid_rows_csv: str = field(default="", repr=False)
    failed_rows: list[dict[str, str]] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "importedCount": self.imported_count,
            "updatedCount": self.updated_count,
            "skippedCount": self.skipped_count,
            "invalidRowsCount": self.invalid_rows_count,
            "segmentsCreated": self.segments_created,
            "dbErrors": self.db_errors,
            "jobId": self.job_id,
            "jobStatus": self.job_status,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Import job bookkeeping
# ---------------------------------------------------------------------------

def _start_job(
    conn: psycopg.Connection,
    client_id: str,
    total_rows: int,
    imported_by: str | None,
) -> str:
    row = conn.execute(
        """
        INSERT INTO contact_import_jobs (client_id, status, total_rows, imported_by)
        VALUES (%s, 'running', %s, %s)
        RETURNING id
        """,
        (client_id, total_rows, imported_by),
    ).fetchone()
    return str(row[0])


def _finish_job(conn: psycopg.Connection, job_id: str, ctrs: ImportCounters) -> None:
    conn.execute(
        """
        UPDATE contact_import_jobs
        SET status = %s,
            imported_count = %s,
            updated_count = %s,
            skipped_count = %s,
            invalid_rows_count = %s,
            errors = %s::jsonb,
            finished_at = now()
        WHERE id = %s
        """,
        (
            ctrs.job_status,
            ctrs.imported_count,
            ctrs.updated_count,
            ctrs.skipped_count,
            ctrs.invalid_rows_count,
            json.dumps(ctrs.warnings[:50]),
            job_id,
        ),
    )


def list_import_jobs(conn: psycopg.Connection, client_id: str, limit: int = 20) -> list[dict[str, Any]]:
    """Most recent import jobs for a client, newest first."""
    rows = conn.execute(
        """
        SELECT id, status, total_rows, imported_count, updated_count,
               skipped_count, invalid_rows_count, errors, imported_by, created_at
        FROM contact_import_jobs
        WHERE client_id = %s
        ORDER BY created_at DESC, id DESC
        LIMIT %s
        """,
        (client_id, limit),
    ).fetchall()
    return [
        {
            "id": str(r[0]),
            "status": r[1],
            "totalRows": r[2],
            "importedCount": r[3],
            "updatedCount": r[4],
            "skippedCount": r[5],
            "invalidRowsCount": r[6],
            "errors": r[7],
            "importedBy": r[8],
            "createdAt": r[9],
        }
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Per-row upsert
# ---------------------------------------------------------------------------

def _upsert_contact_row(
    conn: psycopg.Connection,
    client_id: str,
    row: AudiencePreviewRow,
    settings: ImportSettings,
    ctrs: ImportCounters,
) -> None:
    """Write one valid row.  Caller manages the savepoint."""
    existing = conn.execute(
        """
        SELECT id, first_name, last_name, tags, archived_at
        FROM contacts
        WHERE client_id = %s AND email = %s
        FOR UPDATE
        """,
        (client_id, row.email),
    ).fetchone()

    if existing is None:
        tags = list(row.tags) or list(settings.default_contact_tags)
        conn.execute(
            """
            INSERT INTO contacts (client_id, email, first_name, last_name, tags, is_active)
            VALUES (%s, %s, %s, %s, %s, true)
            """,
            (client_id, row.email, trim(row.first_name), trim(row.last_name), tags),
        )
        ctrs.imported_count += 1
        return

    contact_id, first_name, last_name, tags, archived_at = existing
    if archived_at is not None:
        ctrs.skipped_count += 1
        ctrs.warnings.append(
            f"line {row.line_number}: {row.email} is archived; restore it explicitly to re-activate"
        )
        return

    conn.execute(
        """
        UPDATE contacts
        SET first_name = %s,
            last_name = %s,
            tags = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (
            trim(row.first_name) or first_name,
            trim(row.last_name) or last_name,
            merge_tags(list(tags or []), list(row.tags)),
            contact_id,
        ),
    )
    ctrs.updated_count += 1


def _write_rows(
    conn: psycopg.Connection,
    client_id: str,
    summary: AudienceImportSummary,
    settings: ImportSettings,
    ctrs: ImportCounters,
) -> None:
    """Process classified rows one SAVEPOINT at a time."""
    for idx, row in enumerate(summary.rows):
        if not row.is_valid_email:
            ctrs.invalid_rows_count += 1
            continue
        sp = f"audience_row_{idx}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            _upsert_contact_row(conn, client_id, row, settings, ctrs)
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except psycopg.Error as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            ctrs.db_errors += 1
            ctrs.skipped_count += 1
            ctrs.warnings.append(f"line {row.line_number} {type(exc).__name__}: {exc}")
            ctrs.failed_rows.append({
                "line_number": str(row.line_number),
                "email": row.email,
                "first_name": row.first_name,
                "last_name": row.last_name,
                "tags": ";".join(row.tags),
            })
            log.warning("audience import row %d failed: %s", row.line_number, exc)


# ---------------------------------------------------------------------------
# Main run entry point
# ---------------------------------------------------------------------------

def run_audience_import(
    conn: psycopg.Connection,
    client_id: str,
    csv_text: str,
    *,
    create_segments: bool = False,
    segment_tags: Iterable[str] = (),
    imported_by: str | None = None,
    settings: ImportSettings = DEFAULT_IMPORT_SETTINGS,
) -> ImportCounters:
    """Validate and commit an audience CSV for one client.

    Args:
        conn: Open psycopg connection (caller manages transaction).
        client_id: Owner of every written contact.
        csv_text: Raw CSV content.
        create_segments: Materialize segments for segment_tags.
        segment_tags: Explicit tags to turn into segments; only tags actually
            detected in the file are used.
        imported_by: Free-form label stored on the import job.
        settings: Import settings (header synonyms, default tags, ...).

    Returns:
        ImportCounters with aggregate counts and the invalid-rows CSV.
    """
    ctrs = ImportCounters()
    existing = fetch_existing_emails(conn, client_id)
    summary = parse_audience_csv(csv_text, existing, settings)
    if summary is None:
        ctrs.warnings.append(NOTHING_TO_IMPORT)
        log.info("audience import for client %s: %s", client_id, NOTHING_TO_IMPORT)
        return ctrs

    ctrs.total_rows = summary.total_rows
    ctrs.invalid_rows_csv = build_invalid_rows_csv(summary.rows)
    job_id = _start_job(conn, client_id, summary.total_rows, imported_by)
    ctrs.job_id = job_id

    _write_rows(conn, client_id, summary, settings, ctrs)

    if create_segments:
        wanted = {t.strip().lower() for t in segment_tags if t and t.strip()}
        ctrs.segments_created = create_segments_from_tags(
            conn, client_id, wanted & summary.detected_tags
        )

    valid = summary.valid_rows
    ctrs.job_status = "failed" if valid > 0 and ctrs.db_errors == valid else "completed"
    _finish_job(conn, job_id, ctrs)

    log.info(
        "audience import for client %s: %d new, %d updated, %d skipped, %d invalid",
        client_id, ctrs.imported_count, ctrs.updated_count,
        ctrs.skipped_count, ctrs.invalid_rows_count,
    )
    return ctrs
