"""newsletter_flow.cli

Unified CLI entrypoint for audience, contact and newsletter operations.

Modes (--mode):
  audience_preview     -- parse + classify a CSV; no writes (DB optional)
  audience_import      -- commit a CSV for one client (per-row upserts)
  contact_archive      -- active -> archived
  contact_restore      -- archived -> active
  contact_delete       -- archived -> deleted (active contacts are refused)
  status_update        -- generic newsletter status change
  newsletter_schedule  -- system-only transition to scheduled
  review_send          -- move to client_review and issue a 7-day review token
  version_restore      -- copy an old version forward as a new version
  send_test            -- send one test copy; never changes status

Usage (audience_import):
    newsletter-flow \\
        --mode audience_import \\
        --db-dsn "$DB_DSN" \\
        --client-id 6f1c... \\
        --csv-path exports/audience.csv \\
        --create-segments --segment-tag buyers --segment-tag sellers

Usage (send_test):
    POSTMARK_SERVER_TOKEN=... newsletter-flow \\
        --mode send_test \\
        --db-dsn "$DB_DSN" \\
        --newsletter-id 0b2e... \\
        --to-email qa@example.com \\
        --from-address news@example.com
"""

from __future__ import annotations

import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import click
import psycopg

from newsletter_flow.audience_csv import (
    AudienceImportSummary,
    build_invalid_rows_csv,
    parse_audience_csv,
)
from newsletter_flow.audience_import import run_audience_import
from newsletter_flow.campaign_status import schedule_newsletter, send_test_email, update_status
from newsletter_flow.contact_lifecycle import (
    archive_contact,
    delete_contact,
    fetch_existing_emails,
    restore_contact,
)
from newsletter_flow.delivery import PostmarkDeliveryClient
from newsletter_flow.import_settings import ImportSettingsError, load_import_settings
from newsletter_flow.review import send_for_review
from newsletter_flow.shared import (
    GuardError,
    NotFoundError,
    RejectWriter,
    RunCounters,
    build_text_report,
    write_run_report,
)
from newsletter_flow.versions import restore_version

MODES = [
    "audience_preview",
    "audience_import",
    "contact_archive",
    "contact_restore",
    "contact_delete",
    "status_update",
    "newsletter_schedule",
    "review_send",
    "version_restore",
    "send_test",
]

_CONTACT_ACTIONS: dict[str, Callable[[psycopg.Connection, str], Any]] = {
    "contact_archive": archive_contact,
    "contact_restore": restore_contact,
    "contact_delete": delete_contact,
}


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _require(run_id: str, mode: str, **flags: Any) -> None:
    missing = [name for name, value in flags.items() if value in (None, "", ())]
    if missing:
        names = ", ".join("--" + m.replace("_", "-") for m in missing)
        click.echo(f"[{run_id}] ERROR: --mode {mode} requires {names}", err=True)
        sys.exit(1)


def _read_csv(run_id: str, csv_path: str) -> str:
    path = Path(csv_path)
    if not path.exists():
        click.echo(f"[{run_id}] ERROR: CSV file not found: {csv_path}", err=True)
        sys.exit(1)
    return path.read_text(encoding="utf-8-sig")


# ---------------------------------------------------------------------------
# Transaction runner
# ---------------------------------------------------------------------------

def _run_in_transaction(
    run_id: str,
    db_dsn: str,
    dry_run: bool,
    op: Callable[[psycopg.Connection], Any],
) -> Any:
    """Run op in one transaction; rollback on dry run, guard or missing entity.

    Guard and not-found errors exit 1 with the message on stderr.
    """
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        result = op(conn)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
        return result
    except (GuardError, NotFoundError) as exc:
        conn.rollback()
        click.echo(f"[{run_id}] {exc}", err=True)
        sys.exit(1)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_audience_preview(
    run_id: str,
    db_dsn: str | None,
    client_id: str | None,
    csv_text: str,
    settings_file: str | None,
    invalid_rows_path: str | None,
) -> AudienceImportSummary:
    settings = load_import_settings(Path(settings_file) if settings_file else None)
    existing: set[str] = set()
    if db_dsn and client_id:
        with psycopg.connect(db_dsn) as conn:
            existing = fetch_existing_emails(conn, client_id)
    summary = parse_audience_csv(csv_text, existing, settings)
    if summary is None:
        click.echo(f"[{run_id}] nothing to import", err=True)
        sys.exit(1)

    click.echo(build_text_report(
        "AUDIENCE PREVIEW",
        [
            ("Total rows", summary.total_rows),
            ("Valid rows", summary.valid_rows),
            ("Invalid rows", summary.invalid_rows),
            ("Duplicates in CSV", summary.duplicate_in_csv_count),
            ("Existing contacts", summary.duplicate_existing_count),
            ("Email column found", summary.has_email_column),
            ("Detected tags", ", ".join(sorted(summary.detected_tags)) or "-"),
        ],
        [],
        dry_run=True,
    ))
    if invalid_rows_path and summary.invalid_rows:
        out = Path(invalid_rows_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(build_invalid_rows_csv(summary.rows), encoding="utf-8")
        click.echo(f"[{run_id}] Invalid rows: {out}")
    return summary


def _run_audience_import(
    run_id: str,
    db_dsn: str,
    dry_run: bool,
    client_id: str,
    csv_text: str,
    settings_file: str | None,
    create_segments: bool,
    segment_tags: tuple[str, ...],
    imported_by: str | None,
    invalid_rows_path: str | None,
    rejects: RejectWriter,
):
    settings = load_import_settings(Path(settings_file) if settings_file else None)
    if settings.yaml_hash:
        click.echo(f"[{run_id}] settings {settings.version} sha256={settings.yaml_hash[:12]}")

    ctrs = _run_in_transaction(
        run_id, db_dsn, dry_run,
        lambda conn: run_audience_import(
            conn, client_id, csv_text,
            create_segments=create_segments,
            segment_tags=segment_tags,
            imported_by=imported_by,
            settings=settings,
        ),
    )
    click.echo(build_text_report(
        "AUDIENCE IMPORT",
        [
            ("Total rows", ctrs.total_rows),
            ("Imported", ctrs.imported_count),
            ("Updated", ctrs.updated_count),
            ("Skipped", ctrs.skipped_count),
            ("Invalid", ctrs.invalid_rows_count),
            ("Segments created", ctrs.segments_created),
            ("DB errors", ctrs.db_errors),
            ("Job", f"{ctrs.job_id} ({ctrs.job_status})"),
        ],
        ctrs.warnings,
        dry_run=dry_run,
    ))
    if invalid_rows_path and ctrs.invalid_rows_count:
        out = Path(invalid_rows_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(ctrs.invalid_rows_csv, encoding="utf-8")
        click.echo(f"[{run_id}] Invalid rows: {out}")
    for failed in ctrs.failed_rows:
        rejects.write(failed, "db_error")
    return ctrs


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--mode", required=True, type=click.Choice(MODES), help="Operation mode")
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (optional for audience_preview)")
@click.option("--client-id", default=None, help="[audience_*] Owning client id")
@click.option("--csv-path", default=None, type=click.Path(), help="[audience_*] Input CSV")
@click.option("--settings-file", default=None, type=click.Path(),
              help="[audience_*] Import settings YAML (default: built-in settings)")
@click.option("--invalid-rows-path", default=None, type=click.Path(),
              help="[audience_*] Write invalid rows CSV here")
@click.option("--create-segments", is_flag=True, default=False,
              help="[audience_import] Create segments for --segment-tag values found in the file")
@click.option("--segment-tag", "segment_tags", multiple=True,
              help="[audience_import] Tag to materialize as a segment (repeatable)")
@click.option("--imported-by", default=None, help="[audience_import] Label stored on the import job")
@click.option("--contact-id", "contact_ids", multiple=True,
              help="[contact_*] Contact id (repeatable)")
@click.option("--newsletter-id", default=None, help="[status_update|newsletter_*|review_send|version_restore|send_test]")
@click.option("--status", "requested_status", default=None, help="[status_update] Target status")
@click.option("--send-at", default=None, type=click.DateTime(),
              help="[newsletter_schedule] Send time, YYYY-MM-DD HH:MM:SS (UTC)")
@click.option("--version-id", default=None, help="[version_restore] Version to restore")
@click.option("--user-id", default=None, help="[version_restore] Acting user id")
@click.option("--to-email", default=None, help="[send_test] Test recipient")
@click.option("--from-address", default=None, help="[send_test] Sender address")
@click.option("--postmark-token-env", default="POSTMARK_SERVER_TOKEN", show_default=True,
              help="[send_test] Env var holding the Postmark server token")
@click.option("--dry-run", is_flag=True, default=False, help="Roll back at the end of the run")
@click.option("--rejects-path", default="artifacts/rejects/audience_import_rejects.csv",
              show_default=True, type=click.Path(), help="[audience_import] Rows that failed to write")
@click.option("--run-id", default=None, help="Run id (default: random UUID)")
def main(
    mode: str,
    db_dsn: str | None,
    client_id: str | None,
    csv_path: str | None,
    settings_file: str | None,
    invalid_rows_path: str | None,
    create_segments: bool,
    segment_tags: tuple[str, ...],
    imported_by: str | None,
    contact_ids: tuple[str, ...],
    newsletter_id: str | None,
    requested_status: str | None,
    send_at: datetime | None,
    version_id: str | None,
    user_id: str | None,
    to_email: str | None,
    from_address: str | None,
    postmark_token_env: str,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
) -> None:
    """Newsletter audience and campaign operations CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters: Any = RunCounters()
    source: dict[str, str] = {}

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode != "audience_preview":
        _require(run_id, mode, db_dsn=db_dsn)

    try:
        if mode == "audience_preview":
            _require(run_id, mode, csv_path=csv_path)
            csv_text = _read_csv(run_id, csv_path)  # type: ignore[arg-type]
            summary = _run_audience_preview(
                run_id, db_dsn, client_id, csv_text, settings_file, invalid_rows_path,
            )
            source = {"csv_path": csv_path}  # type: ignore[dict-item]
            report_path = write_run_report(
                run_id, started_at, mode, True, source, summary,
            )
            click.echo(f"[{run_id}] Run report: {report_path}")
            return

        if mode == "audience_import":
            _require(run_id, mode, client_id=client_id, csv_path=csv_path)
            csv_text = _read_csv(run_id, csv_path)  # type: ignore[arg-type]
            rejects = RejectWriter(Path(rejects_path))
            try:
                counters = _run_audience_import(
                    run_id, db_dsn, dry_run, client_id, csv_text,  # type: ignore[arg-type]
                    settings_file, create_segments, segment_tags, imported_by,
                    invalid_rows_path, rejects,
                )
            finally:
                rejects.close()
            if rejects.count:
                click.echo(f"[{run_id}] Rejects: {rejects_path} ({rejects.count})")
            source = {"csv_path": csv_path, "client_id": client_id}  # type: ignore[dict-item]

        elif mode in _CONTACT_ACTIONS:
            _require(run_id, mode, contact_id=contact_ids)
            action = _CONTACT_ACTIONS[mode]

            def apply_contacts(conn: psycopg.Connection) -> None:
                for contact_id in contact_ids:
                    action(conn, contact_id)
                    counters.operations_applied += 1
                    click.echo(f"[{run_id}] {mode}: {contact_id}")

            _run_in_transaction(run_id, db_dsn, dry_run, apply_contacts)  # type: ignore[arg-type]
            source = {"contact_ids": ",".join(contact_ids)}

        elif mode == "status_update":
            _require(run_id, mode, newsletter_id=newsletter_id, status=requested_status)
            newsletter = _run_in_transaction(
                run_id, db_dsn, dry_run,  # type: ignore[arg-type]
                lambda conn: update_status(conn, newsletter_id, requested_status),
            )
            counters.operations_applied += 1
            click.echo(f"[{run_id}] newsletter {newsletter_id} status={newsletter['status']}")
            source = {"newsletter_id": newsletter_id}  # type: ignore[dict-item]

        elif mode == "newsletter_schedule":
            _require(run_id, mode, newsletter_id=newsletter_id, send_at=send_at)
            when = send_at if send_at.tzinfo else send_at.replace(tzinfo=timezone.utc)  # type: ignore[union-attr]
            newsletter = _run_in_transaction(
                run_id, db_dsn, dry_run,  # type: ignore[arg-type]
                lambda conn: schedule_newsletter(conn, newsletter_id, when),
            )
            counters.operations_applied += 1
            click.echo(
                f"[{run_id}] newsletter {newsletter_id} scheduled_for={newsletter['scheduled_for']}"
            )
            source = {"newsletter_id": newsletter_id}  # type: ignore[dict-item]

        elif mode == "review_send":
            _require(run_id, mode, newsletter_id=newsletter_id)
            review_token = _run_in_transaction(
                run_id, db_dsn, dry_run,  # type: ignore[arg-type]
                lambda conn: send_for_review(conn, newsletter_id),
            )
            counters.operations_applied += 1
            click.echo(
                f"[{run_id}] newsletter {newsletter_id} in client_review; "
                f"review token {review_token.token} expires {review_token.expires_at.isoformat()}"
            )
            source = {"newsletter_id": newsletter_id}  # type: ignore[dict-item]

        elif mode == "version_restore":
            _require(run_id, mode, newsletter_id=newsletter_id, version_id=version_id)
            version = _run_in_transaction(
                run_id, db_dsn, dry_run,  # type: ignore[arg-type]
                lambda conn: restore_version(conn, newsletter_id, version_id, user_id),
            )
            counters.operations_applied += 1
            click.echo(
                f"[{run_id}] newsletter {newsletter_id} now at v{version.version_number} "
                f"({version.change_summary})"
            )
            source = {"newsletter_id": newsletter_id, "version_id": version_id}  # type: ignore[dict-item]

        elif mode == "send_test":
            _require(
                run_id, mode,
                newsletter_id=newsletter_id, to_email=to_email, from_address=from_address,
            )
            # Read the token from env, never from CLI args
            token = os.environ.get(postmark_token_env, "")
            if not token:
                click.echo(f"[{run_id}] FATAL: env var {postmark_token_env} must be set", err=True)
                sys.exit(1)
            client = PostmarkDeliveryClient(server_token=token, from_address=from_address)  # type: ignore[arg-type]
            result = _run_in_transaction(
                run_id, db_dsn, True,  # type: ignore[arg-type]
                lambda conn: send_test_email(conn, newsletter_id, to_email, client),
            )
            source = {"newsletter_id": newsletter_id, "to_email": to_email}  # type: ignore[dict-item]
            if result.success:
                counters.operations_applied += 1
                click.echo(f"[{run_id}] test send ok: message_id={result.message_id}")
            else:
                counters.operations_rejected += 1
                counters.warnings.append(result.error or "test send failed")
                click.echo(f"[{run_id}] test send failed: {result.error}", err=True)
    except ImportSettingsError as exc:
        click.echo(f"[{run_id}] ERROR: invalid settings file: {exc}", err=True)
        sys.exit(1)

    report_path = write_run_report(run_id, started_at, mode, dry_run, source, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")

    if mode == "send_test" and counters.operations_rejected:
        sys.exit(1)
    if mode == "audience_import" and counters.job_status == "failed":
        click.echo(f"[{run_id}] every valid row failed to write; exiting non-zero", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
