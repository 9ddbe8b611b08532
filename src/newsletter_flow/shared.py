"""newsletter_flow.shared

Shared utilities used by the import, lifecycle, status and version modes.
Includes the common not-found errors, RejectWriter, base RunCounters, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class NotFoundError(LookupError):
    """Raised when an entity addressed by id does not exist (HTTP 404)."""

    http_status = 404


class NewsletterNotFoundError(NotFoundError):
    """Raised when a newsletter id does not resolve to a row."""


class GuardError(Exception):
    """Base class for rejected state transitions.

    The message is user facing and is surfaced verbatim by callers.
    """

    http_status = 409


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

class Reportable(Protocol):
    def to_dict(self) -> dict[str, Any]:
        ...


@dataclass
class RunCounters:
    """Counters for single-entity modes (lifecycle, status, version)."""

    operations_applied: int = 0
    operations_rejected: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operations_applied": self.operations_applied,
            "operations_rejected": self.operations_rejected,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Report builders
# ---------------------------------------------------------------------------

def build_text_report(
    title: str,
    rows: list[tuple[str, Any]],
    warnings: list[str],
    dry_run: bool = False,
) -> str:
    lines = [
        "=" * 60,
        title,
        f"  dry_run: {dry_run}",
        "=" * 60,
    ]
    width = max((len(label) for label, _ in rows), default=0) + 1
    for label, value in rows:
        lines.append(f"  {(label + ':').ljust(width)} {value}")
    if warnings:
        lines.append(f"\nWarnings ({len(warnings)}):")
        for w in warnings[:20]:
            lines.append(f"  {w}")
        if len(warnings) > 20:
            lines.append(f"  ... and {len(warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: Reportable,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
