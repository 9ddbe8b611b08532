"""Unit tests for newsletter_flow.shared: reject writer and run reports."""

from __future__ import annotations

import csv
import json
from pathlib import Path

from newsletter_flow.audience_import import ImportCounters
from newsletter_flow.shared import (
    RejectWriter,
    RunCounters,
    build_text_report,
    write_run_report,
)


class TestRejectWriter:
    def test_lazy_open(self, tmp_path: Path):
        path = tmp_path / "rejects" / "r.csv"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()
        assert writer.count == 0

    def test_writes_reason_column(self, tmp_path: Path):
        path = tmp_path / "rejects" / "r.csv"
        writer = RejectWriter(path)
        writer.write({"email": "a@x.com", "line_number": "4"}, "db_error")
        writer.write({"email": "b@x.com", "line_number": "9"}, "db_error")
        writer.close()

        with open(path, newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert writer.count == 2
        assert rows[0] == {"email": "a@x.com", "line_number": "4", "_reject_reason": "db_error"}


class TestRunCounters:
    def test_to_dict(self):
        d = RunCounters(operations_applied=2, operations_rejected=1, warnings=["w"]).to_dict()
        assert d == {"operations_applied": 2, "operations_rejected": 1, "warnings": ["w"]}

    def test_warnings_truncated_at_50(self):
        assert len(RunCounters(warnings=["x"] * 70).to_dict()["warnings"]) == 50


class TestImportCounters:
    def test_camel_case_keys(self):
        d = ImportCounters(imported_count=3, updated_count=1, job_status="completed").to_dict()
        assert d["importedCount"] == 3
        assert d["updatedCount"] == 1
        assert d["jobStatus"] == "completed"
        assert "invalid_rows_csv" not in d


class TestBuildTextReport:
    def test_rows_and_banner(self):
        report = build_text_report("AUDIENCE IMPORT", [("Imported", 3), ("Skipped", 0)], [])
        assert report.startswith("=" * 60)
        assert "AUDIENCE IMPORT" in report
        assert "Imported: 3" in report
        assert "Warnings" not in report

    def test_warning_overflow(self):
        report = build_text_report("T", [], [f"w{i}" for i in range(25)], dry_run=True)
        assert "dry_run: True" in report
        assert "Warnings (25):" in report
        assert "w19" in report
        assert "w20" not in report
        assert "... and 5 more" in report


class TestWriteRunReport:
    def test_writes_json(self, tmp_path: Path):
        path = write_run_report(
            "run-1", "2026-01-01T00:00:00", "status_update", False,
            {"newsletter_id": "n1"}, RunCounters(operations_applied=1),
            report_dir=tmp_path,
        )
        assert path == tmp_path / "run-1.json"
        data = json.loads(path.read_text())
        assert data["mode"] == "status_update"
        assert data["newsletter_id"] == "n1"
        assert data["counters"]["operations_applied"] == 1
        assert data["dry_run"] is False
