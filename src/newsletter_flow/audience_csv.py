"""newsletter_flow.audience_csv

Audience CSV parsing, header resolution and duplicate classification.

The pipeline is pure: raw CSV text plus the set of emails already stored for
the client go in, an AudienceImportSummary comes out.  Nothing here touches
the database; audience_import.run_audience_import consumes the summary to
perform the per-row upserts.

Stages:
  1. split_lines       -- strip CR, split on LF, trim, drop blank lines
  2. parse_csv_line    -- tokenize one line (comma separated, "" escapes)
  3. resolve_headers   -- map header spellings onto a HeaderIndex
  4. classify_rows     -- count valid emails, then build one classified row
                          per data line
  5. summarize         -- fold the classified rows into summary counts

Duplicate detection is count based: when a valid email appears more than
once, every occurrence (the first included) is flagged.
"""

from __future__ import annotations

import csv
import io
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from newsletter_flow.import_settings import DEFAULT_IMPORT_SETTINGS, ImportSettings
from newsletter_flow.normalize import (
    email_key,
    is_likely_email,
    normalize_header_key,
    split_tags,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AUDIENCE_CSV_TEMPLATE = "\n".join([
    "email,first_name,last_name,tags",
    "jane@example.com,Jane,Smith,all;buyers",
    "john@example.com,John,Doe,all;sellers",
])

CONTACT_CSV_HEADERS = ["email", "first_name", "last_name", "tags"]


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CsvRow:
    line_number: int
    cells: tuple[str, ...]

    def cell(self, index: int | None) -> str:
        """Cell at index, or '' when the column is unresolved or the row is short."""
        if index is None or index >= len(self.cells):
            return ""
        return self.cells[index]


@dataclass(frozen=True)
class HeaderIndex:
    email: int | None = None
    first_name: int | None = None
    last_name: int | None = None
    tags: int | None = None


@dataclass(frozen=True)
class AudiencePreviewRow:
    line_number: int
    email: str
    first_name: str
    last_name: str
    tags: tuple[str, ...]
    is_valid_email: bool
    is_duplicate_in_csv: bool
    is_existing_contact: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "lineNumber": self.line_number,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "tags": list(self.tags),
            "isValidEmail": self.is_valid_email,
            "isDuplicateInCsv": self.is_duplicate_in_csv,
            "isExistingContact": self.is_existing_contact,
        }


@dataclass
class AudienceImportSummary:
    headers: list[str]
    total_rows: int
    valid_rows: int
    invalid_rows: int
    duplicate_in_csv_count: int
    duplicate_existing_count: int
    preview_rows: list[AudiencePreviewRow]
    detected_tags: frozenset[str]
    has_email_column: bool
    rows: list[AudiencePreviewRow] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "headers": list(self.headers),
            "totalRows": self.total_rows,
            "validRows": self.valid_rows,
            "invalidRows": self.invalid_rows,
            "duplicateInCsvCount": self.duplicate_in_csv_count,
            "duplicateExistingCount": self.duplicate_existing_count,
            "previewRows": [r.to_dict() for r in self.preview_rows],
            "detectedTags": sorted(self.detected_tags),
            "hasEmailColumn": self.has_email_column,
        }


# ---------------------------------------------------------------------------
# Stage 1 + 2: line splitting and tokenizing
# ---------------------------------------------------------------------------

def split_lines(csv_text: str | None) -> list[str]:
    """Strip carriage returns, split on newline, trim, drop empty lines."""
    if not csv_text:
        return []
    lines = (line.strip() for line in csv_text.replace("\r", "").split("\n"))
    return [line for line in lines if line]


def parse_csv_line(line: str) -> list[str]:
    """Tokenize one CSV line.

    Fields are separated by commas outside double quotes.  Inside a quoted
    field '""' is a literal quote; any other '"' toggles quoted mode.  Each
    field is trimmed after extraction, so padding just inside the quotes is
    not preserved.
    """
    cells: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    n = len(line)
    while i < n:
        char = line[i]
        if char == '"' and in_quotes and i + 1 < n and line[i + 1] == '"':
            current.append('"')
            i += 2
            continue
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            cells.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1
    cells.append("".join(current).strip())
    return cells


# ---------------------------------------------------------------------------
# Stage 3: header resolution
# ---------------------------------------------------------------------------

def resolve_headers(
    headers: list[str],
    settings: ImportSettings = DEFAULT_IMPORT_SETTINGS,
) -> HeaderIndex:
    """Return the first column index matching each field's synonym set."""
    keys = [normalize_header_key(h) for h in headers]

    def pick(field_name: str) -> int | None:
        synonyms = settings.header_synonyms.get(field_name, frozenset())
        for index, key in enumerate(keys):
            if key in synonyms:
                return index
        return None

    return HeaderIndex(
        email=pick("email"),
        first_name=pick("first_name"),
        last_name=pick("last_name"),
        tags=pick("tags"),
    )


# ---------------------------------------------------------------------------
# Stage 4: row classification
# ---------------------------------------------------------------------------

def _row_email(row: CsvRow, index: HeaderIndex) -> str:
    """Email for the row: declared column, else the first cell containing '@'."""
    if index.email is not None:
        raw = row.cell(index.email)
    else:
        raw = next((c for c in row.cells if "@" in c), "")
    return email_key(raw)


def count_valid_emails(rows: Iterable[CsvRow], index: HeaderIndex) -> Counter[str]:
    """Occurrences per valid email.  Invalid emails are never counted."""
    counts: Counter[str] = Counter()
    for row in rows:
        email = _row_email(row, index)
        if is_likely_email(email):
            counts[email] += 1
    return counts


def classify_rows(
    rows: list[CsvRow],
    index: HeaderIndex,
    existing_emails: frozenset[str],
) -> list[AudiencePreviewRow]:
    counts = count_valid_emails(rows, index)
    classified: list[AudiencePreviewRow] = []
    for row in rows:
        email = _row_email(row, index)
        is_valid = is_likely_email(email)
        classified.append(AudiencePreviewRow(
            line_number=row.line_number,
            email=email,
            first_name=row.cell(index.first_name),
            last_name=row.cell(index.last_name),
            tags=tuple(split_tags(row.cell(index.tags))),
            is_valid_email=is_valid,
            is_duplicate_in_csv=is_valid and counts[email] > 1,
            is_existing_contact=is_valid and email in existing_emails,
        ))
    return classified


# ---------------------------------------------------------------------------
# Stage 5: summary fold
# ---------------------------------------------------------------------------

def summarize(
    headers: list[str],
    index: HeaderIndex,
    rows: list[AudiencePreviewRow],
    settings: ImportSettings = DEFAULT_IMPORT_SETTINGS,
) -> AudienceImportSummary:
    valid_rows = sum(1 for r in rows if r.is_valid_email)
    detected = frozenset(
        tag for r in rows for tag in r.tags if tag != settings.reserved_tag
    )
    return AudienceImportSummary(
        headers=headers,
        total_rows=len(rows),
        valid_rows=valid_rows,
        invalid_rows=len(rows) - valid_rows,
        duplicate_in_csv_count=sum(1 for r in rows if r.is_duplicate_in_csv),
        duplicate_existing_count=sum(1 for r in rows if r.is_existing_contact),
        preview_rows=rows[:settings.preview_limit],
        detected_tags=detected,
        has_email_column=index.email is not None,
        rows=rows,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_audience_csv(
    csv_text: str | None,
    existing_emails: Iterable[str] = frozenset(),
    settings: ImportSettings = DEFAULT_IMPORT_SETTINGS,
) -> AudienceImportSummary | None:
    """Parse and classify an audience CSV.

    Args:
        csv_text: Raw CSV content (whole file in memory).
        existing_emails: Emails already stored for the client.  Compared
            after trim + lowercase.
        settings: Header synonyms, preview size and reserved tag.

    Returns:
        AudienceImportSummary, or None when the text has no non-empty line
        or the header line yields no columns.
    """
    lines = split_lines(csv_text)
    if not lines:
        return None

    headers = [h.strip() for h in parse_csv_line(lines[0])]
    if not headers:
        return None

    index = resolve_headers(headers, settings)
    data_rows = [
        CsvRow(line_number=offset + 2, cells=tuple(parse_csv_line(line)))
        for offset, line in enumerate(lines[1:])
    ]
    existing = frozenset(email_key(e) for e in existing_emails)
    classified = classify_rows(data_rows, index, existing)
    return summarize(headers, index, classified, settings)


# ---------------------------------------------------------------------------
# Invalid rows download
# ---------------------------------------------------------------------------

def build_invalid_rows_csv(rows: Iterable[AudiencePreviewRow]) -> str:
    """CSV text of the invalid rows, standard contact header order.

    Tags are joined with ';' so the file can be fixed and re-imported as is.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CONTACT_CSV_HEADERS)
    for row in rows:
        if row.is_valid_email:
            continue
        writer.writerow([row.email, row.first_name, row.last_name, ";".join(row.tags)])
    return buf.getvalue()
