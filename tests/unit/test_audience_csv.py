"""Unit tests for newsletter_flow.audience_csv: tokenizer and header resolution."""

from __future__ import annotations

import csv
import io

import pytest

from newsletter_flow.audience_csv import (
    AUDIENCE_CSV_TEMPLATE,
    CsvRow,
    HeaderIndex,
    build_invalid_rows_csv,
    parse_audience_csv,
    parse_csv_line,
    resolve_headers,
    split_lines,
)
from newsletter_flow.import_settings import ImportSettings


# ---------------------------------------------------------------------------
# split_lines
# ---------------------------------------------------------------------------

class TestSplitLines:
    def test_crlf_and_blank_lines(self):
        assert split_lines("a,b\r\n\r\n  c,d  \r\n\n") == ["a,b", "c,d"]

    def test_empty_and_none(self):
        assert split_lines("") == []
        assert split_lines(None) == []


# ---------------------------------------------------------------------------
# parse_csv_line
# ---------------------------------------------------------------------------

class TestParseCsvLine:
    def test_simple(self):
        assert parse_csv_line("a,b,c") == ["a", "b", "c"]

    def test_cells_trimmed(self):
        assert parse_csv_line(" a , b ,c ") == ["a", "b", "c"]

    def test_quoted_comma(self):
        assert parse_csv_line('x@y.co,"Smith, Jr.",z') == ["x@y.co", "Smith, Jr.", "z"]

    def test_escaped_quote(self):
        assert parse_csv_line('"She said ""hi""",b') == ['She said "hi"', "b"]

    def test_trailing_comma_gives_empty_cell(self):
        assert parse_csv_line("a,b,") == ["a", "b", ""]

    def test_empty_line_is_single_empty_cell(self):
        assert parse_csv_line("") == [""]

    def test_padding_inside_quotes_not_preserved(self):
        assert parse_csv_line('"  padded  ",b') == ["padded", "b"]

    def test_lone_quote_toggles_mode(self):
        assert parse_csv_line('a"b,c"d,e') == ["ab,cd", "e"]


# ---------------------------------------------------------------------------
# resolve_headers
# ---------------------------------------------------------------------------

class TestResolveHeaders:
    def test_standard_headers(self):
        idx = resolve_headers(["email", "first_name", "last_name", "tags"])
        assert idx == HeaderIndex(email=0, first_name=1, last_name=2, tags=3)

    def test_synonyms_and_spelling(self):
        idx = resolve_headers(["Groups", "E-mail Address", "FName", "Last Name"])
        assert idx == HeaderIndex(email=1, first_name=2, last_name=3, tags=0)

    def test_first_matching_column_wins(self):
        idx = resolve_headers(["Email", "Email Address"])
        assert idx.email == 0

    def test_unmatched_fields_are_none(self):
        idx = resolve_headers(["Name", "Phone"])
        assert idx == HeaderIndex()

    def test_custom_settings(self):
        settings = ImportSettings(header_synonyms={
            "email": frozenset({"correo"}),
            "first_name": frozenset({"nombre"}),
            "last_name": frozenset({"apellido"}),
            "tags": frozenset({"etiquetas"}),
        })
        idx = resolve_headers(["Nombre", "Correo"], settings)
        assert idx.email == 1
        assert idx.first_name == 0
        assert idx.tags is None


class TestCsvRow:
    def test_missing_index_is_empty(self):
        assert CsvRow(2, ("a",)).cell(None) == ""

    def test_short_row_is_empty(self):
        assert CsvRow(2, ("a",)).cell(3) == ""


# ---------------------------------------------------------------------------
# parse_audience_csv
# ---------------------------------------------------------------------------

class TestParseAudienceCsvNull:
    @pytest.mark.parametrize("text", ["", None, "\n\n  \r\n"])
    def test_no_lines_returns_none(self, text):
        assert parse_audience_csv(text) is None


class TestParseAudienceCsv:
    def test_template_parses_clean(self):
        summary = parse_audience_csv(AUDIENCE_CSV_TEMPLATE)
        assert summary is not None
        assert summary.headers == ["email", "first_name", "last_name", "tags"]
        assert summary.total_rows == 2
        assert summary.valid_rows == 2
        assert summary.invalid_rows == 0
        assert summary.has_email_column is True
        assert summary.detected_tags == {"buyers", "sellers"}

    def test_counts_add_up(self):
        text = "\n".join([
            "email,first_name",
            "a@x.com,A",
            "not-an-email,B",
            "b@x.com,C",
            ",D",
        ])
        summary = parse_audience_csv(text)
        assert summary.total_rows == 4
        assert summary.valid_rows == 2
        assert summary.invalid_rows == 2
        assert summary.valid_rows + summary.invalid_rows == summary.total_rows

    def test_every_duplicate_occurrence_flagged(self):
        text = "email\nA@x.com\nb@x.com\n a@X.com \nc@x.com"
        summary = parse_audience_csv(text)
        assert summary.duplicate_in_csv_count == 2
        flagged = [r.line_number for r in summary.rows if r.is_duplicate_in_csv]
        assert flagged == [2, 4]

    def test_invalid_emails_never_duplicates(self):
        text = "email\nbad\nbad\n\"\""
        summary = parse_audience_csv(text)
        assert summary.duplicate_in_csv_count == 0
        assert summary.invalid_rows == 3

    def test_existing_emails_case_insensitive(self):
        text = "email\njane@example.com\nnew@example.com\nJANE@example.com"
        summary = parse_audience_csv(text, existing_emails={" Jane@Example.com "})
        assert summary.duplicate_existing_count == 2
        assert [r.is_existing_contact for r in summary.rows] == [True, False, True]

    def test_reserved_tag_excluded_from_detected(self):
        text = "email,tags\na@x.com,ALL;Vip\nb@x.com,all|past_clients"
        summary = parse_audience_csv(text)
        assert summary.detected_tags == {"vip", "past_clients"}
        assert summary.rows[0].tags == ("all", "vip")

    def test_mixed_separator_tag_cell(self):
        summary = parse_audience_csv(
            'email,tags\na@x.com,"Buyers; ALL , Sellers|Sellers"'
        )
        assert summary.rows[0].tags == ("buyers", "all", "sellers")
        assert summary.detected_tags == {"buyers", "sellers"}
        assert summary.valid_rows == 1

    def test_fallback_email_without_email_column(self):
        text = "name,contact\nJane,jane@example.com\nJohn,no email here"
        summary = parse_audience_csv(text)
        assert summary.has_email_column is False
        assert summary.rows[0].email == "jane@example.com"
        assert summary.rows[0].is_valid_email is True
        assert summary.rows[1].email == ""
        assert summary.rows[1].is_valid_email is False

    def test_email_column_present_but_empty_does_not_fall_back(self):
        text = "email,backup\n,alt@example.com"
        summary = parse_audience_csv(text)
        assert summary.rows[0].email == ""
        assert summary.valid_rows == 0

    def test_header_only(self):
        summary = parse_audience_csv("email,first_name")
        assert summary.total_rows == 0
        assert summary.preview_rows == []
        assert summary.detected_tags == frozenset()

    def test_line_numbers_start_at_two_and_skip_blanks(self):
        text = "email\n\na@x.com\n\nb@x.com"
        summary = parse_audience_csv(text)
        assert [r.line_number for r in summary.rows] == [2, 3]

    def test_short_rows_yield_empty_fields(self):
        summary = parse_audience_csv("email,first_name,last_name,tags\na@x.com")
        row = summary.rows[0]
        assert row.first_name == ""
        assert row.last_name == ""
        assert row.tags == ()

    def test_preview_limited_to_first_ten(self):
        lines = ["email"] + [f"user{i}@example.com" for i in range(25)]
        summary = parse_audience_csv("\n".join(lines))
        assert len(summary.preview_rows) == 10
        assert summary.preview_rows[0].email == "user0@example.com"
        assert summary.total_rows == 25

    def test_preview_limit_from_settings(self):
        lines = ["email"] + [f"user{i}@example.com" for i in range(5)]
        summary = parse_audience_csv("\n".join(lines), settings=ImportSettings(preview_limit=3))
        assert len(summary.preview_rows) == 3

    def test_email_normalized_in_rows(self):
        summary = parse_audience_csv("Email Address\n  Jane@Example.COM ")
        assert summary.rows[0].email == "jane@example.com"


class TestSummaryToDict:
    def test_camel_case_keys(self):
        d = parse_audience_csv("email,tags\na@x.com,b;a").to_dict()
        assert d["totalRows"] == 1
        assert d["validRows"] == 1
        assert d["duplicateInCsvCount"] == 0
        assert d["detectedTags"] == ["a", "b"]
        assert d["previewRows"][0]["isValidEmail"] is True
        assert d["previewRows"][0]["lineNumber"] == 2


# ---------------------------------------------------------------------------
# build_invalid_rows_csv
# ---------------------------------------------------------------------------

class TestBuildInvalidRowsCsv:
    def test_header_and_invalid_rows_only(self):
        text = "email,first_name,last_name,tags\nok@x.com,A,B,t\nbroken,Jo,\"Doe, Jr\",x;y"
        summary = parse_audience_csv(text)
        out = build_invalid_rows_csv(summary.rows)
        rows = list(csv.reader(io.StringIO(out)))
        assert rows[0] == ["email", "first_name", "last_name", "tags"]
        assert rows[1:] == [["broken", "Jo", "Doe, Jr", "x;y"]]

    def test_no_invalid_rows_is_header_only(self):
        summary = parse_audience_csv(AUDIENCE_CSV_TEMPLATE)
        assert build_invalid_rows_csv(summary.rows) == "email,first_name,last_name,tags\n"
