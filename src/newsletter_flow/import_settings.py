"""newsletter_flow.import_settings

YAML-based settings for the audience import pipeline.

Responsibilities:
  - Load and validate config/audience_import.yml (or any file passed via
    --settings-file)
  - Provide built-in defaults that match the reference header synonyms,
    preview size and reserved tag
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from newsletter_flow.import_settings import load_import_settings

    settings = load_import_settings(Path("config/audience_import.yml"))
    settings.header_synonyms["email"]  # frozenset({"email", "emailaddress", "eaddress"})
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from newsletter_flow.normalize import normalize_header_key

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HEADER_FIELDS = ("email", "first_name", "last_name", "tags")

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "preview_limit",
    "reserved_tag",
    "default_contact_tags",
    "header_synonyms",
})

DEFAULT_HEADER_SYNONYMS: dict[str, frozenset[str]] = {
    "email":      frozenset({"email", "emailaddress", "eaddress"}),
    "first_name": frozenset({"firstname", "fname", "first"}),
    "last_name":  frozenset({"lastname", "lname", "last"}),
    "tags":       frozenset({"tags", "tag", "segment", "segments", "group", "groups"}),
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportSettingsError(ValueError):
    """Raised when an import settings YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# ImportSettings dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportSettings:
    """Parsed, validated import settings."""

    version: str = "builtin"
    preview_limit: int = 10
    reserved_tag: str = "all"
    default_contact_tags: tuple[str, ...] = ("all",)
    header_synonyms: dict[str, frozenset[str]] = field(
        default_factory=lambda: dict(DEFAULT_HEADER_SYNONYMS)
    )
    yaml_hash: str | None = None


DEFAULT_IMPORT_SETTINGS = ImportSettings()


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_import_settings(yaml_path: Path | None) -> ImportSettings:
    """Load, validate, and return ImportSettings from a YAML file.

    A None path returns DEFAULT_IMPORT_SETTINGS.

    Raises:
        ImportSettingsError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return DEFAULT_IMPORT_SETTINGS
    raw = Path(yaml_path).read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_import_settings(data)
    return ImportSettings(
        version=str(data["version"]),
        preview_limit=int(data["preview_limit"]),
        reserved_tag=str(data["reserved_tag"]).strip().lower(),
        default_contact_tags=tuple(
            str(t).strip().lower() for t in data["default_contact_tags"] or []
        ),
        header_synonyms={
            name: frozenset(normalize_header_key(str(s)) for s in synonyms)
            for name, synonyms in data["header_synonyms"].items()
        },
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_import_settings(data: dict[str, Any]) -> None:
    """Raise ImportSettingsError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - preview_limit is a positive integer
      - reserved_tag is a non-empty string
      - header_synonyms covers exactly the known fields, each non-empty,
        and no normalized synonym is claimed by two fields
    """
    if not isinstance(data, dict):
        raise ImportSettingsError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise ImportSettingsError(f"Missing required YAML keys: {sorted(missing_keys)}")

    limit = data.get("preview_limit")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ImportSettingsError(
            f"'preview_limit' value {limit!r} must be a positive integer."
        )

    reserved = data.get("reserved_tag")
    if not isinstance(reserved, str) or not reserved.strip():
        raise ImportSettingsError("'reserved_tag' must be a non-empty string.")

    if not isinstance(data.get("default_contact_tags") or [], list):
        raise ImportSettingsError("'default_contact_tags' must be a list.")

    synonyms = data.get("header_synonyms")
    if not isinstance(synonyms, dict):
        raise ImportSettingsError("'header_synonyms' must be a mapping.")

    unknown = set(synonyms.keys()) - set(HEADER_FIELDS)
    if unknown:
        raise ImportSettingsError(f"Unknown header_synonyms fields: {sorted(unknown)}")
    missing_fields = set(HEADER_FIELDS) - set(synonyms.keys())
    if missing_fields:
        raise ImportSettingsError(f"Missing header_synonyms fields: {sorted(missing_fields)}")

    claimed: dict[str, str] = {}
    for name, values in synonyms.items():
        if not isinstance(values, list) or not values:
            raise ImportSettingsError(f"header_synonyms '{name}' must be a non-empty list.")
        for value in values:
            key = normalize_header_key(str(value))
            if not key:
                raise ImportSettingsError(
                    f"header_synonyms '{name}' entry {value!r} normalizes to an empty key."
                )
            if key in claimed and claimed[key] != name:
                raise ImportSettingsError(
                    f"Synonym '{key}' is claimed by both '{claimed[key]}' and '{name}'."
                )
            claimed[key] = name
