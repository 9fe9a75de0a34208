"""
Settings Loader (``export_config.loader``).

Responsibility
--------------
Loads the packaged defaults and an optional override YAML file, merges
them, and parses the result into the frozen dataclasses of
``export_config.schema``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required keys have no silent defaults.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` is a deterministic SHA-256 over the merged document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid values (delimiter, currency, actor id, duplicates)  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Mapping
from uuid import UUID

import yaml

from export_config.schema import (
    ArtifactSettings,
    DatabaseSettings,
    ExpenseTypeDef,
    LoggingSettings,
    PipelineSettings,
)
from export_kernel.db.types import is_valid_currency

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_PATH_ENV = "EXPENSE_EXPORT_CONFIG"
DATABASE_URL_ENV = "DATABASE_URL"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def merge_documents(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``; lists replace."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_documents(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    return DatabaseSettings(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=int(data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
    )


def parse_logging(data: dict[str, Any]) -> LoggingSettings:
    return LoggingSettings(level=str(data.get("level", "INFO")).upper())


def parse_artifact(data: dict[str, Any]) -> ArtifactSettings:
    """
    Raises:
        ValueError: if the delimiter is not a single character, or is a
            quote or newline.
    """
    delimiter = data.get("delimiter", ",")
    if len(delimiter) != 1 or delimiter in ('"', "\n", "\r"):
        raise ValueError(f"Artifact delimiter must be one plain character, got {delimiter!r}")
    return ArtifactSettings(
        delimiter=delimiter,
        line_terminator=data.get("line_terminator", "\n"),
        output_dir=str(data.get("output_dir", "exports")),
    )


def parse_expense_type(data: dict[str, Any]) -> ExpenseTypeDef:
    return ExpenseTypeDef(
        source_type=data["source_type"],
        code=data["code"],
        key_prefix=data["key_prefix"],
        gl_account=str(data["gl_account"]) if data.get("gl_account") is not None else None,
        eligible_statuses=tuple(data.get("eligible_statuses", ())),
    )


def parse_settings(data: dict[str, Any]) -> PipelineSettings:
    """
    Parse a merged settings document.

    Raises:
        KeyError: on a missing required key.
        ValueError: on an invalid currency, actor id, or duplicate
            source type / key prefix.
    """
    default_currency = data["default_currency"]
    if not is_valid_currency(default_currency):
        raise ValueError(f"default_currency is not ISO 4217: {default_currency!r}")

    system_actor_id = str(data["system_actor_id"])
    UUID(system_actor_id)  # ValueError on malformed id

    expense_types = tuple(parse_expense_type(e) for e in data["expense_types"])
    if not expense_types:
        raise ValueError("At least one expense type must be configured")
    for attr in ("source_type", "key_prefix"):
        values = [getattr(e, attr) for e in expense_types]
        if len(values) != len(set(values)):
            raise ValueError(f"Duplicate expense type {attr} in {values}")

    return PipelineSettings(
        config_version=int(data.get("config_version", 1)),
        default_currency=default_currency,
        system_actor_id=system_actor_id,
        expense_types=expense_types,
        incident_impacts=tuple(data.get("incident_impacts", ())),
        database=parse_database(data["database"]),
        logging=parse_logging(data.get("logging", {})),
        artifact=parse_artifact(data.get("artifact", {})),
        checksum=compute_checksum(data),
    )


def load_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> PipelineSettings:
    """
    Load defaults, apply the override file and environment, and parse.

    The override file is ``path`` when given, else the file named by
    ``EXPENSE_EXPORT_CONFIG`` when set.  ``DATABASE_URL`` replaces the
    database URL last.
    """
    env = environ if environ is not None else {}
    data = load_yaml_file(DEFAULTS_PATH)

    override_path = path or env.get(CONFIG_PATH_ENV)
    if override_path:
        data = merge_documents(data, load_yaml_file(Path(override_path)))

    if env.get(DATABASE_URL_ENV):
        data = merge_documents(data, {"database": {"url": env[DATABASE_URL_ENV]}})

    return parse_settings(data)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identical data, identical checksum."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
