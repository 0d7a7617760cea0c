"""
Settings Loader (``grantflow_config.loader``).

Responsibility
--------------
Loads the packaged ``defaults.yaml`` and an optional override file, merges
them section by section, applies environment overrides, and parses the
result into a frozen ``GrantflowSettings``.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  settings for change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``database.url``  -> ``KeyError``.
* Out-of-range values or unknown log level  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from grantflow_config.schema import (
    ApprovalSettings,
    DatabaseSettings,
    GrantflowSettings,
    LoggingSettings,
)

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

ENV_DATABASE_URL = "GRANTFLOW_DATABASE_URL"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def merge_sections(
    base: Mapping[str, Any],
    override: Mapping[str, Any],
) -> dict[str, Any]:
    """Merge ``override`` into ``base`` one section deep."""
    merged: dict[str, Any] = {k: dict(v or {}) for k, v in base.items()}
    for section, values in override.items():
        if values is None:
            continue
        if not isinstance(values, Mapping):
            raise ValueError(f"settings section '{section}' must be a mapping")
        merged.setdefault(section, {}).update(values)
    return merged


def apply_environment(
    data: Mapping[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """Overlay environment overrides onto merged settings data."""
    result = {k: dict(v) for k, v in data.items()}
    url = environ.get(ENV_DATABASE_URL)
    if url:
        result.setdefault("database", {})["url"] = url
    return result


def parse_settings(data: Mapping[str, Any]) -> GrantflowSettings:
    """
    Parse merged settings data into ``GrantflowSettings``.

    Raises:
        KeyError: if ``database.url`` is missing.
        ValueError: if a value is out of range.
    """
    db = data.get("database") or {}
    approvals = data.get("approvals") or {}
    log = data.get("logging") or {}

    database = DatabaseSettings(
        url=str(db["url"]),
        echo=bool(db.get("echo", False)),
        pool_size=int(db.get("pool_size", 10)),
        max_overflow=int(db.get("max_overflow", 10)),
    )
    if database.pool_size < 1:
        raise ValueError(f"database.pool_size must be at least 1, got {database.pool_size}")
    if database.max_overflow < 0:
        raise ValueError(
            f"database.max_overflow must not be negative, got {database.max_overflow}"
        )

    approval_settings = ApprovalSettings(
        request_expiry_days=int(approvals.get("request_expiry_days", 7)),
    )
    if approval_settings.request_expiry_days < 1:
        raise ValueError(
            "approvals.request_expiry_days must be at least 1, got "
            f"{approval_settings.request_expiry_days}"
        )

    level = str(log.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")

    return GrantflowSettings(
        database=database,
        approvals=approval_settings,
        logging=LoggingSettings(level=level),
        checksum=compute_checksum(data),
    )


def load_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> GrantflowSettings:
    """
    Load settings: packaged defaults, then ``path`` (if given), then environment.

    Args:
        path: Optional YAML file overriding the defaults.
        environ: Environment mapping; defaults to ``os.environ``.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = merge_sections(data, load_yaml_file(Path(path)))
    data = apply_environment(data, os.environ if environ is None else environ)

    settings = parse_settings(data)

    logging.getLogger("grantflow.config").info(
        "grantflow_settings_loaded",
        extra={
            "source": str(path) if path is not None else "defaults",
            "checksum": settings.checksum,
            "request_expiry_days": settings.request_expiry_days,
        },
    )
    return settings


def compute_checksum(data: Mapping[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
