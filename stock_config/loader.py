"""
Configuration Loader (``stock_config.loader``).

Responsibility
--------------
Loads the YAML settings file and parses it into the typed
``stock_config.schema`` dataclasses.  Runtime callers go through
``stock_config.get_active_config()`` instead of calling this directly.

Invariants enforced
-------------------
* Parsing is strict: unknown keys raise ``ValueError``, missing required
  keys raise ``KeyError``.  No silent defaults for required fields.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad values (non-positive sizes, unknown log level)  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import (
    DatabaseSettings,
    LedgerSettings,
    LoggingSettings,
    SequenceDefinition,
    StockLedgerConfig,
)

_TOP_LEVEL_KEYS = frozenset({"config_id", "version", "database", "ledger", "logging", "sequences"})
_DATABASE_KEYS = frozenset({"url", "echo", "pool_size", "max_overflow", "pool_timeout"})
_LEDGER_KEYS = frozenset({"max_batch_size", "posting_timeout_seconds", "movement_doc_type"})
_LOGGING_KEYS = frozenset({"level"})
_SEQUENCE_KEYS = frozenset({"doc_type", "prefix", "pad_length"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _check_keys(section: str, data: dict[str, Any], allowed: frozenset[str]) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"{section}: expected a mapping, got {type(data).__name__}")
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"{section}: unknown keys {sorted(unknown)}")


def _positive_int(section: str, name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{section}.{name} must be a positive integer, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    _check_keys("database", data, _DATABASE_KEYS)
    return DatabaseSettings(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int("database", "pool_size", data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
        pool_timeout=_positive_int("database", "pool_timeout", data.get("pool_timeout", 30)),
    )


def parse_ledger(data: dict[str, Any]) -> LedgerSettings:
    _check_keys("ledger", data, _LEDGER_KEYS)
    return LedgerSettings(
        max_batch_size=_positive_int("ledger", "max_batch_size", data.get("max_batch_size", 50)),
        posting_timeout_seconds=_positive_int(
            "ledger", "posting_timeout_seconds", data.get("posting_timeout_seconds", 30)
        ),
        movement_doc_type=data.get("movement_doc_type", "MOVEMENT"),
    )


def parse_logging(data: dict[str, Any]) -> LoggingSettings:
    _check_keys("logging", data, _LOGGING_KEYS)
    level = str(data.get("level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"logging.level: unknown level {level!r}")
    return LoggingSettings(level=level)


def parse_sequence(data: dict[str, Any]) -> SequenceDefinition:
    _check_keys("sequences[]", data, _SEQUENCE_KEYS)
    return SequenceDefinition(
        doc_type=data["doc_type"],
        prefix=data["prefix"],
        pad_length=_positive_int("sequences[]", "pad_length", data.get("pad_length", 6)),
    )


def parse_config(data: dict[str, Any]) -> StockLedgerConfig:
    """
    Parse a complete configuration dict.

    Postconditions:
        - ``checksum`` is the SHA-256 of the canonical input.
        - Sequence doc types are unique.

    Raises:
        KeyError: missing required key (config_id, database.url, ...).
        ValueError: unknown key or invalid value.
    """
    _check_keys("config", data, _TOP_LEVEL_KEYS)

    sequences = tuple(parse_sequence(item) for item in data.get("sequences", []))
    doc_types = [s.doc_type for s in sequences]
    duplicates = sorted({t for t in doc_types if doc_types.count(t) > 1})
    if duplicates:
        raise ValueError(f"sequences: duplicate doc types {duplicates}")

    return StockLedgerConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        database=parse_database(data["database"]),
        ledger=parse_ledger(data.get("ledger", {})),
        logging=parse_logging(data.get("logging", {})),
        sequences=sequences,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
