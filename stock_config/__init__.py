"""
stock_config -- single public entrypoint for stock ledger configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads the settings file
    or the ``STOCK_LEDGER_*`` environment variables directly.

Architecture position:
    Configuration -- sits above ``stock_kernel`` and below
    ``stock_services``.  The kernel MUST NEVER import from
    ``stock_config``; the operation boundary passes plain values
    (batch cap, posting timeout, sequence definitions) into kernel
    services.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Deterministic: same YAML and overrides always produce the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- settings file missing.
    - ``KeyError`` / ``ValueError`` -- schema violations (see loader).

Audit relevance:
    Every successful call emits a ``config_loaded`` log entry with the
    config_id, version and checksum.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

from stock_config.loader import compute_checksum, load_yaml_file, parse_config
from stock_config.schema import (
    DatabaseSettings,
    LedgerSettings,
    LoggingSettings,
    SequenceDefinition,
    StockLedgerConfig,
)

_logger = logging.getLogger("stock_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "settings.yaml"

CONFIG_PATH_ENV = "STOCK_LEDGER_CONFIG"
DATABASE_URL_ENV = "STOCK_LEDGER_DATABASE_URL"


def get_active_config(
    path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
) -> StockLedgerConfig:
    """The ONLY public configuration entrypoint.

    Resolution order for the settings file: ``path`` argument, then the
    ``STOCK_LEDGER_CONFIG`` environment variable, then the packaged
    ``settings.yaml``.  ``STOCK_LEDGER_DATABASE_URL`` replaces
    ``database.url`` when set.  ``overrides`` are merged last, section by
    section (a mapping value updates the section, anything else replaces
    the key).

    Raises:
        FileNotFoundError: If the settings file does not exist.
        KeyError: If a required key is missing.
        ValueError: If a key is unknown or a value is invalid.
    """
    config_path = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    data = copy.deepcopy(load_yaml_file(config_path))

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        data.setdefault("database", {})["url"] = database_url

    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value

    config = parse_config(data)

    _logger.info(
        "config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "config_path": str(config_path),
            "sequence_count": len(config.sequences),
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DatabaseSettings",
    "LedgerSettings",
    "LoggingSettings",
    "SequenceDefinition",
    "StockLedgerConfig",
    "compute_checksum",
    "get_active_config",
]
