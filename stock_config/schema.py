"""
Configuration schema (``stock_config.schema``).

Frozen dataclasses describing a stock ledger configuration.  Every
instance is produced by ``stock_config.loader.parse_config`` from YAML;
nothing at runtime mutates them.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class SequenceDefinition:
    """Counter seed for one document type, e.g. MOVEMENT -> MOV2503-000001."""

    doc_type: str
    prefix: str
    pad_length: int = 6


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30


@dataclass(frozen=True)
class LedgerSettings:
    max_batch_size: int = 50
    posting_timeout_seconds: int = 30
    movement_doc_type: str = "MOVEMENT"


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class StockLedgerConfig:
    """The complete runtime configuration."""

    config_id: str
    version: int
    database: DatabaseSettings
    ledger: LedgerSettings
    logging: LoggingSettings
    sequences: tuple[SequenceDefinition, ...] = field(default_factory=tuple)
    checksum: str = ""

    def sequence_for(self, doc_type: str) -> SequenceDefinition | None:
        for definition in self.sequences:
            if definition.doc_type == doc_type:
                return definition
        return None
