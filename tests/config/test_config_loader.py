"""
Configuration tests: packaged defaults, environment resolution, overrides,
strict parsing and checksum stability.
"""

from pathlib import Path

import pytest
import yaml

from stock_config import (
    CONFIG_PATH_ENV,
    DATABASE_URL_ENV,
    DEFAULT_CONFIG_PATH,
    SequenceDefinition,
    get_active_config,
)
from stock_config.loader import compute_checksum, parse_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv(CONFIG_PATH_ENV, raising=False)
    monkeypatch.delenv(DATABASE_URL_ENV, raising=False)


def _minimal(**extra):
    data = {
        "config_id": "test",
        "version": 3,
        "database": {"url": "sqlite://"},
    }
    data.update(extra)
    return data


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestPackagedDefaults:

    def test_default_file(self):
        config = get_active_config()

        assert config.config_id == "stock-ledger-default"
        assert config.version == 1
        assert config.ledger.max_batch_size == 50
        assert config.ledger.posting_timeout_seconds == 30
        assert config.ledger.movement_doc_type == "MOVEMENT"
        assert config.logging.level == "INFO"
        assert [s.doc_type for s in config.sequences] == ["MOVEMENT"]

    def test_sequence_lookup(self):
        config = get_active_config()
        assert config.sequence_for("MOVEMENT") == SequenceDefinition("MOVEMENT", "MOV", 6)
        assert config.sequence_for("INVOICE") is None

    def test_config_loaded_logged(self, captured_logs):
        config = get_active_config()

        record = next(r for r in captured_logs() if r["message"] == "config_loaded")
        assert record["config_id"] == config.config_id
        assert record["checksum"] == config.checksum
        assert record["config_path"] == str(DEFAULT_CONFIG_PATH)
        assert record["sequence_count"] == 1


class TestResolution:

    def test_explicit_path(self, tmp_path):
        config = get_active_config(_write(tmp_path, _minimal()))

        assert config.config_id == "test"
        assert config.database.url == "sqlite://"
        assert config.sequences == ()

    def test_path_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_PATH_ENV, str(_write(tmp_path, _minimal())))
        assert get_active_config().config_id == "test"

    def test_database_url_from_environment(self, monkeypatch):
        monkeypatch.setenv(DATABASE_URL_ENV, "postgresql://stock@db/ledger")
        assert get_active_config().database.url == "postgresql://stock@db/ledger"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")


class TestOverrides:

    def test_section_merge(self):
        config = get_active_config(overrides={"ledger": {"max_batch_size": 5}})

        assert config.ledger.max_batch_size == 5
        assert config.ledger.posting_timeout_seconds == 30

    def test_override_beats_environment(self, monkeypatch):
        monkeypatch.setenv(DATABASE_URL_ENV, "postgresql://stock@db/ledger")
        config = get_active_config(overrides={"database": {"url": "sqlite://"}})
        assert config.database.url == "sqlite://"

    def test_scalar_replaced(self):
        assert get_active_config(overrides={"version": 7}).version == 7

    def test_packaged_file_untouched(self):
        get_active_config(overrides={"ledger": {"max_batch_size": 5}})
        assert get_active_config().ledger.max_batch_size == 50


class TestStrictParsing:

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="unknown keys"):
            parse_config(_minimal(features={}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="ledger"):
            parse_config(_minimal(ledger={"max_batch": 5}))

    def test_missing_database_url(self):
        data = _minimal()
        data["database"] = {}
        with pytest.raises(KeyError):
            parse_config(data)

    def test_missing_config_id(self):
        data = _minimal()
        del data["config_id"]
        with pytest.raises(KeyError):
            parse_config(data)

    @pytest.mark.parametrize("value", [0, -1, "ten", True])
    def test_non_positive_batch_size(self, value):
        with pytest.raises(ValueError, match="max_batch_size"):
            parse_config(_minimal(ledger={"max_batch_size": value}))

    def test_unknown_log_level(self):
        with pytest.raises(ValueError, match="logging.level"):
            parse_config(_minimal(logging={"level": "LOUD"}))

    def test_level_normalized(self):
        assert parse_config(_minimal(logging={"level": "debug"})).logging.level == "DEBUG"

    def test_duplicate_sequence(self):
        sequences = [
            {"doc_type": "MOVEMENT", "prefix": "MOV"},
            {"doc_type": "MOVEMENT", "prefix": "MV"},
        ]
        with pytest.raises(ValueError, match="duplicate"):
            parse_config(_minimal(sequences=sequences))


class TestChecksum:

    def test_deterministic(self):
        assert parse_config(_minimal()).checksum == parse_config(_minimal()).checksum

    def test_key_order_irrelevant(self):
        a = {"b": 1, "a": {"y": 2, "x": 3}}
        b = {"a": {"x": 3, "y": 2}, "b": 1}
        assert compute_checksum(a) == compute_checksum(b)

    def test_changes_with_content(self):
        assert parse_config(_minimal()).checksum != parse_config(_minimal(version=4)).checksum
