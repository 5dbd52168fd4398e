"""Settings loading and logger setup tests."""

import logging

import pytest

from pylitedoc import Settings, load_settings, setup_logger
from pylitedoc.config import CONFIG_ENV_VAR


def test_defaults():
    s = Settings()
    assert s.max_indexes == 64
    assert s.max_index_name_length == 125
    assert s.max_compound_fields == 31
    assert s.max_nesting_depth == 100
    assert s.ttl_monitor_interval == 60.0


def test_unknown_setting_rejected():
    with pytest.raises(ValueError):
        Settings(max_widgets=3)


def test_load_settings_from_yaml(tmp_path):
    path = tmp_path / "pylitedoc.yaml"
    path.write_text("max_indexes: 10\nttl_monitor_interval: 5\n", encoding="utf-8")
    s = load_settings(str(path))
    assert s.max_indexes == 10
    assert s.ttl_monitor_interval == 5.0
    assert s.max_nesting_depth == 100


def test_load_settings_from_env(tmp_path, monkeypatch):
    path = tmp_path / "conf.yaml"
    path.write_text("max_compound_fields: 4\n", encoding="utf-8")
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
    assert load_settings().max_compound_fields == 4


def test_missing_or_empty_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    assert load_settings(str(tmp_path / "nope.yaml")).as_dict() == Settings().as_dict()
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_settings(str(empty)).max_indexes == 64


def test_non_mapping_config_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(str(path))


def test_setup_logger_console_and_file(tmp_path):
    log_file = tmp_path / "logs" / "pylitedoc.log"
    logger = setup_logger("pylitedoc.test", level="DEBUG", log_file=str(log_file))
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2
    logger.info("hello file")
    for h in logger.handlers:
        h.flush()
    assert "hello file" in log_file.read_text(encoding="utf-8")
    assert len(setup_logger("pylitedoc.test").handlers) == 1
