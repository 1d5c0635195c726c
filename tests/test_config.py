"""Tests for configuration loading."""
import pytest
import sys
import os
from unittest.mock import patch
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import load_config, _deep_merge


def test_defaults_load():
    with patch.dict("os.environ", {}, clear=True):
        config = load_config()
    assert config["database"]["path"] == "data/pulse.db"
    assert config["scheduler"]["tick_interval"] == 15
    assert config["scheduler"]["evaluation_timeout"] == 10
    assert config["datasources"]["default"]["url"].startswith("http")
    assert config["retention"]["resolved_days"] == 30


def test_override_file_merges(tmp_path):
    override = tmp_path / "pulse.yaml"
    override.write_text("scheduler:\n  max_workers: 2\ndatasources:\n  metrics:\n    url: http://vm:8428\n")
    with patch.dict("os.environ", {}, clear=True):
        config = load_config(str(override))
    assert config["scheduler"]["max_workers"] == 2
    assert config["scheduler"]["tick_interval"] == 15
    assert "default" in config["datasources"]
    assert config["datasources"]["metrics"]["url"] == "http://vm:8428"


def test_env_overrides():
    with patch.dict("os.environ", {"PULSE_DB_PATH": "/tmp/x.db", "PULSE_TICK_INTERVAL": "30",
                                   "PULSE_LOG_LEVEL": "DEBUG"}, clear=True):
        config = load_config()
    assert config["database"]["path"] == "/tmp/x.db"
    assert config["scheduler"]["tick_interval"] == 30
    assert config["logging"]["level"] == "DEBUG"


def test_env_overrides_nested_and_float():
    with patch.dict("os.environ", {"PULSE_EVAL_TIMEOUT": "2.5",
                                   "PULSE_DATASOURCE_URL": "http://vm:8428"}, clear=True):
        config = load_config()
    assert config["scheduler"]["evaluation_timeout"] == 2.5
    assert config["datasources"]["default"]["url"] == "http://vm:8428"
    assert config["datasources"]["default"]["timeout"] == 10


@pytest.mark.parametrize("yaml_text,message", [
    ("scheduler:\n  tick_interval: 0\n", "tick_interval"),
    ("scheduler:\n  max_workers: 0\n", "max_workers"),
    ("scheduler:\n  evaluation_timeout: 0\n", "evaluation_timeout"),
    ("datasources:\n  broken:\n    timeout: 5\n", "broken"),
    ("retention:\n  resolved_days: 0\n", "resolved_days"),
])
def test_invalid_config(tmp_path, yaml_text, message):
    override = tmp_path / "bad.yaml"
    override.write_text(yaml_text)
    with patch.dict("os.environ", {}, clear=True):
        with pytest.raises(ValueError, match=message):
            load_config(str(override))


def test_deep_merge_does_not_mutate():
    base = {"a": {"b": 1, "c": 2}}
    merged = _deep_merge(base, {"a": {"b": 3}})
    assert merged == {"a": {"b": 3, "c": 2}}
    assert base == {"a": {"b": 1, "c": 2}}


def test_setup_logging_file(tmp_path):
    import logging
    from utils.logger import setup_logging
    root = logging.getLogger("pulse")
    saved = root.handlers[:]
    root.handlers = []
    try:
        logger = setup_logging("DEBUG", str(tmp_path / "pulse.log"))
        assert logger.level == logging.DEBUG
        assert any(isinstance(h, logging.FileHandler) for h in logger.handlers)
        assert logging.getLogger("urllib3").level == logging.WARNING
    finally:
        for h in root.handlers:
            h.close()
        root.handlers = saved
