"""Tests for swarmplane configuration loading."""

import logging

import pydantic
import pytest

from swarmplane.config import _DEFAULTS, Settings, configure_logging, load_config, load_settings
from swarmplane.models import FailurePolicy


def test_defaults_without_file(tmp_path):
    config = load_config(tmp_path / "missing.yaml")
    assert config == _DEFAULTS
    assert config["heartbeat"] is not _DEFAULTS["heartbeat"]


def test_defaults_match_typed_settings():
    assert Settings().model_dump(mode="json") == _DEFAULTS


def test_yaml_overrides_merge_per_section(tmp_path):
    path = tmp_path / "swarmplane_config.yaml"
    path.write_text(
        "heartbeat:\n"
        "  interval_seconds: 10\n"
        "scheduler:\n"
        "  failure_policy: partial_success\n"
        "extra:\n"
        "  anything: true\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config["heartbeat"] == {"interval_seconds": 10, "timeout_multiple": 2.0}
    assert config["extra"] == {"anything": True}

    settings = load_settings(path)
    assert settings.heartbeat.timeout_seconds == 20.0
    assert settings.scheduler.failure_policy == FailurePolicy.PARTIAL_SUCCESS
    assert settings.recovery.cooldown_seconds == 300.0


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    settings = load_settings(path)
    assert settings.heartbeat.timeout_seconds == 60.0
    assert settings.scheduler.max_resumes == 3


def test_wrong_type_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("recovery:\n  max_attempts: lots\n", encoding="utf-8")
    with pytest.raises(pydantic.ValidationError):
        load_settings(path)


def test_configure_logging_sets_level(tmp_path):
    path = tmp_path / "debug.yaml"
    path.write_text("logging:\n  level: debug\n", encoding="utf-8")
    configure_logging(load_settings(path))
    logger = logging.getLogger("swarmplane")
    assert logger.level == logging.DEBUG
    assert logger.handlers
