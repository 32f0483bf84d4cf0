"""
Swarmplane Configuration
========================

YAML-based configuration with sensible defaults.
Loads from swarmplane_config.yaml if present, otherwise uses built-in defaults.
The merged dict is validated once into typed ``Settings``; reconcilers only
ever read the typed view.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from swarmplane.models import FailurePolicy

_DEFAULTS = {
    "controller": {
        "workers": 2,
        "resync_seconds": 30.0,
        "requeue_base_seconds": 1.0,
        "requeue_max_seconds": 300.0,
        "external_timeout_seconds": 10.0,
    },
    "heartbeat": {
        "interval_seconds": 30.0,
        "timeout_multiple": 2.0,
    },
    "recovery": {
        "cooldown_seconds": 300.0,
        "max_attempts": 5,
    },
    "autoscaling": {
        "stabilization_window_seconds": 300.0,
        "metric_timeout_seconds": 5.0,
        "quantize_scale_up": True,
        "breaker_failure_threshold": 3,
        "breaker_reset_seconds": 60.0,
    },
    "scheduler": {
        "failure_policy": "fail_fast",
        "default_max_concurrent_tasks": 10,
        "capacity_requeue_seconds": 15.0,
        "poll_interval_seconds": 10.0,
        "max_resumes": 3,
        "dispatch_timeout_seconds": 10.0,
        "ledger_retry_attempts": 5,
    },
    "backoff": {
        "base_seconds": 1.0,
    },
    "checkpoint": {
        "checkpoint_dir": "~/swarmplane-checkpoints",
        "timeout_seconds": 10.0,
    },
    "logging": {
        "level": "info",
        "events_file": None,
    },
}


def load_config(path: str | Path = "swarmplane_config.yaml") -> dict:
    """Load configuration from YAML file, merging with defaults.

    Args:
        path: Path to YAML config file. If relative, resolved from CWD.

    Returns:
        Merged config dict with all sections populated.
    """
    config = {k: dict(v) for k, v in _DEFAULTS.items()}
    config_path = Path(path)
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            user = yaml.safe_load(f) or {}
        for section, values in user.items():
            if section in config and isinstance(values, dict):
                config[section].update(values)
            else:
                config[section] = values
    return config


# ── Typed settings ───────────────────────────────────────────────────────────


class ControllerSettings(BaseModel):
    workers: int = 2
    resync_seconds: float = 30.0
    requeue_base_seconds: float = 1.0
    requeue_max_seconds: float = 300.0
    external_timeout_seconds: float = 10.0


class HeartbeatSettings(BaseModel):
    interval_seconds: float = 30.0
    timeout_multiple: float = 2.0

    @property
    def timeout_seconds(self) -> float:
        return self.interval_seconds * self.timeout_multiple


class RecoverySettings(BaseModel):
    cooldown_seconds: float = 300.0
    max_attempts: int = 5


class AutoscalingSettings(BaseModel):
    stabilization_window_seconds: float = 300.0
    metric_timeout_seconds: float = 5.0
    quantize_scale_up: bool = True
    breaker_failure_threshold: int = 3
    breaker_reset_seconds: float = 60.0


class SchedulerSettings(BaseModel):
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    default_max_concurrent_tasks: int = 10
    capacity_requeue_seconds: float = 15.0
    poll_interval_seconds: float = 10.0
    max_resumes: int = 3
    dispatch_timeout_seconds: float = 10.0
    ledger_retry_attempts: int = 5


class BackoffSettings(BaseModel):
    base_seconds: float = 1.0


class CheckpointSettings(BaseModel):
    checkpoint_dir: str = "~/swarmplane-checkpoints"
    timeout_seconds: float = 10.0


class LoggingSettings(BaseModel):
    level: str = "info"
    events_file: Optional[str] = None


class Settings(BaseModel):
    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    heartbeat: HeartbeatSettings = Field(default_factory=HeartbeatSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    autoscaling: AutoscalingSettings = Field(default_factory=AutoscalingSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(path: str | Path = "swarmplane_config.yaml") -> Settings:
    """Load and validate configuration into typed settings.

    Unknown sections and keys are ignored. A known key with a value of the
    wrong type raises ``pydantic.ValidationError`` at load time.
    """
    config = load_config(path)
    known = {k: v for k, v in config.items() if k in Settings.model_fields}
    return Settings.model_validate(known)


def configure_logging(settings: Settings) -> None:
    """Install a console handler on the ``swarmplane`` logger tree."""
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    root = logging.getLogger("swarmplane")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
        )
        root.addHandler(handler)
