"""
Workflow Configuration

Thresholds and storage settings for the delegation engine.

Resolution order (later wins):
1. WorkflowConfig defaults
2. YAML file (argument, or TASK_WORKFLOW_CONFIG env var)
3. TASK_WORKFLOW_STORAGE_DIR / TASK_WORKFLOW_LOG_LEVEL env vars
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

from .errors import ConfigError

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
CONFIG_ENV_VAR = "TASK_WORKFLOW_CONFIG"
STORAGE_DIR_ENV_VAR = "TASK_WORKFLOW_STORAGE_DIR"
LOG_LEVEL_ENV_VAR = "TASK_WORKFLOW_LOG_LEVEL"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class WorkflowConfig:
    """Tunable thresholds. Formula constants are fixed and live with the code."""
    # Status projector
    blocker_redelegation_threshold: int = 2
    stalled_stage_hours: float = 48.0
    default_stage_hours: float = 24.0
    # Analytics
    top_paths_limit: int = 10
    bottleneck_limit: int = 5
    bottleneck_multiplier: float = 1.5
    bottleneck_threshold_hours: Optional[float] = None
    handoff_window_hours: float = 168.0
    # Ambient
    storage_dir: str = "data/task_workflow"
    log_level: str = "INFO"

    @property
    def storage_path(self) -> Path:
        return Path(self.storage_dir)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _validate(config: WorkflowConfig) -> List[str]:
    errors = []
    if config.blocker_redelegation_threshold < 0:
        errors.append("blocker_redelegation_threshold must be >= 0")
    if config.top_paths_limit < 1:
        errors.append("top_paths_limit must be >= 1")
    if config.bottleneck_limit < 1:
        errors.append("bottleneck_limit must be >= 1")
    if config.bottleneck_multiplier <= 0:
        errors.append("bottleneck_multiplier must be > 0")
    if config.bottleneck_threshold_hours is not None and config.bottleneck_threshold_hours < 0:
        errors.append("bottleneck_threshold_hours must be >= 0")
    if config.stalled_stage_hours <= 0:
        errors.append("stalled_stage_hours must be > 0")
    if config.default_stage_hours <= 0:
        errors.append("default_stage_hours must be > 0")
    if config.handoff_window_hours <= 0:
        errors.append("handoff_window_hours must be > 0")
    if config.log_level.upper() not in VALID_LOG_LEVELS:
        errors.append(f"log_level must be one of {list(VALID_LOG_LEVELS)}")
    return errors


_INT_FIELDS = ("blocker_redelegation_threshold", "top_paths_limit", "bottleneck_limit")
_FLOAT_FIELDS = (
    "stalled_stage_hours",
    "default_stage_hours",
    "bottleneck_multiplier",
    "bottleneck_threshold_hours",
    "handoff_window_hours",
)


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce YAML/env values to the field types."""
    coerced = dict(values)
    errors = []
    for name, value in values.items():
        if value is None:
            continue
        try:
            if name in _INT_FIELDS:
                coerced[name] = int(value)
            elif name in _FLOAT_FIELDS:
                coerced[name] = float(value)
            else:
                coerced[name] = str(value)
        except (TypeError, ValueError):
            errors.append(f"{name}: invalid value {value!r}")
    if errors:
        raise ConfigError(errors)
    return coerced


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping from disk."""
    if not path.exists():
        raise ConfigError([f"Config file not found: {path}"])
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError([f"Config file must contain a mapping: {path}"])
    return data


def load_config(path: Optional[Path] = None) -> WorkflowConfig:
    """
    Load configuration from defaults, an optional YAML file and env vars.

    Raises ConfigError on unknown keys or invalid values.
    """
    values: Dict[str, Any] = {}

    config_path = path or os.getenv(CONFIG_ENV_VAR)
    if config_path:
        data = _read_yaml(Path(config_path))
        known = {f.name for f in fields(WorkflowConfig)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError([f"Unknown config keys: {unknown}"])
        values.update(data)
        logger.debug(f"Loaded workflow config from {config_path}")

    if os.getenv(STORAGE_DIR_ENV_VAR):
        values["storage_dir"] = os.environ[STORAGE_DIR_ENV_VAR]
    if os.getenv(LOG_LEVEL_ENV_VAR):
        values["log_level"] = os.environ[LOG_LEVEL_ENV_VAR]

    config = replace(WorkflowConfig(), **_coerce(values))

    errors = _validate(config)
    if errors:
        raise ConfigError(errors)
    return config


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the service entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
