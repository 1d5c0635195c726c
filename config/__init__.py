"""Configuration management."""
import os
import yaml
from pathlib import Path

_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"

# Environment overrides, applied after the YAML files.
ENV_OVERRIDES = {
    "PULSE_DB_PATH": ("database", "path"),
    "PULSE_RULES_PATH": ("rules", "path"),
    "PULSE_TICK_INTERVAL": ("scheduler", "tick_interval"),
    "PULSE_MAX_WORKERS": ("scheduler", "max_workers"),
    "PULSE_EVAL_TIMEOUT": ("scheduler", "evaluation_timeout"),
    "PULSE_DATASOURCE_URL": ("datasources", "default", "url"),
    "PULSE_LOG_LEVEL": ("logging", "level"),
    "PULSE_LOG_FILE": ("logging", "file"),
}


def load_config(path=None):
    """Defaults, then the override file at `path` (if it exists), then PULSE_* env vars."""
    with open(_DEFAULT_CONFIG) as f:
        config = yaml.safe_load(f)

    if path and Path(path).exists():
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
        config = _deep_merge(config, overrides)

    for env_key, config_path in ENV_OVERRIDES.items():
        val = os.environ.get(env_key)
        if not val:
            continue
        section = config
        for key in config_path[:-1]:
            section = section.setdefault(key, {})
        section[config_path[-1]] = _parse_env(val)

    _validate_config(config)
    return config


def _parse_env(val):
    for cast in (int, float):
        try:
            return cast(val)
        except ValueError:
            pass
    return val


def _deep_merge(base, override):
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    required_sections = ["database", "scheduler", "rules", "datasources", "logging", "retention"]
    for section in required_sections:
        if section not in config:
            raise ValueError(f"Missing required config section: {section}")

    sched = config["scheduler"]
    if sched["tick_interval"] < 1:
        raise ValueError("scheduler.tick_interval must be >= 1 second")
    if sched["max_workers"] < 1:
        raise ValueError("scheduler.max_workers must be >= 1")
    if sched["evaluation_timeout"] <= 0:
        raise ValueError("scheduler.evaluation_timeout must be > 0")

    for name, ds in (config["datasources"] or {}).items():
        if not ds.get("url"):
            raise ValueError(f"Data source '{name}' has no url")

    if config["retention"]["resolved_days"] < 1:
        raise ValueError("retention.resolved_days must be >= 1")
