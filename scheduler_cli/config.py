"""
Configuration management for the agent scheduler.

Everything lives under one home directory (~/.agent-scheduler, or
$AGENT_SCHEDULER_HOME):
- config.yaml        - Settings (model, provider, scheduler tuning)
- .env               - API keys and secrets
- jobs.db, work.db   - Job definitions/history and the periodic work queue
- conversations.db   - Conversations that scheduled results are posted to
- agents/, skills/, memories/ - Agent profiles, skills and memory files
- logs/              - scheduler.log
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# =============================================================================
# Config paths
# =============================================================================

def get_scheduler_home() -> Path:
    """Get the scheduler home directory (~/.agent-scheduler)."""
    return Path(os.getenv("AGENT_SCHEDULER_HOME", Path.home() / ".agent-scheduler"))

def _home(home: Optional[Path] = None) -> Path:
    return Path(home) if home is not None else get_scheduler_home()

def get_config_path(home: Optional[Path] = None) -> Path:
    return _home(home) / "config.yaml"

def get_env_path(home: Optional[Path] = None) -> Path:
    """Get the .env file path (for API keys)."""
    return _home(home) / ".env"

def get_jobs_db_path(home: Optional[Path] = None) -> Path:
    return _home(home) / "jobs.db"

def get_work_db_path(home: Optional[Path] = None) -> Path:
    return _home(home) / "work.db"

def get_conversations_db_path(home: Optional[Path] = None) -> Path:
    return _home(home) / "conversations.db"

def get_lock_path(home: Optional[Path] = None) -> Path:
    return _home(home) / ".tick.lock"

def ensure_scheduler_home(home: Optional[Path] = None) -> Path:
    """Ensure the home directory structure exists."""
    home = _home(home)
    for sub in ("agents", "skills", "memories", "logs"):
        (home / sub).mkdir(parents=True, exist_ok=True)
    return home


# =============================================================================
# Config loading/saving
# =============================================================================

DEFAULT_CONFIG = {
    "model": "gpt-4o-mini",
    "temperature": 0.2,
    "max_iterations": 200,
    "system_prompt": (
        "You are an autonomous assistant running a scheduled task. "
        "Nobody is watching this run, so do not ask clarifying questions; "
        "use your best judgment and finish with a short summary of what you did."
    ),
    # Agent profile used when a job does not name one
    "active_agent": None,

    "provider": {
        "base_url": None,
        "api_key_env": "OPENAI_API_KEY",
    },

    "skills": {
        "disabled": [],
    },

    "scheduler": {
        "tick_interval": 60,
        "max_workers": 2,
        # Let a periodic slot start while the same job is still running
        "allow_overlap": False,
        "retry": {
            "max_attempts": 3,
            "initial_backoff_seconds": 30,
            "max_backoff_seconds": 18000,
        },
        "log_retention_days": 30,
    },

    "_config_version": 1,
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base*, preserving nested defaults.

    Keys in *override* take precedence. If both values are dicts the merge
    recurses, so a user who overrides only ``scheduler.retry.max_attempts``
    keeps the other retry defaults.
    """
    result = base.copy()
    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _set_nested(config: dict, dotted_key: str, value):
    """Set a value at an arbitrarily nested dotted key path.

    Creates intermediate dicts as needed, e.g. ``_set_nested(c, "a.b.c", 1)``
    ensures ``c["a"]["b"]["c"] == 1``.
    """
    parts = dotted_key.split(".")
    current = config
    for part in parts[:-1]:
        if part not in current or not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _read_user_config(home: Optional[Path] = None) -> Dict[str, Any]:
    config_path = get_config_path(home)
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(home: Optional[Path] = None) -> Dict[str, Any]:
    """Load config.yaml (of `home`, default the scheduler home) merged over the defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    try:
        user_config = _read_user_config(home)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load config %s: %s", get_config_path(home), e)
        return config
    if not isinstance(user_config, dict):
        logger.warning("Ignoring config %s: top level is not a mapping", get_config_path(home))
        return config
    return _deep_merge(config, user_config)


def save_config(config: Dict[str, Any], home: Optional[Path] = None):
    ensure_scheduler_home(home)
    with open(get_config_path(home), "w", encoding="utf-8") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def _coerce(value: str):
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none"):
        return None
    if value.isdigit():
        return int(value)
    if value.replace(".", "", 1).isdigit():
        return float(value)
    return value


def set_config_value(key: str, value: str, home: Optional[Path] = None) -> Any:
    """
    Set a dotted key in config.yaml and return the stored (typed) value.

    Only the user's own file is rewritten, not the merged defaults.
    """
    user_config = _read_user_config(home)
    typed = _coerce(value)
    _set_nested(user_config, key, typed)
    save_config(user_config, home)
    return typed


def get_config_value(config: Dict[str, Any], dotted_key: str, default: Optional[Any] = None) -> Any:
    current: Any = config
    for part in dotted_key.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def load_env(home: Optional[Path] = None) -> bool:
    """
    (Re)load ~/.agent-scheduler/.env into the process environment.

    Called before every run with override=True so edited keys take effect
    without restarting the daemon.
    """
    env_path = get_env_path(home)
    if not env_path.exists():
        return False
    try:
        return load_dotenv(str(env_path), override=True, encoding="utf-8")
    except UnicodeDecodeError:
        return load_dotenv(str(env_path), override=True, encoding="latin-1")
