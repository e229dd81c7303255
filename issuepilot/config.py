"""Configuration loading and constants for issuepilot."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml


# ---------------------------------------------------------------------------
# Pipeline phases, evaluated in this order on every tick
# ---------------------------------------------------------------------------

Phase = Literal["grooming", "building", "reviewing"]

PHASES: tuple[Phase, ...] = ("grooming", "building", "reviewing")


# Default label names; keys are stable, values can be overridden in config.yaml
DEFAULT_LABELS = {
    "needs_grooming": "needs-grooming",
    "grooming": "grooming",
    "awaiting_approval": "awaiting-approval",
    "ready": "ready",
    "in_progress": "in-progress",
    "pr_ready": "pr-ready",
    "reviewing": "reviewing",
    "failed": "failed",
}

# Label key that must be present while a lease of each phase is live
IN_FLIGHT_LABEL_KEYS: dict[Phase, str] = {
    "grooming": "grooming",
    "building": "in_progress",
    "reviewing": "reviewing",
}

# Label key that makes an issue a candidate for each phase
PICKUP_LABEL_KEYS: dict[Phase, str] = {
    "grooming": "needs_grooming",
    "building": "ready",
    "reviewing": "pr_ready",
}

DEFAULT_SCHEDULER_CONFIG = {
    "poll_interval_seconds": 60,
    "max_parallel_builds": 3,
    "max_parallel_reviews": 2,
}

DEFAULT_AGENT_CONFIG = {
    "command": ["claude", "--dangerously-skip-permissions"],
    "terminal": ["x-terminal-emulator", "-T", "{title}", "-e", "bash", "{script}"],
}

# Env var -> label key; these win over config.yaml
_LABEL_ENV_OVERRIDES = {
    "GROOMING_LABEL": "needs_grooming",
    "ISSUE_LABEL": "ready",
}


class ConfigError(RuntimeError):
    """Raised when the configuration is missing something required."""


def find_parent_project(start: Path | None = None) -> Path:
    """Find the project root by walking up from ``start`` (default CWD) to find .git."""
    current = (start or Path.cwd()).resolve()

    while current != current.parent:
        if (current / ".git").exists():
            return current
        current = current.parent

    raise RuntimeError(
        "Could not find project root. "
        "Run issuepilot from inside a git repository."
    )


def get_issuepilot_dir() -> Path:
    """Get the .issuepilot directory in the project.

    Can be overridden via ISSUEPILOT_DIR environment variable (used by tests).
    """
    env_override = os.environ.get("ISSUEPILOT_DIR")
    if env_override:
        return Path(env_override)
    return find_parent_project() / ".issuepilot"


def get_config_path() -> Path:
    """Get path to config.yaml."""
    return get_issuepilot_dir() / "config.yaml"


def get_runtime_dir() -> Path:
    """Get the runtime directory for local state (gitignored)."""
    return get_issuepilot_dir() / "runtime"


def get_database_path() -> Path:
    """Get path to the lease database."""
    return get_runtime_dir() / "leases.db"


def get_workers_dir() -> Path:
    """Get the directory holding per-worker prompt and launcher files."""
    return get_runtime_dir() / "workers"


def get_logs_dir() -> Path:
    """Get the logs directory."""
    return get_runtime_dir() / "logs"


def load_config() -> dict[str, Any]:
    """Load config.yaml.

    Returns:
        Parsed YAML config dict, or empty dict if the file does not exist
    """
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(config).__name__}")
    return config


def get_repo() -> str:
    """Get the ``owner/name`` repository. GITHUB_REPO wins over config.yaml."""
    env_repo = os.environ.get("GITHUB_REPO")
    if env_repo:
        return env_repo
    return load_config().get("repo", "") or ""


def get_base_branch() -> str:
    """Get the branch work branches are created from. Defaults to ``"main"``."""
    return load_config().get("base_branch", "main") or "main"


def get_labels() -> dict[str, str]:
    """Get the label names, merging config.yaml and env overrides onto the defaults."""
    configured = load_config().get("labels") or {}
    labels = {
        key: configured.get(key, default)
        for key, default in DEFAULT_LABELS.items()
    }

    for env_var, key in _LABEL_ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            labels[key] = value

    return labels


def get_scheduler_config() -> dict[str, int]:
    """Get poll interval and per-phase parallelism limits."""
    configured = load_config().get("scheduler") or {}
    return {
        key: int(configured.get(key, default))
        for key, default in DEFAULT_SCHEDULER_CONFIG.items()
    }


def get_agent_config() -> dict[str, list[str]]:
    """Get the agent command and the terminal launcher command."""
    configured = load_config().get("agent") or {}
    return {
        key: list(configured.get(key, default))
        for key, default in DEFAULT_AGENT_CONFIG.items()
    }


def in_flight_label(phase: Phase, labels: dict[str, str]) -> str:
    """Label that must stay on an issue while a lease of ``phase`` is live."""
    return labels[IN_FLIGHT_LABEL_KEYS[phase]]


def pickup_label(phase: Phase, labels: dict[str, str]) -> str:
    """Label that makes an issue a candidate for ``phase``."""
    return labels[PICKUP_LABEL_KEYS[phase]]


def validate_config() -> None:
    """Check that everything needed to talk to GitHub is configured.

    Raises:
        ConfigError: If the repository is not configured or malformed
    """
    repo = get_repo()
    if not repo:
        raise ConfigError(
            "No repository configured. Set GITHUB_REPO=owner/repo "
            f"or add 'repo: owner/repo' to {get_config_path()}"
        )
    owner, _, name = repo.partition("/")
    if not owner or not name or "/" in name:
        raise ConfigError(f"Repository must be in format owner/repo, got {repo!r}")

    scheduler = get_scheduler_config()
    if scheduler["poll_interval_seconds"] <= 0:
        raise ConfigError("scheduler.poll_interval_seconds must be positive")
    if scheduler["max_parallel_builds"] < 0 or scheduler["max_parallel_reviews"] < 0:
        raise ConfigError("scheduler.max_parallel_* must not be negative")
