"""Environment settings for the command-line interface.

This module loads ``QUANTRISK_*`` settings from a .env file and the process
environment. Library calls never read these; they take their configuration
per call.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from quantrisk.exceptions import DataError


def find_project_root() -> Path:
    """Find the project root directory (contains .env file or pyproject.toml).

    Returns:
        Path to project root directory, or the working directory if none is found.
    """
    current = Path.cwd()

    for _ in range(5):
        if (current / ".env").exists() or (current / "pyproject.toml").exists():
            return current
        if current.parent == current:
            break
        current = current.parent

    return Path.cwd()


def load_env_file(env_path: str | Path | None = None) -> dict[str, str]:
    """Parse KEY=VALUE pairs from a .env file.

    Args:
        env_path: Path to .env file. If None, searches for .env in project root.

    Returns:
        Dictionary of variables defined in the file (empty if it does not exist).
    """
    env_path = find_project_root() / ".env" if env_path is None else Path(env_path)
    if not env_path.exists():
        return {}

    env_vars = {}
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = line.split("=", 1)
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]
            env_vars[key.strip()] = value

    return env_vars


def _int_setting(name: str, raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as e:
        msg = f"expected an integer, got {raw!r}"
        raise DataError(msg, field=name) from e


class EngineSettings:
    """Process-level defaults for the CLI.

    Values from the environment take precedence over the .env file.

    Attributes:
        seed: Default random seed (QUANTRISK_SEED), or None to use config defaults
        max_workers: Thread pool size for simulations (QUANTRISK_MAX_WORKERS)
        log_level: Logging level name (QUANTRISK_LOG_LEVEL, default INFO)

    Example:
        >>> settings = EngineSettings()
        >>> settings.log_level
        'INFO'
    """

    def __init__(self, env_path: str | Path | None = None):
        """Initialize settings.

        Args:
            env_path: Path to .env file. If None, searches for .env in project root.
        """
        values = {**load_env_file(env_path), **os.environ}

        self.seed = _int_setting("QUANTRISK_SEED", values.get("QUANTRISK_SEED"))
        self.max_workers = _int_setting("QUANTRISK_MAX_WORKERS", values.get("QUANTRISK_MAX_WORKERS"))
        if self.max_workers is not None and self.max_workers < 1:
            msg = f"must be >= 1, got {self.max_workers}"
            raise DataError(msg, field="QUANTRISK_MAX_WORKERS")

        self.log_level = values.get("QUANTRISK_LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            msg = f"unknown log level {self.log_level!r}"
            raise DataError(msg, field="QUANTRISK_LOG_LEVEL")

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"EngineSettings(seed={self.seed}, max_workers={self.max_workers}, "
            f"log_level={self.log_level})"
        )
