"""
Configuration and logging setup
===============================

User configuration lives in ``~/.prism/config.json`` (or ``$PRISM_HOME``).
Everything is optional; a missing or broken file means built-in defaults.

Example config.json::

    {
      "defaults": {"temperature": 0.5, "maxTokens": 2048, "taskTimeout": 90},
      "vault": {"backend": "keyring", "kdfIterations": 100000},
      "logging": {"level": "DEBUG", "file": "~/.prism/prism.log"}
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TASK_TIMEOUT = 120.0
DEFAULT_KDF_ITERATIONS = 100_000

VAULT_BACKENDS = ("file", "keyring")


def get_config_dir() -> Path:
    """Return the config directory, honouring PRISM_HOME."""
    override = os.environ.get("PRISM_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".prism"


def ensure_config_dir() -> Path:
    config_dir = get_config_dir()
    config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    return config_dir


def load_user_config(path: Path | None = None) -> dict[str, Any]:
    """Load config.json; never raises."""
    config_path = path or get_config_dir() / "config.json"
    if not config_path.exists():
        return {}

    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            loaded = json.load(config_file)
    except (OSError, ValueError) as exc:
        logger.warning(f"Failed to load config from {config_path}: {exc}")
        return {}

    if not isinstance(loaded, dict):
        logger.warning(f"Config file {config_path} did not contain an object.")
        return {}

    return loaded


def _section(config: dict[str, Any], key: str) -> dict[str, Any]:
    value = config.get(key, {})
    if isinstance(value, dict):
        return value
    return {}


def _number(value: Any, default: float | None) -> float | None:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


@dataclass(frozen=True)
class Settings:
    """Resolved runtime settings"""

    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    task_timeout: float | None = DEFAULT_TASK_TIMEOUT
    default_preset: str = "research"
    vault_backend: str = "file"
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> Settings:
        defaults = _section(config, "defaults")
        vault = _section(config, "vault")

        temperature = _number(defaults.get("temperature"), DEFAULT_TEMPERATURE)
        max_tokens = _number(defaults.get("maxTokens"), DEFAULT_MAX_TOKENS)

        # explicit null disables the per-task timeout
        if "taskTimeout" in defaults and defaults["taskTimeout"] is None:
            task_timeout = None
        else:
            task_timeout = _number(defaults.get("taskTimeout"), DEFAULT_TASK_TIMEOUT)
            if task_timeout is not None and task_timeout <= 0:
                task_timeout = None

        preset = defaults.get("preset")
        if not isinstance(preset, str) or not preset:
            preset = "research"

        backend = vault.get("backend")
        if not isinstance(backend, str) or backend.lower() not in VAULT_BACKENDS:
            backend = "file"

        iterations = _number(vault.get("kdfIterations"), DEFAULT_KDF_ITERATIONS)
        if iterations is None or iterations < 1:
            iterations = DEFAULT_KDF_ITERATIONS

        return cls(
            temperature=float(temperature if temperature is not None else DEFAULT_TEMPERATURE),
            max_tokens=int(max_tokens if max_tokens is not None else DEFAULT_MAX_TOKENS),
            task_timeout=task_timeout,
            default_preset=preset.lower(),
            vault_backend=backend.lower(),
            kdf_iterations=int(iterations),
        )


def load_settings(path: Path | None = None) -> Settings:
    return Settings.from_config(load_user_config(path))


def setup_logging(verbose: bool = False, log_config: dict[str, Any] | None = None) -> None:
    """Configure the root logger from the ``logging`` config section."""
    log_config = log_config or {}
    level = logging.DEBUG if verbose else logging.INFO

    if not verbose and isinstance(log_config.get("level"), str):
        level = getattr(logging, log_config["level"].upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_config.get("file")
    if isinstance(log_file, str) and log_file:
        expanded_path = os.path.expanduser(log_file)
        try:
            handlers.append(logging.FileHandler(expanded_path, encoding="utf-8"))
        except OSError as e:
            # Console only if the file can't be opened
            print(f"Failed to setup log file {log_file}: {e}")

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
