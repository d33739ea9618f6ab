"""Broker configuration.

Resolution order (lowest to highest): dataclass defaults, the ``broker:``
section of a YAML file, FLOWBROKER_* environment variables. CLI flags are
applied on top by ``flowbroker.app``.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = ".flowbroker.yaml"

DEFAULT_SYSTEM_PROMPT_APPEND = (
    "You are running inside a local development broker. The developer drives "
    "you from a widget inside the app running on their phone.\n\n"
    "IMPORTANT CONSTRAINTS:\n"
    "- The app reloads over the air after every change you make\n"
    "- DO NOT add new npm/yarn packages unless the user EXPLICITLY asks for it\n"
    "- Adding native packages forces a full rebuild of the app on the device\n"
    "- Prefer existing packages or plain TypeScript when a feature allows it\n"
    "- If a new package is truly necessary, warn the user that a rebuild is required"
)

# Env var -> (field name, converter)
_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "FLOWBROKER_HOST": ("host", str),
    "FLOWBROKER_PORT": ("port", int),
    "FLOWBROKER_SECRET": ("secret", str),
    "FLOWBROKER_MODEL": ("model", str),
    "FLOWBROKER_LOG_LEVEL": ("log_level", str),
    "FLOWBROKER_GIT_POLL_INTERVAL": ("git_poll_interval_seconds", float),
    "FLOWBROKER_BASE_BRANCH": ("base_branch", str),
}


@dataclass
class BrokerConfig:
    """Session broker configuration."""

    host: str = "127.0.0.1"
    port: int = 3847
    project_root: str = "."
    # Shared secret expected as ?secret=... on every request except OPTIONS.
    secret: str | None = None

    # Relative paths resolve against project_root.
    state_file: str = ".flowbroker.local.json"
    image_dir: str = ".flowbroker-images"

    git_poll_interval_seconds: float = 2.0
    recent_branch_limit: int = 10
    base_branch: str = "main"

    # Engine
    model: str | None = None
    system_prompt_append: str = DEFAULT_SYSTEM_PROMPT_APPEND

    # How long stop()/new_session wait for a cancelled query to drain.
    shutdown_grace_seconds: float = 5.0

    log_level: str = "INFO"

    @property
    def root_path(self) -> Path:
        return Path(self.project_root).resolve()

    @property
    def state_path(self) -> Path:
        return self._resolve(self.state_file)

    @property
    def image_path(self) -> Path:
        return self._resolve(self.image_dir)

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.root_path / path
        return path

    @classmethod
    def load(
        cls,
        project_root: str | Path | None = None,
        config_path: str | Path | None = None,
    ) -> BrokerConfig:
        """Build a config from defaults, an optional YAML file and the environment."""
        root = Path(project_root or Path.cwd()).resolve()
        values: dict[str, Any] = {"project_root": str(root)}

        explicit = config_path is not None
        path = Path(config_path) if explicit else root / DEFAULT_CONFIG_FILENAME
        if explicit or path.exists():
            values.update(_load_yaml_section(path))
            values["project_root"] = str(root)
        else:
            logger.debug("No config file at %s; using defaults", path)

        env_values = _env_overrides()
        if env_values:
            logger.info(
                "BrokerConfig.load: FLOWBROKER_* env overrides: %s",
                ", ".join(sorted(env_values)),
            )
        values.update(env_values)

        config = cls(**values)
        logger.info(
            "BrokerConfig.load: root=%s host=%s port=%d state=%s poll=%.1fs",
            config.root_path, config.host, config.port,
            config.state_path, config.git_poll_interval_seconds,
        )
        return config


def _load_yaml_section(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(str(path), "file not found")
    except yaml.YAMLError as exc:
        raise ConfigError(str(path), f"YAML parse error: {exc}")

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")
    section = raw.get("broker") or {}
    if not isinstance(section, dict):
        raise ConfigError(str(path), "'broker' must be a mapping")

    known = {f.name for f in fields(BrokerConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigError(str(path), f"unknown broker keys: {', '.join(unknown)}")
    logger.info("Loaded config %s (keys: %s)", path, ", ".join(sorted(section)) or "(none)")
    return dict(section)


def _env_overrides() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for env_name, (field_name, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError:
            raise ConfigError(env_name, f"cannot parse {raw!r}")
    return values


def mask_secret(url: str) -> str:
    """Mask the secret query parameter in a URL for safe logging."""
    return re.sub(r"([?&])secret=[^&]+", r"\1secret=***", url)
