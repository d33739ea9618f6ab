from __future__ import annotations

import os
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest

from flowbroker.config import BrokerConfig, mask_secret
from flowbroker.errors import ConfigError

_CLEAN_ENV = {name: "" for name in (
    "FLOWBROKER_HOST", "FLOWBROKER_PORT", "FLOWBROKER_SECRET", "FLOWBROKER_MODEL",
    "FLOWBROKER_LOG_LEVEL", "FLOWBROKER_GIT_POLL_INTERVAL", "FLOWBROKER_BASE_BRANCH",
)}


def test_defaults_resolve_paths_under_project_root() -> None:
    with TemporaryDirectory() as tmpdir, patch.dict(os.environ, _CLEAN_ENV):
        config = BrokerConfig.load(tmpdir)
        root = Path(tmpdir).resolve()
        assert config.port == 3847
        assert config.git_poll_interval_seconds == 2.0
        assert config.state_path == root / ".flowbroker.local.json"
        assert config.image_path == root / ".flowbroker-images"
        assert config.secret is None


def test_yaml_broker_section_overrides_defaults() -> None:
    with TemporaryDirectory() as tmpdir, patch.dict(os.environ, _CLEAN_ENV):
        (Path(tmpdir) / ".flowbroker.yaml").write_text(
            "broker:\n  port: 4000\n  base_branch: develop\n  state_file: state/session.json\n",
            encoding="utf-8",
        )
        config = BrokerConfig.load(tmpdir)
        assert config.port == 4000
        assert config.base_branch == "develop"
        assert config.state_path == Path(tmpdir).resolve() / "state" / "session.json"


def test_environment_overrides_yaml() -> None:
    env = dict(_CLEAN_ENV, FLOWBROKER_PORT="5000", FLOWBROKER_SECRET="s3cret")
    with TemporaryDirectory() as tmpdir, patch.dict(os.environ, env):
        (Path(tmpdir) / ".flowbroker.yaml").write_text("broker:\n  port: 4000\n", encoding="utf-8")
        config = BrokerConfig.load(tmpdir)
        assert config.port == 5000
        assert config.secret == "s3cret"


@pytest.mark.parametrize(
    "content",
    ["broker: [1, 2]\n", "broker:\n  colour: blue\n", "broker: {port: 1\n"],
)
def test_bad_yaml_raises_config_error(content: str) -> None:
    with TemporaryDirectory() as tmpdir, patch.dict(os.environ, _CLEAN_ENV):
        path = Path(tmpdir) / "custom.yaml"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigError):
            BrokerConfig.load(tmpdir, path)


def test_missing_explicit_config_raises() -> None:
    with TemporaryDirectory() as tmpdir, patch.dict(os.environ, _CLEAN_ENV):
        with pytest.raises(ConfigError, match="file not found"):
            BrokerConfig.load(tmpdir, Path(tmpdir) / "absent.yaml")


def test_unparsable_env_value_raises() -> None:
    env = dict(_CLEAN_ENV, FLOWBROKER_PORT="eighty")
    with TemporaryDirectory() as tmpdir, patch.dict(os.environ, env):
        with pytest.raises(ConfigError, match="FLOWBROKER_PORT"):
            BrokerConfig.load(tmpdir)


def test_mask_secret() -> None:
    assert mask_secret("/ws?secret=abc123") == "/ws?secret=***"
    assert mask_secret("/upload?x=1&secret=abc&y=2") == "/upload?x=1&secret=***&y=2"
    assert mask_secret("/health") == "/health"
