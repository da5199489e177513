"""Tests for sextant.config: TOML layering, environment, and CLI integration."""

import argparse
from pathlib import Path

import pytest

from sextant.config import (
    _UNSET,
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    AgentConfig,
    ConfigError,
    apply_config_to_args,
    args_to_agent_config,
    env_config,
    global_config_dir,
    load_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "temperature": _UNSET,
        "max_steps": _UNSET,
        "time_limit_sec": _UNSET,
        "max_tool_output_chars": _UNSET,
        "retry_429": _UNSET,
        "web_search": _UNSET,
        "log_dir": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in (
        "OPENROUTER_API_KEY",
        "SEXTANT_DEFAULT_MODEL",
        "SEXTANT_RETRY_429",
        "SEXTANT_WEB_SEARCH",
    ):
        monkeypatch.delenv(name, raising=False)


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path / "project") == {}

    def test_global_dir_respects_xdg(self, tmp_path):
        assert global_config_dir() == tmp_path / "xdg" / "sextant"

    def test_global_dir_default(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME")
        assert global_config_dir() == Path.home() / ".config" / "sextant"

    def test_project_overrides_global(self, tmp_path):
        _write_toml(tmp_path / "xdg" / "sextant" / "config.toml", 'model = "g"\nmax_steps = 5\n')
        project = tmp_path / "project"
        _write_toml(project / "sextant.toml", 'model = "p"\n')
        result = load_config(project)
        assert result == {"model": "p", "max_steps": 5}

    def test_env_overrides_files(self, tmp_path, monkeypatch):
        project = tmp_path / "project"
        _write_toml(project / "sextant.toml", 'model = "p"\nretry_429 = false\n')
        monkeypatch.setenv("SEXTANT_DEFAULT_MODEL", "env/model")
        monkeypatch.setenv("SEXTANT_RETRY_429", "1")
        result = load_config(project)
        assert result["model"] == "env/model"
        assert result["retry_429"] is True

    def test_invalid_toml(self, tmp_path):
        _write_toml(tmp_path / "sextant.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_wrong_type(self, tmp_path):
        _write_toml(tmp_path / "sextant.toml", 'max_steps = "ten"\n')
        with pytest.raises(ConfigError, match="max_steps"):
            load_config(tmp_path)

    def test_bool_rejected_for_int(self, tmp_path):
        _write_toml(tmp_path / "sextant.toml", "max_steps = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_negative_budget(self, tmp_path):
        _write_toml(tmp_path / "sextant.toml", "time_limit = -1\n")
        with pytest.raises(ConfigError, match="time_limit"):
            load_config(tmp_path)

    def test_unknown_key_warns(self, tmp_path, capsys):
        _write_toml(tmp_path / "sextant.toml", 'bogus = 1\nmodel = "m"\n')
        assert load_config(tmp_path) == {"model": "m"}
        assert "unknown config key 'bogus'" in capsys.readouterr().err

    def test_api_key_in_git_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "sextant.toml", 'api_key = "sk-1"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err

    def test_log_dir_relative_to_config(self, tmp_path):
        _write_toml(tmp_path / "sextant.toml", 'log_dir = "logs"\n')
        assert load_config(tmp_path)["log_dir"] == str(tmp_path.resolve() / "logs")


class TestEnvConfig:
    def test_api_key(self):
        assert env_config({"OPENROUTER_API_KEY": "sk-x"}) == {"api_key": "sk-x"}

    def test_bool_parsing(self):
        assert env_config({"SEXTANT_WEB_SEARCH": "true"}) == {"web_search": True}
        assert env_config({"SEXTANT_WEB_SEARCH": "0"}) == {"web_search": False}

    def test_bad_bool(self):
        with pytest.raises(ConfigError, match="SEXTANT_RETRY_429"):
            env_config({"SEXTANT_RETRY_429": "maybe"})

    def test_empty_model_ignored(self):
        assert env_config({"SEXTANT_DEFAULT_MODEL": ""}) == {}


# ===========================================================================
# CLI integration
# ===========================================================================


class TestApplyConfigToArgs:
    def test_defaults_swept(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.model == DEFAULT_MODEL
        assert args.base_url == DEFAULT_BASE_URL
        assert args.max_tool_output_chars == 8000
        assert args.max_steps is None
        assert args.retry_429 is False

    def test_cli_wins(self):
        args = _make_args(model="cli/model")
        apply_config_to_args(args, {"model": "cfg/model", "max_steps": 3})
        assert args.model == "cli/model"
        assert args.max_steps == 3

    def test_time_limit_maps_to_flag_dest(self):
        args = _make_args()
        apply_config_to_args(args, {"time_limit": 30})
        assert args.time_limit_sec == 30

    def test_color_pair(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True


class TestArgsToAgentConfig:
    def test_builds_config(self, tmp_path):
        args = _make_args(api_key="sk-1", quiet=True)
        apply_config_to_args(args, {})
        config = args_to_agent_config(args, cwd=tmp_path, submit_enabled=True)
        assert isinstance(config, AgentConfig)
        assert config.api_key == "sk-1"
        assert config.cwd == tmp_path
        assert config.submit_enabled is True
        assert config.verbose is False

    def test_missing_api_key(self, tmp_path):
        args = _make_args()
        apply_config_to_args(args, {})
        with pytest.raises(ConfigError, match="OPENROUTER_API_KEY"):
            args_to_agent_config(args, cwd=tmp_path, submit_enabled=False)
