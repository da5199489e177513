"""Configuration loading and merging for sextant.

Reads TOML config from ~/.config/sextant/config.toml (global) and
<cwd>/sextant.toml (project), then SEXTANT_* environment variables.
Precedence: CLI > environment > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .report import ConfigError
from .tools import DEFAULT_MAX_TOOL_OUTPUT_CHARS

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_MODEL = "openai/gpt-4.1-mini"
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass
class AgentConfig:
    """Everything one run needs, after CLI, env and file layers are merged."""

    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    temperature: float | None = None
    max_steps: int | None = None
    time_limit: float | None = None  # seconds
    max_tool_output_chars: int = DEFAULT_MAX_TOOL_OUTPUT_CHARS
    cwd: Path = field(default_factory=Path.cwd)
    submit_enabled: bool = False
    retry_429: bool = False
    web_search: bool = False
    verbose: bool = False
    # names the default log file and is logged as the thread id
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "temperature": (int, float),
    "max_steps": int,
    "time_limit": (int, float),
    "max_tool_output_chars": int,
    "retry_429": bool,
    "web_search": bool,
    "log_dir": str,
    "color": bool,
    "quiet": bool,
}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "time_limit": "time_limit_sec",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": DEFAULT_BASE_URL,
    "temperature": None,
    "max_steps": None,
    "time_limit_sec": None,
    "max_tool_output_chars": DEFAULT_MAX_TOOL_OUTPUT_CHARS,
    "retry_429": False,
    "web_search": False,
    "log_dir": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}

# Environment variable -> config key
_ENV_KEYS: dict[str, str] = {
    "SEXTANT_DEFAULT_MODEL": "model",
    "SEXTANT_RETRY_429": "retry_429",
    "SEXTANT_WEB_SEARCH": "web_search",
}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "sextant"
    return Path.home() / ".config" / "sextant"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches and negative budgets.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    for key in ("max_steps", "time_limit"):
        if key in config and config[key] < 0:
            raise ConfigError(f"{source}: {key!r} must be >= 0")
    if "max_tool_output_chars" in config and config["max_tool_output_chars"] < 1:
        raise ConfigError(f"{source}: 'max_tool_output_chars' must be >= 1")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using OPENROUTER_API_KEY.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    config = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    if "log_dir" in config:
        p = Path(config["log_dir"]).expanduser()
        config["log_dir"] = str(p if p.is_absolute() else path.parent / p)
    return config


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigError(f"{name}: expected a boolean (1/0, true/false), got {value!r}")


def env_config(environ=None) -> dict:
    """Config values taken from SEXTANT_* and OPENROUTER_API_KEY variables."""
    environ = os.environ if environ is None else environ
    config: dict = {}
    for name, key in _ENV_KEYS.items():
        value = environ.get(name)
        if value is None:
            continue
        if CONFIG_KEYS[key] is bool:
            config[key] = _parse_bool(name, value)
        elif value:
            config[key] = value
    api_key = environ.get("OPENROUTER_API_KEY")
    if api_key:
        config["api_key"] = api_key
    return config


# --- Public API ---


def load_config(base_dir: Path, environ=None) -> dict:
    """Load and merge global config, project config and the environment.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "sextant.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config, **env_config(environ)}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to the argparse namespace where the CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def args_to_agent_config(
    args: argparse.Namespace, *, cwd: Path, submit_enabled: bool
) -> AgentConfig:
    """Build the AgentConfig for a run from a fully resolved namespace."""
    if not args.api_key:
        raise ConfigError(
            "no API key: set OPENROUTER_API_KEY, pass --api-key, "
            "or set api_key in sextant.toml"
        )
    return AgentConfig(
        model=args.model,
        base_url=args.base_url,
        api_key=args.api_key,
        temperature=args.temperature,
        max_steps=args.max_steps,
        time_limit=args.time_limit_sec,
        max_tool_output_chars=args.max_tool_output_chars,
        cwd=cwd,
        submit_enabled=submit_enabled,
        retry_429=args.retry_429,
        web_search=args.web_search,
        verbose=not args.quiet,
    )
