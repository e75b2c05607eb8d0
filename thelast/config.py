"""Configuration file loading and merging for thelast.

Reads TOML config from ~/.config/thelast/config.toml (global) and
<base_dir>/thelast.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .conversation import DEFAULT_CEILING, DEFAULT_TAIL
from .providers import (
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_OLLAMA_NUM_CTX,
)
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG_NAME = "thelast.toml"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "workspace": str,
    "max_iterations": int,
    "history_ceiling": int,
    "history_tail": int,
    "anthropic_model": str,
    "deepseek_model": str,
    "openai_model": str,
    "ollama_model": str,
    "ollama_host": str,
    "ollama_num_ctx": int,
    "max_output_tokens": int,
    "system_prompt": str,
    "no_history": bool,
    "no_event_log": bool,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_INT_KEYS = {
    "max_iterations",
    "history_ceiling",
    "history_tail",
    "ollama_num_ctx",
    "max_output_tokens",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "workspace": None,
    "max_iterations": 10,
    "history_ceiling": DEFAULT_CEILING,
    "history_tail": DEFAULT_TAIL,
    "anthropic_model": None,
    "deepseek_model": None,
    "openai_model": None,
    "ollama_model": None,
    "ollama_host": None,
    "ollama_num_ctx": DEFAULT_OLLAMA_NUM_CTX,
    "max_output_tokens": DEFAULT_MAX_OUTPUT_TOKENS,
    "system_prompt": None,
    "no_history": False,
    "no_event_log": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "thelast"
    return Path.home() / ".config" / "thelast"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")


def _validate_history_window(config: dict, source: str) -> None:
    ceiling = config.get("history_ceiling")
    tail = config.get("history_tail")
    if ceiling is not None and tail is not None and tail >= ceiling:
        raise ConfigError(
            f"{source}: 'history_tail' ({tail}) must be smaller than "
            f"'history_ceiling' ({ceiling})"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve a relative workspace against the config file's parent directory.

    Applies expanduser() first so ~/... is not turned into <config_dir>/~/...
    """
    if "workspace" in config:
        expanded = Path(config["workspace"]).expanduser()
        if expanded.is_absolute():
            config["workspace"] = str(expanded)
        else:
            config["workspace"] = str(config_dir / expanded)


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    _validate_history_window(known, label)
    return known


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = _load_single(project_path, str(project_path))
    _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}
    # The pair may be split across files.
    _validate_history_window(merged, "config")
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS, then
    checks the effective history window.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair.
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    for key in sorted(_POSITIVE_INT_KEYS):
        value = getattr(args, key, None)
        if value is not None and value < 1:
            flag = "--" + key.replace("_", "-")
            raise ConfigError(f"{flag} must be at least 1, got {value}")

    if args.history_tail >= args.history_ceiling:
        raise ConfigError(
            f"history tail ({args.history_tail}) must be smaller than "
            f"history ceiling ({args.history_ceiling})"
        )


def model_overrides(args: argparse.Namespace) -> dict[str, str]:
    """Collect the per-provider model names set on the command line or in config."""
    overrides = {}
    for provider in ("anthropic", "deepseek", "openai", "ollama"):
        value = getattr(args, f"{provider}_model", None)
        if value:
            overrides[provider] = value
    return overrides


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# thelast configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/thelast.toml' if project else '~/.config/thelast/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "# API keys are read from the environment (or a .env file), never from here.",
        "",
        "# --- Workspace ---",
        '# workspace = "workspace"         # relative to this file',
        "",
        "# --- Models ---",
        '# anthropic_model = "claude-3-5-sonnet-20241022"',
        '# deepseek_model = "deepseek-chat"',
        '# openai_model = "gpt-4o"',
        '# ollama_model = "qwen2.5-coder:14b"',
        '# ollama_host = "http://127.0.0.1:11434"',
        "# ollama_num_ctx = 16384",
        "# max_output_tokens = 8192",
        "",
        "# --- Agent behaviour ---",
        "# max_iterations = 10",
        "# history_ceiling = 100",
        "# history_tail = 50             # must be smaller than history_ceiling",
        '# system_prompt = "You are The Last..."',
        "",
        "# --- Records ---",
        "# no_history = false",
        "# no_event_log = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
