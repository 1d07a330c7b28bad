"""Configuration file loading and merging for skein.

Reads TOML config from ~/.config/skein/config.toml (global) and
<base_dir>/skein.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError  # noqa: F401 (re-export for convenience)
from .tools import ApprovalMode

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "max_turns": int,
    "approval_mode": str,
    "compress_after_messages": int,
    "compress_after_tokens": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "no_instructions": bool,
    "allowed_commands": list,
    "no_history": bool,
    "color": bool,
    "quiet": bool,
    "editor": str,
}

_LIST_OF_STR_KEYS = {"allowed_commands"}

_POSITIVE_INT_KEYS = {"max_turns", "max_output_tokens", "compress_after_tokens"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": None,
    "temperature": None,
    "top_p": None,
    "seed": None,
    "max_turns": 100,
    "approval_mode": ApprovalMode.DEFAULT.value,
    "compress_after_messages": 25,
    "compress_after_tokens": None,
    "system_prompt": None,
    "no_system_prompt": False,
    "no_instructions": False,
    "allowed_commands": None,
    "no_history": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "editor": None,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "skein"
    return Path.home() / ".config" / "skein"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types, value ranges and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")

    if "compress_after_messages" in config and config["compress_after_messages"] < 0:
        raise ConfigError(f"{source}: 'compress_after_messages' must not be negative")

    if "approval_mode" in config:
        modes = [m.value for m in ApprovalMode]
        if config["approval_mode"] not in modes:
            raise ConfigError(
                f"{source}: 'approval_mode' must be one of {', '.join(modes)}, "
                f"got {config['approval_mode']!r}"
            )

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
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

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path | str) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "skein.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}

    # Could conflict across files
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, checks if the argparse dest is still _UNSET and, if
    so, applies the config value. Remaining _UNSET sentinels are then
    replaced with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if key == "allowed_commands":
            value = ",".join(value)
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    no_history -> history and quiet -> verbose are inverted; color is a
    terminal concern and is dropped.
    """
    kwargs = {}
    _INVERT_KEYS = {
        "no_history": "history",
        "quiet": "verbose",
    }

    for key, value in config.items():
        if key == "color":
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# skein configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/skein.toml' if project else '~/.config/skein/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "openrouter" | "xai" | "generic"',
        '# model = "grok-3-latest"',
        '# api_key = "xai-..."             # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        "# top_p = 1.0",
        "# seed = 42",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 100",
        '# approval_mode = "default"       # "default" | "auto_edit" | "yolo"',
        "# compress_after_messages = 25    # 0 disables the message-count trigger",
        "# compress_after_tokens = 100000",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# no_instructions = false",
        "",
        "# --- Tools ---",
        '# allowed_commands = ["ls", "git"]  # run without asking',
        '# editor = "vim"                    # used to modify tool arguments',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "# no_history = false",
        "",
    ]
    return "\n".join(lines)
