# Copyright (c) Syntropy Systems
"""Configuration management for flakefix."""
from __future__ import annotations

import re
import string
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import cast

import yaml

from flakefix.errors import ConfigError
from flakefix.models.report import Platform

DIR_NAME = ".flakefix"
CONFIG_FILE = "config.yaml"

TRACKERS = ("gh", "api")
REPEAT_MODES = ("loop", "native")


@dataclass
class FlakefixConfig:
    """Configuration for flakefix."""

    # Repository that receives the fix
    repository: str = "nodejs/node"

    # Where reliability reports are filed
    report_repository: str = "nodejs/reliability"
    report_label: str | None = None
    report_limit: int = 1

    # "gh" shells out to the GitHub CLI, "api" talks to the REST API
    tracker: str = "gh"
    api_url: str = "https://api.github.com"
    fetch_attempts: int = 3
    fetch_backoff: float = 2.0

    # Test runner argv; {test} is the test path, {repeat} the count in native mode
    test_command: list[str] = field(
        default_factory=lambda: ["python3", "tools/test.py", "{test}"]
    )
    repeat_mode: str = "loop"
    failure_pattern: str = r"\|-\s*(\d+)\]"
    repeat: int = 100
    verify_repeat: int = 1000

    # Timeouts in seconds
    reproduce_timeout: float = 3600.0
    tool_timeout: float = 600.0
    kill_grace_period: float = 10.0

    lint_command: list[str] = field(default_factory=lambda: ["make", "lint-js-fix"])
    lint_attempts: int = 3

    # External editing agent; {test}, {file} and {report} are substituted
    fix_command: list[str] | None = None

    test_file_template: str = "test/{test}.js"

    # Exact strings, or regexes prefixed with "re:"
    deny_list: list[str] = field(default_factory=list)
    skip_platforms: list[str] = field(default_factory=list)

    base_branch: str = "main"
    remote: str = "upstream"
    push_remote: str = "origin"
    fetch_before_branch: bool = True
    branch_prefix: str = "fix-flaky-"
    commit_subsystem: str = "test"

    max_candidates: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return the configuration as a plain dict for YAML output."""
        return asdict(self)


def _is_str_list(value: object) -> bool:
    return isinstance(value, list) and all(
        isinstance(item, str) for item in cast("list[object]", value)
    )


def _coerce(name: str, default: object, value: object) -> object:
    """Validate a YAML value against the type of the field's default."""
    optional_lists = ("fix_command",)
    optional_strs = ("report_label",)

    if value is None and name in optional_lists + optional_strs:
        return None
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(default, int) and not isinstance(default, bool):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif isinstance(default, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif isinstance(default, str) or name in optional_strs:
        if isinstance(value, str):
            return value
    elif isinstance(default, list) or name in optional_lists:
        if _is_str_list(value):
            return list(cast("list[str]", value))

    msg = f"Invalid value for '{name}' in {CONFIG_FILE}: {value!r}"
    raise ConfigError(msg)


def _check_template(template: str) -> None:
    try:
        fields_used = string.Formatter().parse(template)
        names = {name for _, name, _, _ in fields_used if name is not None}
    except ValueError as e:
        msg = f"Invalid test_file_template {template!r}: {e}"
        raise ConfigError(msg) from e
    if names - {"test"}:
        msg = f"test_file_template only supports {{test}}, got {template!r}"
        raise ConfigError(msg)


def _validate(config: FlakefixConfig) -> FlakefixConfig:
    if config.tracker not in TRACKERS:
        msg = f"tracker must be one of {', '.join(TRACKERS)}, got {config.tracker!r}"
        raise ConfigError(msg)
    if config.repeat_mode not in REPEAT_MODES:
        msg = (
            f"repeat_mode must be one of {', '.join(REPEAT_MODES)}, "
            f"got {config.repeat_mode!r}"
        )
        raise ConfigError(msg)
    if not config.test_command:
        msg = "test_command must not be empty"
        raise ConfigError(msg)
    if config.repeat_mode == "native" and not any(
        "{repeat}" in arg for arg in config.test_command
    ):
        msg = "test_command needs a {repeat} placeholder when repeat_mode is native"
        raise ConfigError(msg)
    for name in ("repeat", "verify_repeat", "fetch_attempts", "lint_attempts", "report_limit"):
        if cast("int", getattr(config, name)) < 1:
            msg = f"{name} must be at least 1"
            raise ConfigError(msg)
    if config.max_candidates < 0:
        msg = "max_candidates must not be negative"
        raise ConfigError(msg)
    try:
        pattern = re.compile(config.failure_pattern)
    except re.error as e:
        msg = f"Invalid failure_pattern {config.failure_pattern!r}: {e}"
        raise ConfigError(msg) from e
    if pattern.groups != 1:
        msg = "failure_pattern must have exactly one group capturing the failure count"
        raise ConfigError(msg)
    _check_template(config.test_file_template)
    known = {platform.value for platform in Platform}
    unknown = [name for name in config.skip_platforms if name not in known]
    if unknown:
        msg = f"Unknown skip_platforms: {', '.join(unknown)}"
        raise ConfigError(msg)
    return config


def find_flakefix_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .flakefix directory by walking up from start_path.

    Returns None if no .flakefix directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        flakefix_dir = current / DIR_NAME
        if flakefix_dir.is_dir():
            return flakefix_dir
        current = current.parent

    # Check root
    flakefix_dir = current / DIR_NAME
    if flakefix_dir.is_dir():
        return flakefix_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global flakefix config directory (~/.flakefix)."""
    return Path.home() / DIR_NAME


def load_config(flakefix_dir: Path | None = None) -> FlakefixConfig:
    """Load configuration from .flakefix/config.yaml or defaults.

    Looks for config in:
    1. Provided flakefix_dir
    2. Nearest .flakefix directory walking up
    3. ~/.flakefix/config.yaml
    4. Defaults
    """
    config = FlakefixConfig()

    config_path = None

    if flakefix_dir is not None:
        config_path = flakefix_dir / CONFIG_FILE
    else:
        found_dir = find_flakefix_dir()
        if found_dir is not None:
            config_path = found_dir / CONFIG_FILE
        else:
            global_config = get_global_config_dir() / CONFIG_FILE
            if global_config.exists():
                config_path = global_config

    if config_path is None or not config_path.exists():
        return _validate(config)

    try:
        with config_path.open() as f:
            loaded = cast("object", yaml.safe_load(f))
    except yaml.YAMLError as e:
        msg = f"Could not parse {config_path}: {e}"
        raise ConfigError(msg) from e

    if loaded is None:
        return _validate(config)
    if not isinstance(loaded, dict):
        msg = f"{config_path} must contain a mapping"
        raise ConfigError(msg)

    data = cast("dict[str, object]", loaded)
    for config_field in fields(config):
        if config_field.name not in data:
            continue
        default = cast("object", getattr(config, config_field.name))
        setattr(
            config,
            config_field.name,
            _coerce(config_field.name, default, data[config_field.name]),
        )

    return _validate(config)


def require_flakefix_dir() -> Path:
    """Get flakefix directory or raise an error if not found."""
    flakefix_dir = find_flakefix_dir()
    if flakefix_dir is None:
        msg = "No .flakefix directory found. Run 'flakefix init' first."
        raise ConfigError(msg)
    return flakefix_dir


def get_runs_dir(flakefix_dir: Path | None = None) -> Path:
    """Get the path to the runs directory."""
    if flakefix_dir is None:
        flakefix_dir = require_flakefix_dir()
    return flakefix_dir / "runs"


def get_workspace(flakefix_dir: Path) -> Path:
    """Get the checkout the .flakefix directory belongs to."""
    return flakefix_dir.parent
