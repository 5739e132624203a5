"""Config loading and initialization."""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from typing import Any, Mapping

import yaml

from clientstack.config.schema import AppConfig, parse_config
from clientstack.core.envfile import read_env_file


DEFAULT_CONFIG_PATH = Path(__file__).with_name("defaults.yml")
_ENV_TOKEN_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")


def load_config(path: Path, *, env_file: Path | None = None) -> AppConfig:
    """Read YAML config, resolving ``${VAR:-default}`` tokens.

    Process environment wins over ``env_file`` values, which win over the
    inline defaults.
    """
    if not path.exists():
        raise FileNotFoundError(f"config file does not exist: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config file must contain a mapping: {path}")
    variables: dict[str, str] = {}
    if env_file is not None:
        variables.update(read_env_file(env_file))
    variables.update(os.environ)
    return parse_config(_interpolate(raw, variables))


def initialize_config(path: Path, force: bool = False) -> Path:
    if path.exists() and not force:
        raise FileExistsError(f"config already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(DEFAULT_CONFIG_PATH, path)
    return path


def _interpolate(value: Any, variables: Mapping[str, str]) -> Any:
    if isinstance(value, dict):
        return {key: _interpolate(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [_interpolate(item, variables) for item in value]
    if isinstance(value, str) and "${" in value:
        return _coerce_scalar(_interpolate_string(value, variables), original=value)
    return value


def _coerce_scalar(resolved: str, *, original: str) -> Any:
    # A value that was entirely one token gets YAML typing back, so ports stay ints.
    if _ENV_TOKEN_RE.fullmatch(original.strip()) is None:
        return resolved
    try:
        typed = yaml.safe_load(resolved)
    except yaml.YAMLError:
        return resolved
    return typed if isinstance(typed, (int, float, bool)) else resolved


def _interpolate_string(value: str, variables: Mapping[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        default = match.group(2)
        resolved = variables.get(name)
        if resolved is not None:
            return resolved
        if default is not None:
            return default
        token = match.group(0)
        raise ValueError(f"missing required environment variable '{name}' referenced by '{token}'")

    return _ENV_TOKEN_RE.sub(_replace, value)
