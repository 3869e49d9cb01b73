"""Environment-variable configuration helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def load_env_file(path: str | None, override: bool = False) -> bool:
    """Load KEY=value pairs from a .env-style file into os.environ.

    Blank lines and ``#`` comments are skipped, an ``export `` prefix is
    accepted, and matching single/double quotes around values are removed.
    Returns True when at least one key was read.
    """

    if not path:
        return False

    env_path = Path(path)
    if not env_path.is_file():
        return False

    loaded_any = False
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue

        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]

        if override or key not in os.environ:
            os.environ[key] = value
        loaded_any = True

    return loaded_any


def first_env(keys: Iterable[str]) -> Optional[str]:
    """Return the first non-empty value among candidate env keys."""

    for key in keys:
        value = os.getenv(key)
        if value:
            return value
    return None


def env_float(keys: Iterable[str], default: float, allow_zero: bool = False) -> float:
    """Parse the first set env key as a positive float, else ``default``."""

    raw = first_env(keys)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return float(default)
    if value > 0 or (allow_zero and value == 0):
        return value
    return float(default)


def env_int(keys: Iterable[str], default: int, allow_zero: bool = False) -> int:
    """Parse the first set env key as a positive int, else ``default``."""

    raw = first_env(keys)
    if raw is None:
        return int(default)
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return int(default)
    if value > 0 or (allow_zero and value == 0):
        return value
    return int(default)


def env_bool(keys: Iterable[str], default: bool) -> bool:
    """Parse the first set env key as a boolean flag."""

    raw = first_env(keys)
    if raw is None:
        return bool(default)
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return bool(default)
