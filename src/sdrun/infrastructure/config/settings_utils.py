"""Environment parsing helpers for ``SDRUN_*`` variables."""

from __future__ import annotations

import os
from typing import Iterable


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _raw(name: str) -> str | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return str(value).strip()


def _clamp(value, minimum, maximum):
    if minimum is not None and value < minimum:
        return minimum
    if maximum is not None and value > maximum:
        return maximum
    return value


def parse_bool(value: object, *, default: bool = False) -> bool:
    """Parse a loose boolean value; anything unrecognised yields ``default``."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    raw = str(value).strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def env_str(name: str, default: str = "") -> str:
    value = _raw(name)
    return default if value is None else value


def env_optional(name: str) -> str | None:
    """Unset and empty both mean "not configured"."""
    return _raw(name) or None


def env_bool(name: str, default: bool = False) -> bool:
    return parse_bool(_raw(name), default=default)


def env_choice(name: str, default: str, choices: Iterable[str]) -> str:
    """Lower-cased value if it is one of ``choices``, else ``default``."""
    value = _raw(name)
    if value is None:
        return default
    value = value.lower()
    return value if value in set(choices) else default


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    value = _raw(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return _clamp(parsed, minimum, maximum)


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    value = _raw(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return _clamp(parsed, minimum, maximum)
