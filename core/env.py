"""Typed environment lookups; invalid values are logged and replaced by the default."""

from __future__ import annotations

import os
from typing import Callable, Optional, TypeVar

from core.logging import get_logger

T = TypeVar("T", int, float)

logger = get_logger(__name__)

_TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
_FALSY = frozenset({"0", "false", "no", "n", "off"})


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_number(key: str, default: T, parse: Callable[[str], T], minimum: Optional[T]) -> T:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning("%s=%r is not a valid number; using %s.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%s is below the minimum %s; using %s.", key, value, minimum, default)
        return default
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    return _env_number(key, default, int, minimum)


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    return _env_number(key, default, float, minimum)


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    logger.warning("%s=%r is not a boolean; using %s.", key, raw, default)
    return default
