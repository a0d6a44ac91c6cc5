from __future__ import annotations

import os
from typing import Callable, Iterable, List, Optional, TypeVar

T = TypeVar("T")

_BOOLS = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}


def _raw(name: str) -> Optional[str]:
    """Stripped value of ``name``; unset and blank both read as None."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _parsed(name: str, default: T, parse: Callable[[str], T], label: str) -> T:
    value = _raw(name)
    if value is None:
        return default
    try:
        return parse(value)
    except (KeyError, ValueError):
        raise ValueError(f"Invalid {label} for {name!r}: {os.getenv(name)!r}") from None


def env_bool(name: str, *, default: bool = False) -> bool:
    """Boolean flag; ``1/0``, ``true/false``, ``yes/no`` and ``on/off`` in any case."""
    return _parsed(name, default, lambda v: _BOOLS[v.lower()], "boolean")


def env_int(name: str, *, default: int) -> int:
    return _parsed(name, default, int, "integer")


def env_float(name: str, *, default: float) -> float:
    return _parsed(name, default, float, "number")


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    """Delimited list; blank items are dropped.

    Only an unset variable falls back to ``default``. Setting it to an empty
    string yields an empty list, which is how a deployment clears a default.
    """
    value = os.getenv(name)
    if value is None:
        return list(default or [])
    return [item.strip() for item in value.split(separator) if item.strip()]


__all__ = ["env_bool", "env_int", "env_float", "env_list"]
