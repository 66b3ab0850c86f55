"""Invariant markers."""

from __future__ import annotations

from typing import NoReturn, TypeVar

from dbgsync.exceptions import NeverThrown

T = TypeVar("T")


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    The optional env payload is attached to the raised exception so the
    violating values show up in the report.
    """
    if env:
        detail = ", ".join(f"{key}={value!r}" for key, value in env.items())
        message = f"{reason or 'never() reached'} ({detail})"
    else:
        message = reason or "never() reached"
    raise NeverThrown(message, env=env)


def require_instance(value: object, expected: type[T], *, reason: str = "", **env: object) -> T:
    if not isinstance(value, expected):
        never(
            reason or f"expected {expected.__name__}",
            actual_type=type(value).__name__,
            **env,
        )
    return value
