from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import TypeVar

from dbgsync.exceptions import OperationCancelled
from dbgsync.invariants import never

_LoopItem = TypeVar("_LoopItem")


@dataclass
class CancelToken:
    """Shared, cooperative cancellation signal for one invocation.

    Cancelling is idempotent; the first reason wins.
    """

    _event: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    reason: str = ""

    def cancel(self, reason: str = "operation cancelled") -> None:
        with self._lock:
            if not self._event.is_set():
                self.reason = reason
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def check(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "operation cancelled")


_cancel_var: ContextVar[CancelToken | None] = ContextVar("dbgsync_cancel_token", default=None)


def set_cancel_token(token: CancelToken) -> Token[CancelToken | None]:
    return _cancel_var.set(token)


def reset_cancel_token(token: Token[CancelToken | None]) -> None:
    _cancel_var.reset(token)


def get_cancel_token() -> CancelToken:
    token = _cancel_var.get()
    if token is None:
        never("cancel token missing")
    return token


@contextmanager
def cancel_scope(token: CancelToken):
    if token is None:
        never("cancel token carrier missing")
    var_token = set_cancel_token(token)
    try:
        yield token
    finally:
        reset_cancel_token(var_token)


def check_cancelled() -> None:
    get_cancel_token().check()


def cancellable_iter(values: Iterable[_LoopItem]) -> Iterator[_LoopItem]:
    for value in values:
        check_cancelled()
        yield value
