from __future__ import annotations

import contextvars

import pytest

from dbgsync.cancellation import (
    CancelToken,
    cancel_scope,
    cancellable_iter,
    check_cancelled,
    get_cancel_token,
)
from dbgsync.exceptions import NeverThrown, OperationCancelled


def test_first_cancel_reason_wins() -> None:
    token = CancelToken()

    token.cancel("received signal SIGINT")
    token.cancel("upload finished")

    assert token.cancelled
    assert token.reason == "received signal SIGINT"
    with pytest.raises(OperationCancelled) as excinfo:
        token.check()
    assert str(excinfo.value) == "received signal SIGINT"


def test_scope_sets_and_restores_token(cancel_token) -> None:
    inner = CancelToken()

    with cancel_scope(inner):
        assert get_cancel_token() is inner

    assert get_cancel_token() is cancel_token


def test_missing_token_is_an_invariant_violation() -> None:
    with pytest.raises(NeverThrown):
        contextvars.Context().run(get_cancel_token)


def test_cancellable_iter_stops_once_cancelled(cancel_token) -> None:
    seen: list[int] = []

    with pytest.raises(OperationCancelled):
        for value in cancellable_iter([1, 2, 3]):
            seen.append(value)
            if value == 2:
                cancel_token.cancel()

    assert seen == [1, 2]


def test_check_cancelled_passes_while_live() -> None:
    check_cancelled()
