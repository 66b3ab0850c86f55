"""Run one top-level operation as cancellable work.

The operation runs in a worker thread next to a signal watcher. Whichever
finishes first interrupts the other, both share one cancellation token, and
the first error is the outcome of the run.
"""

from __future__ import annotations

import contextvars
import logging
import queue
import signal
import threading
from dataclasses import dataclass
from types import FrameType
from typing import Any, Callable, Sequence

from dbgsync.cancellation import CancelToken, cancel_scope
from dbgsync.exceptions import SignalReceived, UnknownOperation

logger = logging.getLogger(__name__)

OPERATIONS = frozenset({"upload", "extract", "buildid", "source"})

_POLL_INTERVAL_SECONDS = 0.1


def _default_signals() -> tuple[int, ...]:
    return tuple(
        getattr(signal, name) for name in ("SIGINT", "SIGTERM") if hasattr(signal, name)
    )


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


@dataclass(frozen=True)
class _Actor:
    execute: Callable[[], Any]
    interrupt: Callable[[BaseException | None], None]


_ActorResult = tuple[int, Any, "BaseException | None"]


class RunGroup:
    """A set of actors that start together and stop together."""

    def __init__(self) -> None:
        self._actors: list[_Actor] = []

    def add(
        self,
        execute: Callable[[], Any],
        interrupt: Callable[[BaseException | None], None],
    ) -> None:
        self._actors.append(_Actor(execute=execute, interrupt=interrupt))

    @staticmethod
    def _run_actor(index: int, actor: _Actor, results: "queue.Queue[_ActorResult]") -> None:
        try:
            value = actor.execute()
        except BaseException as exc:
            results.put((index, None, exc))
            return
        results.put((index, value, None))

    @staticmethod
    def _next_result(
        results: "queue.Queue[_ActorResult]", poll_interval: float
    ) -> _ActorResult:
        # Poll so the main thread keeps running signal handlers.
        while True:
            try:
                return results.get(timeout=poll_interval)
            except queue.Empty:
                continue

    def run(self, *, poll_interval: float = _POLL_INTERVAL_SECONDS) -> None:
        if not self._actors:
            return
        results: queue.Queue[_ActorResult] = queue.Queue()
        threads = []
        for index, actor in enumerate(self._actors):
            context = contextvars.copy_context()
            thread = threading.Thread(
                target=context.run,
                args=(self._run_actor, index, actor, results),
                name=f"dbgsync-actor-{index}",
                daemon=True,
            )
            threads.append(thread)
            thread.start()

        _index, _value, first_error = self._next_result(results, poll_interval)
        for actor in self._actors:
            actor.interrupt(first_error)
        for _ in range(len(self._actors) - 1):
            self._next_result(results, poll_interval)
        for thread in threads:
            thread.join()
        if first_error is not None:
            raise first_error


class SignalWatcher:
    """Turn SIGINT/SIGTERM into cancellation of the shared token."""

    def __init__(
        self,
        token: CancelToken,
        *,
        signals: Sequence[int] | None = None,
        signal_module: Any = signal,
    ) -> None:
        self._token = token
        self._signals = tuple(signals) if signals is not None else _default_signals()
        self._signal_module = signal_module
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self.received: SignalReceived | None = None

    def install(self) -> Callable[[], None]:
        """Install handlers and return a function that restores the previous ones.

        Handlers can only be installed from the main thread; elsewhere this is
        a no-op and cancellation comes only from the operation itself.
        """
        if threading.current_thread() is not threading.main_thread():
            return lambda: None
        signal_fn = getattr(self._signal_module, "signal", None)
        getsignal_fn = getattr(self._signal_module, "getsignal", None)
        if not callable(signal_fn):
            return lambda: None
        previous: list[tuple[int, Any]] = []
        for signum in self._signals:
            previous_handler = getsignal_fn(signum) if callable(getsignal_fn) else None
            signal_fn(signum, self.handle)
            previous.append((signum, previous_handler))

        def _restore() -> None:
            for signum, previous_handler in previous:
                if previous_handler is not None:
                    signal_fn(signum, previous_handler)

        return _restore

    def handle(self, signum: int, _frame: FrameType | None = None) -> None:
        name = signal_name(signum)
        with self._lock:
            if self.received is None:
                self.received = SignalReceived(signum, name)
        logger.info("received %s, cancelling", name)
        self._token.cancel(f"received signal {name}")
        self._stop.set()

    def execute(self) -> None:
        self._stop.wait()
        if self.received is not None:
            raise self.received

    def interrupt(self, _error: BaseException | None) -> None:
        self._stop.set()


def run_operation(
    name: str,
    execute: Callable[[], Any],
    *,
    token: CancelToken | None = None,
    signal_module: Any = signal,
    signals: Sequence[int] | None = None,
    poll_interval: float = _POLL_INTERVAL_SECONDS,
) -> Any:
    """Run ``execute`` as operation ``name`` and return its result.

    Unknown operation names are rejected before anything starts.
    """
    if name not in OPERATIONS:
        raise UnknownOperation(f"unknown command: {name}")
    cancel_token = token if token is not None else CancelToken()
    outcome: dict[str, Any] = {}

    def _work() -> None:
        outcome["value"] = execute()

    def _stop_work(_error: BaseException | None) -> None:
        cancel_token.cancel(f"{name} finished")

    with cancel_scope(cancel_token):
        watcher = SignalWatcher(cancel_token, signals=signals, signal_module=signal_module)
        restore = watcher.install()
        try:
            group = RunGroup()
            group.add(_work, _stop_work)
            group.add(watcher.execute, watcher.interrupt)
            group.run(poll_interval=poll_interval)
        finally:
            restore()
    return outcome.get("value")
