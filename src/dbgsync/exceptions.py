"""Error taxonomy for dbgsync operations."""

from __future__ import annotations

from dataclasses import dataclass


class DebuginfoError(RuntimeError):
    """Root of every error an operation reports to the user."""


class InputError(DebuginfoError):
    """Missing or invalid local input: absent files, empty inputs, zero-size artifacts."""


class IdentityError(DebuginfoError):
    """A build identifier could not be resolved for a path."""


class ProtocolError(DebuginfoError):
    """The store asked for something the client cannot do."""


class ReducerError(DebuginfoError):
    """The reducer failed to rewrite a binary."""


class MalformedDebugInfo(DebuginfoError):
    """The debug information entry stream could not be read."""


class UploadError(DebuginfoError):
    """A step of the sequential upload protocol failed; the run stops."""


class UnknownOperation(DebuginfoError):
    """The requested top-level operation is not registered."""


@dataclass(frozen=True)
class ExtractionFailure:
    source: str
    error: BaseException

    def describe(self) -> str:
        return f"{self.source}: {self.error}"


class ExtractionFailed(DebuginfoError):
    """One or more extraction jobs failed; siblings still ran."""

    def __init__(self, failures: list[ExtractionFailure]):
        self.failures = list(failures)
        detail = "; ".join(failure.describe() for failure in self.failures)
        super().__init__(
            f"failed to extract debug information from {len(self.failures)} file(s): {detail}"
        )


class OperationCancelled(RuntimeError):
    """Raised at a cooperative check once the shared cancellation token fired."""


class SignalReceived(OperationCancelled):
    def __init__(self, signum: int, name: str):
        super().__init__(f"received signal {name}")
        self.signum = signum
        self.signal_name = name


class NeverThrown(RuntimeError):
    """Sentinel exception for code paths that must be unreachable.

    Raising this means an internal invariant was violated; it is a defect in
    dbgsync, not a user error.
    """

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})
