"""Upload orchestration.

Each artifact moves through a fixed sequence of protocol steps against the
store. Uploads are strictly sequential and fail fast: the first error ends
the run and remaining artifacts are not attempted. A later invocation with
the same build ID resumes from whatever state the store recorded.
"""

from __future__ import annotations

import logging
import urllib.request
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Sequence

import grpc
import typer

from dbgsync.buildid import BuildIdResolver, resolve_build_id
from dbgsync.cancellation import cancellable_iter
from dbgsync.exceptions import (
    DebuginfoError,
    IdentityError,
    InputError,
    ProtocolError,
    UploadError,
)
from dbgsync.extract import extract_all
from dbgsync.hashing import hash_reader
from dbgsync.invariants import never
from dbgsync.model import Artifact, ArtifactKind, ExtractionJob, ExtractionMode
from dbgsync.reducer import Reducer
from dbgsync.schema import UploadInstructions, UploadSettings, UploadStrategy
from dbgsync.scratch import ScratchBuffer, scratch_content
from dbgsync.signed_url import upload_via_signed_url
from dbgsync.store_client import DebuginfoStore

logger = logging.getLogger(__name__)


class UploadState(str, Enum):
    COLLECTED = "collected"
    DEDUP_CHECKED = "dedup-checked"
    SKIPPED_BY_SERVER = "skipped-by-server"
    STOPPED_FOR_DRY_RUN = "stopped-for-dry-run"
    HASHED = "hashed"
    INITIATED = "initiated"
    TRANSMITTED = "transmitted"
    FINISHED = "finished"


_TRANSITIONS: dict[UploadState, frozenset[UploadState]] = {
    UploadState.COLLECTED: frozenset({UploadState.DEDUP_CHECKED}),
    UploadState.DEDUP_CHECKED: frozenset(
        {
            UploadState.SKIPPED_BY_SERVER,
            UploadState.STOPPED_FOR_DRY_RUN,
            UploadState.HASHED,
        }
    ),
    UploadState.HASHED: frozenset({UploadState.INITIATED}),
    UploadState.INITIATED: frozenset({UploadState.TRANSMITTED}),
    UploadState.TRANSMITTED: frozenset({UploadState.FINISHED}),
    UploadState.SKIPPED_BY_SERVER: frozenset(),
    UploadState.STOPPED_FOR_DRY_RUN: frozenset(),
    UploadState.FINISHED: frozenset(),
}


@dataclass
class UploadOutcome:
    path: str
    build_id: str
    state: UploadState = UploadState.COLLECTED
    reason: str = ""
    upload_id: str = ""
    hash: str = ""
    history: list[UploadState] = field(default_factory=lambda: [UploadState.COLLECTED])

    def advance(self, state: UploadState) -> None:
        if state not in _TRANSITIONS[self.state]:
            never(
                "invalid upload state transition",
                path=self.path,
                current=self.state.value,
                requested=state.value,
            )
        self.state = state
        self.history.append(state)


def _echo_err(message: str) -> None:
    typer.echo(message, err=True)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, grpc.RpcError) and hasattr(exc, "code") and hasattr(exc, "details"):
        code = exc.code()
        return f"rpc error: code = {getattr(code, 'name', code)} desc = {exc.details()}"
    return str(exc)


@contextmanager
def protocol_step(description: str) -> Iterator[None]:
    """Wrap one step's failure into an ``UploadError`` naming the artifact.

    Cancellation and invariant violations pass through unchanged.
    """
    try:
        yield
    except UploadError:
        raise
    except (DebuginfoError, grpc.RpcError, OSError) as exc:
        raise UploadError(f"{description}: {_describe(exc)}") from exc


def wants_extraction(settings: UploadSettings) -> bool:
    return settings.type is ArtifactKind.DEBUGINFO and not settings.no_extract


def _artifact_build_id(
    path: str,
    settings: UploadSettings,
    resolver: BuildIdResolver,
) -> str:
    if settings.build_id:
        return settings.build_id
    if settings.type is ArtifactKind.SOURCES:
        raise IdentityError(
            f"get Build ID for {path!r}: a build ID must be given for sources uploads"
        )
    return resolver(path)


def _open_artifact(stack: ExitStack, path: str):
    try:
        return stack.enter_context(Path(path).open("rb"))
    except OSError as exc:
        raise InputError(f"open file {path!r}: {exc.strerror or exc}") from exc


def collect_artifacts(
    paths: Sequence[str],
    settings: UploadSettings,
    *,
    stack: ExitStack,
    reducer: Reducer,
    resolver: BuildIdResolver = resolve_build_id,
    echo_fn: Callable[[str], None] = _echo_err,
) -> list[Artifact]:
    """Resolve build IDs and back every artifact with readable content.

    Nothing here talks to the store, so any failure (including a zero-size
    artifact) aborts before server-side state is created.
    """
    identified = [
        (path, _artifact_build_id(path, settings, resolver)) for path in cancellable_iter(paths)
    ]
    artifacts: list[Artifact] = []

    if wants_extraction(settings):
        jobs = [
            ExtractionJob(
                source=Path(path),
                destination=ScratchBuffer(),
                mode=ExtractionMode.KEEP_ONLY_DEBUG,
            )
            for path, _build_id in identified
        ]
        extract_all(jobs, reducer, echo_fn=echo_fn)
        for (path, build_id), job in zip(identified, jobs):
            buffer = scratch_content(job.destination, path=path)
            if buffer.size <= 0:
                raise InputError(
                    f"extracted debug information from {path!r} is empty, "
                    "but must not be empty"
                )
            buffer.seek_start()
            artifacts.append(
                Artifact(
                    path=path,
                    content=buffer,
                    build_id=build_id,
                    size=buffer.size,
                    kind=settings.type,
                )
            )
        return artifacts

    if not identified:
        raise InputError("failed to find actionable files")
    for path, build_id in identified:
        handle = _open_artifact(stack, path)
        try:
            size = Path(path).stat().st_size
        except OSError as exc:
            raise InputError(f"stat file {path!r}: {exc.strerror or exc}") from exc
        if size <= 0:
            raise InputError(f"file {path!r} is empty, but must not be empty")
        artifacts.append(
            Artifact(path=path, content=handle, build_id=build_id, size=size, kind=settings.type)
        )
    return artifacts


def dispatch_upload(
    instructions: UploadInstructions,
    artifact: Artifact,
    store: DebuginfoStore,
    *,
    urlopen_fn: Callable[..., object] = urllib.request.urlopen,
) -> None:
    strategy = instructions.strategy
    if strategy == UploadStrategy.GRPC:
        logger.debug("uploading %s via gRPC stream", artifact.path)
        store.upload(instructions, artifact.content)
    elif strategy == UploadStrategy.SIGNED_URL:
        if not instructions.signed_url:
            raise ProtocolError("signed URL upload strategy without a signed URL")
        logger.debug("uploading %s via signed URL", artifact.path)
        upload_via_signed_url(
            instructions.signed_url,
            artifact.content,
            artifact.size,
            urlopen_fn=urlopen_fn,
        )
    elif strategy == UploadStrategy.UNSPECIFIED:
        raise ProtocolError("no upload strategy specified")
    else:
        raise ProtocolError(f"unknown upload strategy: {int(strategy)}")


def upload_artifact(
    artifact: Artifact,
    store: DebuginfoStore,
    *,
    force: bool = False,
    no_initiate: bool = False,
    echo_fn: Callable[[str], None] = typer.echo,
    urlopen_fn: Callable[..., object] = urllib.request.urlopen,
) -> UploadOutcome:
    outcome = UploadOutcome(path=artifact.path, build_id=artifact.build_id)
    subject = f"{artifact.path!r} with Build ID {artifact.build_id!r}"

    with protocol_step(f"check if upload should be initiated for {subject}"):
        decision = store.should_initiate_upload(
            artifact.build_id, force=force, kind=artifact.kind
        )
    outcome.advance(UploadState.DEDUP_CHECKED)
    outcome.reason = decision.reason
    if not decision.should_upload:
        echo_fn(
            f"Skipping upload of {subject} as the store instructed not to: {decision.reason}"
        )
        outcome.advance(UploadState.SKIPPED_BY_SERVER)
        return outcome
    if no_initiate:
        echo_fn(
            f"Not initiating upload of {subject} as requested, "
            f"but would have requested that next, because: {decision.reason}"
        )
        outcome.advance(UploadState.STOPPED_FOR_DRY_RUN)
        return outcome

    if artifact.size <= 0:
        raise InputError(f"file {artifact.path!r} is empty, but must not be empty")
    with protocol_step(f"hash {artifact.path!r}"):
        artifact.rewind()
        outcome.hash = hash_reader(artifact.content)
        artifact.rewind()
    outcome.advance(UploadState.HASHED)

    with protocol_step(f"initiate upload for {subject}"):
        instructions = store.initiate_upload(
            artifact.build_id,
            hash=outcome.hash,
            size=artifact.size,
            force=force,
            kind=artifact.kind,
        )
    outcome.upload_id = instructions.upload_id
    outcome.advance(UploadState.INITIATED)
    logger.debug(
        "upload instructions: build_id=%s upload_id=%s strategy=%s signed_url=%s kind=%s",
        instructions.build_id,
        instructions.upload_id,
        instructions.strategy_name,
        instructions.signed_url,
        instructions.kind.value,
    )

    with protocol_step(f"upload {subject}"):
        dispatch_upload(instructions, artifact, store, urlopen_fn=urlopen_fn)
    outcome.advance(UploadState.TRANSMITTED)

    with protocol_step(f"mark upload finished for {subject}"):
        store.mark_upload_finished(
            artifact.build_id, instructions.upload_id, kind=artifact.kind
        )
    outcome.advance(UploadState.FINISHED)
    logger.info("uploaded %s (build ID %s)", artifact.path, artifact.build_id)
    return outcome


def upload_all(
    artifacts: Sequence[Artifact],
    store: DebuginfoStore,
    *,
    force: bool = False,
    no_initiate: bool = False,
    echo_fn: Callable[[str], None] = typer.echo,
    urlopen_fn: Callable[..., object] = urllib.request.urlopen,
) -> list[UploadOutcome]:
    outcomes: list[UploadOutcome] = []
    for artifact in cancellable_iter(artifacts):
        outcomes.append(
            upload_artifact(
                artifact,
                store,
                force=force,
                no_initiate=no_initiate,
                echo_fn=echo_fn,
                urlopen_fn=urlopen_fn,
            )
        )
    return outcomes


def run_upload(
    paths: Sequence[str],
    settings: UploadSettings,
    *,
    store: DebuginfoStore,
    reducer: Reducer,
    resolver: BuildIdResolver = resolve_build_id,
    echo_fn: Callable[[str], None] = typer.echo,
    warn_fn: Callable[[str], None] = _echo_err,
    urlopen_fn: Callable[..., object] = urllib.request.urlopen,
) -> list[UploadOutcome]:
    with ExitStack() as stack:
        artifacts = collect_artifacts(
            paths,
            settings,
            stack=stack,
            reducer=reducer,
            resolver=resolver,
            echo_fn=warn_fn,
        )
        return upload_all(
            artifacts,
            store,
            force=settings.force,
            no_initiate=settings.no_initiate,
            echo_fn=echo_fn,
            urlopen_fn=urlopen_fn,
        )
