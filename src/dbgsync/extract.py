from __future__ import annotations

import logging
import shutil
from contextlib import ExitStack
from pathlib import Path
from typing import Callable, Sequence

import typer

from dbgsync.buildid import BuildIdResolver, resolve_build_id
from dbgsync.cancellation import cancellable_iter
from dbgsync.exceptions import (
    DebuginfoError,
    ExtractionFailed,
    ExtractionFailure,
    InputError,
)
from dbgsync.model import ExtractionJob, ExtractionMode
from dbgsync.reducer import Reducer

logger = logging.getLogger(__name__)

DEBUGINFO_SUFFIX = ".debuginfo"


def _echo_err(message: str) -> None:
    typer.echo(message, err=True)


def extract_all(
    jobs: Sequence[ExtractionJob],
    reducer: Reducer,
    *,
    echo_fn: Callable[[str], None] = _echo_err,
) -> None:
    """Run every job, isolating failures.

    A failing job is reported and recorded; the remaining jobs still run.
    Raises ``ExtractionFailed`` listing every failure once all jobs are done.
    """
    if not jobs:
        raise InputError("failed to find actionable files")
    failures: list[ExtractionFailure] = []
    for job in cancellable_iter(jobs):
        try:
            with job.source.open("rb") as src:
                reducer.reduce(job.mode, job.destination, src)
        except (OSError, DebuginfoError) as exc:
            echo_fn(f"failed to extract debug information: {job.source}, {exc}")
            failures.append(ExtractionFailure(source=str(job.source), error=exc))
            continue
        logger.debug("extracted %s (%s)", job.source, job.mode.value)
    if failures:
        raise ExtractionFailed(failures)


def recreate_output_dir(output_dir: Path) -> None:
    # Destructive: previous extraction results are removed, not merged.
    try:
        if output_dir.exists():
            shutil.rmtree(output_dir)
        output_dir.mkdir(parents=True, mode=0o755)
    except OSError as exc:
        raise InputError(f"failed to prepare output dir {output_dir}: {exc}") from exc


def debuginfo_output_path(output_dir: Path, build_id: str) -> Path:
    return output_dir / f"{build_id}{DEBUGINFO_SUFFIX}"


def run_extract(
    paths: Sequence[Path],
    *,
    output_dir: Path,
    mode: ExtractionMode,
    reducer: Reducer,
    resolver: BuildIdResolver = resolve_build_id,
    echo_fn: Callable[[str], None] = _echo_err,
) -> list[Path]:
    """Extract each input into ``<output_dir>/<build-id>.debuginfo``.

    Identifier resolution is fatal for the whole run and happens before any
    reducer work; reducer failures are isolated per file.
    """
    recreate_output_dir(output_dir)
    outputs: list[Path] = []
    with ExitStack() as stack:
        jobs: list[ExtractionJob] = []
        for path in cancellable_iter(paths):
            if not path.is_file():
                raise InputError(f"open file {str(path)!r}: no such file")
            build_id = resolver(str(path))
            output = debuginfo_output_path(output_dir, build_id)
            try:
                destination = stack.enter_context(output.open("w+b"))
            except OSError as exc:
                raise InputError(f"create output file {output}: {exc}") from exc
            jobs.append(ExtractionJob(source=path, destination=destination, mode=mode))
            outputs.append(output)
        extract_all(jobs, reducer, echo_fn=echo_fn)
    return outputs
