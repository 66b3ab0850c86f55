from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ContextManager, List, NoReturn, Optional, Sequence, TypeVar

import typer
from pydantic import BaseModel, ValidationError

from dbgsync.buildid import BuildIdResolver, resolve_build_id
from dbgsync.config import command_defaults, merge_payload
from dbgsync.exceptions import DebuginfoError, IdentityError, OperationCancelled
from dbgsync.extract import run_extract
from dbgsync.lifecycle import run_operation
from dbgsync.model import ArtifactKind, ExtractionMode
from dbgsync.reducer import ObjcopyReducer, Reducer
from dbgsync.schema import ExtractSettings, SourceSettings, UploadSettings
from dbgsync.sources import SourceManifest, UnitFilesFn, build_source_archive, iter_compile_unit_files
from dbgsync.store_client import DebuginfoStore, store_session
from dbgsync.upload import UploadOutcome, run_upload

app = typer.Typer(add_completion=False)
logger = logging.getLogger(__name__)

BEARER_TOKEN_ENV = "DBGSYNC_BEARER_TOKEN"

_LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_Settings = TypeVar("_Settings", bound=BaseModel)
RunOperation = Callable[..., Any]
StoreSessionFactory = Callable[[UploadSettings], ContextManager[DebuginfoStore]]


@dataclass(frozen=True)
class CliState:
    config_path: Path | None = None


def configure_logging(level_name: str) -> None:
    level = _LOG_LEVELS.get(level_name.strip().lower())
    if level is None:
        raise typer.BadParameter(
            "Use one of error, warn, info, debug.", param_hint="--log-level"
        )
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _config_path(ctx: typer.Context) -> Path | None:
    state = ctx.obj
    if isinstance(state, CliState):
        return state.config_path
    return None


def _flag(value: bool) -> bool | None:
    # Unset flags stay None so configured defaults are not overridden.
    return True if value else None


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "settings"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def validated_settings(model: type[_Settings], payload: dict[str, Any]) -> _Settings:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise typer.BadParameter(_validation_message(exc)) from exc


def _fail(exc: BaseException) -> NoReturn:
    typer.echo(str(exc), err=True)
    raise typer.Exit(code=1)


def build_reducer(settings: ExtractSettings) -> ObjcopyReducer:
    return ObjcopyReducer(
        objcopy=settings.objcopy,
        compress_dwarf_sections=settings.compress_dwarf_sections,
    )


def upload_reducer() -> ObjcopyReducer:
    # Uploads always extract with the defaults; [extract] only configures `extract`.
    return build_reducer(ExtractSettings())


def run_upload_command(
    paths: Sequence[Path],
    settings: UploadSettings,
    *,
    reducer: Reducer,
    store_session_fn: StoreSessionFactory = store_session,
    resolver: BuildIdResolver = resolve_build_id,
    run_operation_fn: RunOperation = run_operation,
) -> list[UploadOutcome]:
    def _execute() -> list[UploadOutcome]:
        with store_session_fn(settings) as store:
            return run_upload(
                [str(path) for path in paths],
                settings,
                store=store,
                reducer=reducer,
                resolver=resolver,
            )

    return run_operation_fn("upload", _execute)


def run_extract_command(
    paths: Sequence[Path],
    settings: ExtractSettings,
    *,
    reducer: Reducer | None = None,
    resolver: BuildIdResolver = resolve_build_id,
    run_operation_fn: RunOperation = run_operation,
) -> list[Path]:
    active_reducer = reducer if reducer is not None else build_reducer(settings)
    return run_operation_fn(
        "extract",
        lambda: run_extract(
            list(paths),
            output_dir=settings.output_dir,
            mode=settings.mode,
            reducer=active_reducer,
            resolver=resolver,
        ),
    )


def run_buildid_command(
    path: Path,
    *,
    resolver: BuildIdResolver = resolve_build_id,
    run_operation_fn: RunOperation = run_operation,
) -> str:
    def _execute() -> str:
        build_id = resolver(str(path))
        if not build_id:
            raise IdentityError(f"empty Build ID for {str(path)!r}")
        return build_id

    return run_operation_fn("buildid", _execute)


def run_source_command(
    debuginfo_path: Path,
    settings: SourceSettings,
    *,
    unit_files_fn: UnitFilesFn = iter_compile_unit_files,
    run_operation_fn: RunOperation = run_operation,
) -> SourceManifest:
    return run_operation_fn(
        "source",
        lambda: build_source_archive(
            debuginfo_path,
            settings.out_path,
            unit_files_fn=unit_files_fn,
        ),
    )


@app.callback()
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("info", "--log-level", help="error, warn, info or debug."),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to dbgsync.toml."),
) -> None:
    """Extract, identify and upload debug information."""
    configure_logging(log_level)
    ctx.obj = CliState(config_path=config)


@app.command()
def upload(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., help="Paths to upload."),
    store_address: Optional[str] = typer.Option(None, "--store-address"),
    bearer_token: Optional[str] = typer.Option(
        None, "--bearer-token", envvar=BEARER_TOKEN_ENV
    ),
    bearer_token_file: Optional[Path] = typer.Option(None, "--bearer-token-file"),
    insecure: bool = typer.Option(False, "--insecure", help="Use a plaintext connection."),
    insecure_skip_verify: bool = typer.Option(
        False, "--insecure-skip-verify", help="Trust the certificate the store presents."
    ),
    no_extract: bool = typer.Option(False, "--no-extract", help="Upload files as they are."),
    no_initiate: bool = typer.Option(
        False, "--no-initiate", help="Stop after the store's upload check."
    ),
    force: bool = typer.Option(False, "--force", help="Upload even if the store has it."),
    artifact_type: Optional[ArtifactKind] = typer.Option(None, "--type", case_sensitive=False),
    build_id: Optional[str] = typer.Option(None, "--build-id"),
) -> None:
    """Upload debug information to the store."""
    if bearer_token and bearer_token_file is not None:
        raise typer.BadParameter("Use --bearer-token or --bearer-token-file, not both.")
    payload = {
        "store_address": store_address,
        "bearer_token": bearer_token,
        "bearer_token_file": bearer_token_file,
        "insecure": _flag(insecure),
        "insecure_skip_verify": _flag(insecure_skip_verify),
        "no_extract": _flag(no_extract),
        "no_initiate": _flag(no_initiate),
        "force": _flag(force),
        "type": artifact_type,
        "build_id": build_id,
    }
    settings = validated_settings(
        UploadSettings,
        merge_payload(payload, command_defaults("upload", config_path=_config_path(ctx))),
    )
    try:
        run_upload_command(paths, settings, reducer=upload_reducer())
    except (DebuginfoError, OperationCancelled) as exc:
        _fail(exc)


@app.command()
def extract(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., help="Binaries to extract from."),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", help="Defaults to ./out."),
    mode: Optional[ExtractionMode] = typer.Option(None, "--mode", case_sensitive=False),
    compress_dwarf_sections: bool = typer.Option(False, "--compress-dwarf-sections"),
    objcopy: Optional[str] = typer.Option(None, "--objcopy", help="objcopy executable."),
) -> None:
    """Write <output-dir>/<build-id>.debuginfo for every input."""
    payload = {
        "output_dir": output_dir,
        "mode": mode,
        "compress_dwarf_sections": _flag(compress_dwarf_sections),
        "objcopy": objcopy,
    }
    settings = validated_settings(
        ExtractSettings,
        merge_payload(payload, command_defaults("extract", config_path=_config_path(ctx))),
    )
    try:
        outputs = run_extract_command(paths, settings)
    except (DebuginfoError, OperationCancelled) as exc:
        _fail(exc)
    for output in outputs:
        logger.info("wrote %s", output)


@app.command()
def buildid(
    path: Path = typer.Argument(..., help="Binary to identify."),
) -> None:
    """Print the build ID of a binary."""
    try:
        build_id = run_buildid_command(path)
    except (DebuginfoError, OperationCancelled) as exc:
        _fail(exc)
    typer.echo(build_id, nl=False)


@app.command()
def source(
    ctx: typer.Context,
    debuginfo_path: Path = typer.Argument(..., help="Binary with DWARF debug information."),
    out_path: Optional[Path] = typer.Argument(None, help="Defaults to source.tar.zstd."),
) -> None:
    """Archive the source files referenced by a binary's line tables."""
    settings = validated_settings(
        SourceSettings,
        merge_payload(
            {"out_path": out_path}, command_defaults("source", config_path=_config_path(ctx))
        ),
    )
    try:
        run_source_command(debuginfo_path, settings)
    except (DebuginfoError, OperationCancelled) as exc:
        _fail(exc)
