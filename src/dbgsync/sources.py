"""Source archive builder.

Walks the DWARF compile units of one binary, collects the file names each
line-number program declares and packs the ones present on disk into a
zstd-compressed tar stream. Each path is considered once: archived or
reported missing, never both and never twice.
"""

from __future__ import annotations

import logging
import os
import posixpath
import tarfile
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator, Protocol

import typer
import zstandard
from elftools.common.exceptions import DWARFError, ELFError
from elftools.construct.core import ConstructError
from elftools.elf.elffile import ELFFile

from dbgsync.cancellation import cancellable_iter
from dbgsync.exceptions import InputError, MalformedDebugInfo

logger = logging.getLogger(__name__)


class UnitFiles(Protocol):
    def __iter__(self) -> Iterator[list[str]]: ...

    def close(self) -> None: ...


UnitFilesFn = Callable[[Path], UnitFiles]

# pyelftools reports some structural damage through plain asserts.
_DWARF_ERRORS = (
    DWARFError,
    ELFError,
    ConstructError,
    AssertionError,
    KeyError,
    IndexError,
    ValueError,
)


def _echo_err(message: str) -> None:
    typer.echo(message, err=True)


def _decode(value: object) -> str:
    if isinstance(value, bytes):
        return os.fsdecode(value)
    return str(value)


def _entry_value(entry: object, *names: str) -> object:
    for name in names:
        try:
            value = entry[name]
        except (KeyError, TypeError):
            continue
        if value is not None:
            return value
    return None


def _join(base: str, name: str) -> str:
    if not base or posixpath.isabs(name):
        return name
    return posixpath.join(base, name)


def line_program_file_names(lineprog, comp_dir: str = "") -> list[str]:
    """Full paths of the file entries of one line-number program.

    Directory index 0 is the compilation directory before DWARF 5 and the
    first directory table entry from DWARF 5 on. Relative directories are
    taken relative to the compilation directory.
    """
    header = lineprog.header
    version = int(header["version"])
    directories: list[str] = [comp_dir] if version < 5 else []
    for entry in header["include_directory"] or ():
        if isinstance(entry, (bytes, str)):
            directory = _decode(entry)
        else:
            directory = _decode(_entry_value(entry, "DW_LNCT_path") or b"")
        directories.append(_join(comp_dir, directory))

    names: list[str] = []
    for entry in header["file_entry"] or ():
        raw_name = _entry_value(entry, "name", "DW_LNCT_path")
        if raw_name is None:
            continue
        name = _decode(raw_name)
        dir_index = _entry_value(entry, "dir_index", "DW_LNCT_directory_index") or 0
        if not posixpath.isabs(name) and 0 <= int(dir_index) < len(directories):
            name = _join(directories[int(dir_index)], name)
        names.append(name)
    return names


def _compile_unit_names(dwarf, cu) -> list[str] | None:
    try:
        top = cu.get_top_DIE()
    except _DWARF_ERRORS as exc:
        raise MalformedDebugInfo(f"read DWARF entry: {exc}") from exc
    if top.tag != "DW_TAG_compile_unit":
        return None
    try:
        lineprog = dwarf.line_program_for_CU(cu)
        if lineprog is None:
            return None
        comp_dir_attr = top.attributes.get("DW_AT_comp_dir")
        comp_dir = _decode(comp_dir_attr.value) if comp_dir_attr is not None else ""
        return line_program_file_names(lineprog, comp_dir)
    except _DWARF_ERRORS as exc:
        raise MalformedDebugInfo(f"get line reader: {exc}") from exc


class CompileUnitFiles:
    """Line-table file names of one opened binary, one compile unit at a time.

    Iterating walks the compile units in traversal order; the binary is
    closed once the walk ends, fails or ``close()`` is called.
    """

    def __init__(self, stream: BinaryIO, dwarf) -> None:
        self._stream = stream
        self._dwarf = dwarf

    @property
    def closed(self) -> bool:
        return self._stream.closed

    def close(self) -> None:
        self._stream.close()

    def __iter__(self) -> Iterator[list[str]]:
        try:
            for cu in self._dwarf.iter_CUs():
                names = _compile_unit_names(self._dwarf, cu)
                if names is not None:
                    yield names
        except _DWARF_ERRORS as exc:
            raise MalformedDebugInfo(f"read DWARF entry: {exc}") from exc
        finally:
            self.close()


def iter_compile_unit_files(path: Path) -> CompileUnitFiles:
    """Open ``path`` now; walk its compile units lazily."""
    try:
        stream = path.open("rb")
    except OSError as exc:
        raise InputError(f"open elf: {exc.strerror or exc}: {str(path)!r}") from exc
    try:
        elf = ELFFile(stream)
        dwarf = elf.get_dwarf_info() if elf.has_dwarf_info() else None
    except ELFError as exc:
        stream.close()
        raise InputError(f"open elf: {exc}") from exc
    except (DWARFError, ConstructError, AssertionError) as exc:
        stream.close()
        raise MalformedDebugInfo(f"get dwarf data: {exc}") from exc
    if dwarf is None:
        stream.close()
        raise MalformedDebugInfo(f"get dwarf data: no DWARF information in {str(path)!r}")
    return CompileUnitFiles(stream, dwarf)


@dataclass
class SourceManifest:
    archived: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    _seen: set[str] = field(default_factory=set, repr=False)

    def seen(self, path: str) -> bool:
        return path in self._seen

    def mark_archived(self, path: str) -> None:
        self._seen.add(path)
        self.archived.append(path)

    def mark_missing(self, path: str) -> None:
        self._seen.add(path)
        self.missing.append(path)


def _add_source_file(archive: tarfile.TarFile, path: str) -> bool:
    try:
        source = open(path, "rb")
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise InputError(f"open file {path!r}: {exc.strerror or exc}") from exc
    with source:
        try:
            size = os.fstat(source.fileno()).st_size
        except OSError as exc:
            raise InputError(f"stat file {path!r}: {exc.strerror or exc}") from exc
        info = tarfile.TarInfo(name=path)
        info.size = size
        try:
            archive.addfile(info, source)
        except OSError as exc:
            raise InputError(f"copy file {path!r} to tar: {exc}") from exc
    return True


def write_source_entries(
    archive: tarfile.TarFile,
    unit_files: Iterable[list[str]],
    *,
    manifest: SourceManifest | None = None,
    echo_fn: Callable[[str], None] = _echo_err,
) -> SourceManifest:
    manifest = manifest if manifest is not None else SourceManifest()
    for names in cancellable_iter(unit_files):
        for name in names:
            if not name or manifest.seen(name):
                continue
            if _add_source_file(archive, name):
                manifest.mark_archived(name)
                logger.debug("archived %s", name)
            else:
                echo_fn(f"skipping file {name!r}: does not exist")
                manifest.mark_missing(name)
    return manifest


def build_source_archive(
    debuginfo_path: Path,
    out_path: Path,
    *,
    unit_files_fn: UnitFilesFn = iter_compile_unit_files,
    echo_fn: Callable[[str], None] = _echo_err,
) -> SourceManifest:
    """Write the sources referenced by ``debuginfo_path`` to ``out_path``.

    The debug information is opened before the output is created. On
    success the tar end-of-archive marker is written; when the walk fails
    the bytes already written stay on disk without it.
    """
    with closing(unit_files_fn(debuginfo_path)) as unit_files:
        try:
            handle = out_path.open("wb")
        except OSError as exc:
            raise InputError(
                f"create source archive {str(out_path)!r}: {exc.strerror or exc}"
            ) from exc
        with handle:
            with zstandard.ZstdCompressor().stream_writer(handle, closefd=False) as writer:
                with tarfile.open(fileobj=writer, mode="w|") as archive:
                    manifest = write_source_entries(archive, unit_files, echo_fn=echo_fn)
    logger.info(
        "wrote %s: %d file(s) archived, %d missing",
        out_path,
        len(manifest.archived),
        len(manifest.missing),
    )
    return manifest
