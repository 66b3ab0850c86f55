from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Protocol

from dbgsync.cancellation import check_cancelled
from dbgsync.exceptions import ReducerError
from dbgsync.model import ExtractionMode

logger = logging.getLogger(__name__)

_MODE_FLAGS: dict[ExtractionMode, tuple[str, ...]] = {
    ExtractionMode.KEEP_ONLY_DEBUG: ("--only-keep-debug",),
    ExtractionMode.STRIP_DEBUG: ("--strip-debug",),
}


class Reducer(Protocol):
    def reduce(self, mode: ExtractionMode, dst: BinaryIO, src: BinaryIO) -> None:
        """Write the reduced form of ``src`` into the seekable ``dst``."""


@dataclass(frozen=True)
class ObjcopyReducer:
    """Reduce binaries by shelling out to ``objcopy``.

    objcopy works on paths, so the source stream is staged into a private
    temporary directory and the output is copied into ``dst`` afterwards.
    """

    objcopy: str = "objcopy"
    compress_dwarf_sections: bool = False
    run_fn: Callable[..., subprocess.CompletedProcess] = field(default=subprocess.run)

    def command(self, mode: ExtractionMode, src_path: Path, dst_path: Path) -> list[str]:
        argv = [self.objcopy, *_MODE_FLAGS[mode]]
        if self.compress_dwarf_sections:
            argv.append("--compress-debug-sections=zlib")
        argv.extend([str(src_path), str(dst_path)])
        return argv

    def reduce(self, mode: ExtractionMode, dst: BinaryIO, src: BinaryIO) -> None:
        check_cancelled()
        with tempfile.TemporaryDirectory(prefix="dbgsync-") as workdir:
            src_path = Path(workdir) / "input"
            dst_path = Path(workdir) / "output"
            src.seek(0)
            with src_path.open("wb") as staged:
                shutil.copyfileobj(src, staged)
            argv = self.command(mode, src_path, dst_path)
            logger.debug("running %s", " ".join(argv))
            try:
                self.run_fn(argv, check=True, capture_output=True)
            except FileNotFoundError as exc:
                raise ReducerError(f"{self.objcopy} not found") from exc
            except subprocess.CalledProcessError as exc:
                stderr = exc.stderr
                if isinstance(stderr, bytes):
                    stderr = stderr.decode("utf-8", errors="replace")
                detail = (stderr or "").strip() or f"exit status {exc.returncode}"
                raise ReducerError(f"{mode.value} failed: {detail}") from exc
            with dst_path.open("rb") as produced:
                shutil.copyfileobj(produced, dst)
