from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO


class ArtifactKind(str, Enum):
    DEBUGINFO = "debuginfo"
    EXECUTABLE = "executable"
    SOURCES = "sources"


class ExtractionMode(str, Enum):
    KEEP_ONLY_DEBUG = "keep-only-debug"
    STRIP_DEBUG = "strip-debug"


@dataclass
class Artifact:
    """One candidate upload.

    ``build_id`` is the store-facing dedup key; ``content`` is either the
    opened source file or the scratch buffer the reducer wrote into.
    """

    path: str
    content: BinaryIO
    build_id: str = ""
    size: int = 0
    kind: ArtifactKind = ArtifactKind.DEBUGINFO

    def rewind(self) -> None:
        self.content.seek(0)


@dataclass(frozen=True)
class ExtractionJob:
    source: Path
    destination: BinaryIO
    mode: ExtractionMode = ExtractionMode.KEEP_ONLY_DEBUG
