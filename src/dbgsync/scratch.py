from __future__ import annotations

import io
from typing import BinaryIO

from dbgsync.invariants import require_instance


class ScratchBuffer(io.BytesIO):
    """In-memory, rewindable byte sink used in place of a temporary file.

    The reducer writes (and may seek back to patch headers), then the
    buffer is rewound once and read twice: for hashing and for transmission.
    """

    def seek_start(self) -> None:
        self.seek(0, io.SEEK_SET)

    @property
    def size(self) -> int:
        return self.getbuffer().nbytes


def scratch_content(content: BinaryIO, *, path: str) -> ScratchBuffer:
    # Extraction only ever backs artifact content with a ScratchBuffer; any
    # other content type here means a new backing was added without updating
    # the size bookkeeping below.
    return require_instance(
        content,
        ScratchBuffer,
        reason="extracted artifact is not backed by a scratch buffer",
        path=path,
    )
