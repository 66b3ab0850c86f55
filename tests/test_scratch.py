from __future__ import annotations

import io

import pytest

from dbgsync.exceptions import NeverThrown
from dbgsync.hashing import hash_bytes, hash_reader
from dbgsync.scratch import ScratchBuffer, scratch_content


def test_write_seek_back_patch_then_read_twice() -> None:
    buffer = ScratchBuffer()
    buffer.write(b"HDR0body")
    buffer.seek(3)
    buffer.write(b"1")
    buffer.seek(0, io.SEEK_END)

    assert buffer.size == 8
    buffer.seek_start()
    digest = hash_reader(buffer)
    buffer.seek_start()

    assert buffer.read() == b"HDR1body"
    assert digest == hash_bytes(b"HDR1body")


def test_scratch_content_accepts_scratch_buffer() -> None:
    buffer = ScratchBuffer(b"data")

    assert scratch_content(buffer, path="a.out") is buffer


def test_scratch_content_rejects_other_backings() -> None:
    with pytest.raises(NeverThrown) as excinfo:
        scratch_content(io.BytesIO(b"data"), path="a.out")

    assert excinfo.value.env["path"] == "a.out"
    assert excinfo.value.env["actual_type"] == "BytesIO"
