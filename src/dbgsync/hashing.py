from __future__ import annotations

from typing import BinaryIO

import xxhash

from dbgsync.cancellation import check_cancelled

HASH_CHUNK_SIZE = 1 << 20


def _render(digest: int) -> str:
    # Lower-case hex without zero padding, the form the store records.
    return format(digest, "x")


def hash_reader(reader: BinaryIO, *, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Hash everything left in ``reader``; the caller rewinds afterwards."""
    hasher = xxhash.xxh64()
    while True:
        check_cancelled()
        chunk = reader.read(chunk_size)
        if not chunk:
            break
        hasher.update(chunk)
    return _render(hasher.intdigest())


def hash_bytes(data: bytes) -> str:
    return _render(xxhash.xxh64(data).intdigest())
