from __future__ import annotations

from pathlib import Path

import pytest

from dbgsync.buildid import ElfNote, iter_notes, resolve_build_id
from dbgsync.exceptions import IdentityError
from dbgsync.hashing import hash_bytes
from tests.fakes import SHT_NOTE, SHT_PROGBITS, elf_note, minimal_elf


def test_iter_notes_reads_aligned_entries() -> None:
    data = elf_note(b"GNU", 3, b"\xde\xad\xbe\xef") + elf_note(b"Go", 4, b"abc")

    notes = list(iter_notes(data))

    assert notes == [
        ElfNote(owner=b"GNU", type=3, desc=b"\xde\xad\xbe\xef"),
        ElfNote(owner=b"Go", type=4, desc=b"abc"),
    ]


def test_iter_notes_honours_big_endian() -> None:
    data = elf_note(b"GNU", 3, b"\x01\x02", byteorder=">")

    assert list(iter_notes(data, little_endian=False)) == [
        ElfNote(owner=b"GNU", type=3, desc=b"\x01\x02")
    ]


def test_iter_notes_stops_at_truncated_entry() -> None:
    data = elf_note(b"GNU", 3, b"\x01\x02\x03\x04")

    assert list(iter_notes(data[:-2])) == []


def test_resolves_gnu_build_id_note(tmp_path: Path) -> None:
    desc = bytes(range(20))
    path = tmp_path / "binary"
    path.write_bytes(minimal_elf([(".note.gnu.build-id", SHT_NOTE, elf_note(b"GNU", 3, desc))]))

    assert resolve_build_id(str(path)) == desc.hex()


def test_go_build_id_note_takes_precedence(tmp_path: Path) -> None:
    path = tmp_path / "gobinary"
    path.write_bytes(
        minimal_elf(
            [
                (".note.go.buildid", SHT_NOTE, elf_note(b"Go", 4, b"main/abc")),
                (".note.gnu.build-id", SHT_NOTE, elf_note(b"GNU", 3, b"\x01" * 20)),
            ]
        )
    )

    assert resolve_build_id(str(path)) == b"main/abc".hex()


def test_falls_back_to_text_hash(tmp_path: Path) -> None:
    text = b"\x90" * 32
    path = tmp_path / "stripped"
    path.write_bytes(minimal_elf([(".text", SHT_PROGBITS, text)]))

    assert resolve_build_id(str(path)) == hash_bytes(text)


def test_non_elf_input_is_an_identity_error(tmp_path: Path) -> None:
    path = tmp_path / "notes.txt"
    path.write_text("not a binary\n")

    with pytest.raises(IdentityError) as excinfo:
        resolve_build_id(str(path))

    assert "notes.txt" in str(excinfo.value)


def test_missing_input_is_an_identity_error(tmp_path: Path) -> None:
    with pytest.raises(IdentityError) as excinfo:
        resolve_build_id(str(tmp_path / "missing"))

    assert "file does not exist" in str(excinfo.value)
