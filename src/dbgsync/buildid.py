"""Build identifier resolution for ELF files.

Resolution order:

1. the Go build ID note, when a ``.note.go.buildid`` section exists;
2. the GNU build ID note (``NT_GNU_BUILD_ID``) from any note section;
3. a hash of the ``.text`` section contents.

The first two are hex-encoded note descriptors. Notes are parsed from raw
section bytes rather than through pyelftools' note decoder, which rewrites
descriptors depending on the note owner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Protocol

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from dbgsync.exceptions import IdentityError
from dbgsync.hashing import hash_bytes

logger = logging.getLogger(__name__)

GO_BUILD_ID_SECTION = ".note.go.buildid"
GNU_NOTE_OWNER = b"GNU"
GO_NOTE_OWNER = b"Go"
NT_GNU_BUILD_ID = 3
NT_GO_BUILD_ID = 4


class BuildIdResolver(Protocol):
    def __call__(self, path: str) -> str: ...


@dataclass(frozen=True)
class ElfNote:
    owner: bytes
    type: int
    desc: bytes


def _align4(value: int) -> int:
    return (value + 3) & ~3


def iter_notes(data: bytes, *, little_endian: bool = True) -> Iterator[ElfNote]:
    byteorder = "little" if little_endian else "big"
    offset = 0
    while offset + 12 <= len(data):
        namesz = int.from_bytes(data[offset : offset + 4], byteorder)
        descsz = int.from_bytes(data[offset + 4 : offset + 8], byteorder)
        note_type = int.from_bytes(data[offset + 8 : offset + 12], byteorder)
        name_off = offset + 12
        desc_off = name_off + _align4(namesz)
        desc_end = desc_off + descsz
        if desc_end > len(data):
            return
        owner = data[name_off : name_off + namesz].rstrip(b"\x00")
        yield ElfNote(owner=owner, type=note_type, desc=data[desc_off:desc_end])
        offset = desc_off + _align4(descsz)


def _note_section_data(elf: ELFFile) -> Iterator[tuple[str, bytes]]:
    for section in elf.iter_sections():
        if section["sh_type"] == "SHT_NOTE":
            yield section.name, section.data()


def go_build_id(elf: ELFFile) -> str:
    section = elf.get_section_by_name(GO_BUILD_ID_SECTION)
    if section is None:
        return ""
    for note in iter_notes(section.data(), little_endian=elf.little_endian):
        if note.owner == GO_NOTE_OWNER and note.type == NT_GO_BUILD_ID and note.desc:
            return note.desc.hex()
    return ""


def gnu_build_id(elf: ELFFile) -> str:
    for _name, data in _note_section_data(elf):
        for note in iter_notes(data, little_endian=elf.little_endian):
            if note.owner == GNU_NOTE_OWNER and note.type == NT_GNU_BUILD_ID and note.desc:
                return note.desc.hex()
    return ""


def text_hash_build_id(elf: ELFFile) -> str:
    section = elf.get_section_by_name(".text")
    if section is None or section["sh_type"] == "SHT_NOBITS":
        return ""
    data = section.data()
    if not data:
        return ""
    return hash_bytes(data)


def build_id_from_elf(elf: ELFFile) -> str:
    strategies: tuple[tuple[str, Callable[[ELFFile], str]], ...] = (
        ("go", go_build_id),
        ("gnu", gnu_build_id),
        ("text-hash", text_hash_build_id),
    )
    for label, strategy in strategies:
        build_id = strategy(elf)
        if build_id:
            logger.debug("resolved %s build ID %s", label, build_id)
            return build_id
    return ""


def resolve_build_id(path: str) -> str:
    """Resolve the build identifier of the ELF file at ``path``."""
    try:
        with Path(path).open("rb") as stream:
            elf = ELFFile(stream)
            build_id = build_id_from_elf(elf)
    except FileNotFoundError as exc:
        raise IdentityError(f"get Build ID for {path!r}: file does not exist") from exc
    except (ELFError, OSError) as exc:
        raise IdentityError(f"get Build ID for {path!r}: {exc}") from exc
    if not build_id:
        raise IdentityError(f"get Build ID for {path!r}: no build ID note or .text section")
    return build_id
