#!/usr/bin/env python
# -*- coding: utf-8 -*-
# @QK

"""Section table model.

The section table is decoded straight from the file bytes rather than taken
from pefile, because pefile drops or repairs entries of hostile files and the
structural checks need to see exactly what the loader sees:

- entries are read in file order (never sorted by address)
- the declared count is capped at :data:`SECTION_TABLE_CEILING` and truncated to the last
  complete 40-byte entry inside the file
- names stay raw bytes; a printable form is derived on demand

:class:`SectionModel` is immutable. Alignment mode can be flipped with
:meth:`SectionModel.with_alignment_mode`, which returns a new model.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, replace
from functools import cached_property
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .headers import (
    IMAGE_SCN_CNT_UNINITIALIZED_DATA,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_WRITE,
    SECTION_CHARACTERISTICS,
    SECTION_ENTRY_SIZE,
    HeaderKey,
    PEHeaders,
    flags_set,
)

logger = logging.getLogger(__name__)

# Entries loaded at most. NumberOfSections itself is kept as declared_count.
SECTION_TABLE_CEILING = 2048

# Raw pointers are rounded down to this outside low alignment mode.
RAW_POINTER_ALIGNMENT = 0x200

_ENTRY = struct.Struct("<8sIIIIIIHHI")


@dataclass(frozen=True)
class SectionRecord:
    """One section table entry, exactly as declared in the file."""

    number: int
    name: bytes
    virtual_address: int
    virtual_size: int
    raw_pointer: int
    raw_size: int
    characteristics: int
    pointer_to_relocations: int = 0
    pointer_to_line_numbers: int = 0
    number_of_relocations: int = 0
    number_of_line_numbers: int = 0
    offset: int = 0

    @property
    def display_name(self) -> str:
        """Printable name: NUL padding stripped, other non-printables escaped."""
        out = []
        for b in self.name.rstrip(b"\x00"):
            if 0x20 <= b < 0x7F:
                out.append(chr(b))
            else:
                out.append(f"\\x{b:02x}")
        return "".join(out)

    @property
    def is_writeable(self) -> bool:
        return bool(self.characteristics & IMAGE_SCN_MEM_WRITE)

    @property
    def is_executable(self) -> bool:
        return bool(self.characteristics & IMAGE_SCN_MEM_EXECUTE)

    @property
    def is_bss(self) -> bool:
        return bool(self.characteristics & IMAGE_SCN_CNT_UNINITIALIZED_DATA)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "name": self.display_name,
            "virtual_address": self.virtual_address,
            "virtual_size": self.virtual_size,
            "pointer_to_raw_data": self.raw_pointer,
            "size_of_raw_data": self.raw_size,
            "characteristics": self.characteristics,
            "flags": [f.name for f in flags_set(self.characteristics, SECTION_CHARACTERISTICS)],
            "offset": self.offset,
        }

    def __str__(self) -> str:
        return f"section {self.number} ({self.display_name})"


@dataclass(frozen=True)
class SectionModel:
    """Ordered, immutable collection of section records.

    The alignment constants are copied from the headers so the address layer
    can work from the model alone.
    """

    sections: Tuple[SectionRecord, ...] = ()
    low_alignment_mode: bool = False
    file_alignment: int = 0x200
    section_alignment: int = 0x1000
    size_of_headers: int = 0
    file_length: int = 0
    declared_count: int = 0
    table_offset: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "sections", tuple(self.sections))

    def __len__(self) -> int:
        return len(self.sections)

    def __iter__(self) -> Iterator[SectionRecord]:
        return iter(self.sections)

    def __getitem__(self, idx: int) -> SectionRecord:
        return self.sections[idx]

    @property
    def truncated(self) -> bool:
        return self.declared_count > len(self.sections)

    @property
    def table_size(self) -> int:
        return len(self.sections) * SECTION_ENTRY_SIZE

    @cached_property
    def raw_starts(self) -> Tuple[int, ...]:
        """Sorted aligned raw pointers of the sections that have a raw size."""
        if self.low_alignment_mode:
            starts = (s.raw_pointer for s in self.sections if s.raw_size)
        else:
            starts = (s.raw_pointer & ~(RAW_POINTER_ALIGNMENT - 1) for s in self.sections if s.raw_size)
        return tuple(sorted(starts))

    def by_number(self, number: int) -> SectionRecord:
        """Return the section with the 1-based ordinal *number*."""
        if not 1 <= number <= len(self.sections):
            raise IndexError(f"no section number {number} (have {len(self.sections)})")
        return self.sections[number - 1]

    def by_name(self, name: str) -> List[SectionRecord]:
        return [s for s in self.sections if s.display_name == name]

    def with_alignment_mode(self, low_alignment_mode: bool) -> "SectionModel":
        return replace(self, low_alignment_mode=bool(low_alignment_mode))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": len(self.sections),
            "declared_count": self.declared_count,
            "truncated": self.truncated,
            "low_alignment_mode": self.low_alignment_mode,
            "details": [s.to_dict() for s in self.sections],
        }


def parse_section_entry(buf: bytes, number: int, offset: int) -> SectionRecord:
    """Decode one 40-byte section table entry."""
    (
        name,
        vsize,
        va,
        raw_size,
        raw_ptr,
        ptr_reloc,
        ptr_lines,
        nr_reloc,
        nr_lines,
        chars,
    ) = _ENTRY.unpack_from(buf, 0)
    return SectionRecord(
        number=number,
        name=bytes(name),
        virtual_address=va,
        virtual_size=vsize,
        raw_pointer=raw_ptr,
        raw_size=raw_size,
        characteristics=chars,
        pointer_to_relocations=ptr_reloc,
        pointer_to_line_numbers=ptr_lines,
        number_of_relocations=nr_reloc,
        number_of_line_numbers=nr_lines,
        offset=offset,
    )


def load_section_model(data: bytes, headers: PEHeaders, *, low_alignment_mode: Optional[bool] = None) -> SectionModel:
    """Read the section table of *data* as described by *headers*.

    Never raises for malformed tables: a table that runs past the end of the
    file yields the readable prefix.
    """

    declared = headers.get(HeaderKey.NUMBER_OF_SECTIONS)
    table_offset = headers.section_table_offset
    file_length = len(data)

    wanted = min(declared, SECTION_TABLE_CEILING)
    records: List[SectionRecord] = []
    for i in range(wanted):
        off = table_offset + i * SECTION_ENTRY_SIZE
        end = off + SECTION_ENTRY_SIZE
        if off < 0 or end > file_length:
            break
        records.append(parse_section_entry(data[off:end], i + 1, off))

    if len(records) < declared:
        logger.warning(
            "Section table truncated: %d of %d entries readable at offset 0x%x",
            len(records),
            declared,
            table_offset,
        )

    if low_alignment_mode is None:
        low_alignment_mode = headers.low_alignment_mode

    return SectionModel(
        sections=tuple(records),
        low_alignment_mode=low_alignment_mode,
        file_alignment=headers.get(HeaderKey.FILE_ALIGNMENT),
        section_alignment=headers.get(HeaderKey.SECTION_ALIGNMENT),
        size_of_headers=headers.get(HeaderKey.SIZE_OF_HEADERS),
        file_length=file_length,
        declared_count=declared,
        table_offset=table_offset,
    )
