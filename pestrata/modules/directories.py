#!/usr/bin/env python
# -*- coding: utf-8 -*-
# @QK

"""Data directory resolution.

The raw directory table is read from the Optional Header bytes (pefile
normalizes counts and drops entries we need to see). Each entry with a
non-zero address is then resolved against the :class:`SectionModel`:

- ``file_offset``: where the directory starts in the file, or ``None``
- ``owning_section``: the section whose virtual range holds the address

Nothing in here raises on malformed data. Asking for a key that is not a
:class:`DataDirectoryKey` is a usage error and raises ``TypeError``.

@QK
"""

from __future__ import annotations

import enum
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from . import address
from .headers import DATA_DIRECTORY_OFFSETS, MagicNumber
from .sections import SectionModel, SectionRecord

logger = logging.getLogger(__name__)

DATA_DIR_ENTRY_SIZE = 8

_ENTRY = struct.Struct("<II")


class DataDirectoryKey(enum.Enum):
    """Directory kinds in table order; the value is the table index."""

    EXPORT = 0
    IMPORT = 1
    RESOURCE = 2
    EXCEPTION = 3
    CERTIFICATE = 4
    BASE_RELOCATION = 5
    DEBUG = 6
    ARCHITECTURE = 7
    GLOBAL_PTR = 8
    TLS = 9
    LOAD_CONFIG = 10
    BOUND_IMPORT = 11
    IAT = 12
    DELAY_IMPORT = 13
    CLR_RUNTIME_HEADER = 14
    RESERVED = 15

    @property
    def is_reserved(self) -> bool:
        # ARCHITECTURE is documented as "reserved, must be 0".
        return self in (DataDirectoryKey.ARCHITECTURE, DataDirectoryKey.RESERVED)


MAX_DATA_DIRECTORIES = len(DataDirectoryKey)


@dataclass(frozen=True)
class DataDirEntry:
    key: DataDirectoryKey
    virtual_address: int
    size: int
    table_entry_offset: int = 0


@dataclass(frozen=True)
class ResolvedDataDirEntry:
    key: DataDirectoryKey
    virtual_address: int
    size: int
    table_entry_offset: int
    file_offset: Optional[int]
    owning_section: Optional[SectionRecord]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key.name,
            "virtual_address": self.virtual_address,
            "size": self.size,
            "table_entry_offset": self.table_entry_offset,
            "file_offset": self.file_offset,
            "section": self.owning_section.number if self.owning_section else None,
        }


def read_raw_entries(
    data: bytes,
    optional_header_offset: int,
    magic: MagicNumber,
    number_of_rva_and_sizes: int,
) -> List[DataDirEntry]:
    """Read the directory table, skipping entries whose address is zero."""

    table_offset = DATA_DIRECTORY_OFFSETS.get(magic)
    if table_offset is None:
        logger.debug("No data directory layout for magic %s", magic)
        return []

    count = min(max(number_of_rva_and_sizes, 0), MAX_DATA_DIRECTORIES)
    base = optional_header_offset + table_offset
    entries: List[DataDirEntry] = []
    for key in list(DataDirectoryKey)[:count]:
        off = base + key.value * DATA_DIR_ENTRY_SIZE
        if off < 0 or off + DATA_DIR_ENTRY_SIZE > len(data):
            break
        va, size = _ENTRY.unpack_from(data, off)
        if va == 0:
            continue
        entries.append(DataDirEntry(key=key, virtual_address=va, size=size, table_entry_offset=off))
    return entries


def resolve_entry(entry: DataDirEntry, model: SectionModel) -> ResolvedDataDirEntry:
    """Map one raw entry onto the section model."""

    if entry.key is DataDirectoryKey.CERTIFICATE:
        # The security directory holds a file pointer, not an RVA.
        inside = entry.virtual_address < model.file_length
        return ResolvedDataDirEntry(
            key=entry.key,
            virtual_address=entry.virtual_address,
            size=entry.size,
            table_entry_offset=entry.table_entry_offset,
            file_offset=entry.virtual_address if inside else None,
            owning_section=None,
        )

    section = address.section_for_rva(model, entry.virtual_address)
    offset = address.rva_to_file_offset(model, entry.virtual_address)
    if offset is None:
        logger.debug("%s directory at RVA 0x%x has no owning section", entry.key.name, entry.virtual_address)
    return ResolvedDataDirEntry(
        key=entry.key,
        virtual_address=entry.virtual_address,
        size=entry.size,
        table_entry_offset=entry.table_entry_offset,
        file_offset=offset,
        owning_section=section,
    )


def resolve(entries: Iterable[DataDirEntry], model: SectionModel) -> List[ResolvedDataDirEntry]:
    return [resolve_entry(e, model) for e in entries if e.virtual_address != 0]


def is_fractionated(model: SectionModel, entry: ResolvedDataDirEntry) -> bool:
    """True if the directory runs past the end of its owning section."""
    if entry.owning_section is None or entry.size == 0:
        return False
    _start, end = address.virtual_range(model, entry.owning_section)
    return entry.virtual_address + entry.size > end


class DataDirectoryTable:
    """Resolved directories of one file, looked up by key."""

    def __init__(self, resolved: Iterable[ResolvedDataDirEntry], declared_count: int = MAX_DATA_DIRECTORIES) -> None:
        self._entries: Tuple[ResolvedDataDirEntry, ...] = tuple(resolved)
        self._by_key: Dict[DataDirectoryKey, ResolvedDataDirEntry] = {e.key: e for e in self._entries}
        self.declared_count = declared_count

    @classmethod
    def from_raw(
        cls,
        entries: Iterable[DataDirEntry],
        model: SectionModel,
        declared_count: int = MAX_DATA_DIRECTORIES,
    ) -> "DataDirectoryTable":
        return cls(resolve(entries, model), declared_count)

    def get(self, key: DataDirectoryKey) -> Optional[ResolvedDataDirEntry]:
        if not isinstance(key, DataDirectoryKey):
            raise TypeError(f"not a data directory key: {key!r}")
        return self._by_key.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __iter__(self) -> Iterator[ResolvedDataDirEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "declared_count": self.declared_count,
            "entries": [e.to_dict() for e in self._entries],
        }
