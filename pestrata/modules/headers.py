#!/usr/bin/env python
# -*- coding: utf-8 -*-
# @QK

"""Decoded PE header values and static specification tables.

Raw field extraction is done by :mod:`pefile`. This module turns the decoded
structures into a small immutable accessor (:class:`PEHeaders`) so that the
structural layers never touch pefile objects directly, and it holds the
constant lookup tables from the PE/COFF specification:

- characteristic flags (file, DLL, section) with reserved/deprecated markers
- per-magic layout constants (data directory table offset, header sizes)

It also recomputes the Rich header checksum, which pefile only decodes.

The tables are module-level constants built once at import time and never
mutated.

@QK
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

MSDOS_HEADER_SIZE = 0x40
PE_SIGNATURE_SIZE = 4
COFF_HEADER_SIZE = 20
SECTION_ENTRY_SIZE = 40


class NotPEFileError(ValueError):
    """The input cannot be decoded as a PE file at all.

    Raised for files shorter than the MSDOS header, missing MZ/PE signatures
    or an ``e_lfanew`` pointing outside the file.
    """


class HeaderKey(enum.Enum):
    """Header fields consumed by the structural layers."""

    # MSDOS header
    E_MAGIC = "e_magic"
    E_LFANEW = "e_lfanew"
    E_RES = "e_res"
    E_RES2 = "e_res2"

    # COFF file header
    MACHINE = "Machine"
    NUMBER_OF_SECTIONS = "NumberOfSections"
    TIME_DATE_STAMP = "TimeDateStamp"
    POINTER_TO_SYMBOL_TABLE = "PointerToSymbolTable"
    NUMBER_OF_SYMBOLS = "NumberOfSymbols"
    SIZE_OF_OPTIONAL_HEADER = "SizeOfOptionalHeader"
    CHARACTERISTICS = "Characteristics"

    # Optional header
    MAGIC = "Magic"
    SIZE_OF_CODE = "SizeOfCode"
    SIZE_OF_INITIALIZED_DATA = "SizeOfInitializedData"
    SIZE_OF_UNINITIALIZED_DATA = "SizeOfUninitializedData"
    ADDRESS_OF_ENTRY_POINT = "AddressOfEntryPoint"
    BASE_OF_CODE = "BaseOfCode"
    BASE_OF_DATA = "BaseOfData"
    IMAGE_BASE = "ImageBase"
    SECTION_ALIGNMENT = "SectionAlignment"
    FILE_ALIGNMENT = "FileAlignment"
    WIN32_VERSION_VALUE = "Reserved1"
    SIZE_OF_IMAGE = "SizeOfImage"
    SIZE_OF_HEADERS = "SizeOfHeaders"
    CHECKSUM = "CheckSum"
    SUBSYSTEM = "Subsystem"
    DLL_CHARACTERISTICS = "DllCharacteristics"
    LOADER_FLAGS = "LoaderFlags"
    NUMBER_OF_RVA_AND_SIZES = "NumberOfRvaAndSizes"


_DOS_KEYS = (HeaderKey.E_MAGIC, HeaderKey.E_LFANEW, HeaderKey.E_RES, HeaderKey.E_RES2)
_COFF_KEYS = (
    HeaderKey.MACHINE,
    HeaderKey.NUMBER_OF_SECTIONS,
    HeaderKey.TIME_DATE_STAMP,
    HeaderKey.POINTER_TO_SYMBOL_TABLE,
    HeaderKey.NUMBER_OF_SYMBOLS,
    HeaderKey.SIZE_OF_OPTIONAL_HEADER,
    HeaderKey.CHARACTERISTICS,
)


class MagicNumber(enum.Enum):
    PE32 = 0x10B
    PE32_PLUS = 0x20B
    ROM = 0x107
    UNKNOWN = 0x0

    @classmethod
    def for_value(cls, value: int) -> "MagicNumber":
        for m in cls:
            if m.value == value and m is not cls.UNKNOWN:
                return m
        return cls.UNKNOWN


# Offset of the data directory table relative to the Optional Header start.
DATA_DIRECTORY_OFFSETS: Mapping[MagicNumber, int] = MappingProxyType(
    {MagicNumber.PE32: 96, MagicNumber.PE32_PLUS: 112}
)

# (min, max) Optional Header sizes: without / with all 16 data directories.
OPTIONAL_HEADER_SIZES: Mapping[MagicNumber, Tuple[int, int]] = MappingProxyType(
    {MagicNumber.PE32: (96, 224), MagicNumber.PE32_PLUS: (112, 240)}
)

DEFAULT_IMAGE_BASES = (0x00400000, 0x10000000, 0x00010000, 0x140000000, 0x180000000)


# ---------------------------------------------------------------------------
# Characteristic flags
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Flag:
    """One bit of a characteristics bitmask."""

    name: str
    value: int
    description: str
    reserved: bool = False
    deprecated: bool = False


FILE_CHARACTERISTICS: Tuple[Flag, ...] = (
    Flag("IMAGE_FILE_RELOCS_STRIPPED", 0x1, "Relocation information stripped"),
    Flag("IMAGE_FILE_EXECUTABLE_IMAGE", 0x2, "Image only"),
    Flag("IMAGE_FILE_LINE_NUMS_STRIPPED", 0x4, "COFF line numbers have been removed", deprecated=True),
    Flag("IMAGE_FILE_LOCAL_SYMS_STRIPPED", 0x8, "COFF symbol table entries for local symbols have been removed", deprecated=True),
    Flag("IMAGE_FILE_AGGRESSIVE_WS_TRIM", 0x10, "Aggressively trim working set", deprecated=True),
    Flag("IMAGE_FILE_LARGE_ADDRESS_AWARE", 0x20, "Application can handle > 2 GB addresses"),
    Flag("RESERVED_40", 0x40, "Reserved for future use", reserved=True),
    Flag("IMAGE_FILE_BYTES_REVERSED_LO", 0x80, "Little endian", deprecated=True),
    Flag("IMAGE_FILE_32BIT_MACHINE", 0x100, "Machine is based on a 32-bit-word architecture"),
    Flag("IMAGE_FILE_DEBUG_STRIPPED", 0x200, "Debugging information is removed from the image file"),
    Flag("IMAGE_FILE_REMOVABLE_RUN_FROM_SWAP", 0x400, "If on removable media, copy to swap and run from there"),
    Flag("IMAGE_FILE_NET_RUN_FROM_SWAP", 0x800, "If on network media, copy to swap and run from there"),
    Flag("IMAGE_FILE_SYSTEM", 0x1000, "System file, not a user program"),
    Flag("IMAGE_FILE_DLL", 0x2000, "Dynamic-link library"),
    Flag("IMAGE_FILE_UP_SYSTEM_ONLY", 0x4000, "Run only on a uniprocessor machine"),
    Flag("IMAGE_FILE_BYTES_REVERSED_HI", 0x8000, "Big endian", deprecated=True),
)

DLL_CHARACTERISTICS: Tuple[Flag, ...] = (
    Flag("RESERVED_1", 0x1, "Reserved", reserved=True),
    Flag("RESERVED_2", 0x2, "Reserved", reserved=True),
    Flag("RESERVED_4", 0x4, "Reserved", reserved=True),
    Flag("RESERVED_8", 0x8, "Reserved", reserved=True),
    Flag("IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA", 0x20, "Image can handle a high entropy 64-bit virtual address space"),
    Flag("IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE", 0x40, "DLL can be relocated at load time"),
    Flag("IMAGE_DLLCHARACTERISTICS_FORCE_INTEGRITY", 0x80, "Code Integrity checks are enforced"),
    Flag("IMAGE_DLLCHARACTERISTICS_NX_COMPAT", 0x100, "Image is NX compatible"),
    Flag("IMAGE_DLLCHARACTERISTICS_NO_ISOLATION", 0x200, "Isolation aware, but do not isolate the image"),
    Flag("IMAGE_DLLCHARACTERISTICS_NO_SEH", 0x400, "Does not use structured exception handling"),
    Flag("IMAGE_DLLCHARACTERISTICS_NO_BIND", 0x800, "Do not bind the image"),
    Flag("IMAGE_DLLCHARACTERISTICS_APPCONTAINER", 0x1000, "Image must execute in an AppContainer"),
    Flag("IMAGE_DLLCHARACTERISTICS_WDM_DRIVER", 0x2000, "A WDM driver"),
    Flag("IMAGE_DLLCHARACTERISTICS_GUARD_CF", 0x4000, "Image supports Control Flow Guard"),
    Flag("IMAGE_DLLCHARACTERISTICS_TERMINAL_SERVER_AWARE", 0x8000, "Terminal Server aware"),
)

IMAGE_SCN_CNT_CODE = 0x20
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x40
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x80
IMAGE_SCN_LNK_NRELOC_OVFL = 0x01000000
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000
IMAGE_SCN_ALIGN_MASK = 0x00F00000

SECTION_CHARACTERISTICS: Tuple[Flag, ...] = (
    Flag("RESERVED_0", 0x0, "Reserved for future use", reserved=True),
    Flag("RESERVED_1", 0x1, "Reserved for future use", reserved=True),
    Flag("RESERVED_2", 0x2, "Reserved for future use", reserved=True),
    Flag("RESERVED_4", 0x4, "Reserved for future use", reserved=True),
    Flag("IMAGE_SCN_TYPE_NO_PAD", 0x8, "The section should not be padded to the next boundary", deprecated=True),
    Flag("RESERVED_10", 0x10, "Reserved for future use", reserved=True),
    Flag("IMAGE_SCN_CNT_CODE", IMAGE_SCN_CNT_CODE, "The section contains executable code"),
    Flag("IMAGE_SCN_CNT_INITIALIZED_DATA", IMAGE_SCN_CNT_INITIALIZED_DATA, "The section contains initialized data"),
    Flag("IMAGE_SCN_CNT_UNINITIALIZED_DATA", IMAGE_SCN_CNT_UNINITIALIZED_DATA, "The section contains uninitialized data"),
    Flag("IMAGE_SCN_LNK_OTHER", 0x100, "Reserved for future use", reserved=True),
    Flag("IMAGE_SCN_LNK_INFO", 0x200, "Comments or other information, valid for object files only"),
    Flag("RESERVED_400", 0x400, "Reserved for future use", reserved=True),
    Flag("IMAGE_SCN_LNK_REMOVE", 0x800, "Will not become part of the image, valid for object files only"),
    Flag("IMAGE_SCN_LNK_COMDAT", 0x1000, "The section contains COMDAT data"),
    Flag("IMAGE_SCN_GPREL", 0x8000, "Data referenced through the global pointer"),
    Flag("IMAGE_SCN_MEM_PURGEABLE", 0x20000, "Reserved for future use", reserved=True),
    Flag("IMAGE_SCN_MEM_LOCKED", 0x40000, "Reserved for future use", reserved=True),
    Flag("IMAGE_SCN_MEM_PRELOAD", 0x80000, "Reserved for future use", reserved=True),
    Flag("IMAGE_SCN_LNK_NRELOC_OVFL", IMAGE_SCN_LNK_NRELOC_OVFL, "The section contains extended relocations"),
    Flag("IMAGE_SCN_MEM_DISCARDABLE", 0x02000000, "The section can be discarded as needed"),
    Flag("IMAGE_SCN_MEM_NOT_CACHED", 0x04000000, "The section cannot be cached"),
    Flag("IMAGE_SCN_MEM_NOT_PAGED", 0x08000000, "The section is not pageable"),
    Flag("IMAGE_SCN_MEM_SHARED", 0x10000000, "The section can be shared in memory"),
    Flag("IMAGE_SCN_MEM_EXECUTE", IMAGE_SCN_MEM_EXECUTE, "The section can be executed as code"),
    Flag("IMAGE_SCN_MEM_READ", IMAGE_SCN_MEM_READ, "The section can be read"),
    Flag("IMAGE_SCN_MEM_WRITE", IMAGE_SCN_MEM_WRITE, "The section can be written to"),
)

# Flags only meaningful for object files (LNK_INFO, LNK_REMOVE).
OBJECT_ONLY_SECTION_FLAGS = 0x200 | 0x800


def flags_set(value: int, table: Tuple[Flag, ...]) -> List[Flag]:
    """Return all flags of *table* whose bit is set in *value*.

    Zero-valued entries never match.
    """
    return [f for f in table if f.value and (value & f.value) == f.value]


def is_low_alignment_mode(file_alignment: int, section_alignment: int) -> bool:
    return 1 <= file_alignment == section_alignment <= 0x800


# ---------------------------------------------------------------------------
# Accessor
# ---------------------------------------------------------------------------


class PEHeaders:
    """Immutable key/value view of the decoded MSDOS, COFF and Optional headers."""

    def __init__(self, values: Mapping[HeaderKey, int]) -> None:
        self._values: Mapping[HeaderKey, int] = MappingProxyType(
            {HeaderKey(k): int(v) for k, v in values.items()}
        )

    def get(self, key: HeaderKey) -> int:
        """Return the raw integer value of *key*.

        Raises ``KeyError`` if the field was never decoded.
        """
        if not isinstance(key, HeaderKey):
            raise TypeError(f"not a header key: {key!r}")
        return self._values[key]

    def maybe_get(self, key: HeaderKey) -> Optional[int]:
        return self._values.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def as_dict(self) -> Dict[str, int]:
        return {k.name: v for k, v in self._values.items()}

    # ---- derived layout ----

    @property
    def magic(self) -> MagicNumber:
        return MagicNumber.for_value(self._values.get(HeaderKey.MAGIC, 0))

    @property
    def pe_header_offset(self) -> int:
        return self.get(HeaderKey.E_LFANEW)

    @property
    def optional_header_offset(self) -> int:
        return self.pe_header_offset + PE_SIGNATURE_SIZE + COFF_HEADER_SIZE

    @property
    def section_table_offset(self) -> int:
        return self.optional_header_offset + self.get(HeaderKey.SIZE_OF_OPTIONAL_HEADER)

    @property
    def low_alignment_mode(self) -> bool:
        return is_low_alignment_mode(
            self.get(HeaderKey.FILE_ALIGNMENT), self.get(HeaderKey.SECTION_ALIGNMENT)
        )

    def __repr__(self) -> str:
        return f"PEHeaders({self.as_dict()!r})"


def _words_to_int(words: Any) -> int:
    """Fold a reserved word array (list or bytes) into one integer."""
    if isinstance(words, (bytes, bytearray)):
        return int.from_bytes(words, "little")
    if isinstance(words, (list, tuple)):
        total = 0
        for i, w in enumerate(words):
            total |= (int(w) & 0xFFFF) << (16 * i)
        return total
    return int(words or 0)


def headers_from_pefile(pe) -> PEHeaders:
    """Build a :class:`PEHeaders` from a parsed ``pefile.PE``.

    Optional header fields that pefile did not decode (e.g. BaseOfData for
    PE32+) are simply absent from the accessor.
    """

    values: Dict[HeaderKey, int] = {}

    dos = pe.DOS_HEADER
    values[HeaderKey.E_MAGIC] = int(dos.e_magic)
    values[HeaderKey.E_LFANEW] = int(dos.e_lfanew)
    values[HeaderKey.E_RES] = _words_to_int(getattr(dos, "e_res", 0))
    values[HeaderKey.E_RES2] = _words_to_int(getattr(dos, "e_res2", 0))

    fh = pe.FILE_HEADER
    for key in _COFF_KEYS:
        values[key] = int(getattr(fh, key.value, 0) or 0)

    opt = getattr(pe, "OPTIONAL_HEADER", None)
    if opt is not None:
        for key in HeaderKey:
            if key in _DOS_KEYS or key in _COFF_KEYS:
                continue
            val = getattr(opt, key.value, None)
            if isinstance(val, int):
                values[key] = val

    # Fields every check relies on; a missing optional header reads as zeros.
    for key in (
        HeaderKey.MAGIC,
        HeaderKey.ADDRESS_OF_ENTRY_POINT,
        HeaderKey.IMAGE_BASE,
        HeaderKey.SECTION_ALIGNMENT,
        HeaderKey.FILE_ALIGNMENT,
        HeaderKey.SIZE_OF_IMAGE,
        HeaderKey.SIZE_OF_HEADERS,
        HeaderKey.DLL_CHARACTERISTICS,
        HeaderKey.NUMBER_OF_RVA_AND_SIZES,
    ):
        values.setdefault(key, 0)

    return PEHeaders(values)


# ---------------------------------------------------------------------------
# Rich header
# ---------------------------------------------------------------------------

# pefile decodes the Rich header from this offset ("DanS" marker).
RICH_HEADER_OFFSET = 0x80

_E_LFANEW_FIELD = range(0x3C, 0x40)


def _rol32(value: int, count: int) -> int:
    count %= 32
    value &= 0xFFFFFFFF
    return ((value << count) | (value >> (32 - count))) & 0xFFFFFFFF


def rich_checksum(data: bytes, values: Sequence[int], start: int = RICH_HEADER_OFFSET) -> int:
    """Recompute the checksum the linker stores as the Rich header XOR key.

    The sum covers the bytes in front of the Rich header except the
    ``e_lfanew`` field, then every (comp id, count) pair of *values*.
    """
    checksum = start
    for i, b in enumerate(data[:start]):
        if i in _E_LFANEW_FIELD:
            continue
        checksum += _rol32(b, i)
    for comp_id, count in zip(values[::2], values[1::2]):
        checksum += _rol32(comp_id, count)
    return checksum & 0xFFFFFFFF


@dataclass(frozen=True)
class RichHeader:
    checksum: int
    computed_checksum: int

    @property
    def valid(self) -> bool:
        return self.checksum == self.computed_checksum


def rich_header_from_pefile(pe, data: bytes) -> Optional[RichHeader]:
    """Stored and recomputed Rich header checksum, or None without a Rich header."""
    rich = pe.parse_rich_header()
    if not rich:
        return None
    return RichHeader(
        checksum=int(rich["checksum"]),
        computed_checksum=rich_checksum(data, rich.get("values") or []),
    )
