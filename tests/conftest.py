"""Pytest configuration and PE builders.

The PEStrata test suite is meant to run both:
- in editable installs (pip install -e .)
- directly from a source checkout (python -m pytest)

To support the latter, the repository root is added to sys.path.

The fixtures build PE inputs from scratch with :mod:`struct` so every test
states the exact header and section values it depends on.

@QK
"""

from __future__ import annotations

import struct
import sys
from pathlib import Path

import pytest


def pytest_configure():
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))


TEXT_CHARS = 0x60000020  # code | execute | read
DATA_CHARS = 0xC0000040  # initialized data | read | write

E_LFANEW = 0x80
OPTIONAL_HEADER_OFFSET = E_LFANEW + 24
PE32_OPTIONAL_HEADER_SIZE = 224

_PE32_FIELDS = struct.Struct("<HBBIIIIIIIIIHHHHHHIIIIHHIIIIII")


def default_sections():
    return [
        dict(name=b".text", virtual_address=0x1000, virtual_size=0x100, raw_pointer=0x200, raw_size=0x200,
             characteristics=TEXT_CHARS),
        dict(name=b".data", virtual_address=0x2000, virtual_size=0x100, raw_pointer=0x400, raw_size=0x200,
             characteristics=DATA_CHARS),
    ]


def build_pe_bytes(
    *,
    sections=None,
    directories=None,
    number_of_sections=None,
    timestamp=0x5F000000,
    entry_point=0x1000,
    image_base=0x400000,
    section_alignment=0x1000,
    file_alignment=0x200,
    size_of_image=0x3000,
    size_of_headers=0x200,
    number_of_rva_and_sizes=16,
    characteristics=0x102,
    overlay=b"",
    file_length=None,
):
    """Assemble a PE32 file.

    ``directories`` maps directory index -> (rva, size). Section data is zero
    filled; ``file_length`` defaults to the end of the last section's raw data.
    """

    sections = default_sections() if sections is None else sections
    directories = {5: (0x2000, 0x8)} if directories is None else directories
    nr = len(sections) if number_of_sections is None else number_of_sections

    end = size_of_headers
    for s in sections:
        if s["raw_pointer"]:
            end = max(end, s["raw_pointer"] + s["raw_size"])
    length = end if file_length is None else file_length
    buf = bytearray(max(length, OPTIONAL_HEADER_OFFSET + PE32_OPTIONAL_HEADER_SIZE + 40 * len(sections)))

    buf[0:2] = b"MZ"
    struct.pack_into("<I", buf, 0x3C, E_LFANEW)
    buf[E_LFANEW : E_LFANEW + 4] = b"PE\x00\x00"
    struct.pack_into(
        "<HHIIIHH", buf, E_LFANEW + 4, 0x14C, nr, timestamp, 0, 0, PE32_OPTIONAL_HEADER_SIZE, characteristics
    )

    _PE32_FIELDS.pack_into(
        buf,
        OPTIONAL_HEADER_OFFSET,
        0x10B, 14, 0,  # magic, linker version
        0x200, 0x200, 0,  # size of code / init / uninit
        entry_point,
        0x1000, 0x2000,  # base of code / data
        image_base,
        section_alignment,
        file_alignment,
        6, 0, 0, 0, 6, 0,  # os / image / subsystem versions
        0,  # Win32VersionValue
        size_of_image,
        size_of_headers,
        0,  # checksum
        2,  # subsystem GUI
        0,  # dll characteristics
        0x100000, 0x1000, 0x100000, 0x1000,
        0,  # loader flags
        number_of_rva_and_sizes,
    )
    for idx, (rva, size) in directories.items():
        struct.pack_into("<II", buf, OPTIONAL_HEADER_OFFSET + 96 + 8 * idx, rva, size)

    table = OPTIONAL_HEADER_OFFSET + PE32_OPTIONAL_HEADER_SIZE
    for i, s in enumerate(sections):
        struct.pack_into(
            "<8sIIIIIIHHI",
            buf,
            table + 40 * i,
            s["name"],
            s["virtual_size"],
            s["virtual_address"],
            s["raw_size"],
            s["raw_pointer"],
            0, 0, 0, 0,
            s["characteristics"],
        )

    return bytes(buf[:length]) + overlay


@pytest.fixture
def pe_bytes():
    """Factory fixture: ``pe_bytes(**overrides) -> bytes``."""
    return build_pe_bytes


@pytest.fixture
def pe_file(tmp_path):
    """Factory fixture writing a built PE to disk and returning its path."""

    def _make(name="sample.exe", **kwargs):
        p = tmp_path / name
        p.write_bytes(build_pe_bytes(**kwargs))
        return str(p)

    return _make


@pytest.fixture
def make_headers():
    """Factory for :class:`PEHeaders` with sane PE32 defaults."""

    from pestrata.modules.headers import HeaderKey, PEHeaders

    def _make(**overrides):
        values = {
            HeaderKey.E_MAGIC: 0x5A4D,
            HeaderKey.E_LFANEW: E_LFANEW,
            HeaderKey.E_RES: 0,
            HeaderKey.E_RES2: 0,
            HeaderKey.MACHINE: 0x14C,
            HeaderKey.NUMBER_OF_SECTIONS: 2,
            HeaderKey.TIME_DATE_STAMP: 0x5F000000,
            HeaderKey.POINTER_TO_SYMBOL_TABLE: 0,
            HeaderKey.NUMBER_OF_SYMBOLS: 0,
            HeaderKey.SIZE_OF_OPTIONAL_HEADER: PE32_OPTIONAL_HEADER_SIZE,
            HeaderKey.CHARACTERISTICS: 0x102,
            HeaderKey.MAGIC: 0x10B,
            HeaderKey.SIZE_OF_CODE: 0x200,
            HeaderKey.SIZE_OF_INITIALIZED_DATA: 0x200,
            HeaderKey.SIZE_OF_UNINITIALIZED_DATA: 0,
            HeaderKey.ADDRESS_OF_ENTRY_POINT: 0x1000,
            HeaderKey.BASE_OF_CODE: 0x1000,
            HeaderKey.BASE_OF_DATA: 0x2000,
            HeaderKey.IMAGE_BASE: 0x400000,
            HeaderKey.SECTION_ALIGNMENT: 0x1000,
            HeaderKey.FILE_ALIGNMENT: 0x200,
            HeaderKey.WIN32_VERSION_VALUE: 0,
            HeaderKey.SIZE_OF_IMAGE: 0x3000,
            HeaderKey.SIZE_OF_HEADERS: 0x200,
            HeaderKey.CHECKSUM: 0,
            HeaderKey.SUBSYSTEM: 2,
            HeaderKey.DLL_CHARACTERISTICS: 0,
            HeaderKey.LOADER_FLAGS: 0,
            HeaderKey.NUMBER_OF_RVA_AND_SIZES: 16,
        }
        values.update({HeaderKey[k.upper()]: v for k, v in overrides.items()})
        return PEHeaders(values)

    return _make


@pytest.fixture
def make_section():
    """Factory for :class:`SectionRecord` (keyword arguments, numbered by caller)."""

    from pestrata.modules.sections import SectionRecord

    def _make(number=1, name=b".text", va=0x1000, vsize=0x1000, raw_ptr=0x400, raw_size=0x200,
              characteristics=TEXT_CHARS, **extra):
        return SectionRecord(
            number=number,
            name=name,
            virtual_address=va,
            virtual_size=vsize,
            raw_pointer=raw_ptr,
            raw_size=raw_size,
            characteristics=characteristics,
            **extra,
        )

    return _make


@pytest.fixture
def make_model():
    """Factory for :class:`SectionModel` from a list of section records."""

    from pestrata.modules.sections import SectionModel

    def _make(sections=(), *, file_length=0x10000, low_alignment_mode=False, size_of_headers=0x400, **extra):
        sections = tuple(sections)
        return SectionModel(
            sections=sections,
            low_alignment_mode=low_alignment_mode,
            size_of_headers=size_of_headers,
            file_length=file_length,
            declared_count=extra.pop("declared_count", len(sections)),
            **extra,
        )

    return _make
