"""Data directory table reading and resolution.

@QK
"""

import struct

import pytest

from pestrata.modules.directories import (
    DataDirEntry,
    DataDirectoryKey,
    DataDirectoryTable,
    is_fractionated,
    read_raw_entries,
    resolve,
)
from pestrata.modules.headers import MagicNumber


def _table(entries, magic=MagicNumber.PE32):
    base = 96 if magic is MagicNumber.PE32 else 112
    buf = bytearray(base + 16 * 8)
    for idx, (va, size) in entries.items():
        struct.pack_into("<II", buf, base + 8 * idx, va, size)
    return bytes(buf)


def test_read_raw_entries_skips_zero_addresses():
    data = _table({1: (0x2000, 0x50), 2: (0, 0x10), 14: (0x3000, 0x48)})
    entries = read_raw_entries(data, 0, MagicNumber.PE32, 16)
    assert [e.key for e in entries] == [DataDirectoryKey.IMPORT, DataDirectoryKey.CLR_RUNTIME_HEADER]
    assert entries[0].size == 0x50
    assert entries[0].table_entry_offset == 96 + 8


def test_read_raw_entries_pe32_plus_layout():
    data = _table({0: (0x1234, 4)}, magic=MagicNumber.PE32_PLUS)
    entries = read_raw_entries(data, 0, MagicNumber.PE32_PLUS, 16)
    assert entries == [DataDirEntry(DataDirectoryKey.EXPORT, 0x1234, 4, 112)]


def test_read_raw_entries_bounded_by_declared_count():
    data = _table({1: (0x2000, 0x50), 5: (0x3000, 0x10)})
    assert [e.key for e in read_raw_entries(data, 0, MagicNumber.PE32, 2)] == [DataDirectoryKey.IMPORT]
    # counts above the enumeration length are clamped
    assert len(read_raw_entries(data, 0, MagicNumber.PE32, 0xFFFFFFFF)) == 2


def test_read_raw_entries_unknown_magic():
    assert read_raw_entries(_table({1: (0x2000, 1)}), 0, MagicNumber.UNKNOWN, 16) == []


def test_resolve_inside_section(make_section, make_model):
    text = make_section(va=0x1000, vsize=0x1000, raw_ptr=0x400)
    model = make_model([text])
    (r,) = resolve([DataDirEntry(DataDirectoryKey.IMPORT, 0x1100, 0x28)], model)
    assert r.owning_section is text
    assert r.file_offset == 0x500
    assert not is_fractionated(model, r)


def test_resolve_outside_every_section(make_section, make_model):
    model = make_model([make_section()])
    table = DataDirectoryTable.from_raw([DataDirEntry(DataDirectoryKey.DEBUG, 0xFFFFFFFF, 0x1C)], model)
    r = table.get(DataDirectoryKey.DEBUG)
    assert r is not None
    assert r.owning_section is None
    assert r.file_offset is None


def test_certificate_is_a_file_pointer(make_section, make_model):
    model = make_model([make_section()], file_length=0x3000)
    (r,) = resolve([DataDirEntry(DataDirectoryKey.CERTIFICATE, 0x2800, 0x100)], model)
    assert r.file_offset == 0x2800
    assert r.owning_section is None


def test_fractionated_directory(make_section, make_model):
    model = make_model([make_section(va=0x1000, vsize=0x1000)])
    (r,) = resolve([DataDirEntry(DataDirectoryKey.RESOURCE, 0x1F00, 0x200)], model)
    assert is_fractionated(model, r)


def test_table_lookup(make_section, make_model):
    model = make_model([make_section()])
    table = DataDirectoryTable.from_raw([DataDirEntry(DataDirectoryKey.IMPORT, 0x1000, 0x10)], model, 16)
    assert DataDirectoryKey.IMPORT in table
    assert table.get(DataDirectoryKey.EXPORT) is None
    assert len(table) == 1
    assert table.to_dict()["entries"][0]["key"] == "IMPORT"
    with pytest.raises(TypeError):
        table.get("IMPORT")  # type: ignore[arg-type]


def test_reserved_keys():
    assert DataDirectoryKey.ARCHITECTURE.is_reserved
    assert DataDirectoryKey.RESERVED.is_reserved
    assert not DataDirectoryKey.IMPORT.is_reserved
