"""Structural anomaly battery.

@QK
"""

import time
from datetime import datetime, timezone

import pytest

from pestrata.anomalies import (
    Anomaly,
    AnomalySubType,
    AnomalySuperType,
    build_context,
    scan_anomalies,
)
from pestrata.modules.directories import DataDirEntry, DataDirectoryKey, DataDirectoryTable
from pestrata.modules.headers import HeaderKey, RichHeader
from pestrata.modules.sections import SECTION_TABLE_CEILING
from pestrata.modules.signals import ImportDescriptor, ImportedSymbol

TEXT_CHARS = 0x60000020
DATA_CHARS = 0xC0000040

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
RELOC = DataDirEntry(DataDirectoryKey.BASE_RELOCATION, 0x2000, 0x8)


@pytest.fixture
def clean_sections(make_section):
    return [
        make_section(1, b".text", va=0x1000, vsize=0x100, raw_ptr=0x200, raw_size=0x200, characteristics=TEXT_CHARS),
        make_section(2, b".data", va=0x2000, vsize=0x100, raw_ptr=0x400, raw_size=0x200, characteristics=DATA_CHARS),
    ]


@pytest.fixture
def scan(make_headers, make_model, clean_sections):
    """``scan(headers=..., sections=..., entries=..., **context) -> [Anomaly]`` with clean defaults."""

    def _scan(headers=None, sections=None, entries=(RELOC,), rules=None, model_kwargs=None, **context):
        headers = headers or make_headers()
        sections = clean_sections if sections is None else sections
        mk = {"file_length": 0x600, "size_of_headers": headers.get(HeaderKey.SIZE_OF_HEADERS)}
        mk.update(model_kwargs or {})
        model = make_model(sections, **mk)
        table = DataDirectoryTable.from_raw(entries, model, headers.get(HeaderKey.NUMBER_OF_RVA_AND_SIZES))
        context.setdefault("now", NOW)
        ctx = build_context(headers, model, table, rules=rules, **context)
        return scan_anomalies(ctx, rules)

    return _scan


def _types(anomalies):
    return [a.sub_type for a in anomalies]


def test_clean_file_has_no_anomalies(scan):
    assert scan() == []


def test_duplicated_sections_reported_once(scan, make_section):
    sections = [
        make_section(1, b".text", va=0x1000, raw_ptr=0x200, raw_size=0x400),
        make_section(2, b".data", va=0x2000, raw_ptr=0x200, raw_size=0x400, characteristics=DATA_CHARS),
    ]
    types = _types(scan(sections=sections, model_kwargs={"file_length": 0x2000}))
    assert types.count(AnomalySubType.PHYSICALLY_DUPLICATED_SEC) == 1
    assert AnomalySubType.PHYSICALLY_OVERLAPPING_SEC not in types


def test_overlapping_sections(scan, make_section):
    sections = [
        make_section(1, b".text", va=0x1000, raw_ptr=0x200, raw_size=0x400),
        make_section(2, b".data", va=0x2000, raw_ptr=0x400, raw_size=0x400, characteristics=DATA_CHARS),
    ]
    anomalies = scan(sections=sections, model_kwargs={"file_length": 0x2000})
    overlaps = [a for a in anomalies if a.sub_type is AnomalySubType.PHYSICALLY_OVERLAPPING_SEC]
    assert len(overlaps) == 1
    assert overlaps[0].field.number == 2


def test_virtually_duplicated_sections(scan, make_section):
    sections = [
        make_section(1, b".text", va=0x1000, vsize=0x100, raw_ptr=0x200, raw_size=0x200),
        make_section(2, b".data", va=0x1000, vsize=0x100, raw_ptr=0x400, raw_size=0x200, characteristics=DATA_CHARS),
    ]
    types = _types(scan(sections=sections))
    assert AnomalySubType.VIRTUALLY_DUPLICATED_SEC in types
    assert AnomalySubType.NOT_ASCENDING_SEC_VA in types


def test_sectionless(scan, make_headers):
    anomalies = scan(headers=make_headers(number_of_sections=0), sections=[], entries=())
    types = _types(anomalies)
    assert AnomalySubType.SECTIONLESS in types
    assert AnomalySubType.NO_DATA_DIR in types
    assert AnomalySubType.TOO_MANY_SECTIONS not in types
    assert AnomalySubType.PHYSICALLY_OVERLAPPING_SEC not in types


def test_directory_outside_sections_is_invalid(scan):
    bad = DataDirEntry(DataDirectoryKey.DEBUG, 0xFFFFFFFF, 0x1C)
    invalid = [a for a in scan(entries=(RELOC, bad)) if a.sub_type is AnomalySubType.INVALID_DATA_DIR]
    assert len(invalid) == 1
    assert invalid[0].field is DataDirectoryKey.DEBUG
    assert invalid[0].super_type is AnomalySuperType.WRONG


def test_not_power_of_two_file_alignment_reported_once(scan, make_headers, make_section):
    headers = make_headers(file_alignment=0x300, section_alignment=0x100, image_base=0x12345, loader_flags=1)
    sections = [
        make_section(1, b".text", va=0x1000, raw_ptr=0x301, raw_size=0x301),
        make_section(2, b"x\x01", va=0x800, raw_ptr=0x700, raw_size=0x100),
    ]
    types = _types(scan(headers=headers, sections=sections))
    assert types.count(AnomalySubType.NOT_POW_OF_TWO_FILEALIGN) == 1
    assert AnomalySubType.NON_DEFAULT_FILEALIGN not in types
    assert AnomalySubType.TOO_SMALL_SECALIGN in types


def test_file_alignment_bounds(scan, make_headers):
    assert AnomalySubType.TOO_LARGE_FILEALIGN in _types(
        scan(headers=make_headers(file_alignment=0x20000, section_alignment=0x20000))
    )
    assert AnomalySubType.NON_DEFAULT_FILEALIGN in _types(
        scan(headers=make_headers(file_alignment=0x1000, section_alignment=0x1000))
    )


def test_low_alignment_mode_reported(scan, make_headers):
    headers = make_headers(file_alignment=0x200, section_alignment=0x200)
    types = _types(scan(headers=headers, model_kwargs={"low_alignment_mode": True}))
    assert AnomalySubType.LOW_ALIGNMENT_MODE in types


def test_order_is_stable(scan, make_headers, make_section):
    headers = make_headers(file_alignment=0x300, time_date_stamp=0, number_of_symbols=3)
    sections = [make_section(1, b"", raw_ptr=0x201, characteristics=0)]
    first = scan(headers=headers, sections=sections)
    second = scan(headers=headers, sections=sections)
    assert first == second
    # battery order: COFF checks come before section checks
    types = _types(first)
    assert types.index(AnomalySubType.TIME_DATE_TOO_LOW) < types.index(AnomalySubType.EMPTY_SEC_NAME)


def test_timestamps(scan, make_headers):
    assert AnomalySubType.TIME_DATE_TOO_LOW in _types(scan(headers=make_headers(time_date_stamp=0)))
    future = int(datetime(2030, 1, 1, tzinfo=timezone.utc).timestamp())
    assert AnomalySubType.TIME_DATE_IN_FUTURE in _types(scan(headers=make_headers(time_date_stamp=future)))


def test_too_many_sections_uses_configured_ceiling(scan):
    types = _types(scan(rules={"max_sections": 1}))
    assert AnomalySubType.TOO_MANY_SECTIONS in types


def test_overrides_disable_subtypes(scan, make_headers):
    headers = make_headers(time_date_stamp=0)
    rules = {"overrides": {"TIME_DATE_TOO_LOW": {"enabled": False}}}
    assert AnomalySubType.TIME_DATE_TOO_LOW not in _types(scan(headers=headers, rules=rules))


def test_zero_entry_point(scan, make_headers):
    anomalies = scan(headers=make_headers(address_of_entry_point=0))
    ep = [a.sub_type for a in anomalies if a.field is HeaderKey.ADDRESS_OF_ENTRY_POINT]
    assert ep == [AnomalySubType.ZERO_EP]


def test_entry_point_in_writeable_last_section(scan, make_headers):
    types = _types(scan(headers=make_headers(address_of_entry_point=0x2000)))
    assert AnomalySubType.EP_IN_WRITEABLE_SEC in types
    assert AnomalySubType.EP_IN_LAST_SECTION in types


def test_virtual_entry_point(scan, make_headers):
    assert AnomalySubType.VIRTUAL_EP in _types(scan(headers=make_headers(address_of_entry_point=0x9000)))
    # mapped by .text but past its 0x200 bytes of file data
    assert AnomalySubType.VIRTUAL_EP in _types(scan(headers=make_headers(address_of_entry_point=0x1800)))


def test_entry_point_in_headers(scan, make_headers):
    assert AnomalySubType.TOO_SMALL_EP in _types(scan(headers=make_headers(address_of_entry_point=0x10)))


def test_section_characteristics(scan, make_section):
    sections = [
        make_section(1, b".text", va=0x1000, vsize=0x100, raw_ptr=0x200, raw_size=0x200,
                     characteristics=TEXT_CHARS | 0x80000000),
        make_section(2, b".data", va=0x2000, vsize=0x100, raw_ptr=0x400, raw_size=0x200, characteristics=0),
    ]
    anomalies = scan(sections=sections)
    by_type = {a.sub_type: a for a in anomalies}
    assert by_type[AnomalySubType.WRITE_AND_EXECUTE_SECTION].field.number == 1
    assert by_type[AnomalySubType.CHARACTERLESS_SECTION].field.number == 2
    assert AnomalySubType.UNUSUAL_SEC_CHARACTERISTICS in by_type


def test_section_names(scan, make_section):
    sections = [
        make_section(1, b"", va=0x1000, vsize=0x100, raw_ptr=0x200, raw_size=0x200),
        make_section(2, b"ab\x07", va=0x2000, vsize=0x100, raw_ptr=0x400, raw_size=0x200,
                     characteristics=DATA_CHARS),
    ]
    types = _types(scan(sections=sections))
    assert AnomalySubType.EMPTY_SEC_NAME in types
    assert AnomalySubType.CTRL_SYMB_IN_SEC_NAME in types
    assert AnomalySubType.UNUSUAL_SEC_NAME not in types


def test_truncated_section_table(scan, make_headers):
    types = _types(scan(headers=make_headers(number_of_sections=3), model_kwargs={"declared_count": 3}))
    assert AnomalySubType.VIRTUAL_SECTION_TABLE in types


def test_import_anomalies(scan):
    imports = [
        ImportedSymbol("KERNEL32.dll", None, 17),
        ImportedSymbol("KERNEL32.dll", "WriteProcessMemory"),
        ImportedSymbol("user32.dll", "MessageBoxA"),
    ]
    types = _types(scan(imports=imports))
    assert AnomalySubType.KERNEL32_BY_ORDINAL_IMPORTS in types
    assert types.count(AnomalySubType.PROCESS_INJECTION_IMPORT) == 1


def _only(anomalies, sub_type):
    found = [a for a in anomalies if a.sub_type is sub_type]
    assert found, f"{sub_type.name} not reported"
    return found[0]


def test_collapsed_optional_header(scan, make_headers):
    a = _only(scan(headers=make_headers(size_of_optional_header=0x60)), AnomalySubType.COLLAPSED_OPTIONAL_HEADER)
    assert a.super_type is AnomalySuperType.STRUCTURE
    assert a.field is HeaderKey.SIZE_OF_OPTIONAL_HEADER


def test_optional_header_cut_off_by_file_end(scan, make_headers):
    headers = make_headers(number_of_sections=0)
    anomalies = scan(headers=headers, sections=[], entries=(), model_kwargs={"file_length": 0xC0})
    a = _only(anomalies, AnomalySubType.COLLAPSED_OPTIONAL_HEADER)
    assert "only 40 of 224 bytes" in a.description
    assert AnomalySubType.TOO_LARGE_OPTIONAL_HEADER in _types(anomalies)


def test_collapsed_msdos_header(scan, make_headers):
    a = _only(scan(headers=make_headers(e_lfanew=0x20)), AnomalySubType.COLLAPSED_MSDOS_HEADER)
    assert a.super_type is AnomalySuperType.STRUCTURE
    assert a.field is HeaderKey.E_LFANEW


def test_headers_in_overlay(scan, make_headers):
    anomalies = scan(
        headers=make_headers(e_lfanew=0x800),
        model_kwargs={"file_length": 0x1000, "table_offset": 0x918},
    )
    pe = _only(anomalies, AnomalySubType.PE_HEADER_IN_OVERLAY)
    table = _only(anomalies, AnomalySubType.SEC_TABLE_IN_OVERLAY)
    assert pe.super_type is AnomalySuperType.STRUCTURE
    assert table.super_type is AnomalySuperType.STRUCTURE


def test_fractionated_data_directory(scan):
    # .text is mapped at 0x1000-0x2000; the entry starts inside and runs past it
    entry = DataDirEntry(DataDirectoryKey.DEBUG, 0x1F00, 0x200)
    a = _only(scan(entries=(RELOC, entry)), AnomalySubType.FRACTIONATED_DATADIR)
    assert a.super_type is AnomalySuperType.STRUCTURE
    assert a.field is DataDirectoryKey.DEBUG


def test_reserved_data_directory(scan):
    entry = DataDirEntry(DataDirectoryKey.ARCHITECTURE, 0x1000, 0x8)
    a = _only(scan(entries=(RELOC, entry)), AnomalySubType.RESERVED_DATA_DIR)
    assert a.super_type is AnomalySuperType.RESERVED
    assert a.field is DataDirectoryKey.ARCHITECTURE


def test_unusual_data_directory_count(scan, make_headers):
    a = _only(scan(headers=make_headers(number_of_rva_and_sizes=0x20)), AnomalySubType.UNUSUAL_DATA_DIR_NR)
    assert a.super_type is AnomalySuperType.NON_DEFAULT
    assert "is 32 instead of 16" in a.description


def test_size_of_image_not_section_aligned(scan, make_headers):
    a = _only(scan(headers=make_headers(size_of_image=0x3100)), AnomalySubType.NOT_SEC_ALIGNED_SIZE_OF_IMAGE)
    assert a.super_type is AnomalySuperType.WRONG
    assert a.field is HeaderKey.SIZE_OF_IMAGE


def test_too_small_file_alignment(scan, make_headers):
    a = _only(scan(headers=make_headers(file_alignment=0x100)), AnomalySubType.TOO_SMALL_FILEALIGN)
    assert a.super_type is AnomalySuperType.NON_DEFAULT


def test_virtually_overlapping_sections(scan, make_section):
    sections = [
        make_section(1, b".text", va=0x1000, vsize=0x2000, raw_ptr=0x200, raw_size=0x200),
        make_section(2, b".data", va=0x2000, vsize=0x100, raw_ptr=0x400, raw_size=0x200, characteristics=DATA_CHARS),
    ]
    anomalies = scan(sections=sections)
    a = _only(anomalies, AnomalySubType.VIRTUALLY_OVERLAPPING_SEC)
    assert a.super_type is AnomalySuperType.STRUCTURE
    assert a.field.number == 2
    assert AnomalySubType.VIRTUALLY_DUPLICATED_SEC not in _types(anomalies)


def test_overlap_pairs_follow_table_order(scan, make_section):
    sections = [
        make_section(1, b".text", va=0x3000, vsize=0x1000, raw_ptr=0x200, raw_size=0x200),
        make_section(2, b".data", va=0x1000, vsize=0x3000, raw_ptr=0x400, raw_size=0x200, characteristics=DATA_CHARS),
        make_section(3, b".rdata", va=0x1000, vsize=0x3000, raw_ptr=0x600, raw_size=0x200,
                     characteristics=0x40000040),
    ]
    anomalies = scan(sections=sections, model_kwargs={"file_length": 0x800})
    virtual = [
        (a.sub_type, a.field.number)
        for a in anomalies
        if a.sub_type in (AnomalySubType.VIRTUALLY_OVERLAPPING_SEC, AnomalySubType.VIRTUALLY_DUPLICATED_SEC)
    ]
    assert virtual == [
        (AnomalySubType.VIRTUALLY_OVERLAPPING_SEC, 2),
        (AnomalySubType.VIRTUALLY_OVERLAPPING_SEC, 3),
        (AnomalySubType.VIRTUALLY_DUPLICATED_SEC, 3),
    ]


def test_reserved_and_deprecated_file_characteristics(scan, make_headers):
    anomalies = scan(headers=make_headers(characteristics=0x102 | 0x40 | 0x4))
    reserved = _only(anomalies, AnomalySubType.RESERVED_FILE_CHARACTERISTICS)
    deprecated = _only(anomalies, AnomalySubType.DEPRECATED_FILE_CHARACTERISTICS)
    assert reserved.super_type is AnomalySuperType.RESERVED
    assert deprecated.super_type is AnomalySuperType.DEPRECATED
    assert "RESERVED_40" in reserved.description
    assert "IMAGE_FILE_LINE_NUMS_STRIPPED" in deprecated.description


def test_reserved_dll_characteristics(scan, make_headers):
    anomalies = scan(headers=make_headers(dll_characteristics=0x1 | 0x8 | 0x100))
    reserved = [a for a in anomalies if a.sub_type is AnomalySubType.RESERVED_DLL_CHARACTERISTICS]
    assert [a.description for a in reserved] == [
        "Reserved DLL characteristics flag RESERVED_1 is set",
        "Reserved DLL characteristics flag RESERVED_8 is set",
    ]
    assert all(a.super_type is AnomalySuperType.RESERVED for a in reserved)


def test_reserved_and_deprecated_section_characteristics(scan, make_section):
    sections = [
        make_section(1, b".text", va=0x1000, vsize=0x100, raw_ptr=0x200, raw_size=0x200,
                     characteristics=TEXT_CHARS | 0x8 | 0x10),
        make_section(2, b".data", va=0x2000, vsize=0x100, raw_ptr=0x400, raw_size=0x200, characteristics=DATA_CHARS),
    ]
    anomalies = scan(sections=sections)
    reserved = _only(anomalies, AnomalySubType.RESERVED_SEC_CHARACTERISTICS)
    deprecated = _only(anomalies, AnomalySubType.DEPRECATED_SEC_CHARACTERISTICS)
    assert reserved.super_type is AnomalySuperType.RESERVED
    assert deprecated.super_type is AnomalySuperType.DEPRECATED
    assert reserved.field.number == deprecated.field.number == 1


def test_unknown_magic(scan, make_headers):
    anomalies = scan(headers=make_headers(magic=0x999))
    a = _only(anomalies, AnomalySubType.UNKNOWN_MAGIC)
    assert a.super_type is AnomalySuperType.WRONG
    assert a.field is HeaderKey.MAGIC
    assert "0x999" in a.description
    assert AnomalySubType.UNKNOWN_MAGIC not in _types(scan(headers=make_headers(magic=0x107)))


def test_rich_checksum(scan):
    bad = RichHeader(checksum=0x1234, computed_checksum=0x5678)
    a = _only(scan(rich_header=bad), AnomalySubType.RICH_CHECKSUM_INVALID)
    assert a.super_type is AnomalySuperType.NON_DEFAULT
    assert "0x1234" in a.description and "0x5678" in a.description
    assert scan(rich_header=RichHeader(checksum=0x5678, computed_checksum=0x5678)) == []


def test_virtual_imports(scan):
    clean = ImportDescriptor("user32.dll", name_rva=0x2010, lookup_rva=0x2020, iat_rva=0x2030)
    assert scan(import_descriptors=[clean]) == []

    # 0x9000 is outside every section, 0x2800 is mapped by .data past the end of the file
    unmapped = ImportDescriptor("KERNEL32.dll", name_rva=0x2010, lookup_rva=0x9000, iat_rva=0x2800)
    a = _only(scan(import_descriptors=[clean, unmapped]), AnomalySubType.VIRTUAL_IMPORTS)
    assert a.super_type is AnomalySuperType.STRUCTURE
    assert a.field is DataDirectoryKey.IMPORT
    assert a.description == "Import descriptor of KERNEL32.dll points to virtual space at 0x9000, 0x2800"


def test_battery_at_section_ceiling_is_fast(scan, make_headers, make_section):
    n = SECTION_TABLE_CEILING
    sections = [
        make_section(i + 1, b".data", va=0x1000 * (i + 1), vsize=0x1000, raw_ptr=0x200 * (i + 1), raw_size=0x200,
                     characteristics=DATA_CHARS)
        for i in range(n)
    ]
    headers = make_headers(number_of_sections=n, size_of_image=0x1000 * (n + 1))
    start = time.perf_counter()
    anomalies = scan(headers=headers, sections=sections, model_kwargs={"file_length": 0x200 * (n + 1)})
    elapsed = time.perf_counter() - start

    types = _types(anomalies)
    assert AnomalySubType.TOO_MANY_SECTIONS in types
    assert AnomalySubType.PHYSICALLY_OVERLAPPING_SEC not in types
    assert AnomalySubType.VIRTUALLY_OVERLAPPING_SEC not in types
    assert elapsed < 10


def test_external_anomalies_are_appended(scan, make_headers):
    ext = Anomaly(AnomalySubType.RICH_CHECKSUM_INVALID, "Rich header checksum is invalid")
    anomalies = scan(headers=make_headers(time_date_stamp=0), external=[ext])
    assert anomalies[-1] is ext


def test_anomaly_to_dict(make_section):
    a = Anomaly(AnomalySubType.ZERO_VIRTUAL_SIZE, "VirtualSize is zero", make_section(2, b".rsrc"))
    assert a.to_dict() == {
        "type": "WRONG",
        "subtype": "ZERO_VIRTUAL_SIZE",
        "field": "section 2 (.rsrc)",
        "description": "VirtualSize is zero",
    }


def test_re_hint_subtypes_carry_descriptions():
    hints = [t for t in AnomalySubType if t.super_type is AnomalySuperType.RE_HINT]
    assert len(hints) == 19
    assert all(t.description for t in hints)
