"""Structural anomaly detection.

The engine runs a fixed, ordered battery of checks over the decoded headers,
the :class:`~pestrata.modules.sections.SectionModel` and the resolved data
directories. Each check is a plain function ``(ctx) -> list[Anomaly]`` that
only reads its inputs; the engine concatenates the results in battery order,
so two runs over the same file give the same list.

Each :class:`Anomaly` carries:

- sub_type: fine-grained cause (:class:`AnomalySubType`)
- super_type: coarse class derived from the sub type
- field: the offending header key, directory key or section (or None)
- description: human-readable sentence

Configuration:
- ``max_sections`` sets the TOO_MANY_SECTIONS ceiling.
- ``overrides`` can disable a sub type by name (``{"enabled": false}``).

@QK
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .modules import address
from .modules.directories import DataDirectoryKey, DataDirectoryTable, is_fractionated
from .modules.headers import (
    DATA_DIRECTORY_OFFSETS,
    DEFAULT_IMAGE_BASES,
    DLL_CHARACTERISTICS,
    FILE_CHARACTERISTICS,
    IMAGE_SCN_ALIGN_MASK,
    IMAGE_SCN_CNT_CODE,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_CNT_UNINITIALIZED_DATA,
    IMAGE_SCN_LNK_NRELOC_OVFL,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_WRITE,
    MSDOS_HEADER_SIZE,
    OBJECT_ONLY_SECTION_FLAGS,
    SECTION_CHARACTERISTICS,
    Flag,
    HeaderKey,
    MagicNumber,
    PEHeaders,
    RichHeader,
    flags_set,
)
from .modules.sections import SectionModel, SectionRecord
from .modules.signals import ImportDescriptor, ImportedSymbol

logger = logging.getLogger(__name__)

DEFAULT_MAX_SECTIONS = 95

# 1995-01-01 00:00:00 UTC; older link timestamps are almost always forged.
TIMESTAMP_FLOOR = 788918400

IMAGE_SCN_MEM_DISCARDABLE = 0x02000000


class AnomalySuperType(enum.Enum):
    STRUCTURE = "structure"
    WRONG = "wrong"
    RESERVED = "reserved"
    DEPRECATED = "deprecated"
    NON_DEFAULT = "non_default"
    RE_HINT = "re_hint"


_S = AnomalySuperType


class AnomalySubType(enum.Enum):
    """Fine-grained anomaly causes.

    RE-hint sub types must carry a description; construction fails otherwise.
    """

    def __new__(cls, super_type: AnomalySuperType, description: Optional[str] = None):
        if super_type is AnomalySuperType.RE_HINT and not description:
            raise ValueError("RE-hint anomaly types need a description")
        obj = object.__new__(cls)
        obj._value_ = len(cls.__members__) + 1
        obj.super_type = super_type
        obj.description = description or ""
        return obj

    # ---- RE hints ----
    AHK_RE_HINT = (_S.RE_HINT, "The executable is an AutoHotKey wrapper. Extract the resource and check the script.")
    ARCHIVE_RE_HINT = (_S.RE_HINT, "This file has an embedded archive, extract the contents with an unarchiver.")
    AUTOIT_RE_HINT = (_S.RE_HINT, "The file is an AutoIt script executable, use AutoIt-Ripper to unpack the script.")
    COMPRESSOR_PACKER_RE_HINT = (
        _S.RE_HINT,
        "This file has been packed by a simple compressor. Step over the next pushad, set a hardware breakpoint "
        "on the ESP address on access, run until the breakpoint, then find the jump that leaves the section. "
        "That is the OEP.",
    )
    DOT_NET_CORE_APP_BUNDLE_RE_HINT = (
        _S.RE_HINT,
        "The file is a .NET Core App Bundle carrying the .NET Core runtime in the overlay. Use ILSpy to extract "
        "the files; the main code is in a DLL.",
    )
    ELECTRON_PACKAGE_RE_HINT = (
        _S.RE_HINT,
        "This is an Electron package executable. Look for an *.asar archive in the resources folder, it might be "
        "a separate file.",
    )
    EMBEDDED_EXE_RE_HINT = (_S.RE_HINT, "This file contains an embedded executable, extract and analyse it.")
    FAKE_VMP_RE_HINT = (
        _S.RE_HINT,
        "This might be protected with an older VMProtect version, but VMProtect section names are often faked. "
        "Check if this is really the case.",
    )
    INNO_SETUP_RE_HINT = (
        _S.RE_HINT,
        "This file is an Inno Setup installer, use innounp -x -m to extract the files and an Inno Setup "
        "decompiler for CompiledCode.bin.",
    )
    INSTALLER_RE_HINT = (
        _S.RE_HINT,
        "This file is an installer, extract the install script and contained files, try 7zip or run the file "
        "and look into TEMP.",
    )
    NATIVE_DOT_NET_UNPACKING_RE_HINT = (
        _S.RE_HINT,
        "This sample might unpack managed (.NET) code at runtime. Dump the assembly with MegaDumper.",
    )
    NULLSOFT_INSTALLER_RE_HINT = (
        _S.RE_HINT,
        "This file is a Nullsoft installer, use 7zip v15.02 to extract the install script and contained files.",
    )
    PROCESS_DOPPELGANGING_RE_HINT = (
        _S.RE_HINT,
        "The sample has imports which can be abused for Process Doppelgänging.",
    )
    PYINSTALLER_RE_HINT = (
        _S.RE_HINT,
        "This file is a PyInstaller executable. Use pyinstxtractor to extract the Python bytecode, then "
        "decompile the main .pyc.",
    )
    SCRIPT_TO_EXE_WRAPPED_RE_HINT = (
        _S.RE_HINT,
        "This might be a Script-to-Exe wrapped file, check the resources for a compressed or plain script.",
    )
    SELF_EXTRACTING_ARCHIVE_RE_HINT = (
        _S.RE_HINT,
        "This file is a self-extracting archive. Extract the files with 7zip or run the file and collect them "
        "from TEMP.",
    )
    SFX_7ZIP_OLEG_RE_HINT = (
        _S.RE_HINT,
        "This file is a modified 7zip SFX module by Oleg N. Scherbakov, either the module itself or a "
        "self-extracting archive. Extract the files with 7zip or run the file and collect them from TEMP.",
    )
    THREAD_NAME_INJECTION_RE_HINT = (
        _S.RE_HINT,
        "The sample has imports which can be abused for Thread Name-Calling injection. Check if "
        "ETHREAD->ThreadName contains shellcode.",
    )
    UPX_PACKER_RE_HINT = (_S.RE_HINT, "This file seems to be packed with UPX, unpack it with upx -d <sample>.")

    # ---- MSDOS header ----
    COLLAPSED_MSDOS_HEADER = (_S.STRUCTURE,)
    RESERVED_MSDOS_FIELD = (_S.RESERVED,)
    LARGE_E_LFANEW = (_S.NON_DEFAULT,)
    RICH_CHECKSUM_INVALID = (_S.NON_DEFAULT,)

    # ---- COFF header ----
    TIME_DATE_TOO_LOW = (_S.NON_DEFAULT,)
    TIME_DATE_IN_FUTURE = (_S.NON_DEFAULT,)
    PE_HEADER_IN_OVERLAY = (_S.STRUCTURE,)
    COLLAPSED_OPTIONAL_HEADER = (_S.STRUCTURE,)
    TOO_LARGE_OPTIONAL_HEADER = (_S.WRONG,)
    TOO_MANY_SECTIONS = (_S.STRUCTURE,)
    SECTIONLESS = (_S.STRUCTURE,)
    DEPRECATED_NR_OF_SYMB = (_S.DEPRECATED,)
    DEPRECATED_PTR_TO_SYMB_TABLE = (_S.DEPRECATED,)
    RESERVED_FILE_CHARACTERISTICS = (_S.RESERVED,)
    DEPRECATED_FILE_CHARACTERISTICS = (_S.DEPRECATED,)

    # ---- Optional header ----
    UNKNOWN_MAGIC = (_S.WRONG,)
    TOO_LARGE_IMAGE_BASE = (_S.WRONG,)
    TOO_LARGE_SIZE_OF_CODE = (_S.WRONG,)
    TOO_LARGE_SIZE_OF_INIT_DATA = (_S.WRONG,)
    TOO_LARGE_SIZE_OF_UNINIT_DATA = (_S.WRONG,)
    TOO_LARGE_BASE_OF_DATA = (_S.WRONG,)
    TOO_LARGE_BASE_OF_CODE = (_S.WRONG,)
    ZERO_BASE_OF_DATA = (_S.WRONG,)
    ZERO_BASE_OF_CODE = (_S.WRONG,)
    ZERO_IMAGE_BASE = (_S.WRONG,)
    NON_DEFAULT_IMAGE_BASE = (_S.NON_DEFAULT,)
    NOT_MULT_OF_64K_IMAGE_BASE = (_S.WRONG,)
    NOT_SEC_ALIGNED_SIZE_OF_IMAGE = (_S.WRONG,)
    TOO_SMALL_SIZE_OF_HEADERS = (_S.WRONG,)
    NOT_FILEALIGNED_SIZE_OF_HEADERS = (_S.WRONG,)
    NON_DEFAULT_SIZE_OF_HEADERS = (_S.NON_DEFAULT,)
    RESERVED_DLL_CHARACTERISTICS = (_S.RESERVED,)
    RESERVED_WIN32VERSION = (_S.RESERVED,)
    RESERVED_LOADER_FLAGS = (_S.RESERVED,)
    NOT_POW_OF_TWO_FILEALIGN = (_S.WRONG,)
    TOO_SMALL_FILEALIGN = (_S.NON_DEFAULT,)
    TOO_LARGE_FILEALIGN = (_S.WRONG,)
    NON_DEFAULT_FILEALIGN = (_S.NON_DEFAULT,)
    TOO_SMALL_SECALIGN = (_S.WRONG,)
    LOW_ALIGNMENT_MODE = (_S.NON_DEFAULT,)

    # ---- Data directories ----
    UNUSUAL_DATA_DIR_NR = (_S.NON_DEFAULT,)
    NO_DATA_DIR = (_S.STRUCTURE,)
    RESERVED_DATA_DIR = (_S.RESERVED,)
    GLOBAL_PTR_SIZE_SET = (_S.WRONG,)
    INVALID_DATA_DIR = (_S.WRONG,)
    FRACTIONATED_DATADIR = (_S.STRUCTURE,)

    # ---- Entry point ----
    TOO_SMALL_EP = (_S.WRONG,)
    ZERO_EP = (_S.WRONG,)
    VIRTUAL_EP = (_S.WRONG,)
    EP_IN_LAST_SECTION = (_S.NON_DEFAULT,)
    EP_IN_WRITEABLE_SEC = (_S.NON_DEFAULT,)

    # ---- Section table ----
    VIRTUAL_SECTION_TABLE = (_S.STRUCTURE,)
    SEC_TABLE_IN_OVERLAY = (_S.STRUCTURE,)
    UNUSUAL_SEC_NAME = (_S.NON_DEFAULT,)
    EMPTY_SEC_NAME = (_S.NON_DEFAULT,)
    CTRL_SYMB_IN_SEC_NAME = (_S.NON_DEFAULT,)
    TOO_LARGE_SIZE_OF_RAW = (_S.WRONG,)
    EXTENDED_RELOC_VIOLATIONS = (_S.WRONG,)
    RESERVED_SEC_CHARACTERISTICS = (_S.RESERVED,)
    DEPRECATED_SEC_CHARACTERISTICS = (_S.DEPRECATED,)
    OBJECT_ONLY_SEC_CHARACTERISTICS = (_S.WRONG,)
    UNUSUAL_SEC_CHARACTERISTICS = (_S.NON_DEFAULT,)
    WRITE_AND_EXECUTE_SECTION = (_S.NON_DEFAULT,)
    WRITEABLE_ONLY_SECTION = (_S.NON_DEFAULT,)
    CHARACTERLESS_SECTION = (_S.NON_DEFAULT,)
    PHYSICALLY_SHUFFLED_SEC = (_S.STRUCTURE,)
    PHYSICALLY_OVERLAPPING_SEC = (_S.STRUCTURE,)
    PHYSICALLY_DUPLICATED_SEC = (_S.STRUCTURE,)
    VIRTUALLY_OVERLAPPING_SEC = (_S.STRUCTURE,)
    VIRTUALLY_DUPLICATED_SEC = (_S.STRUCTURE,)
    NOT_ASCENDING_SEC_VA = (_S.STRUCTURE,)
    DEPRECATED_PTR_OF_LINE_NR = (_S.DEPRECATED,)
    DEPRECATED_NR_OF_LINE_NR = (_S.DEPRECATED,)
    DEPRECATED_PTR_TO_RELOC = (_S.DEPRECATED,)
    DEPRECATED_NR_OF_RELOC = (_S.DEPRECATED,)
    ZERO_VIRTUAL_SIZE = (_S.WRONG,)
    ZERO_SIZE_OF_RAW_DATA = (_S.WRONG,)
    UNINIT_DATA_CONSTRAINTS_VIOLATION = (_S.WRONG,)
    NOT_FILEALIGNED_SIZE_OF_RAW = (_S.WRONG,)
    NOT_FILEALIGNED_PTR_TO_RAW = (_S.WRONG,)

    # ---- Imports ----
    KERNEL32_BY_ORDINAL_IMPORTS = (_S.NON_DEFAULT,)
    PROCESS_INJECTION_IMPORT = (_S.NON_DEFAULT,)
    VIRTUAL_IMPORTS = (_S.STRUCTURE,)


AnomalyField = Union[HeaderKey, DataDirectoryKey, SectionRecord, None]


@dataclass(frozen=True)
class Anomaly:
    """A single structural finding."""

    sub_type: AnomalySubType
    description: str
    field: AnomalyField = None

    @property
    def super_type(self) -> AnomalySuperType:
        return self.sub_type.super_type

    def field_name(self) -> Optional[str]:
        if self.field is None:
            return None
        if isinstance(self.field, SectionRecord):
            return str(self.field)
        return self.field.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.super_type.name,
            "subtype": self.sub_type.name,
            "field": self.field_name(),
            "description": self.description,
        }


@dataclass(frozen=True)
class AnomalyContext:
    """Read-only inputs shared by every check."""

    headers: PEHeaders
    model: SectionModel
    directories: DataDirectoryTable
    imports: Optional[Sequence[ImportedSymbol]] = None
    max_sections: int = DEFAULT_MAX_SECTIONS
    now: Optional[datetime] = None
    external: Tuple[Anomaly, ...] = ()
    rich_header: Optional[RichHeader] = None
    import_descriptors: Tuple[ImportDescriptor, ...] = ()

    @cached_property
    def overlay_offset(self) -> int:
        return address.overlay_offset(self.model)

    @property
    def file_length(self) -> int:
        return self.model.file_length

    def value(self, key: HeaderKey) -> int:
        v = self.headers.maybe_get(key)
        return 0 if v is None else v


def _hex(v: int) -> str:
    return f"0x{v:x}"


def _is_pow_of_two(v: int) -> bool:
    return v > 0 and (v & (v - 1)) == 0


def _flag_anomalies(
    value: int,
    table: Tuple[Flag, ...],
    key: HeaderKey,
    reserved: AnomalySubType,
    deprecated: Optional[AnomalySubType],
    what: str,
) -> List[Anomaly]:
    out: List[Anomaly] = []
    for flag in flags_set(value, table):
        if flag.reserved:
            out.append(Anomaly(reserved, f"Reserved {what} flag {flag.name} is set", key))
        if flag.deprecated and deprecated is not None:
            out.append(Anomaly(deprecated, f"Deprecated {what} flag {flag.name} is set", key))
    return out


# ---------------------------------------------------------------------------
# Checks (battery order)
# ---------------------------------------------------------------------------

A = AnomalySubType


def check_msdos_header(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    e_lfanew = ctx.value(HeaderKey.E_LFANEW)

    if e_lfanew < MSDOS_HEADER_SIZE:
        out.append(
            Anomaly(
                A.COLLAPSED_MSDOS_HEADER,
                f"Collapsed MSDOS Header, PE signature offset is at {_hex(e_lfanew)}",
                HeaderKey.E_LFANEW,
            )
        )
    for key in (HeaderKey.E_RES, HeaderKey.E_RES2):
        if ctx.value(key):
            out.append(Anomaly(A.RESERVED_MSDOS_FIELD, f"Reserved MSDOS field {key.value} is not zero", key))
    if ctx.file_length and e_lfanew > ctx.file_length // 2:
        out.append(
            Anomaly(
                A.LARGE_E_LFANEW,
                f"e_lfanew points beyond the first half of the file ({_hex(e_lfanew)})",
                HeaderKey.E_LFANEW,
            )
        )
    rich = ctx.rich_header
    if rich is not None and not rich.valid:
        out.append(
            Anomaly(
                A.RICH_CHECKSUM_INVALID,
                f"Rich header checksum is {_hex(rich.checksum)}, but should be {_hex(rich.computed_checksum)}",
            )
        )
    return out


def check_coff_header(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    h = ctx.headers

    pe_off = h.pe_header_offset
    if pe_off >= ctx.overlay_offset:
        out.append(
            Anomaly(A.PE_HEADER_IN_OVERLAY, f"PE header at {_hex(pe_off)} lies in the overlay", HeaderKey.E_LFANEW)
        )

    ts = ctx.value(HeaderKey.TIME_DATE_STAMP)
    now = ctx.now or datetime.now(timezone.utc)
    if ts < TIMESTAMP_FLOOR:
        out.append(
            Anomaly(A.TIME_DATE_TOO_LOW, f"Time date stamp is too far in the past ({_hex(ts)})", HeaderKey.TIME_DATE_STAMP)
        )
    elif ts > now.timestamp():
        out.append(
            Anomaly(A.TIME_DATE_IN_FUTURE, f"Time date stamp is in the future ({_hex(ts)})", HeaderKey.TIME_DATE_STAMP)
        )

    nr_sections = ctx.value(HeaderKey.NUMBER_OF_SECTIONS)
    if nr_sections == 0:
        out.append(Anomaly(A.SECTIONLESS, "Sectionless PE, no section table entries", HeaderKey.NUMBER_OF_SECTIONS))
    elif nr_sections > ctx.max_sections:
        out.append(
            Anomaly(
                A.TOO_MANY_SECTIONS,
                f"Section number is {nr_sections}, more than the usual maximum of {ctx.max_sections}",
                HeaderKey.NUMBER_OF_SECTIONS,
            )
        )

    if ctx.value(HeaderKey.NUMBER_OF_SYMBOLS):
        out.append(
            Anomaly(A.DEPRECATED_NR_OF_SYMB, "NumberOfSymbols is deprecated and should be zero", HeaderKey.NUMBER_OF_SYMBOLS)
        )
    if ctx.value(HeaderKey.POINTER_TO_SYMBOL_TABLE):
        out.append(
            Anomaly(
                A.DEPRECATED_PTR_TO_SYMB_TABLE,
                "PointerToSymbolTable is deprecated and should be zero",
                HeaderKey.POINTER_TO_SYMBOL_TABLE,
            )
        )

    out.extend(
        _flag_anomalies(
            ctx.value(HeaderKey.CHARACTERISTICS),
            FILE_CHARACTERISTICS,
            HeaderKey.CHARACTERISTICS,
            A.RESERVED_FILE_CHARACTERISTICS,
            A.DEPRECATED_FILE_CHARACTERISTICS,
            "file characteristics",
        )
    )

    size_opt = ctx.value(HeaderKey.SIZE_OF_OPTIONAL_HEADER)
    table_off = DATA_DIRECTORY_OFFSETS.get(h.magic)
    if table_off is not None:
        nr_dirs = min(ctx.value(HeaderKey.NUMBER_OF_RVA_AND_SIZES), len(DataDirectoryKey))
        needed = table_off + 8 * nr_dirs
        if size_opt < needed:
            out.append(
                Anomaly(
                    A.COLLAPSED_OPTIONAL_HEADER,
                    f"Collapsed Optional Header, SizeOfOptionalHeader is {size_opt} but {needed} bytes are needed "
                    f"for {nr_dirs} data directories",
                    HeaderKey.SIZE_OF_OPTIONAL_HEADER,
                )
            )
        elif h.optional_header_offset + needed > ctx.file_length:
            available = max(ctx.file_length - h.optional_header_offset, 0)
            out.append(
                Anomaly(
                    A.COLLAPSED_OPTIONAL_HEADER,
                    f"Collapsed Optional Header, only {available} of {needed} bytes are inside the file",
                    HeaderKey.SIZE_OF_OPTIONAL_HEADER,
                )
            )
    if h.section_table_offset >= ctx.file_length:
        out.append(
            Anomaly(
                A.TOO_LARGE_OPTIONAL_HEADER,
                f"SizeOfOptionalHeader ({size_opt}) places the section table beyond the end of the file",
                HeaderKey.SIZE_OF_OPTIONAL_HEADER,
            )
        )
    return out


def check_optional_header(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    h = ctx.headers
    model = ctx.model

    if h.magic is MagicNumber.UNKNOWN:
        out.append(
            Anomaly(
                A.UNKNOWN_MAGIC,
                f"Optional Header magic {_hex(ctx.value(HeaderKey.MAGIC))} is neither PE32, PE32+ nor ROM",
                HeaderKey.MAGIC,
            )
        )

    image_base = ctx.value(HeaderKey.IMAGE_BASE)
    size_of_image = ctx.value(HeaderKey.SIZE_OF_IMAGE)
    if image_base == 0:
        out.append(Anomaly(A.ZERO_IMAGE_BASE, "ImageBase is zero", HeaderKey.IMAGE_BASE))
    elif image_base % 0x10000:
        out.append(
            Anomaly(A.NOT_MULT_OF_64K_IMAGE_BASE, f"ImageBase {_hex(image_base)} is not a multiple of 64K", HeaderKey.IMAGE_BASE)
        )
    if h.magic is MagicNumber.PE32 and image_base + size_of_image >= 0x80000000:
        out.append(
            Anomaly(
                A.TOO_LARGE_IMAGE_BASE,
                f"ImageBase + SizeOfImage ({_hex(image_base + size_of_image)}) reaches kernel space",
                HeaderKey.IMAGE_BASE,
            )
        )
    if image_base and image_base not in DEFAULT_IMAGE_BASES:
        out.append(
            Anomaly(A.NON_DEFAULT_IMAGE_BASE, f"ImageBase {_hex(image_base)} is not a default value", HeaderKey.IMAGE_BASE)
        )

    sec_align = ctx.value(HeaderKey.SECTION_ALIGNMENT)
    file_align = ctx.value(HeaderKey.FILE_ALIGNMENT)
    if sec_align and size_of_image % sec_align:
        out.append(
            Anomaly(
                A.NOT_SEC_ALIGNED_SIZE_OF_IMAGE,
                f"SizeOfImage {_hex(size_of_image)} is not a multiple of SectionAlignment {_hex(sec_align)}",
                HeaderKey.SIZE_OF_IMAGE,
            )
        )

    size_of_headers = ctx.value(HeaderKey.SIZE_OF_HEADERS)
    headers_end = h.section_table_offset + model.table_size
    if size_of_headers < headers_end:
        out.append(
            Anomaly(
                A.TOO_SMALL_SIZE_OF_HEADERS,
                f"SizeOfHeaders {_hex(size_of_headers)} does not cover the section table ending at {_hex(headers_end)}",
                HeaderKey.SIZE_OF_HEADERS,
            )
        )
    if file_align and size_of_headers % file_align:
        out.append(
            Anomaly(
                A.NOT_FILEALIGNED_SIZE_OF_HEADERS,
                f"SizeOfHeaders {_hex(size_of_headers)} is not a multiple of FileAlignment {_hex(file_align)}",
                HeaderKey.SIZE_OF_HEADERS,
            )
        )
    if file_align:
        expected = -(-headers_end // file_align) * file_align
        if size_of_headers > expected:
            out.append(
                Anomaly(
                    A.NON_DEFAULT_SIZE_OF_HEADERS,
                    f"SizeOfHeaders {_hex(size_of_headers)} is larger than the rounded header size {_hex(expected)}",
                    HeaderKey.SIZE_OF_HEADERS,
                )
            )

    if not _is_pow_of_two(file_align):
        out.append(
            Anomaly(
                A.NOT_POW_OF_TWO_FILEALIGN,
                f"FileAlignment {_hex(file_align)} is not a power of two",
                HeaderKey.FILE_ALIGNMENT,
            )
        )
    if file_align < 0x200:
        out.append(
            Anomaly(
                A.TOO_SMALL_FILEALIGN,
                f"File Alignment must be between 0x200 and 0x10000 (64 K), but is {_hex(file_align)}",
                HeaderKey.FILE_ALIGNMENT,
            )
        )
    elif file_align > 0x10000:
        out.append(
            Anomaly(
                A.TOO_LARGE_FILEALIGN,
                f"File Alignment must be between 0x200 and 0x10000 (64 K), but is {_hex(file_align)}",
                HeaderKey.FILE_ALIGNMENT,
            )
        )
    elif file_align != 0x200 and _is_pow_of_two(file_align):
        out.append(
            Anomaly(A.NON_DEFAULT_FILEALIGN, f"FileAlignment {_hex(file_align)} is not the default 0x200", HeaderKey.FILE_ALIGNMENT)
        )
    if sec_align < file_align:
        out.append(
            Anomaly(
                A.TOO_SMALL_SECALIGN,
                f"SectionAlignment {_hex(sec_align)} is smaller than FileAlignment {_hex(file_align)}",
                HeaderKey.SECTION_ALIGNMENT,
            )
        )
    if model.low_alignment_mode:
        out.append(
            Anomaly(
                A.LOW_ALIGNMENT_MODE,
                f"Low alignment mode, FileAlignment and SectionAlignment are both {_hex(file_align)}",
                HeaderKey.FILE_ALIGNMENT,
            )
        )

    if ctx.value(HeaderKey.WIN32_VERSION_VALUE):
        out.append(Anomaly(A.RESERVED_WIN32VERSION, "Reserved Win32VersionValue is set", HeaderKey.WIN32_VERSION_VALUE))
    if ctx.value(HeaderKey.LOADER_FLAGS):
        out.append(Anomaly(A.RESERVED_LOADER_FLAGS, "Reserved LoaderFlags are set", HeaderKey.LOADER_FLAGS))

    out.extend(
        _flag_anomalies(
            ctx.value(HeaderKey.DLL_CHARACTERISTICS),
            DLL_CHARACTERISTICS,
            HeaderKey.DLL_CHARACTERISTICS,
            A.RESERVED_DLL_CHARACTERISTICS,
            None,
            "DLL characteristics",
        )
    )

    for key, sub in (
        (HeaderKey.SIZE_OF_CODE, A.TOO_LARGE_SIZE_OF_CODE),
        (HeaderKey.SIZE_OF_INITIALIZED_DATA, A.TOO_LARGE_SIZE_OF_INIT_DATA),
        (HeaderKey.SIZE_OF_UNINITIALIZED_DATA, A.TOO_LARGE_SIZE_OF_UNINIT_DATA),
    ):
        v = ctx.value(key)
        if v > size_of_image:
            out.append(Anomaly(sub, f"{key.value} {_hex(v)} is larger than SizeOfImage {_hex(size_of_image)}", key))

    has_code = any(s.characteristics & IMAGE_SCN_CNT_CODE for s in model)
    has_data = any(s.characteristics & IMAGE_SCN_CNT_INITIALIZED_DATA for s in model)
    checks = [(HeaderKey.BASE_OF_CODE, has_code, A.ZERO_BASE_OF_CODE, A.TOO_LARGE_BASE_OF_CODE)]
    if HeaderKey.BASE_OF_DATA in h:
        checks.append((HeaderKey.BASE_OF_DATA, has_data, A.ZERO_BASE_OF_DATA, A.TOO_LARGE_BASE_OF_DATA))
    for key, present, zero_sub, large_sub in checks:
        v = ctx.value(key)
        if v == 0 and present:
            out.append(Anomaly(zero_sub, f"{key.value} is zero although a matching section exists", key))
        elif v >= size_of_image > 0:
            out.append(Anomaly(large_sub, f"{key.value} {_hex(v)} lies beyond SizeOfImage {_hex(size_of_image)}", key))
    return out


def check_data_directories(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    nr = ctx.value(HeaderKey.NUMBER_OF_RVA_AND_SIZES)

    if nr != len(DataDirectoryKey):
        out.append(
            Anomaly(
                A.UNUSUAL_DATA_DIR_NR,
                f"NumberOfRvaAndSizes is {nr} instead of {len(DataDirectoryKey)}",
                HeaderKey.NUMBER_OF_RVA_AND_SIZES,
            )
        )
    if len(ctx.directories) == 0:
        out.append(Anomaly(A.NO_DATA_DIR, "No data directory present", HeaderKey.NUMBER_OF_RVA_AND_SIZES))

    for entry in ctx.directories:
        if entry.key.is_reserved:
            out.append(
                Anomaly(A.RESERVED_DATA_DIR, f"Reserved data directory {entry.key.name} is set", entry.key)
            )
        if entry.key is DataDirectoryKey.GLOBAL_PTR and entry.size:
            out.append(
                Anomaly(A.GLOBAL_PTR_SIZE_SET, f"Size of GLOBAL_PTR directory must be zero, is {entry.size}", entry.key)
            )
        if entry.file_offset is None:
            out.append(
                Anomaly(
                    A.INVALID_DATA_DIR,
                    f"Data directory {entry.key.name} at {_hex(entry.virtual_address)} points outside the file",
                    entry.key,
                )
            )
        elif is_fractionated(ctx.model, entry):
            out.append(
                Anomaly(
                    A.FRACTIONATED_DATADIR,
                    f"Data directory {entry.key.name} is fractionated, it extends beyond {entry.owning_section}",
                    entry.key,
                )
            )
    return out


def check_entry_point(ctx: AnomalyContext) -> List[Anomaly]:
    key = HeaderKey.ADDRESS_OF_ENTRY_POINT
    model = ctx.model
    ep = ctx.value(key)

    if ep == 0:
        return [Anomaly(A.ZERO_EP, "Entry point is zero, only valid for DLLs without entry function", key)]

    section = address.section_for_rva(model, ep)
    if section is None:
        if ep < model.size_of_headers:
            return [Anomaly(A.TOO_SMALL_EP, f"Entry point {_hex(ep)} lies within the headers", key)]
        return [Anomaly(A.VIRTUAL_EP, f"Entry point {_hex(ep)} is not mapped by any section", key)]

    out: List[Anomaly] = []
    low = model.low_alignment_mode
    rel = ep - address.aligned_virtual_address(section, low)
    if rel >= address.physical_size(model, section):
        out.append(
            Anomaly(A.VIRTUAL_EP, f"Entry point {_hex(ep)} lies in {section} beyond its physical data", key)
        )
    if section.is_writeable:
        out.append(Anomaly(A.EP_IN_WRITEABLE_SEC, f"Entry point {_hex(ep)} is in writeable {section}", key))
    if len(model) > 1 and section.number == len(model):
        out.append(Anomaly(A.EP_IN_LAST_SECTION, f"Entry point {_hex(ep)} is in the last section, {section}", key))
    return out


def check_section_table(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    model = ctx.model
    if model.truncated:
        out.append(
            Anomaly(
                A.VIRTUAL_SECTION_TABLE,
                f"Section table is truncated, {len(model)} of {model.declared_count} entries are readable",
                HeaderKey.NUMBER_OF_SECTIONS,
            )
        )
    if model.declared_count and model.table_offset >= ctx.overlay_offset:
        out.append(
            Anomaly(
                A.SEC_TABLE_IN_OVERLAY,
                f"Section table at {_hex(model.table_offset)} lies in the overlay",
                HeaderKey.SIZE_OF_OPTIONAL_HEADER,
            )
        )
    return out


_USUAL_SECTION_NAMES = frozenset(
    {
        ".text", ".data", ".rdata", ".bss", ".idata", ".edata", ".pdata", ".rsrc", ".reloc", ".tls",
        ".debug", ".CRT", ".didat", ".gfids", ".00cfg", ".xdata", ".sxdata", ".textbss", ".orpc",
        ".cormeta", ".drectve", ".sbss", ".sdata", ".srdata", ".vsdata", ".tlsc", ".rodata", "CODE",
        "DATA", "BSS", ".voltbl", ".retplne", ".mrdata", ".ndata", "INIT", "PAGE", ".buildid",
    }
)


def _has_ctrl_symbols(name: bytes) -> bool:
    return any(b < 0x20 or b == 0x7F for b in name.rstrip(b"\x00"))


def check_section_fields(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    model = ctx.model
    fa = ctx.value(HeaderKey.FILE_ALIGNMENT)

    for s in model:
        stripped = s.name.rstrip(b"\x00")
        if not stripped:
            out.append(Anomaly(A.EMPTY_SEC_NAME, f"Section name of {s} is empty", s))
        elif _has_ctrl_symbols(stripped):
            out.append(Anomaly(A.CTRL_SYMB_IN_SEC_NAME, f"Section name of {s} contains control symbols", s))
        elif s.display_name not in _USUAL_SECTION_NAMES:
            out.append(Anomaly(A.UNUSUAL_SEC_NAME, f"Section name '{s.display_name}' is unusual", s))

        if s.virtual_size == 0:
            out.append(Anomaly(A.ZERO_VIRTUAL_SIZE, f"VirtualSize of {s} is zero", s))
        if s.raw_size == 0 and not s.is_bss:
            out.append(Anomaly(A.ZERO_SIZE_OF_RAW_DATA, f"SizeOfRawData of {s} is zero", s))

        start = address.aligned_pointer_to_raw(s, model.low_alignment_mode)
        if s.raw_size and start + s.raw_size > ctx.file_length:
            out.append(
                Anomaly(
                    A.TOO_LARGE_SIZE_OF_RAW,
                    f"SizeOfRawData {_hex(s.raw_size)} of {s} extends beyond the end of the file",
                    s,
                )
            )
        if fa and s.raw_pointer % fa:
            out.append(
                Anomaly(A.NOT_FILEALIGNED_PTR_TO_RAW, f"PointerToRawData {_hex(s.raw_pointer)} of {s} is not file aligned", s)
            )
        if fa and s.raw_size % fa:
            out.append(
                Anomaly(A.NOT_FILEALIGNED_SIZE_OF_RAW, f"SizeOfRawData {_hex(s.raw_size)} of {s} is not file aligned", s)
            )

        if s.pointer_to_line_numbers:
            out.append(Anomaly(A.DEPRECATED_PTR_OF_LINE_NR, f"PointerToLinenumbers of {s} is deprecated but set", s))
        if s.number_of_line_numbers:
            out.append(Anomaly(A.DEPRECATED_NR_OF_LINE_NR, f"NumberOfLinenumbers of {s} is deprecated but set", s))
        if s.pointer_to_relocations:
            out.append(Anomaly(A.DEPRECATED_PTR_TO_RELOC, f"PointerToRelocations of {s} should be zero for images", s))
        if s.number_of_relocations:
            out.append(Anomaly(A.DEPRECATED_NR_OF_RELOC, f"NumberOfRelocations of {s} should be zero for images", s))

        if s.characteristics & IMAGE_SCN_LNK_NRELOC_OVFL and s.number_of_relocations != 0xFFFF:
            out.append(
                Anomaly(
                    A.EXTENDED_RELOC_VIOLATIONS,
                    f"{s} has IMAGE_SCN_LNK_NRELOC_OVFL set but NumberOfRelocations is not 0xffff",
                    s,
                )
            )

        only_uninit = s.is_bss and not s.characteristics & (IMAGE_SCN_CNT_CODE | IMAGE_SCN_CNT_INITIALIZED_DATA)
        if only_uninit and (s.raw_pointer or s.raw_size):
            out.append(
                Anomaly(
                    A.UNINIT_DATA_CONSTRAINTS_VIOLATION,
                    f"{s} contains only uninitialized data but has PointerToRawData or SizeOfRawData set",
                    s,
                )
            )
    return out


_CONVENTIONAL_FLAGS: Dict[str, int] = {
    ".text": IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_MEM_READ,
    ".data": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE,
    ".rdata": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ,
    ".bss": IMAGE_SCN_CNT_UNINITIALIZED_DATA | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE,
    ".idata": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ,
    ".edata": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ,
    ".pdata": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ,
    ".rsrc": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ,
    ".reloc": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_DISCARDABLE,
    ".tls": IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE,
}


def check_section_characteristics(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    for s in ctx.model:
        ch = s.characteristics
        for flag in flags_set(ch, SECTION_CHARACTERISTICS):
            if flag.reserved:
                out.append(Anomaly(A.RESERVED_SEC_CHARACTERISTICS, f"Reserved flag {flag.name} is set in {s}", s))
            if flag.deprecated:
                out.append(Anomaly(A.DEPRECATED_SEC_CHARACTERISTICS, f"Deprecated flag {flag.name} is set in {s}", s))
        if ch & (OBJECT_ONLY_SECTION_FLAGS | IMAGE_SCN_ALIGN_MASK):
            out.append(
                Anomaly(
                    A.OBJECT_ONLY_SEC_CHARACTERISTICS,
                    f"{s} has flags only valid for object files ({_hex(ch & (OBJECT_ONLY_SECTION_FLAGS | IMAGE_SCN_ALIGN_MASK))})",
                    s,
                )
            )
        if ch == 0:
            out.append(Anomaly(A.CHARACTERLESS_SECTION, f"{s} has no characteristics", s))
        elif s.is_writeable and s.is_executable:
            out.append(Anomaly(A.WRITE_AND_EXECUTE_SECTION, f"{s} is writeable and executable", s))
        elif s.is_writeable and not ch & IMAGE_SCN_MEM_READ:
            out.append(Anomaly(A.WRITEABLE_ONLY_SECTION, f"{s} is writeable only", s))

        conventional = _CONVENTIONAL_FLAGS.get(s.display_name)
        if conventional is not None and (ch & conventional) != conventional:
            missing = [f.name for f in flags_set(conventional & ~ch, SECTION_CHARACTERISTICS)]
            out.append(
                Anomaly(
                    A.UNUSUAL_SEC_CHARACTERISTICS,
                    f"{s} lacks the usual characteristics {', '.join(missing)}",
                    s,
                )
            )
    return out


def _pair_anomalies(
    ranges: List[Tuple[SectionRecord, int, int]],
    overlapping: AnomalySubType,
    duplicated: AnomalySubType,
    space: str,
) -> List[Anomaly]:
    # Sweep in start order; a pair is reported in table order.
    by_start = sorted(range(len(ranges)), key=lambda i: ranges[i][1])
    pairs: List[Tuple[int, int]] = []
    for pos, i in enumerate(by_start):
        a_end = ranges[i][2]
        for j in by_start[pos + 1 :]:
            if ranges[j][1] >= a_end:
                break
            pairs.append((min(i, j), max(i, j)))

    out: List[Anomaly] = []
    for i, j in sorted(pairs):
        a, a_start, a_end = ranges[i]
        b, b_start, b_end = ranges[j]
        if a_start == b_start and a_end == b_end:
            out.append(Anomaly(duplicated, f"{b} has the same {space} location as {a}", b))
        else:
            out.append(Anomaly(overlapping, f"{b} {space}ly overlaps with {a}", b))
    return out


def check_section_layout(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []
    model = ctx.model

    raw_ptrs = [s.raw_pointer for s in model if s.raw_pointer and s.raw_size]
    if any(b < a for a, b in zip(raw_ptrs, raw_ptrs[1:])):
        out.append(Anomaly(A.PHYSICALLY_SHUFFLED_SEC, "Section order in the file differs from the section table order"))

    vas = [s.virtual_address for s in model]
    if any(b <= a for a, b in zip(vas, vas[1:])):
        out.append(Anomaly(A.NOT_ASCENDING_SEC_VA, "Section virtual addresses are not in ascending order"))

    physical = []
    for s in model:
        start, end = address.physical_range(model, s)
        if end > start:
            physical.append((s, start, end))
    out.extend(_pair_anomalies(physical, A.PHYSICALLY_OVERLAPPING_SEC, A.PHYSICALLY_DUPLICATED_SEC, "physical"))

    virtual = []
    for s in model:
        start, end = address.virtual_range(model, s)
        if end > start:
            virtual.append((s, start, end))
    out.extend(_pair_anomalies(virtual, A.VIRTUALLY_OVERLAPPING_SEC, A.VIRTUALLY_DUPLICATED_SEC, "virtual"))
    return out


_INJECTION_APIS = (
    "CreateRemoteThread",
    "WriteProcessMemory",
    "VirtualAllocEx",
    "VirtualProtectEx",
    "QueueUserAPC",
    "SetThreadContext",
    "NtUnmapViewOfSection",
    "ZwUnmapViewOfSection",
)


def _in_file(ctx: AnomalyContext, rva: int) -> bool:
    offset = address.rva_to_file_offset(ctx.model, rva)
    return offset is not None and offset < ctx.file_length


def check_imports(ctx: AnomalyContext) -> List[Anomaly]:
    out: List[Anomaly] = []

    for desc in ctx.import_descriptors:
        unmapped = [rva for rva in desc.rvas if not _in_file(ctx, rva)]
        if unmapped:
            out.append(
                Anomaly(
                    A.VIRTUAL_IMPORTS,
                    f"Import descriptor of {desc.dll} points to virtual space at "
                    f"{', '.join(_hex(rva) for rva in unmapped)}",
                    DataDirectoryKey.IMPORT,
                )
            )

    if ctx.imports is None:
        return out

    by_ordinal = [i for i in ctx.imports if i.dll.lower() == "kernel32.dll" and i.name is None]
    if by_ordinal:
        ordinals = ", ".join(str(i.ordinal) for i in by_ordinal[:8])
        out.append(
            Anomaly(
                A.KERNEL32_BY_ORDINAL_IMPORTS,
                f"{len(by_ordinal)} KERNEL32.dll import(s) by ordinal ({ordinals})",
                DataDirectoryKey.IMPORT,
            )
        )

    names = {i.name.lower() for i in ctx.imports if i.name}
    for api in _INJECTION_APIS:
        if api.lower() in names or (api + "a").lower() in names or (api + "w").lower() in names:
            out.append(
                Anomaly(A.PROCESS_INJECTION_IMPORT, f"Import {api} is used for process injection", DataDirectoryKey.IMPORT)
            )
    return out


CHECKS: Tuple[Tuple[str, Callable[[AnomalyContext], List[Anomaly]]], ...] = (
    ("msdos_header", check_msdos_header),
    ("coff_header", check_coff_header),
    ("optional_header", check_optional_header),
    ("data_directories", check_data_directories),
    ("entry_point", check_entry_point),
    ("section_table", check_section_table),
    ("section_fields", check_section_fields),
    ("section_characteristics", check_section_characteristics),
    ("section_layout", check_section_layout),
    ("imports", check_imports),
)


def _disabled_subtypes(rules: Optional[Dict[str, Any]]) -> frozenset:
    overrides = (rules or {}).get("overrides", {})
    if not isinstance(overrides, dict):
        return frozenset()
    disabled = set()
    for name, o in overrides.items():
        if isinstance(o, dict) and o.get("enabled") is False:
            disabled.add(str(name).upper())
    return frozenset(disabled)


def scan_anomalies(ctx: AnomalyContext, rules: Optional[Dict[str, Any]] = None) -> List[Anomaly]:
    """Run the battery and return the anomaly list in battery order.

    Anomalies supplied through ``ctx.external`` are appended after the
    battery's own findings. Sub types disabled in *rules* are dropped.
    """

    disabled = _disabled_subtypes(rules)
    found: List[Anomaly] = []
    for name, check in CHECKS:
        hits = check(ctx)
        logger.debug("Anomaly check %s produced %d finding(s)", name, len(hits))
        found.extend(hits)
    found.extend(ctx.external)
    return [a for a in found if a.sub_type.name not in disabled]


def build_context(
    headers: PEHeaders,
    model: SectionModel,
    directories: DataDirectoryTable,
    *,
    imports: Optional[Iterable[ImportedSymbol]] = None,
    rules: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    external: Iterable[Anomaly] = (),
    rich_header: Optional[RichHeader] = None,
    import_descriptors: Iterable[ImportDescriptor] = (),
) -> AnomalyContext:
    r = rules if isinstance(rules, dict) else {}
    try:
        max_sections = int(r.get("max_sections", DEFAULT_MAX_SECTIONS))
    except (TypeError, ValueError):
        max_sections = DEFAULT_MAX_SECTIONS
    return AnomalyContext(
        headers=headers,
        model=model,
        directories=directories,
        imports=tuple(imports) if imports is not None else None,
        max_sections=max_sections,
        now=now if now is not None else datetime.now(timezone.utc),
        external=tuple(external),
        rich_header=rich_header,
        import_descriptors=tuple(import_descriptors),
    )
