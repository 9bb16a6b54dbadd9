#!/usr/bin/env python
# -*- coding: utf-8 -*-
# @QK

"""Side signals consumed by the RE-hint rules.

pefile decodes the import, resource and debug directories; this module
flattens what the hint rules need into small immutable records:

- imported symbols (regular and delay-load imports)
- import descriptor RVAs
- named resources with their location and first bytes
- the CodeView PDB path

Every collector is best-effort and returns an empty result when pefile could
not decode the directory.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

RESOURCE_HEAD_SIZE = 16


class ScanLocation(enum.Enum):
    ENTRY_POINT = "entry_point"
    MSDOS_STUB = "msdos_stub"
    OVERLAY = "overlay"

    @property
    def label(self) -> str:
        return {
            ScanLocation.ENTRY_POINT: "Entry point",
            ScanLocation.MSDOS_STUB: "MSDOS stub",
            ScanLocation.OVERLAY: "Overlay",
        }[self]


@dataclass(frozen=True)
class SignatureMatch:
    location: ScanLocation
    name: str
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {"location": self.location.value, "name": self.name, "offset": self.offset}


@dataclass(frozen=True)
class ResourceSignal:
    """A resource leaf: name (string or ``ID: n``), file offset, size, first bytes."""

    name: str
    offset: int
    size: int
    head: bytes = b""


@dataclass(frozen=True)
class ImportedSymbol:
    dll: str
    name: Optional[str]
    ordinal: Optional[int] = None


def _decode(raw: Any) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("ascii", errors="replace")
    return str(raw)


def collect_imports(pe) -> List[ImportedSymbol]:
    """Regular and delay-load imports in table order."""
    out: List[ImportedSymbol] = []
    for attr in ("DIRECTORY_ENTRY_IMPORT", "DIRECTORY_ENTRY_DELAY_IMPORT"):
        for entry in getattr(pe, attr, None) or []:
            dll = _decode(getattr(entry, "dll", b""))
            for imp in getattr(entry, "imports", None) or []:
                name = imp.name.decode("ascii", errors="replace") if imp.name else None
                out.append(ImportedSymbol(dll=dll, name=name, ordinal=getattr(imp, "ordinal", None)))
    return out


@dataclass(frozen=True)
class ImportDescriptor:
    """RVAs of one import descriptor: DLL name, lookup table and address table."""

    dll: str
    name_rva: int
    lookup_rva: int
    iat_rva: int

    @property
    def rvas(self) -> List[int]:
        return [rva for rva in (self.name_rva, self.lookup_rva, self.iat_rva) if rva]


def collect_import_descriptors(pe) -> List[ImportDescriptor]:
    """Descriptors of the regular import directory in table order."""
    out: List[ImportDescriptor] = []
    for entry in getattr(pe, "DIRECTORY_ENTRY_IMPORT", None) or []:
        desc = getattr(entry, "struct", None)
        if desc is None:
            continue
        out.append(
            ImportDescriptor(
                dll=_decode(getattr(entry, "dll", b"")),
                name_rva=int(getattr(desc, "Name", 0) or 0),
                lookup_rva=int(getattr(desc, "OriginalFirstThunk", 0) or 0),
                iat_rva=int(getattr(desc, "FirstThunk", 0) or 0),
            )
        )
    return out


def _entry_name(entry) -> str:
    if getattr(entry, "name", None) is not None:
        return str(entry.name)
    return f"ID: {entry.struct.Id}"


def collect_resources(pe, head_size: int = RESOURCE_HEAD_SIZE) -> List[ResourceSignal]:
    """Flatten the resource tree to (name, offset, size, head) leaves.

    The name is taken from the second tree level, which is where resource
    compilers put script and payload names.
    """
    out: List[ResourceSignal] = []
    root = getattr(pe, "DIRECTORY_ENTRY_RESOURCE", None)
    if root is None:
        return out

    for rtype in getattr(root, "entries", None) or []:
        type_dir = getattr(rtype, "directory", None)
        if type_dir is None:
            continue
        for rname in type_dir.entries:
            name = _entry_name(rname)
            name_dir = getattr(rname, "directory", None)
            if name_dir is None:
                continue
            for rlang in name_dir.entries:
                data = getattr(rlang, "data", None)
                if data is None:
                    continue
                rva = data.struct.OffsetToData
                size = data.struct.Size
                try:
                    offset = pe.get_offset_from_rva(rva)
                except Exception:
                    logger.debug("Resource %s at RVA 0x%x has no file offset", name, rva)
                    continue
                try:
                    head = pe.get_data(rva, min(size, head_size))
                except Exception:
                    head = b""
                out.append(ResourceSignal(name=name, offset=int(offset), size=int(size), head=bytes(head)))
    return out


def collect_pdb_path(pe) -> Optional[str]:
    """Return the CodeView PDB file name, if the debug directory has one."""
    for dbg in getattr(pe, "DIRECTORY_ENTRY_DEBUG", None) or []:
        entry = getattr(dbg, "entry", None)
        raw = getattr(entry, "PdbFileName", None)
        if raw:
            return _decode(raw).rstrip("\x00")
    return None
