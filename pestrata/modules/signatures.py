#!/usr/bin/env python
# -*- coding: utf-8 -*-
# @QK

"""Byte-signature scanning at fixed PE locations (YARA).

One rules file per scan location lives in the signatures directory:

- ``entry_point.yar``: matched against the bytes at the entry point
- ``msdos_stub.yar``: matched against everything before the PE header
- ``overlay.yar``: matched against the overlay

Each rule names its signature through ``meta: name = "..."``; rules without
it fall back to the rule identifier.

YARA is optional at runtime: if ``yara-python`` is not installed, scanning
raises a clear ImportError and the analyzer records it as an error field.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from . import address
from .headers import HeaderKey, PEHeaders
from .sections import SectionModel
from .signals import ScanLocation, SignatureMatch

try:
    import yara  # type: ignore
except Exception:  # pragma: no cover
    yara = None  # type: ignore

logger = logging.getLogger(__name__)

ENTRY_POINT_WINDOW = 4 * 1024
OVERLAY_WINDOW = 16 * 1024 * 1024
MATCH_TIMEOUT = 60


def _require_yara() -> Any:
    if yara is None:
        raise ImportError(
            "Missing dependency 'yara-python'. Install it with: pip install yara-python "
            "(or install PEStrata requirements), or run PEStrata with --no-signatures."
        )
    return yara


def rules_file(rules_dir: str, location: ScanLocation) -> str:
    return os.path.join(str(rules_dir), f"{location.value}.yar")


def compile_rules(rules_dir: str) -> Dict[ScanLocation, Any]:
    """Compile the per-location rule files that exist in *rules_dir*."""
    y = _require_yara()
    compiled: Dict[ScanLocation, Any] = {}
    for loc in ScanLocation:
        path = rules_file(rules_dir, loc)
        if not os.path.isfile(path):
            logger.debug("No signature file for %s at %s", loc.value, path)
            continue
        compiled[loc] = y.compile(filepath=path)
    return compiled


def scan_windows(data: bytes, headers: PEHeaders, model: SectionModel) -> Dict[ScanLocation, Tuple[int, bytes]]:
    """Return ``{location: (file_offset, bytes)}`` for every location present."""
    windows: Dict[ScanLocation, Tuple[int, bytes]] = {}

    ep = headers.get(HeaderKey.ADDRESS_OF_ENTRY_POINT)
    ep_offset = address.rva_to_file_offset(model, ep) if ep else None
    if ep_offset is not None and ep_offset < len(data):
        windows[ScanLocation.ENTRY_POINT] = (ep_offset, data[ep_offset : ep_offset + ENTRY_POINT_WINDOW])

    pe_off = min(headers.pe_header_offset, len(data))
    if pe_off > 0:
        windows[ScanLocation.MSDOS_STUB] = (0, data[:pe_off])

    ov = address.overlay_offset(model)
    if ov < len(data):
        windows[ScanLocation.OVERLAY] = (ov, data[ov : ov + OVERLAY_WINDOW])
    return windows


def _first_offset(match: Any) -> int:
    offsets: List[int] = []
    for s in getattr(match, "strings", None) or []:
        if isinstance(s, tuple):
            # yara-python < 4.3: (offset, identifier, data)
            offsets.append(int(s[0]))
        else:
            for inst in getattr(s, "instances", None) or []:
                offsets.append(int(inst.offset))
    return min(offsets) if offsets else 0


def match_window(rules: Any, location: ScanLocation, base: int, window: bytes) -> List[SignatureMatch]:
    out: List[SignatureMatch] = []
    for m in rules.match(data=window, timeout=MATCH_TIMEOUT):
        name = str((getattr(m, "meta", None) or {}).get("name") or m.rule)
        out.append(SignatureMatch(location=location, name=name, offset=base + _first_offset(m)))
    return out


def scan(
    data: bytes,
    headers: PEHeaders,
    model: SectionModel,
    rules: Dict[ScanLocation, Any],
) -> List[SignatureMatch]:
    """Match each location's rules against its window.

    Results are sorted by (location, offset, name) so reports are stable.
    """
    found: List[SignatureMatch] = []
    for loc, (base, window) in scan_windows(data, headers, model).items():
        compiled = rules.get(loc)
        if compiled is None or not window:
            continue
        found.extend(match_window(compiled, loc, base, window))

    order = {loc: i for i, loc in enumerate(ScanLocation)}
    found.sort(key=lambda m: (order[m.location], m.offset, m.name))
    return found


def list_rules(rules_dir: str) -> List[Dict[str, Optional[str]]]:
    """List rule names per location without compiling (plain text scan)."""
    out: List[Dict[str, Optional[str]]] = []
    for loc in ScanLocation:
        path = rules_file(rules_dir, loc)
        if not os.path.isfile(path):
            continue
        rule: Optional[str] = None
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            for line in f:
                stripped = line.strip()
                if stripped.startswith("rule "):
                    rule = stripped.split()[1].rstrip("{").strip()
                elif stripped.startswith("name") and "=" in stripped and rule is not None:
                    name = stripped.split("=", 1)[1].strip().strip('"')
                    out.append({"location": loc.value, "rule": rule, "name": name})
                    rule = None
    return out
