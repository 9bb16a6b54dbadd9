"""Utility helpers used across PEStrata.

These functions are shared across the CLI and the analyzer.

Guiding principles:
- Keep helpers small and testable.
- No global caches, no background threads.
- Return "unknown" / empty values in non-critical paths instead of raising.
  Loading the PE itself is the exception: a file that is not a PE raises
  :class:`~pestrata.modules.headers.NotPEFileError`.

@QK
"""

from __future__ import annotations

import hashlib
import logging
import os
import struct
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import pefile

from .modules.headers import (
    COFF_HEADER_SIZE,
    MSDOS_HEADER_SIZE,
    OPTIONAL_HEADER_SIZES,
    PE_SIGNATURE_SIZE,
    SECTION_ENTRY_SIZE,
    NotPEFileError,
)

try:
    import magic  # python-magic (libmagic wrapper)
except Exception:  # pragma: no cover
    magic = None

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS = ["*.exe", "*.dll", "*.sys", "*.scr", "*.ocx", "*.cpl"]

# Directories whose decoded contents feed the RE-hint signals.
SIGNAL_DIRECTORIES = [
    pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_IMPORT"],
    pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT"],
    pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_RESOURCE"],
    pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_DEBUG"],
]

# Enough bytes past e_lfanew for pefile to decode the largest Optional Header.
HEADERS_DECODE_LENGTH = PE_SIGNATURE_SIZE + COFF_HEADER_SIZE + max(hi for _, hi in OPTIONAL_HEADER_SIZES.values())


def is_file(path: str) -> bool:
    """True if *path* exists and is a regular file."""
    return os.path.isfile(path)


def is_dir(path: str) -> bool:
    """True if *path* exists and is a directory."""
    return os.path.isdir(path)


def is_probably_pe(path: str) -> bool:
    """Cheap PE check (no heavy parsing).

    Used to include extensionless files in recursive scans: "MZ" at the
    start, a sane e_lfanew and "PE\\0\\0" at that offset.
    """
    try:
        with open(path, "rb") as f:
            if f.read(2) != b"MZ":
                return False
            f.seek(0x3C)
            e_lfanew = int.from_bytes(f.read(4), "little", signed=False)
            if e_lfanew <= 0 or e_lfanew > 10_000_000:
                return False
            f.seek(e_lfanew)
            return f.read(4) == b"PE\x00\x00"
    except OSError:
        return False


def _accept(fp: Path, follow_symlinks: bool) -> bool:
    if not fp.is_file():
        return False
    return follow_symlinks or not fp.is_symlink()


def iter_targets(
    paths: List[str],
    *,
    recursive: bool = False,
    follow_symlinks: bool = False,
    patterns: Optional[List[str]] = None,
    max_files: Optional[int] = None,
) -> Iterator[str]:
    """Yield file targets from a list of paths.

    - File paths are yielded as-is.
    - Directory paths are expanded using glob patterns (``rglob`` when
      *recursive*; extensionless files that look like PEs are added too).
    - If *max_files* is set, scanning stops after N unique files.
    """

    globs = patterns or DEFAULT_PATTERNS
    seen: set = set()
    count = 0

    def _new(fp: Path) -> bool:
        rp = str(fp.resolve())
        if rp in seen:
            return False
        seen.add(rp)
        return True

    for p in paths:
        pp = Path(p)
        candidates: List[Path] = []

        if pp.is_file():
            candidates.append(pp)
        elif pp.is_dir():
            for g in globs:
                found = pp.rglob(g) if recursive else pp.glob(g)
                candidates.extend(sorted(fp for fp in found if _accept(fp, follow_symlinks)))
            if recursive:
                candidates.extend(
                    sorted(
                        fp
                        for fp in pp.rglob("*")
                        if not fp.suffix and _accept(fp, follow_symlinks) and is_probably_pe(str(fp))
                    )
                )
        else:
            logger.warning("Skipping %s: no such file or directory", p)

        for fp in candidates:
            if not _new(fp):
                continue
            yield str(fp)
            count += 1
            if max_files and count >= max_files:
                return


def file_size(path: str) -> int:
    """Return the file size in bytes."""
    return os.path.getsize(path)


def file_type(path: str) -> str:
    """Return a human-readable file type using libmagic (if available)."""
    if magic is None:
        return "unknown"
    try:
        return magic.from_file(path)
    except Exception:
        return "unknown"


def hashes(data: bytes) -> Dict[str, str]:
    """MD5/SHA1/SHA256 of an in-memory file."""
    return {
        "md5": hashlib.md5(data).hexdigest(),
        "sha1": hashlib.sha1(data).hexdigest(),
        "sha256": hashlib.sha256(data).hexdigest(),
    }


def read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def check_pe_signatures(data: bytes) -> int:
    """Validate the MZ/PE signatures and return ``e_lfanew``.

    Raises :class:`NotPEFileError` for inputs no structural decode can handle.
    """
    if len(data) < MSDOS_HEADER_SIZE:
        raise NotPEFileError(f"file is too small for an MSDOS header ({len(data)} bytes)")
    if data[:2] != b"MZ":
        raise NotPEFileError("no MZ signature")
    (e_lfanew,) = struct.unpack_from("<I", data, 0x3C)
    if e_lfanew + 4 > len(data):
        raise NotPEFileError(f"e_lfanew 0x{e_lfanew:x} points outside the file")
    if data[e_lfanew : e_lfanew + 4] != b"PE\x00\x00":
        raise NotPEFileError(f"no PE signature at offset 0x{e_lfanew:x}")
    return e_lfanew


def _padded_headers(data: bytes, e_lfanew: int) -> bytes:
    """Zero-pad *data* so pefile can decode every header that starts inside it.

    The padding covers the largest Optional Header and completes the section
    entry cut by the end of the file; the all-zero entry after it ends
    pefile's section table walk.
    """
    optional_header_offset = e_lfanew + PE_SIGNATURE_SIZE + COFF_HEADER_SIZE
    size_of_optional_header = 0
    if len(data) >= optional_header_offset:
        (size_of_optional_header,) = struct.unpack_from("<H", data, e_lfanew + 20)
    table_offset = optional_header_offset + size_of_optional_header

    length = max(len(data), e_lfanew + HEADERS_DECODE_LENGTH, table_offset)
    entries = -(-(length - table_offset) // SECTION_ENTRY_SIZE)
    length = table_offset + (entries + 1) * SECTION_ENTRY_SIZE
    return data.ljust(length, b"\x00")


def load_pe(data: bytes) -> "pefile.PE":
    """Load a PE from memory with :mod:`pefile`.

    ``fast_load=True`` is used for performance; the directories the RE-hint
    signals need are parsed afterwards in a best-effort way.

    Once the signatures check out the file is never rejected: headers cut off
    by the end of the file are decoded from a zero-padded copy, and the
    truncation itself is left for the anomaly scan to report.
    """
    e_lfanew = check_pe_signatures(data)
    try:
        pe = pefile.PE(data=data, fast_load=True)
    except pefile.PEFormatError as e:
        logger.warning("Headers truncated (%s), decoding zero-padded copy", e)
        pe = pefile.PE(data=_padded_headers(data, e_lfanew), fast_load=True)

    # Some malformed PEs throw during directory parsing; headers are still usable.
    try:
        pe.parse_data_directories(directories=SIGNAL_DIRECTORIES)
    except Exception as e:
        logger.warning("Data directory parsing failed: %s", e)

    for w in pe.get_warnings()[:20]:
        logger.debug("pefile: %s", w)
    return pe


def timestamp_utc(ts: Optional[int]) -> Optional[str]:
    if not isinstance(ts, int):
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError):
        return None


def pe_basic_info(pe) -> Dict[str, Any]:
    """Extract a small, stable subset of PE header fields."""

    fh = getattr(pe, "FILE_HEADER", None)
    opt = getattr(pe, "OPTIONAL_HEADER", None)
    return {
        "imphash": safe_imphash(pe),
        "timestamp_utc": timestamp_utc(getattr(fh, "TimeDateStamp", None)),
        "is_dll": bool(getattr(fh, "IMAGE_FILE_DLL", 0)),
        "machine": hex(getattr(fh, "Machine", 0)),
        "magic": hex(getattr(opt, "Magic", 0)),
        "subsystem": getattr(opt, "Subsystem", None),
        "imagebase": getattr(opt, "ImageBase", None),
        "entrypoint_rva": getattr(opt, "AddressOfEntryPoint", None),
    }


def safe_imphash(pe) -> Optional[str]:
    """Compute imphash, returning None on failure."""
    try:
        return pe.get_imphash() or None
    except Exception:
        return None
