#!/usr/bin/env python
# -*- coding: utf-8 -*-
# @QK

"""Address translation over a :class:`SectionModel`.

All functions here are total: malformed section values are clamped, missing
mappings come back as ``None`` and nothing raises on file data.

Alignment rules (standard mode):
- raw pointers round *down* to 512
- raw sizes, virtual addresses and virtual sizes round *up* to 4096
In low alignment mode every value is used as declared.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .sections import RAW_POINTER_ALIGNMENT, SectionModel, SectionRecord

logger = logging.getLogger(__name__)

PAGE_ALIGNMENT = 0x1000


@dataclass(frozen=True)
class AlignmentResult:
    aligned_pointer_to_raw: int
    aligned_size_of_raw: int
    aligned_virtual_address: int
    aligned_virtual_size: int


def _round_up(value: int, alignment: int) -> int:
    if alignment <= 1 or value % alignment == 0:
        return value
    return (value // alignment + 1) * alignment


def aligned_pointer_to_raw(section: SectionRecord, low_align: bool) -> int:
    if low_align:
        return section.raw_pointer
    return section.raw_pointer & ~(RAW_POINTER_ALIGNMENT - 1)


def aligned_size_of_raw(section: SectionRecord, low_align: bool) -> int:
    if low_align:
        return section.raw_size
    return _round_up(section.raw_size, PAGE_ALIGNMENT)


def aligned_virtual_address(section: SectionRecord, low_align: bool) -> int:
    if low_align:
        return section.virtual_address
    return _round_up(section.virtual_address, PAGE_ALIGNMENT)


def aligned_virtual_size(section: SectionRecord, low_align: bool) -> int:
    if low_align:
        return section.virtual_size
    return _round_up(section.virtual_size, PAGE_ALIGNMENT)


def alignment(section: SectionRecord, low_align: bool) -> AlignmentResult:
    """All four aligned values of *section*, computed for the given mode."""
    return AlignmentResult(
        aligned_pointer_to_raw=aligned_pointer_to_raw(section, low_align),
        aligned_size_of_raw=aligned_size_of_raw(section, low_align),
        aligned_virtual_address=aligned_virtual_address(section, low_align),
        aligned_virtual_size=aligned_virtual_size(section, low_align),
    )


# ---------------------------------------------------------------------------
# Physical extent
# ---------------------------------------------------------------------------


def file_alignment_unit(model: SectionModel) -> int:
    """Rounding unit for section ends in the file."""
    if model.low_alignment_mode:
        return 1
    fa = max(model.file_alignment, RAW_POINTER_ALIGNMENT)
    return _round_up(fa, RAW_POINTER_ALIGNMENT)


def file_aligned(model: SectionModel, value: int) -> int:
    return _round_up(value, file_alignment_unit(model))


def physical_size(model: SectionModel, section: SectionRecord) -> int:
    """Bytes of *section* backed by the file, ignoring neighbouring sections."""
    low = model.low_alignment_mode
    start = aligned_pointer_to_raw(section, low)

    size = file_aligned(model, section.raw_pointer + section.raw_size) - start
    size = min(size, aligned_size_of_raw(section, low))
    if section.virtual_size != 0:
        size = min(size, aligned_virtual_size(section, low))
    size = min(size, model.file_length - start)
    return max(size, 0)


def read_size(model: SectionModel, section: SectionRecord) -> int:
    """Bytes of *section* that can be read without entering a following section.

    Only sections with a non-zero raw size count as neighbours.
    """
    size = physical_size(model, section)
    if size == 0:
        return 0

    start = aligned_pointer_to_raw(section, model.low_alignment_mode)
    starts = model.raw_starts
    idx = bisect.bisect_right(starts, start)
    if idx < len(starts) and starts[idx] < start + size:
        logger.debug("Read size of %s clamped by a section at 0x%x", section, starts[idx])
        size = starts[idx] - start
    return size


def physical_range(model: SectionModel, section: SectionRecord) -> Tuple[int, int]:
    start = aligned_pointer_to_raw(section, model.low_alignment_mode)
    return start, start + physical_size(model, section)


def virtual_extent(model: SectionModel, section: SectionRecord) -> int:
    """Aligned virtual size, or the aligned raw size when no virtual size is set."""
    low = model.low_alignment_mode
    if section.virtual_size == 0:
        return aligned_size_of_raw(section, low)
    return aligned_virtual_size(section, low)


def virtual_range(model: SectionModel, section: SectionRecord) -> Tuple[int, int]:
    start = aligned_virtual_address(section, model.low_alignment_mode)
    return start, start + virtual_extent(model, section)


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def section_for_rva(model: SectionModel, rva: int) -> Optional[SectionRecord]:
    """First section in file order whose virtual range contains *rva*."""
    for section in model:
        start, end = virtual_range(model, section)
        if start <= rva < end:
            return section
    return None


def section_for_file_offset(model: SectionModel, offset: int) -> Optional[SectionRecord]:
    for section in model:
        start = aligned_pointer_to_raw(section, model.low_alignment_mode)
        if start <= offset < start + read_size(model, section):
            return section
    return None


def rva_to_file_offset(model: SectionModel, rva: int) -> Optional[int]:
    if rva < 0:
        return None
    section = section_for_rva(model, rva)
    if section is not None:
        low = model.low_alignment_mode
        return aligned_pointer_to_raw(section, low) + (rva - aligned_virtual_address(section, low))
    if rva < model.size_of_headers:
        return rva
    logger.debug("RVA 0x%x is not mapped by any section", rva)
    return None


def file_offset_to_rva(model: SectionModel, offset: int) -> Optional[int]:
    if offset < 0:
        return None
    section = section_for_file_offset(model, offset)
    if section is not None:
        low = model.low_alignment_mode
        return aligned_virtual_address(section, low) + (offset - aligned_pointer_to_raw(section, low))
    if offset < model.size_of_headers:
        return offset
    return None


# ---------------------------------------------------------------------------
# Overlay
# ---------------------------------------------------------------------------


def overlay_offset(model: SectionModel) -> int:
    """Offset of the first byte after the last section's readable data.

    Sections with a raw pointer of zero or nothing to read do not count. A
    result of zero or beyond the file end means there is no overlay and the
    file length is returned.
    """
    end = 0
    for section in model:
        if section.raw_pointer == 0:
            continue
        size = read_size(model, section)
        if size == 0:
            continue
        end = max(end, aligned_pointer_to_raw(section, model.low_alignment_mode) + size)

    if end == 0 or end > model.file_length:
        return model.file_length
    return end


def overlay_size(model: SectionModel) -> int:
    return model.file_length - overlay_offset(model)


def overlay_exists(model: SectionModel) -> bool:
    return overlay_size(model) > 0
