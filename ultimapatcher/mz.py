from __future__ import annotations

from typing import NamedTuple

from mrcrowbar import models as mrc
from mrcrowbar import utils

MZ_MAGIC = b"MZ"
MZ_HEADER_SIZE = 0x1C
MZ_RELOCATION_COUNT_OFFSET = 0x06
MZ_RELOCATION_ENTRY_SIZE = 4
PARAGRAPH_SIZE = 16
PAGE_SIZE = 512

OVERLAY_MAGIC = b"FBOV"
OVERLAY_HEADER_SIZE = 0x10
SEGMENT_TABLE_ENTRY_SIZE = 8

# INT 3Fh, the Borland overlay manager trap
INT_3F = b"\xcd\x3f"
STUB_HEADER_SIZE = 0x20
STUB_ENTRY_SIZE = 5
OVERLAY_RELOCATION_ENTRY_SIZE = 2

SEGMENT_FLAG_CODE = 0x0001
SEGMENT_FLAG_OVERLAY = 0x0002
SEGMENT_FLAG_DATA = 0x0004


class MZHeader(mrc.Block):
    magic = mrc.Const(mrc.Bytes(length=2), MZ_MAGIC)
    last_page_bytes = mrc.UInt16_LE()
    page_count = mrc.UInt16_LE()
    relocation_count = mrc.UInt16_LE()
    header_paragraphs = mrc.UInt16_LE()
    min_alloc = mrc.UInt16_LE()
    max_alloc = mrc.UInt16_LE()
    initial_ss = mrc.UInt16_LE()
    initial_sp = mrc.UInt16_LE()
    checksum = mrc.UInt16_LE()
    initial_ip = mrc.UInt16_LE()
    initial_cs = mrc.UInt16_LE()
    relocation_table_offset = mrc.UInt16_LE()
    overlay_number = mrc.UInt16_LE()


class RelocationEntry(mrc.Block):
    offset = mrc.UInt16_LE()
    segment = mrc.UInt16_LE()


class RelocationTable(mrc.Block):
    entries = mrc.BlockField(RelocationEntry, stream=True)


class OverlayHeader(mrc.Block):
    magic = mrc.Const(mrc.Bytes(length=4), OVERLAY_MAGIC)
    overlay_size = mrc.UInt32_LE()
    segment_table_offset = mrc.UInt32_LE()
    segment_count = mrc.UInt32_LE()


class SegmentTableEntry(mrc.Block):
    segment = mrc.UInt16_LE()
    max_offset = mrc.UInt16_LE()
    flags = mrc.UInt16_LE()
    min_offset = mrc.UInt16_LE()


class SegmentTable(mrc.Block):
    entries = mrc.BlockField(SegmentTableEntry, stream=True)


class OverlayStub(mrc.Block):
    int3f = mrc.Const(mrc.Bytes(length=2), INT_3F)
    memswap = mrc.UInt16_LE()
    file_offset = mrc.UInt32_LE()
    code_size = mrc.UInt16_LE()
    relocation_size = mrc.UInt16_LE()
    entry_count = mrc.UInt16_LE()
    previous_stub = mrc.UInt16_LE()
    work_area = mrc.Bytes(length=0x10)


# each procedure entry traps into the overlay manager, which patches in a
# far jump once the overlay is resident
class StubEntry(mrc.Block):
    opcode = mrc.Bytes(length=2)
    offset = mrc.UInt16_LE()
    padding = mrc.UInt8()


class StubEntryTable(mrc.Block):
    entries = mrc.BlockField(StubEntry, stream=True)


class OverlayRelocationTable(mrc.Block):
    offsets = mrc.UInt16_LE(stream=True)


class RawRelocation(NamedTuple):
    offset: int
    segment: int


def load_image_end(header: MZHeader) -> int:
    """File offset just past the load image described by the MZ header."""
    end = header.page_count * PAGE_SIZE
    if header.last_page_bytes:
        end -= PAGE_SIZE - header.last_page_bytes
    return end


def relocations_encode(relocations: list[RawRelocation]) -> bytes:
    buffer = bytearray()
    for offset, segment in relocations:
        buffer.extend(utils.to_uint16_le(offset))
        buffer.extend(utils.to_uint16_le(segment))
    return bytes(buffer)


def overlay_relocations_encode(offsets: list[int]) -> bytes:
    buffer = bytearray()
    for offset in offsets:
        buffer.extend(utils.to_uint16_le(offset))
    return bytes(buffer)
