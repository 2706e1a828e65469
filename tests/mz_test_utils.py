"""
Builders for small synthetic MZ executables with FBOV overlays.

Real U7.EXE images are large and can't be shipped with the tests, so these
helpers lay out a miniature executable with the same structures:

    [MZ header + relocation table, padded to header_paragraphs]
    [load segments, each paragraph aligned]
    [overlay stubs + procedure entries, each paragraph aligned]
    [segment table]
    [FBOV header]
    [overlay code + relocation table + gap] ...
    [trailer]

With the default fixture (see conftest.py) the layout is:

    0x000  MZ header, relocation table at 0x1C (room for 9 entries)
    0x040  segment 0, 0x30 bytes
    0x070  segment 1, 0x20 bytes
    0x090  stub for overlay segment 2
    0x0C0  stub for overlay segment 3
    0x0F0  segment table (4 entries)
    0x110  FBOV header
    0x120  overlay segment 2 code, 0x40 bytes; relocation table at 0x160
    0x162  overlay segment 3 code, 0x20 bytes
    0x182  end of file
"""

from __future__ import annotations

from typing import NamedTuple

from mrcrowbar import utils

from ultimapatcher.mz import (
    INT_3F,
    MZ_MAGIC,
    OVERLAY_HEADER_SIZE,
    OVERLAY_MAGIC,
    PAGE_SIZE,
    PARAGRAPH_SIZE,
    SEGMENT_FLAG_CODE,
    SEGMENT_FLAG_OVERLAY,
    STUB_HEADER_SIZE,
)

RELOCATION_TABLE_OFFSET = 0x1C


class OverlayLayout(NamedTuple):
    code: bytes
    relocations: tuple[int, ...] = ()
    procedures: tuple[int, ...] = ()
    gap: int = 0


def _pad_to_paragraph(buffer: bytearray) -> None:
    while len(buffer) % PARAGRAPH_SIZE:
        buffer.append(0)


def build_executable(
    load_segments: list[bytes],
    overlays: list[OverlayLayout] = (),
    relocations: list[tuple[int, int]] = (),
    raw_relocations: list[tuple[int, int]] = (),
    segment_flags: list[int] | None = None,
    header_paragraphs: int = 4,
    with_overlay_header: bool = True,
    trailer: bytes = b"",
) -> bytes:
    """Lay out a synthetic executable.

    Args:
        load_segments: contents of each load-image segment (indices 0..n-1)
        overlays: overlay segments, indexed after the load segments
        relocations: (segment index, offset) pairs for the MZ table
        raw_relocations: extra (offset, paragraph) MZ table entries
        segment_flags: flags for each load segment (default: code)
        header_paragraphs: MZ header size in paragraphs
        with_overlay_header: emit the FBOV header and segment table
        trailer: bytes appended after the overlay data
    """
    header_size = header_paragraphs * PARAGRAPH_SIZE
    segment_flags = segment_flags or [SEGMENT_FLAG_CODE] * len(load_segments)

    image = bytearray()
    paragraphs = []
    for content in load_segments:
        paragraphs.append(len(image) // PARAGRAPH_SIZE)
        image.extend(content)
        _pad_to_paragraph(image)

    stub_positions = []
    for overlay in overlays:
        stub_positions.append(len(image))
        image.extend(bytes(STUB_HEADER_SIZE + 5 * len(overlay.procedures)))
        _pad_to_paragraph(image)

    segment_table_offset = header_size + len(image)
    if with_overlay_header:
        for content, paragraph, flags in zip(load_segments, paragraphs, segment_flags):
            image.extend(utils.to_uint16_le(paragraph))
            image.extend(utils.to_uint16_le(len(content)))
            image.extend(utils.to_uint16_le(flags))
            image.extend(utils.to_uint16_le(0))
        for position in stub_positions:
            image.extend(utils.to_uint16_le(position // PARAGRAPH_SIZE))
            image.extend(utils.to_uint16_le(0))
            image.extend(utils.to_uint16_le(SEGMENT_FLAG_CODE | SEGMENT_FLAG_OVERLAY))
            image.extend(utils.to_uint16_le(0))

    area = bytearray()
    for overlay, position in zip(overlays, stub_positions):
        file_offset = OVERLAY_HEADER_SIZE + len(area)
        area.extend(overlay.code)
        for relocation in overlay.relocations:
            area.extend(utils.to_uint16_le(relocation))
        area.extend(bytes(overlay.gap))

        stub = bytearray(INT_3F)
        stub.extend(utils.to_uint16_le(0))
        stub.extend(utils.to_uint32_le(file_offset))
        stub.extend(utils.to_uint16_le(len(overlay.code)))
        stub.extend(utils.to_uint16_le(2 * len(overlay.relocations)))
        stub.extend(utils.to_uint16_le(len(overlay.procedures)))
        stub.extend(utils.to_uint16_le(0))
        stub.extend(bytes(0x10))
        for procedure in overlay.procedures:
            stub.extend(INT_3F)
            stub.extend(utils.to_uint16_le(procedure))
            stub.append(0)
        image[position : position + len(stub)] = stub

    image_end = header_size + len(image)
    entries = [(offset, paragraphs[index]) for index, offset in relocations]
    entries.extend(raw_relocations)

    header = bytearray(MZ_MAGIC)
    header.extend(utils.to_uint16_le(image_end % PAGE_SIZE))
    header.extend(utils.to_uint16_le(-(-image_end // PAGE_SIZE)))
    header.extend(utils.to_uint16_le(len(entries)))
    header.extend(utils.to_uint16_le(header_paragraphs))
    header.extend(bytes(0x18 - len(header)))
    header.extend(utils.to_uint16_le(RELOCATION_TABLE_OFFSET))
    header.extend(utils.to_uint16_le(0))
    for offset, paragraph in entries:
        header.extend(utils.to_uint16_le(offset))
        header.extend(utils.to_uint16_le(paragraph))
    assert len(header) <= header_size, "relocation table doesn't fit the header"
    header.extend(bytes(header_size - len(header)))

    result = bytes(header) + bytes(image)
    if with_overlay_header:
        result += OVERLAY_MAGIC
        result += utils.to_uint32_le(len(area))
        result += utils.to_uint32_le(segment_table_offset)
        result += utils.to_uint32_le(len(load_segments) + len(overlays))
        result += bytes(area)
    return result + trailer


def replace_u16(data: bytes, offset: int, value: int) -> bytes:
    return data[:offset] + utils.to_uint16_le(value) + data[offset + 2 :]


def replace_u32(data: bytes, offset: int, value: int) -> bytes:
    return data[:offset] + utils.to_uint32_le(value) + data[offset + 4 :]


def default_executable_bytes() -> bytes:
    return build_executable(
        load_segments=[bytes(range(0x30)), b"\x90" * 0x1F + b"\xc3"],
        overlays=[
            OverlayLayout(b"\x11" * 0x40, relocations=(0x10,), procedures=(0x00, 0x20)),
            OverlayLayout(b"\x22" * 0x20, procedures=(0x00,)),
        ],
        relocations=[(0, 0x21), (1, 0x05)],
    )
