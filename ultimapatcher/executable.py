from __future__ import annotations

import bisect
import logging
import pathlib
from typing import NamedTuple

from mrcrowbar import utils

from .address import SegmentAndOffset
from .errors import MalformedExecutable
from .mz import (
    INT_3F,
    MZ_HEADER_SIZE,
    MZ_MAGIC,
    MZ_RELOCATION_ENTRY_SIZE,
    OVERLAY_HEADER_SIZE,
    OVERLAY_MAGIC,
    OVERLAY_RELOCATION_ENTRY_SIZE,
    PARAGRAPH_SIZE,
    SEGMENT_FLAG_CODE,
    SEGMENT_FLAG_OVERLAY,
    SEGMENT_TABLE_ENTRY_SIZE,
    STUB_ENTRY_SIZE,
    STUB_HEADER_SIZE,
    MZHeader,
    OverlayHeader,
    OverlayRelocationTable,
    OverlayStub,
    RawRelocation,
    RelocationTable,
    SegmentTable,
    StubEntryTable,
    load_image_end,
)

logger = logging.getLogger(__name__)


class Patchable(NamedTuple):
    # file position of start_offset, not of offset 0
    start_in_file: int
    start_offset: int
    end_offset: int

    @property
    def zero_in_file(self) -> int:
        return self.start_in_file - self.start_offset

    @property
    def end_in_file(self) -> int:
        return self.zero_in_file + self.end_offset

    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset

    def contains(self, start: int, end: int) -> bool:
        return self.start_offset <= start and end <= self.end_offset


class OverlayInfo(NamedTuple):
    stub_offset: int
    file_offset: int
    code_size: int
    relocation_table_offset: int
    relocation_size: int
    relocation_room_end: int
    procedure_offsets: tuple[int, ...]
    relocations: tuple[int, ...]

    @property
    def relocation_table_end(self) -> int:
        return self.relocation_table_offset + self.relocation_size


class Segment(NamedTuple):
    index: int
    paragraph: int
    flags: int
    patchable: Patchable
    overlay: OverlayInfo | None = None

    @property
    def is_overlay(self) -> bool:
        return self.overlay is not None

    @property
    def is_code(self) -> bool:
        return bool(self.flags & SEGMENT_FLAG_CODE)


class Relocation(NamedTuple):
    segment_index: int
    offset: int


class Executable:
    """Immutable view of an MZ executable and its FBOV overlays.

    Never edit one of these in place; apply edits to a copy of the bytes and
    parse the result instead.
    """

    def __init__(
        self,
        data: bytes,
        header: MZHeader,
        relocation_entries: list[RawRelocation],
        overlay_header_offset: int | None,
        overlay_header: OverlayHeader | None,
        segments: list[Segment],
        path: pathlib.Path | None = None,
    ):
        self.data = data
        self.path = path
        self.header = header
        self.header_size = header.header_paragraphs * PARAGRAPH_SIZE
        self.image_end = load_image_end(header)
        self.relocation_table_offset = header.relocation_table_offset
        self.relocation_entries = tuple(relocation_entries)
        self.overlay_header_offset = overlay_header_offset
        self.overlay_header = overlay_header
        self.segments = tuple(segments)

        ranges = sorted(
            (s.patchable.start_in_file, s.patchable.end_in_file, s.index)
            for s in self.segments
            if s.patchable.length > 0
        )
        for (_, prev_end, prev_index), (start, _, index) in zip(ranges, ranges[1:]):
            if start < prev_end:
                raise MalformedExecutable(
                    f"segment {index:X} at 0x{start:05X} overlaps segment {prev_index:X}"
                )
        self._ranges = ranges
        self._range_starts = [r[0] for r in ranges]

        self.mz_relocations = tuple(
            self._owner_of_entry(entry) for entry in self.relocation_entries
        )

    @classmethod
    def read_from_file(cls, path: pathlib.Path) -> Executable:
        with open(path, "rb") as f:
            data = f.read()
        return cls.parse(data, path=pathlib.Path(path))

    @classmethod
    def parse(cls, data: bytes, path: pathlib.Path | None = None) -> Executable:
        data = bytes(data)
        if len(data) < MZ_HEADER_SIZE or data[0:2] != MZ_MAGIC:
            raise MalformedExecutable("missing MZ header")
        header = MZHeader(data[:MZ_HEADER_SIZE])

        header_size = header.header_paragraphs * PARAGRAPH_SIZE
        image_end = load_image_end(header)
        if not MZ_HEADER_SIZE <= header_size <= image_end:
            raise MalformedExecutable(
                f"header size 0x{header_size:X} does not fit load image ending at 0x{image_end:X}"
            )
        if image_end > len(data):
            raise MalformedExecutable(
                f"load image ends at 0x{image_end:X}, past end of file 0x{len(data):X}"
            )

        table_offset = header.relocation_table_offset
        table_end = table_offset + header.relocation_count * MZ_RELOCATION_ENTRY_SIZE
        if header.relocation_count and (
            table_offset < MZ_HEADER_SIZE or table_end > header_size
        ):
            raise MalformedExecutable(
                f"relocation table of {header.relocation_count} entries at 0x{table_offset:X}"
                f" does not fit inside header of 0x{header_size:X} bytes"
            )
        relocation_entries = [
            RawRelocation(e.offset, e.segment)
            for e in RelocationTable(data[table_offset:table_end]).entries
        ]

        if data[image_end : image_end + len(OVERLAY_MAGIC)] == OVERLAY_MAGIC:
            if image_end + OVERLAY_HEADER_SIZE > len(data):
                raise MalformedExecutable("truncated overlay header")
            overlay_header = OverlayHeader(
                data[image_end : image_end + OVERLAY_HEADER_SIZE]
            )
            segments = _parse_segments(
                data, header_size, image_end, overlay_header
            )
            return cls(
                data,
                header,
                relocation_entries,
                image_end,
                overlay_header,
                segments,
                path,
            )

        # no overlay manager; treat the whole load image as one segment
        segments = [
            Segment(
                0,
                0,
                SEGMENT_FLAG_CODE,
                Patchable(header_size, 0, image_end - header_size),
            )
        ]
        return cls(data, header, relocation_entries, None, None, segments, path)

    @property
    def file_length(self) -> int:
        return len(self.data)

    @property
    def overlays(self) -> list[Segment]:
        return [s for s in self.segments if s.is_overlay]

    @property
    def relocations(self) -> list[Relocation]:
        result = [r for r in self.mz_relocations if r is not None]
        for segment in self.overlays:
            result.extend(Relocation(segment.index, o) for o in segment.overlay.relocations)
        return result

    def relocation_offsets(self, segment_index: int) -> list[int]:
        return sorted(
            {r.offset for r in self.relocations if r.segment_index == segment_index}
        )

    def segment_at(self, index: int) -> Segment | None:
        if 0 <= index < len(self.segments):
            return self.segments[index]
        return None

    def segment_index_for_file_offset(self, offset: int) -> int | None:
        i = bisect.bisect_right(self._range_starts, offset) - 1
        if i >= 0:
            start, end, index = self._ranges[i]
            if start <= offset < end:
                return index
        return None

    def address_to_file_offset(self, segment_index: int, offset: int) -> int | None:
        segment = self.segment_at(segment_index)
        if segment is None:
            return None
        patchable = segment.patchable
        if patchable.start_offset <= offset < patchable.end_offset:
            return patchable.zero_in_file + offset
        return None

    def file_offset_to_address(self, offset: int) -> SegmentAndOffset | None:
        index = self.segment_index_for_file_offset(offset)
        if index is None:
            return None
        return SegmentAndOffset(index, offset - self.segments[index].patchable.zero_in_file)

    def read_word(self, file_offset: int) -> int:
        return utils.from_uint16_le(self.data[file_offset : file_offset + 2])

    def read_overlay_header(self) -> OverlayHeader:
        start = self.overlay_header_offset
        return OverlayHeader(self.data[start : start + OVERLAY_HEADER_SIZE])

    def read_stub(self, segment: Segment) -> OverlayStub:
        start = segment.overlay.stub_offset
        return OverlayStub(self.data[start : start + STUB_HEADER_SIZE])

    def _owner_of_entry(self, entry: RawRelocation) -> Relocation | None:
        file_offset = self.header_size + entry.segment * PARAGRAPH_SIZE + entry.offset
        index = self.segment_index_for_file_offset(file_offset)
        if index is None or self.segments[index].is_overlay:
            return None
        patchable = self.segments[index].patchable
        if file_offset + 2 > patchable.end_in_file:
            raise MalformedExecutable(
                f"relocation {entry.segment:04X}:{entry.offset:04X} straddles end of segment {index:X}"
            )
        return Relocation(index, file_offset - patchable.zero_in_file)


def _parse_segments(
    data: bytes, header_size: int, image_end: int, overlay_header: OverlayHeader
) -> list[Segment]:
    area_start = image_end + OVERLAY_HEADER_SIZE
    area_end = area_start + overlay_header.overlay_size
    if area_end > len(data):
        raise MalformedExecutable(
            f"overlay data ends at 0x{area_end:X}, past end of file 0x{len(data):X}"
        )

    table_offset = overlay_header.segment_table_offset
    count = overlay_header.segment_count
    table_end = table_offset + count * SEGMENT_TABLE_ENTRY_SIZE
    if table_offset < header_size or table_end > image_end:
        raise MalformedExecutable(
            f"segment table of {count} entries at 0x{table_offset:X} overruns the load image"
        )

    segments: list[Segment | None] = []
    stubs = []
    for index, entry in enumerate(SegmentTable(data[table_offset:table_end]).entries):
        if entry.min_offset > entry.max_offset:
            raise MalformedExecutable(
                f"segment {index:X} has negative range 0x{entry.min_offset:X}-0x{entry.max_offset:X}"
            )
        base = header_size + entry.segment * PARAGRAPH_SIZE
        if entry.flags & SEGMENT_FLAG_OVERLAY:
            if base + STUB_HEADER_SIZE > image_end or data[base : base + 2] != INT_3F:
                raise MalformedExecutable(
                    f"no overlay stub for segment {index:X} at 0x{base:05X}"
                )
            stubs.append((index, entry, base, OverlayStub(data[base : base + STUB_HEADER_SIZE])))
            segments.append(None)
            continue

        patchable = Patchable(base + entry.min_offset, entry.min_offset, entry.max_offset)
        if patchable.length and patchable.end_in_file > image_end:
            raise MalformedExecutable(
                f"segment {index:X} extends past the load image to 0x{patchable.end_in_file:X}"
            )
        segments.append(Segment(index, entry.segment, entry.flags, patchable))

    extents = []
    for index, entry, base, stub in stubs:
        code_start = image_end + stub.file_offset
        table_start = code_start + stub.code_size
        if stub.relocation_size % OVERLAY_RELOCATION_ENTRY_SIZE:
            raise MalformedExecutable(
                f"overlay {index:X} has odd relocation table size 0x{stub.relocation_size:X}"
            )
        if code_start < area_start or table_start + stub.relocation_size > area_end:
            raise MalformedExecutable(
                f"overlay {index:X} at 0x{code_start:X} lies outside the overlay data"
            )
        extents.append((code_start, table_start + stub.relocation_size, index))

    extents.sort()
    for (_, prev_end, prev_index), (start, _, index) in zip(extents, extents[1:]):
        if start < prev_end:
            raise MalformedExecutable(
                f"overlay {index:X} at 0x{start:X} overlaps overlay {prev_index:X}"
            )

    for index, entry, base, stub in stubs:
        code_start = image_end + stub.file_offset
        table_start = code_start + stub.code_size
        table_end = table_start + stub.relocation_size
        room_end = min(
            (start for start, _, other in extents if other != index and start >= table_end),
            default=area_end,
        )

        entries_start = base + STUB_HEADER_SIZE
        entries_end = entries_start + stub.entry_count * STUB_ENTRY_SIZE
        if entries_end > image_end:
            raise MalformedExecutable(
                f"procedure entries for overlay {index:X} overrun the load image"
            )
        procedures = tuple(
            e.offset for e in StubEntryTable(data[entries_start:entries_end]).entries
        )

        relocations = tuple(OverlayRelocationTable(data[table_start:table_end]).offsets)
        for offset in relocations:
            if offset + 2 > stub.code_size:
                raise MalformedExecutable(
                    f"relocation {index:X}:{offset:04X} straddles end of overlay"
                )

        segments[index] = Segment(
            index,
            entry.segment,
            entry.flags,
            Patchable(code_start, 0, stub.code_size),
            OverlayInfo(
                stub_offset=base,
                file_offset=stub.file_offset,
                code_size=stub.code_size,
                relocation_table_offset=table_start,
                relocation_size=stub.relocation_size,
                relocation_room_end=room_end,
                procedure_offsets=procedures,
                relocations=relocations,
            ),
        )

    logger.debug(
        "parsed %d segments, %d of them overlays", len(segments), len(stubs)
    )
    return segments
