from __future__ import annotations

from typing import NamedTuple


def format_address(segment_index: int, offset: int) -> str:
    return f"{segment_index:X}:{offset:04X}"


class SegmentAndOffset(NamedTuple):
    segment_index: int
    offset: int

    @classmethod
    def from_string(cls, string: str) -> SegmentAndOffset:
        """Parse a ``segment:offset`` address, both parts in hex."""
        segment, sep, offset = string.partition(":")
        if not sep or not segment.strip() or not offset.strip():
            raise ValueError(f"expected segment:offset, got {string!r}")
        return cls(int(segment, 16), int(offset, 16))

    def __str__(self) -> str:
        return format_address(self.segment_index, self.offset)
