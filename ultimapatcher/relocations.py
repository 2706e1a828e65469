from __future__ import annotations

import logging
from typing import Iterable

from mrcrowbar import utils

from .address import format_address
from .edit import Edit, RelocationTableEdit, Write
from .errors import PatchApplicationException
from .executable import Executable, Relocation, Segment
from .mz import (
    MZ_HEADER_SIZE,
    MZ_RELOCATION_COUNT_OFFSET,
    MZ_RELOCATION_ENTRY_SIZE,
    OVERLAY_RELOCATION_ENTRY_SIZE,
    PARAGRAPH_SIZE,
    RawRelocation,
    overlay_relocations_encode,
    relocations_encode,
)

logger = logging.getLogger(__name__)

MAX_WORD = 0xFFFF


def _mz_entry(relocation: Relocation, paragraph: int) -> RawRelocation:
    """Build an MZ table entry, moving whole paragraphs of a large offset
    into the segment part so both halves fit in a word."""
    offset = relocation.offset
    if offset > MAX_WORD:
        paragraph += offset // PARAGRAPH_SIZE
        offset %= PARAGRAPH_SIZE
    if paragraph > MAX_WORD:
        raise PatchApplicationException(
            f"relocation at {format_address(*relocation)} is beyond the reach of the MZ table"
        )
    return RawRelocation(offset, paragraph)


class RelocationTracker:
    """Working copy of an executable's relocations during one patch pass.

    Offsets are tracked per segment; ``produce_edits`` turns the difference
    from the original tables into edits against the on-disk tables.
    """

    def __init__(self, executable: Executable, original: dict[int, frozenset[int]]):
        self.executable = executable
        self._original = original
        self._tracked = {index: set(offsets) for index, offsets in original.items()}

    @classmethod
    def for_executable(cls, executable: Executable) -> RelocationTracker:
        grouped: dict[int, set[int]] = {s.index: set() for s in executable.segments}
        for relocation in executable.relocations:
            grouped[relocation.segment_index].add(relocation.offset)
        return cls(executable, {i: frozenset(o) for i, o in grouped.items()})

    def replace_in_range(
        self, segment_index: int, start: int, end: int, new_offsets: Iterable[int]
    ) -> None:
        tracked = self._tracked[segment_index]
        stale = {o for o in tracked if start <= o < end}
        tracked.difference_update(stale)
        tracked.update(new_offsets)
        for offset in sorted(stale):
            logger.debug("dropping relocation at %s", format_address(segment_index, offset))

    def removed(self, segment_index: int) -> set[int]:
        return self._original[segment_index] - self._tracked[segment_index]

    def added(self, segment_index: int) -> set[int]:
        return self._tracked[segment_index] - self._original[segment_index]

    def produce_edits(self) -> list[Edit]:
        removals: list[Edit] = []
        additions: list[Edit] = []

        mz_removed = {
            Relocation(s.index, o)
            for s in self.executable.segments
            if not s.is_overlay
            for o in self.removed(s.index)
        }
        mz_added = sorted(
            Relocation(s.index, o)
            for s in self.executable.segments
            if not s.is_overlay
            for o in self.added(s.index)
        )
        kept = [
            entry
            for entry, owner in zip(
                self.executable.relocation_entries, self.executable.mz_relocations
            )
            if owner is None or owner not in mz_removed
        ]
        if mz_removed:
            removals.append(self._mz_removal(kept, mz_removed))
        if mz_added:
            additions.append(self._mz_addition(kept, mz_added))

        for segment in self.executable.overlays:
            removed = self.removed(segment.index)
            kept_offsets = [o for o in segment.overlay.relocations if o not in removed]
            if removed:
                removals.append(self._overlay_removal(segment, kept_offsets, removed))
            added = sorted(self.added(segment.index))
            if added:
                additions.append(self._overlay_addition(segment, kept_offsets, added))

        return removals + additions

    def _mz_removal(self, kept: list[RawRelocation], removed: set[Relocation]) -> Edit:
        exe = self.executable
        entries = exe.relocation_entries
        first = next(
            i for i, owner in enumerate(exe.mz_relocations) if owner in removed
        )
        vacated = len(entries) - len(kept)
        table_data = relocations_encode(kept[first:]) + bytes(
            vacated * MZ_RELOCATION_ENTRY_SIZE
        )
        return RelocationTableEdit(
            f"remove {len(removed)} relocation(s) from MZ relocation table",
            (
                Write(
                    exe.relocation_table_offset + first * MZ_RELOCATION_ENTRY_SIZE,
                    table_data,
                ),
                Write(MZ_RELOCATION_COUNT_OFFSET, utils.to_uint16_le(len(kept))),
            ),
            table="mz",
            removed=tuple(sorted(removed)),
        )

    def _mz_addition(self, kept: list[RawRelocation], added: list[Relocation]) -> Edit:
        exe = self.executable
        if exe.relocation_table_offset < MZ_HEADER_SIZE:
            raise PatchApplicationException(
                f"MZ relocation table offset 0x{exe.relocation_table_offset:X}"
                " lies inside the fixed header; cannot add relocations"
            )
        count = len(kept) + len(added)
        table_end = exe.relocation_table_offset + count * MZ_RELOCATION_ENTRY_SIZE
        if table_end > exe.header_size:
            raise PatchApplicationException(
                f"no room in MZ header for {count} relocations"
                f" (table would end at 0x{table_end:X}, header ends at 0x{exe.header_size:X})"
            )
        new_entries = [
            _mz_entry(r, exe.segments[r.segment_index].paragraph) for r in added
        ]
        return RelocationTableEdit(
            f"add {len(added)} relocation(s) to MZ relocation table",
            (
                Write(
                    exe.relocation_table_offset + len(kept) * MZ_RELOCATION_ENTRY_SIZE,
                    relocations_encode(new_entries),
                ),
                Write(MZ_RELOCATION_COUNT_OFFSET, utils.to_uint16_le(count)),
            ),
            table="mz",
            added=tuple(added),
        )

    def _overlay_removal(
        self, segment: Segment, kept: list[int], removed: set[int]
    ) -> Edit:
        overlay = segment.overlay
        vacated = len(overlay.relocations) - len(kept)
        table_data = overlay_relocations_encode(kept) + bytes(
            vacated * OVERLAY_RELOCATION_ENTRY_SIZE
        )
        return RelocationTableEdit(
            f"remove {len(removed)} relocation(s) from overlay {segment.index:X} relocation table",
            (
                Write(overlay.relocation_table_offset, table_data),
                self._stub_relocation_size(segment, len(kept)),
            ),
            table=segment.index,
            removed=tuple(Relocation(segment.index, o) for o in sorted(removed)),
        )

    def _overlay_addition(
        self, segment: Segment, kept: list[int], added: list[int]
    ) -> Edit:
        overlay = segment.overlay
        count = len(kept) + len(added)
        table_end = (
            overlay.relocation_table_offset + count * OVERLAY_RELOCATION_ENTRY_SIZE
        )
        if table_end > overlay.relocation_room_end:
            raise PatchApplicationException(
                f"no room after overlay {segment.index:X} for {count} relocations;"
                " expand the overlay first"
            )
        return RelocationTableEdit(
            f"add {len(added)} relocation(s) to overlay {segment.index:X} relocation table",
            (
                Write(
                    overlay.relocation_table_offset
                    + len(kept) * OVERLAY_RELOCATION_ENTRY_SIZE,
                    overlay_relocations_encode(added),
                ),
                self._stub_relocation_size(segment, count),
            ),
            table=segment.index,
            added=tuple(Relocation(segment.index, o) for o in added),
        )

    def _stub_relocation_size(self, segment: Segment, count: int) -> Write:
        stub = self.executable.read_stub(segment)
        stub.relocation_size = count * OVERLAY_RELOCATION_ENTRY_SIZE
        return Write(segment.overlay.stub_offset, stub.export_data())
