"""Tests for growing overlays in place."""

import pytest

from ultimapatcher.address import SegmentAndOffset
from ultimapatcher.edit import apply_edits_in_memory
from ultimapatcher.errors import PatchApplicationException
from ultimapatcher.executable import Patchable
from ultimapatcher.overlay import MAX_CODE_SIZE, expand_overlay_edits
from ultimapatcher.patch import Patch, PatchBlock, edits_for_patches
from ultimapatcher.pipeline import with_expanded_overlays


def _expand(executable, segment_index, new_end, eop_spacing=0x100):
    edits = expand_overlay_edits(executable, segment_index, new_end, eop_spacing)
    return apply_edits_in_memory(executable, edits)


class TestExpandOverlay:
    def test_expand_first_overlay(self, executable):
        expanded = _expand(executable, 2, 0x50)

        assert expanded.file_length == 0x182 + 0x110
        assert expanded.overlay_header.overlay_size == 0x62 + 0x110

        first = expanded.segment_at(2)
        assert first.patchable == Patchable(0x120, 0, 0x50)
        assert first.overlay.relocation_table_offset == 0x170
        assert first.overlay.relocation_room_end == 0x272
        assert first.overlay.relocations == (0x10,)

        second = expanded.segment_at(3)
        assert second.patchable == Patchable(0x272, 0, 0x20)
        assert second.overlay.file_offset == 0x52 + 0x110

    def test_expanded_contents(self, executable):
        data = _expand(executable, 2, 0x50).data
        assert data[0x120:0x160] == b"\x11" * 0x40
        assert data[0x160:0x170] == bytes(0x10)
        assert data[0x170:0x172] == b"\x10\x00"
        assert data[0x172:0x272] == bytes(0x100)
        assert data[0x272:0x292] == b"\x22" * 0x20

    def test_edits_are_explained(self, executable):
        edits = expand_overlay_edits(executable, 2, 0x50)
        assert len(edits) == 4
        assert edits[0].file_offset == 0x160
        assert edits[0].explanation == (
            "expand overlay 2 from 0x40 to 0x50 and shift following data by 0x110"
        )
        assert [e.file_offset for e in edits[1:]] == [0x90, 0xC0, 0x110]

    def test_other_segments_never_shrink(self, executable):
        expanded = _expand(executable, 2, 0x48, eop_spacing=0x8)
        for before, after in zip(executable.segments, expanded.segments):
            assert after.patchable.length >= before.patchable.length
            if before.patchable.start_in_file >= 0x160:
                assert after.patchable.start_in_file == before.patchable.start_in_file + 0x10
            else:
                assert after.patchable.start_in_file == before.patchable.start_in_file

    def test_expand_last_overlay(self, executable):
        expanded = _expand(executable, 3, 0x30, eop_spacing=0x10)
        assert expanded.file_length == 0x1A2
        assert expanded.segment_at(2).patchable == executable.segment_at(2).patchable
        assert expanded.segment_at(3).patchable == Patchable(0x162, 0, 0x30)
        assert expanded.segment_at(3).overlay.relocation_room_end == 0x1A2

    def test_relocation_added_after_expansion(self, executable):
        expanded = _expand(executable, 2, 0x50)
        patch = Patch("", expanded.file_length, (PatchBlock(2, 0x40, b"\x00\x00", (0,)),))
        patched = apply_edits_in_memory(expanded, edits_for_patches(expanded, [patch]))
        assert patched.segment_at(2).overlay.relocations == (0x10, 0x40)
        assert patched.relocation_offsets(2) == [0x10, 0x40]

    def test_no_op(self, executable):
        assert expand_overlay_edits(executable, 2, 0x40) == []

    def test_zero_spacing(self, executable):
        expanded = _expand(executable, 2, 0x44, eop_spacing=0)
        assert expanded.segment_at(3).patchable.start_in_file == 0x166
        assert expanded.segment_at(2).overlay.relocation_room_end == 0x166


class TestExpandOverlayErrors:
    def test_missing_segment(self, executable):
        with pytest.raises(PatchApplicationException, match="no such segment"):
            expand_overlay_edits(executable, 9, 0x100)

    def test_not_an_overlay(self, executable):
        with pytest.raises(PatchApplicationException, match="not an overlay"):
            expand_overlay_edits(executable, 1, 0x100)

    def test_shrink(self, executable):
        with pytest.raises(PatchApplicationException, match="shrink"):
            expand_overlay_edits(executable, 2, 0x3F)

    def test_too_large(self, executable):
        with pytest.raises(PatchApplicationException, match="cannot grow past"):
            expand_overlay_edits(executable, 2, MAX_CODE_SIZE + 1)

    def test_negative_spacing(self, executable):
        with pytest.raises(PatchApplicationException, match="negative EOP spacing"):
            expand_overlay_edits(executable, 2, 0x50, eop_spacing=-1)


class TestSequentialExpansion:
    def test_expansions_compose(self, executable):
        state = with_expanded_overlays(
            executable,
            [SegmentAndOffset(2, 0x50), SegmentAndOffset(3, 0x30)],
            eop_spacing=0,
        )
        result = state.executable
        assert result.file_length == 0x1A2
        assert result.segment_at(2).patchable == Patchable(0x120, 0, 0x50)
        assert result.segment_at(3).patchable == Patchable(0x172, 0, 0x30)
        assert len(state.accumulated_edits) == 4 + 3

    def test_no_requests(self, executable):
        state = with_expanded_overlays(executable, [])
        assert state.executable is executable
        assert state.accumulated_edits == ()
