from __future__ import annotations

import logging

from .edit import Edit, OverwriteEdit
from .errors import PatchApplicationException
from .executable import Executable

logger = logging.getLogger(__name__)

# zero bytes written after an expanded overlay's relocation table
DEFAULT_EOP_SPACING = 0x100

MAX_CODE_SIZE = 0xFFFF


def expand_overlay_edits(
    executable: Executable,
    segment_index: int,
    new_end: int,
    eop_spacing: int = DEFAULT_EOP_SPACING,
) -> list[Edit]:
    """Compute the edits that grow an overlay's code to ``new_end`` bytes.

    The overlay's relocation table moves to the new end of the code and is
    followed by ``eop_spacing`` bytes of zero padding. Everything after the
    old end of the code (other than that relocation table) moves down by
    ``(new_end - code_size) + eop_spacing``, and every stub that points past
    the insertion point is updated to match.
    """
    segment = executable.segment_at(segment_index)
    if segment is None:
        raise PatchApplicationException(
            f"cannot expand overlay {segment_index:X}: no such segment"
        )
    if not segment.is_overlay:
        raise PatchApplicationException(
            f"cannot expand segment {segment_index:X}: not an overlay"
        )
    if eop_spacing < 0:
        raise PatchApplicationException(f"negative EOP spacing 0x{eop_spacing:X}")

    overlay = segment.overlay
    if new_end < overlay.code_size:
        raise PatchApplicationException(
            f"cannot shrink overlay {segment_index:X} from 0x{overlay.code_size:X} to 0x{new_end:X}"
        )
    if new_end > MAX_CODE_SIZE:
        raise PatchApplicationException(
            f"overlay {segment_index:X} cannot grow past 0x{MAX_CODE_SIZE:X} bytes"
        )
    if new_end == overlay.code_size:
        logger.info("overlay %X is already 0x%X bytes", segment_index, new_end)
        return []

    growth = new_end - overlay.code_size
    shift = growth + eop_spacing
    insertion_point = overlay.relocation_table_offset
    data = executable.data

    moved = (
        bytes(growth)
        + data[overlay.relocation_table_offset : overlay.relocation_table_end]
        + bytes(eop_spacing)
        + data[overlay.relocation_table_end :]
    )
    edits: list[Edit] = [
        OverwriteEdit(
            f"expand overlay {segment_index:X} from 0x{overlay.code_size:X} to 0x{new_end:X}"
            f" and shift following data by 0x{shift:X}",
            insertion_point,
            moved,
        )
    ]

    stub = executable.read_stub(segment)
    stub.code_size = new_end
    edits.append(
        OverwriteEdit(
            f"set code size of overlay {segment_index:X} to 0x{new_end:X}",
            overlay.stub_offset,
            stub.export_data(),
        )
    )

    for other in executable.overlays:
        if other.index == segment_index:
            continue
        if other.patchable.start_in_file >= insertion_point:
            other_stub = executable.read_stub(other)
            other_stub.file_offset += shift
            edits.append(
                OverwriteEdit(
                    f"move overlay {other.index:X} to file offset 0x{other_stub.file_offset:X}",
                    other.overlay.stub_offset,
                    other_stub.export_data(),
                )
            )

    overlay_header = executable.read_overlay_header()
    overlay_header.overlay_size += shift
    edits.append(
        OverwriteEdit(
            f"grow overlay data to 0x{overlay_header.overlay_size:X} bytes",
            executable.overlay_header_offset,
            overlay_header.export_data(),
        )
    )

    logger.info(
        "expanding overlay %X by 0x%X bytes (0x%X with EOP spacing)",
        segment_index,
        growth,
        shift,
    )
    return edits
