from __future__ import annotations

import logging
import pathlib
from typing import NamedTuple

from mrcrowbar import utils

from .address import format_address
from .edit import Edit, OverwriteEdit
from .errors import MalformedPatch, PatchApplicationException, TargetLengthMismatch
from .executable import Executable
from .relocations import RelocationTracker

logger = logging.getLogger(__name__)

U32_SIZE = 4
# segment, start, relocation count, byte length
MIN_BLOCK_SIZE = 4 * U32_SIZE


class PatchBlock(NamedTuple):
    segment_index: int
    start_offset: int
    code_bytes: bytes
    relocations_within_block: tuple[int, ...] = ()

    @property
    def end_offset(self) -> int:
        return self.start_offset + len(self.code_bytes)

    def format_address(self) -> str:
        return format_address(self.segment_index, self.start_offset)


class Patch(NamedTuple):
    description: str
    target_length: int
    blocks: tuple[PatchBlock, ...]


def _read_u32(data: bytes, cursor: int, what: str) -> tuple[int, int]:
    cursor -= U32_SIZE
    if cursor < 0:
        raise MalformedPatch(f"patch truncated while reading {what}")
    return cursor, utils.from_uint32_le(data[cursor : cursor + U32_SIZE])


def _read_bytes(data: bytes, cursor: int, length: int, what: str) -> tuple[int, bytes]:
    if length > cursor:
        raise MalformedPatch(
            f"patch truncated while reading {what} (0x{length:X} bytes, 0x{cursor:X} left)"
        )
    cursor -= length
    return cursor, data[cursor : cursor + length]


def parse_patch(data: bytes) -> Patch:
    """Decode a patch file.

    The format is anchored at the end of the file and read backwards, so
    tools can add blocks without rewriting a leading length field::

        [block N-1] ... [block 0] [N] [target length] [description] [D]

    and each block is laid out as::

        [bytes] [L] [reloc R-1] ... [reloc 0] [R] [start] [segment]
    """
    cursor = len(data)

    cursor, description_length = _read_u32(data, cursor, "description length")
    cursor, description_bytes = _read_bytes(
        data, cursor, description_length, "description"
    )
    try:
        description = description_bytes.decode("ascii")
    except UnicodeDecodeError as e:
        raise MalformedPatch(f"patch description is not ASCII: {e}") from e

    cursor, target_length = _read_u32(data, cursor, "target file length")
    cursor, block_count = _read_u32(data, cursor, "block count")
    if block_count * MIN_BLOCK_SIZE > cursor:
        raise MalformedPatch(
            f"patch declares {block_count} blocks but only 0x{cursor:X} bytes remain"
        )

    blocks = []
    for i in range(block_count):
        cursor, segment_index = _read_u32(data, cursor, f"segment of block {i}")
        cursor, start_offset = _read_u32(data, cursor, f"start of block {i}")
        cursor, relocation_count = _read_u32(
            data, cursor, f"relocation count of block {i}"
        )
        if relocation_count * U32_SIZE > cursor:
            raise MalformedPatch(
                f"block {i} declares {relocation_count} relocations but only 0x{cursor:X} bytes remain"
            )
        relocations = []
        for j in range(relocation_count):
            cursor, relocation = _read_u32(data, cursor, f"relocation {j} of block {i}")
            relocations.append(relocation)
        cursor, block_length = _read_u32(data, cursor, f"length of block {i}")
        cursor, code_bytes = _read_bytes(data, cursor, block_length, f"bytes of block {i}")

        blocks.append(
            PatchBlock(segment_index, start_offset, code_bytes, tuple(relocations))
        )

    return Patch(description, target_length, tuple(blocks))


def encode_patch(patch: Patch) -> bytes:
    buffer = bytearray()
    for block in reversed(patch.blocks):
        buffer.extend(block.code_bytes)
        buffer.extend(utils.to_uint32_le(len(block.code_bytes)))
        for relocation in reversed(block.relocations_within_block):
            buffer.extend(utils.to_uint32_le(relocation))
        buffer.extend(utils.to_uint32_le(len(block.relocations_within_block)))
        buffer.extend(utils.to_uint32_le(block.start_offset))
        buffer.extend(utils.to_uint32_le(block.segment_index))
    description = patch.description.encode("ascii")
    buffer.extend(utils.to_uint32_le(len(patch.blocks)))
    buffer.extend(utils.to_uint32_le(patch.target_length))
    buffer.extend(description)
    buffer.extend(utils.to_uint32_le(len(description)))
    return bytes(buffer)


def read_patch_file(path: pathlib.Path) -> Patch:
    with open(path, "rb") as f:
        data = f.read()
    try:
        return parse_patch(data)
    except MalformedPatch as e:
        raise MalformedPatch(f"{path}: {e}") from e


def check_target_length(
    target_length: int, file_length: int, ignore_exe_length: bool
) -> None:
    if target_length == file_length:
        return
    if not ignore_exe_length:
        raise TargetLengthMismatch(target_length, file_length)
    logger.warning(
        "Target file length 0x%X differs from executable length 0x%X, continuing anyway",
        target_length,
        file_length,
    )


def edits_for_patches(executable: Executable, patches: list[Patch]) -> list[Edit]:
    blocks = [block for patch in patches for block in patch.blocks]

    blocks_by_address = sorted(blocks, key=lambda b: (b.segment_index, b.start_offset))
    for preceding, block in zip(blocks_by_address, blocks_by_address[1:]):
        if (
            block.segment_index == preceding.segment_index
            and block.start_offset < preceding.end_offset
        ):
            raise PatchApplicationException(
                f"block for {block.format_address()} overlaps block for {preceding.format_address()}"
            )

    edits: list[Edit] = []
    for block in blocks:
        segment = executable.segment_at(block.segment_index)
        if segment is None:
            raise PatchApplicationException(
                f"no segment for block for {block.format_address()}"
            )
        patchable = segment.patchable
        if not patchable.contains(block.start_offset, block.end_offset):
            raise PatchApplicationException(
                f"block for {block.format_address()} is outside bounds of segment"
            )
        for relocation in block.relocations_within_block:
            if not 0 <= relocation < len(block.code_bytes):
                raise PatchApplicationException(
                    f"block for {block.format_address()} has out-of-range relocation offset 0x{relocation:X}"
                )
            if block.start_offset + relocation + 2 > patchable.end_offset:
                raise PatchApplicationException(
                    f"block for {block.format_address()} has relocation at 0x{relocation:X}"
                    " that straddles the end of the segment"
                )

        edits.append(
            OverwriteEdit(
                f"patch block for {block.format_address()}",
                patchable.zero_in_file + block.start_offset,
                block.code_bytes,
            )
        )

    tracker = RelocationTracker.for_executable(executable)
    for block in blocks_by_address:
        tracker.replace_in_range(
            block.segment_index,
            block.start_offset,
            block.end_offset,
            {block.start_offset + r for r in block.relocations_within_block},
        )
    edits.extend(tracker.produce_edits())

    logger.info("%d patch blocks produced %d edits", len(blocks), len(edits))
    return edits
