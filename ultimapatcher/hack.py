from __future__ import annotations

import logging
import pathlib
from typing import NamedTuple

from mrcrowbar import models as mrc
from mrcrowbar import utils

from .edit import Edit, Write
from .errors import MalformedHack

logger = logging.getLogger(__name__)

HACK_MAGIC = b"UPHK"
HACK_HEADER_SIZE = 0x14

HACK_FLAG_TARGET_LENGTH = 0x1
HACK_FLAG_COMMENT = 0x2


class HackHeader(mrc.Block):
    magic = mrc.Const(mrc.Bytes(length=4), HACK_MAGIC)
    flags = mrc.UInt32_LE()
    target_length = mrc.UInt32_LE()
    comment_length = mrc.UInt32_LE()
    edit_count = mrc.UInt32_LE()


class Hack(NamedTuple):
    edits: tuple[Edit, ...]
    target_length: int | None = None
    comment: str | None = None


def encode_hack(hack: Hack) -> bytes:
    comment = hack.comment.encode("utf-8") if hack.comment is not None else b""

    header = HackHeader(HACK_MAGIC + bytes(HACK_HEADER_SIZE - len(HACK_MAGIC)))
    header.flags = (HACK_FLAG_TARGET_LENGTH if hack.target_length is not None else 0) | (
        HACK_FLAG_COMMENT if hack.comment is not None else 0
    )
    header.target_length = hack.target_length or 0
    header.comment_length = len(comment)
    header.edit_count = len(hack.edits)

    buffer = bytearray(header.export_data())
    buffer.extend(comment)
    for edit in hack.edits:
        explanation = edit.explanation.encode("utf-8")
        buffer.extend(utils.to_uint32_le(len(explanation)))
        buffer.extend(explanation)
        buffer.extend(utils.to_uint32_le(len(edit.writes)))
        for file_offset, data in edit.writes:
            buffer.extend(utils.to_uint32_le(file_offset))
            buffer.extend(utils.to_uint32_le(len(data)))
            buffer.extend(data)
    return bytes(buffer)


class _Reader:
    def __init__(self, buffer: bytes, ptr: int):
        self.buffer = buffer
        self.ptr = ptr

    def take(self, length: int, what: str) -> bytes:
        if self.ptr + length > len(self.buffer):
            raise MalformedHack(f"hack truncated at 0x{self.ptr:X} while reading {what}")
        result = self.buffer[self.ptr : self.ptr + length]
        self.ptr += length
        return result

    def u32(self, what: str) -> int:
        return utils.from_uint32_le(self.take(4, what))

    def text(self, length: int, what: str) -> str:
        try:
            return self.take(length, what).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedHack(f"bad {what}: {e}") from e


def decode_hack(buffer: bytes) -> Hack:
    if len(buffer) < HACK_HEADER_SIZE or buffer[0:4] != HACK_MAGIC:
        raise MalformedHack("not a compiled hack")
    header = HackHeader(buffer[:HACK_HEADER_SIZE])
    reader = _Reader(buffer, HACK_HEADER_SIZE)

    comment = reader.text(header.comment_length, "comment")
    edits = []
    for i in range(header.edit_count):
        explanation = reader.text(reader.u32(f"edit {i}"), f"explanation of edit {i}")
        writes = []
        for j in range(reader.u32(f"write count of edit {i}")):
            file_offset = reader.u32(f"write {j} of edit {i}")
            data = reader.take(reader.u32(f"write {j} of edit {i}"), f"write {j} of edit {i}")
            writes.append(Write(file_offset, data))
        edits.append(Edit(explanation, tuple(writes)))
    if reader.ptr != len(buffer):
        raise MalformedHack(f"0x{len(buffer) - reader.ptr:X} trailing bytes after last edit")

    return Hack(
        tuple(edits),
        header.target_length if header.flags & HACK_FLAG_TARGET_LENGTH else None,
        comment if header.flags & HACK_FLAG_COMMENT else None,
    )


def read_hack_file(path: pathlib.Path) -> Hack:
    with open(path, "rb") as f:
        return decode_hack(f.read())


def write_hack(path: pathlib.Path, hack: Hack) -> None:
    with open(path, "wb") as f:
        f.write(encode_hack(hack))
    logger.info("wrote %d edits to %s", len(hack.edits), path)
