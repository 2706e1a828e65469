from __future__ import annotations

import io
import logging
import pathlib
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, NamedTuple

from .executable import Executable, Relocation

logger = logging.getLogger(__name__)


class Write(NamedTuple):
    file_offset: int
    data: bytes


@dataclass(frozen=True)
class Edit:
    """An atomic, explained change to the bytes of a file.

    Edits are plain data until applied; applying one seeks to each write's
    offset and writes its bytes, extending the file if the write runs past
    the end.
    """

    explanation: str
    writes: tuple[Write, ...]

    def apply_to(self, stream: BinaryIO) -> None:
        for file_offset, data in self.writes:
            stream.seek(file_offset)
            stream.write(data)


class OverwriteEdit(Edit):
    def __init__(self, explanation: str, file_offset: int, data: bytes):
        super().__init__(explanation, (Write(file_offset, bytes(data)),))

    @property
    def file_offset(self) -> int:
        return self.writes[0].file_offset

    @property
    def data(self) -> bytes:
        return self.writes[0].data


@dataclass(frozen=True)
class RelocationTableEdit(Edit):
    # "mz" for the header table, otherwise the overlay's segment index
    table: str | int = "mz"
    removed: tuple[Relocation, ...] = field(default=())
    added: tuple[Relocation, ...] = field(default=())


def apply_edits(path: pathlib.Path, edits: Iterable[Edit]) -> None:
    with open(path, "r+b") as stream:
        for edit in edits:
            logger.debug("applying %s", edit.explanation)
            edit.apply_to(stream)


def apply_edits_to_bytes(data: bytes, edits: Iterable[Edit]) -> bytes:
    buffer = io.BytesIO(data)
    for edit in edits:
        edit.apply_to(buffer)
    return buffer.getvalue()


def apply_edits_in_memory(executable: Executable, edits: Iterable[Edit]) -> Executable:
    return Executable.parse(
        apply_edits_to_bytes(executable.data, edits), path=executable.path
    )
