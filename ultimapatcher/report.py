from __future__ import annotations

from typing import Callable, Iterable, TypeVar

from iced_x86 import Code, Decoder, Formatter, FormatterSyntax

from .address import format_address
from .edit import Edit
from .executable import Executable, Segment
from .hack import Hack
from .patch import Patch

T = TypeVar("T")

BYTES_PER_ROW = 16


def log_mapped_values(
    values: Iterable[T],
    mapper: Callable[[T], str | None],
    left_justify: bool = True,
    label: Callable[[T], str] = str,
) -> None:
    values = list(values)
    width = max((len(label(v)) for v in values), default=0)
    for value in values:
        text = label(value).ljust(width) if left_justify else label(value).rjust(width)
        mapped = mapper(value)
        print(f"  {text}" + (f" => {mapped}" if mapped is not None else ""))


def log_summary(executable: Executable) -> None:
    foreign = sum(1 for r in executable.mz_relocations if r is None)
    print(f"Executable length: 0x{executable.file_length:X}")
    print(
        f"  {len(executable.segments)} segments ({len(executable.overlays)} overlays),"
        f" {len(executable.relocations)} relocations"
        + (f" (+{foreign} outside any segment)" if foreign else "")
    )


def _segment_kind(segment: Segment) -> str:
    if segment.is_overlay:
        return "overlay"
    return "code" if segment.is_code else "data"


def log_details(executable: Executable, show_overlay_procs: bool = False) -> None:
    log_summary(executable)
    for segment in executable.segments:
        p = segment.patchable
        relocation_count = len(executable.relocation_offsets(segment.index))
        print(
            f"  segment {segment.index:>3X} {_segment_kind(segment):<7}"
            f" file 0x{p.start_in_file:05X}-0x{p.end_in_file:05X}"
            f" offsets {p.start_offset:04X}-{p.end_offset:04X}"
            f" {relocation_count} relocations"
        )
        if show_overlay_procs and segment.is_overlay:
            for i, offset in enumerate(segment.overlay.procedure_offsets):
                print(f"      proc {i:>3}: {format_address(segment.index, offset)}")


def list_relocations(executable: Executable) -> None:
    print(f"{len(executable.relocations)} relocations:")
    for relocation in executable.relocations:
        file_offset = executable.address_to_file_offset(*relocation)
        print(
            f"  {format_address(*relocation):>10}"
            f"  file 0x{file_offset:05X}  value 0x{executable.read_word(file_offset):04X}"
        )
    for entry, owner in zip(executable.relocation_entries, executable.mz_relocations):
        if owner is None:
            print(f"  {entry.segment:04X}:{entry.offset:04X} (outside any segment)")


def describe_patch(patch: Patch, show_bytes: bool = False) -> None:
    print(f"  {patch.description}")
    print(f"    target file length: 0x{patch.target_length:X}")
    for block in patch.blocks:
        relocations = ", ".join(f"0x{r:X}" for r in block.relocations_within_block)
        print(
            f"    block for {block.format_address()}: 0x{len(block.code_bytes):X} bytes"
            + (f", relocations at {relocations}" if relocations else "")
        )
        if show_bytes:
            for row in range(0, len(block.code_bytes), BYTES_PER_ROW):
                chunk = block.code_bytes[row : row + BYTES_PER_ROW]
                print(f"      {block.start_offset + row:04X}: {chunk.hex(' ')}")


def describe_hack(hack: Hack) -> None:
    if hack.target_length is not None:
        print(f"  hack target file length: 0x{hack.target_length:X}")
    else:
        print("  hack does not specify a target file length")
    if hack.comment is not None:
        print(f"  hack comment: {hack.comment}")
    else:
        print("  hack does not specify a comment")
    print(f"  {len(hack.edits)} edits")


def log_edits(edits: list[Edit]) -> None:
    print(f"{len(edits)} resulting edits:")
    log_mapped_values(
        edits,
        lambda e: ", ".join(f"0x{w.file_offset:05X}+0x{len(w.data):X}" for w in e.writes),
        label=lambda e: e.explanation,
    )


def produce_segments_asm(executable: Executable) -> None:
    """Print a NASM-style listing of every segment.

    Code segments go through the 16-bit decoder; data segments come out as
    ``db`` rows. Lines that hold a relocated word are marked.
    """
    formatter = Formatter(FormatterSyntax.NASM)
    for segment in executable.segments:
        p = segment.patchable
        relocations = set(executable.relocation_offsets(segment.index))
        code = executable.data[p.start_in_file : p.end_in_file]

        print(f"; segment {segment.index:X} ({_segment_kind(segment)}), file 0x{p.start_in_file:05X}")
        print(f"segment seg{segment.index:X}")
        print(f"    org 0x{p.start_offset:X}")

        if segment.is_code or segment.is_overlay:
            for instr in Decoder(16, code, ip=p.start_offset):
                start = instr.ip - p.start_offset
                raw = code[start : start + instr.len]
                if instr.code == Code.INVALID:
                    text = "db " + ", ".join(f"0x{b:02X}" for b in raw)
                else:
                    text = formatter.format(instr)
                _print_asm_line(segment, instr.ip, raw, text, relocations)
        else:
            for row in range(0, len(code), BYTES_PER_ROW):
                raw = code[row : row + BYTES_PER_ROW]
                text = "db " + ", ".join(f"0x{b:02X}" for b in raw)
                _print_asm_line(segment, p.start_offset + row, raw, text, relocations)
        print()


def _print_asm_line(
    segment: Segment, offset: int, raw: bytes, text: str, relocations: set[int]
) -> None:
    marks = [o for o in sorted(relocations) if offset <= o < offset + len(raw)]
    comment = f"; {format_address(segment.index, offset)} {raw.hex()}"
    if marks:
        comment += " reloc " + ",".join(f"{o:04X}" for o in marks)
    print(f"    {text:<40}{comment}")
