from __future__ import annotations

import argparse
import logging
import pathlib
import sys

from .address import SegmentAndOffset
from .edit import apply_edits
from .errors import UltimaPatcherError
from .executable import Executable
from .hack import Hack, read_hack_file, write_hack
from .overlay import DEFAULT_EOP_SPACING
from .patch import read_patch_file
from .pipeline import plan_edits
from .report import (
    describe_hack,
    describe_patch,
    list_relocations,
    log_details,
    log_edits,
    log_mapped_values,
    log_summary,
    produce_segments_asm,
)
from .version import __version__


def integer(string: str) -> int:
    return int(string, 0)


def segment_and_offset(string: str) -> SegmentAndOffset:
    return SegmentAndOffset.from_string(string)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Apply patches to MS-DOS executables with overlays, such as Ultima VII's U7.EXE"
    )
    parser.add_argument("--exe", type=pathlib.Path, help="Executable to inspect or patch")
    parser.add_argument(
        "--list-relocations",
        action="store_true",
        help="List every relocation in the executable.",
    )
    parser.add_argument(
        "--show-overlay-procs",
        action="store_true",
        help="Show the procedure entry points of each overlay.",
    )
    parser.add_argument(
        "--expand-overlay",
        type=segment_and_offset,
        action="append",
        default=[],
        metavar="SEGMENT:LENGTH",
        help="Grow an overlay's code to LENGTH bytes (both hex). May be repeated.",
    )
    parser.add_argument(
        "--eop-spacing",
        type=integer,
        default=None,
        help=f"Padding left after an expanded overlay (default 0x{DEFAULT_EOP_SPACING:X}).",
    )
    parser.add_argument(
        "--ignore-exe-length",
        action="store_true",
        help="Apply patches even if their target file length doesn't match.",
    )
    parser.add_argument(
        "--patch",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Patch file to apply. May be repeated.",
    )
    parser.add_argument(
        "--show-patch-bytes", action="store_true", help="Dump the bytes of each patch block."
    )
    parser.add_argument("--hack", type=pathlib.Path, help="Compiled hack to apply")
    parser.add_argument(
        "--write-to-exe",
        action="store_true",
        help="Write the resulting edits to the executable.",
    )
    parser.add_argument(
        "--write-hack",
        type=pathlib.Path,
        help="Compile the resulting edits into a hack file instead.",
    )
    parser.add_argument("--hack-comment", help="Comment to store in the compiled hack.")
    parser.add_argument(
        "--file-to-segmented",
        type=integer,
        action="append",
        default=[],
        metavar="OFFSET",
        help="Convert a file offset to a segment:offset address. May be repeated.",
    )
    parser.add_argument(
        "--segmented-to-file",
        type=segment_and_offset,
        action="append",
        default=[],
        metavar="SEGMENT:OFFSET",
        help="Convert a segment:offset address to a file offset. May be repeated.",
    )
    parser.add_argument(
        "--produce-segments-asm",
        action="store_true",
        help="Print an assembly listing of every segment.",
    )
    parser.add_argument(
        "--verbose", "-v", action="count", default=0, help="Log more; repeat for debug output."
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show program's version number and exit.",
    )
    return parser


def check_options(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.exe is None:
        if not args.patch:
            parser.error("either --exe or --patch is required")
        for name in (
            "list_relocations",
            "show_overlay_procs",
            "expand_overlay",
            "ignore_exe_length",
            "hack",
            "write_to_exe",
            "write_hack",
            "file_to_segmented",
            "segmented_to_file",
            "produce_segments_asm",
        ):
            if getattr(args, name):
                parser.error(f"--{name.replace('_', '-')} requires --exe")
    if args.eop_spacing is not None and not args.expand_overlay:
        parser.error("--eop-spacing requires --expand-overlay")
    if args.show_patch_bytes and not args.patch:
        parser.error("--show-patch-bytes requires --patch")
    if args.hack and (args.expand_overlay or args.patch):
        parser.error("--hack cannot be combined with --expand-overlay or --patch")
    if args.write_hack and (args.hack or args.write_to_exe):
        parser.error("--write-hack cannot be combined with --hack or --write-to-exe")
    if args.hack_comment is not None and not args.write_hack:
        parser.error("--hack-comment requires --write-hack")
    if (args.file_to_segmented or args.segmented_to_file) and (
        args.list_relocations or args.patch or args.hack
    ):
        parser.error("address conversions cannot be combined with other actions")
    if args.file_to_segmented and args.segmented_to_file:
        parser.error("--file-to-segmented and --segmented-to-file are exclusive")
    if args.produce_segments_asm and (
        args.list_relocations
        or args.patch
        or args.hack
        or args.file_to_segmented
        or args.segmented_to_file
    ):
        parser.error("--produce-segments-asm cannot be combined with other actions")


def run(args: argparse.Namespace) -> None:
    patches = [read_patch_file(path) for path in args.patch]

    if args.exe is None:
        print(f"{len(patches)} patches:")
        for patch in patches:
            describe_patch(patch, args.show_patch_bytes)
        return

    original = Executable.read_from_file(args.exe)
    if args.produce_segments_asm:
        produce_segments_asm(original)
        return
    log_summary(original)

    if patches:
        print(f"{len(patches)} patches:")
        for patch in patches:
            describe_patch(patch, args.show_patch_bytes)

    hack = None
    if args.hack:
        hack = read_hack_file(args.hack)
        print(f"read hack {args.hack}")
        describe_hack(hack)

    state = plan_edits(
        original,
        expansions=args.expand_overlay,
        patches=patches,
        hack=hack,
        eop_spacing=(
            args.eop_spacing if args.eop_spacing is not None else DEFAULT_EOP_SPACING
        ),
        ignore_exe_length=args.ignore_exe_length,
    )
    edits = list(state.accumulated_edits)

    if edits:
        log_edits(edits)
        if args.write_to_exe:
            print(f"writing to exe {args.exe}")
            apply_edits(args.exe, edits)
        elif args.write_hack:
            print(f"writing hack to {args.write_hack}")
            write_hack(
                args.write_hack, Hack(tuple(edits), original.file_length, args.hack_comment)
            )
        else:
            print(
                "Use --write-to-exe to patch the executable"
                + ("" if hack else " or --write-hack to compile edits into a file")
                + "."
            )
        return

    executable = state.executable
    if args.file_to_segmented:
        print("file offsets converted to segment:offset addresses:")
        log_mapped_values(
            args.file_to_segmented,
            lambda offset: str(executable.file_offset_to_address(offset) or "(no matching segment)"),
            left_justify=False,
            label=lambda offset: f"0x{offset:X}",
        )
    elif args.segmented_to_file:
        print("segment:offset addresses converted to file offsets:")
        log_mapped_values(
            args.segmented_to_file,
            lambda address: _format_file_offset(executable.address_to_file_offset(*address)),
            left_justify=False,
        )
    elif args.list_relocations:
        list_relocations(executable)
    else:
        log_details(executable, args.show_overlay_procs)


def _format_file_offset(file_offset: int | None) -> str:
    if file_offset is None:
        return "(invalid address)"
    return f"0x{file_offset:05X}"


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])
    check_options(parser, args)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose > 1 else logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s",
    )

    try:
        run(args)
    except UltimaPatcherError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
