from __future__ import annotations

import functools
import logging
from typing import Callable, Iterable, NamedTuple

from .address import SegmentAndOffset
from .edit import Edit, apply_edits_in_memory
from .executable import Executable
from .hack import Hack
from .overlay import DEFAULT_EOP_SPACING, expand_overlay_edits
from .patch import Patch, check_target_length, edits_for_patches

logger = logging.getLogger(__name__)

InMemoryApplier = Callable[[Executable, Iterable[Edit]], Executable]


class ExecutableEditState(NamedTuple):
    executable: Executable
    accumulated_edits: tuple[Edit, ...] = ()

    @classmethod
    def starting_with(cls, executable: Executable) -> ExecutableEditState:
        return cls(executable, ())

    def advanced(
        self,
        edits: list[Edit],
        apply_in_memory: InMemoryApplier = apply_edits_in_memory,
    ) -> ExecutableEditState:
        """Append edits and re-derive the executable they produce."""
        if not edits:
            return self
        return ExecutableEditState(
            apply_in_memory(self.executable, edits),
            self.accumulated_edits + tuple(edits),
        )


class ExecutableEditOperation:
    def __init__(
        self,
        function: Callable[[ExecutableEditState], ExecutableEditState],
        description: str = "",
    ):
        self.function = function
        self.description = description

    def __call__(self, state: ExecutableEditState) -> ExecutableEditState:
        logger.debug("running %s", self.description)
        return self.function(state)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.description}>"

    def and_then(self, other: ExecutableEditOperation) -> ExecutableEditOperation:
        return ExecutableEditOperation(
            lambda state: other(self(state)),
            f"{self.description}; {other.description}",
        )

    @classmethod
    def identity(cls) -> ExecutableEditOperation:
        return cls(lambda state: state, "nothing")


def compose(operations: Iterable[ExecutableEditOperation]) -> ExecutableEditOperation:
    return functools.reduce(
        lambda first, second: first.and_then(second),
        operations,
        ExecutableEditOperation.identity(),
    )


class ExpandOverlayOperation(ExecutableEditOperation):
    def __init__(
        self,
        segment_index: int,
        new_end: int,
        eop_spacing: int = DEFAULT_EOP_SPACING,
        apply_in_memory: InMemoryApplier = apply_edits_in_memory,
    ):
        super().__init__(
            self._expand, f"expand overlay {segment_index:X} to 0x{new_end:X}"
        )
        self.segment_index = segment_index
        self.new_end = new_end
        self.eop_spacing = eop_spacing
        self.apply_in_memory = apply_in_memory

    def _expand(self, state: ExecutableEditState) -> ExecutableEditState:
        edits = expand_overlay_edits(
            state.executable, self.segment_index, self.new_end, self.eop_spacing
        )
        return state.advanced(edits, self.apply_in_memory)


class ApplyPatchesOperation(ExecutableEditOperation):
    def __init__(
        self,
        patches: list[Patch],
        ignore_exe_length: bool = False,
        apply_in_memory: InMemoryApplier = apply_edits_in_memory,
    ):
        super().__init__(self._apply, f"apply {len(patches)} patches")
        self.patches = patches
        self.ignore_exe_length = ignore_exe_length
        self.apply_in_memory = apply_in_memory

    def _apply(self, state: ExecutableEditState) -> ExecutableEditState:
        for patch in self.patches:
            check_target_length(
                patch.target_length, state.executable.file_length, self.ignore_exe_length
            )
        edits = edits_for_patches(state.executable, self.patches)
        return state.advanced(edits, self.apply_in_memory)


class ApplyHackOperation(ExecutableEditOperation):
    def __init__(
        self,
        hack: Hack,
        original_length: int,
        ignore_exe_length: bool = False,
        apply_in_memory: InMemoryApplier = apply_edits_in_memory,
    ):
        super().__init__(self._apply, f"apply hack of {len(hack.edits)} edits")
        self.hack = hack
        self.original_length = original_length
        self.ignore_exe_length = ignore_exe_length
        self.apply_in_memory = apply_in_memory

    def _apply(self, state: ExecutableEditState) -> ExecutableEditState:
        if self.hack.target_length is not None:
            check_target_length(
                self.hack.target_length, self.original_length, self.ignore_exe_length
            )
        return state.advanced(list(self.hack.edits), self.apply_in_memory)


def with_expanded_overlays(
    executable: Executable,
    requests: list[SegmentAndOffset],
    eop_spacing: int = DEFAULT_EOP_SPACING,
) -> ExecutableEditState:
    operation = compose(
        ExpandOverlayOperation(r.segment_index, r.offset, eop_spacing) for r in requests
    )
    return operation(ExecutableEditState.starting_with(executable))


def plan_edits(
    executable: Executable,
    expansions: list[SegmentAndOffset] = (),
    patches: list[Patch] = (),
    hack: Hack | None = None,
    eop_spacing: int = DEFAULT_EOP_SPACING,
    ignore_exe_length: bool = False,
) -> ExecutableEditState:
    """Run every requested stage in memory; nothing touches the real file."""
    state = with_expanded_overlays(executable, list(expansions), eop_spacing)
    operations: list[ExecutableEditOperation] = []
    if patches:
        operations.append(ApplyPatchesOperation(list(patches), ignore_exe_length))
    if hack is not None:
        operations.append(
            ApplyHackOperation(hack, executable.file_length, ignore_exe_length)
        )
    return compose(operations)(state)
