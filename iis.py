"""
Intra-instruction state: per-instruction scratch views and in-flight walks.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

from effects import StructuralError
from tlb import WalkResult, va_page
from views import Deps, Explicit, View, join, join_all, meet


@dataclass
class WalkCont:
    """A translation between its start and end effects."""
    time: View
    remaining: list[tuple[int, int]]    # (descriptor location, descriptor)
    deadline: Optional[View]
    result: WalkResult


@dataclass
class InstructionScratchState:
    reg_view: View = 0                  # max over register reads
    strict: View = 0                    # max over everything else
    read_views: list[View] = field(default_factory=list)
    walks: dict[int, WalkCont] = field(default_factory=dict)
    deadline: Optional[View] = None     # invalidation deadline of this access

    def clone(self) -> InstructionScratchState:
        return InstructionScratchState(
            self.reg_view, self.strict, list(self.read_views),
            {page: WalkCont(c.time, list(c.remaining), c.deadline, c.result)
             for page, c in self.walks.items()},
            self.deadline)

    # -- Views --

    def add_reg_read(self, v: View):
        self.reg_view = join(self.reg_view, v)

    def add_strict(self, v: View):
        self.strict = join(self.strict, v)

    def add_read(self, post_view: View):
        self.read_views.append(post_view)

    def read_view(self, n: int) -> View:
        if not 0 <= n < len(self.read_views):
            raise StructuralError(f"No memory read #{n} in this instruction")
        return self.read_views[n]

    def implicit_view(self) -> View:
        return join(self.reg_view, join_all(self.read_views))

    def resolve(self, deps: Deps, reg_view) -> View:
        """View an effect with dependencies ``deps`` must come after.

        ``reg_view`` maps a register name to its current view.
        """
        if not isinstance(deps, Explicit):
            return self.implicit_view()
        return join(join_all(self.read_view(n) for n in deps.reads),
                    join_all(reg_view(r) for r in deps.regs))

    # -- Translation walks --

    def start_walk(self, result: WalkResult):
        page = va_page(result.va)
        if page in self.walks:
            raise StructuralError(f"Translation of {result.va:#x} already in flight")
        self.walks[page] = WalkCont(result.time,
                                    list(zip(result.locs, result.descs)),
                                    result.deadline, result)

    def next_descriptor(self, va: int, loc: int) -> int:
        cont = self.walks.get(va_page(va))
        if cont is None:
            raise StructuralError(f"Descriptor read for {va:#x} with no walk in flight")
        if not cont.remaining:
            raise StructuralError(f"Walk of {va:#x} has no descriptors left")
        exp_loc, desc = cont.remaining.pop(0)
        if exp_loc != loc:
            raise StructuralError(
                f"Walk of {va:#x} expected descriptor at {exp_loc:#x}, got {loc:#x}")
        return desc

    def end_walk(self, va: int) -> WalkResult:
        cont = self.walks.pop(va_page(va), None)
        if cont is None:
            raise StructuralError(f"Translation end for {va:#x} with no walk in flight")
        if cont.remaining:
            raise StructuralError(
                f"Translation of {va:#x} ended with {len(cont.remaining)} descriptor(s) unread")
        self.add_strict(cont.time)
        if cont.deadline is not None:
            self.deadline = (cont.deadline if self.deadline is None
                             else meet(self.deadline, cont.deadline))
        return cont.result
