"""
Thread State
============
Per-thread state of the promising model: register files with views, the
system-register write history, per-location coherence and forwarding
records, pending promises and the monotone view counters that encode every
ordering rule.

All mutators update in place; the interpreter always works on a ``clone()``
so the state of the parent path is never touched.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Optional

from effects import SYSREGS, StructuralError, is_sysreg
from memory import Location
from tlb import TranslationCache
from views import View, join

# General-purpose registers every thread has, initialised to zero unless the
# caller provides a value.
APP_REGS = tuple(f"X{i}" for i in range(31)) + ("SP",)

# View counters, in the order they are printed by ``dump_views``.
COUNTERS = (
    "vrd",      # any read
    "vwr",      # any write
    "vdmbst",   # DMB ST output (orders later writes)
    "vdmb",     # DMB SY/LD output
    "vdsb",     # DSB output
    "vspec",    # speculation: address and branch operands
    "vcse",     # last context synchronization
    "vtlbi",    # TLB maintenance
    "vmsr",     # system-register writes
    "vacq",     # acquire accesses
    "vrel",     # release accesses
)


@dataclass(frozen=True)
class FwdItem:
    """Most recent own write a read of the same location may forward from."""
    time: int = 0
    view: View = 0
    xcl: bool = False


FWD_NONE = FwdItem()


class ThreadState:
    """Everything one logical thread carries across instructions."""

    def __init__(self, tid: int,
                 regs: Optional[Mapping[str, int]] = None,
                 sysregs: Optional[Mapping[str, int]] = None,
                 tlb: Optional[TranslationCache] = None):
        self.tid = tid

        # Initial snapshot: fallback for registers never written.
        init = {r: 0 for r in APP_REGS}
        init.update({r: 0 for r in SYSREGS})
        init.update(regs or {})
        init.update(sysregs or {})
        self.init_regs: Mapping[str, int] = init

        self.prom: list[int] = []
        self.regs: dict[str, tuple[int, View]] = {}

        # System registers: (reg, value, view) oldest first, plus the
        # history length at the last context synchronization.
        self.sys_history: list[tuple[str, int, View]] = []
        self.sync_cursor: int = 0
        # view -> sync cursor at that point (CSEs and TLBIs)
        self.cse_marks: dict[int, int] = {}

        self.coh: dict[Location, View] = {}
        self.fwdb: dict[Location, FwdItem] = {}
        self.xclb: Optional[tuple[int, View]] = None

        for name in COUNTERS:
            setattr(self, name, 0)

        self.tlb: TranslationCache = tlb if tlb is not None else TranslationCache()

    def clone(self) -> ThreadState:
        ts = ThreadState.__new__(ThreadState)
        ts.__dict__.update(self.__dict__)
        ts.prom = list(self.prom)
        ts.regs = dict(self.regs)
        ts.sys_history = list(self.sys_history)
        ts.cse_marks = dict(self.cse_marks)
        ts.coh = dict(self.coh)
        ts.fwdb = dict(self.fwdb)
        return ts

    # -- Counters --

    def update(self, counter: str, v: View):
        """Raise a monotone counter to at least ``v``."""
        if v > getattr(self, counter):
            setattr(self, counter, v)

    def views(self) -> dict[str, View]:
        return {name: getattr(self, name) for name in COUNTERS}

    # -- Registers --

    def known(self, reg: str) -> bool:
        return reg in self.init_regs

    def _check_reg(self, reg: str):
        if not self.known(reg):
            raise StructuralError(f"Unknown register {reg!r}")

    def read_reg(self, reg: str) -> tuple[int, View]:
        """Current (value, view) of an application or system register.

        System registers read directly see the latest write in program
        order.
        """
        self._check_reg(reg)
        if is_sysreg(reg):
            return self.sread_last(reg, len(self.sys_history))
        return self.regs.get(reg, (self.init_regs[reg], 0))

    def set_reg(self, reg: str, value: int, view: View):
        self._check_reg(reg)
        if is_sysreg(reg):
            raise StructuralError(f"{reg} is a system register; use write_sysreg")
        self.regs[reg] = (value, view)

    def reg_view(self, reg: str) -> View:
        return self.read_reg(reg)[1]

    def plain_regs(self) -> dict[str, int]:
        """Application registers with views stripped."""
        out = {r: v for r, v in self.init_regs.items() if not is_sysreg(r)}
        out.update({r: val for r, (val, _) in self.regs.items()})
        return out

    # -- System registers --

    def write_sysreg(self, reg: str, value: int, view: View):
        self._check_reg(reg)
        self.sys_history.append((reg, value, view))
        self.update("vmsr", view)

    def sread_last(self, reg: str, s: int) -> tuple[int, View]:
        """Last value of ``reg`` among the first ``s`` history entries."""
        for name, value, view in reversed(self.sys_history[:s]):
            if name == reg:
                return value, view
        return self.init_regs[reg], 0

    def sread_all(self, reg: str, s: int) -> list[tuple[int, View]]:
        """Every value of ``reg`` possibly visible given sync cursor ``s``:
        the last synchronized one plus all later writes."""
        out = [self.sread_last(reg, s)]
        out.extend((value, view) for name, value, view in self.sys_history[s:]
                   if name == reg)
        return out

    def cse(self):
        """Context synchronization: all earlier sysreg writes take effect."""
        self.sync_cursor = len(self.sys_history)
        self.update("vcse", join(self.vspec, self.vcse, self.vdsb, self.vmsr))
        self._mark(self.vcse)

    def record_tlbi(self, t: int):
        """A TLBI at ``t`` is seen with the current sync cursor."""
        self.update("vtlbi", t)
        self._mark(t)

    def _mark(self, v: View):
        self.cse_marks[v] = max(self.cse_marks.get(v, 0), self.sync_cursor)

    def cursor_at(self, v: View) -> int:
        """Sync cursor in force for an MMU access at view ``v``."""
        return max((c for t, c in self.cse_marks.items() if t <= v), default=0)

    # -- Memory bookkeeping --

    def coh_view(self, loc: Location) -> View:
        return self.coh.get(loc, 0)

    def raise_coh(self, loc: Location, v: View):
        if v > self.coh.get(loc, 0):
            self.coh[loc] = v

    def fwd(self, loc: Location) -> FwdItem:
        return self.fwdb.get(loc, FWD_NONE)

    def set_fwd(self, loc: Location, item: FwdItem):
        self.fwdb[loc] = item

    def push_promise(self, t: int):
        self.prom.append(t)

    def drop_promise(self, t: int):
        self.prom.remove(t)

    @property
    def no_promises(self) -> bool:
        return not self.prom

    # -- Debug / introspection --

    def dump_views(self) -> str:
        return "  ".join(f"{n}={getattr(self, n)}" for n in COUNTERS)

    def __repr__(self) -> str:
        return f"<ThreadState T{self.tid} prom={self.prom} {self.dump_views()}>"
