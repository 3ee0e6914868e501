"""
Effect Interpreter
==================
Runs one abstract effect against a thread's state, the shared memory and
the current instruction's scratch state.

``Interpreter.step`` returns one ``Outcome`` per nondeterministic branch:

  OK       the effect ran; ``result`` goes back to the instruction and
           ``config`` is the successor state
  DISCARD  this combination of choices breaks an ordering rule; the path
           is abandoned (not an error)

Unsupported effects and malformed input raise ``UnsupportedError`` /
``StructuralError`` instead.  Nothing is mutated in place: every branch
gets fresh copies of whatever it changes, so the caller's configuration
stays valid for exploring the other branches.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional

from effects import (
    Effect, RegRead, RegWrite, MemRead, MemWrite, Barrier, Tlbi, Branch,
    TranslationStart, TranslationEnd, ReturnException, Choose, Discard,
    IndirectRegRead, AtomicRMW,
    AccessKind, BarrierKind, Domain, LOC_ALIGN, IFETCH_SIZE, MASK64,
    SYSREG_TTBR0, UnsupportedError, StructuralError,
    is_acquire, is_normal, is_strong, is_sysreg,
)
from iis import InstructionScratchState
from memory import Memory, Write, TlbiEvent, TlbiKind, TlbiOp, check_loc
from threadstate import FwdItem, ThreadState
from tlb import ttbr_fields, walk
from views import View, below, join, view_if

logger = logging.getLogger(__name__)

# Largest Choose() the interpreter will enumerate.
MAX_CHOOSE_BITS = 8

# TLBI operations the model implements: EL1&0 regime, inner shareable.
TLBI_OPS = {
    "VMALLE1IS": (TlbiKind.ALL,  False),
    "ASIDE1IS":  (TlbiKind.ASID, False),
    "VAE1IS":    (TlbiKind.VA,   False),
    "VALE1IS":   (TlbiKind.VA,   True),
    "VAAE1IS":   (TlbiKind.VAA,  False),
    "VAALE1IS":  (TlbiKind.VAA,  True),
}

TLBI_PAGE_MASK = (1 << 44) - 1


def decode_tlbi(op: str, value: int) -> TlbiOp:
    """Build the invalidation scope of a TLBI instruction."""
    name = op.upper()
    if name not in TLBI_OPS:
        raise UnsupportedError(f"TLBI {op}")
    kind, last_level = TLBI_OPS[name]
    asid = (value >> 48) & 0xFFFF if kind in (TlbiKind.ASID, TlbiKind.VA) else None
    page = value & TLBI_PAGE_MASK if kind in (TlbiKind.VA, TlbiKind.VAA) else None
    return TlbiOp(kind, asid, page, last_level)


# ---------------------------------------------------------------------------
#  Configurations and outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Config:
    """What one effect runs against."""
    ts: ThreadState
    mem: Memory
    iis: InstructionScratchState


class Status(Enum):
    OK      = "ok"
    DISCARD = "discard"


@dataclass(frozen=True)
class Outcome:
    status: Status
    config: Optional[Config] = None
    result: Any = None
    reason: str = ""

    @classmethod
    def ok(cls, config: Config, result: Any = None) -> Outcome:
        return cls(Status.OK, config, result)

    @classmethod
    def discard(cls, reason: str) -> Outcome:
        logger.debug("discard: %s", reason)
        return cls(Status.DISCARD, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status is Status.OK


# ---------------------------------------------------------------------------
#  Interpreter
# ---------------------------------------------------------------------------

class Interpreter:
    """Step function of the promising model, one effect at a time."""

    def __init__(self):
        self._handlers: dict[type, Callable[[Any, Config], list[Outcome]]] = {
            RegRead:          self._reg_read,
            RegWrite:         self._reg_write,
            MemRead:          self._mem_read,
            MemWrite:         self._mem_write,
            Barrier:          self._barrier,
            Tlbi:             self._tlbi,
            Branch:           self._branch,
            TranslationStart: self._translation_start,
            TranslationEnd:   self._translation_end,
            ReturnException:  self._return_exception,
            Choose:           self._choose,
            Discard:          self._discard,
            IndirectRegRead:  self._unsupported("indirect register access"),
            AtomicRMW:        self._unsupported("atomic read-modify-write"),
        }

    def step(self, effect: Effect, cfg: Config) -> list[Outcome]:
        handler = self._handlers.get(type(effect))
        if handler is None:
            raise UnsupportedError(f"effect {type(effect).__name__}")
        return handler(effect, cfg)

    @staticmethod
    def new_instruction() -> InstructionScratchState:
        return InstructionScratchState()

    @staticmethod
    def terminate(ts: ThreadState) -> ThreadState:
        """Thread termination is a context synchronization."""
        ts = ts.clone()
        ts.cse()
        return ts

    # -- Helpers --

    @staticmethod
    def _unsupported(what: str):
        def handler(effect, cfg):
            raise UnsupportedError(what)
        return handler

    @staticmethod
    def _deps_view(iis: InstructionScratchState, ts: ThreadState, deps) -> View:
        return iis.resolve(deps, ts.reg_view)

    # -- Registers --

    def _reg_read(self, eff: RegRead, cfg: Config) -> list[Outcome]:
        value, view = cfg.ts.read_reg(eff.reg)
        iis = cfg.iis.clone()
        iis.add_reg_read(view)
        return [Outcome.ok(replace(cfg, iis=iis), value)]

    def _reg_write(self, eff: RegWrite, cfg: Config) -> list[Outcome]:
        ts = cfg.ts.clone()
        vdep = self._deps_view(cfg.iis, ts, eff.deps)
        value = eff.value & MASK64
        if is_sysreg(eff.reg):
            ts.write_sysreg(eff.reg, value, join(vdep, ts.vspec, ts.vcse, ts.vdsb))
        else:
            ts.set_reg(eff.reg, value, vdep)
        return [Outcome.ok(replace(cfg, ts=ts))]

    def _branch(self, eff: Branch, cfg: Config) -> list[Outcome]:
        ts = cfg.ts.clone()
        ts.update("vspec", self._deps_view(cfg.iis, ts, eff.deps))
        return [Outcome.ok(replace(cfg, ts=ts))]

    # -- Memory reads --

    def _mem_read(self, eff: MemRead, cfg: Config) -> list[Outcome]:
        if eff.kind is AccessKind.IFETCH:
            return self._ifetch(eff, cfg)
        if eff.size != LOC_ALIGN:
            raise UnsupportedError(f"{eff.size}-byte memory read")
        loc = check_loc(eff.addr)
        if eff.kind is AccessKind.TTW:
            if eff.va is None:
                raise StructuralError("Descriptor read without a virtual address")
            iis = cfg.iis.clone()
            return [Outcome.ok(replace(cfg, iis=iis), iis.next_descriptor(eff.va, loc))]
        return self.read_mem_explicit(loc, eff, cfg)

    def _ifetch(self, eff: MemRead, cfg: Config) -> list[Outcome]:
        if eff.size != IFETCH_SIZE:
            raise UnsupportedError(f"{eff.size}-byte instruction fetch")
        if eff.addr % IFETCH_SIZE:
            raise StructuralError(f"Unaligned instruction fetch at {eff.addr:#x}")
        loc = check_loc(eff.addr & ~(LOC_ALIGN - 1))
        value, _ = cfg.mem.read_at(loc, cfg.ts.vcse)
        shift = 8 * (eff.addr & (LOC_ALIGN - 1))
        return [Outcome.ok(cfg, (value >> shift) & 0xFFFFFFFF)]

    def read_mem_explicit(self, loc: int, eff: MemRead, cfg: Config) -> list[Outcome]:
        ts, mem, iis = cfg.ts, cfg.mem, cfg.iis
        vaddr = self._deps_view(iis, ts, eff.addr_deps)
        vbob = join(ts.vdmb, ts.vdsb, ts.vcse, ts.vacq,
                    view_if(is_strong(eff.kind), ts.vrel))
        vpre = join(vaddr, vbob, iis.strict)
        vread = join(vpre, ts.coh_view(loc))
        fwd = ts.fwd(loc)

        outcomes = []
        for value, t in mem.read(loc, vread):
            if fwd.time == t:
                read_view = t if fwd.xcl and not is_normal(eff.kind) else fwd.view
            else:
                read_view = t
            vpost = join(vpre, read_view)
            if not below(vpost, iis.deadline):
                outcomes.append(Outcome.discard(
                    f"read of {loc:#x} at {vpost} uses a translation invalidated at {iis.deadline}"))
                continue
            nts = ts.clone()
            nts.raise_coh(loc, t)
            nts.update("vrd", vpost)
            if is_acquire(eff.kind):
                nts.update("vacq", vpost)
            nts.update("vspec", vaddr)
            if eff.exclusive:
                nts.xclb = (t, vpost)
            niis = iis.clone()
            niis.add_read(vpost)
            outcomes.append(Outcome.ok(Config(nts, mem, niis), value))
        return outcomes

    # -- Memory writes --

    def _mem_write(self, eff: MemWrite, cfg: Config) -> list[Outcome]:
        if eff.size != LOC_ALIGN:
            raise UnsupportedError(f"{eff.size}-byte memory write")
        if eff.kind not in (AccessKind.NORMAL, AccessKind.RELEASE):
            raise StructuralError(f"{eff.kind.value} access cannot write")
        loc = check_loc(eff.addr)
        if eff.exclusive:
            return self.write_mem_xcl(loc, eff, cfg)
        res = self.write_mem(loc, eff, cfg)
        if isinstance(res, Outcome):
            return [res]
        _, ts, mem = res
        return [Outcome.ok(Config(ts, mem, cfg.iis))]

    def _fulfil_or_promise(self, ts: ThreadState, mem: Memory,
                           event) -> tuple[int, Memory, bool]:
        """(timestamp, memory, fulfilled) for ``event``."""
        t = mem.fulfill(event, ts.prom)
        if t is not None:
            logger.debug("T%d fulfils %s at %d", ts.tid, event, t)
            return t, mem, True
        t, mem = mem.promise(event)
        return t, mem, False

    def write_mem(self, loc: int, eff: MemWrite, cfg: Config):
        """Shared body of plain and exclusive stores.

        Returns ``(timestamp, thread state, memory)`` or a DISCARD outcome.
        """
        ts, iis = cfg.ts, cfg.iis
        release = eff.kind is AccessKind.RELEASE
        vaddr = self._deps_view(iis, ts, eff.addr_deps)
        vdata = self._deps_view(iis, ts, eff.data_deps)
        event = Write(ts.tid, loc, eff.value & MASK64)
        t, mem, fulfilled = self._fulfil_or_promise(ts, cfg.mem, event)

        vbob = join(ts.vdmbst, ts.vdmb, ts.vdsb, ts.vcse, ts.vacq,
                    view_if(release, join(ts.vrd, ts.vwr)))
        vpre = join(vaddr, vdata, ts.vspec, vbob, iis.strict)
        if not join(vpre, ts.coh_view(loc)) < t:
            return Outcome.discard(
                f"write to {loc:#x} at {t} is not after its view {join(vpre, ts.coh_view(loc))}")
        if not below(t, iis.deadline):
            return Outcome.discard(
                f"write to {loc:#x} at {t} uses a translation invalidated at {iis.deadline}")

        ts = ts.clone()
        if fulfilled:
            ts.drop_promise(t)
        ts.raise_coh(loc, t)
        ts.update("vwr", t)
        if release:
            ts.update("vrel", t)
        ts.set_fwd(loc, FwdItem(t, join(vaddr, vdata), eff.exclusive))
        return t, ts, mem

    def write_mem_xcl(self, loc: int, eff: MemWrite, cfg: Config) -> list[Outcome]:
        """Store-exclusive: a success branch (result True) subject to the
        atomicity check, and an architectural failure branch (False)."""
        failed = cfg.ts.clone()
        failed.xclb = None
        outcomes = [self._xcl_success(loc, eff, cfg),
                    Outcome.ok(replace(cfg, ts=failed), False)]
        return outcomes

    def _xcl_success(self, loc: int, eff: MemWrite, cfg: Config) -> Outcome:
        if cfg.ts.xclb is None:
            return Outcome.discard("exclusive store without an exclusive load")
        xtime, _ = cfg.ts.xclb
        res = self.write_mem(loc, eff, cfg)
        if isinstance(res, Outcome):
            return res
        t, ts, mem = res
        if not mem.cut_after(t).exclusive(loc, xtime, ts.tid):
            return Outcome.discard(
                f"exclusive pair on {loc:#x} broken between {xtime} and {t}")
        ts.xclb = None
        return Outcome.ok(Config(ts, mem, cfg.iis), True)

    # -- Barriers --

    def _barrier(self, eff: Barrier, cfg: Config) -> list[Outcome]:
        if eff.domain is Domain.NSH:
            raise UnsupportedError("non-shareable barrier")
        ts = cfg.ts.clone()
        k = eff.kind
        if k is BarrierKind.DMB_SY:
            ts.update("vdmb", join(ts.vrd, ts.vwr, ts.vcse, ts.vdsb))
        elif k is BarrierKind.DMB_LD:
            ts.update("vdmb", join(ts.vrd, ts.vcse, ts.vdsb))
        elif k is BarrierKind.DMB_ST:
            ts.update("vdmbst", join(ts.vwr, ts.vcse, ts.vdsb))
        elif k is BarrierKind.DSB_SY:
            ts.update("vdsb", join(ts.vrd, ts.vwr, ts.vcse, ts.vdsb, ts.vtlbi))
        elif k is BarrierKind.DSB_LD:
            ts.update("vdsb", join(ts.vrd, ts.vcse))
        elif k is BarrierKind.DSB_ST:
            ts.update("vdsb", join(ts.vwr, ts.vcse, ts.vtlbi))
        elif k is BarrierKind.ISB:
            ts.cse()
        else:
            raise UnsupportedError(f"barrier {k}")
        return [Outcome.ok(replace(cfg, ts=ts))]

    def _return_exception(self, eff: ReturnException, cfg: Config) -> list[Outcome]:
        ts = cfg.ts.clone()
        ts.cse()
        return [Outcome.ok(replace(cfg, ts=ts))]

    # -- TLB maintenance --

    def _tlbi(self, eff: Tlbi, cfg: Config) -> list[Outcome]:
        op = decode_tlbi(eff.op, eff.value)
        ts, iis = cfg.ts, cfg.iis
        event = TlbiEvent(ts.tid, op)
        t, mem, fulfilled = self._fulfil_or_promise(ts, cfg.mem, event)
        vpre = join(ts.vcse, ts.vdsb, iis.strict, self._deps_view(iis, ts, eff.deps))
        if not vpre < t:
            return [Outcome.discard(f"TLBI at {t} is not after its view {vpre}")]
        ts = ts.clone()
        if fulfilled:
            ts.drop_promise(t)
        ts.record_tlbi(t)
        return [Outcome.ok(Config(ts, mem, iis))]

    # -- Translation --

    def _translation_start(self, eff: TranslationStart, cfg: Config) -> list[Outcome]:
        ts, iis = cfg.ts, cfg.iis
        floor = join(self._deps_view(iis, ts, eff.deps), ts.vcse, ts.vdsb, iis.strict)
        cursor = ts.cursor_at(floor)
        roots = dict.fromkeys(value for value, _ in ts.sread_all(SYSREG_TTBR0, cursor))
        outcomes = []
        for ttbr in roots:
            root, asid = ttbr_fields(ttbr)
            for result in walk(cfg.mem, eff.va, root, asid, floor, ts.tlb):
                niis = iis.clone()
                niis.start_walk(result)
                outcomes.append(Outcome.ok(replace(cfg, iis=niis), root))
        return outcomes

    def _translation_end(self, eff: TranslationEnd, cfg: Config) -> list[Outcome]:
        iis = cfg.iis.clone()
        result = iis.end_walk(eff.va)
        return [Outcome.ok(replace(cfg, iis=iis), result.pa)]

    # -- Control --

    def _choose(self, eff: Choose, cfg: Config) -> list[Outcome]:
        if not 0 <= eff.bits <= MAX_CHOOSE_BITS:
            raise UnsupportedError(f"choice over {eff.bits} bits")
        return [Outcome.ok(cfg, v) for v in range(1 << eff.bits)]

    def _discard(self, eff: Discard, cfg: Config) -> list[Outcome]:
        return [Outcome.discard(eff.reason)]
