"""
Litmus Programs
===============
A tiny AArch64-flavoured assembler whose "machine code" is effect
generators, plus the catalogue of litmus tests shipped with the simulator.

Supports:
  - mov Xd, #imm            add/eor Xd, Xn, Xm|#imm
  - ldr/ldar/ldapr/ldxr Xt, [Xn{, Xm|#imm}]
  - str/stlr Xt, [Xn{, Xm|#imm}]      stxr Ws, Xt, [Xn]
  - dmb/dsb sy|ld|st|ish|ishld|ishst|osh|nsh       isb
  - tlbi OP{, Xt}           msr SYSREG, Xt           mrs Xt, SYSREG
  - cbz/cbnz Xn (branch resolution only; control never transfers)
  - eret, ldadd Xs, Xt, [Xn] (reported unsupported)
  - Comments (';' to end of line)

With ``mmu=True`` every data access translates its address through the
page tables first (see ``PageTables``).

Usage:
  from litmus import assemble, run
  program = assemble("mov X0, #1\\nstr X0, [X1]")
  result = run("MP")
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Callable, Generator, Mapping, Optional, Sequence

from effects import (
    RegRead, RegWrite, MemRead, MemWrite, Barrier, Tlbi, Branch,
    TranslationStart, TranslationEnd, ReturnException, Discard, AtomicRMW,
    AccessKind, BarrierKind, Domain, SYSREGS, SYSREG_TTBR0, StructuralError,
)
from explore import ExploreResult, Explorer
from tlb import (
    MAX_LEVEL, TTBR_ASID_SHIFT, desc_is_table, desc_location, make_page,
    make_table, next_table, level_index,
)
from views import Explicit, IMPLICIT_ALL, NO_DEPS


class LitmusError(StructuralError):
    def __init__(self, lineno: int, message: str):
        self.lineno = lineno
        super().__init__(f"Line {lineno}: {message}")


class Instr:
    """One assembled instruction: its text and its effect generator."""

    def __init__(self, text: str, fn: Callable[[], Generator]):
        self.text = text
        self._fn = fn

    def __call__(self) -> Generator:
        return self._fn()

    def __repr__(self) -> str:
        return self.text


# ---------------------------------------------------------------------------
#  Mnemonic tables
# ---------------------------------------------------------------------------

LOAD_KINDS = {
    "ldr":   (AccessKind.NORMAL,     False),
    "ldar":  (AccessKind.ACQUIRE,    False),
    "ldapr": (AccessKind.ACQUIRE_PC, False),
    "ldxr":  (AccessKind.NORMAL,     True),
    "ldaxr": (AccessKind.ACQUIRE,    True),
}

STORE_KINDS = {
    "str":   AccessKind.NORMAL,
    "stlr":  AccessKind.RELEASE,
}

BARRIER_OPTS = {
    # option -> (kind suffix, domain)
    "sy":    ("SY", Domain.SY),
    "ld":    ("LD", Domain.SY),
    "st":    ("ST", Domain.SY),
    "ish":   ("SY", Domain.ISH),
    "ishld": ("LD", Domain.ISH),
    "ishst": ("ST", Domain.ISH),
    "osh":   ("SY", Domain.OSH),
    "oshld": ("LD", Domain.OSH),
    "oshst": ("ST", Domain.OSH),
    "nsh":   ("SY", Domain.NSH),
    "nshld": ("LD", Domain.NSH),
    "nshst": ("ST", Domain.NSH),
}

_MEM_OPERAND = re.compile(r"^\[\s*(\w+)\s*(?:,\s*(#?-?\w+)\s*)?\]$")


# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _parse_reg(lineno: int, tok: str) -> str:
    """'X0'-'X30', 'SP', or 'W0'-'W30' (an alias of the X register)."""
    t = tok.strip().upper()
    if t == "SP":
        return t
    if t[:1] in ("X", "W") and t[1:].isdigit() and 0 <= int(t[1:]) <= 30:
        return "X" + t[1:]
    raise LitmusError(lineno, f"Invalid register: {tok!r}")


def _parse_imm(lineno: int, tok: str) -> int:
    t = tok.strip().lstrip("#")
    try:
        return int(t, 0)
    except ValueError:
        raise LitmusError(lineno, f"Invalid immediate: {tok!r}") from None


def _parse_mem(lineno: int, tok: str) -> tuple[str, Optional[str], int]:
    """'[Xn]', '[Xn, #imm]' or '[Xn, Xm]' -> (base, index reg, offset)."""
    m = _MEM_OPERAND.match(tok.strip())
    if not m:
        raise LitmusError(lineno, f"Invalid memory operand: {tok!r}")
    base = _parse_reg(lineno, m.group(1))
    off = m.group(2)
    if off is None:
        return base, None, 0
    if off.startswith("#") or off.lstrip("-").isdigit():
        return base, None, _parse_imm(lineno, off)
    return base, _parse_reg(lineno, off), 0


def _split_ops(rest: str) -> list[str]:
    """Split operands on commas that are not inside brackets."""
    ops, depth, cur = [], 0, ""
    for ch in rest:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        if ch == "," and depth == 0:
            ops.append(cur.strip())
            cur = ""
        else:
            cur += ch
    if cur.strip():
        ops.append(cur.strip())
    return ops


def _expect(lineno: int, mnem: str, ops: list[str], n: int):
    if len(ops) != n:
        raise LitmusError(lineno, f"{mnem} takes {n} operand(s), got {len(ops)}")


# ---------------------------------------------------------------------------
#  Effect generators
# ---------------------------------------------------------------------------

def _address(base: str, index: Optional[str], offset: int):
    """Read the address registers; returns (address, address dependencies)."""
    addr = yield RegRead(base)
    regs = (base,)
    if index is not None:
        addr += yield RegRead(index)
        regs = (base, index)
    return addr + offset, Explicit(regs=regs)


def _translate(va: int, deps: Explicit):
    """Translation start, one descriptor read per level, translation end."""
    table = yield TranslationStart(va, deps)
    for level in range(MAX_LEVEL + 1):
        loc = desc_location(table, va, level)
        desc = yield MemRead(loc, kind=AccessKind.TTW, va=va)
        if not desc_is_table(desc, level):
            break
        table = next_table(desc)
    pa = yield TranslationEnd(va)
    if pa is None:
        yield Discard(f"translation fault at {va:#x}")
    return pa


def _load(dst, base, index, offset, kind, exclusive, mmu):
    def gen():
        addr, deps = yield from _address(base, index, offset)
        if mmu:
            addr = yield from _translate(addr, deps)
        value = yield MemRead(addr, kind=kind, exclusive=exclusive, addr_deps=deps)
        yield RegWrite(dst, value, Explicit(reads=(0,)))
    return gen


def _store(src, base, index, offset, kind, mmu, status=None):
    def gen():
        addr, deps = yield from _address(base, index, offset)
        if mmu:
            addr = yield from _translate(addr, deps)
        value = yield RegRead(src)
        ok = yield MemWrite(addr, value, kind=kind, exclusive=status is not None,
                            addr_deps=deps, data_deps=Explicit(regs=(src,)))
        if status is not None:
            yield RegWrite(status, 0 if ok else 1, NO_DEPS)
    return gen


def _alu(dst, a, b, imm, op):
    def gen():
        x = yield RegRead(a)
        if b is None:
            y, regs = imm, (a,)
        else:
            y = yield RegRead(b)
            regs = (a, b)
        yield RegWrite(dst, op(x, y), Explicit(regs=regs))
    return gen


def _atomic(src, base, index, offset):
    def gen():
        addr, _ = yield from _address(base, index, offset)
        operand = yield RegRead(src)
        yield AtomicRMW(addr, "add", operand)
    return gen


def _single(*effects):
    def gen():
        for eff in effects:
            yield eff
    return gen


def _mov(dst, imm):
    return _single(RegWrite(dst, imm, NO_DEPS))


def _tlbi(op, reg):
    def gen():
        value = 0
        deps = NO_DEPS
        if reg is not None:
            value = yield RegRead(reg)
            deps = Explicit(regs=(reg,))
        yield Tlbi(op, value, deps)
    return gen


def _msr(sysreg, src):
    def gen():
        value = yield RegRead(src)
        yield RegWrite(sysreg, value, Explicit(regs=(src,)))
    return gen


def _mrs(dst, sysreg):
    def gen():
        value = yield RegRead(sysreg)
        yield RegWrite(dst, value, IMPLICIT_ALL)
    return gen


def _branch(reg):
    def gen():
        yield RegRead(reg)
        yield Branch(Explicit(regs=(reg,)))
    return gen


# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble_line(lineno: int, line: str, mmu: bool = False) -> Optional[Instr]:
    text = line.split(";", 1)[0].strip()
    if not text:
        return None
    parts = text.split(None, 1)
    mnem = parts[0].lower()
    ops = _split_ops(parts[1]) if len(parts) > 1 else []

    if mnem == "mov":
        _expect(lineno, mnem, ops, 2)
        return Instr(text, _mov(_parse_reg(lineno, ops[0]), _parse_imm(lineno, ops[1])))

    if mnem in ("add", "eor"):
        _expect(lineno, mnem, ops, 3)
        dst, a = _parse_reg(lineno, ops[0]), _parse_reg(lineno, ops[1])
        fn = (lambda x, y: x + y) if mnem == "add" else (lambda x, y: x ^ y)
        if ops[2].startswith("#"):
            return Instr(text, _alu(dst, a, None, _parse_imm(lineno, ops[2]), fn))
        return Instr(text, _alu(dst, a, _parse_reg(lineno, ops[2]), 0, fn))

    if mnem in LOAD_KINDS:
        _expect(lineno, mnem, ops, 2)
        kind, xcl = LOAD_KINDS[mnem]
        base, index, off = _parse_mem(lineno, ops[1])
        return Instr(text, _load(_parse_reg(lineno, ops[0]), base, index, off,
                                 kind, xcl, mmu))

    if mnem in STORE_KINDS:
        _expect(lineno, mnem, ops, 2)
        base, index, off = _parse_mem(lineno, ops[1])
        return Instr(text, _store(_parse_reg(lineno, ops[0]), base, index, off,
                                  STORE_KINDS[mnem], mmu))

    if mnem in ("stxr", "stlxr"):
        _expect(lineno, mnem, ops, 3)
        base, index, off = _parse_mem(lineno, ops[2])
        kind = AccessKind.RELEASE if mnem == "stlxr" else AccessKind.NORMAL
        return Instr(text, _store(_parse_reg(lineno, ops[1]), base, index, off,
                                  kind, mmu, status=_parse_reg(lineno, ops[0])))

    if mnem in ("dmb", "dsb"):
        _expect(lineno, mnem, ops, 1)
        opt = BARRIER_OPTS.get(ops[0].lower())
        if opt is None:
            raise LitmusError(lineno, f"Invalid barrier option: {ops[0]!r}")
        kind = BarrierKind[f"{mnem.upper()}_{opt[0]}"]
        return Instr(text, _single(Barrier(kind, opt[1])))

    if mnem == "isb":
        return Instr(text, _single(Barrier(BarrierKind.ISB)))

    if mnem == "eret":
        return Instr(text, _single(ReturnException()))

    if mnem == "tlbi":
        if not 1 <= len(ops) <= 2:
            raise LitmusError(lineno, "tlbi takes an operation and an optional register")
        reg = _parse_reg(lineno, ops[1]) if len(ops) == 2 else None
        return Instr(text, _tlbi(ops[0].upper(), reg))

    if mnem == "msr":
        _expect(lineno, mnem, ops, 2)
        sysreg = ops[0].upper()
        if sysreg not in SYSREGS:
            raise LitmusError(lineno, f"Unknown system register: {ops[0]!r}")
        return Instr(text, _msr(sysreg, _parse_reg(lineno, ops[1])))

    if mnem == "mrs":
        _expect(lineno, mnem, ops, 2)
        sysreg = ops[1].upper()
        if sysreg not in SYSREGS:
            raise LitmusError(lineno, f"Unknown system register: {ops[1]!r}")
        return Instr(text, _mrs(_parse_reg(lineno, ops[0]), sysreg))

    if mnem in ("cbz", "cbnz"):
        _expect(lineno, mnem, ops, 1)
        return Instr(text, _branch(_parse_reg(lineno, ops[0])))

    if mnem == "ldadd":
        _expect(lineno, mnem, ops, 3)
        return Instr(text, _atomic(_parse_reg(lineno, ops[0]),
                                   *_parse_mem(lineno, ops[2])))

    raise LitmusError(lineno, f"Unknown mnemonic: {mnem!r}")


def assemble(source: str, mmu: bool = False) -> list[Instr]:
    """Assemble one thread's program."""
    program = []
    for lineno, line in enumerate(source.splitlines(), 1):
        instr = assemble_line(lineno, line, mmu)
        if instr is not None:
            program.append(instr)
    return program


# ---------------------------------------------------------------------------
#  Page tables
# ---------------------------------------------------------------------------

class PageTables:
    """Builds a 4-level table tree in initial memory.

    Tables are allocated one 4 KiB page at a time from ``base`` upwards.
    """

    def __init__(self, base: int):
        self.root = base
        self._next = base + 0x1000
        self.memory: dict[int, int] = {}

    def _alloc(self) -> int:
        table = self._next
        self._next += 0x1000
        return table

    def map(self, va: int, pa: int) -> int:
        """Map the page of ``va`` to the page of ``pa``; returns the
        location of the level-3 descriptor."""
        table = self.root
        for level in range(MAX_LEVEL):
            loc = table + 8 * level_index(va, level)
            desc = self.memory.get(loc)
            if desc is None:
                desc = make_table(self._alloc())
                self.memory[loc] = desc
            table = next_table(desc)
        loc = table + 8 * level_index(va, MAX_LEVEL)
        self.memory[loc] = make_page(pa)
        return loc

    def identity(self, *addrs: int):
        for addr in addrs:
            self.map(addr, addr)

    def table_pages(self) -> list[int]:
        return list(range(self.root, self._next, 0x1000))

    def ttbr(self, asid: int = 0) -> int:
        return self.root | (asid << TTBR_ASID_SHIFT)


# ---------------------------------------------------------------------------
#  Catalogue
# ---------------------------------------------------------------------------

X = 0x1000
Y = 0x2000


@dataclass
class Litmus:
    name: str
    threads: Sequence[str]
    regs: Sequence[Mapping[str, int]] = ()
    memory: Mapping[int, int] = field(default_factory=dict)
    sysregs: Mapping[str, int] = field(default_factory=dict)
    promises: Mapping[int, Sequence[tuple[int, int]]] = field(default_factory=dict)
    mmu: bool = False
    forbidden: Sequence[Mapping[str, int]] = ()
    allowed: Sequence[Mapping[str, int]] = ()
    doc: str = ""

    def programs(self) -> list[list[Instr]]:
        return [assemble(src, self.mmu) for src in self.threads]

    def explorer(self, **kwargs) -> Explorer:
        return Explorer(self.programs(), initial_memory=self.memory,
                        initial_regs=self.regs, initial_sysregs=self.sysregs,
                        promises=self.promises, **kwargs)


def _vm_setup():
    """VA 0x40_0000 -> PA X (holds 1); PA Y holds 2; tables identity-mapped."""
    va = 0x400000
    pt = PageTables(0x100000)
    pte = pt.map(va, X)
    pt.identity(*pt.table_pages())
    pt.identity(*pt.table_pages())  # tables allocated by the previous pass
    memory = dict(pt.memory)
    memory.update({X: 1, Y: 2})
    regs = {"X1": va, "X2": make_page(Y), "X3": pte, "X4": va >> 12}
    return memory, regs, {SYSREG_TTBR0: pt.ttbr()}


_VM_MEM, _VM_REGS, _VM_SYSREGS = _vm_setup()

_TWO = [{"X1": X, "X2": Y}, {"X1": X, "X2": Y}]

CATALOGUE: dict[str, Litmus] = {t.name: t for t in [
    Litmus("MP", [
        "mov X0, #1\nstr X0, [X1]\nstr X0, [X2]",
        "ldr X0, [X2]\nldr X3, [X1]",
    ], _TWO, {X: 0, Y: 0},
        allowed=[{"1:X0": 1, "1:X3": 0}],
        doc="message passing, no ordering"),
    Litmus("MP+dmbs", [
        "mov X0, #1\nstr X0, [X1]\ndmb sy\nstr X0, [X2]",
        "ldr X0, [X2]\ndmb sy\nldr X3, [X1]",
    ], _TWO, {X: 0, Y: 0},
        forbidden=[{"1:X0": 1, "1:X3": 0}],
        doc="message passing with full barriers"),
    Litmus("MP+dmb.st+addr", [
        "mov X0, #1\nstr X0, [X1]\ndmb st\nstr X0, [X2]",
        "ldr X0, [X2]\neor X4, X0, X0\nldr X3, [X1, X4]",
    ], _TWO, {X: 0, Y: 0},
        forbidden=[{"1:X0": 1, "1:X3": 0}],
        doc="message passing, write barrier and address dependency"),
    Litmus("MP+rel+acq", [
        "mov X0, #1\nstr X0, [X1]\nstlr X0, [X2]",
        "ldar X0, [X2]\nldr X3, [X1]",
    ], _TWO, {X: 0, Y: 0},
        forbidden=[{"1:X0": 1, "1:X3": 0}],
        doc="message passing with release/acquire"),
    Litmus("SB", [
        "mov X0, #1\nstr X0, [X1]\nldr X3, [X2]",
        "mov X0, #1\nstr X0, [X2]\nldr X3, [X1]",
    ], _TWO, {X: 0, Y: 0},
        allowed=[{"0:X3": 0, "1:X3": 0}],
        doc="store buffering"),
    Litmus("SB+dmbs", [
        "mov X0, #1\nstr X0, [X1]\ndmb sy\nldr X3, [X2]",
        "mov X0, #1\nstr X0, [X2]\ndmb sy\nldr X3, [X1]",
    ], _TWO, {X: 0, Y: 0},
        forbidden=[{"0:X3": 0, "1:X3": 0}],
        doc="store buffering with full barriers"),
    Litmus("LB", [
        "ldr X0, [X1]\nmov X3, #1\nstr X3, [X2]",
        "ldr X0, [X2]\nmov X3, #1\nstr X3, [X1]",
    ], _TWO, {X: 0, Y: 0},
        promises={0: [(Y, 1)], 1: [(X, 1)]},
        allowed=[{"0:X0": 1, "1:X0": 1}],
        doc="load buffering, needs promises"),
    Litmus("LB+datas", [
        "ldr X0, [X1]\nstr X0, [X2]",
        "ldr X0, [X2]\nstr X0, [X1]",
    ], _TWO, {X: 0, Y: 0},
        promises={0: [(Y, 1)], 1: [(X, 1)]},
        forbidden=[{"0:X0": 1, "1:X0": 1}],
        doc="load buffering with data dependencies: no thin-air values"),
    Litmus("CoRR", [
        "mov X0, #1\nstr X0, [X1]",
        "ldr X0, [X1]\nldr X3, [X1]",
    ], _TWO, {X: 0},
        forbidden=[{"1:X0": 1, "1:X3": 0}],
        doc="read-read coherence"),
    Litmus("EXCL", [
        "ldxr X0, [X1]\nadd X0, X0, #1\nstxr W5, X0, [X1]",
        "ldxr X0, [X1]\nadd X0, X0, #1\nstxr W5, X0, [X1]",
    ], _TWO, {X: 0},
        forbidden=[{"0:X5": 0, "1:X5": 0, f"[{X:#x}]": 1}],
        allowed=[{"0:X5": 0, "1:X5": 0, f"[{X:#x}]": 2}],
        doc="two exclusive increments never lose an update"),
    Litmus("VM-stale", [
        "ldr X0, [X1]\nstr X2, [X3]\nldr X5, [X1]",
    ], [_VM_REGS], _VM_MEM, _VM_SYSREGS, mmu=True,
        allowed=[{"0:X5": 1}, {"0:X5": 2}],
        doc="remapping a page without TLB maintenance"),
    Litmus("VM-tlbi", [
        "ldr X0, [X1]\nstr X2, [X3]\ndsb ish\ntlbi vae1is, X4\ndsb ish\nisb\nldr X5, [X1]",
    ], [_VM_REGS], _VM_MEM, _VM_SYSREGS, mmu=True,
        forbidden=[{"0:X5": 1}],
        doc="break-before-make style remap with TLBI, DSB and ISB"),
]}


def run(name: str, **kwargs) -> ExploreResult:
    """Explore a catalogue test by name."""
    try:
        test = CATALOGUE[name]
    except KeyError:
        raise StructuralError(f"Unknown litmus test {name!r}") from None
    return test.explorer(**kwargs).run()
