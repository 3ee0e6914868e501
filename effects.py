"""
Effect Protocol
===============
The abstract effects an instruction's semantics emits, one at a time, and
the error hierarchy shared by the whole simulator.

An instruction is a generator: it yields effects from this module and is
sent back the result of each one (a value for reads and translations, a
success flag for exclusive stores, ``None`` otherwise).

Supported accesses are 8-byte aligned, except instruction fetch which reads
4 aligned bytes.  Anything else is reported as ``UnsupportedError`` so model
incompleteness is never mistaken for a legitimate execution outcome.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from views import Deps, IMPLICIT_ALL, NO_DEPS

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

LOC_ALIGN   = 8     # every data access covers one aligned 8-byte cell
IFETCH_SIZE = 4     # instruction fetch is the only narrower access
PA_BITS     = 48    # addressable physical range
PA_LIMIT    = 1 << PA_BITS
MASK64      = (1 << 64) - 1

# System registers the model knows about.  Anything else that is not in a
# thread's initial register file is a structural error.
SYSREG_TTBR0    = "TTBR0_EL1"
SYSREG_SCTLR    = "SCTLR_EL1"
SYSREG_TCR      = "TCR_EL1"
SYSREG_VBAR     = "VBAR_EL1"
SYSREG_ELR      = "ELR_EL1"
SYSREG_SPSR     = "SPSR_EL1"
SYSREG_CONTEXTIDR = "CONTEXTIDR_EL1"

SYSREGS = frozenset({
    SYSREG_TTBR0, SYSREG_SCTLR, SYSREG_TCR, SYSREG_VBAR,
    SYSREG_ELR, SYSREG_SPSR, SYSREG_CONTEXTIDR,
})


def is_sysreg(reg: str) -> bool:
    return reg in SYSREGS


# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class PromisingError(Exception):
    """Base for fatal, path-ending simulator errors."""
    pass


class UnsupportedError(PromisingError):
    """The effect is outside what the model implements."""

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"{what} unsupported")


class StructuralError(PromisingError):
    """Malformed input: unknown register, bad address, protocol misuse."""
    pass


# ---------------------------------------------------------------------------
#  Access and barrier kinds
# ---------------------------------------------------------------------------

class AccessKind(Enum):
    NORMAL    = "normal"
    ACQUIRE   = "acquire"      # LDAR: orders after earlier release stores
    ACQUIRE_PC = "acquire_pc"  # LDAPR: weak acquire
    RELEASE   = "release"      # STLR
    TTW       = "ttw"          # page-table-walk descriptor read
    IFETCH    = "ifetch"


def is_normal(kind: AccessKind) -> bool:
    return kind is AccessKind.NORMAL


def is_strong(kind: AccessKind) -> bool:
    """Release-consistent (RCsc) accesses: LDAR and STLR."""
    return kind in (AccessKind.ACQUIRE, AccessKind.RELEASE)


def is_acquire(kind: AccessKind) -> bool:
    return kind in (AccessKind.ACQUIRE, AccessKind.ACQUIRE_PC)


class BarrierKind(Enum):
    DMB_SY = "dmb sy"
    DMB_LD = "dmb ld"
    DMB_ST = "dmb st"
    DSB_SY = "dsb sy"
    DSB_LD = "dsb ld"
    DSB_ST = "dsb st"
    ISB    = "isb"


class Domain(Enum):
    SY  = "sy"
    ISH = "ish"
    OSH = "osh"
    NSH = "nsh"


# ---------------------------------------------------------------------------
#  Effects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Effect:
    """Base class; never emitted directly."""
    pass


@dataclass(frozen=True)
class RegRead(Effect):
    reg: str


@dataclass(frozen=True)
class RegWrite(Effect):
    reg: str
    value: int
    deps: Deps = IMPLICIT_ALL


@dataclass(frozen=True)
class MemRead(Effect):
    addr: int
    size: int = LOC_ALIGN
    kind: AccessKind = AccessKind.NORMAL
    exclusive: bool = False
    addr_deps: Deps = IMPLICIT_ALL
    va: Optional[int] = None     # TTW reads: which walk they belong to


@dataclass(frozen=True)
class MemWrite(Effect):
    addr: int
    value: int
    size: int = LOC_ALIGN
    kind: AccessKind = AccessKind.NORMAL
    exclusive: bool = False
    addr_deps: Deps = IMPLICIT_ALL
    data_deps: Deps = IMPLICIT_ALL


@dataclass(frozen=True)
class Barrier(Effect):
    kind: BarrierKind
    domain: Domain = Domain.SY


@dataclass(frozen=True)
class Tlbi(Effect):
    """TLB maintenance.  ``op`` is the architectural name, e.g. ``VAE1IS``;
    ``value`` the Xt operand (ASID in [63:48], VA page in [43:0])."""
    op: str
    value: int = 0
    deps: Deps = IMPLICIT_ALL


@dataclass(frozen=True)
class Branch(Effect):
    """Branch resolution: later writes may not be promised before it."""
    deps: Deps = IMPLICIT_ALL


@dataclass(frozen=True)
class TranslationStart(Effect):
    va: int
    deps: Deps = NO_DEPS


@dataclass(frozen=True)
class TranslationEnd(Effect):
    va: int


@dataclass(frozen=True)
class ReturnException(Effect):
    pass


@dataclass(frozen=True)
class Choose(Effect):
    bits: int


@dataclass(frozen=True)
class Discard(Effect):
    reason: str = "discarded by instruction semantics"


# Effects the model recognises but does not implement.

@dataclass(frozen=True)
class IndirectRegRead(Effect):
    reg: str
    index: int = 0


@dataclass(frozen=True)
class AtomicRMW(Effect):
    addr: int
    op: str = "add"
    operand: int = 0
    kind: AccessKind = AccessKind.NORMAL
