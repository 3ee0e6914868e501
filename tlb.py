"""
Translation
===========
Page-table descriptor format, the translation cache, and the leveled
page-table walk used when an instruction starts a translation.

Translation regime: 4 KiB granule, 48-bit VA, four levels (0..3).

  bit  0        valid
  bit  1        table (levels 0-2) / page (level 3); clear = block at 1-2
  bits [47:12]  next-level table address or output address
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, TYPE_CHECKING

from effects import StructuralError, PA_LIMIT
from views import View, join

if TYPE_CHECKING:
    from memory import Memory

MAX_LEVEL  = 3
PAGE_SHIFT = 12
LEVEL_BITS = 9
VA_BITS    = 48

DESC_VALID = 1 << 0
DESC_TABLE = 1 << 1     # also the "page" bit at level 3
OA_MASK    = ((1 << VA_BITS) - 1) & ~((1 << PAGE_SHIFT) - 1)

TTBR_ASID_SHIFT = 48
TTBR_BADDR_MASK = ((1 << VA_BITS) - 1) & ~1


# ---------------------------------------------------------------------------
#  Descriptor helpers
# ---------------------------------------------------------------------------

def level_shift(level: int) -> int:
    """Bit position of the VA field indexed at ``level``."""
    if not 0 <= level <= MAX_LEVEL:
        raise StructuralError(f"Translation level {level} out of range")
    return PAGE_SHIFT + LEVEL_BITS * (MAX_LEVEL - level)


def va_prefix(va: int, level: int) -> int:
    return va >> level_shift(level)


def va_page(va: int) -> int:
    return va >> PAGE_SHIFT


def level_index(va: int, level: int) -> int:
    return va_prefix(va, level) & ((1 << LEVEL_BITS) - 1)


def desc_location(table: int, va: int, level: int) -> int:
    loc = table + 8 * level_index(va, level)
    if loc >= PA_LIMIT:
        raise StructuralError(f"Descriptor address {loc:#x} outside 48-bit range")
    return loc


def desc_valid(desc: int) -> bool:
    return bool(desc & DESC_VALID)


def desc_is_table(desc: int, level: int) -> bool:
    return desc_valid(desc) and level < MAX_LEVEL and bool(desc & DESC_TABLE)


def desc_is_leaf(desc: int, level: int) -> bool:
    """Page at level 3, block at levels 1-2; level 0 has no blocks."""
    if not desc_valid(desc):
        return False
    if level == MAX_LEVEL:
        return bool(desc & DESC_TABLE)
    return level > 0 and not desc & DESC_TABLE


def next_table(desc: int) -> int:
    return desc & OA_MASK


def output_address(desc: int, level: int, va: int) -> int:
    """Physical address ``va`` maps to through leaf ``desc`` at ``level``."""
    span = (1 << level_shift(level)) - 1
    return (desc & OA_MASK & ~span) | (va & span)


def ttbr_fields(ttbr: int) -> tuple[int, int]:
    """(table base, ASID) of a TTBR value."""
    return ttbr & TTBR_BADDR_MASK, (ttbr >> TTBR_ASID_SHIFT) & 0xFFFF


def make_table(addr: int) -> int:
    return (addr & OA_MASK) | DESC_TABLE | DESC_VALID


def make_page(addr: int) -> int:
    return (addr & OA_MASK) | DESC_TABLE | DESC_VALID


def make_block(addr: int) -> int:
    return (addr & OA_MASK) | DESC_VALID


# ---------------------------------------------------------------------------
#  Translation cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TlbContext:
    """What a cached entry is looked up by."""
    level: int
    prefix: int
    asid: Optional[int]

    @classmethod
    def of(cls, va: int, level: int, asid: Optional[int]) -> TlbContext:
        return cls(level, va_prefix(va, level), asid)


class TranslationCache:
    """Per level: context -> set of descriptor vectors (levels 0..level).

    Several entries may coexist for a context; a thread can keep using a
    stale one until an invalidation reaches it.  The cache is immutable and
    only ever grows, through ``add`` and ``union``.
    """

    __slots__ = ("_levels",)

    def __init__(self, levels: Optional[Mapping[int, Mapping[tuple, frozenset]]] = None):
        self._levels: dict[int, dict[tuple, frozenset]] = {
            lvl: dict(levels.get(lvl, {})) if levels else {}
            for lvl in range(MAX_LEVEL + 1)
        }

    def get(self, ctx: TlbContext) -> frozenset:
        return self._levels[ctx.level].get((ctx.prefix, ctx.asid), frozenset())

    def add(self, ctx: TlbContext, entries: Iterable[tuple[int, ...]]) -> TranslationCache:
        new = set(entries)
        for vec in new:
            if len(vec) != ctx.level + 1:
                raise StructuralError(
                    f"Level {ctx.level} entry needs {ctx.level + 1} descriptors, got {len(vec)}")
        out = TranslationCache(self._levels)
        key = (ctx.prefix, ctx.asid)
        out._levels[ctx.level][key] = self.get(ctx) | new
        return out

    def union(self, other: TranslationCache) -> TranslationCache:
        out = TranslationCache(self._levels)
        for lvl, entries in other._levels.items():
            mine = out._levels[lvl]
            for key, vecs in entries.items():
                mine[key] = mine.get(key, frozenset()) | vecs
        return out

    def __len__(self) -> int:
        return sum(len(v) for lvl in self._levels.values() for v in lvl.values())

    def __eq__(self, other) -> bool:
        if not isinstance(other, TranslationCache):
            return NotImplemented
        return self._nonempty() == other._nonempty()

    def _nonempty(self) -> dict:
        return {lvl: {k: v for k, v in d.items() if v}
                for lvl, d in self._levels.items()}

    def __repr__(self) -> str:
        return f"TranslationCache({len(self)} entries)"


# ---------------------------------------------------------------------------
#  Walk
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WalkResult:
    """One possible outcome of translating a VA.

    ``locs``/``descs`` list the descriptors in the order the walk reads
    them; ``pa`` is None when the walk faults.
    """
    va: int
    asid: int
    locs: tuple[int, ...]
    descs: tuple[int, ...]
    time: View
    deadline: Optional[View]
    pa: Optional[int]


def walk(mem: Memory, va: int, root: int, asid: int, floor: View,
         cache: Optional[TranslationCache] = None) -> list[WalkResult]:
    """Every way ``va`` can translate from ``root`` no earlier than ``floor``.

    Each level's descriptor read forks on every candidate ``Memory.read``
    returns; the next level reads no earlier than the previous one.  Cached
    vectors either finish a walk outright or seed it at the level below
    them.  The loop visits at most ``MAX_LEVEL + 1`` levels.
    """
    results: list[WalkResult] = []
    # walks waiting to read the descriptor of each level:
    # (locs, descs, table, time, from_cache)
    todo: dict[int, list] = {lvl: [] for lvl in range(MAX_LEVEL + 2)}
    todo[0].append(((), (), root, floor, False))

    if cache is not None:
        for level in range(MAX_LEVEL + 1):
            for vec in cache.get(TlbContext.of(va, level, asid)):
                locs = _cached_locs(vec, root, va)
                if locs is None:
                    continue
                last = vec[-1]
                if desc_is_leaf(last, level):
                    results.append(_finish(mem, va, asid, locs, tuple(vec), floor, True))
                elif desc_is_table(last, level):
                    todo[level + 1].append((locs, tuple(vec), next_table(last), floor, True))

    for level in range(MAX_LEVEL + 1):
        for locs, descs, table, time, cached in todo[level]:
            loc = desc_location(table, va, level)
            for desc, t in mem.read(loc, time):
                nlocs, ndescs = locs + (loc,), descs + (desc,)
                ntime = join(time, t)
                if desc_is_table(desc, level):
                    todo[level + 1].append((nlocs, ndescs, next_table(desc), ntime, cached))
                else:
                    results.append(_finish(mem, va, asid, nlocs, ndescs, ntime, cached))
    return results


def _cached_locs(vec: tuple[int, ...], root: int, va: int) -> Optional[tuple[int, ...]]:
    """Descriptor addresses of a cached vector, or None if it is not a
    well-formed table chain."""
    locs = []
    table = root
    for level, desc in enumerate(vec):
        locs.append(desc_location(table, va, level))
        if level < len(vec) - 1:
            if not desc_is_table(desc, level):
                return None
            table = next_table(desc)
    return tuple(locs)


def _finish(mem: Memory, va: int, asid: int, locs: tuple, descs: tuple,
            time: View, cached: bool) -> WalkResult:
    level = len(descs) - 1
    leaf = descs[-1]
    pa = output_address(leaf, level, va) if desc_is_leaf(leaf, level) else None
    page = va_page(va)
    # A cached entry may have been filled at any time, so every later
    # invalidation counts; a fresh walk fills the TLB at ``time``.
    since = 0 if cached else time
    deadline = mem.first_tlbi_after(
        since, lambda op: op.affects(page, asid, leaf=pa is not None))
    return WalkResult(va, asid, tuple(locs), tuple(descs), time, deadline, pa)
