"""
Promising Memory
================
The global, append-only event log shared by every thread of one execution
path.

Events are numbered by position: the first event has timestamp 1, and a
newly appended event gets the length of the log after insertion.
Timestamp 0 stands for initial memory.  Nothing is ever removed; the
truncated views returned by ``cut_after`` / ``cut_before`` share the same
backing tuple and keep the original timestamps, so forking a path is just
copying a reference.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Mapping, Optional, Union

from effects import LOC_ALIGN, PA_LIMIT, MASK64, StructuralError
from views import View

Location = int


def check_loc(loc: int) -> Location:
    """Validate an 8-byte aligned physical location."""
    if loc < 0 or loc >= PA_LIMIT:
        raise StructuralError(f"Physical address {loc:#x} outside 48-bit range")
    if loc % LOC_ALIGN:
        raise StructuralError(f"Unaligned location {loc:#x}")
    return loc


# ---------------------------------------------------------------------------
#  Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Write:
    tid: int
    loc: Location
    value: int

    def __str__(self) -> str:
        return f"W{self.tid} [{self.loc:#x}]={self.value:#x}"


class TlbiKind(Enum):
    ALL  = "all"     # every ASID, every VA
    ASID = "asid"    # one ASID, every VA
    VA   = "va"      # one VA, one ASID
    VAA  = "vaa"     # one VA, every ASID


@dataclass(frozen=True)
class TlbiOp:
    """Scope of a TLB invalidation."""
    kind: TlbiKind
    asid: Optional[int] = None
    page: Optional[int] = None
    last_level: bool = False

    def affects(self, page: int, asid: Optional[int], leaf: bool) -> bool:
        """Does this invalidation remove a cached entry for ``page``?

        ``leaf`` says whether the entry is the final (output) level of its
        walk; last-level-only invalidations leave table entries alone.
        """
        if self.last_level and not leaf:
            return False
        if self.kind is TlbiKind.ALL:
            return True
        if self.kind is TlbiKind.ASID:
            return asid == self.asid
        if self.kind is TlbiKind.VA:
            return page == self.page and asid == self.asid
        return page == self.page


@dataclass(frozen=True)
class TlbiEvent:
    tid: int
    op: TlbiOp

    def __str__(self) -> str:
        return f"TLBI{self.tid} {self.op.kind.value}"


Event = Union[Write, TlbiEvent]


# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """Immutable event log, possibly restricted to a timestamp window.

    The window is ``(lo, hi]``: ``cut_after(v)`` keeps timestamps <= v,
    ``cut_before(v)`` keeps timestamps > v.
    """

    __slots__ = ("initial", "_events", "_lo", "_hi")

    def __init__(self, initial: Optional[Mapping[Location, int]] = None,
                 events: tuple = (), lo: int = 0, hi: Optional[int] = None):
        self.initial: Mapping[Location, int] = initial if initial is not None else {}
        self._events: tuple = events
        self._lo = lo
        self._hi = len(events) if hi is None else hi

    def __len__(self) -> int:
        """Timestamp of the newest visible event."""
        return self._hi

    def __eq__(self, other) -> bool:
        if not isinstance(other, Memory):
            return NotImplemented
        return (self.events() == other.events()
                and self._lo == other._lo
                and dict(self.initial) == dict(other.initial))

    def __hash__(self) -> int:
        return hash((self.events(), self._lo))

    def __repr__(self) -> str:
        body = ", ".join(f"{t}:{ev}" for t, ev in self.items())
        return f"Memory({body})"

    @property
    def is_full(self) -> bool:
        return self._lo == 0 and self._hi == len(self._events)

    # -- Windows --

    def cut_after(self, v: View) -> Memory:
        """Only the events with timestamp <= v."""
        return Memory(self.initial, self._events, self._lo,
                      max(self._lo, min(v, self._hi)))

    def cut_before(self, v: View) -> Memory:
        """Only the events with timestamp > v."""
        return Memory(self.initial, self._events,
                      min(self._hi, max(v, self._lo)), self._hi)

    # -- Inspection --

    def at(self, t: int) -> Optional[Event]:
        """The event at timestamp ``t`` if it lies inside this window."""
        if self._lo < t <= self._hi:
            return self._events[t - 1]
        return None

    def events(self) -> tuple:
        return self._events[self._lo:self._hi]

    def items(self) -> Iterator[tuple[int, Event]]:
        """(timestamp, event) pairs, oldest first."""
        for t in range(self._lo + 1, self._hi + 1):
            yield t, self._events[t - 1]

    def newest_first(self) -> Iterator[tuple[int, Event]]:
        for t in range(self._hi, self._lo, -1):
            yield t, self._events[t - 1]

    def initial_value(self, loc: Location) -> int:
        return self.initial.get(loc, 0)

    # -- Reads --

    def read_last(self, loc: Location) -> tuple[int, int]:
        """Most recent write to ``loc`` as (value, timestamp); initial
        value with timestamp 0 when there is none."""
        for t, ev in self.newest_first():
            if isinstance(ev, Write) and ev.loc == loc:
                return ev.value, t
        return self.initial_value(loc), 0

    def read_at(self, loc: Location, v: View) -> tuple[int, int]:
        """``read_last`` as of timestamp ``v``."""
        return self.cut_after(v).read_last(loc)

    def read(self, loc: Location, v: View) -> list[tuple[int, int]]:
        """Every (value, timestamp) a read no earlier than ``v`` may return.

        Writes strictly after ``v`` come first (oldest first); the last
        element is always the value coherent at ``v``, so the list is
        never empty.
        """
        later = [(ev.value, t) for t, ev in self.cut_before(v).items()
                 if isinstance(ev, Write) and ev.loc == loc]
        later.append(self.read_at(loc, v))
        return later

    # -- Promise / fulfil --

    def promise(self, event: Event) -> tuple[int, Memory]:
        """Append ``event``; return its timestamp and the new memory."""
        if not self.is_full:
            raise StructuralError("Cannot append to a truncated memory view")
        events = self._events + (event,)
        return len(events), Memory(self.initial, events)

    def fulfill(self, event: Event, proms) -> Optional[int]:
        """Oldest pending promise in ``proms`` holding exactly ``event``.

        Fulfilling a newer one would strand the older identical promise,
        which could then never be matched.
        """
        matching = [t for t in proms if self.at(t) == event]
        return min(matching) if matching else None

    def exclusive(self, loc: Location, v: View,
                  tid: Optional[int] = None) -> bool:
        """Atomicity check for an exclusive pair.

        Holds when the event at ``v`` is a write to ``loc`` (timestamp 0 is
        the initial write) and no thread other than ``tid`` wrote ``loc``
        after it.  Without ``tid`` the writer of ``v`` is the owner.
        """
        if v != 0:
            ev = self.at(v)
            if not (isinstance(ev, Write) and ev.loc == loc):
                return False
            if tid is None:
                tid = ev.tid
        for _, later in self.cut_before(v).items():
            if isinstance(later, Write) and later.loc == loc and later.tid != tid:
                return False
        return True

    # -- TLB maintenance history --

    def first_tlbi_after(self, v: View,
                         pred: Callable[[TlbiOp], bool]) -> Optional[int]:
        """Timestamp of the first TLBI after ``v`` matching ``pred``."""
        for t, ev in self.cut_before(v).items():
            if isinstance(ev, TlbiEvent) and pred(ev.op):
                return t
        return None

    # -- Final state --

    def snapshot(self) -> dict[int, int]:
        """Flat byte map of the latest value of every known location."""
        locs = set(self.initial)
        locs.update(ev.loc for _, ev in self.items() if isinstance(ev, Write))
        out: dict[int, int] = {}
        for loc in sorted(locs):
            value, _ = self.read_last(loc)
            value &= MASK64
            for i in range(LOC_ALIGN):
                out[loc + i] = (value >> (8 * i)) & 0xFF
        return out


def read_u64(snapshot: Mapping[int, int], addr: int) -> int:
    """Reassemble a little-endian 64-bit value from a snapshot."""
    return sum(snapshot.get(addr + i, 0) << (8 * i) for i in range(LOC_ALIGN))
