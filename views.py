"""
Views
=====
Logical timestamps and the dependency convention shared by every other
module.

A view is a plain natural number: "happened no earlier than the event with
this timestamp".  Views form a join-semilattice under ``max``; ``min`` is
used for bounding (invalidation deadlines).  Timestamp 0 is "before any
event", i.e. initial memory.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional

View = int

VIEW_ZERO: View = 0


def join(*views: View) -> View:
    """Least upper bound of any number of views (0 for none)."""
    return max(views, default=VIEW_ZERO)


def join_all(views: Iterable[View]) -> View:
    return max(views, default=VIEW_ZERO)


def meet(*views: View) -> View:
    return min(views)


def view_if(cond: bool, v: View) -> View:
    """``v`` when ``cond`` holds, else the bottom view."""
    return v if cond else VIEW_ZERO


def below(v: View, deadline: Optional[View]) -> bool:
    """True when ``v`` is strictly before ``deadline`` (None = no deadline)."""
    return deadline is None or v < deadline


# ---------------------------------------------------------------------------
#  Dependencies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Explicit:
    """An effect depends exactly on these registers and earlier reads.

    ``reads`` are read-occurrence numbers within the current instruction
    (0 = first memory read performed by the instruction).
    """
    regs: tuple[str, ...] = ()
    reads: tuple[int, ...] = ()


@dataclass(frozen=True)
class ImplicitAll:
    """An effect depends on every register and memory read made so far."""

    def __repr__(self) -> str:
        return "IMPLICIT_ALL"


IMPLICIT_ALL = ImplicitAll()

Deps = Explicit | ImplicitAll

NO_DEPS = Explicit()
