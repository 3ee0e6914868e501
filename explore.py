"""
Exploration Harness
===================
Wires N logical threads to one shared promising memory and enumerates the
final states they can reach.

Depth-first search over every path: at each node any unfinished thread may
run its next instruction to completion (taking every branch the interpreter
offers) or promise one of its candidate writes early.  A path ends in a
final state once every thread has run off the end of its program with no
promise left unfulfilled.

An instruction is a callable returning a generator of effects.  Branching
in the middle of an instruction re-runs the generator and replays the
results already fed to it, so instruction semantics never need to be
copied.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generator, Iterator, Mapping, Optional, Sequence

from effects import Effect, PromisingError, StructuralError
from interpreter import Config, Interpreter
from memory import Memory, Write, read_u64
from threadstate import ThreadState
from tlb import TranslationCache

logger = logging.getLogger(__name__)

Instruction = Callable[[], Generator[Effect, Any, None]]


@dataclass(frozen=True)
class FinalState:
    """One reachable end state: written registers and memory contents."""
    regs: tuple[tuple[tuple[str, int], ...], ...]
    memory: tuple[tuple[int, int], ...]

    def reg(self, tid: int, name: str, default: int = 0) -> int:
        return dict(self.regs[tid]).get(name, default)

    def mem(self, loc: int, default: int = 0) -> int:
        return dict(self.memory).get(loc, default)

    def matches(self, cond: Mapping[str, int]) -> bool:
        """``cond`` keys are ``"T:Xn"`` for registers, ``"[addr]"`` for memory."""
        for key, value in cond.items():
            if key.startswith("["):
                if self.mem(int(key.strip("[]"), 0)) != value:
                    return False
            else:
                tid, reg = key.split(":")
                if self.reg(int(tid), reg) != value:
                    return False
        return True

    def __str__(self) -> str:
        regs = " ".join(f"{tid}:{r}={v}" for tid, rs in enumerate(self.regs)
                        for r, v in rs)
        mem = " ".join(f"[{loc:#x}]={v}" for loc, v in self.memory)
        return f"{regs} | {mem}" if regs else mem


@dataclass
class ExploreResult:
    finals: set[FinalState] = field(default_factory=set)
    errors: list[tuple[int, str]] = field(default_factory=list)
    discarded: int = 0
    paths: int = 0

    def allows(self, cond: Mapping[str, int]) -> bool:
        return any(f.matches(cond) for f in self.finals)


@dataclass(frozen=True)
class _Node:
    mem: Memory
    threads: tuple[ThreadState, ...]
    pcs: tuple[int, ...]
    candidates: tuple[frozenset, ...]


class Explorer:
    """Exhaustive exploration of one multi-threaded program."""

    def __init__(self, programs: Sequence[Sequence[Instruction]], *,
                 initial_memory: Optional[Mapping[int, int]] = None,
                 initial_regs: Optional[Sequence[Mapping[str, int]]] = None,
                 initial_sysregs: Optional[Mapping[str, int]] = None,
                 promises: Optional[Mapping[int, Sequence[tuple[int, int]]]] = None,
                 initial_tlb: Optional[TranslationCache] = None,
                 max_paths: int = 100_000):
        self.programs = [list(p) for p in programs]
        self.num_threads = len(self.programs)
        self.initial_memory = dict(initial_memory or {})
        regs = list(initial_regs or [])
        regs += [{}] * (self.num_threads - len(regs))
        self.initial_regs = regs
        self.initial_sysregs = dict(initial_sysregs or {})
        self.promises = {tid: frozenset(c) for tid, c in (promises or {}).items()}
        self.initial_tlb = initial_tlb
        self.max_paths = max_paths
        self.interp = Interpreter()

    def initial_node(self) -> _Node:
        threads = tuple(
            ThreadState(tid, self.initial_regs[tid], self.initial_sysregs,
                        self.initial_tlb)
            for tid in range(self.num_threads))
        return _Node(Memory(self.initial_memory), threads,
                     (0,) * self.num_threads,
                     tuple(self.promises.get(tid, frozenset())
                           for tid in range(self.num_threads)))

    # -- Single instruction --

    def run_instruction(self, instr: Instruction, ts: ThreadState,
                        mem: Memory) -> Iterator[tuple[str, Any]]:
        """Every way one instruction can complete.

        Yields ``("ok", Config)``, ``("discard", reason)`` or
        ``("error", message)``.
        """
        stack: list[tuple[tuple, Config]] = [((), Config(ts, mem, self.interp.new_instruction()))]
        while stack:
            fed, cfg = stack.pop()
            try:
                effect = _replay(instr, fed)
                if effect is None:
                    yield "ok", cfg
                    continue
                outcomes = self.interp.step(effect, cfg)
            except PromisingError as e:
                yield "error", f"{type(e).__name__}: {e}"
                continue
            for out in reversed(outcomes):
                if out.is_ok:
                    stack.append((fed + (out.result,), out.config))
                else:
                    yield "discard", out.reason

    # -- Search --

    def run(self) -> ExploreResult:
        result = ExploreResult()
        stack = [self.initial_node()]
        while stack:
            node = stack.pop()
            result.paths += 1
            if result.paths > self.max_paths:
                raise StructuralError(f"Exploration exceeded {self.max_paths} paths")

            if all(pc >= len(self.programs[tid]) for tid, pc in enumerate(node.pcs)):
                result.finals.add(self._final(node))
                continue

            for tid in range(self.num_threads):
                pc = node.pcs[tid]
                if pc >= len(self.programs[tid]):
                    continue
                stack.extend(self._promise_moves(node, tid))
                for kind, payload in self.run_instruction(
                        self.programs[tid][pc], node.threads[tid], node.mem):
                    if kind == "ok":
                        child = self._advance(node, tid, payload)
                        if child is None:
                            result.discarded += 1
                        else:
                            stack.append(child)
                    elif kind == "discard":
                        result.discarded += 1
                    else:
                        logger.debug("T%d pc=%d error: %s", tid, pc, payload)
                        result.errors.append((tid, payload))
        logger.debug("explored %d paths: %d finals, %d discarded, %d errors",
                     result.paths, len(result.finals), result.discarded,
                     len(result.errors))
        return result

    def _promise_moves(self, node: _Node, tid: int) -> list[_Node]:
        moves = []
        for loc, value in sorted(node.candidates[tid]):
            t, mem = node.mem.promise(Write(tid, loc, value))
            ts = node.threads[tid].clone()
            ts.push_promise(t)
            logger.debug("T%d promises [%#x]=%d at %d", tid, loc, value, t)
            cands = list(node.candidates)
            cands[tid] = cands[tid] - {(loc, value)}
            moves.append(_Node(mem, _put(node.threads, tid, ts), node.pcs,
                               tuple(cands)))
        return moves

    def _advance(self, node: _Node, tid: int, cfg: Config) -> Optional[_Node]:
        ts = cfg.ts
        pc = node.pcs[tid] + 1
        if pc >= len(self.programs[tid]):
            ts = self.interp.terminate(ts)
            if not ts.no_promises:
                return None
        pcs = node.pcs[:tid] + (pc,) + node.pcs[tid + 1:]
        return _Node(cfg.mem, _put(node.threads, tid, ts), pcs, node.candidates)

    def _final(self, node: _Node) -> FinalState:
        # zero-valued registers the program never wrote are left out;
        # FinalState.reg reads them back as 0
        regs = tuple(tuple(sorted((r, v) for r, v in ts.plain_regs().items()
                                  if v or r in ts.regs))
                     for ts in node.threads)
        snap = node.mem.snapshot()
        locs = sorted({a & ~7 for a in snap})
        return FinalState(regs, tuple((loc, read_u64(snap, loc)) for loc in locs))


def _put(threads: tuple, tid: int, ts: ThreadState) -> tuple:
    return threads[:tid] + (ts,) + threads[tid + 1:]


def _replay(instr: Instruction, fed: tuple) -> Optional[Effect]:
    """Restart ``instr`` and feed it ``fed``; return the next effect or
    None once the instruction has finished."""
    gen = instr()
    try:
        effect = next(gen)
        for value in fed:
            effect = gen.send(value)
    except StopIteration:
        return None
    return effect


def explore(programs: Sequence[Sequence[Instruction]], **kwargs) -> ExploreResult:
    return Explorer(programs, **kwargs).run()
