"""
Effect interpreter tests: one effect at a time against hand-built
configurations, covering the ordering rules, exclusives, barriers, TLB
maintenance and translation.
"""

import unittest

from effects import (
    RegRead, RegWrite, MemRead, MemWrite, Barrier, Tlbi, Branch,
    TranslationStart, TranslationEnd, ReturnException, Choose, Discard,
    IndirectRegRead, AtomicRMW, AccessKind, BarrierKind, Domain,
    SYSREG_TTBR0, StructuralError, UnsupportedError,
)
from interpreter import Config, Interpreter, Status, decode_tlbi
from litmus import PageTables
from memory import Memory, TlbiEvent, TlbiKind, TlbiOp, Write
from threadstate import ThreadState
from tlb import desc_is_table, desc_location, next_table, va_page
from views import NO_DEPS, Explicit

X, Y = 0x1000, 0x2000


def config(tid=0, mem=None, regs=None, sysregs=None, initial=None):
    ts = ThreadState(tid, regs, sysregs)
    return Config(ts, mem if mem is not None else Memory(initial or {X: 0, Y: 0}),
                  Interpreter.new_instruction())


def with_events(*events, initial=None):
    mem = Memory(initial or {X: 0, Y: 0})
    for ev in events:
        _, mem = mem.promise(ev)
    return mem


class InterpreterTest(unittest.TestCase):
    def setUp(self):
        self.interp = Interpreter()

    def step(self, effect, cfg):
        return self.interp.step(effect, cfg)

    def only(self, effect, cfg):
        """Step an effect that must have exactly one OK outcome."""
        outs = self.step(effect, cfg)
        self.assertEqual(len(outs), 1, outs)
        self.assertTrue(outs[0].is_ok, outs[0].reason)
        return outs[0]

    def pick(self, effect, cfg, value):
        """The OK outcome of ``effect`` whose result is ``value``."""
        for out in self.step(effect, cfg):
            if out.is_ok and out.result == value:
                return out
        self.fail(f"no outcome returning {value!r}")

    @staticmethod
    def next_instr(cfg):
        return Config(cfg.ts, cfg.mem, Interpreter.new_instruction())


class TestRegisters(InterpreterTest):
    def test_read_write(self):
        cfg = config(regs={"X1": 5})
        out = self.only(RegRead("X1"), cfg)
        self.assertEqual(out.result, 5)
        out = self.only(RegWrite("X2", 6, NO_DEPS), out.config)
        self.assertEqual(out.config.ts.read_reg("X2"), (6, 0))

    def test_value_masked(self):
        out = self.only(RegWrite("X0", -1, NO_DEPS), config())
        self.assertEqual(out.config.ts.read_reg("X0")[0], (1 << 64) - 1)

    def test_unknown_register(self):
        with self.assertRaises(StructuralError):
            self.step(RegRead("X99"), config())

    def test_dependency_on_read(self):
        mem = with_events(Write(1, X, 1))
        cfg = self.pick(MemRead(X, addr_deps=NO_DEPS), config(mem=mem), 1).config
        out = self.only(RegWrite("X0", 1, Explicit(reads=(0,))), cfg)
        self.assertEqual(out.config.ts.reg_view("X0"), 1)
        out = self.only(RegWrite("X3", 1, NO_DEPS), cfg)
        self.assertEqual(out.config.ts.reg_view("X3"), 0)

    def test_missing_read_dependency(self):
        with self.assertRaises(StructuralError):
            self.step(RegWrite("X0", 1, Explicit(reads=(0,))), config())

    def test_sysreg_write(self):
        cfg = config(sysregs={SYSREG_TTBR0: 0xA000})
        cfg.ts.update("vdsb", 3)
        out = self.only(RegWrite(SYSREG_TTBR0, 0xB000, NO_DEPS), cfg)
        ts = out.config.ts
        self.assertEqual(ts.sys_history, [(SYSREG_TTBR0, 0xB000, 3)])
        self.assertEqual(ts.vmsr, 3)
        self.assertEqual(self.only(RegRead(SYSREG_TTBR0), out.config).result, 0xB000)

    def test_branch_raises_vspec(self):
        cfg = config()
        cfg.ts.set_reg("X1", 0, 4)
        out = self.only(Branch(Explicit(regs=("X1",))), cfg)
        self.assertEqual(out.config.ts.vspec, 4)

    def test_parent_config_untouched(self):
        cfg = config()
        self.only(RegWrite("X0", 1, NO_DEPS), cfg)
        self.only(MemWrite(X, 1, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertEqual(cfg.ts.regs, {})
        self.assertEqual(len(cfg.mem), 0)


class TestReadsAndWrites(InterpreterTest):
    def test_write_then_read(self):
        """Single thread: write 5, read it back."""
        cfg = config()
        out = self.only(MemWrite(X, 5, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertEqual(len(out.config.mem), 1)
        self.assertEqual(out.config.ts.coh_view(X), 1)
        out = self.only(MemRead(X, addr_deps=NO_DEPS), self.next_instr(out.config))
        self.assertEqual(out.result, 5)
        self.assertEqual(out.config.mem.snapshot()[X], 5)

    def test_read_candidates(self):
        mem = with_events(Write(1, X, 1), Write(1, X, 2))
        outs = self.step(MemRead(X, addr_deps=NO_DEPS), config(mem=mem))
        self.assertEqual([o.result for o in outs], [1, 2, 0])
        self.assertEqual([o.config.ts.coh_view(X) for o in outs], [1, 2, 0])

    def test_coherence_floor(self):
        mem = with_events(Write(1, X, 1), Write(1, X, 2))
        cfg = self.pick(MemRead(X, addr_deps=NO_DEPS), config(mem=mem), 2).config
        outs = self.step(MemRead(X, addr_deps=NO_DEPS), self.next_instr(cfg))
        self.assertEqual([o.result for o in outs], [2])

    def test_forwarded_read_keeps_write_view(self):
        cfg = config()
        out = self.only(MemWrite(X, 5, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        out = self.only(MemRead(X, addr_deps=NO_DEPS), self.next_instr(out.config))
        self.assertEqual(out.config.ts.vrd, 0)

    def test_acquire_orders_later_reads(self):
        mem = with_events(Write(1, X, 1), Write(1, Y, 1))
        cfg = self.pick(MemRead(Y, kind=AccessKind.ACQUIRE, addr_deps=NO_DEPS),
                        config(mem=mem), 1).config
        self.assertEqual(cfg.ts.vacq, 2)
        outs = self.step(MemRead(X, addr_deps=NO_DEPS), self.next_instr(cfg))
        self.assertEqual([o.result for o in outs], [1])

    def test_plain_read_does_not_order(self):
        mem = with_events(Write(1, X, 1), Write(1, Y, 1))
        cfg = self.pick(MemRead(Y, addr_deps=NO_DEPS), config(mem=mem), 1).config
        outs = self.step(MemRead(X, addr_deps=NO_DEPS), self.next_instr(cfg))
        self.assertEqual(sorted(o.result for o in outs), [0, 1])

    def test_address_dependency(self):
        mem = with_events(Write(1, X, 1), Write(1, Y, 1))
        cfg = self.pick(MemRead(Y, addr_deps=NO_DEPS), config(mem=mem), 1).config
        cfg = self.only(RegWrite("X0", 0, Explicit(reads=(0,))), cfg).config
        outs = self.step(MemRead(X, addr_deps=Explicit(regs=("X0",))),
                         self.next_instr(cfg))
        self.assertEqual([o.result for o in outs], [1])
        self.assertEqual(outs[0].config.ts.vspec, 2)

    def test_unaligned_and_narrow(self):
        with self.assertRaises(StructuralError):
            self.step(MemRead(X + 4), config())
        with self.assertRaises(UnsupportedError):
            self.step(MemRead(X, size=4), config())
        with self.assertRaises(UnsupportedError):
            self.step(MemWrite(X, 1, size=2), config())

    def test_ttw_kind_cannot_write(self):
        with self.assertRaises(StructuralError):
            self.step(MemWrite(X, 1, kind=AccessKind.TTW), config())


class TestWriteOrdering(InterpreterTest):
    def promised(self):
        """T0 has promised Y=1 at 1; T1 then wrote X=1 at 2."""
        mem = with_events(Write(0, Y, 1), Write(1, X, 1))
        cfg = config(mem=mem)
        cfg.ts.push_promise(1)
        return self.pick(MemRead(X, addr_deps=NO_DEPS), cfg, 1).config

    def test_fulfil_plain_store(self):
        cfg = self.next_instr(self.promised())
        out = self.only(MemWrite(Y, 1, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertTrue(out.config.ts.no_promises)
        self.assertEqual(len(out.config.mem), 2)

    def test_release_store_discards(self):
        cfg = self.next_instr(self.promised())
        [out] = self.step(MemWrite(Y, 1, kind=AccessKind.RELEASE,
                                   addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertIs(out.status, Status.DISCARD)

    def test_data_dependency_discards(self):
        cfg = self.promised()
        cfg = self.only(RegWrite("X0", 1, Explicit(reads=(0,))), cfg).config
        [out] = self.step(MemWrite(Y, 1, addr_deps=NO_DEPS,
                                   data_deps=Explicit(regs=("X0",))),
                          self.next_instr(cfg))
        self.assertIs(out.status, Status.DISCARD)

    def test_barrier_discards(self):
        cfg = self.only(Barrier(BarrierKind.DMB_SY), self.promised()).config
        [out] = self.step(MemWrite(Y, 1, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertIs(out.status, Status.DISCARD)

    def test_unmatched_value_appends(self):
        cfg = self.next_instr(self.promised())
        out = self.only(MemWrite(Y, 2, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertEqual(len(out.config.mem), 3)
        self.assertEqual(out.config.ts.prom, [1])

    def test_store_after_barrier_is_later(self):
        """Writer side of message passing: the second store is ordered."""
        cfg = self.only(MemWrite(X, 1, addr_deps=NO_DEPS, data_deps=NO_DEPS), config()).config
        cfg = self.only(Barrier(BarrierKind.DMB_ST), cfg).config
        self.assertEqual(cfg.ts.vdmbst, 1)
        out = self.only(MemWrite(Y, 1, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertEqual(out.config.ts.vwr, 2)


class TestFullBarrierAcrossThreads(InterpreterTest):
    def test_reader_sees_write(self):
        # writer: X=1 at 1, full barrier, Y=1 at 2
        mem = with_events(Write(0, X, 1), Write(0, Y, 1))
        cfg = self.pick(MemRead(Y, addr_deps=NO_DEPS), config(1, mem), 1).config
        cfg = self.only(Barrier(BarrierKind.DMB_SY), self.next_instr(cfg)).config
        self.assertEqual(cfg.ts.vdmb, 2)
        outs = self.step(MemRead(X, addr_deps=NO_DEPS), self.next_instr(cfg))
        self.assertEqual([o.result for o in outs], [1])
        self.assertGreaterEqual(outs[0].config.ts.coh_view(X), 1)

    def test_without_barrier(self):
        mem = with_events(Write(0, X, 1), Write(0, Y, 1))
        cfg = self.pick(MemRead(Y, addr_deps=NO_DEPS), config(1, mem), 1).config
        outs = self.step(MemRead(X, addr_deps=NO_DEPS), self.next_instr(cfg))
        self.assertEqual(sorted(o.result for o in outs), [0, 1])


class TestExclusives(InterpreterTest):
    XCL_WRITE = MemWrite(X, 1, exclusive=True, addr_deps=NO_DEPS, data_deps=NO_DEPS)

    def load_exclusive(self, cfg):
        out = self.only(MemRead(X, exclusive=True, addr_deps=NO_DEPS), cfg)
        self.assertEqual(out.config.ts.xclb, (0, 0))
        return self.next_instr(out.config)

    def test_success_and_failure(self):
        cfg = self.load_exclusive(config())
        ok, failed = self.step(self.XCL_WRITE, cfg)
        self.assertTrue(ok.is_ok)
        self.assertIs(ok.result, True)
        self.assertIsNone(ok.config.ts.xclb)
        self.assertEqual(len(ok.config.mem), 1)
        self.assertIs(failed.result, False)
        self.assertEqual(len(failed.config.mem), 0)
        self.assertIsNone(failed.config.ts.xclb)

    def test_intervening_write(self):
        cfg = self.load_exclusive(config())
        _, mem = cfg.mem.promise(Write(1, X, 7))
        cfg = Config(cfg.ts, mem, cfg.iis)
        broken, failed = self.step(self.XCL_WRITE, cfg)
        self.assertIs(broken.status, Status.DISCARD)
        self.assertIs(failed.result, False)

    def test_own_write_does_not_break(self):
        cfg = self.load_exclusive(config())
        _, mem = cfg.mem.promise(Write(0, Y, 7))
        ok, _ = self.step(self.XCL_WRITE, Config(cfg.ts, mem, cfg.iis))
        self.assertTrue(ok.is_ok)

    def test_without_exclusive_load(self):
        no_xcl, failed = self.step(self.XCL_WRITE, config())
        self.assertIs(no_xcl.status, Status.DISCARD)
        self.assertIs(failed.result, False)


class TestBarriers(InterpreterTest):
    def counters(self):
        cfg = config()
        for name, v in (("vrd", 1), ("vwr", 2), ("vcse", 3), ("vtlbi", 6), ("vspec", 5)):
            cfg.ts.update(name, v)
        return cfg

    def barrier(self, kind, domain=Domain.SY):
        return self.only(Barrier(kind, domain), self.counters()).config.ts

    def test_dmb(self):
        self.assertEqual(self.barrier(BarrierKind.DMB_SY).vdmb, 3)
        self.assertEqual(self.barrier(BarrierKind.DMB_LD).vdmb, 3)
        ts = self.barrier(BarrierKind.DMB_ST)
        self.assertEqual((ts.vdmb, ts.vdmbst), (0, 3))

    def test_dsb(self):
        self.assertEqual(self.barrier(BarrierKind.DSB_SY).vdsb, 6)
        self.assertEqual(self.barrier(BarrierKind.DSB_LD).vdsb, 3)
        self.assertEqual(self.barrier(BarrierKind.DSB_ST).vdsb, 6)

    def test_isb(self):
        ts = self.barrier(BarrierKind.ISB)
        self.assertEqual(ts.vcse, 5)
        self.assertEqual(ts.sync_cursor, 0)

    def test_shareability_domains(self):
        self.assertEqual(self.barrier(BarrierKind.DMB_SY, Domain.ISH).vdmb, 3)
        with self.assertRaises(UnsupportedError):
            self.step(Barrier(BarrierKind.DMB_SY, Domain.NSH), config())

    def test_eret_and_terminate(self):
        ts = self.only(ReturnException(), self.counters()).config.ts
        self.assertEqual(ts.vcse, 5)
        cfg = self.counters()
        ts = Interpreter.terminate(cfg.ts)
        self.assertEqual(ts.vcse, 5)
        self.assertEqual(cfg.ts.vcse, 3)


class TestTlbi(InterpreterTest):
    def test_decode(self):
        op = decode_tlbi("vae1is", (3 << 48) | 0x400)
        self.assertEqual(op, TlbiOp(TlbiKind.VA, 3, 0x400, False))
        self.assertTrue(decode_tlbi("VALE1IS", 0).last_level)
        self.assertEqual(decode_tlbi("VMALLE1IS", 0x1234), TlbiOp(TlbiKind.ALL))
        self.assertEqual(decode_tlbi("ASIDE1IS", 5 << 48), TlbiOp(TlbiKind.ASID, 5))
        self.assertEqual(decode_tlbi("VAAE1IS", (5 << 48) | 7).page, 7)
        self.assertIsNone(decode_tlbi("VAAE1IS", (5 << 48) | 7).asid)

    def test_unsupported(self):
        with self.assertRaises(UnsupportedError):
            decode_tlbi("VAE1", 0)
        with self.assertRaises(UnsupportedError):
            self.step(Tlbi("ALLE2IS"), config())

    def test_records_event(self):
        out = self.only(Tlbi("VMALLE1IS", deps=NO_DEPS), config())
        self.assertEqual(out.config.ts.vtlbi, 1)
        self.assertIsInstance(out.config.mem.at(1), TlbiEvent)

    def test_ordering(self):
        cfg = config()
        cfg.ts.update("vdsb", 2)
        [out] = self.step(Tlbi("VMALLE1IS", deps=NO_DEPS), cfg)
        self.assertIs(out.status, Status.DISCARD)

    def test_dsb_waits_for_tlbi(self):
        cfg = self.only(Tlbi("VMALLE1IS", deps=NO_DEPS), config()).config
        cfg = self.only(Barrier(BarrierKind.DSB_SY, Domain.ISH), cfg).config
        self.assertEqual(cfg.ts.vdsb, 1)


class TestTranslation(InterpreterTest):
    VA = 0x400000

    def setUp(self):
        super().setUp()
        self.pt = PageTables(0x100000)
        self.pte = self.pt.map(self.VA, X)

    def cfg(self, mem=None, sysregs=None):
        initial = {**self.pt.memory, X: 11, Y: 22}
        return config(mem=mem if mem is not None else Memory(initial),
                      sysregs=sysregs or {SYSREG_TTBR0: self.pt.ttbr()})

    def translate(self, cfg, va=None):
        """Run a whole translation; returns (pa, config)."""
        va = self.VA if va is None else va
        out = self.step(TranslationStart(va), cfg)[0]
        table, cfg = out.result, out.config
        for level in range(4):
            out = self.only(MemRead(desc_location(table, va, level),
                                    kind=AccessKind.TTW, va=va), cfg)
            cfg = out.config
            if not desc_is_table(out.result, level):
                break
            table = next_table(out.result)
        out = self.only(TranslationEnd(va), cfg)
        return out.result, out.config

    def test_translate(self):
        pa, cfg = self.translate(self.cfg())
        self.assertEqual(pa, X)
        out = self.only(MemRead(pa, addr_deps=NO_DEPS), cfg)
        self.assertEqual(out.result, 11)

    def test_fault(self):
        pa, _ = self.translate(self.cfg(), va=0x7000_0000_0000)
        self.assertIsNone(pa)

    def test_start_returns_root(self):
        [out] = self.step(TranslationStart(self.VA), self.cfg())
        self.assertEqual(out.result, self.pt.root)

    def test_wrong_descriptor_address(self):
        cfg = self.only(TranslationStart(self.VA), self.cfg()).config
        with self.assertRaises(StructuralError):
            self.step(MemRead(0x100008, kind=AccessKind.TTW, va=self.VA), cfg)
        with self.assertRaises(StructuralError):
            self.step(MemRead(0x100000, kind=AccessKind.TTW), cfg)

    def test_stale_descriptor(self):
        initial = {**self.pt.memory, X: 11, Y: 22}
        _, mem = Memory(initial).promise(Write(1, self.pte, self.pt.memory[self.pte] ^ X ^ Y))
        outs = self.step(TranslationStart(self.VA), self.cfg(mem))
        self.assertEqual(len(outs), 2)

    def test_unsynchronized_ttbr(self):
        other = PageTables(0x200000)
        other.map(self.VA, Y)
        initial = {**self.pt.memory, **other.memory, X: 11, Y: 22}
        cfg = self.cfg(Memory(initial))
        cfg = self.only(RegWrite(SYSREG_TTBR0, other.ttbr(), NO_DEPS), cfg).config
        outs = self.step(TranslationStart(self.VA), self.next_instr(cfg))
        self.assertEqual(sorted(o.result for o in outs), [0x100000, 0x200000])
        cfg = self.only(Barrier(BarrierKind.ISB), cfg).config
        [out] = self.step(TranslationStart(self.VA), self.next_instr(cfg))
        self.assertEqual(out.result, 0x200000)

    def test_invalidated_translation_discards(self):
        initial = {**self.pt.memory, X: 11, Y: 22}
        mem = with_events(
            TlbiEvent(1, TlbiOp(TlbiKind.VAA, page=va_page(self.VA))),
            Write(1, X, 33), initial=initial)
        pa, cfg = self.translate(self.cfg(mem))
        self.assertEqual(cfg.iis.deadline, 1)
        outs = self.step(MemRead(pa, addr_deps=NO_DEPS), cfg)
        self.assertEqual([o.status for o in outs], [Status.DISCARD, Status.OK])
        self.assertEqual(outs[1].result, 11)
        [out] = self.step(MemWrite(pa, 1, addr_deps=NO_DEPS, data_deps=NO_DEPS), cfg)
        self.assertIs(out.status, Status.DISCARD)


class TestControl(InterpreterTest):
    def test_choose(self):
        outs = self.step(Choose(2), config())
        self.assertEqual([o.result for o in outs], [0, 1, 2, 3])
        self.assertEqual(len(self.step(Choose(8), config())), 256)
        with self.assertRaises(UnsupportedError):
            self.step(Choose(9), config())

    def test_discard(self):
        [out] = self.step(Discard("nope"), config())
        self.assertIs(out.status, Status.DISCARD)
        self.assertEqual(out.reason, "nope")

    def test_unsupported_effects(self):
        with self.assertRaises(UnsupportedError):
            self.step(IndirectRegRead("X0", 1), config())
        with self.assertRaises(UnsupportedError) as cm:
            self.step(AtomicRMW(X), config())
        self.assertIn("unsupported", str(cm.exception))


class TestInstructionFetch(InterpreterTest):
    def test_fetch_halves(self):
        cfg = config(initial={X: 0x11223344_55667788})
        lo = self.only(MemRead(X, size=4, kind=AccessKind.IFETCH), cfg)
        hi = self.only(MemRead(X + 4, size=4, kind=AccessKind.IFETCH), cfg)
        self.assertEqual(lo.result, 0x55667788)
        self.assertEqual(hi.result, 0x11223344)

    def test_fetch_sees_synchronized_memory(self):
        mem = with_events(Write(0, X, 0xAB), initial={X: 0xCD})
        cfg = config(mem=mem)
        self.assertEqual(self.only(MemRead(X, size=4, kind=AccessKind.IFETCH), cfg).result, 0xCD)
        cfg.ts.update("vcse", 1)
        self.assertEqual(self.only(MemRead(X, size=4, kind=AccessKind.IFETCH), cfg).result, 0xAB)

    def test_fetch_errors(self):
        with self.assertRaises(StructuralError):
            self.step(MemRead(X + 2, size=4, kind=AccessKind.IFETCH), config())
        with self.assertRaises(UnsupportedError):
            self.step(MemRead(X, size=8, kind=AccessKind.IFETCH), config())


if __name__ == "__main__":
    unittest.main()
