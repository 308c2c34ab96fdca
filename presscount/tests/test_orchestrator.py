# presscount/tests/test_orchestrator.py
# Tests for core/orchestrator.py: per-machine isolation, L/R independence

import unittest

from presscount.core.cycle_recorder import CycleRecorder
from presscount.core.errors import TransportError
from presscount.core.models import CycleKey, Device, Position
from presscount.core.orchestrator import Orchestrator
from presscount.core.state_machine import CycleDetector, CycleState

from presscount.tests.fakes import FakeStore, Clock


def machine(name, base):
    return {"name": name, "addr_th_l": base, "addr_th_r": base + 1, "addr_side_l": base + 2, "addr_side_r": base + 3}


def values(th_l=0, th_r=0, side_l=0, side_r=0):
    return {"toe_heel_left": th_l, "toe_heel_right": th_r, "side_left": side_l, "side_right": side_r}


class ScriptedReader:
    """Returns the next scripted reading per (host, first address); Exceptions are raised."""

    def __init__(self, script):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls = []

    def read(self, host, addresses):
        key = (host, addresses["toe_heel_left"])
        self.calls.append(key)
        item = self.script[key].pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_device(lines, name="DWP-01", ip="10.0.0.5"):
    return Device.from_dict({"name": name, "ip_address": ip, "config": lines})


class TestOrchestrator(unittest.TestCase):
    def build(self, script, store=None):
        self.store = store or FakeStore()
        self.clock = Clock()
        self.reader = ScriptedReader(script)
        self.orch = Orchestrator(
            self.reader, CycleDetector(), CycleRecorder(self.store), clock=self.clock,
        )

    def tick(self, device):
        res = self.orch.poll_device(device)
        self.clock.t += 1.0
        return res

    def test_left_and_right_are_independent(self):
        dev = make_device([{"line": "g5", "machines": [machine("mc1", 100)]}])
        self.build({("10.0.0.5", 100): [
            values(th_l=12, side_l=0, th_r=0, side_r=0),
            values(th_l=35, side_l=32, th_r=20, side_r=20),
            values(th_l=38, side_l=40, th_r=50, side_r=50),
            values(th_l=0, side_l=0, th_r=0, side_r=0),
        ]})

        results = [self.tick(dev) for _ in range(4)]
        self.assertEqual([r.saved for r in results], [0, 0, 0, 1])
        self.assertEqual(len(self.store.records), 1)

        rec = self.store.records[0]
        self.assertEqual(rec.position, "L")
        self.assertEqual(rec.line, "G5")
        self.assertEqual(rec.pv, [[12, 35, 38, 0], [0, 32, 40, 0]])
        # right side peaked at 50: discarded, both back to idle
        self.assertEqual(self.orch.states, {})

    def test_idle_keys_are_not_stored(self):
        dev = make_device([{"line": "G5", "machines": [machine("mc1", 100)]}])
        self.build({("10.0.0.5", 100): [values(th_r=15), values(th_r=16)]})
        self.tick(dev)
        self.assertEqual(list(self.orch.states), [CycleKey("G5", "mc1", Position.RIGHT)])
        self.assertEqual(self.orch.states[CycleKey("G5", "mc1", Position.RIGHT)].state, CycleState.ACTIVE)

    def test_transport_error_skips_only_that_machine(self):
        dev = make_device([
            {"line": "G5", "machines": [machine("mc1", 100), machine("mc2", 200)]},
            {"line": "G6", "machines": [machine("mc3", 300)]},
        ])
        self.build({
            ("10.0.0.5", 100): [TransportError("timeout", "10.0.0.5", 503)],
            ("10.0.0.5", 200): [values(th_l=35, side_l=35)],
            ("10.0.0.5", 300): [values(th_r=35, side_r=35)],
        })
        res = self.tick(dev)
        self.assertEqual(res.errors, 1)
        self.assertEqual(res.machines, 3)
        self.assertEqual(len(self.reader.calls), 3)
        self.assertIn(CycleKey("G5", "mc2", Position.LEFT), self.orch.states)
        self.assertIn(CycleKey("G6", "mc3", Position.RIGHT), self.orch.states)

    def test_malformed_machine_entry(self):
        bad = {"name": "mc9", "addr_th_l": 1}
        dev = make_device([{"line": "G5", "machines": [bad, machine("mc2", 200)]}])
        self.build({("10.0.0.5", 200): [values()]})
        res = self.tick(dev)
        self.assertEqual(res.errors, 1)
        self.assertEqual(self.reader.calls, [("10.0.0.5", 200)])

    def test_malformed_response(self):
        dev = make_device([{"line": "G5", "machines": [machine("mc1", 100)]}])
        self.build({("10.0.0.5", 100): [{"toe_heel_left": 1}]})
        res = self.tick(dev)
        self.assertEqual(res.errors, 1)

    def test_persistence_error_counted_and_state_reset(self):
        store = FakeStore(fail_times=100)
        dev = make_device([{"line": "G5", "machines": [machine("mc1", 100)]}])
        self.build({("10.0.0.5", 100): [values(th_l=35, side_l=35), values()]}, store=store)
        self.orch.recorder.persist_retries = 0

        self.tick(dev)
        res = self.tick(dev)
        self.assertEqual(res.errors, 1)
        self.assertEqual(res.saved, 0)
        self.assertEqual(self.orch.states, {})
        self.assertEqual(self.orch.recorder.cumulative["G5"], 0)

    def test_left_write_failure_does_not_block_right(self):
        # first insert fails (left), second succeeds (right)
        store = FakeStore(fail_times=1)
        dev = make_device([{"line": "G5", "machines": [machine("mc1", 100)]}])
        self.build({("10.0.0.5", 100): [
            values(th_l=35, side_l=35, th_r=35, side_r=35),
            values(),
        ]}, store=store)
        self.orch.recorder.persist_retries = 0

        self.tick(dev)
        res = self.tick(dev)

        self.assertEqual(res.saved, 1)
        self.assertEqual(res.errors, 1)
        self.assertEqual(len(store.records), 1)
        self.assertEqual(store.records[0].position, "R")
        self.assertEqual(store.records[0].count, 1)
        self.assertEqual(self.orch.states, {})
        self.assertEqual(self.orch.recorder.cumulative["G5"], 1)

    def test_malformed_response_steps_neither_position(self):
        dev = make_device([{"line": "G5", "machines": [machine("mc1", 100)]}])
        self.build({("10.0.0.5", 100): [{"toe_heel_left": 20, "side_left": 20, "toe_heel_right": 20}]})
        res = self.tick(dev)
        self.assertEqual(res.errors, 1)
        self.assertEqual(self.orch.states, {})

    def test_legacy_machine_list_key(self):
        dev = make_device([{"line": "G5", "list_mechine": [machine("mc1", 100)]}])
        self.build({("10.0.0.5", 100): [values()]})
        res = self.tick(dev)
        self.assertEqual(res.machines, 1)
        self.assertEqual(res.errors, 0)


if __name__ == "__main__":
    unittest.main()
