# presscount/tests/test_scheduler.py
# Tests for core/scheduler.py: lifecycle, statistics, pruning (fake clock, no real sleeping)

import unittest

from presscount.core.errors import ConfigurationError, TransportError
from presscount.core.models import CycleKey, Device, Position
from presscount.core.scheduler import PollScheduler, SchedulerState
from presscount.core.state_machine import CycleState, PositionCycleState

from presscount.tests.fakes import FakeStore, Clock


def machine(name, base):
    return {"name": name, "addr_th_l": base, "addr_th_r": base + 1, "addr_side_l": base + 2, "addr_side_r": base + 3}


def device(name, ip, lines, active=True):
    return Device.from_dict({"name": name, "ip_address": ip, "is_active": active, "config": lines})


class LoopReader:
    """Plays a list of (th_l, side_l) readings per host; right side stays 0. Repeats the last one."""

    def __init__(self, by_host):
        self.by_host = dict(by_host)
        self.idx = {}

    def read(self, host, addresses):
        seq = self.by_host[host]
        if isinstance(seq, Exception):
            raise seq
        i = self.idx.get(host, 0)
        self.idx[host] = i + 1
        th, side = seq[min(i, len(seq) - 1)]
        return {"toe_heel_left": th, "toe_heel_right": 0, "side_left": side, "side_right": 0}


class TestPollScheduler(unittest.TestCase):
    def build(self, devices, reader, latest=None, config=None):
        self.clock = Clock()
        self.store = FakeStore(latest=latest, devices=devices)

        def sleep(s):
            self.clock.t += s

        self.sched = PollScheduler(
            config or {"poll": {"interval_s": 1.0, "prune_interval_ticks": 1000}},
            self.store,
            reader,
            clock=self.clock,
            sleep=sleep,
        )
        return self.sched

    def test_no_active_devices(self):
        sched = self.build([device("D1", "10.0.0.1", [], active=False)], LoopReader({}))
        with self.assertRaises(ConfigurationError):
            sched.initialize()
        self.assertEqual(sched.state, SchedulerState.INITIALIZING)

    def test_initialize_seeds_lines(self):
        dev = device("D1", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]},
                                        {"line": "G6", "machines": []}])
        sched = self.build([dev], LoopReader({}), latest={"G5": 120})
        sched.initialize()
        self.assertEqual(sched.state, SchedulerState.RUNNING)
        self.assertEqual(sched.recorder.cumulative, {"G5": 120, "G6": 0})

    def test_run_records_valid_cycle(self):
        dev = device("D1", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        reader = LoopReader({"10.0.0.1": [(0, 0), (12, 0), (35, 32), (38, 40), (0, 0), (0, 0)]})
        sched = self.build([dev], reader, latest={"G5": 7})

        stats = sched.run(max_ticks=6)
        self.assertEqual(stats.ticks, 6)
        self.assertEqual(stats.total_saved, 1)
        self.assertEqual(stats.total_errors, 0)
        self.assertEqual(self.store.records[0].count, 8)
        self.assertEqual(self.store.records[0].pv, [[12, 35, 38, 0], [0, 32, 40, 0]])
        self.assertEqual(sched.state, SchedulerState.STOPPED)
        self.assertEqual(stats.devices["D1"].success_count, 6)
        # clock advanced only through the injected sleep
        self.assertEqual(self.clock.t, 1006.0)

    def test_stuck_sensor_times_out_without_record(self):
        dev = device("D1", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        # start, stay mid-range (not an end, not a new start) past the timeout, then settle
        readings = [(35, 35)] + [(5, 5)] * 40 + [(0, 0)]
        sched = self.build([dev], LoopReader({"10.0.0.1": readings}),
                           config={"poll": {"interval_s": 1.0}, "cycle": {"max_buffer_size": 1000}})
        stats = sched.run(max_ticks=len(readings))
        self.assertEqual(stats.total_saved, 0)
        self.assertEqual(self.store.records, [])
        self.assertEqual(sched.states, {})

    def test_failing_device_does_not_stop_others(self):
        good = device("GOOD", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        bad = device("BAD", "10.0.0.2", [{"line": "G6", "machines": [machine("mc1", 0)]}])
        reader = LoopReader({
            "10.0.0.1": [(35, 35), (0, 0)],
            "10.0.0.2": TransportError("connection refused", "10.0.0.2", 503),
        })
        sched = self.build([bad, good], reader)
        stats = sched.run(max_ticks=2)

        self.assertEqual(stats.total_saved, 1)
        self.assertEqual(stats.total_errors, 2)
        self.assertEqual(stats.devices["BAD"].error_count, 2)
        self.assertEqual(stats.devices["BAD"].success_rate(), 0.0)
        self.assertEqual(stats.devices["GOOD"].success_rate(), 100.0)
        self.assertEqual(stats.devices["BAD"].last_error, 1001.0)

    def test_unexpected_device_exception_isolated(self):
        good = device("GOOD", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        sched = self.build([good], LoopReader({"10.0.0.1": [(0, 0)]}))
        sched.initialize()

        class Broken:
            name = "BROKEN"
            ip_address = "10.0.0.9"
            lines = None  # iteration fails inside the orchestrator

        sched.devices = [Broken(), good]
        report = sched.tick()
        self.assertEqual(report.errors, 1)
        self.assertEqual(sched.stats.devices["GOOD"].success_count, 1)

    def test_stop_ends_loop(self):
        dev = device("D1", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        sched = self.build([dev], LoopReader({"10.0.0.1": [(0, 0)]}))
        calls = []

        def sleep(s):
            calls.append(s)
            if len(calls) == 3:
                sched.stop()

        sched._sleep = sleep
        stats = sched.run()
        self.assertEqual(stats.ticks, 3)
        self.assertEqual(calls, [1.0, 1.0, 1.0])

    def test_prune_removes_stale_state_and_lines(self):
        keep = device("D1", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        gone = device("D2", "10.0.0.2", [{"line": "G6", "machines": [machine("mc7", 0)]}])
        sched = self.build([keep, gone], LoopReader({}))
        sched.initialize()

        active = PositionCycleState(CycleState.ACTIVE, 1000.0, (20,), (20,))
        sched.states[CycleKey("G5", "mc1", Position.LEFT)] = active
        sched.states[CycleKey("G6", "mc7", Position.RIGHT)] = active
        sched.stats.mark_device("D2", True)

        self.store.devices = [keep]
        removed = sched.prune()

        self.assertEqual(removed, 2)
        self.assertEqual(list(sched.states), [CycleKey("G5", "mc1", Position.LEFT)])
        self.assertEqual(list(sched.recorder.cumulative), ["G5"])
        self.assertEqual([d.name for d in sched.devices], ["D1"])
        self.assertNotIn("D2", sched.stats.devices)
        self.assertEqual(sched.stats.prune_passes, 1)

    def test_prune_keeps_set_when_reload_empty(self):
        dev = device("D1", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        sched = self.build([dev], LoopReader({}))
        sched.initialize()
        self.store.devices = []
        self.assertEqual(sched.prune(), 0)
        self.assertEqual([d.name for d in sched.devices], ["D1"])
        self.assertIn("G5", sched.recorder.cumulative)

    def test_prune_runs_every_n_ticks(self):
        dev = device("D1", "10.0.0.1", [{"line": "G5", "machines": [machine("mc1", 0)]}])
        sched = self.build([dev], LoopReader({"10.0.0.1": [(0, 0)]}),
                           config={"poll": {"interval_s": 1.0, "prune_interval_ticks": 5}})
        stats = sched.run(max_ticks=12)
        self.assertEqual(stats.prune_passes, 2)


if __name__ == "__main__":
    unittest.main()
