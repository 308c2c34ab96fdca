# presscount/core/scheduler.py
"""
Poll scheduler / lifecycle

INITIALIZING: load active devices (none -> ConfigurationError), seed per-line
              cumulative counts from the store
RUNNING:      poll every device once per tick, aggregate statistics, sleep,
              and every N ticks prune state for machines no longer configured

All mutable poll state (detector states, cumulative counts, statistics) is
owned by one PollScheduler instance.
"""

from __future__ import annotations

import time
import threading
import logging
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from presscount.core.errors import ConfigurationError
from presscount.core.models import CycleKey, Device
from presscount.core.state_machine import CycleDetector, PositionCycleState
from presscount.core.cycle_recorder import CycleRecorder
from presscount.core.orchestrator import Orchestrator
from presscount.core.diagnostics import PollStats, TickReport


class SchedulerState(Enum):
    INITIALIZING = auto()
    RUNNING = auto()
    STOPPED = auto()


class PollScheduler:
    def __init__(
        self,
        config: Dict[str, Any],
        store: Any,
        reader: Any,
        load_devices: Optional[Callable[[], List[Device]]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], Any]] = None,
        logger: Optional[logging.Logger] = None,
        verbose: bool = False,
        debug: bool = False,
    ) -> None:
        self.config = config or {}
        self.store = store
        self.logger = logger or logging.getLogger("presscount.scheduler")
        self.verbose = bool(verbose)
        self.debug = bool(debug)
        self.clock = clock

        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._load_devices = load_devices or store.list_active_devices

        self.interval_s = float(self._cfg_get("poll.interval_s", 1.0))
        self.prune_interval_ticks = max(1, int(self._cfg_get("poll.prune_interval_ticks", 1000)))
        self.stats_every_ticks = max(1, int(self._cfg_get("poll.stats_every_ticks", 100)))

        cycle_cfg = dict(self._cfg_get("cycle", {}) or {})
        recorder_cfg = dict(cycle_cfg)
        recorder_cfg["persist_retries"] = self._cfg_get("storage.persist_retries", 2)

        self.states: Dict[CycleKey, PositionCycleState] = {}
        self.detector = CycleDetector(cycle_cfg, logger=logging.getLogger("presscount.detector"))
        self.recorder = CycleRecorder(
            store,
            recorder_cfg,
            logger=logging.getLogger("presscount.recorder"),
            verbose=self.verbose,
        )
        self.orchestrator = Orchestrator(
            reader,
            self.detector,
            self.recorder,
            states=self.states,
            clock=clock,
            logger=logging.getLogger("presscount.orchestrator"),
            verbose=self.verbose,
            debug=self.debug,
        )

        self.state = SchedulerState.INITIALIZING
        self.devices: List[Device] = []
        self.stats = PollStats()

    # ------------------------
    # Config Helper
    # ------------------------
    def _cfg_get(self, key: str, default: Any = None) -> Any:
        curr: Any = self.config
        for p in key.split("."):
            if not isinstance(curr, dict):
                return default
            curr = curr.get(p)
        return curr if curr is not None else default

    # ------------------------
    # Lifecycle
    # ------------------------
    def initialize(self) -> List[Device]:
        devices = self._load_devices()
        if not devices:
            raise ConfigurationError("No active DWP devices found")

        self.devices = list(devices)
        self.recorder.seed_lines(self._active_lines(self.devices))
        self.state = SchedulerState.RUNNING

        self.logger.info("Poller started - monitoring %d devices", len(self.devices))
        if self.verbose:
            for d in self.devices:
                self.logger.info("  -> %s (%s) - Lines: %s", d.name, d.ip_address, ", ".join(d.line_names()))
        return self.devices

    def run(self, max_ticks: Optional[int] = None) -> PollStats:
        """Blocks until stop() is called (or max_ticks ticks have run)."""
        if self.state == SchedulerState.INITIALIZING:
            self.initialize()

        while not self._stop.is_set():
            self.tick()
            self._sleep(self.interval_s)
            self.stats.ticks += 1

            if self.stats.ticks % self.prune_interval_ticks == 0:
                self.prune()

            if max_ticks is not None and self.stats.ticks >= max_ticks:
                break

        self.state = SchedulerState.STOPPED
        return self.stats

    def stop(self) -> None:
        self._stop.set()

    # ------------------------
    # One tick
    # ------------------------
    def tick(self) -> TickReport:
        t0 = time.perf_counter()
        report = TickReport(tick=self.stats.ticks)

        for device in self.devices:
            if self.verbose:
                self.logger.info("Polling %s (%s)", device.name, device.ip_address)
            try:
                res = self.orchestrator.poll_device(device)
                report.saved += res.saved
                report.errors += res.errors
                ok = res.errors == 0
            except Exception as e:
                # Last line of defence: one device must never stop the others
                report.errors += 1
                ok = False
                self.logger.error("Error polling %s (%s): %s", device.name, device.ip_address, e, exc_info=self.debug)

            st = self.stats.mark_device(device.name, ok, ts=self.clock())
            if self.verbose and self.stats.ticks > 0 and self.stats.ticks % self.stats_every_ticks == 0:
                self.logger.info(
                    "Device %s stats: %.1f%% success rate (%d/%d)",
                    st.name, st.success_rate(), st.success_count, st.total,
                )

        report.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        self.stats.add_tick(report)

        if self.verbose and (report.saved > 0 or report.errors > 0):
            self.logger.info(
                "Cycle #%d: %d new readings saved, %d errors, %.2fms",
                report.tick, report.saved, report.errors, report.elapsed_ms,
            )
        return report

    # ------------------------
    # Pruning
    # ------------------------
    def prune(self) -> int:
        """
        Reload the active device set and drop detector state and cumulative
        counts for lines/machines that are no longer configured. Returns the
        number of entries removed.
        """
        try:
            devices = self._load_devices()
        except Exception as e:
            self.logger.error("Device reload failed, keeping current set: %s", e)
            return 0

        if not devices:
            self.logger.warning("No active devices on reload; keeping current set")
            return 0

        self.devices = list(devices)
        active_keys = set()
        for d in self.devices:
            active_keys.update(d.cycle_keys())

        stale = [k for k in self.states if k not in active_keys]
        for k in stale:
            del self.states[k]

        removed = len(stale) + self.recorder.prune(self._active_lines(self.devices))
        self.stats.drop_devices({d.name for d in self.devices})
        self.stats.prune_passes += 1

        self.logger.debug(
            "Prune pass: removed %d entries; %d active states, %d lines tracked",
            removed, len(self.states), len(self.recorder.cumulative),
        )
        return removed

    @staticmethod
    def _active_lines(devices: List[Device]) -> List[str]:
        seen: List[str] = []
        for d in devices:
            for line in d.line_names():
                if line not in seen:
                    seen.append(line)
        return seen
