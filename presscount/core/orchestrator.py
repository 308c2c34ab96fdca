# presscount/core/orchestrator.py
"""
Device poll orchestrator

Responsibilities:
- For one device: every line, every machine -> one batched register read
- Feed Left then Right samples through the cycle detector
- Hand completed waveforms to the recorder
- Isolate failures per machine: a bad read or a failed write never stops
  the remaining machines of the device
"""

from __future__ import annotations

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from presscount.core.errors import ConfigurationError, PersistenceError, TransportError
from presscount.core.models import (
    CycleKey, Device, MachineConfig, Position,
    FIELD_TH_L, FIELD_TH_R, FIELD_SIDE_L, FIELD_SIDE_R,
)
from presscount.core.state_machine import CycleDetector, PositionCycleState, Waveform, IDLE, R_COMPLETE
from presscount.core.cycle_recorder import CycleRecorder


@dataclass
class DevicePollResult:
    saved: int = 0
    errors: int = 0
    machines: int = 0


class Orchestrator:
    def __init__(
        self,
        reader: Any,
        detector: CycleDetector,
        recorder: CycleRecorder,
        states: Optional[Dict[CycleKey, PositionCycleState]] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
        verbose: bool = False,
        debug: bool = False,
    ) -> None:
        self.reader = reader
        self.detector = detector
        self.recorder = recorder
        self.states: Dict[CycleKey, PositionCycleState] = states if states is not None else {}
        self.clock = clock
        self.logger = logger or logging.getLogger("presscount.orchestrator")
        self.verbose = bool(verbose)
        self.debug = bool(debug)

    # ------------------------
    # Public
    # ------------------------
    def poll_device(self, device: Device) -> DevicePollResult:
        result = DevicePollResult()

        for lc in device.lines:
            for entry in lc.machines:
                result.machines += 1
                name = str(entry.get("name", "?")) if isinstance(entry, dict) else "?"
                try:
                    machine = MachineConfig.from_dict(entry)
                    values = self.reader.read(device.ip_address, machine.addresses())
                    saved, lost = self.process_machine(lc.line, machine.name, values)
                    result.saved += saved
                    result.errors += lost
                except (TransportError, ConfigurationError) as e:
                    result.errors += 1
                    self._log_fault(
                        "Error reading machine %s on line %s (%s %s): %s",
                        name, lc.line, device.name, device.ip_address, e,
                    )
                except (KeyError, TypeError, ValueError) as e:
                    result.errors += 1
                    self._log_fault(
                        "Malformed response for machine %s on line %s (%s): %r",
                        name, lc.line, device.name, e,
                    )

        return result

    def process_machine(self, line: str, machine: str, values: Dict[str, int]) -> Tuple[int, int]:
        """
        Left and right positions are processed independently: both are stepped
        on the same sample before any completed cycle is written, and a failed
        write for one position does not affect the other.
        Returns (saved, lost).
        """
        samples = (
            (Position.LEFT, values[FIELD_TH_L], values[FIELD_SIDE_L]),
            (Position.RIGHT, values[FIELD_TH_R], values[FIELD_SIDE_R]),
        )
        now = self.clock()
        completed = []
        for position, toe_heel, side in samples:
            key = CycleKey(line, machine, position)
            waveform = self.process_position(key, toe_heel, side, now)
            if waveform is not None:
                completed.append((key, waveform))

        saved = lost = 0
        for key, waveform in completed:
            try:
                saved += self.recorder.record(key, waveform)
            except PersistenceError as e:
                # A lost count is always reported
                lost += 1
                self.logger.error(
                    "Count for machine %s on line %s position %s not saved: %s",
                    key.machine, key.line, key.position.value, e,
                )
        return saved, lost

    def process_position(self, key: CycleKey, toe_heel: int, side: int, now: float) -> Optional[Waveform]:
        """Step one position; returns the waveform of a cycle completed on this sample."""
        current = self.states.get(key, IDLE)
        nxt, tr = self.detector.step(current, toe_heel, side, now, key=key)

        if nxt.is_active:
            self.states[key] = nxt
        else:
            self.states.pop(key, None)

        if tr.reason == R_COMPLETE:
            return tr.waveform
        return None

    # ------------------------
    # Internals
    # ------------------------
    def _log_fault(self, msg: str, *args: Any) -> None:
        if self.verbose or self.debug:
            self.logger.error(msg, *args)
        else:
            self.logger.debug(msg, *args)
