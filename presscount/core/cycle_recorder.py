# presscount/core/cycle_recorder.py
# Cycle validation (peak bounds) + count record persistence + per-line running totals

from __future__ import annotations

import time
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from presscount.core.errors import PersistenceError
from presscount.core.models import CycleKey, machine_number
from presscount.core.state_machine import Waveform
from presscount.storage.sqlite_store import CountRecord


class CycleRecorder:
    """
    Validates completed waveforms and persists one CountRecord per valid cycle.

    Owns the per-line cumulative counts. A line's count is seeded from the
    latest stored record the first time it is needed (0 if none), and only
    advanced after the store accepted the new record.

    Config example:
      cycle:
        good_value_min: 30
        good_value_max: 45
      storage:
        persist_retries: 2
    """

    def __init__(
        self,
        store: Any,
        cfg: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        verbose: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cfg = cfg or {}
        self.logger = logger or logging.getLogger("presscount.recorder")
        self.verbose = bool(verbose)
        self._sleep = sleep

        self.good_value_min = int(self.cfg.get("good_value_min", 30))
        self.good_value_max = int(self.cfg.get("good_value_max", 45))
        self.persist_retries = max(0, int(self.cfg.get("persist_retries", 2)))
        self.retry_backoff_s = float(self.cfg.get("retry_backoff_s", 0.1))

        self.cumulative: Dict[str, int] = {}

    # -----------------------
    # Cumulative counts
    # -----------------------

    def seed_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self._seed(line)

    def _seed(self, line: str) -> int:
        if line not in self.cumulative:
            last = self.store.latest_for_line(line)
            self.cumulative[line] = int(last.count) if last else 0
            self.logger.debug("Initialized line %s with last cumulative: %d", line, self.cumulative[line])
        return self.cumulative[line]

    def prune(self, active_lines: Iterable[str]) -> int:
        keep = set(active_lines)
        stale = [line for line in self.cumulative if line not in keep]
        for line in stale:
            del self.cumulative[line]
        return len(stale)

    # -----------------------
    # Validation
    # -----------------------

    def validate(self, waveform: Waveform) -> bool:
        """Both peaks inside [good_value_min, good_value_max], inclusive."""
        if len(waveform.toe_heel) == 0 or len(waveform.side) == 0:
            return False
        th_peak, side_peak = waveform.peaks()
        lo, hi = self.good_value_min, self.good_value_max
        return lo <= th_peak <= hi and lo <= side_peak <= hi

    # -----------------------
    # Recording
    # -----------------------

    def record(self, key: CycleKey, waveform: Waveform) -> int:
        """Returns 1 if a record was written, 0 if the cycle was discarded."""
        if not self.validate(waveform):
            self.logger.debug(
                "Discarded cycle %s-%s-%s: peaks %s outside [%d, %d]",
                key.line, key.machine, key.position.value,
                waveform.peaks() if len(waveform) else "n/a",
                self.good_value_min, self.good_value_max,
            )
            return 0

        th_peak, side_peak = waveform.peaks()
        new_total = self._seed(key.line) + 1
        rec = CountRecord(
            machine=machine_number(key.machine),
            line=key.line,
            count=new_total,
            pv=waveform.as_payload(),
            position=key.position.value,
            duration=0,
            incremental=1,
            std_error=[0, 0],
        )
        self._persist(rec)
        self.cumulative[key.line] = new_total

        if self.verbose:
            self.logger.info(
                "Saved good cycle for %s-%s-%s. Peaks: %d/%d. New total count: %d",
                key.line, key.machine, key.position.value, th_peak, side_peak, new_total,
            )
        return 1

    def _persist(self, rec: CountRecord) -> None:
        attempt = 0
        while True:
            try:
                self.store.insert_count(rec)
                return
            except PersistenceError as e:
                if attempt >= self.persist_retries:
                    raise
                attempt += 1
                self.logger.warning(
                    "Count write for line %s failed (attempt %d/%d): %s",
                    rec.line, attempt, self.persist_retries + 1, e,
                )
                self._sleep(self.retry_backoff_s * attempt)
