# presscount/core/diagnostics.py
# Poll statistics: per-tick, per-run and per-device counters

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional


@dataclass
class DeviceStats:
    name: str
    success_count: int = 0
    error_count: int = 0
    last_success: Optional[float] = None
    last_error: Optional[float] = None

    @property
    def total(self) -> int:
        return self.success_count + self.error_count

    def success_rate(self) -> float:
        """Percent, rounded to one decimal; 0.0 before the first poll."""
        if self.total == 0:
            return 0.0
        return round(self.success_count / self.total * 100.0, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "last_success": self.last_success,
            "last_error": self.last_error,
            "success_rate": self.success_rate(),
        }


@dataclass
class TickReport:
    tick: int
    saved: int = 0
    errors: int = 0
    elapsed_ms: float = 0.0


@dataclass
class PollStats:
    ticks: int = 0
    total_saved: int = 0
    total_errors: int = 0
    prune_passes: int = 0
    devices: Dict[str, DeviceStats] = field(default_factory=dict)

    def device(self, name: str) -> DeviceStats:
        st = self.devices.get(name)
        if st is None:
            st = DeviceStats(name=name)
            self.devices[name] = st
        return st

    def mark_device(self, name: str, success: bool, ts: Optional[float] = None) -> DeviceStats:
        st = self.device(name)
        t = time.time() if ts is None else ts
        if success:
            st.success_count += 1
            st.last_success = t
        else:
            st.error_count += 1
            st.last_error = t
        return st

    def add_tick(self, report: TickReport) -> None:
        self.total_saved += report.saved
        self.total_errors += report.errors

    def drop_devices(self, keep: set) -> None:
        for name in [n for n in self.devices if n not in keep]:
            del self.devices[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticks": self.ticks,
            "total_saved": self.total_saved,
            "total_errors": self.total_errors,
            "prune_passes": self.prune_passes,
            "devices": {k: v.to_dict() for k, v in self.devices.items()},
        }
