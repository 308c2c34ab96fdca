# presscount/core/state_machine.py
from __future__ import annotations

import logging
from enum import Enum, auto
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

from presscount.core.models import CycleKey


class CycleState(Enum):
    IDLE = auto()
    ACTIVE = auto()


# Transition reasons
R_IDLE = "idle"
R_START = "start_threshold"
R_BUFFERING = "buffering"
R_COMPLETE = "cycle_complete"
R_TIMEOUT = "cycle_timeout"
R_OVERFLOW = "buffer_overflow"


@dataclass(frozen=True)
class Waveform:
    toe_heel: Tuple[int, ...]
    side: Tuple[int, ...]

    def peaks(self) -> Tuple[int, int]:
        return max(self.toe_heel), max(self.side)

    def as_payload(self) -> list:
        return [list(self.toe_heel), list(self.side)]

    def __len__(self) -> int:
        return len(self.toe_heel)


@dataclass(frozen=True)
class PositionCycleState:
    state: CycleState = CycleState.IDLE
    started_at: float = 0.0
    toe_heel_samples: Tuple[int, ...] = field(default_factory=tuple)
    side_samples: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def is_active(self) -> bool:
        return self.state == CycleState.ACTIVE

    def __len__(self) -> int:
        return len(self.toe_heel_samples)


IDLE = PositionCycleState()


@dataclass
class TransitionResult:
    prev_state: CycleState
    new_state: CycleState
    changed: bool
    reason: str = ""
    waveform: Optional[Waveform] = None


class CycleDetector:
    """
    Idle/Active cycle detector for one machine position.

    The detector itself is stateless; step() takes the current
    PositionCycleState and returns the next one, so the caller owns the
    per-key state map (get -> step -> put).

    Config example:
      cycle:
        start_threshold: 10
        end_threshold: 0
        cycle_timeout_s: 30
        max_buffer_size: 100
    """

    def __init__(self, cfg: Optional[Dict[str, Any]] = None, logger: Optional[logging.Logger] = None):
        self.cfg = cfg or {}
        self.logger = logger or logging.getLogger("presscount.detector")

        self.start_threshold = int(self.cfg.get("start_threshold", 10))
        self.end_threshold = int(self.cfg.get("end_threshold", 0))
        self.cycle_timeout_s = float(self.cfg.get("cycle_timeout_s", 30))
        self.max_buffer_size = int(self.cfg.get("max_buffer_size", 100))

    def step(
        self,
        current: PositionCycleState,
        toe_heel: int,
        side: int,
        now: float,
        key: Optional[CycleKey] = None,
    ) -> Tuple[PositionCycleState, TransitionResult]:
        prev = current.state
        toe_heel = int(toe_heel)
        side = int(side)

        # Failsafe: a sensor stuck above the start threshold
        if current.is_active and (now - current.started_at) > self.cycle_timeout_s:
            self.logger.debug(
                "%s timed out after %.1fs with %d samples; resetting",
                _fmt(key), now - current.started_at, len(current),
            )
            current = IDLE
            timed_out = True
        else:
            timed_out = False

        if not current.is_active:
            if toe_heel >= self.start_threshold or side >= self.start_threshold:
                nxt = PositionCycleState(
                    state=CycleState.ACTIVE,
                    started_at=now,
                    toe_heel_samples=(toe_heel,),
                    side_samples=(side,),
                )
                self.logger.debug("%s start: toe_heel=%d side=%d", _fmt(key), toe_heel, side)
                return nxt, TransitionResult(prev, CycleState.ACTIVE, prev != CycleState.ACTIVE or timed_out, R_START)

            reason = R_TIMEOUT if timed_out else R_IDLE
            return IDLE, TransitionResult(prev, CycleState.IDLE, prev != CycleState.IDLE, reason)

        # ACTIVE: buffer this tick
        nxt = PositionCycleState(
            state=CycleState.ACTIVE,
            started_at=current.started_at,
            toe_heel_samples=current.toe_heel_samples + (toe_heel,),
            side_samples=current.side_samples + (side,),
        )

        if toe_heel <= self.end_threshold and side <= self.end_threshold:
            wf = Waveform(nxt.toe_heel_samples, nxt.side_samples)
            self.logger.debug("%s complete: %d samples, peaks=%s", _fmt(key), len(wf), wf.peaks())
            return IDLE, TransitionResult(prev, CycleState.IDLE, True, R_COMPLETE, waveform=wf)

        if len(nxt) > self.max_buffer_size:
            self.logger.debug("%s buffer overflow (%d samples); resetting", _fmt(key), len(nxt))
            return IDLE, TransitionResult(prev, CycleState.IDLE, True, R_OVERFLOW)

        return nxt, TransitionResult(prev, CycleState.ACTIVE, False, R_BUFFERING)


def _fmt(key: Optional[CycleKey]) -> str:
    if key is None:
        return "cycle"
    return f"{key.line}-{key.machine}-{key.position.value}"
