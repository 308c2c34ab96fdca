# presscount/core/models.py
# Device / line / machine configuration and cycle identity types

from __future__ import annotations

import re
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from presscount.core.errors import ConfigurationError


# Register field names read for every machine (one batched read)
FIELD_TH_L = "toe_heel_left"
FIELD_TH_R = "toe_heel_right"
FIELD_SIDE_L = "side_left"
FIELD_SIDE_R = "side_right"

MACHINE_ADDR_KEYS = {
    FIELD_TH_L: "addr_th_l",
    FIELD_TH_R: "addr_th_r",
    FIELD_SIDE_L: "addr_side_l",
    FIELD_SIDE_R: "addr_side_r",
}


class Position(str, Enum):
    LEFT = "L"
    RIGHT = "R"


class CycleKey(NamedTuple):
    line: str
    machine: str
    position: Position


def normalize_line(name: Any) -> str:
    return str(name).strip().upper()


def machine_number(name: str) -> int:
    """'mc3' -> 3. Raises ConfigurationError if the name carries no digits."""
    m = re.search(r"\d+", str(name))
    if not m:
        raise ConfigurationError(f"machine name has no number: {name!r}")
    return int(m.group(0))


@dataclass(frozen=True)
class MachineConfig:
    name: str
    addr_th_l: int
    addr_th_r: int
    addr_side_l: int
    addr_side_r: int

    def addresses(self) -> Dict[str, int]:
        """Field name -> register address, in a fixed order."""
        return {
            FIELD_TH_L: self.addr_th_l,
            FIELD_TH_R: self.addr_th_r,
            FIELD_SIDE_L: self.addr_side_l,
            FIELD_SIDE_R: self.addr_side_r,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MachineConfig":
        if not isinstance(d, dict):
            raise ConfigurationError(f"machine entry must be a mapping, got {type(d).__name__}")
        name = str(d.get("name") or "").strip()
        if not name:
            raise ConfigurationError("machine entry without a name")
        machine_number(name)

        addrs: Dict[str, int] = {}
        for key in MACHINE_ADDR_KEYS.values():
            if d.get(key) is None:
                raise ConfigurationError(f"machine {name}: missing {key}")
            try:
                addrs[key] = int(d[key])
            except (TypeError, ValueError):
                raise ConfigurationError(f"machine {name}: {key} is not an integer ({d[key]!r})")
            if not 0 <= addrs[key] <= 0xFFFF:
                raise ConfigurationError(f"machine {name}: {key} out of range ({addrs[key]})")

        return cls(name=name, **addrs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "addr_th_l": self.addr_th_l,
            "addr_th_r": self.addr_th_r,
            "addr_side_l": self.addr_side_l,
            "addr_side_r": self.addr_side_r,
        }


@dataclass
class LineConfig:
    """
    One production line on a device.

    `machines` holds the raw entries as configured; each is parsed into a
    MachineConfig when polled, so one malformed entry only fails that machine.
    """
    line: str
    machines: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LineConfig":
        if not isinstance(d, dict) or not str(d.get("line") or "").strip():
            raise ConfigurationError("line configuration without a line name")
        # "list_mechine" is how older stored configurations name the list
        machines = d.get("machines")
        if machines is None:
            machines = d.get("list_mechine", [])
        if not isinstance(machines, list):
            raise ConfigurationError(f"line {d.get('line')}: machines must be a list")
        return cls(line=normalize_line(d["line"]), machines=list(machines))

    def machine_names(self) -> List[str]:
        return [str(m.get("name", "")).strip() for m in self.machines if isinstance(m, dict)]

    def to_dict(self) -> Dict[str, Any]:
        return {"line": self.line, "machines": list(self.machines)}


@dataclass
class Device:
    id: Optional[int]
    name: str
    ip_address: str
    is_active: bool = True
    lines: List[LineConfig] = field(default_factory=list)

    def line_names(self) -> List[str]:
        return [lc.line for lc in self.lines]

    def cycle_keys(self) -> List[CycleKey]:
        keys: List[CycleKey] = []
        for lc in self.lines:
            for name in lc.machine_names():
                if not name:
                    continue
                keys.append(CycleKey(lc.line, name, Position.LEFT))
                keys.append(CycleKey(lc.line, name, Position.RIGHT))
        return keys

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Device":
        name = str(d.get("name") or "").strip()
        ip = str(d.get("ip_address") or "").strip()
        if not name or not ip:
            raise ConfigurationError("device requires name and ip_address")
        config = d.get("config") or d.get("lines") or []
        if not isinstance(config, list):
            raise ConfigurationError(f"device {name}: config must be a list of lines")
        return cls(
            id=d.get("id"),
            name=name,
            ip_address=ip,
            is_active=bool(d.get("is_active", True)),
            lines=[LineConfig.from_dict(lc) for lc in config],
        )

    def config_list(self) -> List[Dict[str, Any]]:
        return [lc.to_dict() for lc in self.lines]
