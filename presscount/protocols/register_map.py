# presscount/protocols/register_map.py
# Input register helpers for press controllers
# - Signed 16-bit decoding
# - Request planning: named addresses -> fewest contiguous read blocks

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List


# ----------------------------
# Protocol limits / defaults
# ----------------------------

# Modbus allows at most 125 registers per read request
MAX_REGS_PER_READ = 125

DEFAULT_PORT = 503
DEFAULT_UNIT_ID = 1
DEFAULT_TIMEOUT_S = 2.0


# ----------------------------
# Register helpers
# ----------------------------

def to_u16(v: int) -> int:
    return int(v) & 0xFFFF


def from_i16(reg_u16: int) -> int:
    x = int(reg_u16) & 0xFFFF
    return x - 0x10000 if x & 0x8000 else x


# ----------------------------
# Read planning
# ----------------------------

@dataclass(frozen=True)
class ReadBlock:
    start: int
    count: int

    @property
    def end(self) -> int:
        return self.start + self.count - 1


def plan_blocks(addresses: Dict[str, int], max_count: int = MAX_REGS_PER_READ) -> List[ReadBlock]:
    """
    Cover every address with the fewest contiguous blocks of at most max_count
    registers. Machine registers normally sit next to each other, so this is a
    single block in practice.
    """
    if not addresses:
        return []

    blocks: List[ReadBlock] = []
    start = None
    end = None
    for addr in sorted(set(int(a) for a in addresses.values())):
        if start is None:
            start = end = addr
        elif addr - start + 1 <= max_count:
            end = addr
        else:
            blocks.append(ReadBlock(start, end - start + 1))
            start = end = addr
    blocks.append(ReadBlock(start, end - start + 1))
    return blocks


def extract_fields(addresses: Dict[str, int], raw: Dict[int, int]) -> Dict[str, int]:
    """Map raw register values (address -> u16) back to signed field values."""
    out: Dict[str, int] = {}
    for name, addr in addresses.items():
        out[name] = from_i16(raw[int(addr)])
    return out
