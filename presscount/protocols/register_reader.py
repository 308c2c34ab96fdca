# presscount/protocols/register_reader.py
# Modbus TCP register reader (Pymodbus 3.11 compliant)
# One short-lived connection per call; no connection state kept between calls.

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ModbusException

from presscount.core.errors import TransportError
from presscount.protocols.register_map import (
    DEFAULT_PORT, DEFAULT_UNIT_ID, DEFAULT_TIMEOUT_S,
    plan_blocks, extract_fields,
)


class RegisterReader:
    """
    Config example:
      modbus:
        port: 503
        unit_id: 1
        timeout_s: 2.0
        retries: 0
    """

    def __init__(self, cfg: Optional[Dict[str, Any]] = None, logger: Optional[logging.Logger] = None):
        self.cfg = cfg or {}
        self.logger = logger or logging.getLogger("presscount.reader")

        self.port = int(self.cfg.get("port", DEFAULT_PORT))
        self.unit_id = int(self.cfg.get("unit_id", DEFAULT_UNIT_ID))
        self.timeout_s = float(self.cfg.get("timeout_s", DEFAULT_TIMEOUT_S))
        self.retries = int(self.cfg.get("retries", 0))

    def read(
        self,
        host: str,
        addresses: Dict[str, int],
        port: Optional[int] = None,
        unit_id: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Read every named input register from host in one request (or the fewest
        contiguous requests the protocol allows) and return field -> int16.
        Raises TransportError on any failure.
        """
        port = self.port if port is None else int(port)
        unit_id = self.unit_id if unit_id is None else int(unit_id)
        blocks = plan_blocks(addresses)
        if not blocks:
            return {}

        client = ModbusTcpClient(host, port=port, timeout=self.timeout_s, retries=self.retries)
        try:
            if not client.connect():
                raise TransportError(f"connect to {host}:{port} failed", host=host, port=port)

            raw: Dict[int, int] = {}
            for block in blocks:
                rr = client.read_input_registers(block.start, count=block.count, device_id=unit_id)
                if rr.isError():
                    raise TransportError(f"{host}:{port} error response: {rr}", host=host, port=port)
                regs = list(getattr(rr, "registers", None) or [])
                if len(regs) < block.count:
                    raise TransportError(
                        f"{host}:{port} short response at {block.start}: "
                        f"expected {block.count} registers, got {len(regs)}",
                        host=host, port=port,
                    )
                for i, v in enumerate(regs[:block.count]):
                    raw[block.start + i] = v

            values = extract_fields(addresses, raw)
            self.logger.debug("read %s:%d unit=%d -> %s", host, port, unit_id, values)
            return values

        except TransportError:
            raise
        except (ModbusException, OSError) as e:
            raise TransportError(f"{host}:{port} read failed: {e}", host=host, port=port) from e
        finally:
            client.close()
