# presscount/storage/sqlite_store.py
# SQLite persistence layer for presscount
# Stores:
#   - dwp_devices (device configuration, written by external config management)
#   - dwp_counts  (one immutable row per validated press cycle)

from __future__ import annotations

import os
import json
import time
import sqlite3
import threading
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from presscount.core.errors import ConfigurationError, PersistenceError
from presscount.core.models import Device


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CountRecord:
    machine: int
    line: str
    count: int
    pv: List[List[int]]
    position: str
    duration: int = 0
    incremental: int = 1
    std_error: Optional[List[int]] = None
    id: Optional[int] = None
    created_at_ms: int = 0


class SqliteStore:
    def __init__(self, db_path: str, logger: Optional[logging.Logger] = None):
        self.db_path = db_path
        self.logger = logger or logging.getLogger("presscount.sqlite")
        self._lock = threading.RLock()

        # Ensure parent directory exists
        parent = os.path.dirname(os.path.abspath(db_path))
        if parent:
            os.makedirs(parent, exist_ok=True)

    # -----------------------------
    # Internal helpers
    # -----------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        # Basic pragmas for reliability/performance
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def init_db(self) -> None:
        """Create tables if not exists."""
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS dwp_devices (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL UNIQUE,
                        ip_address TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        config_json TEXT NOT NULL DEFAULT '[]',
                        updated_at_ms INTEGER NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS dwp_counts (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        mechine INTEGER NOT NULL,
                        line TEXT NOT NULL,
                        count INTEGER NOT NULL,
                        pv_json TEXT NOT NULL,
                        position TEXT NOT NULL CHECK (position IN ('L', 'R')),
                        duration INTEGER NOT NULL DEFAULT 0,
                        incremental INTEGER NOT NULL DEFAULT 1,
                        std_error_json TEXT NOT NULL DEFAULT '[0,0]',
                        created_at_ms INTEGER NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_dwp_counts_line_id
                        ON dwp_counts(line, id);
                    """
                )
                self.logger.info("SQLite DB initialized: %s", self.db_path)
            finally:
                conn.close()

    # -----------------------------
    # Devices
    # -----------------------------

    def upsert_device(self, device: Device) -> int:
        t = now_ms()
        config_json = json.dumps(device.config_list(), ensure_ascii=False)
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO dwp_devices(name, ip_address, is_active, config_json, updated_at_ms)
                    VALUES(?,?,?,?,?)
                    ON CONFLICT(name) DO UPDATE SET
                        ip_address=excluded.ip_address,
                        is_active=excluded.is_active,
                        config_json=excluded.config_json,
                        updated_at_ms=excluded.updated_at_ms;
                    """,
                    (device.name, device.ip_address, 1 if device.is_active else 0, config_json, t),
                )
                row = conn.execute("SELECT id FROM dwp_devices WHERE name=?;", (device.name,)).fetchone()
                return int(row["id"])
            finally:
                conn.close()

    def set_device_active(self, name: str, active: bool) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    "UPDATE dwp_devices SET is_active=?, updated_at_ms=? WHERE name=?;",
                    (1 if active else 0, now_ms(), name),
                )
            finally:
                conn.close()

    def list_devices(self, active_only: bool = True) -> List[Device]:
        sql = "SELECT id, name, ip_address, is_active, config_json FROM dwp_devices"
        if active_only:
            sql += " WHERE is_active=1"
        sql += " ORDER BY id ASC;"

        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(sql).fetchall()
            finally:
                conn.close()

        out: List[Device] = []
        for r in rows:
            d = dict(r)
            try:
                d["config"] = json.loads(d.pop("config_json") or "[]")
                out.append(Device.from_dict(d))
            except (ValueError, ConfigurationError) as e:
                # A broken row must not take the other devices down with it
                self.logger.error("Skipping device %s: bad config (%s)", d.get("name"), e)
        return out

    def list_active_devices(self) -> List[Device]:
        return self.list_devices(active_only=True)

    # -----------------------------
    # Count records
    # -----------------------------

    def insert_count(self, rec: CountRecord) -> int:
        t = rec.created_at_ms or now_ms()
        try:
            with self._lock:
                conn = self._connect()
                try:
                    cur = conn.execute(
                        """
                        INSERT INTO dwp_counts(mechine, line, count, pv_json, position,
                                               duration, incremental, std_error_json, created_at_ms)
                        VALUES(?,?,?,?,?,?,?,?,?);
                        """,
                        (
                            int(rec.machine),
                            rec.line,
                            int(rec.count),
                            json.dumps(rec.pv),
                            rec.position,
                            int(rec.duration),
                            int(rec.incremental),
                            json.dumps(rec.std_error if rec.std_error is not None else [0, 0]),
                            t,
                        ),
                    )
                    return int(cur.lastrowid)
                finally:
                    conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"insert count for line {rec.line} failed: {e}") from e

    def latest_for_line(self, line: str) -> Optional[CountRecord]:
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM dwp_counts WHERE line=? ORDER BY id DESC LIMIT 1;",
                    (line,),
                ).fetchone()
                return _row_to_record(row) if row else None
            finally:
                conn.close()

    def list_counts(self, line: Optional[str] = None, limit: int = 200) -> List[CountRecord]:
        with self._lock:
            conn = self._connect()
            try:
                if line is None:
                    rows = conn.execute(
                        "SELECT * FROM dwp_counts ORDER BY id DESC LIMIT ?;", (int(limit),)
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM dwp_counts WHERE line=? ORDER BY id DESC LIMIT ?;",
                        (line, int(limit)),
                    ).fetchall()
                return [_row_to_record(r) for r in rows]
            finally:
                conn.close()


def _row_to_record(row: sqlite3.Row) -> CountRecord:
    d: Dict[str, Any] = dict(row)
    return CountRecord(
        id=int(d["id"]),
        machine=int(d["mechine"]),
        line=d["line"],
        count=int(d["count"]),
        pv=json.loads(d["pv_json"]),
        position=d["position"],
        duration=int(d["duration"]),
        incremental=int(d["incremental"]),
        std_error=json.loads(d["std_error_json"]),
        created_at_ms=int(d["created_at_ms"]),
    )
