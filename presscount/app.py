# presscount/app.py
# presscount - Main Entrypoint (unattended press cycle poller, safe shutdown)

from __future__ import annotations

import os
import sys
import signal
import logging
import sqlite3
import argparse
import traceback
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import jsonschema

from presscount.core.config_manager import ConfigManager
from presscount.core.errors import ConfigurationError, PressCountError
from presscount.core.models import Device
from presscount.core.scheduler import PollScheduler
from presscount.protocols.register_reader import RegisterReader
from presscount.storage.sqlite_store import SqliteStore

# -----------------------------
# Helpers
# -----------------------------

def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _setup_logging(log_dir: str, level: str = "INFO") -> logging.Logger:
    _ensure_dir(log_dir)

    logger = logging.getLogger("presscount")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    fmt = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Console
    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    # File
    fh_path = os.path.join(log_dir, "presscount.log")
    fh = logging.FileHandler(fh_path, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    logger.info("Logging initialized. log_file=%s", fh_path)
    return logger


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="presscount",
        description="Poll press counter registers over Modbus TCP and record validated press cycles",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="per-tick, per-device and per-cycle logging")
    p.add_argument("-d", "--debug", action="store_true", help="state transition tracing")
    p.add_argument("-c", "--config", default=None, help="path to settings.yaml")
    return p.parse_args(argv)

# -----------------------------
# App Context
# -----------------------------

@dataclass
class AppContext:
    config: Dict[str, Any]
    logger: logging.Logger
    store: SqliteStore
    scheduler: PollScheduler


def sync_devices(store: SqliteStore, entries: List[Dict[str, Any]], logger: logging.Logger) -> int:
    """Upsert devices listed in settings.yaml into the device table."""
    n = 0
    for entry in entries or []:
        try:
            store.upsert_device(Device.from_dict(entry))
            n += 1
        except ConfigurationError as e:
            logger.error("Ignoring device entry %r from settings: %s", entry.get("name"), e)
    if n:
        logger.info("Synced %d device(s) from settings.", n)
    return n


def build_context(args: argparse.Namespace) -> AppContext:
    cfg = ConfigManager(settings_path=args.config).load()

    level = os.environ.get("PRESSCOUNT_LOG_LEVEL", str(cfg["logging"].get("level", "INFO")))
    if args.debug:
        level = "DEBUG"
    logger = _setup_logging(log_dir=str(cfg["logging"].get("dir", "logs")), level=level)

    store = SqliteStore(cfg["storage"]["sqlite_path"], logger=logging.getLogger("presscount.sqlite"))
    store.init_db()
    sync_devices(store, cfg.get("devices", []), logger)

    reader = RegisterReader(cfg["modbus"], logger=logging.getLogger("presscount.reader"))
    scheduler = PollScheduler(
        cfg,
        store,
        reader,
        load_devices=store.list_active_devices,
        verbose=args.verbose,
        debug=args.debug,
    )

    return AppContext(config=cfg, logger=logger, store=store, scheduler=scheduler)

# -----------------------------
# Main
# -----------------------------

def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        ctx = build_context(args)
    except jsonschema.ValidationError as e:
        where = "/".join(map(str, e.absolute_path)) or "<root>"
        logging.getLogger("presscount").error("Invalid settings at %s: %s", where, e.message)
        return 1
    except (PressCountError, OSError, sqlite3.Error) as e:
        logging.getLogger("presscount").error("Startup failed: %s", e)
        return 1
    log = ctx.logger

    def _handle_signal(sig, frame):
        log.info("Signal %s received; stopping after current tick.", sig)
        ctx.scheduler.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        log.info("Starting %s (%s)", ctx.config["app"]["name"], ctx.config["app"]["version"])
        ctx.scheduler.initialize()
    except ConfigurationError as e:
        log.error("%s", e)
        return 1

    try:
        stats = ctx.scheduler.run()
        log.info(
            "Stopped after %d ticks: %d records saved, %d errors",
            stats.ticks, stats.total_saved, stats.total_errors,
        )
        return 0
    except Exception:
        log.error("Fatal error:\n%s", traceback.format_exc())
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
