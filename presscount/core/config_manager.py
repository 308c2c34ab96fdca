# presscount/core/config_manager.py
# ConfigManager: loads config/settings.yaml + validates with config/schema.json
# Safe defaults + merge + hard guards on thresholds and intervals

from __future__ import annotations

import os
import copy
import json
import logging
from typing import Any, Dict, Optional

import yaml
import jsonschema

# -----------------------------
# Default Config
# -----------------------------

DEFAULT_CONFIG: Dict[str, Any] = {
    "app": {
        "name": "presscount",
        "version": "1.0.0",
    },
    "poll": {
        "interval_s": 1.0,
        "prune_interval_ticks": 1000,
        "stats_every_ticks": 100,
    },
    "cycle": {
        "start_threshold": 10,
        "end_threshold": 0,
        "good_value_min": 30,
        "good_value_max": 45,
        "cycle_timeout_s": 30,
        "max_buffer_size": 100,
    },
    "modbus": {
        "port": 503,
        "unit_id": 1,
        "timeout_s": 2.0,
        "retries": 0,
    },
    "storage": {
        "sqlite_path": "data/presscount.db",
        "persist_retries": 2,
    },
    "logging": {
        "dir": "logs",
        "level": "INFO",
    },
    "devices": [],
}

PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merges override into base (override wins)."""
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _load_yaml(path: str) -> Dict[str, Any]:
    data = yaml.safe_load(_read_text(path)) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yaml must be a mapping (dict) at root.")
    return data


def _load_json(path: str) -> Dict[str, Any]:
    data = json.loads(_read_text(path) or "{}")
    if not isinstance(data, dict):
        raise ValueError("schema.json must be a JSON object.")
    return data


class ConfigManager:
    """
    Loads configuration from presscount/config/settings.yaml and validates it
    with presscount/config/schema.json.
    Env overrides:
      - PRESSCOUNT_CONFIG_PATH: full path to settings.yaml
      - PRESSCOUNT_SCHEMA_PATH: full path to schema.json
    """

    def __init__(self, settings_path: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("presscount.config")

        self.config_dir = os.path.join(PACKAGE_DIR, "config")
        self.default_settings_path = os.path.join(self.config_dir, "settings.yaml")
        self.default_schema_path = os.path.join(self.config_dir, "schema.json")
        self.settings_path = settings_path or os.environ.get("PRESSCOUNT_CONFIG_PATH", self.default_settings_path)
        self.schema_path = os.environ.get("PRESSCOUNT_SCHEMA_PATH", self.default_schema_path)

        self._config_dict: Optional[Dict[str, Any]] = None

    def load(self) -> Dict[str, Any]:
        """
        Returns merged config dict (DEFAULT_CONFIG + yaml overrides).
        A broken settings file falls back to defaults; a config that fails
        schema validation raises.
        """
        cfg = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.exists(self.settings_path):
            try:
                cfg = _deep_merge(cfg, _load_yaml(self.settings_path))
                self.logger.info("Loaded settings.yaml: %s", self.settings_path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                self.logger.error("Failed to read settings.yaml, using defaults. err=%s", e)
        else:
            self.logger.warning("settings.yaml not found at %s (using defaults).", self.settings_path)

        self._basic_validate(cfg)
        self._validate_schema(cfg)
        self._apply_hard_guards(cfg)

        self._config_dict = cfg
        return cfg

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a config value using dot-notation key (e.g., "cycle.start_threshold").
        Returns default if key not found.
        """
        if self._config_dict is None:
            self._config_dict = self.load()

        value: Any = self._config_dict
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def _validate_schema(self, cfg: Dict[str, Any]) -> None:
        if not os.path.exists(self.schema_path):
            self.logger.warning("schema.json not found at %s (basic validation only).", self.schema_path)
            return
        schema = _load_json(self.schema_path)
        jsonschema.validate(instance=cfg, schema=schema)
        self.logger.debug("Config validated via jsonschema: %s", self.schema_path)

    def _basic_validate(self, cfg: Dict[str, Any]) -> None:
        """
        Numeric normalization before schema validation (YAML may carry
        strings like "503").
        """
        int_keys = {
            "poll": ("prune_interval_ticks", "stats_every_ticks"),
            "cycle": ("start_threshold", "end_threshold", "good_value_min", "good_value_max", "max_buffer_size"),
            "modbus": ("port", "unit_id", "retries"),
            "storage": ("persist_retries",),
        }
        float_keys = {
            "poll": ("interval_s",),
            "cycle": ("cycle_timeout_s",),
            "modbus": ("timeout_s",),
        }
        for conv, table in ((int, int_keys), (float, float_keys)):
            for section, keys in table.items():
                sec = cfg.get(section)
                if not isinstance(sec, dict):
                    continue
                for k in keys:
                    if k not in sec:
                        continue
                    try:
                        sec[k] = conv(sec[k])
                    except (TypeError, ValueError):
                        fallback = DEFAULT_CONFIG[section][k]
                        self.logger.warning("Invalid %s.%s=%r; forcing %s", section, k, sec[k], fallback)
                        sec[k] = fallback

        if cfg.get("devices") is None:
            cfg["devices"] = []

    def _apply_hard_guards(self, cfg: Dict[str, Any]) -> None:
        """
        Absolute guards so the detector can never be configured into a state
        where a cycle cannot start, end or be validated.
        """
        cyc = cfg["cycle"]
        if cyc["end_threshold"] >= cyc["start_threshold"]:
            self.logger.warning(
                "end_threshold=%d >= start_threshold=%d; forcing 0/10",
                cyc["end_threshold"], cyc["start_threshold"],
            )
            cyc["end_threshold"] = 0
            cyc["start_threshold"] = 10

        if cyc["good_value_min"] > cyc["good_value_max"]:
            self.logger.warning("good_value_min > good_value_max; forcing 30..45")
            cyc["good_value_min"] = 30
            cyc["good_value_max"] = 45

        if cyc["max_buffer_size"] < 2:
            self.logger.warning("max_buffer_size=%d too small; forcing 100", cyc["max_buffer_size"])
            cyc["max_buffer_size"] = 100

        if cyc["cycle_timeout_s"] <= 0:
            self.logger.warning("cycle_timeout_s=%s invalid; forcing 30", cyc["cycle_timeout_s"])
            cyc["cycle_timeout_s"] = 30.0

        poll = cfg["poll"]
        if poll["interval_s"] <= 0:
            self.logger.warning("poll.interval_s=%s invalid; forcing 1.0", poll["interval_s"])
            poll["interval_s"] = 1.0

        mb = cfg["modbus"]
        if mb["port"] < 1 or mb["port"] > 65535:
            self.logger.warning("Invalid modbus port=%d; forcing 503", mb["port"])
            mb["port"] = 503
        if mb["timeout_s"] <= 0:
            mb["timeout_s"] = 2.0
