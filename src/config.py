"""
config.py

Runtime settings and logging setup for the Print Shop Order Tracking System.

Settings are resolved in three layers, later layers winning:

  1. Defaults declared on the Settings dataclass
  2. A YAML file named by PRINTSHOP_CONFIG_FILE (optional)
  3. PRINTSHOP_* environment variables, e.g. PRINTSHOP_LOG_LEVEL=DEBUG

Usage:
    from config import load_settings, configure_logging

    settings = load_settings()
    configure_logging(settings.log_level)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger("printshop.config")

ENV_PREFIX = "PRINTSHOP_"
CONFIG_FILE_ENV = "PRINTSHOP_CONFIG_FILE"


@dataclass
class Settings:
    # Empty string selects the in-memory store
    database_url: str = ""
    log_level: str = "INFO"
    overdue_scan_interval_seconds: int = 3600
    overdue_business_days: int = 2
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    # Phone of an ADMIN user created at start-up if missing; empty = none
    admin_phone: str = ""
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def uses_database(self) -> bool:
        return bool(self.database_url)


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a raw YAML / environment value to the type of the default."""
    if isinstance(default, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Setting '{name}' must be an integer, got {raw!r}") from exc
    if isinstance(default, list):
        if isinstance(raw, str):
            return [part.strip() for part in raw.split(",") if part.strip()]
        return list(raw)
    return str(raw)


def _load_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    logger.info("Loaded settings from %s", path)
    return data


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build Settings from defaults, the YAML file and the environment.

    Unknown keys in the YAML file are ignored with a warning.
    """
    env = os.environ if environ is None else environ
    path = path or env.get(CONFIG_FILE_ENV)

    settings = Settings()
    known = {f.name for f in fields(Settings)}

    overrides: Dict[str, Any] = {}
    if path:
        for key, value in _load_file(Path(path)).items():
            if key in known:
                overrides[key] = value
            else:
                logger.warning("Ignoring unknown setting '%s' in %s", key, path)

    for name in known:
        env_key = ENV_PREFIX + name.upper()
        if env_key in env:
            overrides[name] = env[env_key]

    for name, raw in overrides.items():
        setattr(settings, name, _coerce(name, raw, getattr(settings, name)))

    if settings.overdue_scan_interval_seconds <= 0:
        raise ValueError("overdue_scan_interval_seconds must be positive")
    return settings


# ═══════════════════════════════════════════════════════════════════
# Logging
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "printshop"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", stream: Any = None) -> logging.Logger:
    """
    Install one JSON stream handler on the `printshop` logger.

    Safe to call repeatedly; existing handlers are replaced.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger("printshop")
    root.setLevel(numeric)
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter())
    handler.setLevel(numeric)
    root.addHandler(handler)
    root.propagate = False
    return root
