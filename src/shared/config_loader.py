"""YAML configuration loading and runtime settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.contracts.alert import DEFAULT_CHANNELS
from src.shared.errors import ConfigError

log = logging.getLogger(__name__)

_MIN_BUFFER = 50
_MAX_BUFFER = 100


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Read a YAML file and return its content as a dict.

    Args:
        path: Path to the file.

    Returns:
        File content as a dictionary (empty dict for an empty file).

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the file is not valid YAML or not a mapping.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigError(f"{p.name}: invalid YAML: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{p.name}: top level must be a mapping")
    log.debug("Loaded config %s (%d top-level keys)", p.name, len(data or {}))
    return data or {}


@dataclass(slots=True)
class Settings:
    """Runtime knobs.  Defaults suit a single store's event volume."""

    store_timeout_sec: float = 5.0
    push_timeout_sec: float = 10.0
    retries: int = 1
    retry_backoff_sec: float = 0.2
    buffer_size: int = 100
    subscriber_backlog: int = 100
    evaluator_workers: int = 4
    push_workers: int = 2
    default_channels: tuple[str, ...] = DEFAULT_CHANNELS
    store_owners: dict[str, list[str]] = field(default_factory=dict)
    push_endpoint: str = ""
    push_api_key: str = ""

    def owners_of(self, store_id: str) -> list[str]:
        return list(self.store_owners.get(store_id, []))


def load_settings(config_dir: str | Path = "config") -> Settings:
    """Build Settings from ``<config_dir>/settings.yaml``.

    A missing file yields the defaults; unknown keys are rejected so that
    typos do not silently fall back to defaults.
    """
    path = Path(config_dir) / "settings.yaml"
    if not path.exists():
        log.info("No settings.yaml in %s - using defaults", config_dir)
        return Settings()

    raw = load_yaml(path)
    timeouts = raw.get("timeouts", {}) or {}
    realtime = raw.get("realtime", {}) or {}
    push = raw.get("push", {}) or {}
    alerts = raw.get("alerts", {}) or {}

    known_sections = {"timeouts", "realtime", "push", "alerts", "stores", "workers"}
    unknown = set(raw) - known_sections
    if unknown:
        raise ConfigError(f"settings.yaml: unknown sections {sorted(unknown)}")

    buffer_size = int(realtime.get("buffer_size", 100))
    if not _MIN_BUFFER <= buffer_size <= _MAX_BUFFER:
        raise ConfigError(
            f"realtime.buffer_size must be within {_MIN_BUFFER}..{_MAX_BUFFER}, got {buffer_size}"
        )

    stores = raw.get("stores", {}) or {}
    owners = {str(sid): [str(u) for u in (cfg or {}).get("owners", [])] for sid, cfg in stores.items()}

    workers = raw.get("workers", {}) or {}
    settings = Settings(
        store_timeout_sec=float(timeouts.get("store_sec", 5.0)),
        push_timeout_sec=float(timeouts.get("push_sec", 10.0)),
        retries=int(timeouts.get("retries", 1)),
        retry_backoff_sec=float(timeouts.get("backoff_sec", 0.2)),
        buffer_size=buffer_size,
        subscriber_backlog=int(realtime.get("subscriber_backlog", 100)),
        evaluator_workers=int(workers.get("evaluator", 4)),
        push_workers=int(workers.get("push", 2)),
        default_channels=tuple(alerts.get("default_channels", DEFAULT_CHANNELS)),
        store_owners=owners,
        push_endpoint=str(push.get("endpoint", "")),
        push_api_key=str(push.get("api_key", "")),
    )
    log.info(
        "Loaded settings from %s (stores=%d, store_timeout=%.1fs, push_timeout=%.1fs)",
        path, len(owners), settings.store_timeout_sec, settings.push_timeout_sec,
    )
    return settings
