from __future__ import annotations

import copy
import errno
import os
import threading
from dataclasses import fields
from pathlib import Path
from typing import IO, Any

import yaml

from slotguard.models import AppConfig, default_app_config

CONFIG_SECTIONS = tuple(item.name for item in fields(AppConfig))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_update(payload: dict[str, Any]) -> None:
    unknown = sorted(set(payload) - set(CONFIG_SECTIONS))
    if unknown:
        raise ValueError(f"unknown config section(s): {', '.join(unknown)}")
    for section, value in payload.items():
        if not isinstance(value, dict):
            raise ValueError(f"config section {section!r} must be a mapping")


def _dump(config_dict: dict[str, Any], handle: IO[str]) -> None:
    yaml.safe_dump(
        config_dict,
        handle,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._cached: AppConfig | None = None
        self._cached_stamp: tuple[int, int] | None = None
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _stamp(self) -> tuple[int, int]:
        stat = self.config_path.stat()
        return stat.st_mtime_ns, stat.st_size

    def _remember(self, config: AppConfig) -> None:
        self._cached = copy.deepcopy(config)
        self._cached_stamp = self._stamp()

    def load(self) -> AppConfig:
        with self._lock:
            if self._cached is not None and self._stamp() == self._cached_stamp:
                return copy.deepcopy(self._cached)
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{self.config_path} must contain a mapping, got {type(data).__name__}")
            config = AppConfig.from_dict(data)
            self._remember(config)
            return config

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                _dump(config_dict, handle)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted config files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()
            self._remember(config)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        _check_update(payload)
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config
