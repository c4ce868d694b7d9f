from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
import os
import sys
from typing import Any, Mapping
import yaml

from .environments import DEFAULT_BRIDGE
from .models import (
    HISTORY_LIMIT,
    MIN_REFRESH_INTERVAL,
    GuestRoot,
    Settings,
    new_id,
)


DEFAULT_CONFIG_PATHS = (
    Path(os.environ.get("XDG_CONFIG_HOME", "~/.config")).expanduser()
    / "gitdeck"
    / "config.yaml",
    Path(os.environ.get("XDG_CONFIG_HOME", "~/.config")).expanduser()
    / "gitdeck"
    / "config.yml",
)
DEFAULT_STATE_PATH = (
    Path(os.environ.get("XDG_STATE_HOME", "~/.local/state")).expanduser()
    / "gitdeck"
    / "state.json"
)
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _default_file_manager_command() -> str:
    if sys.platform == "win32":
        return "explorer.exe <path>"
    if sys.platform == "darwin":
        return "open <path>"
    return "xdg-open <path>"


def _default_terminal_command() -> str:
    if sys.platform == "win32":
        return "wt.exe -d <path>"
    if sys.platform == "darwin":
        return "open -a Terminal <path>"
    return "x-terminal-emulator --working-directory <path>"


def normalize_string_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        return [text] if text else []
    if isinstance(value, (list, tuple)):
        commands: list[str] = []
        for item in value:
            if item is None:
                continue
            text = str(item).strip()
            if text:
                commands.append(text)
        return commands
    return []


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "y", "on"}:
            return True
        if text in {"0", "false", "no", "n", "off"}:
            return False
    return default


def _coerce_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(text)
        except ValueError:
            return default
    return default


def _coerce_float(value: object, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def _coerce_str(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _positive(value: float, default: float) -> float:
    return value if value > 0 else default


@dataclass(frozen=True)
class AppConfig:
    state_path: str = str(DEFAULT_STATE_PATH)
    guest_bridge: str = DEFAULT_BRIDGE
    history_limit: int = HISTORY_LIMIT
    scan_max_depth: int = 8
    status_timeout: float = 30.0
    fetch_timeout: float = 45.0
    network_timeout: float = 90.0
    verify_timeout: float = 20.0
    file_manager_command: str = _default_file_manager_command()
    terminal_command: str = _default_terminal_command()
    log_level: str = "WARNING"


def _parse_config(data: object) -> AppConfig:
    if not isinstance(data, dict):
        return AppConfig()
    defaults = AppConfig()
    state_path = data.get("state_path")
    if isinstance(state_path, str) and state_path.strip():
        state_path = str(Path(state_path.strip()).expanduser())
    else:
        state_path = defaults.state_path
    history_limit = _coerce_int(data.get("history_limit"), defaults.history_limit)
    if history_limit < 1:
        history_limit = 1
    scan_max_depth = _coerce_int(data.get("scan_max_depth"), defaults.scan_max_depth)
    if scan_max_depth < 0:
        scan_max_depth = 0
    log_level = _coerce_str(data.get("log_level"), defaults.log_level).upper()
    if log_level not in LOG_LEVELS:
        log_level = defaults.log_level
    return AppConfig(
        state_path=state_path,
        guest_bridge=_coerce_str(data.get("guest_bridge"), defaults.guest_bridge),
        history_limit=history_limit,
        scan_max_depth=scan_max_depth,
        status_timeout=_positive(
            _coerce_float(data.get("status_timeout"), defaults.status_timeout),
            defaults.status_timeout,
        ),
        fetch_timeout=_positive(
            _coerce_float(data.get("fetch_timeout"), defaults.fetch_timeout),
            defaults.fetch_timeout,
        ),
        network_timeout=_positive(
            _coerce_float(data.get("network_timeout"), defaults.network_timeout),
            defaults.network_timeout,
        ),
        verify_timeout=_positive(
            _coerce_float(data.get("verify_timeout"), defaults.verify_timeout),
            defaults.verify_timeout,
        ),
        file_manager_command=_coerce_str(
            data.get("file_manager_command"), defaults.file_manager_command
        ),
        terminal_command=_coerce_str(data.get("terminal_command"), defaults.terminal_command),
        log_level=log_level,
    )


def load_config(config_path: str | None = None) -> AppConfig:
    paths = [Path(config_path).expanduser()] if config_path else DEFAULT_CONFIG_PATHS
    for path in paths:
        if not path.exists():
            continue
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError):
            return AppConfig()
        return _parse_config(data)
    return AppConfig()


def _parse_guest_roots(value: object) -> tuple[GuestRoot, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    roots: list[GuestRoot] = []
    for item in value:
        if isinstance(item, GuestRoot):
            roots.append(item)
            continue
        if not isinstance(item, dict):
            continue
        guest_id = _coerce_str(item.get("guest_id"), "")
        path = _coerce_str(item.get("path"), "")
        if not guest_id or not path:
            continue
        roots.append(GuestRoot(id=_coerce_str(item.get("id"), new_id("root")), guest_id=guest_id, path=path))
    return tuple(roots)


def _settings_values(data: Mapping[str, Any], base: Settings) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if "native_roots" in data:
        values["native_roots"] = tuple(normalize_string_list(data["native_roots"]))
    if "guest_roots" in data:
        values["guest_roots"] = _parse_guest_roots(data["guest_roots"])
    if "ignore_patterns" in data:
        values["ignore_patterns"] = tuple(normalize_string_list(data["ignore_patterns"]))
    if "ignored_repositories" in data:
        values["ignored_repositories"] = tuple(
            normalize_string_list(data["ignored_repositories"])
        )
    if "editor_command_native" in data:
        values["editor_command_native"] = _coerce_str(
            data["editor_command_native"], base.editor_command_native
        )
    if "editor_command_guest" in data:
        values["editor_command_guest"] = _coerce_str(
            data["editor_command_guest"], base.editor_command_guest
        )
    if "refresh_interval_seconds" in data:
        interval = _coerce_int(data["refresh_interval_seconds"], base.refresh_interval_seconds)
        values["refresh_interval_seconds"] = max(MIN_REFRESH_INTERVAL, interval)
    if "fetch_on_refresh" in data:
        values["fetch_on_refresh"] = _coerce_bool(data["fetch_on_refresh"], base.fetch_on_refresh)
    return values


def parse_settings(data: object) -> Settings:
    if not isinstance(data, dict):
        return Settings()
    defaults = Settings()
    return replace(defaults, **_settings_values(data, defaults))


def merge_settings(settings: Settings, changes: Mapping[str, Any]) -> Settings:
    return replace(settings, **_settings_values(changes, settings))
