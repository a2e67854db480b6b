"""Global configuration for Turnout."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "near_full_ratio": 0.9,
    "capacity_conflict_retries": 1,
    "db_timeout_seconds": 15,
    "watch_poll_seconds": 2.0,
    "reconcile_interval_minutes": 15,
    "enable_scheduler": True,
    "seed_events": 5,
    "seed_attendees_per_event": 12,
    "seed_waitlist_percent": 50,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "near_full_ratio": float,
    "capacity_conflict_retries": int,
    "db_timeout_seconds": int,
    "watch_poll_seconds": float,
    "reconcile_interval_minutes": int,
    "enable_scheduler": bool,
    "seed_events": int,
    "seed_attendees_per_event": int,
    "seed_waitlist_percent": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    near_full_ratio: float
    capacity_conflict_retries: int
    db_timeout_seconds: int
    watch_poll_seconds: float
    reconcile_interval_minutes: int
    enable_scheduler: bool
    seed_events: int
    seed_attendees_per_event: int
    seed_waitlist_percent: int
    app_host: str
    app_port: int
    config_path: Path

    @property
    def reconcile_interval(self) -> timedelta:
        return timedelta(minutes=self.reconcile_interval_minutes)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _validate(key: str, value: Any) -> Any:
    if key == "near_full_ratio" and not 0 < value <= 1:
        raise ValueError("near_full_ratio must be in (0, 1]")
    if key == "capacity_conflict_retries" and value < 0:
        raise ValueError("capacity_conflict_retries must be >= 0")
    if key == "seed_waitlist_percent" and not 0 <= value <= 100:
        raise ValueError("seed_waitlist_percent must be between 0 and 100")
    return value


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"TURNOUT_{key.upper()}"
    if env_key in os.environ:
        return _validate(key, _cast_value(key, os.environ[env_key]))
    if key in toml_config:
        return _validate(key, _cast_value(key, toml_config[key]))
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = Path(database_path) if database_path else resolved_data / "turnout.db"
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("TURNOUT_BASE_DIR", Path.cwd()))
    env_config = os.getenv("TURNOUT_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "turnout.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("TURNOUT_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("TURNOUT_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    data: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        data[key] = getattr(settings, key)
    return data


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# Turnout configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            raise KeyError(f"Unknown configuration key: {key}")
        merged[key] = _validate(key, _cast_value(key, value))
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
