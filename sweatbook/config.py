"""Global configuration for SweatBook."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "fee_rate": "0.05",
    "fee_fixed_per_ticket": 0,
    "default_fee_policy": "PASS_THROUGH",
    "default_currency": "SGD",
    "refund_batch_size": 5,
    "minimum_refund_amount": 1,
    "waitlist_notification_hours": 24,
    "waitlist_limit": 0,
    "reminder_lead_hours": 24,
    "review_prompt_delay_hours": 3,
    "session_ttl_hours": 24 * 14,
    "enable_scheduler": True,
    "waitlist_sweep_minutes": 15,
    "outbox_dispatch_minutes": 5,
    "checkout_expiry_minutes": 30,
    "stripe_secret_key": "",
    "stripe_webhook_secret": "",
    "checkout_success_url": "http://localhost:8000/booking/success",
    "checkout_cancel_url": "http://localhost:8000/booking/cancelled",
    "seed_events": 4,
    "seed_bookings_per_event": 8,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "fee_rate": lambda value: Decimal(str(value)),
    "fee_fixed_per_ticket": int,
    "default_fee_policy": lambda value: str(value).strip().upper(),
    "default_currency": lambda value: str(value).strip().upper(),
    "refund_batch_size": int,
    "minimum_refund_amount": int,
    "waitlist_notification_hours": int,
    "waitlist_limit": int,
    "reminder_lead_hours": int,
    "review_prompt_delay_hours": int,
    "session_ttl_hours": int,
    "enable_scheduler": bool,
    "waitlist_sweep_minutes": int,
    "outbox_dispatch_minutes": int,
    "checkout_expiry_minutes": int,
    "stripe_secret_key": str,
    "stripe_webhook_secret": str,
    "checkout_success_url": str,
    "checkout_cancel_url": str,
    "seed_events": int,
    "seed_bookings_per_event": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    fee_rate: Decimal
    fee_fixed_per_ticket: int
    default_fee_policy: str
    default_currency: str
    refund_batch_size: int
    minimum_refund_amount: int
    waitlist_notification_hours: int
    waitlist_limit: int
    reminder_lead_hours: int
    review_prompt_delay_hours: int
    session_ttl_hours: int
    enable_scheduler: bool
    waitlist_sweep_minutes: int
    outbox_dispatch_minutes: int
    checkout_expiry_minutes: int
    stripe_secret_key: str
    stripe_webhook_secret: str
    checkout_success_url: str
    checkout_cancel_url: str
    seed_events: int
    seed_bookings_per_event: int
    root_token_key: str
    app_host: str
    app_port: int
    config_path: Path

    @property
    def waitlist_notification_window(self) -> timedelta:
        return timedelta(hours=self.waitlist_notification_hours)

    @property
    def reminder_lead(self) -> timedelta:
        return timedelta(hours=self.reminder_lead_hours)

    @property
    def review_prompt_delay(self) -> timedelta:
        return timedelta(hours=self.review_prompt_delay_hours)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.session_ttl_hours)


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


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"SWEATBOOK_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return _cast_value(key, DEFAULTS[key])


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
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "sweatbook.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("SWEATBOOK_BASE_DIR", Path.cwd()))
    env_config = os.getenv("SWEATBOOK_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "sweatbook.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("SWEATBOOK_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("SWEATBOOK_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        root_token_key="root_admin_token",
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings, *, include_secrets: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        value = getattr(settings, key)
        if isinstance(value, Decimal):
            value = str(value)
        if key in {"stripe_secret_key", "stripe_webhook_secret"} and not include_secrets:
            value = "***" if value else ""
        payload[key] = value
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# SweatBook configuration\n"]
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
            continue
        cast = _cast_value(key, value)
        merged[key] = str(cast) if isinstance(cast, Decimal) else cast
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
