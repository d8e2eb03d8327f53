from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import sys


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class EngineSettings:
    currency_places: int = 2
    due_soon_days: int = 3
    lock_timeout_seconds: float = 5.0
    receipt_prefix: str = "RCPT"


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "RetailSettlement") -> AppPaths:
    override = os.environ.get("RSM_HOME", "").strip()
    if override:
        base = Path(override)
    elif sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "settlement.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def load_settings(environ: dict[str, str] | None = None) -> EngineSettings:
    env = os.environ if environ is None else environ
    defaults = EngineSettings()
    places = int(env.get("RSM_CURRENCY_PLACES", defaults.currency_places))
    if places < 0:
        raise ValueError("RSM_CURRENCY_PLACES must be >= 0")
    return EngineSettings(
        currency_places=places,
        due_soon_days=int(env.get("RSM_DUE_SOON_DAYS", defaults.due_soon_days)),
        lock_timeout_seconds=float(env.get("RSM_LOCK_TIMEOUT_SECONDS", defaults.lock_timeout_seconds)),
        receipt_prefix=env.get("RSM_RECEIPT_PREFIX", defaults.receipt_prefix).strip() or defaults.receipt_prefix,
    )
