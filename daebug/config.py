"""Settings loading from TOML with environment overrides."""
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_LOGGING = Path("config/logging.yaml")


@dataclass(frozen=True)
class Settings:
    root: Path = Path(".")
    host: str = "127.0.0.1"
    port: int = 8342
    job_timeout_seconds: float = 60.0
    job_retention_seconds: float = 300.0
    page_ttl_seconds: float = 3600.0
    sweep_interval_seconds: float = 5.0
    watch_debounce_ms: int = 50
    coalesce_window_seconds: float = 0.15
    watch: bool = True

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Settings":
        app = data.get("app", {})
        jobs = data.get("jobs", {})
        pages = data.get("pages", {})
        scheduler = data.get("scheduler", {})
        watcher = data.get("watcher", {})
        defaults = cls()
        return cls(
            root=Path(app.get("root", defaults.root)),
            host=str(app.get("host", defaults.host)),
            port=int(app.get("port", defaults.port)),
            job_timeout_seconds=float(jobs.get("timeout_seconds", defaults.job_timeout_seconds)),
            job_retention_seconds=float(jobs.get("retention_seconds", defaults.job_retention_seconds)),
            page_ttl_seconds=float(pages.get("ttl_seconds", defaults.page_ttl_seconds)),
            sweep_interval_seconds=float(scheduler.get("sweep_interval_seconds", defaults.sweep_interval_seconds)),
            watch_debounce_ms=int(watcher.get("debounce_ms", defaults.watch_debounce_ms)),
            coalesce_window_seconds=float(watcher.get("coalesce_window_seconds", defaults.coalesce_window_seconds)),
            watch=bool(watcher.get("enabled", defaults.watch)),
        )


def load_settings(path: Optional[Path] = None) -> Settings:
    """Read the TOML configuration file, then apply ``DAEBUG_*`` overrides."""
    data: Dict[str, Any] = {}
    path = path or DEFAULT_SETTINGS
    if path.exists():
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    app = dict(data.get("app", {}))
    if os.getenv("DAEBUG_ROOT"):
        app["root"] = os.environ["DAEBUG_ROOT"]
    if os.getenv("DAEBUG_PORT"):
        app["port"] = int(os.environ["DAEBUG_PORT"])
    data["app"] = app
    return Settings.from_mapping(data)
