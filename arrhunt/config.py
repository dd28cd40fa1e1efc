import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

HUNT_MODES = ("missing", "upgrade")


@dataclass(frozen=True)
class AppConfig:
    db_path: str
    request_timeout_seconds: int
    verify_ssl: bool
    log_level: str
    # Fixed pause between two search commands sent to the same instance.
    search_delay_seconds: float = 5.0
    # Settle time before looking for grabs in the instance history.
    grab_check_delay_seconds: float = 10.0
    history_retention_days: int = 90
    scheduler_tick_seconds: int = 60


@dataclass(frozen=True)
class ArrConfig:
    enabled: bool
    url: str
    api_key: str


@dataclass(frozen=True)
class HuntConfig:
    id: str
    hunt_missing_enabled: bool = True
    hunt_upgrades_enabled: bool = False
    missing_batch_size: int = 5
    upgrade_batch_size: int = 2
    missing_interval_minutes: int = 60
    upgrade_interval_minutes: int = 120
    hourly_api_cap: int = 100
    # Pending downloads at or above this count skip the hunt. 0 disables the check.
    queue_threshold: int = 25
    # Cooldown before an item may be searched again.
    research_after_days: int = 7
    prefer_season_packs: bool = False
    filter_logic: str = "AND"
    monitored_only: bool = True
    # Raw filter values: lists, or JSON-encoded lists as stored by older configs.
    include_tags: Any = field(default_factory=list)
    exclude_tags: Any = field(default_factory=list)
    include_quality_profiles: Any = field(default_factory=list)
    exclude_quality_profiles: Any = field(default_factory=list)
    include_statuses: Any = field(default_factory=list)
    year_min: int | None = None
    year_max: int | None = None
    age_threshold_days: int | None = None

    def batch_size(self, mode: str) -> int:
        return self.missing_batch_size if mode == "missing" else self.upgrade_batch_size

    def interval_minutes(self, mode: str) -> int:
        return self.missing_interval_minutes if mode == "missing" else self.upgrade_interval_minutes

    def mode_enabled(self, mode: str) -> bool:
        return self.hunt_missing_enabled if mode == "missing" else self.hunt_upgrades_enabled


@dataclass(frozen=True)
class ServiceInstance:
    instance_id: int
    instance_name: str
    # Provider family: sonarr, radarr, lidarr or readarr.
    service: str
    enabled: bool
    arr: ArrConfig
    hunt: HuntConfig


@dataclass(frozen=True)
class RuntimeConfig:
    app: AppConfig
    instances: list[ServiceInstance]

    def find_hunt(self, config_id: str) -> ServiceInstance | None:
        for inst in self.instances:
            if inst.hunt.id == config_id:
                return inst
        return None


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):

        def repl(match: re.Match[str]) -> str:
            env_name = match.group(1)
            return os.getenv(env_name, "")

        return ENV_PATTERN.sub(repl, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _require_str(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key, default)
    if value is None:
        return default
    return str(value).strip()


def _clamped_int(data: dict[str, Any], key: str, default: int, low: int, high: int | None = None) -> int:
    value = data.get(key)
    try:
        number = int(value) if value is not None else default
    except (TypeError, ValueError):
        number = default
    number = max(low, number)
    if high is not None:
        number = min(high, number)
    return number


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _load_dotenv_if_present(config_path: Path) -> None:
    # Prefer .env beside config file, then current working directory.
    candidates = [
        config_path.parent / ".env",
        Path.cwd() / ".env",
    ]
    for dotenv_path in candidates:
        if not dotenv_path.exists():
            continue
        try:
            for raw in dotenv_path.read_text(encoding="utf-8").splitlines():
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if key and key not in os.environ:
                    os.environ[key] = value
            return
        except OSError:
            return


def _default_raw_config() -> dict[str, Any]:
    return {
        "app": {
            "db_path": "./state/arrhunt.db",
            "request_timeout_seconds": 30,
            "verify_ssl": True,
            "log_level": "INFO",
            "search_delay_seconds": 5,
            "grab_check_delay_seconds": 10,
            "history_retention_days": 90,
        },
        "instances": [
            {
                "instance_id": 1,
                "instance_name": "Sonarr Main",
                "service": "sonarr",
                "enabled": True,
                "url": "",
                "api_key": "",
                "hunt": {
                    "hunt_missing_enabled": True,
                    "hunt_upgrades_enabled": False,
                    "missing_batch_size": 5,
                    "upgrade_batch_size": 2,
                    "missing_interval_minutes": 60,
                    "upgrade_interval_minutes": 120,
                    "hourly_api_cap": 100,
                    "queue_threshold": 25,
                    "research_after_days": 7,
                    "prefer_season_packs": False,
                    "filter_logic": "AND",
                    "monitored_only": True,
                },
            },
            {
                "instance_id": 1,
                "instance_name": "Radarr Main",
                "service": "radarr",
                "enabled": True,
                "url": "",
                "api_key": "",
                "hunt": {
                    "hunt_missing_enabled": True,
                    "hunt_upgrades_enabled": False,
                    "missing_batch_size": 5,
                    "upgrade_batch_size": 2,
                    "queue_threshold": 25,
                    "research_after_days": 7,
                },
            },
        ],
    }


def _ensure_config_exists(config_path: Path) -> None:
    if config_path.exists():
        return
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError as exc:
        raise PermissionError(
            f"Cannot create config directory {str(config_path.parent)!r}. "
            "Ensure the directory is writable by the current user."
        ) from exc

    try:
        config_path.write_text(yaml.safe_dump(_default_raw_config(), sort_keys=False), encoding="utf-8")
    except PermissionError as exc:
        raise PermissionError(
            f"Cannot write config file {str(config_path)!r}. "
            "Ensure the directory is writable by the current user."
        ) from exc


def parse_hunt_config(raw: dict[str, Any], default_id: str) -> HuntConfig:
    logic = _require_str(raw, "filter_logic", "AND").upper()
    return HuntConfig(
        id=_require_str(raw, "id", default_id) or default_id,
        hunt_missing_enabled=bool(raw.get("hunt_missing_enabled", True)),
        hunt_upgrades_enabled=bool(raw.get("hunt_upgrades_enabled", False)),
        missing_batch_size=_clamped_int(raw, "missing_batch_size", 5, 1, 50),
        upgrade_batch_size=_clamped_int(raw, "upgrade_batch_size", 2, 1, 50),
        missing_interval_minutes=_clamped_int(raw, "missing_interval_minutes", 60, 15, 1440),
        upgrade_interval_minutes=_clamped_int(raw, "upgrade_interval_minutes", 120, 15, 1440),
        hourly_api_cap=_clamped_int(raw, "hourly_api_cap", 100, 10, 500),
        queue_threshold=_clamped_int(raw, "queue_threshold", 25, 0, 100),
        research_after_days=_clamped_int(raw, "research_after_days", 7, 0),
        prefer_season_packs=bool(raw.get("prefer_season_packs", False)),
        filter_logic="OR" if logic == "OR" else "AND",
        monitored_only=bool(raw.get("monitored_only", True)),
        include_tags=raw.get("include_tags") or [],
        exclude_tags=raw.get("exclude_tags") or [],
        include_quality_profiles=raw.get("include_quality_profiles") or [],
        exclude_quality_profiles=raw.get("exclude_quality_profiles") or [],
        include_statuses=raw.get("include_statuses") or [],
        year_min=_optional_int(raw, "year_min"),
        year_max=_optional_int(raw, "year_max"),
        age_threshold_days=_optional_int(raw, "age_threshold_days"),
    )


def load_config(path: str) -> RuntimeConfig:
    config_path = Path(path).resolve()
    _ensure_config_exists(config_path)
    _load_dotenv_if_present(config_path)
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    raw = _expand_env(raw)

    app_raw = raw.get("app", {}) or {}
    app = AppConfig(
        db_path=_require_str(app_raw, "db_path", "./state/arrhunt.db"),
        request_timeout_seconds=max(5, int(app_raw.get("request_timeout_seconds", 30))),
        verify_ssl=bool(app_raw.get("verify_ssl", True)),
        log_level=_require_str(app_raw, "log_level", "INFO").upper(),
        search_delay_seconds=max(0.0, float(app_raw.get("search_delay_seconds", 5))),
        grab_check_delay_seconds=max(0.0, float(app_raw.get("grab_check_delay_seconds", 10))),
        history_retention_days=max(1, int(app_raw.get("history_retention_days", 90))),
        scheduler_tick_seconds=max(5, int(app_raw.get("scheduler_tick_seconds", 60))),
    )

    instances: list[ServiceInstance] = []
    for row in raw.get("instances", []) or []:
        if not isinstance(row, dict):
            continue
        service = _require_str(row, "service").lower()
        instance_id = max(1, int(row.get("instance_id", 1)))
        enabled = bool(row.get("enabled", True))
        hunt_raw = row.get("hunt") if isinstance(row.get("hunt"), dict) else {}
        instances.append(
            ServiceInstance(
                instance_id=instance_id,
                instance_name=_require_str(row, "instance_name", f"{service.title()} {instance_id}"),
                # Unsupported families are kept so the hunt can report them as an error.
                service=service,
                enabled=enabled,
                arr=ArrConfig(
                    enabled=enabled,
                    url=_require_str(row, "url"),
                    api_key=_require_str(row, "api_key"),
                ),
                hunt=parse_hunt_config(hunt_raw, default_id=f"{service}-{instance_id}"),
            )
        )

    return RuntimeConfig(app=app, instances=instances)
