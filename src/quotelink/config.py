from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from quotelink.domain.mapping import DEFAULT_STAGE_MAPPING, StageMapping, stage_mapping_from_dict
from quotelink.domain.rules import ValidationError

WORKSPACES_DIR = Path("workspaces")
CURRENT_WORKSPACE_FILE = WORKSPACES_DIR / ".current"
WORKSPACE_FILENAME = "workspace.yaml"
DIRECTORY_PROVIDERS = ("local", "http")


@dataclass(frozen=True)
class StoreConfig:
    sqlite_path: Path


@dataclass(frozen=True)
class LinkingConfig:
    dedupe_window_days: int = 30
    follow_up_hours: int = 24
    idempotency_ttl_hours: int = 24
    viewed_ttl_hours: int = 1
    conflict_retries: int = 3
    default_currency: str = "CAD"

    @property
    def follow_up(self) -> timedelta:
        return timedelta(hours=self.follow_up_hours)

    @property
    def idempotency_ttl(self) -> timedelta:
        return timedelta(hours=self.idempotency_ttl_hours)

    @property
    def viewed_ttl(self) -> timedelta:
        return timedelta(hours=self.viewed_ttl_hours)


@dataclass(frozen=True)
class DirectoryConfig:
    provider: str = "local"
    base_url: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(frozen=True)
class WorkspaceConfig:
    name: str
    store: StoreConfig
    path: Path
    linking: LinkingConfig = field(default_factory=LinkingConfig)
    stage_mapping: StageMapping = DEFAULT_STAGE_MAPPING
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    events_feed: bool = True


class WorkspaceError(RuntimeError):
    pass


def ensure_workspaces_dir() -> None:
    WORKSPACES_DIR.mkdir(parents=True, exist_ok=True)


def set_current_workspace(name: str) -> None:
    ensure_workspaces_dir()
    CURRENT_WORKSPACE_FILE.write_text(f"{name}\n", encoding="utf-8")


def get_current_workspace_name() -> str:
    if not CURRENT_WORKSPACE_FILE.exists():
        raise WorkspaceError("No active workspace. Run `quotelink workspace use <name>`.")
    return CURRENT_WORKSPACE_FILE.read_text(encoding="utf-8").strip()


def workspace_path(name: str) -> Path:
    return WORKSPACES_DIR / name


def workspace_config_path(name: str) -> Path:
    return workspace_path(name) / WORKSPACE_FILENAME


def load_workspace(name: str | None = None) -> WorkspaceConfig:
    if name is None:
        name = get_current_workspace_name()
    config_path = workspace_config_path(name)
    if not config_path.exists():
        raise WorkspaceError(f"Workspace config not found: {config_path}")
    return load_workspace_file(config_path, name)


def load_workspace_file(config_path: Path, name: str | None = None) -> WorkspaceConfig:
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise WorkspaceError(f"Workspace config must be a mapping: {config_path}")
    try:
        stage_mapping = stage_mapping_from_dict(_mapping(data.get("stage_mapping"), "stage_mapping"))
    except ValidationError as exc:
        raise WorkspaceError(str(exc)) from exc
    events = _mapping(data.get("events"), "events")
    return WorkspaceConfig(
        name=name or str(data.get("workspace") or config_path.parent.name),
        store=_parse_store(data.get("store"), config_path),
        path=config_path.parent,
        linking=_parse_linking(data.get("linking")),
        stage_mapping=stage_mapping,
        directory=_parse_directory(data.get("directory")),
        logging=_parse_logging(data.get("logging")),
        events_feed=bool(events.get("feed", True)),
    )


def write_workspace_config(name: str) -> Path:
    ensure_workspaces_dir()
    ws_dir = workspace_path(name)
    ws_dir.mkdir(parents=True, exist_ok=True)
    defaults = LinkingConfig()
    config = {
        "workspace": name,
        "store": {"sqlite_path": "./local.sqlite"},
        "linking": {
            "dedupe_window_days": defaults.dedupe_window_days,
            "follow_up_hours": defaults.follow_up_hours,
            "idempotency_ttl_hours": defaults.idempotency_ttl_hours,
            "viewed_ttl_hours": defaults.viewed_ttl_hours,
            "conflict_retries": defaults.conflict_retries,
            "default_currency": defaults.default_currency,
        },
        "directory": {"provider": "local", "base_url": None},
        "logging": {"level": "INFO", "json": False},
        "events": {"feed": True},
    }
    config_path = workspace_config_path(name)
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def _mapping(value: Any, section: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise WorkspaceError(f"Workspace {section} must be a mapping.")
    return value


def _parse_store(store_data: Any, config_path: Path) -> StoreConfig:
    if not isinstance(store_data, dict):
        raise WorkspaceError("Invalid workspace store configuration.")
    sqlite_path_raw = store_data.get("sqlite_path")
    if not sqlite_path_raw:
        raise WorkspaceError("Workspace store.sqlite_path is required.")
    sqlite_path = _resolve_sqlite_path(sqlite_path_raw, config_path)
    if sqlite_path is None:
        raise WorkspaceError("Workspace store.sqlite_path must be a string.")
    return StoreConfig(sqlite_path=sqlite_path)


def _resolve_sqlite_path(sqlite_path_raw: Any, config_path: Path) -> Path | None:
    if not isinstance(sqlite_path_raw, str):
        return None
    raw_path = Path(sqlite_path_raw)
    if raw_path.is_absolute():
        return raw_path
    # Prefer paths relative to the workspace directory.
    workspace_dir = config_path.parent
    if raw_path.parts and raw_path.parts[0] == WORKSPACES_DIR.name:
        # Paths that already include "workspaces/..." are relative to the repo root.
        return (workspace_dir.parent.parent / raw_path).resolve()
    return (workspace_dir / raw_path).resolve()


def _parse_linking(linking_data: Any) -> LinkingConfig:
    data = _mapping(linking_data, "linking")
    defaults = LinkingConfig()
    values: dict[str, Any] = {}
    for key in (
        "dedupe_window_days",
        "follow_up_hours",
        "idempotency_ttl_hours",
        "viewed_ttl_hours",
        "conflict_retries",
    ):
        raw = data.get(key, getattr(defaults, key))
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
            raise WorkspaceError(f"Workspace linking.{key} must be a non-negative integer.")
        values[key] = raw
    if values["conflict_retries"] < 1:
        raise WorkspaceError("Workspace linking.conflict_retries must be at least 1.")
    currency = data.get("default_currency", defaults.default_currency)
    if not isinstance(currency, str) or not currency:
        raise WorkspaceError("Workspace linking.default_currency must be a string.")
    return LinkingConfig(default_currency=currency, **values)


def _parse_directory(directory_data: Any) -> DirectoryConfig:
    data = _mapping(directory_data, "directory")
    provider = data.get("provider") or "local"
    if provider not in DIRECTORY_PROVIDERS:
        raise WorkspaceError(f"Workspace directory.provider must be one of: {', '.join(DIRECTORY_PROVIDERS)}")
    base_url = data.get("base_url")
    if provider == "http" and not base_url:
        raise WorkspaceError("Workspace directory.base_url is required for the http provider.")
    return DirectoryConfig(provider=provider, base_url=base_url)


def _parse_logging(logging_data: Any) -> LoggingConfig:
    data = _mapping(logging_data, "logging")
    level = str(data.get("level") or "INFO").upper()
    return LoggingConfig(level=level, json=bool(data.get("json", False)))
