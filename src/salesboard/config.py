from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from salesboard.domain.stages import DEFAULT_STATUSES

WORKSPACES_DIR = Path("workspaces")
CURRENT_WORKSPACE_FILE = WORKSPACES_DIR / ".current"
WORKSPACE_FILENAME = "workspace.yaml"
API_KEY_ENV = "SALESBOARD_API_KEY"
ACCESS_TOKEN_ENV = "SALESBOARD_ACCESS_TOKEN"


@dataclass(frozen=True)
class StoreConfig:
    sqlite_path: Path


@dataclass(frozen=True)
class RemoteConfig:
    provider: str
    url: str
    table: str


@dataclass(frozen=True)
class WorkspaceConfig:
    name: str
    store: StoreConfig
    remote: RemoteConfig | None
    session_email: str | None
    statuses: list[str]
    path: Path

    @property
    def events_path(self) -> Path:
        return self.path / "events.ndjson"


class WorkspaceError(RuntimeError):
    pass


def ensure_workspaces_dir() -> None:
    WORKSPACES_DIR.mkdir(parents=True, exist_ok=True)


def set_current_workspace(name: str) -> None:
    ensure_workspaces_dir()
    CURRENT_WORKSPACE_FILE.write_text(f"{name}\n", encoding="utf-8")


def get_current_workspace_name() -> str:
    if not CURRENT_WORKSPACE_FILE.exists():
        raise WorkspaceError("No active workspace. Run `salesboard workspace use <name>`.")
    return CURRENT_WORKSPACE_FILE.read_text(encoding="utf-8").strip()


def workspace_path(name: str) -> Path:
    return WORKSPACES_DIR / name


def workspace_config_path(name: str) -> Path:
    return workspace_path(name) / WORKSPACE_FILENAME


def load_workspace(name: str | None = None) -> WorkspaceConfig:
    if name is None:
        name = get_current_workspace_name()
    return load_workspace_file(workspace_config_path(name), name)


def load_workspace_file(config_path: Path, name: str) -> WorkspaceConfig:
    if not config_path.exists():
        raise WorkspaceError(f"Workspace config not found: {config_path}")
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise WorkspaceError("Workspace config must be a mapping.")
    return WorkspaceConfig(
        name=name,
        store=_parse_store(data.get("store"), config_path),
        remote=_parse_remote(data.get("remote")),
        session_email=_parse_session(data.get("session")),
        statuses=_parse_statuses(data.get("pipeline")),
        path=config_path.parent,
    )


def write_workspace_config(name: str, email: str | None, remote_url: str | None = None) -> Path:
    ensure_workspaces_dir()
    ws_dir = workspace_path(name)
    ws_dir.mkdir(parents=True, exist_ok=True)
    config: dict[str, Any] = {
        "workspace": name,
        "store": {"sqlite_path": "./local.sqlite"},
        "session": {"email": email},
        "pipeline": {"statuses": list(DEFAULT_STATUSES)},
    }
    if remote_url:
        config["remote"] = {"provider": "postgrest", "url": remote_url, "table": "opportunities"}
    config_path = workspace_config_path(name)
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def update_workspace_session(config_path: Path, email: str) -> Path:
    """Switch the signed-in user, keeping a timestamped backup of the old file."""
    if not config_path.exists():
        raise WorkspaceError(f"Workspace config not found: {config_path}")
    payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    session = payload.get("session") or {}
    if not isinstance(session, dict):
        raise WorkspaceError("Workspace session must be a mapping.")
    session["email"] = email
    payload["session"] = session

    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    backup_path = config_path.with_suffix(f".bak.{timestamp}")
    backup_path.write_text(config_path.read_text(encoding="utf-8"), encoding="utf-8")
    config_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return backup_path


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
        # Paths written from the repo root already include "workspaces/...".
        return (workspace_dir.parent.parent / raw_path).resolve()
    return (workspace_dir / raw_path).resolve()


def _parse_remote(remote_data: Any) -> RemoteConfig | None:
    if remote_data is None:
        return None
    if not isinstance(remote_data, dict):
        raise WorkspaceError("Invalid workspace remote configuration.")
    provider = remote_data.get("provider") or "postgrest"
    if provider != "postgrest":
        raise WorkspaceError("Only the postgrest remote provider is supported.")
    url = remote_data.get("url")
    if not url or not isinstance(url, str):
        raise WorkspaceError("Workspace remote.url is required.")
    return RemoteConfig(provider=provider, url=url, table=remote_data.get("table") or "opportunities")


def _parse_session(session_data: Any) -> str | None:
    if session_data is None:
        return None
    if not isinstance(session_data, dict):
        raise WorkspaceError("Workspace session must be a mapping.")
    email = session_data.get("email")
    if email is not None and not isinstance(email, str):
        raise WorkspaceError("Workspace session.email must be a string.")
    return email or None


def _parse_statuses(pipeline_data: Any) -> list[str]:
    if pipeline_data is None:
        return list(DEFAULT_STATUSES)
    if not isinstance(pipeline_data, dict):
        raise WorkspaceError("Workspace pipeline must be a mapping.")
    statuses = pipeline_data.get("statuses")
    if statuses is None:
        return list(DEFAULT_STATUSES)
    if not isinstance(statuses, list) or not statuses:
        raise WorkspaceError("Workspace pipeline.statuses must be a non-empty list.")
    cleaned = [str(s).strip() for s in statuses]
    if any(not s for s in cleaned):
        raise WorkspaceError("Workspace pipeline.statuses cannot contain blank values.")
    if len(set(cleaned)) != len(cleaned):
        raise WorkspaceError("Workspace pipeline.statuses must be unique.")
    return cleaned
