from pathlib import Path

import pytest

from quotelink.config import WORKSPACES_DIR, WorkspaceError, _resolve_sqlite_path, load_workspace_file
from quotelink.domain.stages import DealStage


def test_resolve_sqlite_path_relative(tmp_path: Path) -> None:
    ws_dir = tmp_path / WORKSPACES_DIR / "demo"
    ws_dir.mkdir(parents=True)
    config_path = ws_dir / "workspace.yaml"
    config_path.write_text("workspace: demo\nstore:\n  sqlite_path: ./local.sqlite\n")

    resolved = _resolve_sqlite_path("./local.sqlite", config_path)
    assert resolved == (ws_dir / "local.sqlite").resolve()


def test_resolve_sqlite_path_repo_relative(tmp_path: Path) -> None:
    ws_dir = tmp_path / WORKSPACES_DIR / "demo"
    ws_dir.mkdir(parents=True)
    config_path = ws_dir / "workspace.yaml"
    config_path.write_text("workspace: demo\nstore:\n  sqlite_path: workspaces/demo/local.sqlite\n")

    resolved = _resolve_sqlite_path("workspaces/demo/local.sqlite", config_path)
    assert resolved == (tmp_path / "workspaces" / "demo" / "local.sqlite").resolve()


def _write(tmp_path: Path, body: str) -> Path:
    ws_dir = tmp_path / WORKSPACES_DIR / "demo"
    ws_dir.mkdir(parents=True, exist_ok=True)
    config_path = ws_dir / "workspace.yaml"
    config_path.write_text("workspace: demo\nstore:\n  sqlite_path: ./local.sqlite\n" + body)
    return config_path


def test_defaults_when_sections_missing(tmp_path: Path) -> None:
    ws = load_workspace_file(_write(tmp_path, ""))

    assert ws.name == "demo"
    assert ws.linking.dedupe_window_days == 30
    assert ws.linking.follow_up.total_seconds() == 24 * 3600
    assert ws.linking.viewed_ttl.total_seconds() == 3600
    assert ws.directory.provider == "local"
    assert ws.events_feed is True


def test_linking_and_stage_mapping_overrides(tmp_path: Path) -> None:
    config_path = _write(
        tmp_path,
        "linking:\n"
        "  dedupe_window_days: 7\n"
        "  conflict_retries: 5\n"
        "stage_mapping:\n"
        "  revision_types:\n"
        "    final_quote: negotiation\n"
        "  default: prospecting\n"
        "logging:\n"
        "  level: debug\n",
    )
    ws = load_workspace_file(config_path)

    assert ws.linking.dedupe_window_days == 7
    assert ws.linking.conflict_retries == 5
    assert ws.stage_mapping.stage_for("final_quote", "standard") is DealStage.NEGOTIATION
    assert ws.stage_mapping.stage_for("walkthrough_proposal", None) is DealStage.PROSPECTING
    assert ws.stage_mapping.default is DealStage.PROSPECTING
    assert ws.logging.level == "DEBUG"


def test_stage_mapping_precedence(tmp_path: Path) -> None:
    default_path = _write(tmp_path, "stage_mapping:\n  default: qualification\n")
    assert load_workspace_file(default_path).stage_mapping.precedence == "quote_type"

    config_path = _write(tmp_path, "stage_mapping:\n  precedence: revision_type\n")
    ws = load_workspace_file(config_path)

    assert ws.stage_mapping.precedence == "revision_type"
    assert ws.stage_mapping.stage_for("final_quote", "walkthrough_required") is DealStage.PROPOSAL


def test_stage_mapping_cannot_target_closed_stage(tmp_path: Path) -> None:
    config_path = _write(tmp_path, "stage_mapping:\n  revision_types:\n    final_quote: closed_won\n")

    with pytest.raises(WorkspaceError):
        load_workspace_file(config_path)


def test_conflict_retries_must_be_positive(tmp_path: Path) -> None:
    config_path = _write(tmp_path, "linking:\n  conflict_retries: 0\n")

    with pytest.raises(WorkspaceError):
        load_workspace_file(config_path)


def test_http_directory_requires_base_url(tmp_path: Path) -> None:
    config_path = _write(tmp_path, "directory:\n  provider: http\n")

    with pytest.raises(WorkspaceError):
        load_workspace_file(config_path)
