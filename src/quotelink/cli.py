from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Annotated

import typer

from quotelink import __version__
from quotelink.adapters.directory.client import HttpDirectoryClient
from quotelink.config import (
    WorkspaceConfig,
    WorkspaceError,
    ensure_workspaces_dir,
    load_workspace,
    set_current_workspace,
    workspace_config_path,
    write_workspace_config,
)
from quotelink.domain import rules
from quotelink.domain.errors import LinkingError, StoreUnavailableError
from quotelink.domain.lifecycle import build_event, parse_kind
from quotelink.domain.rules import ValidationError
from quotelink.domain.stages import DealEventType
from quotelink.logging import configure_logging
from quotelink.services import deals, directory, exports, quotes
from quotelink.services.engine import DealEngine
from quotelink.services.events import EventFeed, list_events
from quotelink.services.idempotency import IdempotencyGuard
from quotelink.services.utils import dumps, to_iso, to_text, today_iso
from quotelink.store.sqlite import SqliteStore

app = typer.Typer(help="Quote-to-deal linking CLI")
workspace_app = typer.Typer(help="Workspace management")
schema_app = typer.Typer(help="Schema operations")
account_app = typer.Typer(help="Local account directory")
contact_app = typer.Typer(help="Local contact directory")
quote_app = typer.Typer(help="Quotes and revisions")
deal_app = typer.Typer(help="Deal inspection")
keys_app = typer.Typer(help="Idempotency keys")
export_app = typer.Typer(help="Exports")

app.add_typer(workspace_app, name="workspace")
app.add_typer(schema_app, name="schema")
app.add_typer(account_app, name="account")
app.add_typer(contact_app, name="contact")
app.add_typer(quote_app, name="quote")
app.add_typer(deal_app, name="deal")
app.add_typer(keys_app, name="keys")
app.add_typer(export_app, name="export")

SCHEMA_PATH = Path("resources/schema/canonical.yaml")
DIRECTORY_TOKEN_ENV = "QUOTELINK_DIRECTORY_TOKEN"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override the workspace log level."),
):
    level = log_level or "WARNING"
    json_logs = False
    try:
        ws = load_workspace()
    except WorkspaceError:
        ws = None
    if ws is not None:
        level = log_level or ws.logging.level
        json_logs = ws.logging.json
    configure_logging(level=level, json=json_logs)


@app.command("init")
def init() -> None:
    """Initialize directories for workspaces and outputs."""
    ensure_workspaces_dir()
    Path("data").mkdir(exist_ok=True)
    Path("exports").mkdir(exist_ok=True)
    typer.echo("Initialized quotelink directories.")


@workspace_app.command("add")
def workspace_add(
    name: str = typer.Argument(...),
    use: bool = typer.Option(True, "--use/--no-use", help="Set as current workspace."),
    force: bool = typer.Option(
        False, "--force", help="Overwrite existing workspace config if it exists."
    ),
) -> None:
    config_path = workspace_config_path(name)
    if config_path.exists() and not force:
        raise typer.BadParameter(
            f"Workspace already exists: {config_path}. Use --force to overwrite."
        )
    config_path = write_workspace_config(name)
    if use:
        set_current_workspace(name)
    typer.echo(f"Workspace created: {config_path}")


@workspace_app.command("use")
def workspace_use(name: str = typer.Argument(...)) -> None:
    if not workspace_config_path(name).exists():
        raise typer.BadParameter(f"Workspace config not found: {workspace_config_path(name)}")
    set_current_workspace(name)
    typer.echo(f"Active workspace: {name}")


@schema_app.command("apply")
def schema_apply() -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        store.apply_schema(SCHEMA_PATH)
    except StoreUnavailableError as exc:
        _exit_with_error(str(exc), code=2)
    typer.echo("Applied schema to local SQLite.")


@account_app.command("add")
def account_add(
    name: str = typer.Argument(...),
    domain: str | None = typer.Option(None, "--domain"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        account_id = directory.add_account(store, name, domain)
    except ValidationError as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Account: {account_id}")


@contact_app.command("add")
def contact_add(
    full_name: str = typer.Argument(...),
    account: str | None = typer.Option(None, "--account"),
    email: str | None = typer.Option(None, "--email"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        contact_id = directory.add_contact(store, account, full_name, email)
    except ValidationError as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Contact: {contact_id}")


@quote_app.command("add")
def quote_add(
    account: str = typer.Option(..., "--account"),
    contact: str | None = typer.Option(None, "--contact"),
    owner: str | None = typer.Option(None, "--owner"),
    quote_type: str = typer.Option("standard", "--type"),
    currency: str | None = typer.Option(None, "--currency"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        quote_id = quotes.add_quote(
            store,
            account_id=account,
            contact_id=contact,
            owner_user_id=owner,
            quote_type=quote_type,
            currency=currency or ws.linking.default_currency,
        )
    except ValidationError as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Quote: {quote_id}")


@quote_app.command("revise")
def quote_revise(
    quote_id: str = typer.Argument(...),
    revision_type: str = typer.Option("other", "--type"),
    total: str | None = typer.Option(None, "--total"),
    binding: bool = typer.Option(False, "--binding/--estimate"),
    items: Annotated[
        list[str] | None,
        typer.Option("--item", help="Line item as NAME=LOW:HIGH; repeatable."),
    ] = None,
) -> None:
    """Append a revision to a quote."""
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        line_items = [_parse_item(raw) for raw in items or []]
        revision_number = quotes.add_revision(
            store,
            quote_id,
            revision_type=revision_type,
            total=rules.parse_decimal(total, "total"),
            is_binding=binding,
            line_items=line_items,
        )
    except (ValidationError, LinkingError) as exc:
        _exit_with_error(str(exc), code=_error_code(exc))
    typer.echo(f"Revision: {revision_number}")


@app.command("event")
def event(
    kind: str = typer.Argument(..., help="sent, viewed, accepted, declined or expired"),
    quote_id: str = typer.Argument(...),
    revision: int = typer.Argument(...),
    signer_name: str | None = typer.Option(None, "--signer-name"),
    signer_email: str | None = typer.Option(None, "--signer-email"),
    reason: str | None = typer.Option(None, "--reason"),
    actor: str | None = typer.Option(None, "--actor"),
) -> None:
    """Feed one quote lifecycle event to the deal engine."""
    ws = _load_workspace()
    try:
        lifecycle_event = build_event(
            parse_kind(kind),
            quote_id,
            revision,
            actor=actor,
            signer_name=signer_name,
            signer_email=signer_email,
            reason=reason,
        )
        result = _engine(ws).handle(lifecycle_event)
    except (ValidationError, LinkingError) as exc:
        _exit_with_error(str(exc), code=_error_code(exc))
    if result.already_processed:
        typer.echo(f"Already processed; deal: {result.deal_id or '-'}")
    elif result.deal_id is None:
        typer.echo("No deal linked; nothing to do.")
    elif result.created:
        typer.echo(f"Created deal: {result.deal_id}")
    else:
        typer.echo(f"Updated deal: {result.deal_id}")


@deal_app.command("list")
def deal_list(
    open_only: bool = typer.Option(False, "--open", help="Only open deals."),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    rows = deals.list_deals(store, open_only=open_only, limit=limit)
    if not rows:
        typer.echo("No deals.")
        return
    for deal in rows:
        typer.echo(
            f"{deal.deal_id} | {deal.account_id} | {deal.stage.value} | "
            f"{to_text(deal.deal_value) or '-'} {deal.currency} | {deal.value_type.value} | "
            f"{to_iso(deal.next_action_at) or '-'}"
        )


@deal_app.command("show")
def deal_show(deal_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    deal = deals.get_deal(store, deal_id)
    if deal is None:
        _exit_with_error(f"Deal {deal_id} not found.")
    payload = {column: getattr(deal, column) for column in deals.DEAL_COLUMNS}
    typer.echo(json.dumps(json.loads(dumps(payload)), indent=2, sort_keys=False))


@deal_app.command("events")
def deal_events(
    deal_id: str = typer.Argument(...),
    event_type: str | None = typer.Option(None, "--type"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        rules.validate_enum(event_type, [t.value for t in DealEventType], "type")
    except ValidationError as exc:
        _exit_with_error(str(exc))
    rows = list_events(store, deal_id=deal_id, event_type=DealEventType(event_type) if event_type else None)
    for row in rows:
        typer.echo(f"{to_iso(row.timestamp)} | {row.event_type.value} | {dumps(row.metadata)}")


@keys_app.command("purge")
def keys_purge() -> None:
    """Delete expired idempotency keys."""
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        removed = IdempotencyGuard(store).purge_expired()
    except StoreUnavailableError as exc:
        _exit_with_error(str(exc), code=2)
    typer.echo(f"Purged {removed} expired keys.")


@export_app.command("excel")
def export_excel(out: str = typer.Option(..., "--out")) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    exports.export_excel(store, Path(out))
    typer.echo(f"Exported Excel to {out}")


@app.command("snapshot")
def snapshot() -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    snapshot_dir = Path("data") / "snapshots" / today_iso()
    snapshot_dir.mkdir(parents=True, exist_ok=True)
    if ws.store.sqlite_path.exists():
        shutil.copy2(ws.store.sqlite_path, snapshot_dir / "local.sqlite")
    exports.export_csv_tables(store, snapshot_dir)
    typer.echo(f"Snapshot created at {snapshot_dir}")


def _engine(ws: WorkspaceConfig) -> DealEngine:
    store = SqliteStore(ws.store.sqlite_path)
    if ws.directory.provider == "http":
        accounts = HttpDirectoryClient(ws.directory.base_url or "", api_key=os.getenv(DIRECTORY_TOKEN_ENV))
    else:
        accounts = directory.LocalDirectory(store)
    return DealEngine(
        store,
        config=ws.linking,
        stage_mapping=ws.stage_mapping,
        directory=accounts,
        feed=EventFeed(path=ws.path / "events.ndjson", workspace=ws.name, enabled=ws.events_feed),
    )


def _parse_item(raw: str) -> quotes.LineItemInput:
    name, sep, span = raw.partition("=")
    if not sep:
        raise ValidationError("--item must be NAME=LOW:HIGH.")
    rules.require(name, "line item name")
    low, high = rules.parse_range(span, f"item {name}")
    return quotes.LineItemInput(name=name.strip(), range_low=low, range_high=high)


def _error_code(exc: Exception) -> int:
    return 2 if isinstance(exc, StoreUnavailableError) else 1


def _load_workspace() -> WorkspaceConfig:
    try:
        return load_workspace()
    except WorkspaceError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc


def _exit_with_error(message: str, code: int = 1) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=code)


if __name__ == "__main__":
    app()
