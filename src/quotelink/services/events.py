from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from quotelink.domain.models import DealEvent
from quotelink.domain.stages import DealEventType
from quotelink.services.utils import dumps, from_iso, to_iso
from quotelink.store.sqlite import SqliteSession, SqliteStore


def append_event(
    session: SqliteSession,
    *,
    deal_id: str,
    event_type: DealEventType,
    timestamp: datetime,
    metadata: dict[str, Any] | None = None,
    created_by: str | None = None,
) -> DealEvent:
    event = DealEvent(
        event_id=str(uuid4()),
        deal_id=deal_id,
        event_type=event_type,
        timestamp=timestamp,
        metadata=dict(metadata or {}),
        created_by=created_by,
    )
    session.execute(
        "INSERT INTO deal_events (event_id, deal_id, event_type, timestamp, metadata, created_by) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (
            event.event_id,
            event.deal_id,
            event.event_type.value,
            to_iso(event.timestamp),
            dumps(event.metadata),
            event.created_by,
        ),
    )
    return event


def list_events(
    store: SqliteStore,
    deal_id: str | None = None,
    event_type: DealEventType | None = None,
) -> list[DealEvent]:
    clauses: list[str] = []
    params: list[str] = []
    if deal_id:
        clauses.append("deal_id = ?")
        params.append(deal_id)
    if event_type:
        clauses.append("event_type = ?")
        params.append(event_type.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    # rowid keeps insertion order for events written in the same second.
    rows = store.fetch_all(f"SELECT * FROM deal_events {where} ORDER BY timestamp, rowid", params)
    return [
        DealEvent(
            event_id=row["event_id"],
            deal_id=row["deal_id"],
            event_type=DealEventType(row["event_type"]),
            timestamp=from_iso(row["timestamp"]),
            metadata=json.loads(row["metadata"]),
            created_by=row["created_by"],
        )
        for row in rows
    ]


@dataclass
class EventFeed:
    """Newline-delimited JSON mirror of committed deal events."""

    path: Path
    workspace: str
    enabled: bool = True

    def publish(self, events: Iterable[DealEvent]) -> None:
        if not self.enabled:
            return
        events = list(events)
        if not events:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            for event in events:
                payload = {
                    "ts": to_iso(event.timestamp),
                    "workspace": self.workspace,
                    "event_id": event.event_id,
                    "deal_id": event.deal_id,
                    "event_type": event.event_type.value,
                    "metadata": event.metadata,
                    "created_by": event.created_by,
                }
                handle.write(dumps(payload) + "\n")
