from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Protocol, Tuple

import pandas as pd

from .config import CHRONICLE_DB_PATH
from .detection import events_from_records
from .models import ChronicleEvent, DataFetchError, DetectionNotice

logger = logging.getLogger(__name__)

CHRONICLE_COLUMNS = [
    "id",
    "shipment_id",
    "thread_id",
    "direction",
    "from_party",
    "from_address",
    "message_type",
    "sentiment",
    "summary",
    "has_issue",
    "issue_type",
    "issue_description",
    "has_action",
    "action_description",
    "action_owner",
    "action_deadline",
    "action_completed_at",
    "action_priority",
    "occurred_at",
    "document_type",
]


class ChronicleEventStore(Protocol):
    def fetch_events(self, shipment_id: str) -> List[ChronicleEvent]:
        """All events for a shipment, ascending by occurred_at."""
        ...

    def fetch_timeline(self, shipment_id: str) -> Tuple[List[ChronicleEvent], List[DetectionNotice]]:
        """Like ``fetch_events``, plus a skipped notice for each unreadable row."""
        ...


def init_chronicle_store(path: Path = CHRONICLE_DB_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chronicle (
                id TEXT PRIMARY KEY,
                shipment_id TEXT NOT NULL,
                thread_id TEXT,
                direction TEXT,
                from_party TEXT,
                from_address TEXT,
                message_type TEXT,
                sentiment TEXT,
                summary TEXT DEFAULT '',
                has_issue INTEGER DEFAULT 0,
                issue_type TEXT,
                issue_description TEXT,
                has_action INTEGER DEFAULT 0,
                action_description TEXT,
                action_owner TEXT,
                action_deadline TEXT,
                action_completed_at TEXT,
                action_priority TEXT,
                occurred_at TEXT,
                document_type TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_chronicle_shipment ON chronicle(shipment_id, occurred_at);
            """
        )
        conn.commit()
    finally:
        conn.close()


def load_chronicle_records(records: Iterable[Mapping[str, object]], path: Path = CHRONICLE_DB_PATH) -> int:
    """Mirror already-classified chronicle rows into a local store."""
    init_chronicle_store(path)
    placeholders = ", ".join("?" for _ in CHRONICLE_COLUMNS)
    updates = ", ".join(f"{col}=excluded.{col}" for col in CHRONICLE_COLUMNS if col != "id")
    sql = (
        f"INSERT INTO chronicle ({', '.join(CHRONICLE_COLUMNS)}) VALUES ({placeholders}) "
        f"ON CONFLICT(id) DO UPDATE SET {updates}"
    )

    payload = []
    for record in records:
        row = []
        for col in CHRONICLE_COLUMNS:
            value = record.get(col)
            if col in ("has_issue", "has_action"):
                value = 1 if value else 0
            elif value is not None and not isinstance(value, (str, int, float)):
                value = value.isoformat() if hasattr(value, "isoformat") else str(value)
            row.append(value)
        payload.append(tuple(row))

    conn = sqlite3.connect(path)
    try:
        conn.executemany(sql, payload)
        conn.commit()
    finally:
        conn.close()
    return len(payload)


class SqliteChronicleStore:
    """Reads the ``chronicle`` table of a SQLite mirror."""

    def __init__(self, path: Path = CHRONICLE_DB_PATH) -> None:
        self.path = path

    def fetch_records(self, shipment_id: str) -> List[Dict[str, object]]:
        if not self.path.exists():
            raise DataFetchError(f"chronicle store not found: {self.path}")

        sql = f"SELECT {', '.join(CHRONICLE_COLUMNS)} FROM chronicle WHERE shipment_id = ? ORDER BY occurred_at"
        conn = sqlite3.connect(self.path)
        try:
            frame = pd.read_sql_query(sql, conn, params=(shipment_id,))
        except (sqlite3.Error, pd.errors.DatabaseError) as exc:
            raise DataFetchError(f"chronicle fetch failed for {shipment_id}: {exc}") from exc
        finally:
            conn.close()

        if frame.empty:
            return []
        frame = frame.astype(object).where(frame.notna(), None)
        return frame.to_dict(orient="records")

    def fetch_timeline(self, shipment_id: str) -> Tuple[List[ChronicleEvent], List[DetectionNotice]]:
        events, notices = events_from_records(self.fetch_records(shipment_id))
        for notice in notices:
            logger.warning("skipping chronicle row %s for %s: %s", notice.chronicle_id, shipment_id, notice.reason)
        return events, notices

    def fetch_events(self, shipment_id: str) -> List[ChronicleEvent]:
        return self.fetch_timeline(shipment_id)[0]


class InMemoryChronicleStore:
    def __init__(self, events: Iterable[ChronicleEvent] = ()) -> None:
        self._events: Dict[str, List[ChronicleEvent]] = {}
        self._skipped: Dict[str, List[DetectionNotice]] = {}
        for event in events:
            self.add(event)

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, object]]) -> "InMemoryChronicleStore":
        by_shipment: Dict[str, List[Mapping[str, object]]] = {}
        for record in records:
            by_shipment.setdefault(str(record.get("shipment_id") or ""), []).append(record)

        store = cls()
        for shipment_id, rows in by_shipment.items():
            events, notices = events_from_records(rows)
            for event in events:
                store.add(event)
            for notice in notices:
                logger.warning("skipping chronicle record %s: %s", notice.chronicle_id, notice.reason)
            if notices:
                store._skipped.setdefault(shipment_id, []).extend(notices)
        return store

    def add(self, event: ChronicleEvent) -> None:
        self._events.setdefault(event.shipment_id, []).append(event)

    def fetch_timeline(self, shipment_id: str) -> Tuple[List[ChronicleEvent], List[DetectionNotice]]:
        return self.fetch_events(shipment_id), list(self._skipped.get(shipment_id, []))

    def fetch_events(self, shipment_id: str) -> List[ChronicleEvent]:
        return sorted(self._events.get(shipment_id, []), key=lambda e: e.occurred_at)
