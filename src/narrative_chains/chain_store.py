from __future__ import annotations

import copy
import hashlib
import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .config import CHAIN_DB_PATH, DEFAULT_STALE_AFTER_DAYS
from .models import (
    CHAIN_STATUSES,
    LIVE_STATUSES,
    ChainEvent,
    ChainImpact,
    ChainKey,
    ChainResolution,
    ChainTrigger,
    NarrativeChain,
    PersistenceError,
)
from .timeutil import parse_iso_datetime, to_iso, utc_now

logger = logging.getLogger(__name__)

PERMISSIONS = {
    "admin": {"chain_update", "view"},
    "operator": {"chain_update", "view"},
    "system": {"chain_update", "chain_refresh", "view"},
    "viewer": {"view"},
}

STATUS_ALIASES = {
    "open": "active",
    "reopen": "active",
    "done": "resolved",
    "resolve": "resolved",
    "close": "resolved",
    "closed": "resolved",
    "idle": "stale",
}

CHAIN_TRANSITIONS: Dict[str, set[str]] = {
    "active": {"resolved", "stale"},
    "resolved": set(),
    "stale": set(),
    "superseded": set(),
}

CHAIN_COLUMNS = [
    "id",
    "shipment_id",
    "chain_type",
    "chain_status",
    "trigger_chronicle_id",
    "trigger_event_type",
    "trigger_summary",
    "trigger_occurred_at",
    "trigger_party",
    "chain_events_json",
    "current_state",
    "current_state_party",
    "current_state_since",
    "narrative_headline",
    "narrative_summary",
    "full_narrative",
    "delay_impact_days",
    "financial_impact_usd",
    "affected_parties_json",
    "resolution_required",
    "resolution_deadline",
    "resolved_at",
    "resolution_chronicle_id",
    "resolution_summary",
    "auto_detected",
    "confidence_score",
    "stale_after_days",
    "created_at",
    "updated_at",
]

# Columns a detection pass owns; status, confidence, state and manual resolution
# fields are merged separately so re-detection cannot undo operator work.
_DETECTED_COLUMNS = [
    "trigger_event_type",
    "trigger_summary",
    "trigger_occurred_at",
    "trigger_party",
    "chain_events_json",
    "narrative_headline",
    "full_narrative",
    "delay_impact_days",
    "financial_impact_usd",
    "affected_parties_json",
    "resolution_required",
    "resolution_deadline",
    "resolution_chronicle_id",
    "auto_detected",
    "stale_after_days",
    "updated_at",
]

# Only refreshed while the stored chain is active; a resolved or stale chain
# keeps the state it was closed with.
_STATE_COLUMNS = [
    "current_state",
    "current_state_party",
    "current_state_since",
    "narrative_summary",
]


class ChainRepository(Protocol):
    def upsert(self, chain: NarrativeChain, now: Optional[datetime] = None) -> NarrativeChain: ...

    def get_chain(self, chain_id: str, now: Optional[datetime] = None) -> Optional[NarrativeChain]: ...

    def get_active_chains(self, shipment_id: str, now: Optional[datetime] = None) -> List[NarrativeChain]: ...

    def get_all_chains(self, shipment_id: str, now: Optional[datetime] = None) -> List[NarrativeChain]: ...

    def update_chain_status(
        self,
        chain_id: str,
        status: str,
        resolution_summary: Optional[str] = None,
        actor: str = "operator",
        actor_role: str = "operator",
        now: Optional[datetime] = None,
    ) -> NarrativeChain: ...

    def supersede_auto_detected(self, shipment_id: str, now: Optional[datetime] = None) -> int: ...

    def mark_stale_chains(self, now: Optional[datetime] = None, stale_after_days: Optional[int] = None) -> int: ...


# ---------------------------------------------------------------------------
# status vocabulary
# ---------------------------------------------------------------------------


def has_permission(role: str, permission: str) -> bool:
    return permission in PERMISSIONS.get(str(role or "").lower(), set())


def normalize_status_input(status: str) -> str:
    raw = str(status or "").strip().lower()
    if not raw:
        raise ValueError("status is required")
    if raw in CHAIN_STATUSES:
        return raw
    alias = STATUS_ALIASES.get(raw)
    if alias:
        return alias
    raise ValueError(f"invalid status: {status}. supported values: {', '.join(CHAIN_STATUSES)}")


def allowed_next_statuses(current_status: str, actor_role: str = "operator") -> List[str]:
    current = normalize_status_input(current_status)
    if current == "superseded":
        return ["superseded"]
    if actor_role.lower() == "admin":
        return [s for s in CHAIN_STATUSES if s in LIVE_STATUSES]
    allowed = set(CHAIN_TRANSITIONS.get(current, set()))
    allowed.add(current)
    return [s for s in CHAIN_STATUSES if s in allowed]


def validate_status_transition(current_status: str, next_status: str, actor_role: str) -> None:
    current = normalize_status_input(current_status)
    nxt = normalize_status_input(next_status)
    if current == nxt:
        return
    if current == "superseded":
        raise ValueError("superseded chains are read-only")
    if nxt == "superseded":
        raise ValueError("chains are only superseded by a refresh")
    if actor_role.lower() == "admin":
        return
    allowed = CHAIN_TRANSITIONS.get(current, set())
    if nxt not in allowed:
        allowed_labels = ", ".join(s for s in CHAIN_STATUSES if s in allowed) if allowed else "(none)"
        raise ValueError(f"invalid transition {current} -> {nxt}; allowed: {allowed_labels}")


# ---------------------------------------------------------------------------
# row <-> domain
# ---------------------------------------------------------------------------


def serialize_chain(chain: NarrativeChain) -> Dict[str, object]:
    return {
        "id": chain.id,
        "shipment_id": chain.shipment_id,
        "chain_type": chain.chain_type,
        "chain_status": chain.chain_status,
        "trigger_chronicle_id": chain.trigger.chronicle_id,
        "trigger_event_type": chain.trigger.event_type,
        "trigger_summary": chain.trigger.summary,
        "trigger_occurred_at": to_iso(chain.trigger.occurred_at),
        "trigger_party": chain.trigger.party,
        "chain_events_json": json.dumps([e.as_dict() for e in chain.events], ensure_ascii=True),
        "current_state": chain.current_state,
        "current_state_party": chain.current_state_party,
        "current_state_since": to_iso(chain.current_state_since),
        "narrative_headline": chain.narrative_headline,
        "narrative_summary": chain.narrative_summary,
        "full_narrative": chain.full_narrative,
        "delay_impact_days": chain.impact.delay_days,
        "financial_impact_usd": chain.impact.financial_usd,
        "affected_parties_json": json.dumps(list(chain.impact.affected_parties), ensure_ascii=True),
        "resolution_required": 1 if chain.resolution.required else 0,
        "resolution_deadline": to_iso(chain.resolution.deadline),
        "resolved_at": to_iso(chain.resolution.resolved_at),
        "resolution_chronicle_id": chain.resolution.resolved_by,
        "resolution_summary": chain.resolution.summary,
        "auto_detected": 1 if chain.auto_detected else 0,
        "confidence_score": int(chain.confidence_score),
        "stale_after_days": chain.stale_after_days,
        "created_at": to_iso(chain.created_at),
        "updated_at": to_iso(chain.updated_at),
    }


def _load_json_list(raw: object) -> list:
    try:
        parsed = json.loads(str(raw or "[]"))
    except json.JSONDecodeError:
        return []
    return parsed if isinstance(parsed, list) else []


def deserialize_chain(row: Dict[str, object]) -> NarrativeChain:
    trigger_at = parse_iso_datetime(row.get("trigger_occurred_at"))
    if trigger_at is None:
        raise PersistenceError(f"chain {row.get('id')} has no trigger_occurred_at")

    events: List[ChainEvent] = []
    for item in _load_json_list(row.get("chain_events_json")):
        if isinstance(item, dict):
            try:
                events.append(ChainEvent.from_dict(item))
            except ValueError:
                logger.warning("dropping unreadable event in chain %s", row.get("id"))

    delay_days = row.get("delay_impact_days")
    financial = row.get("financial_impact_usd")
    stale_after = row.get("stale_after_days")
    return NarrativeChain(
        id=str(row.get("id", "")),
        shipment_id=str(row.get("shipment_id", "")),
        chain_type=str(row.get("chain_type", "")),
        chain_status=str(row.get("chain_status", "active")),
        trigger=ChainTrigger(
            chronicle_id=row.get("trigger_chronicle_id"),  # type: ignore[arg-type]
            event_type=str(row.get("trigger_event_type", "") or ""),
            summary=str(row.get("trigger_summary", "") or ""),
            occurred_at=trigger_at,
            party=row.get("trigger_party"),  # type: ignore[arg-type]
        ),
        events=events,
        current_state=str(row.get("current_state", "") or ""),
        current_state_party=row.get("current_state_party"),  # type: ignore[arg-type]
        current_state_since=parse_iso_datetime(row.get("current_state_since")),
        narrative_headline=row.get("narrative_headline"),  # type: ignore[arg-type]
        narrative_summary=row.get("narrative_summary"),  # type: ignore[arg-type]
        full_narrative=row.get("full_narrative"),  # type: ignore[arg-type]
        impact=ChainImpact(
            delay_days=int(delay_days) if delay_days is not None else None,  # type: ignore[arg-type]
            financial_usd=float(financial) if financial is not None else None,  # type: ignore[arg-type]
            affected_parties=[str(p) for p in _load_json_list(row.get("affected_parties_json"))],
        ),
        resolution=ChainResolution(
            required=bool(row.get("resolution_required", 1)),
            deadline=parse_iso_datetime(row.get("resolution_deadline")),
            resolved_at=parse_iso_datetime(row.get("resolved_at")),
            resolved_by=row.get("resolution_chronicle_id"),  # type: ignore[arg-type]
            summary=row.get("resolution_summary"),  # type: ignore[arg-type]
        ),
        auto_detected=bool(row.get("auto_detected", 1)),
        confidence_score=int(row.get("confidence_score", 0) or 0),  # type: ignore[arg-type]
        stale_after_days=int(stale_after) if stale_after is not None else None,  # type: ignore[arg-type]
        created_at=parse_iso_datetime(row.get("created_at")),
        updated_at=parse_iso_datetime(row.get("updated_at")),
    )


def _check_window(stale_after_days: Optional[int]) -> None:
    if stale_after_days is not None and stale_after_days <= 0:
        raise ValueError(f"stale_after_days must be positive, got {stale_after_days}")


def is_stale(chain: NarrativeChain, now: datetime, stale_after_days: Optional[int] = None) -> bool:
    if chain.chain_status != "active":
        return False
    if stale_after_days is not None:
        window = stale_after_days
    elif chain.stale_after_days is not None:
        window = chain.stale_after_days
    else:
        window = DEFAULT_STALE_AFTER_DAYS
    if window <= 0:
        raise ValueError(f"stale_after_days must be positive, got {window}")
    last_activity = chain.current_state_since or chain.trigger.occurred_at
    return last_activity < now - timedelta(days=window)


# ---------------------------------------------------------------------------
# activity log
# ---------------------------------------------------------------------------


def _hash_payload(payload: Dict[str, object], prev_hash: str) -> str:
    msg = json.dumps(payload, sort_keys=True, ensure_ascii=True).encode("utf-8")
    return hashlib.sha256(prev_hash.encode("utf-8") + b"|" + msg).hexdigest()


def _append_activity(
    conn: sqlite3.Connection,
    actor: str,
    actor_role: str,
    action: str,
    entity_id: str,
    payload: Dict[str, object],
    previous_state: Dict[str, object],
    new_state: Dict[str, object],
    reason: str,
    created_at: str,
) -> None:
    prev_hash_row = conn.execute("SELECT event_hash FROM chain_activity_log ORDER BY id DESC LIMIT 1").fetchone()
    prev_hash_candidate = str(prev_hash_row[0]) if prev_hash_row and prev_hash_row[0] else ""
    prev_hash = prev_hash_candidate if len(prev_hash_candidate) == 64 else "GENESIS"

    canonical_payload = {
        "actor": actor,
        "actor_role": actor_role,
        "action": action,
        "entity_id": entity_id,
        "payload": payload,
        "previous_state": previous_state,
        "new_state": new_state,
        "reason": reason,
        "created_at": created_at,
    }
    event_hash = _hash_payload(canonical_payload, prev_hash)

    conn.execute(
        """
        INSERT INTO chain_activity_log (
            actor, actor_role, action, entity_id,
            payload_json, previous_state_json, new_state_json,
            reason, prev_hash, event_hash, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            actor,
            actor_role,
            action,
            entity_id,
            json.dumps(payload, ensure_ascii=True, sort_keys=True),
            json.dumps(previous_state, ensure_ascii=True, sort_keys=True),
            json.dumps(new_state, ensure_ascii=True, sort_keys=True),
            reason,
            prev_hash,
            event_hash,
            created_at,
        ),
    )


# ---------------------------------------------------------------------------
# sqlite repository
# ---------------------------------------------------------------------------


def init_chain_store(path: Path = CHAIN_DB_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS narrative_chains (
                id TEXT PRIMARY KEY,
                shipment_id TEXT NOT NULL,
                chain_type TEXT NOT NULL,
                chain_status TEXT NOT NULL DEFAULT 'active',
                trigger_chronicle_id TEXT,
                trigger_event_type TEXT NOT NULL,
                trigger_summary TEXT NOT NULL DEFAULT '',
                trigger_occurred_at TEXT NOT NULL,
                trigger_party TEXT,
                chain_events_json TEXT NOT NULL DEFAULT '[]',
                current_state TEXT,
                current_state_party TEXT,
                current_state_since TEXT,
                narrative_headline TEXT,
                narrative_summary TEXT,
                full_narrative TEXT,
                delay_impact_days INTEGER,
                financial_impact_usd REAL,
                affected_parties_json TEXT NOT NULL DEFAULT '[]',
                resolution_required INTEGER DEFAULT 1,
                resolution_deadline TEXT,
                resolved_at TEXT,
                resolution_chronicle_id TEXT,
                resolution_summary TEXT,
                auto_detected INTEGER DEFAULT 1,
                confidence_score INTEGER CHECK (confidence_score >= 0 AND confidence_score <= 100),
                stale_after_days INTEGER DEFAULT 7,
                created_at TEXT,
                updated_at TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_narrative_chains_live
                ON narrative_chains(shipment_id, chain_type, trigger_chronicle_id)
                WHERE chain_status != 'superseded';
            CREATE INDEX IF NOT EXISTS idx_narrative_chains_status ON narrative_chains(chain_status, shipment_id);
            CREATE INDEX IF NOT EXISTS idx_narrative_chains_updated ON narrative_chains(shipment_id, updated_at);

            CREATE TABLE IF NOT EXISTS chain_activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor TEXT,
                actor_role TEXT,
                action TEXT,
                entity_id TEXT,
                payload_json TEXT,
                previous_state_json TEXT,
                new_state_json TEXT,
                reason TEXT,
                prev_hash TEXT,
                event_hash TEXT,
                created_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_chain_activity_entity ON chain_activity_log(entity_id);
            """
        )
        conn.commit()
    finally:
        conn.close()


def _status_snapshot(row: Optional[sqlite3.Row]) -> Dict[str, object]:
    if row is None:
        return {}
    return {
        "chain_status": row["chain_status"],
        "resolved_at": row["resolved_at"],
        "resolution_summary": row["resolution_summary"],
        "updated_at": row["updated_at"],
    }


_SELECT_LIVE_BY_KEY = (
    "SELECT id, chain_status, resolved_at, resolution_summary, updated_at FROM narrative_chains "
    "WHERE shipment_id = ? AND chain_type = ? AND trigger_chronicle_id = ? AND chain_status != 'superseded'"
)


class SqliteChainRepository:
    def __init__(self, path: Path = CHAIN_DB_PATH) -> None:
        self.path = path
        init_chain_store(path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def upsert(self, chain: NarrativeChain, now: Optional[datetime] = None) -> NarrativeChain:
        now = now or utc_now()
        row = serialize_chain(chain)
        row["id"] = str(uuid.uuid4())
        row["created_at"] = to_iso(now)
        row["updated_at"] = to_iso(now)
        key = (chain.shipment_id, chain.chain_type, chain.trigger.chronicle_id)

        updates = [f"{col}=excluded.{col}" for col in _DETECTED_COLUMNS]
        updates += [
            f"{col}=CASE WHEN narrative_chains.chain_status = 'active' "
            f"THEN excluded.{col} ELSE narrative_chains.{col} END"
            for col in _STATE_COLUMNS
        ]
        updates += [
            "chain_status=CASE WHEN narrative_chains.chain_status = 'active' "
            "THEN excluded.chain_status ELSE narrative_chains.chain_status END",
            "confidence_score=MAX(narrative_chains.confidence_score, excluded.confidence_score)",
            "resolved_at=COALESCE(excluded.resolved_at, narrative_chains.resolved_at)",
            "resolution_summary=COALESCE(excluded.resolution_summary, narrative_chains.resolution_summary)",
        ]
        sql = (
            f"INSERT INTO narrative_chains ({', '.join(CHAIN_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in CHAIN_COLUMNS)}) "
            "ON CONFLICT(shipment_id, chain_type, trigger_chronicle_id) WHERE chain_status != 'superseded' "
            f"DO UPDATE SET {', '.join(updates)}"
        )

        try:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                prev = conn.execute(_SELECT_LIVE_BY_KEY, key).fetchone()
                conn.execute(sql, tuple(row[col] for col in CHAIN_COLUMNS))
                curr = conn.execute(_SELECT_LIVE_BY_KEY, key).fetchone()
                if curr is None:
                    raise PersistenceError(f"chain upsert produced no live row for {key}")

                chain_id = str(curr["id"])
                if prev is None:
                    _append_activity(
                        conn=conn,
                        actor="detector",
                        actor_role="system",
                        action="chain_detected",
                        entity_id=chain_id,
                        payload={"shipment_id": chain.shipment_id, "chain_type": chain.chain_type},
                        previous_state={},
                        new_state=_status_snapshot(curr),
                        reason="pattern detection",
                        created_at=to_iso(now) or "",
                    )
                elif str(prev["chain_status"]) != str(curr["chain_status"]):
                    _append_activity(
                        conn=conn,
                        actor="detector",
                        actor_role="system",
                        action="chain_status_auto",
                        entity_id=chain_id,
                        payload={"chain_status": curr["chain_status"]},
                        previous_state=_status_snapshot(prev),
                        new_state=_status_snapshot(curr),
                        reason="completion criteria met",
                        created_at=to_iso(now) or "",
                    )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"chain upsert failed for {key}: {exc}") from exc

        stored = self.get_chain(chain_id, now=now)
        if stored is None:
            raise PersistenceError(f"chain {chain_id} vanished after upsert")
        return stored

    def _fetch(self, where_sql: str, params: tuple, now: Optional[datetime]) -> List[NarrativeChain]:
        now = now or utc_now()
        sql = f"SELECT {', '.join(CHAIN_COLUMNS)} FROM narrative_chains WHERE {where_sql} ORDER BY updated_at DESC"
        try:
            conn = self._connect()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"chain read failed: {exc}") from exc
        return [deserialize_chain(dict(r)).rehydrate(now) for r in rows]

    def get_chain(self, chain_id: str, now: Optional[datetime] = None) -> Optional[NarrativeChain]:
        rows = self._fetch("id = ?", (chain_id,), now)
        return rows[0] if rows else None

    def get_active_chains(self, shipment_id: str, now: Optional[datetime] = None) -> List[NarrativeChain]:
        return self._fetch("shipment_id = ? AND chain_status = 'active'", (shipment_id,), now)

    def get_all_chains(self, shipment_id: str, now: Optional[datetime] = None) -> List[NarrativeChain]:
        return self._fetch("shipment_id = ?", (shipment_id,), now)

    def update_chain_status(
        self,
        chain_id: str,
        status: str,
        resolution_summary: Optional[str] = None,
        actor: str = "operator",
        actor_role: str = "operator",
        now: Optional[datetime] = None,
    ) -> NarrativeChain:
        if not has_permission(actor_role, "chain_update"):
            raise PermissionError("actor does not have permission chain_update")
        normalized = normalize_status_input(status)
        now = now or utc_now()
        now_iso = to_iso(now) or ""
        summary = str(resolution_summary or "").strip() or None

        try:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                select_sql = (
                    "SELECT id, chain_status, resolved_at, resolution_summary, updated_at "
                    "FROM narrative_chains WHERE id = ?"
                )
                prev = conn.execute(select_sql, (chain_id,)).fetchone()
                if not prev:
                    raise ValueError(f"chain_id not found: {chain_id}")
                validate_status_transition(str(prev["chain_status"]), normalized, actor_role=actor_role)

                if normalized == "resolved":
                    conn.execute(
                        """
                        UPDATE narrative_chains
                        SET chain_status = ?, resolved_at = ?,
                            resolution_summary = COALESCE(?, resolution_summary), updated_at = ?
                        WHERE id = ?
                        """,
                        (normalized, now_iso, summary, now_iso, chain_id),
                    )
                else:
                    conn.execute(
                        "UPDATE narrative_chains SET chain_status = ?, updated_at = ? WHERE id = ?",
                        (normalized, now_iso, chain_id),
                    )
                curr = conn.execute(select_sql, (chain_id,)).fetchone()

                _append_activity(
                    conn=conn,
                    actor=actor,
                    actor_role=actor_role,
                    action="chain_status_update",
                    entity_id=chain_id,
                    payload={"chain_status": normalized, "resolution_summary": summary},
                    previous_state=_status_snapshot(prev),
                    new_state=_status_snapshot(curr),
                    reason="operator override",
                    created_at=now_iso,
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"status update failed for {chain_id}: {exc}") from exc

        updated = self.get_chain(chain_id, now=now)
        if updated is None:
            raise PersistenceError(f"chain {chain_id} vanished after status update")
        return updated

    def supersede_auto_detected(self, shipment_id: str, now: Optional[datetime] = None) -> int:
        now_iso = to_iso(now or utc_now()) or ""
        try:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                rows = conn.execute(
                    """
                    SELECT id, chain_status FROM narrative_chains
                    WHERE shipment_id = ? AND auto_detected = 1 AND chain_status != 'superseded'
                    """,
                    (shipment_id,),
                ).fetchall()
                ids = [str(r["id"]) for r in rows]
                if ids:
                    conn.executemany(
                        "UPDATE narrative_chains SET chain_status = 'superseded', updated_at = ? WHERE id = ?",
                        [(now_iso, chain_id) for chain_id in ids],
                    )
                    _append_activity(
                        conn=conn,
                        actor="refresh",
                        actor_role="system",
                        action="chain_supersede",
                        entity_id=shipment_id,
                        payload={"chain_ids": ids, "count": len(ids)},
                        previous_state={str(r["id"]): str(r["chain_status"]) for r in rows},
                        new_state={chain_id: "superseded" for chain_id in ids},
                        reason="refresh re-detection",
                        created_at=now_iso,
                    )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"supersede failed for {shipment_id}: {exc}") from exc
        return len(ids)

    def mark_stale_chains(self, now: Optional[datetime] = None, stale_after_days: Optional[int] = None) -> int:
        _check_window(stale_after_days)
        now = now or utc_now()
        now_iso = to_iso(now) or ""
        try:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                rows = conn.execute(
                    f"SELECT {', '.join(CHAIN_COLUMNS)} FROM narrative_chains WHERE chain_status = 'active'"
                ).fetchall()
                stale_ids = [
                    str(r["id"]) for r in rows if is_stale(deserialize_chain(dict(r)), now, stale_after_days)
                ]
                if stale_ids:
                    conn.executemany(
                        "UPDATE narrative_chains SET chain_status = 'stale', updated_at = ? WHERE id = ?",
                        [(now_iso, chain_id) for chain_id in stale_ids],
                    )
                    _append_activity(
                        conn=conn,
                        actor="stale_sweep",
                        actor_role="system",
                        action="chain_stale",
                        entity_id="bulk",
                        payload={"chain_ids": stale_ids, "count": len(stale_ids), "window_days": stale_after_days},
                        previous_state={chain_id: "active" for chain_id in stale_ids},
                        new_state={chain_id: "stale" for chain_id in stale_ids},
                        reason="inactivity window elapsed",
                        created_at=now_iso,
                    )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"stale sweep failed: {exc}") from exc
        return len(stale_ids)


def fetch_chain_activity(chain_id: str, path: Path = CHAIN_DB_PATH, limit: int = 30) -> List[Dict[str, object]]:
    init_chain_store(path)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        rows = conn.execute(
            """
            SELECT id, actor, actor_role, action, entity_id,
                   payload_json, previous_state_json, new_state_json,
                   reason, prev_hash, event_hash, created_at
            FROM chain_activity_log
            WHERE entity_id = ? OR payload_json LIKE ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (chain_id, f'%"{chain_id}"%', limit),
        ).fetchall()
    finally:
        conn.close()

    parsed = []
    for row in rows:
        item = dict(row)
        for key in ["payload_json", "previous_state_json", "new_state_json"]:
            try:
                item[key.replace("_json", "")] = json.loads(item.get(key, "{}") or "{}")
            except json.JSONDecodeError:
                item[key.replace("_json", "")] = {"raw": item.get(key, "")}
        parsed.append(item)
    return parsed


def verify_audit_chain(path: Path = CHAIN_DB_PATH, limit: int = 5000) -> Dict[str, object]:
    init_chain_store(path)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        rows = conn.execute(
            """
            SELECT id, actor, actor_role, action, entity_id,
                   payload_json, previous_state_json, new_state_json,
                   reason, prev_hash, event_hash, created_at
            FROM chain_activity_log
            ORDER BY id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    finally:
        conn.close()

    prev_hash = "GENESIS"
    checked = 0
    for row in rows:
        payload = {
            "actor": row["actor"],
            "actor_role": row["actor_role"],
            "action": row["action"],
            "entity_id": row["entity_id"],
            "payload": json.loads(row["payload_json"] or "{}"),
            "previous_state": json.loads(row["previous_state_json"] or "{}"),
            "new_state": json.loads(row["new_state_json"] or "{}"),
            "reason": row["reason"],
            "created_at": row["created_at"],
        }
        if str(row["prev_hash"] or "") != prev_hash:
            return {"valid": False, "checked": checked, "failed_id": int(row["id"]), "reason": "prev_hash_mismatch"}
        if str(row["event_hash"] or "") != _hash_payload(payload, prev_hash):
            return {"valid": False, "checked": checked, "failed_id": int(row["id"]), "reason": "event_hash_mismatch"}
        prev_hash = str(row["event_hash"])
        checked += 1

    return {"valid": True, "checked": checked, "latest_hash": prev_hash}


# ---------------------------------------------------------------------------
# in-memory repository
# ---------------------------------------------------------------------------


class InMemoryChainRepository:
    """Lock-guarded map keyed by live (shipment, chain type, trigger)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, NarrativeChain] = {}
        self._live: Dict[ChainKey, str] = {}
        self.activity: List[Dict[str, object]] = []

    def _record(self, action: str, entity_id: str, previous: str, new: str, actor: str = "system") -> None:
        self.activity.append(
            {"action": action, "entity_id": entity_id, "previous_status": previous, "new_status": new, "actor": actor}
        )

    def upsert(self, chain: NarrativeChain, now: Optional[datetime] = None) -> NarrativeChain:
        now = now or utc_now()
        with self._lock:
            existing_id = self._live.get(chain.key)
            stored = copy.deepcopy(chain)
            stored.updated_at = now
            if existing_id is None:
                stored.id = str(uuid.uuid4())
                stored.created_at = now
                self._live[chain.key] = stored.id
                self._record("chain_detected", stored.id, "", stored.chain_status)
            else:
                existing = self._rows[existing_id]
                stored.id = existing.id
                stored.created_at = existing.created_at
                if existing.chain_status != "active":
                    stored.chain_status = existing.chain_status
                    stored.current_state = existing.current_state
                    stored.current_state_party = existing.current_state_party
                    stored.current_state_since = existing.current_state_since
                    stored.narrative_summary = existing.narrative_summary
                stored.confidence_score = max(existing.confidence_score, stored.confidence_score)
                stored.resolution.resolved_at = stored.resolution.resolved_at or existing.resolution.resolved_at
                stored.resolution.summary = stored.resolution.summary or existing.resolution.summary
                if stored.chain_status != existing.chain_status:
                    self._record("chain_status_auto", stored.id, existing.chain_status, stored.chain_status)
            self._rows[stored.id] = stored
            return copy.deepcopy(stored).rehydrate(now)

    def get_chain(self, chain_id: str, now: Optional[datetime] = None) -> Optional[NarrativeChain]:
        with self._lock:
            row = self._rows.get(chain_id)
            return copy.deepcopy(row).rehydrate(now or utc_now()) if row else None

    def _select(self, shipment_id: str, now: Optional[datetime], active_only: bool) -> List[NarrativeChain]:
        now = now or utc_now()
        with self._lock:
            rows = [
                copy.deepcopy(r)
                for r in self._rows.values()
                if r.shipment_id == shipment_id and (not active_only or r.chain_status == "active")
            ]
        rows.sort(key=lambda r: r.updated_at or now, reverse=True)
        return [r.rehydrate(now) for r in rows]

    def get_active_chains(self, shipment_id: str, now: Optional[datetime] = None) -> List[NarrativeChain]:
        return self._select(shipment_id, now, active_only=True)

    def get_all_chains(self, shipment_id: str, now: Optional[datetime] = None) -> List[NarrativeChain]:
        return self._select(shipment_id, now, active_only=False)

    def update_chain_status(
        self,
        chain_id: str,
        status: str,
        resolution_summary: Optional[str] = None,
        actor: str = "operator",
        actor_role: str = "operator",
        now: Optional[datetime] = None,
    ) -> NarrativeChain:
        if not has_permission(actor_role, "chain_update"):
            raise PermissionError("actor does not have permission chain_update")
        normalized = normalize_status_input(status)
        now = now or utc_now()
        with self._lock:
            row = self._rows.get(chain_id)
            if row is None:
                raise ValueError(f"chain_id not found: {chain_id}")
            validate_status_transition(row.chain_status, normalized, actor_role=actor_role)
            previous = row.chain_status
            row.chain_status = normalized
            row.updated_at = now
            if normalized == "resolved":
                row.resolution.resolved_at = now
                summary = str(resolution_summary or "").strip()
                if summary:
                    row.resolution.summary = summary
            self._record("chain_status_update", chain_id, previous, normalized, actor=actor)
            return copy.deepcopy(row).rehydrate(now)

    def supersede_auto_detected(self, shipment_id: str, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        count = 0
        with self._lock:
            for row in self._rows.values():
                if row.shipment_id != shipment_id or not row.auto_detected or row.chain_status == "superseded":
                    continue
                self._record("chain_supersede", row.id, row.chain_status, "superseded")
                row.chain_status = "superseded"
                row.updated_at = now
                self._live.pop(row.key, None)
                count += 1
        return count

    def mark_stale_chains(self, now: Optional[datetime] = None, stale_after_days: Optional[int] = None) -> int:
        _check_window(stale_after_days)
        now = now or utc_now()
        count = 0
        with self._lock:
            for row in self._rows.values():
                if is_stale(row, now, stale_after_days):
                    self._record("chain_stale", row.id, row.chain_status, "stale")
                    row.chain_status = "stale"
                    row.updated_at = now
                    count += 1
        return count
