from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Sequence

import pandas as pd

from .models import CHAIN_STATUSES, NarrativeChain
from .timeutil import to_iso

FRAME_COLUMNS = [
    "chain_id",
    "shipment_id",
    "chain_type",
    "chain_status",
    "narrative_headline",
    "current_state",
    "current_state_party",
    "days_in_current_state",
    "trigger_chronicle_id",
    "trigger_days_ago",
    "event_count",
    "delay_days",
    "resolution_deadline",
    "confidence_score",
    "updated_at",
]

ATTENTION_DAYS_IN_STATE = 3


def chains_frame(chains: Sequence[NarrativeChain]) -> pd.DataFrame:
    rows = [
        {
            "chain_id": c.id,
            "shipment_id": c.shipment_id,
            "chain_type": c.chain_type,
            "chain_status": c.chain_status,
            "narrative_headline": c.narrative_headline,
            "current_state": c.current_state,
            "current_state_party": c.current_state_party,
            "days_in_current_state": c.days_in_current_state,
            "trigger_chronicle_id": c.trigger.chronicle_id,
            "trigger_days_ago": c.trigger.days_ago,
            "event_count": len(c.events),
            "delay_days": c.impact.delay_days,
            "resolution_deadline": c.resolution.deadline,
            "confidence_score": c.confidence_score,
            "updated_at": c.updated_at,
        }
        for c in chains
    ]
    frame = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    for col in ["resolution_deadline", "updated_at"]:
        frame[col] = pd.to_datetime(frame[col], errors="coerce", utc=True)
    return frame


def summarize_chains(chains: Sequence[NarrativeChain]) -> Dict[str, object]:
    frame = chains_frame(chains)
    if frame.empty:
        return {
            "total": 0,
            "active": 0,
            "status_breakdown": [],
            "type_breakdown": [],
            "avg_confidence": 0.0,
        }

    status_counts = frame["chain_status"].value_counts()
    type_counts = frame.loc[frame["chain_status"] != "superseded", "chain_type"].value_counts()
    return {
        "total": int(len(frame)),
        "active": int(status_counts.get("active", 0)),
        "status_breakdown": [
            {"chain_status": status, "cnt": int(status_counts.get(status, 0))}
            for status in CHAIN_STATUSES
            if int(status_counts.get(status, 0)) > 0
        ],
        "type_breakdown": [{"chain_type": str(k), "cnt": int(v)} for k, v in type_counts.items()],
        "avg_confidence": round(float(frame["confidence_score"].mean()), 2),
    }


def attention_worklist(chains: Sequence[NarrativeChain], now: datetime, limit: int = 20) -> List[Dict[str, object]]:
    """Active chains, overdue deadlines first, then long-idle ones, newest update first within a tier."""
    frame = chains_frame([c for c in chains if c.chain_status == "active"])
    if frame.empty:
        return []

    now_ts = pd.Timestamp(now)
    if now_ts.tzinfo is None:
        now_ts = now_ts.tz_localize("UTC")
    overdue = frame["resolution_deadline"].notna() & (frame["resolution_deadline"] < now_ts)
    idle = frame["days_in_current_state"] > ATTENTION_DAYS_IN_STATE
    frame["attention_tier"] = 3
    frame.loc[idle, "attention_tier"] = 2
    frame.loc[overdue, "attention_tier"] = 1
    frame = frame.sort_values(["attention_tier", "updated_at"], ascending=[True, False], na_position="last")

    items: List[Dict[str, object]] = []
    for row in frame.head(limit).to_dict(orient="records"):
        deadline = row.get("resolution_deadline")
        items.append(
            {
                "chain_id": row["chain_id"],
                "shipment_id": row["shipment_id"],
                "chain_type": row["chain_type"],
                "headline": row["narrative_headline"],
                "current_state": row["current_state"],
                "waiting_on": row["current_state_party"],
                "days_in_current_state": int(row["days_in_current_state"]),
                "resolution_deadline": to_iso(deadline.to_pydatetime()) if pd.notna(deadline) else None,
                "attention_tier": int(row["attention_tier"]),
            }
        )
    return items
