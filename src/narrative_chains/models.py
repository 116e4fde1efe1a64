from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from .timeutil import days_between, parse_iso_datetime, to_iso

CHAIN_TYPES = (
    "issue_to_action",
    "action_to_resolution",
    "communication_chain",
    "escalation_chain",
    "delay_chain",
    "document_chain",
)
CHAIN_STATUSES = ("active", "resolved", "stale", "superseded")
LIVE_STATUSES = {"active", "resolved", "stale"}
CHAIN_RELATIONS = ("caused_by", "resolved_by", "followed_by")
NOTICE_KINDS = ("skipped", "degraded", "persistence_failed")

ChainKey = Tuple[str, str, str]


class NarrativeChainError(Exception):
    pass


class DataFetchError(NarrativeChainError):
    """The chronicle event store could not be read."""


class PersistenceError(NarrativeChainError):
    """A chain could not be written to or read from the chain repository."""


class MalformedEventError(NarrativeChainError):
    """A chronicle record cannot be placed on a shipment timeline."""


def _clean_text(value: object) -> Optional[str]:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw or raw.lower() in {"nan", "none", "null"}:
        return None
    return raw


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == value and bool(value)
    return str(value or "").strip().lower() in {"1", "true", "t", "yes", "y"}


@dataclass(frozen=True)
class ChronicleEvent:
    id: str
    shipment_id: str
    occurred_at: datetime
    thread_id: Optional[str] = None
    direction: Optional[str] = None
    from_party: Optional[str] = None
    from_address: Optional[str] = None
    message_type: Optional[str] = None
    sentiment: Optional[str] = None
    summary: str = ""
    has_issue: bool = False
    issue_type: Optional[str] = None
    issue_description: Optional[str] = None
    has_action: bool = False
    action_description: Optional[str] = None
    action_owner: Optional[str] = None
    action_deadline: Optional[datetime] = None
    action_completed_at: Optional[datetime] = None
    action_priority: Optional[str] = None
    document_type: Optional[str] = None

    def __post_init__(self) -> None:
        # All event timestamps are aware UTC.
        occurred_at = parse_iso_datetime(self.occurred_at)
        if occurred_at is None:
            raise MalformedEventError(f"chronicle event {self.id} has no parseable occurred_at")
        object.__setattr__(self, "occurred_at", occurred_at)
        for name in ("action_deadline", "action_completed_at"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, parse_iso_datetime(value))

    @classmethod
    def from_record(cls, record: Mapping[str, object]) -> "ChronicleEvent":
        event_id = _clean_text(record.get("id"))
        if event_id is None:
            raise MalformedEventError("chronicle record has no id")
        occurred_at = parse_iso_datetime(record.get("occurred_at"))
        if occurred_at is None:
            raise MalformedEventError(f"chronicle record {event_id} has no parseable occurred_at")

        direction = _clean_text(record.get("direction"))
        return cls(
            id=event_id,
            shipment_id=_clean_text(record.get("shipment_id")) or "",
            occurred_at=occurred_at,
            thread_id=_clean_text(record.get("thread_id")),
            direction=direction.lower() if direction else None,
            from_party=_clean_text(record.get("from_party")),
            from_address=_clean_text(record.get("from_address")),
            message_type=_clean_text(record.get("message_type")),
            sentiment=_clean_text(record.get("sentiment")),
            summary=_clean_text(record.get("summary")) or "",
            has_issue=_as_bool(record.get("has_issue")),
            issue_type=_clean_text(record.get("issue_type")),
            issue_description=_clean_text(record.get("issue_description")),
            has_action=_as_bool(record.get("has_action")),
            action_description=_clean_text(record.get("action_description")),
            action_owner=_clean_text(record.get("action_owner")),
            action_deadline=parse_iso_datetime(record.get("action_deadline")),
            action_completed_at=parse_iso_datetime(record.get("action_completed_at")),
            action_priority=_clean_text(record.get("action_priority")),
            document_type=_clean_text(record.get("document_type")),
        )


@dataclass
class ChainEvent:
    chronicle_id: str
    event_type: str
    summary: str
    occurred_at: datetime
    party: Optional[str]
    relation: str
    days_from_trigger: int

    def as_dict(self) -> Dict[str, object]:
        return {
            "chronicle_id": self.chronicle_id,
            "event_type": self.event_type,
            "summary": self.summary,
            "occurred_at": to_iso(self.occurred_at),
            "party": self.party,
            "relation": self.relation,
            "days_from_trigger": self.days_from_trigger,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "ChainEvent":
        occurred_at = parse_iso_datetime(payload.get("occurred_at"))
        if occurred_at is None:
            raise ValueError(f"chain event {payload.get('chronicle_id')!r} has no occurred_at")
        return cls(
            chronicle_id=str(payload.get("chronicle_id", "")),
            event_type=str(payload.get("event_type", "")),
            summary=str(payload.get("summary", "") or ""),
            occurred_at=occurred_at,
            party=_clean_text(payload.get("party")),
            relation=str(payload.get("relation", "followed_by")),
            days_from_trigger=int(payload.get("days_from_trigger", 0) or 0),
        )


@dataclass
class ChainTrigger:
    chronicle_id: Optional[str]
    event_type: str
    summary: str
    occurred_at: datetime
    party: Optional[str]
    days_ago: int = 0


@dataclass
class ChainImpact:
    delay_days: Optional[int] = None
    financial_usd: Optional[float] = None
    affected_parties: List[str] = field(default_factory=list)


@dataclass
class ChainResolution:
    required: bool = True
    deadline: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class NarrativeChain:
    shipment_id: str
    chain_type: str
    chain_status: str
    trigger: ChainTrigger
    events: List[ChainEvent] = field(default_factory=list)
    current_state: str = ""
    current_state_party: Optional[str] = None
    current_state_since: Optional[datetime] = None
    days_in_current_state: int = 0
    narrative_headline: Optional[str] = None
    narrative_summary: Optional[str] = None
    full_narrative: Optional[str] = None
    impact: ChainImpact = field(default_factory=ChainImpact)
    resolution: ChainResolution = field(default_factory=ChainResolution)
    auto_detected: bool = True
    confidence_score: int = 0
    stale_after_days: Optional[int] = None
    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> ChainKey:
        return (self.shipment_id, self.chain_type, self.trigger.chronicle_id or "")

    def rehydrate(self, now: datetime) -> "NarrativeChain":
        """Recompute the time-relative fields against ``now``."""
        self.trigger.days_ago = max(0, days_between(self.trigger.occurred_at, now))
        anchor = self.current_state_since or self.trigger.occurred_at
        self.days_in_current_state = max(0, days_between(anchor, now))
        return self


@dataclass(frozen=True)
class DetectionNotice:
    chronicle_id: Optional[str]
    kind: str
    reason: str

    def as_dict(self) -> Dict[str, object]:
        return {"chronicle_id": self.chronicle_id, "kind": self.kind, "reason": self.reason}


@dataclass
class DetectionResult:
    shipment_id: str
    chains: List[NarrativeChain] = field(default_factory=list)
    notices: List[DetectionNotice] = field(default_factory=list)

    @property
    def keys(self) -> List[Tuple[str, str]]:
        return [(c.chain_type, c.trigger.chronicle_id or "") for c in self.chains]

    def as_dict(self) -> Dict[str, object]:
        return {
            "shipment_id": self.shipment_id,
            "chain_count": len(self.chains),
            "chains": [
                {
                    "id": c.id,
                    "chain_type": c.chain_type,
                    "chain_status": c.chain_status,
                    "trigger_chronicle_id": c.trigger.chronicle_id,
                    "current_state": c.current_state,
                    "confidence_score": c.confidence_score,
                }
                for c in self.chains
            ],
            "notices": [n.as_dict() for n in self.notices],
        }
