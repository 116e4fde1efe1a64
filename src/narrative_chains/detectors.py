"""Pattern detectors that link a trigger chronicle event to its effects.

Each detector is a pure function of ``(trigger, events, now, policy)`` and
returns at most one :class:`NarrativeChain`. Detectors never raise on missing
optional fields: they fall back to neutral values, lower the confidence score
and, when a ``notices`` list is supplied, record why.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from .config import ChainPolicy
from .models import (
    ChainEvent,
    ChainImpact,
    ChainResolution,
    ChainTrigger,
    ChronicleEvent,
    DetectionNotice,
    NarrativeChain,
)
from .narrative import communication_summary, narrative_headline, narrative_summary
from .timeutil import days_between

Detector = Callable[..., Optional[NarrativeChain]]
PreFilter = Callable[[ChronicleEvent, ChainPolicy], bool]


def _norm(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def _contains_any(text: Optional[str], keywords: Sequence[str]) -> bool:
    lowered = _norm(text)
    return bool(lowered) and any(kw in lowered for kw in keywords)


def _degrade(notices: Optional[List[DetectionNotice]], event: ChronicleEvent, reason: str) -> None:
    if notices is not None:
        notices.append(DetectionNotice(chronicle_id=event.id, kind="degraded", reason=reason))


def _clamp_confidence(value: int) -> int:
    return max(0, min(100, int(value)))


def _chronological(events: Sequence[ChronicleEvent]) -> List[ChronicleEvent]:
    return sorted(events, key=lambda e: e.occurred_at)


# ---------------------------------------------------------------------------
# pre-filters
# ---------------------------------------------------------------------------


def is_issue_trigger(event: ChronicleEvent, policy: ChainPolicy) -> bool:
    return event.has_issue


def needs_response(event: ChronicleEvent, policy: ChainPolicy) -> bool:
    if _norm(event.direction) != "inbound":
        return False
    return _norm(event.message_type) in policy.response_message_types or _norm(event.sentiment) == "urgent"


def is_delay_event(event: ChronicleEvent, policy: ChainPolicy) -> bool:
    if not event.has_issue:
        return False
    issue_type = _norm(event.issue_type)
    if issue_type in policy.delay_issue_types:
        return True
    if _contains_any(issue_type, policy.delay_issue_keywords):
        return True
    return _contains_any(event.summary, policy.delay_summary_keywords)


# ---------------------------------------------------------------------------
# issue -> action
# ---------------------------------------------------------------------------


def estimate_delay_days(issue_type: Optional[str], policy: ChainPolicy) -> Optional[int]:
    key = _norm(issue_type)
    if not key:
        return None
    return policy.delay_estimates.get(key)


def identify_affected_parties(
    trigger: ChronicleEvent,
    pending_actions: Sequence[ChronicleEvent],
    policy: ChainPolicy,
) -> List[str]:
    parties: List[str] = []

    def add(party: Optional[str]) -> None:
        if party and party not in parties:
            parties.append(party)

    if trigger.from_party and _norm(trigger.from_party) not in policy.internal_parties:
        add(trigger.from_party)
    for action in pending_actions:
        if action.action_owner and _norm(action.action_owner) != policy.default_internal_owner:
            add(action.action_owner)
    for party in policy.default_affected_parties:
        add(party)
    return parties


def earliest_open_deadline(actions: Sequence[ChronicleEvent]) -> Optional[datetime]:
    deadlines = [a.action_deadline for a in actions if a.action_deadline and a.action_completed_at is None]
    return min(deadlines) if deadlines else None


def issue_confidence(trigger: ChronicleEvent, actions: Sequence[ChronicleEvent], policy: ChainPolicy) -> int:
    weights = policy.weights
    confidence = weights.issue_base
    if trigger.issue_type:
        confidence += weights.issue_type_bonus
    if actions:
        confidence += weights.effects_bonus
    if any(a.action_deadline for a in actions):
        confidence += weights.deadline_bonus
    return _clamp_confidence(confidence)


def detect_issue_to_action(
    trigger: ChronicleEvent,
    events: Sequence[ChronicleEvent],
    now: datetime,
    policy: ChainPolicy,
    notices: Optional[List[DetectionNotice]] = None,
) -> Optional[NarrativeChain]:
    """Issue reported -> action(s) required -> action(s) completed."""
    actions = _chronological(
        [e for e in events if e.has_action and e.id != trigger.id and e.occurred_at >= trigger.occurred_at]
    )
    pending = [a for a in actions if a.action_completed_at is None]
    overdue = [a for a in pending if a.action_deadline and a.action_deadline < now]
    all_done = bool(actions) and not pending

    if not trigger.issue_type:
        _degrade(notices, trigger, "issue type missing; confidence lowered")

    chain_events = [
        ChainEvent(
            chronicle_id=a.id,
            event_type="action_required",
            summary=a.action_description or a.summary,
            occurred_at=a.occurred_at,
            party=a.action_owner or a.from_party,
            relation="caused_by",
            days_from_trigger=days_between(trigger.occurred_at, a.occurred_at),
        )
        for a in actions
    ]

    current_state = "Issue reported - awaiting action"
    current_state_party: Optional[str] = "Operations"
    if pending:
        current_state = f"{len(pending)} action(s) pending"
        if overdue:
            current_state += f" - {len(overdue)} overdue"
        current_state_party = pending[0].action_owner or "Operations"
    elif all_done:
        current_state = "All actions completed"
        current_state_party = None

    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    if all_done:
        last_done = max(actions, key=lambda a: a.action_completed_at)  # type: ignore[arg-type,return-value]
        resolved_at = last_done.action_completed_at
        resolved_by = last_done.id

    event_type = trigger.issue_type or "unknown_issue"
    trigger_summary = trigger.issue_description or trigger.summary
    return NarrativeChain(
        shipment_id=trigger.shipment_id,
        chain_type="issue_to_action",
        chain_status="resolved" if all_done else "active",
        trigger=ChainTrigger(
            chronicle_id=trigger.id,
            event_type=event_type,
            summary=trigger_summary,
            occurred_at=trigger.occurred_at,
            party=trigger.from_party,
        ),
        events=chain_events,
        current_state=current_state,
        current_state_party=current_state_party,
        current_state_since=actions[-1].occurred_at if actions else trigger.occurred_at,
        narrative_headline=narrative_headline("issue_to_action", trigger.issue_type, trigger_summary),
        narrative_summary=narrative_summary(
            "issue_to_action",
            trigger.issue_type or "issue",
            trigger_summary,
            trigger.from_party,
            current_state,
        ),
        impact=ChainImpact(
            delay_days=estimate_delay_days(trigger.issue_type, policy),
            affected_parties=identify_affected_parties(trigger, pending, policy),
        ),
        resolution=ChainResolution(
            required=True,
            deadline=earliest_open_deadline(actions),
            resolved_at=resolved_at,
            resolved_by=resolved_by,
            summary=current_state if all_done else None,
        ),
        confidence_score=issue_confidence(trigger, actions, policy),
        stale_after_days=policy.stale_after_days,
    ).rehydrate(now)


# ---------------------------------------------------------------------------
# communication
# ---------------------------------------------------------------------------


def detect_communication(
    trigger: ChronicleEvent,
    events: Sequence[ChronicleEvent],
    now: datetime,
    policy: ChainPolicy,
    notices: Optional[List[DetectionNotice]] = None,
) -> Optional[NarrativeChain]:
    """Inbound message needing a reply -> outbound reply in the same thread."""
    confidence = policy.weights.communication
    if trigger.thread_id is None:
        _degrade(notices, trigger, "thread id missing; replies cannot be matched")
        confidence -= policy.weights.missing_thread_penalty
        replies: List[ChronicleEvent] = []
    else:
        replies = _chronological(
            [
                e
                for e in events
                if e.thread_id == trigger.thread_id
                and e.id != trigger.id
                and _norm(e.direction) == "outbound"
                and e.occurred_at > trigger.occurred_at
            ]
        )

    answered = bool(replies)
    if answered:
        current_state = "Response sent"
    else:
        current_state = f"Awaiting response - {max(0, days_between(trigger.occurred_at, now))} days"

    last_reply = replies[-1] if replies else None
    return NarrativeChain(
        shipment_id=trigger.shipment_id,
        chain_type="communication_chain",
        chain_status="resolved" if answered else "active",
        trigger=ChainTrigger(
            chronicle_id=trigger.id,
            event_type=trigger.message_type or "message",
            summary=trigger.summary,
            occurred_at=trigger.occurred_at,
            party=trigger.from_party,
        ),
        events=[
            ChainEvent(
                chronicle_id=r.id,
                event_type="response_sent",
                summary=r.summary,
                occurred_at=r.occurred_at,
                party="operations",
                relation="resolved_by",
                days_from_trigger=days_between(trigger.occurred_at, r.occurred_at),
            )
            for r in replies
        ],
        current_state=current_state,
        current_state_party=None if answered else "Operations",
        current_state_since=last_reply.occurred_at if last_reply else trigger.occurred_at,
        narrative_headline=narrative_headline("communication_chain", trigger.message_type, trigger.summary),
        narrative_summary=communication_summary(trigger.from_party, trigger.summary, current_state),
        impact=ChainImpact(affected_parties=[trigger.from_party] if trigger.from_party else []),
        resolution=ChainResolution(
            required=True,
            deadline=trigger.action_deadline,
            resolved_at=last_reply.occurred_at if last_reply else None,
            resolved_by=last_reply.id if last_reply else None,
            summary="Response sent" if answered else None,
        ),
        confidence_score=_clamp_confidence(confidence),
        stale_after_days=policy.stale_after_days,
    ).rehydrate(now)


# ---------------------------------------------------------------------------
# delay
# ---------------------------------------------------------------------------


def _is_schedule_follow_up(event: ChronicleEvent, policy: ChainPolicy) -> bool:
    return (
        _norm(event.document_type) == "booking_amendment"
        or _norm(event.message_type) == "update"
        or _contains_any(event.summary, policy.schedule_keywords)
    )


def _is_confirmation(event: ChronicleEvent, policy: ChainPolicy) -> bool:
    return _norm(event.message_type) == "confirmation" or _contains_any(event.summary, policy.confirmation_keywords)


def detect_delay(
    trigger: ChronicleEvent,
    events: Sequence[ChronicleEvent],
    now: datetime,
    policy: ChainPolicy,
    notices: Optional[List[DetectionNotice]] = None,
) -> Optional[NarrativeChain]:
    """Delay reported -> schedule follow-ups -> new schedule confirmed."""
    confidence = policy.weights.delay
    if not trigger.issue_type:
        _degrade(notices, trigger, "delay matched on summary only; issue type missing")
        confidence -= policy.weights.missing_issue_type_penalty

    follow_ups = _chronological(
        [e for e in events if e.occurred_at > trigger.occurred_at and _is_schedule_follow_up(e, policy)]
    )
    confirmations = [e for e in follow_ups if _is_confirmation(e, policy)]
    confirmed = bool(confirmations)
    current_state = "New schedule confirmed" if confirmed else "Awaiting new schedule from carrier"
    last_confirmation = confirmations[-1] if confirmations else None
    confirmation_ids = {c.id for c in confirmations}

    event_type = trigger.issue_type or "delay"
    trigger_summary = trigger.issue_description or trigger.summary
    return NarrativeChain(
        shipment_id=trigger.shipment_id,
        chain_type="delay_chain",
        chain_status="resolved" if confirmed else "active",
        trigger=ChainTrigger(
            chronicle_id=trigger.id,
            event_type=event_type,
            summary=trigger_summary,
            occurred_at=trigger.occurred_at,
            party=trigger.from_party,
        ),
        events=[
            ChainEvent(
                chronicle_id=e.id,
                event_type=e.document_type or e.message_type or "schedule_update",
                summary=e.summary,
                occurred_at=e.occurred_at,
                party=e.from_party,
                relation="resolved_by" if e.id in confirmation_ids else "followed_by",
                days_from_trigger=days_between(trigger.occurred_at, e.occurred_at),
            )
            for e in follow_ups
        ],
        current_state=current_state,
        current_state_party=None if confirmed else "Shipping Line",
        current_state_since=follow_ups[-1].occurred_at if follow_ups else trigger.occurred_at,
        narrative_headline=narrative_headline("delay_chain", event_type, ""),
        narrative_summary=narrative_summary(
            "delay_chain",
            trigger.issue_type or "Delay",
            trigger_summary,
            trigger.from_party,
            current_state,
        ),
        impact=ChainImpact(
            delay_days=estimate_delay_days(trigger.issue_type, policy),
            affected_parties=list(policy.default_affected_parties),
        ),
        resolution=ChainResolution(
            required=True,
            resolved_at=last_confirmation.occurred_at if last_confirmation else None,
            resolved_by=last_confirmation.id if last_confirmation else None,
            summary="New schedule confirmed" if confirmed else None,
        ),
        confidence_score=_clamp_confidence(confidence),
        stale_after_days=policy.stale_after_days,
    ).rehydrate(now)


DETECTORS: Tuple[Tuple[str, PreFilter, Detector], ...] = (
    ("issue_to_action", is_issue_trigger, detect_issue_to_action),
    ("communication_chain", needs_response, detect_communication),
    ("delay_chain", is_delay_event, detect_delay),
)
