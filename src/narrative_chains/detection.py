from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Mapping, Sequence, Set, Tuple

from .config import ChainPolicy
from .detectors import DETECTORS
from .models import ChronicleEvent, DetectionNotice, DetectionResult, MalformedEventError, NarrativeChain


def events_from_records(records: Iterable[Mapping[str, object]]) -> Tuple[List[ChronicleEvent], List[DetectionNotice]]:
    events: List[ChronicleEvent] = []
    notices: List[DetectionNotice] = []
    for record in records:
        try:
            events.append(ChronicleEvent.from_record(record))
        except MalformedEventError as exc:
            raw_id = record.get("id")
            notices.append(
                DetectionNotice(chronicle_id=str(raw_id) if raw_id else None, kind="skipped", reason=str(exc))
            )
    events.sort(key=lambda e: e.occurred_at)
    return events, notices


def deduplicate_chains(chains: Sequence[NarrativeChain]) -> List[NarrativeChain]:
    """Keep the first chain per (chain type, trigger event)."""
    seen: Set[Tuple[str, str]] = set()
    unique: List[NarrativeChain] = []
    for chain in chains:
        key = (chain.chain_type, chain.trigger.chronicle_id or "")
        if key in seen:
            continue
        seen.add(key)
        unique.append(chain)
    return unique


def detect_chains(
    shipment_id: str,
    events: Sequence[ChronicleEvent],
    now: datetime,
    policy: ChainPolicy,
) -> DetectionResult:
    """Run every applicable detector over each event once, then deduplicate."""
    result = DetectionResult(shipment_id=shipment_id)
    ordered = sorted(events, key=lambda e: e.occurred_at)

    candidates: List[NarrativeChain] = []
    for event in ordered:
        for chain_type, pre_filter, detector in DETECTORS:
            if not pre_filter(event, policy):
                continue
            try:
                chain = detector(event, ordered, now, policy, notices=result.notices)
            except (TypeError, ValueError) as exc:
                result.notices.append(
                    DetectionNotice(chronicle_id=event.id, kind="skipped", reason=f"{chain_type}: {exc}")
                )
                continue
            if chain is not None:
                if not chain.shipment_id:
                    chain.shipment_id = shipment_id
                candidates.append(chain)

    result.chains = deduplicate_chains(candidates)
    return result
