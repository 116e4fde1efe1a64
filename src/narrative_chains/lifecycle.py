"""Lifecycle controller for narrative chains.

Wires a chronicle event store and a chain repository together:

* ``detect_chains_for_shipment`` runs a full detection pass and upserts every
  chain by its (shipment, chain type, trigger) key.
* ``refresh_chains`` supersedes the shipment's auto-detected chains and then
  detects again. Between the two steps the shipment has no live chains; the
  next successful pass repairs that.
* ``mark_stale_chains`` is the periodic inactivity sweep.
* ``update_chain_status`` is the operator override.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .chain_store import ChainRepository, allowed_next_statuses
from .chronicle_store import ChronicleEventStore
from .config import ChainPolicy, load_chain_policy
from .detection import detect_chains
from .models import DetectionNotice, DetectionResult, NarrativeChain, PersistenceError
from .timeutil import Clock, utc_now

logger = logging.getLogger(__name__)

__all__ = ["NarrativeChainService", "allowed_next_statuses"]


class NarrativeChainService:
    def __init__(
        self,
        event_store: ChronicleEventStore,
        repository: ChainRepository,
        policy: Optional[ChainPolicy] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.event_store = event_store
        self.repository = repository
        self.policy = policy or load_chain_policy()
        self.clock = clock or utc_now

    def _now(self) -> datetime:
        return self.clock()

    def detect_chains_for_shipment(self, shipment_id: str) -> DetectionResult:
        now = self._now()
        events, skipped = self.event_store.fetch_timeline(shipment_id)
        detected = detect_chains(shipment_id, events, now, self.policy)
        for notice in detected.notices:
            logger.debug("shipment %s event %s %s: %s", shipment_id, notice.chronicle_id, notice.kind, notice.reason)

        result = DetectionResult(shipment_id=shipment_id, notices=[*skipped, *detected.notices])
        for chain in detected.chains:
            try:
                result.chains.append(self.repository.upsert(chain, now=now))
            except PersistenceError as exc:
                logger.warning(
                    "could not persist %s chain for trigger %s on %s: %s",
                    chain.chain_type,
                    chain.trigger.chronicle_id,
                    shipment_id,
                    exc,
                )
                result.notices.append(
                    DetectionNotice(chronicle_id=chain.trigger.chronicle_id, kind="persistence_failed", reason=str(exc))
                )

        logger.info(
            "shipment %s: %d events, %d chains persisted, %d notices",
            shipment_id,
            len(events),
            len(result.chains),
            len(result.notices),
        )
        return result

    def refresh_chains(self, shipment_id: str) -> DetectionResult:
        superseded = self.repository.supersede_auto_detected(shipment_id, now=self._now())
        logger.info("shipment %s: superseded %d auto-detected chains", shipment_id, superseded)
        return self.detect_chains_for_shipment(shipment_id)

    def mark_stale_chains(self, stale_after_days: Optional[int] = None) -> int:
        window = stale_after_days if stale_after_days is not None else self.policy.stale_after_days
        if window <= 0:
            raise ValueError("stale_after_days must be positive")
        # An explicit argument overrides every row; otherwise rows keep the window they were detected with.
        count = self.repository.mark_stale_chains(now=self._now(), stale_after_days=stale_after_days)
        logger.info("stale sweep flipped %d chains (window=%s days)", count, window)
        return count

    def update_chain_status(
        self,
        chain_id: str,
        status: str,
        resolution_summary: Optional[str] = None,
        actor: str = "operator",
        actor_role: str = "operator",
    ) -> NarrativeChain:
        return self.repository.update_chain_status(
            chain_id,
            status,
            resolution_summary=resolution_summary,
            actor=actor,
            actor_role=actor_role,
            now=self._now(),
        )

    def get_active_chains(self, shipment_id: str) -> List[NarrativeChain]:
        return self.repository.get_active_chains(shipment_id, now=self._now())

    def get_all_chains(self, shipment_id: str) -> List[NarrativeChain]:
        return self.repository.get_all_chains(shipment_id, now=self._now())
