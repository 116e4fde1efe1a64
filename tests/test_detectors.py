from __future__ import annotations

import sys
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from narrative_chains.config import ChainPolicy
from narrative_chains.detectors import (
    detect_communication,
    detect_delay,
    detect_issue_to_action,
    is_delay_event,
    needs_response,
)
from narrative_chains.models import ChronicleEvent

DAY0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
POLICY = ChainPolicy()


def day(n: float) -> datetime:
    return DAY0 + timedelta(days=n)


def make_event(event_id: str, **overrides: object) -> ChronicleEvent:
    base = {
        "id": event_id,
        "shipment_id": "SHP-1",
        "occurred_at": DAY0,
        "thread_id": "T-1",
        "direction": "inbound",
        "from_party": "carrier",
        "summary": f"event {event_id}",
    }
    base.update(overrides)
    return ChronicleEvent(**base)  # type: ignore[arg-type]


ROLLOVER = make_event("e1", has_issue=True, issue_type="rollover", summary="Booking rolled to next vessel")
PENDING_ACTION = make_event(
    "e2",
    occurred_at=day(1),
    direction="outbound",
    from_party="operations",
    has_action=True,
    action_description="Confirm new routing with shipper",
    action_owner="ops",
    action_deadline=day(5),
)


class TestIssueToAction(unittest.TestCase):
    def test_issue_without_actions_awaits_action(self) -> None:
        chain = detect_issue_to_action(ROLLOVER, [ROLLOVER], day(1), POLICY)

        self.assertIsNotNone(chain)
        self.assertEqual(chain.chain_type, "issue_to_action")
        self.assertEqual(chain.chain_status, "active")
        self.assertEqual(chain.current_state, "Issue reported - awaiting action")
        self.assertEqual(chain.current_state_party, "Operations")
        self.assertEqual(chain.impact.delay_days, 7)
        self.assertEqual(chain.confidence_score, 75)
        self.assertEqual(chain.impact.affected_parties, ["carrier", "shipper", "consignee"])
        self.assertEqual(chain.narrative_headline, "Vessel Rollover")
        self.assertEqual(chain.narrative_summary, "Shipping Line reported rollover. Issue reported - awaiting action")
        self.assertEqual(chain.events, [])

    def test_pending_action_then_overdue(self) -> None:
        events = [ROLLOVER, PENDING_ACTION]

        chain = detect_issue_to_action(ROLLOVER, events, day(2), POLICY)
        self.assertEqual(chain.chain_status, "active")
        self.assertEqual(chain.current_state, "1 action(s) pending")
        self.assertEqual(chain.current_state_party, "ops")
        self.assertEqual(chain.confidence_score, 95)
        self.assertEqual(chain.resolution.deadline, day(5))
        self.assertEqual(chain.impact.affected_parties, ["carrier", "ops", "shipper", "consignee"])
        self.assertEqual(len(chain.events), 1)
        self.assertEqual(chain.events[0].relation, "caused_by")
        self.assertEqual(chain.events[0].event_type, "action_required")
        self.assertEqual(chain.events[0].summary, "Confirm new routing with shipper")
        self.assertEqual(chain.events[0].days_from_trigger, 1)

        overdue = detect_issue_to_action(ROLLOVER, events, day(6), POLICY)
        self.assertEqual(overdue.current_state, "1 action(s) pending - 1 overdue")

    def test_completed_actions_resolve_chain(self) -> None:
        done = replace(PENDING_ACTION, action_completed_at=day(3))
        chain = detect_issue_to_action(ROLLOVER, [ROLLOVER, done], day(4), POLICY)

        self.assertEqual(chain.chain_status, "resolved")
        self.assertEqual(chain.current_state, "All actions completed")
        self.assertIsNone(chain.current_state_party)
        self.assertEqual(chain.resolution.resolved_at, day(3))
        self.assertEqual(chain.resolution.resolved_by, "e2")
        self.assertIsNone(chain.resolution.deadline)

    def test_actions_before_trigger_are_not_effects(self) -> None:
        earlier = replace(PENDING_ACTION, id="e0", occurred_at=day(-1))
        chain = detect_issue_to_action(ROLLOVER, [earlier, ROLLOVER], day(1), POLICY)

        self.assertEqual(chain.events, [])
        self.assertEqual(chain.current_state, "Issue reported - awaiting action")

    def test_internal_parties_are_not_affected(self) -> None:
        trigger = replace(ROLLOVER, from_party="intoglo")
        internal_owner = replace(PENDING_ACTION, action_owner="operations")
        chain = detect_issue_to_action(trigger, [trigger, internal_owner], day(2), POLICY)

        self.assertEqual(chain.impact.affected_parties, ["shipper", "consignee"])

    def test_missing_issue_type_lowers_confidence_and_notes_it(self) -> None:
        trigger = replace(ROLLOVER, issue_type=None)
        notices: list = []
        chain = detect_issue_to_action(trigger, [trigger], day(1), POLICY, notices=notices)

        self.assertEqual(chain.confidence_score, 60)
        self.assertIsNone(chain.impact.delay_days)
        self.assertEqual(chain.trigger.event_type, "unknown_issue")
        self.assertEqual([n.kind for n in notices], ["degraded"])


class TestCommunication(unittest.TestCase):
    def test_request_without_reply_awaits_response(self) -> None:
        request = make_event("c1", message_type="request", thread_id="T")
        other_thread_reply = make_event("c2", direction="outbound", thread_id="OTHER", occurred_at=day(1))
        chain = detect_communication(request, [request, other_thread_reply], day(4) - timedelta(hours=1), POLICY)

        self.assertEqual(chain.chain_type, "communication_chain")
        self.assertEqual(chain.chain_status, "active")
        self.assertEqual(chain.current_state, "Awaiting response - 4 days")
        self.assertEqual(chain.current_state_party, "Operations")
        self.assertEqual(chain.confidence_score, 85)
        self.assertEqual(chain.narrative_headline, "Pending Response")

    def test_outbound_reply_in_thread_resolves(self) -> None:
        request = make_event("c1", message_type="query", thread_id="T", summary="Please share the SI draft")
        reply = make_event("c2", direction="outbound", thread_id="T", occurred_at=day(1), summary="SI draft attached")
        chain = detect_communication(request, [request, reply], day(2), POLICY)

        self.assertEqual(chain.chain_status, "resolved")
        self.assertEqual(chain.current_state, "Response sent")
        self.assertEqual(chain.resolution.resolved_by, "c2")
        self.assertEqual(chain.resolution.resolved_at, day(1))
        self.assertEqual(chain.events[0].relation, "resolved_by")
        self.assertEqual(chain.events[0].party, "operations")
        self.assertEqual(chain.narrative_summary, 'Shipping Line sent: "Please share the SI draft". Response sent')

    def test_missing_thread_degrades(self) -> None:
        request = make_event("c1", message_type="request", thread_id=None)
        reply = make_event("c2", direction="outbound", thread_id=None, occurred_at=day(1))
        notices: list = []
        chain = detect_communication(request, [request, reply], day(2), POLICY, notices=notices)

        self.assertEqual(chain.chain_status, "active")
        self.assertEqual(chain.confidence_score, 60)
        self.assertEqual(notices[0].kind, "degraded")

    def test_pre_filter(self) -> None:
        self.assertTrue(needs_response(make_event("x", message_type="action_required"), POLICY))
        self.assertTrue(needs_response(make_event("x", message_type="update", sentiment="urgent"), POLICY))
        self.assertFalse(needs_response(make_event("x", message_type="request", direction="outbound"), POLICY))
        self.assertFalse(needs_response(make_event("x", message_type="update"), POLICY))


class TestDelay(unittest.TestCase):
    def test_confirmation_resolves_delay(self) -> None:
        update = make_event("d2", occurred_at=day(1), message_type="update", summary="Carrier revising schedule")
        confirm = make_event("d3", occurred_at=day(2), message_type="confirmation", summary="New ETD confirmed")
        chain = detect_delay(ROLLOVER, [ROLLOVER, update, confirm], day(3), POLICY)

        self.assertEqual(chain.chain_status, "resolved")
        self.assertEqual(chain.current_state, "New schedule confirmed")
        self.assertEqual([e.relation for e in chain.events], ["followed_by", "resolved_by"])
        self.assertEqual(chain.resolution.resolved_by, "d3")
        self.assertEqual(chain.resolution.resolved_at, day(2))
        self.assertEqual(chain.confidence_score, 80)
        self.assertEqual(chain.impact.affected_parties, ["shipper", "consignee"])

    def test_awaiting_new_schedule(self) -> None:
        amendment = make_event("d2", occurred_at=day(1), document_type="booking_amendment", summary="Amendment")
        chain = detect_delay(ROLLOVER, [ROLLOVER, amendment], day(3), POLICY)

        self.assertEqual(chain.chain_status, "active")
        self.assertEqual(chain.current_state, "Awaiting new schedule from carrier")
        self.assertEqual(chain.current_state_party, "Shipping Line")
        self.assertEqual(chain.events[0].event_type, "booking_amendment")

    def test_pre_filter_keywords(self) -> None:
        self.assertTrue(is_delay_event(ROLLOVER, POLICY))
        self.assertTrue(is_delay_event(make_event("x", has_issue=True, issue_type="schedule_change"), POLICY))
        self.assertTrue(is_delay_event(make_event("x", has_issue=True, summary="Vessel DELAY at origin"), POLICY))
        self.assertFalse(is_delay_event(make_event("x", has_issue=True, issue_type="damage"), POLICY))
        self.assertFalse(is_delay_event(make_event("x", summary="delay expected"), POLICY))

    def test_summary_only_match_is_degraded(self) -> None:
        trigger = make_event("d1", has_issue=True, summary="Vessel delay at transshipment")
        notices: list = []
        chain = detect_delay(trigger, [trigger], day(1), POLICY, notices=notices)

        self.assertEqual(chain.confidence_score, 70)
        self.assertEqual(chain.trigger.event_type, "delay")
        self.assertEqual(chain.narrative_headline, "Vessel Delay")
        self.assertEqual(len(notices), 1)


if __name__ == "__main__":
    unittest.main()
