from __future__ import annotations

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from narrative_chains.chain_store import serialize_chain
from narrative_chains.config import ChainPolicy
from narrative_chains.detection import deduplicate_chains, detect_chains, events_from_records
from narrative_chains.models import ChronicleEvent, MalformedEventError

DAY0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
POLICY = ChainPolicy()


def iso_day(n: float) -> str:
    return (DAY0 + timedelta(days=n)).isoformat()


RECORDS = [
    {
        "id": "r3",
        "shipment_id": "SHP-9",
        "thread_id": "T-2",
        "direction": "outbound",
        "from_party": "operations",
        "message_type": "update",
        "summary": "Shared revised schedule with customer",
        "has_action": True,
        "action_owner": "operations",
        "action_description": "Chase carrier for new ETD",
        "action_deadline": iso_day(4),
        "occurred_at": iso_day(2),
    },
    {
        "id": "r1",
        "shipment_id": "SHP-9",
        "thread_id": "T-1",
        "direction": "inbound",
        "from_party": "carrier",
        "message_type": "request",
        "summary": "Vessel delay, please confirm rebooking",
        "has_issue": 1,
        "issue_type": "delay",
        "occurred_at": iso_day(0),
    },
    {
        "id": "r2",
        "shipment_id": "SHP-9",
        "thread_id": "T-1",
        "direction": "outbound",
        "from_party": "operations",
        "message_type": "response",
        "summary": "Rebooking accepted",
        "occurred_at": iso_day(1),
    },
    {
        "id": "r0",
        "shipment_id": "SHP-9",
        "direction": "inbound",
        "has_action": "true",
        "action_owner": "trucker",
        "occurred_at": iso_day(-2),
        "summary": "Pickup slot requested",
    },
    {"id": "bad", "shipment_id": "SHP-9", "summary": "no timestamp"},
]


class TestDetectionPass(unittest.TestCase):
    def setUp(self) -> None:
        self.events, self.load_notices = events_from_records(RECORDS)
        self.now = DAY0 + timedelta(days=3)

    def test_malformed_records_are_skipped_not_fatal(self) -> None:
        self.assertEqual([e.id for e in self.events], ["r0", "r1", "r2", "r3"])
        self.assertEqual(len(self.load_notices), 1)
        self.assertEqual(self.load_notices[0].chronicle_id, "bad")
        self.assertEqual(self.load_notices[0].kind, "skipped")

    def test_one_trigger_seeds_several_chain_types(self) -> None:
        result = detect_chains("SHP-9", self.events, self.now, POLICY)
        keys = sorted(result.keys)

        self.assertEqual(
            keys,
            [("communication_chain", "r1"), ("delay_chain", "r1"), ("issue_to_action", "r1")],
        )
        by_type = {c.chain_type: c for c in result.chains}
        self.assertEqual(by_type["communication_chain"].chain_status, "resolved")
        self.assertEqual(by_type["delay_chain"].chain_status, "active")
        self.assertEqual([e.chronicle_id for e in by_type["delay_chain"].events], ["r3"])
        self.assertEqual(by_type["issue_to_action"].current_state, "1 action(s) pending")
        self.assertEqual(by_type["issue_to_action"].confidence_score, 95)

    def test_pass_is_idempotent_for_fixed_clock(self) -> None:
        first = detect_chains("SHP-9", self.events, self.now, POLICY)
        second = detect_chains("SHP-9", list(reversed(self.events)), self.now, POLICY)

        self.assertEqual(first.keys, second.keys)
        self.assertEqual(
            [serialize_chain(c) for c in first.chains],
            [serialize_chain(c) for c in second.chains],
        )

    def test_invariants_hold_for_every_chain(self) -> None:
        result = detect_chains("SHP-9", self.events, self.now, POLICY)
        self.assertEqual(len(result.keys), len(set(result.keys)))
        for chain in result.chains:
            self.assertGreaterEqual(chain.confidence_score, 0)
            self.assertLessEqual(chain.confidence_score, 100)
            for event in chain.events:
                self.assertGreaterEqual(event.days_from_trigger, 0)

    def test_deduplicator_keeps_first_per_type_and_trigger(self) -> None:
        result = detect_chains("SHP-9", self.events, self.now, POLICY)
        issue_chain = next(c for c in result.chains if c.chain_type == "issue_to_action")
        duplicate = detect_chains("SHP-9", self.events, self.now + timedelta(days=5), POLICY).chains[0]

        unique = deduplicate_chains([issue_chain, duplicate, *result.chains])
        self.assertEqual(len(unique), 3)
        self.assertIs(unique[0], issue_chain)

    def test_naive_timestamps_are_read_as_utc(self) -> None:
        naive_issue = ChronicleEvent(
            id="n1",
            shipment_id="SHP-9",
            occurred_at=datetime(2026, 3, 2, 12, 0),
            direction="inbound",
            from_party="carrier",
            summary="Vessel delay at origin",
            has_issue=True,
            issue_type="delay",
            action_deadline=datetime(2026, 3, 4, 12, 0),
        )
        self.assertEqual(naive_issue.occurred_at, datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
        self.assertEqual(naive_issue.action_deadline.tzinfo, timezone.utc)

        result = detect_chains("SHP-9", [*self.events, naive_issue], self.now, POLICY)
        self.assertIn(("issue_to_action", "n1"), result.keys)
        self.assertIn(("delay_chain", "n1"), result.keys)

        with self.assertRaises(MalformedEventError):
            ChronicleEvent(id="n2", shipment_id="SHP-9", occurred_at=None)  # type: ignore[arg-type]

    def test_no_events_no_chains(self) -> None:
        result = detect_chains("SHP-EMPTY", [], self.now, POLICY)
        self.assertEqual(result.chains, [])
        self.assertEqual(result.notices, [])


if __name__ == "__main__":
    unittest.main()
