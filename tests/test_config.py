from __future__ import annotations

import os
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from narrative_chains.config import CHAIN_POLICY_PATH, ChainPolicy, load_chain_policy, policy_from_mapping


class TestChainPolicy(unittest.TestCase):
    def setUp(self) -> None:
        self.old_window = os.environ.pop("NC_STALE_AFTER_DAYS", None)
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def tearDown(self) -> None:
        os.environ.pop("NC_STALE_AFTER_DAYS", None)
        if self.old_window is not None:
            os.environ["NC_STALE_AFTER_DAYS"] = self.old_window

    def _write(self, text: str) -> Path:
        path = Path(self.tmpdir.name) / "policy.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_shipped_policy_matches_defaults(self) -> None:
        self.assertEqual(load_chain_policy(CHAIN_POLICY_PATH), ChainPolicy())

    def test_missing_file_falls_back_to_defaults(self) -> None:
        policy = load_chain_policy(Path(self.tmpdir.name) / "absent.yaml")
        self.assertEqual(policy.stale_after_days, 7)
        self.assertEqual(policy.weights.communication, 85)

    def test_yaml_overrides_are_normalized(self) -> None:
        path = self._write(
            "stale_after_days: 10\n"
            "internal_parties: [Intoglo, ' Ops ']\n"
            "delay_estimates: {Rollover: 9}\n"
            "weights: {delay: 70}\n"
        )
        policy = load_chain_policy(path)

        self.assertEqual(policy.stale_after_days, 10)
        self.assertEqual(policy.internal_parties, frozenset({"intoglo", "ops"}))
        self.assertEqual(policy.delay_estimates, {"rollover": 9})
        self.assertEqual(policy.weights.delay, 70)
        self.assertEqual(policy.weights.communication, 85)

    def test_window_precedence(self) -> None:
        path = self._write("stale_after_days: 10\n")

        os.environ["NC_STALE_AFTER_DAYS"] = "14"
        self.assertEqual(load_chain_policy(path).stale_after_days, 14)
        self.assertEqual(load_chain_policy(path, stale_after_days=3).stale_after_days, 3)

        os.environ["NC_STALE_AFTER_DAYS"] = ""
        self.assertEqual(load_chain_policy(path).stale_after_days, 10)

    def test_invalid_policies_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            policy_from_mapping({"stale_after_dayz": 3})
        with self.assertRaises(ValueError):
            policy_from_mapping({"stale_after_days": 0})
        with self.assertRaises(ValueError):
            policy_from_mapping({"weights": {"bonus": 5}})
        with self.assertRaises(ValueError):
            load_chain_policy(self._write("- just\n- a list\n"))
        with self.assertRaises(ValueError):
            load_chain_policy(self._write("stale_after_days: 7\n"), stale_after_days=-1)


if __name__ == "__main__":
    unittest.main()
