from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = PROJECT_ROOT / "data"
PROCESSED_DIR = DATA_DIR / "processed"
OUTPUT_DIR = DATA_DIR / "output"
POLICY_DIR = PROJECT_ROOT / "policy"

CHAIN_DB_PATH = Path(os.getenv("NC_CHAIN_DB_PATH", str(PROCESSED_DIR / "narrative_chains.db")))
CHRONICLE_DB_PATH = Path(os.getenv("NC_CHRONICLE_DB_PATH", str(PROCESSED_DIR / "chronicle.db")))
CHAIN_POLICY_PATH = Path(os.getenv("NC_CHAIN_POLICY_PATH", str(POLICY_DIR / "chain_policy.yaml")))
LOG_LEVEL = os.getenv("NC_LOG_LEVEL", "INFO").strip().upper() or "INFO"

DEFAULT_STALE_AFTER_DAYS = 7


@dataclass(frozen=True)
class ConfidenceWeights:
    issue_base: int = 60
    issue_type_bonus: int = 15
    effects_bonus: int = 10
    deadline_bonus: int = 10
    communication: int = 85
    delay: int = 80
    missing_thread_penalty: int = 25
    missing_issue_type_penalty: int = 10


@dataclass(frozen=True)
class ChainPolicy:
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS
    internal_parties: FrozenSet[str] = frozenset({"intoglo", "operations"})
    default_internal_owner: str = "operations"
    default_affected_parties: Tuple[str, ...] = ("shipper", "consignee")
    delay_estimates: Dict[str, int] = field(
        default_factory=lambda: {"delay": 3, "rollover": 7, "hold": 5, "customs": 3}
    )
    response_message_types: FrozenSet[str] = frozenset({"action_required", "request", "query"})
    delay_issue_types: FrozenSet[str] = frozenset({"delay", "rollover"})
    delay_issue_keywords: Tuple[str, ...] = ("schedule",)
    delay_summary_keywords: Tuple[str, ...] = ("delay", "rollover")
    schedule_keywords: Tuple[str, ...] = ("schedule", "new etd")
    confirmation_keywords: Tuple[str, ...] = ("confirmed",)
    weights: ConfidenceWeights = field(default_factory=ConfidenceWeights)


_FROZENSET_KEYS = {"internal_parties", "response_message_types", "delay_issue_types"}
_TUPLE_KEYS = {
    "default_affected_parties",
    "delay_issue_keywords",
    "delay_summary_keywords",
    "schedule_keywords",
    "confirmation_keywords",
}


def _positive_int(value: object, name: str) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if parsed <= 0:
        raise ValueError(f"{name} must be positive, got {parsed}")
    return parsed


def _lowered(values: object, name: str) -> Tuple[str, ...]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise ValueError(f"policy key `{name}` must be a list")
    return tuple(str(v).strip().lower() for v in values if str(v).strip())


def _weights_from_mapping(raw: object) -> ConfidenceWeights:
    if not isinstance(raw, dict):
        raise ValueError("policy key `weights` must be a mapping")
    known = {f.name for f in fields(ConfidenceWeights)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"unknown confidence weights: {', '.join(unknown)}")
    return ConfidenceWeights(**{k: int(v) for k, v in raw.items()})


def policy_from_mapping(payload: Dict[str, object]) -> ChainPolicy:
    known = {f.name for f in fields(ChainPolicy)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValueError(f"unknown chain policy keys: {', '.join(unknown)}")

    overrides: Dict[str, object] = {}
    for key, value in payload.items():
        if key == "stale_after_days":
            overrides[key] = _positive_int(value, key)
        elif key == "default_internal_owner":
            overrides[key] = str(value or "").strip().lower()
        elif key == "delay_estimates":
            if not isinstance(value, dict):
                raise ValueError("policy key `delay_estimates` must be a mapping")
            overrides[key] = {str(k).strip().lower(): int(v) for k, v in value.items()}
        elif key == "weights":
            overrides[key] = _weights_from_mapping(value)
        elif key in _FROZENSET_KEYS:
            overrides[key] = frozenset(_lowered(value, key))
        elif key in _TUPLE_KEYS:
            overrides[key] = _lowered(value, key)
    return ChainPolicy(**overrides)  # type: ignore[arg-type]


def load_chain_policy(
    path: Optional[Path] = None,
    stale_after_days: Optional[int] = None,
) -> ChainPolicy:
    """Build the detection/lifecycle policy.

    Precedence for the inactivity window: explicit argument, then
    ``NC_STALE_AFTER_DAYS``, then the YAML file, then the built-in default.
    A missing policy file is not an error.
    """
    policy_path = path if path is not None else CHAIN_POLICY_PATH
    payload: Dict[str, object] = {}
    if policy_path.exists():
        with policy_path.open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"chain policy YAML must be a mapping: {policy_path}")
        payload = dict(loaded)

    env_window = os.getenv("NC_STALE_AFTER_DAYS", "").strip()
    if stale_after_days is not None:
        payload["stale_after_days"] = stale_after_days
    elif env_window:
        payload["stale_after_days"] = env_window

    return policy_from_mapping(payload)
