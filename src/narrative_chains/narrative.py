from __future__ import annotations

from typing import Optional

PARTY_LABELS = {
    "carrier": "Shipping Line",
    "ocean_carrier": "Shipping Line",
    "customer": "Customer",
    "broker": "Customs Broker",
    "customs_broker": "Customs Broker",
    "trucker": "Trucker",
    "terminal": "Terminal",
    "intoglo": "Operations",
    "operations": "Operations",
    "unknown": "Unknown Party",
}

ISSUE_HEADLINES = {
    "delay": "Vessel Delay",
    "rollover": "Vessel Rollover",
    "hold": "Shipment Hold",
    "documentation": "Document Issue",
    "customs": "Customs Issue",
    "damage": "Cargo Damage",
    "missing_document": "Missing Document",
    "payment": "Payment Issue",
}

HEADLINE_MAX_CHARS = 50
QUOTE_MAX_CHARS = 60


def format_party_name(party: Optional[str]) -> str:
    value = str(party or "").strip()
    if not value:
        return "Unknown"
    return PARTY_LABELS.get(value.lower(), value)


def narrative_headline(chain_type: str, trigger_type: Optional[str], trigger_summary: Optional[str]) -> str:
    issue_key = str(trigger_type or "").strip().lower()
    mapped = ISSUE_HEADLINES.get(issue_key)

    if chain_type == "delay_chain":
        return mapped or "Schedule Change"
    if chain_type == "communication_chain":
        return "Pending Response"
    if chain_type == "document_chain":
        return "Document Processing"
    if mapped:
        return mapped

    fallback = str(trigger_summary or "").strip()[:HEADLINE_MAX_CHARS]
    return fallback or "Shipment Issue"


def narrative_summary(
    chain_type: str,
    event_type: str,
    summary: str,
    party: Optional[str],
    current_state: str,
) -> str:
    party_name = format_party_name(party)
    if chain_type == "issue_to_action":
        return f"{party_name} reported {event_type}. {current_state}"
    if chain_type == "delay_chain":
        return f"{event_type} reported by {party_name}. {current_state}"
    if chain_type == "communication_chain":
        return f"Message from {party_name} requires attention. {current_state}"
    if chain_type == "document_chain":
        return f"Document {event_type}. {current_state}"
    return f"{summary}. {current_state}"


def communication_summary(party: Optional[str], summary: str, current_state: str) -> str:
    text = str(summary or "").strip()
    quoted = text[:QUOTE_MAX_CHARS]
    if len(text) > QUOTE_MAX_CHARS:
        quoted += "..."
    return f'{format_party_name(party)} sent: "{quoted}". {current_state}'
