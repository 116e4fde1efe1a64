#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from narrative_chains.chain_store import SqliteChainRepository
from narrative_chains.chronicle_store import SqliteChronicleStore
from narrative_chains.config import CHAIN_DB_PATH, CHRONICLE_DB_PATH, LOG_LEVEL, load_chain_policy
from narrative_chains.lifecycle import NarrativeChainService
from narrative_chains.models import DataFetchError


def main() -> None:
    parser = argparse.ArgumentParser(description="Detect or refresh narrative chains for shipments")
    parser.add_argument("shipment_ids", nargs="+")
    parser.add_argument("--refresh", action="store_true", help="supersede auto-detected chains first")
    parser.add_argument("--chronicle-db", default=str(CHRONICLE_DB_PATH))
    parser.add_argument("--chain-db", default=str(CHAIN_DB_PATH))
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    service = NarrativeChainService(
        event_store=SqliteChronicleStore(Path(args.chronicle_db)),
        repository=SqliteChainRepository(Path(args.chain_db)),
        policy=load_chain_policy(),
    )

    results = []
    failures = []
    for shipment_id in args.shipment_ids:
        try:
            if args.refresh:
                result = service.refresh_chains(shipment_id)
            else:
                result = service.detect_chains_for_shipment(shipment_id)
        except DataFetchError as exc:
            failures.append({"shipment_id": shipment_id, "error": str(exc)})
            continue
        results.append(result.as_dict())

    print(json.dumps({"results": results, "failures": failures}, ensure_ascii=True, indent=2))
    if failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
