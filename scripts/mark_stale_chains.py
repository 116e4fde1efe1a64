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

from narrative_chains.chain_store import SqliteChainRepository, verify_audit_chain
from narrative_chains.chronicle_store import SqliteChronicleStore
from narrative_chains.config import CHAIN_DB_PATH, CHRONICLE_DB_PATH, LOG_LEVEL, load_chain_policy
from narrative_chains.lifecycle import NarrativeChainService


def main() -> None:
    parser = argparse.ArgumentParser(description="Flip idle active chains to stale")
    parser.add_argument("--stale-after-days", type=int, default=None)
    parser.add_argument("--chain-db", default=str(CHAIN_DB_PATH))
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    chain_db = Path(args.chain_db)
    service = NarrativeChainService(
        event_store=SqliteChronicleStore(CHRONICLE_DB_PATH),
        repository=SqliteChainRepository(chain_db),
        policy=load_chain_policy(stale_after_days=args.stale_after_days),
    )
    count = service.mark_stale_chains(stale_after_days=args.stale_after_days)
    payload = {
        "chain_db": str(chain_db),
        "marked_stale": count,
        "audit": verify_audit_chain(chain_db),
    }
    print(json.dumps(payload, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()
