#!/usr/bin/env python3
"""Ingest a solver evidence manifest into the watchtower store.

Verification failures are recorded as signals, not treated as process
failures: the exit code is 0 whenever the pipeline completes and 1 on a
configuration or I/O error.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import orjson

from watchtower_core.config import ConfigError, load_config
from watchtower_core.ingest import IngestError, ingest_receipt
from watchtower_core.store import WatchtowerStore

log = logging.getLogger("ingest_receipt")


def main() -> int:
    parser = argparse.ArgumentParser(description="Ingest a solver evidence manifest.")
    parser.add_argument("--agent-id", required=True, help="Agent (solver) identifier")
    parser.add_argument("--manifest", type=Path, required=True, help="Path to evidence/manifest.json")
    parser.add_argument("--run-dir", type=Path, help="Run directory (default: inferred from manifest path)")
    parser.add_argument("--db", type=Path, help="DuckDB store path (default: WATCHTOWER_DB_PATH)")
    parser.add_argument("--json", action="store_true", help="Print JSON result to stdout")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config()
    except ConfigError as exc:
        log.error("invalid configuration: %s", exc)
        return 1

    db_path = args.db or config.db_path
    try:
        with WatchtowerStore(db_path, create_if_missing=True) as store:
            result = ingest_receipt(
                store,
                args.agent_id,
                args.manifest,
                args.run_dir,
                options=config.verify_options(),
                snapshot_limit=config.snapshot_limit,
            )
    except (IngestError, OSError) as exc:
        log.error("%s", exc)
        return 1

    if args.json:
        sys.stdout.buffer.write(
            orjson.dumps(result.to_dict(), option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)
            + b"\n"
        )
    else:
        print(
            f"receipt ingest: ok={result.ok} receipt={result.receipt_id} "
            f"snapshot={result.snapshot_id} risk={result.overall_risk} "
            f"alerts={result.alert_count} signals={','.join(result.signals_produced)}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
