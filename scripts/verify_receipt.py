#!/usr/bin/env python3
"""Verify a solver evidence manifest against its run directory (read-only).

Exit codes: 0 verification passed, 2 verification failed (including a
manifest that fails schema validation), 1 configuration or I/O error.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

import orjson

from watchtower_core.config import ConfigError, load_config
from watchtower_core.ingest import IngestError, verify_receipt_file
from watchtower_core.verify_evidence import VerifyOptions

log = logging.getLogger("verify_receipt")


def _print_summary(payload: dict[str, Any]) -> None:
    verification = payload.get("verification") or {}
    failures = verification.get("failures") or []
    status = "pass" if payload["ok"] else "fail"
    print(f"receipt verification: status={status} receipt={payload['receiptId']}")
    if payload.get("schemaError"):
        print(f"  schema: {payload['schemaError']}")
    for failure in failures:
        path = failure.get("path") or "-"
        print(f"  {failure['code']} {path}: {failure['message']}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify a solver evidence manifest.")
    parser.add_argument("--manifest", type=Path, required=True, help="Path to evidence/manifest.json")
    parser.add_argument("--run-dir", type=Path, help="Run directory (default: inferred from manifest path)")
    parser.add_argument("--max-manifest-bytes", type=int, help="Manifest size ceiling in bytes")
    parser.add_argument("--max-artifact-bytes", type=int, help="Per-artifact size ceiling in bytes")
    parser.add_argument("--json", action="store_true", help="Print JSON report to stdout")
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

    options = VerifyOptions(
        max_manifest_bytes=args.max_manifest_bytes or config.max_manifest_bytes,
        max_artifact_bytes=args.max_artifact_bytes or config.max_artifact_bytes,
    )

    try:
        check = verify_receipt_file(args.manifest, args.run_dir, options)
    except IngestError as exc:
        log.error("%s", exc)
        return 1

    payload = check.to_dict()
    if args.json:
        sys.stdout.buffer.write(
            orjson.dumps(payload, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS) + b"\n"
        )
    else:
        _print_summary(payload)

    return 0 if check.ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
