"""Ingest pipeline: read manifest → normalize → verify → derive signals → store.

Verification outcomes are data and never abort an ingest. The only errors
raised here are operational (the receipt file itself cannot be read) and
store errors, which propagate unchanged.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from watchtower_core.behavior_signals import derive_behavior_signals, schema_invalid_signal
from watchtower_core.io_utils import canonical_hash, sha256_hex
from watchtower_core.models import Signal, Snapshot, sort_signals
from watchtower_core.scoring import score_agent
from watchtower_core.solver_receipt import (
    MANIFEST_PATH,
    NormalizedReceipt,
    SchemaError,
    normalize_receipt,
    parse_manifest_bytes,
    placeholder_receipt_id,
)
from watchtower_core.store import WatchtowerStore
from watchtower_core.verify_evidence import VerificationResult, VerifyOptions, verify_evidence

log = logging.getLogger(__name__)


class IngestError(RuntimeError):
    """The receipt file could not be read; nothing was verified or stored."""


@dataclass(frozen=True, slots=True)
class IngestResult:
    receipt_id: str
    snapshot_id: str
    report_id: str
    ok: bool
    overall_risk: int
    alert_count: int
    signals_produced: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "receiptId": self.receipt_id,
            "snapshotId": self.snapshot_id,
            "reportId": self.report_id,
            "ok": self.ok,
            "overallRisk": self.overall_risk,
            "alertCount": self.alert_count,
            "signalsProduced": list(self.signals_produced),
        }


@dataclass(frozen=True, slots=True)
class ReceiptCheck:
    """Read-only verification outcome for one manifest file."""

    manifest_sha256: str
    receipt: NormalizedReceipt | None
    result: VerificationResult | None
    schema_error: SchemaError | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None and self.result.ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "manifestSha256": self.manifest_sha256,
            "receiptId": (
                self.receipt.receipt_id
                if self.receipt is not None
                else placeholder_receipt_id(self.manifest_sha256)
            ),
            "schemaError": str(self.schema_error) if self.schema_error else None,
            "verification": self.result.to_dict() if self.result is not None else None,
        }


def infer_run_dir(receipt_path: Path | str) -> Path:
    """Run directory for a manifest at ``<runDir>/evidence/manifest.json``.

    Falls back to the manifest's own directory for any other layout.
    """
    path = Path(receipt_path).resolve()
    if path.as_posix().endswith("/" + MANIFEST_PATH):
        return path.parent.parent
    return path.parent


def read_receipt_bytes(receipt_path: Path | str) -> bytes:
    try:
        return Path(receipt_path).read_bytes()
    except OSError as exc:
        raise IngestError(f"Cannot read receipt file {receipt_path}: {exc}") from exc


def verify_receipt_file(
    receipt_path: Path | str,
    run_dir: Path | str | None = None,
    options: VerifyOptions | None = None,
) -> ReceiptCheck:
    """Parse, normalize and verify one manifest file without touching a store."""
    raw = read_receipt_bytes(receipt_path)
    manifest_sha256 = sha256_hex(raw)
    try:
        manifest = parse_manifest_bytes(raw)
    except SchemaError as exc:
        return ReceiptCheck(manifest_sha256, None, None, schema_error=exc)

    receipt = normalize_receipt(manifest, manifest_sha256)
    effective_run_dir = run_dir if run_dir is not None else infer_run_dir(receipt_path)
    result = verify_evidence(receipt, effective_run_dir, options)
    return ReceiptCheck(manifest_sha256, receipt, result)


def compute_snapshot_id(agent_id: str, signals: list[Signal]) -> str:
    """Snapshot identity; observation times are excluded so re-ingest is idempotent."""
    return canonical_hash(
        {"agentId": agent_id, "signals": [s.identity_dict() for s in signals]}
    )


def ingest_receipt(
    store: WatchtowerStore,
    agent_id: str,
    receipt_path: Path | str,
    run_dir: Path | str | None = None,
    *,
    options: VerifyOptions | None = None,
    now: int | None = None,
    snapshot_limit: int = 10,
) -> IngestResult:
    observed_at = int(time.time()) if now is None else now

    check = verify_receipt_file(receipt_path, run_dir, options)
    if check.schema_error is not None or check.receipt is None or check.result is None:
        error = str(check.schema_error) if check.schema_error else "Invalid manifest"
        log.warning("receipt %s rejected before verification: %s", receipt_path, error)
        receipt_id = placeholder_receipt_id(check.manifest_sha256)
        ok = False
        signals = [schema_invalid_signal(check.manifest_sha256, error, observed_at)]
    else:
        receipt_id = check.receipt.receipt_id
        ok = check.result.ok
        signals = derive_behavior_signals(check.result, check.receipt, observed_at)

    signals = sort_signals(signals)
    snapshot_id = compute_snapshot_id(agent_id, signals)

    agent = store.upsert_agent(agent_id, now=observed_at)
    inserted = store.insert_snapshot(
        Snapshot(
            snapshot_id=snapshot_id,
            agent_id=agent_id,
            observed_at=observed_at,
            signals=tuple(signals),
        )
    )
    if not inserted:
        log.debug("snapshot %s already stored for agent %s", snapshot_id, agent_id)

    snapshots = store.get_latest_snapshots(agent_id, limit=snapshot_limit)
    scored = score_agent(agent, snapshots, observed_at)
    store.insert_risk_report(scored.report)
    alert_count = store.insert_alerts(scored.new_alerts) if scored.new_alerts else 0

    signal_ids = tuple(s.signal_id for s in signals)
    log.info(
        "ingested receipt %s for agent %s: ok=%s snapshot=%s signals=%s",
        receipt_id, agent_id, ok, snapshot_id, ",".join(signal_ids),
    )
    return IngestResult(
        receipt_id=receipt_id,
        snapshot_id=snapshot_id,
        report_id=scored.report.report_id,
        ok=ok,
        overall_risk=scored.report.overall_risk,
        alert_count=alert_count,
        signals_produced=signal_ids,
    )
