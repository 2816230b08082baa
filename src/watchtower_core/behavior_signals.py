"""Map verification outcomes onto the fixed behavior-signal vocabulary.

Several failures with the same code never produce duplicate signals: they
collapse into one signal whose evidence lists every failing path.
"""
from __future__ import annotations

from dataclasses import dataclass

from watchtower_core.models import EvidenceLink, Severity, Signal, sort_evidence
from watchtower_core.solver_receipt import NormalizedReceipt
from watchtower_core.verify_evidence import VerificationFailure, VerificationResult, base_evidence


@dataclass(frozen=True, slots=True)
class SignalDef:
    signal_id: str
    severity: Severity
    weight: float
    codes: tuple[str, ...]


VERIFIED_OK = SignalDef("BE_VERIFIED_OK", "LOW", 0.1, ())
RECEIPT_SCHEMA_INVALID = SignalDef("BE_RECEIPT_SCHEMA_INVALID", "HIGH", 0.8, ())

SIGNAL_DEFS: tuple[SignalDef, ...] = (
    SignalDef("BE_MANIFEST_NOT_FOUND", "CRITICAL", 1.0, ("MANIFEST_NOT_FOUND",)),
    SignalDef("BE_MANIFEST_HASH_MISMATCH", "CRITICAL", 1.0, ("MANIFEST_HASH_MISMATCH",)),
    SignalDef("BE_MANIFEST_PARSE_FAIL", "HIGH", 0.8, ("MANIFEST_PARSE_FAIL", "MANIFEST_READ_ERROR")),
    SignalDef("BE_MANIFEST_SCHEMA_INVALID", "HIGH", 0.8, ("MANIFEST_SCHEMA_INVALID",)),
    SignalDef("BE_MANIFEST_TOO_LARGE", "HIGH", 0.8, ("MANIFEST_TOO_LARGE",)),
    SignalDef("BE_ARTIFACT_MISSING", "CRITICAL", 1.0, ("ARTIFACT_NOT_FOUND",)),
    SignalDef("BE_ARTIFACT_HASH_MISMATCH", "CRITICAL", 1.0, ("ARTIFACT_HASH_MISMATCH",)),
    SignalDef("BE_ARTIFACT_SIZE_MISMATCH", "HIGH", 0.8, ("ARTIFACT_SIZE_MISMATCH",)),
    SignalDef("BE_UNSAFE_PATH", "CRITICAL", 1.0, ("UNSAFE_PATH",)),
    SignalDef("BE_DELIVERED_MISMATCH", "CRITICAL", 1.0, ("DELIVERED_MISMATCH",)),
)


def _emit(defn: SignalDef, observed_at: int, evidence: list[EvidenceLink]) -> Signal:
    return Signal(
        signal_id=defn.signal_id,
        severity=defn.severity,
        weight=defn.weight,
        observed_at=observed_at,
        evidence=sort_evidence(evidence),
    )


def derive_behavior_signals(
    result: VerificationResult,
    receipt: NormalizedReceipt,
    observed_at: int,
) -> list[Signal]:
    """Derive deterministic signals from a verification result."""
    base = base_evidence(receipt)

    if result.ok:
        return [_emit(VERIFIED_OK, observed_at, [*base, *result.evidence_links])]

    by_code: dict[str, list[VerificationFailure]] = {}
    for failure in result.failures:
        by_code.setdefault(failure.code, []).append(failure)

    signals: list[Signal] = []
    for defn in SIGNAL_DEFS:
        matching = [f for code in defn.codes for f in by_code.get(code, [])]
        if not matching:
            continue
        failure_evidence = [EvidenceLink("failurePath", f.path) for f in matching if f.path]
        signals.append(_emit(defn, observed_at, [*base, *failure_evidence]))
    return signals


def schema_invalid_signal(manifest_sha256: str, error: str, observed_at: int) -> Signal:
    """Signal for a manifest rejected before a receipt could be normalized."""
    return _emit(
        RECEIPT_SCHEMA_INVALID,
        observed_at,
        [
            EvidenceLink("manifestSha256", manifest_sha256),
            EvidenceLink("parseError", error),
        ],
    )
