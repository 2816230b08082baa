"""Solver evidence manifest (v0.1.0) contract and receipt normalization.

The manifest is untrusted input written by the solver next to its run
output at ``<runDir>/evidence/manifest.json``. ``check_manifest`` walks the
whole document and reports every structural issue it finds;
``validate_manifest`` turns a clean document into typed records and refuses
anything else. Unknown extra keys are ignored.

``normalize_receipt`` flattens a validated manifest into the receipt used by
the rest of the pipeline. Its id is derived from content only, so the same
logical receipt always hashes to the same id regardless of key order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

import orjson

from watchtower_core.io_utils import canonical_hash

MANIFEST_VERSION = "0.1.0"
SOLVER_SERVICE = "irsb-solver"
MANIFEST_PATH = "evidence/manifest.json"
EXECUTION_STATUSES = ("SUCCESS", "FAILED", "REFUSED")

HEX64_RE = re.compile(r"^[a-f0-9]{64}$")
_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$")

type ExecutionStatus = Literal["SUCCESS", "FAILED", "REFUSED"]


class SchemaError(ValueError):
    """Manifest does not satisfy the v0.1.0 structural contract."""

    def __init__(self, issues: list[str] | tuple[str, ...]) -> None:
        self.issues = tuple(issues)
        super().__init__("; ".join(self.issues))


@dataclass(frozen=True, slots=True)
class ArtifactEntry:
    path: str
    sha256: str
    bytes: int
    content_type: str


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    allowed: bool
    reasons: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ExecutionSummary:
    status: ExecutionStatus
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SolverMetadata:
    service: str
    service_version: str
    git_commit: str | None = None


@dataclass(frozen=True, slots=True)
class SolverReceiptV0:
    manifest_version: str
    intent_id: str
    run_id: str
    job_type: str
    created_at: str
    artifacts: tuple[ArtifactEntry, ...]
    policy_decision: PolicyDecision
    execution_summary: ExecutionSummary
    solver: SolverMetadata


@dataclass(frozen=True, slots=True)
class DeliveredArtifact:
    path: str
    sha256: str
    bytes: int
    content_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "sha256": self.sha256,
            "bytes": self.bytes,
            "contentType": self.content_type,
        }


@dataclass(frozen=True, slots=True)
class NormalizedReceipt:
    receipt_id: str
    receipt_version: str
    intent_id: str
    run_id: str
    job_type: str
    status: ExecutionStatus
    manifest_path: str
    manifest_sha256: str
    delivered: tuple[DeliveredArtifact, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "receiptId": self.receipt_id,
            "receiptVersion": self.receipt_version,
            "intentId": self.intent_id,
            "runId": self.run_id,
            "jobType": self.job_type,
            "status": self.status,
            "manifestPath": self.manifest_path,
            "manifestSha256": self.manifest_sha256,
            "delivered": [a.to_dict() for a in self.delivered],
        }


# ---------------------------------------------------------------------------
# Structural contract
# ---------------------------------------------------------------------------


def _is_datetime(value: str) -> bool:
    if not _DATETIME_RE.fullmatch(value):
        return False
    try:
        datetime.fromisoformat(f"{value[:-1]}+00:00")
    except ValueError:
        return False
    return True


def _as_count(value: Any) -> int | None:
    """Return *value* as a non-negative int, or None when it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    return None


def _require_str(obj: dict[str, Any], key: str, path: str, issues: list[str]) -> None:
    if key not in obj:
        issues.append(f"{path}{key}: required")
    elif not isinstance(obj[key], str):
        issues.append(f"{path}{key}: expected string")


def _optional_str(obj: dict[str, Any], key: str, path: str, issues: list[str]) -> None:
    if key in obj and not isinstance(obj[key], str):
        issues.append(f"{path}{key}: expected string")


def _require_object(
    obj: dict[str, Any], key: str, issues: list[str],
) -> dict[str, Any] | None:
    value = obj.get(key)
    if key not in obj:
        issues.append(f"{key}: required")
        return None
    if not isinstance(value, dict):
        issues.append(f"{key}: expected object")
        return None
    return value


def _check_artifact(artifact: Any, index: int, issues: list[str]) -> None:
    path = f"artifacts[{index}]."
    if not isinstance(artifact, dict):
        issues.append(f"artifacts[{index}]: expected object")
        return
    _require_str(artifact, "path", path, issues)
    _require_str(artifact, "contentType", path, issues)

    if "sha256" not in artifact:
        issues.append(f"{path}sha256: required")
    elif not isinstance(artifact["sha256"], str) or not HEX64_RE.fullmatch(artifact["sha256"]):
        issues.append(f"{path}sha256: must be 64 lowercase hex characters")

    if "bytes" not in artifact:
        issues.append(f"{path}bytes: required")
    elif _as_count(artifact["bytes"]) is None:
        issues.append(f"{path}bytes: must be a non-negative integer")


def check_manifest(obj: Any) -> list[str]:
    """Return every structural issue in *obj*; empty when it is a valid manifest."""
    if not isinstance(obj, dict):
        return ["manifest: expected object"]

    issues: list[str] = []

    if obj.get("manifestVersion") != MANIFEST_VERSION:
        issues.append(f"manifestVersion: must be '{MANIFEST_VERSION}'")
    for key in ("intentId", "runId", "jobType"):
        _require_str(obj, key, "", issues)

    created_at = obj.get("createdAt")
    if "createdAt" not in obj:
        issues.append("createdAt: required")
    elif not isinstance(created_at, str) or not _is_datetime(created_at):
        issues.append("createdAt: must be an ISO-8601 UTC datetime")

    artifacts = obj.get("artifacts")
    if "artifacts" not in obj:
        issues.append("artifacts: required")
    elif not isinstance(artifacts, list):
        issues.append("artifacts: expected array")
    else:
        for index, artifact in enumerate(artifacts):
            _check_artifact(artifact, index, issues)

    policy = _require_object(obj, "policyDecision", issues)
    if policy is not None:
        if not isinstance(policy.get("allowed"), bool):
            issues.append("policyDecision.allowed: expected boolean")
        reasons = policy.get("reasons")
        if not isinstance(reasons, list) or not all(isinstance(r, str) for r in reasons):
            issues.append("policyDecision.reasons: expected array of strings")

    summary = _require_object(obj, "executionSummary", issues)
    if summary is not None:
        if summary.get("status") not in EXECUTION_STATUSES:
            issues.append(
                f"executionSummary.status: must be one of {list(EXECUTION_STATUSES)}"
            )
        _optional_str(summary, "error", "executionSummary.", issues)

    solver = _require_object(obj, "solver", issues)
    if solver is not None:
        if solver.get("service") != SOLVER_SERVICE:
            issues.append(f"solver.service: must be '{SOLVER_SERVICE}'")
        _require_str(solver, "serviceVersion", "solver.", issues)
        _optional_str(solver, "gitCommit", "solver.", issues)

    return issues


def validate_manifest(obj: Any) -> SolverReceiptV0:
    """Validate *obj* and return the typed manifest; raises ``SchemaError``."""
    issues = check_manifest(obj)
    if issues:
        raise SchemaError(issues)

    summary = obj["executionSummary"]
    solver = obj["solver"]
    policy = obj["policyDecision"]
    return SolverReceiptV0(
        manifest_version=obj["manifestVersion"],
        intent_id=obj["intentId"],
        run_id=obj["runId"],
        job_type=obj["jobType"],
        created_at=obj["createdAt"],
        artifacts=tuple(
            ArtifactEntry(
                path=a["path"],
                sha256=a["sha256"],
                bytes=int(a["bytes"]),
                content_type=a["contentType"],
            )
            for a in obj["artifacts"]
        ),
        policy_decision=PolicyDecision(
            allowed=policy["allowed"],
            reasons=tuple(policy["reasons"]),
        ),
        execution_summary=ExecutionSummary(
            status=summary["status"],
            error=summary.get("error"),
        ),
        solver=SolverMetadata(
            service=solver["service"],
            service_version=solver["serviceVersion"],
            git_commit=solver.get("gitCommit"),
        ),
    )


def parse_manifest_bytes(raw: bytes) -> SolverReceiptV0:
    """Decode and validate raw manifest bytes; raises ``SchemaError``."""
    try:
        obj = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise SchemaError(["Invalid JSON"]) from exc
    return validate_manifest(obj)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def compute_receipt_id(
    *, intent_id: str, run_id: str, job_type: str, manifest_sha256: str,
) -> str:
    return canonical_hash(
        {
            "intentId": intent_id,
            "runId": run_id,
            "jobType": job_type,
            "manifestSha256": manifest_sha256,
        }
    )


def placeholder_receipt_id(manifest_sha256: str) -> str:
    """Receipt id for a manifest that never validated."""
    return compute_receipt_id(
        intent_id="unknown",
        run_id="unknown",
        job_type="unknown",
        manifest_sha256=manifest_sha256,
    )


def normalize_receipt(manifest: SolverReceiptV0, manifest_sha256: str) -> NormalizedReceipt:
    """Flatten a validated manifest into a receipt.

    ``manifest_sha256`` is the hash of the raw file bytes as computed by the
    caller, not of the parsed object; any reformatting of the file on disk
    therefore shows up as a manifest hash mismatch during verification.
    """
    delivered = tuple(
        DeliveredArtifact(
            path=a.path,
            sha256=a.sha256,
            bytes=a.bytes,
            content_type=a.content_type,
        )
        for a in sorted(manifest.artifacts, key=lambda a: a.path)
    )
    return NormalizedReceipt(
        receipt_id=compute_receipt_id(
            intent_id=manifest.intent_id,
            run_id=manifest.run_id,
            job_type=manifest.job_type,
            manifest_sha256=manifest_sha256,
        ),
        receipt_version=manifest.manifest_version,
        intent_id=manifest.intent_id,
        run_id=manifest.run_id,
        job_type=manifest.job_type,
        status=manifest.execution_summary.status,
        manifest_path=MANIFEST_PATH,
        manifest_sha256=manifest_sha256,
        delivered=delivered,
    )
