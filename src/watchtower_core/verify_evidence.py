"""Cross-check a normalized receipt against the files in its run directory.

Verification never raises for what it finds on disk: every outcome, including
I/O errors, becomes a ``VerificationFailure``. Manifest-level failures end the
run immediately because nothing downstream is trustworthy without an intact
manifest; artifact-level failures are collected for every delivered entry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import orjson

from watchtower_core.io_utils import sha256_hex
from watchtower_core.models import EvidenceLink
from watchtower_core.path_safety import safe_join, validate_relative_path
from watchtower_core.solver_receipt import NormalizedReceipt, SchemaError, validate_manifest

log = logging.getLogger(__name__)

type FailureCode = Literal[
    "ARTIFACT_HASH_MISMATCH",
    "ARTIFACT_NOT_FOUND",
    "ARTIFACT_SIZE_MISMATCH",
    "ARTIFACT_TOO_LARGE",
    "DELIVERED_MISMATCH",
    "MANIFEST_HASH_MISMATCH",
    "MANIFEST_NOT_FOUND",
    "MANIFEST_PARSE_FAIL",
    "MANIFEST_READ_ERROR",
    "MANIFEST_SCHEMA_INVALID",
    "MANIFEST_TOO_LARGE",
    "UNSAFE_PATH",
]

FAILURE_CODES: tuple[str, ...] = (
    "ARTIFACT_HASH_MISMATCH",
    "ARTIFACT_NOT_FOUND",
    "ARTIFACT_SIZE_MISMATCH",
    "ARTIFACT_TOO_LARGE",
    "DELIVERED_MISMATCH",
    "MANIFEST_HASH_MISMATCH",
    "MANIFEST_NOT_FOUND",
    "MANIFEST_PARSE_FAIL",
    "MANIFEST_READ_ERROR",
    "MANIFEST_SCHEMA_INVALID",
    "MANIFEST_TOO_LARGE",
    "UNSAFE_PATH",
)

DEFAULT_MAX_MANIFEST_BYTES = 2 * 1024 * 1024
DEFAULT_MAX_ARTIFACT_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class VerifyOptions:
    max_manifest_bytes: int = DEFAULT_MAX_MANIFEST_BYTES
    max_artifact_bytes: int = DEFAULT_MAX_ARTIFACT_BYTES


@dataclass(frozen=True, slots=True)
class VerificationFailure:
    code: FailureCode
    message: str
    path: str | None = None

    def sort_key(self) -> tuple[str, str]:
        return (self.code, self.path or "")

    def to_dict(self) -> dict[str, str]:
        data = {"code": self.code, "message": self.message}
        if self.path is not None:
            data["path"] = self.path
        return data


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    failures: tuple[VerificationFailure, ...]
    evidence_links: tuple[EvidenceLink, ...]

    @property
    def failure_codes(self) -> list[str]:
        return [f.code for f in self.failures]

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "failures": [f.to_dict() for f in self.failures],
            "evidenceLinks": [e.to_dict() for e in self.evidence_links],
        }


def base_evidence(receipt: NormalizedReceipt) -> list[EvidenceLink]:
    return [
        EvidenceLink("receiptId", receipt.receipt_id),
        EvidenceLink("manifestSha256", receipt.manifest_sha256),
    ]


def _build_result(
    failures: list[VerificationFailure], evidence_links: list[EvidenceLink],
) -> VerificationResult:
    ordered = sorted(failures, key=VerificationFailure.sort_key)
    for failure in ordered:
        log.debug("verification failure %s path=%s: %s", failure.code, failure.path, failure.message)
    return VerificationResult(
        ok=not ordered,
        failures=tuple(ordered),
        evidence_links=tuple(evidence_links),
    )


def _joined_paths(paths: list[str]) -> str:
    # Comparison is on the joined string, so duplicate entries count.
    return ",".join(sorted(paths))


def verify_evidence(
    receipt: NormalizedReceipt,
    run_dir: Path | str,
    options: VerifyOptions | None = None,
) -> VerificationResult:
    """Verify the manifest and every delivered artifact under *run_dir*."""
    opts = options or VerifyOptions()
    failures: list[VerificationFailure] = []
    evidence_links = base_evidence(receipt)

    manifest_rel = receipt.manifest_path
    check = validate_relative_path(manifest_rel)
    if not check.valid:
        failures.append(
            VerificationFailure("UNSAFE_PATH", f"Manifest path unsafe: {check.reason}", manifest_rel)
        )
        return _build_result(failures, evidence_links)

    manifest_abs = safe_join(run_dir, manifest_rel)
    if manifest_abs is None:
        failures.append(
            VerificationFailure("UNSAFE_PATH", "Manifest path escapes run directory", manifest_rel)
        )
        return _build_result(failures, evidence_links)

    try:
        manifest_size = manifest_abs.stat().st_size
    except (FileNotFoundError, NotADirectoryError):
        failures.append(
            VerificationFailure("MANIFEST_NOT_FOUND", f"Manifest not found: {manifest_rel}", manifest_rel)
        )
        return _build_result(failures, evidence_links)
    except OSError as exc:
        failures.append(
            VerificationFailure("MANIFEST_READ_ERROR", f"Cannot stat manifest: {exc}", manifest_rel)
        )
        return _build_result(failures, evidence_links)

    if manifest_size > opts.max_manifest_bytes:
        failures.append(
            VerificationFailure(
                "MANIFEST_TOO_LARGE",
                f"Manifest {manifest_size} bytes exceeds limit {opts.max_manifest_bytes}",
                manifest_rel,
            )
        )
        return _build_result(failures, evidence_links)

    try:
        manifest_bytes = manifest_abs.read_bytes()
    except OSError as exc:
        failures.append(
            VerificationFailure("MANIFEST_READ_ERROR", f"Cannot read manifest: {exc}", manifest_rel)
        )
        return _build_result(failures, evidence_links)

    actual_manifest_hash = sha256_hex(manifest_bytes)
    if actual_manifest_hash != receipt.manifest_sha256:
        failures.append(
            VerificationFailure(
                "MANIFEST_HASH_MISMATCH",
                f"Manifest hash mismatch: expected {receipt.manifest_sha256}, "
                f"got {actual_manifest_hash}",
                manifest_rel,
            )
        )
        return _build_result(failures, evidence_links)

    try:
        manifest_obj = orjson.loads(manifest_bytes)
    except orjson.JSONDecodeError:
        failures.append(
            VerificationFailure("MANIFEST_PARSE_FAIL", "Manifest is not valid JSON", manifest_rel)
        )
        return _build_result(failures, evidence_links)

    try:
        manifest = validate_manifest(manifest_obj)
    except SchemaError as exc:
        failures.append(
            VerificationFailure("MANIFEST_SCHEMA_INVALID", f"Manifest schema invalid: {exc}", manifest_rel)
        )
        return _build_result(failures, evidence_links)

    manifest_paths = _joined_paths([a.path for a in manifest.artifacts])
    delivered_paths = _joined_paths([a.path for a in receipt.delivered])
    if manifest_paths != delivered_paths:
        failures.append(
            VerificationFailure(
                "DELIVERED_MISMATCH", "Receipt delivered[] does not match manifest artifacts",
            )
        )

    for artifact in receipt.delivered:
        rel = artifact.path
        art_check = validate_relative_path(rel)
        if not art_check.valid:
            failures.append(
                VerificationFailure("UNSAFE_PATH", f"Artifact path unsafe: {art_check.reason}", rel)
            )
            continue

        art_abs = safe_join(run_dir, rel)
        if art_abs is None:
            failures.append(
                VerificationFailure("UNSAFE_PATH", "Artifact path escapes run directory", rel)
            )
            continue

        try:
            art_size = art_abs.stat().st_size
        except (FileNotFoundError, NotADirectoryError):
            failures.append(
                VerificationFailure("ARTIFACT_NOT_FOUND", f"Artifact not found: {rel}", rel)
            )
            continue
        except OSError:
            failures.append(
                VerificationFailure("ARTIFACT_NOT_FOUND", f"Cannot stat artifact: {rel}", rel)
            )
            continue

        if art_size > opts.max_artifact_bytes:
            failures.append(
                VerificationFailure(
                    "ARTIFACT_TOO_LARGE",
                    f"Artifact {art_size} bytes exceeds limit {opts.max_artifact_bytes}",
                    rel,
                )
            )
            continue

        if art_size != artifact.bytes:
            failures.append(
                VerificationFailure(
                    "ARTIFACT_SIZE_MISMATCH",
                    f"Artifact size mismatch for {rel}: expected {artifact.bytes}, got {art_size}",
                    rel,
                )
            )

        try:
            art_bytes = art_abs.read_bytes()
        except OSError:
            failures.append(
                VerificationFailure("ARTIFACT_NOT_FOUND", f"Cannot read artifact: {rel}", rel)
            )
            continue

        actual_hash = sha256_hex(art_bytes)
        if actual_hash != artifact.sha256:
            failures.append(
                VerificationFailure(
                    "ARTIFACT_HASH_MISMATCH",
                    f"Artifact hash mismatch for {rel}: expected {artifact.sha256}, got {actual_hash}",
                    rel,
                )
            )

        evidence_links.append(EvidenceLink("artifactSha256", artifact.sha256))

    return _build_result(failures, evidence_links)
