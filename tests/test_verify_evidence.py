"""Tests for watchtower_core.verify_evidence."""
from __future__ import annotations

import dataclasses
from pathlib import Path

import orjson

from conftest import MakeRun, artifact_entry, load_receipt, sha
from watchtower_core.models import EvidenceLink
from watchtower_core.solver_receipt import DeliveredArtifact
from watchtower_core.verify_evidence import (
    VerificationFailure,
    VerifyOptions,
    verify_evidence,
)


def test_clean_run_passes(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello", "out/data.json": b"{}"})
    receipt = load_receipt(manifest_path)

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert result.ok
    assert result.failures == ()
    assert EvidenceLink("receiptId", receipt.receipt_id) in result.evidence_links
    assert EvidenceLink("manifestSha256", receipt.manifest_sha256) in result.evidence_links
    artifact_links = [e for e in result.evidence_links if e.type == "artifactSha256"]
    assert sorted(e.ref for e in artifact_links) == sorted([sha(b"hello"), sha(b"{}")])


def test_empty_artifact_list_passes(make_run: MakeRun) -> None:
    manifest_path = make_run({})
    result = verify_evidence(load_receipt(manifest_path), manifest_path.parent.parent)
    assert result.ok


def test_tampered_artifact_is_hash_mismatch(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    run_dir = manifest_path.parent.parent
    (run_dir / "out" / "report.txt").write_bytes(b"HELLO")

    result = verify_evidence(receipt, run_dir)

    assert not result.ok
    assert result.failure_codes == ["ARTIFACT_HASH_MISMATCH"]
    assert result.failures[0].path == "out/report.txt"


def test_size_and_hash_mismatch_both_reported(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    run_dir = manifest_path.parent.parent
    (run_dir / "out" / "report.txt").write_bytes(b"hello, world")

    result = verify_evidence(receipt, run_dir)

    assert result.failure_codes == ["ARTIFACT_HASH_MISMATCH", "ARTIFACT_SIZE_MISMATCH"]


def test_missing_artifact(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    run_dir = manifest_path.parent.parent
    (run_dir / "out" / "report.txt").unlink()

    result = verify_evidence(receipt, run_dir)

    assert result.failure_codes == ["ARTIFACT_NOT_FOUND"]
    assert result.failures[0].path == "out/report.txt"


def test_overlong_artifact_name_is_not_found(make_run: MakeRun) -> None:
    long_name = "a" * 300 + ".txt"
    manifest_path = make_run(declared=[artifact_entry(long_name, b"x")])

    result = verify_evidence(load_receipt(manifest_path), manifest_path.parent.parent)

    assert result.failure_codes == ["ARTIFACT_NOT_FOUND"]
    assert result.failures[0].path == long_name
    assert result.failures[0].message.startswith("Cannot stat artifact")


def test_unreadable_artifact_is_not_found(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    run_dir = manifest_path.parent.parent
    (run_dir / "out" / "report.txt").unlink()
    (run_dir / "out" / "report.txt").mkdir()

    result = verify_evidence(receipt, run_dir)

    not_found = [f for f in result.failures if f.code == "ARTIFACT_NOT_FOUND"]
    assert [f.path for f in not_found] == ["out/report.txt"]
    assert not_found[0].message.startswith("Cannot read artifact")
    assert "ARTIFACT_HASH_MISMATCH" not in result.failure_codes
    assert not any(e.type == "artifactSha256" for e in result.evidence_links)


def test_traversal_artifact_is_unsafe_and_never_read(make_run: MakeRun, tmp_path: Path) -> None:
    (tmp_path / "secret.txt").write_bytes(b"secret")
    manifest_path = make_run(
        declared=[artifact_entry("../secret.txt", b"secret")],
    )
    receipt = load_receipt(manifest_path)

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert result.failure_codes == ["UNSAFE_PATH"]
    assert result.failures[0].path == "../secret.txt"
    assert not any(e.type == "artifactSha256" for e in result.evidence_links)


def test_absolute_artifact_path_is_unsafe(make_run: MakeRun) -> None:
    manifest_path = make_run(declared=[artifact_entry("/etc/passwd", b"x")])
    result = verify_evidence(load_receipt(manifest_path), manifest_path.parent.parent)
    assert result.failure_codes == ["UNSAFE_PATH"]


def test_missing_manifest_short_circuits(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    run_dir = manifest_path.parent.parent
    manifest_path.unlink()
    (run_dir / "out" / "report.txt").unlink()

    result = verify_evidence(receipt, run_dir)

    assert result.failure_codes == ["MANIFEST_NOT_FOUND"]
    assert result.failures[0].path == "evidence/manifest.json"


def test_unreadable_manifest_is_read_error(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    manifest_path.unlink()
    manifest_path.mkdir()

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert result.failure_codes == ["MANIFEST_READ_ERROR"]
    assert result.failures[0].path == "evidence/manifest.json"


def test_manifest_under_a_file_is_not_found(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    evidence_dir = manifest_path.parent
    manifest_path.unlink()
    evidence_dir.rmdir()
    evidence_dir.write_bytes(b"not a directory")

    result = verify_evidence(receipt, evidence_dir.parent)

    assert result.failure_codes == ["MANIFEST_NOT_FOUND"]


def test_rewritten_manifest_is_hash_mismatch(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    # Same content, different formatting: the raw bytes no longer match.
    manifest_path.write_bytes(orjson.dumps(orjson.loads(manifest_path.read_bytes())))

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert result.failure_codes == ["MANIFEST_HASH_MISMATCH"]


def test_oversized_manifest(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)

    result = verify_evidence(
        receipt, manifest_path.parent.parent, VerifyOptions(max_manifest_bytes=16),
    )

    assert result.failure_codes == ["MANIFEST_TOO_LARGE"]


def test_oversized_artifact_is_not_hashed(make_run: MakeRun) -> None:
    manifest_path = make_run({"big.bin": b"x" * 64, "small.txt": b"ok"})
    receipt = load_receipt(manifest_path)

    result = verify_evidence(
        receipt, manifest_path.parent.parent, VerifyOptions(max_artifact_bytes=32),
    )

    assert result.failure_codes == ["ARTIFACT_TOO_LARGE"]
    assert result.failures[0].path == "big.bin"
    artifact_refs = [e.ref for e in result.evidence_links if e.type == "artifactSha256"]
    assert artifact_refs == [sha(b"ok")]


def test_manifest_that_fails_to_parse(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    garbage = b"{broken"
    manifest_path.write_bytes(garbage)
    receipt = dataclasses.replace(receipt, manifest_sha256=sha(garbage))

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert result.failure_codes == ["MANIFEST_PARSE_FAIL"]


def test_manifest_that_fails_schema(make_run: MakeRun) -> None:
    manifest_path = make_run({"out/report.txt": b"hello"})
    receipt = load_receipt(manifest_path)
    bad = orjson.dumps({"manifestVersion": "0.1.0"})
    manifest_path.write_bytes(bad)
    receipt = dataclasses.replace(receipt, manifest_sha256=sha(bad))

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert result.failure_codes == ["MANIFEST_SCHEMA_INVALID"]
    assert "intentId: required" in result.failures[0].message


def test_delivered_mismatch_has_no_path(make_run: MakeRun) -> None:
    manifest_path = make_run({"a.txt": b"a", "b.txt": b"b"})
    receipt = load_receipt(manifest_path)
    receipt = dataclasses.replace(receipt, delivered=receipt.delivered[:1])

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert result.failure_codes == ["DELIVERED_MISMATCH"]
    assert result.failures[0].path is None
    assert "path" not in result.failures[0].to_dict()


def test_duplicate_delivered_path_is_a_mismatch(make_run: MakeRun) -> None:
    manifest_path = make_run({"a.txt": b"a"})
    receipt = load_receipt(manifest_path)
    receipt = dataclasses.replace(receipt, delivered=receipt.delivered * 2)

    result = verify_evidence(receipt, manifest_path.parent.parent)

    assert "DELIVERED_MISMATCH" in result.failure_codes


def test_failures_are_sorted_by_code_then_path(make_run: MakeRun) -> None:
    files = {"c.txt": b"c", "a.txt": b"a", "b.txt": b"b"}
    manifest_path = make_run(files)
    receipt = load_receipt(manifest_path)
    run_dir = manifest_path.parent.parent
    (run_dir / "c.txt").unlink()
    (run_dir / "a.txt").unlink()
    (run_dir / "b.txt").write_bytes(b"B")
    extra = DeliveredArtifact(path="../x.txt", sha256=sha(b"x"), bytes=1, content_type="text/plain")
    receipt = dataclasses.replace(receipt, delivered=(*receipt.delivered, extra))

    result = verify_evidence(receipt, run_dir)

    keys = [f.sort_key() for f in result.failures]
    assert keys == sorted(keys)
    assert [(f.code, f.path) for f in result.failures] == [
        ("ARTIFACT_HASH_MISMATCH", "b.txt"),
        ("ARTIFACT_NOT_FOUND", "a.txt"),
        ("ARTIFACT_NOT_FOUND", "c.txt"),
        ("DELIVERED_MISMATCH", None),
        ("UNSAFE_PATH", "../x.txt"),
    ]


def test_verification_is_deterministic(make_run: MakeRun) -> None:
    manifest_path = make_run({"a.txt": b"a", "b.txt": b"b"})
    receipt = load_receipt(manifest_path)
    (manifest_path.parent.parent / "a.txt").unlink()

    first = verify_evidence(receipt, manifest_path.parent.parent)
    second = verify_evidence(receipt, manifest_path.parent.parent)

    assert first == second
    assert first.to_dict() == second.to_dict()


def test_failure_to_dict_includes_path() -> None:
    failure = VerificationFailure("UNSAFE_PATH", "bad", "../x")
    assert failure.to_dict() == {"code": "UNSAFE_PATH", "message": "bad", "path": "../x"}
