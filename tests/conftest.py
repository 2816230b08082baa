"""Shared fixtures: solver run directories with evidence manifests on disk."""
from __future__ import annotations

import hashlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import orjson
import pytest

from watchtower_core.solver_receipt import (
    NormalizedReceipt,
    normalize_receipt,
    parse_manifest_bytes,
)


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def manifest_doc(artifacts: list[dict[str, Any]], /, **overrides: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "manifestVersion": "0.1.0",
        "intentId": "intent-001",
        "runId": "run-001",
        "jobType": "diagnostic",
        "createdAt": "2025-01-15T12:00:00Z",
        "artifacts": artifacts,
        "policyDecision": {"allowed": True, "reasons": []},
        "executionSummary": {"status": "SUCCESS"},
        "solver": {"service": "irsb-solver", "serviceVersion": "1.0.0"},
    }
    doc.update(overrides)
    return doc


def artifact_entry(path: str, content: bytes) -> dict[str, Any]:
    return {
        "path": path,
        "sha256": sha(content),
        "bytes": len(content),
        "contentType": "text/plain",
    }


def load_receipt(manifest_path: Path) -> NormalizedReceipt:
    raw = manifest_path.read_bytes()
    return normalize_receipt(parse_manifest_bytes(raw), sha(raw))


type MakeRun = Callable[..., Path]


@pytest.fixture()
def make_run(tmp_path: Path) -> MakeRun:
    """Build ``<tmp>/<name>/`` with artifact files and ``evidence/manifest.json``.

    Returns the manifest path. ``declared`` overrides the artifact list written
    into the manifest (defaults to entries computed from ``files``).
    """

    def _make(
        files: dict[str, bytes] | None = None,
        *,
        declared: list[dict[str, Any]] | None = None,
        name: str = "run",
        **overrides: Any,
    ) -> Path:
        run_dir = tmp_path / name
        files = files or {}
        for rel, content in files.items():
            fp = run_dir / rel
            fp.parent.mkdir(parents=True, exist_ok=True)
            fp.write_bytes(content)
        artifacts = declared if declared is not None else [
            artifact_entry(rel, content) for rel, content in files.items()
        ]
        manifest_path = run_dir / "evidence" / "manifest.json"
        manifest_path.parent.mkdir(parents=True, exist_ok=True)
        manifest_path.write_bytes(
            orjson.dumps(manifest_doc(artifacts, **overrides), option=orjson.OPT_INDENT_2)
        )
        return manifest_path

    return _make
