"""Risk records shared by the verifier, signal deriver, store and scorer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from watchtower_core.io_utils import json_dumps


type Severity = Literal["LOW", "HIGH", "CRITICAL"]
type AgentStatus = Literal["ACTIVE", "PROBATION", "BLOCKED"]
type Confidence = Literal["LOW", "MEDIUM", "HIGH"]

SEVERITIES: frozenset[str] = frozenset({"LOW", "HIGH", "CRITICAL"})


@dataclass(frozen=True, slots=True)
class EvidenceLink:
    """Typed pointer to corroborating evidence (receipt id, hash, failing path)."""

    type: str
    ref: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "ref": self.ref}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvidenceLink:
        return cls(type=str(data["type"]), ref=str(data["ref"]))


@dataclass(frozen=True, slots=True)
class Signal:
    signal_id: str
    severity: Severity
    weight: float
    observed_at: int
    evidence: tuple[EvidenceLink, ...]

    def __post_init__(self) -> None:
        if self.severity not in SEVERITIES:
            raise ValueError(f"unknown severity: {self.severity}")
        if not 0.0 <= self.weight <= 1.0:
            raise ValueError(f"weight must be within [0, 1], got {self.weight}")

    def identity_dict(self) -> dict[str, Any]:
        """Serialized form without ``observedAt``; feeds snapshot ids."""
        return {
            "signalId": self.signal_id,
            "severity": self.severity,
            "weight": self.weight,
            "evidence": [e.to_dict() for e in self.evidence],
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.identity_dict()
        data["observedAt"] = self.observed_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Signal:
        return cls(
            signal_id=str(data["signalId"]),
            severity=data["severity"],
            weight=float(data["weight"]),
            observed_at=int(data["observedAt"]),
            evidence=tuple(EvidenceLink.from_dict(e) for e in data.get("evidence", [])),
        )


@dataclass(frozen=True, slots=True)
class Agent:
    agent_id: str
    status: AgentStatus = "ACTIVE"
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Point-in-time bundle of signals for one agent."""

    snapshot_id: str
    agent_id: str
    observed_at: int
    signals: tuple[Signal, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshotId": self.snapshot_id,
            "agentId": self.agent_id,
            "observedAt": self.observed_at,
            "signals": [s.to_dict() for s in self.signals],
        }


@dataclass(frozen=True, slots=True)
class RiskReport:
    report_id: str
    agent_id: str
    generated_at: int
    overall_risk: int
    confidence: Confidence
    reasons: tuple[str, ...] = ()
    evidence_links: tuple[EvidenceLink, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "reportId": self.report_id,
            "agentId": self.agent_id,
            "generatedAt": self.generated_at,
            "overallRisk": self.overall_risk,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "evidenceLinks": [e.to_dict() for e in self.evidence_links],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskReport:
        return cls(
            report_id=str(data["reportId"]),
            agent_id=str(data["agentId"]),
            generated_at=int(data["generatedAt"]),
            overall_risk=int(data["overallRisk"]),
            confidence=data["confidence"],
            reasons=tuple(data.get("reasons", [])),
            evidence_links=tuple(
                EvidenceLink.from_dict(e) for e in data.get("evidenceLinks", [])
            ),
        )


@dataclass(frozen=True, slots=True)
class Alert:
    alert_id: str
    agent_id: str
    severity: Severity
    type: str
    description: str
    created_at: int
    evidence_links: tuple[EvidenceLink, ...] = field(default_factory=tuple)
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "agentId": self.agent_id,
            "severity": self.severity,
            "type": self.type,
            "description": self.description,
            "evidenceLinks": [e.to_dict() for e in self.evidence_links],
            "createdAt": self.created_at,
            "isActive": self.is_active,
        }


def sort_evidence(links: list[EvidenceLink] | tuple[EvidenceLink, ...]) -> tuple[EvidenceLink, ...]:
    """Deduplicate and order evidence links by ``(type, ref)``."""
    return tuple(sorted(set(links), key=lambda e: (e.type, e.ref)))


def sort_signals(signals: list[Signal]) -> list[Signal]:
    """Total order: signal id, then observed time, then serialized evidence."""
    return sorted(
        signals,
        key=lambda s: (
            s.signal_id,
            s.observed_at,
            json_dumps([e.to_dict() for e in s.evidence]),
        ),
    )
