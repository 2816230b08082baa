"""Agent risk scoring over recent signal snapshots.

Scoring is a pure function of its inputs: the same agent, snapshots and
clock value always produce the same report id, risk value and alert ids.
"""

from __future__ import annotations

from dataclasses import dataclass

from watchtower_core.io_utils import canonical_hash
from watchtower_core.models import (
    Agent,
    Alert,
    Confidence,
    EvidenceLink,
    RiskReport,
    Signal,
    Snapshot,
    sort_evidence,
)

MEDIUM_CONFIDENCE_MIN_SNAPSHOTS = 3
HIGH_CONFIDENCE_MIN_SNAPSHOTS = 10


@dataclass(frozen=True, slots=True)
class ScoreResult:
    report: RiskReport
    new_alerts: list[Alert]


def _bounded(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def strongest_signals(snapshots: list[Snapshot]) -> dict[str, Signal]:
    """Highest-weight instance of each signal id across *snapshots*."""
    strongest: dict[str, Signal] = {}
    for snapshot in snapshots:
        for signal in snapshot.signals:
            current = strongest.get(signal.signal_id)
            if current is None or signal.weight > current.weight:
                strongest[signal.signal_id] = signal
    return strongest


def combined_risk(weights: list[float]) -> int:
    """Noisy-OR of signal weights on a 0-100 scale."""
    if not weights:
        return 0
    survival = 1.0
    for weight in weights:
        survival *= 1.0 - _bounded(weight)
    return int(round(100 * _bounded(1.0 - survival)))


def confidence_for(snapshot_count: int) -> Confidence:
    if snapshot_count >= HIGH_CONFIDENCE_MIN_SNAPSHOTS:
        return "HIGH"
    if snapshot_count >= MEDIUM_CONFIDENCE_MIN_SNAPSHOTS:
        return "MEDIUM"
    return "LOW"


def _alerts_for(agent: Agent, latest: Snapshot, now: int) -> list[Alert]:
    alerts: list[Alert] = []
    for signal in latest.signals:
        if signal.severity != "CRITICAL":
            continue
        alerts.append(
            Alert(
                alert_id=canonical_hash(
                    {
                        "agentId": agent.agent_id,
                        "signalId": signal.signal_id,
                        "snapshotId": latest.snapshot_id,
                    }
                ),
                agent_id=agent.agent_id,
                severity=signal.severity,
                type=signal.signal_id,
                description=f"{signal.signal_id} observed for agent {agent.agent_id}",
                created_at=now,
                evidence_links=signal.evidence,
            )
        )
    return alerts


def score_agent(agent: Agent, snapshots: list[Snapshot], now: int) -> ScoreResult:
    """Score *agent* from its most recent snapshots (newest first)."""
    strongest = strongest_signals(snapshots)
    overall_risk = combined_risk([s.weight for s in strongest.values()])

    elevated = sorted(sid for sid, s in strongest.items() if s.severity != "LOW")
    reasons = tuple(elevated or sorted(strongest))

    evidence: list[EvidenceLink] = [
        EvidenceLink("snapshotId", s.snapshot_id) for s in snapshots
    ]
    report = RiskReport(
        report_id=canonical_hash(
            {
                "agentId": agent.agent_id,
                "generatedAt": now,
                "snapshotIds": [s.snapshot_id for s in snapshots],
            }
        ),
        agent_id=agent.agent_id,
        generated_at=now,
        overall_risk=overall_risk,
        confidence=confidence_for(len(snapshots)),
        reasons=reasons,
        evidence_links=sort_evidence(evidence),
    )

    new_alerts = _alerts_for(agent, snapshots[0], now) if snapshots else []
    return ScoreResult(report=report, new_alerts=new_alerts)
