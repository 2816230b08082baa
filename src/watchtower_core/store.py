"""DuckDB store for agents, signal snapshots, risk reports and alerts.

Snapshots, reports and alerts carry content-derived ids, so every insert is
insert-or-ignore: re-ingesting identical evidence leaves the store unchanged.

DuckDB connections are not thread-safe; one ``WatchtowerStore`` belongs to
one thread (the API keeps all endpoints on its single event loop).
"""
from __future__ import annotations

import importlib
import time
from pathlib import Path
from typing import Any

from watchtower_core.io_utils import json_dumps, json_loads
from watchtower_core.models import (
    Agent,
    Alert,
    EvidenceLink,
    RiskReport,
    Signal,
    Snapshot,
)

# Dynamic DuckDB import for pyright compatibility
_duckdb_mod = importlib.import_module("duckdb")

SCHEMA_VERSION = "1.0.0"

_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS _schema_version (
    table_name VARCHAR PRIMARY KEY,
    version VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    agent_id VARCHAR PRIMARY KEY,
    status VARCHAR NOT NULL DEFAULT 'ACTIVE',
    created_at BIGINT NOT NULL,
    updated_at BIGINT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshots (
    snapshot_id VARCHAR PRIMARY KEY,
    agent_id VARCHAR NOT NULL,
    observed_at BIGINT NOT NULL,
    signals_json VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS risk_reports (
    report_id VARCHAR PRIMARY KEY,
    agent_id VARCHAR NOT NULL,
    generated_at BIGINT NOT NULL,
    overall_risk INTEGER NOT NULL,
    confidence VARCHAR NOT NULL,
    report_json VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS alerts (
    alert_id VARCHAR PRIMARY KEY,
    agent_id VARCHAR NOT NULL,
    severity VARCHAR NOT NULL,
    type VARCHAR NOT NULL,
    description VARCHAR NOT NULL,
    evidence_json VARCHAR NOT NULL,
    created_at BIGINT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
)
"""


def _to_dict(cols: list[str], row: tuple[Any, ...]) -> dict[str, Any]:
    """Zip column names with a row tuple into a dict (strict length check)."""
    return dict(zip(cols, row, strict=True))


def _evidence_json(links: tuple[EvidenceLink, ...]) -> str:
    return json_dumps([e.to_dict() for e in links])


def _evidence_from_json(raw: str) -> tuple[EvidenceLink, ...]:
    return tuple(EvidenceLink.from_dict(e) for e in json_loads(raw))


class WatchtowerStore:
    """Read/write interface to the watchtower DuckDB file."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        create_if_missing: bool = False,
    ) -> None:
        self._in_memory = str(db_path) == ":memory:"
        self._db_path = Path(db_path)
        if not self._in_memory and not self._db_path.exists():
            if not create_if_missing:
                raise FileNotFoundError(f"Watchtower database not found: {self._db_path}")
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: Any = _duckdb_mod.connect(str(db_path))
        self._create_schema()

    def _create_schema(self) -> None:
        for stmt in _SCHEMA_DDL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self._conn.execute(stmt)
        self._conn.execute(
            "INSERT OR IGNORE INTO _schema_version VALUES ('watchtower', ?)",
            [SCHEMA_VERSION],
        )

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> WatchtowerStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _fetch_dicts(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        rows = self._conn.execute(sql, params or []).fetchall()
        cols = [d[0] for d in self._conn.description]
        return [_to_dict(cols, row) for row in rows]

    # ─── Agents ───────────────────────────────────────────────────

    def upsert_agent(self, agent_id: str, *, now: int | None = None) -> Agent:
        ts = int(time.time()) if now is None else now
        self._conn.execute("""
            INSERT INTO agents (agent_id, status, created_at, updated_at)
            VALUES (?, 'ACTIVE', ?, ?)
            ON CONFLICT (agent_id) DO UPDATE SET updated_at = excluded.updated_at
        """, [agent_id, ts, ts])
        agent = self.get_agent(agent_id)
        if agent is None:
            raise RuntimeError(f"agent {agent_id} missing after upsert")
        return agent

    def get_agent(self, agent_id: str) -> Agent | None:
        rows = self._fetch_dicts("SELECT * FROM agents WHERE agent_id = ?", [agent_id])
        if not rows:
            return None
        return Agent(**rows[0])

    def list_agents(self) -> list[Agent]:
        return [Agent(**row) for row in self._fetch_dicts("SELECT * FROM agents ORDER BY agent_id")]

    # ─── Snapshots ────────────────────────────────────────────────

    def insert_snapshot(self, snapshot: Snapshot) -> bool:
        """Insert *snapshot*; False when a snapshot with its id already exists."""
        existing = self._conn.execute(
            "SELECT 1 FROM snapshots WHERE snapshot_id = ?", [snapshot.snapshot_id]
        ).fetchone()
        if existing:
            return False
        self._conn.execute("""
            INSERT INTO snapshots (snapshot_id, agent_id, observed_at, signals_json)
            VALUES (?, ?, ?, ?)
        """, [
            snapshot.snapshot_id,
            snapshot.agent_id,
            snapshot.observed_at,
            json_dumps([s.to_dict() for s in snapshot.signals]),
        ])
        return True

    def get_latest_snapshots(self, agent_id: str, limit: int = 10) -> list[Snapshot]:
        rows = self._fetch_dicts(
            "SELECT * FROM snapshots WHERE agent_id = ? "
            "ORDER BY observed_at DESC, snapshot_id LIMIT ?",
            [agent_id, limit],
        )
        return [
            Snapshot(
                snapshot_id=row["snapshot_id"],
                agent_id=row["agent_id"],
                observed_at=int(row["observed_at"]),
                signals=tuple(Signal.from_dict(s) for s in json_loads(row["signals_json"])),
            )
            for row in rows
        ]

    # ─── Risk reports ─────────────────────────────────────────────

    def insert_risk_report(self, report: RiskReport) -> None:
        self._conn.execute("""
            INSERT OR IGNORE INTO risk_reports
            (report_id, agent_id, generated_at, overall_risk, confidence, report_json)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [
            report.report_id,
            report.agent_id,
            report.generated_at,
            report.overall_risk,
            report.confidence,
            json_dumps(report.to_dict()),
        ])

    def get_latest_risk_report(self, agent_id: str) -> RiskReport | None:
        row = self._conn.execute(
            "SELECT report_json FROM risk_reports WHERE agent_id = ? "
            "ORDER BY generated_at DESC, report_id LIMIT 1",
            [agent_id],
        ).fetchone()
        if not row:
            return None
        return RiskReport.from_dict(json_loads(row[0]))

    def get_latest_risk_reports_by_agents(self, agent_ids: list[str]) -> dict[str, RiskReport]:
        """Latest report per agent in a single query."""
        if not agent_ids:
            return {}
        placeholders = ",".join("?" for _ in agent_ids)
        rows = self._conn.execute(f"""
            SELECT agent_id, report_json FROM (
                SELECT agent_id, report_json,
                       row_number() OVER (
                           PARTITION BY agent_id ORDER BY generated_at DESC, report_id
                       ) AS rn
                FROM risk_reports
                WHERE agent_id IN ({placeholders})
            ) WHERE rn = 1
        """, agent_ids).fetchall()
        return {str(agent_id): RiskReport.from_dict(json_loads(raw)) for agent_id, raw in rows}

    # ─── Alerts ───────────────────────────────────────────────────

    def insert_alerts(self, alerts: list[Alert]) -> int:
        """Insert alerts, skipping ids already present; returns the number inserted."""
        inserted = 0
        for alert in alerts:
            existing = self._conn.execute(
                "SELECT 1 FROM alerts WHERE alert_id = ?", [alert.alert_id]
            ).fetchone()
            if existing:
                continue
            self._conn.execute("""
                INSERT INTO alerts
                (alert_id, agent_id, severity, type, description, evidence_json,
                 created_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                alert.alert_id,
                alert.agent_id,
                alert.severity,
                alert.type,
                alert.description,
                _evidence_json(alert.evidence_links),
                alert.created_at,
                alert.is_active,
            ])
            inserted += 1
        return inserted

    def list_alerts(
        self,
        *,
        agent_id: str | None = None,
        active_only: bool = False,
    ) -> list[Alert]:
        conditions: list[str] = []
        params: list[Any] = []
        if agent_id:
            conditions.append("agent_id = ?")
            params.append(agent_id)
        if active_only:
            conditions.append("is_active")
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        rows = self._fetch_dicts(
            f"SELECT * FROM alerts{where} ORDER BY created_at DESC, alert_id", params
        )
        return [
            Alert(
                alert_id=row["alert_id"],
                agent_id=row["agent_id"],
                severity=row["severity"],
                type=row["type"],
                description=row["description"],
                created_at=int(row["created_at"]),
                evidence_links=_evidence_from_json(row["evidence_json"]),
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    def get_active_alert_counts_by_agent(self, agent_ids: list[str]) -> dict[str, int]:
        if not agent_ids:
            return {}
        placeholders = ",".join("?" for _ in agent_ids)
        rows = self._conn.execute(f"""
            SELECT agent_id, COUNT(*) FROM alerts
            WHERE is_active AND agent_id IN ({placeholders})
            GROUP BY agent_id
        """, agent_ids).fetchall()
        return {str(agent_id): int(count) for agent_id, count in rows}
