"""FastAPI service for receipt ingest and agent risk lookups.

Usage:
    WATCHTOWER_DB_PATH=.state/watchtower.duckdb \
        PYTHONPATH=src uvicorn service.api.server:app --port 3000
"""
from __future__ import annotations

import logging
import shutil
import sys
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import orjson
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import ORJSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import Response

# Add watchtower src to path so the service runs from a source checkout
_core_src = Path(__file__).resolve().parents[2] / "src"
if str(_core_src) not in sys.path:
    sys.path.insert(0, str(_core_src))

from watchtower_core.config import WatchtowerConfig, load_config  # noqa: E402
from watchtower_core.ingest import IngestError, ingest_receipt  # noqa: E402
from watchtower_core.solver_receipt import MANIFEST_PATH  # noqa: E402
from watchtower_core.store import WatchtowerStore  # noqa: E402

log = logging.getLogger("watchtower.api")

# ---------------------------------------------------------------------------
# Globals
#
# DuckDB connections are NOT thread-safe. Run with a single uvicorn worker
# and keep every endpoint `async def` so all store access happens on the
# event loop thread.
# ---------------------------------------------------------------------------
_config: WatchtowerConfig = WatchtowerConfig()
_store: WatchtowerStore | None = None

_API_KEY_HEADER = "x-watchtower-key"

# Private registry: /metrics exposes watchtower series only.
_metrics_registry = CollectorRegistry()
_receipt_ingests = Counter(
    "watchtower_receipt_ingests",
    "Receipt ingests completed through the API, by verification outcome.",
    ["outcome"],
    registry=_metrics_registry,
)
_behavior_signals = Counter(
    "watchtower_behavior_signals",
    "Behavior signals produced by API receipt ingests.",
    ["signal_id"],
    registry=_metrics_registry,
)
_ingest_errors = Counter(
    "watchtower_receipt_ingest_errors",
    "Receipt ingests rejected before verification (unreadable receipt).",
    registry=_metrics_registry,
)


def _get_store() -> WatchtowerStore:
    """Get the store, raising 503 if it is not open."""
    if _store is None:
        raise HTTPException(status_code=503, detail="Watchtower store not available")
    return _store


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    global _config, _store  # noqa: PLW0603
    _config = load_config()
    logging.basicConfig(
        level=_config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    _store = WatchtowerStore(_config.db_path, create_if_missing=True)
    log.info("store opened at %s", _config.db_path)
    yield
    if _store is not None:
        _store.close()
        _store = None


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Watchtower API",
    version="0.1.0",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)


def _check_api_key(request: Request) -> None:
    """Reject the request when an API key is configured and not presented."""
    expected = _config.api_key
    if not expected:
        return
    if request.headers.get(_API_KEY_HEADER, "") != expected:
        raise HTTPException(status_code=401, detail="unauthorized")


@app.middleware("http")
async def _api_key_middleware(request: Request, call_next: Any) -> Response:
    if request.url.path.startswith("/v1/"):
        try:
            _check_api_key(request)
        except HTTPException as he:
            return ORJSONResponse(status_code=he.status_code, content={"error": he.detail})
    return await call_next(request)


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------
@app.get("/api/health")
async def health():
    return {"status": "ok", "store_open": _store is not None}


@app.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(_metrics_registry), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Routes: Receipts
# ---------------------------------------------------------------------------
class IngestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_id: str | None = Field(default=None, alias="agentId")
    manifest: dict[str, Any] | None = None


@app.post("/v1/receipts/ingest")
async def ingest(req: IngestRequest):
    if not req.agent_id or req.manifest is None:
        raise HTTPException(status_code=400, detail="agentId and manifest are required")
    store = _get_store()

    run_dir = Path(tempfile.mkdtemp(prefix="wt-ingest-"))
    try:
        manifest_path = run_dir / MANIFEST_PATH
        manifest_path.parent.mkdir(parents=True, exist_ok=True)
        manifest_path.write_bytes(orjson.dumps(req.manifest))
        result = ingest_receipt(
            store,
            req.agent_id,
            manifest_path,
            run_dir,
            options=_config.verify_options(),
            snapshot_limit=_config.snapshot_limit,
        )
    except IngestError as exc:
        _ingest_errors.inc()
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    finally:
        shutil.rmtree(run_dir, ignore_errors=True)

    _receipt_ingests.labels(outcome="ok" if result.ok else "failed").inc()
    for signal_id in result.signals_produced:
        _behavior_signals.labels(signal_id=signal_id).inc()
    return result.to_dict()


# ---------------------------------------------------------------------------
# Routes: Agents & alerts
# ---------------------------------------------------------------------------
@app.get("/v1/agents")
async def list_agents():
    store = _get_store()
    agents = store.list_agents()
    ids = [a.agent_id for a in agents]
    reports = store.get_latest_risk_reports_by_agents(ids)
    alert_counts = store.get_active_alert_counts_by_agent(ids)
    return {
        "agents": [
            {
                **agent.to_dict(),
                "overallRisk": reports[agent.agent_id].overall_risk
                if agent.agent_id in reports else None,
                "activeAlerts": alert_counts.get(agent.agent_id, 0),
            }
            for agent in agents
        ]
    }


@app.get("/v1/agents/{agent_id}/risk")
async def agent_risk(agent_id: str):
    report = _get_store().get_latest_risk_report(agent_id)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No risk report for agent: {agent_id}")
    return report.to_dict()


@app.get("/v1/alerts")
async def list_alerts(
    agent_id: str | None = Query(default=None, alias="agentId"),
    active_only: bool = Query(default=False, alias="activeOnly"),
):
    alerts = _get_store().list_alerts(agent_id=agent_id, active_only=active_only)
    return {"alerts": [a.to_dict() for a in alerts]}
