import logging
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from services.matching.app import settings
from services.matching.app.control_loop import (BaselineEngineError, EngineRunners, MatchingControlLoop,
                                                RunConfigs)
from services.matching.app.engines import HttpEngineRunner
from services.matching.app.models import MatchingRunRequest, MatchingRunResponse
from services.matching.app.rollback import RollbackController
from services.matching.app.shadow import AlternateShadowRunner, ShadowDiffEngine
from services.matching.app.store import CANARY_DECISIONS, InMemoryStateStore, JsonFileStateStore
from services.shared.observability import (
    setup_logging, setup_tracing, instrument_fastapi, instrument_httpx,
    trace_operation, add_span_attributes, get_correlation_id
)

SERVICE_NAME = "matching-gateway"
SERVICE_VERSION = os.environ.get("SERVICE_VERSION", "0.1.0")

logger = setup_logging(SERVICE_NAME)
tracer = setup_tracing(SERVICE_NAME, SERVICE_VERSION)


def configure_uvicorn_logging():
    """Configure uvicorn's access and error loggers to use JSON format."""
    json_handler = logging.root.handlers[0] if logging.root.handlers else None
    if json_handler:
        for name in ("uvicorn.access", "uvicorn.error", "uvicorn"):
            uvicorn_logger = logging.getLogger(name)
            uvicorn_logger.handlers.clear()
            uvicorn_logger.addHandler(json_handler)
            uvicorn_logger.propagate = False


configure_uvicorn_logging()

app = FastAPI(
    title="Matching Gateway API",
    version=SERVICE_VERSION,
    description="Matching gateway with v2 canary rollout, shadow diffing and rollback latch",
)

instrument_fastapi(app, SERVICE_NAME)
instrument_httpx()

_store: Optional[InMemoryStateStore] = None


def get_store() -> InMemoryStateStore:
    global _store
    if _store is None:
        path = settings.state_path()
        _store = JsonFileStateStore(path) if path else InMemoryStateStore()
        logger.info("Matching state store ready", extra={"persistent": bool(path)})
    return _store


def get_runners() -> EngineRunners:
    timeout_s = settings.engine_timeout_s()
    runners = {}
    for name in ("v1", "v2", "alt"):
        url = settings.engine_url(name)
        runners[name] = HttpEngineRunner(name, url, timeout_s) if url else None
    if runners["v1"] is None:
        raise HTTPException(status_code=503, detail="v1 matching engine not configured")
    return EngineRunners(v1=runners["v1"], v2=runners["v2"], alt=runners["alt"])


def get_run_configs() -> RunConfigs:
    return RunConfigs(
        canary=settings.load_canary_config(),
        primary=settings.load_primary_config(),
        alt_shadow=settings.load_alt_shadow_config(),
        v1_matcher=settings.v1_matcher_config(),
        v2_matcher=settings.load_v2_matcher_config(),
    )


@app.get("/healthz", tags=["health"])
def health() -> Dict[str, Any]:
    """Health check endpoint for Kubernetes probes."""
    return {"ok": True, "version": SERVICE_VERSION}


@app.get("/metrics", tags=["metrics"])
def metrics() -> Response:
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


@app.get("/readyz", tags=["health"])
def ready() -> Dict[str, Any]:
    """Readiness check - verify the v1 baseline engine answers."""
    url = settings.engine_url("v1")
    if not url:
        raise HTTPException(status_code=503, detail="v1 matching engine not configured")
    try:
        HttpEngineRunner("v1", url).ping()
        return {"ready": True, "v1_engine": "healthy"}
    except Exception as e:
        logger.warning(f"v1 engine health check failed: {e}")
        raise HTTPException(status_code=503, detail="v1 matching engine not ready")


@app.get("/observability/health", tags=["observability"])
def observability_health() -> Dict[str, Any]:
    """Check observability stack health."""
    health_status = {
        "logging": {"status": "healthy", "level": logging.root.level},
        "tracing": {"status": "healthy", "service_name": SERVICE_NAME},
        "correlation_id": get_correlation_id(),
    }

    try:
        with trace_operation("health_check_test"):
            pass
        health_status["tracing"]["test_span"] = "success"
    except Exception as e:
        health_status["tracing"]["test_span"] = f"failed: {e}"
        health_status["tracing"]["status"] = "degraded"

    logger.info("Observability health check performed", extra=health_status)
    return health_status


@app.get("/observability/config", tags=["observability"])
def observability_config() -> Dict[str, Any]:
    """Get current observability and rollout configuration."""
    return {
        "service": {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
        },
        "logging": {
            "level": logging.getLevelName(logging.root.level),
            "handlers": [type(h).__name__ for h in logging.root.handlers],
        },
        "tracing": {
            "otlp_endpoint": os.environ.get("OTLP_ENDPOINT", "not_set"),
            "trace_console": os.environ.get("TRACE_CONSOLE", "false"),
        },
        "engines": {name: settings.engine_url(name) for name in ("v1", "v2", "alt")},
        "canary": settings.load_canary_config().model_dump(),
        "primary": settings.load_primary_config().model_dump(),
        "alt_shadow": settings.load_alt_shadow_config().model_dump(),
    }


@app.post("/observability/log-level", tags=["observability"])
def set_log_level(level: str) -> Dict[str, Any]:
    """Dynamically change log level."""
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid log level: {level}. Valid levels: DEBUG, INFO, WARNING, ERROR, CRITICAL"
        )
    old_level = logging.getLevelName(logging.root.level)
    logging.root.setLevel(numeric_level)
    logger.info("Log level changed", extra={"old_level": old_level, "new_level": level.upper()})
    return {"success": True, "old_level": old_level, "new_level": level.upper()}


@app.post("/matching/runs", response_model=MatchingRunResponse, tags=["matching"])
def run_matching(
    req: MatchingRunRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    store: InMemoryStateStore = Depends(get_store),
    runners: EngineRunners = Depends(get_runners),
    configs: RunConfigs = Depends(get_run_configs),
) -> MatchingRunResponse:
    """Run v1 (and, when selected, v2) matching and return the served result."""
    add_span_attributes(intents=len(req.intents), correlation_id=get_correlation_id() or "none")
    loop = MatchingControlLoop(store, runners)
    try:
        result = loop.run(req, configs, idempotency_key=idempotency_key)
    except BaselineEngineError as e:
        logger.error(
            "Matching baseline engine failed",
            extra={"error_type": e.err.name, "error": e.err.message, "correlation_id": get_correlation_id()}
        )
        raise HTTPException(status_code=502, detail="matching baseline engine failed")

    return MatchingRunResponse(
        run_id=result.run_id,
        recorded_at=result.recorded_at,
        primary_engine=result.primary_engine,
        proposals=result.proposals,
        decision_record=result.decision_record,
    )


@app.get("/matching/runs/{run_id}/decision", tags=["matching"])
def get_decision(run_id: str, store: InMemoryStateStore = Depends(get_store)) -> Dict[str, Any]:
    record = store.get(CANARY_DECISIONS, run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"no canary decision for run {run_id}")
    return record


@app.get("/matching/shadow-diffs/{run_id}", tags=["matching"])
def get_shadow_diff(run_id: str, store: InMemoryStateStore = Depends(get_store)) -> Dict[str, Any]:
    record = ShadowDiffEngine(store).get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"no shadow diff for run {run_id}")
    return record


@app.get("/matching/alt-shadow-diffs/{run_id}", tags=["matching"])
def get_alt_shadow_diff(run_id: str, store: InMemoryStateStore = Depends(get_store)) -> Dict[str, Any]:
    record = AlternateShadowRunner(store).get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"no alternate shadow diff for run {run_id}")
    return record


@app.get("/canary/state", tags=["canary"])
def canary_state(store: InMemoryStateStore = Depends(get_store)) -> Dict[str, Any]:
    return RollbackController(store).state().model_dump(mode="json")


@app.post("/canary/rollback/reset", tags=["canary"])
def reset_canary_rollback(store: InMemoryStateStore = Depends(get_store)) -> Dict[str, Any]:
    """Operator action: clear the rollback latch and the sample window."""
    state = RollbackController(store).reset()
    return {"reset": True, "state": state.model_dump(mode="json")}
