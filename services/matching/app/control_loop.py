"""Per-request matching control loop.

v1 always runs as the safety-net baseline. Routing, candidate execution,
shadow comparison, rollback evaluation and decision recording follow in
that order, synchronously, against the shared store.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config.reliability.canary.evaluator import summarize
from services.matching.app.arbiter import SelectionArbiter
from services.matching.app.decision import build_decision_record, build_sample
from services.matching.app.engines import EngineRequest, EngineRunner, Err, execute_engine
from services.matching.app.metrics import CANARY_OUTCOME, FALLBACK_COUNT, RUN_COUNT
from services.matching.app.models import (AltShadowConfig, CanaryConfig, DecisionRecord, MatcherConfig,
                                          MatchingRunRequest, PrimaryConfig, RollbackUpdate)
from services.matching.app.rollback import RollbackController
from services.matching.app.shadow import AlternateShadowRunner, ShadowDiffEngine
from services.matching.app.store import CANARY_DECISIONS, InMemoryStateStore
from services.shared.observability import add_span_attributes, trace_operation

logger = logging.getLogger(__name__)

BASELINE_ERROR_CODE = "matching_v1_failed"


class BaselineEngineError(RuntimeError):
    """The v1 baseline failed; there is no result to serve."""

    def __init__(self, err: Err):
        super().__init__(f"{err.name}: {err.message}")
        self.err = err


@dataclass(frozen=True)
class RunConfigs:
    canary: CanaryConfig
    primary: PrimaryConfig
    alt_shadow: AltShadowConfig
    v1_matcher: MatcherConfig
    v2_matcher: MatcherConfig


@dataclass(frozen=True)
class EngineRunners:
    v1: EngineRunner
    v2: Optional[EngineRunner] = None
    alt: Optional[EngineRunner] = None


@dataclass
class MatchingRunResult:
    run_id: str
    recorded_at: str
    primary_engine: str
    proposals: List[Dict[str, Any]]
    decision_record: DecisionRecord
    persisted: bool


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MatchingControlLoop:
    def __init__(self, store: InMemoryStateStore, runners: EngineRunners):
        self.store = store
        self.runners = runners
        self.rollback = RollbackController(store)
        self.arbiter = SelectionArbiter()
        self.shadow = ShadowDiffEngine(store)
        self.alt_shadow = AlternateShadowRunner(store)

    def next_run_id(self) -> str:
        return f"mrun_{self.store.next_sequence('marketplace_matching_run'):06d}"

    def run(self, req: MatchingRunRequest, configs: RunConfigs,
            idempotency_key: Optional[str] = None) -> MatchingRunResult:
        recorded_at = req.recorded_at or utc_now_iso()
        idempotency_key = req.idempotency_key or idempotency_key
        canary, primary = configs.canary, configs.primary

        v1_request = EngineRequest(intents=req.intents, asset_values_usd=req.asset_values_usd,
                                   edge_intents=req.edge_intents, now_iso=recorded_at,
                                   config=configs.v1_matcher)
        v2_request = EngineRequest(intents=req.intents, asset_values_usd=req.asset_values_usd,
                                   edge_intents=req.edge_intents, now_iso=recorded_at,
                                   config=configs.v2_matcher)

        run_id = self.next_run_id()
        with trace_operation("matching_run", run_id=run_id):
            v1_outcome = execute_engine(self.runners.v1, v1_request, error_code=BASELINE_ERROR_CODE, run_id=run_id)
            if isinstance(v1_outcome, Err):
                raise BaselineEngineError(v1_outcome)
            v1_result = v1_outcome.value

            rollback_reset_applied = False
            if primary.enabled and primary.rollback_reset:
                self.rollback.reset()
                rollback_reset_applied = True

            before = self.rollback.snapshot()
            routing = self.arbiter.route(canary, primary, before, req.actor, idempotency_key, recorded_at)
            selection = self.arbiter.select(routing, canary, primary, v1_result, self.runners.v2,
                                            v2_request, run_id)
            shadow = self.shadow.run(run_id, recorded_at, canary, primary, routing, selection,
                                     configs.v1_matcher, v1_result, configs.v2_matcher, self.runners.v2,
                                     v2_request, req.max_proposals)

            primary_matcher = configs.v2_matcher if selection.primary_engine == "v2" else configs.v1_matcher
            self.alt_shadow.run(run_id, recorded_at, configs.alt_shadow, selection.primary_engine,
                                selection.primary_result, primary_matcher, self.runners.alt,
                                v2_request, req.max_proposals)

            sample = build_sample(run_id, recorded_at, routing.canary_selected, selection.canary_error,
                                  shadow.safety, shadow.diff_record)
            if routing.tracking_enabled:
                rollback = self.rollback.update(canary, run_id, recorded_at, sample)
            else:
                state = self.rollback.state()
                rollback = RollbackUpdate(before=before, after=state.snapshot(),
                                          summary=summarize([], canary.thresholds()), triggered=False)

            decision = build_decision_record(
                run_id, recorded_at, canary, primary, routing, selection.primary_engine,
                selection.fallback_reason_code, rollback_reset_applied, rollback, selection.canary_error,
                shadow.diff_record, v1_result, selection.primary_result, sample,
            )
            if routing.tracking_enabled:
                self.store.put_and_prune(CANARY_DECISIONS, run_id, decision.model_dump(mode="json"),
                                         canary.max_canary_decisions)

            self._observe(decision)
            add_span_attributes(primary_engine=decision.primary_engine, canary_selected=decision.canary_selected)

        matching = selection.primary_result.get("matching") or {}
        proposals = [p for p in matching.get("proposals") or [] if isinstance(p, dict)][:req.max_proposals]

        logger.info(
            "Matching run completed",
            extra={
                "run_id": run_id,
                "mode": decision.mode,
                "primary_engine": decision.primary_engine,
                "canary_selected": decision.canary_selected,
                "skipped_reason": decision.skipped_reason,
                "fallback_reason_code": decision.fallback_reason_code,
                "rollback_active": decision.rollback.active_after,
                "proposals": len(proposals),
            }
        )
        return MatchingRunResult(run_id=run_id, recorded_at=recorded_at, primary_engine=decision.primary_engine,
                                 proposals=proposals, decision_record=decision,
                                 persisted=routing.tracking_enabled)

    def _observe(self, decision: DecisionRecord) -> None:
        RUN_COUNT.labels(mode=decision.mode, primary_engine=decision.primary_engine).inc()
        if decision.canary_selected:
            outcome = "error" if decision.v2.error else ("fallback" if decision.fallback_to_v1 else "served")
            CANARY_OUTCOME.labels(mode=decision.mode, outcome=outcome).inc()
        if decision.fallback_reason_code:
            FALLBACK_COUNT.labels(reason_code=decision.fallback_reason_code).inc()

    def get_decision(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(CANARY_DECISIONS, run_id)
