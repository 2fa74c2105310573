"""Shadow comparison of matching engines.

ShadowDiffEngine compares the v2 candidate against the v1 baseline on every
run where shadowing is on; AlternateShadowRunner cross-checks the served
result against an independent reimplementation. Both store their records
keyed by run id in bounded histories and never raise into the serving path.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from config.reliability.shadow.diff import compare_results, safety_signals
from services.matching.app.arbiter import PrimarySelection, safety_triggers
from services.matching.app.engines import EngineOutcome, EngineRequest, EngineRunner, Err, Ok, execute_engine
from services.matching.app.metrics import SHADOW_RECORDS
from services.matching.app.models import (AltShadowConfig, AltShadowRecord, CanaryConfig, DiffRecord,
                                          ErrorInfo, MatcherConfig, PrimaryConfig, RoutingDecision,
                                          SafetyTriggers, ShadowErrorRecord)
from services.matching.app.store import ALT_SHADOW_DIFFS, SHADOW_DIFFS, InMemoryStateStore
from services.shared.observability import trace_operation

logger = logging.getLogger(__name__)

SHADOW_ERROR_CODE = "matching_v2_shadow_failed"
ALT_SHADOW_ERROR_CODE = "matching_alt_shadow_failed"


@dataclass
class ShadowOutcome:
    v2_outcome: Optional[EngineOutcome]
    safety: SafetyTriggers = field(default_factory=SafetyTriggers)
    diff_record: Optional[DiffRecord] = None
    stored: Optional[Union[DiffRecord, ShadowErrorRecord]] = None
    skipped: bool = False


def build_diff_record(run_id: str, recorded_at: str, v1_config: MatcherConfig, v1_result: Dict[str, Any],
                      v2_config: MatcherConfig, v2_result: Dict[str, Any], max_proposals: int,
                      safety: SafetyTriggers) -> DiffRecord:
    comparison = compare_results(v1_result, v2_result, max_proposals)
    return DiffRecord(
        run_id=run_id,
        recorded_at=recorded_at,
        v1_cycle_bounds=v1_config.cycle_bounds(),
        v2_cycle_bounds=v2_config.cycle_bounds(),
        metrics=comparison["metrics"],
        v2_safety_triggers=safety,
        selected_cycle_keys=comparison["selected_cycle_keys"],
    )


def _error_record(run_id: str, recorded_at: str, err: Err,
                  primary_engine: Optional[str] = None) -> ShadowErrorRecord:
    return ShadowErrorRecord(
        run_id=run_id,
        recorded_at=recorded_at,
        primary_engine=primary_engine,
        error=ErrorInfo(code=err.code, name=err.name, message=err.message),
    )


class ShadowDiffEngine:
    def __init__(self, store: InMemoryStateStore):
        self._store = store

    def _store_record(self, run_id: str, record: Union[DiffRecord, ShadowErrorRecord], max_count: int) -> None:
        evicted = self._store.put_and_prune(SHADOW_DIFFS, run_id, record.model_dump(mode="json"), max_count)
        outcome = "error" if isinstance(record, ShadowErrorRecord) else "diff"
        SHADOW_RECORDS.labels(shadow="v2", outcome=outcome).inc()
        if evicted:
            logger.debug("Pruned shadow diff history", extra={"evicted": len(evicted)})

    def run(self, run_id: str, recorded_at: str, canary_config: CanaryConfig, primary_config: PrimaryConfig,
            routing: RoutingDecision, selection: PrimarySelection, v1_config: MatcherConfig,
            v1_result: Dict[str, Any], v2_config: MatcherConfig, v2_runner: Optional[EngineRunner],
            request: EngineRequest, max_proposals: int) -> ShadowOutcome:
        outcome = ShadowOutcome(v2_outcome=selection.v2_outcome, safety=selection.safety)
        v2_result = selection.v2_result

        if not canary_config.shadow_enabled:
            if v2_result is not None:
                outcome.diff_record = build_diff_record(run_id, recorded_at, v1_config, v1_result,
                                                        v2_config, v2_result, max_proposals, outcome.safety)
            return outcome

        # Primary rollout latched and v2 never ran: nothing to compare.
        if primary_config.enabled and routing.skipped_reason == "rollback_active" and v2_result is None:
            outcome.skipped = True
            return outcome

        shadow_outcome: Optional[EngineOutcome] = None
        with trace_operation("shadow_diff", run_id=run_id):
            if v2_result is None:
                if v2_runner is None:
                    shadow_outcome = Err(code=SHADOW_ERROR_CODE, name="EngineNotConfigured",
                                         message="no v2 matching engine configured")
                else:
                    force = "forced matching v2 shadow error" if canary_config.force_shadow_error else None
                    shadow_outcome = execute_engine(v2_runner, request, error_code=SHADOW_ERROR_CODE,
                                                    force_error=force, run_id=run_id)
                if outcome.v2_outcome is None or isinstance(shadow_outcome, Ok):
                    outcome.v2_outcome = shadow_outcome
                if isinstance(shadow_outcome, Ok):
                    v2_result = shadow_outcome.value

            if v2_result is not None:
                outcome.safety = safety_triggers(v2_result, primary_config)
                outcome.diff_record = build_diff_record(run_id, recorded_at, v1_config, v1_result,
                                                        v2_config, v2_result, max_proposals, outcome.safety)

            if canary_config.force_shadow_error and isinstance(selection.v2_outcome, Ok):
                stored: Union[DiffRecord, ShadowErrorRecord] = _error_record(
                    run_id, recorded_at,
                    Err(code=SHADOW_ERROR_CODE, name="ForcedEngineError", message="forced matching v2 shadow error"))
            elif outcome.diff_record is not None:
                stored = outcome.diff_record
            else:
                err = shadow_outcome if isinstance(shadow_outcome, Err) else Err(
                    code=SHADOW_ERROR_CODE, name="EngineError", message="v2 shadow execution failed")
                stored = _error_record(run_id, recorded_at, err)

            self._store_record(run_id, stored, canary_config.max_shadow_diffs)
            outcome.stored = stored

        if isinstance(stored, ShadowErrorRecord):
            logger.warning(
                "Matching v2 shadow diff recorded as error",
                extra={"run_id": run_id, "error_code": stored.error.code, "error_type": stored.error.name}
            )
        return outcome

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._store.get(SHADOW_DIFFS, run_id)


class AlternateShadowRunner:
    def __init__(self, store: InMemoryStateStore):
        self._store = store

    def run(self, run_id: str, recorded_at: str, config: AltShadowConfig, primary_engine: str,
            primary_result: Dict[str, Any], matcher_config: MatcherConfig,
            runner: Optional[EngineRunner], request: EngineRequest,
            max_proposals: int) -> Optional[Union[AltShadowRecord, ShadowErrorRecord]]:
        if not config.enabled:
            return None

        alt_request = EngineRequest(
            intents=request.intents,
            asset_values_usd=request.asset_values_usd,
            edge_intents=request.edge_intents,
            now_iso=request.now_iso,
            config=matcher_config,
        )
        if runner is None:
            result: EngineOutcome = Err(code=ALT_SHADOW_ERROR_CODE, name="EngineNotConfigured",
                                        message="no alternate matching engine configured")
        else:
            force = "forced matching alt shadow error" if config.force_shadow_error else None
            result = execute_engine(runner, alt_request, error_code=ALT_SHADOW_ERROR_CODE,
                                    force_error=force, run_id=run_id)

        if isinstance(result, Ok):
            comparison = compare_results(primary_result, result.value, max_proposals,
                                         baseline_label="primary", candidate_label="alt")
            record: Union[AltShadowRecord, ShadowErrorRecord] = AltShadowRecord(
                run_id=run_id,
                recorded_at=recorded_at,
                primary_engine=primary_engine,
                matcher_cycle_bounds=matcher_config.cycle_bounds(),
                metrics=comparison["metrics"],
                alt_safety_triggers=SafetyTriggers(**safety_signals(result.value)),
                selected_cycle_keys=comparison["selected_cycle_keys"],
            )
            SHADOW_RECORDS.labels(shadow="alt", outcome="diff").inc()
        else:
            record = _error_record(run_id, recorded_at, result, primary_engine=primary_engine)
            SHADOW_RECORDS.labels(shadow="alt", outcome="error").inc()

        self._store.put_and_prune(ALT_SHADOW_DIFFS, run_id, record.model_dump(mode="json"),
                                  config.max_shadow_diffs)
        return record

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._store.get(ALT_SHADOW_DIFFS, run_id)
