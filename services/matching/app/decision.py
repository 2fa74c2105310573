"""Per-run canary audit records. Pure data assembly, no side effects."""
from typing import Any, Dict, Optional

from config.reliability.shadow.diff import candidate_cycles
from services.matching.app.models import (CanaryConfig, DecisionMetrics, DecisionRecord, DecisionRollback,
                                          DecisionV2, DiffRecord, ErrorInfo, PrimaryConfig, RollbackUpdate,
                                          RoutingDecision, RunSample, SafetyTriggers)


def build_sample(run_id: str, recorded_at: str, canary_selected: bool, canary_error: Optional[ErrorInfo],
                 safety: SafetyTriggers, diff_record: Optional[DiffRecord]) -> Optional[RunSample]:
    if not canary_selected:
        return None
    errored = canary_error is not None
    delta = int((diff_record.metrics.get("delta_score_sum_scaled") if diff_record else 0) or 0)
    return RunSample(
        run_id=run_id,
        recorded_at=recorded_at,
        error=errored,
        timeout=False if errored else safety.timeout_reached,
        limited=False if errored else safety.max_cycles_reached,
        non_negative_delta=False if errored else delta >= 0,
    )


def build_decision_record(run_id: str, recorded_at: str, canary_config: CanaryConfig,
                          primary_config: PrimaryConfig, routing: RoutingDecision, primary_engine: str,
                          fallback_reason_code: Optional[str], rollback_reset_applied: bool,
                          rollback: RollbackUpdate, canary_error: Optional[ErrorInfo],
                          diff_record: Optional[DiffRecord], v1_result: Dict[str, Any],
                          primary_result: Dict[str, Any], sample: Optional[RunSample]) -> DecisionRecord:
    fell_back = routing.canary_selected and primary_engine != "v2"
    metrics = diff_record.metrics if diff_record else {}
    return DecisionRecord(
        run_id=run_id,
        recorded_at=recorded_at,
        mode="v2_primary" if primary_config.enabled else "v2_canary",
        primary_engine=primary_engine,
        routed_to_v2=primary_engine == "v2",
        fallback_to_v1=fell_back,
        fallback_reason_code=fallback_reason_code if fell_back else None,
        canary_selected=routing.canary_selected,
        canary_enabled=canary_config.enabled,
        primary_enabled=primary_config.enabled,
        rollback_reset_applied=rollback_reset_applied,
        skipped_reason=routing.skipped_reason,
        rollout_bps=canary_config.rollout_bps,
        bucket_bps=routing.bucket_bps,
        in_rollout_bucket=routing.in_rollout_bucket,
        rollback=DecisionRollback(
            active_before=rollback.before.active,
            reason_code_before=rollback.before.reason_code,
            active_after=rollback.after.active,
            reason_code_after=rollback.after.reason_code,
            triggered=rollback.triggered,
            trigger_reason_code=rollback.after.reason_code if rollback.triggered else None,
        ),
        v2=DecisionV2(attempted=routing.canary_selected, error=canary_error),
        metrics=DecisionMetrics(
            v1_candidate_cycles=int(metrics.get("v1_candidate_cycles", candidate_cycles(v1_result))),
            v2_candidate_cycles=int(metrics.get("v2_candidate_cycles", 0)) if diff_record else None,
            primary_candidate_cycles=candidate_cycles(primary_result),
            delta_score_sum_scaled=int(metrics.get("delta_score_sum_scaled", 0)) if diff_record else None,
            timeout_reached=diff_record.v2_safety_triggers.timeout_reached if diff_record else None,
            limited_reached=diff_record.v2_safety_triggers.max_cycles_reached if diff_record else None,
        ),
        sample=sample,
        sample_summary=rollback.summary,
    )
