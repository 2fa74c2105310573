"""Canary selection and primary-result arbitration for matching v2."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from config.reliability.canary.bucket import compute_bucket, in_rollout_bucket
from config.reliability.shadow.diff import safety_signals
from services.matching.app.engines import EngineOutcome, EngineRequest, EngineRunner, Err, Ok, execute_engine
from services.matching.app.models import (Actor, CanaryConfig, ErrorInfo, PrimaryConfig,
                                          RollbackSnapshot, RoutingDecision, SafetyTriggers)
from services.shared.observability import add_span_attributes, trace_operation

logger = logging.getLogger(__name__)

PRIMARY_ERROR_CODE = "matching_v2_primary_failed"
CANARY_ERROR_CODE = "matching_v2_canary_failed"


def safety_triggers(result: Optional[Dict[str, Any]], primary_config: PrimaryConfig) -> SafetyTriggers:
    """Candidate safety triggers; only binding when v2 is the graduated primary."""
    if not primary_config.enabled or result is None:
        return SafetyTriggers()
    raw = safety_signals(result)
    return SafetyTriggers(
        timeout_reached=raw["timeout_reached"] or primary_config.force_timeout_safety,
        max_cycles_reached=raw["max_cycles_reached"] or primary_config.force_limited_safety,
    )


@dataclass
class PrimarySelection:
    primary_result: Dict[str, Any]
    primary_engine: str
    v2_outcome: Optional[EngineOutcome] = None
    fallback_reason_code: Optional[str] = None
    safety: SafetyTriggers = field(default_factory=SafetyTriggers)
    canary_error: Optional[ErrorInfo] = None

    @property
    def v2_result(self) -> Optional[Dict[str, Any]]:
        return self.v2_outcome.value if isinstance(self.v2_outcome, Ok) else None


class SelectionArbiter:
    def route(self, canary_config: CanaryConfig, primary_config: PrimaryConfig,
              rollback: RollbackSnapshot, actor: Actor, idempotency_key: Optional[str],
              requested_at: str) -> RoutingDecision:
        tracking_enabled = canary_config.enabled or primary_config.enabled
        if not tracking_enabled:
            return RoutingDecision(tracking_enabled=False, canary_selected=False,
                                   skipped_reason="canary_disabled", bucket_bps=None,
                                   in_rollout_bucket=False)

        with trace_operation("canary_routing") as span:
            bucket: Optional[int] = None
            if primary_config.enabled:
                # Graduated rollout: every run goes to v2 unless latched.
                in_bucket = True
                bucket_ok = True
            else:
                bucket = compute_bucket(canary_config.salt, actor.type, actor.id,
                                        idempotency_key, requested_at)
                bucket_ok = bucket is not None
                if bucket is None:
                    logger.warning("Canary bucket unavailable, excluding run",
                                   extra={"requested_at": str(requested_at)})
                    bucket = 0
                in_bucket = bucket_ok and (canary_config.force_bucket_v2
                                           or in_rollout_bucket(bucket, canary_config.rollout_bps))

            if canary_config.force_skip:
                skipped_reason = "operator_forced_skip"
            elif rollback.active:
                skipped_reason = "rollback_active"
            elif not bucket_ok:
                skipped_reason = "bucket_unavailable"
            elif not in_bucket:
                skipped_reason = "rollout_excluded"
            else:
                skipped_reason = None

            span.set_attribute("canary.bucket_bps", str(bucket))
            span.set_attribute("canary.rollout_bps", str(canary_config.rollout_bps))
            span.set_attribute("canary.skipped_reason", str(skipped_reason))

        return RoutingDecision(tracking_enabled=True, canary_selected=skipped_reason is None,
                               skipped_reason=skipped_reason, bucket_bps=bucket,
                               in_rollout_bucket=in_bucket)

    def select(self, routing: RoutingDecision, canary_config: CanaryConfig,
               primary_config: PrimaryConfig, v1_result: Dict[str, Any],
               v2_runner: Optional[EngineRunner], request: EngineRequest,
               run_id: str) -> PrimarySelection:
        selection = PrimarySelection(primary_result=v1_result, primary_engine="v1")
        if not routing.canary_selected:
            return selection

        if primary_config.enabled:
            error_code, fallback_code = PRIMARY_ERROR_CODE, "v2_error"
            force = "forced matching v2 primary error" if primary_config.force_primary_error else None
        else:
            error_code, fallback_code = CANARY_ERROR_CODE, "canary_error"
            force = "forced matching v2 canary error" if canary_config.force_canary_error else None

        if v2_runner is None:
            outcome: EngineOutcome = Err(code=error_code, name="EngineNotConfigured",
                                         message="no v2 matching engine configured")
        else:
            outcome = execute_engine(v2_runner, request, error_code=error_code,
                                     force_error=force, run_id=run_id)
        selection.v2_outcome = outcome

        if isinstance(outcome, Err):
            selection.canary_error = ErrorInfo(code=outcome.code, name=outcome.name, message=outcome.message)
            selection.fallback_reason_code = fallback_code
        elif isinstance(outcome, Ok):
            selection.safety = safety_triggers(outcome.value, primary_config)
            timeout_fallback = selection.safety.timeout_reached and primary_config.fallback_on_timeout
            limited_fallback = selection.safety.max_cycles_reached and primary_config.fallback_on_limited
            if primary_config.enabled and (timeout_fallback or limited_fallback):
                selection.fallback_reason_code = "v2_timeout_safety" if timeout_fallback else "v2_limited_safety"
            else:
                selection.primary_result = outcome.value
                selection.primary_engine = "v2"

        add_span_attributes(primary_engine=selection.primary_engine,
                            fallback_reason_code=selection.fallback_reason_code or "none")
        if selection.fallback_reason_code:
            logger.info(
                "Matching v2 fell back to v1",
                extra={"run_id": run_id, "reason_code": selection.fallback_reason_code}
            )
        return selection
