from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config.reliability.canary.evaluator import RollbackThresholds

EngineName = Literal["v1", "v2"]


class CanaryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    rollout_bps: int = Field(0, ge=0, le=10000)
    salt: str = "matching-v2-canary"
    rollback_window_runs: int = Field(20, ge=1)
    force_canary_error: bool = False
    force_shadow_error: bool = False
    max_shadow_diffs: int = Field(100, ge=0)
    shadow_enabled: bool = False
    force_bucket_v2: bool = False
    force_skip: bool = False
    max_canary_decisions: int = Field(200, ge=0)
    rollback_min_samples: int = Field(1, ge=1)
    rollback_max_error_rate: float = Field(0.0, ge=0.0, le=1.0)
    rollback_max_timeout_rate: float = Field(0.0, ge=0.0, le=1.0)
    rollback_max_limited_rate: float = Field(0.0, ge=0.0, le=1.0)
    rollback_max_negative_delta_rate: float = Field(0.0, ge=0.0, le=1.0)

    def thresholds(self) -> RollbackThresholds:
        return RollbackThresholds(
            min_samples=self.rollback_min_samples,
            max_error_rate=self.rollback_max_error_rate,
            max_timeout_rate=self.rollback_max_timeout_rate,
            max_limited_rate=self.rollback_max_limited_rate,
            max_negative_delta_rate=self.rollback_max_negative_delta_rate,
        )


class PrimaryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    fallback_on_timeout: bool = True
    fallback_on_limited: bool = True
    force_primary_error: bool = False
    rollback_reset: bool = False
    force_timeout_safety: bool = False
    force_limited_safety: bool = False


class AltShadowConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    force_shadow_error: bool = False
    max_shadow_diffs: int = Field(100, ge=0)


class MatcherConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_cycle_length: int = Field(2, ge=2)
    max_cycle_length: int = Field(3, ge=2)
    include_cycle_diagnostics: bool = False
    max_cycles_explored: Optional[int] = Field(None, ge=1)
    timeout_ms: Optional[int] = Field(None, ge=1)

    def cycle_bounds(self) -> Dict[str, int]:
        return {"min_cycle_length": self.min_cycle_length, "max_cycle_length": self.max_cycle_length}


class SafetyTriggers(BaseModel):
    timeout_reached: bool = False
    max_cycles_reached: bool = False


class ErrorInfo(BaseModel):
    code: str
    name: str
    message: str


class RunSample(BaseModel):
    run_id: str
    recorded_at: str
    error: bool
    timeout: bool
    limited: bool
    non_negative_delta: bool


class RollbackSnapshot(BaseModel):
    active: bool = False
    reason_code: Optional[str] = None


class RollbackState(BaseModel):
    rollback_active: bool = False
    rollback_reason_code: Optional[str] = None
    rollback_activated_at: Optional[str] = None
    rollback_run_id: Optional[str] = None
    recent_samples: List[RunSample] = Field(default_factory=list)

    def snapshot(self) -> RollbackSnapshot:
        return RollbackSnapshot(active=self.rollback_active, reason_code=self.rollback_reason_code)


class RollbackUpdate(BaseModel):
    before: RollbackSnapshot
    after: RollbackSnapshot
    summary: Dict[str, Any]
    triggered: bool


class DiffRecord(BaseModel):
    run_id: str
    recorded_at: str
    v1_cycle_bounds: Dict[str, int]
    v2_cycle_bounds: Dict[str, int]
    metrics: Dict[str, Any]
    v2_safety_triggers: SafetyTriggers
    selected_cycle_keys: Dict[str, Any]


class AltShadowRecord(BaseModel):
    run_id: str
    recorded_at: str
    primary_engine: EngineName
    matcher_cycle_bounds: Dict[str, int]
    metrics: Dict[str, Any]
    alt_safety_triggers: SafetyTriggers
    selected_cycle_keys: Dict[str, Any]


class ShadowErrorRecord(BaseModel):
    run_id: str
    recorded_at: str
    primary_engine: Optional[EngineName] = None
    error: ErrorInfo


class RoutingDecision(BaseModel):
    tracking_enabled: bool
    canary_selected: bool
    skipped_reason: Optional[str]
    bucket_bps: Optional[int]
    in_rollout_bucket: bool


class DecisionRollback(BaseModel):
    active_before: bool
    reason_code_before: Optional[str]
    active_after: bool
    reason_code_after: Optional[str]
    triggered: bool
    trigger_reason_code: Optional[str]


class DecisionV2(BaseModel):
    attempted: bool
    error: Optional[ErrorInfo] = None


class DecisionMetrics(BaseModel):
    v1_candidate_cycles: int
    v2_candidate_cycles: Optional[int]
    primary_candidate_cycles: int
    delta_score_sum_scaled: Optional[int]
    timeout_reached: Optional[bool]
    limited_reached: Optional[bool]


class DecisionRecord(BaseModel):
    run_id: str
    recorded_at: str
    mode: Literal["v2_primary", "v2_canary"]
    primary_engine: EngineName
    routed_to_v2: bool
    fallback_to_v1: bool
    fallback_reason_code: Optional[str]
    canary_selected: bool
    canary_enabled: bool
    primary_enabled: bool
    rollback_reset_applied: bool
    skipped_reason: Optional[str]
    rollout_bps: int
    bucket_bps: Optional[int]
    in_rollout_bucket: bool
    rollback: DecisionRollback
    v2: DecisionV2
    metrics: DecisionMetrics
    sample: Optional[RunSample]
    sample_summary: Dict[str, Any]


class Actor(BaseModel):
    type: Optional[str] = Field(None, description="Actor type, e.g. user or partner")
    id: Optional[str] = Field(None, description="Actor identifier")


class MatchingRunRequest(BaseModel):
    actor: Actor = Field(default_factory=Actor, description="Who requested the run")
    idempotency_key: Optional[str] = Field(None, max_length=256, description="Client idempotency key")
    recorded_at: Optional[str] = Field(None, description="ISO-8601 request time")
    intents: List[Dict[str, Any]] = Field(default_factory=list, description="Active trade intents")
    asset_values_usd: Dict[str, float] = Field(default_factory=dict, description="Asset prices in USD")
    edge_intents: List[Dict[str, Any]] = Field(default_factory=list, description="Explicit intent edges")
    max_proposals: int = Field(50, ge=1, le=1000, description="Maximum proposals returned")

    @field_validator("recorded_at")
    @classmethod
    def _iso_timestamp(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return value.strip()


class MatchingRunResponse(BaseModel):
    run_id: str = Field(..., description="Matching run identifier")
    recorded_at: str = Field(..., description="ISO-8601 run time")
    primary_engine: EngineName = Field(..., description="Engine whose result was served")
    proposals: List[Dict[str, Any]] = Field(default_factory=list, description="Selected proposals")
    decision_record: DecisionRecord = Field(..., description="Canary audit record for the run")
