"""Canary rollback latch.

Clear -> Latched happens only when the sample window evaluates to a reason
code. Nothing in the control loop clears the latch; ``reset`` is the
operator's action. While latched no samples are appended, so the window
stays frozen as it was when the latch tripped.
"""
import logging
from typing import Optional

from pydantic import ValidationError

from config.reliability.canary.evaluator import summarize
from services.matching.app.metrics import ROLLBACK_ACTIVE, ROLLBACK_TRIPS
from services.matching.app.models import (CanaryConfig, RollbackSnapshot, RollbackState,
                                          RollbackUpdate, RunSample)
from services.matching.app.store import CANARY_STATE, InMemoryStateStore
from services.shared.observability import trace_operation

logger = logging.getLogger(__name__)

STATE_KEY = "state"


class RollbackController:
    def __init__(self, store: InMemoryStateStore):
        self._store = store

    def _load(self) -> RollbackState:
        raw = self._store.get(CANARY_STATE, STATE_KEY)
        if not raw:
            return RollbackState()
        try:
            return RollbackState.model_validate(raw)
        except ValidationError as e:
            # A corrupt window is dropped; an active latch is kept.
            logger.error("Invalid persisted rollback state", extra={"error": str(e)})
            return RollbackState(
                rollback_active=bool(raw.get("rollback_active")) if isinstance(raw, dict) else False,
                rollback_reason_code=(raw.get("rollback_reason_code") if isinstance(raw, dict) else None),
            )

    def _save(self, state: RollbackState) -> None:
        self._store.set(CANARY_STATE, STATE_KEY, state.model_dump(mode="json"))
        ROLLBACK_ACTIVE.set(1 if state.rollback_active else 0)

    def state(self) -> RollbackState:
        return self._load()

    def snapshot(self) -> RollbackSnapshot:
        return self._load().snapshot()

    def reset(self) -> RollbackState:
        with self._store.transaction():
            previous = self._load()
            state = RollbackState()
            self._save(state)
        logger.warning(
            "Canary rollback state reset",
            extra={
                "was_active": previous.rollback_active,
                "previous_reason_code": previous.rollback_reason_code,
                "previous_run_id": previous.rollback_run_id,
            }
        )
        return state

    def update(self, config: CanaryConfig, run_id: str, recorded_at: str,
               sample: Optional[RunSample]) -> RollbackUpdate:
        with trace_operation("canary_rollback_update", run_id=run_id), self._store.transaction():
            state = self._load()
            before = state.snapshot()

            if not state.rollback_active:
                if sample is not None:
                    state.recent_samples.append(sample)
                overflow = len(state.recent_samples) - config.rollback_window_runs
                if overflow > 0:
                    del state.recent_samples[:overflow]

            summary = summarize(
                [s.model_dump() for s in state.recent_samples],
                config.thresholds(),
            )

            triggered = False
            if not state.rollback_active and summary["samples_count"] > 0 and summary["reason_code"]:
                state.rollback_active = True
                state.rollback_reason_code = summary["reason_code"]
                state.rollback_activated_at = recorded_at
                state.rollback_run_id = run_id
                triggered = True

            self._save(state)

        if triggered:
            ROLLBACK_TRIPS.labels(reason_code=state.rollback_reason_code).inc()
            logger.warning(
                "Canary rollback latched",
                extra={
                    "run_id": run_id,
                    "reason_code": state.rollback_reason_code,
                    "samples_count": summary["samples_count"],
                }
            )

        return RollbackUpdate(before=before, after=state.snapshot(), summary=summary, triggered=triggered)
