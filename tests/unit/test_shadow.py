"""Tests for v2 shadow diffs and the alternate shadow runner."""
import pytest

from services.matching.app.arbiter import SelectionArbiter
from services.matching.app.engines import Ok
from services.matching.app.models import (Actor, AltShadowConfig, AltShadowRecord, CanaryConfig, DiffRecord,
                                          MatcherConfig, PrimaryConfig, RollbackSnapshot, ShadowErrorRecord)
from services.matching.app.shadow import AlternateShadowRunner, ShadowDiffEngine
from services.matching.app.store import ALT_SHADOW_DIFFS, SHADOW_DIFFS

RECORDED_AT = "2026-03-01T12:00:00.000Z"
V1_CONFIG = MatcherConfig(min_cycle_length=2, max_cycle_length=3)
V2_CONFIG = MatcherConfig(min_cycle_length=2, max_cycle_length=4)


@pytest.fixture
def v1_result(make_result, proposal):
    return make_result(candidate_cycles=3, proposals=[proposal("p1", 0.5)])


@pytest.fixture
def v2_result(make_result, proposal):
    return make_result(candidate_cycles=4, proposals=[proposal("p1", 0.5), proposal("p2", 0.25)])


@pytest.fixture
def run_shadow(store, engine_request, v1_result):
    """Route, select and shadow one run, returning the outcome."""
    def _run(canary, v2_runner, primary=None, rollback=None, run_id="mrun_000001"):
        primary = primary or PrimaryConfig()
        arbiter = SelectionArbiter()
        routing = arbiter.route(canary, primary, rollback or RollbackSnapshot(), Actor(type="user", id="u1"),
                                "k1", RECORDED_AT)
        selection = arbiter.select(routing, canary, primary, v1_result, v2_runner, engine_request, run_id)
        return ShadowDiffEngine(store).run(run_id, RECORDED_AT, canary, primary, routing, selection,
                                           V1_CONFIG, v1_result, V2_CONFIG, v2_runner, engine_request, 50)
    return _run


class TestShadowDiffEngine:
    """Test shadow diff recording."""

    def test_disabled_computes_diff_without_storing(self, run_shadow, engine, v2_result, store):
        outcome = run_shadow(CanaryConfig(enabled=True, rollout_bps=10000), engine("v2", v2_result))
        assert outcome.diff_record is not None
        assert outcome.diff_record.metrics["delta_score_sum_scaled"] == 2500
        assert outcome.stored is None
        assert store.items(SHADOW_DIFFS) == []

    def test_disabled_and_not_selected_has_no_diff(self, run_shadow, engine, v2_result):
        v2 = engine("v2", v2_result)
        outcome = run_shadow(CanaryConfig(enabled=True, rollout_bps=0), v2)
        assert outcome.diff_record is None
        assert v2.calls == []

    def test_reuses_canary_result(self, run_shadow, engine, v2_result, store):
        v2 = engine("v2", v2_result)
        outcome = run_shadow(CanaryConfig(enabled=True, rollout_bps=10000, shadow_enabled=True), v2)

        assert len(v2.calls) == 1
        assert isinstance(outcome.stored, DiffRecord)
        stored = ShadowDiffEngine(store).get("mrun_000001")
        assert stored["v1_cycle_bounds"] == {"min_cycle_length": 2, "max_cycle_length": 3}
        assert stored["v2_cycle_bounds"] == {"min_cycle_length": 2, "max_cycle_length": 4}
        assert stored["metrics"]["v2_candidate_cycles"] == 4
        assert stored["selected_cycle_keys"]["only_v2"] == ["p2"]

    def test_runs_v2_when_not_selected(self, run_shadow, engine, make_result):
        v2 = engine("v2", make_result(timed_out=True))
        outcome = run_shadow(CanaryConfig(enabled=True, rollout_bps=0, shadow_enabled=True), v2)

        assert len(v2.calls) == 1
        assert isinstance(outcome.v2_outcome, Ok)
        assert isinstance(outcome.stored, DiffRecord)
        assert outcome.safety.timeout_reached is False

    def test_reruns_v2_after_canary_error(self, run_shadow, engine, v2_result):
        v2 = engine("v2", v2_result)
        outcome = run_shadow(
            CanaryConfig(enabled=True, rollout_bps=10000, shadow_enabled=True, force_canary_error=True), v2)

        assert len(v2.calls) == 1
        assert isinstance(outcome.stored, DiffRecord)
        assert isinstance(outcome.v2_outcome, Ok)

    def test_forced_shadow_error_after_canary_success(self, run_shadow, engine, v2_result, store):
        """The stored record is an error but the in-memory diff survives."""
        outcome = run_shadow(
            CanaryConfig(enabled=True, rollout_bps=10000, shadow_enabled=True, force_shadow_error=True),
            engine("v2", v2_result))

        assert isinstance(outcome.stored, ShadowErrorRecord)
        assert outcome.diff_record is not None
        stored = store.get(SHADOW_DIFFS, "mrun_000001")
        assert stored["error"]["code"] == "matching_v2_shadow_failed"
        assert stored["error"]["name"] == "ForcedEngineError"

    def test_forced_shadow_error_without_canary(self, run_shadow, engine):
        v2 = engine("v2")
        outcome = run_shadow(
            CanaryConfig(enabled=True, rollout_bps=0, shadow_enabled=True, force_shadow_error=True), v2)

        assert v2.calls == []
        assert outcome.diff_record is None
        assert isinstance(outcome.stored, ShadowErrorRecord)
        assert outcome.stored.error.name == "ForcedEngineError"

    def test_shadow_engine_failure_is_recorded(self, run_shadow, engine):
        outcome = run_shadow(CanaryConfig(enabled=True, rollout_bps=0, shadow_enabled=True),
                             engine("v2", error=ValueError("bad input")))
        assert isinstance(outcome.stored, ShadowErrorRecord)
        assert outcome.stored.error.name == "ValueError"
        assert outcome.stored.error.message == "bad input"

    def test_primary_latched_skips_shadow(self, run_shadow, engine, store):
        v2 = engine("v2")
        outcome = run_shadow(CanaryConfig(shadow_enabled=True), v2, primary=PrimaryConfig(enabled=True),
                             rollback=RollbackSnapshot(active=True, reason_code="v2_canary_error_rate_exceeded"))
        assert outcome.skipped is True
        assert outcome.stored is None
        assert v2.calls == []
        assert store.items(SHADOW_DIFFS) == []

    def test_history_is_pruned(self, run_shadow, engine, store):
        canary = CanaryConfig(enabled=True, rollout_bps=10000, shadow_enabled=True, max_shadow_diffs=2)
        for i in range(1, 4):
            run_shadow(canary, engine("v2"), run_id=f"mrun_{i:06d}")
        assert [k for k, _ in store.items(SHADOW_DIFFS)] == ["mrun_000002", "mrun_000003"]


class TestAlternateShadowRunner:
    """Test cross-checks against the alternate matcher."""

    def _run(self, store, config, runner, engine_request, primary_result, run_id="mrun_000001"):
        return AlternateShadowRunner(store).run(run_id, RECORDED_AT, config, "v1", primary_result, V1_CONFIG,
                                                runner, engine_request, 50)

    def test_disabled(self, store, engine, engine_request, v1_result):
        alt = engine("alt")
        assert self._run(store, AltShadowConfig(), alt, engine_request, v1_result) is None
        assert alt.calls == []

    def test_records_diff(self, store, engine, engine_request, v1_result, v2_result):
        alt = engine("alt", v2_result)
        record = self._run(store, AltShadowConfig(enabled=True), alt, engine_request, v1_result)

        assert isinstance(record, AltShadowRecord)
        assert record.primary_engine == "v1"
        assert record.metrics["primary_vs_alt_overlap"] == 1
        assert record.metrics["delta_score_sum_scaled"] == 2500
        assert record.matcher_cycle_bounds == {"min_cycle_length": 2, "max_cycle_length": 3}
        assert alt.calls[0].config == V1_CONFIG
        assert AlternateShadowRunner(store).get("mrun_000001")["metrics"]["alt_candidate_cycles"] == 4

    def test_forced_error(self, store, engine, engine_request, v1_result):
        alt = engine("alt")
        record = self._run(store, AltShadowConfig(enabled=True, force_shadow_error=True), alt,
                           engine_request, v1_result)
        assert isinstance(record, ShadowErrorRecord)
        assert record.error.code == "matching_alt_shadow_failed"
        assert record.primary_engine == "v1"
        assert alt.calls == []

    def test_missing_engine(self, store, engine_request, v1_result):
        record = self._run(store, AltShadowConfig(enabled=True), None, engine_request, v1_result)
        assert record.error.name == "EngineNotConfigured"

    def test_history_is_pruned(self, store, engine, engine_request, v1_result):
        config = AltShadowConfig(enabled=True, max_shadow_diffs=1)
        for i in range(1, 3):
            self._run(store, config, engine("alt"), engine_request, v1_result, run_id=f"mrun_{i:06d}")
        assert [k for k, _ in store.items(ALT_SHADOW_DIFFS)] == ["mrun_000002"]
