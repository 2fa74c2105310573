"""Tests for the canary rollback latch."""
import threading

from services.matching.app.models import CanaryConfig, RunSample
from services.matching.app.rollback import STATE_KEY, RollbackController
from services.matching.app.store import CANARY_STATE

RECORDED_AT = "2026-03-01T12:00:00.000Z"


def _sample(run_id, **flags):
    values = {"error": False, "timeout": False, "limited": False, "non_negative_delta": True}
    values.update(flags)
    return RunSample(run_id=run_id, recorded_at=RECORDED_AT, **values)


class TestRollbackWindow:
    """Test the bounded sample window."""

    def test_window_is_bounded(self, store):
        controller = RollbackController(store)
        config = CanaryConfig(enabled=True, rollback_window_runs=3)
        for i in range(6):
            controller.update(config, f"run_{i}", RECORDED_AT, _sample(f"run_{i}"))

        state = controller.state()
        assert [s.run_id for s in state.recent_samples] == ["run_3", "run_4", "run_5"]
        assert state.rollback_active is False

    def test_shrunk_window_trimmed_without_sample(self, store):
        controller = RollbackController(store)
        for i in range(10):
            controller.update(CanaryConfig(enabled=True, rollback_window_runs=10), f"run_{i}", RECORDED_AT,
                              _sample(f"run_{i}"))

        update = controller.update(CanaryConfig(enabled=True, rollback_window_runs=3), "run_10",
                                   RECORDED_AT, None)

        assert update.summary["samples_count"] == 3
        assert [s.run_id for s in controller.state().recent_samples] == ["run_7", "run_8", "run_9"]

    def test_latched_window_not_trimmed(self, store):
        controller = RollbackController(store)
        config = CanaryConfig(enabled=True, rollback_window_runs=5, rollback_min_samples=3)
        controller.update(config, "run_0", RECORDED_AT, _sample("run_0"))
        controller.update(config, "run_1", RECORDED_AT, _sample("run_1"))
        controller.update(config, "run_2", RECORDED_AT, _sample("run_2", error=True))
        assert controller.snapshot().active is True

        controller.update(CanaryConfig(enabled=True, rollback_window_runs=1), "run_3", RECORDED_AT, None)
        assert len(controller.state().recent_samples) == 3

    def test_no_sample_leaves_window_unchanged(self, store):
        controller = RollbackController(store)
        config = CanaryConfig(enabled=True)
        controller.update(config, "run_0", RECORDED_AT, _sample("run_0"))
        update = controller.update(config, "run_1", RECORDED_AT, None)

        assert update.summary["samples_count"] == 1
        assert update.triggered is False
        assert len(controller.state().recent_samples) == 1

    def test_state_persisted_under_canary_namespace(self, store):
        controller = RollbackController(store)
        controller.update(CanaryConfig(enabled=True), "run_0", RECORDED_AT, _sample("run_0"))
        raw = store.get(CANARY_STATE, STATE_KEY)
        assert raw["rollback_active"] is False
        assert raw["recent_samples"][0]["run_id"] == "run_0"


class TestRollbackLatch:
    """Test the Clear -> Latched transition and reset."""

    def test_trips_on_negative_delta(self, store):
        controller = RollbackController(store)
        update = controller.update(CanaryConfig(enabled=True), "run_1", RECORDED_AT,
                                   _sample("run_1", non_negative_delta=False))

        assert update.triggered is True
        assert update.before.active is False
        assert update.after.active is True
        assert update.after.reason_code == "v2_canary_negative_delta_rate_exceeded"
        state = controller.state()
        assert state.rollback_activated_at == RECORDED_AT
        assert state.rollback_run_id == "run_1"

    def test_latch_is_stable(self, store):
        """Once latched, later runs neither clear nor re-trigger it."""
        controller = RollbackController(store)
        config = CanaryConfig(enabled=True)
        controller.update(config, "run_1", RECORDED_AT, _sample("run_1", error=True))
        latched = controller.state()

        for i in range(2, 6):
            update = controller.update(config, f"run_{i}", "2026-03-02T00:00:00.000Z", _sample(f"run_{i}"))
            assert update.triggered is False
            assert update.before.active is True
            assert update.after.active is True

        state = controller.state()
        assert state.rollback_reason_code == "v2_canary_error_rate_exceeded"
        assert state.rollback_activated_at == latched.rollback_activated_at
        assert state.rollback_run_id == "run_1"
        assert [s.run_id for s in state.recent_samples] == ["run_1"]

    def test_healthy_window_does_not_trip(self, store):
        controller = RollbackController(store)
        config = CanaryConfig(enabled=True, rollback_max_error_rate=0.5)
        controller.update(config, "run_1", RECORDED_AT, _sample("run_1"))
        update = controller.update(config, "run_2", RECORDED_AT, _sample("run_2", error=True))
        assert update.summary["error_rate"] == 0.5
        assert update.triggered is False

    def test_reset_clears_latch_and_window(self, store):
        controller = RollbackController(store)
        controller.update(CanaryConfig(enabled=True), "run_1", RECORDED_AT, _sample("run_1", timeout=True))
        assert controller.snapshot().active is True

        state = controller.reset()
        assert state.rollback_active is False
        assert state.recent_samples == []
        assert controller.snapshot().reason_code is None

    def test_invalid_persisted_state_keeps_latch(self, store):
        store.set(CANARY_STATE, STATE_KEY, {
            "rollback_active": True,
            "rollback_reason_code": "v2_canary_error_rate_exceeded",
            "recent_samples": [{"run_id": 1}],
        })
        state = RollbackController(store).state()
        assert state.rollback_active is True
        assert state.rollback_reason_code == "v2_canary_error_rate_exceeded"
        assert state.recent_samples == []

    def test_concurrent_updates_trip_once(self, store):
        controller = RollbackController(store)
        config = CanaryConfig(enabled=True, rollback_window_runs=5)
        triggered = []
        lock = threading.Lock()

        def worker(n):
            update = controller.update(config, f"run_{n}", RECORDED_AT, _sample(f"run_{n}", error=True))
            with lock:
                triggered.append(update.triggered)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert triggered.count(True) == 1
        assert len(controller.state().recent_samples) == 1
