"""Shared fixtures for the matching control loop unit tests."""
import copy
import os

import pytest

from services.matching.app.engines import CallableEngineRunner, EngineRequest
from services.matching.app.models import MatcherConfig
from services.matching.app.store import InMemoryStateStore


def _proposal(proposal_id, score):
    return {
        "id": proposal_id,
        "confidence_score": score,
        "participants": [],
    }


def _result(candidate_cycles=2, proposals=None, timed_out=False, limited=False):
    proposals = list(proposals or [])
    return {
        "matching": {
            "stats": {
                "intents_active": 4,
                "candidate_cycles": candidate_cycles,
                "candidate_proposals": len(proposals),
                "selected_proposals": len(proposals),
                "cycle_enumeration_timed_out": timed_out,
                "cycle_enumeration_limited": limited,
            },
            "proposals": proposals,
        }
    }


class _RecordingMatcher:
    def __init__(self, result, error):
        self.result = result
        self.error = error
        self.calls = []

    def __call__(self, request):
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.result)


@pytest.fixture(autouse=True)
def clean_matching_env(monkeypatch):
    """Each test starts from default configuration."""
    for key in list(os.environ):
        if key.startswith("MATCHING_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def proposal():
    return _proposal


@pytest.fixture
def make_result():
    return _result


@pytest.fixture
def engine():
    """Factory for in-process engines that record their calls."""
    def _engine(name, result=None, error=None):
        matcher = _RecordingMatcher(result if result is not None else _result(), error)
        runner = CallableEngineRunner(name, matcher)
        runner.calls = matcher.calls
        return runner
    return _engine


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def engine_request():
    return EngineRequest(
        intents=[{"id": "intent_a"}, {"id": "intent_b"}],
        asset_values_usd={"asset_1": 10.0},
        edge_intents=[],
        now_iso="2026-03-01T12:00:00Z",
        config=MatcherConfig(),
    )
