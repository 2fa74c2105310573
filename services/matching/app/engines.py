"""Matching engine boundary.

Engines are opaque: they take intents, prices, edges, a clock and a matcher
config and return ``{"matching": {"stats": {...}, "proposals": [...]}}``.
Failures never cross this boundary as exceptions; ``execute_engine`` turns
them into ``Err`` values the control loop matches on.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from services.matching.app.metrics import ENGINE_LATENCY
from services.matching.app.models import MatcherConfig
from services.shared.observability import sanitize_for_json_logging, trace_operation

logger = logging.getLogger(__name__)


class EngineError(RuntimeError):
    pass


class ForcedEngineError(EngineError):
    """Raised on purpose by failure-injection flags."""


class EngineResponseError(EngineError):
    """The engine answered, but not with a matching result."""


@dataclass(frozen=True)
class EngineRequest:
    intents: List[Dict[str, Any]]
    asset_values_usd: Dict[str, float]
    edge_intents: List[Dict[str, Any]]
    now_iso: str
    config: MatcherConfig

    def payload(self) -> Dict[str, Any]:
        return {
            "intents": self.intents,
            "asset_values_usd": self.asset_values_usd,
            "edge_intents": self.edge_intents,
            "now_iso": self.now_iso,
            "config": self.config.model_dump(),
        }


@dataclass(frozen=True)
class Ok:
    value: Dict[str, Any]


@dataclass(frozen=True)
class Err:
    code: str
    name: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)


EngineOutcome = Union[Ok, Err]


def _validate_result(result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict) or not isinstance(result.get("matching"), dict):
        raise EngineResponseError("engine result is missing a matching object")
    return result


class HttpEngineRunner:
    """Calls a matcher deployed behind HTTP (POST {base_url}/match)."""

    def __init__(self, name: str, base_url: str, timeout_s: float = 3.0,
                 client: Optional[httpx.Client] = None):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client

    def run(self, request: EngineRequest) -> Dict[str, Any]:
        url = f"{self.base_url}/match"
        if self._client is not None:
            response = self._client.post(url, json=request.payload(), timeout=self.timeout_s)
        else:
            with httpx.Client(timeout=self.timeout_s) as client:
                response = client.post(url, json=request.payload())
        response.raise_for_status()
        return _validate_result(response.json())

    def ping(self) -> bool:
        with httpx.Client(timeout=2.0) as client:
            response = client.get(f"{self.base_url}/ping")
            response.raise_for_status()
        return True


class CallableEngineRunner:
    """Runs an in-process matcher implementation."""

    def __init__(self, name: str, fn: Callable[[EngineRequest], Dict[str, Any]]):
        self.name = name
        self._fn = fn

    def run(self, request: EngineRequest) -> Dict[str, Any]:
        return _validate_result(self._fn(request))

    def ping(self) -> bool:
        return True


EngineRunner = Union[HttpEngineRunner, CallableEngineRunner]


def execute_engine(runner: EngineRunner, request: EngineRequest, *, error_code: str,
                   force_error: Optional[str] = None, run_id: Optional[str] = None) -> EngineOutcome:
    """Run an engine and capture any failure as ``Err(error_code, ...)``."""
    start = time.time()
    try:
        with trace_operation("engine_execution", engine=runner.name, run_id=run_id or "none"):
            if force_error:
                raise ForcedEngineError(force_error)
            result = runner.run(request)
    except Exception as e:
        detail: Dict[str, Any] = {}
        if isinstance(e, httpx.HTTPStatusError):
            detail["status_code"] = e.response.status_code
        logger.warning(
            "Matching engine execution failed",
            extra={
                "engine": runner.name,
                "run_id": run_id,
                "error_code": error_code,
                "error_type": type(e).__name__,
                "error": sanitize_for_json_logging(str(e)),
                **detail,
            }
        )
        return Err(code=error_code, name=type(e).__name__, message=str(e) or error_code, detail=detail)
    finally:
        ENGINE_LATENCY.labels(engine=runner.name).observe(time.time() - start)
    return Ok(result)
