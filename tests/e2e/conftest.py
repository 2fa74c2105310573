"""
Fixtures and configuration for end-to-end tests of the matching gateway.

These run against a deployed gateway (and optionally Prometheus) and skip
when the target URLs are not set.
"""
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
import requests
from prometheus_api_client import PrometheusConnect


@pytest.fixture(scope="session")
def test_config():
    """Global test configuration."""
    return {
        "matching_url": os.environ.get("TEST_MATCHING_URL"),
        "prometheus_url": os.environ.get("TEST_PROMETHEUS_URL"),
        "test_timeout": int(os.environ.get("E2E_TEST_TIMEOUT", "60")),
        "correlation_prefix": os.environ.get("E2E_CORRELATION_PREFIX", "e2e-test"),
    }


@pytest.fixture(scope="session")
def service_config():
    """Endpoints and metric names exposed by the matching gateway."""
    return {
        "name": "matching-gateway",
        "run_endpoint": "/matching/runs",
        "metrics_endpoint": "/metrics",
        "health_endpoint": "/healthz",
        "observability_endpoint": "/observability/health",
        "expected_metrics": [
            "matching_runs_total",
            "matching_engine_latency_seconds",
            "matching_v2_rollback_active",
        ],
        "prometheus_job": "matching-gateway",
    }


@pytest.fixture(scope="function")
def correlation_id(test_config):
    """Generate unique correlation ID for test tracing."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    unique_id = str(uuid.uuid4())[:8]
    return f"{test_config['correlation_prefix']}-{timestamp}-{unique_id}"


@pytest.fixture(scope="session")
def prometheus_client(test_config):
    """Prometheus client for metrics validation."""
    if not test_config["prometheus_url"]:
        pytest.skip("TEST_PROMETHEUS_URL not set")
    return PrometheusConnect(url=test_config["prometheus_url"])


@pytest.fixture(scope="function")
def matching_client(test_config, service_config, correlation_id):
    """Client for the matching gateway with observability headers."""
    if not test_config["matching_url"]:
        pytest.skip("TEST_MATCHING_URL not set")

    class MatchingClient:
        def __init__(self, base_url, service_config, correlation_id):
            self.base_url = base_url.rstrip("/")
            self.service_config = service_config
            self.correlation_id = correlation_id
            self.base_headers = {
                "X-Correlation-ID": correlation_id,
                "User-Agent": "MatchingE2ETest/1.0",
            }

        def get(self, endpoint: str, **kwargs):
            return requests.get(f"{self.base_url}{endpoint}", headers=self.base_headers, timeout=10, **kwargs)

        def run(self, intents: List[Dict], actor_id: str = "e2e-user",
                idempotency_key: Optional[str] = None):
            """Request a matching run with a standard payload."""
            headers = dict(self.base_headers)
            if idempotency_key:
                headers["Idempotency-Key"] = idempotency_key
            payload = {
                "actor": {"type": "user", "id": actor_id},
                "intents": intents,
                "asset_values_usd": {},
            }
            return requests.post(f"{self.base_url}{self.service_config['run_endpoint']}",
                                 json=payload, headers=headers, timeout=30)

    try:
        requests.get(f"{test_config['matching_url']}/healthz", timeout=5)
    except requests.exceptions.RequestException:
        pytest.skip("Matching gateway not available")
    return MatchingClient(test_config["matching_url"], service_config, correlation_id)


@pytest.fixture(scope="function")
def wait_for_metric(prometheus_client):
    """Poll Prometheus until a metric query returns data."""
    def _wait(metric_name: str, labels: Optional[Dict] = None, timeout: int = 30):
        query = metric_name
        if labels:
            label_pairs = [f'{k}="{v}"' for k, v in labels.items()]
            query = f'{metric_name}{{{",".join(label_pairs)}}}'

        start_time = time.time()
        while time.time() - start_time < timeout:
            try:
                result = prometheus_client.custom_query(query)
                if result:
                    return result
            except Exception as e:
                print(f"Metrics query failed: {e}")
            time.sleep(1)
        raise TimeoutError(f"Metric {metric_name} not found within {timeout}s")

    return _wait


@pytest.fixture(scope="function")
def sample_intents():
    """A small deterministic intent set for runs against live engines."""
    return [
        {"id": f"e2e_intent_{i}", "offer_asset": f"asset_{i}", "want_asset": f"asset_{(i + 1) % 3}"}
        for i in range(3)
    ]
