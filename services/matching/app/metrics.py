from prometheus_client import Counter, Gauge, Histogram

RUN_COUNT = Counter(
    "matching_runs_total",
    "Total number of matching runs",
    labelnames=["mode", "primary_engine"],
)
CANARY_OUTCOME = Counter(
    "matching_v2_candidate_outcomes_total",
    "Candidate engine attempts by outcome",
    labelnames=["mode", "outcome"],
)
FALLBACK_COUNT = Counter(
    "matching_v2_fallbacks_total",
    "Runs that fell back to v1 after the candidate was attempted",
    labelnames=["reason_code"],
)
SHADOW_RECORDS = Counter(
    "matching_shadow_records_total",
    "Shadow comparison records stored",
    labelnames=["shadow", "outcome"],
)
ROLLBACK_TRIPS = Counter(
    "matching_v2_rollback_trips_total",
    "Times the canary rollback latch tripped",
    labelnames=["reason_code"],
)
ROLLBACK_ACTIVE = Gauge(
    "matching_v2_rollback_active",
    "1 while the canary rollback latch is active",
)
ENGINE_LATENCY = Histogram(
    "matching_engine_latency_seconds",
    "Matching engine execution latency in seconds",
    labelnames=["engine"],
)
