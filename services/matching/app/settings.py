"""Environment-backed configuration for the matching control loop.

Values are read on every evaluation so operators can flip flags without a
restart. Invalid values fall back to defaults instead of failing a run.
"""
import logging
import math
import os
from typing import Optional

from pydantic import ValidationError

from services.matching.app.models import AltShadowConfig, CanaryConfig, MatcherConfig, PrimaryConfig

logger = logging.getLogger(__name__)

BPS_MAX = 10000


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: Optional[int], minimum: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    try:
        n = int(val)
    except ValueError:
        logger.warning("Ignoring invalid integer setting", extra={"setting": name, "value": val})
        return default
    if minimum is not None and n < minimum:
        return default
    return n


def _env_rate(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    try:
        f = float(val)
    except ValueError:
        logger.warning("Ignoring invalid rate setting", extra={"setting": name, "value": val})
        return default
    if not math.isfinite(f):
        logger.warning("Ignoring invalid rate setting", extra={"setting": name, "value": val})
        return default
    # Accept both 0-1 and 0-100 inputs
    f = f if f <= 1.0 else f / 100.0
    return min(max(f, 0.0), 1.0)


def _parse_bps(val: Optional[str], default: int = 0) -> int:
    if val is None or not val.strip():
        return default
    try:
        f = float(val)
    except ValueError:
        return default
    if not math.isfinite(f):
        return default
    n = int(f)
    return min(max(n, 0), BPS_MAX)


def load_canary_config() -> CanaryConfig:
    defaults = CanaryConfig()
    return CanaryConfig(
        enabled=_env_bool("MATCHING_V2_CANARY_ENABLED"),
        rollout_bps=_parse_bps(os.environ.get("MATCHING_V2_CANARY_ROLLOUT_BPS"), defaults.rollout_bps),
        salt=os.environ.get("MATCHING_V2_CANARY_SALT") or defaults.salt,
        rollback_window_runs=_env_int("MATCHING_V2_CANARY_ROLLBACK_WINDOW_RUNS", defaults.rollback_window_runs, 1),
        force_canary_error=_env_bool("MATCHING_V2_CANARY_FORCE_ERROR"),
        force_shadow_error=_env_bool("MATCHING_V2_SHADOW_FORCE_ERROR"),
        max_shadow_diffs=_env_int("MATCHING_V2_SHADOW_MAX_DIFFS", defaults.max_shadow_diffs, 0),
        shadow_enabled=_env_bool("MATCHING_V2_SHADOW_ENABLED"),
        force_bucket_v2=_env_bool("MATCHING_V2_CANARY_FORCE_BUCKET_V2"),
        force_skip=_env_bool("MATCHING_V2_CANARY_FORCE_SKIP"),
        max_canary_decisions=_env_int("MATCHING_V2_CANARY_MAX_DECISIONS", defaults.max_canary_decisions, 0),
        rollback_min_samples=_env_int("MATCHING_V2_CANARY_ROLLBACK_MIN_SAMPLES", defaults.rollback_min_samples, 1),
        rollback_max_error_rate=_env_rate(
            "MATCHING_V2_CANARY_ROLLBACK_MAX_ERROR_RATE", defaults.rollback_max_error_rate),
        rollback_max_timeout_rate=_env_rate(
            "MATCHING_V2_CANARY_ROLLBACK_MAX_TIMEOUT_RATE", defaults.rollback_max_timeout_rate),
        rollback_max_limited_rate=_env_rate(
            "MATCHING_V2_CANARY_ROLLBACK_MAX_LIMITED_RATE", defaults.rollback_max_limited_rate),
        rollback_max_negative_delta_rate=_env_rate(
            "MATCHING_V2_CANARY_ROLLBACK_MAX_NEGATIVE_DELTA_RATE", defaults.rollback_max_negative_delta_rate),
    )


def load_primary_config() -> PrimaryConfig:
    return PrimaryConfig(
        enabled=_env_bool("MATCHING_V2_PRIMARY_ENABLED"),
        fallback_on_timeout=_env_bool("MATCHING_V2_PRIMARY_FALLBACK_ON_TIMEOUT", True),
        fallback_on_limited=_env_bool("MATCHING_V2_PRIMARY_FALLBACK_ON_LIMITED", True),
        force_primary_error=_env_bool("MATCHING_V2_PRIMARY_FORCE_ERROR"),
        rollback_reset=_env_bool("MATCHING_V2_PRIMARY_ROLLBACK_RESET"),
        force_timeout_safety=_env_bool("MATCHING_V2_PRIMARY_FORCE_TIMEOUT"),
        force_limited_safety=_env_bool("MATCHING_V2_PRIMARY_FORCE_LIMITED"),
    )


def load_alt_shadow_config() -> AltShadowConfig:
    return AltShadowConfig(
        enabled=_env_bool("MATCHING_ALT_SHADOW_ENABLED"),
        force_shadow_error=_env_bool("MATCHING_ALT_SHADOW_FORCE_ERROR"),
        max_shadow_diffs=_env_int("MATCHING_ALT_SHADOW_MAX_DIFFS", AltShadowConfig().max_shadow_diffs, 0),
    )


def v1_matcher_config() -> MatcherConfig:
    return MatcherConfig(min_cycle_length=2, max_cycle_length=3)


def load_v2_matcher_config() -> MatcherConfig:
    defaults = MatcherConfig()
    try:
        return MatcherConfig(
            min_cycle_length=_env_int("MATCHING_V2_MIN_CYCLE_LENGTH", defaults.min_cycle_length, 2),
            max_cycle_length=_env_int("MATCHING_V2_MAX_CYCLE_LENGTH", defaults.max_cycle_length, 2),
            max_cycles_explored=_env_int("MATCHING_V2_MAX_CYCLES_EXPLORED", None, 1),
            timeout_ms=_env_int("MATCHING_V2_TIMEOUT_MS", None, 1),
        )
    except ValidationError as e:
        logger.warning("Invalid v2 matcher config, using defaults", extra={"error": str(e)})
        return defaults


def engine_url(name: str) -> Optional[str]:
    return os.environ.get(f"MATCHING_{name.upper()}_URL") or None


def engine_timeout_s() -> float:
    return float(_env_int("MATCHING_ENGINE_TIMEOUT_MS", 3000, 1)) / 1000.0


def state_path() -> Optional[str]:
    return os.environ.get("MATCHING_STATE_PATH") or None
