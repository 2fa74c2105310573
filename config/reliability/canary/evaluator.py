"""Canary window evaluator for the matching v2 rollback latch.
Criteria: error rate, timeout rate, limited rate, negative score-delta rate.
"""
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

import numpy as np

# Checked in order; the first exceeded rate names the rollback.
SIGNALS = (
    ("error", "v2_canary_error_rate_exceeded"),
    ("timeout", "v2_canary_timeout_rate_exceeded"),
    ("limited", "v2_canary_limited_rate_exceeded"),
    ("negative_delta", "v2_canary_negative_delta_rate_exceeded"),
)


@dataclass(frozen=True)
class RollbackThresholds:
    min_samples: int = 1
    max_error_rate: float = 0.0
    max_timeout_rate: float = 0.0
    max_limited_rate: float = 0.0
    max_negative_delta_rate: float = 0.0

    def limit_for(self, signal: str) -> float:
        return getattr(self, f"max_{signal}_rate")


def _flag(sample: Any, name: str) -> bool:
    if isinstance(sample, Mapping):
        return bool(sample.get(name))
    return bool(getattr(sample, name, False))


def _signal_matrix(samples: Sequence[Any]) -> np.ndarray:
    rows = [
        [
            _flag(s, "error"),
            _flag(s, "timeout"),
            _flag(s, "limited"),
            not _flag(s, "non_negative_delta"),
        ]
        for s in samples
    ]
    return np.array(rows, dtype=bool).reshape(len(rows), len(SIGNALS))


def summarize(samples: Sequence[Any], thresholds: Optional[RollbackThresholds] = None) -> Dict[str, Any]:
    """Summarize a window of run samples into counts, rates and a rollback reason.

    Samples may be mappings or objects exposing ``error``, ``timeout``,
    ``limited`` and ``non_negative_delta``. ``reason_code`` is None while the
    window is healthy or holds fewer than ``min_samples`` samples.
    """
    thresholds = thresholds or RollbackThresholds()
    matrix = _signal_matrix(samples)
    n = int(matrix.shape[0])
    counts = matrix.sum(axis=0) if n else np.zeros(len(SIGNALS), dtype=int)
    rates = counts / n if n else np.zeros(len(SIGNALS))

    summary: Dict[str, Any] = {"samples_count": n}
    reason_code = None
    for idx, (signal, code) in enumerate(SIGNALS):
        summary[f"{signal}_count"] = int(counts[idx])
        summary[f"{signal}_rate"] = float(rates[idx])
        if reason_code is None and n >= thresholds.min_samples and n > 0:
            if float(rates[idx]) > thresholds.limit_for(signal):
                reason_code = code
    summary["reason_code"] = reason_code
    return summary
