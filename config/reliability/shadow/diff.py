"""Comparison metrics between two matching engine outputs.

- candidate cycle counts and selected proposal counts
- overlap of selected cycles
- confidence score sums in fixed-point (x10000) form
"""
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

SCORE_SCALE = 10000


def _matching(result: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    matching = (result or {}).get("matching") or {}
    return matching if isinstance(matching, Mapping) else {}


def _stat(result: Optional[Mapping[str, Any]], name: str) -> Any:
    stats = _matching(result).get("stats") or {}
    return stats.get(name) if isinstance(stats, Mapping) else None


def candidate_cycles(result: Optional[Mapping[str, Any]]) -> int:
    try:
        return int(_stat(result, "candidate_cycles") or 0)
    except (TypeError, ValueError):
        return 0


def safety_signals(result: Optional[Mapping[str, Any]]) -> Dict[str, bool]:
    """Raw engine safety counters as reported by the matcher itself."""
    return {
        "timeout_reached": bool(_stat(result, "cycle_enumeration_timed_out")),
        "max_cycles_reached": bool(_stat(result, "cycle_enumeration_limited")),
    }


def selected_proposals(result: Optional[Mapping[str, Any]], max_proposals: int) -> List[Mapping[str, Any]]:
    proposals = _matching(result).get("proposals") or []
    return [p for p in proposals if isinstance(p, Mapping)][:max_proposals]


def cycle_key(proposal: Mapping[str, Any]) -> str:
    if proposal.get("id"):
        return str(proposal["id"])
    intent_ids = sorted(
        str(p.get("intent_id"))
        for p in proposal.get("participants") or []
        if isinstance(p, Mapping)
    )
    return ">".join(intent_ids)


def score_sum(proposals: List[Mapping[str, Any]]) -> float:
    scores = np.array([float(p.get("confidence_score") or 0.0) for p in proposals], dtype=float)
    return float(np.sum(scores)) if scores.size else 0.0


def scaled(value: float) -> int:
    return int(np.rint(value * SCORE_SCALE))


def compare_results(baseline: Mapping[str, Any], candidate: Mapping[str, Any], max_proposals: int,
                    baseline_label: str = "v1", candidate_label: str = "v2") -> Dict[str, Any]:
    """Build ``metrics`` and ``selected_cycle_keys`` for a candidate vs baseline run."""
    b, c = baseline_label, candidate_label
    base_selected = selected_proposals(baseline, max_proposals)
    cand_selected = selected_proposals(candidate, max_proposals)

    base_keys = {cycle_key(p) for p in base_selected}
    cand_keys = {cycle_key(p) for p in cand_selected}
    overlap = sorted(base_keys & cand_keys)
    only_base = sorted(base_keys - cand_keys)
    only_cand = sorted(cand_keys - base_keys)

    base_sum = score_sum(base_selected)
    cand_sum = score_sum(cand_selected)
    base_scaled = scaled(base_sum)
    cand_scaled = scaled(cand_sum)

    return {
        "metrics": {
            f"{b}_candidate_cycles": candidate_cycles(baseline),
            f"{c}_candidate_cycles": candidate_cycles(candidate),
            f"{b}_selected_proposals": len(base_selected),
            f"{c}_selected_proposals": len(cand_selected),
            f"{b}_vs_{c}_overlap": len(overlap),
            f"{b}_score_sum_scaled": base_scaled,
            f"{c}_score_sum_scaled": cand_scaled,
            "delta_score_sum_scaled": cand_scaled - base_scaled,
            "delta_score_sum": round((cand_scaled - base_scaled) / SCORE_SCALE, 4),
        },
        "selected_cycle_keys": {
            "overlap_count": len(overlap),
            f"only_{b}_count": len(only_base),
            f"only_{c}_count": len(only_cand),
            "overlap": overlap,
            f"only_{b}": only_base,
            f"only_{c}": only_cand,
        },
    }
