"""Explainable structural score for PEStrata.

PEStrata produces a 0–100 *oddity* score meant for analyst triage. A high
score means the file deviates a lot from what linkers produce; it is not a
maliciousness verdict.

The model is additive and transparent:

- Each distinct anomaly sub type contributes the weight of its super type
  (structural damage weighs more than a non-default value).
- Each RE hint adds a fixed number of points.

Weights and thresholds are configurable via the ``scoring`` section of the
config JSON (see ``pestrata/config/default.json``).

@QK
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

DEFAULT_WEIGHTS: Dict[str, int] = {
    "STRUCTURE": 8,
    "WRONG": 6,
    "RESERVED": 3,
    "DEPRECATED": 2,
    "NON_DEFAULT": 1,
}
DEFAULT_REHINT_POINTS = 10


@dataclass
class ScoreComponent:
    """One scored contribution to the overall score."""

    id: str
    points: int
    message: str


def score_level(score: int, thresholds: Dict[str, int] | None = None) -> str:
    """Map a numeric score to a qualitative level.

    Default thresholds:
    - medium: 20+
    - high: 50+
    - critical: 75+
    """

    th = thresholds or {"medium": 20, "high": 50, "critical": 75}
    if score >= int(th.get("critical", 75)):
        return "critical"
    if score >= int(th.get("high", 50)):
        return "high"
    if score >= int(th.get("medium", 20)):
        return "medium"
    return "low"


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def compute_score(
    report: Dict[str, Any],
    scoring_rules: Dict[str, Any] | None = None,
) -> Tuple[int, List[ScoreComponent]]:
    """Compute a 0–100 score from anomalies and RE hints.

    Sources of score:
    1) Anomalies (``analysis.anomalies[*]``), one contribution per sub type
    2) RE hints (``analysis.rehints[*]``)

    Returns:
        (score, breakdown)

    Notes:
        - Missing keys and malformed entries are ignored.
        - A sub type reported for ten sections counts once, so a file with
          many broken sections does not saturate the score on its own.
    """

    sr = scoring_rules or {}
    weights = dict(DEFAULT_WEIGHTS)
    if isinstance(sr.get("weights"), dict):
        weights.update({str(k): _int(v, 0) for k, v in sr["weights"].items()})

    total = 0
    breakdown: List[ScoreComponent] = []
    analysis = report.get("analysis", {}) or {}

    # ---------------------------------------------------------------------
    # 1) Anomalies
    # ---------------------------------------------------------------------
    counts: Dict[str, int] = {}
    kinds: Dict[str, str] = {}
    anomalies = analysis.get("anomalies", [])
    if isinstance(anomalies, list):
        for a in anomalies:
            if not isinstance(a, dict) or not a.get("subtype"):
                continue
            if a.get("type") == "RE_HINT":
                continue
            sub = str(a["subtype"])
            counts[sub] = counts.get(sub, 0) + 1
            kinds.setdefault(sub, str(a.get("type", "")))

    for sub, n in counts.items():
        pts = weights.get(kinds[sub], 0)
        if pts <= 0:
            continue
        total += pts
        breakdown.append(
            ScoreComponent(
                id=sub,
                points=pts,
                message=f"{kinds[sub].lower()} anomaly ({n} occurrence{'s' if n != 1 else ''})",
            )
        )

    # ---------------------------------------------------------------------
    # 2) RE hints
    # ---------------------------------------------------------------------
    hints = analysis.get("rehints", [])
    if isinstance(hints, list):
        per_hint = _int(sr.get("rehint_points", DEFAULT_REHINT_POINTS), DEFAULT_REHINT_POINTS)
        for h in hints:
            if not isinstance(h, dict) or per_hint <= 0:
                continue
            total += per_hint
            breakdown.append(
                ScoreComponent(
                    id=f"rehint:{h.get('type', 'unknown')}",
                    points=per_hint,
                    message=str(h.get("description", "")),
                )
            )

    # ---------------------------------------------------------------------
    # Normalize / cap
    # ---------------------------------------------------------------------
    overall_cap = _int(sr.get("overall_cap", 100), 100)
    total = max(0, min(overall_cap, total))

    # Most influential first; id keeps ties stable.
    breakdown.sort(key=lambda x: (-x.points, x.id))
    return total, breakdown


def attach_score(report: Dict[str, Any], scoring_rules: Dict[str, Any] | None = None) -> None:
    """Attach ``report['score']`` in-place."""

    score, breakdown = compute_score(report, scoring_rules=scoring_rules)

    thresholds = None
    if isinstance(scoring_rules, dict) and isinstance(scoring_rules.get("thresholds"), dict):
        thresholds = scoring_rules.get("thresholds")

    report["score"] = {
        "value": score,
        "level": score_level(score, thresholds=thresholds),
        "breakdown": [b.__dict__ for b in breakdown],
    }
