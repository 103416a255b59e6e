"""Scoring engine: RICE priority and customer influence.

RICE
----
``reach × impact × confidence / effort``.  Only computed when all four
factors are present and positive, otherwise ``None``.

Influence
---------
Five bounded sub-factors summed and clamped to :data:`INFLUENCE_MAX`:

- ``revenue``    revenue tier, 0–3
- ``kol``        customer / KOL weight, 0–2
- ``reuse``      reuse / extensibility, 0–2
- ``strategic``  strategic alignment, 0–2
- ``tender``     tender requirement, 0–1

Missing or non-finite inputs count as 0.  The aggregate drives sorting and
filtering; :func:`influence_detail` keeps the raw inputs for display.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

INFLUENCE_MAX = 10

INFLUENCE_BOUNDS = {
    "revenue": 3,
    "kol": 2,
    "reuse": 2,
    "strategic": 2,
    "tender": 1,
}

_DETAIL_MARKS = ("①", "②", "③", "④", "⑤")


def _positive(value: Any) -> float | None:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num) or num <= 0:
        return None
    return num


def rice_score(reach: Any, impact: Any, confidence: Any, effort: Any) -> float | None:
    factors = [_positive(v) for v in (reach, impact, confidence, effort)]
    if any(f is None for f in factors):
        return None
    r, i, c, e = factors
    return (r * i * c) / e


def _finite_or_zero(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    return num if math.isfinite(num) else 0.0


def _display(value: float) -> str:
    return str(int(value)) if value == int(value) else str(value)


@dataclass(frozen=True)
class InfluenceFactors:
    revenue: Any = None
    kol: Any = None
    reuse: Any = None
    strategic: Any = None
    tender: Any = None

    def raw(self) -> list[float]:
        return [_finite_or_zero(getattr(self, name)) for name in INFLUENCE_BOUNDS]


def influence_score(factors: InfluenceFactors) -> int:
    """Sum of bounded sub-factors, clamped to ``0..INFLUENCE_MAX`` and rounded."""
    total = 0.0
    for value, bound in zip(factors.raw(), INFLUENCE_BOUNDS.values()):
        total += min(max(value, 0.0), bound)
    return round(min(total, INFLUENCE_MAX))


def influence_detail(factors: InfluenceFactors) -> str:
    """Display string of the raw inputs, e.g. ``"①2 ②1 ③0 ④2 ⑤1"``."""
    return " ".join(f"{mark}{_display(v)}" for mark, v in zip(_DETAIL_MARKS, factors.raw()))
