"""Risk aggregation engine.

Combines categorized evidence into a 0-100 risk score, a risk level,
and an ordered list of human-readable reasons. Each category is capped
before categories are summed, so no single source can dominate.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from riskwatch.models.database import utcnow
from riskwatch.services.evidence import CATEGORY_CAPS, Evidence, EvidenceCategory


# ─── RISK LEVELS ─────────────────────────────────────────────────────────────

KNOWN_SCAM = "known_scam"
HIGH_RISK = "high_risk"
SUSPICIOUS = "suspicious"
SAFE = "safe"

# Inclusive lower bounds, most severe first
LEVEL_THRESHOLDS = [
    (70, KNOWN_SCAM),
    (50, HIGH_RISK),
    (30, SUSPICIOUS),
    (0, SAFE),
]

RECOMMENDATIONS = {
    KNOWN_SCAM: "Block immediately and report to authorities",
    HIGH_RISK: "Do not answer. Block if calls persist.",
    SUSPICIOUS: "Verify identity before sharing information",
    SAFE: "No red flags detected",
}


def risk_level(score: float) -> str:
    for threshold, level in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return SAFE


@dataclass
class RiskAssessment:
    key: str
    kind: str
    score: int
    level: str
    reasons: list[str]
    breakdown: dict[str, float]
    recommendation: str
    unavailable: list[str] = field(default_factory=list)
    contact_name: Optional[str] = None
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def trust_score(self) -> int:
        return 100 - self.score

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "kind": self.kind,
            "score": self.score,
            "level": self.level,
            "reasons": list(self.reasons),
            "breakdown": dict(self.breakdown),
            "recommendation": self.recommendation,
            "unavailable": list(self.unavailable),
            "contact_name": self.contact_name,
            "checked_at": self.checked_at,
        }


# ─── AGGREGATION ─────────────────────────────────────────────────────────────

def _cap(category: EvidenceCategory, total: float) -> float:
    try:
        ceiling = CATEGORY_CAPS[category]
    except KeyError:
        raise ValueError(f"No cap defined for evidence category {category!r}")
    return max(0.0, min(total, ceiling))


def aggregate(
    evidence: Iterable[Evidence],
    key: str = "",
    kind: str = "phone",
    contact_name: Optional[str] = None,
    unavailable: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> RiskAssessment:
    """Score a set of evidence deterministically.

    Reasons are grouped by category, heaviest capped category first;
    categories with equal weight keep the order they first appeared in.
    """
    totals: dict[EvidenceCategory, float] = {}
    reasons: dict[EvidenceCategory, list[str]] = {}

    for item in evidence:
        category = EvidenceCategory(item.category)
        totals[category] = totals.get(category, 0.0) + item.points
        if item.reason:
            reasons.setdefault(category, []).append(item.reason)

    capped = {category: _cap(category, total) for category, total in totals.items()}
    score = int(round(min(sum(capped.values()), 100)))
    level = risk_level(score)

    # sorted() is stable, so ties keep first-appearance order
    ordered = sorted(capped, key=lambda c: capped[c], reverse=True)
    ordered_reasons = [r for category in ordered for r in reasons.get(category, [])]

    recommendation = RECOMMENDATIONS[level]
    if level == SAFE and contact_name and contact_name != "Unknown":
        recommendation = "Contact appears safe"

    return RiskAssessment(
        key=key,
        kind=kind,
        score=score,
        level=level,
        reasons=ordered_reasons,
        breakdown={category.value: points for category, points in capped.items()},
        recommendation=recommendation,
        unavailable=list(unavailable or []),
        contact_name=contact_name,
        checked_at=now or utcnow(),
    )
