"""Evidence types shared by the collectors and the risk aggregator.

Every collector emits ``Evidence`` items. The category is the tag; the
payload is the typed detail behind the points, one dataclass per category.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class EvidenceCategory(str, Enum):
    COMMUNITY = "community"
    EXTERNAL_API = "external_api"
    GEOGRAPHIC = "geographic"
    BEHAVIORAL = "behavioral"


# Per-category ceilings applied before categories are summed
CATEGORY_CAPS: dict[EvidenceCategory, float] = {
    EvidenceCategory.COMMUNITY: 40,
    EvidenceCategory.EXTERNAL_API: 30,
    EvidenceCategory.GEOGRAPHIC: 35,
    EvidenceCategory.BEHAVIORAL: 20,
}


@dataclass(frozen=True)
class CommunityPayload:
    total_reports: int = 0
    unique_reporters: int = 0
    verified_reports: int = 0
    community_risk: float = 0.0
    most_common_scam_type: Optional[str] = None
    total_loss: float = 0.0


@dataclass(frozen=True)
class ReputationPayload:
    spam_score: Optional[float] = None
    fraud_score: Optional[float] = None
    is_voip: bool = False
    valid: bool = True


@dataclass(frozen=True)
class GeographicPayload:
    prefix: str
    region: str
    saved_contact: bool = False


@dataclass(frozen=True)
class BehavioralPayload:
    pattern: str
    category: str
    confidence: float = 0.0
    matches: tuple[str, ...] = field(default_factory=tuple)


EvidencePayload = Union[CommunityPayload, ReputationPayload, GeographicPayload, BehavioralPayload]

_PAYLOAD_TYPES = {
    EvidenceCategory.COMMUNITY: CommunityPayload,
    EvidenceCategory.EXTERNAL_API: ReputationPayload,
    EvidenceCategory.GEOGRAPHIC: GeographicPayload,
    EvidenceCategory.BEHAVIORAL: BehavioralPayload,
}


@dataclass(frozen=True)
class Evidence:
    category: EvidenceCategory
    points: float
    reason: str
    payload: Optional[EvidencePayload] = None

    def __post_init__(self):
        expected = _PAYLOAD_TYPES[self.category]
        if self.payload is not None and not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.category.value} evidence needs a {expected.__name__} payload, "
                f"got {type(self.payload).__name__}"
            )


def community(points: float, reason: str, payload: Optional[CommunityPayload] = None) -> Evidence:
    return Evidence(EvidenceCategory.COMMUNITY, points, reason, payload)


def external_api(points: float, reason: str, payload: Optional[ReputationPayload] = None) -> Evidence:
    return Evidence(EvidenceCategory.EXTERNAL_API, points, reason, payload)


def geographic(points: float, reason: str, payload: Optional[GeographicPayload] = None) -> Evidence:
    return Evidence(EvidenceCategory.GEOGRAPHIC, points, reason, payload)


def behavioral(points: float, reason: str, payload: Optional[BehavioralPayload] = None) -> Evidence:
    return Evidence(EvidenceCategory.BEHAVIORAL, points, reason, payload)
