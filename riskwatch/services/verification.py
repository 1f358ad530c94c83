"""Observe a target and turn its evidence into a RiskAssessment."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from riskwatch.errors import CollectorUnavailable
from riskwatch.services import collectors
from riskwatch.services.collectors import Subject, normalize_phone_number
from riskwatch.services.scoring import RiskAssessment, aggregate

logger = logging.getLogger("riskwatch.verification")


@dataclass
class Observation:
    """Observable fields of a target plus the assessment computed from them."""
    fields: dict
    assessment: RiskAssessment
    flags: list[str] = field(default_factory=list)


async def assess(subject: Subject, now: Optional[datetime] = None) -> RiskAssessment:
    evidence, unavailable = await collectors.gather_evidence(subject)
    return aggregate(
        evidence,
        key=subject.key,
        kind=subject.kind,
        contact_name=subject.contact_name,
        unavailable=unavailable,
        now=now,
    )


async def verify_number(
    identifier: str,
    contact_name: Optional[str] = None,
    force_refresh: bool = False,
) -> RiskAssessment:
    """Check a phone number across every evidence layer."""
    number = normalize_phone_number(identifier)
    assessment = await assess(Subject(
        key=number, kind="phone", contact_name=contact_name, force_refresh=force_refresh,
    ))
    logger.info(f"Verified {number}: {assessment.score} ({assessment.level})")
    return assessment


async def observe(
    key: str,
    kind: str,
    force_refresh: bool = False,
    now: Optional[datetime] = None,
) -> Observation:
    """Fetch a target's observable state and score it.

    Raises CollectorUnavailable when the profile source fails or when no
    collector at all could answer.
    """
    fields: dict = {}
    if kind == "profile":
        fields = await collectors.fetch_profile(key)

    subject = Subject(key=key, kind=kind, text=str(fields.get("bio") or ""), force_refresh=force_refresh)
    assessment = await assess(subject, now=now)

    if assessment.unavailable and len(assessment.unavailable) == len(collectors.ALL_COLLECTORS):
        raise CollectorUnavailable("all", f"no collector answered for {key}")

    return Observation(fields=fields, assessment=assessment, flags=list(assessment.reasons))
