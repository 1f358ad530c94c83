"""Evidence collectors: independent probes that each return weighted signals.

Collectors never decide the final score. Each one looks at a single
source (community reports, reputation API, prefix table, text patterns)
and emits Evidence; the aggregator caps and combines them. A collector
that fails or times out is reported as unavailable and contributes zero.
"""

import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy import select, desc
from tenacity import retry, stop_after_attempt, wait_exponential

from riskwatch.config import get_settings
from riskwatch.errors import CollectorUnavailable, InvalidTarget
from riskwatch.models.database import CommunityReport, get_session_factory
from riskwatch.services import store
from riskwatch.services.evidence import (
    BehavioralPayload, CommunityPayload, Evidence, GeographicPayload, ReputationPayload,
    behavioral, community, external_api, geographic,
)

logger = logging.getLogger("riskwatch.collectors")


# ─── TARGET KEYS ─────────────────────────────────────────────────────────────

PROFILE_DOMAINS = {
    "facebook.com": "facebook",
    "instagram.com": "instagram",
    "twitter.com": "twitter",
    "x.com": "twitter",
    "linkedin.com": "linkedin",
    "tiktok.com": "tiktok",
}

_PHONE_STRIP = re.compile(r"[\s\-\(\)\.]")
_PHONE_VALID = re.compile(r"^\+?\d{6,15}$")


def normalize_phone_number(phone: str) -> str:
    """Normalize to international format. Bare Australian numbers get +61."""
    cleaned = _PHONE_STRIP.sub("", phone or "")
    if not _PHONE_VALID.match(cleaned):
        raise InvalidTarget(f"Not a phone number: {phone!r}")

    if not cleaned.startswith("+"):
        if cleaned.startswith("0") and len(cleaned) == 10:
            cleaned = "+61" + cleaned[1:]
        else:
            cleaned = "+" + cleaned
    return cleaned


def detect_platform(url: str) -> str:
    lowered = url.lower()
    for domain, platform in PROFILE_DOMAINS.items():
        if re.search(rf"(^|[/.]){re.escape(domain)}", lowered):
            return platform
    return "unknown"


def detect_kind(value: str) -> str:
    text = (value or "").strip().lower()
    if "://" in text or text.startswith("www.") or detect_platform(text) != "unknown":
        return "profile"
    return "phone"


def normalize_profile_url(url: str) -> str:
    cleaned = (url or "").strip()
    if not cleaned:
        raise InvalidTarget("Empty profile URL")
    if "://" not in cleaned:
        cleaned = "https://" + cleaned
    return cleaned.rstrip("/")


def normalize_target(value: str) -> tuple[str, str, str]:
    """Return (key, kind, platform) for a raw phone number or profile URL."""
    kind = detect_kind(value)
    if kind == "profile":
        key = normalize_profile_url(value)
        return key, kind, detect_platform(key)
    return normalize_phone_number(value), kind, "phone"


@dataclass(frozen=True)
class Subject:
    """What a collector is asked about."""
    key: str
    kind: str = "phone"
    contact_name: Optional[str] = None
    text: str = ""          # free text observed on the target, e.g. a profile bio
    force_refresh: bool = False

    @property
    def is_saved_contact(self) -> bool:
        return bool(self.contact_name) and self.contact_name != "Unknown"


# ─── COMMUNITY REPORTS ───────────────────────────────────────────────────────

SCAM_TYPE_LABELS = {
    "impersonation": "Government impersonation",
    "phishing": "Phishing attempt",
    "lottery": "Lottery scam",
    "tech_support": "Fake tech support",
    "tax_scam": "Tax/ATO scam",
    "banking": "Banking fraud",
    "romance": "Romance scam",
}


async def reports_for(key: str, limit: Optional[int] = None) -> list[CommunityReport]:
    """Community reports about ``key``, newest first."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        query = (
            select(CommunityReport)
            .where(CommunityReport.target_key == key)
            .order_by(desc(CommunityReport.reported_at), desc(CommunityReport.id))
        )
        if limit:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())


def summarize_reports(reports: list[CommunityReport]) -> CommunityPayload:
    unique_reporters = len({r.reported_by for r in reports})
    verified = sum(1 for r in reports if r.verified)
    total_loss = sum(r.loss_amount or 0 for r in reports)

    risk = 0
    if len(reports) >= 3:
        risk += 20
    if len(reports) >= 10:
        risk += 20
    if unique_reporters >= 5:
        risk += 30
    if verified >= 3:
        risk += 30

    most_common = None
    if reports:
        most_common = Counter(r.scam_type for r in reports if r.scam_type).most_common(1)
        most_common = most_common[0][0] if most_common else None

    return CommunityPayload(
        total_reports=len(reports),
        unique_reporters=unique_reporters,
        verified_reports=verified,
        community_risk=min(risk, 100),
        most_common_scam_type=most_common,
        total_loss=total_loss,
    )


async def collect_community(subject: Subject) -> list[Evidence]:
    reports = await reports_for(subject.key)
    intel = summarize_reports(reports)
    if intel.total_reports < 3:
        return []

    if intel.total_reports >= 10:
        reason = f"Reported {intel.total_reports} times as scam"
    else:
        reason = f"Reported {intel.total_reports} times by community"

    evidence = [community(min(intel.community_risk * 0.4, 40), reason, intel)]
    if intel.most_common_scam_type:
        label = SCAM_TYPE_LABELS.get(intel.most_common_scam_type, "Reported scam activity")
        evidence.append(community(0, label, intel))
    if intel.total_loss > 0:
        evidence.append(community(0, f"Total losses: ${intel.total_loss:,.0f}", intel))
    return evidence


# ─── REPUTATION API ──────────────────────────────────────────────────────────

@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, max=4), reraise=True)
async def _fetch_reputation(number: str) -> dict:
    settings = get_settings()
    async with httpx.AsyncClient(timeout=settings.collector_timeout_seconds) as client:
        resp = await client.get(
            f"{settings.reputation_api_url.rstrip('/')}/{settings.reputation_api_key}/{number}",
        )
        resp.raise_for_status()
        return resp.json()


async def lookup(number: str, force_refresh: bool = False) -> Optional[ReputationPayload]:
    """Reputation/fraud lookup, cached for ``reputation_cache_days``.

    Returns None when no API key is configured.
    """
    settings = get_settings()
    if not settings.reputation_api_key:
        logger.debug("Reputation API: no API key, skipping")
        return None

    cache_key = f"reputation:{number}"
    data = None if force_refresh else await store.get(cache_key)
    if data is None:
        data = await _fetch_reputation(number)
        if data.get("success") is False:
            raise CollectorUnavailable("external_api", str(data.get("message", "lookup failed")))
        await store.put(cache_key, data, settings.reputation_cache_days * 24 * 3600)

    return ReputationPayload(
        spam_score=data.get("spam_score"),
        fraud_score=data.get("fraud_score"),
        is_voip=bool(data.get("VOIP", data.get("is_voip", False))),
        valid=bool(data.get("valid", True)),
    )


async def collect_reputation(subject: Subject) -> list[Evidence]:
    if subject.kind != "phone":
        return []
    rep = await lookup(subject.key, force_refresh=subject.force_refresh)
    if rep is None:
        return []

    evidence = []
    if rep.spam_score is not None and rep.spam_score > 7:
        evidence.append(external_api(30, f"High spam score ({rep.spam_score:g}/10)", rep))
    elif rep.spam_score is not None and rep.spam_score > 4:
        evidence.append(external_api(15, f"Moderate spam score ({rep.spam_score:g}/10)", rep))

    if rep.fraud_score is not None and rep.fraud_score > 85:
        evidence.append(external_api(30, f"High fraud risk ({rep.fraud_score:g}%)", rep))
    elif rep.fraud_score is not None and rep.fraud_score > 50:
        evidence.append(external_api(15, f"Elevated fraud risk ({rep.fraud_score:g}%)", rep))

    if rep.is_voip:
        evidence.append(external_api(10, "VoIP or temporary number", rep))
    if not rep.valid:
        evidence.append(external_api(20, "Invalid or disconnected number", rep))
    return evidence


# ─── GEOGRAPHIC RISK ─────────────────────────────────────────────────────────

HIGH_RISK_PREFIXES: dict[str, str] = {
    "+234": "Nigeria",
    "+233": "Ghana",
    "+254": "Kenya",
    "+91": "India",
    "+86": "China",
    "+92": "Pakistan",
    "+63": "Philippines",
}


def region_for(number: str) -> Optional[tuple[str, str]]:
    """Longest matching high-risk prefix as (prefix, region), or None."""
    for prefix in sorted(HIGH_RISK_PREFIXES, key=len, reverse=True):
        if number.startswith(prefix):
            return prefix, HIGH_RISK_PREFIXES[prefix]
    return None


async def collect_geographic(subject: Subject) -> list[Evidence]:
    if subject.kind != "phone":
        return []
    match = region_for(subject.key)
    if not match:
        return []

    prefix, region = match
    payload = GeographicPayload(prefix=prefix, region=region, saved_contact=subject.is_saved_contact)
    if subject.is_saved_contact:
        return [geographic(10, f"International number from {region} (verify if unexpected calls)", payload)]
    return [geographic(35, f"Unsaved number from high-risk scam region ({region})", payload)]


# ─── BEHAVIORAL PATTERNS ─────────────────────────────────────────────────────

# (category, points, pattern, reason)
BEHAVIOR_PATTERNS = [
    ("urgency", 15, re.compile(
        r"urgent|immediately|suspended|arrest|warrant|legal\s*action|final\s*notice",
        re.IGNORECASE,
    ), "Uses high-pressure tactics"),
    ("payment_request", 20, re.compile(
        r"pay\s*now|payment|wire|transfer|bitcoin|crypto|gift\s*card|itunes\s*card",
        re.IGNORECASE,
    ), "Requests unusual payment method"),
    ("impersonation", 20, re.compile(
        r"\bato\b|tax\s*office|centrelink|mygov|police|government|\birs\b|customs",
        re.IGNORECASE,
    ), "Claims to represent an authority"),
    ("prize", 15, re.compile(
        r"you\s*(have\s*)?won|lottery|prize|inheritance|claim\s*your",
        re.IGNORECASE,
    ), "Prize or lottery lure"),
    ("phishing", 20, re.compile(
        r"verify\s*your\s*account|one[\s-]*time\s*code|\botp\b|password|login\s*details",
        re.IGNORECASE,
    ), "Asks for credentials or codes"),
]

AUSTRALIAN_AUTHORITIES = re.compile(r"\bato\b|tax\s*office", re.IGNORECASE)


@dataclass(frozen=True)
class BehaviorMatch:
    category: str
    points: float
    confidence: float
    matches: tuple[str, ...]
    reason: str


def match_text(text: str) -> list[BehaviorMatch]:
    """Keyword/phrase matcher: category and confidence for each pattern hit."""
    found = []
    if not text:
        return found
    for category, points, pattern, reason in BEHAVIOR_PATTERNS:
        hits = tuple(m.group(0).lower() for m in pattern.finditer(text))
        if hits:
            distinct = tuple(dict.fromkeys(hits))
            confidence = min(90, 30 + 15 * len(distinct))
            found.append(BehaviorMatch(category, points, confidence, distinct, reason))
    return found


async def collect_behavioral(subject: Subject) -> list[Evidence]:
    evidence = []
    recent = await reports_for(subject.key, limit=5) if subject.kind == "phone" else []

    if len(recent) >= 5:
        evidence.append(behavioral(20, "High frequency reporting pattern", BehavioralPayload(
            pattern="report_frequency", category="frequency", confidence=min(90, 30 + 2 * len(recent)),
        )))
        impersonates = any(
            AUSTRALIAN_AUTHORITIES.search(r.claimed_to_be_from or "") for r in recent
        )
        if impersonates and not subject.key.startswith("+61"):
            evidence.append(behavioral(
                20, "Impersonating Australian authority from overseas number",
                BehavioralPayload(pattern="geo_mismatch", category="impersonation", confidence=80),
            ))

    text = " ".join(
        [subject.text] + [f"{r.claimed_to_be_from or ''} {r.description or ''}" for r in recent]
    )
    for match in match_text(text):
        evidence.append(behavioral(match.points, match.reason, BehavioralPayload(
            pattern=match.category, category=match.category,
            confidence=match.confidence, matches=match.matches,
        )))
    return evidence


# ─── PROFILE SOURCE ──────────────────────────────────────────────────────────

PROFILE_FIELDS = {
    "bio": ("bio",),
    "follower_count": ("follower_count", "followers_count", "followersCount"),
    "following_count": ("following_count", "followingCount"),
    "post_count": ("post_count", "posts_count", "postsCount"),
    "verified": ("verified",),
    "location": ("location",),
    "website": ("website",),
    "profile_pic_url": ("profile_pic_url", "profilePicUrl"),
    "joined_date": ("joined_date", "joinedDate"),
}


def _profile_fields(data: dict) -> dict:
    fields = {}
    for name, aliases in PROFILE_FIELDS.items():
        for alias in aliases:
            if data.get(alias) not in (None, ""):
                fields[name] = data[alias]
                break
    return fields


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, max=4), reraise=True)
async def _fetch_profile(url: str) -> dict:
    settings = get_settings()
    headers = {}
    if settings.profile_api_key:
        headers["Authorization"] = f"Bearer {settings.profile_api_key}"
    async with httpx.AsyncClient(timeout=settings.collector_timeout_seconds) as client:
        resp = await client.get(settings.profile_api_url, params={"url": url}, headers=headers)
        resp.raise_for_status()
        return resp.json()


async def fetch_profile(url: str) -> dict:
    """Observable profile fields, or {} when no profile source is configured."""
    settings = get_settings()
    if not settings.profile_api_url:
        logger.debug("Profile source: not configured, skipping")
        return {}
    try:
        data = await _fetch_profile(url)
    except (httpx.HTTPError, ValueError) as e:
        raise CollectorUnavailable("profile", str(e)) from e
    return _profile_fields(data if isinstance(data, dict) else {})


# ─── GATHERING ───────────────────────────────────────────────────────────────

Collector = Callable[[Subject], Awaitable[list[Evidence]]]

ALL_COLLECTORS: dict[str, dict] = {
    "community": {"name": "Community reports", "collect": collect_community},
    "external_api": {"name": "Reputation API", "collect": collect_reputation, "needs_key": True},
    "geographic": {"name": "Geographic risk table", "collect": collect_geographic},
    "behavioral": {"name": "Behavioral patterns", "collect": collect_behavioral},
}

_limiter: Optional[asyncio.Semaphore] = None
_limiter_loop = None


def get_limiter() -> asyncio.Semaphore:
    """Global bound on in-flight collector calls, shared by checks and batch jobs."""
    global _limiter, _limiter_loop
    loop = asyncio.get_running_loop()
    if _limiter is None or _limiter_loop is not loop:
        _limiter = asyncio.Semaphore(get_settings().collector_concurrency)
        _limiter_loop = loop
    return _limiter


async def gather_evidence(
    subject: Subject,
    collectors: Optional[dict[str, Collector]] = None,
) -> tuple[list[Evidence], list[str]]:
    """Run every collector concurrently.

    Returns the combined evidence (in collector registration order) and the
    names of collectors that were unavailable.
    """
    settings = get_settings()
    if collectors is None:
        collectors = {name: info["collect"] for name, info in ALL_COLLECTORS.items()}

    async def _run(name: str, collect: Collector) -> list[Evidence]:
        async with get_limiter():
            return await asyncio.wait_for(collect(subject), timeout=settings.collector_timeout_seconds)

    names = list(collectors)
    results = await asyncio.gather(
        *(_run(name, collectors[name]) for name in names),
        return_exceptions=True,
    )

    evidence: list[Evidence] = []
    unavailable: list[str] = []
    for name, result in zip(names, results):
        if isinstance(result, asyncio.TimeoutError):
            logger.warning(f"{CollectorUnavailable(name, 'timed out')} for {subject.key}")
            unavailable.append(name)
        elif isinstance(result, Exception):
            logger.warning(f"{CollectorUnavailable(name, str(result))} for {subject.key}")
            unavailable.append(name)
        elif isinstance(result, BaseException):
            raise result
        else:
            evidence.extend(result)
    return evidence, unavailable
