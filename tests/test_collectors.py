"""Tests for target normalization and the evidence collectors."""

import asyncio

import pytest

from riskwatch.config import get_settings
from riskwatch.errors import CollectorUnavailable, InvalidTarget
from riskwatch.models.database import CommunityReport
from riskwatch.services import collectors, verification
from riskwatch.services import evidence as ev
from riskwatch.services.collectors import (
    Subject, detect_kind, detect_platform, match_text, normalize_phone_number,
    normalize_target, region_for, summarize_reports,
)


async def _add_reports(session_factory, key, count, reporters=None, **fields):
    async with session_factory() as session:
        async with session.begin():
            for n in range(count):
                reporter = reporters[n % len(reporters)] if reporters else f"user-{n}"
                session.add(CommunityReport(target_key=key, reported_by=reporter, **fields))


# ─── NORMALIZATION ───────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw,expected", [
    ("0412 345 678", "+61412345678"),
    ("+61 412-345-678", "+61412345678"),
    ("+1 (555) 123.4567", "+15551234567"),
    ("2348031234567", "+2348031234567"),
])
def test_normalize_phone_number(raw, expected):
    assert normalize_phone_number(raw) == expected


@pytest.mark.parametrize("raw", ["", "call me", "12345", "+1234567890123456"])
def test_normalize_phone_number_rejects_garbage(raw):
    with pytest.raises(InvalidTarget):
        normalize_phone_number(raw)


def test_profile_detection():
    assert detect_platform("https://www.instagram.com/someone") == "instagram"
    assert detect_platform("https://x.com/someone") == "twitter"
    assert detect_platform("https://netflix.com/title") == "unknown"
    assert detect_kind("facebook.com/someone") == "profile"
    assert detect_kind("+61 412 345 678") == "phone"


def test_normalize_target_for_profile():
    key, kind, platform = normalize_target("www.linkedin.com/in/someone/")
    assert key == "https://www.linkedin.com/in/someone"
    assert kind == "profile"
    assert platform == "linkedin"


# ─── GEOGRAPHIC ──────────────────────────────────────────────────────────────

def test_region_for_prefix():
    assert region_for("+2348031234567") == ("+234", "Nigeria")
    assert region_for("+61412345678") is None


@pytest.mark.asyncio
async def test_geographic_weight_depends_on_saved_contact():
    unsaved = await collectors.collect_geographic(Subject(key="+2348031234567"))
    saved = await collectors.collect_geographic(Subject(key="+2348031234567", contact_name="Ade"))
    local = await collectors.collect_geographic(Subject(key="+61412345678"))
    profile = await collectors.collect_geographic(Subject(key="https://x.com/a", kind="profile"))

    assert [e.points for e in unsaved] == [35]
    assert unsaved[0].payload.region == "Nigeria"
    assert [e.points for e in saved] == [10]
    assert local == []
    assert profile == []


# ─── COMMUNITY ───────────────────────────────────────────────────────────────

def test_summarize_reports_formula():
    reports = [
        CommunityReport(reported_by=f"u{n % 5}", verified=n < 3, scam_type="tax_scam", loss_amount=100)
        for n in range(10)
    ]

    intel = summarize_reports(reports)

    assert intel.total_reports == 10
    assert intel.unique_reporters == 5
    assert intel.verified_reports == 3
    assert intel.community_risk == 100
    assert intel.most_common_scam_type == "tax_scam"
    assert intel.total_loss == 1000


@pytest.mark.asyncio
async def test_community_needs_three_reports(db):
    key = "+61400000001"
    await _add_reports(db, key, 2)
    assert await collectors.collect_community(Subject(key=key)) == []

    await _add_reports(db, key, 1)
    evidence = await collectors.collect_community(Subject(key=key))
    assert evidence[0].points == 8
    assert evidence[0].reason == "Reported 3 times by community"


@pytest.mark.asyncio
async def test_community_points_are_capped(db):
    key = "+61400000002"
    await _add_reports(
        db, key, 12, reporters=["a", "b", "c", "d", "e"],
        verified=True, scam_type="banking", loss_amount=250,
    )

    evidence = await collectors.collect_community(Subject(key=key))
    reasons = [e.reason for e in evidence]

    assert evidence[0].points == 40
    assert reasons == ["Reported 12 times as scam", "Banking fraud", "Total losses: $3,000"]


# ─── BEHAVIORAL ──────────────────────────────────────────────────────────────

def test_match_text_categories_and_confidence():
    matches = match_text("URGENT: pay now with a gift card or face arrest")
    by_category = {m.category: m for m in matches}

    assert list(by_category) == ["urgency", "payment_request"]
    assert by_category["urgency"].matches == ("urgent", "arrest")
    assert by_category["urgency"].confidence == 60
    assert match_text("") == []


@pytest.mark.asyncio
async def test_behavioral_flags_overseas_authority_impersonation(db):
    key = "+2348031234567"
    await _add_reports(db, key, 5, claimed_to_be_from="ATO", description="")

    evidence = await collectors.collect_behavioral(Subject(key=key))
    reasons = [e.reason for e in evidence]

    assert "High frequency reporting pattern" in reasons
    assert "Impersonating Australian authority from overseas number" in reasons
    assert "Claims to represent an authority" in reasons


@pytest.mark.asyncio
async def test_behavioral_domestic_number_is_not_a_mismatch(db):
    key = "+61412345678"
    await _add_reports(db, key, 5, claimed_to_be_from="ATO")

    reasons = [e.reason for e in await collectors.collect_behavioral(Subject(key=key))]

    assert "Impersonating Australian authority from overseas number" not in reasons


@pytest.mark.asyncio
async def test_behavioral_reads_profile_text(db):
    subject = Subject(key="https://x.com/promo", kind="profile", text="You have won! Claim your prize")
    evidence = await collectors.collect_behavioral(subject)

    assert [e.payload.pattern for e in evidence] == ["prize"]


# ─── REPUTATION ──────────────────────────────────────────────────────────────

@pytest.fixture
def reputation_api(monkeypatch):
    monkeypatch.setenv("REPUTATION_API_KEY", "test-key")
    get_settings.cache_clear()
    calls = []
    response = {"success": True, "fraud_score": 90, "spam_score": 8, "VOIP": True, "valid": True}

    async def _fetch(number):
        calls.append(number)
        return dict(response)

    monkeypatch.setattr(collectors, "_fetch_reputation", _fetch)
    return calls, response


@pytest.mark.asyncio
async def test_reputation_without_key_is_skipped(db):
    assert await collectors.lookup("+61412345678") is None
    assert await collectors.collect_reputation(Subject(key="+61412345678")) == []


@pytest.mark.asyncio
async def test_reputation_scores(db, reputation_api):
    evidence = await collectors.collect_reputation(Subject(key="+61412345678"))

    assert [e.points for e in evidence] == [30, 30, 10]
    assert evidence[1].reason == "High fraud risk (90%)"


@pytest.mark.asyncio
async def test_reputation_lookups_are_cached(db, reputation_api):
    calls, _ = reputation_api

    await collectors.lookup("+61412345678")
    await collectors.lookup("+61412345678")
    assert calls == ["+61412345678"]

    await collectors.lookup("+61412345678", force_refresh=True)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_reputation_failure_is_not_cached(db, reputation_api):
    calls, response = reputation_api
    response.update({"success": False, "message": "quota exceeded"})

    with pytest.raises(CollectorUnavailable, match="quota exceeded"):
        await collectors.lookup("+61412345678")
    with pytest.raises(CollectorUnavailable):
        await collectors.lookup("+61412345678")
    assert len(calls) == 2


# ─── GATHERING ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_gather_evidence_isolates_failures(monkeypatch):
    monkeypatch.setenv("COLLECTOR_TIMEOUT_SECONDS", "0.05")
    get_settings.cache_clear()

    async def ok(subject):
        return [ev.geographic(35, "region")]

    async def broken(subject):
        raise RuntimeError("boom")

    async def slow(subject):
        await asyncio.sleep(1)
        return [ev.community(40, "never")]

    evidence, unavailable = await collectors.gather_evidence(
        Subject(key="+2348031234567"),
        collectors={"geographic": ok, "community": broken, "external_api": slow},
    )

    assert [e.reason for e in evidence] == ["region"]
    assert unavailable == ["community", "external_api"]


@pytest.mark.asyncio
async def test_verify_number_offline(db):
    assessment = await verification.verify_number("+234 803 123 4567")

    assert assessment.key == "+2348031234567"
    assert assessment.score == 35
    assert assessment.level == "suspicious"
    assert assessment.unavailable == []


@pytest.mark.asyncio
async def test_observe_fails_when_every_collector_is_down(db, monkeypatch):
    async def down(subject):
        raise RuntimeError("down")

    for name in list(collectors.ALL_COLLECTORS):
        monkeypatch.setitem(collectors.ALL_COLLECTORS, name, {"name": name, "collect": down})

    with pytest.raises(CollectorUnavailable):
        await verification.observe("+61412345678", "phone")
