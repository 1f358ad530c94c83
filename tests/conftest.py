"""Shared fixtures for the RiskWatch test suite.

Every test gets its own SQLite file and a fresh settings object. The
module-level engine and session factory are nulled before and after each
test so no connection leaks between event loops.
"""

import pytest
import pytest_asyncio

from riskwatch.config import get_settings
from riskwatch.models import database
from riskwatch.services import evidence as ev
from riskwatch.services import verification
from riskwatch.services.scoring import aggregate


def _reset_engine_globals() -> None:
    database._engine = None
    database._session_factory = None


@pytest.fixture(autouse=True)
def test_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'riskwatch.db'}")
    monkeypatch.setenv("REPUTATION_API_KEY", "")
    monkeypatch.setenv("PROFILE_API_URL", "")
    monkeypatch.setenv("CAPTURE_ON_ADD", "false")
    monkeypatch.setenv("LEASE_RETRY_DELAY_SECONDS", "0.01")
    monkeypatch.setenv("COLLECTOR_TIMEOUT_SECONDS", "2")
    get_settings.cache_clear()
    _reset_engine_globals()
    yield get_settings
    get_settings.cache_clear()
    _reset_engine_globals()


@pytest_asyncio.fixture
async def db():
    """Initialized database; yields the session factory."""
    await database.init_db()
    yield database.get_session_factory()
    await database.dispose_db()


def evidence_for_risk(risk: int) -> list:
    """Evidence that aggregates to exactly ``risk`` (0-100)."""
    items = []
    remaining = risk
    for make, cap in ((ev.community, 40), (ev.external_api, 30), (ev.geographic, 35), (ev.behavioral, 20)):
        if remaining <= 0:
            break
        points = min(remaining, cap)
        items.append(make(points, f"{points} risk points"))
        remaining -= points
    return items


@pytest.fixture
def fake_observe(monkeypatch):
    """Replace target observation with a scripted sequence.

    Each step is ``(fields, risk)`` or an exception instance to raise.
    The last step repeats once the script runs out.
    """
    state = {"steps": [({}, 0)], "calls": []}

    async def _observe(key, kind, force_refresh=False, now=None):
        state["calls"].append(key)
        step = state["steps"][min(len(state["calls"]), len(state["steps"])) - 1]
        if isinstance(step, Exception):
            raise step
        fields, risk = step
        assessment = aggregate(evidence_for_risk(risk), key=key, kind=kind, now=now)
        return verification.Observation(fields=dict(fields), assessment=assessment, flags=list(assessment.reasons))

    monkeypatch.setattr(verification, "observe", _observe)

    def script(*steps):
        state["steps"] = list(steps)
        return state["calls"]

    return script
