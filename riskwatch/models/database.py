"""SQLAlchemy models and async database engine."""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey,
    Index, UniqueConstraint, JSON,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from riskwatch.config import get_settings

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ─── MODELS ──────────────────────────────────────────────────────────────────

class MonitoredTarget(Base):
    """A phone number or profile on an owner's watchlist."""
    __tablename__ = "monitored_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False, index=True)
    target_key = Column(String(500), nullable=False)          # normalized phone or profile URL
    kind = Column(String(20), nullable=False)                 # phone, profile
    platform = Column(String(50), default="unknown")
    label = Column(String(255), default="")

    check_frequency = Column(String(20), default="daily")     # hourly, daily, weekly
    next_check_at = Column(DateTime, nullable=False)
    last_checked_at = Column(DateTime, nullable=True)
    status = Column(String(20), default="active")             # active, alerting, error

    # Trust scores (100 - risk score)
    baseline_score = Column(Float, nullable=True)
    current_score = Column(Float, nullable=True)

    alerts_count = Column(Integer, default=0)
    consecutive_failures = Column(Integer, default=0)
    last_error = Column(Text, default="")
    added_at = Column(DateTime, default=utcnow)

    snapshots = relationship("Snapshot", back_populates="target", cascade="all, delete-orphan")
    alerts = relationship("Alert", back_populates="target", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("owner_id", "target_key", name="uq_owner_target"),
        Index("ix_targets_next_check", "next_check_at"),
    )

    @property
    def trust_score_change(self):
        if self.baseline_score is None or self.current_score is None:
            return None
        return self.current_score - self.baseline_score


class Snapshot(Base):
    """Point-in-time capture of a target's observable state and score."""
    __tablename__ = "snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(Integer, ForeignKey("monitored_targets.id"), nullable=False, index=True)
    captured_at = Column(DateTime, default=utcnow)

    fields = Column(JSON, default=dict)     # bio, follower_count, following_count, post_count, verified, ...
    score = Column(Float, nullable=False)   # trust score
    risk_score = Column(Float, nullable=False)
    level = Column(String(20), nullable=False)
    flags = Column(JSON, default=list)

    target = relationship("MonitoredTarget", back_populates="snapshots")

    __table_args__ = (
        Index("ix_snapshots_target_captured", "target_id", "captured_at"),
    )


class Alert(Base):
    """A notification raised by a snapshot diff."""
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False, index=True)
    target_id = Column(Integer, ForeignKey("monitored_targets.id"), nullable=False, index=True)

    alert_type = Column(String(50), nullable=False)    # bio_changed, follower_spike, follower_drop, trust_drop
    severity = Column(String(20), nullable=False)      # medium, high, critical
    title = Column(String(255), nullable=False)
    details = Column(Text, default="")
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)

    read = Column(Boolean, default=False)
    dismissed = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    target = relationship("MonitoredTarget", back_populates="alerts")


class BatchJob(Base):
    """A caller-submitted list of entities scored one at a time."""
    __tablename__ = "batch_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(64), unique=True, nullable=False, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    status = Column(String(20), default="pending")     # pending, processing, completed, canceled

    items = Column(JSON, default=list)
    total_count = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    failure_count = Column(Integer, default=0)
    results = Column(JSON, default=list)

    file_name = Column(String(255), nullable=True)
    source = Column(String(50), default="manual_paste")
    avg_item_seconds = Column(Float, nullable=True)    # measured mean per item

    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class CommunityReport(Base):
    """A user-submitted scam report about a phone number or profile."""
    __tablename__ = "community_reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_key = Column(String(500), nullable=False, index=True)
    reported_by = Column(String(255), nullable=False)
    scam_type = Column(String(50), default="other")
    claimed_to_be_from = Column(String(255), default="")
    description = Column(Text, default="")
    loss_amount = Column(Float, default=0.0)
    verified = Column(Boolean, default=False)
    upvotes = Column(Integer, default=0)
    reported_at = Column(DateTime, default=utcnow)


class ReportUpvote(Base):
    """One owner's confirmation of a community report."""
    __tablename__ = "report_upvotes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("community_reports.id", ondelete="CASCADE"), nullable=False)
    voter_id = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("report_id", "voter_id", name="uq_report_voter"),
    )


class KeyedEntry(Base):
    """Durable keyed value with an expiry, used for leases and cached lookups."""
    __tablename__ = "keyed_entries"

    key = Column(String(255), primary_key=True)
    token = Column(String(64), default="")
    value = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)


# ─── DATABASE ENGINE ─────────────────────────────────────────────────────────

def get_engine():
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=False,
    )


_engine = None
_session_factory = None


def get_session_factory():
    global _engine, _session_factory
    if _session_factory is None:
        _engine = get_engine()
        _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def init_db():
    """Create all tables."""
    get_session_factory()  # ensures _engine is initialized
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db():
    """Close the engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db():
    """FastAPI dependency for database sessions."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
