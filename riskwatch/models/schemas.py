"""Pydantic schemas for API requests and responses."""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


# ─── VERIFY ──────────────────────────────────────────────────────────────────

class VerifyRequest(BaseModel):
    identifier: str
    contact_name: Optional[str] = None
    force_refresh: bool = False

class RiskAssessmentOut(BaseModel):
    key: str
    kind: str
    score: int
    level: str
    reasons: list[str]
    breakdown: dict[str, float]
    recommendation: str
    unavailable: list[str] = []
    contact_name: Optional[str] = None
    checked_at: datetime


# ─── COMMUNITY REPORTS ───────────────────────────────────────────────────────

class ReportCreate(BaseModel):
    target: str
    scam_type: str = "other"
    claimed_to_be_from: str = ""
    description: str = ""
    loss_amount: float = 0.0

class ReportOut(BaseModel):
    id: int
    target_key: str
    scam_type: str
    claimed_to_be_from: str
    description: str
    loss_amount: float
    verified: bool
    upvotes: int
    reported_at: datetime

    class Config:
        from_attributes = True


# ─── WATCHLIST ───────────────────────────────────────────────────────────────

class WatchlistCreate(BaseModel):
    target: str
    check_frequency: Literal["hourly", "daily", "weekly"] = "daily"
    label: Optional[str] = None

class WatchlistCreated(BaseModel):
    watchlist_id: int

class WatchlistOut(BaseModel):
    id: int
    target_key: str
    kind: str
    platform: str
    label: str
    check_frequency: str
    next_check_at: datetime
    last_checked_at: Optional[datetime]
    status: str
    baseline_score: Optional[float]
    current_score: Optional[float]
    trust_score_change: Optional[float] = None
    alerts_count: int
    consecutive_failures: int
    added_at: datetime

    class Config:
        from_attributes = True

class SnapshotOut(BaseModel):
    id: int
    target_id: int
    captured_at: datetime
    fields: dict
    score: float
    risk_score: float
    level: str
    flags: list[str]

    class Config:
        from_attributes = True

class CheckOut(BaseModel):
    target_id: int
    status: str
    snapshot: Optional[SnapshotOut] = None
    alerts_created: int = 0
    next_check_at: Optional[datetime] = None
    error: Optional[str] = None


# ─── ALERTS ──────────────────────────────────────────────────────────────────

class AlertOut(BaseModel):
    id: int
    target_id: int
    alert_type: str
    severity: str
    title: str
    details: str
    old_value: Optional[str]
    new_value: Optional[str]
    read: bool
    dismissed: bool
    created_at: datetime

    class Config:
        from_attributes = True


# ─── BATCH ───────────────────────────────────────────────────────────────────

class BatchCreate(BaseModel):
    items: list[str] = Field(..., min_length=1)
    file_name: Optional[str] = None
    source: str = "manual_paste"

class BatchCreated(BaseModel):
    job_id: str

class BatchStatusOut(BaseModel):
    job_id: str
    status: str
    total_count: int
    processed_count: int
    success_count: int
    failure_count: int
    progress: int
    eta_seconds: int
    created_at: datetime
    completed_at: Optional[datetime]

class BatchResultsOut(BaseModel):
    job_id: str
    status: str
    file_name: Optional[str]
    results: list[dict]
    stats: dict
    created_at: datetime
    completed_at: Optional[datetime]

class BatchSummaryOut(BaseModel):
    job_id: str
    status: str
    file_name: Optional[str]
    total_count: int
    processed_count: int
    success_count: int
    failure_count: int
    created_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True
