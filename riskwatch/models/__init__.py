from riskwatch.models.database import (
    Base, MonitoredTarget, Snapshot, Alert, BatchJob, CommunityReport, ReportUpvote, KeyedEntry,
    get_engine, get_session_factory, get_db, init_db, dispose_db, utcnow,
)
