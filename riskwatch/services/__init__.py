from riskwatch.services.evidence import Evidence, EvidenceCategory, CATEGORY_CAPS
from riskwatch.services.scoring import RiskAssessment, aggregate, risk_level
from riskwatch.services.collectors import ALL_COLLECTORS, Subject, gather_evidence, normalize_target
from riskwatch.services.verification import verify_number, observe
from riskwatch.services.snapshots import DiffEvent, capture, diff, get_timeline
from riskwatch.services.alerts import record_alerts, get_alerts, mark_alert_read, dismiss_alert
from riskwatch.services.scheduler import (
    CheckDispatcher, add_to_watchlist, remove_from_watchlist, run_check, dispatch_due_checks,
)
from riskwatch.services.batch import create_job, run_batch_job, cancel_job, get_status, get_results
