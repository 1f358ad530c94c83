"""Domain errors raised by the service layer.

Routers translate these into HTTP responses; everything else propagates.
"""


class RiskWatchError(Exception):
    """Base class for all RiskWatch errors."""


class InvalidTarget(RiskWatchError):
    """The identifier is not a usable phone number or profile URL."""


class CollectorUnavailable(RiskWatchError):
    """An evidence collector timed out or errored."""

    def __init__(self, collector: str, reason: str = ""):
        self.collector = collector
        self.reason = reason
        super().__init__(f"{collector} unavailable: {reason}" if reason else f"{collector} unavailable")


class ItemScanFailed(RiskWatchError):
    """A single batch item could not be scored."""

    def __init__(self, item: str, reason: str):
        self.item = item
        self.reason = reason
        super().__init__(f"{item}: {reason}")


class DuplicateTarget(RiskWatchError):
    def __init__(self, target_key: str):
        self.target_key = target_key
        super().__init__(f"{target_key} is already in the watchlist")


class TargetNotFound(RiskWatchError):
    def __init__(self, target_id: int):
        self.target_id = target_id
        super().__init__(f"Watchlist entry {target_id} not found")


class JobNotFound(RiskWatchError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Batch job {job_id} not found")


class AlertNotFound(RiskWatchError):
    def __init__(self, alert_id: int):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")


class ConcurrentWriteConflict(RiskWatchError):
    """Another run holds the lease for this resource."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"{resource} is being updated by another run")


class BatchRejected(RiskWatchError):
    """The submitted batch cannot be accepted (empty or too large)."""
