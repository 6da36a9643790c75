"""Rolling-window metric fetches with bounded timeouts.

All reads from the statistics source during a cycle go through
MetricWindowAggregator, so one slow query cannot stall the cycle.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import date, timedelta

from src.monitoring.errors import AggregationError
from src.monitoring.models import MetricSnapshot, MetricWindow, ReplyActivity
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


def windows_for(period_days: int, today: date) -> tuple[MetricWindow, MetricWindow]:
    """Return (current, previous) windows for a monitoring period ending today.

    current  = [today - period, today)
    previous = [today - 2*period, today - period)
    """
    if period_days < 1:
        raise ValueError(f"period_days must be >= 1, got {period_days}")
    current = MetricWindow(start=today - timedelta(days=period_days), end=today)
    return current, current.previous()


class MetricWindowAggregator:
    """Bounded-time access to campaign, account and reply-event aggregates.

    ``stats`` must provide ``aggregate_campaign_stats``,
    ``aggregate_email_account_stats`` and ``query_last_qualifying_reply``.
    """

    def __init__(self, stats, timeout_seconds: float = 30.0, max_workers: int = 4):
        self.stats = stats
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="metric-query"
        )

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _call(self, label: str, func, *args):
        future = self._executor.submit(func, *args)
        try:
            result = future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            logger.warning("%s exceeded %.1fs; abandoning query.", label, self.timeout_seconds)
            raise AggregationError(
                f"{label} timed out after {self.timeout_seconds:.0f}s"
            ) from None
        except Exception as e:
            raise AggregationError(f"{label} failed: {e}") from e
        return result

    def campaign_snapshot(self, campaign_id: str, window: MetricWindow) -> MetricSnapshot:
        snapshot = self._call(
            f"campaign stats {campaign_id}",
            self.stats.aggregate_campaign_stats, campaign_id, window.start, window.end,
        )
        return snapshot or MetricSnapshot()

    def account_snapshot(self, account_id, window: MetricWindow) -> MetricSnapshot:
        snapshot = self._call(
            f"email account stats {account_id}",
            self.stats.aggregate_email_account_stats, account_id, window.start, window.end,
        )
        return snapshot or MetricSnapshot()

    def campaign_windows(
        self, campaign_id: str, current: MetricWindow, previous: MetricWindow
    ) -> tuple[MetricSnapshot, MetricSnapshot]:
        """Fetch the current and previous snapshots for one campaign."""
        return (
            self.campaign_snapshot(campaign_id, current),
            self.campaign_snapshot(campaign_id, previous),
        )

    def reply_activity(
        self, campaign_id: str, since: date, positive_only: bool, email_account_id=None
    ) -> ReplyActivity:
        target = campaign_id if email_account_id is None else f"{campaign_id}/{email_account_id}"
        activity = self._call(
            f"reply activity {target}",
            self.stats.query_last_qualifying_reply,
            campaign_id, since, positive_only, email_account_id,
        )
        return activity or ReplyActivity()
