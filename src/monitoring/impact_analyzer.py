"""Ranks the email accounts behind a fired rate rule by severity.

Reply-rate rules weigh the account's own reply rate against its share of the
campaign's send volume. Bounce-rate rules use fixed bounce-rate bands.
"""

from src.monitoring.errors import AggregationError
from src.monitoring.metric_windows import MetricWindowAggregator
from src.monitoring.models import (
    Campaign,
    EmailAccountImpact,
    EventType,
    ImpactLevel,
    MetricSnapshot,
    MetricWindow,
)
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


def classify_reply_impact(reply_rate: float, share_percent: float) -> ImpactLevel:
    if (reply_rate < 2.0 and share_percent > 20.0) or reply_rate < 1.0:
        return ImpactLevel.HIGH
    if reply_rate < 3.0 or (share_percent > 10.0 and reply_rate < 5.0):
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


def classify_bounce_impact(bounce_rate: float) -> ImpactLevel:
    if bounce_rate >= 10.0:
        return ImpactLevel.HIGH
    if bounce_rate >= 5.0:
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


def rank_impacts(impacts: list[EmailAccountImpact]) -> list[EmailAccountImpact]:
    """Sort High -> Medium -> Low, then by descending send volume."""
    return sorted(impacts, key=lambda i: (i.impact_level.rank, -i.sent))


class ImpactAnalyzer:
    """Builds the per-account breakdown included in rate-rule alerts.

    ``entities`` must provide ``get_email_account(id)``.
    """

    def __init__(self, aggregator: MetricWindowAggregator, entities):
        self.aggregator = aggregator
        self.entities = entities

    def analyze(
        self,
        event_type: EventType,
        campaign: Campaign,
        window: MetricWindow,
        campaign_current: MetricSnapshot,
        minimum_emails_sent: int,
    ) -> list[EmailAccountImpact]:
        impacts = []
        for account_id in campaign.email_account_ids:
            impact = self._account_impact(
                event_type, account_id, window, campaign_current, minimum_emails_sent
            )
            if impact is not None:
                impacts.append(impact)

        ranked = rank_impacts(impacts)
        high = sum(1 for i in ranked if i.impact_level is ImpactLevel.HIGH)
        logger.info(
            "Impact analysis for campaign %s: %d/%d accounts qualified, %d high.",
            campaign.id, len(ranked), len(campaign.email_account_ids), high,
        )
        return ranked

    def _account_impact(
        self, event_type, account_id, window, campaign_current, minimum_emails_sent
    ) -> EmailAccountImpact | None:
        try:
            stats = self.aggregator.account_snapshot(account_id, window)
        except AggregationError as e:
            logger.error("Skipping email account %s in impact analysis: %s", account_id, e)
            return None

        if stats.sent == 0 or stats.sent < minimum_emails_sent:
            return None

        if event_type is EventType.BOUNCE_RATE_HIGH:
            rate = stats.bounce_rate
            count = stats.bounced
            level = classify_bounce_impact(rate)
        else:
            rate = stats.reply_rate
            count = stats.replied
            share = (stats.sent / campaign_current.sent * 100) if campaign_current.sent else 0.0
            level = classify_reply_impact(rate, share)

        return EmailAccountImpact(
            email_account_id=account_id,
            email_address=self._address(account_id),
            rate=rate,
            sent=stats.sent,
            count=count,
            impact_level=level,
        )

    def _address(self, account_id) -> str:
        try:
            account = self.entities.get_email_account(account_id)
        except Exception as e:
            logger.warning("Email account lookup failed for %s: %s", account_id, e)
            account = None
        if account is None or not account.email:
            return f"ID:{account_id}"
        return account.email
