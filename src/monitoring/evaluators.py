"""Rule evaluators, one per event type.

Rate evaluators (reply-rate drop, bounce rate high) judge one campaign at a
time against its current and previous window. No-reply evaluators judge the
whole scoped campaign set at once and produce a single bundled alert.

Evaluators only decide; delivery happens in the AlertDispatcher.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial
from typing import Callable
from datetime import date, datetime, timedelta, timezone

from src.monitoring.config_decoder import RateRuleParams, SilenceRuleParams
from src.monitoring.errors import AggregationError
from src.monitoring.impact_analyzer import ImpactAnalyzer
from src.monitoring.metric_windows import MetricWindowAggregator, windows_for
from src.monitoring.models import (
    Campaign,
    EmailAccountImpact,
    EventConfig,
    EventType,
    MetricSnapshot,
    MetricWindow,
    ReplyActivity,
)
from src.utils.business_days import business_days_since
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class RateAlert:
    """A fired reply-rate or bounce-rate rule for one campaign."""

    config: EventConfig
    event_type: EventType
    params: RateRuleParams
    campaign: Campaign
    current_window: MetricWindow
    previous_window: MetricWindow
    current: MetricSnapshot
    previous: MetricSnapshot
    minimum_emails_sent: int
    impacts: list[EmailAccountImpact] = field(default_factory=list)
    impact_loader: Callable[[], list[EmailAccountImpact]] | None = field(
        default=None, repr=False, compare=False
    )

    def load_impacts(self) -> list[EmailAccountImpact]:
        """Run the deferred per-account analysis once and keep the result."""
        if self.impact_loader is not None:
            self.impacts = self.impact_loader()
            self.impact_loader = None
        return self.impacts

    @property
    def current_rate(self) -> float:
        if self.event_type is EventType.BOUNCE_RATE_HIGH:
            return self.current.bounce_rate
        return self.current.reply_rate

    @property
    def previous_rate(self) -> float:
        if self.event_type is EventType.BOUNCE_RATE_HIGH:
            return self.previous.bounce_rate
        return self.previous.reply_rate


@dataclass
class AccountReplyStatus:
    email_account_id: int | str
    email_address: str
    last_reply_at: datetime | None
    days_since_last_reply: int
    sent_in_period: int
    replies_in_period: int
    positive_replies_in_period: int


@dataclass
class AffectedCampaign:
    campaign: Campaign
    last_reply_at: datetime | None
    days_since_last_reply: int
    sent_in_period: int
    replies_in_period: int
    positive_replies_in_period: int
    accounts: list[AccountReplyStatus] = field(default_factory=list)


@dataclass
class SilenceAlert:
    """Outcome of a no-reply rule over its whole campaign set.

    Fires (``fired`` is True) when at least one campaign is affected.
    """

    config: EventConfig
    event_type: EventType
    params: SilenceRuleParams
    check_date: date
    threshold_date: date
    affected: list[AffectedCampaign] = field(default_factory=list)
    failed_campaign_ids: list[str] = field(default_factory=list)

    @property
    def fired(self) -> bool:
        return bool(self.affected)

    @property
    def primary_campaign(self) -> Campaign | None:
        return self.affected[0].campaign if self.affected else None

    @property
    def window(self) -> MetricWindow:
        return MetricWindow(start=self.threshold_date, end=self.check_date)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


class RateRuleEvaluator(ABC):
    """Shared window/volume logic for the rate-based rules."""

    event_type: EventType

    def __init__(
        self,
        aggregator: MetricWindowAggregator,
        impact_analyzer: ImpactAnalyzer,
        default_minimum_emails_sent: int,
    ):
        self.aggregator = aggregator
        self.impact_analyzer = impact_analyzer
        self.default_minimum_emails_sent = default_minimum_emails_sent

    def minimum_volume(self, params: RateRuleParams) -> int:
        if params.minimum_emails_sent is None:
            return self.default_minimum_emails_sent
        return params.minimum_emails_sent

    @abstractmethod
    def condition(self, current_rate: float, previous_rate: float, threshold: float) -> bool:
        ...

    @abstractmethod
    def rates(self, current: MetricSnapshot, previous: MetricSnapshot) -> tuple[float, float]:
        ...

    def evaluate(
        self,
        config: EventConfig,
        params: RateRuleParams,
        campaign: Campaign,
        today: date | None = None,
    ) -> RateAlert | None:
        """Evaluate one campaign. Raises AggregationError if its stats cannot be read."""
        today = today or utc_today()
        minimum = self.minimum_volume(params)
        current_window, previous_window = windows_for(params.monitoring_period_days, today)
        current, previous = self.aggregator.campaign_windows(
            campaign.id, current_window, previous_window
        )

        if current.sent == 0:
            logger.debug("Campaign %s has no sends in the current window.", campaign.id)
            return None
        if current.sent < minimum:
            logger.info(
                "Campaign %s below minimum volume (%d < %d); skipping %s.",
                campaign.id, current.sent, minimum, self.event_type.value,
            )
            return None

        current_rate, previous_rate = self.rates(current, previous)
        if not self.condition(current_rate, previous_rate, params.threshold_percent):
            return None

        logger.warning(
            "%s fired for campaign %s (%s): current=%.2f%% previous=%.2f%% threshold=%.2f%%",
            self.event_type.value, campaign.id, campaign.name,
            current_rate, previous_rate, params.threshold_percent,
        )
        # analyzed by the dispatcher once the alert clears suppression
        impacts = partial(
            self.impact_analyzer.analyze,
            self.event_type, campaign, current_window, current, minimum,
        )
        return RateAlert(
            config=config,
            event_type=self.event_type,
            params=params,
            campaign=campaign,
            current_window=current_window,
            previous_window=previous_window,
            current=current,
            previous=previous,
            minimum_emails_sent=minimum,
            impact_loader=impacts,
        )


class ReplyRateDropEvaluator(RateRuleEvaluator):
    event_type = EventType.REPLY_RATE_DROP

    def rates(self, current, previous):
        return current.reply_rate, previous.reply_rate

    def condition(self, current_rate, previous_rate, threshold):
        return (
            previous_rate > 0
            and current_rate < previous_rate
            and (previous_rate - current_rate) >= threshold
        )


class BounceRateHighEvaluator(RateRuleEvaluator):
    event_type = EventType.BOUNCE_RATE_HIGH

    def rates(self, current, previous):
        return current.bounce_rate, previous.bounce_rate

    def condition(self, current_rate, previous_rate, threshold):
        # Previous window is informational only
        return current_rate >= threshold


class NoReplyEvaluator:
    """No reply (or no positive reply) in the last N days, across a campaign set."""

    def __init__(self, aggregator: MetricWindowAggregator, positive_only: bool):
        self.aggregator = aggregator
        self.positive_only = positive_only
        self.event_type = (
            EventType.NO_POSITIVE_REPLY_FOR_X_DAYS if positive_only
            else EventType.NO_REPLY_FOR_X_DAYS
        )

    def evaluate(
        self,
        config: EventConfig,
        params: SilenceRuleParams,
        campaigns: list[Campaign],
        today: date | None = None,
    ) -> SilenceAlert:
        today = today or utc_today()
        threshold_date = today - timedelta(days=params.days_since_last_reply)
        result = SilenceAlert(
            config=config,
            event_type=self.event_type,
            params=params,
            check_date=today,
            threshold_date=threshold_date,
        )

        for campaign in campaigns:
            try:
                affected = self._check_campaign(campaign, threshold_date, today)
            except AggregationError as e:
                logger.error("Skipping campaign %s for config %s: %s", campaign.id, config.id, e)
                result.failed_campaign_ids.append(campaign.id)
                continue
            if affected is not None:
                result.affected.append(affected)

        if result.fired:
            logger.warning(
                "%s fired for config %s: %d of %d campaigns silent since %s.",
                self.event_type.value, config.id, len(result.affected),
                len(campaigns), threshold_date.isoformat(),
            )
        return result

    def _is_healthy(self, activity: ReplyActivity, threshold_date: date) -> bool:
        return (
            activity.last_reply_at is not None
            and _as_date(activity.last_reply_at) >= threshold_date
        )

    def _check_campaign(
        self, campaign: Campaign, threshold_date: date, today: date
    ) -> AffectedCampaign | None:
        activity = self.aggregator.reply_activity(campaign.id, threshold_date, self.positive_only)
        if self._is_healthy(activity, threshold_date):
            return None

        return AffectedCampaign(
            campaign=campaign,
            last_reply_at=activity.last_reply_at,
            days_since_last_reply=business_days_since(activity.last_reply_at, today),
            sent_in_period=activity.sent_in_period,
            replies_in_period=activity.replies_in_period,
            positive_replies_in_period=activity.positive_replies_in_period,
            accounts=self._account_breakdown(campaign, threshold_date, today),
        )

    def _account_breakdown(
        self, campaign: Campaign, threshold_date: date, today: date
    ) -> list[AccountReplyStatus]:
        accounts = []
        for account_id in campaign.email_account_ids:
            try:
                activity = self.aggregator.reply_activity(
                    campaign.id, threshold_date, self.positive_only, account_id
                )
            except AggregationError as e:
                logger.error(
                    "Skipping email account %s of campaign %s: %s", account_id, campaign.id, e
                )
                continue
            accounts.append(
                AccountReplyStatus(
                    email_account_id=account_id,
                    email_address=activity.email_address or f"ID:{account_id}",
                    last_reply_at=activity.last_reply_at,
                    days_since_last_reply=business_days_since(activity.last_reply_at, today),
                    sent_in_period=activity.sent_in_period,
                    replies_in_period=activity.replies_in_period,
                    positive_replies_in_period=activity.positive_replies_in_period,
                )
            )
        return accounts
