"""Alert dispatch: payload building, pre-dispatch gate, suppression and trigger log.

A TriggerEvent is written if and only if the delivery call succeeded.
"""

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from src.monitoring.errors import DispatchError, InvariantViolation
from src.monitoring.evaluators import RateAlert, SilenceAlert
from src.monitoring.models import EventType, MetricWindow, TriggerEvent
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SUPPRESSED = "suppressed"
    DRY_RUN = "dry_run"


def _iso(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = _as_utc(value)
    return value.isoformat()


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class SuppressionPolicy:
    """When a rule that fired before may fire again.

    once_per_window: never fire twice for the same (config, campaign) and the
        same evaluation window.
    cooldown_hours: minimum gap after the last trigger, 0 disables it.
    """

    once_per_window: bool = True
    cooldown_hours: float = 0.0

    @classmethod
    def from_config(cls, cfg) -> "SuppressionPolicy":
        return cls(
            once_per_window=cfg.alert_once_per_window,
            cooldown_hours=cfg.alert_cooldown_hours,
        )

    def suppression_reason(
        self,
        last: TriggerEvent | None,
        window: MetricWindow,
        now: datetime,
        cooldown_hours: float | None = None,
    ) -> str | None:
        """Return why this alert is suppressed, or None if it may fire."""
        if last is None:
            return None
        if self.once_per_window and last.window == window:
            return f"already fired for window {window.start}..{window.end}"
        cooldown = self.cooldown_hours if cooldown_hours is None else cooldown_hours
        if cooldown > 0:
            next_allowed = _as_utc(last.created_at) + timedelta(hours=cooldown)
            if now < next_allowed:
                return f"cooldown of {cooldown:g}h active until {next_allowed.isoformat()}"
        return None


def build_rate_payload(alert: RateAlert, now: datetime) -> dict:
    """Wire payload for reply-rate-drop and bounce-rate-high alerts."""
    campaign = alert.campaign
    current_rate = alert.current_rate
    previous_rate = alert.previous_rate

    if alert.event_type is EventType.BOUNCE_RATE_HIGH:
        metrics = {
            "currentBounceRate": round(current_rate, 2),
            "previousBounceRate": round(previous_rate, 2),
            "bounceRateIncrease": round(current_rate - previous_rate, 2),
            "totalSent": alert.current.sent,
            "totalBounced": alert.current.bounced,
        }
        rate_key, count_key = "bounceRate", "bounced"
    else:
        metrics = {
            "currentReplyRate": round(current_rate, 2),
            "previousReplyRate": round(previous_rate, 2),
            "replyRateDrop": round(previous_rate - current_rate, 2),
            "totalSent": alert.current.sent,
            "totalReplied": alert.current.replied,
        }
        rate_key, count_key = "replyRate", "replied"

    return {
        "eventType": alert.event_type.value,
        "timestamp": _iso(now),
        "eventConfigId": alert.config.id,
        "eventConfigName": alert.config.name,
        "campaign": {
            "id": campaign.id,
            "name": campaign.name,
            "clientId": campaign.client_id or "",
            "clientName": campaign.client_name or "",
            **metrics,
            "currentOpenRate": round(alert.current.open_rate, 2),
            "currentPositiveReplyRate": round(alert.current.positive_reply_rate, 2),
        },
        "affectedEmailAccounts": [
            {
                "emailAccountId": impact.email_account_id,
                "emailAddress": impact.email_address,
                rate_key: round(impact.rate, 2),
                "sent": impact.sent,
                count_key: impact.count,
                "impactLevel": impact.impact_level.value,
            }
            for impact in alert.load_impacts()
        ],
        "threshold": {
            "thresholdPercent": alert.params.threshold_percent,
            "monitoringPeriodDays": alert.params.monitoring_period_days,
            "minimumEmailsSent": alert.minimum_emails_sent,
            "periodStart": _iso(alert.current_window.start),
            "periodEnd": _iso(alert.current_window.end),
        },
    }


def build_silence_payload(alert: SilenceAlert, now: datetime) -> dict:
    """Wire payload for the bundled no-reply alerts."""
    positive = alert.event_type is EventType.NO_POSITIVE_REPLY_FOR_X_DAYS
    last_key = "lastPositiveReplyDate" if positive else "lastReplyDate"
    days_key = "daysSinceLastPositiveReply" if positive else "daysSinceLastReply"

    campaigns = []
    for affected in alert.affected:
        entry = {
            "id": affected.campaign.id,
            "name": affected.campaign.name,
            "clientId": affected.campaign.client_id or "",
            "clientName": affected.campaign.client_name or "",
            last_key: _iso(affected.last_reply_at),
            days_key: affected.days_since_last_reply,
            "totalSentInPeriod": affected.sent_in_period,
            "totalRepliesInPeriod": affected.replies_in_period,
        }
        if positive:
            entry["positiveRepliesInPeriod"] = affected.positive_replies_in_period

        accounts = []
        for account in affected.accounts:
            item = {
                "emailAccountId": account.email_account_id,
                "emailAddress": account.email_address,
                last_key: _iso(account.last_reply_at),
                days_key: account.days_since_last_reply,
                "sentInPeriod": account.sent_in_period,
                "repliesInPeriod": account.replies_in_period,
            }
            if positive:
                item["positiveRepliesInPeriod"] = account.positive_replies_in_period
            accounts.append(item)
        entry["emailAccounts"] = accounts
        campaigns.append(entry)

    return {
        "eventType": alert.event_type.value,
        "timestamp": _iso(now),
        "eventConfigId": alert.config.id,
        "eventConfigName": alert.config.name,
        "affectedCampaigns": campaigns,
        "threshold": {
            "daysSinceLastReply": alert.params.days_since_last_reply,
            "checkDate": _iso(alert.check_date),
            "thresholdDate": _iso(alert.threshold_date),
        },
    }


class AlertDispatcher:
    """Delivers fired alerts and records them.

    ``delivery`` provides ``send_webhook(webhook_id, event_name, payload) -> bool``.
    ``store`` provides ``persist_trigger_event``, ``get_last_trigger`` and
    ``update_config_timestamps``.
    """

    def __init__(
        self,
        delivery,
        store,
        policy: SuppressionPolicy | None = None,
        clock=None,
        dry_run: bool = False,
    ):
        self.delivery = delivery
        self.store = store
        self.policy = policy or SuppressionPolicy()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.dry_run = dry_run
        self._write_lock = threading.Lock()

    def dispatch_rate(self, alert: RateAlert) -> DispatchOutcome:
        self._check_volume_gate(alert)
        now = self.clock()
        return self._deliver(
            config=alert.config,
            event_type=alert.event_type,
            campaign=alert.campaign,
            window=alert.current_window,
            build_payload=lambda: build_rate_payload(alert, now),
            cooldown_hours=alert.params.cooldown_hours,
            last=self.store.get_last_trigger(alert.config.id, alert.campaign.id),
            now=now,
        )

    def dispatch_silence(self, alert: SilenceAlert) -> DispatchOutcome:
        if not alert.fired:
            raise InvariantViolation(f"config {alert.config.id}: no affected campaigns to dispatch")
        now = self.clock()
        return self._deliver(
            config=alert.config,
            event_type=alert.event_type,
            campaign=alert.primary_campaign,
            window=alert.window,
            build_payload=lambda: build_silence_payload(alert, now),
            cooldown_hours=alert.params.cooldown_hours,
            last=self.store.get_last_trigger(alert.config.id),
            now=now,
        )

    @staticmethod
    def _check_volume_gate(alert: RateAlert):
        required = max(alert.minimum_emails_sent, alert.params.minimum_emails_sent or 0)
        if alert.current.sent <= 0 or alert.current.sent < required:
            raise InvariantViolation(
                f"config {alert.config.id} campaign {alert.campaign.id}: "
                f"sent={alert.current.sent} below minimum {required} at dispatch"
            )

    def _deliver(
        self, config, event_type, campaign, window, build_payload, cooldown_hours, last, now
    ) -> DispatchOutcome:
        reason = self.policy.suppression_reason(last, window, now, cooldown_hours)
        if reason:
            logger.info(
                "Suppressed %s for config %s campaign %s: %s",
                event_type.value, config.id, campaign.id, reason,
            )
            return DispatchOutcome.SUPPRESSED

        payload = build_payload()
        event_name = event_type.delivery_event
        if self.dry_run:
            logger.info(
                "DRY RUN: would send %s to webhook %s: %s",
                event_name, config.webhook_id, json.dumps(payload, default=str),
            )
            return DispatchOutcome.DRY_RUN

        try:
            delivered = self.delivery.send_webhook(config.webhook_id, event_name, payload)
        except Exception as e:
            raise DispatchError(f"{event_name} to webhook {config.webhook_id} failed: {e}") from e
        if not delivered:
            raise DispatchError(f"{event_name} to webhook {config.webhook_id} was not delivered")

        record = TriggerEvent(
            event_config_id=config.id,
            webhook_id=config.webhook_id,
            campaign_id=campaign.id,
            campaign_name=campaign.name,
            payload=json.dumps(payload, default=str),
            window_start=window.start,
            window_end=window.end,
            created_at=now,
        )
        with self._write_lock:
            self.store.persist_trigger_event(record)
            self.store.update_config_timestamps(config.id, triggered_at=now)

        logger.info(
            "Delivered %s for config %s (campaign %s) to webhook %s.",
            event_name, config.id, campaign.id, config.webhook_id,
        )
        return DispatchOutcome.SENT
