"""In-memory store implementing every interface the monitoring engine consumes.

Used by the test suite and by ``run_monitor.py --demo``. Daily stat rows and
lead email events are kept as plain lists and aggregated on demand over
half-open ``[start, end)`` date ranges, the same way the Postgres store does.
"""

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from src.monitoring.models import (
    Campaign,
    EmailAccount,
    EventConfig,
    MetricSnapshot,
    ReplyActivity,
    TargetScope,
    TriggerEvent,
    Webhook,
)
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class DailyStat:
    entity_id: int | str
    stat_date: date
    sent: int = 0
    opened: int = 0
    replied: int = 0
    bounced: int = 0
    clicked: int = 0
    positive_replies: int = 0


@dataclass
class LeadEmailEvent:
    """One row of lead email history: an outbound send or an inbound reply."""

    campaign_id: str
    email_account_id: int | str
    sent_at: datetime
    is_reply: bool = False
    is_positive_reply: bool = False


@dataclass
class DeliveredWebhook:
    webhook_id: str
    event_name: str
    payload: dict
    delivered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _as_date(value) -> date:
    return value.date() if isinstance(value, datetime) else value


def _sum_stats(rows: list[DailyStat]) -> MetricSnapshot:
    snapshot = MetricSnapshot()
    for row in rows:
        snapshot.sent += row.sent
        snapshot.opened += row.opened
        snapshot.replied += row.replied
        snapshot.bounced += row.bounced
        snapshot.clicked += row.clicked
        snapshot.positive_replies += row.positive_replies
    return snapshot


class MemoryStore:
    """Dict-backed configs, entities, statistics, triggers and webhook delivery."""

    def __init__(self):
        self.configs: dict[str, EventConfig] = {}
        self.campaigns: dict[str, Campaign] = {}
        self.user_clients: dict[str, list[str]] = {}
        self.email_accounts: dict = {}
        self.webhooks: dict[str, Webhook] = {}
        self.campaign_stats: list[DailyStat] = []
        self.account_stats: list[DailyStat] = []
        self.lead_events: list[LeadEmailEvent] = []
        self.triggers: list[TriggerEvent] = []
        self.repairs: list[tuple[str, dict]] = []
        self.deliveries: list[DeliveredWebhook] = []
        self.failing_webhooks: set[str] = set()
        self._lock = threading.Lock()

    # --- Seeding ---

    def add_config(self, config: EventConfig) -> EventConfig:
        self.configs[config.id] = config
        return config

    def add_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.id] = campaign
        return campaign

    def add_email_account(self, account: EmailAccount) -> EmailAccount:
        self.email_accounts[account.id] = account
        return account

    def add_campaign_stat(self, campaign_id: str, stat_date: date, **counts):
        self.campaign_stats.append(DailyStat(campaign_id, stat_date, **counts))

    def add_account_stat(self, account_id, stat_date: date, **counts):
        self.account_stats.append(DailyStat(account_id, stat_date, **counts))

    def add_lead_event(self, event: LeadEmailEvent):
        self.lead_events.append(event)

    # --- Configs ---

    def get_active_configs(self) -> list[EventConfig]:
        return [c for c in self.configs.values() if c.is_active]

    def update_config_timestamps(self, config_id: str, checked_at=None, triggered_at=None):
        with self._lock:
            config = self.configs.get(config_id)
            if config is None:
                return
            if checked_at is not None:
                config.last_checked_at = checked_at
            if triggered_at is not None:
                config.last_triggered_at = triggered_at

    def repair_config_parameters(self, config_id: str, params: dict):
        with self._lock:
            config = self.configs.get(config_id)
            if config is None:
                raise KeyError(f"config {config_id} not found")
            config.config_parameters = dict(params)
            self.repairs.append((config_id, dict(params)))

    # --- Entities ---

    def get_campaign(self, campaign_id: str) -> Campaign | None:
        return self.campaigns.get(campaign_id)

    def get_campaigns_by_client(self, client_id: str) -> list[Campaign]:
        return [c for c in self.campaigns.values() if c.client_id == client_id]

    def get_user_client_ids(self, user_id: str) -> list[str] | None:
        return self.user_clients.get(user_id)

    def get_email_account(self, account_id) -> EmailAccount | None:
        return self.email_accounts.get(account_id)

    # --- Statistics ---

    def aggregate_campaign_stats(self, campaign_id: str, start: date, end: date) -> MetricSnapshot:
        return _sum_stats([
            r for r in self.campaign_stats
            if r.entity_id == campaign_id and start <= r.stat_date < end
        ])

    def aggregate_email_account_stats(self, account_id, start: date, end: date) -> MetricSnapshot:
        return _sum_stats([
            r for r in self.account_stats
            if r.entity_id == account_id and start <= r.stat_date < end
        ])

    def query_last_qualifying_reply(
        self, campaign_id: str, since: date, positive_only: bool, email_account_id=None
    ) -> ReplyActivity:
        events = [
            e for e in self.lead_events
            if e.campaign_id == campaign_id
            and (email_account_id is None or e.email_account_id == email_account_id)
        ]
        qualifying = [
            e for e in events
            if e.is_reply and (e.is_positive_reply or not positive_only)
        ]
        in_period = [e for e in events if _as_date(e.sent_at) >= since]

        activity = ReplyActivity(
            last_reply_at=max((e.sent_at for e in qualifying), default=None),
            sent_in_period=sum(1 for e in in_period if not e.is_reply),
            replies_in_period=sum(1 for e in in_period if e.is_reply),
            positive_replies_in_period=sum(
                1 for e in in_period if e.is_reply and e.is_positive_reply
            ),
        )
        if email_account_id is not None:
            account = self.email_accounts.get(email_account_id)
            activity.email_address = account.email if account else ""
        return activity

    # --- Trigger log ---

    def persist_trigger_event(self, record: TriggerEvent):
        with self._lock:
            self.triggers.append(record)

    def get_last_trigger(self, config_id: str, campaign_id: str | None = None) -> TriggerEvent | None:
        matches = [
            t for t in self.triggers
            if t.event_config_id == config_id
            and (campaign_id is None or t.campaign_id == campaign_id)
        ]
        return max(matches, key=lambda t: t.created_at, default=None)

    # --- Delivery ---

    def send_webhook(self, webhook_id: str, event_name: str, payload: dict) -> bool:
        """Record the delivery; webhooks listed in ``failing_webhooks`` report failure."""
        if webhook_id in self.failing_webhooks:
            logger.warning("Webhook %s configured to fail; %s not delivered.", webhook_id, event_name)
            return False
        with self._lock:
            self.deliveries.append(DeliveredWebhook(webhook_id, event_name, payload))
        return True

    def get_webhook(self, webhook_id: str) -> Webhook | None:
        return self.webhooks.get(webhook_id)


def build_demo_store(today: date) -> MemoryStore:
    """A small store where every rule type has something to report."""
    store = MemoryStore()
    store.webhooks["wh-demo"] = Webhook(id="wh-demo", url="https://example.invalid/hooks/demo")

    for account_id, email in ((1, "alice@acme.test"), (2, "bob@acme.test"), (3, "carol@globex.test")):
        store.add_email_account(EmailAccount(id=account_id, email=email))

    store.add_campaign(Campaign("c-acme-q3", "Acme Q3 Outreach", "client-acme", "Acme", [1, 2]))
    store.add_campaign(Campaign("c-globex", "Globex Launch", "client-globex", "Globex", [3]))
    store.user_clients["user-1"] = ["client-acme", "client-globex"]

    # Acme reply rate drops from 10% to 5%; Globex bounces climb to ~23%
    for offset in range(1, 15):
        day = today - timedelta(days=offset)
        current = offset <= 7
        store.add_campaign_stat("c-acme-q3", day, sent=40, replied=2 if current else 4)
        store.add_account_stat(1, day, sent=25, replied=0 if current else 3)
        store.add_account_stat(2, day, sent=15, replied=2 if current else 1)
        store.add_campaign_stat("c-globex", day, sent=30, bounced=7 if current else 1)
        store.add_account_stat(3, day, sent=30, bounced=7 if current else 1)

    last_reply = datetime.combine(today - timedelta(days=12), datetime.min.time(), tzinfo=timezone.utc)
    store.add_lead_event(LeadEmailEvent("c-globex", 3, last_reply, is_reply=True))
    store.add_lead_event(LeadEmailEvent("c-globex", 3, last_reply + timedelta(days=5)))

    store.add_config(EventConfig(
        id="cfg-reply", name="Reply rate drop", event_type="reply_rate_drop",
        target_scope=TargetScope(type="users", ids=["user-1"]), webhook_id="wh-demo",
        config_parameters={"thresholdPercent": 3, "monitoringPeriodDays": 7, "minimumEmailsSent": 100},
    ))
    # Corrupted threshold: decodes with the bounce default and gets repaired
    store.add_config(EventConfig(
        id="cfg-bounce", name="Bounce rate high", event_type="bounce_rate_high",
        target_scope=TargetScope(type="clients", ids=["client-globex"]), webhook_id="wh-demo",
        config_parameters={"thresholdPercent": {"ValueKind": 4}, "monitoringPeriodDays": 7},
    ))
    store.add_config(EventConfig(
        id="cfg-silence", name="No positive reply", event_type="no_positive_reply_for_x_days",
        target_scope=TargetScope(type="campaigns", ids=["c-acme-q3", "c-globex"]), webhook_id="wh-demo",
        config_parameters='{"daysSinceLastReply": {"Value": 7}}',
    ))
    return store
