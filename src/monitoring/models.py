"""Data model for campaign alert rules, metric snapshots and trigger logs."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum


class EventType(str, Enum):
    """Rule types, valued by the string persisted on the config row."""

    REPLY_RATE_DROP = "reply_rate_drop"
    BOUNCE_RATE_HIGH = "bounce_rate_high"
    NO_POSITIVE_REPLY_FOR_X_DAYS = "no_positive_reply_for_x_days"
    NO_REPLY_FOR_X_DAYS = "no_reply_for_x_days"

    @property
    def delivery_event(self) -> str:
        """Event name sent with the webhook."""
        return _DELIVERY_EVENTS[self]

    @property
    def is_rate_rule(self) -> bool:
        return self in (EventType.REPLY_RATE_DROP, EventType.BOUNCE_RATE_HIGH)

    @classmethod
    def parse(cls, value) -> "EventType | None":
        """Return the matching EventType, or None for unknown strings."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


_DELIVERY_EVENTS = {
    EventType.REPLY_RATE_DROP: "campaign.reply_rate_drop",
    EventType.BOUNCE_RATE_HIGH: "campaign.bounce_rate_high",
    EventType.NO_POSITIVE_REPLY_FOR_X_DAYS: "campaign.no_positive_reply",
    EventType.NO_REPLY_FOR_X_DAYS: "campaign.no_reply",
}


class ScopeType(str, Enum):
    CAMPAIGNS = "campaigns"
    CLIENTS = "clients"
    USERS = "users"


class ImpactLevel(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        return {"High": 0, "Medium": 1, "Low": 2}[self.value]


@dataclass
class TargetScope:
    """Which campaigns a rule watches, described via campaigns, clients or users."""

    type: str = ""
    ids: list[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw) -> "TargetScope":
        """Build from a mapping or a JSON string; malformed input yields an empty scope."""
        if isinstance(raw, TargetScope):
            return raw
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError:
                raw = {}
        if not isinstance(raw, dict):
            return cls()
        scope_type = raw.get("type") or raw.get("Type") or ""
        ids = raw.get("ids") or raw.get("Ids") or []
        return cls(type=str(scope_type), ids=[str(i) for i in ids])

    @property
    def scope_type(self) -> ScopeType | None:
        try:
            return ScopeType(self.type.strip().lower())
        except ValueError:
            return None


@dataclass
class EventConfig:
    """A persisted monitoring rule."""

    id: str
    name: str
    event_type: str
    target_scope: TargetScope = field(default_factory=TargetScope)
    config_parameters: dict | str = field(default_factory=dict)
    webhook_id: str = ""
    description: str = ""
    is_active: bool = True
    last_checked_at: datetime | None = None
    last_triggered_at: datetime | None = None

    @property
    def parsed_event_type(self) -> EventType | None:
        return EventType.parse(self.event_type)


@dataclass
class Campaign:
    id: str
    name: str
    client_id: str = ""
    client_name: str = ""
    email_account_ids: list = field(default_factory=list)


@dataclass
class EmailAccount:
    id: int | str
    email: str


@dataclass
class Webhook:
    id: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    is_active: bool = True
    timeout_seconds: int = 30


@dataclass(frozen=True)
class MetricWindow:
    """Half-open date range [start, end)."""

    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def previous(self) -> "MetricWindow":
        """The equal-length window immediately before this one."""
        return MetricWindow(start=self.start - timedelta(days=self.days), end=self.start)


@dataclass
class MetricSnapshot:
    """Aggregated email counts for one entity over one window."""

    sent: int = 0
    opened: int = 0
    replied: int = 0
    bounced: int = 0
    clicked: int = 0
    positive_replies: int = 0

    @staticmethod
    def _rate(count: int, sent: int) -> float:
        return (count / sent * 100) if sent else 0.0

    @property
    def reply_rate(self) -> float:
        return self._rate(self.replied, self.sent)

    @property
    def bounce_rate(self) -> float:
        return self._rate(self.bounced, self.sent)

    @property
    def open_rate(self) -> float:
        return self._rate(self.opened, self.sent)

    @property
    def positive_reply_rate(self) -> float:
        return self._rate(self.positive_replies, self.sent)


@dataclass
class ReplyActivity:
    """Reply-event summary for a campaign (or one of its accounts) since a date."""

    last_reply_at: datetime | None = None
    sent_in_period: int = 0
    replies_in_period: int = 0
    positive_replies_in_period: int = 0
    email_address: str = ""


@dataclass
class EmailAccountImpact:
    email_account_id: int | str
    email_address: str
    rate: float
    sent: int
    count: int
    impact_level: ImpactLevel


@dataclass
class TriggerEvent:
    """Append-only record that an alert was delivered."""

    event_config_id: str
    webhook_id: str
    campaign_id: str
    campaign_name: str
    payload: str
    window_start: date | None = None
    window_end: date | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def window(self) -> MetricWindow | None:
        if self.window_start is None or self.window_end is None:
            return None
        return MetricWindow(start=self.window_start, end=self.window_end)
