"""Decodes untyped rule parameters into typed, per-event-type variants.

Parameters arrive as a JSON object (or its string form) whose values may have
been through more than one serialization pass. Each value is accepted as:

  - a bare primitive: 5, 5.0 or "5"
  - a value holder one level deep: {"Value": 5}
  - the known-corrupted serialized JSON element: {"ValueKind": 4, ...}

The corrupted shape is healed with an event-type default and a repair is
scheduled on the ConfigRepairQueue. Anything else raises DecodeError.
"""

import json
import math
from dataclasses import dataclass, field

from src.monitoring.errors import DecodeError
from src.monitoring.models import EventConfig, EventType
from src.monitoring.repair_queue import ConfigRepairQueue, RepairRequest
from src.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_MINIMUM_EMAILS_SENT = 100

# Defaults substituted for corrupted values, and written back by the repair
EVENT_DEFAULTS = {
    EventType.REPLY_RATE_DROP: {
        "thresholdPercent": 10.0,
        "monitoringPeriodDays": 7,
        "minimumEmailsSent": DEFAULT_MINIMUM_EMAILS_SENT,
    },
    EventType.BOUNCE_RATE_HIGH: {
        "thresholdPercent": 20.0,
        "monitoringPeriodDays": 14,
        "minimumEmailsSent": DEFAULT_MINIMUM_EMAILS_SENT,
    },
    EventType.NO_POSITIVE_REPLY_FOR_X_DAYS: {"daysSinceLastReply": 7},
    EventType.NO_REPLY_FOR_X_DAYS: {"daysSinceLastReply": 7},
}

_CORRUPTED = object()


@dataclass(frozen=True)
class RateRuleParams:
    threshold_percent: float
    monitoring_period_days: int
    minimum_emails_sent: int
    cooldown_hours: float | None = None
    repaired_keys: tuple[str, ...] = field(default_factory=tuple)

    def to_parameters(self) -> dict:
        params = {
            "thresholdPercent": self.threshold_percent,
            "monitoringPeriodDays": self.monitoring_period_days,
            "minimumEmailsSent": self.minimum_emails_sent,
        }
        if self.cooldown_hours is not None:
            params["cooldownHours"] = self.cooldown_hours
        return params


@dataclass(frozen=True)
class SilenceRuleParams:
    days_since_last_reply: int
    cooldown_hours: float | None = None
    repaired_keys: tuple[str, ...] = field(default_factory=tuple)

    def to_parameters(self) -> dict:
        params = {"daysSinceLastReply": self.days_since_last_reply}
        if self.cooldown_hours is not None:
            params["cooldownHours"] = self.cooldown_hours
        return params


def _unwrap(key: str, raw):
    """Reduce a raw value to a primitive, or return _CORRUPTED."""
    if isinstance(raw, dict):
        if "Value" in raw:
            inner = raw["Value"]
            if isinstance(inner, dict) or isinstance(inner, list):
                raise DecodeError(f"{key}: value holder wraps a nested structure: {raw!r}")
            return inner
        if "ValueKind" in raw:
            return _CORRUPTED
        raise DecodeError(f"{key}: unrecognized object shape: {raw!r}")
    return raw


def _to_float(key: str, value) -> float:
    if isinstance(value, bool) or value is None:
        raise DecodeError(f"{key}: expected a number, got {value!r}")
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            raise DecodeError(f"{key}: not a number: {value!r}") from None
    else:
        raise DecodeError(f"{key}: unsupported type {type(value).__name__}")
    if not math.isfinite(result):
        raise DecodeError(f"{key}: not a finite number: {value!r}")
    return result


def _to_int(key: str, value) -> int:
    number = _to_float(key, value)
    if not number.is_integer():
        raise DecodeError(f"{key}: expected a whole number, got {value!r}")
    return int(number)


def parse_parameters(raw) -> dict:
    """Normalize the stored parameter blob to a dict."""
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise DecodeError(f"parameters are not valid JSON: {e}") from None
    if not isinstance(raw, dict):
        raise DecodeError(f"parameters must be an object, got {type(raw).__name__}")
    return raw


class ConfigDecoder:
    """Decode EventConfig parameters, scheduling repairs for corrupted values."""

    def __init__(
        self,
        repair_queue: ConfigRepairQueue | None = None,
        default_minimum_emails_sent: int = DEFAULT_MINIMUM_EMAILS_SENT,
    ):
        self.repair_queue = repair_queue
        self.default_minimum_emails_sent = default_minimum_emails_sent

    def decode(self, config: EventConfig) -> RateRuleParams | SilenceRuleParams:
        event_type = config.parsed_event_type
        if event_type is None:
            raise DecodeError(f"unknown event type {config.event_type!r}")

        params = parse_parameters(config.config_parameters)
        defaults = dict(EVENT_DEFAULTS[event_type])
        if event_type.is_rate_rule:
            defaults["minimumEmailsSent"] = self.default_minimum_emails_sent

        repaired: list[str] = []

        def read(key: str, convert, required: bool = True, default=None):
            if key not in params:
                if required:
                    raise DecodeError(f"missing required parameter {key}")
                return default
            value = _unwrap(key, params[key])
            if value is None and not required:
                return default
            if value is _CORRUPTED:
                logger.warning(
                    "Corrupted %s in config %s; using default %s.",
                    key, config.id, defaults[key],
                )
                repaired.append(key)
                return defaults[key]
            return convert(key, value)

        cooldown = None
        if "cooldownHours" in params:
            value = _unwrap("cooldownHours", params["cooldownHours"])
            if value is not None and value is not _CORRUPTED:
                cooldown = _to_float("cooldownHours", value)
        if cooldown is not None and cooldown < 0:
            raise DecodeError(f"cooldownHours must be >= 0, got {cooldown}")

        if event_type.is_rate_rule:
            threshold = read("thresholdPercent", _to_float)
            period = read("monitoringPeriodDays", _to_int)
            minimum = read(
                "minimumEmailsSent", _to_int, required=False,
                default=self.default_minimum_emails_sent,
            )
            if threshold < 0:
                raise DecodeError(f"thresholdPercent must be >= 0, got {threshold}")
            if period < 1:
                raise DecodeError(f"monitoringPeriodDays must be >= 1, got {period}")
            if minimum < 0:
                raise DecodeError(f"minimumEmailsSent must be >= 0, got {minimum}")
            decoded = RateRuleParams(
                threshold_percent=threshold,
                monitoring_period_days=period,
                minimum_emails_sent=minimum,
                cooldown_hours=cooldown,
                repaired_keys=tuple(repaired),
            )
        else:
            days = read("daysSinceLastReply", _to_int)
            if days < 1:
                raise DecodeError(f"daysSinceLastReply must be >= 1, got {days}")
            decoded = SilenceRuleParams(
                days_since_last_reply=days,
                cooldown_hours=cooldown,
                repaired_keys=tuple(repaired),
            )

        if repaired:
            self._schedule_repair(config, decoded)
        return decoded

    def _schedule_repair(self, config: EventConfig, decoded):
        if self.repair_queue is None:
            logger.warning("No repair queue configured; config %s stays corrupted.", config.id)
            return
        try:
            self.repair_queue.submit(
                RepairRequest(
                    config_id=config.id,
                    event_type=config.event_type,
                    parameters=decoded.to_parameters(),
                )
            )
        except Exception as e:
            logger.error("Could not schedule repair for config %s: %s", config.id, e)
