"""PostgreSQL store for the dashboard schema.

Implements the same interface as MemoryStore against:

  webhook_event_configs, webhook_event_triggers, webhooks,
  campaigns, clients, users, email_accounts,
  campaign_daily_stat_entries, email_account_daily_stat_entries,
  lead_email_history

Every call opens its own short-lived connection, so the store is safe to use
from the aggregator's worker threads. ``statement_timeout`` bounds each query
on the server side as well.
"""

import json
from contextlib import contextmanager
from datetime import date

import psycopg2
from psycopg2.extras import RealDictCursor

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
from src.utils.config import get_config
from src.utils.logger import setup_logger

logger = setup_logger(__name__)

_CAMPAIGN_SELECT = """
    SELECT c.id, c.name, c.client_id, COALESCE(cl.name, '') AS client_name, c.email_ids
    FROM campaigns c
    LEFT JOIN clients cl ON cl.id = c.client_id
"""

_TRIGGER_COLUMNS = """
    id, event_config_id, webhook_id, campaign_id, campaign_name,
    trigger_data, window_start, window_end, created_at
"""

_STAT_SUMS = """
    COALESCE(SUM(sent), 0) AS sent,
    COALESCE(SUM(opened), 0) AS opened,
    COALESCE(SUM(replied), 0) AS replied,
    COALESCE(SUM(bounced), 0) AS bounced
"""

SCHEMA_MIGRATIONS = [
    "ALTER TABLE webhook_event_triggers ADD COLUMN IF NOT EXISTS window_start DATE",
    "ALTER TABLE webhook_event_triggers ADD COLUMN IF NOT EXISTS window_end DATE",
    """CREATE INDEX IF NOT EXISTS ix_webhook_event_triggers_config_created
       ON webhook_event_triggers (event_config_id, campaign_id, created_at DESC)""",
]


def _json_value(raw, default):
    if raw is None:
        return default
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw.strip() else default
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed JSON column value: %r", raw[:200])
            return default
    return raw


def _row_to_config(row: dict) -> EventConfig:
    return EventConfig(
        id=str(row["id"]),
        name=row.get("name") or "",
        description=row.get("description") or "",
        event_type=row.get("event_type") or "",
        target_scope=TargetScope.from_raw(_json_value(row.get("target_scope"), {})),
        # Left raw: the decoder owns parsing and corruption handling
        config_parameters=row.get("config_parameters") or {},
        webhook_id=str(row.get("webhook_id") or ""),
        is_active=bool(row.get("is_active", True)),
        last_checked_at=row.get("last_checked_at"),
        last_triggered_at=row.get("last_triggered_at"),
    )


def _row_to_campaign(row: dict) -> Campaign:
    return Campaign(
        id=str(row["id"]),
        name=row.get("name") or "",
        client_id=str(row.get("client_id") or ""),
        client_name=row.get("client_name") or "",
        email_account_ids=list(_json_value(row.get("email_ids"), [])),
    )


def _row_to_snapshot(row: dict | None) -> MetricSnapshot:
    if not row:
        return MetricSnapshot()
    return MetricSnapshot(
        sent=int(row.get("sent") or 0),
        opened=int(row.get("opened") or 0),
        replied=int(row.get("replied") or 0),
        bounced=int(row.get("bounced") or 0),
        clicked=int(row.get("clicked") or 0),
        positive_replies=int(row.get("positive_replies") or 0),
    )


def _row_to_trigger(row: dict) -> TriggerEvent:
    payload = row.get("trigger_data")
    if not isinstance(payload, str):
        payload = json.dumps(payload or {}, default=str)
    return TriggerEvent(
        id=str(row["id"]),
        event_config_id=str(row["event_config_id"]),
        webhook_id=str(row.get("webhook_id") or ""),
        campaign_id=str(row.get("campaign_id") or ""),
        campaign_name=row.get("campaign_name") or "",
        payload=payload,
        window_start=row.get("window_start"),
        window_end=row.get("window_end"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """psycopg2-backed implementation of the engine's storage interfaces."""

    def __init__(self, dsn: str | None = None, config=None):
        self.cfg = config or get_config()
        self.dsn = dsn or self.cfg.require_database_url()
        self.statement_timeout_ms = int(self.cfg.query_timeout_seconds * 1000)

    def _get_connection(self):
        """Get database connection."""
        return psycopg2.connect(
            self.dsn, options=f"-c statement_timeout={self.statement_timeout_ms}"
        )

    @contextmanager
    def _cursor(self, commit: bool = False):
        conn = self._get_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            if commit:
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetch_one(self, query: str, params: dict) -> dict | None:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone()

    def _fetch_all(self, query: str, params: dict | None = None) -> list[dict]:
        with self._cursor() as cursor:
            cursor.execute(query, params or {})
            return list(cursor.fetchall())

    def _execute(self, query: str, params: dict) -> int:
        with self._cursor(commit=True) as cursor:
            cursor.execute(query, params)
            return cursor.rowcount

    def apply_migrations(self):
        """Add the trigger-window columns used for de-duplication."""
        with self._cursor(commit=True) as cursor:
            for statement in SCHEMA_MIGRATIONS:
                cursor.execute(statement)
        logger.info("Applied %d schema statements.", len(SCHEMA_MIGRATIONS))

    # --- Configs ---

    def get_active_configs(self) -> list[EventConfig]:
        rows = self._fetch_all("""
            SELECT id, webhook_id, event_type, name, description, config_parameters,
                   target_scope, is_active, last_checked_at, last_triggered_at
            FROM webhook_event_configs
            WHERE is_active = true
            ORDER BY id
        """)
        return [_row_to_config(row) for row in rows]

    def update_config_timestamps(self, config_id: str, checked_at=None, triggered_at=None):
        assignments = []
        params = {"id": config_id}
        if checked_at is not None:
            assignments.append("last_checked_at = %(checked_at)s")
            params["checked_at"] = checked_at
        if triggered_at is not None:
            assignments.append("last_triggered_at = %(triggered_at)s")
            params["triggered_at"] = triggered_at
        if not assignments:
            return
        assignments.append("updated_at = NOW()")
        self._execute(
            f"UPDATE webhook_event_configs SET {', '.join(assignments)} WHERE id = %(id)s",
            params,
        )

    def repair_config_parameters(self, config_id: str, params: dict):
        updated = self._execute(
            """
            UPDATE webhook_event_configs
            SET config_parameters = %(params)s::jsonb, updated_at = NOW()
            WHERE id = %(id)s
            """,
            {"id": config_id, "params": json.dumps(params)},
        )
        if not updated:
            raise LookupError(f"config {config_id} not found")

    # --- Entities ---

    def get_campaign(self, campaign_id: str) -> Campaign | None:
        row = self._fetch_one(_CAMPAIGN_SELECT + " WHERE c.id = %(id)s", {"id": campaign_id})
        return _row_to_campaign(row) if row else None

    def get_campaigns_by_client(self, client_id: str) -> list[Campaign]:
        rows = self._fetch_all(
            _CAMPAIGN_SELECT + " WHERE c.client_id = %(client_id)s ORDER BY c.id",
            {"client_id": client_id},
        )
        return [_row_to_campaign(row) for row in rows]

    def get_user_client_ids(self, user_id: str) -> list[str] | None:
        row = self._fetch_one(
            "SELECT assigned_client_ids FROM users WHERE id = %(id)s", {"id": user_id}
        )
        if row is None:
            return None
        return [str(c) for c in _json_value(row.get("assigned_client_ids"), [])]

    def get_email_account(self, account_id) -> EmailAccount | None:
        row = self._fetch_one(
            "SELECT id, email FROM email_accounts WHERE id = %(id)s", {"id": account_id}
        )
        return EmailAccount(id=row["id"], email=row.get("email") or "") if row else None

    def get_webhook(self, webhook_id: str) -> Webhook | None:
        row = self._fetch_one(
            "SELECT id, url, headers, is_active, timeout_seconds FROM webhooks WHERE id = %(id)s",
            {"id": webhook_id},
        )
        if row is None:
            return None
        return Webhook(
            id=str(row["id"]),
            url=row["url"],
            headers={str(k): str(v) for k, v in _json_value(row.get("headers"), {}).items()},
            is_active=bool(row.get("is_active", True)),
            timeout_seconds=int(row.get("timeout_seconds") or 30),
        )

    # --- Statistics ---

    def aggregate_campaign_stats(self, campaign_id: str, start: date, end: date) -> MetricSnapshot:
        row = self._fetch_one(
            f"""
            SELECT {_STAT_SUMS},
                   COALESCE(SUM(clicked), 0) AS clicked,
                   COALESCE(SUM(positive_replies), 0) AS positive_replies
            FROM campaign_daily_stat_entries
            WHERE campaign_id = %(id)s
              AND stat_date >= %(start)s AND stat_date < %(end)s
            """,
            {"id": campaign_id, "start": start, "end": end},
        )
        return _row_to_snapshot(row)

    def aggregate_email_account_stats(self, account_id, start: date, end: date) -> MetricSnapshot:
        row = self._fetch_one(
            f"""
            SELECT {_STAT_SUMS}
            FROM email_account_daily_stat_entries
            WHERE email_account_id = %(id)s
              AND stat_date >= %(start)s AND stat_date < %(end)s
            """,
            {"id": account_id, "start": start, "end": end},
        )
        return _row_to_snapshot(row)

    def query_last_qualifying_reply(
        self, campaign_id: str, since: date, positive_only: bool, email_account_id=None
    ) -> ReplyActivity:
        qualifying = "is_reply = true"
        if positive_only:
            qualifying += " AND is_positive_reply = true"
        account_filter = ""
        params = {"campaign_id": campaign_id, "since": since}
        if email_account_id is not None:
            account_filter = "AND leh.email_account_id = %(account_id)s"
            params["account_id"] = email_account_id

        row = self._fetch_one(
            f"""
            SELECT MAX(leh.sent_at) FILTER (WHERE {qualifying}) AS last_reply_at,
                   COUNT(*) FILTER (WHERE is_reply = false AND leh.sent_at >= %(since)s)
                       AS sent_in_period,
                   COUNT(*) FILTER (WHERE is_reply = true AND leh.sent_at >= %(since)s)
                       AS replies_in_period,
                   COUNT(*) FILTER (WHERE is_reply = true AND is_positive_reply = true
                                    AND leh.sent_at >= %(since)s)
                       AS positive_replies_in_period
            FROM lead_email_history leh
            WHERE leh.campaign_id = %(campaign_id)s {account_filter}
            """,
            params,
        ) or {}

        activity = ReplyActivity(
            last_reply_at=row.get("last_reply_at"),
            sent_in_period=int(row.get("sent_in_period") or 0),
            replies_in_period=int(row.get("replies_in_period") or 0),
            positive_replies_in_period=int(row.get("positive_replies_in_period") or 0),
        )
        if email_account_id is not None:
            account = self.get_email_account(email_account_id)
            activity.email_address = account.email if account else ""
        return activity

    # --- Trigger log ---

    def persist_trigger_event(self, record: TriggerEvent):
        self._execute(
            f"""
            INSERT INTO webhook_event_triggers ({_TRIGGER_COLUMNS})
            VALUES (%(id)s, %(event_config_id)s, %(webhook_id)s, %(campaign_id)s,
                    %(campaign_name)s, %(payload)s::jsonb, %(window_start)s,
                    %(window_end)s, %(created_at)s)
            """,
            {
                "id": record.id,
                "event_config_id": record.event_config_id,
                "webhook_id": record.webhook_id,
                "campaign_id": record.campaign_id,
                "campaign_name": record.campaign_name,
                "payload": record.payload,
                "window_start": record.window_start,
                "window_end": record.window_end,
                "created_at": record.created_at,
            },
        )

    def get_last_trigger(self, config_id: str, campaign_id: str | None = None) -> TriggerEvent | None:
        query = f"SELECT {_TRIGGER_COLUMNS} FROM webhook_event_triggers WHERE event_config_id = %(config_id)s"
        params = {"config_id": config_id}
        if campaign_id is not None:
            query += " AND campaign_id = %(campaign_id)s"
            params["campaign_id"] = campaign_id
        query += " ORDER BY created_at DESC LIMIT 1"
        row = self._fetch_one(query, params)
        return _row_to_trigger(row) if row else None
