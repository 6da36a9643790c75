"""Monitoring orchestrator: the single entry point the scheduler calls.

One ``run_cycle()`` loads every active rule, evaluates each one in isolation,
dispatches what fired, and stamps ``last_checked_at`` on every rule it looked
at. Nothing raised while evaluating a rule escapes the cycle.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from src.monitoring.config_decoder import ConfigDecoder
from src.monitoring.dispatcher import AlertDispatcher, DispatchOutcome, SuppressionPolicy
from src.monitoring.errors import (
    AggregationError,
    DecodeError,
    DispatchError,
    InvariantViolation,
)
from src.monitoring.evaluators import (
    BounceRateHighEvaluator,
    NoReplyEvaluator,
    ReplyRateDropEvaluator,
)
from src.monitoring.impact_analyzer import ImpactAnalyzer
from src.monitoring.metric_windows import MetricWindowAggregator
from src.monitoring.models import EventConfig, EventType
from src.monitoring.repair_queue import ConfigRepairQueue
from src.monitoring.scope_resolver import ScopeResolver
from src.utils.config import get_config
from src.utils.logger import log_duration, setup_logger

logger = setup_logger(__name__)


@dataclass
class CycleSummary:
    """Counts reported at the end of a cycle."""

    configs_checked: int = 0
    campaigns_evaluated: int = 0
    alerts_fired: int = 0
    suppressed: int = 0
    skipped_configs: int = 0
    failures: int = 0
    ran: bool = True
    started_at: datetime | None = None
    by_event_type: dict[str, int] = field(default_factory=dict)


class MonitoringOrchestrator:
    """Runs monitoring cycles over all active event configs.

    ``store`` supplies configs, entities, stats, reply activity and trigger
    persistence; ``delivery`` supplies ``send_webhook``.
    """

    def __init__(
        self,
        store,
        delivery,
        config=None,
        repair_queue: ConfigRepairQueue | None = None,
        clock=None,
        dry_run: bool = False,
    ):
        self.cfg = config or get_config()
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._owns_repair_queue = repair_queue is None
        self.repair_queue = repair_queue if repair_queue is not None else ConfigRepairQueue(store)
        self.decoder = ConfigDecoder(
            repair_queue=self.repair_queue,
            default_minimum_emails_sent=self.cfg.default_minimum_emails_sent,
        )
        self.resolver = ScopeResolver(store)
        self.aggregator = MetricWindowAggregator(
            store,
            timeout_seconds=self.cfg.query_timeout_seconds,
            max_workers=max(4, self.cfg.max_workers * 2),
        )
        impact = ImpactAnalyzer(self.aggregator, store)
        minimum = self.cfg.default_minimum_emails_sent
        self.rate_evaluators = {
            EventType.REPLY_RATE_DROP: ReplyRateDropEvaluator(self.aggregator, impact, minimum),
            EventType.BOUNCE_RATE_HIGH: BounceRateHighEvaluator(self.aggregator, impact, minimum),
        }
        self.silence_evaluators = {
            EventType.NO_POSITIVE_REPLY_FOR_X_DAYS: NoReplyEvaluator(self.aggregator, positive_only=True),
            EventType.NO_REPLY_FOR_X_DAYS: NoReplyEvaluator(self.aggregator, positive_only=False),
        }
        self.dispatcher = AlertDispatcher(
            delivery,
            store,
            policy=SuppressionPolicy.from_config(self.cfg),
            clock=self.clock,
            dry_run=dry_run,
        )
        self._cycle_lock = threading.Lock()
        self._summary_lock = threading.Lock()

    def close(self):
        """Release the query pool, and the repair worker if this instance started it."""
        if self._owns_repair_queue:
            self.repair_queue.drain(timeout=10)
            self.repair_queue.stop()
        self.aggregator.close()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleSummary:
        """Evaluate every active config once. Never raises."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Monitoring cycle already in progress; skipping this invocation.")
            return CycleSummary(ran=False)
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleSummary:
        started = self.clock()
        summary = CycleSummary(started_at=started)
        today = started.date()

        try:
            configs = list(self.store.get_active_configs())
        except Exception as e:
            logger.error("Could not load active event configs: %s", e)
            summary.failures += 1
            return summary

        partitions = self.partition(configs)
        summary.by_event_type = {t.value: len(partitions[t]) for t in EventType}
        logger.info(
            "Checking %d reply rate, %d bounce rate, %d no positive reply and "
            "%d no reply monitoring configs.",
            len(partitions[EventType.REPLY_RATE_DROP]),
            len(partitions[EventType.BOUNCE_RATE_HIGH]),
            len(partitions[EventType.NO_POSITIVE_REPLY_FOR_X_DAYS]),
            len(partitions[EventType.NO_REPLY_FOR_X_DAYS]),
        )
        unknown = len(configs) - sum(len(v) for v in partitions.values())
        if unknown:
            summary.skipped_configs += unknown

        with log_duration(logger, "monitoring_cycle", configs=len(configs)):
            for event_type in EventType:
                for config in partitions[event_type]:
                    self._check_config(config, event_type, today, summary)

        logger.info(
            "Cycle complete: checked=%d campaigns=%d fired=%d suppressed=%d "
            "skipped=%d failures=%d",
            summary.configs_checked, summary.campaigns_evaluated, summary.alerts_fired,
            summary.suppressed, summary.skipped_configs, summary.failures,
        )
        return summary

    @staticmethod
    def partition(configs: list[EventConfig]) -> dict[EventType, list[EventConfig]]:
        """Group configs by event type; unknown types are logged and left out."""
        groups: dict[EventType, list[EventConfig]] = {t: [] for t in EventType}
        for config in configs:
            event_type = config.parsed_event_type
            if event_type is None:
                logger.warning(
                    "Unknown event type %r for config %s; skipping.", config.event_type, config.id
                )
                continue
            groups[event_type].append(config)
        return groups

    def _check_config(self, config: EventConfig, event_type: EventType, today: date, summary):
        summary.configs_checked += 1
        try:
            params = self.decoder.decode(config)
            campaigns = self.resolver.resolve(config.target_scope)
            if not campaigns:
                logger.info("Config %s (%s) resolves to no campaigns.", config.id, config.name)
            elif event_type.is_rate_rule:
                self._check_rate_config(config, event_type, params, campaigns, today, summary)
            else:
                self._check_silence_config(config, event_type, params, campaigns, today, summary)
        except DecodeError as e:
            summary.skipped_configs += 1
            logger.error("Skipping config %s: invalid parameters: %s", config.id, e)
        except Exception as e:
            summary.failures += 1
            logger.error("Error checking config %s (%s): %s", config.id, config.name, e)
        finally:
            self._mark_checked(config)

    def _mark_checked(self, config: EventConfig):
        try:
            self.store.update_config_timestamps(config.id, checked_at=self.clock())
        except Exception as e:
            logger.error("Could not update last_checked_at for config %s: %s", config.id, e)

    # ------------------------------------------------------------------
    # Rate rules
    # ------------------------------------------------------------------

    def _check_rate_config(self, config, event_type, params, campaigns, today, summary):
        evaluator = self.rate_evaluators[event_type]

        def check(campaign):
            self._check_rate_campaign(evaluator, config, params, campaign, today, summary)

        workers = max(1, self.cfg.max_workers)
        if workers == 1 or len(campaigns) == 1:
            for campaign in campaigns:
                check(campaign)
            return

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="campaign-eval") as pool:
            # check() handles its own errors; list() just waits for completion
            list(pool.map(check, campaigns))

    def _check_rate_campaign(self, evaluator, config, params, campaign, today, summary):
        self._count(summary, "campaigns_evaluated")
        try:
            alert = evaluator.evaluate(config, params, campaign, today)
            if alert is None:
                return
            outcome = self.dispatcher.dispatch_rate(alert)
            self._record_outcome(outcome, summary)
        except AggregationError as e:
            self._count(summary, "failures")
            logger.error("Skipping campaign %s for config %s: %s", campaign.id, config.id, e)
        except InvariantViolation as e:
            self._count(summary, "failures")
            logger.critical("Aborted dispatch for config %s: %s", config.id, e)
        except DispatchError as e:
            self._count(summary, "failures")
            logger.error("Delivery failed for config %s campaign %s: %s", config.id, campaign.id, e)
        except Exception as e:
            self._count(summary, "failures")
            logger.error(
                "Error evaluating campaign %s for config %s: %s", campaign.id, config.id, e
            )

    # ------------------------------------------------------------------
    # No-reply rules
    # ------------------------------------------------------------------

    def _check_silence_config(self, config, event_type, params, campaigns, today, summary):
        evaluator = self.silence_evaluators[event_type]
        result = evaluator.evaluate(config, params, campaigns, today)
        summary.campaigns_evaluated += len(campaigns)
        summary.failures += len(result.failed_campaign_ids)
        if not result.fired:
            logger.info("Config %s: all %d campaigns have recent replies.", config.id, len(campaigns))
            return
        try:
            outcome = self.dispatcher.dispatch_silence(result)
            self._record_outcome(outcome, summary)
        except InvariantViolation as e:
            summary.failures += 1
            logger.critical("Aborted dispatch for config %s: %s", config.id, e)
        except DispatchError as e:
            summary.failures += 1
            logger.error("Delivery failed for config %s: %s", config.id, e)

    # ------------------------------------------------------------------

    def _record_outcome(self, outcome: DispatchOutcome, summary: CycleSummary):
        if outcome is DispatchOutcome.SUPPRESSED:
            self._count(summary, "suppressed")
        else:
            self._count(summary, "alerts_fired")

    def _count(self, summary: CycleSummary, attr: str):
        with self._summary_lock:
            setattr(summary, attr, getattr(summary, attr) + 1)
