"""Integration tests for the monitoring cycle over the in-memory store."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from src.monitoring.models import Campaign
from src.monitoring.orchestrator import MonitoringOrchestrator
from src.monitoring.repair_queue import ConfigRepairQueue
from src.storage.memory_store import LeadEmailEvent, MemoryStore
from tests.conftest import NOW, make_config, make_event_config, seed_windows


def build(store, clock, **config_overrides):
    return MonitoringOrchestrator(
        store,
        store,
        config=make_config(**config_overrides),
        repair_queue=ConfigRepairQueue(store, start=False),
        clock=clock,
    )


@pytest.fixture
def orchestrator(store, clock):
    orchestrator = build(store, clock)
    yield orchestrator
    orchestrator.close()


def seed_reply_drop(store, campaign_id="c1"):
    seed_windows(store, campaign_id, current={"sent": 1000, "replied": 60},
                 previous={"sent": 1000, "replied": 100})


class TestRunCycle:
    def test_fires_and_stamps_config(self, store, orchestrator):
        seed_reply_drop(store)
        store.add_config(make_event_config())

        summary = orchestrator.run_cycle()

        assert summary.configs_checked == 1
        assert summary.alerts_fired == 1
        assert summary.failures == 0
        assert len(store.triggers) == 1
        config = store.configs["cfg-1"]
        assert config.last_checked_at == NOW
        assert config.last_triggered_at == NOW

    def test_immediate_rerun_does_not_double_fire(self, store, orchestrator):
        seed_reply_drop(store)
        store.add_config(make_event_config())

        orchestrator.run_cycle()
        summary = orchestrator.run_cycle()

        assert summary.alerts_fired == 0
        assert summary.suppressed == 1
        assert len(store.triggers) == 1
        assert len(store.deliveries) == 1

    def test_refires_every_cycle_without_suppression(self, store, clock):
        seed_reply_drop(store)
        store.add_config(make_event_config())
        orchestrator = build(store, clock, alert_once_per_window=False)
        try:
            orchestrator.run_cycle()
            orchestrator.run_cycle()
        finally:
            orchestrator.close()
        assert len(store.triggers) == 2

    def test_inactive_configs_ignored(self, store, orchestrator):
        seed_reply_drop(store)
        config = store.add_config(make_event_config())
        config.is_active = False
        summary = orchestrator.run_cycle()
        assert summary.configs_checked == 0
        assert config.last_checked_at is None

    def test_overlapping_run_does_nothing(self, store, orchestrator):
        seed_reply_drop(store)
        store.add_config(make_event_config())
        orchestrator._cycle_lock.acquire()
        try:
            summary = orchestrator.run_cycle()
        finally:
            orchestrator._cycle_lock.release()
        assert summary.ran is False
        assert store.triggers == []
        assert store.configs["cfg-1"].last_checked_at is None

    def test_config_load_failure_is_contained(self, clock):
        store = Mock()
        store.get_active_configs.side_effect = RuntimeError("database unavailable")
        orchestrator = build(store, clock)
        try:
            summary = orchestrator.run_cycle()
        finally:
            orchestrator.close()
        assert summary.failures == 1
        assert summary.configs_checked == 0


class TestFailureIsolation:
    def test_bad_config_still_checked_and_others_continue(self, store, orchestrator):
        seed_reply_drop(store)
        bad = store.add_config(make_event_config(
            "cfg-bad", params={"thresholdPercent": {"Kind": 1}, "monitoringPeriodDays": 7},
        ))
        good = store.add_config(make_event_config("cfg-good"))

        summary = orchestrator.run_cycle()

        assert summary.skipped_configs == 1
        assert summary.alerts_fired == 1
        assert bad.last_checked_at == NOW
        assert bad.last_triggered_at is None
        assert good.last_triggered_at == NOW

    def test_failing_campaign_does_not_stop_config(self, store, clock):
        class FlakyStore(MemoryStore):
            def aggregate_campaign_stats(self, campaign_id, start, end):
                if campaign_id == "c2":
                    raise RuntimeError("canceling statement due to statement timeout")
                return super().aggregate_campaign_stats(campaign_id, start, end)

        flaky = FlakyStore()
        flaky.add_campaign(Campaign("c1", "One", "client-a"))
        flaky.add_campaign(Campaign("c2", "Two", "client-a"))
        flaky.add_campaign(Campaign("c3", "Three", "client-a"))
        seed_reply_drop(flaky, "c1")
        seed_reply_drop(flaky, "c3")
        flaky.add_config(make_event_config(scope_type="clients", ids=("client-a",)))

        orchestrator = build(flaky, clock)
        try:
            summary = orchestrator.run_cycle()
        finally:
            orchestrator.close()

        assert summary.campaigns_evaluated == 3
        assert summary.failures == 1
        assert sorted(t.campaign_id for t in flaky.triggers) == ["c1", "c3"]

    def test_delivery_failure_refires_next_cycle(self, store, orchestrator):
        seed_reply_drop(store)
        store.add_config(make_event_config())
        store.failing_webhooks.add("wh-1")

        summary = orchestrator.run_cycle()
        assert summary.failures == 1
        assert store.triggers == []
        assert store.configs["cfg-1"].last_triggered_at is None
        assert store.configs["cfg-1"].last_checked_at == NOW

        store.failing_webhooks.clear()
        orchestrator.run_cycle()
        assert len(store.triggers) == 1

    def test_null_minimum_falls_back_to_default(self, store, orchestrator):
        seed_reply_drop(store)
        store.add_config(make_event_config(params={
            "thresholdPercent": 3, "monitoringPeriodDays": 7, "minimumEmailsSent": None,
        }))
        summary = orchestrator.run_cycle()
        assert summary.skipped_configs == 0
        assert summary.alerts_fired == 1
        payload = store.deliveries[0].payload
        assert payload["threshold"]["minimumEmailsSent"] == 100

    def test_unknown_event_type_skipped(self, store, orchestrator):
        store.add_config(make_event_config("cfg-x", event_type="open_rate_drop"))
        summary = orchestrator.run_cycle()
        assert summary.skipped_configs == 1
        assert summary.failures == 0


class TestSelfHealing:
    def test_corrupted_config_evaluated_and_repaired(self, store, orchestrator):
        seed_reply_drop(store)
        store.add_config(make_event_config(params={
            "thresholdPercent": {"ValueKind": 4}, "monitoringPeriodDays": 7,
        }))

        summary = orchestrator.run_cycle()
        # default threshold of 10 points is not met by a 4 point drop
        assert summary.alerts_fired == 0
        assert store.repairs == []

        assert orchestrator.repair_queue.process_pending() == 1
        assert store.repairs == [("cfg-1", {
            "thresholdPercent": 10.0, "monitoringPeriodDays": 7, "minimumEmailsSent": 100,
        })]
        assert store.configs["cfg-1"].config_parameters["thresholdPercent"] == 10.0


class TestNoReplyRules:
    def test_single_alert_for_all_silent_campaigns(self, store, orchestrator):
        store.add_lead_event(LeadEmailEvent(
            "c3", 1, datetime(2024, 6, 14, 10, 0, tzinfo=timezone.utc), True, True,
        ))
        store.add_config(make_event_config(
            "cfg-silence", "no_positive_reply_for_x_days", {"daysSinceLastReply": 7},
            ids=("c1", "c2", "c3"),
        ))

        summary = orchestrator.run_cycle()

        assert summary.alerts_fired == 1
        assert summary.campaigns_evaluated == 3
        assert len(store.deliveries) == 1
        payload = store.deliveries[0].payload
        assert [c["id"] for c in payload["affectedCampaigns"]] == ["c1", "c2"]
        assert len(store.triggers) == 1
        assert store.triggers[0].campaign_id == "c1"

        orchestrator.run_cycle()
        assert len(store.triggers) == 1

    def test_all_healthy(self, store, orchestrator):
        for campaign_id in ("c1", "c2"):
            store.add_lead_event(LeadEmailEvent(
                campaign_id, 1, datetime(2024, 6, 13, tzinfo=timezone.utc), True, False,
            ))
        store.add_config(make_event_config(
            "cfg-silence", "no_reply_for_x_days", {"daysSinceLastReply": 5}, ids=("c1", "c2"),
        ))
        summary = orchestrator.run_cycle()
        assert summary.alerts_fired == 0
        assert store.deliveries == []
        assert store.configs["cfg-silence"].last_checked_at == NOW


class TestParallelCampaigns:
    def test_worker_pool_evaluates_every_campaign(self, store, clock):
        for campaign_id in ("c1", "c2", "c3"):
            seed_reply_drop(store, campaign_id)
        store.add_config(make_event_config(ids=("c1", "c2", "c3")))
        orchestrator = build(store, clock, max_workers=3)
        try:
            summary = orchestrator.run_cycle()
        finally:
            orchestrator.close()
        assert summary.campaigns_evaluated == 3
        assert summary.alerts_fired == 3
        assert sorted(t.campaign_id for t in store.triggers) == ["c1", "c2", "c3"]


class TestShutdown:
    def test_close_stops_its_own_repair_worker(self, store, clock):
        store.add_config(make_event_config(params={
            "thresholdPercent": {"ValueKind": 4}, "monitoringPeriodDays": 7,
        }))
        orchestrator = MonitoringOrchestrator(store, store, config=make_config(), clock=clock)
        worker = orchestrator.repair_queue._worker
        assert worker.is_alive()

        orchestrator.run_cycle()
        orchestrator.close()

        assert not worker.is_alive()
        assert orchestrator.repair_queue._worker is None
        assert [config_id for config_id, _ in store.repairs] == ["cfg-1"]

    def test_close_leaves_injected_queue_running(self, store, clock):
        repair_queue = ConfigRepairQueue(store)
        orchestrator = MonitoringOrchestrator(
            store, store, config=make_config(), repair_queue=repair_queue, clock=clock,
        )
        try:
            orchestrator.close()
            assert repair_queue._worker.is_alive()
        finally:
            repair_queue.stop()
