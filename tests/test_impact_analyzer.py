"""Unit tests for email account impact classification and ranking."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from src.monitoring.errors import AggregationError
from src.monitoring.impact_analyzer import (
    ImpactAnalyzer,
    classify_bounce_impact,
    classify_reply_impact,
    rank_impacts,
)
from src.monitoring.metric_windows import MetricWindowAggregator, windows_for
from src.monitoring.models import (
    Campaign,
    EmailAccountImpact,
    EventType,
    ImpactLevel,
    MetricSnapshot,
)
from tests.conftest import TODAY


class TestClassification:
    @pytest.mark.parametrize("rate,share,expected", [
        (1.5, 25.0, ImpactLevel.HIGH),
        (0.5, 5.0, ImpactLevel.HIGH),
        (1.5, 15.0, ImpactLevel.MEDIUM),
        (2.5, 5.0, ImpactLevel.MEDIUM),
        (4.0, 15.0, ImpactLevel.MEDIUM),
        (4.0, 5.0, ImpactLevel.LOW),
        (5.0, 50.0, ImpactLevel.LOW),
    ])
    def test_reply_impact(self, rate, share, expected):
        assert classify_reply_impact(rate, share) is expected

    @pytest.mark.parametrize("rate,expected", [
        (12.0, ImpactLevel.HIGH),
        (10.0, ImpactLevel.HIGH),
        (5.0, ImpactLevel.MEDIUM),
        (4.99, ImpactLevel.LOW),
    ])
    def test_bounce_impact(self, rate, expected):
        assert classify_bounce_impact(rate) is expected

    def test_rank_by_level_then_volume(self):
        def impact(account_id, level, sent):
            return EmailAccountImpact(account_id, "", 0.0, sent, 0, level)

        ranked = rank_impacts([
            impact(1, ImpactLevel.LOW, 900),
            impact(2, ImpactLevel.HIGH, 100),
            impact(3, ImpactLevel.MEDIUM, 200),
            impact(4, ImpactLevel.HIGH, 300),
        ])
        assert [i.email_account_id for i in ranked] == [4, 2, 3, 1]


class TestImpactAnalyzer:
    @pytest.fixture
    def aggregator(self, store):
        aggregator = MetricWindowAggregator(store)
        yield aggregator
        aggregator.close()

    def test_reply_rate_breakdown(self, store, aggregator):
        day = TODAY - timedelta(days=1)
        store.add_account_stat(1, day, sent=150, replied=0)
        store.add_account_stat(2, day, sent=300, replied=15)
        store.add_account_stat(3, day, sent=50, replied=0)
        store.add_account_stat(99, day, sent=120, replied=6)
        campaign = Campaign("c9", "Mixed", email_account_ids=[1, 2, 3, 99, 4])
        current, _ = windows_for(7, TODAY)

        impacts = ImpactAnalyzer(aggregator, store).analyze(
            EventType.REPLY_RATE_DROP, campaign, current, MetricSnapshot(sent=620), 100,
        )

        # account 3 is below the minimum, account 4 sent nothing
        assert [i.email_account_id for i in impacts] == [1, 2, 99]
        assert impacts[0].impact_level is ImpactLevel.HIGH
        assert impacts[0].email_address == "alice@acme.test"
        assert impacts[1].impact_level is ImpactLevel.LOW
        assert impacts[1].rate == pytest.approx(5.0)
        assert impacts[1].count == 15
        assert impacts[2].email_address == "ID:99"

    def test_bounce_rate_breakdown(self, store, aggregator):
        day = TODAY - timedelta(days=2)
        store.add_account_stat(1, day, sent=200, bounced=8)
        store.add_account_stat(2, day, sent=100, bounced=15)
        campaign = Campaign("c9", "Bouncy", email_account_ids=[1, 2])
        current, _ = windows_for(7, TODAY)

        impacts = ImpactAnalyzer(aggregator, store).analyze(
            EventType.BOUNCE_RATE_HIGH, campaign, current, MetricSnapshot(sent=300), 100,
        )
        assert [(i.email_account_id, i.impact_level) for i in impacts] == [
            (2, ImpactLevel.HIGH),
            (1, ImpactLevel.LOW),
        ]
        assert impacts[0].count == 15

    def test_stats_outside_window_ignored(self, store, aggregator):
        store.add_account_stat(1, TODAY, sent=500, replied=0)
        campaign = Campaign("c9", "Today only", email_account_ids=[1])
        current, _ = windows_for(7, TODAY)
        impacts = ImpactAnalyzer(aggregator, store).analyze(
            EventType.REPLY_RATE_DROP, campaign, current, MetricSnapshot(sent=500), 100,
        )
        assert impacts == []

    def test_failed_account_fetch_skipped(self, store):
        aggregator = Mock()
        aggregator.account_snapshot.side_effect = [
            AggregationError("timed out"),
            MetricSnapshot(sent=200, replied=1),
        ]
        campaign = Campaign("c9", "Flaky", email_account_ids=[1, 2])
        current, _ = windows_for(7, TODAY)
        impacts = ImpactAnalyzer(aggregator, store).analyze(
            EventType.REPLY_RATE_DROP, campaign, current, MetricSnapshot(sent=400), 100,
        )
        assert [i.email_account_id for i in impacts] == [2]
        assert impacts[0].impact_level is ImpactLevel.HIGH
