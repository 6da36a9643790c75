"""Unit tests for the background config repair queue."""

from unittest.mock import Mock

from src.monitoring.repair_queue import ConfigRepairQueue, RepairRequest


def request(config_id="cfg-1"):
    return RepairRequest(config_id, "reply_rate_drop", {"thresholdPercent": 10.0})


class TestConfigRepairQueue:
    def test_submit_without_worker_only_schedules(self):
        store = Mock()
        queue = ConfigRepairQueue(store, start=False)
        assert queue.submit(request()) is True
        assert [r.config_id for r in queue.pending] == ["cfg-1"]
        store.repair_config_parameters.assert_not_called()

    def test_duplicate_pending_request_ignored(self):
        queue = ConfigRepairQueue(Mock(), start=False)
        assert queue.submit(request()) is True
        assert queue.submit(request()) is False
        assert queue.submit(request("cfg-2")) is True
        assert len(queue.pending) == 2

    def test_process_pending_applies_repairs(self):
        store = Mock()
        queue = ConfigRepairQueue(store, start=False)
        queue.submit(request())
        assert queue.process_pending() == 1
        store.repair_config_parameters.assert_called_once_with("cfg-1", {"thresholdPercent": 10.0})
        assert queue.completed == 1
        assert queue.pending == []
        # no longer pending, so it can be scheduled again
        assert queue.submit(request()) is True

    def test_repair_failure_is_counted_not_raised(self):
        store = Mock()
        store.repair_config_parameters.side_effect = RuntimeError("deadlock detected")
        queue = ConfigRepairQueue(store, start=False)
        queue.submit(request())
        assert queue.process_pending() == 1
        assert queue.failed == 1
        assert queue.completed == 0

    def test_full_queue_drops_request(self):
        queue = ConfigRepairQueue(Mock(), maxsize=1, start=False)
        assert queue.submit(request("cfg-1")) is True
        assert queue.submit(request("cfg-2")) is False
        assert [r.config_id for r in queue.pending] == ["cfg-1"]

    def test_worker_thread_drains(self):
        store = Mock()
        queue = ConfigRepairQueue(store)
        try:
            queue.submit(request("cfg-1"))
            queue.submit(request("cfg-2"))
            queue.drain(timeout=5)
        finally:
            queue.stop()
        assert store.repair_config_parameters.call_count == 2
        assert queue.completed == 2

    def test_drain_without_worker_processes_inline(self):
        store = Mock()
        queue = ConfigRepairQueue(store, start=False)
        queue.submit(request())
        queue.drain()
        store.repair_config_parameters.assert_called_once()
