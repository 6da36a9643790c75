"""Exceptions raised inside a monitoring cycle.

None of these escape ``MonitoringOrchestrator.run_cycle``; each marks how far
the failure reaches (one config, one scope id, one campaign, one dispatch).
"""


class MonitoringError(Exception):
    """Base class for monitoring failures."""


class DecodeError(MonitoringError):
    """Config parameters are malformed beyond the recoverable shape. Skip the config."""


class ResolutionError(MonitoringError):
    """A scope id could not be resolved. Skip that id."""


class AggregationError(MonitoringError):
    """A metric fetch failed or timed out. Skip that campaign or account."""


class DispatchError(MonitoringError):
    """Webhook delivery failed. No trigger log is written."""


class InvariantViolation(MonitoringError):
    """The pre-dispatch volume gate failed. This is a defect, not a data condition."""
