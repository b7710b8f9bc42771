"""Exception taxonomy shared by the collector and the analysis engines."""

from __future__ import annotations

from typing import Sequence


class AnalyticsError(Exception):
    """Base class for analytics failures surfaced to callers."""


class EventValidationError(AnalyticsError, ValueError):
    """A single event was malformed and has been rejected."""

    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__(f"Event validation failed: {', '.join(self.problems)}")


class EnrichmentFailure(AnalyticsError):
    """Best-effort enrichment could not complete; the event proceeds as-is."""


class FlushFailure(AnalyticsError):
    """Writing a buffered batch to the event store failed; the batch was requeued."""

    def __init__(self, event_count: int, cause: BaseException):
        self.event_count = event_count
        super().__init__(f"Failed to flush {event_count} events: {cause}")


class FunnelNotFoundError(AnalyticsError, LookupError):
    def __init__(self, funnel_id: str):
        self.funnel_id = funnel_id
        super().__init__(f"Funnel '{funnel_id}' not found.")


class FunnelDefinitionError(AnalyticsError, ValueError):
    """Funnel definition is structurally invalid."""


class CohortConfigError(AnalyticsError, ValueError):
    """Cohort configuration is invalid."""


class InsufficientDataError(AnalyticsError, ValueError):
    def __init__(self, required: int, available: int, what: str = "data points"):
        self.required = required
        self.available = available
        super().__init__(f"At least {required} {what} required, got {available}.")


class UnknownMetricError(AnalyticsError, LookupError):
    def __init__(self, metric: str):
        self.metric = metric
        super().__init__(f"Unknown metric '{metric}'.")


class EventStoreTimeoutError(AnalyticsError, TimeoutError):
    """Event store read exceeded the configured timeout."""


class AnalysisCancelledError(AnalyticsError):
    """Caller abandoned a running analysis."""
