from __future__ import annotations

from health.circuit import Decision


class AggregatorError(Exception):
    pass


class TransientUpstreamError(AggregatorError):
    """Timeout, transport failure or non-2xx response from a provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedPayloadError(AggregatorError):
    """A provider payload that cannot be decoded at all."""


class MalformedRecordError(AggregatorError):
    """A single record missing required fields; dropped without failing the batch."""


class CircuitOpenRejection(AggregatorError):
    """Raised when the breaker denies a fetch.

    Not a failure: callers fall back to the last cached value.
    """

    def __init__(self, source_id: str, decision: Decision) -> None:
        super().__init__(f"{source_id}: {decision.reason}")
        self.source_id = source_id
        self.decision = decision
