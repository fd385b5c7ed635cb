"""Typed failures surfaced by the broker.

Callers (the chat/response-generation side) branch on the class, never on
message text.
"""

from __future__ import annotations

from typing import Optional


class BrokerError(Exception):
    """Base class for every failure the broker raises on purpose."""


class InvalidRequest(BrokerError):
    """Malformed input or self-request. Raised before any state change; not retried."""


class NotFound(BrokerError):
    """Unknown participant/room pair or request id."""


class PermissionDenied(BrokerError):
    def __init__(
        self,
        reason: str,
        *,
        request_id: Optional[str] = None,
        verdict_id: Optional[str] = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.request_id = request_id
        self.verdict_id = verdict_id


class RequestExpired(BrokerError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"context request {request_id} expired without a response")
        self.request_id = request_id


class RetrievalUnavailable(BrokerError):
    """Transient failure of a retrieval collaborator."""


class EmbeddingUnavailable(RetrievalUnavailable):
    pass


class IndexUnavailable(RetrievalUnavailable):
    pass


class RetrievalFailed(BrokerError):
    """Retrieval kept failing after the bounded retries."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class AuditWriteFailed(BrokerError):
    """The audit record could not be durably written; the whole call fails."""
