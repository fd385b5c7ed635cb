"""
Realtime transport abstraction.

This is intentionally a small interface: the broker only needs "publish to topic" and
"subscribe to topic". In-process queues back dev/tests; NATS backs deployments.
"""

from contextbroker.transport.base import (
    ApprovalDecision,
    ApprovalPrompt,
    ApprovalResponse,
    ApprovalWithdrawn,
    RealtimeTransport,
    prompt_topic,
    response_topic,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalPrompt",
    "ApprovalResponse",
    "ApprovalWithdrawn",
    "RealtimeTransport",
    "prompt_topic",
    "response_topic",
]
