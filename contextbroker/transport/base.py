from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Literal, Protocol

from pydantic import BaseModel, Field

DEFAULT_TOPIC_PREFIX = "contextbroker"

_TOPIC_TOKEN = re.compile(r"[^A-Za-z0-9_-]")


def _token(value: str) -> str:
    # Subjects are dot-separated; ids must never introduce extra levels or wildcards.
    return _TOPIC_TOKEN.sub("_", (value or "").strip()) or "_"


def prompt_topic(*, room_id: str, participant_id: str, prefix: str = DEFAULT_TOPIC_PREFIX) -> str:
    """A participant's private notification topic within a room."""
    return f"{_token(prefix)}.{_token(room_id)}.{_token(participant_id)}.prompts"


def response_topic(*, prefix: str = DEFAULT_TOPIC_PREFIX) -> str:
    return f"{_token(prefix)}.approvals.responses"


class ApprovalDecision(str, Enum):
    GRANT = "grant"
    DENY = "deny"
    ALWAYS_ALLOW = "always_allow"


class ApprovalPrompt(BaseModel):
    """
    Published to the target when a live decision is needed.

    Carries the requester identity and query only; nothing has been retrieved yet.
    """

    kind: Literal["approval_prompt"] = "approval_prompt"
    request_id: str
    room_id: str
    requester_id: str
    target_id: str
    query: str
    deadline_at: datetime


class ApprovalWithdrawn(BaseModel):
    """Tells the target UI to drop a prompt (cancelled, superseded, expired)."""

    kind: Literal["approval_withdrawn"] = "approval_withdrawn"
    request_id: str
    room_id: str
    target_id: str
    reason: str


class ApprovalResponse(BaseModel):
    kind: Literal["approval_response"] = "approval_response"
    request_id: str
    responder_id: str
    decision: ApprovalDecision
    responded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Subscription(Protocol):
    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        ...

    async def close(self) -> None:
        ...


class RealtimeTransport(Protocol):
    """
    Minimal publish/subscribe interface. Implementations can be in-process, NATS, etc.

    Delivery is at-least-once: consumers must tolerate duplicates.
    """

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        """Publish a JSON-serializable event to a topic."""

    async def subscribe(self, topic: str) -> Subscription:
        """Subscribe to a topic; the returned subscription yields decoded events."""
