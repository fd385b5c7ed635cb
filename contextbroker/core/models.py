"""Canonical domain models (single source of truth).

This file is the one place where we define models used across:
- policy evaluation (participants, sharing policies, verdicts)
- live approval (context requests and their state machine)
- retrieval (fragments, bundles)
- auditing (append-only access records)

Design note:
- Sharing policies are a tagged union on `mode` so every consumer branches
  exhaustively over the three variants instead of probing optional keys.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class BaseModelStrict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BaseModelFrozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class NeverPolicy(BaseModelFrozen):
    mode: Literal["never"] = "never"


class AskEachTimePolicy(BaseModelFrozen):
    mode: Literal["ask_each_time"] = "ask_each_time"


class AlwaysAllowPolicy(BaseModelFrozen):
    mode: Literal["always_allow"] = "always_allow"
    # Empty means everyone is pre-approved.
    allowlist: FrozenSet[str] = Field(default_factory=frozenset)

    def admits(self, requester_id: str) -> bool:
        return not self.allowlist or requester_id in self.allowlist


SharingPolicy = Annotated[
    Union[NeverPolicy, AskEachTimePolicy, AlwaysAllowPolicy],
    Field(discriminator="mode"),
]


class Participant(BaseModelStrict):
    participant_id: str
    room_id: str
    role: Role = Role.MEMBER
    policy: SharingPolicy = Field(default_factory=AskEachTimePolicy)
    # Stored independently of the mode; surfaced through AlwaysAllowPolicy.
    allowlist: FrozenSet[str] = Field(default_factory=frozenset)

    def can_share(self) -> bool:
        return self.role != Role.VIEWER

    def effective_policy(self) -> Union[NeverPolicy, AskEachTimePolicy, AlwaysAllowPolicy]:
        if isinstance(self.policy, AlwaysAllowPolicy):
            return AlwaysAllowPolicy(allowlist=frozenset(self.allowlist))
        return self.policy


class VerdictKind(str, Enum):
    AUTO_APPROVED = "auto_approved"
    AUTO_DENIED = "auto_denied"
    NEEDS_LIVE_APPROVAL = "needs_live_approval"


class PolicyVerdict(BaseModelFrozen):
    verdict_id: str = Field(default_factory=new_id)
    kind: VerdictKind
    reason: str
    evaluated_at: datetime = Field(default_factory=utcnow)


class RequestStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class ResolutionReason(str, Enum):
    GRANTED_BY_TARGET = "granted_by_target"
    ALWAYS_ALLOWED_BY_TARGET = "always_allowed_by_target"
    DENIED_BY_TARGET = "denied_by_target"
    CANCELLED_BY_REQUESTER = "cancelled_by_requester"
    TIMED_OUT = "timed_out"
    POLICY_CHANGED = "policy_changed"
    PARTICIPANT_LEFT = "participant_left"


class ContextRequest(BaseModelFrozen):
    """A single attempt by a requester to read a target's private context.

    Frozen: the coordinator replaces the record on each transition, so any copy
    handed out earlier stays a consistent snapshot.
    """

    request_id: str = Field(default_factory=new_id)
    room_id: str
    requester_id: str
    target_id: str
    query: str
    created_at: datetime = Field(default_factory=utcnow)
    deadline_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[ResolutionReason] = None

    @field_validator("created_at", "deadline_at", "resolved_at")
    @classmethod
    def _ensure_timezone_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ContextFragment(BaseModelFrozen):
    fragment_id: str
    content: str
    source_timestamp: datetime
    similarity: float
    owner_id: str
    redactions: List[str] = Field(default_factory=list)


class ContextBundle(BaseModelFrozen):
    request_id: str
    room_id: str
    target_id: str
    fragments: List[ContextFragment] = Field(default_factory=list)

    @property
    def fragment_ids(self) -> List[str]:
        return [f.fragment_id for f in self.fragments]


class NoRelevantContext(BaseModelFrozen):
    """Successful retrieval that found nothing above the similarity threshold."""

    request_id: str
    room_id: str
    target_id: str
    threshold: float


RetrievalResult = Union[ContextBundle, NoRelevantContext]


class AuditDecision(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"
    AUTO_ALLOWED = "auto_allowed"
    AUTO_DENIED = "auto_denied"


class AuditOutcome(str, Enum):
    BUNDLE = "bundle"
    NO_RELEVANT_CONTEXT = "no_relevant_context"
    PERMISSION_DENIED = "permission_denied"
    REQUEST_EXPIRED = "request_expired"
    RETRIEVAL_FAILED = "retrieval_failed"


class AuditEntry(BaseModelFrozen):
    entry_id: str = Field(default_factory=new_id)
    room_id: str
    requester_id: str
    target_id: str
    decision: AuditDecision
    outcome: AuditOutcome
    reason: Optional[str] = None
    # Exactly one of these is set: live path vs direct policy verdict.
    request_id: Optional[str] = None
    verdict_id: Optional[str] = None
    # Ids only; raw content never reaches the audit store.
    fragment_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def names(self, participant_id: str) -> bool:
        return participant_id in (self.requester_id, self.target_id)
