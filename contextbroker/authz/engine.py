from __future__ import annotations

import logging

from contextbroker.core.errors import InvalidRequest
from contextbroker.core.models import (
    AlwaysAllowPolicy,
    AskEachTimePolicy,
    NeverPolicy,
    PolicyVerdict,
    VerdictKind,
)
from contextbroker.store.policy_store import PolicyStore

logger = logging.getLogger(__name__)


class PolicyEngine:
    """
    Evaluates one request against the target's current sharing policy.

    The policy is read from the store on every call. Callers must not cache verdicts
    across a live-approval wait.
    """

    def __init__(self, store: PolicyStore) -> None:
        self.store = store

    async def evaluate(self, *, requester_id: str, target_id: str, room_id: str, query: str) -> PolicyVerdict:
        _ = query  # policies are per-pair today; query-scoped rules would hook in here
        if requester_id == target_id:
            raise InvalidRequest("a participant cannot request their own context")

        policy = await self.store.get(target_id, room_id)

        if isinstance(policy, NeverPolicy):
            verdict = PolicyVerdict(kind=VerdictKind.AUTO_DENIED, reason="target_policy_never")
        elif isinstance(policy, AlwaysAllowPolicy):
            if policy.admits(requester_id):
                reason = "target_policy_always_allow" if not policy.allowlist else "requester_on_allowlist"
                verdict = PolicyVerdict(kind=VerdictKind.AUTO_APPROVED, reason=reason)
            else:
                # The target opted into sharing generally; ask rather than silently deny.
                verdict = PolicyVerdict(kind=VerdictKind.NEEDS_LIVE_APPROVAL, reason="requester_not_on_allowlist")
        elif isinstance(policy, AskEachTimePolicy):
            verdict = PolicyVerdict(kind=VerdictKind.NEEDS_LIVE_APPROVAL, reason="target_policy_ask_each_time")
        else:
            raise TypeError(f"unhandled sharing policy variant: {type(policy).__name__}")

        logger.info(
            f"Verdict {verdict.kind.value} ({verdict.reason}) for {requester_id} -> {target_id} in {room_id}"
        )
        return verdict
