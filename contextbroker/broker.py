"""
Context broker: the single entry point for cross-context reads.

Sequencing per call:
  validate -> policy verdict -> [live approval] -> retrieval -> audit -> result

Hard rule: no bundle leaves this module unless its audit entry was recorded first,
and every exit path after validation records exactly one audit entry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from contextbroker.approval.coordinator import LiveApprovalCoordinator, PairKey
from contextbroker.authz.engine import PolicyEngine
from contextbroker.authz.policy import BrokerPolicy, load_broker_policy
from contextbroker.core.errors import (
    AuditWriteFailed,
    InvalidRequest,
    NotFound,
    PermissionDenied,
    RequestExpired,
    RetrievalFailed,
    RetrievalUnavailable,
)
from contextbroker.core.models import (
    AuditDecision,
    AuditEntry,
    AuditOutcome,
    ContextBundle,
    ContextRequest,
    RequestStatus,
    ResolutionReason,
    RetrievalResult,
    VerdictKind,
)
from contextbroker.retrieval.engine import RetrievalEngine
from contextbroker.store.audit_log import AuditLog
from contextbroker.store.policy_store import PolicyStore, PolicyVariant
from contextbroker.transport.base import ApprovalDecision, ApprovalResponse

logger = logging.getLogger(__name__)


class _LiveFlow:
    """One in-flight live-approval flow, shared by every call coalesced into it."""

    __slots__ = ("task", "request_id")

    def __init__(self) -> None:
        self.task: Optional["asyncio.Task[RetrievalResult]"] = None
        self.request_id: Optional[str] = None


class ContextBroker:
    def __init__(
        self,
        *,
        store: PolicyStore,
        audit: AuditLog,
        coordinator: LiveApprovalCoordinator,
        retrieval: RetrievalEngine,
        engine: Optional[PolicyEngine] = None,
        policy: Optional[BrokerPolicy] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.coordinator = coordinator
        self.retrieval = retrieval
        self.engine = engine or PolicyEngine(store)
        self.policy = policy or BrokerPolicy()
        self._live: Dict[PairKey, _LiveFlow] = {}

    # ---- lifecycle -------------------------------------------------------------------

    async def start(self) -> None:
        await self.coordinator.start()

    async def stop(self) -> None:
        await self.coordinator.stop()

    # ---- validation ------------------------------------------------------------------

    async def _validate(self, *, requester_id: str, target_id: str, room_id: str, query: str) -> str:
        for name, value in (("requester_id", requester_id), ("target_id", target_id), ("room_id", room_id)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidRequest(f"{name} is required")
        q = (query or "").strip() if isinstance(query, str) else ""
        if not q:
            raise InvalidRequest("query is required")
        if len(q) > self.policy.max_query_chars:
            raise InvalidRequest(f"query exceeds {self.policy.max_query_chars} characters")
        if requester_id == target_id:
            raise InvalidRequest("a participant cannot request their own context")

        for side, pid in (("requester", requester_id), ("target", target_id)):
            try:
                participant = await self.store.get_participant(pid, room_id)
            except NotFound as e:
                raise InvalidRequest(f"unknown {side} {pid!r} in room {room_id!r}") from e
            if not participant.can_share():
                raise InvalidRequest(f"{side} {pid!r} has the viewer role")
        return q

    # ---- audit -----------------------------------------------------------------------

    async def _audit(self, entry: AuditEntry) -> None:
        try:
            await self.audit.record(entry)
        except AuditWriteFailed:
            logger.error(f"Audit write failed for {entry.requester_id} -> {entry.target_id} in {entry.room_id}")
            raise
        except Exception as e:
            logger.error(
                f"Audit write failed for {entry.requester_id} -> {entry.target_id} in {entry.room_id}: {e}",
                exc_info=True,
            )
            raise AuditWriteFailed(f"audit write failed: {e}") from e

    # ---- retrieval -------------------------------------------------------------------

    async def _retrieve_with_retries(self, *, request_id: str, room_id: str, target_id: str, query: str) -> RetrievalResult:
        attempts = max(1, int(self.policy.retrieval_max_attempts))
        base = max(0.0, float(self.policy.retrieval_backoff_seconds))
        last: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.retrieval.retrieve(
                    request_id=request_id,
                    room_id=room_id,
                    target_id=target_id,
                    query=query,
                )
            except RetrievalUnavailable as e:
                last = e
                logger.warning(f"Retrieval attempt {attempt}/{attempts} for {request_id} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(base * (2 ** (attempt - 1)))
        raise RetrievalFailed(f"retrieval failed after {attempts} attempt(s): {last}", attempts=attempts) from last

    async def _retrieve_and_audit(
        self,
        *,
        decision: AuditDecision,
        requester_id: str,
        target_id: str,
        room_id: str,
        query: str,
        request_id: Optional[str] = None,
        verdict_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> RetrievalResult:
        # Auto-approved reads have no ContextRequest; the verdict id stands in for it.
        correlation = request_id or verdict_id or ""
        try:
            result = await self._retrieve_with_retries(
                request_id=correlation, room_id=room_id, target_id=target_id, query=query
            )
        except Exception as e:
            failure = e if isinstance(e, RetrievalFailed) else RetrievalFailed(f"retrieval failed: {e}", attempts=1)
            if failure is not e:
                logger.error(f"Unexpected retrieval error for {correlation}: {e}", exc_info=True)
            await self._audit(
                AuditEntry(
                    room_id=room_id,
                    requester_id=requester_id,
                    target_id=target_id,
                    decision=decision,
                    outcome=AuditOutcome.RETRIEVAL_FAILED,
                    reason=reason,
                    request_id=request_id,
                    verdict_id=verdict_id,
                )
            )
            if failure is e:
                raise
            raise failure from e

        if isinstance(result, ContextBundle):
            outcome, fragment_ids = AuditOutcome.BUNDLE, result.fragment_ids
        else:
            outcome, fragment_ids = AuditOutcome.NO_RELEVANT_CONTEXT, []
        # Bundle is discarded if this raises.
        await self._audit(
            AuditEntry(
                room_id=room_id,
                requester_id=requester_id,
                target_id=target_id,
                decision=decision,
                outcome=outcome,
                reason=reason,
                request_id=request_id,
                verdict_id=verdict_id,
                fragment_ids=fragment_ids,
            )
        )
        return result

    # ---- live approval ---------------------------------------------------------------

    async def _revoked_during_wait(self, granted: ContextRequest) -> Optional[str]:
        """
        Re-read the target's policy after a grant. The store may have changed under us
        (another replica, a direct store write) without going through `update_policy`.
        Returns a denial reason, or None if the grant still holds.
        """
        try:
            verdict = await self.engine.evaluate(
                requester_id=granted.requester_id,
                target_id=granted.target_id,
                room_id=granted.room_id,
                query=granted.query,
            )
        except NotFound:
            logger.info(f"Grant {granted.request_id} dropped: a participant left the room during the wait")
            return ResolutionReason.PARTICIPANT_LEFT.value
        if verdict.kind == VerdictKind.AUTO_DENIED:
            logger.info(f"Grant {granted.request_id} dropped: target policy changed to deny during the wait")
            return ResolutionReason.POLICY_CHANGED.value
        return None

    async def _run_live(self, flow: _LiveFlow, *, requester_id: str, target_id: str, room_id: str, query: str) -> RetrievalResult:
        record, created = await self.coordinator.submit(
            requester_id=requester_id, target_id=target_id, room_id=room_id, query=query
        )
        flow.request_id = record.request_id
        if not created:
            logger.info(f"Joined pending request {record.request_id} submitted outside this broker")

        final = await self.coordinator.wait(record.request_id)
        reason = final.resolution_reason.value if final.resolution_reason else None

        if final.status == RequestStatus.GRANTED:
            revoked = await self._revoked_during_wait(final)
            if revoked is not None:
                await self._audit(
                    AuditEntry(
                        room_id=room_id,
                        requester_id=requester_id,
                        target_id=target_id,
                        decision=AuditDecision.DENIED,
                        outcome=AuditOutcome.PERMISSION_DENIED,
                        reason=revoked,
                        request_id=final.request_id,
                    )
                )
                raise PermissionDenied(revoked, request_id=final.request_id)
            return await self._retrieve_and_audit(
                decision=AuditDecision.GRANTED,
                requester_id=requester_id,
                target_id=target_id,
                room_id=room_id,
                query=query,
                request_id=final.request_id,
                reason=reason,
            )

        if final.status == RequestStatus.EXPIRED:
            await self._audit(
                AuditEntry(
                    room_id=room_id,
                    requester_id=requester_id,
                    target_id=target_id,
                    decision=AuditDecision.EXPIRED,
                    outcome=AuditOutcome.REQUEST_EXPIRED,
                    reason=reason,
                    request_id=final.request_id,
                )
            )
            raise RequestExpired(final.request_id)

        if final.status in (RequestStatus.DENIED, RequestStatus.SUPERSEDED):
            await self._audit(
                AuditEntry(
                    room_id=room_id,
                    requester_id=requester_id,
                    target_id=target_id,
                    decision=AuditDecision.DENIED,
                    outcome=AuditOutcome.PERMISSION_DENIED,
                    reason=reason,
                    request_id=final.request_id,
                )
            )
            raise PermissionDenied(reason or final.status.value, request_id=final.request_id)

        raise RuntimeError(f"request {final.request_id} returned from wait() in state {final.status.value}")

    def _join_or_start_live(self, *, requester_id: str, target_id: str, room_id: str, query: str) -> "asyncio.Task[RetrievalResult]":
        key: PairKey = (room_id, requester_id, target_id)
        flow = self._live.get(key)
        if flow is not None and flow.task is not None and not flow.task.done():
            still_pending = flow.request_id is None or bool(
                self.coordinator.pending_for(room_id=room_id, target_id=target_id, requester_id=requester_id)
            )
            if still_pending:
                logger.info(f"Coalescing {requester_id} -> {target_id} in {room_id} into in-flight request")
                return flow.task

        flow = _LiveFlow()
        # Decoupled from the caller: a cancelled caller must not abort the audit write
        # other coalesced callers depend on.
        flow.task = asyncio.create_task(
            self._run_live(flow, requester_id=requester_id, target_id=target_id, room_id=room_id, query=query)
        )
        self._live[key] = flow

        def _done(t: "asyncio.Task[RetrievalResult]", key: PairKey = key, flow: _LiveFlow = flow) -> None:
            if self._live.get(key) is flow:
                del self._live[key]
            if not t.cancelled():
                t.exception()  # consumed by waiters; avoids "never retrieved" noise

        flow.task.add_done_callback(_done)
        return flow.task

    # ---- public API ------------------------------------------------------------------

    async def request_context(self, *, requester_id: str, target_id: str, room_id: str, query: str) -> RetrievalResult:
        """
        Read the relevant slice of the target's private context for the requester.

        Returns ContextBundle or NoRelevantContext. Raises InvalidRequest, PermissionDenied,
        RequestExpired, RetrievalFailed or AuditWriteFailed.
        """
        q = await self._validate(requester_id=requester_id, target_id=target_id, room_id=room_id, query=query)
        verdict = await self.engine.evaluate(requester_id=requester_id, target_id=target_id, room_id=room_id, query=q)

        if verdict.kind == VerdictKind.AUTO_DENIED:
            await self._audit(
                AuditEntry(
                    room_id=room_id,
                    requester_id=requester_id,
                    target_id=target_id,
                    decision=AuditDecision.AUTO_DENIED,
                    outcome=AuditOutcome.PERMISSION_DENIED,
                    reason=verdict.reason,
                    verdict_id=verdict.verdict_id,
                )
            )
            raise PermissionDenied(verdict.reason, verdict_id=verdict.verdict_id)

        if verdict.kind == VerdictKind.AUTO_APPROVED:
            return await self._retrieve_and_audit(
                decision=AuditDecision.AUTO_ALLOWED,
                requester_id=requester_id,
                target_id=target_id,
                room_id=room_id,
                query=q,
                verdict_id=verdict.verdict_id,
                reason=verdict.reason,
            )

        if verdict.kind == VerdictKind.NEEDS_LIVE_APPROVAL:
            task = self._join_or_start_live(requester_id=requester_id, target_id=target_id, room_id=room_id, query=q)
            return await asyncio.shield(task)

        raise TypeError(f"unhandled verdict kind: {verdict.kind!r}")

    async def respond(self, request_id: str, *, responder_id: str, decision: ApprovalDecision) -> Tuple[bool, ContextRequest]:
        """Direct ingress for a target's answer; same semantics as a transport response."""
        self.coordinator.get(request_id)
        applied = await self.coordinator.handle_response(
            ApprovalResponse(request_id=request_id, responder_id=responder_id, decision=decision)
        )
        return applied, self.coordinator.get(request_id)

    async def cancel(self, request_id: str, *, requester_id: str) -> Tuple[bool, ContextRequest]:
        cancelled = await self.coordinator.cancel(request_id, requester_id=requester_id)
        return cancelled, self.coordinator.get(request_id)

    def get_request(self, request_id: str) -> ContextRequest:
        return self.coordinator.get(request_id)

    async def update_policy(self, participant_id: str, room_id: str, policy: PolicyVariant) -> List[ContextRequest]:
        """
        Overwrite a participant's policy, then supersede pending inbound requests the
        new policy would auto-deny. Returns the superseded requests.
        """
        await self.store.set(participant_id, room_id, policy)
        superseded: List[ContextRequest] = []
        for rec in self.coordinator.pending_for(room_id=room_id, target_id=participant_id):
            verdict = await self.engine.evaluate(
                requester_id=rec.requester_id, target_id=participant_id, room_id=room_id, query=rec.query
            )
            if verdict.kind != VerdictKind.AUTO_DENIED:
                continue
            superseded.extend(
                await self.coordinator.supersede(
                    room_id=room_id,
                    target_id=participant_id,
                    requester_id=rec.requester_id,
                    reason=ResolutionReason.POLICY_CHANGED,
                )
            )
        if superseded:
            logger.info(f"Policy change by {participant_id} in {room_id} superseded {len(superseded)} pending request(s)")
        return superseded

    async def participant_left(self, participant_id: str, room_id: str) -> List[ContextRequest]:
        """
        Remove the participant (revoking allowlist entries naming it) and supersede every
        pending request where it is the target or the requester.
        """
        await self.store.remove_participant(participant_id, room_id)
        superseded = await self.coordinator.supersede(
            room_id=room_id, target_id=participant_id, reason=ResolutionReason.PARTICIPANT_LEFT
        )
        superseded += await self.coordinator.supersede(
            room_id=room_id, requester_id=participant_id, reason=ResolutionReason.PARTICIPANT_LEFT
        )
        return superseded

    async def audit_trail(self, participant_id: str, room_id: str) -> List[AuditEntry]:
        return await self.audit.query(participant_id, room_id)


async def build_broker_from_env() -> ContextBroker:
    """
    Wire a broker from env.

    Env:
    - STORE_BACKEND=memory|postgres (+ POSTGRES_* / POSTGRES_DSN)
    - TRANSPORT_BACKEND=memory|nats (+ NATS_URL)
    - CONTEXTBROKER_TOPIC_PREFIX
    - broker policy knobs (see authz/policy.py)
    """
    import os

    from contextbroker.retrieval.embeddings import HashingEmbedding
    from contextbroker.retrieval.index import InMemorySimilarityIndex
    from contextbroker.store.audit_log import InMemoryAuditLog, PostgresAuditLog
    from contextbroker.store.config import build_postgres_dsn, load_store_config
    from contextbroker.store.policy_store import InMemoryPolicyStore, PostgresPolicyStore
    from contextbroker.transport.memory import InProcessTransport
    from contextbroker.transport.nats_pubsub import get_transport_from_env, topic_prefix_from_env

    policy = load_broker_policy()
    store_cfg = load_store_config()

    store: PolicyStore
    audit: AuditLog
    if store_cfg.backend == "postgres":
        dsn = build_postgres_dsn(store_cfg)
        if not dsn:
            raise RuntimeError("STORE_BACKEND=postgres but Postgres is not configured (POSTGRES_DSN or POSTGRES_*)")
        store, audit = PostgresPolicyStore(dsn=dsn), PostgresAuditLog(dsn=dsn)
    else:
        store, audit = InMemoryPolicyStore(), InMemoryAuditLog()

    transport_backend = (os.getenv("TRANSPORT_BACKEND") or "").strip().lower() or "memory"
    if transport_backend == "nats":
        transport = await get_transport_from_env()
        await transport.warmup()
    else:
        transport = InProcessTransport()

    embedder = HashingEmbedding()
    coordinator = LiveApprovalCoordinator(
        store=store,
        transport=transport,
        timeout_seconds=policy.approval_timeout_seconds,
        topic_prefix=topic_prefix_from_env(),
    )
    retrieval = RetrievalEngine(
        embedder=embedder,
        index=InMemorySimilarityIndex(dimension=embedder.dimension),
        policy=policy,
    )
    logger.info(
        f"Broker wired: store={store_cfg.backend} transport={transport_backend} "
        f"timeout={policy.approval_timeout_seconds}s threshold={policy.similarity_threshold}"
    )
    return ContextBroker(store=store, audit=audit, coordinator=coordinator, retrieval=retrieval, policy=policy)
