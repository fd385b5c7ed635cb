from __future__ import annotations

import asyncio
import logging
from collections import Counter, OrderedDict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from contextbroker.core.errors import InvalidRequest, NotFound
from contextbroker.core.models import ContextRequest, RequestStatus, ResolutionReason, utcnow
from contextbroker.store.policy_store import PolicyStore
from contextbroker.transport.base import (
    DEFAULT_TOPIC_PREFIX,
    ApprovalDecision,
    ApprovalPrompt,
    ApprovalResponse,
    ApprovalWithdrawn,
    RealtimeTransport,
    Subscription,
    prompt_topic,
    response_topic,
)

logger = logging.getLogger(__name__)

# (room, requester, target)
PairKey = Tuple[str, str, str]


class _Pending:
    """Live state for one pending request: its completion future and deadline timer."""

    __slots__ = ("future", "timer", "deadline")

    def __init__(self, future: "asyncio.Future[ContextRequest]", timer: asyncio.TimerHandle, deadline: float) -> None:
        self.future = future
        self.timer = timer
        self.deadline = deadline


class LiveApprovalCoordinator:
    """
    Request/response approval protocol over publish/subscribe.

    Requests and responses correlate only by request id:
    - `_records` holds pending requests plus the most recent `max_retained` terminal ones
    - `_pending` maps request id -> live state while the request is pending
    - `_by_pair` coalesces concurrent submissions for the same (room, requester, target)

    Every transition goes through `_resolve`, which is synchronous. On a single event
    loop that makes grant/deny/cancel/timeout races first-processed-wins; the losers
    find the request terminal and become logged no-ops.
    """

    def __init__(
        self,
        *,
        store: PolicyStore,
        transport: RealtimeTransport,
        timeout_seconds: float = 30.0,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        max_retained: int = 10_000,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if max_retained < 1:
            raise ValueError("max_retained must be >= 1")
        self.store = store
        self.transport = transport
        self.timeout_seconds = float(timeout_seconds)
        self.topic_prefix = topic_prefix
        self.max_retained = int(max_retained)

        self._records: Dict[str, ContextRequest] = {}
        # Terminal request ids, oldest first. Only these are ever evicted from `_records`;
        # the audit log is the durable history.
        self._terminal: "OrderedDict[str, None]" = OrderedDict()
        self._pending: Dict[str, _Pending] = {}
        self._by_pair: Dict[PairKey, str] = {}

        self._subscription: Optional[Subscription] = None
        self._consumer: Optional["asyncio.Task[None]"] = None
        self._background: Set["asyncio.Task[Any]"] = set()

        self.anomalies: Counter = Counter()

    # ---- lifecycle -------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the shared response topic and start consuming answers."""
        if self._consumer is not None:
            return
        topic = response_topic(prefix=self.topic_prefix)
        self._subscription = await self.transport.subscribe(topic)
        self._consumer = asyncio.create_task(self._consume(self._subscription))
        logger.info(f"Approval coordinator listening on {topic}")

    async def stop(self) -> None:
        sub, task = self._subscription, self._consumer
        self._subscription, self._consumer = None, None
        if sub is not None:
            await sub.close()
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for t in list(self._background):
            t.cancel()

    async def _consume(self, sub: Subscription) -> None:
        async for event in sub:
            if event.get("kind") != "approval_response":
                logger.debug(f"Ignoring non-response event of kind {event.get('kind')!r}")
                continue
            try:
                resp = ApprovalResponse.model_validate(event)
            except ValidationError as e:
                self._anomaly("malformed_response", str(event.get("request_id") or "?"), f"{e.error_count()} error(s)")
                continue
            try:
                await self.handle_response(resp)
            except Exception as e:
                logger.error(f"Failed to apply response for request {resp.request_id}: {e}", exc_info=True)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _anomaly(self, kind: str, request_id: str, detail: str = "") -> None:
        self.anomalies[kind] += 1
        suffix = f": {detail}" if detail else ""
        logger.warning(f"Approval anomaly ({kind}) for request {request_id}{suffix}")

    # ---- queries ---------------------------------------------------------------------

    def get(self, request_id: str) -> ContextRequest:
        rec = self._records.get(request_id)
        if rec is None:
            raise NotFound(f"unknown context request {request_id!r}")
        return rec

    def pending_for(
        self,
        *,
        room_id: str,
        target_id: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> List[ContextRequest]:
        out: List[ContextRequest] = []
        for request_id in list(self._pending):
            rec = self._records[request_id]
            if rec.room_id != room_id:
                continue
            if target_id is not None and rec.target_id != target_id:
                continue
            if requester_id is not None and rec.requester_id != requester_id:
                continue
            out.append(rec)
        return out

    # ---- submission ------------------------------------------------------------------

    async def submit(
        self,
        *,
        requester_id: str,
        target_id: str,
        room_id: str,
        query: str,
    ) -> Tuple[ContextRequest, bool]:
        """
        Create (or join) the pending request for this pair.

        Returns (request, created). `created=False` means an identical pair was already
        pending and the caller should wait on that request instead of a new one.
        """
        key: PairKey = (room_id, requester_id, target_id)
        existing = self._by_pair.get(key)
        if existing is not None:
            logger.info(f"Coalescing request from {requester_id} to {target_id} into pending {existing}")
            return self._records[existing], False

        loop = asyncio.get_running_loop()
        now = utcnow()
        record = ContextRequest(
            room_id=room_id,
            requester_id=requester_id,
            target_id=target_id,
            query=query,
            created_at=now,
            deadline_at=now + timedelta(seconds=self.timeout_seconds),
        )
        rid = record.request_id
        deadline = loop.time() + self.timeout_seconds
        timer = loop.call_at(deadline, self._on_deadline, rid)
        self._records[rid] = record
        self._pending[rid] = _Pending(loop.create_future(), timer, deadline)
        self._by_pair[key] = rid
        logger.info(f"Live approval {rid} pending: {requester_id} -> {target_id} in {room_id}")

        prompt = ApprovalPrompt(
            request_id=rid,
            room_id=room_id,
            requester_id=requester_id,
            target_id=target_id,
            query=query,
            deadline_at=record.deadline_at,
        )
        try:
            await self.transport.publish(
                prompt_topic(room_id=room_id, participant_id=target_id, prefix=self.topic_prefix),
                prompt.model_dump(mode="json"),
            )
        except Exception as e:
            # Unreachable target: the deadline still bounds the wait.
            logger.error(f"Failed to publish approval prompt for {rid}: {e}", exc_info=True)
        return record, True

    async def wait(self, request_id: str) -> ContextRequest:
        """Suspend until the request is terminal. Safe for several concurrent waiters."""
        rec = self.get(request_id)
        state = self._pending.get(request_id)
        if state is None:
            return rec
        # Shielded: a cancelled waiter must not cancel the shared future.
        return await asyncio.shield(state.future)

    # ---- transitions -----------------------------------------------------------------

    def _resolve(self, request_id: str, status: RequestStatus, reason: ResolutionReason) -> Optional[ContextRequest]:
        state = self._pending.pop(request_id, None)
        if state is None:
            return None
        state.timer.cancel()
        rec = self._records[request_id].model_copy(
            update={"status": status, "resolved_at": utcnow(), "resolution_reason": reason}
        )
        self._records[request_id] = rec
        key: PairKey = (rec.room_id, rec.requester_id, rec.target_id)
        if self._by_pair.get(key) == request_id:
            del self._by_pair[key]
        if not state.future.done():
            state.future.set_result(rec)
        self._retain(request_id)
        logger.info(f"Live approval {request_id} resolved {status.value} ({reason.value})")
        return rec

    def _retain(self, request_id: str) -> None:
        self._terminal[request_id] = None
        while len(self._terminal) > self.max_retained:
            old, _ = self._terminal.popitem(last=False)
            self._records.pop(old, None)
            logger.debug(f"Evicted terminal request {old} from memory")

    def _on_deadline(self, request_id: str) -> None:
        state = self._pending.get(request_id)
        if state is None:
            return
        loop = asyncio.get_running_loop()
        if loop.time() < state.deadline:
            # The loop may run a timer up to one clock tick early; never expire early.
            state.timer = loop.call_at(state.deadline, self._on_deadline, request_id)
            return
        rec = self._resolve(request_id, RequestStatus.EXPIRED, ResolutionReason.TIMED_OUT)
        if rec is not None:
            self._spawn(self._withdraw(rec))

    async def _withdraw(self, rec: ContextRequest) -> None:
        event = ApprovalWithdrawn(
            request_id=rec.request_id,
            room_id=rec.room_id,
            target_id=rec.target_id,
            reason=(rec.resolution_reason.value if rec.resolution_reason else rec.status.value),
        )
        try:
            await self.transport.publish(
                prompt_topic(room_id=rec.room_id, participant_id=rec.target_id, prefix=self.topic_prefix),
                event.model_dump(mode="json"),
            )
        except Exception as e:
            logger.error(f"Failed to withdraw prompt for {rec.request_id}: {e}", exc_info=True)

    async def handle_response(self, resp: ApprovalResponse) -> bool:
        """
        Apply a target's answer. Returns True only if this response resolved the request.

        Duplicate, late, unknown and foreign responses are anomalies, never errors.
        """
        rec = self._records.get(resp.request_id)
        if rec is None:
            self._anomaly("unknown_request", resp.request_id)
            return False
        if resp.responder_id != rec.target_id:
            self._anomaly("foreign_responder", resp.request_id, f"responder={resp.responder_id}")
            return False
        state = self._pending.get(resp.request_id)
        if state is None:
            self._anomaly("duplicate_or_late", resp.request_id, f"already {rec.status.value}")
            return False
        if asyncio.get_running_loop().time() >= state.deadline:
            # Timer is due but has not run yet; the deadline wins.
            self._on_deadline(resp.request_id)
            self._anomaly("duplicate_or_late", resp.request_id, "arrived after deadline")
            return False

        if resp.decision == ApprovalDecision.DENY:
            self._resolve(resp.request_id, RequestStatus.DENIED, ResolutionReason.DENIED_BY_TARGET)
            return True
        if resp.decision == ApprovalDecision.GRANT:
            self._resolve(resp.request_id, RequestStatus.GRANTED, ResolutionReason.GRANTED_BY_TARGET)
            return True
        if resp.decision == ApprovalDecision.ALWAYS_ALLOW:
            self._resolve(resp.request_id, RequestStatus.GRANTED, ResolutionReason.ALWAYS_ALLOWED_BY_TARGET)
            try:
                await self.store.add_allowlist_entry(rec.target_id, rec.room_id, rec.requester_id)
            except Exception as e:
                # The grant itself stands; only the standing pre-approval is lost.
                logger.error(
                    f"Failed to add {rec.requester_id} to {rec.target_id}'s allowlist in {rec.room_id}: {e}",
                    exc_info=True,
                )
            return True
        raise TypeError(f"unhandled approval decision: {resp.decision!r}")

    async def cancel(self, request_id: str, *, requester_id: str) -> bool:
        """Requester withdraws a pending request. Returns False if it was already terminal."""
        rec = self.get(request_id)
        if rec.requester_id != requester_id:
            raise InvalidRequest("only the requester can cancel a context request")
        resolved = self._resolve(request_id, RequestStatus.DENIED, ResolutionReason.CANCELLED_BY_REQUESTER)
        if resolved is None:
            logger.info(f"Cancel of {request_id} ignored: already {rec.status.value}")
            return False
        await self._withdraw(resolved)
        return True

    async def supersede(
        self,
        *,
        room_id: str,
        target_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        reason: ResolutionReason = ResolutionReason.POLICY_CHANGED,
    ) -> List[ContextRequest]:
        """Resolve matching pending requests as superseded (callers treat it as denied)."""
        if target_id is None and requester_id is None:
            raise ValueError("supersede needs a target_id or requester_id filter")
        out: List[ContextRequest] = []
        for rec in self.pending_for(room_id=room_id, target_id=target_id, requester_id=requester_id):
            resolved = self._resolve(rec.request_id, RequestStatus.SUPERSEDED, reason)
            if resolved is not None:
                out.append(resolved)
        for rec in out:
            await self._withdraw(rec)
        return out
