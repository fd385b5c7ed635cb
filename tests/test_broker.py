from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from contextbroker.approval.coordinator import LiveApprovalCoordinator
from contextbroker.authz.policy import BrokerPolicy
from contextbroker.broker import ContextBroker
from contextbroker.core.errors import (
    AuditWriteFailed,
    EmbeddingUnavailable,
    InvalidRequest,
    PermissionDenied,
    RequestExpired,
    RetrievalFailed,
)
from contextbroker.core.models import (
    AlwaysAllowPolicy,
    AskEachTimePolicy,
    AuditDecision,
    AuditOutcome,
    ContextBundle,
    ContextRequest,
    NeverPolicy,
    NoRelevantContext,
    Participant,
    RequestStatus,
    Role,
)
from contextbroker.retrieval.base import EmbeddingProvider
from contextbroker.retrieval.embeddings import HashingEmbedding
from contextbroker.retrieval.engine import RetrievalEngine
from contextbroker.retrieval.index import InMemorySimilarityIndex
from contextbroker.store.audit_log import AuditLog, InMemoryAuditLog
from contextbroker.store.policy_store import InMemoryPolicyStore, PolicyVariant
from contextbroker.transport.base import ApprovalDecision, ApprovalResponse, prompt_topic, response_topic
from contextbroker.transport.memory import InProcessTransport

ROOM = "r1"


async def _broker(
    *,
    target_policy: Optional[PolicyVariant] = None,
    timeout: float = 1.0,
    embedder: Optional[EmbeddingProvider] = None,
    audit: Optional[AuditLog] = None,
    duplicate_delivery: bool = False,
    max_attempts: int = 3,
) -> ContextBroker:
    """alice is the target (owns one 'auth endpoint' fragment); bob and carol request."""
    policy = BrokerPolicy(
        approval_timeout_seconds=timeout,
        similarity_threshold=0.3,
        retrieval_max_attempts=max_attempts,
        retrieval_backoff_seconds=0.001,
    )
    store = InMemoryPolicyStore()
    await store.upsert_participant(
        Participant(participant_id="alice", room_id=ROOM, policy=target_policy or AskEachTimePolicy())
    )
    await store.upsert_participant(Participant(participant_id="bob", room_id=ROOM))
    await store.upsert_participant(Participant(participant_id="carol", room_id=ROOM))
    await store.upsert_participant(Participant(participant_id="vic", room_id=ROOM, role=Role.VIEWER))

    transport = InProcessTransport(duplicate_delivery=duplicate_delivery)
    hashing = HashingEmbedding()
    index = InMemorySimilarityIndex(dimension=hashing.dimension)
    retrieval = RetrievalEngine(embedder=embedder if embedder is not None else hashing, index=index, policy=policy)
    vec = hashing.embed_sync("auth endpoint lives at login")
    index.add(fragment_id="f-alice", room_id=ROOM, owner_id="alice", content="auth endpoint lives at login", vector=vec)
    # Same words, different owner: must never leak into alice's bundles.
    index.add(fragment_id="f-carol", room_id=ROOM, owner_id="carol", content="auth endpoint lives at login", vector=vec)

    broker = ContextBroker(
        store=store,
        audit=audit if audit is not None else InMemoryAuditLog(),
        coordinator=LiveApprovalCoordinator(store=store, transport=transport, timeout_seconds=timeout),
        retrieval=retrieval,
        policy=policy,
    )
    await broker.start()
    return broker


async def _pending(broker: ContextBroker, *, requester: str = "bob", n: int = 1) -> List[ContextRequest]:
    for _ in range(400):
        recs = broker.coordinator.pending_for(room_id=ROOM, target_id="alice", requester_id=requester)
        if len(recs) >= n:
            return recs
        await asyncio.sleep(0.005)
    raise AssertionError("request never became pending")


def _ask(broker: ContextBroker, requester: str = "bob", query: str = "auth endpoint"):  # type: ignore[no-untyped-def]
    return broker.request_context(requester_id=requester, target_id="alice", room_id=ROOM, query=query)


class _CountingRetrieval(RetrievalEngine):
    def __init__(self, inner: RetrievalEngine) -> None:
        super().__init__(embedder=inner.embedder, index=inner.index, policy=inner.policy)
        self.calls = 0

    async def retrieve(self, **kw):  # type: ignore[no-untyped-def]
        self.calls += 1
        return await super().retrieve(**kw)


def test_never_policy_denies_every_requester_without_retrieval() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=NeverPolicy())
        counting = _CountingRetrieval(broker.retrieval)
        broker.retrieval = counting
        errors = []
        for requester in ("bob", "carol", "bob"):
            with pytest.raises(PermissionDenied) as ei:
                await _ask(broker, requester)
            errors.append(ei.value)
        entries = await broker.audit_trail("alice", ROOM)
        await broker.stop()
        return errors, entries, counting.calls

    errors, entries, calls = asyncio.run(_run())
    assert calls == 0
    assert len(entries) == 3
    assert all(e.decision == AuditDecision.AUTO_DENIED for e in entries)
    assert all(e.outcome == AuditOutcome.PERMISSION_DENIED for e in entries)
    assert [e.verdict_id for e in entries] == [err.verdict_id for err in errors]
    assert all(e.request_id is None for e in entries)
    assert errors[0].reason == "target_policy_never"


def test_always_allow_empty_allowlist_never_reaches_coordinator(monkeypatch) -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=AlwaysAllowPolicy())

        async def _no_submit(**_kw):  # type: ignore[no-untyped-def]
            raise AssertionError("coordinator must not be used")

        monkeypatch.setattr(broker.coordinator, "submit", _no_submit)
        hit = await _ask(broker, "bob")
        miss = await _ask(broker, "carol", query="banana")
        entries = await broker.audit_trail("alice", ROOM)
        await broker.stop()
        return hit, miss, entries

    hit, miss, entries = asyncio.run(_run())
    assert isinstance(hit, ContextBundle)
    assert hit.fragment_ids == ["f-alice"]
    assert hit.fragments[0].owner_id == "alice"
    assert isinstance(miss, (ContextBundle, NoRelevantContext))
    assert [e.decision for e in entries] == [AuditDecision.AUTO_ALLOWED, AuditDecision.AUTO_ALLOWED]
    assert entries[0].outcome == AuditOutcome.BUNDLE
    assert entries[0].fragment_ids == ["f-alice"]
    assert entries[0].verdict_id and entries[0].request_id is None


def test_allowlist_x_auto_approved_y_routed_to_live_approval() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=AlwaysAllowPolicy(allowlist=frozenset({"bob"})))
        x = await _ask(broker, "bob")
        y_task = asyncio.create_task(_ask(broker, "carol"))
        (rec,) = await _pending(broker, requester="carol")
        await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.DENY)
        with pytest.raises(PermissionDenied) as ei:
            await y_task
        entries = await broker.audit_trail("alice", ROOM)
        await broker.stop()
        return x, ei.value, rec, entries

    x, err, rec, entries = asyncio.run(_run())
    assert isinstance(x, ContextBundle)
    assert err.request_id == rec.request_id
    assert err.reason == "denied_by_target"
    assert [e.decision for e in entries] == [AuditDecision.AUTO_ALLOWED, AuditDecision.DENIED]
    assert entries[1].request_id == rec.request_id


def test_ask_each_time_grant_over_transport_returns_bundle() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(timeout=2.0)
        transport = broker.coordinator.transport
        inbox = await transport.subscribe(prompt_topic(room_id=ROOM, participant_id="alice"))

        async def _target_ui() -> None:
            async for event in inbox:
                if event.get("kind") != "approval_prompt":
                    continue
                await asyncio.sleep(0.05)
                await transport.publish(
                    response_topic(),
                    ApprovalResponse(
                        request_id=event["request_id"], responder_id="alice", decision=ApprovalDecision.GRANT
                    ).model_dump(mode="json"),
                )
                return

        ui = asyncio.create_task(_target_ui())
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await _ask(broker, "bob")
        elapsed = loop.time() - started
        await ui
        await inbox.close()
        entries = await broker.audit_trail("bob", ROOM)
        await broker.stop()
        return result, elapsed, entries

    result, elapsed, entries = asyncio.run(_run())
    assert isinstance(result, ContextBundle)
    assert result.fragment_ids == ["f-alice"]
    assert elapsed < 2.0
    assert len(entries) == 1
    assert entries[0].decision == AuditDecision.GRANTED
    assert entries[0].outcome == AuditOutcome.BUNDLE
    assert entries[0].request_id == result.request_id


def test_ask_each_time_without_response_expires() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(timeout=0.15)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(RequestExpired) as ei:
            await _ask(broker, "bob")
        elapsed = loop.time() - started
        record = broker.get_request(ei.value.request_id)
        entries = await broker.audit_trail("alice", ROOM)
        await broker.stop()
        return elapsed, record, entries

    elapsed, record, entries = asyncio.run(_run())
    assert elapsed >= 0.15
    assert record.status == RequestStatus.EXPIRED
    assert record.resolved_at >= record.deadline_at
    assert len(entries) == 1
    assert entries[0].decision == AuditDecision.EXPIRED
    assert entries[0].outcome == AuditOutcome.REQUEST_EXPIRED


def test_concurrent_calls_for_same_pair_coalesce() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        first = asyncio.create_task(_ask(broker, "bob"))
        second = asyncio.create_task(_ask(broker, "bob", query="auth endpoint again"))
        (rec,) = await _pending(broker)
        await asyncio.sleep(0.02)
        await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.GRANT)
        results = await asyncio.gather(first, second)
        entries = await broker.audit_trail("alice", ROOM)
        prompts = broker.coordinator.transport.events_for(
            prompt_topic(room_id=ROOM, participant_id="alice"), kind="approval_prompt"
        )
        records = list(broker.coordinator._records.values())
        await broker.stop()
        return results, entries, prompts, records

    results, entries, prompts, records = asyncio.run(_run())
    assert results[0] == results[1]
    assert len(records) == 1
    assert len(prompts) == 1
    assert len(entries) == 1
    assert entries[0].decision == AuditDecision.GRANTED


def test_different_requesters_to_same_target_are_independent() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        b = asyncio.create_task(_ask(broker, "bob"))
        c = asyncio.create_task(_ask(broker, "carol"))
        (rb,) = await _pending(broker, requester="bob")
        (rc,) = await _pending(broker, requester="carol")
        await broker.respond(rc.request_id, responder_id="alice", decision=ApprovalDecision.DENY)
        await broker.respond(rb.request_id, responder_id="alice", decision=ApprovalDecision.GRANT)
        bob_result = await b
        with pytest.raises(PermissionDenied):
            await c
        await broker.stop()
        return rb, rc, bob_result

    rb, rc, bob_result = asyncio.run(_run())
    assert rb.request_id != rc.request_id
    assert isinstance(bob_result, ContextBundle)


def test_requester_cancel_wins_over_late_grant() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        cancelled, _ = await broker.cancel(rec.request_id, requester_id="bob")
        applied, after = await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.GRANT)
        with pytest.raises(PermissionDenied) as ei:
            await task
        entries = await broker.audit_trail("bob", ROOM)
        await broker.stop()
        return cancelled, applied, after, ei.value, entries

    cancelled, applied, after, err, entries = asyncio.run(_run())
    assert cancelled is True
    assert applied is False
    assert after.status == RequestStatus.DENIED
    assert err.reason == "cancelled_by_requester"
    assert len(entries) == 1 and entries[0].decision == AuditDecision.DENIED


def test_always_allow_response_pre_approves_future_requests() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=AlwaysAllowPolicy(allowlist=frozenset({"carol"})))
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.ALWAYS_ALLOW)
        first = await task
        second = await _ask(broker, "bob")
        entries = await broker.audit_trail("bob", ROOM)
        await broker.stop()
        return first, second, entries

    first, second, entries = asyncio.run(_run())
    assert isinstance(first, ContextBundle) and isinstance(second, ContextBundle)
    assert [e.decision for e in entries] == [AuditDecision.GRANTED, AuditDecision.AUTO_ALLOWED]


def test_policy_change_to_never_supersedes_pending_request() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        superseded = await broker.update_policy("alice", ROOM, NeverPolicy())
        with pytest.raises(PermissionDenied) as ei:
            await task
        entries = await broker.audit_trail("bob", ROOM)
        await broker.stop()
        return rec, superseded, ei.value, entries

    rec, superseded, err, entries = asyncio.run(_run())
    assert [r.request_id for r in superseded] == [rec.request_id]
    assert superseded[0].status == RequestStatus.SUPERSEDED
    assert err.reason == "policy_changed"
    assert len(entries) == 1 and entries[0].decision == AuditDecision.DENIED


def test_policy_change_that_still_needs_approval_keeps_request_pending() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        superseded = await broker.update_policy("alice", ROOM, AlwaysAllowPolicy(allowlist=frozenset({"carol"})))
        still = broker.get_request(rec.request_id).status
        await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.GRANT)
        result = await task
        await broker.stop()
        return superseded, still, result

    superseded, still, result = asyncio.run(_run())
    assert superseded == []
    assert still == RequestStatus.PENDING
    assert isinstance(result, ContextBundle)


def test_target_leaving_room_supersedes_pending_request() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        await broker.participant_left("alice", ROOM)
        with pytest.raises(PermissionDenied) as ei:
            await task
        with pytest.raises(InvalidRequest):
            await _ask(broker, "bob")
        entries = await broker.audit_trail("bob", ROOM)
        await broker.stop()
        return rec, ei.value, entries

    rec, err, entries = asyncio.run(_run())
    assert err.reason == "participant_left"
    assert err.request_id == rec.request_id
    assert len(entries) == 1


def test_transient_retrieval_failures_are_retried() -> None:
    class _FlakyEmbedder(HashingEmbedding):
        def __init__(self, failures: int) -> None:
            super().__init__()
            self.failures = failures
            self.calls = 0

        async def embed(self, text: str) -> List[float]:
            self.calls += 1
            if self.calls <= self.failures:
                raise EmbeddingUnavailable("warming up")
            return self.embed_sync(text)

    async def _run(failures: int):  # type: ignore[no-untyped-def]
        embedder = _FlakyEmbedder(failures)
        broker = await _broker(target_policy=AlwaysAllowPolicy(), embedder=embedder, max_attempts=3)
        try:
            return await _ask(broker, "bob"), None, embedder.calls, await broker.audit_trail("bob", ROOM)
        except RetrievalFailed as e:
            return None, e, embedder.calls, await broker.audit_trail("bob", ROOM)
        finally:
            await broker.stop()

    result, err, calls, entries = asyncio.run(_run(2))
    assert isinstance(result, ContextBundle)
    assert calls == 3
    assert len(entries) == 1 and entries[0].outcome == AuditOutcome.BUNDLE

    result, err, calls, entries = asyncio.run(_run(10))
    assert result is None
    assert isinstance(err, RetrievalFailed)
    assert err.attempts == 3
    assert calls == 3
    assert len(entries) == 1
    assert entries[0].decision == AuditDecision.AUTO_ALLOWED
    assert entries[0].outcome == AuditOutcome.RETRIEVAL_FAILED
    assert entries[0].fragment_ids == []


class _FailingAudit(InMemoryAuditLog):
    async def record(self, entry) -> None:  # type: ignore[no-untyped-def]
        raise ConnectionError("audit db down")


def test_audit_write_failure_discards_bundle() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=AlwaysAllowPolicy(), audit=_FailingAudit())
        # An empty log is falsy; the broker must still hold the one passed in.
        assert isinstance(broker.audit, _FailingAudit)
        try:
            with pytest.raises(AuditWriteFailed):
                await _ask(broker, "bob")
        finally:
            await broker.stop()

    asyncio.run(_run())


def test_audit_write_failure_on_denial_path_is_still_fatal() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=NeverPolicy(), audit=_FailingAudit())
        assert isinstance(broker.audit, _FailingAudit)
        try:
            with pytest.raises(AuditWriteFailed):
                await _ask(broker, "bob")
        finally:
            await broker.stop()

    asyncio.run(_run())


@pytest.mark.parametrize(
    "requester,target,room,query",
    [
        ("alice", "alice", ROOM, "q"),  # self-request
        ("bob", "alice", ROOM, "   "),  # empty query
        ("bob", "alice", ROOM, "x" * 5000),  # over the query cap
        ("ghost", "alice", ROOM, "q"),  # unknown requester
        ("bob", "ghost", ROOM, "q"),  # unknown target
        ("bob", "alice", "other-room", "q"),  # not in that room
        ("vic", "alice", ROOM, "q"),  # viewer requester
        ("bob", "vic", ROOM, "q"),  # viewer target
        ("", "alice", ROOM, "q"),
    ],
)
def test_invalid_requests_rejected_before_any_state_change(
    requester: str, target: str, room: str, query: str
) -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=AlwaysAllowPolicy())
        try:
            with pytest.raises(InvalidRequest):
                await broker.request_context(requester_id=requester, target_id=target, room_id=room, query=query)
            return len(broker.audit), broker.coordinator.pending_for(room_id=ROOM, target_id="alice")
        finally:
            await broker.stop()

    n_entries, pending = asyncio.run(_run())
    assert n_entries == 0
    assert pending == []


def test_audit_symmetry_for_resolved_request() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(timeout=0.05)
        with pytest.raises(RequestExpired):
            await _ask(broker, "bob")
        requester_view = await broker.audit_trail("bob", ROOM)
        target_view = await broker.audit_trail("alice", ROOM)
        bystander_view = await broker.audit_trail("carol", ROOM)
        await broker.stop()
        return requester_view, target_view, bystander_view

    requester_view, target_view, bystander_view = asyncio.run(_run())
    assert [e.entry_id for e in requester_view] == [e.entry_id for e in target_view]
    assert len(requester_view) == 1
    assert bystander_view == []


def test_bundle_redacts_credentials() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=AlwaysAllowPolicy())
        await broker.retrieval.ingest(
            room_id=ROOM,
            owner_id="alice",
            content="deploy token=ghs_abcdefghijklmnopqrstuv1234",
            fragment_id="f-secret",
        )
        result = await _ask(broker, "bob", query="deploy token")
        await broker.stop()
        return result

    result = asyncio.run(_run())
    assert isinstance(result, ContextBundle)
    frag = next(f for f in result.fragments if f.fragment_id == "f-secret")
    assert "ghs_abcdefghijklmnopqrstuv1234" not in frag.content
    assert "[REDACTED:" in frag.content


def test_duplicate_transport_delivery_applies_one_response() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(duplicate_delivery=True)
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        await broker.coordinator.transport.publish(
            response_topic(),
            ApprovalResponse(
                request_id=rec.request_id, responder_id="alice", decision=ApprovalDecision.GRANT
            ).model_dump(mode="json"),
        )
        result = await task
        await asyncio.sleep(0.01)
        entries = await broker.audit_trail("bob", ROOM)
        anomalies = dict(broker.coordinator.anomalies)
        await broker.stop()
        return result, entries, anomalies

    result, entries, anomalies = asyncio.run(_run())
    assert isinstance(result, ContextBundle)
    assert len(entries) == 1
    assert anomalies.get("duplicate_or_late") == 1


def test_cancelled_caller_does_not_lose_the_audit_entry() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        task.cancel()
        await asyncio.sleep(0)
        await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.DENY)
        for _ in range(100):
            entries = await broker.audit_trail("bob", ROOM)
            if entries:
                break
            await asyncio.sleep(0.005)
        await broker.stop()
        return task, entries

    task, entries = asyncio.run(_run())
    assert task.cancelled()
    assert len(entries) == 1
    assert entries[0].decision == AuditDecision.DENIED


def test_departure_of_only_allowlisted_requester_does_not_open_context() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker(target_policy=AlwaysAllowPolicy(allowlist=frozenset({"bob"})))
        await broker.participant_left("bob", ROOM)
        task = asyncio.create_task(_ask(broker, "carol"))
        (rec,) = await _pending(broker, requester="carol")
        await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.DENY)
        with pytest.raises(PermissionDenied):
            await task
        entries = await broker.audit_trail("carol", ROOM)
        await broker.stop()
        return entries

    entries = asyncio.run(_run())
    assert [e.decision for e in entries] == [AuditDecision.DENIED]


def test_policy_written_straight_to_store_during_wait_overrides_grant() -> None:
    async def _run():  # type: ignore[no-untyped-def]
        broker = await _broker()
        counting = _CountingRetrieval(broker.retrieval)
        broker.retrieval = counting
        task = asyncio.create_task(_ask(broker, "bob"))
        (rec,) = await _pending(broker)
        # Bypasses update_policy, as another replica sharing the store would.
        await broker.store.set("alice", ROOM, NeverPolicy())
        applied, _ = await broker.respond(rec.request_id, responder_id="alice", decision=ApprovalDecision.GRANT)
        with pytest.raises(PermissionDenied) as ei:
            await task
        entries = await broker.audit_trail("bob", ROOM)
        await broker.stop()
        return applied, ei.value, entries, counting.calls, rec

    applied, err, entries, calls, rec = asyncio.run(_run())
    assert applied is True
    assert err.reason == "policy_changed"
    assert err.request_id == rec.request_id
    assert calls == 0
    assert len(entries) == 1
    assert entries[0].decision == AuditDecision.DENIED
    assert entries[0].outcome == AuditOutcome.PERMISSION_DENIED
