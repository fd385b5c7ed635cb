from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Protocol, Tuple, Union

from contextbroker.core.errors import NotFound
from contextbroker.core.models import (
    AlwaysAllowPolicy,
    AskEachTimePolicy,
    NeverPolicy,
    Participant,
    Role,
)
from contextbroker.store.config import _connect

logger = logging.getLogger(__name__)

PolicyVariant = Union[NeverPolicy, AskEachTimePolicy, AlwaysAllowPolicy]


class PolicyStore(Protocol):
    """
    Per-(participant, room) sharing policy + allowlist.

    The participant lifecycle belongs to the room service; this store only mirrors
    membership so the broker can validate requests and evaluate policies.
    """

    async def get(self, participant_id: str, room_id: str) -> PolicyVariant:
        """Current policy, with the allowlist folded into AlwaysAllowPolicy. Raises NotFound."""

    async def set(self, participant_id: str, room_id: str, policy: PolicyVariant) -> None:
        """Overwrite the policy (idempotent). Raises NotFound."""

    async def add_allowlist_entry(self, participant_id: str, room_id: str, requester_id: str) -> None:
        """Monotonic set-add. Raises NotFound."""

    async def remove_allowlist_entry(self, participant_id: str, room_id: str, requester_id: str) -> None:
        """Raises NotFound."""

    async def get_participant(self, participant_id: str, room_id: str) -> Participant:
        """Raises NotFound."""

    async def upsert_participant(self, participant: Participant) -> Participant:
        """Mirror a participant record; the stored policy/allowlist are kept when present."""

    async def remove_participant(self, participant_id: str, room_id: str) -> None:
        """Delete the record and revoke allowlist entries naming it in the room. Raises NotFound."""

    async def list_participants(self, room_id: str) -> List[Participant]:
        ...


def _mode_only(policy: PolicyVariant) -> PolicyVariant:
    if isinstance(policy, AlwaysAllowPolicy):
        return AlwaysAllowPolicy()
    return policy


def _initial_allowlist(participant: Participant) -> frozenset:
    allow = set(participant.allowlist)
    if isinstance(participant.policy, AlwaysAllowPolicy):
        allow |= set(participant.policy.allowlist)
    allow.discard(participant.participant_id)
    return frozenset(allow)


def _revoke(participant: Participant, requester_id: str) -> Participant:
    """
    Drop one allowlist entry. An AlwaysAllow policy whose scoped allowlist is emptied by
    revocation falls back to AskEachTime: an empty allowlist means "everyone", and
    losing the last named requester must never widen access.
    """
    if requester_id not in participant.allowlist:
        return participant
    allow = set(participant.allowlist)
    allow.discard(requester_id)
    update: dict = {"allowlist": frozenset(allow)}
    if not allow and isinstance(participant.policy, AlwaysAllowPolicy):
        update["policy"] = AskEachTimePolicy()
        logger.info(
            f"Allowlist of {participant.participant_id} in {participant.room_id} emptied by revocation; "
            f"policy falls back to ask_each_time"
        )
    return participant.model_copy(update=update)


class _Record:
    """One owned record per (participant, room). All mutation goes through its lock."""

    __slots__ = ("participant", "lock")

    def __init__(self, participant: Participant) -> None:
        self.participant = participant
        self.lock = asyncio.Lock()


class InMemoryPolicyStore(PolicyStore):
    """
    Process-local policy store.

    Reads return copies, so no caller ever holds a reference into the store's state.
    """

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], _Record] = {}
        self._membership_lock = asyncio.Lock()

    def _record(self, participant_id: str, room_id: str) -> _Record:
        rec = self._records.get((room_id, participant_id))
        if rec is None:
            raise NotFound(f"participant {participant_id!r} is not in room {room_id!r}")
        return rec

    async def get(self, participant_id: str, room_id: str) -> PolicyVariant:
        return self._record(participant_id, room_id).participant.effective_policy()

    async def set(self, participant_id: str, room_id: str, policy: PolicyVariant) -> None:
        rec = self._record(participant_id, room_id)
        async with rec.lock:
            update: dict = {"policy": _mode_only(policy)}
            if isinstance(policy, AlwaysAllowPolicy):
                update["allowlist"] = frozenset(policy.allowlist)
            rec.participant = rec.participant.model_copy(update=update)
        logger.info(f"Policy for {participant_id} in {room_id} set to {policy.mode}")

    async def add_allowlist_entry(self, participant_id: str, room_id: str, requester_id: str) -> None:
        rec = self._record(participant_id, room_id)
        async with rec.lock:
            allow = set(rec.participant.allowlist)
            allow.add(requester_id)
            rec.participant = rec.participant.model_copy(update={"allowlist": frozenset(allow)})

    async def remove_allowlist_entry(self, participant_id: str, room_id: str, requester_id: str) -> None:
        rec = self._record(participant_id, room_id)
        async with rec.lock:
            rec.participant = _revoke(rec.participant, requester_id)

    async def get_participant(self, participant_id: str, room_id: str) -> Participant:
        return self._record(participant_id, room_id).participant.model_copy(deep=True)

    async def upsert_participant(self, participant: Participant) -> Participant:
        key = (participant.room_id, participant.participant_id)
        async with self._membership_lock:
            rec = self._records.get(key)
            if rec is None:
                rec = _Record(participant.model_copy(update={"allowlist": _initial_allowlist(participant)}))
                rec.participant = rec.participant.model_copy(update={"policy": _mode_only(participant.policy)})
                self._records[key] = rec
                return rec.participant.model_copy(deep=True)
        async with rec.lock:
            rec.participant = rec.participant.model_copy(update={"role": participant.role})
            return rec.participant.model_copy(deep=True)

    async def remove_participant(self, participant_id: str, room_id: str) -> None:
        async with self._membership_lock:
            self._record(participant_id, room_id)
            del self._records[(room_id, participant_id)]
            # Cascade: nobody in the room keeps an allowlist entry for a departed participant.
            for (rid, _pid), rec in self._records.items():
                if rid != room_id or participant_id not in rec.participant.allowlist:
                    continue
                async with rec.lock:
                    rec.participant = _revoke(rec.participant, participant_id)
        logger.info(f"Participant {participant_id} removed from {room_id}")

    async def list_participants(self, room_id: str) -> List[Participant]:
        return [
            rec.participant.model_copy(deep=True)
            for (rid, _pid), rec in sorted(self._records.items(), key=lambda kv: kv[0])
            if rid == room_id
        ]


# Mirror of `_revoke`: owners whose AlwaysAllow allowlist was just emptied by revocation
# fall back to ask_each_time.
_DEMOTE_EMPTIED_ALLOWLISTS = """
UPDATE participants p SET policy_mode = 'ask_each_time', updated_at = now()
WHERE p.room_id = %s
  AND p.participant_id = ANY(%s)
  AND p.policy_mode = 'always_allow'
  AND NOT EXISTS (
    SELECT 1 FROM participant_allowlist a WHERE a.room_id = p.room_id AND a.owner_id = p.participant_id
  );
"""


def _policy_from_mode(mode: str) -> PolicyVariant:
    m = (mode or "").strip().lower()
    if m == "never":
        return NeverPolicy()
    if m == "always_allow":
        return AlwaysAllowPolicy()
    if m == "ask_each_time":
        return AskEachTimePolicy()
    raise ValueError(f"unknown policy mode in store: {mode!r}")


class PostgresPolicyStore(PolicyStore):
    """
    Postgres-backed policy store (see migrations/0001_context_broker.sql).

    psycopg is synchronous here; every call runs in a worker thread so the event loop
    never blocks on the database.
    """

    def __init__(self, *, dsn: str) -> None:
        self.dsn = dsn

    def _load_sync(self, participant_id: str, room_id: str) -> Participant:
        with _connect(self.dsn) as conn:
            row = conn.execute(
                "SELECT role, policy_mode FROM participants WHERE room_id = %s AND participant_id = %s;",
                (room_id, participant_id),
            ).fetchone()
            if not row:
                raise NotFound(f"participant {participant_id!r} is not in room {room_id!r}")
            allow_rows = conn.execute(
                "SELECT requester_id FROM participant_allowlist WHERE room_id = %s AND owner_id = %s;",
                (room_id, participant_id),
            ).fetchall()
        return Participant(
            participant_id=participant_id,
            room_id=room_id,
            role=Role(str(row[0])),
            policy=_policy_from_mode(str(row[1])),
            allowlist=frozenset(str(r[0]) for r in (allow_rows or [])),
        )

    def _set_sync(self, participant_id: str, room_id: str, policy: PolicyVariant) -> None:
        with _connect(self.dsn) as conn:
            with conn.transaction():
                cur = conn.execute(
                    """
                    UPDATE participants SET policy_mode = %s, updated_at = now()
                    WHERE room_id = %s AND participant_id = %s;
                    """,
                    (policy.mode, room_id, participant_id),
                )
                if not getattr(cur, "rowcount", 0):
                    raise NotFound(f"participant {participant_id!r} is not in room {room_id!r}")
                if isinstance(policy, AlwaysAllowPolicy):
                    conn.execute(
                        "DELETE FROM participant_allowlist WHERE room_id = %s AND owner_id = %s;",
                        (room_id, participant_id),
                    )
                    for requester_id in sorted(policy.allowlist):
                        conn.execute(
                            """
                            INSERT INTO participant_allowlist(room_id, owner_id, requester_id)
                            VALUES (%s, %s, %s) ON CONFLICT DO NOTHING;
                            """,
                            (room_id, participant_id, requester_id),
                        )

    def _add_allow_sync(self, participant_id: str, room_id: str, requester_id: str) -> None:
        with _connect(self.dsn) as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT 1 FROM participants WHERE room_id = %s AND participant_id = %s FOR UPDATE;",
                    (room_id, participant_id),
                ).fetchone()
                if not row:
                    raise NotFound(f"participant {participant_id!r} is not in room {room_id!r}")
                conn.execute(
                    """
                    INSERT INTO participant_allowlist(room_id, owner_id, requester_id)
                    VALUES (%s, %s, %s) ON CONFLICT DO NOTHING;
                    """,
                    (room_id, participant_id, requester_id),
                )

    def _remove_allow_sync(self, participant_id: str, room_id: str, requester_id: str) -> None:
        with _connect(self.dsn) as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT 1 FROM participants WHERE room_id = %s AND participant_id = %s;",
                    (room_id, participant_id),
                ).fetchone()
                if not row:
                    raise NotFound(f"participant {participant_id!r} is not in room {room_id!r}")
                removed = conn.execute(
                    "DELETE FROM participant_allowlist WHERE room_id = %s AND owner_id = %s AND requester_id = %s "
                    "RETURNING owner_id;",
                    (room_id, participant_id, requester_id),
                ).fetchall()
                if removed:
                    conn.execute(_DEMOTE_EMPTIED_ALLOWLISTS, (room_id, [participant_id]))

    def _upsert_sync(self, participant: Participant) -> None:
        with _connect(self.dsn) as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO participants(room_id, participant_id, role, policy_mode)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (room_id, participant_id)
                    DO UPDATE SET role = EXCLUDED.role, updated_at = now();
                    """,
                    (participant.room_id, participant.participant_id, participant.role.value, participant.policy.mode),
                )
                for requester_id in sorted(_initial_allowlist(participant)):
                    conn.execute(
                        """
                        INSERT INTO participant_allowlist(room_id, owner_id, requester_id)
                        VALUES (%s, %s, %s) ON CONFLICT DO NOTHING;
                        """,
                        (participant.room_id, participant.participant_id, requester_id),
                    )

    def _remove_sync(self, participant_id: str, room_id: str) -> None:
        with _connect(self.dsn) as conn:
            with conn.transaction():
                cur = conn.execute(
                    "DELETE FROM participants WHERE room_id = %s AND participant_id = %s;",
                    (room_id, participant_id),
                )
                if not getattr(cur, "rowcount", 0):
                    raise NotFound(f"participant {participant_id!r} is not in room {room_id!r}")
                # Owner-side rows go with the FK cascade; requester-side rows are revoked here.
                owners = conn.execute(
                    "DELETE FROM participant_allowlist WHERE room_id = %s AND requester_id = %s RETURNING owner_id;",
                    (room_id, participant_id),
                ).fetchall()
                if owners:
                    conn.execute(_DEMOTE_EMPTIED_ALLOWLISTS, (room_id, sorted({str(r[0]) for r in owners})))

    def _list_sync(self, room_id: str) -> List[Participant]:
        with _connect(self.dsn) as conn:
            rows = conn.execute(
                "SELECT participant_id, role, policy_mode FROM participants WHERE room_id = %s ORDER BY participant_id;",
                (room_id,),
            ).fetchall()
            allow_rows = conn.execute(
                "SELECT owner_id, requester_id FROM participant_allowlist WHERE room_id = %s;",
                (room_id,),
            ).fetchall()
        allow: Dict[str, set] = {}
        for r in allow_rows or []:
            allow.setdefault(str(r[0]), set()).add(str(r[1]))
        return [
            Participant(
                participant_id=str(r[0]),
                room_id=room_id,
                role=Role(str(r[1])),
                policy=_policy_from_mode(str(r[2])),
                allowlist=frozenset(allow.get(str(r[0]), set())),
            )
            for r in rows or []
        ]

    async def get(self, participant_id: str, room_id: str) -> PolicyVariant:
        p = await asyncio.to_thread(self._load_sync, participant_id, room_id)
        return p.effective_policy()

    async def set(self, participant_id: str, room_id: str, policy: PolicyVariant) -> None:
        await asyncio.to_thread(self._set_sync, participant_id, room_id, policy)
        logger.info(f"Policy for {participant_id} in {room_id} set to {policy.mode}")

    async def add_allowlist_entry(self, participant_id: str, room_id: str, requester_id: str) -> None:
        await asyncio.to_thread(self._add_allow_sync, participant_id, room_id, requester_id)

    async def remove_allowlist_entry(self, participant_id: str, room_id: str, requester_id: str) -> None:
        await asyncio.to_thread(self._remove_allow_sync, participant_id, room_id, requester_id)

    async def get_participant(self, participant_id: str, room_id: str) -> Participant:
        return await asyncio.to_thread(self._load_sync, participant_id, room_id)

    async def upsert_participant(self, participant: Participant) -> Participant:
        await asyncio.to_thread(self._upsert_sync, participant)
        return await asyncio.to_thread(self._load_sync, participant.participant_id, participant.room_id)

    async def remove_participant(self, participant_id: str, room_id: str) -> None:
        await asyncio.to_thread(self._remove_sync, participant_id, room_id)
        logger.info(f"Participant {participant_id} removed from {room_id}")

    async def list_participants(self, room_id: str) -> List[Participant]:
        return await asyncio.to_thread(self._list_sync, room_id)
