from __future__ import annotations

import asyncio
import logging
from typing import List, Protocol, Tuple

from contextbroker.core.errors import AuditWriteFailed
from contextbroker.core.models import AuditDecision, AuditEntry, AuditOutcome
from contextbroker.store.config import _connect

logger = logging.getLogger(__name__)


class AuditLog(Protocol):
    """
    Append-only record of every context-access decision.

    `record` either durably stores the entry or raises AuditWriteFailed; there is no
    best-effort mode. `query` returns entries naming the participant on either side.
    """

    async def record(self, entry: AuditEntry) -> None:
        ...

    async def query(self, participant_id: str, room_id: str) -> List[AuditEntry]:
        ...


class InMemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self._entries: List[Tuple[int, AuditEntry]] = []
        self._lock = asyncio.Lock()

    async def record(self, entry: AuditEntry) -> None:
        async with self._lock:
            self._entries.append((len(self._entries), entry))
        logger.info(
            f"Audit {entry.decision.value}/{entry.outcome.value} room={entry.room_id} "
            f"requester={entry.requester_id} target={entry.target_id}"
        )

    async def query(self, participant_id: str, room_id: str) -> List[AuditEntry]:
        rows = [(seq, e) for seq, e in self._entries if e.room_id == room_id and e.names(participant_id)]
        rows.sort(key=lambda r: (r[1].created_at, r[0]))
        return [e for _seq, e in rows]

    def __len__(self) -> int:
        return len(self._entries)


class PostgresAuditLog(AuditLog):
    """
    Postgres-backed audit log. INSERT only: the table also rejects UPDATE/DELETE
    at the database level (see migrations/0001_context_broker.sql).
    """

    def __init__(self, *, dsn: str) -> None:
        self.dsn = dsn

    def _insert_sync(self, entry: AuditEntry) -> None:
        with _connect(self.dsn) as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO context_audit_log(
                      entry_id, room_id, requester_id, target_id, decision, outcome,
                      reason, request_id, verdict_id, fragment_ids, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
                    """,
                    (
                        entry.entry_id,
                        entry.room_id,
                        entry.requester_id,
                        entry.target_id,
                        entry.decision.value,
                        entry.outcome.value,
                        entry.reason,
                        entry.request_id,
                        entry.verdict_id,
                        list(entry.fragment_ids),
                        entry.created_at,
                    ),
                )

    def _query_sync(self, participant_id: str, room_id: str) -> List[AuditEntry]:
        with _connect(self.dsn) as conn:
            rows = conn.execute(
                """
                SELECT
                  entry_id::text, room_id, requester_id, target_id, decision, outcome,
                  reason, request_id, verdict_id, COALESCE(fragment_ids, '{}'), created_at
                FROM context_audit_log
                WHERE room_id = %s AND (requester_id = %s OR target_id = %s)
                ORDER BY created_at ASC, seq ASC;
                """,
                (room_id, participant_id, participant_id),
            ).fetchall()

        out: List[AuditEntry] = []
        for r in rows or []:
            out.append(
                AuditEntry(
                    entry_id=str(r[0]),
                    room_id=str(r[1]),
                    requester_id=str(r[2]),
                    target_id=str(r[3]),
                    decision=AuditDecision(str(r[4])),
                    outcome=AuditOutcome(str(r[5])),
                    reason=str(r[6]) if r[6] else None,
                    request_id=str(r[7]) if r[7] else None,
                    verdict_id=str(r[8]) if r[8] else None,
                    fragment_ids=[str(x) for x in (r[9] or [])],
                    created_at=r[10],
                )
            )
        return out

    async def record(self, entry: AuditEntry) -> None:
        try:
            await asyncio.to_thread(self._insert_sync, entry)
        except Exception as e:
            logger.error(f"Audit write failed for entry {entry.entry_id}: {e}", exc_info=True)
            raise AuditWriteFailed(f"audit store unavailable: {e}") from e

    async def query(self, participant_id: str, room_id: str) -> List[AuditEntry]:
        return await asyncio.to_thread(self._query_sync, participant_id, room_id)
