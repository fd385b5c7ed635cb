"""
Internal HTTP surface for the context broker.

The chat/response-generation side calls `POST /api/v1/rooms/{room}/context`; target UIs
answer prompts via the response endpoint (or the realtime transport); the room service
mirrors membership and policy changes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from contextbroker.broker import ContextBroker, build_broker_from_env
from contextbroker.core.errors import (
    AuditWriteFailed,
    BrokerError,
    InvalidRequest,
    NotFound,
    PermissionDenied,
    RequestExpired,
    RetrievalFailed,
)
from contextbroker.core.models import AskEachTimePolicy, ContextBundle, Participant, Role, SharingPolicy
from contextbroker.transport.base import ApprovalDecision

logger = logging.getLogger(__name__)

app = FastAPI(title="contextbroker")

_broker: Optional[ContextBroker] = None
_broker_lock = asyncio.Lock()


async def _get_broker() -> ContextBroker:
    """Return the process-wide broker, building it from env on first use."""
    global _broker
    if _broker is not None:
        return _broker
    async with _broker_lock:
        if _broker is None:
            _broker = await build_broker_from_env()
        return _broker


def _http_error(e: BrokerError) -> HTTPException:
    if isinstance(e, InvalidRequest):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PermissionDenied):
        return HTTPException(
            status_code=403,
            detail={"reason": e.reason, "request_id": e.request_id, "verdict_id": e.verdict_id},
        )
    if isinstance(e, RequestExpired):
        return HTTPException(status_code=408, detail={"reason": "expired", "request_id": e.request_id})
    if isinstance(e, RetrievalFailed):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, AuditWriteFailed):
        return HTTPException(status_code=500, detail="audit write failed")
    return HTTPException(status_code=500, detail=str(e))


class ContextRequestBody(BaseModel):
    requester_id: str
    target_id: str
    query: str


class ApprovalResponseBody(BaseModel):
    responder_id: str
    decision: ApprovalDecision


class CancelBody(BaseModel):
    requester_id: str


class PolicyBody(BaseModel):
    policy: SharingPolicy


class ParticipantBody(BaseModel):
    role: Role = Role.MEMBER
    policy: SharingPolicy = Field(default_factory=AskEachTimePolicy)
    allowlist: FrozenSet[str] = Field(default_factory=frozenset)


class FragmentBody(BaseModel):
    content: str
    fragment_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@app.on_event("startup")
async def _startup_broker() -> None:
    """
    Optional dev behavior: auto-apply DB migrations when DB_AUTO_MIGRATE=1, then start
    the approval response consumer.
    """
    try:
        from contextbroker.store.migrate import maybe_auto_migrate

        did_attempt, msg = await asyncio.to_thread(maybe_auto_migrate)
        if did_attempt:
            logger.info("DB migrations: %s", msg)
    except Exception as e:
        logger.warning("DB migrations: startup auto-migrate failed: %s", str(e))

    broker = await _get_broker()
    await broker.start()


@app.on_event("shutdown")
async def _shutdown_broker() -> None:
    if _broker is not None:
        await _broker.stop()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests."""
    start_time = time.time()
    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.post("/api/v1/rooms/{room_id}/context")
async def request_context(room_id: str, req: ContextRequestBody) -> Dict[str, Any]:
    """
    Ask for the relevant slice of the target's private context.

    May block up to the approval timeout while the target decides.
    """
    broker = await _get_broker()
    try:
        result = await broker.request_context(
            requester_id=req.requester_id,
            target_id=req.target_id,
            room_id=room_id,
            query=req.query,
        )
    except BrokerError as e:
        raise _http_error(e)
    if isinstance(result, ContextBundle):
        return {"status": "bundle", "bundle": result.model_dump(mode="json")}
    return {"status": "no_relevant_context", "result": result.model_dump(mode="json")}


@app.post("/api/v1/context-requests/{request_id}/response")
async def respond(request_id: str, req: ApprovalResponseBody) -> Dict[str, Any]:
    broker = await _get_broker()
    try:
        applied, record = await broker.respond(request_id, responder_id=req.responder_id, decision=req.decision)
    except BrokerError as e:
        raise _http_error(e)
    return {"applied": applied, "request": record.model_dump(mode="json")}


@app.post("/api/v1/context-requests/{request_id}/cancel")
async def cancel(request_id: str, req: CancelBody) -> Dict[str, Any]:
    broker = await _get_broker()
    try:
        cancelled, record = await broker.cancel(request_id, requester_id=req.requester_id)
    except BrokerError as e:
        raise _http_error(e)
    return {"cancelled": cancelled, "request": record.model_dump(mode="json")}


@app.get("/api/v1/context-requests/{request_id}")
async def get_context_request(request_id: str) -> Dict[str, Any]:
    broker = await _get_broker()
    try:
        record = broker.get_request(request_id)
    except BrokerError as e:
        raise _http_error(e)
    return record.model_dump(mode="json")


@app.put("/api/v1/rooms/{room_id}/participants/{participant_id}/policy")
async def update_policy(room_id: str, participant_id: str, req: PolicyBody) -> Dict[str, Any]:
    broker = await _get_broker()
    try:
        superseded = await broker.update_policy(participant_id, room_id, req.policy)
    except BrokerError as e:
        raise _http_error(e)
    return {"ok": True, "superseded": [r.request_id for r in superseded]}


@app.put("/api/v1/rooms/{room_id}/participants/{participant_id}")
async def upsert_participant(room_id: str, participant_id: str, req: ParticipantBody) -> Dict[str, Any]:
    """Membership mirror from the room service. An existing record only has its role updated."""
    broker = await _get_broker()
    participant = Participant(
        participant_id=participant_id,
        room_id=room_id,
        role=req.role,
        policy=req.policy,
        allowlist=req.allowlist,
    )
    stored = await broker.store.upsert_participant(participant)
    return stored.model_dump(mode="json")


@app.delete("/api/v1/rooms/{room_id}/participants/{participant_id}")
async def remove_participant(room_id: str, participant_id: str) -> Dict[str, Any]:
    broker = await _get_broker()
    try:
        superseded = await broker.participant_left(participant_id, room_id)
    except BrokerError as e:
        raise _http_error(e)
    return {"ok": True, "superseded": [r.request_id for r in superseded]}


@app.post("/api/v1/rooms/{room_id}/participants/{participant_id}/fragments")
async def add_fragment(room_id: str, participant_id: str, req: FragmentBody) -> Dict[str, Any]:
    """Dev ingestion path: index one fragment of the participant's private context."""
    broker = await _get_broker()
    try:
        await broker.store.get_participant(participant_id, room_id)
        fragment_id = await broker.retrieval.ingest(
            room_id=room_id,
            owner_id=participant_id,
            content=req.content,
            fragment_id=req.fragment_id,
            timestamp=req.timestamp,
        )
    except BrokerError as e:
        raise _http_error(e)
    except TypeError as e:
        raise HTTPException(status_code=501, detail=str(e))
    return {"fragment_id": fragment_id}


@app.get("/api/v1/rooms/{room_id}/audit")
async def audit_trail(room_id: str, participant_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    broker = await _get_broker()
    entries: List[Any] = await broker.audit_trail(participant_id, room_id)
    return {"entries": [e.model_dump(mode="json") for e in entries]}


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import os

    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting context broker on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
