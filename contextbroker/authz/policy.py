from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


@dataclass(frozen=True)
class BrokerPolicy:
    # Live approval
    approval_timeout_seconds: float = 30.0

    # Retrieval caps
    similarity_threshold: float = 0.7
    max_results: int = 5
    retrieval_max_attempts: int = 3
    retrieval_backoff_seconds: float = 0.2

    # Input limits
    max_query_chars: int = 2000

    # Redaction
    redact_sensitive: bool = True
    redact_infrastructure: bool = False  # private IPs


def load_broker_policy() -> BrokerPolicy:
    """
    Load broker policy from env (ConfigMap/Secret friendly).

    Recommended vars:
    - APPROVAL_TIMEOUT_SECONDS=30
    - RETRIEVAL_SIMILARITY_THRESHOLD=0.7
    - RETRIEVAL_MAX_RESULTS=5
    - RETRIEVAL_MAX_ATTEMPTS=3
    - RETRIEVAL_BACKOFF_SECONDS=0.2
    - CONTEXT_QUERY_MAX_CHARS=2000
    - CONTEXT_REDACT_SENSITIVE=1
    - CONTEXT_REDACT_INFRASTRUCTURE=0
    """

    return BrokerPolicy(
        approval_timeout_seconds=max(1.0, min(_env_float("APPROVAL_TIMEOUT_SECONDS", 30.0), 600.0)),
        similarity_threshold=max(0.0, min(_env_float("RETRIEVAL_SIMILARITY_THRESHOLD", 0.7), 1.0)),
        max_results=max(1, min(_env_int("RETRIEVAL_MAX_RESULTS", 5), 50)),
        retrieval_max_attempts=max(1, min(_env_int("RETRIEVAL_MAX_ATTEMPTS", 3), 10)),
        retrieval_backoff_seconds=max(0.0, min(_env_float("RETRIEVAL_BACKOFF_SECONDS", 0.2), 10.0)),
        max_query_chars=max(16, min(_env_int("CONTEXT_QUERY_MAX_CHARS", 2000), 20000)),
        redact_sensitive=_env_bool("CONTEXT_REDACT_SENSITIVE", True),
        redact_infrastructure=_env_bool("CONTEXT_REDACT_INFRASTRUCTURE", False),
    )
