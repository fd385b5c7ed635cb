"""
Pytest config.

Local imports like `import contextbroker` rely on the repo root being on sys.path. When
invoking a global `pytest` entrypoint without an editable install that doesn't happen
reliably during collection, so we pin the behavior here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _isolate_backends_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Unit tests never talk to Postgres or NATS.

    `build_broker_from_env()` (used by the API server on startup) picks backends from env;
    clear those knobs so a developer shell with STORE_BACKEND=postgres or
    TRANSPORT_BACKEND=nats exported doesn't make tests attempt network connections.
    """
    for name in (
        "STORE_BACKEND",
        "TRANSPORT_BACKEND",
        "DB_AUTO_MIGRATE",
        "POSTGRES_DSN",
        "POSTGRES_HOST",
        "POSTGRES_DB",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_SSLMODE",
        "POSTGRES_CONNECT_TIMEOUT",
        "APPROVAL_TIMEOUT_SECONDS",
        "RETRIEVAL_SIMILARITY_THRESHOLD",
    ):
        monkeypatch.delenv(name, raising=False)
