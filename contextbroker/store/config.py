from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_BACKENDS = ("memory", "postgres")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


@dataclass(frozen=True)
class StoreConfig:
    """Where participant policies and the audit log live."""

    # memory|postgres
    backend: str
    db_auto_migrate: bool

    # POSTGRES_DSN wins over the individual parts when both are set.
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]
    postgres_sslmode: Optional[str] = None
    postgres_connect_timeout: int = 5


def load_store_config() -> StoreConfig:
    backend = (_env_str("STORE_BACKEND") or "memory").lower()
    if backend not in _BACKENDS:
        logger.warning(f"Unknown STORE_BACKEND={backend!r}; using the in-memory store")
        backend = "memory"

    try:
        port = int(_env_str("POSTGRES_PORT") or "5432")
    except ValueError:
        port = 5432
    try:
        timeout = max(1, min(int(_env_str("POSTGRES_CONNECT_TIMEOUT") or "5"), 60))
    except ValueError:
        timeout = 5

    return StoreConfig(
        backend=backend,
        db_auto_migrate=_env_bool("DB_AUTO_MIGRATE", False),
        postgres_dsn=_env_str("POSTGRES_DSN"),
        postgres_host=_env_str("POSTGRES_HOST"),
        postgres_port=port,
        postgres_db=_env_str("POSTGRES_DB"),
        postgres_user=_env_str("POSTGRES_USER"),
        postgres_password=_env_str("POSTGRES_PASSWORD"),
        postgres_sslmode=_env_str("POSTGRES_SSLMODE"),
        postgres_connect_timeout=timeout,
    )


def build_postgres_dsn(cfg: StoreConfig) -> Optional[str]:
    """A libpq conninfo for the configured database, or None if Postgres is not configured."""
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # make_conninfo quotes passwords containing spaces or quotes.
    from psycopg.conninfo import make_conninfo  # type: ignore[import-not-found]

    extra = {"sslmode": cfg.postgres_sslmode} if cfg.postgres_sslmode else {}
    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
        connect_timeout=cfg.postgres_connect_timeout,
        **extra,
    )


def _connect(dsn: str):
    # psycopg stays optional for the in-memory backend.
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)
