"""
Schema migrations for the Postgres policy store and audit log.

Migrations are plain SQL files named `NNNN_<name>.sql` under `migrations/`. Each one is
applied once, in version order, inside its own transaction; its sha256 is recorded in
`schema_migrations` and re-checked on every run so an edited, already-applied file is
caught instead of silently diverging. Runs hold a Postgres advisory lock so several
broker replicas starting together apply each migration exactly once.
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from contextbroker.store.config import StoreConfig, _connect, build_postgres_dsn, load_store_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Any fixed bigint; every broker process must use the same one.
MIGRATION_LOCK_KEY = 590213388140

_FILENAME = re.compile(r"^(\d{4})_[a-z0-9_]+\.sql$")


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str
    sql: str


@dataclass(frozen=True)
class MigrationState:
    version: str
    # applied|pending|checksum_mismatch|unknown (in db, no file)
    state: str


def load_migrations(directory: Optional[Path] = None) -> List[Migration]:
    root = directory or MIGRATIONS_DIR
    if not root.exists():
        return []
    out: List[Migration] = []
    seen: Dict[str, Path] = {}
    for p in sorted(root.glob("*.sql")):
        m = _FILENAME.match(p.name)
        if not m:
            raise ValueError(f"Bad migration filename {p.name!r} (expected NNNN_name.sql)")
        number = m.group(1)
        if number in seen:
            raise ValueError(f"Duplicate migration number {number}: {seen[number].name}, {p.name}")
        seen[number] = p
        raw = p.read_bytes()
        out.append(Migration(version=p.stem, path=p, checksum=hashlib.sha256(raw).hexdigest(), sql=raw.decode("utf-8")))
    return out


@contextmanager
def _advisory_lock(conn) -> Iterator[None]:
    conn.execute("SELECT pg_advisory_lock(%s);", (MIGRATION_LOCK_KEY,))
    try:
        yield
    finally:
        conn.execute("SELECT pg_advisory_unlock(%s);", (MIGRATION_LOCK_KEY,))


def _applied_checksums(conn) -> Dict[str, str]:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        " version text PRIMARY KEY,"
        " checksum text NOT NULL,"
        " applied_at timestamptz NOT NULL DEFAULT now());"
    )
    rows = conn.execute("SELECT version, checksum FROM schema_migrations;").fetchall()
    return {str(r[0]): str(r[1]) for r in rows or []}


def _states(migs: List[Migration], applied: Dict[str, str]) -> List[MigrationState]:
    states: List[MigrationState] = []
    for m in migs:
        prev = applied.get(m.version)
        if prev is None:
            states.append(MigrationState(m.version, "pending"))
        elif prev != m.checksum:
            states.append(MigrationState(m.version, "checksum_mismatch"))
        else:
            states.append(MigrationState(m.version, "applied"))
    known = {m.version for m in migs}
    for version in sorted(set(applied) - known):
        states.append(MigrationState(version, "unknown"))
    return states


def migration_status(*, dsn: str, migrations: Optional[Iterable[Migration]] = None) -> List[MigrationState]:
    migs = list(migrations) if migrations is not None else load_migrations()
    with _connect(dsn) as conn:
        return _states(migs, _applied_checksums(conn))


def apply_migrations(
    *,
    dsn: str,
    migrations: Optional[Iterable[Migration]] = None,
) -> Tuple[int, List[str]]:
    """
    Apply pending migrations.

    Returns: (applied_count, applied_versions). Raises RuntimeError before applying
    anything if an already-applied file was edited.
    """
    migs = list(migrations) if migrations is not None else load_migrations()
    done: List[str] = []
    with _connect(dsn) as conn:
        with _advisory_lock(conn):
            applied = _applied_checksums(conn)
            states = _states(migs, applied)
            bad = [s.version for s in states if s.state == "checksum_mismatch"]
            if bad:
                raise RuntimeError(f"Migration checksum mismatch for {', '.join(bad)} (file edited after apply)")
            for s in states:
                if s.state == "unknown":
                    logger.warning(f"Database has migration {s.version} that this build does not know about")

            for m in migs:
                if m.version in applied:
                    continue
                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(
                        "INSERT INTO schema_migrations(version, checksum) VALUES (%s, %s);",
                        (m.version, m.checksum),
                    )
                done.append(m.version)
                logger.info(f"Applied migration {m.version}")
    return len(done), done


def maybe_auto_migrate(cfg: Optional[StoreConfig] = None) -> Tuple[bool, str]:
    """
    Startup hook: migrate when STORE_BACKEND=postgres and DB_AUTO_MIGRATE=1.

    Never raises; returns (did_attempt, message) for the caller to log.
    """
    cfg = cfg or load_store_config()
    if cfg.backend != "postgres":
        return False, "STORE_BACKEND is not postgres"
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        n, versions = apply_migrations(dsn=dsn)
    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        return True, f"Migration failed: {e}"
    if n:
        return True, f"Applied {n} migration(s): {', '.join(versions)}"
    return True, "No pending migrations"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="contextbroker-migrate", description="Apply broker schema migrations")
    parser.add_argument("--status", action="store_true", help="Show per-migration state and exit")
    args = parser.parse_args(argv)

    dsn = build_postgres_dsn(load_store_config())
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2

    if args.status:
        states = migration_status(dsn=dsn)
        for s in states:
            print(f"{s.version}\t{s.state}")
        return 1 if any(s.state == "checksum_mismatch" for s in states) else 0

    n, versions = apply_migrations(dsn=dsn)
    if n:
        print(f"Applied {n} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
