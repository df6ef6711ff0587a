"""
Schema migrations for the user store.

Files in `migrations/` are named `NNN_description.sql` and applied in number
order, one transaction each, under a Postgres advisory lock so instances that
start together migrate once. Applied files are recorded with a checksum and
must not change afterwards.

After migrating, the unique constraints PostgresUserStore relies on to tell
duplicate usernames, emails, display names and provider identities apart are
checked to exist on `users`.
"""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import psycopg

from tycoon.storage.config import DatabaseConfig, load_database_config
from tycoon.storage.postgres_users import UNIQUE_CONSTRAINTS

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
MIGRATION_LOCK_KEY = 741852963741  # bigint, pg_advisory_lock

_FILENAME = re.compile(r"^(\d{3})_[a-z0-9_]+\.sql$")


class SchemaError(RuntimeError):
    """Migration files or the migrated schema are not what the user store expects."""


@dataclass(frozen=True)
class Migration:
    version: str  # file stem, e.g. "001_users"
    checksum: str
    sql: str


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    if not directory.is_dir():
        return []
    seen: Dict[str, str] = {}
    migrations: List[Migration] = []
    for p in sorted(directory.glob("*.sql")):
        m = _FILENAME.match(p.name)
        if m is None:
            raise SchemaError(f"Migration file name must look like 001_name.sql: {p.name}")
        if m.group(1) in seen:
            raise SchemaError(f"Migrations {seen[m.group(1)]} and {p.name} share number {m.group(1)}")
        seen[m.group(1)] = p.name
        raw = p.read_bytes()
        migrations.append(Migration(version=p.stem, checksum=hashlib.sha256(raw).hexdigest(), sql=raw.decode("utf-8")))
    return migrations


def missing_user_constraints(conn) -> List[str]:
    """Unique constraints from UNIQUE_CONSTRAINTS that `users` does not have (all of them if there is no table)."""
    rows = conn.execute(
        "SELECT conname FROM pg_constraint WHERE conrelid = to_regclass('users') AND contype = 'u';"
    ).fetchall()
    present = {str(r[0]) for r in rows}
    return sorted(name for name in UNIQUE_CONSTRAINTS if name not in present)


def _connect(dsn: str):
    return psycopg.connect(dsn)


def apply_migrations(*, dsn: str, migrations: Optional[Iterable[Migration]] = None) -> List[str]:
    """
    Apply pending migrations and verify the resulting `users` table.

    Returns the versions applied by this call (empty when up to date).

    Raises:
        SchemaError: an applied file was edited, or `users` lacks a unique constraint
    """
    migs = list(migrations) if migrations is not None else load_migrations()
    applied_now: List[str] = []

    with _connect(dsn) as conn:
        conn.execute("SELECT pg_advisory_lock(%s);", (MIGRATION_LOCK_KEY,))
        try:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                " version text PRIMARY KEY,"
                " checksum text NOT NULL,"
                " applied_at timestamptz NOT NULL DEFAULT now());"
            )
            recorded = dict(conn.execute("SELECT version, checksum FROM schema_migrations;").fetchall())

            for m in migs:
                if m.version in recorded:
                    if recorded[m.version] != m.checksum:
                        raise SchemaError(f"Migration {m.version} was edited after it was applied")
                    continue
                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(
                        "INSERT INTO schema_migrations (version, checksum) VALUES (%s, %s);",
                        (m.version, m.checksum),
                    )
                logger.info("Applied migration %s", m.version)
                applied_now.append(m.version)

            missing = missing_user_constraints(conn)
            if missing:
                raise SchemaError(f"users table is missing unique constraint(s): {', '.join(missing)}")
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s);", (MIGRATION_LOCK_KEY,))

    return applied_now


def maybe_auto_migrate(cfg: Optional[DatabaseConfig] = None) -> Optional[List[str]]:
    """Migrate on startup when DB_AUTO_MIGRATE is on and Postgres is configured; None when skipped."""
    cfg = cfg or load_database_config()
    if not cfg.auto_migrate or not cfg.dsn:
        return None
    return apply_migrations(dsn=cfg.dsn)
