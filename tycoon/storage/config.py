from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from psycopg.conninfo import make_conninfo


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the `users` table lives. Unset means the in-memory user store."""

    url: Optional[str] = None  # POSTGRES_DSN, used verbatim
    host: Optional[str] = None
    port: int = 5432
    name: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    auto_migrate: bool = False

    @property
    def dsn(self) -> Optional[str]:
        if self.url:
            return self.url
        if not (self.host and self.name and self.user and self.password):
            return None
        # make_conninfo quotes spaces and quotes in passwords.
        return make_conninfo(host=self.host, port=self.port, dbname=self.name, user=self.user, password=self.password)


def _env(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


@lru_cache(maxsize=1)
def load_database_config() -> DatabaseConfig:
    port = _env("POSTGRES_PORT") or "5432"
    return DatabaseConfig(
        url=_env("POSTGRES_DSN"),
        host=_env("POSTGRES_HOST"),
        port=int(port) if port.isdigit() else 5432,
        name=_env("POSTGRES_DB"),
        user=_env("POSTGRES_USER"),
        password=_env("POSTGRES_PASSWORD"),
        auto_migrate=(_env("DB_AUTO_MIGRATE") or "").lower() in ("1", "true", "yes", "on"),
    )
