"""
Schema migrations for the operator database.

Applies the forward-only SQL files in migrations/ in version order, each in
its own transaction, and records them in schema_migrations.
"""

import logging
import re
from pathlib import Path
from typing import List, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

CREATE_MIGRATION_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version VARCHAR(16) PRIMARY KEY,
        filename VARCHAR(255) NOT NULL,
        applied_at TIMESTAMP NOT NULL DEFAULT NOW()
    )
"""


def discover_migrations() -> List[Tuple[str, Path]]:
    """
    List migration files as sorted (version, path) pairs.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    found = []
    for path in MIGRATIONS_DIR.iterdir():
        match = MIGRATION_PATTERN.match(path.name)
        if match and path.is_file():
            found.append((match.group(1), path))
    return sorted(found)


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    await conn.execute(CREATE_MIGRATION_TABLE)
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply every migration that has not been applied yet.

    Returns:
        Number of migrations applied.

    Raises:
        asyncpg.PostgresError: If a migration fails. Its transaction is
            rolled back; earlier migrations stay applied.
    """
    async with pool.acquire() as conn:
        applied = await get_applied_versions(conn)

    pending = [(v, p) for v, p in discover_migrations() if v not in applied]
    if not pending:
        logger.info("Database schema is up to date")
        return 0

    for version, path in pending:
        sql = path.read_text(encoding="utf-8")
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(sql)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
                    version,
                    path.name,
                )
        logger.info(f"Applied migration {path.name}")

    return len(pending)
