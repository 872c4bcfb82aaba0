"""
Database migration runner for the PostgreSQL state backend.

Applies forward-only SQL migrations from the migrations/ directory. Each
migration runs in its own transaction and its checksum is recorded, so an
already-applied migration that was edited afterwards is detected instead of
silently diverging.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary constant key for pg_advisory_lock; serializes concurrent runners
MIGRATION_LOCK_KEY = 7_310_042


class MigrationError(Exception):
    """Raised when applied migrations no longer match the files on disk."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the state_schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS state_schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations() -> List[Tuple[str, str, Path]]:
    """
    Discover migration files in the migrations directory.

    Returns:
        Sorted list of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    migrations = []
    for entry in sorted(MIGRATIONS_DIR.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append((match.group(1), entry.name, entry))

    return migrations


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map already-applied migration versions to their recorded checksums."""
    rows = await conn.fetch("SELECT version, checksum FROM state_schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


def verify_applied(
    migrations: List[Tuple[str, str, Path]], applied: Dict[str, str]
) -> None:
    """
    Check applied migrations still match the files on disk.

    Raises:
        MigrationError: If an applied migration was modified
    """
    for version, filename, path in migrations:
        recorded = applied.get(version)
        if recorded is None:
            continue
        if recorded != checksum(path.read_text(encoding="utf-8")):
            raise MigrationError(
                f"Migration {filename} was modified after being applied"
            )


async def apply_migration(
    conn: asyncpg.Connection, version: str, filename: str, path: Path
) -> None:
    """Apply a single migration in its own transaction."""
    sql = path.read_text(encoding="utf-8")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO state_schema_migrations (version, filename, checksum) "
            "VALUES ($1, $2, $3)",
            version,
            filename,
            checksum(sql),
        )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Discover and apply all pending migrations in order.

    Holds a session-level advisory lock while running so that two engines
    starting together do not apply the same migration twice.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        MigrationError: If an applied migration was modified.
    """
    all_migrations = discover_migrations()

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_checksums(conn)
            verify_applied(all_migrations, applied)

            pending = [m for m in all_migrations if m[0] not in applied]
            if not pending:
                logger.info("State schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for version, filename, path in pending:
                await apply_migration(conn, version, filename, path)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
