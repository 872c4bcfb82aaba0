"""
PostgreSQL State Store - asyncpg-backed state persistence.

Stores one JSONB state document per environment plus an apply history.
Each save replaces the whole document inside a single transaction, holding
a transaction-level advisory lock on the environment so that writers in
other processes are serialized too.
"""

import logging
from typing import Any, Dict, List, Optional

import asyncpg

from errors import StateCorruptionError
from migrate import run_migrations
from state import (
    StateRecord,
    StateStore,
    history_row,
    parse_state,
    serialize_state,
    state_digest,
)

logger = logging.getLogger(__name__)


class PostgresStateStore(StateStore):
    """State store backed by PostgreSQL."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ):
        super().__init__()
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("State schema initialized")

    async def load(self, environment: str) -> Dict[str, StateRecord]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            document = await conn.fetchval(
                "SELECT document FROM state_documents WHERE environment = $1",
                environment,
            )
        if document is None:
            return {}
        if not isinstance(document, str):
            raise StateCorruptionError(
                f"State for environment '{environment}' has unexpected type "
                f"{type(document).__name__}"
            )
        return parse_state(environment, document)

    async def _write(self, environment: str, records: Dict[str, StateRecord]) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", environment
                )
                await conn.execute(
                    """
                    INSERT INTO state_documents (environment, document, digest, updated_at)
                    VALUES ($1, $2::jsonb, $3, NOW())
                    ON CONFLICT (environment) DO UPDATE
                    SET document = EXCLUDED.document,
                        digest = EXCLUDED.digest,
                        updated_at = NOW()
                    """,
                    environment,
                    serialize_state(environment, records),
                    state_digest(records),
                )
        logger.debug(f"Saved {len(records)} record(s) for environment '{environment}'")

    async def list_environments(self) -> List[str]:
        """List environments with a stored state document."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT environment FROM state_documents ORDER BY environment"
            )
        return [row["environment"] for row in rows]

    async def record_apply(self, environment: str, summary: Dict[str, Any]) -> None:
        """Record an apply run in history."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO apply_history (
                    environment, success, cancelled, resources_created,
                    resources_updated, resources_replaced, resources_deleted,
                    resources_failed, error_message, duration_seconds
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                environment,
                *history_row(summary).values(),
            )

    async def get_apply_history(
        self, environment: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get the most recent apply runs of an environment."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM apply_history
                WHERE environment = $1
                ORDER BY applied_at DESC
                LIMIT $2
                """,
                environment,
                limit,
            )
        return [dict(row) for row in rows]
