"""
Neo4j Connection Handler

Owns the single async driver used by the graph store. Credentials come from
arguments or the environment (.env). Driver errors are translated into the
store exception hierarchy here, so callers only ever see StoreFailure or
DatabaseConnectionError.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from neo4j import AsyncGraphDatabase, AsyncDriver
from neo4j.exceptions import DriverError, Neo4jError, ServiceUnavailable, SessionExpired

from knowledge_graph.shared.exceptions import DatabaseConnectionError, StoreFailure

load_dotenv()

logger = logging.getLogger("knowledge-graph.neo4j_handler")


class Neo4jHandler:
    """
    Async Neo4j driver wrapper.

    Usage
    -----
    async with Neo4jHandler() as handler:        # NEO4J_* from .env
        rows = await handler.run("MATCH (n:Entity) RETURN n.name AS name LIMIT 5")
        await handler.write("MERGE (r:Repository {id: $id})", {"id": "abc"})
    """

    def __init__(
        self,
        uri: str | None = None,
        username: str | None = None,
        password: str | None = None,
        database: str | None = None,
    ):
        self._uri = uri or os.getenv("NEO4J_URI")
        self._username = username or os.getenv("NEO4J_USERNAME")
        self._password = password or os.getenv("NEO4J_PASSWORD")
        self._database = database or os.getenv("NEO4J_DATABASE", "neo4j")
        self._driver: AsyncDriver | None = None

        missing = [
            env for env, value in (
                ("NEO4J_URI", self._uri),
                ("NEO4J_USERNAME", self._username),
                ("NEO4J_PASSWORD", self._password),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Neo4j settings missing (env or argument): {', '.join(missing)}")

    # ─── Lifecycle ──────────────────────────────────────────

    async def connect(self) -> "Neo4jHandler":
        """Create the driver and verify connectivity (idempotent).

        Raises:
            DatabaseConnectionError: the database cannot be reached.
        """
        if self._driver is not None:
            return self

        driver = AsyncGraphDatabase.driver(self._uri, auth=(self._username, self._password))
        try:
            await driver.verify_connectivity()
        except Exception as exc:
            await driver.close()
            raise DatabaseConnectionError(f"Cannot reach Neo4j at {self._uri}: {exc}") from exc
        self._driver = driver
        logger.info("Connected to Neo4j at %s (db=%s)", self._uri, self._database)
        return self

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("Neo4j connection closed")

    async def __aenter__(self) -> "Neo4jHandler":
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @asynccontextmanager
    async def _session(self, action: str):
        if self._driver is None:
            raise DatabaseConnectionError("Neo4jHandler is not connected, call connect() first")
        try:
            async with self._driver.session(database=self._database) as session:
                yield session
        except (ServiceUnavailable, SessionExpired) as exc:
            raise DatabaseConnectionError(f"Neo4j unavailable: {exc}") from exc
        except Neo4jError as exc:
            raise StoreFailure(f"Cypher {action} failed: {exc}") from exc
        except DriverError as exc:
            raise StoreFailure(f"Neo4j driver error during {action}: {exc}") from exc

    # ─── Query helpers ──────────────────────────────────────

    async def run(self, query: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a read query and return every record as a dict."""
        async with self._session("query") as session:
            result = await session.run(query, params or {})
            return [record.data() async for record in result]

    async def run_single(self, query: str, params: dict[str, Any] | None = None) -> dict | None:
        rows = await self.run(query, params)
        return rows[0] if rows else None

    async def write(self, query: str, params: dict[str, Any] | None = None) -> None:
        """Run a write in a managed transaction; the driver retries transient
        errors such as deadlocks between concurrent MERGE batches."""

        async def _work(tx) -> None:
            result = await tx.run(query, params or {})
            await result.consume()

        async with self._session("write") as session:
            await session.execute_write(_work)
