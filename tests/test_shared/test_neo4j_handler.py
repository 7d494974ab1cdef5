"""
Error translation in the Neo4j handler, with a mocked driver.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from neo4j.exceptions import ClientError, DriverError, ServiceUnavailable, SessionExpired

from knowledge_graph.shared.database.neo4j_handler import Neo4jHandler
from knowledge_graph.shared.exceptions import DatabaseConnectionError, StoreFailure


def _handler(run_error: Exception) -> Neo4jHandler:
    session = MagicMock()
    session.run = AsyncMock(side_effect=run_error)
    session.execute_write = AsyncMock(side_effect=run_error)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=session)
    context.__aexit__ = AsyncMock(return_value=False)

    handler = Neo4jHandler("bolt://localhost:7687", "neo4j", "secret")
    handler._driver = MagicMock()
    handler._driver.session.return_value = context
    return handler


class TestErrorTranslation:
    @pytest.mark.parametrize("error", [SessionExpired("gone"), ServiceUnavailable("down")])
    async def test_lost_connection_is_a_connection_error(self, error):
        with pytest.raises(DatabaseConnectionError):
            await _handler(error).run("MATCH (n) RETURN n")

    async def test_cypher_error_is_a_store_failure(self):
        with pytest.raises(StoreFailure, match="Cypher write failed"):
            await _handler(ClientError("bad syntax")).write("MERGE (n)")

    async def test_other_driver_errors_are_store_failures(self):
        with pytest.raises(StoreFailure, match="driver error during query"):
            await _handler(DriverError("result consumed")).run("MATCH (n) RETURN n")

    async def test_not_connected(self):
        handler = Neo4jHandler("bolt://localhost:7687", "neo4j", "secret")
        with pytest.raises(DatabaseConnectionError, match="not connected"):
            await handler.run("RETURN 1")
