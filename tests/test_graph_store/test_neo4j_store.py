"""
Unit tests for the Neo4j graph store.

The Neo4jHandler is mocked: these tests check the Cypher and parameters
the store sends and how it maps rows back, not a live database.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from knowledge_graph.graph_store import Neo4jGraphStore, NodePredicate
from knowledge_graph.shared.exceptions import QueryFailure
from knowledge_graph.shared.models import (
    Direction,
    Edge,
    IndexState,
    Node,
    NodeKind,
    RelationType,
    Repository,
)

REPO = "repo-a"


# ─── Fixtures ────────────────────────────────────────────────


@pytest.fixture
def handler():
    mock = MagicMock()
    mock.run = AsyncMock(return_value=[])
    mock.run_single = AsyncMock(return_value=None)
    mock.write = AsyncMock(return_value=None)
    mock.connect = AsyncMock()
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def store(handler):
    return Neo4jGraphStore(handler, embedding_dimension=8)


def _props(fqn: str, kind: NodeKind = NodeKind.TYPE, **extra) -> dict:
    node = Node.create(kind, fqn.rsplit(".", 1)[-1], fqn, REPO, **extra)
    return node.to_properties()


def _queries(mock: AsyncMock) -> list[str]:
    return [c.args[0] for c in mock.await_args_list]


# ─── Schema ──────────────────────────────────────────────────


class TestSchema:
    async def test_vector_indexes_use_configured_dimension(self, store, handler):
        await store.ensure_indexes()
        queries = _queries(handler.write)

        vector_ddl = [q for q in queries if "VECTOR INDEX" in q]
        assert len(vector_ddl) == 3
        assert all("`vector.dimensions`: 8" in q for q in vector_ddl)
        assert any("type_embedding" in q for q in vector_ddl)
        assert any("REQUIRE n.id IS UNIQUE" in q for q in queries)
        assert all("IF NOT EXISTS" in q for q in queries)

    async def test_connect_and_close_delegate(self, store, handler):
        await store.connect()
        await store.close()
        handler.connect.assert_awaited_once()
        handler.close.assert_awaited_once()


# ─── Writes ──────────────────────────────────────────────────


class TestWrites:
    async def test_upsert_nodes_batches_by_kind(self, store, handler):
        nodes = [
            Node.create(NodeKind.TYPE, "A", "pkg.A", REPO, embedding=[0.1] * 8),
            Node.create(NodeKind.METHOD, "run", "pkg.A.run", REPO),
            Node.placeholder(NodeKind.TYPE, "lib.B", REPO),
        ]
        assert await store.upsert_nodes(nodes) == 3

        assert handler.write.await_count == 2
        for call in handler.write.await_args_list:
            query, params = call.args
            assert "MERGE (n:Entity {id: row.props.id})" in query
            assert "n.unresolved IS NULL OR n.unresolved = true OR row.props.unresolved = false" in query
            labels = {row["props"]["kind"] for row in params["rows"]}
            assert len(labels) == 1
            assert f"SET n:{labels.pop()}" in query

        type_rows = next(
            c.args[1]["rows"] for c in handler.write.await_args_list if "SET n:Type" in c.args[0]
        )
        assert type_rows[0]["embedding"] == [0.1] * 8
        assert type_rows[1]["embedding"] is None
        assert type_rows[1]["props"]["unresolved"] is True
        assert "embedding" not in type_rows[0]["props"]

    async def test_upsert_edges_per_relation_type(self, store, handler):
        edges = [
            Edge("a", "b", RelationType.CALLS),
            Edge("a", "c", RelationType.CALLS),
            Edge("a", "d", RelationType.USES),
        ]
        await store.upsert_edges(edges)

        queries = _queries(handler.write)
        assert len(queries) == 2
        assert any("MERGE (a)-[:CALLS]->(b)" in q for q in queries)
        assert any("MERGE (a)-[:USES]->(b)" in q for q in queries)

    async def test_resolve_placeholders_skips_ambiguous(self, store, handler):
        handler.run.return_value = [
            {"placeholder_id": "p1", "placeholder_fqn": "shop.Invoice",
             "declared_id": "d1", "declared_fqn": "shop.models.Invoice"},
            {"placeholder_id": "p2", "placeholder_fqn": "shop.User",
             "declared_id": "d2", "declared_fqn": "shop.models.User"},
            {"placeholder_id": "p2", "placeholder_fqn": "shop.User",
             "declared_id": "d3", "declared_fqn": "shop.auth.User"},
            {"placeholder_id": "p3", "placeholder_fqn": "lib.Base",
             "declared_id": "d4", "declared_fqn": "shop.Base"},
        ]
        assert await store.resolve_placeholders(REPO) == 1

        delete = handler.write.await_args_list[-1]
        assert "DETACH DELETE p" in delete.args[0]
        assert delete.args[1] == {"ids": ["p1"]}
        rewires = handler.write.await_args_list[:-1]
        assert len(rewires) == len(RelationType)
        assert all(c.args[1] == {"pairs": [{"placeholder": "p1", "declared": "d1"}]} for c in rewires)

    async def test_resolve_placeholders_nothing_to_do(self, store, handler):
        assert await store.resolve_placeholders(REPO) == 0
        handler.write.assert_not_awaited()


# ─── Reads ───────────────────────────────────────────────────


class TestReads:
    async def test_query_parameters(self, store, handler):
        handler.run.return_value = [{"props": _props("shop.Invoice")}]
        nodes = await store.query(NodePredicate(
            kinds=[NodeKind.TYPE], repository_ids=[REPO], name_or_fqn_equals=" Invoice ", limit=5,
        ))

        assert [n.fully_qualified_name for n in nodes] == ["shop.Invoice"]
        query, params = handler.run.await_args.args
        assert "n.nameLower = $equals OR n.fqnLower = $equals" in query
        assert params["equals"] == "invoice"
        assert params["kinds"] == ["Type"]
        assert params["repos"] == [REPO]
        assert params["limit"] == 5
        assert params["include_unresolved"] is False

    async def test_contains_is_null_safe(self, store, handler):
        await store.query(NodePredicate(contains="Pay", contains_fields=("name", "description")))
        query, params = handler.run.await_args.args
        assert "coalesce(n.nameLower CONTAINS $contains, false)" in query
        assert "coalesce(toLower(n.description) CONTAINS $contains, false)" in query
        assert params["contains"] == "pay"

    async def test_role_is_null_safe(self, store, handler):
        await store.query(NodePredicate(role=" Data Model "))
        query, params = handler.run.await_args.args
        assert "coalesce(toLower(n.businessCapability) = $role, false)" in query
        assert "coalesce(toLower(n.domain) = $role, false)" in query
        assert params["role"] == "data model"

    async def test_malformed_predicate_never_reaches_the_database(self, store, handler):
        with pytest.raises(QueryFailure):
            await store.query(NodePredicate(contains="x", contains_fields=("body",)))
        handler.run.assert_not_awaited()

    async def test_scoped_vector_query_filters_before_scoring(self, store, handler):
        handler.run.return_value = [{"props": _props("shop.A"), "score": 0.9}]
        hits = await store.vector_query([0.1] * 8, k=3, repository_ids=[REPO])

        assert hits[0][1] == 0.9
        query, params = handler.run.await_args.args
        assert "n.repositoryId IN $repos" in query
        assert "vector.similarity.cosine" in query
        assert "db.index.vector.queryNodes" not in query
        assert params["repos"] == [REPO]
        assert params["k"] == 3

    async def test_unscoped_vector_query_uses_indexes(self, store, handler):
        handler.run.side_effect = [
            [{"props": _props("shop.A"), "score": 0.7}],
            [{"props": _props("shop.A.run", NodeKind.METHOD), "score": 0.95}],
            [],
        ]
        hits = await store.vector_query([0.1] * 8, k=2)

        assert [n.name for n, _ in hits] == ["run", "A"]
        queries = _queries(handler.run)
        assert len(queries) == 3
        assert all("db.index.vector.queryNodes" in q for q in queries)

    async def test_neighbors_pattern(self, store, handler):
        handler.run.return_value = [
            {"origin": "a", "rel": "CALLS", "props": _props("shop.A.run", NodeKind.METHOD)},
        ]
        hops = await store.neighbors(["a"], [RelationType.CALLS, RelationType.USES], Direction.IN)

        assert hops[0].origin_id == "a"
        assert hops[0].relation == RelationType.CALLS
        query = handler.run.await_args.args[0]
        assert "(a)<-[r:CALLS|USES]-(b:Entity)" in query

    async def test_neighbors_of_nothing(self, store, handler):
        assert await store.neighbors([], [RelationType.CALLS]) == []
        handler.run.assert_not_awaited()

    async def test_get_node_missing(self, store, handler):
        assert await store.get_node("nope") is None

    async def test_projection_excludes_embeddings(self, store, handler):
        handler.run_single.return_value = {"props": _props("shop.A")}
        node = await store.get_node("x")
        assert node.embedding is None
        assert ".embedding" not in handler.run_single.await_args.args[0]


class TestRepositoryRecords:
    async def test_save_drops_null_properties(self, store, handler):
        repository = Repository.for_url("https://github.com/org/shop.git")
        await store.save_repository(repository)

        params = handler.write.await_args.args[1]
        assert params["props"]["id"] == repository.id
        assert params["props"]["normalizedUrl"] == "https://github.com/org/shop"
        assert "lastIndexedCommit" not in params["props"]

    async def test_get_repository(self, store, handler):
        handler.run_single.return_value = {"props": {
            "id": "r1", "url": "https://x/y", "branch": "dev",
            "lastIndexedCommit": "abc", "state": "INDEXED",
        }}
        repository = await store.get_repository("r1")
        assert repository.state == IndexState.INDEXED
        assert repository.last_indexed_commit == "abc"
        assert repository.branch == "dev"
