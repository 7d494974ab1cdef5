"""
Neo4j Graph Store

Durable GraphStore backed by Neo4j 5.x through the shared Neo4jHandler.

Every node carries the ``Entity`` label plus its kind label (``Type``,
``Method``, ``Field``, ``Annotation``). Writes are UNWIND batches of MERGE
statements so re-indexing is an idempotent upsert. Relationship and kind
labels are only ever interpolated from the RelationType / NodeKind enums.
"""

import logging
from collections import defaultdict
from typing import Any

from knowledge_graph.graph_store.base import (
    RESOLVABLE_KINDS,
    GraphStore,
    Neighbor,
    NodePredicate,
    placeholder_matches,
)
from knowledge_graph.shared.database import Neo4jHandler
from knowledge_graph.shared.models import Direction, Edge, Node, NodeKind, RelationType, Repository

logger = logging.getLogger("knowledge-graph.graph_store.neo4j")

ENTITY_LABEL = "Entity"
REPOSITORY_LABEL = "Repository"
EMBEDDABLE_KINDS = (NodeKind.TYPE, NodeKind.METHOD, NodeKind.FIELD)

# Selects every stored property except the embedding vector
_NODE_PROJECTION = (
    "{ .id, .kind, .name, .fullyQualifiedName, .repositoryId, .packageName,"
    "  .filePath, .sourceCode, .description, .domain, .businessCapability,"
    "  .typeKind, .signature, .lineStart, .lineEnd, .unresolved }"
)

# Lower-cased, NULL-propagating expressions for substring matching
_FIELD_EXPRESSIONS = {
    "name": "n.nameLower",
    "fully_qualified_name": "n.fqnLower",
    "description": "toLower(n.description)",
    "file_path": "toLower(n.filePath)",
    "signature": "toLower(n.signature)",
}

_WRITE_BATCH = 500


def _vector_index_name(kind: NodeKind) -> str:
    return f"{kind.value.lower()}_embedding"


def _chunks(rows: list, size: int = _WRITE_BATCH):
    for i in range(0, len(rows), size):
        yield rows[i : i + size]


class Neo4jGraphStore(GraphStore):
    """GraphStore over a Neo4jHandler (async driver)."""

    def __init__(self, handler: Neo4jHandler, embedding_dimension: int = 1024):
        self._handler = handler
        self._dimension = embedding_dimension

    async def connect(self) -> None:
        await self._handler.connect()
        logger.info("Neo4jGraphStore ready (via Neo4jHandler)")

    async def close(self) -> None:
        await self._handler.close()

    async def _run(self, query: str, params: dict | None = None) -> list[dict]:
        return await self._handler.run(query, params)

    async def _run_single(self, query: str, params: dict | None = None) -> dict | None:
        return await self._handler.run_single(query, params)

    async def _write(self, query: str, params: dict | None = None) -> None:
        await self._handler.write(query, params)

    # ─── Schema ────────────────────────────────────────────

    async def ensure_indexes(self) -> None:
        """Create constraints, lookup indexes and vector indexes if missing."""
        statements = [
            f"CREATE CONSTRAINT entity_id IF NOT EXISTS FOR (n:{ENTITY_LABEL}) REQUIRE n.id IS UNIQUE",
            f"CREATE CONSTRAINT repository_id IF NOT EXISTS FOR (r:{REPOSITORY_LABEL}) REQUIRE r.id IS UNIQUE",
            f"CREATE INDEX entity_repository IF NOT EXISTS FOR (n:{ENTITY_LABEL}) ON (n.repositoryId)",
            f"CREATE INDEX entity_name_lower IF NOT EXISTS FOR (n:{ENTITY_LABEL}) ON (n.nameLower)",
            f"CREATE INDEX entity_fqn_lower IF NOT EXISTS FOR (n:{ENTITY_LABEL}) ON (n.fqnLower)",
        ]
        for kind in NodeKind:
            label = kind.value
            statements.append(
                f"CREATE INDEX {label.lower()}_name IF NOT EXISTS FOR (n:{label}) ON (n.name)"
            )
            statements.append(
                f"CREATE INDEX {label.lower()}_fqn IF NOT EXISTS FOR (n:{label}) ON (n.fullyQualifiedName)"
            )

        for stmt in statements:
            await self._write(stmt)

        for kind in EMBEDDABLE_KINDS:
            await self._write(
                f"""CREATE VECTOR INDEX {_vector_index_name(kind)} IF NOT EXISTS
                   FOR (n:{kind.value}) ON (n.embedding)
                   OPTIONS {{indexConfig: {{
                     `vector.dimensions`: {int(self._dimension)},
                     `vector.similarity_function`: 'cosine'
                   }}}}"""
            )
        logger.info("Neo4j schema ensured (vector dimension=%d)", self._dimension)

    # ─── Writes ────────────────────────────────────────────

    async def upsert_nodes(self, nodes: list[Node]) -> int:
        by_kind: dict[NodeKind, list[dict[str, Any]]] = defaultdict(list)
        for node in nodes:
            by_kind[node.kind].append({"props": node.to_properties(), "embedding": node.embedding})

        for kind, rows in by_kind.items():
            for batch in _chunks(rows):
                # A placeholder never replaces a real declaration; SET n = props
                # drops properties that the new version no longer has.
                await self._write(
                    f"""
                    UNWIND $rows AS row
                    MERGE (n:{ENTITY_LABEL} {{id: row.props.id}})
                    WITH n, row
                    WHERE n.unresolved IS NULL OR n.unresolved = true OR row.props.unresolved = false
                    SET n = row.props
                    SET n.embedding = row.embedding
                    SET n:{kind.value}
                    """,
                    {"rows": batch},
                )
        written = sum(len(rows) for rows in by_kind.values())
        logger.debug("Upserted %d nodes", written)
        return written

    async def upsert_edges(self, edges: list[Edge]) -> int:
        by_type: dict[RelationType, list[dict[str, str]]] = defaultdict(list)
        for edge in edges:
            by_type[edge.type].append({"source": edge.source_id, "target": edge.target_id})

        present = 0
        for rel, rows in by_type.items():
            for batch in _chunks(rows):
                await self._write(
                    f"""
                    UNWIND $rows AS row
                    MATCH (a:{ENTITY_LABEL} {{id: row.source}})
                    MATCH (b:{ENTITY_LABEL} {{id: row.target}})
                    MERGE (a)-[:{rel.value}]->(b)
                    """,
                    {"rows": batch},
                )
                present += len(batch)
        return present

    async def resolve_placeholders(self, repository_id: str) -> int:
        rows = await self._run(
            f"""
            MATCH (p:{ENTITY_LABEL} {{repositoryId: $repo, unresolved: true}})
            WHERE p.kind IN $kinds
            MATCH (d:{ENTITY_LABEL} {{repositoryId: $repo, kind: p.kind, name: p.name, unresolved: false}})
            RETURN p.id AS placeholder_id, p.fullyQualifiedName AS placeholder_fqn,
                   d.id AS declared_id, d.fullyQualifiedName AS declared_fqn
            """,
            {"repo": repository_id, "kinds": [k.value for k in RESOLVABLE_KINDS]},
        )
        candidates: dict[str, list[str]] = defaultdict(list)
        for row in rows:
            if placeholder_matches(row["placeholder_fqn"], row["declared_fqn"]):
                candidates[row["placeholder_id"]].append(row["declared_id"])
        pairs = [
            {"placeholder": pid, "declared": ids[0]}
            for pid, ids in candidates.items() if len(ids) == 1
        ]
        if not pairs:
            return 0

        for rel in RelationType:
            await self._write(
                f"""
                UNWIND $pairs AS pair
                MATCH (s:{ENTITY_LABEL})-[r:{rel.value}]->(p:{ENTITY_LABEL} {{id: pair.placeholder}})
                MATCH (d:{ENTITY_LABEL} {{id: pair.declared}})
                WHERE s.id <> d.id
                MERGE (s)-[:{rel.value}]->(d)
                """,
                {"pairs": pairs},
            )
        await self._write(
            f"""
            UNWIND $ids AS pid
            MATCH (p:{ENTITY_LABEL} {{id: pid, unresolved: true}})
            DETACH DELETE p
            """,
            {"ids": [p["placeholder"] for p in pairs]},
        )
        logger.info("Resolved %d placeholder nodes in %s", len(pairs), repository_id)
        return len(pairs)

    async def delete_repository(self, repository_id: str) -> int:
        row = await self._run_single(
            f"MATCH (n:{ENTITY_LABEL} {{repositoryId: $repo}}) RETURN count(n) AS total",
            {"repo": repository_id},
        )
        await self._write(
            f"MATCH (n:{ENTITY_LABEL} {{repositoryId: $repo}}) DETACH DELETE n",
            {"repo": repository_id},
        )
        await self._write(
            f"MATCH (r:{REPOSITORY_LABEL} {{id: $repo}}) DELETE r",
            {"repo": repository_id},
        )
        logger.warning("Deleted repository %s from the graph", repository_id)
        return (row or {}).get("total", 0)

    # ─── Reads ─────────────────────────────────────────────

    async def query(self, predicate: NodePredicate) -> list[Node]:
        predicate.validate()
        clauses = [
            "($kinds IS NULL OR n.kind IN $kinds)",
            "($repos IS NULL OR n.repositoryId IN $repos)",
            "($include_unresolved OR coalesce(n.unresolved, false) = false)",
        ]
        if predicate.equals_lower is not None:
            clauses.append("(n.nameLower = $equals OR n.fqnLower = $equals)")
        if predicate.contains_lower is not None:
            field_checks = " OR ".join(
                f"coalesce({_FIELD_EXPRESSIONS[f]} CONTAINS $contains, false)"
                for f in predicate.contains_fields
            )
            clauses.append(f"({field_checks})")
        if predicate.role_lower is not None:
            clauses.append(
                "(coalesce(toLower(n.businessCapability) = $role, false)"
                " OR coalesce(toLower(n.domain) = $role, false))"
            )

        rows = await self._run(
            f"""
            MATCH (n:{ENTITY_LABEL})
            WHERE {' AND '.join(clauses)}
            RETURN n {_NODE_PROJECTION} AS props
            ORDER BY n.name, n.fullyQualifiedName
            LIMIT $limit
            """,
            {
                "kinds": [k.value for k in predicate.kinds] if predicate.kinds else None,
                "repos": list(predicate.repository_ids) if predicate.repository_ids else None,
                "include_unresolved": predicate.include_unresolved,
                "equals": predicate.equals_lower,
                "contains": predicate.contains_lower,
                "role": predicate.role_lower,
                "limit": predicate.limit,
            },
        )
        return [Node.from_properties(row["props"]) for row in rows]

    async def vector_query(
        self,
        embedding: list[float],
        k: int,
        repository_ids: list[str] | None = None,
        kinds: list[NodeKind] | None = None,
    ) -> list[tuple[Node, float]]:
        if k < 1 or not embedding:
            return []
        kind_values = [kind.value for kind in kinds] if kinds else None

        if repository_ids:
            # Scope first, then score: exact cosine over the repository's nodes
            rows = await self._run(
                f"""
                MATCH (n:{ENTITY_LABEL})
                WHERE n.repositoryId IN $repos
                  AND n.embedding IS NOT NULL
                  AND size(n.embedding) = size($embedding)
                  AND ($kinds IS NULL OR n.kind IN $kinds)
                WITH n, vector.similarity.cosine(n.embedding, $embedding) AS score
                RETURN n {_NODE_PROJECTION} AS props, score
                ORDER BY score DESC, n.name
                LIMIT $k
                """,
                {"repos": list(repository_ids), "embedding": embedding, "kinds": kind_values, "k": k},
            )
            return [(Node.from_properties(r["props"]), float(r["score"])) for r in rows]

        results: list[tuple[Node, float]] = []
        for kind in EMBEDDABLE_KINDS:
            if kind_values is not None and kind.value not in kind_values:
                continue
            rows = await self._run(
                f"""
                CALL db.index.vector.queryNodes('{_vector_index_name(kind)}', $k, $embedding)
                YIELD node, score
                RETURN node {_NODE_PROJECTION} AS props, score
                ORDER BY score DESC
                """,
                {"k": k, "embedding": embedding},
            )
            results.extend((Node.from_properties(r["props"]), float(r["score"])) for r in rows)

        results.sort(key=lambda pair: (-pair[1], pair[0].name))
        return results[:k]

    async def get_node(self, node_id: str) -> Node | None:
        row = await self._run_single(
            f"MATCH (n:{ENTITY_LABEL} {{id: $id}}) RETURN n {_NODE_PROJECTION} AS props",
            {"id": node_id},
        )
        return Node.from_properties(row["props"]) if row else None

    async def get_nodes(self, node_ids: list[str]) -> list[Node]:
        if not node_ids:
            return []
        rows = await self._run(
            f"""
            UNWIND $ids AS id
            MATCH (n:{ENTITY_LABEL} {{id: id}})
            RETURN n {_NODE_PROJECTION} AS props
            """,
            {"ids": list(node_ids)},
        )
        return [Node.from_properties(r["props"]) for r in rows]

    async def neighbors(
        self,
        node_ids: list[str],
        relation_types: list[RelationType],
        direction: Direction = Direction.OUT,
    ) -> list[Neighbor]:
        if not node_ids or not relation_types:
            return []
        rel_filter = "|".join(RelationType(r).value for r in relation_types)
        if direction == Direction.OUT:
            pattern = f"(a)-[r:{rel_filter}]->(b:{ENTITY_LABEL})"
        elif direction == Direction.IN:
            pattern = f"(a)<-[r:{rel_filter}]-(b:{ENTITY_LABEL})"
        else:
            pattern = f"(a)-[r:{rel_filter}]-(b:{ENTITY_LABEL})"

        rows = await self._run(
            f"""
            MATCH (a:{ENTITY_LABEL})
            WHERE a.id IN $ids
            MATCH {pattern}
            RETURN DISTINCT a.id AS origin, type(r) AS rel, b {_NODE_PROJECTION} AS props
            ORDER BY origin, rel, props.id
            """,
            {"ids": list(node_ids)},
        )
        return [
            Neighbor(row["origin"], RelationType(row["rel"]), Node.from_properties(row["props"]))
            for row in rows
        ]

    async def count_nodes(self, repository_id: str | None = None) -> int:
        row = await self._run_single(
            f"""
            MATCH (n:{ENTITY_LABEL})
            WHERE $repo IS NULL OR n.repositoryId = $repo
            RETURN count(n) AS total
            """,
            {"repo": repository_id},
        )
        return (row or {}).get("total", 0)

    async def count_edges(self, repository_id: str | None = None) -> int:
        row = await self._run_single(
            f"""
            MATCH (a:{ENTITY_LABEL})-[r]->(:{ENTITY_LABEL})
            WHERE $repo IS NULL OR a.repositoryId = $repo
            RETURN count(r) AS total
            """,
            {"repo": repository_id},
        )
        return (row or {}).get("total", 0)

    # ─── Repository records ────────────────────────────────

    async def get_repository(self, repository_id: str) -> Repository | None:
        row = await self._run_single(
            f"MATCH (r:{REPOSITORY_LABEL} {{id: $id}}) RETURN properties(r) AS props",
            {"id": repository_id},
        )
        return Repository.from_properties(row["props"]) if row else None

    async def save_repository(self, repository: Repository) -> None:
        await self._write(
            f"""
            MERGE (r:{REPOSITORY_LABEL} {{id: $props.id}})
            SET r = $props
            """,
            {"props": {k: v for k, v in repository.to_properties().items() if v is not None}},
        )
