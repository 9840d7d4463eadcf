import logging
from datetime import UTC, datetime
from pathlib import Path

import lancedb
import pyarrow as pa

from agentloop_core.messages import Message
from agentloop_core.storage.protocols import MessageSearchResult

logger = logging.getLogger(__name__)


def _quote(value: str) -> str:
    return value.replace("'", "''")


class LanceDBMessageIndex:
    """LanceDB implementation of VectorIndex over message text."""

    TABLE_NAME = "messages"

    def __init__(self, path: Path, embedding_dimensions: int = 1536) -> None:
        self._path = path
        self._embedding_dimensions = embedding_dimensions
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None

    async def connect(self) -> None:
        """Connect to LanceDB, creating the messages table if needed."""
        self._path.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self._path))
        schema = pa.schema(
            [
                pa.field("id", pa.string()),
                pa.field("role", pa.string()),
                pa.field("text", pa.string()),
                pa.field("vector", pa.list_(pa.float32(), self._embedding_dimensions)),
                pa.field("thread_id", pa.string()),
                pa.field("resource_id", pa.string()),
                pa.field("created_at", pa.timestamp("us", tz="UTC")),
            ]
        )
        self._table = self._db.create_table(self.TABLE_NAME, schema=schema, exist_ok=True)

    async def close(self) -> None:
        """Close the connection."""
        self._db = None
        self._table = None

    async def add(self, message: Message, vector: list[float]) -> None:
        """Index one message, replacing any earlier vector for its id."""
        if self._table is None:
            raise RuntimeError("Not connected")

        row = {
            "id": message.id,
            "role": message.role,
            "text": message.text,
            "vector": vector,
            "thread_id": message.thread_id or "",
            "resource_id": message.resource_id or "",
            "created_at": message.created_at or datetime.now(UTC),
        }
        data = pa.Table.from_pylist([row], schema=self._table.schema)
        self._table.merge_insert("id").when_matched_update_all().when_not_matched_insert_all().execute(data)

    async def search(
        self,
        query_vector: list[float],
        limit: int = 10,
        resource_id: str | None = None,
        exclude_thread_id: str | None = None,
    ) -> list[MessageSearchResult]:
        """Vector search over indexed messages.

        Args:
            query_vector: Query embedding vector.
            limit: Maximum number of results.
            resource_id: Only search messages of this resource.
            exclude_thread_id: Optional thread to exclude.

        Returns:
            List of MessageSearchResult ordered by similarity.
        """
        if self._table is None:
            raise RuntimeError("Not connected")

        filters = []
        if resource_id is not None:
            filters.append(f"resource_id = '{_quote(resource_id)}'")
        if exclude_thread_id is not None:
            filters.append(f"thread_id != '{_quote(exclude_thread_id)}'")

        query = self._table.search(query_vector).limit(limit)
        if filters:
            query = query.where(" AND ".join(filters), prefilter=True)
        rows = query.to_list()

        return [
            MessageSearchResult(
                message_id=row["id"],
                role=row["role"],
                text=row["text"],
                thread_id=row["thread_id"],
                resource_id=row["resource_id"] or None,
                created_at=row["created_at"],
                score=float(row.get("_distance", 0.0)),
            )
            for row in rows
        ]

    async def delete_by_thread(self, thread_id: str) -> int:
        """Delete all vectors for a thread. Returns count deleted."""
        if self._table is None:
            raise RuntimeError("Not connected")

        predicate = f"thread_id = '{_quote(thread_id)}'"
        count = self._table.count_rows(predicate)
        if count > 0:
            self._table.delete(predicate)
        logger.debug("delete_by_thread thread=%s n=%d", thread_id, count)
        return count
