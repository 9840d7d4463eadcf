"""Kùzu embedded graph database implementation of MemoryStore."""

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import kuzu

from agentloop_core.messages import Message, Thread

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = (
    "m.id, m.role, m.content, m.thread_id, m.resource_id, m.metadata, m.created_at"
)
_THREAD_COLUMNS = "t.id, t.resource_id, t.title, t.metadata, t.created_at, t.updated_at"


def _result_to_dicts(result: kuzu.QueryResult) -> list[dict[str, Any]]:
    """Convert a Kùzu QueryResult to a list of dicts keyed by column name."""
    columns = result.get_column_names()
    rows = []
    while result.has_next():
        values = result.get_next()
        rows.append(dict(zip(columns, values)))
    return rows


def _single(result: kuzu.QueryResult) -> dict[str, Any] | None:
    """Get a single result row as a dict, or None."""
    columns = result.get_column_names()
    if result.has_next():
        values = result.get_next()
        return dict(zip(columns, values))
    return None


def _thread_from_row(row: dict[str, Any]) -> Thread:
    return Thread(
        id=row["t.id"],
        resource_id=row["t.resource_id"],
        title=row["t.title"] or None,
        metadata=json.loads(row["t.metadata"] or "{}"),
        created_at=datetime.fromisoformat(row["t.created_at"]),
        updated_at=datetime.fromisoformat(row["t.updated_at"]),
    )


def _message_from_row(row: dict[str, Any]) -> Message:
    return Message(
        id=row["m.id"],
        role=row["m.role"],
        content=json.loads(row["m.content"] or "[]"),
        thread_id=row["m.thread_id"] or None,
        resource_id=row["m.resource_id"] or None,
        metadata=json.loads(row["m.metadata"] or "{}"),
        created_at=datetime.fromisoformat(row["m.created_at"]) if row["m.created_at"] else None,
    )


class KuzuMemoryStore:
    """Kùzu embedded graph database implementation of MemoryStore.

    Threads and messages are nodes joined by HAS_MESSAGE edges; Resource nodes
    hold resource-scoped working memory. Uses an
    embedded Kùzu database that requires no external server. All operations
    are synchronous in Kùzu and wrapped with asyncio.to_thread().
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: kuzu.Database | None = None
        self._conn: kuzu.Connection | None = None

    async def connect(self) -> None:
        """Connect to the Kùzu database."""
        self._db_path.mkdir(parents=True, exist_ok=True)
        # Kùzu needs a non-existing subpath or existing DB directory
        graph_dir = self._db_path / "kuzu_db"

        def _connect() -> tuple[kuzu.Database, kuzu.Connection]:
            db = kuzu.Database(str(graph_dir))
            conn = kuzu.Connection(db)
            return db, conn

        self._db, self._conn = await asyncio.to_thread(_connect)

    async def close(self) -> None:
        """Close the connection."""
        self._conn = None
        self._db = None

    async def initialize_schema(self) -> None:
        """Create node and relationship tables."""
        if not self._conn:
            raise RuntimeError("Not connected")

        def _init_schema(conn: kuzu.Connection) -> None:
            conn.execute("""
                CREATE NODE TABLE IF NOT EXISTS Thread(
                    id STRING,
                    resource_id STRING,
                    title STRING,
                    metadata STRING,
                    created_at STRING,
                    updated_at STRING,
                    PRIMARY KEY(id)
                )
            """)
            conn.execute("""
                CREATE NODE TABLE IF NOT EXISTS Message(
                    id STRING,
                    role STRING,
                    content STRING,
                    thread_id STRING,
                    resource_id STRING,
                    metadata STRING,
                    created_at STRING,
                    PRIMARY KEY(id)
                )
            """)
            conn.execute("""
                CREATE REL TABLE IF NOT EXISTS HAS_MESSAGE(
                    FROM Thread TO Message,
                    created_at STRING
                )
            """)
            conn.execute("""
                CREATE NODE TABLE IF NOT EXISTS Resource(
                    id STRING,
                    working_memory STRING,
                    updated_at STRING,
                    PRIMARY KEY(id)
                )
            """)

        await asyncio.to_thread(_init_schema, self._conn)

    async def __aenter__(self) -> "KuzuMemoryStore":
        await self.connect()
        await self.initialize_schema()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # =========================================================================
    # Threads
    # =========================================================================

    async def save_thread(self, thread: Thread) -> Thread:
        """Insert or update a thread (upsert by id)."""
        if not self._conn:
            raise RuntimeError("Not connected")

        params = {
            "id": thread.id,
            "resource_id": thread.resource_id,
            "title": thread.title or "",
            "metadata": json.dumps(thread.metadata, default=str),
            "created_at": thread.created_at.isoformat(),
            "updated_at": thread.updated_at.isoformat(),
        }

        def _save(conn: kuzu.Connection) -> None:
            existing = _single(conn.execute("MATCH (t:Thread) WHERE t.id = $id RETURN t.id", {"id": thread.id}))
            if existing:
                conn.execute(
                    """
                    MATCH (t:Thread) WHERE t.id = $id
                    SET t.resource_id = $resource_id,
                        t.title = $title,
                        t.metadata = $metadata,
                        t.updated_at = $updated_at
                    """,
                    {k: v for k, v in params.items() if k != "created_at"},
                )
                return
            conn.execute(
                """
                CREATE (t:Thread {
                    id: $id,
                    resource_id: $resource_id,
                    title: $title,
                    metadata: $metadata,
                    created_at: $created_at,
                    updated_at: $updated_at
                })
                """,
                params,
            )

        await asyncio.to_thread(_save, self._conn)
        logger.debug("save_thread id=%s", thread.id)
        return thread

    async def get_thread_by_id(self, thread_id: str) -> Thread | None:
        """Get a thread by id."""
        if not self._conn:
            raise RuntimeError("Not connected")

        def _get(conn: kuzu.Connection) -> dict[str, Any] | None:
            return _single(
                conn.execute(f"MATCH (t:Thread) WHERE t.id = $id RETURN {_THREAD_COLUMNS}", {"id": thread_id})
            )

        row = await asyncio.to_thread(_get, self._conn)
        return _thread_from_row(row) if row else None

    async def delete_thread(self, thread_id: str) -> None:
        """Delete a thread and its messages."""
        if not self._conn:
            raise RuntimeError("Not connected")

        def _delete(conn: kuzu.Connection) -> None:
            conn.execute("MATCH (t:Thread) WHERE t.id = $id DETACH DELETE t", {"id": thread_id})
            conn.execute("MATCH (m:Message) WHERE m.thread_id = $id DETACH DELETE m", {"id": thread_id})

        await asyncio.to_thread(_delete, self._conn)

    # =========================================================================
    # Messages
    # =========================================================================

    async def save_messages(self, messages: list[Message]) -> list[Message]:
        """Insert or update messages (upsert by id)."""
        if not self._conn:
            raise RuntimeError("Not connected")

        def _save(conn: kuzu.Connection) -> None:
            for message in messages:
                params = {
                    "id": message.id,
                    "role": message.role,
                    "content": json.dumps([p.model_dump() for p in message.content], default=str),
                    "thread_id": message.thread_id or "",
                    "resource_id": message.resource_id or "",
                    "metadata": json.dumps(message.metadata, default=str),
                    "created_at": message.created_at.isoformat() if message.created_at else "",
                }
                existing = _single(
                    conn.execute("MATCH (m:Message) WHERE m.id = $id RETURN m.id", {"id": message.id})
                )
                if existing:
                    conn.execute(
                        """
                        MATCH (m:Message) WHERE m.id = $id
                        SET m.role = $role,
                            m.content = $content,
                            m.thread_id = $thread_id,
                            m.resource_id = $resource_id,
                            m.metadata = $metadata,
                            m.created_at = $created_at
                        """,
                        params,
                    )
                    continue
                conn.execute(
                    """
                    CREATE (m:Message {
                        id: $id,
                        role: $role,
                        content: $content,
                        thread_id: $thread_id,
                        resource_id: $resource_id,
                        metadata: $metadata,
                        created_at: $created_at
                    })
                    """,
                    params,
                )
                if message.thread_id:
                    conn.execute(
                        """
                        MATCH (t:Thread), (m:Message)
                        WHERE t.id = $thread_id AND m.id = $id
                        CREATE (t)-[:HAS_MESSAGE {created_at: $created_at}]->(m)
                        """,
                        {"thread_id": message.thread_id, "id": message.id, "created_at": params["created_at"]},
                    )

        await asyncio.to_thread(_save, self._conn)
        logger.debug("save_messages n=%d", len(messages))
        return messages

    async def list_messages(self, thread_id: str) -> list[Message]:
        """All messages of a thread in chronological order."""
        if not self._conn:
            raise RuntimeError("Not connected")

        def _list(conn: kuzu.Connection) -> list[dict[str, Any]]:
            return _result_to_dicts(
                conn.execute(
                    f"MATCH (m:Message) WHERE m.thread_id = $id RETURN {_MESSAGE_COLUMNS}",
                    {"id": thread_id},
                )
            )

        rows = await asyncio.to_thread(_list, self._conn)
        messages = [_message_from_row(row) for row in rows]
        messages.sort(key=lambda m: m.created_at or datetime.min.replace(tzinfo=UTC))
        return messages

    async def recall(
        self,
        thread_id: str,
        resource_id: str | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """The last ``limit`` messages of a thread, oldest first."""
        messages = await self.list_messages(thread_id)
        if resource_id is not None:
            messages = [m for m in messages if m.resource_id in (None, resource_id)]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    # =========================================================================
    # Working memory
    # =========================================================================

    async def get_resource_working_memory(self, resource_id: str) -> str | None:
        """Working memory shared by all threads of a resource."""
        if not self._conn:
            raise RuntimeError("Not connected")

        def _get(conn: kuzu.Connection) -> dict[str, Any] | None:
            return _single(
                conn.execute(
                    "MATCH (r:Resource) WHERE r.id = $id RETURN r.working_memory", {"id": resource_id}
                )
            )

        row = await asyncio.to_thread(_get, self._conn)
        return row["r.working_memory"] if row else None

    async def save_resource_working_memory(self, resource_id: str, content: str) -> None:
        """Replace a resource's working memory (upsert by resource id)."""
        if not self._conn:
            raise RuntimeError("Not connected")

        params = {"id": resource_id, "working_memory": content, "updated_at": datetime.now(UTC).isoformat()}

        def _save(conn: kuzu.Connection) -> None:
            existing = _single(conn.execute("MATCH (r:Resource) WHERE r.id = $id RETURN r.id", {"id": resource_id}))
            if existing:
                conn.execute(
                    """
                    MATCH (r:Resource) WHERE r.id = $id
                    SET r.working_memory = $working_memory,
                        r.updated_at = $updated_at
                    """,
                    params,
                )
                return
            conn.execute(
                "CREATE (r:Resource {id: $id, working_memory: $working_memory, updated_at: $updated_at})",
                params,
            )

        await asyncio.to_thread(_save, self._conn)
        logger.debug("save_resource_working_memory id=%s", resource_id)
