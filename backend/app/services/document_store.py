"""Document store with get/set/merge/query semantics over one Postgres JSONB table.

Every collection lives in `documents`, keyed by (collection, id). The document
body is stored in `data`; per-user filtering uses `data->>'user_id'`.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import psycopg

if TYPE_CHECKING:
    from psycopg_pool import AsyncConnectionPool
else:
    AsyncConnectionPool = Any

DOCUMENTS_DDL = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        collection TEXT NOT NULL,
        id TEXT NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (collection, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS documents_collection_user_idx
    ON documents (collection, (data->>'user_id'))
    """,
)

# Whitelisted predicate operators -> SQL operators.
_OPERATORS = {
    "==": "=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}

Predicate = tuple[str, str, Any]


class DocumentStoreError(Exception):
    """Raised when the backing store cannot complete a read or write."""


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return `base` with `patch` merged in; nested dicts merge key by key."""
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _predicate_sql(predicate: Predicate) -> tuple[str, list[Any]]:
    field, op, value = predicate
    sql_op = _OPERATORS.get(op)
    if sql_op is None:
        raise ValueError(f"Unsupported predicate operator: {op}")

    # Numbers compare numerically; everything else compares as text (ISO dates sort correctly).
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"(data->>%s)::numeric {sql_op} %s", [field, value]
    return f"data->>%s {sql_op} %s", [field, str(value)]


class PostgresDocumentStore:
    """Document store backed by the shared async connection pool."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        try:
            async with self._pool.connection() as connection:
                yield connection
        except psycopg.Error as exc:
            raise DocumentStoreError(str(exc)) from exc

    async def ensure_schema(self) -> None:
        async with self._connection() as connection:
            async with connection.cursor() as cursor:
                for statement in DOCUMENTS_DDL:
                    await cursor.execute(statement)

    async def get(self, collection: str, document_id: str) -> dict[str, Any] | None:
        async with self._connection() as connection:
            async with connection.cursor() as cursor:
                await cursor.execute(
                    """
                    SELECT data
                    FROM documents
                    WHERE collection = %s
                      AND id = %s
                    """,
                    (collection, document_id),
                )
                row = await cursor.fetchone()

        if row is None:
            return None
        return dict(row["data"])

    async def set(
        self,
        collection: str,
        document_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        """Create or replace a document; with `merge=True` nested fields are merged in."""
        async with self._connection() as connection:
            async with connection.transaction():
                async with connection.cursor() as cursor:
                    payload = data
                    if merge:
                        await cursor.execute(
                            """
                            SELECT data
                            FROM documents
                            WHERE collection = %s
                              AND id = %s
                            FOR UPDATE
                            """,
                            (collection, document_id),
                        )
                        row = await cursor.fetchone()
                        if row is not None:
                            payload = deep_merge(dict(row["data"]), data)

                    await cursor.execute(
                        """
                        INSERT INTO documents (collection, id, data)
                        VALUES (%s, %s, %s::jsonb)
                        ON CONFLICT (collection, id)
                        DO UPDATE SET data = EXCLUDED.data,
                                      updated_at = NOW()
                        """,
                        (collection, document_id, json.dumps(payload, default=str)),
                    )

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Append a new document under a generated id and return the id."""
        document_id = str(data.get("id") or uuid4())
        body = {**data, "id": document_id}

        async with self._connection() as connection:
            async with connection.cursor() as cursor:
                await cursor.execute(
                    """
                    INSERT INTO documents (collection, id, data)
                    VALUES (%s, %s, %s::jsonb)
                    """,
                    (collection, document_id, json.dumps(body, default=str)),
                )

        return document_id

    async def query(
        self,
        collection: str,
        predicates: Iterable[Predicate] = (),
    ) -> list[dict[str, Any]]:
        """Return documents matching every predicate, oldest first."""
        clauses = ["collection = %s"]
        params: list[Any] = [collection]
        for predicate in predicates:
            clause, clause_params = _predicate_sql(predicate)
            clauses.append(clause)
            params.extend(clause_params)

        sql = (
            "SELECT id, data FROM documents WHERE "
            + " AND ".join(clauses)
            + " ORDER BY created_at ASC"
        )

        async with self._connection() as connection:
            async with connection.cursor() as cursor:
                await cursor.execute(sql, params)
                rows = await cursor.fetchall()

        return [{**dict(row["data"]), "id": row["id"]} for row in rows]
