import logging

from fastapi import HTTPException
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from .config import settings
from .services.document_store import PostgresDocumentStore

logger = logging.getLogger(__name__)

# Shared async pool used by FastAPI dependencies and background persistence.
pool: AsyncConnectionPool | None = None


async def init_db_pool() -> None:
    global pool

    # Keep app booting in non-DB contexts; endpoints will fail explicitly if used.
    if not settings.database_url:
        logger.warning("DATABASE_URL is not set; memory endpoints are disabled")
        return

    pool = AsyncConnectionPool(
        conninfo=settings.database_url,
        open=False,
        min_size=1,
        max_size=10,
        kwargs={"autocommit": True, "row_factory": dict_row},
    )
    await pool.open()
    await PostgresDocumentStore(pool).ensure_schema()


async def close_db_pool() -> None:
    global pool

    if pool is None:
        return

    await pool.close()
    pool = None


def get_document_store() -> PostgresDocumentStore:
    # Centralized guard to avoid obscure None-type errors in route handlers.
    if pool is None:
        raise HTTPException(status_code=500, detail="DATABASE_URL is not configured")

    # Holds the pool, not a request connection, so background tasks can still write.
    return PostgresDocumentStore(pool)
