from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy import text
from casebridge.config import settings
from casebridge.models import Base


engine = create_async_engine(
    settings.database_url,
    echo=settings.log_level == "DEBUG",
    future=True
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_db():
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await _maybe_migrate_sqlite(conn)


async def _maybe_migrate_sqlite(conn) -> None:
    """
    SQLite-only hardening for databases created before the link constraint existed.

    Duplicate (case_id, work_item_id) rows are collapsed to the oldest one and a
    unique index is added, so link creation stays idempotent at the storage level.
    """
    if conn.dialect.name != "sqlite":
        return

    res = await conn.execute(text("PRAGMA index_list(case_work_item_links)"))
    # PRAGMA index_list: seq, name, unique, origin, partial
    unique_indexes = {row[1] for row in res.fetchall() if row[2]}
    if "uq_case_work_item" in unique_indexes or "sqlite_autoindex_case_work_item_links_1" in unique_indexes:
        return

    await conn.execute(text("""
        DELETE FROM case_work_item_links
        WHERE id NOT IN (
            SELECT MIN(id)
            FROM case_work_item_links
            GROUP BY case_id, work_item_id
        )
    """))
    await conn.execute(text(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_case_work_item "
        "ON case_work_item_links (case_id, work_item_id)"
    ))


async def get_db() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
