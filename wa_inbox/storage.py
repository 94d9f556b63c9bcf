import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Tuple

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from wa_inbox.errors import StoreError
from wa_inbox.store import DocumentStore, InMemoryDocumentStore, Versioned

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _engine_connect_args(url: str) -> dict:
    # SQLite waits on a locked database instead of failing immediately
    if url.startswith("sqlite"):
        return {"timeout": 30}
    return {}


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _new_row(path: str, value: Any) -> dict:
    return {"path": path, "parent": _parent(path), "value": value, "version": 1, "updated_at": _utc_now()}


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


class SQLDocumentStore(DocumentStore):
    """
    Document store engine backed by a single SQLAlchemy table (models.Document).

    Compare-and-set is an UPDATE guarded by the row version, or an INSERT
    guarded by the primary key when the document does not exist yet.
    """

    def __init__(self, database_url: str, **kwargs):
        super().__init__(**kwargs)
        _ensure_sqlite_dir(database_url)
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url,
            connect_args=_engine_connect_args(database_url),
            echo=False,
        )
        self.SessionLocal = async_sessionmaker(self.engine, expire_on_commit=False, autoflush=False)

    async def init_db(self) -> None:
        """
        Create the documents table.
        Called during application startup.
        """
        logger.debug(f"Initializing document store with URL: {self.database_url}")
        try:
            # Import models to register them with Base.metadata
            from wa_inbox.models import Document  # noqa: F401

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Document store initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize document store: {e}")
            raise

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self, operation: str, path: str) -> AsyncIterator[AsyncSession]:
        async with self.SessionLocal() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Store {operation} failed on {path}: {e}")
                raise StoreError(f"Store {operation} failed", {"path": path}) from e

    async def ping(self) -> bool:
        """
        Check the database is reachable and the schema is applied.
        """
        from wa_inbox.models import Document

        logger.debug("Checking document store health...")
        try:
            async with self.SessionLocal() as session:
                await session.execute(select(func.count()).select_from(Document))
            return True
        except Exception as e:
            logger.error(f"Document store health check failed: {e}")
            return False

    async def _read(self, path: str) -> Optional[Versioned]:
        from wa_inbox.models import Document

        async with self._session("read", path) as session:
            row = (
                await session.execute(
                    select(Document.value, Document.version).where(Document.path == path)
                )
            ).first()
        if row is None:
            return None
        return Versioned(row.value, row.version)

    async def _compare_and_set(self, path: str, value: Any, expected_version: Optional[int]) -> bool:
        from wa_inbox.models import Document

        async with self._session("compare-and-set", path) as session:
            if expected_version is None:
                try:
                    await session.execute(
                        insert(Document).values(**_new_row(path, value))
                    )
                    await session.commit()
                    return True
                except IntegrityError:
                    # Another writer created the document first
                    await session.rollback()
                    return False

            result = await session.execute(
                update(Document)
                .where(Document.path == path, Document.version == expected_version)
                .values(value=value, version=expected_version + 1, updated_at=_utc_now())
            )
            await session.commit()
            return result.rowcount == 1

    async def _write(self, path: str, value: Any) -> None:
        from wa_inbox.models import Document

        async with self._session("write", path) as session:
            for _ in range(self.max_attempts):
                result = await session.execute(
                    update(Document)
                    .where(Document.path == path)
                    .values(value=value, version=Document.version + 1, updated_at=_utc_now())
                )
                if result.rowcount == 1:
                    await session.commit()
                    return
                try:
                    await session.execute(
                        insert(Document).values(**_new_row(path, value))
                    )
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()
        raise StoreError(f"Too much contention writing {path}", {"path": path})

    async def _remove(self, path: str) -> None:
        from wa_inbox.models import Document

        async with self._session("remove", path) as session:
            await session.execute(
                delete(Document).where(
                    or_(
                        Document.path == path,
                        Document.path.startswith(path + "/", autoescape=True),
                    )
                )
            )
            await session.commit()

    async def _children(self, path: str) -> List[Tuple[str, Any]]:
        from wa_inbox.models import Document

        prefix = path + "/"
        async with self._session("children", path) as session:
            rows = (
                await session.execute(
                    select(Document.path, Document.value).where(Document.parent == path)
                )
            ).all()
        return [(row.path[len(prefix):], row.value) for row in rows]

    async def range_query(
        self,
        path: str,
        order_by: Optional[str] = None,
        limit_to_last: Optional[int] = None,
    ) -> List[Tuple[str, Any]]:
        """
        Same result as DocumentStore.range_query, with the ordering and the
        limit applied by the database. order_by reads a numeric JSON field;
        documents without it sort as 0.
        """
        from wa_inbox.models import Document

        if limit_to_last is not None and limit_to_last <= 0:
            return []

        sort_keys = [Document.path]
        if order_by:
            sort_keys.insert(0, func.coalesce(Document.value[order_by].as_float(), 0))

        query = select(Document.path, Document.value).where(Document.parent == path)
        if limit_to_last is not None:
            # newest first to apply the limit, flipped back below
            query = query.order_by(*[key.desc() for key in sort_keys]).limit(limit_to_last)
        else:
            query = query.order_by(*sort_keys)

        prefix = path + "/"
        async with self._session("range query", path) as session:
            rows = (await session.execute(query)).all()

        items = [(row.path[len(prefix):], row.value) for row in rows]
        if limit_to_last is not None:
            items.reverse()
        return items

def create_store(database_url: str) -> DocumentStore:
    """
    Build the document store for a URL.

    ``memory://`` selects the process-local engine; anything else is handed
    to SQLAlchemy.
    """
    if database_url.startswith("memory://"):
        logger.info("Using in-memory document store")
        return InMemoryDocumentStore()
    return SQLDocumentStore(database_url)
