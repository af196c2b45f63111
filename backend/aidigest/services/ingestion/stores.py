"""
Article stores: local SQLAlchemy database or Supabase.

Both speak the ArticleStore protocol used by the Upserter and the collector.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update

from aidigest.config import Settings
from aidigest.models.database import Database, DBArticle, DBFeedSource
from aidigest.services.ingestion.errors import ConfigurationError
from aidigest.services.ingestion.normalizer import parse_datetime

logger = logging.getLogger(__name__)

ARTICLES_TABLE = "articles"
FEEDS_TABLE = "feed_sources"


# =============================================================================
# SQLAlchemy
# =============================================================================

def _to_columns(record: dict[str, Any]) -> dict[str, Any]:
    """Article.to_record() keys to DBArticle columns."""
    columns = dict(record)
    if "tags" in columns:
        columns["tags_json"] = columns.pop("tags")
    if "metadata" in columns:
        columns["metadata_json"] = columns.pop("metadata")
    if isinstance(columns.get("publish_time"), str):
        columns["publish_time"] = parse_datetime(columns["publish_time"])
    return columns


def _row_to_dict(row: DBArticle) -> dict[str, Any]:
    return {
        "id": row.id,
        "content_id": row.content_id,
        "checksum": row.checksum,
        "title": row.title,
        "summary": row.summary,
        "author": row.author,
        "category": row.category,
        "tags": row.tags_json or [],
        "source_url": row.source_url,
        "source_type": row.source_type,
        "publish_time": row.publish_time,
        "views": row.views,
        "likes": row.likes,
        "is_new": row.is_new,
        "is_hot": row.is_hot,
        "is_mock_data": row.is_mock_data,
        "metadata": row.metadata_json or {},
    }


class SQLAlchemyArticleStore:
    """
    Store backed by the async SQLAlchemy Database (SQLite by default).

    An in-memory database is a single shared connection, so sessions from
    concurrent source tasks are serialised through a lock.
    """

    def __init__(self, database: Database):
        self.database = database
        self._lock = asyncio.Lock() if database.shared_connection else None

    @classmethod
    async def connect(cls, database_url: str) -> "SQLAlchemyArticleStore":
        database = Database(database_url)
        await database.create_tables()
        return cls(database)

    @asynccontextmanager
    async def _session(self):
        if self._lock is None:
            async with self.database.async_session() as session:
                yield session
            return
        async with self._lock:
            async with self.database.async_session() as session:
                yield session

    async def find_by_content_id(self, content_id: str) -> Optional[dict[str, Any]]:
        async with self._session() as session:
            result = await session.execute(
                select(DBArticle).where(DBArticle.content_id == content_id)
            )
            row = result.scalar_one_or_none()
            return _row_to_dict(row) if row else None

    async def insert(self, record: dict[str, Any]) -> None:
        async with self._session() as session:
            session.add(DBArticle(**_to_columns(record)))
            await session.commit()

    async def update(self, content_id: str, record: dict[str, Any]) -> None:
        columns = _to_columns(record)
        columns.pop("content_id", None)
        columns["updated_at"] = datetime.utcnow()
        async with self._session() as session:
            await session.execute(
                update(DBArticle).where(DBArticle.content_id == content_id).values(**columns)
            )
            await session.commit()

    async def count(self, source_type: Optional[str] = None) -> int:
        async with self._session() as session:
            stmt = select(func.count()).select_from(DBArticle)
            if source_type:
                stmt = stmt.where(DBArticle.source_type == source_type)
            return (await session.execute(stmt)).scalar_one()

    async def list_active_feeds(self) -> list[dict[str, Any]]:
        async with self._session() as session:
            result = await session.execute(
                select(DBFeedSource).where(DBFeedSource.is_active.is_(True))
            )
            return [
                {"name": f.name, "url": f.url, "category": f.category, "is_active": f.is_active}
                for f in result.scalars()
            ]

    async def add_feed(self, name: str, url: str, category: Optional[str] = None, is_active: bool = True):
        async with self._session() as session:
            session.add(DBFeedSource(name=name, url=url, category=category, is_active=is_active))
            await session.commit()

    async def set_feed_active(self, url: str, is_active: bool) -> None:
        async with self._session() as session:
            result = await session.execute(select(DBFeedSource).where(DBFeedSource.url == url))
            feed = result.scalar_one_or_none()
            if feed is None:
                # Track default feeds the first time we see their health
                feed = DBFeedSource(name=url, url=url)
                session.add(feed)
            feed.is_active = is_active
            await session.commit()

    async def close(self):
        await self.database.close()


# =============================================================================
# Supabase
# =============================================================================

class SupabaseArticleStore:
    """
    Store backed by Supabase (PostgREST).

    The client is synchronous, so each call runs in a worker thread.
    """

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseArticleStore":
        from supabase import create_client

        if not settings.supabase_configured:
            raise ConfigurationError(
                "Supabase is not configured: set SUPABASE_URL and "
                "SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY)"
            )
        if not settings.supabase_service_role_key:
            logger.warning("Using the Supabase anon key; row-level security may reject writes")
        return cls(create_client(settings.supabase_url, settings.supabase_key))

    async def find_by_content_id(self, content_id: str) -> Optional[dict[str, Any]]:
        def query():
            return (
                self.client.table(ARTICLES_TABLE)
                .select("id, content_id, checksum")
                .eq("content_id", content_id)
                .limit(1)
                .execute()
            )

        res = await asyncio.to_thread(query)
        return res.data[0] if res.data else None

    async def insert(self, record: dict[str, Any]) -> None:
        await asyncio.to_thread(
            lambda: self.client.table(ARTICLES_TABLE).insert(record).execute()
        )

    async def update(self, content_id: str, record: dict[str, Any]) -> None:
        record = {**record, "updated_at": datetime.utcnow().isoformat()}
        await asyncio.to_thread(
            lambda: self.client.table(ARTICLES_TABLE).update(record).eq("content_id", content_id).execute()
        )

    async def list_active_feeds(self) -> list[dict[str, Any]]:
        res = await asyncio.to_thread(
            lambda: self.client.table(FEEDS_TABLE).select("name, url, category, is_active").eq("is_active", True).execute()
        )
        return res.data or []

    async def set_feed_active(self, url: str, is_active: bool) -> None:
        await asyncio.to_thread(
            lambda: self.client.table(FEEDS_TABLE).update({"is_active": is_active}).eq("url", url).execute()
        )

    async def close(self):
        pass


# =============================================================================
# Factory
# =============================================================================

async def create_store(settings: Settings, fail_fast: bool = False):
    """
    Supabase when configured, otherwise the local database.

    A Supabase URL without either key is a configuration error in fail-fast
    mode; otherwise the local database is used with a warning.
    """
    if settings.supabase_configured:
        logger.info(f"Using Supabase store at {settings.supabase_url}")
        return SupabaseArticleStore.from_settings(settings)
    if settings.supabase_url:
        message = (
            "SUPABASE_URL is set but neither SUPABASE_SERVICE_ROLE_KEY "
            "nor SUPABASE_ANON_KEY is"
        )
        if fail_fast:
            raise ConfigurationError(message)
        logger.warning(f"{message}; falling back to local database {settings.database_url}")
    else:
        logger.info(f"Supabase not configured, using local database {settings.database_url}")
    return await SQLAlchemyArticleStore.connect(settings.database_url)
