"""Test configuration and fixtures"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from scan_engine.config import Settings
from scan_engine.database import Base, DatabaseManager
from scan_engine.engine import ScanResultProcessor
from scan_engine.models import IngestionState, MediaItem, UserAccount, utcnow
from scan_engine.sinks import NotificationSink, ReviewQueueSink, SearchIndexSink, Sinks
from scan_engine.store import ScanStore
from scan_engine.tag_cache import TtlTagCache


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    # Use in-memory SQLite for tests
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup
    await engine.dispose()


@pytest.fixture
def db_manager(test_engine):
    """Database manager bound to the test engine"""
    return DatabaseManager(test_engine)


@pytest.fixture
def store(db_manager):
    return ScanStore(db_manager)


@pytest.fixture
def settings():
    """Settings with a single required scanner"""
    return Settings(
        required_scan_sources=["Clavata"],
        tag_cache_backend="memory",
        blocked_hash_check=False,
        moderation_knight_tags=[],
    )


@pytest.fixture
def sinks():
    """Collaborator sinks that record calls"""
    return Sinks(
        notification=AsyncMock(spec=NotificationSink),
        search_index=AsyncMock(spec=SearchIndexSink),
        review_queue=AsyncMock(spec=ReviewQueueSink),
    )


@pytest.fixture
def processor(store, settings, sinks):
    return ScanResultProcessor(store=store, cache=TtlTagCache(), sinks=sinks, settings=settings)


@pytest.fixture
def add_rows(db_manager):
    """Insert ORM rows in one unit of work"""
    async def _add(*rows):
        async with db_manager.get_session() as session:
            session.add_all(rows)
    return _add


@pytest.fixture
def make_media(db_manager):
    """Create a media item (and its owner) with a plausible generation prompt"""
    async def _make(
        media_id: int = 1,
        user_id: int = 1,
        meta=None,
        ingestion: IngestionState = IngestionState.PENDING,
        created_at=None,
        user_created_at=None,
        **fields,
    ) -> MediaItem:
        async with db_manager.get_session() as session:
            if await session.get(UserAccount, user_id) is None:
                session.add(
                    UserAccount(
                        id=user_id,
                        username=f"user{user_id}",
                        created_at=user_created_at or utcnow() - timedelta(days=365),
                    )
                )
                await session.flush()
            media = MediaItem(
                id=media_id,
                user_id=user_id,
                meta=meta if meta is not None else {"prompt": "a castle on a hill at sunset"},
                ingestion=ingestion,
                created_at=created_at or utcnow(),
                **fields,
            )
            session.add(media)
        return media
    return _make
