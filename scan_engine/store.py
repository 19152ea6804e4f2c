"""
Persistence operations for scan processing

Every read-modify-write the engine performs against shared per-media state is
a single call here, executed inside one ``DatabaseManager`` unit of work:
conditional transitions filter on the current ingestion state, upserts use
``INSERT ... ON CONFLICT`` and the disposition commit re-reads the media row
under ``SELECT ... FOR UPDATE`` before applying the decision.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .database import DatabaseManager, get_db_manager
from .errors import MediaNotFoundError
from .logging import get_correlation_id
from .models import (
    PENDING_STATES,
    BlockedMediaHash,
    DispositionAuditLog,
    IngestionState,
    MediaItem,
    MediaResource,
    ModerationRule,
    NsfwLevel,
    ReviewReason,
    ScanCompletion,
    Tag,
    TagOnMedia,
    TagRule,
    UserAccount,
    as_utc,
    utcnow,
)
from .reconciler import ResolvedTag
from .tag_cache import CachedTag
from .tag_rules import TagSubstitutionRule

if TYPE_CHECKING:
    from .disposition import Disposition

logger = logging.getLogger(__name__)

# Dictionary tags named after a severity rung start at that rung's level
SEVERITY_RUNG_LEVELS = {
    "pg": NsfwLevel.PG,
    "pg-13": NsfwLevel.PG13,
    "r": NsfwLevel.R,
    "x": NsfwLevel.X,
    "xxx": NsfwLevel.XXX,
}


@dataclass
class ResourceFacts:
    """Facts about the generation resources associated with a media item"""
    has_resource: bool = False
    poi: bool = False
    minor: bool = False
    restricted: bool = False


@dataclass
class CommitResult:
    applied: bool
    previous_state: IngestionState
    media: MediaItem


def _insert_for(session: AsyncSession):
    """Dialect-specific insert construct supporting ON CONFLICT"""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


class ScanStore:
    """Atomic store operations used by the scan result processor"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()

    # Media reads

    async def get_media(self, media_id: int) -> MediaItem:
        async with self.db.get_session() as session:
            media = await session.get(MediaItem, media_id)
            if media is None:
                raise MediaNotFoundError(f"Media {media_id} not found", media_id=media_id)
            return media

    async def _lock_media(self, session: AsyncSession, media_id: int) -> MediaItem:
        result = await session.execute(
            select(MediaItem).where(MediaItem.id == media_id).with_for_update()
        )
        media = result.scalar_one_or_none()
        if media is None:
            raise MediaNotFoundError(f"Media {media_id} not found", media_id=media_id)
        return media

    async def _claim_transition(
        self, session: AsyncSession, media_id: int, expected: IngestionState, new_state: IngestionState
    ) -> bool:
        with session.no_autoflush:
            result = await session.execute(
                update(MediaItem)
                .where(MediaItem.id == media_id, MediaItem.ingestion == expected)
                .values(ingestion=new_state)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    # Non-success transitions

    async def mark_not_found(self, media_id: int) -> IngestionState:
        """Pending/Error -> NotFound; other states are left alone"""
        async with self.db.get_session() as session:
            media = await self._lock_media(session, media_id)
            if media.ingestion in PENDING_STATES:
                media.ingestion = IngestionState.NOT_FOUND
                media.updated_at = utcnow()
            return media.ingestion

    async def mark_unscannable(self, media_id: int) -> IngestionState:
        """Pending/Error -> Error, counting the retry in the scan metadata"""
        async with self.db.get_session() as session:
            media = await self._lock_media(session, media_id)
            if media.ingestion in PENDING_STATES:
                scan_jobs = dict(media.scan_jobs or {})
                scan_jobs["retryCount"] = scan_jobs.get("retryCount", 0) + 1
                media.scan_jobs = scan_jobs
                media.ingestion = IngestionState.ERROR
                media.updated_at = utcnow()
            return media.ingestion

    async def mark_error(self, media_id: int) -> None:
        """Record a processing failure against a media item still in a pending state"""
        async with self.db.get_session() as session:
            await session.execute(
                update(MediaItem)
                .where(MediaItem.id == media_id, MediaItem.ingestion.in_(PENDING_STATES))
                .values(ingestion=IngestionState.ERROR, updated_at=utcnow())
            )

    # Scan metadata

    async def record_hash(self, media_id: int, phash: str) -> None:
        async with self.db.get_session() as session:
            media = await self._lock_media(session, media_id)
            media.phash = phash
            media.updated_at = utcnow()

    async def record_ai_rating(self, media_id: int, nsfw_level: int, model: Optional[str]) -> None:
        async with self.db.get_session() as session:
            media = await self._lock_media(session, media_id)
            media.ai_nsfw_level = nsfw_level
            media.ai_model = model

    async def record_demographics(
        self,
        media_id: int,
        scan_update: Dict[str, Any],
        has_minor: bool,
        nsfw_ceiling: int,
    ) -> bool:
        """
        Merge demographic results into the scan metadata

        A detected minor sets the sticky minor flag. On media already scanned
        as NSFW it also requests minor review unless a point-of-interest
        review is pending. Returns True when the review reason changed.
        """
        async with self.db.get_session() as session:
            media = await self._lock_media(session, media_id)
            scan_jobs = dict(media.scan_jobs or {})
            scan_jobs.update(scan_update)

            review_changed = False
            if has_minor:
                scan_jobs["hasMinor"] = True
                media.minor = True
                is_nsfw = nsfw_ceiling < (media.nsfw_level or 0) < NsfwLevel.BLOCKED
                if (
                    media.ingestion == IngestionState.SCANNED
                    and is_nsfw
                    and media.needs_review not in (ReviewReason.POI.value, ReviewReason.MINOR.value)
                ):
                    media.needs_review = ReviewReason.MINOR.value
                    review_changed = True

            media.scan_jobs = scan_jobs
            media.updated_at = utcnow()
            return review_changed

    # Rule sources

    async def get_tag_rules(self) -> List[TagSubstitutionRule]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TagRule).where(TagRule.enabled.is_(True)).order_by(TagRule.position, TagRule.id)
            )
            return [
                TagSubstitutionRule(
                    type=rule.type,
                    trigger_tag=rule.trigger_tag,
                    target_tag=rule.target_tag,
                    id=rule.id,
                )
                for rule in result.scalars()
            ]

    async def get_moderation_rules(self) -> List[ModerationRule]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ModerationRule)
                .where(ModerationRule.enabled.is_(True))
                .order_by(ModerationRule.position, ModerationRule.id)
            )
            return list(result.scalars())

    async def get_blocked_hashes(self) -> List[str]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(BlockedMediaHash.hash).where(BlockedMediaHash.disabled.is_(False))
            )
            return list(result.scalars())

    # Tag dictionary

    async def get_tags_by_name(self, names: Iterable[str]) -> Dict[str, CachedTag]:
        names = list(names)
        if not names:
            return {}
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Tag.id, Tag.name, Tag.nsfw_level).where(Tag.name.in_(names))
            )
            return {
                row.name: CachedTag(id=row.id, name=row.name, nsfw_level=row.nsfw_level)
                for row in result
            }

    async def create_tags(self, names: Iterable[str]) -> Dict[str, CachedTag]:
        """Create-or-fetch: names created concurrently elsewhere are read back"""
        names = list(dict.fromkeys(names))
        if not names:
            return {}
        async with self.db.get_session() as session:
            insert = _insert_for(session)
            now = utcnow()
            stmt = insert(Tag).values([
                {
                    "name": name,
                    "nsfw_level": int(SEVERITY_RUNG_LEVELS.get(name, NsfwLevel.NONE)),
                    "type": "Label",
                    "created_at": now,
                }
                for name in names
            ])
            await session.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))

            result = await session.execute(
                select(Tag.id, Tag.name, Tag.nsfw_level).where(Tag.name.in_(names))
            )
            return {
                row.name: CachedTag(id=row.id, name=row.name, nsfw_level=row.nsfw_level)
                for row in result
            }

    # Tag associations

    async def upsert_tag_associations(self, media_id: int, tags: Iterable[ResolvedTag]) -> None:
        rows = [
            {
                "media_id": media_id,
                "tag_id": tag.id,
                "source": tag.source,
                "confidence": tag.confidence,
                "automated": tag.automated,
                "disabled": tag.ignored,
                "created_at": utcnow(),
            }
            for tag in tags
        ]
        if not rows:
            return
        async with self.db.get_session() as session:
            insert = _insert_for(session)
            stmt = insert(TagOnMedia).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["media_id", "tag_id", "source"],
                set_={
                    "confidence": stmt.excluded.confidence,
                    "automated": stmt.excluded.automated,
                    "disabled": stmt.excluded.disabled,
                },
            )
            await session.execute(stmt)

    async def get_media_tags(self, media_id: int) -> List[ResolvedTag]:
        """All automated associations of a media item; disabled ones come back ignored"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(
                    TagOnMedia.tag_id,
                    Tag.name,
                    Tag.nsfw_level,
                    TagOnMedia.source,
                    TagOnMedia.confidence,
                    TagOnMedia.disabled,
                    TagOnMedia.automated,
                )
                .join(Tag, Tag.id == TagOnMedia.tag_id)
                .where(TagOnMedia.media_id == media_id, TagOnMedia.automated.is_(True))
                .order_by(TagOnMedia.id)
            )
            return [
                ResolvedTag(
                    id=row.tag_id,
                    name=row.name,
                    confidence=row.confidence,
                    source=row.source,
                    nsfw_level=row.nsfw_level,
                    ignored=row.disabled,
                    automated=row.automated,
                )
                for row in result
            ]

    # Scan completion

    async def record_scan_completion(
        self, media_id: int, source: str, reported_at: Optional[datetime] = None
    ) -> Set[str]:
        """Merge ``source`` into the completion map and return every recorded source"""
        reported_at = reported_at or utcnow()
        async with self.db.get_session() as session:
            insert = _insert_for(session)
            stmt = insert(ScanCompletion).values(media_id=media_id, source=source, reported_at=reported_at)
            stmt = stmt.on_conflict_do_update(
                index_elements=["media_id", "source"],
                set_={"reported_at": stmt.excluded.reported_at},
            )
            await session.execute(stmt)

            result = await session.execute(
                select(ScanCompletion.source).where(ScanCompletion.media_id == media_id)
            )
            return set(result.scalars())

    # Escalation facts

    async def get_resource_facts(self, media_id: int) -> ResourceFacts:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(
                    func.count(MediaResource.id),
                    func.max(case((MediaResource.poi.is_(True), 1), else_=0)),
                    func.max(case((MediaResource.minor.is_(True), 1), else_=0)),
                    func.max(case((MediaResource.restricted.is_(True), 1), else_=0)),
                ).where(MediaResource.media_id == media_id)
            )
            count, poi, minor, restricted = result.one()
            return ResourceFacts(
                has_resource=bool(count),
                poi=bool(poi),
                minor=bool(minor),
                restricted=bool(restricted),
            )

    async def is_new_user(self, user_id: int, window_days: int) -> bool:
        async with self.db.get_session() as session:
            created_at = await session.scalar(select(UserAccount.created_at).where(UserAccount.id == user_id))
        if created_at is None:
            return False
        return as_utc(created_at) > utcnow() - timedelta(days=window_days)

    # Disposition

    async def commit_disposition(
        self,
        media_id: int,
        disposition: "Disposition",
        source: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CommitResult:
        """
        Apply a disposition against the freshly locked media row

        The disposition decides from the locked row whether it still applies;
        media that already left the pending states is not changed. The state
        change is claimed with a conditional UPDATE on the state that was read,
        so of two concurrent commits for the same media only one applies even
        where the row lock is unavailable.
        """
        now = now or utcnow()
        async with self.db.get_session() as session:
            media = await self._lock_media(session, media_id)
            previous = media.ingestion
            applied = disposition.apply(media, now)
            if applied and not await self._claim_transition(session, media_id, previous, media.ingestion):
                logger.info(f"Media {media_id} left {previous.value} concurrently, disposition not applied")
                session.expunge(media)
                media = await self._lock_media(session, media_id)
                applied = False
            if applied:
                media.updated_at = now
                session.add(
                    DispositionAuditLog(
                        media_id=media_id,
                        source=source,
                        previous_state=previous.value,
                        new_state=media.ingestion.value,
                        blocked_for=media.blocked_for,
                        needs_review=media.needs_review,
                        nsfw_level=media.nsfw_level,
                        action_data=disposition.audit_data(),
                        correlation_id=get_correlation_id(),
                        created_at=now,
                    )
                )
            return CommitResult(applied=applied, previous_state=previous, media=media)
