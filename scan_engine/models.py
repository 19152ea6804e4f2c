"""SQLAlchemy models and domain enums for media scan ingestion"""
from datetime import datetime, timezone
import enum
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, JSON,
    ForeignKey, Enum, Index, UniqueConstraint
)

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class IngestionState(str, enum.Enum):
    """Ingestion state of a media item"""
    PENDING = "Pending"
    SCANNED = "Scanned"
    BLOCKED = "Blocked"
    NOT_FOUND = "NotFound"
    ERROR = "Error"


# States a scan result is still allowed to move a media item out of
PENDING_STATES = (IngestionState.PENDING, IngestionState.ERROR)


class TagSource(str, enum.Enum):
    """Origin of a tag association"""
    USER = "User"
    REKOGNITION = "Rekognition"
    WD14 = "WD14"
    COMPUTED = "Computed"
    IMAGE_HASH = "ImageHash"
    HIVE = "Hive"
    MINOR_DETECTION = "MinorDetection"
    HIVE_DEMOGRAPHICS = "HiveDemographics"
    CLAVATA = "Clavata"


class NsfwLevel(enum.IntEnum):
    """Severity ladder; values are browsing-level bit flags"""
    NONE = 0
    PG = 1
    PG13 = 2
    R = 4
    X = 8
    XXX = 16
    BLOCKED = 32


class ModerationRuleAction(str, enum.Enum):
    APPROVE = "Approve"
    HOLD = "Hold"
    BLOCK = "Block"


class TagRuleType(str, enum.Enum):
    REPLACE = "Replace"
    APPEND = "Append"


class ReviewReason(str, enum.Enum):
    """Value stored in ``needs_review``; declaration order is escalation priority"""
    POI = "poi"
    MINOR = "minor"
    TAG = "tag"
    NEW_USER = "newUser"
    MOD_RULE = "modRule"


class BlockedReason(str, enum.Enum):
    AI_NOT_VERIFIED = "unverified AI generation"
    POLICY_VIOLATION = "policy violation"
    MODERATED = "moderated"
    SIMILAR_TO_BLOCKED = "Similar to blocked content"
    FAILED_AUDIT = "Failed audit, no explanation"
    BLOCKED_TAG = "blocked tag"


class MediaItem(Base):
    """Uploaded media awaiting or past scan ingestion"""
    __tablename__ = "media_items"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user_accounts.id"), nullable=False)
    media_type = Column(String(20), nullable=False, default="image")

    ingestion = Column(
        Enum(IngestionState, name="ingestionstate", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=IngestionState.PENDING,
    )
    nsfw_level = Column(Integer, nullable=False, default=0)
    nsfw_level_locked = Column(Boolean, nullable=False, default=False)
    ai_nsfw_level = Column(Integer)
    ai_model = Column(String(100))
    needs_review = Column(String(20))
    blocked_for = Column(Text)

    # Sticky flags, never reset by this engine
    poi = Column(Boolean, nullable=False, default=False)
    minor = Column(Boolean, nullable=False, default=False)

    phash = Column(String(32))
    meta = Column(JSON)  # Generation metadata: prompt, negativePrompt, comfy, ...
    metadata_json = Column("metadata", JSON)  # Platform metadata: profilePicture, ruleId, ...
    scan_jobs = Column(JSON)  # retryCount, demographics, age, hasMinor
    tools = Column(JSON)  # Declared generation tools

    scanned_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    __table_args__ = (
        Index("idx_media_items_user_id", "user_id"),
        Index("idx_media_items_ingestion", "ingestion"),
        Index("idx_media_items_needs_review", "needs_review"),
    )


class Tag(Base):
    """Tag dictionary entry"""
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    nsfw_level = Column(Integer, nullable=False, default=0)
    type = Column(String(20), nullable=False, default="Label")
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TagOnMedia(Base):
    """Tag association produced by one scanner source"""
    __tablename__ = "tags_on_media"

    id = Column(Integer, primary_key=True)
    media_id = Column(Integer, ForeignKey("media_items.id"), nullable=False)
    tag_id = Column(Integer, ForeignKey("tags.id"), nullable=False)
    source = Column(String(32), nullable=False)
    confidence = Column(Integer, nullable=False, default=0)
    automated = Column(Boolean, nullable=False, default=True)
    disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("media_id", "tag_id", "source", name="uq_tags_on_media_media_tag_source"),
        Index("idx_tags_on_media_media_id", "media_id"),
    )


class ScanCompletion(Base):
    """Last successful report per scanner source for a media item"""
    __tablename__ = "media_scan_completions"

    id = Column(Integer, primary_key=True)
    media_id = Column(Integer, ForeignKey("media_items.id"), nullable=False)
    source = Column(String(32), nullable=False)
    reported_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("media_id", "source", name="uq_scan_completion_media_source"),
    )


class MediaResource(Base):
    """Generation resource associated with a media item"""
    __tablename__ = "media_resources"

    id = Column(Integer, primary_key=True)
    media_id = Column(Integer, ForeignKey("media_items.id"), nullable=False)
    resource_id = Column(Integer, nullable=False)
    poi = Column(Boolean, nullable=False, default=False)
    minor = Column(Boolean, nullable=False, default=False)
    restricted = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("media_id", "resource_id", name="uq_media_resource"),
        Index("idx_media_resources_media_id", "media_id"),
    )


class UserAccount(Base):
    """Uploading account"""
    __tablename__ = "user_accounts"

    id = Column(Integer, primary_key=True)
    username = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class TagRule(Base):
    """Administrator tag substitution rule"""
    __tablename__ = "tag_rules"

    id = Column(Integer, primary_key=True)
    type = Column(
        Enum(TagRuleType, name="tagruletype", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    trigger_tag = Column(String(255), nullable=False)
    target_tag = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)


class ModerationRule(Base):
    """Administrator moderation rule; ``definition`` holds the condition tree"""
    __tablename__ = "moderation_rules"

    id = Column(Integer, primary_key=True)
    name = Column(String(255))
    position = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)
    action = Column(
        Enum(ModerationRuleAction, name="moderationruleaction", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    reason = Column(Text)
    definition = Column(JSON, nullable=False)

    __table_args__ = (
        Index("idx_moderation_rules_position", "position"),
    )


class BlockedMediaHash(Base):
    """Perceptual hash of previously blocked content"""
    __tablename__ = "blocked_media_hashes"

    id = Column(Integer, primary_key=True)
    hash = Column(String(32), nullable=False)
    disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class DispositionAuditLog(Base):
    """Audit trail of committed ingestion transitions"""
    __tablename__ = "disposition_audit_logs"

    id = Column(Integer, primary_key=True)
    media_id = Column(Integer, nullable=False)
    source = Column(String(32))
    previous_state = Column(String(20))
    new_state = Column(String(20), nullable=False)
    blocked_for = Column(Text)
    needs_review = Column(String(20))
    nsfw_level = Column(Integer)
    action_data = Column(JSON)
    correlation_id = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_disposition_audit_logs_media_id", "media_id"),
        Index("idx_disposition_audit_logs_created_at", "created_at"),
    )
