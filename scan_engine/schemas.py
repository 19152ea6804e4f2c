"""Pydantic models for scan submission validation and API responses"""
import enum
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import SubmissionValidationError
from .models import IngestionState, TagSource

_HEX_HASH = re.compile(r"^[0-9a-f]{1,16}$")


class ScanStatus(enum.IntEnum):
    """Scanner outcome reported with every submission"""
    SUCCESS = 0
    NOT_FOUND = 1  # media not found at url
    UNSCANNABLE = 2


class BaseSchema(BaseModel):
    """Base schema accepting both snake_case and the scanners' camelCase keys"""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)


class IncomingTag(BaseSchema):
    """One raw tag as reported by a scanner"""
    name: str = Field(..., validation_alias=AliasChoices("name", "tag"))
    id: Optional[int] = None
    confidence: Optional[float] = Field(None, ge=0, le=100)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        return value.lower().strip()


class ScanContext(BaseSchema):
    rating_label: Optional[str] = Field(None, validation_alias=AliasChoices("rating_label", "ratingLabel", "movie_rating"))
    rating_model_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("rating_model_id", "ratingModelId", "movie_rating_model_id")
    )
    has_minor: Optional[bool] = Field(None, validation_alias=AliasChoices("has_minor", "hasMinor"))


class BoundingBox(BaseSchema):
    top: float
    bottom: float
    left: float
    right: float


class DemographicResult(BaseSchema):
    """One detected face from a demographic estimator"""
    age: float = Field(..., ge=0)
    tags: List[IncomingTag] = Field(default_factory=list)
    bounding_box: BoundingBox = Field(..., validation_alias=AliasChoices("bounding_box", "boundingBox", "dimensions"))


class ScanSubmission(BaseSchema):
    """Webhook payload delivered by a scanner for one media item"""
    media_id: int = Field(..., validation_alias=AliasChoices("media_id", "mediaId", "id"))
    status: ScanStatus
    source: TagSource
    tags: Optional[List[IncomingTag]] = None
    hash: Optional[str] = None
    context: Optional[ScanContext] = None
    result: Optional[List[DemographicResult]] = None

    @field_validator("hash")
    @classmethod
    def normalize_hash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        if value.startswith("0x"):
            value = value[2:]
        if not _HEX_HASH.match(value):
            raise ValueError("hash must be a 64-bit hexadecimal perceptual hash")
        return value.zfill(16)

    @model_validator(mode="after")
    def check_source_payload(self) -> "ScanSubmission":
        if self.status == ScanStatus.SUCCESS and self.source == TagSource.IMAGE_HASH and not self.hash:
            raise ValueError("hash is required for ImageHash submissions")
        if self.source == TagSource.COMPUTED:
            raise ValueError("Computed is not a scanner source")
        return self


def parse_submission(payload: Dict[str, Any]) -> ScanSubmission:
    """Validate a raw webhook body, raising the engine's non-retriable error"""
    try:
        return ScanSubmission.model_validate(payload)
    except ValidationError as e:
        media_id = payload.get("media_id", payload.get("mediaId", payload.get("id"))) if isinstance(payload, dict) else None
        raise SubmissionValidationError(
            "Invalid scan submission",
            media_id=media_id if isinstance(media_id, int) else None,
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


# Response wrappers
class ScanResultResponse(BaseModel):
    ok: bool = True
    media_id: int
    ingestion: IngestionState
    gate_open: bool = False
    needs_review: Optional[str] = None
    blocked_for: Optional[str] = None


class TagCacheInvalidationRequest(BaseModel):
    names: List[str] = Field(..., min_length=1)


class ErrorResponse(BaseModel):
    """Error response schema"""
    ok: bool = False
    error: str
    message: str
    retryable: bool = False
    details: Optional[Dict[str, Any]] = None
    correlation_id: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Health check response schema"""
    status: str = Field(..., pattern="^(healthy|unhealthy)$")
    service: str
    timestamp: datetime
    version: Optional[str] = None
    dependencies: Optional[Dict[str, str]] = None
