"""
Pydantic request/response schemas for the /api/v1/annotations endpoints.
JSON bodies use camelCase; Python attributes stay snake_case.
"""

import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator, model_validator
from pydantic.alias_generators import to_camel

from aves.models.enums import AnnotationType
from aves.schemas.bounding_box import BoundingBox, normalize_bounding_box

_CATEGORY_RE = re.compile(r"^[A-Za-z][A-Za-z_]*$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Request Schemas ──────────────────────────────────────────

class GenerateAnnotationsRequest(CamelModel):
    """Start a generation job for one image."""
    image_url: HttpUrl
    species: Optional[str] = Field(default=None, max_length=200)


class ApproveAnnotationRequest(CamelModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class RejectAnnotationRequest(CamelModel):
    """At least one of category, notes or reason must be given."""
    category: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=500)
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("category")
    @classmethod
    def _category_is_upper_snake(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        value = value.strip()
        if not _CATEGORY_RE.match(value):
            raise ValueError("category must contain only letters and underscores")
        return value.upper()

    @model_validator(mode="after")
    def _something_given(self) -> "RejectAnnotationRequest":
        if not (self.category or (self.notes or "").strip() or (self.reason or "").strip()):
            raise ValueError("At least one of category, reason, or notes must be provided")
        return self


class AnnotationOverrides(CamelModel):
    """
    Partial field overrides for edit (edit-and-accept) and patch (in-place).
    Bounding boxes may arrive in either the flat or the legacy nested shape.
    """
    spanish_term: Optional[str] = Field(default=None, min_length=1, max_length=200)
    english_term: Optional[str] = Field(default=None, min_length=1, max_length=200)
    bounding_box: Optional[BoundingBox] = None
    type: Optional[AnnotationType] = None
    difficulty_level: Optional[int] = Field(default=None, ge=1, le=5)
    pronunciation: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("bounding_box", mode="before")
    @classmethod
    def _normalize_box(cls, value: Any) -> Any:
        if value is None:
            return None
        return normalize_bounding_box(value)

    def field_updates(self) -> dict[str, Any]:
        """Explicitly supplied item fields, keyed by column name."""
        updates: dict[str, Any] = {}
        supplied = self.model_fields_set
        if "spanish_term" in supplied and self.spanish_term:
            updates["spanish_term"] = self.spanish_term
        if "english_term" in supplied and self.english_term:
            updates["english_term"] = self.english_term
        if "bounding_box" in supplied and self.bounding_box is not None:
            updates["bounding_box"] = self.bounding_box.model_dump()
        if "type" in supplied and self.type is not None:
            updates["annotation_type"] = self.type.value
        if "difficulty_level" in supplied and self.difficulty_level is not None:
            updates["difficulty_level"] = self.difficulty_level
        if "pronunciation" in supplied:
            updates["pronunciation"] = self.pronunciation
        return updates


class BulkApproveRequest(CamelModel):
    job_ids: list[str] = Field(min_length=1, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)


# ── Response Schemas ─────────────────────────────────────────

class GenerationStartedResponse(CamelModel):
    job_id: str
    status: str
    image_id: str
    message: str = "Annotation generation started. Check job status for results."


class QualityFlags(CamelModel):
    too_small: bool
    low_confidence: bool


class AnnotationItemResponse(CamelModel):
    id: str
    job_id: str
    image_id: str
    spanish_term: str
    english_term: str
    bounding_box: BoundingBox
    type: str
    difficulty_level: int
    pronunciation: Optional[str] = None
    confidence: float
    status: str
    approved_annotation_id: Optional[str] = None
    quality_flags: QualityFlags
    ai_generated: bool = True
    created_at: datetime
    updated_at: datetime


class PendingAnnotationsResponse(CamelModel):
    annotations: list[AnnotationItemResponse]
    total: int
    limit: int
    offset: int
    status: str


class CanonicalAnnotationResponse(CamelModel):
    """Accepted annotation in both box shapes for the canvas layer."""
    id: str
    image_id: str
    source_item_id: str
    bounding_box: BoundingBox
    legacy_bounding_box: dict
    type: str
    spanish_term: str
    english_term: str
    pronunciation: Optional[str] = None
    difficulty_level: int
    vision_confidence: Optional[float] = None
    created_at: datetime


class JobDetailResponse(CamelModel):
    job_id: str
    image_id: str
    image_url: str
    species: Optional[str] = None
    status: str
    confidence_score: Optional[float] = None
    annotation_data: Optional[Any] = None
    error_message: Optional[str] = None
    error_payload: Optional[dict] = None
    attempts: int = 0
    deadline_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: list[AnnotationItemResponse] = []
    canonical_annotations: list[CanonicalAnnotationResponse] = []


class ReviewResultResponse(CamelModel):
    message: str
    annotation_id: str
    approved_annotation_id: Optional[str] = None


class BulkJobResult(CamelModel):
    job_id: str
    status: str
    approved_count: int = 0
    error: Optional[str] = None


class BulkApproveResponse(CamelModel):
    message: str = "Batch approval completed"
    approved: int
    failed: int
    details: list[BulkJobResult]


class RecentActivity(CamelModel):
    action: str
    affected_items: int
    reviewer_id: str
    notes: Optional[str] = None
    created_at: datetime


class ReviewStatsResponse(CamelModel):
    total: int
    pending: int
    approved: int
    rejected: int
    edited: int
    avg_confidence: float
    recent_activity: list[RecentActivity]


class AnalyticsOverview(CamelModel):
    total: int
    pending: int
    approved: int
    rejected: int
    edited: int
    avg_confidence: float


class QualityFlagCounts(CamelModel):
    too_small: int
    low_confidence: int


class ReviewAnalyticsResponse(CamelModel):
    overview: AnalyticsOverview
    by_species: dict[str, int]
    by_type: dict[str, int]
    rejections_by_category: dict[str, int]
    uncategorized_rejections: int
    quality_flags: QualityFlagCounts