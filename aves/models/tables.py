"""
SQLAlchemy ORM models for generation jobs, review items, review actions,
canonical annotations and learned patterns.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from aves.models.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Confidence columns come back as floats on every dialect
Confidence = Numeric(5, 4, asdecimal=False)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ────────────────────────────────────────────────────────────
# GENERATION JOBS
# ────────────────────────────────────────────────────────────
class AnnotationJob(Base):
    __tablename__ = "annotation_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    image_id: Mapped[str] = mapped_column(String(64), nullable=False)
    image_url: Mapped[str] = mapped_column(Text, nullable=False)
    species: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="processing", server_default="processing"
    )
    confidence_score: Mapped[Optional[float]] = mapped_column(Confidence, nullable=True)
    annotation_data: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    deadline_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    # Relationships
    items = relationship(
        "AnnotationItem", back_populates="job", order_by="AnnotationItem.confidence.desc()"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'pending', 'failed', 'reviewed')",
            name="ck_annotation_jobs_status",
        ),
        Index("idx_annotation_jobs_status", "status"),
        Index("idx_annotation_jobs_image", "image_id"),
        Index("idx_annotation_jobs_deadline", "status", "deadline_at"),
    )


# ────────────────────────────────────────────────────────────
# CANDIDATE ITEMS
# ────────────────────────────────────────────────────────────
class AnnotationItem(Base):
    __tablename__ = "annotation_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("annotation_jobs.job_id"), nullable=False
    )
    image_id: Mapped[str] = mapped_column(String(64), nullable=False)
    spanish_term: Mapped[str] = mapped_column(String(200), nullable=False)
    english_term: Mapped[str] = mapped_column(String(200), nullable=False)
    bounding_box: Mapped[dict] = mapped_column(JSONType, nullable=False)
    annotation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    difficulty_level: Mapped[int] = mapped_column(Integer, nullable=False)
    pronunciation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Confidence, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default="pending"
    )
    approved_annotation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("annotations.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    # Relationships
    job = relationship("AnnotationJob", back_populates="items")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'edited')",
            name="ck_annotation_items_status",
        ),
        CheckConstraint(
            "annotation_type IN ('anatomical', 'behavioral', 'color', 'pattern')",
            name="ck_annotation_items_type",
        ),
        CheckConstraint(
            "difficulty_level BETWEEN 1 AND 5", name="ck_annotation_items_difficulty"
        ),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_annotation_items_confidence"
        ),
        Index("idx_annotation_items_job", "job_id"),
        Index("idx_annotation_items_status_created", "status", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# REVIEW ACTIONS (append-only audit)
# ────────────────────────────────────────────────────────────
class ReviewAction(Base):
    __tablename__ = "annotation_review_actions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("annotation_jobs.job_id"), nullable=False
    )
    item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("annotation_items.id"), nullable=True
    )
    reviewer_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    affected_items: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "action IN ('approve', 'reject', 'edit', 'bulk_approve')",
            name="ck_review_actions_action",
        ),
        Index("idx_review_actions_created", "created_at"),
        Index("idx_review_actions_action", "action"),
    )


# ────────────────────────────────────────────────────────────
# CANONICAL ANNOTATIONS
# ────────────────────────────────────────────────────────────
class CanonicalAnnotation(Base):
    __tablename__ = "annotations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    image_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_item_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    bounding_box: Mapped[dict] = mapped_column(JSONType, nullable=False)
    annotation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    spanish_term: Mapped[str] = mapped_column(String(200), nullable=False)
    english_term: Mapped[str] = mapped_column(String(200), nullable=False)
    pronunciation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    difficulty_level: Mapped[int] = mapped_column(Integer, nullable=False)
    vision_generated: Mapped[bool] = mapped_column(
        nullable=False, default=True, server_default=text("true")
    )
    vision_confidence: Mapped[Optional[float]] = mapped_column(Confidence, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("source_item_id", name="uq_annotations_source_item"),
        Index("idx_annotations_image", "image_id"),
    )


# ────────────────────────────────────────────────────────────
# LEARNED PATTERNS
# ────────────────────────────────────────────────────────────
class LearnedPattern(Base):
    __tablename__ = "learned_patterns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    species: Mapped[str] = mapped_column(Text, nullable=False)
    feature: Mapped[str] = mapped_column(Text, nullable=False)
    feature_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    approval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejection_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    correction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uncategorized_rejections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejection_categories: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    confidence_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    prior_x: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    prior_y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    prior_width: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    prior_height: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    prior_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_delta_x: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_delta_y: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_delta_width: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_delta_height: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_outcome_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("species", "feature", name="uq_learned_patterns_species_feature"),
        Index("idx_learned_patterns_species", "species"),
    )
