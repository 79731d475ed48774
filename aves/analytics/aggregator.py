"""
Read-only review statistics and analytics.
"""

from collections import defaultdict
from typing import Any, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aves.config import settings
from aves.models.enums import ItemStatus, ReviewActionType
from aves.models.tables import AnnotationItem, AnnotationJob, ReviewAction
from aves.observability.metrics import review_queue_depth
from aves.review.categories import extract_rejection_category
from aves.schemas.bounding_box import normalize_bounding_box

logger = structlog.get_logger(__name__)


def compute_quality_flags(bounding_box: Any, confidence: Optional[float]) -> dict[str, bool]:
    """
    Independent review-priority flags: a box under QUALITY_MIN_AREA of the
    image is too small, a confidence under QUALITY_LOW_CONFIDENCE is low.
    """
    try:
        area = normalize_bounding_box(bounding_box).area
    except ValueError:
        logger.warning("unreadable_bounding_box", bounding_box=bounding_box)
        area = None
    return {
        "too_small": area is not None and area < settings.QUALITY_MIN_AREA,
        "low_confidence": confidence is not None and confidence < settings.QUALITY_LOW_CONFIDENCE,
    }


async def _status_overview(session: AsyncSession) -> dict:
    result = await session.execute(
        select(AnnotationItem.status, func.count(AnnotationItem.id)).group_by(
            AnnotationItem.status
        )
    )
    counts = {row[0]: row[1] for row in result.all()}
    avg_confidence = await session.scalar(select(func.avg(AnnotationItem.confidence)))

    for status in ItemStatus:
        review_queue_depth.labels(status=status.value).set(counts.get(status.value, 0))

    return {
        "total": sum(counts.values()),
        "pending": counts.get(ItemStatus.PENDING.value, 0),
        "approved": counts.get(ItemStatus.APPROVED.value, 0),
        "rejected": counts.get(ItemStatus.REJECTED.value, 0),
        "edited": counts.get(ItemStatus.EDITED.value, 0),
        "avg_confidence": round(float(avg_confidence or 0.0), 4),
    }


async def get_review_stats(session: AsyncSession) -> dict:
    """Counts by status, average confidence and the most recent review actions."""
    overview = await _status_overview(session)

    result = await session.execute(
        select(ReviewAction)
        .order_by(ReviewAction.created_at.desc())
        .limit(settings.RECENT_ACTIVITY_LIMIT)
    )
    overview["recent_activity"] = [
        {
            "action": action.action,
            "affected_items": action.affected_items,
            "reviewer_id": action.reviewer_id,
            "notes": action.notes,
            "created_at": action.created_at,
        }
        for action in result.scalars().all()
    ]
    return overview


async def get_review_analytics(session: AsyncSession) -> dict:
    """Overview plus per-species, per-type, rejection-category and quality-flag breakdowns."""
    overview = await _status_overview(session)

    species_rows = await session.execute(
        select(AnnotationJob.species, func.count(AnnotationItem.id))
        .select_from(AnnotationItem)
        .join(AnnotationJob, AnnotationItem.job_id == AnnotationJob.job_id)
        .group_by(AnnotationJob.species)
    )
    by_species = {(species or "unknown"): count for species, count in species_rows.all()}

    type_rows = await session.execute(
        select(AnnotationItem.annotation_type, func.count(AnnotationItem.id)).group_by(
            AnnotationItem.annotation_type
        )
    )
    by_type = {annotation_type: count for annotation_type, count in type_rows.all()}

    notes_rows = await session.execute(
        select(ReviewAction.notes).where(ReviewAction.action == ReviewActionType.REJECT.value)
    )
    rejections: dict[str, int] = defaultdict(int)
    uncategorized = 0
    for (notes,) in notes_rows.all():
        category = extract_rejection_category(notes)
        if category is None:
            uncategorized += 1
        else:
            rejections[category] += 1

    pending_rows = await session.execute(
        select(AnnotationItem.bounding_box, AnnotationItem.confidence).where(
            AnnotationItem.status == ItemStatus.PENDING.value
        )
    )
    too_small = low_confidence = 0
    for bounding_box, confidence in pending_rows.all():
        flags = compute_quality_flags(bounding_box, confidence)
        too_small += flags["too_small"]
        low_confidence += flags["low_confidence"]

    return {
        "overview": overview,
        "by_species": by_species,
        "by_type": by_type,
        "rejections_by_category": dict(rejections),
        "uncategorized_rejections": uncategorized,
        "quality_flags": {"too_small": too_small, "low_confidence": low_confidence},
    }
