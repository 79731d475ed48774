"""
Persistence operations for generation jobs, annotation items, review actions
and canonical annotations.

Functions take the caller's session and never commit; the caller owns the
transaction. Every status change is a conditional UPDATE guarded on the
expected current status, and reports whether a row was actually changed.
"""

import secrets
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from aves.models.enums import ItemStatus, JobStatus
from aves.models.tables import (
    AnnotationItem,
    AnnotationJob,
    CanonicalAnnotation,
    ReviewAction,
    utcnow,
)

logger = structlog.get_logger(__name__)


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def parse_item_id(value: str) -> Optional[uuid.UUID]:
    """UUID for a path parameter, or None when it is not one."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


# ── Jobs ─────────────────────────────────────────────────────

async def create_job(
    session: AsyncSession,
    image_id: str,
    image_url: str,
    species: Optional[str],
    timeout_seconds: float,
) -> AnnotationJob:
    """Insert a job in 'processing' with its deadline."""
    now = utcnow()
    job = AnnotationJob(
        job_id=new_job_id(),
        image_id=image_id,
        image_url=image_url,
        species=species,
        status=JobStatus.PROCESSING.value,
        attempts=0,
        deadline_at=now + timedelta(seconds=timeout_seconds),
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()
    logger.info("job_created", job_id=job.job_id, image_id=image_id, species=species)
    return job


async def complete_job(
    session: AsyncSession,
    job_id: str,
    image_id: str,
    items: list[dict[str, Any]],
    raw_payload: Optional[list] = None,
    attempts: int = 1,
) -> bool:
    """
    Move a job processing -> pending and insert its items.
    Returns False (inserting nothing) if the job already left 'processing',
    e.g. because the deadline fired first.
    """
    confidences = [item["confidence"] for item in items]
    aggregate = sum(confidences) / len(confidences) if confidences else None

    result = await session.execute(
        update(AnnotationJob)
        .where(
            AnnotationJob.job_id == job_id,
            AnnotationJob.status == JobStatus.PROCESSING.value,
        )
        .values(
            status=JobStatus.PENDING.value,
            confidence_score=aggregate,
            annotation_data=raw_payload if raw_payload is not None else items,
            attempts=attempts,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False

    now = utcnow()
    session.add_all(
        AnnotationItem(
            job_id=job_id,
            image_id=image_id,
            status=ItemStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            **values,
        )
        for values in items
    )
    await session.flush()
    return True


async def fail_job(
    session: AsyncSession,
    job_id: str,
    message: str,
    payload: Optional[dict] = None,
    attempts: Optional[int] = None,
) -> bool:
    """Mark a processing job failed, preserving the error payload."""
    values: dict[str, Any] = {
        "status": JobStatus.FAILED.value,
        "error_message": message,
        "error_payload": payload,
        "updated_at": utcnow(),
    }
    if attempts is not None:
        values["attempts"] = attempts
    result = await session.execute(
        update(AnnotationJob)
        .where(
            AnnotationJob.job_id == job_id,
            AnnotationJob.status == JobStatus.PROCESSING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def fail_expired_jobs(session: AsyncSession, now: Optional[datetime] = None) -> list[str]:
    """Fail every job still 'processing' past its deadline. Returns their ids."""
    now = now or utcnow()
    result = await session.execute(
        select(AnnotationJob.job_id, AnnotationJob.created_at, AnnotationJob.deadline_at).where(
            AnnotationJob.status == JobStatus.PROCESSING.value,
            AnnotationJob.deadline_at < now,
        )
    )
    reaped = []
    for job_id, created_at, deadline_at in result.all():
        window = max(0, int((deadline_at - created_at).total_seconds()))
        message = f"Processing timeout after {window} seconds"
        if await fail_job(session, job_id, message, {"error": message, "timeout": True}):
            reaped.append(job_id)
    if reaped:
        logger.warning("expired_jobs_failed", job_ids=reaped)
    return reaped


async def get_job(session: AsyncSession, job_id: str) -> Optional[AnnotationJob]:
    result = await session.execute(
        select(AnnotationJob)
        .where(AnnotationJob.job_id == job_id)
        .options(selectinload(AnnotationJob.items))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def refresh_job_rollup(
    session: AsyncSession, job_id: str, reviewer_id: Optional[str] = None
) -> None:
    """
    Recompute the job's aggregate confidence over accepted and pending items,
    and mark it reviewed once nothing is pending.
    """
    counts = await session.execute(
        select(
            func.avg(AnnotationItem.confidence).filter(
                AnnotationItem.status != ItemStatus.REJECTED.value
            ),
            func.count(AnnotationItem.id).filter(
                AnnotationItem.status == ItemStatus.PENDING.value
            ),
        ).where(AnnotationItem.job_id == job_id)
    )
    avg_confidence, pending = counts.one()

    values: dict[str, Any] = {"confidence_score": avg_confidence, "updated_at": utcnow()}
    if pending == 0:
        values.update(
            status=JobStatus.REVIEWED.value, reviewed_at=utcnow(), reviewed_by=reviewer_id
        )
    await session.execute(
        update(AnnotationJob)
        .where(
            AnnotationJob.job_id == job_id,
            AnnotationJob.status == JobStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )


# ── Items ────────────────────────────────────────────────────

async def get_item(session: AsyncSession, item_id: uuid.UUID) -> Optional[AnnotationItem]:
    result = await session.execute(
        select(AnnotationItem)
        .where(AnnotationItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_items(
    session: AsyncSession,
    status: str = ItemStatus.PENDING.value,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AnnotationItem], int]:
    """One page of items in a status, newest first, plus the total."""
    total = await session.scalar(
        select(func.count(AnnotationItem.id)).where(AnnotationItem.status == status)
    )
    result = await session.execute(
        select(AnnotationItem)
        .where(AnnotationItem.status == status)
        .order_by(AnnotationItem.created_at.desc(), AnnotationItem.confidence.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0


async def pending_items_for_job(session: AsyncSession, job_id: str) -> list[AnnotationItem]:
    result = await session.execute(
        select(AnnotationItem)
        .where(
            AnnotationItem.job_id == job_id,
            AnnotationItem.status == ItemStatus.PENDING.value,
        )
        .order_by(AnnotationItem.created_at)
    )
    return list(result.scalars().all())


async def claim_item(
    session: AsyncSession,
    item_id: uuid.UUID,
    new_status: str,
    values: Optional[dict[str, Any]] = None,
) -> bool:
    """
    Transition a pending item to new_status, optionally updating fields.
    False means the item is missing or another reviewer got there first.
    """
    result = await session.execute(
        update(AnnotationItem)
        .where(
            AnnotationItem.id == item_id,
            AnnotationItem.status == ItemStatus.PENDING.value,
        )
        .values(status=new_status, updated_at=utcnow(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def patch_pending_item(
    session: AsyncSession, item_id: uuid.UUID, updates: dict[str, Any]
) -> bool:
    """In-place metadata update; the item stays pending."""
    result = await session.execute(
        update(AnnotationItem)
        .where(
            AnnotationItem.id == item_id,
            AnnotationItem.status == ItemStatus.PENDING.value,
        )
        .values(updated_at=utcnow(), **updates)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def link_canonical(
    session: AsyncSession, item_id: uuid.UUID, annotation_id: uuid.UUID
) -> None:
    await session.execute(
        update(AnnotationItem)
        .where(AnnotationItem.id == item_id)
        .values(approved_annotation_id=annotation_id)
        .execution_options(synchronize_session=False)
    )


# ── Canonical annotations & audit ────────────────────────────

async def insert_canonical_annotation(
    session: AsyncSession,
    source_item_id: uuid.UUID,
    image_id: str,
    values: dict[str, Any],
    vision_confidence: Optional[float],
) -> CanonicalAnnotation:
    annotation = CanonicalAnnotation(
        image_id=image_id,
        source_item_id=source_item_id,
        bounding_box=values["bounding_box"],
        annotation_type=values["annotation_type"],
        spanish_term=values["spanish_term"],
        english_term=values["english_term"],
        pronunciation=values.get("pronunciation"),
        difficulty_level=values["difficulty_level"],
        vision_generated=True,
        vision_confidence=vision_confidence,
    )
    session.add(annotation)
    await session.flush()
    return annotation


async def list_canonical_for_items(
    session: AsyncSession, item_ids: list[uuid.UUID]
) -> list[CanonicalAnnotation]:
    if not item_ids:
        return []
    result = await session.execute(
        select(CanonicalAnnotation)
        .where(CanonicalAnnotation.source_item_id.in_(item_ids))
        .order_by(CanonicalAnnotation.created_at)
    )
    return list(result.scalars().all())


async def record_review_action(
    session: AsyncSession,
    job_id: str,
    reviewer_id: str,
    action: str,
    item_id: Optional[uuid.UUID] = None,
    affected_items: int = 1,
    notes: Optional[str] = None,
) -> ReviewAction:
    review_action = ReviewAction(
        job_id=job_id,
        item_id=item_id,
        reviewer_id=reviewer_id,
        action=action,
        affected_items=affected_items,
        notes=notes,
    )
    session.add(review_action)
    await session.flush()
    return review_action
