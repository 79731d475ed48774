"""
Review workflow: approve, reject, edit, in-place patch and bulk approve.

Every transition runs in one transaction and flips the item with an UPDATE
guarded on status = 'pending'; a reviewer who loses a race gets NotFoundError.
Reinforcement feedback is emitted only after the commit, and a failure there
never undoes the review decision.
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aves.errors import AvesError, NotFoundError, PersistenceError, ValidationError
from aves.learning.engine import AnnotationSnapshot, FeedbackEvent, ReinforcementEngine
from aves.models.enums import FeedbackType, ItemStatus, ReviewActionType
from aves.models.tables import AnnotationItem, AnnotationJob
from aves.observability.metrics import (
    feedback_failures_total,
    review_actions_total,
    review_conflicts_total,
)
from aves.review.categories import build_rejection_message, extract_rejection_category
from aves.schemas.annotations import AnnotationOverrides
from aves.schemas.bounding_box import boxes_equal, normalize_bounding_box
from aves.store import annotation_store as store

logger = structlog.get_logger(__name__)

ALREADY_PROCESSED = "Annotation not found or already processed"

# Type changes and review notes belong to edit, which records a review action
PATCH_EXCLUDED_FIELDS = frozenset({"type", "notes"})


@dataclass
class ReviewResult:
    item_id: str
    status: str
    approved_annotation_id: Optional[str] = None


def _item_values(item: AnnotationItem) -> dict[str, Any]:
    return {
        "spanish_term": item.spanish_term,
        "english_term": item.english_term,
        "bounding_box": normalize_bounding_box(item.bounding_box).model_dump(),
        "annotation_type": item.annotation_type,
        "difficulty_level": item.difficulty_level,
        "pronunciation": item.pronunciation,
    }


def _snapshot(values: dict[str, Any], confidence: Optional[float]) -> AnnotationSnapshot:
    return AnnotationSnapshot(
        spanish_term=values["spanish_term"],
        english_term=values["english_term"],
        annotation_type=values["annotation_type"],
        bounding_box=normalize_bounding_box(values["bounding_box"]),
        confidence=confidence,
    )


class ReviewWorkflow:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feedback_engine: Optional[ReinforcementEngine] = None,
    ):
        self._session_factory = session_factory
        self.feedback_engine = feedback_engine

    # ── Plumbing ─────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("review_transaction_failed", operation=operation, error=str(e)[:300])
            raise PersistenceError(f"Failed to {operation} annotation") from e

    @staticmethod
    def _parse_id(item_id: str) -> uuid.UUID:
        parsed = store.parse_item_id(item_id)
        if parsed is None:
            raise NotFoundError(ALREADY_PROCESSED)
        return parsed

    async def _load_pending(
        self, session: AsyncSession, item_id: uuid.UUID, action: str
    ) -> tuple[AnnotationItem, Optional[str]]:
        item = await store.get_item(session, item_id)
        if item is None or item.status != ItemStatus.PENDING.value:
            review_conflicts_total.labels(action=action).inc()
            raise NotFoundError(ALREADY_PROCESSED)
        job = await session.get(AnnotationJob, item.job_id)
        return item, job.species if job else None

    async def _claim(
        self,
        session: AsyncSession,
        item_id: uuid.UUID,
        status: ItemStatus,
        action: str,
    ) -> None:
        if not await store.claim_item(session, item_id, status.value):
            review_conflicts_total.labels(action=action).inc()
            raise NotFoundError(ALREADY_PROCESSED)

    async def _emit(self, event: FeedbackEvent) -> None:
        if self.feedback_engine is None:
            return
        try:
            await self.feedback_engine.capture_feedback(event)
        except Exception as e:
            # Learning is advisory; the committed review decision stands
            feedback_failures_total.labels(feedback_type=event.feedback_type.value).inc()
            logger.error(
                "feedback_capture_failed",
                feedback_type=event.feedback_type.value,
                annotation_id=event.annotation_id,
                error=str(e)[:300],
            )

    # ── Transitions ──────────────────────────────────────────

    async def approve(
        self, item_id: str, reviewer_id: str, notes: Optional[str] = None
    ) -> ReviewResult:
        """pending -> approved, with a canonical annotation and positive feedback."""
        uid = self._parse_id(item_id)
        action = ReviewActionType.APPROVE.value

        async with self._transaction("approve") as session:
            item, species = await self._load_pending(session, uid, action)
            values = _item_values(item)
            confidence, job_id, image_id = item.confidence, item.job_id, item.image_id

            await self._claim(session, uid, ItemStatus.APPROVED, action)
            annotation = await store.insert_canonical_annotation(
                session, uid, image_id, values, confidence
            )
            await store.link_canonical(session, uid, annotation.id)
            await store.record_review_action(
                session, job_id, reviewer_id, action, item_id=uid, notes=notes
            )
            await store.refresh_job_rollup(session, job_id, reviewer_id)

        review_actions_total.labels(action=action).inc()
        logger.info(
            "annotation_approved",
            annotation_id=item_id,
            approved_annotation_id=str(annotation.id),
            reviewer_id=reviewer_id,
        )

        await self._emit(FeedbackEvent(
            feedback_type=FeedbackType.APPROVE,
            annotation_id=item_id,
            original=_snapshot(values, confidence),
            reviewer_id=reviewer_id,
            species=species,
            image_id=image_id,
        ))
        return ReviewResult(item_id, ItemStatus.APPROVED.value, str(annotation.id))

    async def reject(
        self,
        item_id: str,
        reviewer_id: str,
        category: Optional[str] = None,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ReviewResult:
        """pending -> rejected; the category travels as a bracketed note prefix."""
        message = build_rejection_message(category, notes, reason)
        if not message:
            raise ValidationError("At least one of category, reason, or notes must be provided")

        uid = self._parse_id(item_id)
        action = ReviewActionType.REJECT.value

        async with self._transaction("reject") as session:
            item, species = await self._load_pending(session, uid, action)
            values = _item_values(item)
            confidence, job_id, image_id = item.confidence, item.job_id, item.image_id

            await self._claim(session, uid, ItemStatus.REJECTED, action)
            await store.record_review_action(
                session, job_id, reviewer_id, action, item_id=uid, notes=message
            )
            await store.refresh_job_rollup(session, job_id, reviewer_id)

        review_actions_total.labels(action=action).inc()
        parsed_category = extract_rejection_category(message)
        logger.info(
            "annotation_rejected",
            annotation_id=item_id,
            category=parsed_category,
            reviewer_id=reviewer_id,
        )

        await self._emit(FeedbackEvent(
            feedback_type=FeedbackType.REJECT,
            annotation_id=item_id,
            original=_snapshot(values, confidence),
            rejection_category=parsed_category,
            reviewer_id=reviewer_id,
            species=species,
            image_id=image_id,
        ))
        return ReviewResult(item_id, ItemStatus.REJECTED.value)

    async def edit(
        self,
        item_id: str,
        reviewer_id: str,
        overrides: AnnotationOverrides,
        notes: Optional[str] = None,
    ) -> ReviewResult:
        """
        pending -> edited. Overrides are merged onto the generated values and
        the merged result becomes the canonical annotation; the item row keeps
        what the model produced. A moved box teaches the spatial prior.
        """
        uid = self._parse_id(item_id)
        action = ReviewActionType.EDIT.value
        updates = overrides.field_updates()

        async with self._transaction("edit") as session:
            item, species = await self._load_pending(session, uid, action)
            original = _item_values(item)
            merged = {**original, **updates}
            confidence, job_id, image_id = item.confidence, item.job_id, item.image_id

            await self._claim(session, uid, ItemStatus.EDITED, action)
            annotation = await store.insert_canonical_annotation(
                session, uid, image_id, merged, confidence
            )
            await store.link_canonical(session, uid, annotation.id)
            await store.record_review_action(
                session, job_id, reviewer_id, action, item_id=uid,
                notes=notes or overrides.notes,
            )
            await store.refresh_job_rollup(session, job_id, reviewer_id)

        review_actions_total.labels(action=action).inc()

        original_box = normalize_bounding_box(original["bounding_box"])
        corrected_box = normalize_bounding_box(merged["bounding_box"])
        box_changed = not boxes_equal(original_box, corrected_box)
        logger.info(
            "annotation_edited",
            annotation_id=item_id,
            approved_annotation_id=str(annotation.id),
            fields=sorted(updates),
            box_changed=box_changed,
        )

        if box_changed:
            await self._emit(FeedbackEvent(
                feedback_type=FeedbackType.POSITION_FIX,
                annotation_id=item_id,
                original=_snapshot(original, confidence),
                corrected=_snapshot(merged, confidence),
                reviewer_id=reviewer_id,
                species=species,
                image_id=image_id,
            ))
        return ReviewResult(item_id, ItemStatus.EDITED.value, str(annotation.id))

    async def patch(self, item_id: str, overrides: AnnotationOverrides) -> AnnotationItem:
        """
        In-place metadata fix on a pending item: terms, box, difficulty and
        pronunciation only. No status change, no feedback.
        """
        not_patchable = sorted(overrides.model_fields_set & PATCH_EXCLUDED_FIELDS)
        if not_patchable:
            raise ValidationError(
                "Fields cannot be changed in place; use edit instead",
                details=[
                    {"field": name, "message": "not accepted by an in-place update"}
                    for name in not_patchable
                ],
            )
        updates = overrides.field_updates()
        if not updates:
            raise ValidationError("No valid fields to update")

        uid = self._parse_id(item_id)
        async with self._transaction("update") as session:
            if not await store.patch_pending_item(session, uid, updates):
                review_conflicts_total.labels(action="patch").inc()
                raise NotFoundError(ALREADY_PROCESSED)
            item = await store.get_item(session, uid)

        logger.info("annotation_patched", annotation_id=item_id, fields=sorted(updates))
        return item

    async def bulk_approve(
        self, job_ids: list[str], reviewer_id: str, notes: Optional[str] = None
    ) -> dict:
        """
        Approve every pending item of each job, one transaction per job.
        A failing job is reported and does not affect the others.
        """
        details = []
        approved = failed = 0
        for job_id in dict.fromkeys(job_ids):
            try:
                count, events = await self._approve_job(job_id, reviewer_id, notes)
            except AvesError as e:
                failed += 1
                details.append({"job_id": job_id, "status": "error", "error": e.message})
                logger.warning("bulk_approve_job_failed", job_id=job_id, error=e.message)
                continue

            approved += 1
            details.append({"job_id": job_id, "status": "success", "approved_count": count})
            for event in events:
                await self._emit(event)

        logger.info("bulk_approve_completed", approved=approved, failed=failed)
        return {"approved": approved, "failed": failed, "details": details}

    async def _approve_job(
        self, job_id: str, reviewer_id: str, notes: Optional[str]
    ) -> tuple[int, list[FeedbackEvent]]:
        action = ReviewActionType.BULK_APPROVE.value
        events: list[FeedbackEvent] = []

        async with self._transaction("bulk approve") as session:
            job = await session.get(AnnotationJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")

            for item in await store.pending_items_for_job(session, job_id):
                values = _item_values(item)
                if not await store.claim_item(session, item.id, ItemStatus.APPROVED.value):
                    # Approved concurrently by a single-item review
                    continue
                annotation = await store.insert_canonical_annotation(
                    session, item.id, item.image_id, values, item.confidence
                )
                await store.link_canonical(session, item.id, annotation.id)
                events.append(FeedbackEvent(
                    feedback_type=FeedbackType.APPROVE,
                    annotation_id=str(item.id),
                    original=_snapshot(values, item.confidence),
                    reviewer_id=reviewer_id,
                    species=job.species,
                    image_id=item.image_id,
                ))

            await store.record_review_action(
                session, job_id, reviewer_id, action,
                affected_items=len(events), notes=notes,
            )
            await store.refresh_job_rollup(session, job_id, reviewer_id)

        review_actions_total.labels(action=action).inc(len(events))
        return len(events), events
