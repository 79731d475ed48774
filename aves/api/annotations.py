"""
/api/v1/annotations endpoints.
Generation, the review queue, review decisions, statistics and learned patterns.
Static paths are declared before the /{job_id} catch-all.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from aves.analytics.aggregator import compute_quality_flags, get_review_analytics, get_review_stats
from aves.dependencies import (
    get_db,
    get_generation_service,
    get_reinforcement_engine,
    get_review_workflow,
    get_reviewer_id,
    verify_api_key,
)
from aves.generation.service import GenerationService
from aves.learning.engine import ReinforcementEngine
from aves.models.enums import ItemStatus
from aves.models.tables import AnnotationItem, CanonicalAnnotation
from aves.review.workflow import ReviewWorkflow
from aves.schemas.annotations import (
    AnnotationItemResponse,
    AnnotationOverrides,
    ApproveAnnotationRequest,
    BulkApproveRequest,
    BulkApproveResponse,
    CanonicalAnnotationResponse,
    GenerateAnnotationsRequest,
    GenerationStartedResponse,
    JobDetailResponse,
    PendingAnnotationsResponse,
    QualityFlags,
    RejectAnnotationRequest,
    ReviewAnalyticsResponse,
    ReviewResultResponse,
    ReviewStatsResponse,
)
from aves.schemas.bounding_box import normalize_bounding_box, to_legacy_shape
from aves.schemas.patterns import (
    PatternAnalyticsResponse,
    PatternExportResponse,
    PatternSnapshot,
    RecommendationsResponse,
)
from aves.store import annotation_store as store

router = APIRouter(
    prefix="/api/v1/annotations",
    tags=["annotations"],
    dependencies=[Depends(verify_api_key)],
)

MAX_PAGE_SIZE = 100


def _item_response(item: AnnotationItem) -> AnnotationItemResponse:
    return AnnotationItemResponse(
        id=str(item.id),
        job_id=item.job_id,
        image_id=item.image_id,
        spanish_term=item.spanish_term,
        english_term=item.english_term,
        bounding_box=normalize_bounding_box(item.bounding_box),
        type=item.annotation_type,
        difficulty_level=item.difficulty_level,
        pronunciation=item.pronunciation,
        confidence=item.confidence,
        status=item.status,
        approved_annotation_id=(
            str(item.approved_annotation_id) if item.approved_annotation_id else None
        ),
        quality_flags=QualityFlags(**compute_quality_flags(item.bounding_box, item.confidence)),
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


def _canonical_response(annotation: CanonicalAnnotation) -> CanonicalAnnotationResponse:
    box = normalize_bounding_box(annotation.bounding_box)
    return CanonicalAnnotationResponse(
        id=str(annotation.id),
        image_id=annotation.image_id,
        source_item_id=str(annotation.source_item_id),
        bounding_box=box,
        legacy_bounding_box=to_legacy_shape(box),
        type=annotation.annotation_type,
        spanish_term=annotation.spanish_term,
        english_term=annotation.english_term,
        pronunciation=annotation.pronunciation,
        difficulty_level=annotation.difficulty_level,
        vision_confidence=annotation.vision_confidence,
        created_at=annotation.created_at,
    )


# ── Generation ───────────────────────────────────────────────

@router.post("/generate/{image_id}", response_model=GenerationStartedResponse, status_code=202)
async def generate_annotations(
    image_id: str,
    body: GenerateAnnotationsRequest,
    service: GenerationService = Depends(get_generation_service),
):
    """Start generation for one image; poll GET /{jobId} for the outcome."""
    job = await service.start_generation(image_id, str(body.image_url), body.species)
    return GenerationStartedResponse(job_id=job.job_id, status=job.status, image_id=image_id)


# ── Review queue & aggregates ────────────────────────────────

@router.get("/pending", response_model=PendingAnnotationsResponse)
async def list_pending(
    status: ItemStatus = Query(ItemStatus.PENDING),
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    """Items in a review status, newest first, with quality flags."""
    limit = min(limit, MAX_PAGE_SIZE)
    items, total = await store.list_items(session, status.value, limit, offset)
    return PendingAnnotationsResponse(
        annotations=[_item_response(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
        status=status.value,
    )


@router.get("/stats", response_model=ReviewStatsResponse)
async def review_stats(session: AsyncSession = Depends(get_db)):
    return await get_review_stats(session)


@router.get("/analytics", response_model=ReviewAnalyticsResponse)
async def review_analytics(session: AsyncSession = Depends(get_db)):
    return await get_review_analytics(session)


# ── Learned patterns ─────────────────────────────────────────

@router.get("/patterns/analytics", response_model=PatternAnalyticsResponse)
async def pattern_analytics(engine: ReinforcementEngine = Depends(get_reinforcement_engine)):
    analytics = await engine.get_pattern_analytics()
    analytics["top_features"] = [
        PatternSnapshot.model_validate(p) for p in analytics["top_features"]
    ]
    return analytics


@router.get(
    "/patterns/species/{species}/recommendations", response_model=RecommendationsResponse
)
async def species_recommendations(
    species: str,
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    engine: ReinforcementEngine = Depends(get_reinforcement_engine),
):
    """Learned features for a species, most trusted first."""
    patterns = await engine.get_recommended_features(species, limit)
    return RecommendationsResponse(
        species=species,
        recommendations=[PatternSnapshot.model_validate(p) for p in patterns],
    )


@router.get("/patterns/export", response_model=PatternExportResponse)
async def export_patterns(engine: ReinforcementEngine = Depends(get_reinforcement_engine)):
    dump = await engine.export_learned_patterns()
    return PatternExportResponse(
        exported_at=dump["exported_at"],
        count=dump["count"],
        patterns=[PatternSnapshot.model_validate(p) for p in dump["patterns"]],
    )


# ── Bulk review ──────────────────────────────────────────────

@router.post("/batch/approve", response_model=BulkApproveResponse)
async def bulk_approve(
    body: BulkApproveRequest,
    reviewer_id: str = Depends(get_reviewer_id),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    """Approve every pending item of each job; failures are reported per job."""
    return await workflow.bulk_approve(body.job_ids, reviewer_id, body.notes)


# ── Jobs ─────────────────────────────────────────────────────

@router.get("/{job_id}", response_model=JobDetailResponse)
async def get_job(
    job_id: str,
    service: GenerationService = Depends(get_generation_service),
):
    """Job status with its items and any canonical annotations."""
    job, canonical = await service.get_job_detail(job_id)
    return JobDetailResponse(
        job_id=job.job_id,
        image_id=job.image_id,
        image_url=job.image_url,
        species=job.species,
        status=job.status,
        confidence_score=job.confidence_score,
        annotation_data=job.annotation_data,
        error_message=job.error_message,
        error_payload=job.error_payload,
        attempts=job.attempts,
        deadline_at=job.deadline_at,
        reviewed_by=job.reviewed_by,
        reviewed_at=job.reviewed_at,
        created_at=job.created_at,
        updated_at=job.updated_at,
        items=[_item_response(item) for item in job.items],
        canonical_annotations=[_canonical_response(a) for a in canonical],
    )


# ── Item decisions ───────────────────────────────────────────

@router.post("/{annotation_id}/approve", response_model=ReviewResultResponse)
async def approve_annotation(
    annotation_id: str,
    body: Optional[ApproveAnnotationRequest] = None,
    reviewer_id: str = Depends(get_reviewer_id),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    result = await workflow.approve(annotation_id, reviewer_id, body.notes if body else None)
    return ReviewResultResponse(
        message="Annotation approved successfully",
        annotation_id=result.item_id,
        approved_annotation_id=result.approved_annotation_id,
    )


@router.post("/{annotation_id}/reject", response_model=ReviewResultResponse)
async def reject_annotation(
    annotation_id: str,
    body: RejectAnnotationRequest,
    reviewer_id: str = Depends(get_reviewer_id),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    result = await workflow.reject(
        annotation_id, reviewer_id, body.category, body.notes, body.reason
    )
    return ReviewResultResponse(message="Annotation rejected", annotation_id=result.item_id)


@router.post("/{annotation_id}/edit", response_model=ReviewResultResponse)
async def edit_annotation(
    annotation_id: str,
    body: AnnotationOverrides,
    reviewer_id: str = Depends(get_reviewer_id),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    """Apply corrections and accept the annotation."""
    result = await workflow.edit(annotation_id, reviewer_id, body)
    return ReviewResultResponse(
        message="Annotation edited and approved",
        annotation_id=result.item_id,
        approved_annotation_id=result.approved_annotation_id,
    )


@router.patch("/{annotation_id}", response_model=AnnotationItemResponse)
async def patch_annotation(
    annotation_id: str,
    body: AnnotationOverrides,
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    """Fix fields on a pending annotation without deciding on it."""
    item = await workflow.patch(annotation_id, body)
    return _item_response(item)
