"""
FastAPI dependency injection.
Provides DB sessions, the pattern store, generation and review services,
API key validation and reviewer identity.
"""

from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from aves.config import settings
from aves.engines.base import VisionEngine
from aves.generation.generator import AnnotationGenerator
from aves.generation.service import GenerationService
from aves.generation.task_runner import GenerationTaskRunner
from aves.learning.engine import ReinforcementEngine
from aves.learning.pattern_store import PatternStore, SqlPatternStore
from aves.models.database import async_session_factory, get_session
from aves.review.workflow import ReviewWorkflow


# ── Singleton instances ──────────────────────────────────────
_pattern_store: Optional[PatternStore] = None
_vision_engine: Optional[VisionEngine] = None
_task_runner: Optional[GenerationTaskRunner] = None
_generation_service: Optional[GenerationService] = None
_review_workflow: Optional[ReviewWorkflow] = None


def get_pattern_store() -> PatternStore:
    global _pattern_store
    if _pattern_store is None:
        _pattern_store = SqlPatternStore(async_session_factory)
    return _pattern_store


def get_reinforcement_engine() -> ReinforcementEngine:
    return ReinforcementEngine(get_pattern_store())


def get_vision_engine() -> VisionEngine:
    """Engine selected by VISION_ENGINE."""
    global _vision_engine
    if _vision_engine is None:
        if settings.VISION_ENGINE == "stub":
            from aves.engines.stub_engine import StubVisionEngine
            _vision_engine = StubVisionEngine()
        elif settings.VISION_ENGINE == "openai":
            from aves.engines.openai_vision import OpenAIVisionEngine
            _vision_engine = OpenAIVisionEngine()
        else:
            raise ValueError(f"Unknown VISION_ENGINE: {settings.VISION_ENGINE}")
    return _vision_engine


def get_task_runner() -> GenerationTaskRunner:
    global _task_runner
    if _task_runner is None:
        _task_runner = GenerationTaskRunner()
    return _task_runner


def get_generation_service() -> GenerationService:
    global _generation_service
    if _generation_service is None:
        generator = AnnotationGenerator(get_vision_engine(), get_pattern_store())
        _generation_service = GenerationService(
            async_session_factory, generator, get_task_runner()
        )
    return _generation_service


def get_review_workflow() -> ReviewWorkflow:
    global _review_workflow
    if _review_workflow is None:
        _review_workflow = ReviewWorkflow(async_session_factory, get_reinforcement_engine())
    return _review_workflow


def reset_singletons() -> None:
    """Drop cached services (tests swap engines and stores between cases)."""
    global _pattern_store, _vision_engine, _task_runner, _generation_service, _review_workflow
    _pattern_store = _vision_engine = _task_runner = None
    _generation_service = _review_workflow = None


async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key


async def get_reviewer_id(
    x_reviewer_id: Optional[str] = Header(None, alias="X-Reviewer-Id"),
) -> str:
    """Reviewer identity from the upstream auth layer, or the configured default."""
    if x_reviewer_id and x_reviewer_id.strip():
        return x_reviewer_id.strip()
    return settings.DEFAULT_REVIEWER_ID
