"""
Shared test fixtures.
Tests run against a throwaway SQLite database; the environment is set before
any aves module reads its settings.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_aves.db"
os.environ["VISION_ENGINE"] = "stub"
os.environ["DB_AUTO_CREATE"] = "false"
os.environ.pop("API_KEY", None)

import pytest
from httpx import ASGITransport, AsyncClient

from aves import dependencies
from aves.engines.stub_engine import StubVisionEngine
from aves.generation.generator import AnnotationGenerator
from aves.generation.service import GenerationService
from aves.generation.task_runner import GenerationTaskRunner
from aves.learning.engine import ReinforcementEngine
from aves.learning.pattern_store import InMemoryPatternStore
from aves.models import tables  # noqa: F401
from aves.models.database import Base, async_session_factory, engine
from aves.review.workflow import ReviewWorkflow
from aves.store import annotation_store as store


@pytest.fixture(autouse=True)
async def database():
    """Fresh schema for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory():
    return async_session_factory


@pytest.fixture
def pattern_store():
    return InMemoryPatternStore()


@pytest.fixture
def reinforcement(pattern_store):
    return ReinforcementEngine(pattern_store)


@pytest.fixture
def workflow(session_factory, reinforcement):
    return ReviewWorkflow(session_factory, reinforcement)


@pytest.fixture
def stub_engine():
    return StubVisionEngine()


@pytest.fixture
async def runner():
    runner = GenerationTaskRunner()
    yield runner
    await runner.shutdown()


@pytest.fixture
def generation_service(session_factory, stub_engine, pattern_store, runner):
    generator = AnnotationGenerator(stub_engine, pattern_store)
    return GenerationService(session_factory, generator, runner)


@pytest.fixture
def sample_items():
    """Three generated items for image img-1 with confidences 0.9, 0.6 and 0.85."""
    return [
        {
            "spanish_term": "el pico",
            "english_term": "beak",
            "bounding_box": {"x": 0.40, "y": 0.25, "width": 0.20, "height": 0.15},
            "annotation_type": "anatomical",
            "difficulty_level": 1,
            "pronunciation": "el PEE-koh",
            "confidence": 0.9,
        },
        {
            "spanish_term": "la pata",
            "english_term": "wing",
            "bounding_box": {"x": 0.40, "y": 0.70, "width": 0.05, "height": 0.20},
            "annotation_type": "anatomical",
            "difficulty_level": 2,
            "pronunciation": "lah PAH-tah",
            "confidence": 0.6,
        },
        {
            "spanish_term": "la cola",
            "english_term": "tail",
            "bounding_box": {"x": 0.65, "y": 0.50, "width": 0.25, "height": 0.20},
            "annotation_type": "anatomical",
            "difficulty_level": 2,
            "pronunciation": "lah KOH-lah",
            "confidence": 0.85,
        },
    ]


@pytest.fixture
def make_job(session_factory, sample_items):
    """Create a pending job with items; returns (job_id, [item ids])."""

    async def _make(image_id="img-1", species="Cardinalis cardinalis", items=None):
        items = sample_items if items is None else items
        async with session_factory() as session:
            async with session.begin():
                job = await store.create_job(
                    session, image_id, f"https://images.test/{image_id}.jpg", species, 300
                )
                await store.complete_job(session, job.job_id, image_id, items)
        async with session_factory() as session:
            loaded = await store.get_job(session, job.job_id)
            by_term = {item.spanish_term: str(item.id) for item in loaded.items}
        return job.job_id, [by_term[item["spanish_term"]] for item in items]

    return _make


@pytest.fixture
async def client(workflow, generation_service, reinforcement):
    """API client with services wired to the in-memory pattern store and stub engine."""
    from aves.main import app

    app.dependency_overrides[dependencies.get_review_workflow] = lambda: workflow
    app.dependency_overrides[dependencies.get_generation_service] = lambda: generation_service
    app.dependency_overrides[dependencies.get_reinforcement_engine] = lambda: reinforcement

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    dependencies.reset_singletons()
