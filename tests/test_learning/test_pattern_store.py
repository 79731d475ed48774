"""
Tests for the pattern stores and the reinforcement engine.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aves.learning.engine import AnnotationSnapshot, FeedbackEvent, ReinforcementEngine
from aves.learning.pattern_store import InMemoryPatternStore, SqlPatternStore
from aves.learning.patterns import PatternOutcome
from aves.models.enums import FeedbackType
from aves.schemas.bounding_box import BoundingBox

SPECIES = "Turdus merula"


def _snapshot(term="el pico", box=None):
    return AnnotationSnapshot(
        spanish_term=term,
        english_term="beak",
        annotation_type="anatomical",
        bounding_box=box or BoundingBox(x=0.4, y=0.3, width=0.1, height=0.1),
        confidence=0.9,
    )


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryPatternStore()
    return SqlPatternStore(session_factory)


class TestPatternStores:

    async def test_record_creates_then_updates(self, store):
        await store.record_outcome(SPECIES, "el pico", PatternOutcome(FeedbackType.APPROVE))
        state = await store.record_outcome(
            SPECIES, "el pico", PatternOutcome(FeedbackType.REJECT, category="TOO_SMALL")
        )
        assert state.approval_count == 1
        assert state.rejection_count == 1
        assert state.rejection_categories == {"TOO_SMALL": 1}

        stored = await store.get_pattern(SPECIES, "el pico")
        assert stored.approval_count == 1
        assert stored.rejection_categories == {"TOO_SMALL": 1}

    async def test_missing_pattern(self, store):
        assert await store.get_pattern(SPECIES, "la cola") is None

    async def test_recommendations_ranked(self, store):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await store.record_outcome(SPECIES, "la cola", PatternOutcome(FeedbackType.REJECT, occurred_at=base))
        await store.record_outcome(SPECIES, "el pico", PatternOutcome(FeedbackType.APPROVE, occurred_at=base))
        await store.record_outcome(
            SPECIES, "el ala", PatternOutcome(FeedbackType.APPROVE, occurred_at=base + timedelta(hours=1))
        )
        await store.record_outcome("Other bird", "el ojo", PatternOutcome(FeedbackType.APPROVE))

        ranked = await store.get_recommendations(SPECIES)
        # equal multipliers: most recent first
        assert [s.feature for s in ranked] == ["el ala", "el pico", "la cola"]

        assert [s.feature for s in await store.get_recommendations(SPECIES, 1)] == ["el ala"]

    async def test_returned_state_is_a_snapshot(self, store):
        await store.record_outcome(SPECIES, "el pico", PatternOutcome(FeedbackType.APPROVE))
        snapshot = await store.get_pattern(SPECIES, "el pico")
        snapshot.approval_count = 99
        assert (await store.get_pattern(SPECIES, "el pico")).approval_count == 1

    async def test_export_everything(self, store):
        await store.record_outcome("b", "el pico", PatternOutcome(FeedbackType.APPROVE))
        await store.record_outcome("a", "la cola", PatternOutcome(FeedbackType.APPROVE))
        exported = await store.export()
        assert [(s.species, s.feature) for s in exported] == [("a", "la cola"), ("b", "el pico")]


class TestReinforcementEngine:

    async def test_approve_nudges_up(self, reinforcement):
        state = await reinforcement.capture_feedback(FeedbackEvent(
            feedback_type=FeedbackType.APPROVE,
            annotation_id="item-1",
            original=_snapshot(),
            species=SPECIES,
        ))
        assert state.confidence_multiplier > 1.0
        assert state.prior_box is not None

    async def test_reject_with_category(self, reinforcement):
        state = await reinforcement.capture_feedback(FeedbackEvent(
            feedback_type=FeedbackType.REJECT,
            annotation_id="item-2",
            original=_snapshot("la pata"),
            rejection_category="WRONG_TERM",
            species=SPECIES,
        ))
        assert state.rejection_categories == {"WRONG_TERM": 1}

    async def test_missing_species_is_unknown(self, reinforcement, pattern_store):
        await reinforcement.capture_feedback(FeedbackEvent(
            feedback_type=FeedbackType.APPROVE, annotation_id="x", original=_snapshot()
        ))
        assert await pattern_store.get_pattern("unknown", "el pico") is not None

    async def test_position_fix_requires_corrected(self, reinforcement):
        with pytest.raises(ValueError):
            await reinforcement.capture_feedback(FeedbackEvent(
                feedback_type=FeedbackType.POSITION_FIX,
                annotation_id="x",
                original=_snapshot(),
                species=SPECIES,
            ))

    async def test_pattern_analytics(self, reinforcement):
        for category in ("TOO_SMALL", "TOO_SMALL", None):
            await reinforcement.capture_feedback(FeedbackEvent(
                feedback_type=FeedbackType.REJECT,
                annotation_id="r",
                original=_snapshot("la cola"),
                rejection_category=category,
                species=SPECIES,
            ))
        await reinforcement.capture_feedback(FeedbackEvent(
            feedback_type=FeedbackType.APPROVE,
            annotation_id="a",
            original=_snapshot(),
            species="Pica pica",
        ))

        analytics = await reinforcement.get_pattern_analytics()
        assert analytics["total_patterns"] == 2
        assert analytics["species_tracked"] == 2
        assert analytics["rejection_categories"] == {"TOO_SMALL": 2}
        assert analytics["uncategorized_rejections"] == 1
        assert analytics["species_breakdown"][SPECIES]["rejections"] == 3
        assert analytics["top_features"][0].feature == "el pico"

    async def test_export(self, reinforcement):
        await reinforcement.capture_feedback(FeedbackEvent(
            feedback_type=FeedbackType.APPROVE, annotation_id="a", original=_snapshot(), species=SPECIES
        ))
        dump = await reinforcement.export_learned_patterns()
        assert dump["count"] == 1
        assert dump["patterns"][0].species == SPECIES

    async def test_sql_store_engine(self, session_factory):
        engine = ReinforcementEngine(SqlPatternStore(session_factory))
        await engine.capture_feedback(FeedbackEvent(
            feedback_type=FeedbackType.POSITION_FIX,
            annotation_id="e",
            original=_snapshot(box=BoundingBox(x=0.1, y=0.1, width=0.2, height=0.2)),
            corrected=_snapshot(box=BoundingBox(x=0.3, y=0.1, width=0.2, height=0.2)),
            species=SPECIES,
        ))
        [state] = await engine.get_recommended_features(SPECIES)
        assert state.correction_count == 1
        assert state.avg_delta_x == pytest.approx(0.2)
        assert state.prior_x == pytest.approx(0.3)
