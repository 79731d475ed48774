"""
Reinforcement engine.

Turns reviewer decisions into pattern updates and serves the learned
patterns back to the generator and the analytics endpoints. Learning is
advisory: callers treat a failure here as non-fatal.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog

from aves.learning.pattern_store import PatternStore
from aves.learning.patterns import UNKNOWN_SPECIES, PatternOutcome, PatternState
from aves.models.enums import FeedbackType
from aves.observability.metrics import feedback_events_total
from aves.schemas.bounding_box import BoundingBox

logger = structlog.get_logger(__name__)

TOP_FEATURES_LIMIT = 10


@dataclass
class AnnotationSnapshot:
    """Annotation values as the reviewer saw (or corrected) them."""
    spanish_term: str
    english_term: str
    annotation_type: str
    bounding_box: BoundingBox
    confidence: Optional[float] = None


@dataclass
class FeedbackEvent:
    feedback_type: FeedbackType
    annotation_id: str
    original: AnnotationSnapshot
    corrected: Optional[AnnotationSnapshot] = None
    rejection_category: Optional[str] = None
    reviewer_id: Optional[str] = None
    species: Optional[str] = None
    image_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReinforcementEngine:

    def __init__(self, store: PatternStore):
        self.store = store

    async def capture_feedback(self, event: FeedbackEvent) -> PatternState:
        """Apply one feedback event to the (species, feature) pattern."""
        species = event.species or UNKNOWN_SPECIES
        feature = event.original.spanish_term

        outcome = PatternOutcome(
            feedback_type=event.feedback_type,
            feature_type=event.original.annotation_type,
            occurred_at=event.occurred_at,
        )
        if event.feedback_type == FeedbackType.APPROVE:
            outcome.box = event.original.bounding_box
        elif event.feedback_type == FeedbackType.REJECT:
            outcome.category = event.rejection_category
        elif event.feedback_type == FeedbackType.POSITION_FIX:
            if event.corrected is None:
                raise ValueError("position_fix feedback requires the corrected annotation")
            outcome.box = event.corrected.bounding_box
            outcome.original_box = event.original.bounding_box

        state = await self.store.record_outcome(species, feature, outcome)
        feedback_events_total.labels(feedback_type=event.feedback_type.value).inc()

        logger.info(
            "feedback_captured",
            feedback_type=event.feedback_type.value,
            annotation_id=event.annotation_id,
            species=species,
            feature=feature,
            category=outcome.category,
            multiplier=round(state.confidence_multiplier, 4),
        )
        return state

    async def get_recommended_features(
        self, species: Optional[str], limit: Optional[int] = None
    ) -> list[PatternState]:
        return await self.store.get_recommendations(species or UNKNOWN_SPECIES, limit)

    async def get_pattern_analytics(self) -> dict:
        patterns = await self.store.export()

        breakdown: dict[str, dict] = defaultdict(
            lambda: {"patterns": 0, "approvals": 0, "rejections": 0, "corrections": 0, "multipliers": []}
        )
        categories: dict[str, int] = defaultdict(int)
        uncategorized = 0
        for p in patterns:
            entry = breakdown[p.species]
            entry["patterns"] += 1
            entry["approvals"] += p.approval_count
            entry["rejections"] += p.rejection_count
            entry["corrections"] += p.correction_count
            entry["multipliers"].append(p.confidence_multiplier)
            for category, count in p.rejection_categories.items():
                categories[category] += count
            uncategorized += p.uncategorized_rejections

        species_breakdown = {}
        for species, entry in breakdown.items():
            multipliers = entry.pop("multipliers")
            entry["avg_multiplier"] = round(sum(multipliers) / len(multipliers), 4)
            species_breakdown[species] = entry

        top = sorted(
            (p for p in patterns if p.total_outcomes > 0),
            key=lambda p: (-p.confidence_multiplier, -p.total_outcomes, p.feature),
        )[:TOP_FEATURES_LIMIT]

        return {
            "total_patterns": len(patterns),
            "species_tracked": len(species_breakdown),
            "top_features": top,
            "species_breakdown": species_breakdown,
            "rejection_categories": dict(categories),
            "uncategorized_rejections": uncategorized,
        }

    async def export_learned_patterns(self) -> dict:
        patterns = await self.store.export()
        return {
            "exported_at": datetime.now(timezone.utc),
            "count": len(patterns),
            "patterns": patterns,
        }
