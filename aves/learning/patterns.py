"""
Learned pattern state and its update rule.

One PatternState per (species, feature). Both pattern stores load a state,
call apply() and write it back, so the arithmetic lives only here.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from aves.config import settings
from aves.models.enums import FeedbackType
from aves.schemas.bounding_box import BoundingBox

UNKNOWN_SPECIES = "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PatternOutcome:
    """A single reviewer outcome, reduced to what the update rule needs."""
    feedback_type: FeedbackType
    feature_type: Optional[str] = None
    category: Optional[str] = None
    # Approved box for approvals, corrected box for position fixes
    box: Optional[BoundingBox] = None
    original_box: Optional[BoundingBox] = None
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass
class PatternState:
    species: str
    feature: str
    feature_type: Optional[str] = None
    approval_count: int = 0
    rejection_count: int = 0
    correction_count: int = 0
    uncategorized_rejections: int = 0
    rejection_categories: dict[str, int] = field(default_factory=dict)
    confidence_multiplier: float = 1.0
    prior_x: Optional[float] = None
    prior_y: Optional[float] = None
    prior_width: Optional[float] = None
    prior_height: Optional[float] = None
    prior_weight: float = 0.0
    avg_delta_x: float = 0.0
    avg_delta_y: float = 0.0
    avg_delta_width: float = 0.0
    avg_delta_height: float = 0.0
    last_outcome_at: Optional[datetime] = None

    # ── Update rule ─────────────────────────────────────────

    def apply(self, outcome: PatternOutcome) -> None:
        """Fold one outcome into the counters, multiplier and spatial prior."""
        if outcome.feature_type and not self.feature_type:
            self.feature_type = outcome.feature_type

        if outcome.feedback_type == FeedbackType.APPROVE:
            self.approval_count += 1
            self._move_multiplier(settings.PATTERN_MULTIPLIER_MAX)
            if outcome.box is not None:
                self._fold_prior(outcome.box, 1.0)

        elif outcome.feedback_type == FeedbackType.REJECT:
            self.rejection_count += 1
            if outcome.category:
                # Reassign so JSON columns see a new object
                categories = dict(self.rejection_categories)
                categories[outcome.category] = categories.get(outcome.category, 0) + 1
                self.rejection_categories = categories
            else:
                self.uncategorized_rejections += 1
            self._move_multiplier(settings.PATTERN_MULTIPLIER_MIN)

        elif outcome.feedback_type == FeedbackType.POSITION_FIX:
            if outcome.box is None or outcome.original_box is None:
                raise ValueError("position_fix needs both the original and corrected box")
            self.correction_count += 1
            self._fold_delta(outcome.original_box, outcome.box)
            self._fold_prior(outcome.box, settings.CORRECTION_WEIGHT)

        self.last_outcome_at = outcome.occurred_at

    def _move_multiplier(self, target: float) -> None:
        alpha = settings.PATTERN_EMA_ALPHA
        moved = self.confidence_multiplier + alpha * (target - self.confidence_multiplier)
        self.confidence_multiplier = min(
            settings.PATTERN_MULTIPLIER_MAX, max(settings.PATTERN_MULTIPLIER_MIN, moved)
        )

    def _fold_prior(self, box: BoundingBox, weight: float) -> None:
        if self.prior_weight <= 0 or self.prior_x is None:
            self.prior_x, self.prior_y = box.x, box.y
            self.prior_width, self.prior_height = box.width, box.height
            self.prior_weight = weight
            return
        total = self.prior_weight + weight
        self.prior_x = (self.prior_x * self.prior_weight + box.x * weight) / total
        self.prior_y = (self.prior_y * self.prior_weight + box.y * weight) / total
        self.prior_width = (self.prior_width * self.prior_weight + box.width * weight) / total
        self.prior_height = (self.prior_height * self.prior_weight + box.height * weight) / total
        self.prior_weight = total

    def _fold_delta(self, original: BoundingBox, corrected: BoundingBox) -> None:
        # Running mean; correction_count already includes this correction
        n = self.correction_count
        self.avg_delta_x += ((corrected.x - original.x) - self.avg_delta_x) / n
        self.avg_delta_y += ((corrected.y - original.y) - self.avg_delta_y) / n
        self.avg_delta_width += ((corrected.width - original.width) - self.avg_delta_width) / n
        self.avg_delta_height += ((corrected.height - original.height) - self.avg_delta_height) / n

    # ── Derived views ───────────────────────────────────────

    @property
    def prior_box(self) -> Optional[BoundingBox]:
        if self.prior_x is None or self.prior_weight <= 0:
            return None
        return BoundingBox(
            x=self.prior_x, y=self.prior_y, width=self.prior_width, height=self.prior_height
        )

    @property
    def avg_delta(self) -> dict[str, float]:
        return {
            "x": self.avg_delta_x,
            "y": self.avg_delta_y,
            "width": self.avg_delta_width,
            "height": self.avg_delta_height,
        }

    def typical_shift(self) -> dict[str, float]:
        """
        Mean reviewer correction per box component, once enough corrections
        exist. Components smaller than the configured minimum are left out.
        """
        if self.correction_count < settings.CORRECTION_GUIDANCE_MIN_SAMPLES:
            return {}
        return {
            name: delta
            for name, delta in self.avg_delta.items()
            if abs(delta) >= settings.CORRECTION_GUIDANCE_MIN_SHIFT
        }

    @property
    def total_outcomes(self) -> int:
        return self.approval_count + self.rejection_count + self.correction_count

    def is_implausible(self, box: BoundingBox) -> bool:
        """
        True when the prior is established and the box sits too far from it
        or differs too much in area.
        """
        prior = self.prior_box
        if prior is None or self.prior_weight < settings.PRIOR_MIN_WEIGHT:
            return False

        (cx, cy), (px, py) = box.center, prior.center
        if math.hypot(cx - px, cy - py) > settings.SPATIAL_OUTLIER_DISTANCE:
            return True

        if prior.area > 0:
            ratio = box.area / prior.area
            limit = settings.SPATIAL_AREA_RATIO_LIMIT
            if ratio > limit or ratio < 1.0 / limit:
                return True
        return False
