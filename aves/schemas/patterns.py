"""
Response schemas for learned pattern endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import ConfigDict

from aves.schemas.annotations import CamelModel
from aves.schemas.bounding_box import BoundingBox


class PatternSnapshot(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    species: str
    feature: str
    feature_type: Optional[str] = None
    approval_count: int
    rejection_count: int
    correction_count: int
    uncategorized_rejections: int
    rejection_categories: dict[str, int]
    confidence_multiplier: float
    prior_box: Optional[BoundingBox] = None
    prior_weight: float
    avg_delta: dict[str, float]
    last_outcome_at: Optional[datetime] = None


class RecommendationsResponse(CamelModel):
    species: str
    recommendations: list[PatternSnapshot]


class SpeciesPatternSummary(CamelModel):
    patterns: int
    approvals: int
    rejections: int
    corrections: int
    avg_multiplier: float


class PatternAnalyticsResponse(CamelModel):
    total_patterns: int
    species_tracked: int
    top_features: list[PatternSnapshot]
    species_breakdown: dict[str, SpeciesPatternSummary]
    rejection_categories: dict[str, int]
    uncategorized_rejections: int


class PatternExportResponse(CamelModel):
    exported_at: datetime
    count: int
    patterns: list[PatternSnapshot]
