"""
Annotation generation.

Builds the vision prompt (biased by learned patterns when there are any),
calls the vision engine, validates every raw feature on its own and drops
boxes that contradict an established spatial prior.
"""

from typing import Any, Optional

import structlog
from pydantic import Field, ValidationError as PydanticValidationError, field_validator

from aves.config import settings
from aves.engines.base import VisionEngine
from aves.errors import GenerationError
from aves.learning.pattern_store import PatternStore
from aves.learning.patterns import UNKNOWN_SPECIES, PatternState
from aves.models.enums import AnnotationType
from aves.schemas.annotations import CamelModel
from aves.schemas.bounding_box import BoundingBox, normalize_bounding_box

logger = structlog.get_logger(__name__)

BASE_PROMPT = """
Analyze this bird image and identify visible features that would be useful for Spanish language learning.
Return {"annotations": [...]} where every element has this EXACT structure:

{
  "spanishTerm": "el pico",
  "englishTerm": "beak",
  "boundingBox": {"x": 0.45, "y": 0.30, "width": 0.10, "height": 0.08},
  "type": "anatomical",
  "difficultyLevel": 1,
  "pronunciation": "el PEE-koh",
  "confidence": 0.95
}

GUIDELINES:
- Typical features: pico (beak), alas (wings), cola (tail), patas (legs),
  plumas (feathers), ojos (eyes), cuello (neck), pecho (breast), cabeza (head)
- Use normalized coordinates (0-1 range); x and y are the top-left corner
- Only include features that are clearly visible in the image
- Difficulty levels: 1 (basic body parts), 2-3 (common features), 4-5 (advanced features)
- Pronunciation: simple phonetic guide, capital letters for stressed syllables
- Confidence: 0.0-1.0, how sure you are of the annotation
- Type must be one of: anatomical, behavioral, color, pattern
- Provide 3-8 annotations per image
""".strip()


class GeneratedAnnotation(CamelModel):
    """One validated feature as produced by the vision model."""
    spanish_term: str = Field(min_length=1, max_length=200)
    english_term: str = Field(min_length=1, max_length=200)
    bounding_box: BoundingBox
    type: AnnotationType
    difficulty_level: int = Field(ge=1, le=5)
    pronunciation: Optional[str] = Field(default=None, max_length=200)
    confidence: float = Field(default_factory=lambda: settings.DEFAULT_CONFIDENCE, ge=0.0, le=1.0)

    @field_validator("spanish_term", "english_term", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("bounding_box", mode="before")
    @classmethod
    def _normalize_box(cls, value: Any) -> Any:
        return normalize_bounding_box(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _default_confidence(cls, value: Any) -> Any:
        return settings.DEFAULT_CONFIDENCE if value is None else value

    def to_item_values(self) -> dict:
        """Column values for an AnnotationItem row."""
        return {
            "spanish_term": self.spanish_term,
            "english_term": self.english_term,
            "bounding_box": self.bounding_box.model_dump(),
            "annotation_type": self.type.value,
            "difficulty_level": self.difficulty_level,
            "pronunciation": self.pronunciation,
            "confidence": self.confidence,
        }


def build_prompt(patterns: list[PatternState]) -> str:
    """Base prompt plus focus, caution and box-correction sections from learned patterns."""
    focus = [
        p.feature
        for p in patterns
        if p.approval_count > 0 and p.confidence_multiplier >= 1.0
    ][: settings.PROMPT_FOCUS_FEATURES]
    caution = [p.feature for p in patterns if p.confidence_multiplier < settings.CAUTION_MULTIPLIER]

    sections = [BASE_PROMPT]
    if focus:
        sections.append(
            "Reviewers consistently approved these features on this species; "
            "look for them first: " + ", ".join(focus)
        )
    if caution:
        sections.append(
            "Reviewers often rejected these features on this species; "
            "include them only when clearly visible: " + ", ".join(caution)
        )
    shifts = [(p.feature, p.typical_shift()) for p in patterns]
    shifts = [(feature, shift) for feature, shift in shifts if shift]
    if shifts:
        lines = [
            f"- {feature}: " + ", ".join(f"{name} {delta:+.2f}" for name, delta in shift.items())
            for feature, shift in shifts
        ]
        sections.append(
            "Reviewers repeatedly corrected the boxes of these features; apply these "
            "typical adjustments (x and y move the top-left corner in image fractions; "
            "width and height change the size):\n" + "\n".join(lines)
        )
    sections.append("Return ONLY valid JSON, no explanatory text.")
    return "\n\n".join(sections)


def validate_features(raw_features: list[dict]) -> list[GeneratedAnnotation]:
    """Validate each raw feature independently, dropping the invalid ones."""
    valid: list[GeneratedAnnotation] = []
    for index, raw in enumerate(raw_features):
        try:
            valid.append(GeneratedAnnotation.model_validate(raw))
        except (PydanticValidationError, ValueError) as e:
            logger.warning("annotation_dropped", index=index, error=str(e)[:300])
    return valid


def filter_spatial_outliers(
    annotations: list[GeneratedAnnotation],
    patterns: list[PatternState],
) -> list[GeneratedAnnotation]:
    """
    Drop boxes that contradict an established prior for the same feature.
    If every box would be dropped the unfiltered list is returned.
    """
    priors = {p.feature: p for p in patterns}
    kept = []
    for annotation in annotations:
        pattern = priors.get(annotation.spanish_term)
        if pattern is not None and pattern.is_implausible(annotation.bounding_box):
            logger.info(
                "annotation_outlier_dropped",
                feature=annotation.spanish_term,
                box=annotation.bounding_box.model_dump(),
                prior=pattern.prior_box.model_dump(),
            )
            continue
        kept.append(annotation)

    if annotations and not kept:
        logger.warning("outlier_filter_bypassed", dropped=len(annotations))
        return annotations
    return kept


class AnnotationGenerator:

    def __init__(self, engine: VisionEngine, pattern_store: Optional[PatternStore] = None):
        self.engine = engine
        self.pattern_store = pattern_store

    async def _load_patterns(self, species: Optional[str]) -> list[PatternState]:
        if not species or self.pattern_store is None:
            return []
        try:
            return await self.pattern_store.get_recommendations(species)
        except Exception as e:
            # Learned patterns only bias the prompt; generate unbiased without them
            logger.warning("pattern_lookup_failed", species=species, error=str(e)[:200])
            return []

    async def generate(
        self, image_url: str, image_id: str, species: Optional[str] = None
    ) -> list[GeneratedAnnotation]:
        """
        Produce validated annotations for one image.
        Raises GenerationError on engine failure or when no feature is valid.
        """
        patterns = await self._load_patterns(species)
        prompt = build_prompt(patterns)

        raw_features = await self.engine.detect_features(image_url, prompt)
        annotations = validate_features(raw_features)
        if not annotations:
            raise GenerationError(
                f"Vision model returned no valid annotations ({len(raw_features)} raw)"
            )

        annotations = filter_spatial_outliers(annotations, patterns)

        logger.info(
            "annotations_generated",
            image_id=image_id,
            species=species or UNKNOWN_SPECIES,
            engine=self.engine.engine_name,
            raw=len(raw_features),
            kept=len(annotations),
            biased=bool(patterns),
        )
        return annotations
