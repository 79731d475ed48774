"""
Stub vision engine for exercising the pipeline without a model.
Returns a fixed set of common bird features.
"""

import copy
from typing import Optional

from aves.engines.base import VisionEngine

DEFAULT_FEATURES = [
    {
        "spanishTerm": "el pico",
        "englishTerm": "beak",
        "boundingBox": {"x": 0.45, "y": 0.30, "width": 0.10, "height": 0.08},
        "type": "anatomical",
        "difficultyLevel": 1,
        "pronunciation": "el PEE-koh",
        "confidence": 0.95,
    },
    {
        "spanishTerm": "las alas",
        "englishTerm": "wings",
        "boundingBox": {"x": 0.30, "y": 0.40, "width": 0.35, "height": 0.25},
        "type": "anatomical",
        "difficultyLevel": 1,
        "pronunciation": "lahs AH-lahs",
        "confidence": 0.88,
    },
    {
        "spanishTerm": "la cola",
        "englishTerm": "tail",
        "boundingBox": {"x": 0.70, "y": 0.55, "width": 0.15, "height": 0.12},
        "type": "anatomical",
        "difficultyLevel": 2,
        "pronunciation": "lah KOH-lah",
        "confidence": 0.82,
    },
]


class StubVisionEngine(VisionEngine):
    """Fake adapter that returns canned features."""

    def __init__(self, features: Optional[list[dict]] = None):
        self.features = features if features is not None else DEFAULT_FEATURES
        self.calls: list[tuple[str, str]] = []

    @property
    def engine_name(self) -> str:
        return "stub"

    @property
    def engine_version(self) -> str:
        return "0.1.0"

    async def detect_features(self, image_url: str, prompt: str) -> list[dict]:
        self.calls.append((image_url, prompt))
        return copy.deepcopy(self.features)

    async def health_check(self) -> bool:
        return True
