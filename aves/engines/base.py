"""
Abstract base class for vision engines.
An engine looks at one image and returns raw feature dicts; validating them
is the generator's job.
"""

import json
import re
from abc import ABC, abstractmethod

from aves.errors import GenerationError


class VisionEngine(ABC):
    """
    Every engine must:
    1. Accept an image URL and a prompt
    2. Return a list of raw annotation dicts as the model produced them
    3. Report its name and version
    4. Raise GenerationError on failure (never return partial output)
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Unique identifier: 'openai', 'stub'"""
        ...

    @property
    @abstractmethod
    def engine_version(self) -> str:
        """Model or API version string."""
        ...

    @abstractmethod
    async def detect_features(self, image_url: str, prompt: str) -> list[dict]:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify engine is configured and reachable."""
        ...


_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?|\n?```\s*$", re.IGNORECASE)


def parse_feature_payload(content: str) -> list[dict]:
    """
    Decode model text into a list of raw feature dicts.

    Accepts pure JSON, markdown-fenced JSON, a bare array, or an object
    wrapping the array under "annotations" (JSON mode forces an object).
    Raises GenerationError when nothing usable can be decoded.
    """
    text = _FENCE_RE.sub("", (content or "").strip()).strip()
    if not text:
        raise GenerationError("Vision model returned an empty response")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Failed to parse vision model response: {e.msg}")

    if isinstance(parsed, dict):
        parsed = parsed.get("annotations")
    if not isinstance(parsed, list):
        raise GenerationError("Vision model response is not a list of annotations")
    return [item for item in parsed if isinstance(item, dict)]
