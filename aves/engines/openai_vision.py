"""
Vision engine backed by an OpenAI-compatible chat completions API.
The image is passed by URL; the model is asked for a JSON object.
"""

import time
from typing import Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from aves.config import settings
from aves.engines.base import VisionEngine, parse_feature_payload
from aves.errors import GenerationError
from aves.observability.metrics import vision_api_errors_total, vision_api_latency_seconds

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You annotate bird photographs for a Spanish vocabulary course. "
    "Respond with a JSON object of the form {\"annotations\": [...]} and nothing else."
)


class OpenAIVisionEngine(VisionEngine):

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model or settings.VISION_MODEL
        self._api_key = api_key or settings.VISION_API_KEY
        self._base_url = base_url or settings.VISION_BASE_URL
        self._client = client

    @property
    def engine_name(self) -> str:
        return "openai"

    @property
    def engine_version(self) -> str:
        return self.model

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise GenerationError("Vision API key is not configured")
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,  # None = OpenAI default
                timeout=settings.VISION_TIMEOUT_SECONDS,
                max_retries=0,  # retries are owned by the generation service
            )
        return self._client

    async def detect_features(self, image_url: str, prompt: str) -> list[dict]:
        client = self._get_client()
        start = time.perf_counter()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "image_url", "image_url": {"url": image_url}},
                            {"type": "text", "text": prompt},
                        ],
                    },
                ],
                temperature=settings.VISION_TEMPERATURE,
                max_tokens=settings.VISION_MAX_TOKENS,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            vision_api_errors_total.labels(engine_name=self.engine_name).inc()
            logger.warning("vision_api_error", model=self.model, error=str(e)[:200])
            raise GenerationError(f"Vision API request failed: {e}") from e
        finally:
            vision_api_latency_seconds.labels(engine_name=self.engine_name).observe(
                time.perf_counter() - start
            )

        if not response.choices:
            raise GenerationError("Vision API returned no choices")
        content = response.choices[0].message.content
        features = parse_feature_payload(content)

        usage = getattr(response, "usage", None)
        logger.info(
            "vision_api_completed",
            model=self.model,
            features=len(features),
            prompt_tokens=getattr(usage, "prompt_tokens", None),
            completion_tokens=getattr(usage, "completion_tokens", None),
        )
        return features

    async def health_check(self) -> bool:
        return bool(self._client is not None or self._api_key)
