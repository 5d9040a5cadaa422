"""
DB Coach Streaming - Gemini Backend
===================================

GenerationBackend implementation over the Gemini `generateContent`
REST endpoint. Errors surface as exceptions; the pipeline decides what
to fall back to.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from dbcoach.core.config import settings
from dbcoach.core.models import DatabaseType
from dbcoach.core.streaming.generation import (
    GenerationBackend,
    ReasoningCallback,
    ReasoningUpdate,
)
from dbcoach.core.streaming.prompts import paradigm_preamble

logger = structlog.get_logger()


class GeminiBackendError(Exception):
    """Gemini returned something we cannot use."""


class GeminiBackend(GenerationBackend):
    """
    Client for the Gemini generative language API.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        api_url: str = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.api_url = (api_url or settings.GEMINI_API_URL).rstrip("/")
        # The soft timeout in the pipeline is the real bound
        self._client = client or httpx.AsyncClient(timeout=settings.GENERATION_SOFT_TIMEOUT_SECONDS + 5)

        logger.info(
            "gemini_backend_initialized",
            model=self.model,
            mode="live" if self.enabled else "disabled",
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _payload(self, request_text: str, database_type: DatabaseType) -> Dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": paradigm_preamble(database_type)}]},
            "contents": [{"role": "user", "parts": [{"text": request_text}]}],
            "generationConfig": {
                "temperature": settings.GEMINI_TEMPERATURE,
                "maxOutputTokens": settings.GEMINI_MAX_OUTPUT_TOKENS,
            },
        }

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback", {})
            raise GeminiBackendError(f"no candidates returned ({feedback.get('blockReason', 'unknown')})")
        parts = candidates[0].get("content", {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if not text:
            raise GeminiBackendError(
                f"empty candidate (finishReason={candidates[0].get('finishReason', 'unknown')})"
            )
        return text

    async def generate(
        self,
        request_text: str,
        database_type: DatabaseType,
        on_reasoning: Optional[ReasoningCallback] = None,
    ) -> str:
        if not self.enabled:
            raise GeminiBackendError("GEMINI_API_KEY is not configured")

        if on_reasoning:
            on_reasoning(ReasoningUpdate(
                f"Consulting {self.model} with {database_type.label} design principles",
                confidence=0.7,
            ))

        response = await self._client.post(
            f"{self.api_url}/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json=self._payload(request_text, database_type),
        )
        if response.status_code != 200:
            logger.error(
                "gemini_request_failed",
                status_code=response.status_code,
                response=response.text[:500],
            )
            response.raise_for_status()

        text = self._extract_text(response.json())

        if on_reasoning:
            on_reasoning(ReasoningUpdate(
                f"Received {len(text)} characters from {self.model}",
                confidence=0.9,
            ))

        logger.info("gemini_generation_completed", model=self.model, length=len(text))
        return text

    async def aclose(self) -> None:
        await self._client.aclose()
