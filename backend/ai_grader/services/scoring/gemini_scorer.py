"""Gemini-backed scorer using the google-genai SDK.

The SDK is sync, so each call runs in asyncio.to_thread. No retries here:
retry and backoff belong to the job queue, which needs to see the rate-limit
signal to penalize the right key.
"""
import asyncio
import logging
from typing import Any, Dict

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ai_grader.services.scoring.base import (
    BaseScorer, ScorerError, ScorerRateLimitError, ScoringRequest,
)
from ai_grader.services.scoring.prompt import SYSTEM_PROMPT, build_grading_prompt
from ai_grader.services.scoring.result_parser import parse_score_payload

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = {"RESOURCE_EXHAUSTED"}


def is_rate_limit_error(e: Exception) -> bool:
    """True for quota-exceeded responses (HTTP 429 / RESOURCE_EXHAUSTED)."""
    if getattr(e, "code", None) == 429:
        return True
    if getattr(e, "status", None) in RATE_LIMIT_STATUSES:
        return True
    text = str(e).lower()
    return "resource_exhausted" in text or "quota" in text or "rate limit" in text


class GeminiScorer(BaseScorer):
    """Grades findings with a Gemini model. One client per API key."""

    def __init__(self, model_name: str, temperature: float = 0.0):
        if not model_name:
            raise ValueError("No Gemini model configured (GEMINI_MODEL)")
        self.model_name = model_name
        self.temperature = temperature
        self._clients: Dict[str, genai.Client] = {}

    def _client_for(self, api_key: str) -> genai.Client:
        client = self._clients.get(api_key)
        if client is None:
            client = genai.Client(api_key=api_key)
            self._clients[api_key] = client
        return client

    def _sync_generate(self, api_key: str, prompt: str) -> str:
        config = types.GenerateContentConfig(
            temperature=self.temperature,
            system_instruction=SYSTEM_PROMPT,
            response_mime_type="application/json",
        )
        response = self._client_for(api_key).models.generate_content(
            model=self.model_name, contents=prompt, config=config,
        )
        return response.text or ""

    async def score(self, request: ScoringRequest, api_key: str) -> Dict[str, Any]:
        prompt = build_grading_prompt(
            request.teacher_findings, request.student_findings, request.rubric,
        )
        try:
            text = await asyncio.to_thread(self._sync_generate, api_key, prompt)
        except genai_errors.APIError as e:
            if is_rate_limit_error(e):
                raise ScorerRateLimitError(f"Gemini quota exceeded: {e}") from e
            raise ScorerError(f"Gemini API error: {e}") from e
        except (ConnectionError, OSError) as e:
            raise ScorerError(f"Gemini connection error: {e}") from e

        payload = parse_score_payload(text, request.rubric)
        payload["model"] = self.model_name
        logger.debug(f"Job {request.job_id} scored {payload['score']} by {self.model_name}")
        return payload
