from __future__ import annotations

import structlog
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .config import GenerationConfig
from .errors import ServiceError
from .models import GenerationResponse, TokenUsage

log = structlog.get_logger()


class GeminiGenerationClient:
    """Generation through the Gemini API, used when ``generation_backend=gemini``."""

    def __init__(self, api_key: str, client: genai.Client | None = None) -> None:
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def generate(
        self,
        model_id: str,
        prompt: str,
        inference_params: GenerationConfig,
    ) -> GenerationResponse:
        client = self._get_client()
        try:
            response = client.models.generate_content(
                model=model_id,
                contents=prompt,
                config=types.GenerateContentConfig(
                    temperature=inference_params.temperature,
                    top_p=inference_params.top_p,
                    max_output_tokens=inference_params.max_tokens,
                    stop_sequences=list(inference_params.stop_sequences) or None,
                ),
            )
        except genai_errors.APIError as exc:
            log.error("gemini_generate_failed", model=model_id, error=str(exc))
            raise ServiceError("generation", exc) from exc

        text = response.text or ""
        usage = None
        meta = response.usage_metadata
        if meta is not None:
            usage = TokenUsage(
                input_tokens=meta.prompt_token_count,
                output_tokens=meta.candidates_token_count,
            )

        log.info("generated", model=model_id, chars=len(text))
        return GenerationResponse(text=text, usage=usage)
