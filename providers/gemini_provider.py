"""
Google Gemini provider — uses the google-genai SDK.

  vision:     gemini-2.0-flash family (image part + fixed instruction)
  embeddings: text-embedding-004 / gemini-embedding-001
              (output_dimensionality set to the index dimension)
"""
from __future__ import annotations

import asyncio
import logging
import time

import aiohttp
import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from providers.base import (
    DESCRIPTOR_SYSTEM_PROMPT, DESCRIPTOR_USER_PROMPT,
    InferenceProvider, classify_status,
)
from errors import TransientFailure

logger = logging.getLogger(__name__)

# google-genai sends client.aio requests over aiohttp when it is installed,
# otherwise over httpx
_UPSTREAM_ERRORS = (
    genai_errors.APIError,
    httpx.TransportError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


def translate_error(exc: Exception) -> Exception:
    if isinstance(exc, genai_errors.APIError):
        return classify_status(exc.code, str(exc))
    # aiohttp.ServerTimeoutError is also an asyncio.TimeoutError
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return TransientFailure(f"gemini timeout: {exc}", timed_out=True)
    return TransientFailure(f"gemini transport error: {exc}")


class GeminiProvider(InferenceProvider):

    supports_embeddings = True

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        self.name     = "google"
        self.model_id = model
        self._client  = genai.Client(api_key=api_key)

    async def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        gen_config = genai_types.GenerateContentConfig(
            system_instruction=DESCRIPTOR_SYSTEM_PROMPT,
            temperature=0,
            max_output_tokens=100,
        )
        t0 = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model_id,
                contents=[
                    genai_types.Part.from_bytes(data=image_bytes, mime_type=media_type),
                    DESCRIPTOR_USER_PROMPT,
                ],
                config=gen_config,
            )
        except _UPSTREAM_ERRORS as exc:
            raise translate_error(exc) from exc

        logger.debug("[%s] vision reply in %dms", self.full_name, int((time.monotonic() - t0) * 1000))
        return response.text or ""

    async def embed(self, text: str, dimensions: int) -> list[float]:
        try:
            response = await self._client.aio.models.embed_content(
                model=self.model_id,
                contents=text,
                config=genai_types.EmbedContentConfig(output_dimensionality=dimensions),
            )
        except _UPSTREAM_ERRORS as exc:
            raise translate_error(exc) from exc
        return list(response.embeddings[0].values)
