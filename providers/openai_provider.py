"""
OpenAI provider — gpt-4o family for vision, text-embedding-3 family for embeddings.

The SDK's built-in retries are switched off (max_retries=0): a retry hidden
inside the client would bypass the InferenceGate's slot accounting.
"""
from __future__ import annotations

import base64
import logging
import time

import openai
from openai import AsyncOpenAI

from providers.base import (
    DESCRIPTOR_SYSTEM_PROMPT, DESCRIPTOR_USER_PROMPT,
    InferenceProvider, classify_status,
)
from errors import TransientFailure, UpstreamError

logger = logging.getLogger(__name__)


def translate_error(exc: openai.OpenAIError) -> Exception:
    # APITimeoutError subclasses APIConnectionError
    if isinstance(exc, openai.APITimeoutError):
        return TransientFailure(f"openai timeout: {exc}", timed_out=True)
    if isinstance(exc, openai.APIConnectionError):
        return TransientFailure(f"openai connection error: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return classify_status(exc.status_code, exc.message)
    return UpstreamError(f"openai error: {exc}")


class OpenAIProvider(InferenceProvider):

    supports_embeddings = True

    def __init__(self, api_key: str, model: str = "gpt-4o", timeout: float = 45.0):
        self.name = "openai"
        self.model_id = model
        self._client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        b64 = base64.b64encode(image_bytes).decode()
        t0 = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=self.model_id,
                max_tokens=100,
                temperature=0,
                messages=[
                    {"role": "system", "content": DESCRIPTOR_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": f"data:{media_type};base64,{b64}",
                                    "detail": "high",
                                },
                            },
                            {"type": "text", "text": DESCRIPTOR_USER_PROMPT},
                        ],
                    },
                ],
            )
        except openai.OpenAIError as exc:
            raise translate_error(exc) from exc

        logger.debug("[%s] vision reply in %dms", self.full_name, int((time.monotonic() - t0) * 1000))
        return response.choices[0].message.content or ""

    async def embed(self, text: str, dimensions: int) -> list[float]:
        params: dict = {"model": self.model_id, "input": text}
        # Only the text-embedding-3 models accept a reduced output size
        if self.model_id.startswith("text-embedding-3"):
            params["dimensions"] = dimensions
        try:
            response = await self._client.embeddings.create(**params)
        except openai.OpenAIError as exc:
            raise translate_error(exc) from exc
        return list(response.data[0].embedding)
