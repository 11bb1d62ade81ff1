"""
Anthropic vision provider — claude models, descriptor extraction only.

Anthropic has no embeddings endpoint; pair it with an OpenAI or Gemini
embedding provider (providers/manager.py enforces this at startup).
"""
from __future__ import annotations

import base64
import logging
import time

import anthropic

from providers.base import (
    DESCRIPTOR_SYSTEM_PROMPT, DESCRIPTOR_USER_PROMPT,
    InferenceProvider, classify_status,
)
from errors import TransientFailure, UpstreamError

logger = logging.getLogger(__name__)


def translate_error(exc: anthropic.AnthropicError) -> Exception:
    if isinstance(exc, anthropic.APITimeoutError):
        return TransientFailure(f"anthropic timeout: {exc}", timed_out=True)
    if isinstance(exc, anthropic.APIConnectionError):
        return TransientFailure(f"anthropic connection error: {exc}")
    if isinstance(exc, anthropic.APIStatusError):
        return classify_status(exc.status_code, exc.message)
    return UpstreamError(f"anthropic error: {exc}")


class AnthropicProvider(InferenceProvider):

    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-latest", timeout: float = 45.0):
        self.name = "anthropic"
        self.model_id = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    async def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        b64 = base64.b64encode(image_bytes).decode()
        t0 = time.monotonic()
        try:
            message = await self._client.messages.create(
                model=self.model_id,
                max_tokens=100,
                temperature=0,
                system=DESCRIPTOR_SYSTEM_PROMPT,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": media_type,
                                    "data": b64,
                                },
                            },
                            {"type": "text", "text": DESCRIPTOR_USER_PROMPT},
                        ],
                    }
                ],
            )
        except anthropic.AnthropicError as exc:
            raise translate_error(exc) from exc

        logger.debug("[%s] vision reply in %dms", self.full_name, int((time.monotonic() - t0) * 1000))
        return message.content[0].text if message.content else ""
