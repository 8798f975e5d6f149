# survey_editor/agents/completion.py
from __future__ import annotations

from typing import AsyncGenerator, Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from survey_editor.app.config import Settings
from survey_editor.app.errors import CompletionTransportError
from survey_editor.app.logging import get_logger

from .stream import iter_deltas

logger = get_logger(__name__)


class CompletionClient:
    """
    Streaming chat-completion client for any OpenAI-compatible endpoint.

    The SDK is only used to issue the request; the raw response body is fed
    to our own event-stream decoder. Retries are off: a request runs once,
    to completion or to failure.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "CompletionClient":
        return cls(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            model=settings.llm_model,
            timeout=settings.llm_timeout_seconds,
            http_client=http_client,
        )

    async def stream(self, messages: List[Dict[str, str]]) -> AsyncGenerator[str, None]:
        logger.info("Requesting completion", extra={"model": self.model, "messages": len(messages)})
        try:
            async with self._client.chat.completions.with_streaming_response.create(
                model=self.model,
                messages=messages,
                stream=True,
            ) as response:
                async for delta in iter_deltas(response.iter_bytes()):
                    yield delta
        except openai.APIStatusError as e:
            raise CompletionTransportError(
                f"Completion service returned HTTP {e.status_code}", status_code=e.status_code
            ) from e
        except (openai.APIError, httpx.HTTPError) as e:
            raise CompletionTransportError(f"Completion request failed: {e}") from e
