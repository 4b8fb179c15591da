"""OpenAI-compatible LLM provider.

Talks to any ``/v1/chat/completions`` endpoint; by default the local Ollama
server from settings. Page images are sent as base64 data URLs.
"""

import base64
import logging
from collections.abc import Sequence
from typing import Any, Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    RateLimitError,
)

from docextract.config import settings
from docextract.errors import ProviderFatalError, ProviderTransientError
from docextract.providers.base import Attachment

logger = logging.getLogger(__name__)


class OpenAICompatibleLlm:
    """LlmProvider backed by the ``openai`` async client.

    Retries are left to the extraction runner, so the client's own retry
    loop is disabled.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model or settings.llm_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or settings.llm_max_output_tokens
        self.client = client or AsyncOpenAI(
            base_url=base_url or settings.llm_base_url,
            api_key=api_key or settings.llm_api_key,
            max_retries=0,
        )

    @staticmethod
    def _user_content(user_prompt: str, attachments: Optional[Sequence[Attachment]]) -> Any:
        if not attachments:
            return user_prompt
        content: list[dict[str, Any]] = [{"type": "text", "text": user_prompt}]
        for attachment in attachments:
            encoded = base64.b64encode(attachment.data).decode("ascii")
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{attachment.mime_type};base64,{encoded}"},
                }
            )
        return content

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        schema_hint: Optional[dict[str, Any]] = None,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> str:
        """Run one chat completion and return the message text.

        ``schema_hint`` is already rendered into the prompt; the endpoint is
        not asked to enforce it.
        """
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": self._user_content(user_prompt, attachments)},
        ]
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_output_tokens,
            )
        except APIConnectionError as exc:
            # Includes APITimeoutError
            raise ProviderTransientError(f"LLM connection failed: {exc}") from exc
        except RateLimitError as exc:
            raise ProviderTransientError(f"LLM rate limited: {exc}", status_code=exc.status_code) from exc
        except APIStatusError as exc:
            if exc.status_code >= 500:
                raise ProviderTransientError(
                    f"LLM server error {exc.status_code}: {exc}", status_code=exc.status_code
                ) from exc
            raise ProviderFatalError(
                f"LLM rejected request ({exc.status_code}): {exc}", status_code=exc.status_code
            ) from exc

        if not response.choices:
            raise ProviderTransientError("LLM returned no choices")
        choice = response.choices[0]
        if choice.finish_reason == "length":
            logger.warning(
                "LLM output hit the %d token limit; response is likely truncated",
                self.max_output_tokens,
            )
        return choice.message.content or ""
