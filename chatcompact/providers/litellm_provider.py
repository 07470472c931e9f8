"""LiteLLM summarizer for the cloud backends (Gemini, OpenRouter)."""

from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from chatcompact.compaction.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from chatcompact.compaction.estimator import TokenCounter
from chatcompact.providers.base import (
    SUMMARIZE_SYSTEM_PROMPT,
    SummarizerProvider,
    build_user_prompt,
    target_max_tokens,
)

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"


class LiteLLMSummarizer(SummarizerProvider):
    """
    Summarizer using LiteLLM for the hosted backends.

    ``backend="gemini"`` talks to Google directly, ``backend="openrouter"``
    goes through the OpenRouter gateway.
    """

    def __init__(
        self,
        backend: str,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        counter: TokenCounter | None = None,
        temperature: float = 0.3,
    ):
        super().__init__(counter)
        self.backend = backend
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature

        if backend == "openrouter" and not api_base:
            self.api_base = OPENROUTER_API_BASE

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True

    @property
    def provider_id(self) -> str:
        return f"{self.backend}:{self.model}"

    def _litellm_model(self) -> str:
        """Prefix the model name the way LiteLLM routes it."""
        model = self.model
        if self.backend == "openrouter" and not model.startswith("openrouter/"):
            return f"openrouter/{model}"
        if self.backend == "gemini" and not model.startswith("gemini/"):
            return f"gemini/{model}"
        return model

    def _redact(self, error: Exception) -> str:
        """Strip the API key from error messages."""
        error_msg = str(error)
        if self.api_key and len(self.api_key) > 8:
            error_msg = error_msg.replace(self.api_key, "***")
        return error_msg

    def _translate_error(self, error: Exception) -> ProviderError:
        message = self._redact(error)
        if isinstance(error, litellm.AuthenticationError):
            return ProviderAuthError(message, self.provider_id)
        if isinstance(error, litellm.RateLimitError):
            return ProviderRateLimitError(message, self.provider_id)
        if isinstance(error, litellm.Timeout):
            return ProviderTimeoutError(message, self.provider_id)
        if isinstance(error, litellm.APIConnectionError):
            return ProviderUnavailableError(message, self.provider_id)
        return ProviderError(message, self.provider_id)

    async def _complete(self, messages: list[dict[str, Any]], max_tokens: int) -> str:
        if not self.api_key:
            raise ProviderAuthError(
                f"{self.backend} API key not configured", self.provider_id
            )

        kwargs: dict[str, Any] = {
            "model": self._litellm_model(),
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            "api_key": self.api_key,
        }

        if self.backend == "openrouter":
            kwargs["extra_headers"] = {
                "X-Title": "chatcompact - Context Summarization",
                "HTTP-Referer": "https://github.com/chatcompact/chatcompact",
            }
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            error = self._translate_error(e)
            logger.error(f"{self.provider_id} summarization call failed: {error}")
            raise error from e

        choices = getattr(response, "choices", None)
        if not choices:
            return ""
        return choices[0].message.content or ""

    async def _generate(
        self,
        conversation: str,
        target_retention: float,
        hint: str | None,
        previous_summary: str | None,
    ) -> str:
        user_prompt = build_user_prompt(conversation, target_retention, hint, previous_summary)
        return await self._complete(
            [
                {"role": "system", "content": SUMMARIZE_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=target_max_tokens(conversation, target_retention),
        )

    async def check_connection(self) -> bool:
        try:
            reply = await self._complete(
                [{"role": "user", "content": 'Respond with "OK" if you can read this.'}],
                max_tokens=10,
            )
        except ProviderError as e:
            logger.warning(f"{self.provider_id} connection check failed: {e}")
            return False
        return bool(reply)
