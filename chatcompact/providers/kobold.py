"""KoboldCpp summarizer for locally hosted models."""

import asyncio

import httpx
from loguru import logger

from chatcompact.compaction.errors import (
    InvalidResponseError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from chatcompact.compaction.estimator import TokenCounter
from chatcompact.providers.base import SummarizerProvider, build_user_prompt, target_max_tokens

# Retry configuration for transient HTTP errors
_MAX_RETRIES = 2
_RETRY_BASE_DELAY_S = 0.5
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503}


class KoboldCppSummarizer(SummarizerProvider):
    """Summarizer backed by a KoboldCpp server's generate API."""

    def __init__(
        self,
        url: str = "http://localhost:5001",
        counter: TokenCounter | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(counter)
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def provider_id(self) -> str:
        return f"koboldcpp:{self.url}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _error_for_status(self, status: int, detail: str) -> ProviderError:
        message = f"KoboldCpp API error: {status} {detail}"
        if status in (401, 403):
            return ProviderAuthError(message, self.provider_id)
        if status == 429:
            return ProviderRateLimitError(message, self.provider_id)
        if status >= 500:
            return ProviderUnavailableError(message, self.provider_id)
        return ProviderError(message, self.provider_id)

    def _parse_generation(self, response: httpx.Response) -> str:
        """Extract the generated text from ``{"results": [{"text": ...}]}``."""
        try:
            results = response.json().get("results") or []
            text = results[0].get("text", "") if results else ""
        except (ValueError, AttributeError, KeyError, IndexError, TypeError) as e:
            raise InvalidResponseError(
                f"KoboldCpp returned an unreadable response: {e}", self.provider_id
            ) from e
        if not isinstance(text, str):
            raise InvalidResponseError(
                f"KoboldCpp returned {type(text).__name__} instead of text", self.provider_id
            )
        return text

    async def _generate(
        self,
        conversation: str,
        target_retention: float,
        hint: str | None,
        previous_summary: str | None,
    ) -> str:
        instruction = build_user_prompt(conversation, target_retention, hint, previous_summary)
        payload = {
            "prompt": f"[INST] {instruction}\n[/INST]\nSummary:",
            "max_context_length": 4096,
            "max_length": target_max_tokens(conversation, target_retention),
            "rep_pen": 1.1,
            "temperature": 0.7,
            "top_p": 0.9,
            "top_k": 40,
            "stop_sequence": ["[INST]"],
        }

        error: ProviderError | None = None
        for attempt in range(_MAX_RETRIES + 1):
            try:
                async with self._client() as client:
                    response = await client.post(f"{self.url}/api/v1/generate", json=payload)
            except httpx.TimeoutException as e:
                raise ProviderTimeoutError(f"KoboldCpp request timed out: {e}", self.provider_id) from e
            except httpx.HTTPError as e:
                error = ProviderUnavailableError(f"KoboldCpp unreachable: {e}", self.provider_id)
            else:
                if response.status_code == 200:
                    return self._parse_generation(response)
                error = self._error_for_status(response.status_code, response.reason_phrase)
                if response.status_code not in _RETRYABLE_STATUS_CODES:
                    raise error

            if attempt < _MAX_RETRIES:
                delay = _RETRY_BASE_DELAY_S * (2 ** attempt)
                logger.warning(f"KoboldCpp attempt {attempt + 1} failed ({error}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        logger.error(f"KoboldCpp failed after {_MAX_RETRIES + 1} attempts")
        raise error

    async def check_connection(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.url}/api/v1/model")
        except httpx.HTTPError as e:
            logger.warning(f"KoboldCpp connection check failed: {e}")
            return False
        if response.status_code != 200:
            return False
        try:
            payload = response.json()
        except ValueError:
            logger.warning("KoboldCpp connection check got a non-JSON response")
            return False
        # Inactive (embedding-only) instances still report a result
        return isinstance(payload, dict) and "result" in payload
