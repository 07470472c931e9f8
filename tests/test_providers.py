"""Tests for summarizer providers."""

import json
from types import SimpleNamespace

import httpx
import pytest

from chatcompact.compaction.errors import (
    ConfigurationError,
    EmptySummaryError,
    InvalidResponseError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderUnavailableError,
    SummaryRefusedError,
)
from chatcompact.compaction.estimator import TokenCounter
from chatcompact.compaction.types import Message
from chatcompact.config.schema import Config
from chatcompact.providers import kobold
from chatcompact.providers.base import (
    build_user_prompt,
    format_conversation,
    target_max_tokens,
    validate_summary,
)
from chatcompact.providers.kobold import KoboldCppSummarizer
from chatcompact.providers.litellm_provider import OPENROUTER_API_BASE, LiteLLMSummarizer
from chatcompact.providers.registry import create_summarizer, create_summarizers

SUMMARY = "The travellers met at the inn, shared news of the war and agreed to leave at dawn."


def _messages(count: int = 4) -> list[Message]:
    return [
        Message(id=f"m{i}", role="user" if i % 2 == 0 else "model",
                text=f"Line {i} of the story about the inn.", created_at=i)
        for i in range(count)
    ]


def _completion(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


# ── Prompt helpers ──────────────────────────────────────────────────


class TestPromptHelpers:
    def test_format_conversation(self):
        text = format_conversation(_messages(2))
        assert text == "user: Line 0 of the story about the inn.\n\nmodel: Line 1 of the story about the inn."

    def test_user_prompt_mentions_target(self):
        prompt = build_user_prompt("x" * 1000, 0.4)
        assert "40%" in prompt
        assert "~400 characters" in prompt

    def test_user_prompt_with_previous_summary_and_hint(self):
        prompt = build_user_prompt("user: hi", 0.4, hint="Keep names.", previous_summary="Earlier.")
        assert "Earlier." in prompt
        assert "Keep names." in prompt
        assert prompt.index("Earlier.") < prompt.index("user: hi")

    def test_target_max_tokens_bounds(self):
        assert target_max_tokens("x" * 10, 0.2) == 64
        assert target_max_tokens("x" * 3000, 0.4) == 400
        assert target_max_tokens("x" * 1_000_000, 0.7) == 4000


# ── Summary validation ──────────────────────────────────────────────


class TestValidateSummary:
    def test_strips(self):
        assert validate_summary("  A fine summary.  ", 20, "p") == "A fine summary."

    def test_empty(self):
        with pytest.raises(EmptySummaryError) as exc:
            validate_summary("   ", 100, "p")
        assert exc.value.reason == "empty_response"

    def test_none(self):
        with pytest.raises(EmptySummaryError):
            validate_summary(None, 100, "p")

    def test_too_short(self):
        with pytest.raises(EmptySummaryError) as exc:
            validate_summary("Short.", 1000, "p")
        assert exc.value.reason == "too_short"

    @pytest.mark.parametrize("text", [
        "I'm sorry, but I can't help with that request at all.",
        "I cannot summarize this conversation for you today.",
        "This content violates the usage policy and cannot be shown.",
    ])
    def test_refusals(self, text):
        with pytest.raises(SummaryRefusedError) as exc:
            validate_summary(text, 100, "p")
        assert exc.value.reason == "refusal_detected"


# ── LiteLLM ─────────────────────────────────────────────────────────


class TestLiteLLMSummarizer:
    @pytest.fixture
    def completions(self, monkeypatch):
        calls = []

        async def fake_acompletion(**kwargs):
            calls.append(kwargs)
            return _completion(SUMMARY)

        monkeypatch.setattr("chatcompact.providers.litellm_provider.acompletion", fake_acompletion)
        return calls

    @pytest.mark.asyncio
    async def test_gemini_request(self, completions):
        provider = LiteLLMSummarizer("gemini", "gemini-2.5-flash", api_key="g-key",
                                     counter=TokenCounter("heuristic"))
        record = await provider.summarize(_messages(), 0.4)

        assert record.summary_text == SUMMARY
        assert record.provider_id == "gemini:gemini-2.5-flash"
        assert record.target_retention == 0.4
        assert record.message_range.start_id == "m0"
        assert record.message_range.end_id == "m3"
        assert record.source_token_count > 0

        kwargs = completions[0]
        assert kwargs["model"] == "gemini/gemini-2.5-flash"
        assert kwargs["api_key"] == "g-key"
        assert kwargs["temperature"] == 0.3
        assert kwargs["messages"][0]["role"] == "system"
        assert "Line 2 of the story" in kwargs["messages"][1]["content"]
        assert "extra_headers" not in kwargs

    @pytest.mark.asyncio
    async def test_openrouter_request(self, completions):
        provider = LiteLLMSummarizer("openrouter", "google/gemini-flash-1.5", api_key="or-key")
        await provider.summarize(_messages(), 0.2, previous_summary="Before the inn.")

        kwargs = completions[0]
        assert kwargs["model"] == "openrouter/google/gemini-flash-1.5"
        assert kwargs["api_base"] == OPENROUTER_API_BASE
        assert "X-Title" in kwargs["extra_headers"]
        assert "Before the inn." in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_missing_api_key(self, completions):
        provider = LiteLLMSummarizer("gemini", "gemini-2.5-flash")
        with pytest.raises(ProviderAuthError):
            await provider.summarize(_messages(), 0.4)
        assert completions == []

    @pytest.mark.asyncio
    async def test_empty_choices(self, monkeypatch):
        async def fake_acompletion(**kwargs):
            return SimpleNamespace(choices=[])

        monkeypatch.setattr("chatcompact.providers.litellm_provider.acompletion", fake_acompletion)
        provider = LiteLLMSummarizer("gemini", "gemini-2.5-flash", api_key="g-key")
        with pytest.raises(EmptySummaryError):
            await provider.summarize(_messages(), 0.4)

    @pytest.mark.asyncio
    async def test_library_error_translated_and_redacted(self, monkeypatch):
        secret = "sk-very-secret-key-123"

        async def fake_acompletion(**kwargs):
            raise RuntimeError(f"upstream rejected key {secret}")

        monkeypatch.setattr("chatcompact.providers.litellm_provider.acompletion", fake_acompletion)
        provider = LiteLLMSummarizer("openrouter", "some/model", api_key=secret)
        with pytest.raises(ProviderError) as exc:
            await provider.summarize(_messages(), 0.4)
        assert secret not in str(exc.value)
        assert "***" in str(exc.value)
        assert exc.value.provider_id == "openrouter:some/model"

    @pytest.mark.asyncio
    async def test_check_connection(self, completions):
        provider = LiteLLMSummarizer("gemini", "gemini-2.5-flash", api_key="g-key")
        assert await provider.check_connection() is True
        assert completions[0]["max_tokens"] == 10

    @pytest.mark.asyncio
    async def test_check_connection_without_key(self, completions):
        provider = LiteLLMSummarizer("gemini", "gemini-2.5-flash")
        assert await provider.check_connection() is False


# ── KoboldCpp ───────────────────────────────────────────────────────


class TestKoboldCppSummarizer:
    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch):
        monkeypatch.setattr(kobold, "_RETRY_BASE_DELAY_S", 0.0)

    @pytest.mark.asyncio
    async def test_generate(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"results": [{"text": f"  {SUMMARY}  "}]})

        provider = KoboldCppSummarizer("http://kobold:5001/", transport=httpx.MockTransport(handler))
        record = await provider.summarize(_messages(), 0.4)

        assert record.summary_text == SUMMARY
        assert record.provider_id == "koboldcpp:http://kobold:5001"
        assert requests[0].url.path == "/api/v1/generate"
        payload = json.loads(requests[0].content)
        assert payload["prompt"].startswith("[INST]")
        assert "Line 3 of the story" in payload["prompt"]
        assert payload["max_length"] >= 64

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        statuses = iter([503, 429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            if status != 200:
                return httpx.Response(status)
            return httpx.Response(200, json={"results": [{"text": SUMMARY}]})

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        record = await provider.summarize(_messages(), 0.4)
        assert record.summary_text == SUMMARY

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(429)

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderRateLimitError):
            await provider.summarize(_messages(), 0.4)
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(401)

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderAuthError):
            await provider.summarize(_messages(), 0.4)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderUnavailableError) as exc:
            await provider.summarize(_messages(), 0.4)
        assert exc.value.reason == "network"

    @pytest.mark.asyncio
    async def test_empty_results(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"results": []})

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        with pytest.raises(EmptySummaryError):
            await provider.summarize(_messages(), 0.4)

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>proxy error</html>")

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        with pytest.raises(InvalidResponseError) as exc:
            await provider.summarize(_messages(), 0.4)
        assert exc.value.reason == "invalid_response"
        assert exc.value.provider_id == provider.provider_id

    @pytest.mark.parametrize("body", [
        {"results": "not a list"},
        {"results": [{"text": 42}]},
        ["results"],
    ])
    @pytest.mark.asyncio
    async def test_malformed_results(self, body):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=body)

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        with pytest.raises(InvalidResponseError):
            await provider.summarize(_messages(), 0.4)

    @pytest.mark.asyncio
    async def test_record_lists_source_ids(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"results": [{"text": SUMMARY}]})

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        record = await provider.summarize(_messages(3), 0.4)
        assert record.message_ids == {"m0", "m1", "m2"}

    @pytest.mark.asyncio
    async def test_check_connection(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v1/model"
            return httpx.Response(200, json={"result": "koboldcpp/mistral-7b"})

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        assert await provider.check_connection() is True

    @pytest.mark.asyncio
    async def test_check_connection_down(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        assert await provider.check_connection() is False

    @pytest.mark.asyncio
    async def test_check_connection_non_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>proxy error</html>")

        provider = KoboldCppSummarizer(transport=httpx.MockTransport(handler))
        assert await provider.check_connection() is False


# ── Registry ────────────────────────────────────────────────────────


class TestRegistry:
    def test_default_summarizer(self):
        config = Config()
        config.providers.gemini.api_key = "g-key"
        provider = create_summarizer(config)
        assert isinstance(provider, LiteLLMSummarizer)
        assert provider.provider_id == "gemini:gemini-2.5-flash"

    def test_koboldcpp(self):
        config = Config()
        config.providers.koboldcpp.url = "http://gpu-box:5001"
        provider = create_summarizer(config, "koboldcpp")
        assert isinstance(provider, KoboldCppSummarizer)
        assert provider.url == "http://gpu-box:5001"

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            create_summarizer(Config(), "claude")

    def test_all(self):
        providers = create_summarizers(Config())
        assert set(providers) == {"gemini", "openrouter", "koboldcpp"}
        assert providers["openrouter"].provider_id == "openrouter:google/gemini-flash-1.5"
