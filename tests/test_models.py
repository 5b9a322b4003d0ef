"""
Tests for model classification and OpenAI-shaped response helpers.
"""

import pytest
from openai.types.chat import ChatCompletion

from conftest import SERVING_URL, FakePrimary
from errors import TromeroAPIError, TromeroError
from models import (
    NO_ADAPTER,
    PRIMARY_CLASSIFICATION,
    ModelClassification,
    ModelClassifier,
    is_chat_model,
    mock_openai_format,
)
from params import CUSTOM, PRIMARY


# ============================================================================
# Helpers
# ============================================================================

class TestIsChatModel:
    def test_chat_models(self):
        assert is_chat_model("gpt-4o") is True
        assert is_chat_model("gpt-3.5-turbo") is True
        assert is_chat_model("o1-mini") is True

    def test_non_chat_models(self):
        assert is_chat_model("gpt-3.5-turbo-instruct") is False
        assert is_chat_model("text-embedding-3-small") is False
        assert is_chat_model("whisper-1") is False
        assert is_chat_model("dall-e-3") is False
        assert is_chat_model("") is False


class TestModelClassification:
    def test_primary(self):
        assert PRIMARY_CLASSIFICATION.is_primary is True
        assert PRIMARY_CLASSIFICATION.backend == PRIMARY

    def test_request_name(self):
        adapter = ModelClassification(backend=CUSTOM, serving_url=SERVING_URL)
        base = ModelClassification(backend=CUSTOM, serving_url=SERVING_URL, is_base_model=True)

        assert adapter.request_name("my-adapter") == "my-adapter"
        assert base.request_name("llama-base") == NO_ADAPTER


class TestMockOpenAIFormat:
    def test_shape(self):
        completion = mock_openai_format("hello", "my-adapter", {"prompt_tokens": 3, "completion_tokens": 2})

        assert isinstance(completion, ChatCompletion)
        assert completion.id.startswith("chatcmpl-")
        assert completion.object == "chat.completion"
        assert completion.model == "my-adapter"
        assert len(completion.choices) == 1
        choice = completion.choices[0]
        assert choice.index == 0
        assert choice.finish_reason == "stop"
        assert choice.logprobs is None
        assert choice.message.role == "assistant"
        assert choice.message.content == "hello"
        assert completion.usage.total_tokens == 5

    def test_usage_variants(self):
        usage = mock_openai_format("x", "m", {"input_tokens": 4, "generated_tokens": 6}).usage
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (4, 6, 10)

        usage = mock_openai_format("x", "m", None).usage
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (0, 0, 0)

    def test_unique_ids(self):
        assert mock_openai_format("a", "m").id != mock_openai_format("a", "m").id


# ============================================================================
# ModelClassifier
# ============================================================================

class TestModelClassifier:
    """Test routing decisions and their caching."""

    @pytest.mark.asyncio
    async def test_listing_called_once_per_name(self, fake_primary):
        """Classifying the same unseen primary name twice lists models once."""
        classifier = ModelClassifier(fake_primary)

        first = await classifier.classify("gpt-4o")
        second = await classifier.classify("gpt-4o")

        assert first is second
        assert first.is_primary
        assert fake_primary.models.list.await_count == 1

    @pytest.mark.asyncio
    async def test_listing_caches_every_primary_model(self, fake_primary):
        classifier = ModelClassifier(fake_primary)

        await classifier.classify("gpt-4o")
        await classifier.classify("gpt-4o-mini")

        assert fake_primary.models.list.await_count == 1
        assert classifier.cached("gpt-4o-mini") is PRIMARY_CLASSIFICATION

    @pytest.mark.asyncio
    async def test_custom_model_resolved_once(self, fake_primary, backend, server):
        classifier = ModelClassifier(fake_primary, backend)

        first = await classifier.classify("my-adapter")
        second = await classifier.classify("my-adapter")

        assert first == second
        assert first.backend == CUSTOM
        assert first.serving_url == SERVING_URL
        assert first.is_base_model is False
        assert len([r for r in server.requests if r.url.path.endswith("/url")]) == 1
        assert fake_primary.models.list.await_count == 1

    @pytest.mark.asyncio
    async def test_instruct_models_are_not_primary(self, backend, server):
        primary = FakePrimary(model_ids=("gpt-4o", "gpt-3.5-turbo-instruct"))
        server.models["gpt-3.5-turbo-instruct"] = {"url": SERVING_URL}
        classifier = ModelClassifier(primary, backend)

        classification = await classifier.classify("gpt-3.5-turbo-instruct")

        assert classification.backend == CUSTOM

    @pytest.mark.asyncio
    async def test_listing_failure_falls_through_to_custom(self, backend, caplog):
        primary = FakePrimary()
        primary.models.list.side_effect = RuntimeError("no network")
        classifier = ModelClassifier(primary, backend)

        classification = await classifier.classify("my-adapter")

        assert classification.backend == CUSTOM
        assert any("primary model list" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_no_primary_client(self, backend):
        classifier = ModelClassifier(None, backend)
        classification = await classifier.classify("my-adapter")
        assert classification.backend == CUSTOM

    @pytest.mark.asyncio
    async def test_base_model_flag_and_legacy_key(self, backend, server):
        server.models["llama-base"] = {"url": SERVING_URL + "/", "baseModel": True}
        classifier = ModelClassifier(None, backend)

        classification = await classifier.classify("llama-base")

        assert classification.is_base_model is True
        assert classification.serving_url == SERVING_URL
        assert classification.request_name("llama-base") == NO_ADAPTER

    @pytest.mark.asyncio
    async def test_resolution_failure_not_cached(self, backend, server):
        classifier = ModelClassifier(None, backend)

        with pytest.raises(TromeroAPIError) as exc_info:
            await classifier.classify("missing")

        assert exc_info.value.status_code == 404
        assert classifier.cached("missing") is None

        server.models["missing"] = {"url": SERVING_URL}
        classification = await classifier.classify("missing")
        assert classification.backend == CUSTOM

    @pytest.mark.asyncio
    async def test_resolver_error_body(self, backend, server):
        server.models["broken"] = {"error": "not deployed", "status_code": 409}
        classifier = ModelClassifier(None, backend)

        with pytest.raises(TromeroAPIError) as exc_info:
            await classifier.classify("broken")

        assert "not deployed" in str(exc_info.value)
        assert exc_info.value.status_code == 409
        assert classifier.cached("broken") is None

    @pytest.mark.asyncio
    async def test_missing_url(self, backend, server):
        server.models["no-url"] = {"base_model": False}
        classifier = ModelClassifier(None, backend)

        with pytest.raises(TromeroAPIError):
            await classifier.classify("no-url")

    @pytest.mark.asyncio
    async def test_custom_without_backend(self, fake_primary):
        classifier = ModelClassifier(fake_primary, None)

        with pytest.raises(TromeroError) as exc_info:
            await classifier.classify("my-adapter")

        assert not isinstance(exc_info.value, TromeroAPIError)
        assert "tromero_key" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_forget_and_clear(self, backend, server):
        classifier = ModelClassifier(None, backend)
        await classifier.classify("my-adapter")

        server.models["my-adapter"] = {"url": "https://moved.test/adapter"}
        assert (await classifier.classify("my-adapter")).serving_url == SERVING_URL

        classifier.forget("my-adapter")
        assert (await classifier.classify("my-adapter")).serving_url == "https://moved.test/adapter"

        classifier.clear()
        assert classifier.cached("my-adapter") is None

    @pytest.mark.asyncio
    async def test_separate_classifiers_do_not_share_cache(self, fake_primary):
        a = ModelClassifier(fake_primary)
        b = ModelClassifier(fake_primary)

        await a.classify("gpt-4o")

        assert b.cached("gpt-4o") is None
