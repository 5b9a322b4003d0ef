"""Model classification and OpenAI-shaped response types for the Tromero client."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from openai.types import CompletionUsage
from openai.types.chat import ChatCompletion, ChatCompletionChunk, ChatCompletionMessage
from openai.types.chat.chat_completion import Choice
from openai.types.chat.chat_completion_chunk import Choice as ChunkChoice
from openai.types.chat.chat_completion_chunk import ChoiceDelta

from errors import ApiError, TromeroAPIError, TromeroError
from params import CUSTOM, PRIMARY

if TYPE_CHECKING:
    from openai import AsyncOpenAI

    from upstream import CustomBackendClient

log = logging.getLogger("tromero")

# Adapter name sent to the serving API when the target is an un-adapted base model.
NO_ADAPTER = "NO_ADAPTER"

# Listed primary models whose ids contain one of these are not chat models.
_NON_CHAT_MARKERS = (
    "instruct",
    "embedding",
    "whisper",
    "tts",
    "dall-e",
    "davinci",
    "babbage",
    "moderation",
    "realtime",
    "audio",
    "transcribe",
    "search",
    "image",
)


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def is_chat_model(model_id: str) -> bool:
    """Check whether a listed primary model id can serve chat completions."""
    mid = (model_id or "").lower()
    if not mid:
        return False
    return not any(marker in mid for marker in _NON_CHAT_MARKERS)


@dataclass(frozen=True)
class ModelClassification:
    """Which backend serves a model, and where, for custom models."""

    backend: str
    serving_url: Optional[str] = None
    is_base_model: bool = False

    @property
    def is_primary(self) -> bool:
        return self.backend == PRIMARY

    def request_name(self, model: str) -> str:
        """Adapter name to send to the serving API for this model."""
        return NO_ADAPTER if self.is_base_model else model


PRIMARY_CLASSIFICATION = ModelClassification(backend=PRIMARY)


@dataclass(frozen=True)
class StreamChunk:
    """One decoded token event from a custom-backend stream."""

    id: str
    created: int
    model: str
    delta_content: Optional[str]
    finish_reason: Optional[str] = None
    index: int = 0

    def to_openai(self) -> ChatCompletionChunk:
        """Render as an OpenAI chat.completion.chunk."""
        return ChatCompletionChunk(
            id=self.id,
            object="chat.completion.chunk",
            created=self.created,
            model=self.model,
            choices=[
                ChunkChoice(
                    index=self.index,
                    delta=ChoiceDelta(role="assistant", content=self.delta_content),
                    finish_reason=self.finish_reason,
                    logprobs=None,
                )
            ],
        )


def _normalize_usage(usage: Any) -> CompletionUsage:
    """Coerce a serving-API usage record into prompt/completion/total token counts."""
    if not isinstance(usage, Mapping):
        usage = {}

    def _count(*keys: str) -> int:
        for key in keys:
            value = usage.get(key)
            if isinstance(value, (int, float)):
                return int(value)
        return 0

    prompt = _count("prompt_tokens", "input_tokens")
    completion = _count("completion_tokens", "generated_tokens", "output_tokens")
    total = _count("total_tokens") or prompt + completion
    return CompletionUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def mock_openai_format(text: str, model: str, usage: Any = None) -> ChatCompletion:
    """Wrap generated text from the serving API as an OpenAI chat.completion."""
    return ChatCompletion(
        id=new_completion_id(),
        object="chat.completion",
        created=int(time.time()),
        model=model,
        choices=[
            Choice(
                index=0,
                finish_reason="stop",
                logprobs=None,
                message=ChatCompletionMessage(role="assistant", content=text),
            )
        ],
        usage=_normalize_usage(usage),
    )


class ModelClassifier:
    """Decide, and remember, which backend serves each model name.

    The cache belongs to one client instance. Concurrent first lookups of the
    same name may both resolve it; the last write wins.
    """

    def __init__(
        self,
        primary: Optional[AsyncOpenAI] = None,
        backend: Optional[CustomBackendClient] = None,
    ) -> None:
        self._primary = primary
        self._backend = backend
        self._classifications: Dict[str, ModelClassification] = {}

    def cached(self, model: str) -> Optional[ModelClassification]:
        return self._classifications.get(model)

    def forget(self, model: str) -> None:
        """Drop one cached classification, e.g. after a model is redeployed."""
        self._classifications.pop(model, None)

    def clear(self) -> None:
        self._classifications.clear()

    async def classify(self, model: str) -> ModelClassification:
        """
        Classify a model as primary or custom.

        Primary membership comes from the primary backend's model listing;
        anything else is resolved against the custom backend. A failed
        listing, or no primary client at all, falls through to custom.
        """
        hit = self._classifications.get(model)
        if hit is not None:
            return hit

        if self._primary is not None:
            for model_id in await self._list_primary_models():
                self._classifications.setdefault(model_id, PRIMARY_CLASSIFICATION)
            hit = self._classifications.get(model)
            if hit is not None:
                return hit

        return await self._resolve_custom(model)

    async def _list_primary_models(self) -> List[str]:
        """Fetch chat-capable model ids from the primary backend."""
        t0 = time.time()
        try:
            page = await self._primary.models.list()
        except Exception as e:
            log.warning("Error retrieving primary model list, treating model as custom: %s", e)
            return []

        ids = [m.id for m in (getattr(page, "data", None) or []) if is_chat_model(m.id)]
        log.debug("Fetched primary models: count=%d ms=%.1f", len(ids), (time.time() - t0) * 1000)
        return ids

    async def _resolve_custom(self, model: str) -> ModelClassification:
        """Look up the serving URL of a custom model and cache it."""
        if self._backend is None:
            raise TromeroError(
                f"Model {model!r} is not a primary model and no Tromero key was set. "
                "Please set a tromero_key to use custom models."
            )

        result = await self._backend.get_model_url(model)
        if isinstance(result, ApiError):
            raise TromeroAPIError(
                f"Could not resolve model {model!r}: {result.error}", result.status_code
            )
        url = result.get("url")
        if result.get("error") or not url:
            raise TromeroAPIError(
                f"Could not resolve model {model!r}: {result.get('error') or 'no url returned'}",
                result.get("status_code", "N/A"),
            )

        base_model = result.get("base_model", result.get("baseModel", False))
        classification = ModelClassification(
            backend=CUSTOM,
            serving_url=str(url).rstrip("/"),
            is_base_model=bool(base_model),
        )
        self._classifications[model] = classification
        log.info(
            "Resolved custom model=%s url=%s base_model=%s",
            model,
            classification.serving_url,
            classification.is_base_model,
        )
        return classification
