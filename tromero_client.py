"""
Tromero client.

One OpenAI-compatible `client.chat.completions.create(...)` entry point in
front of two backends: the hosted OpenAI API and the Tromero model-serving
API for fine-tuned models. Requests are routed by model name, parameters are
filtered per backend, and finished conversations can be saved to the Tromero
data endpoint without slowing the caller down.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

import httpx
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletion

from config import DEFAULT_BASE_URL, DEFAULT_USER_AGENT, TromeroConfig, load_config
from errors import ApiError, TromeroAPIError, TromeroError
from logger import setup_logging
from models import ModelClassification, ModelClassifier, mock_openai_format
from params import CONTROL_PARAMS, ControlSettings, format_params, model_kwargs, normalize_messages
from sse_handler import CustomStream, RecordingStream
from telemetry import TelemetrySink, build_record
from upstream import CustomBackendClient
from utils import dump_config, load_env_files

log = logging.getLogger("tromero")

OPENAI_BASE_URL = "https://api.openai.com/v1"

CompletionResult = Union[ChatCompletion, CustomStream, RecordingStream]


def _message_dict(message: Any) -> Dict[str, Any]:
    if hasattr(message, "model_dump"):
        return message.model_dump(exclude_none=True)
    return dict(message)


class Completions:
    """Routes chat completion calls to the backend that serves the model."""

    def __init__(self, client: Tromero) -> None:
        self._client = client

    async def create(self, **params: Any) -> CompletionResult:
        """
        Create a chat completion on whichever backend serves `model`.

        Accepts the usual chat completion parameters plus the control settings
        tags, save_data, use_fallback and fallback_model. Returns a
        ChatCompletion, or an async iterator of ChatCompletionChunk objects
        when stream=True.
        """
        return await self._create(params)

    async def _create(self, params: Dict[str, Any]) -> CompletionResult:
        model = params.get("model")
        if not isinstance(model, str) or not model:
            raise ValueError("model is required")
        if not isinstance(params.get("messages"), list):
            raise ValueError("messages must be a list")

        # Returned ChatCompletionMessage objects may be fed back in as history
        params = {**params, "messages": [_message_dict(m) for m in params["messages"]]}
        settings = ControlSettings.from_params(params)
        try:
            return await self._dispatch(model, params, settings)
        except Exception as e:
            if not settings.fallback_enabled:
                raise
            log.warning(
                "Error with model %s, using fallback model %s: %s",
                model,
                settings.fallback_model,
                e,
            )
            retry = {
                k: v
                for k, v in params.items()
                if CONTROL_PARAMS.get(k) not in ("use_fallback", "fallback_model")
            }
            retry["model"] = settings.fallback_model
            retry["use_fallback"] = False
            return await self._create(retry)

    async def _dispatch(
        self, model: str, params: Dict[str, Any], settings: ControlSettings
    ) -> CompletionResult:
        classification = await self._client.classifier.classify(model)
        backend_params, _ = format_params(params, classification.backend)
        messages = normalize_messages(backend_params["messages"])
        backend_params["messages"] = messages

        save_data = self._client.save_data if settings.save_data is None else bool(settings.save_data)
        save_data = save_data and self._client.telemetry.enabled
        stream = bool(backend_params.get("stream"))

        log.info(
            "Chat completion model=%s backend=%s stream=%s save_data=%s",
            model,
            classification.backend,
            stream,
            save_data,
        )

        if classification.is_primary:
            if stream:
                return await self._primary_stream(model, backend_params, settings, save_data)
            return await self._primary_completion(model, backend_params, settings, save_data)

        if stream:
            return await self._custom_stream(model, classification, backend_params, settings, save_data)
        return await self._custom_completion(model, classification, backend_params, settings, save_data)

    # ------------------------------------------------------------------
    # Primary backend
    # ------------------------------------------------------------------

    async def _primary_completion(
        self,
        model: str,
        backend_params: Dict[str, Any],
        settings: ControlSettings,
        save_data: bool,
    ) -> ChatCompletion:
        completion = await self._client.primary.chat.completions.create(**backend_params)
        if save_data:
            messages = backend_params["messages"]
            kwargs = model_kwargs(backend_params)
            for choice in completion.choices:
                self._client.telemetry.schedule(
                    build_record(messages + [_message_dict(choice.message)], model, kwargs, settings.tags)
                )
        return completion

    async def _primary_stream(
        self,
        model: str,
        backend_params: Dict[str, Any],
        settings: ControlSettings,
        save_data: bool,
    ) -> RecordingStream:
        stream = await self._client.primary.chat.completions.create(**backend_params)
        if not save_data:
            return RecordingStream(stream)

        messages = backend_params["messages"]
        kwargs = model_kwargs(backend_params)
        telemetry = self._client.telemetry

        async def save_completion(completion: Dict[str, Any]) -> None:
            choices = completion.get("choices") or []
            if not choices:
                return
            await telemetry.post(
                build_record(messages + [choices[0]["message"]], model, kwargs, settings.tags)
            )

        return RecordingStream(stream, on_complete=save_completion)

    # ------------------------------------------------------------------
    # Custom backend
    # ------------------------------------------------------------------

    async def _custom_completion(
        self,
        model: str,
        classification: ModelClassification,
        backend_params: Dict[str, Any],
        settings: ControlSettings,
        save_data: bool,
    ) -> ChatCompletion:
        messages = backend_params["messages"]
        kwargs = model_kwargs(backend_params)
        result = await self._client.backend.generate(
            classification.request_name(model),
            classification.serving_url,
            messages,
            kwargs,
        )
        if isinstance(result, ApiError):
            raise result.to_exception()
        if result.get("error"):
            raise TromeroAPIError(str(result["error"]), result.get("status_code", "N/A"))

        text = result.get("generated_text")
        if not isinstance(text, str):
            raise TromeroAPIError(f"Model {model!r} returned no generated_text")

        completion = mock_openai_format(text, model, result.get("usage"))
        if save_data:
            self._client.telemetry.schedule(
                build_record(
                    messages + [{"role": "assistant", "content": text}], model, kwargs, settings.tags
                )
            )
        return completion

    async def _custom_stream(
        self,
        model: str,
        classification: ModelClassification,
        backend_params: Dict[str, Any],
        settings: ControlSettings,
        save_data: bool,
    ) -> CustomStream:
        kwargs = model_kwargs(backend_params)
        on_complete = None
        if save_data:
            telemetry = self._client.telemetry

            async def on_complete(messages: List[Dict[str, Any]]) -> None:
                await telemetry.post(build_record(messages, model, kwargs, settings.tags))

        result = await self._client.backend.open_stream(
            classification.request_name(model),
            classification.serving_url,
            backend_params["messages"],
            kwargs,
            model=model,
            on_complete=on_complete,
        )
        if isinstance(result, ApiError):
            raise result.to_exception()
        return result


class Chat:
    def __init__(self, client: Tromero) -> None:
        self.completions = Completions(client)


class Tromero:
    """Chat completions client that routes between OpenAI and Tromero models.

    API keys are only ever taken from the constructor; use from_env() to
    build a client from environment variables and .env files instead.
    """

    def __init__(
        self,
        tromero_key: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        data_url: Optional[str] = None,
        save_data: bool = False,
        request_timeout_s: float = 60.0,
        stream_idle_timeout_s: float = 120.0,
        openai_client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Optional[TromeroConfig] = None,
    ) -> None:
        if config is None:
            base_url = base_url.rstrip("/")
            config = TromeroConfig(
                tromero_key=tromero_key or "",
                openai_api_key=api_key or "",
                base_url=base_url,
                data_url=data_url or f"{base_url}/data",
                save_data=save_data,
                request_timeout_s=request_timeout_s,
                stream_idle_timeout_s=stream_idle_timeout_s,
                log_level="INFO",
                log_path="",
                user_agent=DEFAULT_USER_AGENT,
            )
        config.validate(require_key=False)
        self.config = config

        self._owns_primary = openai_client is None and bool(config.openai_api_key)
        if self._owns_primary:
            openai_client = AsyncOpenAI(
                api_key=config.openai_api_key,
                base_url=OPENAI_BASE_URL,
                timeout=config.request_timeout_s,
            )
        self.primary: Optional[AsyncOpenAI] = openai_client

        self.backend: Optional[CustomBackendClient] = None
        if config.tromero_key:
            self.backend = CustomBackendClient(config, http_client)
        elif self.primary is not None:
            log.warning(
                "You're using the Tromero client without a Tromero key. "
                "Custom models are unavailable and no data will be saved."
            )
        else:
            log.warning(
                "You haven't set an api_key for OpenAI or a tromero_key for Tromero. "
                "Please set one of these to use the client."
            )

        self.classifier = ModelClassifier(self.primary, self.backend)
        self.telemetry = TelemetrySink(self.backend)
        self.chat = Chat(self)

    @classmethod
    def from_env(cls, **kwargs: Any) -> Tromero:
        """Build a client from .env files and environment variables."""
        load_env_files()
        config = load_config()
        config.validate()
        setup_logging(config.log_path or None, config.log_level)
        dump_config(config)
        return cls(config=config, **kwargs)

    @property
    def save_data(self) -> bool:
        """Client-wide default for the save_data control setting."""
        return self.config.save_data

    async def aclose(self) -> None:
        """Flush pending telemetry, then close owned HTTP clients."""
        await self.telemetry.wait_pending()
        if self.backend is not None:
            await self.backend.aclose()
        if self._owns_primary and self.primary is not None:
            await self.primary.close()

    async def __aenter__(self) -> Tromero:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


__all__ = [
    "Tromero",
    "TromeroError",
    "TromeroAPIError",
]
