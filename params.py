"""Parameter filtering and message normalization per backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

log = logging.getLogger("tromero")

PRIMARY = "primary"
CUSTOM = "custom"

# Keys the hosted chat-completion API accepts.
PRIMARY_PARAMS = frozenset({
    "messages",
    "model",
    "frequency_penalty",
    "function_call",
    "functions",
    "logit_bias",
    "logprobs",
    "max_tokens",
    "n",
    "parallel_tool_calls",
    "presence_penalty",
    "response_format",
    "seed",
    "service_tier",
    "stop",
    "stream",
    "stream_options",
    "temperature",
    "tool_choice",
    "tools",
    "top_logprobs",
    "top_p",
    "user",
})

# Keys the model-serving API forwards into its sampling parameters.
CUSTOM_PARAMS = frozenset({
    "messages",
    "model",
    "best_of",
    "presence_penalty",
    "frequency_penalty",
    "repetition_penalty",
    "temperature",
    "top_p",
    "top_k",
    "seed",
    "use_beam_search",
    "length_penalty",
    "early_stopping",
    "stop",
    "stop_token_ids",
    "include_stop_str_in_output",
    "ignore_eos",
    "max_tokens",
    "min_tokens",
    "logprobs",
    "prompt_logprobs",
    "detokenize",
    "skip_special_tokens",
    "spaces_between_special_tokens",
    "logits_processors",
    "truncate_prompt_tokens",
    "response_format",
    "schema",
    "stream",
})

# Control settings, recognized for every backend, mapped to their canonical name.
CONTROL_PARAMS: Dict[str, str] = {
    "tags": "tags",
    "save_data": "save_data",
    "saveData": "save_data",
    "use_fallback": "use_fallback",
    "useFallback": "use_fallback",
    "fallback_model": "fallback_model",
    "fallbackModel": "fallback_model",
}

# Never forwarded inside the custom backend "parameters" object or telemetry kwargs.
_ENVELOPE_KEYS = ("model", "messages", "stream")


@dataclass(frozen=True)
class ControlSettings:
    """Out-of-band settings that steer the client rather than the model."""

    tags: Any = None
    save_data: Optional[bool] = None
    use_fallback: bool = False
    fallback_model: Optional[str] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ControlSettings:
        """Collect control settings from a raw parameter bag."""
        found: Dict[str, Any] = {}
        for key, value in params.items():
            canonical = CONTROL_PARAMS.get(key)
            if canonical is not None:
                found[canonical] = value
        if "use_fallback" in found:
            found["use_fallback"] = bool(found["use_fallback"])
        return cls(**found)

    @property
    def fallback_enabled(self) -> bool:
        return self.use_fallback and bool(self.fallback_model)


def allowed_params(backend: str) -> frozenset:
    """Return the allow-list for a backend tag."""
    if backend == PRIMARY:
        return PRIMARY_PARAMS
    if backend == CUSTOM:
        return CUSTOM_PARAMS
    raise ValueError(f"Unknown backend: {backend!r}")


def format_params(
    raw: Mapping[str, Any], backend: str
) -> Tuple[Dict[str, Any], ControlSettings]:
    """
    Split a raw parameter bag into backend parameters and control settings.

    Keys outside both the backend allow-list and the control allow-list are
    dropped with a warning; they never reach the wire. model and messages are
    always kept.
    """
    valid = allowed_params(backend)
    backend_params: Dict[str, Any] = {
        "model": raw.get("model"),
        "messages": raw.get("messages"),
    }
    invalid: List[str] = []

    for key, value in raw.items():
        if key in ("model", "messages"):
            continue
        if key in valid:
            backend_params[key] = value
        elif key in CONTROL_PARAMS:
            continue
        else:
            log.warning(
                "%s is not a valid parameter for %s models. This parameter will be ignored.",
                key,
                backend,
            )
            invalid.append(key)

    if invalid:
        log.warning(
            "For your reference, only the following parameters are valid for %s models: %s",
            backend,
            ", ".join(sorted(valid)),
        )

    return backend_params, ControlSettings.from_params(raw)


def model_kwargs(backend_params: Mapping[str, Any]) -> Dict[str, Any]:
    """Backend parameters minus the request envelope (model, messages, stream)."""
    return {k: v for k, v in backend_params.items() if k not in _ENVELOPE_KEYS}


def normalize_messages(messages: List[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """
    Collapse consecutive leading system messages into one.

    Contents are joined with single spaces. Lists with at most one leading
    system message are returned unchanged.
    """
    num_prompts = 0
    parts: List[str] = []
    for message in messages:
        if message.get("role") != "system":
            break
        parts.append(str(message.get("content") or ""))
        num_prompts += 1

    if num_prompts <= 1:
        return messages

    log.warning(
        "Multiple system prompts will be combined into one prompt when saving data or calling custom models."
    )
    combined = {"role": "system", "content": " ".join(parts).strip()}
    return [combined, *messages[num_prompts:]]


def format_tags(tags: Any) -> str:
    """Render tags the way the data endpoint stores them."""
    if isinstance(tags, (list, tuple)):
        return ", ".join(str(t) for t in tags)
    if isinstance(tags, str):
        return tags
    return ""
