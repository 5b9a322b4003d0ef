"""Streaming response handling: token-frame decoding and chunk reassembly."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import copy
import enum
import inspect
import json
import logging
import time
from collections import deque
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Mapping, Optional

import httpx
from openai.types.chat import ChatCompletionChunk

from errors import TromeroAPIError
from models import StreamChunk, new_completion_id

log = logging.getLogger("tromero")

MessagesCallback = Callable[[List[Dict[str, Any]]], Awaitable[None]]
CompletionCallback = Callable[[Dict[str, Any]], Awaitable[None]]


# ============================================================================
# Token frame decoding
# ============================================================================

class TokenStreamDecoder:
    """Decode `data:`-prefixed JSON token frames from raw byte blocks.

    Lines split across blocks are buffered until their newline arrives, and
    multi-byte characters split across blocks are reassembled. Every decoded
    token is also appended to the running text.
    """

    def __init__(self, model: str, completion_id: str | None = None) -> None:
        self.model = model
        self.id = completion_id or new_completion_id()
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._parts: List[str] = []

    @property
    def text(self) -> str:
        """Concatenation of every token decoded so far."""
        return "".join(self._parts)

    def feed(self, block: bytes) -> List[StreamChunk]:
        """Decode one byte block; returns the chunks completed by it."""
        text = self._pending + self._utf8.decode(block)
        lines = text.split("\n")
        self._pending = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> List[StreamChunk]:
        """Decode whatever is left once the transport signals end of stream."""
        text = self._pending + self._utf8.decode(b"", final=True)
        self._pending = ""
        return self._parse_lines([text])

    def _parse_lines(self, lines: List[str]) -> List[StreamChunk]:
        out: List[StreamChunk] = []
        for line in lines:
            chunk = self._parse_line(line)
            if chunk is not None:
                out.append(chunk)
        return out

    def _parse_line(self, line: str) -> StreamChunk | None:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        payload = line[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            return None

        try:
            obj = json.loads(payload)
        except json.JSONDecodeError as e:
            log.error("Skipping malformed stream frame (%s): %r", e, payload[:200])
            return None

        token = obj.get("token") if isinstance(obj, dict) else None
        if not isinstance(token, dict):
            log.error("Skipping stream frame without token: %r", payload[:200])
            return None

        text = token.get("text")
        if not isinstance(text, str):
            text = ""
        self._parts.append(text)
        return StreamChunk(
            id=self.id,
            created=int(time.time()),
            model=self.model,
            delta_content=text,
            finish_reason="stop" if token.get("special") else None,
        )


# ============================================================================
# Custom backend stream
# ============================================================================

class StreamState(enum.Enum):
    READING = "reading"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


class CustomStream:
    """Async iterator of OpenAI chunks over an open generate_stream response.

    The response is released on every exit path: end of stream, read error,
    aclose() by a consumer that stops early, or collection of a stream
    abandoned mid-iteration. The completion callback runs exactly once, after
    the last chunk has been handed out, and only when the end of the stream
    was actually reached.
    """

    def __init__(
        self,
        response: httpx.Response,
        decoder: TokenStreamDecoder,
        messages: List[Mapping[str, Any]],
        on_complete: Optional[MessagesCallback] = None,
    ) -> None:
        self._response = response
        self._decoder = decoder
        self._messages = [dict(m) for m in messages]
        self._on_complete = on_complete
        self._reader: AsyncIterator[bytes] = response.aiter_bytes()
        self._ready: Deque[StreamChunk] = deque()
        self._released = False
        self.state = StreamState.READING

    @property
    def text(self) -> str:
        return self._decoder.text

    @property
    def closed(self) -> bool:
        """True once the underlying response has been released."""
        return self._released

    def __aiter__(self) -> CustomStream:
        return self

    async def __anext__(self) -> ChatCompletionChunk:
        while not self._ready:
            if self.state is StreamState.READING:
                await self._read_block()
            elif self.state is StreamState.DRAINING:
                await self._drain()
            else:
                raise StopAsyncIteration
        return self._ready.popleft().to_openai()

    async def _read_block(self) -> None:
        try:
            block = await self._reader.__anext__()
        except StopAsyncIteration:
            self._ready.extend(self._decoder.flush())
            self.state = StreamState.DRAINING
            return
        except httpx.HTTPError as e:
            await self._fail()
            raise TromeroAPIError(f"Stream read failed: {type(e).__name__}: {e}") from e
        except BaseException:
            await self._fail()
            raise
        self._ready.extend(self._decoder.feed(block))

    async def _drain(self) -> None:
        await self._release()
        self.state = StreamState.DONE
        if self._on_complete is not None:
            messages = self._messages + [{"role": "assistant", "content": self._decoder.text}]
            await self._on_complete(messages)

    async def _fail(self) -> None:
        self.state = StreamState.FAILED
        self._ready.clear()
        await self._release()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        await _close_response(self._response)

    async def aclose(self) -> None:
        """Stop early; releases the response without running the callback."""
        if self.state in (StreamState.READING, StreamState.DRAINING):
            log.debug("Stream closed before completion model=%s; not saved", self._decoder.model)
            self.state = StreamState.DONE
            self._ready.clear()
        await self._release()

    async def __aenter__(self) -> CustomStream:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    def __del__(self) -> None:
        # Consumer broke out of `async for` without aclose()
        if getattr(self, "_released", True):
            return
        self._released = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(_close_response(self._response))


async def _close_response(response: httpx.Response) -> None:
    with contextlib.suppress(Exception):
        await response.aclose()


# ============================================================================
# Chunk reassembly
# ============================================================================

def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    return dict(obj)


def _with_tool_call_ids(tool_calls: List[Any]) -> List[Dict[str, Any]]:
    out = []
    for tc in tool_calls:
        tc = dict(tc)
        if tc.get("id") is None:
            tc["id"] = ""
        out.append(tc)
    return out


def merge_chunks(base: Optional[Dict[str, Any]], chunk: Any) -> Dict[str, Any]:
    """
    Fold one chat.completion.chunk into an accumulated chat.completion.

    Merging into None seeds an empty completion from the chunk envelope first.
    Choices are keyed by index: content deltas concatenate in arrival order,
    tool call deltas append in arrival order, and finish_reason only ever
    moves to a newer non-null value. The input accumulation is not mutated.
    """
    chunk = _as_dict(chunk)
    if base is None:
        seed = {k: v for k, v in chunk.items() if k not in ("choices", "object")}
        seed["object"] = "chat.completion"
        seed["choices"] = []
        return merge_chunks(seed, chunk)

    choices = [copy.deepcopy(c) for c in base.get("choices") or []]
    by_index = {c.get("index"): c for c in choices}

    for incoming in chunk.get("choices") or []:
        idx = incoming.get("index", 0)
        delta = incoming.get("delta") or {}
        existing = by_index.get(idx)

        if existing is None:
            message = {"role": "assistant"}
            message.update({k: v for k, v in delta.items() if v is not None})
            if message.get("tool_calls"):
                message["tool_calls"] = _with_tool_call_ids(message["tool_calls"])
            new_choice = {
                "index": idx,
                "finish_reason": incoming.get("finish_reason") or "stop",
                "logprobs": incoming.get("logprobs"),
                "message": message,
            }
            choices.append(new_choice)
            by_index[idx] = new_choice
            continue

        if incoming.get("finish_reason") is not None:
            existing["finish_reason"] = incoming["finish_reason"]
        message = existing.get("message") or {"role": "assistant"}
        existing["message"] = message

        if delta.get("content"):
            message["content"] = (message.get("content") or "") + delta["content"]
        if delta.get("tool_calls"):
            message["tool_calls"] = (message.get("tool_calls") or []) + _with_tool_call_ids(
                delta["tool_calls"]
            )

    choices.sort(key=lambda c: c.get("index", 0))
    merged = {**base, "choices": choices}
    # include_usage streams report usage on a final chunk with no choices
    if chunk.get("usage") is not None:
        merged["usage"] = chunk["usage"]
    return merged


class RecordingStream:
    """Pass primary-backend stream chunks through while reassembling them.

    Once the wrapped stream ends, the merged completion is handed to the
    completion callback before iteration stops.
    """

    def __init__(self, stream: Any, on_complete: Optional[CompletionCallback] = None) -> None:
        self._stream = stream
        self._iterator: AsyncIterator[Any] | None = None
        self._on_complete = on_complete
        self._finished = False
        self.completion: Dict[str, Any] | None = None

    def __aiter__(self) -> RecordingStream:
        return self

    async def __anext__(self) -> Any:
        if self._finished:
            raise StopAsyncIteration
        if self._iterator is None:
            self._iterator = self._stream.__aiter__()

        try:
            chunk = await self._iterator.__anext__()
        except StopAsyncIteration:
            self._finished = True
            if self._on_complete is not None and self.completion is not None:
                await self._on_complete(self.completion)
            raise
        except BaseException:
            self._finished = True
            raise

        self.completion = merge_chunks(self.completion, chunk)
        return chunk

    async def aclose(self) -> None:
        """Stop early and close the wrapped stream; nothing is saved."""
        self._finished = True
        closer = getattr(self._stream, "close", None) or getattr(self._stream, "aclose", None)
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            await result

    async def __aenter__(self) -> RecordingStream:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
