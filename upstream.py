"""Custom model-serving API communication."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx

from config import TromeroConfig
from errors import ApiError
from sse_handler import CustomStream, MessagesCallback, TokenStreamDecoder

log = logging.getLogger("tromero")

ApiResult = Union[Dict[str, Any], ApiError]


class CustomBackendClient:
    """Handle communication with the custom model-serving API.

    Every call reports an expected failure (transport error, non-2xx status)
    by returning an ApiError instead of raising.
    """

    def __init__(self, config: TromeroConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout_s)
        )

    def get_headers(self) -> Dict[str, str]:
        """Headers sent with every custom backend request."""
        return {
            "X-API-KEY": self._config.tromero_key,
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> ApiResult:
        """Send one request and decode its JSON body, or describe the failure."""
        t0 = time.time()
        try:
            resp = await self._client.request(method, url, headers=self.get_headers(), **kwargs)
        except httpx.HTTPError as e:
            log.warning("Custom backend %s %s failed: %s", method, url, e)
            return ApiError(f"An error occurred: {type(e).__name__}: {e}", "N/A")

        dt = (time.time() - t0) * 1000
        log.debug("Custom backend %s %s status=%s ms=%.1f", method, url, resp.status_code, dt)

        if not resp.is_success:
            log.warning(
                "Custom backend error %s %s status=%s body=%s",
                method,
                url,
                resp.status_code,
                resp.text[:500],
            )
            return ApiError(
                f"An error occurred: HTTP error! status: {resp.status_code}", resp.status_code
            )

        try:
            data = resp.json()
        except ValueError:
            return ApiError(f"An error occurred: invalid JSON from {url}", resp.status_code)
        if not isinstance(data, dict):
            return ApiError(f"An error occurred: unexpected response from {url}", resp.status_code)
        return data

    async def get_model_url(self, model_name: str) -> ApiResult:
        """Resolve a model name to its serving URL and base-model flag."""
        return await self._request("GET", f"{self._config.base_url}/model/{model_name}/url")

    async def post_data(self, data: Mapping[str, Any]) -> ApiResult:
        """Send one telemetry record to the data endpoint."""
        return await self._request("POST", self._config.data_url, json=data)

    async def generate(
        self,
        adapter_name: str,
        model_url: str,
        messages: List[Mapping[str, Any]],
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> ApiResult:
        """Non-streaming generation: returns {generated_text, usage?} or an ApiError."""
        body = {
            "adapter_name": adapter_name,
            "messages": messages,
            "parameters": dict(parameters or {}),
        }
        return await self._request("POST", f"{model_url}/generate", json=body)

    async def open_stream(
        self,
        adapter_name: str,
        model_url: str,
        messages: List[Mapping[str, Any]],
        parameters: Optional[Mapping[str, Any]] = None,
        model: Optional[str] = None,
        on_complete: Optional[MessagesCallback] = None,
    ) -> Union[CustomStream, ApiError]:
        """
        Start a streaming generation.

        Returns a CustomStream once the server answered with a 2xx status, or
        an ApiError when the connection failed or the status was an error.
        """
        body = {
            "adapter_name": adapter_name,
            "messages": messages,
            "parameters": dict(parameters or {}),
        }
        url = f"{model_url}/generate_stream"
        req = self._client.build_request(
            "POST",
            url,
            headers=self.get_headers(),
            json=body,
            timeout=httpx.Timeout(
                self._config.request_timeout_s, read=self._config.stream_idle_timeout_s
            ),
        )

        t0 = time.time()
        try:
            resp = await self._client.send(req, stream=True)
        except httpx.HTTPError as e:
            log.warning("Custom backend stream %s failed: %s", url, e)
            return ApiError(f"An error occurred: {type(e).__name__}: {e}", "N/A")

        dt = (time.time() - t0) * 1000
        log.info("Custom backend stream model=%s status=%s ms=%.1f", model, resp.status_code, dt)

        if not resp.is_success:
            snippet = await self.read_error_snippet(resp)
            await resp.aclose()
            log.warning(
                "Custom backend stream error model=%s status=%s body=%s",
                model,
                resp.status_code,
                snippet,
            )
            return ApiError(
                f"An error occurred: HTTP error! status: {resp.status_code}", resp.status_code
            )

        decoder = TokenStreamDecoder(model=model or adapter_name)
        return CustomStream(resp, decoder, messages, on_complete=on_complete)

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
