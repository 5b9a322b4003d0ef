"""Best-effort shipping of finished conversations to the data endpoint."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from errors import ApiError
from params import format_tags
from upstream import CustomBackendClient

log = logging.getLogger("tromero")


def build_record(
    messages: List[Mapping[str, Any]],
    model: str,
    kwargs: Mapping[str, Any],
    tags: Any = None,
) -> Dict[str, Any]:
    """Assemble the JSON record the data endpoint accepts."""
    return {
        "messages": [dict(m) for m in messages],
        "model": model,
        "kwargs": dict(kwargs),
        "creation_time": datetime.now(timezone.utc).isoformat(),
        "tags": format_tags(tags),
    }


class TelemetrySink:
    """Post telemetry records; failures are logged at debug level and dropped."""

    def __init__(self, backend: Optional[CustomBackendClient]) -> None:
        self._backend = backend
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    async def post(self, record: Mapping[str, Any]) -> None:
        """Send one record now. Never raises."""
        if self._backend is None:
            return
        try:
            result = await self._backend.post_data(record)
        except Exception as e:
            log.debug("Telemetry post raised, dropped: %r", e)
            return
        if isinstance(result, ApiError):
            log.debug("Telemetry post failed, dropped: %s", result.error)

    def schedule(self, record: Mapping[str, Any]) -> Optional[asyncio.Task]:
        """Post a record in the background without waiting for it."""
        if self._backend is None:
            return None
        task = asyncio.create_task(self.post(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_pending(self, timeout_s: float = 5.0) -> None:
        """Give in-flight posts a bounded chance to finish."""
        if not self._pending:
            return
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            log.debug("Cancelled %d unfinished telemetry posts", len(pending))
