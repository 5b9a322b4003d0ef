"""Error types shared by the backend clients and the completion orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

StatusCode = Union[int, str]


class TromeroError(Exception):
    """Base class for errors raised by the Tromero client."""


class TromeroAPIError(TromeroError):
    """Raised when a backend call fails."""

    def __init__(self, message: str, status_code: StatusCode = "N/A"):
        self.message = message
        self.status_code = status_code
        super().__init__(f"{message} (status_code={status_code})")


@dataclass(frozen=True)
class ApiError:
    """Structured failure returned by custom backend calls instead of raising."""

    error: str
    status_code: StatusCode = "N/A"

    def to_exception(self) -> TromeroAPIError:
        return TromeroAPIError(self.error, self.status_code)
