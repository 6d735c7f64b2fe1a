from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

CONTEXT_LENGTH_PATTERN = re.compile(
    r"context[_ ]length|context window|maximum context|too many tokens|prompt is too long",
    re.IGNORECASE,
)
AUTH_PATTERN = re.compile(
    r"\b(401|403)\b|unauthori[sz]ed|invalid api key|authentication|not logged in",
    re.IGNORECASE,
)
QUOTA_PATTERN = re.compile(r"quota|billing|insufficient[_ ]credit", re.IGNORECASE)


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class BackendAuthError(BackendExecutionError):
    """Raised when the model service rejects credentials or quota."""

    def __init__(self, message: str, *, backend: str | None = None, exit_code: int | None = None):
        super().__init__(message, backend=backend, exit_code=exit_code, retriable=False)


class ContextLengthExceededError(BackendExecutionError):
    """Raised when a request does not fit the model context window."""

    def __init__(self, message: str, *, backend: str | None = None, exit_code: int | None = None):
        super().__init__(message, backend=backend, exit_code=exit_code, retriable=False)


def classify_backend_failure(
    message: str,
    *,
    backend: str,
    exit_code: int | None = None,
) -> BackendExecutionError:
    if CONTEXT_LENGTH_PATTERN.search(message):
        return ContextLengthExceededError(message, backend=backend, exit_code=exit_code)
    if AUTH_PATTERN.search(message) or QUOTA_PATTERN.search(message):
        return BackendAuthError(message, backend=backend, exit_code=exit_code)
    return BackendExecutionError(message, backend=backend, exit_code=exit_code, retriable=True)


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""
