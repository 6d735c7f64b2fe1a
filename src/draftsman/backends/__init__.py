from draftsman.backends.base import (
    AgentBackend,
    BackendAuthError,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ContextLengthExceededError,
)
from draftsman.backends.claude import ClaudeCodeBackend
from draftsman.backends.codex import CodexBackend
from draftsman.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendAuthError",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ContextLengthExceededError",
    "ResilientBackend",
    "RetryPolicy",
]
