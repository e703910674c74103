from taskpilot.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    BackendUnavailableError,
    LanguageModelBackend,
    request_text,
)
from taskpilot.backends.claude import ClaudeCLIBackend
from taskpilot.backends.openai_backend import OpenAIBackend
from taskpilot.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "BackendUnavailableError",
    "ClaudeCLIBackend",
    "LanguageModelBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
    "request_text",
]
