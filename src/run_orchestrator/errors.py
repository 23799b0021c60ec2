"""Exception types shared across the orchestration engine."""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class AgentError(OrchestratorError):
    """Fatal agent-loop error. A Run that raises this is marked failed."""


class NotFoundError(OrchestratorError):
    status_code = 404


class AgentToolInputError(OrchestratorError):
    """Tool input did not satisfy the tool's JSON schema."""

    def __init__(self, message: str, validation_errors: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.validation_errors = validation_errors


class RetryableError(OrchestratorError):
    """Transient failure that is safe to retry."""


class ModelProviderError(OrchestratorError):
    """Non-retryable failure returned by a model provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


RETRYABLE_ERROR_MESSAGES = (
    "Connection terminated due to connection timeout",
    "timeout exceeded when trying to connect",
    "Connection terminated unexpectedly",
    "account does not have an agreement to this model",
)


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, RetryableError):
        return True
    return str(exc) in RETRYABLE_ERROR_MESSAGES
