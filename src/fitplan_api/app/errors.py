"""Exception hierarchy for plan generation.

Beginner terms:
- Configuration error: the request can never succeed as configured, so it is
  rejected up front and never retried.
- Transient error: a provider call or payload problem that the retry loop may
  recover from on a later attempt.
"""

from __future__ import annotations


class PlanGenerationError(Exception):
    """Base class for every error raised by the generation subsystem."""


class ConfigurationError(PlanGenerationError):
    """Invalid provider selection or missing configuration."""


class UnsupportedProviderError(ConfigurationError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"unsupported AI provider: {provider}")
        self.provider = provider


class ProviderAccountNotFoundError(ConfigurationError):
    pass


class ProviderAccountForbiddenError(ConfigurationError):
    pass


class ProviderError(PlanGenerationError):
    """A single provider call failed (transport, HTTP status, or error payload)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider


class PayloadError(PlanGenerationError):
    """Provider answered, but no valid structured plan could be recovered."""


class GenerationCancelledError(PlanGenerationError):
    def __init__(self, message: str = "plan generation was cancelled") -> None:
        super().__init__(message)


class AttemptsExhaustedError(PlanGenerationError):
    """Every attempt failed; wraps the last error seen."""

    def __init__(
        self,
        *,
        label: str,
        attempts: int,
        last_error: Exception | None,
        attempt_errors: list[str] | None = None,
    ) -> None:
        reason = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"failed to generate {label} after {attempts} attempts: {reason}")
        self.attempts = attempts
        self.last_error = last_error
        self.attempt_errors = list(attempt_errors or [])


class PersistenceError(PlanGenerationError):
    """Storing a generated plan failed."""
