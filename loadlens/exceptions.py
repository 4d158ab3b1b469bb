"""Custom exceptions for the loadlens engine.

All loadlens-specific exceptions inherit from LoadLensError for unified error handling.
Per-request failures (timeouts, refused connections) are never raised: they are
recorded on the measurement instead. Only configuration-time and programmer-visible
problems surface as exceptions.
"""

from __future__ import annotations

from typing import Any


class LoadLensError(Exception):
    """Base exception for all loadlens errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "LoadLensError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class ConfigurationError(LoadLensError):
    """Raised before any network activity when a run cannot start.

    Common causes:
    - Relative URL without a usable base URL, or a malformed base URL
    - Unknown auth type or incomplete credentials
    - Load profile out of bounds (concurrency < 1, negative phase duration)
    - Invalid YAML run/chain file
    """


class RunnerError(LoadLensError):
    """Raised when a run is misused (e.g. started twice, awaited before start)."""


class ChainError(LoadLensError):
    """Raised when a chain definition cannot be executed (e.g. no steps)."""


class AssertionEvaluationError(LoadLensError):
    """Raised inside the assertion evaluator for a single malformed rule.

    Never escapes `assertions.evaluate`: the rule is reported as failed with
    this error's message.
    """
