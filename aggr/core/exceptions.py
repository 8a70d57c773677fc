"""Exception hierarchy for the aggregation core.

This module defines all custom exceptions raised by the aggregation core.
All exceptions inherit from AggrError for easy catching and handling.

Only the series layer and the configuration layer raise. The counter, the
chunk cache and the bar aggregator work on internally produced data and
ignore malformed input instead of raising.
"""

from typing import Any, Dict


class AggrError(Exception):
    """Base exception for all aggregation errors.

    All custom exceptions in the package inherit from this class,
    allowing for easy catching of any aggregation related errors.
    """

    def __init__(self, message: str, **context: Any):
        """Initialize the exception with a message and optional context.

        Args:
            message: Error message describing what went wrong
            **context: Additional context information for logging and debugging
        """
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        """Return string representation including context."""
        if self.context:
            ctx = ', '.join(f'{k}={v}' for k, v in self.context.items())
            return f"{super().__str__()} [{ctx}]"
        return super().__str__()


# ============================================================================
# Configuration Exceptions
# ============================================================================

class ConfigurationError(AggrError):
    """Raised when a series cannot be created from its settings.

    Typically an unknown visual type. Fatal only to the add_serie call
    that triggered it; other series and the aggregation loop carry on.
    """


class InvalidConfigError(AggrError):
    """Raised when configuration contains invalid values.

    This exception is raised when configuration values fail validation,
    such as a non-positive bucket width or a counter granularity larger
    than its window.
    """


# ============================================================================
# Series Exceptions
# ============================================================================

class SerieError(AggrError):
    """Base class for per-series failures.

    Carries the id of the offending series so the controller can route
    the message to the validation error channel.
    """

    def __init__(self, message: str, serie_id: str = None, **context: Any):
        super().__init__(message, **context)
        self.serie_id = serie_id


class CompileError(SerieError):
    """Raised when a formula cannot be compiled.

    Covers syntax errors, unknown identifiers, unknown functions, arity
    mismatches and output kinds that conflict with the visual type. The
    series stays unbound until its formula is corrected.
    """


class RuntimeValueError(SerieError):
    """Raised when an adapter produces a non-numeric value (NaN).

    The controller never lets this escape: the series is unbound and the
    message goes to the validation error channel.
    """
