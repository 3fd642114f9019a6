"""Error handling framework for provisioning operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass

from converge.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a run."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    PROVIDER = "provider"
    STATE = "state"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Resource failed but the run can continue
    WARNING = "warning"
    INFO = "info"


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_key: Optional[str] = None
    resource_kind: Optional[str] = None
    operation: Optional[str] = None
    provider_id: Optional[str] = None
    attempt: Optional[int] = None
    additional_info: Optional[Dict[str, Any]] = None


class ConvergeError(Exception):
    """Base exception for engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize engine error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to a user-friendly message."""
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_key:
            lines.append(f"   Resource: {self.context.resource_key}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a dictionary for logging/serialization."""
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_key': self.context.resource_key,
                'resource_kind': self.context.resource_kind,
                'operation': self.context.operation,
                'provider_id': self.context.provider_id,
                'attempt': self.context.attempt,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(ConvergeError):
    """Error in engine settings or the declaration file itself."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ValidationError(ConvergeError):
    """Malformed declaration: bad attribute value, missing required attribute,
    reference to an undeclared resource."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )


class CycleError(ConvergeError):
    """Dependency cycle among declared resources."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = cycle
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ProviderError(ConvergeError):
    """Error raised by a provider adapter.

    ``transient`` errors are retried with backoff; permanent errors fail the
    resource immediately.
    """

    def __init__(self, message: str, transient: bool = False, **kwargs):
        self.transient = transient
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class StateStoreError(ConvergeError):
    """State cannot be read or written. Fatal for the whole run."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Run `converge state recover` to restore the last good state backup',
            'Run `converge state reset` to start from empty state (resources are not deleted)',
        ])
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateLockError(StateStoreError):
    """Another run holds the state lock."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Wait for the other run to finish',
            'Remove the stale .lock file if no other run is active',
        ])
        super().__init__(message, **kwargs)


class ErrorHandler:
    """Normalizes exceptions into ConvergeError and logs them."""

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ConvergeError:
        """Convert an arbitrary exception to a ConvergeError.

        Args:
            error: The exception to handle
            context: Where the error occurred

        Returns:
            ConvergeError with categorization
        """
        if isinstance(error, ConvergeError):
            return error

        context = context or ErrorContext()

        if isinstance(error, (ConnectionError, TimeoutError)):
            return ProviderError(
                f"Network error: {error}",
                transient=True,
                context=context,
                cause=error,
                suggestions=['Check connectivity to the provider endpoint']
            )

        return ProviderError(
            f"Unexpected error: {error}",
            transient=False,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def log_error(self, error: ConvergeError) -> None:
        """Log an error at a level matching its severity."""
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
        else:
            logger.info(log_message)

        logger.debug(f"Error details: {error.to_dict()}")


error_handler = ErrorHandler()
