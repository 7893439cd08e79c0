"""Custom exceptions for the cognitive workflow engine with detailed error information."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    REGISTRY = "registry"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all cognitive workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class NotFoundError(WorkflowEngineError):
    """Raised when an instance id/version cannot be resolved."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        version: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.REGISTRY,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if version:
            self.add_context(version=version)


class ConflictError(WorkflowEngineError):
    """Raised when an (id, version) pair is registered twice without replace."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        version: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.REGISTRY,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if version:
            self.add_context(version=version)


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow graph is structurally invalid."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class SchemaMismatchError(WorkflowEngineError):
    """Raised when data does not match a node's declared input or output shape.

    Fatal to the node and never retried: it means the workflow is misconfigured.
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        direction: Optional[str] = None,
        violations: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.VALIDATION,
            recoverable=False,
            **kwargs
        )
        self.violations = violations or []
        if node_id:
            self.add_context(node_id=node_id)
        if direction:
            self.add_context(direction=direction)
        if violations:
            self.add_details(violations=violations)


class ProviderError(WorkflowEngineError):
    """Raised by an AI provider; ``transient`` tells callers whether a retry is sensible."""

    def __init__(
        self,
        message: str,
        transient: bool = False,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            recoverable=transient,
            retry_after=1 if transient else None,
            **kwargs
        )
        self.transient = transient
        if provider:
            self.add_context(provider=provider)
        if status_code is not None:
            self.add_details(status_code=status_code)


class EmbeddingUnavailableError(WorkflowEngineError):
    """Raised when the embedding capability cannot be reached. Retryable by the caller."""

    def __init__(self, message: str, stage: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.NETWORK,
            recoverable=True,
            retry_after=1,
            **kwargs
        )
        if stage:
            self.add_context(stage=stage)


class ExecutionTimeoutError(WorkflowEngineError):
    """Raised when an AI capability call exceeds its timeout. Retryable by the engine."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if timeout is not None:
            self.add_details(timeout=timeout)


class ExecutionError(WorkflowEngineError):
    """Raised when a node's capability fails. ``cause`` keeps the original exception."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
        execution_time: Optional[float] = None,
        **kwargs
    ):
        recoverable = bool(getattr(cause, "recoverable", False))
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=recoverable,
            **kwargs
        )
        self.cause = cause
        if node_id:
            self.add_context(node_id=node_id)
        if cause is not None:
            self.add_details(cause_type=type(cause).__name__, cause=str(cause))
        if execution_time:
            self.add_details(execution_time=execution_time)


class StorageError(WorkflowEngineError):
    """Raised when catalog storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying at the workflow layer."""
    if isinstance(error, SchemaMismatchError):
        return False
    if isinstance(error, ExecutionTimeoutError):
        return True
    if isinstance(error, ProviderError):
        return error.transient
    if isinstance(error, ExecutionError) and error.cause is not None:
        return is_transient(error.cause)
    return False


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }


def error_details(error: BaseException) -> Dict[str, Any]:
    """Serializable description of any exception, rich for engine errors."""
    if isinstance(error, WorkflowEngineError):
        return error.to_dict()
    return {"exception_type": type(error).__name__, "message": str(error)}


def http_status_for(error: WorkflowEngineError) -> int:
    """HTTP status code for an engine error surfaced through the API."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, (GraphValidationError, SchemaMismatchError)):
        return 422
    if isinstance(error, EmbeddingUnavailableError):
        return 503
    if isinstance(error, ExecutionTimeoutError):
        return 504
    if isinstance(error, ProviderError):
        return 502
    return 500
