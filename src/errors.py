"""
Error taxonomy for the reconciliation engine.

Planning errors (SpecificationError, StateCorruptionError, StalePlanError)
are raised before any provider call is made. Provider errors are classified
as transient or permanent so the executor can decide whether to retry.
"""

from typing import List, Optional


class ConvergeError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SpecificationError(ConvergeError):
    """Raised when a specification is malformed, cyclic or unresolvable."""


class UnresolvedReferenceError(SpecificationError):
    """Raised when a reference or depends_on targets an unknown logical id."""

    def __init__(self, logical_id: str, target: str):
        self.logical_id = logical_id
        self.target = target
        super().__init__(
            f"Resource '{logical_id}' references unknown resource '{target}'"
        )


class CyclicDependencyError(SpecificationError):
    """Raised when the dependency edges contain a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency detected: {' -> '.join(cycle)}")


class DuplicateResourceError(SpecificationError):
    """Raised when two declarations share a logical id."""

    def __init__(self, logical_id: str):
        self.logical_id = logical_id
        super().__init__(f"Duplicate logical id: {logical_id}")


class UnknownResourceTypeError(SpecificationError):
    """Raised when no provider serves a declared resource type."""

    def __init__(self, logical_id: str, resource_type: str):
        self.logical_id = logical_id
        self.resource_type = resource_type
        super().__init__(
            f"Resource '{logical_id}' has unknown resource type '{resource_type}'"
        )


class SchemaValidationError(SpecificationError):
    """Raised when attributes do not satisfy the resource type's schema."""


class StateCorruptionError(ConvergeError):
    """Raised when persisted state cannot be parsed into valid records."""


class StalePlanError(ConvergeError):
    """Raised when state changed between plan and apply."""


class ProviderError(ConvergeError):
    """Base class for errors raised by provider plugins."""


class TransientProviderError(ProviderError):
    """Retryable provider failure (timeout, throttling, 5xx)."""


class PermanentProviderError(ProviderError):
    """Non-retryable provider failure (validation, permission denial)."""


class ExecutionFailure(ConvergeError):
    """A resource operation failed during apply."""

    def __init__(
        self,
        logical_id: str,
        operation: str,
        cause: Optional[BaseException] = None,
        attempts: int = 1,
    ):
        self.logical_id = logical_id
        self.operation = operation
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            f"{operation} of '{logical_id}' failed after {attempts} attempt(s): "
            f"{cause}"
        )
