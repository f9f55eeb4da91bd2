"""
Errors raised while loading, validating or deploying a descriptor.

Every error carries the logical name and the field it is about. Messages are built by the code raising the error
and never contain the value of a NoEcho parameter.
"""

from typing import Optional


class DescriptorError(Exception):
    """Base class for all descriptor errors."""

    message: str
    logical_name: Optional[str]
    field: Optional[str]
    constraint: Optional[str]

    def __init__(
        self,
        message: str,
        logical_name: str = None,
        field: str = None,
        constraint: str = None,
    ):
        super().__init__(message)
        self.message = message
        self.logical_name = logical_name
        self.field = field
        self.constraint = constraint

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "Type": self.error_type,
            "LogicalName": self.logical_name,
            "Field": self.field,
            "Constraint": self.constraint,
            "Message": self.message,
        }

    def __str__(self):
        return self.message


class SchemaError(DescriptorError):
    """The document is not a structurally valid descriptor."""


class DuplicateLogicalNameError(SchemaError):
    """A logical name is declared twice."""


class ParameterValidationError(DescriptorError):
    """A supplied parameter value is missing, unknown or does not satisfy its declaration."""


class MissingParameterError(ParameterValidationError):
    pass


class UnknownParameterError(ParameterValidationError):
    pass


class ConstraintViolation(ParameterValidationError):
    pass


class ReferenceValidationError(DescriptorError):
    """A reference inside the descriptor cannot be resolved."""


class UnresolvedReferenceError(ReferenceValidationError):
    pass


class CircularDependencyError(ReferenceValidationError):
    def __init__(self, resource_ids: list[str], message: str = None):
        message = message or "Circular dependency between resources: [%s]" % ", ".join(resource_ids)
        super(CircularDependencyError, self).__init__(
            message, logical_name=resource_ids[0] if resource_ids else None, field="DependsOn"
        )
        self.resource_ids = resource_ids


class PolicyError(DescriptorError):
    """A deletion, update-replace or creation policy is invalid."""


class ProvisioningError(DescriptorError):
    """The orchestrator reported a failure. The reason is passed on exactly as reported."""

    def __init__(self, message: str, stack_id: str = None, status: str = None, reasons: list[str] = None):
        super(ProvisioningError, self).__init__(message, logical_name=stack_id, field="StackStatus")
        self.stack_id = stack_id
        self.status = status
        self.reasons = reasons or []


class DeploymentTimeout(ProvisioningError):
    pass


# the common name for any error raised by the validator
ValidationError = DescriptorError
