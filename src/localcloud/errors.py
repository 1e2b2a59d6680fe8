"""Error taxonomy shared by the store, the dispatcher and every handler.

Each error carries the provider-facing code and message that the response
encoder renders, plus an HTTP status and whether the caller is at fault.
Handlers raise these with service-specific codes, for example::

    raise ResourceNotFound(
        f"Requested resource not found: Table: {name} not found",
        code="ResourceNotFoundException",
    )
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Generic failure categories, independent of any provider's codes."""

    MISSING_PARAMETER = "missing_parameter"
    VALIDATION = "validation"
    SERIALIZATION = "serialization"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    IN_USE = "in_use"
    UNKNOWN_OPERATION = "unknown_operation"
    INTERNAL_FAILURE = "internal_failure"


class CloudError(Exception):
    """Base class for every error rendered back to a client.

    Attributes:
        kind: Generic failure category.
        code: Provider error code placed on the wire.
        message: Human-readable message placed on the wire.
        status: HTTP status code of the error response.
        sender_fault: True when the caller caused the failure.
    """

    kind: ErrorKind = ErrorKind.INTERNAL_FAILURE
    default_code: str = "InternalFailure"
    default_status: int = 500
    sender_fault: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status or self.default_status

    @property
    def fault(self) -> str:
        """Fault party as written in markup error envelopes."""
        return "Sender" if self.sender_fault else "Receiver"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status={self.status}, message={self.message!r})"


class MissingParameter(CloudError):
    """A required request field is absent."""

    kind = ErrorKind.MISSING_PARAMETER
    default_code = "MissingParameter"
    default_status = 400
    sender_fault = True


class ValidationException(CloudError):
    """A request field is present but semantically invalid."""

    kind = ErrorKind.VALIDATION
    default_code = "ValidationException"
    default_status = 400
    sender_fault = True


class SerializationException(CloudError):
    """The request body could not be decoded."""

    kind = ErrorKind.SERIALIZATION
    default_code = "SerializationException"
    default_status = 400
    sender_fault = True


class ResourceNotFound(CloudError):
    """A lookup failed, after the bounded read retry where one applies."""

    kind = ErrorKind.NOT_FOUND
    default_code = "ResourceNotFoundException"
    default_status = 400
    sender_fault = True


class ResourceAlreadyExists(CloudError):
    """A create collided with an existing resource under a strict policy."""

    kind = ErrorKind.ALREADY_EXISTS
    default_code = "ResourceAlreadyExistsException"
    default_status = 400
    sender_fault = True


class ResourceInUse(CloudError):
    """A mutation was refused because another resource depends on the target."""

    kind = ErrorKind.IN_USE
    default_code = "ResourceInUseException"
    default_status = 400
    sender_fault = True


class UnknownOperation(CloudError):
    """The dispatcher could not resolve the request to a registered operation."""

    kind = ErrorKind.UNKNOWN_OPERATION
    default_code = "UnknownOperationException"
    default_status = 400
    sender_fault = True


class InternalFailure(CloudError):
    """Store or encoding failure not attributable to the caller."""

    kind = ErrorKind.INTERNAL_FAILURE
    default_code = "InternalFailure"
    default_status = 500
    sender_fault = False
