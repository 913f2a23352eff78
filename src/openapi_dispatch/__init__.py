"""Framework-agnostic routing, validation, dispatch and mocking from an OpenAPI document."""

from .backend import DispatchError, OpenAPIBackend
from .models import (
    Context,
    MockResponse,
    Operation,
    ParsedRequest,
    Request,
    SchemaError,
    SetMatchType,
    ValidationResult,
)
from .openapi import DefinitionError
from .registry import RegistrationError

__all__ = [
    "Context",
    "DefinitionError",
    "DispatchError",
    "MockResponse",
    "OpenAPIBackend",
    "Operation",
    "ParsedRequest",
    "RegistrationError",
    "Request",
    "SchemaError",
    "SetMatchType",
    "ValidationResult",
]
