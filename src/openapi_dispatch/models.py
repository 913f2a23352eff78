"""Internal models for operations, requests and validation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple, Union

if TYPE_CHECKING:
    from .backend import OpenAPIBackend


HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")


class SetMatchType(str, Enum):
    """How an actual header set is compared with the declared one."""

    ANY = "any"
    SUPERSET = "superset"
    SUBSET = "subset"
    EXACT = "exact"


@dataclass(frozen=True)
class Operation:
    path: str
    method: str
    operation_id: Optional[str] = None
    parameters: Tuple[Dict[str, Any], ...] = ()
    request_body: Optional[Dict[str, Any]] = None
    responses: Dict[str, Any] = field(default_factory=dict)
    summary: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()

    def parameters_in(self, location: str) -> List[Dict[str, Any]]:
        return [p for p in self.parameters if p.get("in") == location]


@dataclass(frozen=True)
class Request:
    """Framework-neutral view of an inbound HTTP request.

    ``path`` may carry a query string, which is used when ``query`` is not
    given. ``query`` is either the raw query string or an already parsed
    mapping. ``body`` may be text, bytes or an already decoded value.
    """

    method: str
    path: str
    headers: Mapping[str, Union[str, List[str]]] = field(default_factory=dict)
    query: Union[str, Mapping[str, Any], None] = None
    body: Any = None


@dataclass(frozen=True)
class ParsedRequest:
    method: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, Any] = field(default_factory=dict)
    cookies: Dict[str, Any] = field(default_factory=dict)
    request_body: Any = None
    raw_body: Any = None
    content_type: Optional[str] = None
    body_error: Optional[str] = None


@dataclass(frozen=True)
class SchemaError:
    location: str
    path: str
    message: str
    keyword: str = ""

    def __str__(self) -> str:
        where = f"{self.location}{self.path}" if self.path else self.location
        return f"{where}: {self.message}"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a payload.

    ``errors`` is ``None`` when the payload is valid; a present tuple always
    holds at least one error.
    """

    valid: bool
    errors: Optional[Tuple[SchemaError, ...]] = None

    @classmethod
    def from_errors(cls, errors: List[SchemaError]) -> "ValidationResult":
        if not errors:
            return cls(valid=True, errors=None)
        return cls(valid=False, errors=tuple(errors))


@dataclass(frozen=True)
class MockResponse:
    status: int
    mock: Any


@dataclass
class Context:
    api: "OpenAPIBackend"
    request: Optional[ParsedRequest] = None
    operation: Optional[Operation] = None
    validation: Optional[ValidationResult] = None
    response: Any = None
