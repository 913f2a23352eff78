"""Schema compilation and request/response validation."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from jsonschema import (
    Draft4Validator,
    Draft6Validator,
    Draft7Validator,
    Draft201909Validator,
    Draft202012Validator,
    FormatChecker,
)
from jsonschema.exceptions import SchemaError as JSONSchemaError

from .models import (
    Operation,
    ParsedRequest,
    Request,
    SchemaError,
    SetMatchType,
    ValidationResult,
)
from .openapi import DefinitionError, OperationTable, find_default_status
from .router import OperationRouter, coerce_value, is_json_media_type


logger = logging.getLogger(__name__)

CompiledValidator = Callable[[Any], Optional[List[SchemaError]]]

PARAMETER_LOCATIONS = ("path", "query", "header", "cookie")

_DRAFTS = {
    "4": Draft4Validator,
    "6": Draft6Validator,
    "7": Draft7Validator,
    "2019-09": Draft201909Validator,
    "2020-12": Draft202012Validator,
}

_NESTED_SCHEMA_LISTS = ("allOf", "anyOf", "oneOf")
_NESTED_SCHEMAS = ("items", "not", "additionalProperties")


def operation_key(operation: Operation) -> str:
    return operation.operation_id or f"{operation.method} {operation.path}"


def to_json_schema(schema: Mapping[str, Any], draft: str = "7") -> Dict[str, Any]:
    """Translate OpenAPI 3.0 schema dialect into plain JSON Schema.

    Handles ``nullable`` and the boolean form of ``exclusiveMinimum`` and
    ``exclusiveMaximum``.
    """
    result = copy.copy(dict(schema))

    if result.pop("nullable", False):
        kind = result.get("type")
        if isinstance(kind, str):
            result["type"] = [kind, "null"]
        elif isinstance(kind, list) and "null" not in kind:
            result["type"] = [*kind, "null"]
        if "enum" in result and None not in result["enum"]:
            result["enum"] = [*result["enum"], None]

    if draft != "4":
        for exclusive, bound in (("exclusiveMinimum", "minimum"), ("exclusiveMaximum", "maximum")):
            value = result.get(exclusive)
            if isinstance(value, bool):
                if value and bound in result:
                    result[exclusive] = result.pop(bound)
                else:
                    result.pop(exclusive)

    if isinstance(result.get("properties"), dict):
        result["properties"] = {
            name: to_json_schema(value, draft) for name, value in result["properties"].items()
        }
    for keyword in _NESTED_SCHEMAS:
        if isinstance(result.get(keyword), dict):
            result[keyword] = to_json_schema(result[keyword], draft)
    for keyword in _NESTED_SCHEMA_LISTS:
        if isinstance(result.get(keyword), list):
            result[keyword] = [to_json_schema(item, draft) for item in result[keyword]]
    return result


def default_draft(openapi_version: Any) -> str:
    """JSON Schema draft spoken by schemas in a document of this OpenAPI version."""
    return "2020-12" if str(openapi_version or "").startswith("3.1") else "7"


class SchemaCompiler:
    """Precompiles one validator per operation and validation target.

    Without an explicit ``draft`` the draft follows the document's
    ``openapi`` version. Schemas that are not valid for that draft raise
    ``DefinitionError`` in strict mode; otherwise the target is left
    unconstrained and a warning is logged.
    """

    def __init__(
        self,
        table: OperationTable,
        format_checker: bool = False,
        draft: Optional[str] = None,
        strict: bool = False,
    ) -> None:
        if draft is None:
            draft = default_draft(table.document.get("openapi"))
        if str(draft) not in _DRAFTS:
            raise ValueError(f"Unsupported JSON Schema draft: {draft}")
        self.table = table
        self.strict = strict
        self.draft = str(draft)
        self.validator_cls = _DRAFTS[self.draft]
        self.format_checker = FormatChecker() if format_checker else None
        self._validators: Dict[Tuple[str, str], CompiledValidator] = {}

    def compile(
        self, schema: Mapping[str, Any], location: str, owner: str = ""
    ) -> CompiledValidator:
        json_schema = to_json_schema(schema, self.draft)
        try:
            self.validator_cls.check_schema(json_schema)
        except JSONSchemaError as exc:
            message = f"Invalid {location} schema{' for ' + owner if owner else ''}: {exc.message}"
            if self.strict:
                raise DefinitionError(message) from exc
            logger.warning("%s; not validating it", message)
            json_schema = {}
        validator = self.validator_cls(json_schema, format_checker=self.format_checker)

        def validate(data: Any) -> Optional[List[SchemaError]]:
            errors = [
                SchemaError(
                    location=location,
                    path="".join(f"/{part}" for part in error.absolute_path),
                    message=error.message,
                    keyword=str(error.validator),
                )
                for error in validator.iter_errors(data)
            ]
            return errors or None

        return validate

    def compile_all(self) -> None:
        for operation in self.table.get_operations():
            self.compile_operation(operation)
        logger.info(
            "Compiled %s validators for %s operations", len(self._validators), len(self.table)
        )

    def compile_operation(self, operation: Operation) -> None:
        key = operation_key(operation)

        for location in PARAMETER_LOCATIONS:
            schema = self._parameters_schema(operation.parameters_in(location), location)
            self._validators[(key, location)] = self.compile(schema, location, key)

        content = (operation.request_body or {}).get("content") or {}
        for media_type, media in content.items():
            schema = (media or {}).get("schema")
            if is_json_media_type(media_type) and schema is not None:
                self._validators[(key, f"requestBody:{media_type}")] = self.compile(
                    schema, "requestBody", key
                )

        for status, response in operation.responses.items():
            response = response or {}
            for media_type, media in (response.get("content") or {}).items():
                schema = (media or {}).get("schema")
                if is_json_media_type(media_type) and schema is not None:
                    self._validators[(key, f"response:{status}:{media_type}")] = self.compile(
                        schema, "responseBody", key
                    )
            declared = response.get("headers") or {}
            for mode in SetMatchType:
                schema = self._headers_schema(declared, mode)
                self._validators[(key, f"responseHeaders:{status}:{mode.value}")] = self.compile(
                    schema, "responseHeaders", key
                )

    def get(self, operation: Operation, target: str) -> Optional[CompiledValidator]:
        return self._validators.get((operation_key(operation), target))

    def _parameters_schema(self, parameters: List[Dict[str, Any]], location: str) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for parameter in parameters:
            name = parameter["name"].lower() if location == "header" else parameter["name"]
            properties[name] = parameter.get("schema") or {}
            if location == "path" or parameter.get("required"):
                required.append(name)

        schema: Dict[str, Any] = {
            "type": "object",
            "properties": properties,
            "additionalProperties": location in ("header", "cookie"),
        }
        if required:
            schema["required"] = required
        return schema

    def _headers_schema(self, declared: Mapping[str, Any], mode: SetMatchType) -> Dict[str, Any]:
        properties = {
            name.lower(): (header or {}).get("schema") or {} for name, header in declared.items()
        }
        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        if mode in (SetMatchType.SUPERSET, SetMatchType.EXACT) and properties:
            schema["required"] = list(properties)
        if mode in (SetMatchType.SUBSET, SetMatchType.EXACT):
            schema["additionalProperties"] = False
        return schema

    def __len__(self) -> int:
        return len(self._validators)


class OpenAPIValidator:
    def __init__(self, table: OperationTable, router: OperationRouter, compiler: SchemaCompiler) -> None:
        self.table = table
        self.router = router
        self.compiler = compiler

    def validate_request(
        self,
        req: Union[Request, ParsedRequest],
        operation: Union[Operation, str, None] = None,
    ) -> ValidationResult:
        resolved = self._resolve_operation(operation, req)
        if resolved is None:
            return ValidationResult.from_errors(
                [SchemaError("operation", "", f"Unknown operation for {req.method} {req.path}", "operation")]
            )

        if isinstance(req, ParsedRequest):
            parsed = req
        else:
            parsed = self.router.parse_request(req, operation=resolved)

        payloads = {
            "path": parsed.params,
            "query": parsed.query,
            "header": parsed.headers,
            "cookie": parsed.cookies,
        }
        errors: List[SchemaError] = []
        for location in PARAMETER_LOCATIONS:
            validator = self.compiler.get(resolved, location)
            if validator:
                errors.extend(validator(payloads[location]) or [])
        errors.extend(self._validate_body(resolved, parsed))

        result = ValidationResult.from_errors(errors)
        logger.debug(
            "Validated request operation=%s valid=%s errors=%s",
            operation_key(resolved),
            result.valid,
            len(errors),
        )
        return result

    def validate_response(
        self,
        res: Any,
        operation: Union[Operation, str],
        status_code: Optional[int] = None,
    ) -> ValidationResult:
        resolved = self._resolve_operation(operation)
        if resolved is None:
            return ValidationResult.from_errors(
                [SchemaError("operation", "", f"Unknown operation {operation}", "operation")]
            )

        status = self._response_status(resolved, status_code)
        if status is None:
            if not resolved.responses:
                return ValidationResult.from_errors([])
            return ValidationResult.from_errors(
                [
                    SchemaError(
                        "responseBody",
                        "",
                        f"Status {status_code} is not declared for {operation_key(resolved)}",
                        "status",
                    )
                ]
            )

        content = (resolved.responses.get(status) or {}).get("content") or {}
        media_type = _pick_json_media_type(content)
        validator = self.compiler.get(resolved, f"response:{status}:{media_type}") if media_type else None
        if validator is None:
            return ValidationResult.from_errors([])
        return ValidationResult.from_errors(validator(res) or [])

    def validate_response_headers(
        self,
        headers: Mapping[str, Any],
        operation: Union[Operation, str],
        status_code: Optional[int] = None,
        set_match_type: Union[SetMatchType, str] = SetMatchType.ANY,
    ) -> ValidationResult:
        resolved = self._resolve_operation(operation)
        if resolved is None:
            return ValidationResult.from_errors(
                [SchemaError("operation", "", f"Unknown operation {operation}", "operation")]
            )

        mode = SetMatchType(set_match_type)
        status = self._response_status(resolved, status_code)
        if status is None:
            return ValidationResult.from_errors(
                [
                    SchemaError(
                        "responseHeaders",
                        "",
                        f"Status {status_code} is not declared for {operation_key(resolved)}",
                        "status",
                    )
                ]
            )

        declared = {
            name.lower(): (header or {}).get("schema")
            for name, header in ((resolved.responses.get(status) or {}).get("headers") or {}).items()
        }
        actual = {
            name.lower(): coerce_value(value, declared.get(name.lower()))
            for name, value in (headers or {}).items()
        }
        validator = self.compiler.get(resolved, f"responseHeaders:{status}:{mode.value}")
        if validator is None:
            return ValidationResult.from_errors([])
        return ValidationResult.from_errors(validator(actual) or [])

    def _validate_body(self, operation: Operation, parsed: ParsedRequest) -> List[SchemaError]:
        request_body = operation.request_body
        if not request_body:
            return []
        if parsed.body_error:
            return [SchemaError("requestBody", "", parsed.body_error, "format")]

        content = request_body.get("content") or {}
        if parsed.request_body is None:
            if request_body.get("required"):
                return [SchemaError("requestBody", "", "Request body is required", "required")]
            return []

        media_type = _match_media_type(parsed.content_type, content)
        if media_type is None:
            expected = ", ".join(content) or "none"
            return [
                SchemaError(
                    "requestBody",
                    "",
                    f"Unsupported media type {parsed.content_type}; expected one of: {expected}",
                    "mediaType",
                )
            ]

        validator = self.compiler.get(operation, f"requestBody:{media_type}")
        if validator is None:
            return []
        return validator(parsed.request_body) or []

    def _resolve_operation(
        self,
        operation: Union[Operation, str, None],
        req: Union[Request, ParsedRequest, None] = None,
    ) -> Optional[Operation]:
        if isinstance(operation, Operation):
            return operation
        if isinstance(operation, str):
            return self.table.get_operation(operation)
        if req is None:
            return None
        return self.router.matcher.match(req.method, req.path.split("?", 1)[0]).operation

    def _response_status(self, operation: Operation, status_code: Optional[int]) -> Optional[str]:
        responses = operation.responses
        if status_code is None:
            return find_default_status(responses)[1]
        for key in (str(status_code), f"{str(status_code)[0]}XX", "default"):
            if key in responses:
                return key
        return None


def _pick_json_media_type(content: Mapping[str, Any]) -> Optional[str]:
    if "application/json" in content:
        return "application/json"
    return next((media for media in content if is_json_media_type(media)), None)


def _match_media_type(actual: Optional[str], content: Mapping[str, Any]) -> Optional[str]:
    if not content:
        return None
    if actual is None:
        return _pick_json_media_type(content) or next(iter(content))
    if actual in content:
        return actual
    wildcard = actual.split("/", 1)[0] + "/*"
    for candidate in (wildcard, "*/*"):
        if candidate in content:
            return candidate
    return None
