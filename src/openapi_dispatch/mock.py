"""Mock responses from response examples or schemas."""

from __future__ import annotations

import copy
import logging
import math
from typing import Any, Dict, Mapping, Optional

from .models import MockResponse, Operation
from .openapi import find_default_status
from .router import schema_type


logger = logging.getLogger(__name__)

_STRING_FORMATS = {
    "date-time": "2019-08-24T14:15:22Z",
    "date": "2019-08-24",
    "time": "14:15:22Z",
    "email": "user@example.com",
    "uuid": "3fa85f64-5717-4562-b3fc-2c963f66afa6",
    "uri": "https://example.com",
    "url": "https://example.com",
    "hostname": "example.com",
    "ipv4": "192.0.2.1",
    "ipv6": "2001:db8::1",
    "byte": "c3RyaW5n",
    "binary": "",
    "password": "password",
}


def generate(schema: Optional[Mapping[str, Any]]) -> Any:
    """Build a minimal value conforming to ``schema``.

    The same schema always yields the same value.
    """
    if not isinstance(schema, Mapping):
        return None

    for keyword in ("example", "default", "const"):
        if keyword in schema:
            return copy.deepcopy(schema[keyword])
    if schema.get("enum"):
        return copy.deepcopy(schema["enum"][0])

    if schema.get("allOf"):
        merged: Dict[str, Any] = {}
        value: Any = None
        for part in schema["allOf"]:
            value = generate(part)
            if isinstance(value, dict):
                merged.update(value)
        own = {key: item for key, item in schema.items() if key != "allOf"}
        if own.get("properties"):
            merged.update(generate(own))
        return merged if merged else value

    for keyword in ("oneOf", "anyOf"):
        if schema.get(keyword):
            return generate(schema[keyword][0])

    kind = schema_type(schema)
    if kind == "object":
        return {name: generate(prop) for name, prop in (schema.get("properties") or {}).items()}
    if kind == "array":
        count = max(1, int(schema.get("minItems") or 0))
        if schema.get("maxItems") is not None:
            count = min(count, int(schema["maxItems"]))
        return [generate(schema.get("items")) for _ in range(count)]
    if kind == "string":
        return _mock_string(schema)
    if kind in ("integer", "number"):
        return _mock_number(schema, integer=kind == "integer")
    if kind == "boolean":
        return True
    return None


def _mock_string(schema: Mapping[str, Any]) -> str:
    value = _STRING_FORMATS.get(schema.get("format", ""), "string")
    min_length = schema.get("minLength")
    max_length = schema.get("maxLength")
    if min_length and len(value) < min_length:
        value = value.ljust(min_length, "x")
    if max_length is not None and len(value) > max_length:
        value = value[:max_length]
    return value


def _mock_number(schema: Mapping[str, Any], integer: bool) -> Any:
    value: float = 0
    minimum = schema.get("minimum")
    maximum = schema.get("maximum")
    exclusive_min = schema.get("exclusiveMinimum")
    exclusive_max = schema.get("exclusiveMaximum")

    # OpenAPI 3.0 flags vs. JSON Schema numeric bounds
    if isinstance(exclusive_min, bool):
        exclusive_min = minimum if exclusive_min else None
    if isinstance(exclusive_max, bool):
        exclusive_max = maximum if exclusive_max else None

    if minimum is not None and value < minimum:
        value = minimum
    if exclusive_min is not None and value <= exclusive_min:
        value = exclusive_min + 1
    if maximum is not None and value > maximum:
        value = maximum
    if exclusive_max is not None and value >= exclusive_max:
        value = exclusive_max - 1

    if integer:
        return int(math.ceil(value))
    return value


def mock_response_for_operation(
    operation: Optional[Operation],
    code: Optional[int] = None,
    media_type: Optional[str] = None,
    example: Optional[str] = None,
) -> MockResponse:
    fallback = MockResponse(status=200, mock={})
    if operation is None or not operation.responses:
        return fallback

    responses = operation.responses
    if code is not None and str(code) in responses:
        status, response = int(code), responses[str(code)]
    else:
        status, key = find_default_status(responses)
        response = responses.get(key) if key else None

    content = (response or {}).get("content") or {}
    if not content:
        return fallback

    if media_type and media_type in content:
        media = content[media_type]
    elif "application/json" in content:
        media = content["application/json"]
    else:
        media = content[next(iter(content))]
    media = media or {}

    examples = media.get("examples") or {}
    if example and isinstance(examples.get(example), Mapping) and "value" in examples[example]:
        return MockResponse(status, copy.deepcopy(examples[example]["value"]))
    if "example" in media:
        return MockResponse(status, copy.deepcopy(media["example"]))
    if examples:
        first = examples[next(iter(examples))] or {}
        return MockResponse(status, copy.deepcopy(first.get("value")))
    if media.get("schema") is not None:
        return MockResponse(status, generate(media["schema"]))

    logger.debug("No example or schema to mock for %s", operation.operation_id)
    return fallback
