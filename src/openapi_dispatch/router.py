"""Request routing: path template matching and request parsing."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, unquote

from .logging import redact_payload
from .models import Operation, ParsedRequest, Request
from .openapi import OperationTable


logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([^{}/]+)\}")
_INTEGER = re.compile(r"^[-+]?\d+$")
_NUMBER = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")
_DELIMITERS = {"form": ",", "simple": ",", "spaceDelimited": " ", "pipeDelimited": "|"}


@dataclass(frozen=True)
class PathMatch:
    """Result of matching a request path against the declared templates.

    ``template`` is ``None`` when no template matches the path at all.
    ``operation`` is ``None`` when the template matched but the method is not
    declared for it; ``allowed_methods`` then lists what is declared.
    """

    template: Optional[str] = None
    operation: Optional[Operation] = None
    params: Dict[str, str] = field(default_factory=dict)
    allowed_methods: Tuple[str, ...] = ()


@dataclass(frozen=True)
class _Template:
    path: str
    order: int
    segments: Tuple[Any, ...]
    placeholders: int

    def match(self, segments: List[str]) -> Optional[Dict[str, str]]:
        if len(segments) != len(self.segments):
            return None
        params: Dict[str, str] = {}
        for actual, expected in zip(segments, self.segments):
            if isinstance(expected, str):
                if actual != expected:
                    return None
                continue
            pattern, names = expected
            found = pattern.fullmatch(actual)
            if not found:
                return None
            for name, value in zip(names, found.groups()):
                params[name] = unquote(value)
        return params


class PathMatcher:
    def __init__(self, table: OperationTable, api_root: str = "/") -> None:
        self.table = table
        self.api_root = "/" + api_root.strip("/") if api_root.strip("/") else ""
        self._templates = [
            self._compile(path, order) for order, path in enumerate(table.paths())
        ]
        self._by_path = {template.path: template for template in self._templates}

    def normalize(self, path: str) -> str:
        path = "/" + path.split("?", 1)[0].lstrip("/")
        if self.api_root and (path == self.api_root or path.startswith(self.api_root + "/")):
            path = path[len(self.api_root):]
        path = path.rstrip("/")
        return path or "/"

    def _compile(self, path: str, order: int) -> _Template:
        segments: List[Any] = []
        placeholders = 0
        for segment in self._split(self.normalize(path)):
            names = _PLACEHOLDER.findall(segment)
            if not names:
                segments.append(segment)
                continue
            placeholders += len(names)
            pattern = "".join(
                "([^/]+)" if index % 2 else re.escape(part)
                for index, part in enumerate(_PLACEHOLDER.split(segment))
            )
            segments.append((re.compile(pattern), tuple(names)))
        return _Template(path=path, order=order, segments=tuple(segments), placeholders=placeholders)

    def _split(self, path: str) -> List[str]:
        # empty segments are kept so "/pets//42" never fits "/pets/{id}"
        return path[1:].split("/") if path != "/" else []

    def candidates(self, path: str) -> List[Tuple[str, Dict[str, str]]]:
        """All templates matching ``path``, most specific first."""
        segments = self._split(self.normalize(path))
        found: List[Tuple[_Template, Dict[str, str]]] = []
        for template in self._templates:
            params = template.match(segments)
            if params is not None:
                found.append((template, params))
        found.sort(key=lambda item: (item[0].placeholders, item[0].order))
        return [(template.path, params) for template, params in found]

    def extract(self, template_path: str, path: str) -> Dict[str, str]:
        template = self._by_path.get(template_path) or self._compile(template_path, 0)
        return template.match(self._split(self.normalize(path))) or {}

    def match(self, method: str, path: str) -> PathMatch:
        candidates = self.candidates(path)
        if not candidates:
            return PathMatch()

        method = method.lower()
        for template, params in candidates:
            operation = self.table.find(method, template)
            if operation:
                return PathMatch(template=template, operation=operation, params=params)

        template, params = candidates[0]
        allowed = tuple(
            op.method for op in self.table.get_operations() if op.path in dict(candidates)
        )
        return PathMatch(template=template, params=params, allowed_methods=tuple(dict.fromkeys(allowed)))


class OperationRouter:
    def __init__(self, table: OperationTable, api_root: str = "/") -> None:
        self.table = table
        self.api_root = api_root
        self.matcher = PathMatcher(table, api_root)

    def get_operations(self) -> List[Operation]:
        return self.table.get_operations()

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        return self.table.get_operation(operation_id)

    def match(self, req: Request) -> PathMatch:
        return self.matcher.match(req.method, req.path.split("?", 1)[0])

    def match_operation(self, req: Request) -> Optional[Operation]:
        return self.match(req).operation

    def parse_request(
        self,
        req: Request,
        known_path: Optional[str] = None,
        operation: Optional[Operation] = None,
    ) -> ParsedRequest:
        """Project ``req`` onto the operation it targets.

        With ``known_path`` (or an explicit ``operation``) the template is not
        matched again; path parameters are read from it directly.
        """
        method = req.method.lower()
        path, _, query_string = req.path.partition("?")
        headers = _normalize_headers(req.headers)

        if operation is not None:
            known_path = operation.path
        if known_path is not None:
            operation = operation or self.table.find(method, known_path)
            params: Dict[str, Any] = self.matcher.extract(known_path, path)
        else:
            found = self.matcher.match(method, path)
            operation = found.operation
            params = dict(found.params)

        declared = {(p.get("in"), p.get("name")): p for p in operation.parameters} if operation else {}

        for name, value in list(params.items()):
            parameter = declared.get(("path", name))
            if parameter:
                params[name] = coerce_value(value, parameter.get("schema"))

        query_source = req.query if req.query is not None else query_string
        query = _parse_query(query_source, operation.parameters_in("query") if operation else [])

        for (location, name), parameter in declared.items():
            if location == "header" and name.lower() in headers:
                headers[name.lower()] = coerce_value(headers[name.lower()], parameter.get("schema"))

        cookies: Dict[str, Any] = _parse_cookies(headers.get("cookie", ""))
        for name, value in list(cookies.items()):
            parameter = declared.get(("cookie", name))
            if parameter:
                cookies[name] = coerce_value(value, parameter.get("schema"))

        content_type = _media_type(headers.get("content-type"))
        body, body_error = _parse_body(req.body, content_type)

        logger.debug(
            "Parsed request method=%s path=%s operation=%s headers=%s",
            method,
            path,
            operation.operation_id if operation else None,
            redact_payload(headers),
        )

        return ParsedRequest(
            method=method,
            path=path,
            params=params,
            query=query,
            headers=headers,
            cookies=cookies,
            request_body=body,
            raw_body=req.body,
            content_type=content_type,
            body_error=body_error,
        )


def coerce_value(value: Any, schema: Optional[Mapping[str, Any]]) -> Any:
    """Convert a string parameter value to the type its schema declares.

    Values that do not convert are returned unchanged so that schema
    validation reports them.
    """
    schema = schema or {}
    kind = schema_type(schema)

    if isinstance(value, list):
        if kind == "array":
            return [coerce_value(item, schema.get("items")) for item in value]
        return value
    if not isinstance(value, str):
        return value

    if kind == "integer" and _INTEGER.match(value):
        return int(value)
    if kind == "number" and _NUMBER.match(value):
        return int(value) if _INTEGER.match(value) else float(value)
    if kind == "boolean" and value in ("true", "false"):
        return value == "true"
    if kind == "array":
        items = value.split(",") if value != "" else []
        return [coerce_value(item, schema.get("items")) for item in items]
    return value


def schema_type(schema: Mapping[str, Any]) -> Optional[str]:
    kind = schema.get("type")
    if isinstance(kind, list):
        kind = next((k for k in kind if k != "null"), None)
    if kind is None and "properties" in schema:
        return "object"
    if kind is None and "items" in schema:
        return "array"
    return kind


def _normalize_headers(headers: Mapping[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for name, value in (headers or {}).items():
        if isinstance(value, (list, tuple)):
            separator = "; " if name.lower() == "cookie" else ", "
            value = separator.join(str(item) for item in value)
        normalized[name.lower()] = value
    return normalized


def _parse_cookies(header: str) -> Dict[str, str]:
    cookies: Dict[str, str] = {}
    for pair in str(header).split(";"):
        name, sep, value = pair.strip().partition("=")
        if not sep or not name:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        cookies.setdefault(name.strip(), unquote(value))
    return cookies


def _parse_query(source: Any, parameters: List[Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(source, Mapping):
        pairs = []
        for key, value in source.items():
            if isinstance(value, (list, tuple)):
                pairs.extend((key, item) for item in value)
            else:
                pairs.append((key, value))
    else:
        pairs = parse_qsl(source or "", keep_blank_values=True)

    grouped: Dict[str, List[Any]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)

    query: Dict[str, Any] = {}
    for parameter in parameters:
        name = parameter["name"]
        schema = parameter.get("schema") or {}
        style = parameter.get("style", "form")
        explode = parameter.get("explode", style == "form")
        kind = schema_type(schema)

        if style == "deepObject":
            prefix = f"{name}["
            members = {
                key[len(prefix):-1]: values[0]
                for key, values in grouped.items()
                if key.startswith(prefix) and key.endswith("]")
            }
            for key in members:
                grouped.pop(f"{prefix}{key}]", None)
            if members:
                properties = schema.get("properties") or {}
                query[name] = {
                    key: coerce_value(value, properties.get(key)) for key, value in members.items()
                }
            continue

        if kind == "object" and explode:
            properties = schema.get("properties") or {}
            members = {key: grouped.pop(key)[0] for key in list(properties) if key in grouped}
            if members:
                query[name] = {
                    key: coerce_value(value, properties.get(key)) for key, value in members.items()
                }
            continue

        values = grouped.pop(name, None)
        if values is None:
            values = grouped.pop(f"{name}[]", None)
        if values is None:
            continue

        if kind == "array":
            if not explode and len(values) == 1 and isinstance(values[0], str):
                delimiter = _DELIMITERS.get(style, ",")
                values = values[0].split(delimiter) if values[0] != "" else []
            query[name] = coerce_value(list(values), schema)
        elif kind == "object" and isinstance(values[0], str):
            parts = values[0].split(",")
            members = dict(zip(parts[::2], parts[1::2]))
            properties = schema.get("properties") or {}
            query[name] = {
                key: coerce_value(value, properties.get(key)) for key, value in members.items()
            }
        else:
            query[name] = coerce_value(values[0] if len(values) == 1 else values, schema)

    for key, values in grouped.items():
        query[key] = values[0] if len(values) == 1 else values
    return query


def _media_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    return str(content_type).split(";", 1)[0].strip().lower() or None


def is_json_media_type(media_type: Optional[str]) -> bool:
    if not media_type:
        return False
    return media_type == "application/json" or media_type.endswith("+json")


def _parse_body(body: Any, content_type: Optional[str]) -> Tuple[Any, Optional[str]]:
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            if is_json_media_type(content_type):
                return body, "Body is not valid UTF-8"
            return body, None
    if not isinstance(body, str):
        return body, None
    if body == "":
        return None, None
    if content_type is None or is_json_media_type(content_type):
        try:
            return json.loads(body), None
        except ValueError as exc:
            if content_type is None:
                return body, None
            return body, f"Malformed JSON body: {exc}"
    return body, None
