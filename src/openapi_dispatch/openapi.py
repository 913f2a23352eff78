"""OpenAPI document loader and operation table."""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union
from urllib.parse import unquote

import httpx
import yaml
from openapi_spec_validator import OpenAPIV30SpecValidator, OpenAPIV31SpecValidator

from .models import HTTP_METHODS, Operation


logger = logging.getLogger(__name__)

DocumentSource = Union[Mapping[str, Any], str, Path]


class DefinitionError(Exception):
    pass


class DocumentLoader:
    """Loads an OpenAPI document from a mapping, a local file or a URL."""

    def __init__(self, cache_seconds: int = 3600, timeout_seconds: float = 30) -> None:
        self.cache_seconds = cache_seconds
        self.timeout_seconds = timeout_seconds
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    async def load(self, source: DocumentSource) -> Dict[str, Any]:
        if isinstance(source, Mapping):
            return copy.deepcopy(dict(source))
        location = str(source)
        if location.startswith(("http://", "https://")):
            return copy.deepcopy(await self._load_url(location))
        return self._load_file(Path(location))

    async def _load_url(self, url: str) -> Dict[str, Any]:
        cached = self._cache.get(url)
        if cached and time.time() - cached[0] < self.cache_seconds:
            return cached[1]

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(url)
            if response.status_code != 200:
                raise DefinitionError(
                    f"Failed to fetch OpenAPI document: {url} ({response.status_code})"
                )
            data = self._parse(response.text, url)

        self._cache[url] = (time.time(), data)
        return data

    def _load_file(self, path: Path) -> Dict[str, Any]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DefinitionError(f"Cannot read OpenAPI document {path}: {exc}") from exc
        return self._parse(text, str(path))

    def _parse(self, text: str, origin: str) -> Dict[str, Any]:
        # safe_load also reads JSON documents
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise DefinitionError(f"Cannot parse OpenAPI document {origin}: {exc}") from exc
        if not isinstance(data, dict):
            raise DefinitionError(f"Expected an OpenAPI mapping at {origin}")
        return data


def validate_definition(document: Mapping[str, Any]) -> Mapping[str, Any]:
    """Validate a parsed document against the schema of its declared OpenAPI version.

    Raises ``DefinitionError`` listing every violation found.
    """
    version = str(document.get("openapi") or "")
    if version.startswith("3.1"):
        validator_cls = OpenAPIV31SpecValidator
    elif version.startswith("3.0"):
        validator_cls = OpenAPIV30SpecValidator
    else:
        raise DefinitionError(f"Unsupported OpenAPI version: {version or 'missing'}")

    errors = [error.message for error in validator_cls(document).iter_errors()]
    if errors:
        details = "\n".join(f"  - {message}" for message in errors)
        raise DefinitionError(
            f"Document is not valid OpenAPI. {len(errors)} validation errors:\n{details}"
        )
    return document


def dereference(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``document`` with every local ``$ref`` inlined.

    Circular references are replaced by an unconstrained schema. Remote
    references raise ``DefinitionError``.
    """

    def resolve(node: Any, seen: FrozenSet[str]) -> Any:
        if isinstance(node, dict):
            ref = node.get("$ref")
            if isinstance(ref, str):
                if not ref.startswith("#"):
                    raise DefinitionError(f"Remote reference not supported: {ref}")
                if ref in seen:
                    logger.warning("Circular reference replaced with an empty schema: %s", ref)
                    return {}
                return resolve(_resolve_pointer(document, ref[1:]), seen | {ref})
            return {key: resolve(value, seen) for key, value in node.items()}
        if isinstance(node, list):
            return [resolve(item, seen) for item in node]
        return node

    return resolve(dict(document), frozenset())


def _resolve_pointer(document: Any, pointer: str) -> Any:
    if pointer in ("", "/"):
        return document
    if not pointer.startswith("/"):
        raise DefinitionError(f"Unsupported JSON pointer: #{pointer}")

    current = document
    for raw_token in pointer[1:].split("/"):
        token = unquote(raw_token).replace("~1", "/").replace("~0", "~")
        if isinstance(current, list):
            try:
                current = current[int(token)]
            except (ValueError, IndexError) as exc:
                raise DefinitionError(f"Unresolvable reference: #{pointer}") from exc
        elif isinstance(current, dict) and token in current:
            current = current[token]
        else:
            raise DefinitionError(f"Unresolvable reference: #{pointer}")
    return current


def find_default_status(responses: Mapping[str, Any]) -> Tuple[int, Optional[str]]:
    """Pick the status an operation answers with by default.

    Lowest 2xx first, then ``default`` (as 200), then the first declared
    status. Returns the numeric status and the matching responses key.
    """
    success = sorted(
        (int(key), key)
        for key in map(str, responses)
        if key.isdigit() and key.startswith("2")
    )
    if success:
        return success[0]
    if "default" in responses:
        return 200, "default"
    for key in responses:
        key = str(key)
        return (int(key) if key.isdigit() else 200), key
    return 200, None


class OperationTable:
    """Flattened, queryable index of every operation in a document."""

    def __init__(self, document: Mapping[str, Any], strict: bool = False) -> None:
        self.document = document
        self.strict = strict
        self._operations: List[Operation] = []
        self._by_id: Dict[str, Operation] = {}
        self._by_route: Dict[Tuple[str, str], Operation] = {}
        self._build()

    def _build(self) -> None:
        paths = self.document.get("paths") or {}

        for path, path_item in paths.items():
            path_item = path_item or {}
            shared_parameters = path_item.get("parameters") or []
            for method, definition in path_item.items():
                if method.lower() not in HTTP_METHODS or not isinstance(definition, dict):
                    continue
                operation = Operation(
                    path=path,
                    method=method.lower(),
                    operation_id=definition.get("operationId"),
                    parameters=self._merge_parameters(
                        shared_parameters, definition.get("parameters") or []
                    ),
                    request_body=definition.get("requestBody"),
                    # YAML reads unquoted status codes as integers
                    responses={
                        str(status): response
                        for status, response in (definition.get("responses") or {}).items()
                    },
                    summary=definition.get("summary") or "",
                    description=definition.get("description") or "",
                    tags=tuple(definition.get("tags") or ()),
                )
                self._add(operation)

    def _add(self, operation: Operation) -> None:
        operation_id = operation.operation_id
        if operation_id and operation_id in self._by_id:
            message = f"Duplicate operationId {operation_id}"
            if self.strict:
                raise DefinitionError(message)
            logger.warning("%s; keeping the first declaration", message)
            operation = replace(operation, operation_id=None)
        elif operation_id:
            self._by_id[operation_id] = operation

        self._operations.append(operation)
        self._by_route[(operation.method, operation.path)] = operation

    def _merge_parameters(
        self, shared: List[Dict[str, Any]], own: List[Dict[str, Any]]
    ) -> Tuple[Dict[str, Any], ...]:
        merged: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for parameter in [*shared, *own]:
            name = parameter.get("name")
            if not name:
                continue
            merged[(name, parameter.get("in", "query"))] = parameter
        return tuple(merged.values())

    def get_operations(self) -> List[Operation]:
        return list(self._operations)

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        return self._by_id.get(operation_id)

    def find(self, method: str, path: str) -> Optional[Operation]:
        return self._by_route.get((method.lower(), path))

    def paths(self) -> List[str]:
        return list(dict.fromkeys(op.path for op in self._operations))

    def __len__(self) -> int:
        return len(self._operations)
