"""CLI entry point for inspecting an OpenAPI document with the dispatcher."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import List, Optional

from .backend import OpenAPIBackend
from .config import get_settings
from .logging import configure_logging
from .models import Request
from .openapi import DefinitionError, DocumentLoader, validate_definition


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openapi-dispatch",
        description="Route, validate and mock requests against an OpenAPI document",
    )
    parser.add_argument("--api-root", default=None, help="Root path all routes are relative to")
    parser.add_argument("--log-level", default=None, help="Logging level (default: from settings)")
    commands = parser.add_subparsers(dest="command", required=True)

    routes = commands.add_parser("routes", help="List the operations of a document")
    routes.add_argument("definition", help="Path or URL of the OpenAPI document")

    match = commands.add_parser("match", help="Match a request to an operation")
    match.add_argument("definition", help="Path or URL of the OpenAPI document")
    match.add_argument("method", help="HTTP method")
    match.add_argument("path", help="Request path, optionally with a query string")

    mock = commands.add_parser("mock", help="Print a mock response for an operation")
    mock.add_argument("definition", help="Path or URL of the OpenAPI document")
    mock.add_argument("operation_id", help="operationId to mock")
    mock.add_argument("--code", type=int, default=None, help="Response status to mock")
    mock.add_argument("--media-type", default=None, help="Response media type to mock")
    mock.add_argument("--example", default=None, help="Named example to use")

    validate = commands.add_parser("validate", help="Validate a document against the OpenAPI schema")
    validate.add_argument("definition", help="Path or URL of the OpenAPI document")

    return parser


async def _run(args: argparse.Namespace) -> int:
    if args.command == "validate":
        loader = DocumentLoader()
        try:
            validate_definition(await loader.load(args.definition))
        except DefinitionError as exc:
            print(exc)
            return 1
        print("OpenAPI document is valid.")
        return 0

    api = OpenAPIBackend(definition=args.definition, api_root=args.api_root)
    await api.init()

    if args.command == "routes":
        for operation in api.get_operations():
            print(f"{operation.method.upper():7} {operation.path} {operation.operation_id or '-'}")
        return 0

    if args.command == "match":
        request = Request(method=args.method, path=args.path)
        operation = api.match_operation(request)
        if not operation:
            allowed = api.router.match(request).allowed_methods
            if allowed:
                print(f"Method not allowed. Allowed: {', '.join(m.upper() for m in allowed)}")
            else:
                print("No matching operation.")
            return 1
        parsed = api.router.parse_request(request, operation.path)
        print(
            json.dumps(
                {
                    "operationId": operation.operation_id,
                    "method": operation.method,
                    "path": operation.path,
                    "params": parsed.params,
                    "query": parsed.query,
                },
                indent=2,
            )
        )
        return 0

    result = api.mock_response_for_operation(
        args.operation_id, code=args.code, media_type=args.media_type, example=args.example
    )
    print(json.dumps({"status": result.status, "mock": result.mock}, indent=2, default=str))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(args.log_level or get_settings().dispatch_log_level)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
