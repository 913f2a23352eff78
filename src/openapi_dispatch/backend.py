"""Request dispatch pipeline driven by an OpenAPI document."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .config import Settings, get_settings
from .mock import mock_response_for_operation
from .models import (
    Context,
    MockResponse,
    Operation,
    ParsedRequest,
    Request,
    SetMatchType,
    ValidationResult,
)
from .openapi import (
    DefinitionError,
    DocumentLoader,
    DocumentSource,
    OperationTable,
    dereference,
    validate_definition,
)
from .registry import (
    NOT_FOUND_KEYS,
    NOT_IMPLEMENTED_KEYS,
    POST_RESPONSE,
    VALIDATION_FAIL,
    Handler,
    HandlerRegistry,
)
from .router import OperationRouter
from .validation import OpenAPIValidator, SchemaCompiler

logger = logging.getLogger(__name__)

BoolPredicate = Callable[..., bool]


class DispatchError(Exception):
    """Raised when a request has nowhere to go and no fallback handler exists."""

    def __init__(
        self,
        status: int,
        message: str,
        operation_id: Optional[str] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.operation_id = operation_id
        self.method = method
        self.path = path


class OpenAPIBackend:
    """
    Routes, validates and dispatches requests described by an OpenAPI document.

    Request lifecycle:
    - parse the request and match it to an operation (404 fallback)
    - validate it when the validate option allows (validationFail fallback)
    - call the handler registered for the operationId (501 fallback)
    - pass the result through postResponseHandler when registered

    Handlers receive the request ``Context`` as first argument unless
    ``with_context`` is False; extra arguments given to ``handle_request``
    follow it.
    """

    def __init__(
        self,
        definition: DocumentSource,
        api_root: Optional[str] = None,
        strict: Optional[bool] = None,
        validate: Union[bool, BoolPredicate, None] = None,
        with_context: Optional[bool] = None,
        validator_options: Optional[Mapping[str, Any]] = None,
        handlers: Optional[Mapping[str, Optional[Handler]]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.input_document = definition
        self.api_root = api_root if api_root is not None else self.settings.dispatch_api_root
        self.strict = strict if strict is not None else self.settings.dispatch_strict
        self.with_context = (
            with_context if with_context is not None else self.settings.dispatch_with_context
        )
        self.validator_options: Dict[str, Any] = {
            **self.settings.validator_options(),
            **(validator_options or {}),
        }

        self.validate = validate if validate is not None else self.settings.dispatch_validate
        if callable(self.validate):
            self._should_validate: BoolPredicate = self.validate
        else:
            enabled = bool(self.validate)
            self._should_validate = lambda *_args, **_kwargs: enabled

        self.registry = HandlerRegistry(strict=self.strict)
        if handlers:
            self.registry.register(handlers)

        self.loader = DocumentLoader(
            cache_seconds=self.settings.dispatch_document_cache_seconds,
            timeout_seconds=self.settings.dispatch_document_timeout_seconds,
        )
        self.document: Dict[str, Any] = {}
        self.definition: Dict[str, Any] = {}
        self.table: Optional[OperationTable] = None
        self.router: Optional[OperationRouter] = None
        self.compiler: Optional[SchemaCompiler] = None
        self.validator: Optional[OpenAPIValidator] = None
        self.initialized = False
        self._init_task: Optional[asyncio.Future] = None

    async def init(self) -> "OpenAPIBackend":
        """Load, validate and index the document, then compile validators.

        Concurrent callers share one initialization; a failed attempt can be
        retried by calling ``init`` again.
        """
        if self.initialized:
            return self
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task and task.done():
                self._init_task = None
            raise
        return self

    async def _initialize(self) -> None:
        try:
            self.document = await self.loader.load(self.input_document)
        except DefinitionError as exc:
            self._contract_error(exc)
            self.document = {}

        try:
            validate_definition(self.document)
        except DefinitionError as exc:
            self._contract_error(exc)

        try:
            self.definition = dereference(self.document)
        except DefinitionError as exc:
            self._contract_error(exc)
            self.definition = copy.deepcopy(self.document)

        table = OperationTable(self.definition, strict=self.strict)
        compiler = SchemaCompiler(table, strict=self.strict, **self.validator_options)
        compiler.compile_all()
        router = OperationRouter(table, self.api_root)

        self.table = table
        self.router = router
        self.compiler = compiler
        self.validator = OpenAPIValidator(table, router, compiler)
        self.registry.attach(table)
        self.initialized = True
        logger.info(
            "Initialized %s: operations=%s handlers=%s api_root=%s",
            self.settings.service_name,
            len(table),
            len(self.registry),
            self.api_root,
        )

    def _contract_error(self, exc: DefinitionError) -> None:
        if self.strict:
            raise exc
        logger.warning("OpenAPI document problem: %s", exc)

    async def handle_request(self, req: Request, *args: Any, **kwargs: Any) -> Any:
        if not self.initialized:
            await self.init()

        context = Context(api=self)
        response = await self._dispatch(context, req, args, kwargs)

        post_response_handler = self.registry.get(POST_RESPONSE)
        if post_response_handler:
            context.response = response
            return await self._call(post_response_handler, context, args, kwargs)
        return response

    async def _dispatch(
        self, context: Context, req: Request, args: tuple, kwargs: Dict[str, Any]
    ) -> Any:
        router = self._require(self.router)
        context.request = router.parse_request(req)

        context.operation = router.match_operation(req)
        if context.operation is None or not context.operation.operation_id:
            handler = self.registry.first(*NOT_FOUND_KEYS)
            if handler is None:
                raise DispatchError(
                    404,
                    f"404-notFound: no route matches request {req.method.upper()} {req.path}",
                    method=req.method,
                    path=req.path,
                )
            logger.debug("No route for %s %s", req.method.upper(), req.path)
            return await self._call(handler, context, args, kwargs)

        operation = context.operation
        operation_id = operation.operation_id
        context.request = router.parse_request(req, operation.path)

        if self._should_validate(context, *args, **kwargs):
            context.validation = self._require(self.validator).validate_request(
                context.request, operation
            )
            if context.validation.errors:
                validation_fail_handler = self.registry.get(VALIDATION_FAIL)
                if validation_fail_handler:
                    return await self._call(validation_fail_handler, context, args, kwargs)
                logger.debug(
                    "Request for %s failed validation; no validationFail handler", operation_id
                )

        handler = self.registry.get(operation_id)
        if handler is None:
            not_implemented_handler = self.registry.first(*NOT_IMPLEMENTED_KEYS)
            if not_implemented_handler is None:
                raise DispatchError(
                    501,
                    f"501-notImplemented: {operation_id} no handler registered "
                    f"({req.method.upper()} {req.path})",
                    operation_id=operation_id,
                    method=req.method,
                    path=req.path,
                )
            return await self._call(not_implemented_handler, context, args, kwargs)

        logger.debug("Dispatching %s %s to %s", req.method.upper(), req.path, operation_id)
        return await self._call(handler, context, args, kwargs)

    async def _call(
        self, handler: Handler, context: Context, args: tuple, kwargs: Dict[str, Any]
    ) -> Any:
        if self.with_context:
            result = handler(context, *args, **kwargs)
        else:
            result = handler(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def register_handler(self, operation_id: str, handler: Handler) -> None:
        self.registry.register_handler(operation_id, handler)

    def register(self, handlers: Mapping[str, Optional[Handler]]) -> None:
        self.registry.register(handlers)

    def validate_definition(self) -> Mapping[str, Any]:
        return validate_definition(self.document)

    def get_operations(self) -> List[Operation]:
        return self._require(self.table).get_operations()

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        return self._require(self.table).get_operation(operation_id)

    def match_operation(self, req: Request) -> Optional[Operation]:
        return self._require(self.router).match_operation(req)

    def validate_request(
        self,
        req: Union[Request, ParsedRequest],
        operation: Union[Operation, str, None] = None,
    ) -> ValidationResult:
        return self._require(self.validator).validate_request(req, operation)

    def validate_response(
        self,
        res: Any,
        operation: Union[Operation, str],
        status_code: Optional[int] = None,
    ) -> ValidationResult:
        return self._require(self.validator).validate_response(res, operation, status_code)

    def validate_response_headers(
        self,
        headers: Mapping[str, Any],
        operation: Union[Operation, str],
        status_code: Optional[int] = None,
        set_match_type: Union[SetMatchType, str] = SetMatchType.ANY,
    ) -> ValidationResult:
        return self._require(self.validator).validate_response_headers(
            headers, operation, status_code=status_code, set_match_type=set_match_type
        )

    def mock_response_for_operation(
        self,
        operation_id: str,
        code: Optional[int] = None,
        media_type: Optional[str] = None,
        example: Optional[str] = None,
    ) -> MockResponse:
        operation = self.table.get_operation(operation_id) if self.table else None
        return mock_response_for_operation(
            operation, code=code, media_type=media_type, example=example
        )

    def _require(self, component: Any) -> Any:
        if component is None or not self.initialized:
            raise RuntimeError("OpenAPIBackend is not initialized; await init() first")
        return component
