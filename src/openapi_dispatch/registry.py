"""Handler registry for the dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from .openapi import OperationTable


logger = logging.getLogger(__name__)

Handler = Callable[..., Any]

NOT_FOUND_KEYS = ("404", "notFound")
NOT_IMPLEMENTED_KEYS = ("501", "notImplemented")
VALIDATION_FAIL = "validationFail"
POST_RESPONSE = "postResponseHandler"
RESERVED_HANDLERS = frozenset(
    [*NOT_FOUND_KEYS, *NOT_IMPLEMENTED_KEYS, VALIDATION_FAIL, POST_RESPONSE]
)


class RegistrationError(Exception):
    pass


class HandlerRegistry:
    """Maps operationIds (and reserved fallback keys) to handlers.

    Until an operation table is attached, any operationId is accepted; it is
    checked once the table exists.
    """

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict
        self.table: Optional[OperationTable] = None
        self._handlers: Dict[str, Handler] = {}

    def attach(self, table: OperationTable) -> None:
        """Check handlers registered before the table existed.

        In strict mode an unknown operationId stays registered, so every
        later ``attach`` fails again until it is removed.
        """
        self.table = table
        for operation_id in self.unknown_operation_ids():
            self._reject_unknown(operation_id)

    def unregister(self, operation_id: str) -> None:
        self._handlers.pop(operation_id, None)

    def register_handler(self, operation_id: str, handler: Handler) -> None:
        if not callable(handler):
            raise RegistrationError(f"Handler for {operation_id} should be callable")

        if self.table is not None and not self._is_known(operation_id):
            self._reject_unknown(operation_id)

        self._handlers[operation_id] = handler
        logger.debug("Registered handler: %s", operation_id)

    def register(self, handlers: Mapping[str, Optional[Handler]]) -> None:
        for operation_id, handler in handlers.items():
            if handler is not None:
                self.register_handler(operation_id, handler)

    def get(self, operation_id: str) -> Optional[Handler]:
        return self._handlers.get(operation_id)

    def first(self, *keys: str) -> Optional[Handler]:
        for key in keys:
            handler = self._handlers.get(key)
            if handler is not None:
                return handler
        return None

    def unknown_operation_ids(self) -> List[str]:
        return [key for key in self._handlers if not self._is_known(key)]

    def _is_known(self, operation_id: str) -> bool:
        if operation_id in RESERVED_HANDLERS:
            return True
        return self.table is not None and self.table.get_operation(operation_id) is not None

    def _reject_unknown(self, operation_id: str) -> None:
        message = f"Unknown operationId {operation_id}"
        if self.strict:
            raise RegistrationError(f"{message}. Refusing to register handler")
        logger.warning(message)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)
