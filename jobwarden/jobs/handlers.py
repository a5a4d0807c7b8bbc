"""Action handler registry and failure classification.

Handlers are plain async callables registered per ActionType when the
service is composed. A handler reports failure by raising; raise
ActionError to attach an error code or HTTP status.
"""

import logging
import socket
from collections.abc import Mapping
from typing import Any, Protocol

from jobwarden.errors import UnknownActionError
from jobwarden.jobs.models import ActionType
from jobwarden.notify import Notification, Notifier

logger = logging.getLogger(__name__)

RETRYABLE_ERROR_CODES = frozenset(
    {"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "STORAGE_TIMEOUT"}
)
RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class ActionHandler(Protocol):
    async def __call__(
        self, *, owner_id: str, parameters: dict[str, Any]
    ) -> Mapping[str, Any] | None: ...


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[ActionType, ActionHandler] = {}

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        if action_type in self._handlers:
            logger.warning(f"Replacing handler for {action_type}")
        self._handlers[action_type] = handler

    def resolve(self, action_type: ActionType) -> ActionHandler:
        """Return the handler for ``action_type``. Raises UnknownActionError."""
        try:
            return self._handlers[action_type]
        except KeyError:
            raise UnknownActionError(
                f"No handler registered for action type {action_type}"
            ) from None

    def __contains__(self, action_type: object) -> bool:
        return action_type in self._handlers


def _status_code(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def error_code(*, error: BaseException) -> str:
    """Return a stable code describing ``error``."""
    if isinstance(error, ConnectionRefusedError):
        return "ECONNREFUSED"
    if isinstance(error, TimeoutError):
        return "ETIMEDOUT"
    if isinstance(error, socket.gaierror):
        return "ENOTFOUND"
    code = getattr(error, "code", None)
    if code in RETRYABLE_ERROR_CODES:
        return code
    status = _status_code(error)
    if status is not None:
        return f"HTTP_{status}"
    if isinstance(code, str) and code:
        return code
    return type(error).__name__


def is_retryable_error(*, error: BaseException) -> bool:
    """Transient network, storage and HTTP failures are retryable. All else is fatal."""
    if isinstance(error, UnknownActionError):
        return False
    if isinstance(error, (ConnectionRefusedError, TimeoutError, socket.gaierror)):
        return True
    if getattr(error, "code", None) in RETRYABLE_ERROR_CODES:
        return True
    return _status_code(error) in RETRYABLE_HTTP_STATUSES


async def custom_function_handler(
    *, owner_id: str, parameters: dict[str, Any]
) -> dict[str, Any]:
    logger.info(f"Running custom function for {owner_id}: {parameters}")
    return {"echo": parameters}


def make_notification_handler(*, notifier: Notifier) -> ActionHandler:
    """Build a NOTIFICATION_SEND handler that delivers through ``notifier``."""

    async def notification_handler(
        *, owner_id: str, parameters: dict[str, Any]
    ) -> dict[str, Any]:
        notification: Notification = {
            "type": parameters.get("type", "scheduled"),
            "title": parameters.get("title", "Scheduled notification"),
            "message": parameters.get("message", ""),
        }
        await notifier.notify_owner(owner_id=owner_id, notification=notification)
        return {"delivered": True}

    return notification_handler


def default_handler_registry(*, notifier: Notifier) -> HandlerRegistry:
    """Registry with the bundled handlers. Hosts register their own on top."""
    registry = HandlerRegistry()
    registry.register(ActionType.CUSTOM_FUNCTION, custom_function_handler)
    registry.register(
        ActionType.NOTIFICATION_SEND, make_notification_handler(notifier=notifier)
    )
    return registry
