"""Job handler registry, keyed by payload tag."""

from collections.abc import Callable
from typing import Optional


class JobRegistry:
    """Registry for job handlers."""

    def __init__(self):
        self._handlers: dict[str, Callable] = {}

    def handler(self, tag: str):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler("forgot_password")
            async def send_reset(ctx, payload):
                ...
        """

        def decorator(func: Callable):
            self._handlers[tag] = func
            return func

        return decorator

    def register(self, tag: str, func: Callable) -> None:
        """Register a handler without the decorator form."""
        self._handlers[tag] = func

    def get_handler(self, tag: Optional[str]) -> Optional[Callable]:
        """Get a handler by payload tag."""
        if tag is None:
            return None
        return self._handlers.get(tag)

    def all_handlers(self) -> dict[str, Callable]:
        """Get all registered handlers."""
        return self._handlers.copy()
