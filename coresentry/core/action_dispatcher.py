"""
Core Sentry - Action Dispatcher
===============================

Routes final decisions to executable behavior.

Each ActionKind has at most one custom handler. Without one, a built-in
fallback runs: CLEAN_CACHE triggers a garbage collection pass, other kinds
only log that nothing is configured, NONE does nothing. Handler failures
are logged and contained; they never reach the engine.
"""

from typing import Any, Awaitable, Callable, Optional, Union
import gc
import inspect

from coresentry.api.schemas import Decision
from coresentry.constants import ActionKind, Timing
from coresentry.utils.http_client import ServiceClient, ServiceClientConfig
from coresentry.utils.logging import get_logger

logger = get_logger(__name__)

ActionHandler = Callable[[Decision], Union[Any, Awaitable[Any]]]
MemoryReclaimer = Callable[[], Any]


class ActionHandlerError(Exception):
    """Raised by a handler that could not carry out its action."""
    pass


class WebhookActionHandler:
    """
    Handler that forwards the decision to an external executor.

    Used for handlers registered over the HTTP API, where no Python
    callable can be supplied.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = Timing.WEBHOOK_TIMEOUT_SECONDS,
        client: Optional[ServiceClient] = None
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client or ServiceClient(
            ServiceClientConfig(timeout_seconds=timeout_seconds)
        )

    async def __call__(self, decision: Decision) -> None:
        response = await self._client.post(
            self.url,
            data=decision.model_dump(mode="json")
        )
        if response.status_code not in (200, 201, 202, 204):
            raise ActionHandlerError(
                f"Executor at {self.url} returned status {response.status_code}"
            )

    async def close(self) -> None:
        await self._client.close()

    def __repr__(self) -> str:
        return f"WebhookActionHandler(url={self.url!r})"


class ActionDispatcher:
    """
    Registry of custom action handlers with built-in fallbacks.

    Handlers receive the final Decision and may be plain functions or
    coroutine functions. The registry is read at dispatch time, so
    registrations take effect for the next decision.

    Example:
        dispatcher = ActionDispatcher()
        dispatcher.register(ActionKind.SCALE_UP_WORKERS, pool.add_worker)
        await dispatcher.dispatch(decision)
    """

    def __init__(self, memory_reclaimer: Optional[MemoryReclaimer] = gc.collect):
        self._handlers: dict[ActionKind, ActionHandler] = {}
        self.memory_reclaimer = memory_reclaimer

    @staticmethod
    def _resolve(kind: Union[ActionKind, str]) -> ActionKind:
        """Accept ActionKind members or their names, including legacy aliases."""
        return kind if isinstance(kind, ActionKind) else ActionKind(kind)

    def register(self, kind: Union[ActionKind, str], handler: ActionHandler) -> None:
        """
        Register ``handler`` for ``kind``, replacing any previous handler.

        Raises:
            ValueError: Unknown kind, NONE, or a non-callable handler.
        """
        action = self._resolve(kind)
        if action == ActionKind.NONE:
            raise ValueError("NONE is always a no-op and cannot have a handler")
        if not callable(handler):
            raise ValueError(f"Handler for {action.value} is not callable")

        replaced = action in self._handlers
        self._handlers[action] = handler
        logger.info(
            f"Registered handler for {action.value}",
            extra={"action": action.value, "replaced": replaced}
        )

    def unregister(self, kind: Union[ActionKind, str]) -> bool:
        """Remove the handler for ``kind``. Returns False if none was registered."""
        action = self._resolve(kind)
        handler = self._handlers.pop(action, None)
        if handler is None:
            return False

        logger.info(f"Unregistered handler for {action.value}", extra={"action": action.value})
        return True

    def get_handler(self, kind: Union[ActionKind, str]) -> Optional[ActionHandler]:
        return self._handlers.get(self._resolve(kind))

    def list_registered(self) -> list[ActionKind]:
        """Action kinds with a custom handler, in declaration order."""
        return [kind for kind in ActionKind if kind in self._handlers]

    async def dispatch(self, decision: Decision) -> tuple[bool, str]:
        """
        Execute a final decision.

        Returns:
            Tuple of (success, message). Never raises for handler failures.
        """
        action = decision.action

        if action == ActionKind.NONE:
            return True, "No action required"

        handler = self._handlers.get(action)
        if handler is None:
            return self._fallback(decision)

        try:
            result = handler(decision)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Handler for {action.value} failed: {e}",
                extra={"action": action.value, "error": str(e)},
                exc_info=True
            )
            return False, f"Handler for {action.value} failed: {e}"

        logger.info(
            f"Handler executed for {action.value}",
            extra={"action": action.value, "intensity": decision.intensity}
        )
        return True, f"Handler executed for {action.value}"

    def _fallback(self, decision: Decision) -> tuple[bool, str]:
        """Built-in behavior for kinds without a custom handler."""
        action = decision.action

        if action == ActionKind.CLEAN_CACHE:
            if self.memory_reclaimer is None:
                logger.warning(
                    "Memory reclaim unavailable, no CLEAN_CACHE handler configured",
                    extra={"action": action.value}
                )
                return False, "Memory reclaim unavailable"

            try:
                collected = self.memory_reclaimer()
            except Exception as e:
                logger.error(
                    f"Memory reclaim failed: {e}",
                    extra={"action": action.value, "error": str(e)}
                )
                return False, f"Memory reclaim failed: {e}"

            logger.info(
                "Memory reclaim triggered",
                extra={"action": action.value, "collected": collected}
            )
            return True, "Memory reclaim triggered"

        logger.info(
            f"No handler configured for {action.value}",
            extra={"action": action.value}
        )
        return False, f"No handler configured for {action.value}"

    async def close(self) -> None:
        """Close handlers that hold resources (webhooks)."""
        for handler in self._handlers.values():
            close = getattr(handler, "close", None)
            if close is not None and inspect.iscoroutinefunction(close):
                await close()
