"""
Lifecycle hooks.

Callbacks registered per event run synchronously in registration order.
Each callback is registered with an explicit shape: CONTEXT callbacks get
only the first argument passed to ``run`` (the context record, or the
exception for ``error``), VARIADIC callbacks get all of them.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable

from tubeworker.observability.logging import exception_message
from tubeworker.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class HookEvent(StrEnum):
    """Points in the job lifecycle that accept callbacks."""

    BEFORE = "before"
    AFTER = "after"
    ERROR = "error"
    AFTER_FORK = "after_fork"


class HookShape(StrEnum):
    """How a callback wants to be invoked."""

    CONTEXT = "context"
    VARIADIC = "variadic"


@dataclass(frozen=True)
class Hook:
    """A registered callback and its invocation shape."""

    callback: Callable[..., Any]
    shape: HookShape = HookShape.CONTEXT

    def __call__(self, *arguments: Any) -> Any:
        if self.shape is HookShape.VARIADIC:
            return self.callback(*arguments)
        return self.callback(arguments[0] if arguments else None)


class HookTable:
    """Ordered callbacks per lifecycle event."""

    def __init__(self) -> None:
        self._hooks: defaultdict[HookEvent, list[Hook]] = defaultdict(list)

    def add(
        self,
        event: HookEvent | str,
        callback: Callable[..., Any],
        shape: HookShape = HookShape.CONTEXT,
    ) -> Callable[..., Any]:
        """
        Append ``callback`` to the hooks for ``event``.

        Returns:
            The callback, so this can back a decorator.
        """
        self._hooks[HookEvent(event)].append(Hook(callback, HookShape(shape)))
        return callback

    def hooks(self, event: HookEvent | str) -> list[Hook]:
        """Registered hooks for ``event``, in order."""
        return list(self._hooks.get(HookEvent(event), []))

    def run(self, event: HookEvent | str, *arguments: Any) -> None:
        """
        Invoke every hook for ``event`` in order.

        Errors propagate and stop the remaining hooks.
        """
        for hook in self.hooks(event):
            hook(*arguments)

    def run_safely(self, event: HookEvent | str, *arguments: Any) -> bool:
        """
        Invoke the hooks for ``event``, logging instead of raising on error.

        Returns:
            True if every hook ran without raising.
        """
        try:
            self.run(event, *arguments)
        except Exception as e:
            logger.error(
                f"An error occurred while running the {HookEvent(event)} hook: "
                f"{exception_message(e)}",
                extra={"hook_event": str(event)}
            )
            get_metrics().record_hook_error(str(event))
            return False
        return True

    def clear(self) -> None:
        """Forget every registered hook."""
        self._hooks.clear()
