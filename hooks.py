"""Observers that can watch a running program.

Event handlers are called with the interpreter first, then event-specific
arguments:

- ``program_start(interpreter)``
- ``before_statement(interpreter, statement)`` / ``after_statement(...)``
- ``after_call(interpreter, name, arguments, location)``
- ``on_error(interpreter, error)``
- ``program_end(interpreter)``

Step rules run after every N-th logged step with ``(interpreter, step)``.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Tuple

from evaluator import LogoRuntimeError
from lexer import LogoError


class LogoHookError(LogoError):
    """Raised for an invalid hook registration."""


EVENTS = (
    "program_start",
    "before_statement",
    "after_statement",
    "after_call",
    "on_error",
    "program_end",
)

Handler = Callable[..., None]
StepHandler = Callable[[Any, Any], None]


def _guarded(label: str, handler: Handler, *args: Any) -> None:
    try:
        handler(*args)
    except (LogoError, RecursionError):
        raise
    except Exception as exc:
        raise LogoRuntimeError(f"{label} failed: {exc}", rewrite_rule="EXT") from exc


class HookRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Tuple[int, Handler]]] = {event: [] for event in EVENTS}
        self._step_rules: List[Tuple[int, StepHandler]] = []

    def on(self, event: str, handler: Handler, *, priority: int = 0) -> None:
        """Call ``handler`` on ``event``; higher priorities run first."""
        handlers = self._handlers.get(event)
        if handlers is None:
            raise LogoHookError(f"Unknown event '{event}'")
        handlers.append((priority, handler))
        # Stable: equal priorities keep registration order.
        handlers.sort(key=lambda pair: -pair[0])

    def every(self, steps: int, handler: StepHandler) -> None:
        if steps <= 0:
            raise LogoHookError("Step rules need a period of at least 1")
        self._step_rules.append((steps, handler))

    def emit(self, event: str, *args: Any) -> None:
        for _priority, handler in self._handlers[event]:
            _guarded(f"Hook for '{event}'", handler, *args)

    def after_step(self, interpreter: Any, step: Any) -> None:
        for period, handler in self._step_rules:
            if step.index % period == 0:
                _guarded("Step rule", handler, interpreter, step)
