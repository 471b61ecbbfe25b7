from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from lexer import APError


EVENTS = frozenset({
    "status_changed",
    "program_start",
    "program_end",
    "before_statement",
    "after_statement",
    "before_call",
    "after_call",
    "on_error",
})


class APHookError(APError):
    kind = "HookError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    extra: Optional[Dict[str, Any]]


@dataclass
class HookRegistry:
    """Observers attached to an interpreter.

    Event handlers receive the interpreter followed by event-specific
    arguments. Step rules run after every ``every_n``-th executed statement.
    """

    # event -> list[(priority, handler, name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str]] = field(default_factory=list)

    def on_event(
        self,
        event: str,
        handler: Optional[Callable[..., None]] = None,
        *,
        priority: int = 0,
        name: str = "",
    ):
        if event not in EVENTS:
            raise APHookError(f"Unknown event '{event}'")

        def register(fn: Callable[..., None]) -> Callable[..., None]:
            self._events.setdefault(event, []).append((priority, fn, name or getattr(fn, "__name__", "")))
            self._events[event].sort(key=lambda t: t[0], reverse=True)
            return fn

        if handler is None:
            return register
        return register(handler)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _name in self._events.get(event, []):
            handler(*args, **kwargs)

    def every_n_steps(
        self,
        every_n: int,
        handler: Optional[Callable[[Any, StepContext], None]] = None,
        *,
        name: str = "",
    ):
        if every_n <= 0:
            raise APHookError("every_n_steps must be >= 1")

        def register(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            self._step_rules.append((every_n, fn, name or getattr(fn, "__name__", "")))
            return fn

        if handler is None:
            return register
        return register(handler)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)

    def handlers(self, event: str) -> List[str]:
        return [name for _priority, _handler, name in self._events.get(event, [])]
