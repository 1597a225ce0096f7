"""Breakpoint actions and the context handed to breakpoint handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from .models import WorkflowExecution


@dataclass(frozen=True)
class Continue:
    """Run the step unchanged."""


@dataclass(frozen=True)
class Skip:
    """Mark the step completed as skipped without running its body."""


@dataclass(frozen=True)
class ModifyInput:
    """Run the step body with ``new_input`` instead of the original input."""

    new_input: Any


BreakpointAction = Union[Continue, Skip, ModifyInput]


@dataclass
class BreakpointContext:
    """What a handler sees while a step is paused."""

    step_name: str
    step_id: str
    input: Any
    execution: Optional[WorkflowExecution] = None

    def resume(self) -> Continue:
        return Continue()

    def skip(self) -> Skip:
        return Skip()

    def modify_input(self, new_input: Any) -> ModifyInput:
        return ModifyInput(new_input)


BreakpointHandler = Callable[
    [BreakpointContext], Union[Optional[BreakpointAction], Awaitable[Optional[BreakpointAction]]]
]
