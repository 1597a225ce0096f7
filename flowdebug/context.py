"""Per-execution instrumentation handle passed to workflow functions."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from .breakpoints import (
    BreakpointAction,
    BreakpointContext,
    BreakpointHandler,
    Continue,
    ModifyInput,
    Skip,
)
from .cache import ResponseCache
from .database import DatabaseClient, EnvironmentSwitch
from .ledger import ExecutionLedger
from .models import QueryResult, TokenUsage

logger = logging.getLogger(__name__)

Accounting = Callable[[Any], Tuple[Optional[TokenUsage], Optional[float]]]


def _takes_input(fn: Callable[..., Any]) -> bool:
    """Whether ``fn`` accepts a positional argument for the step input."""
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return True
    return any(
        p.kind
        in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.VAR_POSITIONAL,
        )
        for p in params
    )


def _rows_affected(result: Any) -> Optional[int]:
    if isinstance(result, QueryResult):
        return result.count
    if isinstance(result, dict):
        if "count" in result:
            return result["count"]
        if isinstance(result.get("data"), list):
            return len(result["data"])
    if isinstance(result, list):
        return len(result)
    return None


class ExecutionContext:
    """Instrumentation API bound to a single execution.

    Every call records against ``execution_id``; nothing is looked up from
    process-wide state, so concurrent executions never share steps.
    """

    def __init__(
        self,
        execution_id: str,
        workflow_name: str,
        ledger: ExecutionLedger,
        cache: ResponseCache,
        environment: Optional[EnvironmentSwitch] = None,
        breakpoints: Iterable[str] = (),
        breakpoint_handler: Optional[BreakpointHandler] = None,
    ) -> None:
        self.execution_id = execution_id
        self.workflow_name = workflow_name
        self.ledger = ledger
        self.cache = cache
        self.environment = environment
        self.breakpoints = set(breakpoints)
        self.breakpoint_handler = breakpoint_handler
        self._stack: List[Tuple[str, str]] = []

    @property
    def current_step_id(self) -> Optional[str]:
        """Id of the innermost running step."""
        return self._stack[-1][0] if self._stack else None

    def _step_id_for(self, step_name: str) -> Optional[str]:
        for step_id, name in reversed(self._stack):
            if name == step_name:
                return step_id
        return self.current_step_id

    @property
    def db(self) -> DatabaseClient:
        """Active backing-store client; every call is recorded on this execution."""
        if self.environment is None:
            raise RuntimeError("No database environment configured")
        return self.environment.get_client(tracker=self)

    # ------------------------------------------------------------------
    # Steps
    async def execute_step(
        self,
        name: str,
        step_type: str,
        fn: Callable[..., Awaitable[Any]],
        input: Any = None,
    ) -> Any:
        """Run ``fn`` as a tracked step and return its result.

        ``fn`` receives the step input (possibly ``None``) as its only
        argument when its signature takes a positional parameter, otherwise
        it is called with no arguments and ``input`` is only recorded. A
        breakpoint on ``name`` pauses before the body runs.
        """
        step_id = self.ledger.add_step(self.execution_id, name, step_type, input)
        self.ledger.start_step(step_id)
        entry = (step_id, name)
        self._stack.append(entry)
        try:
            if name in self.breakpoints:
                action = await self._pause(name, step_id, input)
                if isinstance(action, Skip):
                    logger.info(f"Skipping step at breakpoint: {name}")
                    self.ledger.complete_step(step_id, output={"skipped": True})
                    return None
                if isinstance(action, ModifyInput):
                    input = action.new_input
                    self.ledger.update_step_input(step_id, input)

            result = await (fn(input) if _takes_input(fn) else fn())
        except (Exception, asyncio.CancelledError) as e:
            self.ledger.complete_step(step_id, error=e)
            raise
        finally:
            self._stack.remove(entry)

        self.ledger.complete_step(step_id, output=result)
        return result

    async def _pause(self, name: str, step_id: str, input: Any) -> BreakpointAction:
        if self.breakpoint_handler is None:
            return Continue()

        logger.info(f"Breakpoint hit: {name} (step_id={step_id})")
        self.ledger.pause_workflow(self.execution_id, step_id)
        context = BreakpointContext(
            step_name=name,
            step_id=step_id,
            input=input,
            execution=self.ledger.export_execution(self.execution_id),
        )
        try:
            action = self.breakpoint_handler(context)
            if inspect.isawaitable(action):
                action = await action
        except Exception:
            logger.exception(f"Breakpoint handler failed at step {name}, continuing")
            action = None
        finally:
            self.ledger.resume_workflow(self.execution_id)

        if action is None:
            return Continue()
        if not isinstance(action, (Continue, Skip, ModifyInput)):
            logger.warning(f"Unknown breakpoint action {action!r} at step {name}, continuing")
            return Continue()
        return action

    # ------------------------------------------------------------------
    # LLM calls
    async def execute_llm_call(
        self,
        step_name: str,
        prompt: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        provider: str = "gemini",
        model: str = "gemini-pro",
        temperature: Optional[float] = 0.7,
        force_refresh: bool = False,
        accounting: Optional[Accounting] = None,
    ) -> Any:
        """Return the LLM response for ``prompt``, served from cache when possible.

        ``accounting`` maps a fresh response to ``(tokens, cost)``.
        """
        key = self.cache.key_for(self.workflow_name, step_name, prompt, model, temperature)

        if not force_refresh:
            seeded = self.cache.get_prepopulated(self.workflow_name, step_name)
            if seeded is not None:
                self._record_cached_call(step_name, prompt, seeded, provider, model, temperature, key)
                return seeded

        async def call() -> Any:
            call_id = self.ledger.track_llm_call(
                self.execution_id,
                self._step_id_for(step_name),
                provider,
                model,
                prompt,
                temperature,
                step_name=step_name,
            )
            try:
                response = await fn()
            except Exception as e:
                self.ledger.complete_llm_call(call_id, "", error=str(e), cache_key=key)
                raise
            tokens, cost = accounting(response) if accounting else (None, None)
            self.ledger.complete_llm_call(
                call_id,
                json.dumps(response, default=str),
                tokens=tokens,
                cost=cost,
                cache_key=key,
            )
            return response

        return await self.cache.wrap_llm_call(
            self.workflow_name,
            step_name,
            prompt,
            call,
            model=model,
            temperature=temperature,
            force_refresh=force_refresh,
            metadata={"provider": provider},
            on_hit=lambda cached: self._record_cached_call(
                step_name, prompt, cached, provider, model, temperature, key
            ),
        )

    def _record_cached_call(
        self,
        step_name: str,
        prompt: str,
        response: Any,
        provider: str,
        model: str,
        temperature: Optional[float],
        key: str,
    ) -> None:
        call_id = self.ledger.track_llm_call(
            self.execution_id,
            self._step_id_for(step_name),
            provider,
            model,
            prompt,
            temperature,
            step_name=step_name,
        )
        self.ledger.complete_llm_call(
            call_id,
            json.dumps(response, default=str),
            cost=0,
            cache_hit=True,
            cache_key=key,
        )

    # ------------------------------------------------------------------
    # Database operations
    async def execute_database_operation(
        self,
        step_name: str,
        operation: str,
        table: str,
        query: Any,
        fn: Callable[[], Awaitable[Any]],
        parameters: Any = None,
    ) -> Any:
        op_id = self.ledger.track_database_operation(
            self.execution_id,
            self._step_id_for(step_name),
            operation,
            table,
            query,
            parameters,
        )
        try:
            result = await fn()
        except Exception as e:
            self.ledger.complete_database_operation(op_id, error=str(e))
            raise
        data = result.data if isinstance(result, QueryResult) else result
        self.ledger.complete_database_operation(
            op_id, result=data, rows_affected=_rows_affected(result)
        )
        return result

    # OperationTracker, used by the instrumented client behind ``db``
    def begin_database_operation(
        self, operation: str, table: str, query: Any, parameters: Any = None
    ) -> str:
        return self.ledger.track_database_operation(
            self.execution_id, self.current_step_id, operation, table, query, parameters
        )

    def finish_database_operation(
        self,
        op_id: str,
        result: Any = None,
        rows_affected: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        self.ledger.complete_database_operation(
            op_id, result=result, rows_affected=rows_affected, error=error
        )
