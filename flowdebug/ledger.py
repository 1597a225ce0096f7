"""Execution ledger: in-memory record of workflow runs and their steps."""

from __future__ import annotations

import json
import logging
import traceback
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import DebugConfig
from .models import (
    Bottleneck,
    CostBreakdown,
    DatabaseOperation,
    DebugEvent,
    EventListener,
    LLMCall,
    PerformanceMetrics,
    StepError,
    TokenUsage,
    WorkflowExecution,
    WorkflowStep,
    elapsed_ms,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...[truncated]"


class ExecutionLedger:
    """Append-only record of executions, steps, LLM calls and DB operations.

    Every method is a no-op when the ledger is disabled so instrumentation
    calls can stay in production code paths. Executions are addressed
    explicitly by id; there is no implicit "current" execution, so
    concurrent runs never share step attribution.
    """

    def __init__(
        self,
        config: Optional[DebugConfig] = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.config = config or DebugConfig()
        self._enabled = self.config.enabled
        self._clock = clock
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, Tuple[WorkflowExecution, WorkflowStep]] = {}
        self._calls: Dict[str, Tuple[WorkflowExecution, LLMCall]] = {}
        self._operations: Dict[str, Tuple[WorkflowExecution, DatabaseOperation]] = {}
        self._listeners: List[EventListener] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    # ------------------------------------------------------------------
    # Workflow lifecycle
    def start_workflow(
        self,
        name: str,
        trigger: str = "user",
        correlation_id: Optional[str] = None,
        parent_execution_id: Optional[str] = None,
    ) -> str:
        """Create a running execution and return its id ("" when disabled)."""
        if not self._enabled:
            return ""

        execution = WorkflowExecution(
            name=name,
            correlation_id=correlation_id or new_id(),
            start_time=self._clock(),
            trigger=trigger,
            environment=self.config.mode,
            parent_execution_id=parent_execution_id,
        )
        self._executions[execution.id] = execution
        self._emit(
            "workflow_started",
            execution.id,
            data={"name": name, "trigger": trigger},
            timestamp=execution.start_time,
        )
        logger.info(f"Started workflow: {name} (execution_id={execution.id})")
        return execution.id

    def pause_workflow(self, execution_id: str, step_id: Optional[str] = None) -> None:
        execution = self._executions.get(execution_id)
        if not self._enabled or execution is None or execution.status != "running":
            return
        execution.status = "paused"
        self._emit("workflow_paused", execution_id, step_id=step_id)
        logger.info(f"Paused workflow: {execution.name} (execution_id={execution_id})")

    def resume_workflow(self, execution_id: str) -> None:
        execution = self._executions.get(execution_id)
        if not self._enabled or execution is None or execution.status != "paused":
            return
        execution.status = "running"
        self._emit("workflow_resumed", execution_id)

    def complete_workflow(
        self, execution_id: str, output: Any = None, error: Optional[BaseException] = None
    ) -> None:
        """Finalize an execution: end time, duration, cost and status."""
        execution = self._executions.get(execution_id)
        if not self._enabled or execution is None:
            return
        if execution.end_time is not None:
            logger.warning(f"Workflow {execution.name} already completed")
            return

        now = self._clock()
        execution.end_time = now
        execution.status = "failed" if error is not None else "completed"
        execution.total_duration = elapsed_ms(execution.start_time, now)
        execution.total_cost = sum(call.cost or 0 for call in execution.llm_calls)
        execution.output = self._sanitize(output)
        if error is not None:
            execution.error = self._error_detail(error)

        self._emit(
            "workflow_failed" if error is not None else "workflow_completed",
            execution_id,
            data={
                "duration": execution.total_duration,
                "total_cost": execution.total_cost,
                "error": str(error) if error is not None else None,
            },
            timestamp=now,
        )
        log = logger.error if error is not None else logger.info
        log(
            f"Workflow {execution.status}: {execution.name} "
            f"(execution_id={execution_id}, duration={execution.total_duration:.1f}ms, "
            f"steps={len(execution.steps)}, llm_calls={len(execution.llm_calls)}, "
            f"db_operations={len(execution.database_operations)}, "
            f"total_cost={execution.total_cost})"
        )

    def active_executions(self) -> List[WorkflowExecution]:
        """Executions that have not been finalized yet."""
        return [e for e in self._executions.values() if e.end_time is None]

    # ------------------------------------------------------------------
    # Steps
    def add_step(
        self, execution_id: str, name: str, step_type: str, input: Any = None
    ) -> str:
        execution = self._executions.get(execution_id)
        if not self._enabled or execution is None:
            return ""

        step = WorkflowStep(
            name=name,
            type=step_type,
            timestamp=self._clock(),
            input=self._sanitize(input),
            metadata={
                "correlation_id": execution.correlation_id,
                "workflow_name": execution.name,
            },
        )
        execution.steps.append(step)
        self._steps[step.id] = (execution, step)
        self._emit(
            "step_added",
            execution_id,
            step_id=step.id,
            data={"name": name, "type": step_type, "input": step.input},
            timestamp=step.timestamp,
        )
        logger.debug(f"Added step: {name} (step_id={step.id}, type={step_type})")
        return step.id

    def start_step(self, step_id: str) -> None:
        found = self._steps.get(step_id)
        if not self._enabled or found is None:
            return
        execution, step = found
        if step.status != "pending":
            logger.warning(f"Cannot start step {step.name}: status is {step.status}")
            return
        step.status = "running"
        step.timestamp = self._clock()
        self._emit(
            "step_started",
            execution.id,
            step_id=step_id,
            data={"name": step.name},
            timestamp=step.timestamp,
        )
        logger.debug(f"Started step: {step.name} (step_id={step_id})")

    def update_step_input(self, step_id: str, input: Any) -> None:
        found = self._steps.get(step_id)
        if not self._enabled or found is None:
            return
        found[1].input = self._sanitize(input)

    def complete_step(
        self, step_id: str, output: Any = None, error: Optional[BaseException] = None
    ) -> None:
        found = self._steps.get(step_id)
        if not self._enabled or found is None:
            return
        execution, step = found
        if step.status != "running":
            logger.warning(f"Cannot complete step {step.name}: status is {step.status}")
            return

        now = self._clock()
        step.status = "failed" if error is not None else "completed"
        step.output = self._sanitize(output)
        step.completed_at = now
        step.duration = max(0.0, elapsed_ms(step.timestamp, now))
        if error is not None:
            step.error = self._error_detail(error)

        self._emit(
            "step_failed" if error is not None else "step_completed",
            execution.id,
            step_id=step_id,
            data={
                "output": step.output,
                "error": step.error.message if step.error else None,
                "duration": step.duration,
            },
            timestamp=now,
        )
        if error is not None:
            logger.error(
                f"Failed step: {step.name} (step_id={step_id}, "
                f"duration={step.duration:.1f}ms, error={step.error.message})"
            )
        else:
            logger.debug(
                f"Completed step: {step.name} (step_id={step_id}, duration={step.duration:.1f}ms)"
            )

    # ------------------------------------------------------------------
    # LLM calls
    def track_llm_call(
        self,
        execution_id: str,
        step_id: Optional[str],
        provider: str,
        model: str,
        prompt: str,
        temperature: Optional[float] = None,
        step_name: Optional[str] = None,
    ) -> str:
        execution = self._executions.get(execution_id)
        if not self._enabled or execution is None:
            return ""

        call = LLMCall(
            step_id=step_id or None,
            step_name=step_name,
            provider=provider,
            model=model,
            temperature=temperature,
            prompt=self._sanitize(prompt),
            timestamp=self._clock(),
        )
        execution.llm_calls.append(call)
        self._calls[call.id] = (execution, call)
        self._emit(
            "llm_call",
            execution_id,
            step_id=step_id,
            data={"provider": provider, "model": model, "prompt_length": len(prompt)},
            timestamp=call.timestamp,
        )
        logger.debug(
            f"LLM call started: {provider}/{model} (llm_call_id={call.id}, "
            f"prompt_length={len(prompt)})"
        )
        return call.id

    def complete_llm_call(
        self,
        call_id: str,
        response: Any,
        tokens: Optional[TokenUsage] = None,
        cost: Optional[float] = None,
        cache_hit: bool = False,
        error: Optional[str] = None,
        cache_key: Optional[str] = None,
    ) -> None:
        found = self._calls.get(call_id)
        if not self._enabled or found is None:
            return
        execution, call = found

        now = self._clock()
        call.response = self._sanitize(response)
        call.latency = max(0.0, elapsed_ms(call.timestamp, now))
        call.tokens_used = tokens
        call.cost = cost
        call.cache_hit = cache_hit
        call.cache_key = cache_key
        call.error = error

        threshold = self.config.performance.slow_llm_threshold
        if call.latency > threshold:
            logger.warning(
                f"Slow LLM call detected: {call.provider}/{call.model} "
                f"(latency={call.latency:.1f}ms, threshold={threshold}ms)"
            )
        self._emit(
            "llm_call_completed",
            execution.id,
            step_id=call.step_id,
            data={"latency": call.latency, "cache_hit": cache_hit, "cost": cost},
            timestamp=now,
        )
        logger.debug(
            f"LLM call completed: {call.provider}/{call.model} (llm_call_id={call_id}, "
            f"latency={call.latency:.1f}ms, cache_hit={cache_hit})"
        )

    # ------------------------------------------------------------------
    # Database operations
    def track_database_operation(
        self,
        execution_id: str,
        step_id: Optional[str],
        operation: str,
        table: str,
        query: Any,
        parameters: Any = None,
    ) -> str:
        execution = self._executions.get(execution_id)
        if not self._enabled or execution is None:
            return ""

        op = DatabaseOperation(
            step_id=step_id or None,
            operation=operation,
            table=table,
            query=self._sanitize(query),
            parameters=self._sanitize(parameters),
            timestamp=self._clock(),
        )
        execution.database_operations.append(op)
        self._operations[op.id] = (execution, op)
        self._emit(
            "db_operation",
            execution_id,
            step_id=step_id,
            data={"operation": operation, "table": table, "query": op.query},
            timestamp=op.timestamp,
        )
        logger.debug(f"Database operation: {operation} on {table} (db_op_id={op.id})")
        return op.id

    def complete_database_operation(
        self,
        op_id: str,
        result: Any = None,
        rows_affected: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        found = self._operations.get(op_id)
        if not self._enabled or found is None:
            return
        execution, op = found

        now = self._clock()
        op.execution_time = max(0.0, elapsed_ms(op.timestamp, now))
        op.result = self._sanitize(result)
        op.rows_affected = rows_affected
        op.error = error

        threshold = self.config.performance.slow_query_threshold
        if op.execution_time > threshold:
            logger.warning(
                f"Slow database query detected: {op.operation} on {op.table} "
                f"(execution_time={op.execution_time:.1f}ms, threshold={threshold}ms)"
            )
        self._emit(
            "db_operation_completed",
            execution.id,
            step_id=op.step_id,
            data={
                "execution_time": op.execution_time,
                "rows_affected": rows_affected,
                "error": error,
            },
            timestamp=now,
        )
        logger.debug(
            f"Database operation completed: {op.operation} on {op.table} "
            f"(db_op_id={op_id}, execution_time={op.execution_time:.1f}ms, "
            f"rows_affected={rows_affected}, error={error})"
        )

    # ------------------------------------------------------------------
    # Reporting
    def export_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Return a detached copy of the execution, or ``None``."""
        if not self._enabled:
            return None
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution is not None else None

    def get_all_executions(self) -> List[WorkflowExecution]:
        if not self._enabled:
            return []
        return [e.model_copy(deep=True) for e in self._executions.values()]

    def get_performance_metrics(self, execution_id: str) -> Optional[PerformanceMetrics]:
        if not self._enabled:
            return None
        execution = self._executions.get(execution_id)
        if execution is None or execution.total_duration is None:
            return None

        total = execution.total_duration
        step_durations = {
            s.name: s.duration for s in execution.steps if s.duration is not None
        }
        llm_durations = {c.id: c.latency for c in execution.llm_calls}
        db_durations = {o.id: o.execution_time for o in execution.database_operations}

        candidates = (
            [("step", s.name, s.duration or 0) for s in execution.steps]
            + [("llm", c.id, c.latency) for c in execution.llm_calls]
            + [("database", o.id, o.execution_time) for o in execution.database_operations]
        )
        candidates.sort(key=lambda item: item[2], reverse=True)
        bottlenecks = [
            Bottleneck(
                type=kind,
                identifier=identifier,
                duration=duration,
                percentage_of_total=(duration / total) * 100 if total else 0.0,
            )
            for kind, identifier, duration in candidates[:5]
        ]

        cost = execution.total_cost or 0
        return PerformanceMetrics(
            workflow_id=execution_id,
            total_duration=total,
            step_durations=step_durations,
            llm_call_durations=llm_durations,
            database_operation_durations=db_durations,
            bottlenecks=bottlenecks,
            cost_breakdown=CostBreakdown(llm_calls=cost, database_operations=0, total=cost),
        )

    # ------------------------------------------------------------------
    # Events
    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """Register ``listener`` and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(
        self,
        event_type: str,
        workflow_id: str,
        step_id: Optional[str] = None,
        data: Optional[dict] = None,
        timestamp: Any = None,
    ) -> None:
        if not self._listeners:
            return
        event = DebugEvent(
            type=event_type,
            workflow_id=workflow_id,
            step_id=step_id,
            data=data or {},
            timestamp=timestamp or self._clock(),
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Debug event listener error")

    # ------------------------------------------------------------------
    # Helpers
    def _sanitize(self, payload: Any) -> Any:
        """Replace payloads over ``max_payload_size`` with a truncated string."""
        if payload is None:
            return payload
        serialized = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        limit = self.config.logging.max_payload_size
        if len(serialized) > limit:
            return serialized[:limit] + TRUNCATION_MARKER
        return payload

    def _error_detail(self, error: BaseException) -> StepError:
        stack = None
        if self.config.logging.include_stacks and error.__traceback__ is not None:
            stack = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        code = getattr(error, "code", None)
        return StepError(
            message=str(error) or type(error).__name__,
            stack=stack,
            code=str(code) if code is not None else None,
        )

    def clear(self) -> None:
        self._executions.clear()
        self._steps.clear()
        self._calls.clear()
        self._operations.clear()
