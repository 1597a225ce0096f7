"""Runs workflow functions with ledger, cache and environment wired around them."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .breakpoints import BreakpointHandler
from .cache import ResponseCache, scenario_prompt
from .context import ExecutionContext
from .database import EnvironmentSwitch
from .errors import ExecutionNotFound
from .ledger import TRUNCATION_MARKER, ExecutionLedger
from .models import (
    ComparisonSummary,
    DatabaseOperation,
    Difference,
    ExecutionComparison,
    ExecutionConfig,
    ExecutionResult,
    LLMCall,
    ReplayConfig,
    WorkflowExecution,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

WorkflowFunction = Callable[[ExecutionContext], Awaitable[Any]]

STEP_DURATION_THRESHOLD = 1000
LLM_LATENCY_THRESHOLD = 2000
DB_TIMING_THRESHOLD = 500


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class WorkflowOrchestrator:
    """Entry point for running, replaying and comparing workflow executions.

    Workflow exceptions are captured into :class:`ExecutionResult` rather than
    raised, so batch callers can inspect every outcome the same way.
    """

    def __init__(
        self,
        ledger: ExecutionLedger,
        cache: ResponseCache,
        environment: EnvironmentSwitch,
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.environment = environment

    # ------------------------------------------------------------------
    # Execution
    async def execute(
        self,
        workflow: WorkflowFunction,
        config: Union[ExecutionConfig, str],
        breakpoint_handler: Optional[BreakpointHandler] = None,
    ) -> ExecutionResult:
        if isinstance(config, str):
            config = ExecutionConfig(name=config)
        logger.info(f"Executing workflow: {config.name}")

        await self._setup_environment(config)
        if config.enable_debug:
            self.ledger.enabled = True

        execution_id = self.ledger.start_workflow(
            config.name,
            trigger=config.trigger,
            correlation_id=config.correlation_id,
            parent_execution_id=config.parent_execution_id,
        )
        ctx = ExecutionContext(
            execution_id,
            config.name,
            self.ledger,
            self.cache,
            self.environment,
            breakpoints=config.breakpoints,
            breakpoint_handler=breakpoint_handler,
        )

        result = None
        error: Optional[BaseException] = None
        try:
            self._apply_overrides(config.overrides)
            result = await workflow(ctx)
        except Exception as e:
            error = e
            logger.error(f"Workflow execution failed: {config.name}: {e}")
        self.ledger.complete_workflow(execution_id, output=result, error=error)

        return ExecutionResult(
            result=result,
            execution=self.ledger.export_execution(execution_id) if execution_id else None,
            error=error,
            performance=(
                self.ledger.get_performance_metrics(execution_id) if execution_id else None
            ),
        )

    async def execute_with_breakpoints(
        self,
        workflow: WorkflowFunction,
        config: ExecutionConfig,
        handler: BreakpointHandler,
    ) -> ExecutionResult:
        """Run ``workflow``, pausing before each step named in ``config.breakpoints``."""
        return await self.execute(workflow, config, breakpoint_handler=handler)

    async def _setup_environment(self, config: ExecutionConfig) -> None:
        if config.use_test_db is True and not self.environment.is_test_mode():
            await self.environment.switch_mode("test")
            await self.environment.prepare_test_environment()
        elif config.use_test_db is False and self.environment.is_test_mode():
            await self.environment.switch_mode("production")
        self.cache.enabled = config.enable_cache

    def _apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """Install ``cache:<workflow>:<step>`` responses and ``env:<NAME>`` variables."""
        for key, value in overrides.items():
            if key.startswith("cache:"):
                parts = key.split(":", 2)
                if len(parts) == 3 and parts[1] and parts[2]:
                    _, workflow_name, step_name = parts
                    self.cache.set_override(
                        workflow_name, step_name, scenario_prompt(step_name), value
                    )
                else:
                    logger.warning(f"Ignoring malformed cache override: {key}")
            elif key.startswith("env:"):
                os.environ[key[len("env:"):]] = str(value)
            else:
                logger.warning(f"Ignoring unknown override: {key}")

    # ------------------------------------------------------------------
    # Replay
    async def replay(
        self,
        workflow: WorkflowFunction,
        replay_config: ReplayConfig,
        breakpoint_handler: Optional[BreakpointHandler] = None,
    ) -> ExecutionResult:
        """Re-run a recorded execution, answering LLM calls from its own responses."""
        original = self.ledger.export_execution(replay_config.workflow_execution_id)
        if original is None:
            raise ExecutionNotFound(replay_config.workflow_execution_id)
        logger.info(f"Replaying workflow from execution: {original.id}")

        config = ExecutionConfig(
            name=original.name,
            enable_cache=replay_config.use_cache,
            use_test_db=replay_config.target_environment == "test",
            correlation_id=original.correlation_id,
            parent_execution_id=original.id,
            trigger="replay",
        )
        await self._setup_environment(config)

        if replay_config.snapshot_id:
            await self.environment.restore_snapshot(replay_config.snapshot_id)
        if replay_config.use_cache:
            await self._seed_replay_cache(original, replay_config.start_from_step)
        if replay_config.override_data:
            config.overrides = dict(replay_config.override_data)

        return await self.execute(workflow, config, breakpoint_handler=breakpoint_handler)

    async def _seed_replay_cache(
        self, original: WorkflowExecution, start_from_step: Optional[str] = None
    ) -> None:
        steps = {s.id: s for s in original.steps}
        seeding = start_from_step is None
        seeded = 0
        for call in original.llm_calls:
            step = steps.get(call.step_id) if call.step_id else None
            step_name = call.step_name or (step.name if step else None)
            if step_name is None:
                continue
            if not seeding and start_from_step in (step_name, step.name if step else None):
                seeding = True
            if not seeding or not call.response or call.error:
                continue
            if isinstance(call.prompt, str) and call.prompt.endswith(TRUNCATION_MARKER):
                logger.warning(f"Cannot replay LLM call {call.id}: recorded prompt was truncated")
                continue
            try:
                response = json.loads(call.response)
            except (TypeError, ValueError):
                logger.warning(f"Cannot replay response of LLM call {call.id}: not valid JSON")
                continue
            await self.cache.set(
                original.name,
                step_name,
                call.prompt,
                response,
                call.model,
                call.temperature,
                {"replayed_from": original.id},
            )
            seeded += 1
        logger.info(f"Seeded {seeded} cached responses from execution {original.id}")

    # ------------------------------------------------------------------
    # Comparison
    def compare_executions(self, execution_a: str, execution_b: str) -> ExecutionComparison:
        """Structural diff of two recorded executions."""
        a = self.ledger.export_execution(execution_a)
        if a is None:
            raise ExecutionNotFound(execution_a)
        b = self.ledger.export_execution(execution_b)
        if b is None:
            raise ExecutionNotFound(execution_b)

        differences = (
            self._compare_steps(a.steps, b.steps)
            + self._compare_llm_calls(a.llm_calls, b.llm_calls)
            + self._compare_database_operations(
                a.database_operations, b.database_operations
            )
        )
        return ExecutionComparison(
            execution_a=execution_a,
            execution_b=execution_b,
            differences=differences,
            summary=ComparisonSummary(
                total_differences=len(differences),
                critical_differences=sum(
                    1 for d in differences if d.difference_type == "different_status"
                ),
                performance_delta=(b.total_duration or 0) - (a.total_duration or 0),
            ),
        )

    @staticmethod
    def _compare_steps(
        steps_a: List[WorkflowStep], steps_b: List[WorkflowStep]
    ) -> List[Difference]:
        differences: List[Difference] = []
        by_name_b = {s.name: s for s in steps_b}
        names_a = {s.name for s in steps_a}

        for step_a in steps_a:
            step_b = by_name_b.get(step_a.name)
            if step_b is None:
                differences.append(
                    Difference(
                        category="step",
                        identifier=step_a.name,
                        difference_type="missing_in_b",
                        details={"step": step_a.model_dump(mode="json")},
                    )
                )
                continue
            if step_a.status != step_b.status:
                differences.append(
                    Difference(
                        category="step",
                        identifier=step_a.name,
                        difference_type="different_status",
                        details={"status_a": step_a.status, "status_b": step_b.status},
                    )
                )
            if _dumps(step_a.output) != _dumps(step_b.output):
                differences.append(
                    Difference(
                        category="step",
                        identifier=step_a.name,
                        difference_type="different_output",
                        details={"output_a": step_a.output, "output_b": step_b.output},
                    )
                )
            delta = abs((step_a.duration or 0) - (step_b.duration or 0))
            if delta > STEP_DURATION_THRESHOLD:
                differences.append(
                    Difference(
                        category="step",
                        identifier=step_a.name,
                        difference_type="different_duration",
                        details={
                            "duration_a": step_a.duration,
                            "duration_b": step_b.duration,
                            "difference": delta,
                        },
                    )
                )

        for step_b in steps_b:
            if step_b.name not in names_a:
                differences.append(
                    Difference(
                        category="step",
                        identifier=step_b.name,
                        difference_type="missing_in_a",
                        details={"step": step_b.model_dump(mode="json")},
                    )
                )
        return differences

    @staticmethod
    def _compare_llm_calls(calls_a: List[LLMCall], calls_b: List[LLMCall]) -> List[Difference]:
        differences: List[Difference] = []
        for i in range(max(len(calls_a), len(calls_b))):
            call_a = calls_a[i] if i < len(calls_a) else None
            call_b = calls_b[i] if i < len(calls_b) else None
            if call_a is None or call_b is None:
                differences.append(
                    Difference(
                        category="llm_call",
                        identifier=f"call_{i}",
                        difference_type="missing_call",
                        details={"call_a": call_a is not None, "call_b": call_b is not None},
                    )
                )
                continue
            if call_a.prompt != call_b.prompt:
                differences.append(
                    Difference(
                        category="llm_call",
                        identifier=f"call_{i}",
                        difference_type="different_prompt",
                        details={"prompt_a": call_a.prompt, "prompt_b": call_b.prompt},
                    )
                )
            if call_a.response != call_b.response:
                differences.append(
                    Difference(
                        category="llm_call",
                        identifier=f"call_{i}",
                        difference_type="different_response",
                        details={"response_a": call_a.response, "response_b": call_b.response},
                    )
                )
            delta = abs(call_a.latency - call_b.latency)
            if delta > LLM_LATENCY_THRESHOLD:
                differences.append(
                    Difference(
                        category="llm_call",
                        identifier=f"call_{i}",
                        difference_type="different_latency",
                        details={
                            "latency_a": call_a.latency,
                            "latency_b": call_b.latency,
                            "difference": delta,
                        },
                    )
                )
        return differences

    @staticmethod
    def _compare_database_operations(
        ops_a: List[DatabaseOperation], ops_b: List[DatabaseOperation]
    ) -> List[Difference]:
        differences: List[Difference] = []
        for i in range(max(len(ops_a), len(ops_b))):
            op_a = ops_a[i] if i < len(ops_a) else None
            op_b = ops_b[i] if i < len(ops_b) else None
            if op_a is None or op_b is None:
                differences.append(
                    Difference(
                        category="database_operation",
                        identifier=f"op_{i}",
                        difference_type="missing_operation",
                        details={"op_a": op_a is not None, "op_b": op_b is not None},
                    )
                )
                continue
            if _dumps(op_a.query) != _dumps(op_b.query):
                differences.append(
                    Difference(
                        category="database_operation",
                        identifier=f"op_{i}",
                        difference_type="different_query",
                        details={"query_a": op_a.query, "query_b": op_b.query},
                    )
                )
            if _dumps(op_a.result) != _dumps(op_b.result):
                differences.append(
                    Difference(
                        category="database_operation",
                        identifier=f"op_{i}",
                        difference_type="different_result",
                        details={"result_a": op_a.result, "result_b": op_b.result},
                    )
                )
            delta = abs(op_a.execution_time - op_b.execution_time)
            if delta > DB_TIMING_THRESHOLD:
                differences.append(
                    Difference(
                        category="database_operation",
                        identifier=f"op_{i}",
                        difference_type="different_timing",
                        details={
                            "time_a": op_a.execution_time,
                            "time_b": op_b.execution_time,
                            "difference": delta,
                        },
                    )
                )
        return differences

    # ------------------------------------------------------------------
    # Conveniences
    async def create_snapshot(self, name: str, description: Optional[str] = None) -> str:
        return await self.environment.create_snapshot(name, description)

    async def restore_snapshot(self, snapshot_id: str) -> None:
        await self.environment.restore_snapshot(snapshot_id)

    async def clear_cache(
        self, workflow_name: Optional[str] = None, step_name: Optional[str] = None
    ) -> None:
        if workflow_name and step_name:
            await self.cache.clear_step(workflow_name, step_name)
        elif workflow_name:
            await self.cache.clear_workflow(workflow_name)
        else:
            await self.cache.clear()

    def get_execution_history(self, workflow_name: Optional[str] = None) -> List[WorkflowExecution]:
        executions = self.ledger.get_all_executions()
        if workflow_name:
            executions = [e for e in executions if e.name == workflow_name]
        return executions

    def export_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        return self.ledger.export_execution(execution_id)
