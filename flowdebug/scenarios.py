"""Declarative test scenarios: setup, execute, assert and report."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .breakpoints import BreakpointHandler
from .cache import ResponseCache
from .context import ExecutionContext
from .database import EnvironmentSwitch
from .errors import ScenarioNotFound, ScenarioTimeoutError
from .models import (
    AssertionFailure,
    ExecutionConfig,
    ReportSummary,
    ScenarioReport,
    ScenarioResult,
    TestAssertion,
    TestScenario,
    WorkflowExecution,
    elapsed_ms,
    utcnow,
)
from .orchestrator import WorkflowFunction, WorkflowOrchestrator

logger = logging.getLogger(__name__)

Predicate = Callable[[Optional[WorkflowExecution], Any], Any]


def _ms(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


@dataclass
class _Outcome:
    success: bool
    expected: Any
    actual: Any
    message: str


class ScenarioRunner:
    """Registry of :class:`TestScenario` objects and the results of running them."""

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        environment: EnvironmentSwitch,
        cache: ResponseCache,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.orchestrator = orchestrator
        self.environment = environment
        self.cache = cache
        self._clock = clock
        self._scenarios: Dict[str, TestScenario] = {}
        self._results: Dict[str, ScenarioResult] = {}
        self._predicates: Dict[str, Predicate] = {}

    # ------------------------------------------------------------------
    # Registry
    def add_scenario(self, scenario: TestScenario) -> None:
        self._scenarios[scenario.id] = scenario
        logger.info(f"Added scenario: {scenario.name}")

    def create_scenario(self, name: str, workflow_name: str, **fields: Any) -> TestScenario:
        scenario = TestScenario(name=name, workflow_name=workflow_name, **fields)
        self.add_scenario(scenario)
        return scenario

    def remove_scenario(self, scenario_id: str) -> None:
        self._scenarios.pop(scenario_id, None)
        self._results.pop(scenario_id, None)
        logger.info(f"Removed scenario: {scenario_id}")

    def get_scenario(self, scenario_id: str) -> Optional[TestScenario]:
        return self._scenarios.get(scenario_id)

    def list_scenarios(self) -> List[TestScenario]:
        return list(self._scenarios.values())

    def get_scenarios_by_tag(self, tag: str) -> List[TestScenario]:
        return [s for s in self._scenarios.values() if tag in s.tags]

    def get_scenarios_by_workflow(self, workflow_name: str) -> List[TestScenario]:
        return [s for s in self._scenarios.values() if s.workflow_name == workflow_name]

    def register_predicate(self, name: str, predicate: Predicate) -> None:
        """Make ``predicate`` available to ``custom`` assertions by name."""
        self._predicates[name] = predicate

    # ------------------------------------------------------------------
    # Running
    async def run_scenario(
        self,
        scenario_id: str,
        workflow: WorkflowFunction,
        timeout: float = 30000,
        skip_assertions: bool = False,
        breakpoint_handler: Optional[BreakpointHandler] = None,
    ) -> ScenarioResult:
        """Run one scenario; ``timeout`` is in milliseconds."""
        scenario = self._scenarios.get(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(scenario_id)
        logger.info(f"Running scenario: {scenario.name}")

        started = self._clock()
        execution: Optional[WorkflowExecution] = None
        output: Any = None
        error: Optional[BaseException] = None

        async def bounded(ctx: ExecutionContext) -> Any:
            try:
                return await asyncio.wait_for(workflow(ctx), timeout / 1000)
            except asyncio.TimeoutError:
                raise ScenarioTimeoutError(timeout) from None

        try:
            await self._setup(scenario)
            outcome = await self.orchestrator.execute(
                bounded,
                ExecutionConfig(
                    name=scenario.workflow_name,
                    trigger="test",
                    breakpoints=scenario.breakpoints or [],
                ),
                breakpoint_handler=breakpoint_handler,
            )
            execution, output, error = outcome.execution, outcome.result, outcome.error
        except Exception as e:
            error = e
        finally:
            if scenario.expected_llm_responses:
                self.cache.discard_prepopulated(
                    scenario.workflow_name, scenario.expected_llm_responses
                )
        if error is not None:
            logger.error(f"Scenario execution failed: {scenario.name}: {error}")

        duration = elapsed_ms(started, self._clock())

        failures: List[AssertionFailure] = []
        if not skip_assertions:
            for assertion in scenario.assertions:
                try:
                    checked = await self._run_assertion(assertion, execution, output)
                except Exception as e:
                    failures.append(
                        AssertionFailure(
                            assertion=assertion,
                            expected="No error",
                            actual=e,
                            message=f"Assertion execution failed: {e}",
                        )
                    )
                    continue
                if not checked.success:
                    failures.append(
                        AssertionFailure(
                            assertion=assertion,
                            expected=checked.expected,
                            actual=checked.actual,
                            message=checked.message,
                        )
                    )

        result = ScenarioResult(
            scenario=scenario,
            execution=execution,
            success=not failures and error is None,
            failures=failures,
            duration=duration,
            error=error,
        )
        self._results[scenario_id] = result
        logger.info(
            f"Scenario {'passed' if result.success else 'failed'}: {scenario.name} "
            f"(duration={duration:.1f}ms, failures={len(failures)})"
        )
        return result

    async def run_multiple_scenarios(
        self,
        scenario_ids: Iterable[str],
        workflow: WorkflowFunction,
        parallel: bool = False,
        continue_on_failure: bool = False,
        timeout: float = 30000,
    ) -> List[ScenarioResult]:
        ids = list(scenario_ids)
        logger.info(
            f"Running {len(ids)} scenarios{' in parallel' if parallel else ' sequentially'}"
        )
        if parallel:
            return list(
                await asyncio.gather(
                    *(self.run_scenario(i, workflow, timeout=timeout) for i in ids)
                )
            )

        results: List[ScenarioResult] = []
        for scenario_id in ids:
            result = await self.run_scenario(scenario_id, workflow, timeout=timeout)
            results.append(result)
            if not result.success and not continue_on_failure:
                logger.info(f"Stopping scenario execution due to failure: {result.scenario.name}")
                break
        return results

    async def _setup(self, scenario: TestScenario) -> None:
        await self.environment.switch_mode("test")
        if scenario.initial_database_state:
            await self.environment.restore_snapshot(scenario.initial_database_state)
            logger.debug(f"Restored database snapshot: {scenario.initial_database_state}")
        else:
            await self.environment.reset_to_clean_state()
            logger.debug("Reset to clean database state")
        if scenario.expected_llm_responses:
            self.cache.pre_populate(scenario.workflow_name, scenario.expected_llm_responses)

    # ------------------------------------------------------------------
    # Assertions
    async def _run_assertion(
        self,
        assertion: TestAssertion,
        execution: Optional[WorkflowExecution],
        output: Any,
    ) -> _Outcome:
        if assertion.type == "output_contains":
            return self._assert_output_contains(assertion, output)
        if assertion.type == "database_state":
            return await self._assert_database_state(assertion)
        if assertion.type == "llm_call_made":
            return self._assert_llm_call_made(assertion, execution)
        if assertion.type == "duration_under":
            return self._assert_duration_under(assertion, execution)
        if assertion.type == "custom":
            return await self._assert_custom(assertion, execution, output)
        return _Outcome(
            False,
            "Valid assertion type",
            assertion.type,
            f"Unknown assertion type: {assertion.type}",
        )

    @staticmethod
    def _assert_output_contains(assertion: TestAssertion, output: Any) -> _Outcome:
        serialized = json.dumps(output, default=str)
        contains = str(assertion.condition) in serialized
        return _Outcome(
            contains,
            f'Output containing "{assertion.condition}"',
            serialized[:200],
            "Output contains expected content"
            if contains
            else f'Output does not contain "{assertion.condition}"',
        )

    async def _assert_database_state(self, assertion: TestAssertion) -> _Outcome:
        condition = assertion.condition or {}
        table = condition["table"]
        result = await self.environment.get_client().select(table, condition.get("where"))

        expected_count = condition.get("count")
        if expected_count is not None:
            success = result.count == expected_count
            return _Outcome(
                success,
                expected_count,
                result.count,
                f"Found expected {expected_count} rows in {table}"
                if success
                else f"Expected {expected_count} rows but found {result.count} in {table}",
            )
        return _Outcome(
            True,
            "Query executed successfully",
            result.data,
            f"Database state assertion passed for table {table}",
        )

    @staticmethod
    def _assert_llm_call_made(
        assertion: TestAssertion, execution: Optional[WorkflowExecution]
    ) -> _Outcome:
        if execution is None:
            return _Outcome(
                False,
                "Workflow execution data",
                None,
                "No execution data available for LLM call assertion",
            )

        condition = assertion.condition or {}
        calls = execution.llm_calls
        if condition.get("provider"):
            calls = [c for c in calls if c.provider == condition["provider"]]
        if condition.get("model"):
            calls = [c for c in calls if c.model == condition["model"]]
        if condition.get("step_name"):
            name = condition["step_name"]
            step_ids = {s.id for s in execution.steps if s.name == name}
            calls = [c for c in calls if c.step_name == name or c.step_id in step_ids]

        success = bool(calls)
        return _Outcome(
            success,
            f"LLM call with {json.dumps(condition, default=str)}",
            [{"provider": c.provider, "model": c.model} for c in execution.llm_calls],
            f"Found {len(calls)} matching LLM call(s)"
            if success
            else "No LLM calls found matching criteria",
        )

    @staticmethod
    def _assert_duration_under(
        assertion: TestAssertion, execution: Optional[WorkflowExecution]
    ) -> _Outcome:
        limit = _ms(assertion.condition)
        if execution is None or execution.total_duration is None:
            return _Outcome(
                False,
                f"Duration under {limit}ms",
                None,
                "No execution duration data available",
            )
        actual = execution.total_duration
        success = actual < limit
        return _Outcome(
            success,
            f"Duration under {limit}ms",
            f"{actual:.1f}ms",
            f"Execution completed in {actual:.1f}ms (under {limit}ms limit)"
            if success
            else f"Execution took {actual:.1f}ms (over {limit}ms limit)",
        )

    async def _assert_custom(
        self,
        assertion: TestAssertion,
        execution: Optional[WorkflowExecution],
        output: Any,
    ) -> _Outcome:
        predicate: Union[Predicate, Any] = assertion.condition
        if isinstance(predicate, str):
            predicate = self._predicates.get(predicate, predicate)
        if not callable(predicate):
            return _Outcome(
                False,
                "Function",
                type(predicate).__name__,
                "Custom assertion condition must be a function or a registered predicate name",
            )
        try:
            result = predicate(execution, output)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            return _Outcome(False, "No error", e, f"Custom assertion threw error: {e}")
        success = bool(result)
        return _Outcome(
            success,
            "Custom assertion to pass",
            result,
            "Custom assertion passed" if success else "Custom assertion failed",
        )

    # ------------------------------------------------------------------
    # Results
    def get_result(self, scenario_id: str) -> Optional[ScenarioResult]:
        return self._results.get(scenario_id)

    def get_all_results(self) -> List[ScenarioResult]:
        return list(self._results.values())

    def get_results_by_tag(self, tag: str) -> List[ScenarioResult]:
        return [r for r in self._results.values() if tag in r.scenario.tags]

    def generate_report(self, scenario_ids: Optional[Iterable[str]] = None) -> ScenarioReport:
        if scenario_ids is None:
            results = self.get_all_results()
        else:
            results = [self._results[i] for i in scenario_ids if i in self._results]
        passed = sum(1 for r in results if r.success)
        return ScenarioReport(
            summary=ReportSummary(
                total=len(results),
                passed=passed,
                failed=len(results) - passed,
                pass_rate=(passed / len(results)) * 100 if results else 0,
                total_duration=sum(r.duration for r in results),
            ),
            results=results,
        )

    def clear_results(self) -> None:
        self._results.clear()
        logger.info("Cleared all scenario results")

    def clear_result(self, scenario_id: str) -> None:
        self._results.pop(scenario_id, None)

    # ------------------------------------------------------------------
    # Import / export
    def export_scenarios(self) -> Dict[str, TestScenario]:
        return dict(self._scenarios)

    def import_scenarios(
        self, scenarios: Dict[str, Union[TestScenario, Dict[str, Any]]]
    ) -> int:
        for scenario_id, scenario in scenarios.items():
            if not isinstance(scenario, TestScenario):
                scenario = TestScenario.model_validate({**scenario, "id": scenario_id})
            elif scenario.id != scenario_id:
                scenario = scenario.model_copy(update={"id": scenario_id})
            self._scenarios[scenario_id] = scenario
        logger.info(f"Imported {len(scenarios)} scenarios")
        return len(scenarios)

    def load_scenarios_from_file(self, path: Union[str, Path]) -> int:
        """Merge scenarios from a JSON file.

        The file holds an id to scenario mapping, a list of scenarios or a
        single scenario as written by :meth:`save_scenario_to_file`.
        """
        with open(path) as f:
            data = json.load(f)
        if isinstance(data, dict) and "workflow_name" in data:
            data = [data]
        if isinstance(data, list):
            scenarios = [TestScenario.model_validate(item) for item in data]
            data = {s.id: s for s in scenarios}
        return self.import_scenarios(data)

    def save_scenario_to_file(self, scenario_id: str, path: Union[str, Path]) -> None:
        scenario = self._scenarios.get(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(scenario_id)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(scenario.model_dump(), f, indent=2, default=str)
        logger.info(f"Saved scenario to {path}")
