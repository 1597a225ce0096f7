"""Process-level object that builds and owns every flowdebug component."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .cache import ResponseCache
from .config import DebugConfig, configure_logging, load_config
from .database import DatabaseClient, EnvironmentSwitch
from .ledger import ExecutionLedger
from .models import DebugSession, PerformanceReport, ScenarioReport, utcnow
from .orchestrator import WorkflowFunction, WorkflowOrchestrator
from .scenarios import ScenarioRunner
from .storage import get_store

logger = logging.getLogger(__name__)


class DebugSystem:
    """Explicit context object wiring ledger, cache, environment and runners.

    Build one per process (or per test) and pass it to whatever invokes
    workflows. ``clients`` injects backing-store clients per mode, bypassing
    the configured URLs.
    """

    def __init__(
        self,
        config: Optional[DebugConfig] = None,
        clients: Optional[Dict[str, DatabaseClient]] = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.config = config or load_config()
        self.ledger = ExecutionLedger(self.config, clock=clock)
        self.cache = ResponseCache(
            self.config.llm_cache,
            store=get_store(self.config.llm_cache.directory, self.config.storage),
            clock=clock,
        )
        self.environment = EnvironmentSwitch(
            self.config.database,
            clients=clients,
            store=get_store(self.config.database.snapshot_directory, self.config.storage),
            clock=clock,
        )
        self.orchestrator = WorkflowOrchestrator(self.ledger, self.cache, self.environment)
        self.scenarios = ScenarioRunner(
            self.orchestrator, self.environment, self.cache, clock=clock
        )

    async def start(self) -> "DebugSystem":
        configure_logging(self.config.logging)
        if self.cache.enabled:
            await self.cache.load()
        if self.config.enabled:
            logger.info(
                f"Workflow debug system initialized (mode={self.config.mode}, "
                f"llm_cache={self.config.llm_cache.enabled}, "
                f"test_db={self.config.database.use_test_db}, "
                f"log_level={self.config.logging.level})"
            )
        return self

    # ------------------------------------------------------------------
    # Test sessions
    async def create_test_session(
        self, name: str, scenario_files: Optional[Iterable[str | Path]] = None
    ) -> str:
        """Prepare a clean test store and cache, load scenarios, snapshot the start state."""
        logger.info(f"Creating test session: {name}")
        await self.environment.switch_mode("test")
        await self.environment.prepare_test_environment()
        await self.cache.clear(persisted=False)

        loaded = 0
        for path in scenario_files or []:
            try:
                loaded += self.scenarios.load_scenarios_from_file(path)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load scenario file {path}: {e}")

        snapshot_id = await self.environment.create_snapshot(
            f"{name}_initial", f"Initial state for test session {name}"
        )
        logger.info(f"Test session ready: {name} (snapshot={snapshot_id}, scenarios={loaded})")
        return snapshot_id

    async def run_test_suite(
        self,
        workflow: WorkflowFunction,
        scenario_ids: Optional[List[str]] = None,
        parallel: bool = False,
        timeout: float = 30000,
        continue_on_failure: bool = True,
    ) -> ScenarioReport:
        logger.info("Starting test suite execution")
        ids = scenario_ids or [s.id for s in self.scenarios.list_scenarios()]
        results = await self.scenarios.run_multiple_scenarios(
            ids,
            workflow,
            parallel=parallel,
            continue_on_failure=continue_on_failure,
            timeout=timeout,
        )
        report = self.scenarios.generate_report(ids)
        summary = report.summary
        logger.info(
            f"Test suite results: total={summary.total}, passed={summary.passed}, "
            f"failed={summary.failed}, pass_rate={summary.pass_rate:.1f}%, "
            f"total_duration={summary.total_duration:.1f}ms"
        )
        for result in results:
            if result.success:
                continue
            reason = str(result.error) if result.error is not None else "Assertion failures"
            logger.error(f"Failed scenario {result.scenario.name}: {reason}")
            for failure in result.failures:
                logger.error(
                    f"  {failure.assertion.description or failure.assertion.type}: "
                    f"expected {failure.expected}, got {failure.actual}"
                )
        return report

    # ------------------------------------------------------------------
    # Reporting
    def generate_performance_report(
        self, execution_ids: Iterable[str]
    ) -> Optional[PerformanceReport]:
        executions = [
            e for e in (self.ledger.export_execution(i) for i in execution_ids) if e is not None
        ]
        if not executions:
            return None

        count = len(executions)
        total_duration = sum(e.total_duration or 0 for e in executions)
        total_cost = sum(e.total_cost or 0 for e in executions)
        llm_calls = sum(len(e.llm_calls) for e in executions)
        db_ops = sum(len(e.database_operations) for e in executions)
        avg_llm = sum(
            sum(c.latency for c in e.llm_calls) / len(e.llm_calls)
            for e in executions
            if e.llm_calls
        )
        avg_db = sum(
            sum(o.execution_time for o in e.database_operations) / len(e.database_operations)
            for e in executions
            if e.database_operations
        )
        return PerformanceReport(
            executions=count,
            total_duration=total_duration,
            avg_duration=total_duration / count,
            total_cost=total_cost,
            avg_cost=total_cost / count,
            llm_calls=llm_calls,
            avg_llm_latency=avg_llm / count,
            avg_llm_calls_per_execution=llm_calls / count,
            database_operations=db_ops,
            avg_database_latency=avg_db / count,
            avg_database_operations_per_execution=db_ops / count,
            cache_stats=self.cache.get_stats(),
        )

    def export_debug_session(
        self, session_name: str, execution_ids: Optional[Iterable[str]] = None
    ) -> DebugSession:
        if execution_ids is None:
            executions = self.ledger.get_all_executions()
        else:
            executions = [
                e
                for e in (self.ledger.export_execution(i) for i in execution_ids)
                if e is not None
            ]
        return DebugSession(
            session_name=session_name,
            executions=executions,
            scenarios=self.scenarios.export_scenarios(),
            cache_entries=self.cache.export_cache(),
            cache_stats=self.cache.get_stats(),
            environment={
                "mode": self.config.mode,
                "debug_enabled": self.ledger.enabled,
                "test_db": self.environment.is_test_mode(),
            },
        )

    async def cleanup(self) -> None:
        """Reset recorded state and return to the production store."""
        logger.info("Cleaning up debug system")
        self.ledger.clear()
        await self.cache.clear(persisted=False)
        self.scenarios.clear_results()
        if self.environment.is_test_mode():
            await self.environment.switch_mode("production")
        logger.info("Debug system cleanup complete")
