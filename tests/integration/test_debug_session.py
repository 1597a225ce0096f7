"""End-to-end flows through DebugSystem with file-backed storage."""

from pathlib import Path

import pytest

from flowdebug.cli import _load_workflow
from flowdebug.config import DatabaseSettings, DebugConfig, LLMCacheSettings
from flowdebug.models import ReplayConfig, TestAssertion
from flowdebug.system import DebugSystem

FIXTURES = Path(__file__).parent.parent / "fixtures"


def _config(tmp_path) -> DebugConfig:
    return DebugConfig(
        enabled=True,
        mode="test",
        database=DatabaseSettings(
            test_url=f"sqlite://{tmp_path / 'test.db'}",
            production_url="memory://",
            tables=["projects"],
            snapshot_directory=str(tmp_path / "snapshots"),
        ),
        llm_cache=LLMCacheSettings(enabled=True, directory=str(tmp_path / "cache")),
    )


_research = _load_workflow(f"{FIXTURES / 'sample_workflow.py'}:research")


@pytest.mark.asyncio
async def test_test_session_runs_scenario_suite(tmp_path):
    system = await DebugSystem(_config(tmp_path)).start()
    try:
        snapshot_id = await system.create_test_session(
            "nightly", scenario_files=[FIXTURES / "scenarios.json", tmp_path / "absent.json"]
        )
        assert (await system.environment.get_snapshot(snapshot_id)).name == "nightly_initial"
        assert system.environment.is_test_mode()

        report = await system.run_test_suite(_research)
        assert report.summary.total == 2
        assert report.summary.passed == 2, [
            (r.scenario.name, [f.message for f in r.failures], r.error) for r in report.results
        ]

        ids = [r.execution.id for r in report.results]
        performance = system.generate_performance_report(ids)
        assert performance.executions == 2
        assert performance.llm_calls == 2
        assert performance.database_operations == 2
        assert performance.cache_stats.cache_size >= 1

        session = system.export_debug_session("nightly", ids)
        assert len(session.executions) == 2
        assert set(session.scenarios) == {"seeded-outline", "live-outline"}
        assert session.environment == {"mode": "test", "debug_enabled": True, "test_db": True}
    finally:
        await system.cleanup()
        await system.environment.close()

    assert system.environment.mode == "production"
    assert system.ledger.get_all_executions() == []
    assert system.scenarios.get_all_results() == []


@pytest.mark.asyncio
async def test_rows_written_to_sqlite_are_snapshotted_and_restored(tmp_path):
    system = DebugSystem(_config(tmp_path))
    env = system.environment
    await env.switch_mode("test")
    try:
        await env.prepare_test_environment()
        db = env.raw_client
        await db.insert("projects", [{"id": 1, "meta": {"owner": "ops"}}])
        snapshot_id = await env.create_snapshot("one project")
        await db.upsert("projects", [{"id": 1, "meta": {"owner": "dev"}}, {"id": 2}])

        # a fresh switch reads the persisted snapshot from disk
        other = DebugSystem(_config(tmp_path)).environment
        await other.switch_mode("test")
        await other.restore_snapshot(snapshot_id)
        await other.close()

        assert (await db.select("projects")).data == [{"id": 1, "meta": {"owner": "ops"}}]
        await env.reset_to_clean_state()
        assert (await db.select("projects")).data == []
    finally:
        await env.close()


@pytest.mark.asyncio
async def test_replay_reuses_recorded_responses(tmp_path):
    system = await DebugSystem(_config(tmp_path)).start()
    calls = []

    async def summarize():
        calls.append(1)
        return {"summary": f"version {len(calls)}"}

    async def workflow(ctx):
        summary = await ctx.execute_step(
            "summarize",
            "llm_call",
            lambda: ctx.execute_llm_call(
                "summarize", "Summarize the quarter", summarize, temperature=0.1
            ),
        )
        await ctx.execute_step(
            "persist",
            "database_operation",
            lambda: ctx.db.upsert("projects", [{"id": "q3", **summary}]),
        )
        return summary

    try:
        original = await system.orchestrator.execute(workflow, "quarterly")
        await system.orchestrator.clear_cache("quarterly")

        replayed = await system.orchestrator.replay(
            workflow, ReplayConfig(workflow_execution_id=original.execution.id)
        )
        assert replayed.result == original.result == {"summary": "version 1"}
        assert len(calls) == 1

        comparison = system.orchestrator.compare_executions(
            original.execution.id, replayed.execution.id
        )
        assert [d.difference_type for d in comparison.differences] == []

        scenario = system.scenarios.create_scenario(
            "replayed rows",
            "quarterly",
            assertions=[
                TestAssertion(
                    type="database_state",
                    condition={"table": "projects", "where": {"id": "q3"}, "count": 1},
                )
            ],
        )
        result = await system.scenarios.run_scenario(scenario.id, workflow)
        assert result.success, [f.message for f in result.failures]
    finally:
        await system.cleanup()
        await system.environment.close()
