"""Tests for the scenario runner."""

import asyncio
import json

import pytest

from flowdebug.errors import ScenarioNotFound, ScenarioTimeoutError
from flowdebug.models import TestAssertion, TestScenario


async def fake_llm():
    return "fresh outline"


def research_workflow(clock, elapsed_ms=0):
    async def research(ctx):
        outline = await ctx.execute_step(
            "outline",
            "llm_call",
            lambda: ctx.execute_llm_call("outline", "Write an outline", fake_llm),
        )
        await ctx.db.insert("projects", [{"id": 1, "outline": outline}])
        clock.advance(elapsed_ms)
        return {"outline": outline}

    return research


@pytest.mark.asyncio
async def test_duration_assertion_failure(system, clock):
    scenario = system.scenarios.create_scenario(
        "too slow",
        "research",
        assertions=[TestAssertion(type="duration_under", condition=5)],
    )

    result = await system.scenarios.run_scenario(scenario.id, research_workflow(clock, 50))

    assert result.success is False
    assert result.error is None
    assert len(result.failures) == 1
    assert result.failures[0].expected == "Duration under 5ms"
    assert result.failures[0].actual == "50.0ms"


@pytest.mark.asyncio
async def test_passing_scenario_uses_seeded_responses(system, clock):
    scenario = system.scenarios.create_scenario(
        "seeded",
        "research",
        expected_llm_responses={"outline": "seeded outline"},
        assertions=[
            TestAssertion(type="output_contains", condition="seeded outline"),
            TestAssertion(
                type="database_state", condition={"table": "projects", "count": 1}
            ),
            TestAssertion(type="llm_call_made", condition={"step_name": "outline"}),
            TestAssertion(type="duration_under", condition=1000),
        ],
        tags=["smoke"],
    )

    result = await system.scenarios.run_scenario(scenario.id, research_workflow(clock, 10))

    assert result.success, [f.message for f in result.failures]
    assert result.execution.trigger == "test"
    assert result.execution.llm_calls[0].cache_hit is True
    assert system.scenarios.get_result(scenario.id) is result
    assert system.scenarios.get_results_by_tag("smoke") == [result]


@pytest.mark.asyncio
async def test_failed_assertions_report_expected_and_actual(system, clock):
    scenario = system.scenarios.create_scenario(
        "wrong",
        "research",
        assertions=[
            TestAssertion(type="output_contains", condition="missing text"),
            TestAssertion(
                type="database_state", condition={"table": "projects", "count": 3}
            ),
            TestAssertion(type="llm_call_made", condition={"model": "gpt-4"}),
        ],
    )

    result = await system.scenarios.run_scenario(scenario.id, research_workflow(clock))

    assert [f.expected for f in result.failures] == [
        'Output containing "missing text"',
        3,
        'LLM call with {"model": "gpt-4"}',
    ]
    assert result.failures[1].actual == 1
    assert result.failures[1].message == "Expected 3 rows but found 1 in projects"


@pytest.mark.asyncio
async def test_llm_call_assertion_matches_calls_outside_steps(system):
    async def analyze(ctx):
        return await ctx.execute_llm_call("analyze", "Analyze the brief", fake_llm)

    scenario = system.scenarios.create_scenario(
        "bare call",
        "analysis",
        assertions=[TestAssertion(type="llm_call_made", condition={"step_name": "analyze"})],
    )

    result = await system.scenarios.run_scenario(scenario.id, analyze)

    call = result.execution.llm_calls[0]
    assert (call.step_id, call.step_name) == (None, "analyze")
    assert result.success, [f.message for f in result.failures]


@pytest.mark.asyncio
async def test_assertion_errors_do_not_stop_later_assertions(system, clock):
    def explode(execution, output):
        raise ValueError("bad predicate")

    scenario = system.scenarios.create_scenario(
        "independent",
        "research",
        assertions=[
            TestAssertion(type="database_state", condition={"count": 1}),
            TestAssertion(type="custom", condition=explode),
            TestAssertion(type="output_contains", condition="fresh outline"),
            TestAssertion(type="custom", condition=lambda execution, output: False),
        ],
    )

    result = await system.scenarios.run_scenario(scenario.id, research_workflow(clock))

    messages = [f.message for f in result.failures]
    assert messages == [
        "Assertion execution failed: 'table'",
        "Custom assertion threw error: bad predicate",
        "Custom assertion failed",
    ]


@pytest.mark.asyncio
async def test_registered_and_async_predicates(system, clock):
    async def has_output(execution, output):
        return output is not None

    system.scenarios.register_predicate("completed", lambda e, o: e.status == "completed")
    scenario = system.scenarios.create_scenario(
        "predicates",
        "research",
        assertions=[
            TestAssertion(type="custom", condition="completed"),
            TestAssertion(type="custom", condition=has_output),
            TestAssertion(type="custom", condition="not-registered"),
        ],
    )

    result = await system.scenarios.run_scenario(scenario.id, research_workflow(clock))

    assert len(result.failures) == 1
    assert result.failures[0].actual == "str"


@pytest.mark.asyncio
async def test_timeout_is_recorded_as_error(system):
    async def stuck(ctx):
        await asyncio.sleep(5)

    scenario = system.scenarios.create_scenario("stuck", "research")
    result = await system.scenarios.run_scenario(scenario.id, stuck, timeout=10)

    assert result.success is False
    assert isinstance(result.error, ScenarioTimeoutError)
    assert str(result.error) == "Workflow execution timed out after 10ms"
    assert result.execution.status == "failed"


@pytest.mark.asyncio
async def test_workflow_error_fails_scenario(system):
    async def broken(ctx):
        raise RuntimeError("llm unavailable")

    scenario = system.scenarios.create_scenario("broken", "research")
    result = await system.scenarios.run_scenario(scenario.id, broken)

    assert result.success is False
    assert str(result.error) == "llm unavailable"
    assert result.failures == []


@pytest.mark.asyncio
async def test_initial_snapshot_is_restored(system, clock):
    env = system.environment
    await env.switch_mode("test")
    await env.raw_client.insert("briefs", [{"id": "b1"}])
    snapshot_id = await env.create_snapshot("with brief")
    await env.clear_all_tables()

    scenario = system.scenarios.create_scenario(
        "from snapshot",
        "research",
        initial_database_state=snapshot_id,
        assertions=[
            TestAssertion(type="database_state", condition={"table": "briefs", "count": 1})
        ],
    )
    result = await system.scenarios.run_scenario(scenario.id, research_workflow(clock))
    assert result.success


@pytest.mark.asyncio
async def test_unknown_scenario(system, clock):
    with pytest.raises(ScenarioNotFound):
        await system.scenarios.run_scenario("nope", research_workflow(clock))


@pytest.mark.asyncio
async def test_run_multiple_sequential_stops_on_failure(system, clock):
    failing = system.scenarios.create_scenario(
        "fails", "research", assertions=[TestAssertion(type="duration_under", condition=1)]
    )
    passing = system.scenarios.create_scenario("passes", "research")
    workflow = research_workflow(clock, 20)

    results = await system.scenarios.run_multiple_scenarios([failing.id, passing.id], workflow)
    assert [r.scenario.name for r in results] == ["fails"]

    results = await system.scenarios.run_multiple_scenarios(
        [failing.id, passing.id], workflow, continue_on_failure=True
    )
    assert [r.success for r in results] == [False, True]

    report = system.scenarios.generate_report([failing.id, passing.id])
    assert report.summary.total == 2
    assert report.summary.passed == 1
    assert report.summary.pass_rate == 50


@pytest.mark.asyncio
async def test_run_multiple_parallel_keeps_executions_apart(system, clock):
    async def tagged(ctx):
        await ctx.execute_step("first", "tool_execution", lambda: asyncio.sleep(0.01))
        await ctx.execute_step("second", "tool_execution", lambda: asyncio.sleep(0))
        return ctx.execution_id

    ids = [system.scenarios.create_scenario(f"s{i}", "research").id for i in range(3)]
    results = await system.scenarios.run_multiple_scenarios(ids, tagged, parallel=True)

    assert all(r.success for r in results)
    for r in results:
        assert [s.name for s in r.execution.steps] == ["first", "second"]


def test_registry_queries(system):
    runner = system.scenarios
    a = runner.create_scenario("a", "research", tags=["fast"])
    b = runner.create_scenario("b", "summary", tags=["slow"])

    assert runner.get_scenario(a.id) is a
    assert runner.get_scenarios_by_tag("slow") == [b]
    assert runner.get_scenarios_by_workflow("research") == [a]
    runner.remove_scenario(a.id)
    assert runner.list_scenarios() == [b]


def test_scenarios_are_immutable(system):
    scenario = system.scenarios.create_scenario("frozen", "research")
    with pytest.raises(Exception):
        scenario.name = "changed"


def test_load_and_save_files(system, tmp_path):
    mapping_file = tmp_path / "mapping.json"
    mapping_file.write_text(
        json.dumps(
            {
                "login": {
                    "name": "login flow",
                    "workflow_name": "auth",
                    "assertions": [{"type": "duration_under", "condition": 100}],
                }
            }
        )
    )
    list_file = tmp_path / "list.json"
    list_file.write_text(json.dumps([{"id": "x1", "name": "listed", "workflow_name": "auth"}]))

    runner = system.scenarios
    assert runner.load_scenarios_from_file(mapping_file) == 1
    assert runner.load_scenarios_from_file(list_file) == 1
    assert runner.get_scenario("login").assertions[0].condition == 100
    assert runner.get_scenario("x1").name == "listed"

    saved = tmp_path / "out" / "login.json"
    runner.save_scenario_to_file("login", saved)
    runner.remove_scenario("login")
    assert runner.load_scenarios_from_file(saved) == 1
    assert runner.get_scenario("login").name == "login flow"

    with pytest.raises(ScenarioNotFound):
        runner.save_scenario_to_file("missing", saved)


def test_import_uses_mapping_key_as_id(system):
    scenario = TestScenario(id="old", name="n", workflow_name="w")
    system.scenarios.import_scenarios({"new": scenario})
    assert system.scenarios.get_scenario("new").id == "new"
    assert "new" in system.scenarios.export_scenarios()


@pytest.mark.asyncio
async def test_seeded_responses_do_not_leak_into_later_scenarios(system, clock):
    seeded = system.scenarios.create_scenario(
        "seeded", "research", expected_llm_responses={"outline": "canned"}
    )
    live = system.scenarios.create_scenario(
        "live",
        "research",
        assertions=[TestAssertion(type="output_contains", condition="fresh outline")],
    )
    workflow = research_workflow(clock)

    await system.scenarios.run_scenario(seeded.id, workflow)
    result = await system.scenarios.run_scenario(live.id, workflow)

    assert result.success, [f.message for f in result.failures]
