"""Tests for executing, replaying and comparing workflows."""

import logging
import os

import pytest

from flowdebug.breakpoints import Continue, ModifyInput
from flowdebug.errors import ExecutionNotFound
from flowdebug.models import ExecutionConfig, ReplayConfig, TokenUsage


def counting_llm(responses):
    calls = []

    async def llm():
        calls.append(1)
        return responses[len(calls) - 1]

    return llm, calls


@pytest.mark.asyncio
async def test_workflow_errors_are_returned_not_raised(system):
    async def boom(ctx):
        raise RuntimeError("boom")

    outcome = await system.orchestrator.execute(boom, ExecutionConfig(name="x"))

    assert outcome.result is None
    assert outcome.execution.status == "failed"
    assert str(outcome.error) == "boom"
    assert outcome.execution.error.message == "boom"


@pytest.mark.asyncio
async def test_execute_records_steps_calls_and_operations(system, clock):
    llm, calls = counting_llm([{"title": "Plan"}])

    async def plan(ctx):
        async def draft():
            clock.advance(30)
            return await ctx.execute_llm_call(
                "draft",
                "Draft a plan",
                llm,
                model="gemini-pro",
                temperature=0.2,
                accounting=lambda r: (TokenUsage(input=4, output=6, total=10), 0.01),
            )

        outline = await ctx.execute_step("draft", "llm_call", draft)
        await ctx.execute_step(
            "store",
            "database_operation",
            lambda row: ctx.db.insert("projects", [row]),
            input={"id": 1, "title": outline["title"]},
        )
        return outline

    outcome = await system.orchestrator.execute(plan, "planner")

    execution = outcome.execution
    assert outcome.result == {"title": "Plan"}
    assert execution.status == "completed"
    assert [s.name for s in execution.steps] == ["draft", "store"]
    assert execution.steps[0].duration == 30

    call = execution.llm_calls[0]
    assert call.step_id == execution.steps[0].id
    assert call.step_name == "draft"
    assert call.temperature == 0.2
    assert call.response == '{"title": "Plan"}'
    assert call.tokens_used.total == 10
    assert execution.total_cost == 0.01

    op = execution.database_operations[0]
    assert op.step_id == execution.steps[1].id
    assert (op.operation, op.table, op.rows_affected) == ("insert", "projects", 1)
    assert outcome.performance.total_duration == 30


@pytest.mark.asyncio
async def test_second_run_is_served_from_cache(system):
    llm, calls = counting_llm(["first", "second"])

    async def flow(ctx):
        return await ctx.execute_llm_call("s", "same prompt", llm)

    first = await system.orchestrator.execute(flow, "cached")
    second = await system.orchestrator.execute(flow, "cached")

    assert first.result == second.result == "first"
    assert len(calls) == 1
    assert second.execution.llm_calls[0].cache_hit is True
    assert second.execution.llm_calls[0].cost == 0

    await system.orchestrator.execute(flow, ExecutionConfig(name="cached", enable_cache=False))
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_llm_errors_propagate_to_the_step(system):
    async def failing():
        raise ConnectionError("provider down")

    async def flow(ctx):
        return await ctx.execute_step(
            "ask", "llm_call", lambda: ctx.execute_llm_call("ask", "prompt", failing)
        )

    outcome = await system.orchestrator.execute(flow, "flaky")

    assert isinstance(outcome.error, ConnectionError)
    assert outcome.execution.steps[0].status == "failed"
    assert outcome.execution.llm_calls[0].error == "provider down"
    assert system.cache.entries() == []


@pytest.mark.asyncio
async def test_execute_database_operation(system):
    async def flow(ctx):
        await ctx.db.insert("projects", [{"id": 1}, {"id": 2}])
        return await ctx.execute_database_operation(
            "count",
            "select",
            "projects",
            "select * from projects",
            lambda: system.environment.raw_client.select("projects"),
        )

    outcome = await system.orchestrator.execute(flow, "counting")
    ops = outcome.execution.database_operations
    assert [o.operation for o in ops] == ["insert", "select"]
    assert ops[1].query == "select * from projects"
    assert ops[1].rows_affected == 2
    assert ops[1].result == [{"id": 1}, {"id": 2}]


@pytest.mark.asyncio
async def test_overrides(system, monkeypatch):
    monkeypatch.delenv("FLOWDEBUG_SAMPLE_FLAG", raising=False)
    llm, calls = counting_llm(["live"])

    async def flow(ctx):
        return {
            "answer": await ctx.execute_llm_call("answer", "question", llm),
            "flag": os.environ.get("FLOWDEBUG_SAMPLE_FLAG"),
        }

    config = ExecutionConfig(
        name="overridden",
        overrides={
            "cache:overridden:answer": "canned",
            "env:FLOWDEBUG_SAMPLE_FLAG": 1,
            "bogus": True,
        },
    )
    outcome = await system.orchestrator.execute(flow, config)
    monkeypatch.delenv("FLOWDEBUG_SAMPLE_FLAG", raising=False)

    assert outcome.result == {"answer": "canned", "flag": "1"}
    assert calls == []


@pytest.mark.asyncio
async def test_use_test_db_switches_and_prepares(system):
    async def flow(ctx):
        return (await ctx.db.select("projects")).count

    await system.environment.raw_client.insert("projects", [{"id": "prod"}])

    outcome = await system.orchestrator.execute(flow, ExecutionConfig(name="t", use_test_db=True))
    assert outcome.result == 0
    assert system.environment.is_test_mode()

    outcome = await system.orchestrator.execute(flow, ExecutionConfig(name="t", use_test_db=False))
    assert outcome.result == 1
    assert system.environment.mode == "production"


async def _step_flow(ctx):
    return await ctx.execute_step(
        "transform", "tool_execution", lambda data: _upper(data), input={"text": "hi"}
    )


async def _upper(data):
    return data["text"].upper()


@pytest.mark.asyncio
async def test_breakpoint_skip(system):
    seen = []

    def handler(bp):
        seen.append((bp.step_name, bp.input, bp.execution.status))
        return bp.skip()

    config = ExecutionConfig(name="bp", breakpoints=["transform"])
    outcome = await system.orchestrator.execute_with_breakpoints(_step_flow, config, handler)

    assert seen == [("transform", {"text": "hi"}, "paused")]
    assert outcome.result is None
    step = outcome.execution.steps[0]
    assert step.status == "completed"
    assert step.output == {"skipped": True}
    assert outcome.execution.status == "completed"


@pytest.mark.asyncio
async def test_breakpoint_modify_input(system):
    async def handler(bp):
        return ModifyInput({"text": "changed"})

    config = ExecutionConfig(name="bp", breakpoints=["transform"])
    outcome = await system.orchestrator.execute_with_breakpoints(_step_flow, config, handler)

    assert outcome.result == "CHANGED"
    assert outcome.execution.steps[0].input == {"text": "changed"}


@pytest.mark.asyncio
async def test_step_input_is_recorded_for_zero_argument_bodies(system):
    async def fetch():
        return 42

    async def flow(ctx):
        return await ctx.execute_step("fetch", "api_call", fetch, input={"q": 1})

    outcome = await system.orchestrator.execute(flow, "tracing")

    assert outcome.error is None
    assert outcome.result == 42
    step = outcome.execution.steps[0]
    assert (step.status, step.input) == ("completed", {"q": 1})


@pytest.mark.asyncio
async def test_breakpoint_modify_input_to_none(system):
    seen = []

    async def body(data):
        seen.append(data)
        return "ran"

    async def flow(ctx):
        return await ctx.execute_step("transform", "tool_execution", body, input={"text": "hi"})

    config = ExecutionConfig(name="bp", breakpoints=["transform"])
    outcome = await system.orchestrator.execute_with_breakpoints(
        flow, config, lambda bp: ModifyInput(None)
    )

    assert outcome.result == "ran"
    assert seen == [None]


@pytest.mark.asyncio
@pytest.mark.parametrize("action", [Continue(), None, "unknown"])
async def test_breakpoint_continue_variants(system, action):
    config = ExecutionConfig(name="bp", breakpoints=["transform"])
    outcome = await system.orchestrator.execute_with_breakpoints(
        _step_flow, config, lambda bp: action
    )
    assert outcome.result == "HI"


@pytest.mark.asyncio
async def test_breakpoint_handler_error_continues(system):
    def handler(bp):
        raise RuntimeError("debugger crashed")

    config = ExecutionConfig(name="bp", breakpoints=["transform"])
    outcome = await system.orchestrator.execute_with_breakpoints(_step_flow, config, handler)

    assert outcome.result == "HI"
    assert outcome.execution.status == "completed"


@pytest.mark.asyncio
async def test_replay_answers_llm_calls_from_original(system):
    llm, calls = counting_llm([{"v": 1}, {"v": 2}, {"v": 3}])

    async def flow(ctx):
        first = await ctx.execute_step(
            "first", "llm_call", lambda: ctx.execute_llm_call("first", "p1", llm, temperature=0.3)
        )
        second = await ctx.execute_step(
            "second", "llm_call", lambda: ctx.execute_llm_call("second", "p2", llm)
        )
        return [first, second]

    original = await system.orchestrator.execute(flow, "replayable")
    await system.cache.clear(persisted=False)

    replayed = await system.orchestrator.replay(
        flow, ReplayConfig(workflow_execution_id=original.execution.id)
    )

    assert replayed.result == [{"v": 1}, {"v": 2}]
    assert len(calls) == 2
    assert replayed.execution.name == "replayable"
    assert replayed.execution.trigger == "replay"
    assert replayed.execution.parent_execution_id == original.execution.id
    assert replayed.execution.correlation_id == original.execution.correlation_id
    assert system.environment.is_test_mode()


@pytest.mark.asyncio
async def test_replay_from_step_only_seeds_later_calls(system):
    llm, calls = counting_llm(["a", "b", "c"])

    async def flow(ctx):
        return [
            await ctx.execute_llm_call("first", "p1", llm),
            await ctx.execute_llm_call("second", "p2", llm),
        ]

    original = await system.orchestrator.execute(flow, "partial")
    await system.cache.clear(persisted=False)

    replayed = await system.orchestrator.replay(
        flow,
        ReplayConfig(workflow_execution_id=original.execution.id, start_from_step="second"),
    )
    assert replayed.result == ["c", "b"]


@pytest.mark.asyncio
async def test_replay_skips_truncated_prompts(system, caplog):
    caplog.set_level(logging.WARNING, logger="flowdebug")
    system.config.logging.max_payload_size = 20
    llm, calls = counting_llm(["a", "b", "c"])
    long_prompt = "Summarize every section of the annual report"

    async def flow(ctx):
        return [
            await ctx.execute_llm_call("long", long_prompt, llm),
            await ctx.execute_llm_call("short", "p2", llm),
        ]

    original = await system.orchestrator.execute(flow, "truncated")
    assert original.execution.llm_calls[0].prompt != long_prompt
    await system.cache.clear(persisted=False)

    replayed = await system.orchestrator.replay(
        flow, ReplayConfig(workflow_execution_id=original.execution.id)
    )

    assert replayed.result == ["c", "b"]
    assert len(calls) == 3
    assert "recorded prompt was truncated" in caplog.text


@pytest.mark.asyncio
async def test_replay_unknown_execution(system):
    async def flow(ctx):
        return None

    with pytest.raises(ExecutionNotFound):
        await system.orchestrator.replay(flow, ReplayConfig(workflow_execution_id="missing"))


@pytest.mark.asyncio
async def test_compare_executions(system, clock):
    async def flow_a(ctx):
        await ctx.execute_step("load", "tool_execution", lambda: _value(1))
        await ctx.execute_step("shared", "tool_execution", lambda: _value("same"))
        clock.advance(100)

    async def flow_b(ctx):
        async def slow():
            clock.advance(1500)
            raise ValueError("nope")

        await ctx.execute_step("shared", "tool_execution", lambda: _value("same"))
        try:
            await ctx.execute_step("load", "tool_execution", slow)
        except ValueError:
            pass
        await ctx.execute_step("extra", "tool_execution", lambda: _value(None))

    a = await system.orchestrator.execute(flow_a, "cmp")
    b = await system.orchestrator.execute(flow_b, "cmp")

    comparison = system.orchestrator.compare_executions(a.execution.id, b.execution.id)
    kinds = {(d.identifier, d.difference_type) for d in comparison.differences}

    assert kinds == {
        ("load", "different_status"),
        ("load", "different_output"),
        ("load", "different_duration"),
        ("extra", "missing_in_a"),
    }
    assert comparison.summary.total_differences == 4
    assert comparison.summary.critical_differences == 1
    assert comparison.summary.performance_delta == 1400

    with pytest.raises(ExecutionNotFound):
        system.orchestrator.compare_executions(a.execution.id, "missing")


async def _value(value):
    return value


@pytest.mark.asyncio
async def test_history_and_conveniences(system):
    async def flow(ctx):
        return 1

    await system.orchestrator.execute(flow, "one")
    await system.orchestrator.execute(flow, "two")

    assert len(system.orchestrator.get_execution_history()) == 2
    assert [e.name for e in system.orchestrator.get_execution_history("two")] == ["two"]

    snapshot_id = await system.orchestrator.create_snapshot("empty")
    await system.environment.raw_client.insert("projects", [{"id": 1}])
    await system.orchestrator.restore_snapshot(snapshot_id)
    assert (await system.environment.raw_client.select("projects")).count == 0

    await system.cache.set("w", "s", "p", 1)
    await system.orchestrator.clear_cache("w", "s")
    assert system.cache.entries() == []
