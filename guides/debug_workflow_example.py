"""Example: record, cache, replay and test a small research workflow.

Run with ``python guides/debug_workflow_example.py``. Everything lives in
memory, so the example leaves no files behind.
"""

import asyncio
import random

from flowdebug import (
    DebugSystem,
    ExecutionConfig,
    ModifyInput,
    ReplayConfig,
    TestAssertion,
    preset,
)


async def call_model(topic: str) -> dict:
    """Stand-in for a real provider call."""
    await asyncio.sleep(0.05)
    return {"topic": topic, "sections": random.randint(3, 6)}


async def research(ctx):
    outline = await ctx.execute_step(
        "outline",
        "llm_call",
        lambda topic: ctx.execute_llm_call(
            "outline", f"Outline a report about {topic}", lambda: call_model(topic)
        ),
        input="caching",
    )
    await ctx.execute_step(
        "save",
        "database_operation",
        lambda: ctx.db.upsert("projects", [{"id": "report", **outline}]),
    )
    return outline


async def main():
    config = preset("test")
    config.storage = "memory"
    config.database.test_url = "memory://"
    config.database.production_url = "memory://"
    system = await DebugSystem(config).start()

    first = await system.orchestrator.execute(research, "research")
    print(f"First run: {first.result} in {first.execution.total_duration:.1f}ms")

    second = await system.orchestrator.execute(research, "research")
    print(f"Second run (cached): {second.result}")
    print(f"Cache stats: {system.cache.get_stats()}")

    await system.orchestrator.clear_cache("research")
    replayed = await system.orchestrator.replay(
        research, ReplayConfig(workflow_execution_id=first.execution.id)
    )
    diff = system.orchestrator.compare_executions(first.execution.id, replayed.execution.id)
    print(f"Replay differences: {diff.summary.total_differences}")

    def rename_topic(bp):
        print(f"Paused at {bp.step_name} with input {bp.input!r}")
        return ModifyInput("replay")

    patched = await system.orchestrator.execute_with_breakpoints(
        research,
        ExecutionConfig(name="research", breakpoints=["outline"], enable_cache=False),
        rename_topic,
    )
    print(f"Patched run: {patched.result}")

    system.scenarios.create_scenario(
        "seeded outline",
        "research",
        expected_llm_responses={"outline": {"topic": "seeded", "sections": 1}},
        assertions=[
            TestAssertion(type="output_contains", condition="seeded"),
            TestAssertion(type="database_state", condition={"table": "projects", "count": 1}),
        ],
    )
    report = await system.run_test_suite(research)
    print(f"Scenarios: {report.summary.passed}/{report.summary.total} passed")

    await system.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
