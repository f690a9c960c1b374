"""
Scheduling, control flow and error policy tests
"""
import asyncio

import pytest

from stepflow.config import EngineSettings
from stepflow.core.engine import ExecutionOptions, WorkflowEngine
from stepflow.core.steps import AgentStep, ConditionalStep, FunctionStep, LoopStep, SubWorkflowStep
from stepflow.models.execution import RunStatus, StepStatus
from stepflow.models.workflow import ErrorHandlingMode, RetryPolicy, Workflow, ref


class TestDependencyScheduling:
    """Ready-set computation and concurrent dispatch"""

    @pytest.mark.asyncio
    async def test_join_waits_for_both_predecessors(self, engine):
        """stepC never starts while stepA or stepB is pending or running"""
        observed = {}

        async def slow(step_ctx):
            await asyncio.sleep(0.05)
            return {"from": step_ctx.step.id}

        async def join(step_ctx):
            observed["a"] = step_ctx.context.status_of("stepA")
            observed["b"] = step_ctx.context.status_of("stepB")
            return {"joined": [step_ctx.inputs["a"], step_ctx.inputs["b"]]}

        engine.register_workflow(Workflow(id="fan-in", steps=[
            FunctionStep(id="stepA", fn=slow),
            FunctionStep(id="stepB", fn=slow),
            FunctionStep(id="stepC", fn=join, after={"stepA", "stepB"}, variables={
                "a": "$.steps.stepA.output.from",
                "b": "$.steps.stepB.output.from",
            }),
        ]))

        result = await engine.execute_workflow("fan-in", {})

        assert result.success
        assert observed == {"a": StepStatus.SUCCESS, "b": StepStatus.SUCCESS}
        assert result.output == {"stepC": {"joined": ["stepA", "stepB"]}}
        assert result.steps["stepC"].started_at >= result.steps["stepA"].finished_at
        assert result.steps["stepC"].started_at >= result.steps["stepB"].finished_at

    @pytest.mark.asyncio
    async def test_independent_steps_run_concurrently(self, engine):
        running = []
        peak = []

        async def work(step_ctx):
            running.append(step_ctx.step.id)
            peak.append(len(running))
            await asyncio.sleep(0.05)
            running.remove(step_ctx.step.id)
            return {}

        engine.register_workflow(Workflow(id="parallel", steps=[
            FunctionStep(id=f"s{i}", fn=work) for i in range(3)
        ]))
        result = await engine.execute_workflow("parallel")

        assert result.success
        assert max(peak) == 3

    @pytest.mark.asyncio
    async def test_max_concurrency_is_respected(self, agent_runtime):
        engine = WorkflowEngine(agent_runtime=agent_runtime, settings=EngineSettings(max_concurrency=1))
        running = []
        peak = []

        async def work(step_ctx):
            running.append(step_ctx.step.id)
            peak.append(len(running))
            await asyncio.sleep(0.01)
            running.remove(step_ctx.step.id)
            return {}

        engine.register_workflow(Workflow(id="serial", steps=[
            FunctionStep(id=f"s{i}", fn=work) for i in range(3)
        ]))
        result = await engine.execute_workflow("serial")

        assert result.success
        assert max(peak) == 1
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_false_condition_skips_and_satisfies_dependents(self, engine):
        engine.register_workflow(Workflow(id="skip", steps=[
            FunctionStep(id="optional", fn=lambda c: {"ran": True}, condition=lambda ctx: False),
            FunctionStep(id="after", fn=lambda c: {"ran": True}, after={"optional"}),
        ]))

        result = await engine.execute_workflow("skip")

        assert result.success
        assert result.steps["optional"].status == StepStatus.SKIPPED
        assert result.steps["after"].status == StepStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_raising_condition_fails_the_step(self, engine):
        def broken(ctx):
            raise RuntimeError("bad condition")

        engine.register_workflow(Workflow(id="bad-condition", steps=[
            FunctionStep(id="guarded", fn=lambda c: {}, condition=broken),
        ]))

        result = await engine.execute_workflow("bad-condition")

        assert result.status == RunStatus.FAILED
        assert result.steps["guarded"].status == StepStatus.ERROR
        assert "bad condition" in result.error["message"]

    @pytest.mark.asyncio
    async def test_agent_step_invokes_runtime(self, engine, agent_runtime):
        engine.register_workflow(Workflow(id="agent", steps=[
            AgentStep(id="classify", agent_id="classifier", variables={"text": "$.input.text"}),
        ]))

        result = await engine.execute_workflow("agent", {"text": "win a prize"})

        assert result.success
        assert result.steps["classify"].output == {"label": "spam", "confidence": 0.93}
        assert agent_runtime.calls["classifier"] == [{"text": "win a prize"}]

    @pytest.mark.asyncio
    async def test_unknown_agent_fails_the_run(self, engine):
        engine.register_workflow(Workflow(id="agent", steps=[
            AgentStep(id="classify", agent_id="nobody"),
        ]))

        result = await engine.execute_workflow("agent")

        assert result.status == RunStatus.FAILED
        assert result.error["type"] == "AgentNotFoundError"


class TestControlFlow:
    """Conditional, loop and subworkflow steps"""

    @pytest.mark.asyncio
    async def test_conditional_takes_false_branch(self, engine):
        engine.register_workflow(Workflow(id="review", steps=[
            ConditionalStep(
                id="gate",
                predicate="$.input.score >= 8",
                on_true=["publish"],
                on_false=["revise"],
            ),
            FunctionStep(id="publish", fn=lambda c: {"action": "publish"}),
            FunctionStep(id="revise", fn=lambda c: {"action": "revise"}),
        ]))

        result = await engine.execute_workflow("review", {"score": 5})

        assert result.success
        assert result.steps["gate"].branch == "false"
        assert result.steps["gate"].output == {"result": False, "branch": "false"}
        assert result.steps["publish"].status == StepStatus.SKIPPED
        assert result.steps["revise"].status == StepStatus.SUCCESS
        assert result.output == {"revise": {"action": "revise"}}

    @pytest.mark.asyncio
    async def test_skip_propagates_through_branch_chain(self, engine):
        engine.register_workflow(Workflow(id="chain", steps=[
            ConditionalStep(id="gate", predicate=lambda ctx: True, on_true=["a"], on_false=["b"]),
            FunctionStep(id="a", fn=lambda c: {"path": "a"}),
            FunctionStep(id="b", fn=lambda c: {"path": "b"}),
            FunctionStep(id="join", fn=lambda c: {"done": True}, after={"a", "b"}),
        ]))

        result = await engine.execute_workflow("chain")

        assert result.steps["b"].status == StepStatus.SKIPPED
        assert result.steps["a"].status == StepStatus.SUCCESS
        assert result.steps["join"].status == StepStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_steps_below_an_unselected_branch_are_skipped(self, engine):
        engine.register_workflow(Workflow(id="nested", steps=[
            ConditionalStep(id="gate", predicate=lambda ctx: False, on_true=["t1"], on_false=["f1"]),
            FunctionStep(id="t1", fn=lambda c: {"v": 1}),
            FunctionStep(id="t2", fn=lambda c: {"v": c.inputs["v"] + 1}, after={"t1"},
                         variables={"v": "$.steps.t1.output.v"}),
            FunctionStep(id="t3", fn=lambda c: {"v": 3}, after={"t2"}),
            FunctionStep(id="f1", fn=lambda c: {"v": 0}),
        ]))

        result = await engine.execute_workflow("nested")

        assert result.success, result.error
        assert result.steps["t1"].status == StepStatus.SKIPPED
        assert result.steps["t2"].status == StepStatus.SKIPPED
        assert result.steps["t3"].status == StepStatus.SKIPPED
        assert result.steps["t2"].branch_inactive
        assert result.output == {"f1": {"v": 0}}

    @pytest.mark.asyncio
    async def test_condition_skip_does_not_skip_dependents(self, engine):
        engine.register_workflow(Workflow(id="optional", steps=[
            FunctionStep(id="extra", fn=lambda c: {"v": 1}, condition=lambda ctx: False),
            FunctionStep(id="after_extra", fn=lambda c: {"ran": True}, after={"extra"}),
        ]))

        result = await engine.execute_workflow("optional")

        assert result.steps["extra"].status == StepStatus.SKIPPED
        assert not result.steps["extra"].branch_inactive
        assert result.steps["after_extra"].status == StepStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_loop_stops_when_predicate_fails(self, engine):
        """Body increments iterationCount; the loop runs exactly 5 times"""
        calls = []

        def increment(step_ctx):
            calls.append(step_ctx.inputs["count"])
            return {"count": step_ctx.inputs["count"] + 1}

        engine.register_workflow(Workflow(id="loop", steps=[
            LoopStep(
                id="refine",
                body=[FunctionStep(id="inc", fn=increment, variables={"count": "$.variables.iterationCount"})],
                predicate="$.variables.iterationCount < 5",
                loop_variables={"iterationCount": 0},
                carry={"iterationCount": "$.steps.inc.output.count"},
            ),
        ]))

        result = await engine.execute_workflow("loop")

        assert result.success
        assert calls == [0, 1, 2, 3, 4]
        output = result.steps["refine"].output
        assert output["iterations"] == 5
        assert output["variables"] == {"iterationCount": 5}
        assert output["last"] == {"inc": {"count": 5}}

    @pytest.mark.asyncio
    async def test_loop_cap_is_enforced(self, engine):
        """A predicate that never turns false still stops at max_iterations"""
        seen = []

        engine.register_workflow(Workflow(id="capped", steps=[
            LoopStep(
                id="forever",
                body=[FunctionStep(id="tick", fn=lambda c: seen.append(c.inputs["i"]),
                                   variables={"i": "$.variables.iteration"})],
                predicate="$.variables.quality < 100",
                max_iterations=5,
                loop_variables={"quality": 1},
            ),
        ]))

        result = await engine.execute_workflow("capped")

        assert result.success
        assert seen == [0, 1, 2, 3, 4]
        assert result.steps["forever"].output["iterations"] == 5

    @pytest.mark.asyncio
    async def test_failing_loop_body_fails_the_loop(self, engine):
        def explode(step_ctx):
            if step_ctx.inputs["i"] == 2:
                raise ValueError("boom")
            return {}

        engine.register_workflow(Workflow(id="loop-fail", steps=[
            LoopStep(
                id="loop",
                body=[FunctionStep(id="body", fn=explode, variables={"i": "$.variables.iteration"})],
                max_iterations=5,
            ),
        ]))

        result = await engine.execute_workflow("loop-fail")

        assert result.status == RunStatus.FAILED
        assert result.steps["loop"].status == StepStatus.ERROR
        assert "iteration 2" in result.steps["loop"].error["message"]

    @pytest.mark.asyncio
    async def test_subworkflow_output_becomes_step_output(self, engine):
        engine.register_workflow(Workflow(
            id="child",
            steps=[FunctionStep(id="double", fn=lambda c: {"value": c.inputs["n"] * 2},
                                variables={"n": "$.input.n"})],
            output={"doubled": "$.steps.double.output.value"},
        ))
        engine.register_workflow(Workflow(id="parent", steps=[
            SubWorkflowStep(id="call", workflow_id="child", variables={"n": "$.input.number"}),
            FunctionStep(id="report", fn=lambda c: {"seen": c.inputs["d"]}, after={"call"},
                         variables={"d": "$.steps.call.output.doubled"}),
        ]))

        result = await engine.execute_workflow("parent", {"number": 21})

        assert result.success
        assert result.steps["call"].output == {"doubled": 42}
        assert result.output == {"report": {"seen": 42}}


class TestRetryAndErrors:
    """Retry policy and error handling modes"""

    @pytest.mark.asyncio
    async def test_retry_succeeds_on_third_attempt(self, engine):
        attempts = []

        def flaky(step_ctx):
            attempts.append(step_ctx.attempt)
            if len(attempts) < 3:
                raise ConnectionError("transient")
            return {"ok": True}

        engine.register_workflow(Workflow(id="retry", steps=[
            FunctionStep(id="flaky", fn=flaky, retry_policy=RetryPolicy.constant(3, 0.1)),
        ]))

        result = await engine.execute_workflow("retry")

        assert result.success
        assert attempts == [1, 2, 3]
        assert result.steps["flaky"].status == StepStatus.SUCCESS
        assert result.steps["flaky"].attempts == 3

    @pytest.mark.asyncio
    async def test_retry_exhaustion_fails_the_run(self, engine):
        engine.register_workflow(Workflow(id="exhaust", steps=[
            FunctionStep(id="always", fn=lambda c: 1 / 0, retry_policy=RetryPolicy.constant(2, 0)),
        ]))

        result = await engine.execute_workflow("exhaust")

        assert result.status == RunStatus.FAILED
        assert result.steps["always"].attempts == 2
        assert result.error["type"] == "ZeroDivisionError"

    @pytest.mark.asyncio
    async def test_retry_on_limits_retried_errors(self, engine):
        attempts = []

        def fails(step_ctx):
            attempts.append(1)
            raise KeyError("nope")

        engine.register_workflow(Workflow(id="retry-on", steps=[
            FunctionStep(id="s", fn=fails,
                         retry_policy=RetryPolicy.constant(3, 0, retry_on=(ConnectionError,))),
        ]))

        await engine.execute_workflow("retry-on")
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_missing_variable_is_not_retried(self, engine):
        engine.register_workflow(Workflow(id="missing", steps=[
            FunctionStep(id="s", fn=lambda c: {}, variables={"x": "$.input.absent"},
                         retry_policy=RetryPolicy.constant(3, 0)),
        ]))

        result = await engine.execute_workflow("missing")

        assert result.status == RunStatus.FAILED
        assert result.steps["s"].attempts == 1
        assert result.error["type"] == "MissingVariableError"
        assert result.error["path"] == "$.input.absent"

    @pytest.mark.asyncio
    async def test_default_fills_missing_variable(self, engine):
        engine.register_workflow(Workflow(id="defaults", steps=[
            FunctionStep(id="s", fn=lambda c: {"x": c.inputs["x"]},
                         variables={"x": ref("$.input.absent", default=7)}),
        ]))

        result = await engine.execute_workflow("defaults")
        assert result.steps["s"].output == {"x": 7}

    @pytest.mark.asyncio
    async def test_fail_workflow_cancels_in_flight_siblings(self, engine):
        async def slow(step_ctx):
            await asyncio.sleep(5)
            return {}

        async def bad(step_ctx):
            await asyncio.sleep(0.01)
            raise ValueError("broken")

        engine.register_workflow(Workflow(id="abort", steps=[
            FunctionStep(id="slow", fn=slow),
            FunctionStep(id="bad", fn=bad),
            FunctionStep(id="after_bad", fn=lambda c: {}, after={"bad"}),
        ]))

        result = await engine.execute_workflow("abort")

        assert result.status == RunStatus.FAILED
        assert not result.success
        assert result.error["type"] == "ValueError"
        assert result.steps["bad"].status == StepStatus.ERROR
        assert result.steps["slow"].status == StepStatus.CANCELLED
        assert "after_bad" not in result.steps

    @pytest.mark.asyncio
    async def test_continue_on_error_reports_and_runs_dependents(self, engine):
        engine.register_workflow(Workflow(id="continue", steps=[
            FunctionStep(id="bad", fn=lambda c: 1 / 0, error_handling=ErrorHandlingMode.CONTINUE_ON_ERROR),
            FunctionStep(id="next", fn=lambda c: {"ran": True}, after={"bad"}),
        ]))

        result = await engine.execute_workflow("continue")

        assert result.success
        assert result.steps["bad"].status == StepStatus.ERROR
        assert result.steps["next"].status == StepStatus.SUCCESS
        assert len(result.errors) == 1
        assert result.errors[0]["step_id"] == "bad"
        assert result.errors[0]["type"] == "ZeroDivisionError"

    @pytest.mark.asyncio
    async def test_ignore_error_is_not_reported(self, engine):
        engine.register_workflow(Workflow(id="ignore", steps=[
            FunctionStep(id="bad", fn=lambda c: 1 / 0, error_handling="ignore_error"),
            FunctionStep(id="next", fn=lambda c: {"ran": True}, after={"bad"}),
        ]))

        result = await engine.execute_workflow("ignore")

        assert result.success
        assert result.errors == []
        assert result.steps["next"].status == StepStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_step_timeout(self, engine):
        async def hang(step_ctx):
            await asyncio.sleep(2)

        engine.register_workflow(Workflow(id="slow-step", steps=[
            FunctionStep(id="hang", fn=hang, timeout=0.05, retry_policy=RetryPolicy.constant(3, 0)),
        ]))

        result = await engine.execute_workflow("slow-step")

        assert result.status == RunStatus.FAILED
        assert result.error["type"] == "StepTimeoutError"
        assert result.steps["hang"].attempts == 1

    @pytest.mark.asyncio
    async def test_run_timeout(self, engine):
        async def hang(step_ctx):
            await asyncio.sleep(2)

        engine.register_workflow(Workflow(id="slow-run", steps=[FunctionStep(id="hang", fn=hang)]))

        result = await engine.execute_workflow("slow-run", options=ExecutionOptions(timeout=0.1))

        assert result.status == RunStatus.FAILED
        assert result.error["type"] == "WorkflowTimeoutError"
        assert result.steps["hang"].status == StepStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_output_schema_violation(self, engine):
        engine.register_workflow(Workflow(id="schema", steps=[
            FunctionStep(id="s", fn=lambda c: {"other": 1},
                         output_schema={"type": "object", "required": ["value"]}),
        ]))

        result = await engine.execute_workflow("schema")

        assert result.status == RunStatus.FAILED
        assert result.error["type"] == "StepExecutionError"
        assert "validation" in result.error["message"]
