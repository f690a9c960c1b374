"""
Dependency graph and registration tests
"""
import pytest

from stepflow.core.graph import DependencyGraph
from stepflow.core.registry import WorkflowRegistry, validate_workflow
from stepflow.core.steps import ConditionalStep, FunctionStep, HumanStep, LoopStep
from stepflow.exceptions import CyclicDependencyError, WorkflowNotFoundError, WorkflowValidationError
from stepflow.models.workflow import Step, Workflow


def noop(step_ctx):
    return {}


def fn(step_id, after=(), **kwargs):
    return FunctionStep(id=step_id, fn=noop, after=set(after), **kwargs)


class TestDependencyGraph:
    """Edges, cycles and levels"""

    def test_parallel_levels(self):
        graph = DependencyGraph([
            fn("a"), fn("b"), fn("c", after=["a", "b"]), fn("d", after=["c"]), fn("e", after=["a"])
        ])
        graph.validate()
        assert graph.parallel_levels() == [["a", "b"], ["c", "e"], ["d"]]
        assert sorted(graph.roots()) == ["a", "b"]
        assert sorted(graph.sinks()) == ["d", "e"]
        assert graph.descendants("a") == {"c", "d", "e"}

    def test_two_step_cycle_is_named(self):
        graph = DependencyGraph([fn("a", after=["b"]), fn("b", after=["a"])])
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.validate()
        assert exc_info.value.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in str(exc_info.value)

    def test_longer_cycle(self):
        graph = DependencyGraph([
            fn("start"), fn("a", after=["start", "c"]), fn("b", after=["a"]), fn("c", after=["b"])
        ])
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.validate()
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CyclicDependencyError):
            DependencyGraph([fn("a", after=["a"])]).validate()

    def test_unknown_dependency(self):
        with pytest.raises(WorkflowValidationError):
            DependencyGraph([fn("a", after=["ghost"])])

    def test_duplicate_ids(self):
        with pytest.raises(WorkflowValidationError):
            DependencyGraph([fn("a"), fn("a")])

    def test_branch_targets_depend_on_conditional(self):
        graph = DependencyGraph([
            ConditionalStep(id="check", predicate="$.input.ok == true", on_true=["yes"], on_false=["no"]),
            fn("yes"),
            fn("no"),
        ])
        assert graph.predecessors("yes") == {"check"}
        assert graph.predecessors("no") == {"check"}

    def test_unknown_branch_target(self):
        with pytest.raises(WorkflowValidationError):
            DependencyGraph([
                ConditionalStep(id="check", predicate="$.input.ok", on_true=["missing"]),
            ])

    def test_bad_variable_path(self):
        graph = DependencyGraph([fn("a", variables={"x": "$.input["})])
        with pytest.raises(WorkflowValidationError):
            graph.validate()


class TestRegistration:
    """Workflow registry validation"""

    def test_acyclic_workflow_registers(self):
        registry = WorkflowRegistry()
        graph = registry.register(Workflow(id="wf", steps=[fn("a"), fn("b", after=["a"])]))
        assert "wf" in registry
        assert graph.parallel_levels() == [["a"], ["b"]]
        assert registry.graph("wf") is graph

    def test_cyclic_workflow_is_rejected(self):
        registry = WorkflowRegistry()
        with pytest.raises(CyclicDependencyError):
            registry.register(Workflow(id="wf", steps=[fn("a", after=["b"]), fn("b", after=["a"])]))
        assert "wf" not in registry

    def test_unregister_and_lookup(self):
        registry = WorkflowRegistry()
        registry.register(Workflow(id="wf", steps=[fn("a")]))
        assert registry.unregister("wf") is True
        assert registry.unregister("wf") is False
        with pytest.raises(WorkflowNotFoundError):
            registry.get("wf")

    def test_replace_can_be_refused(self):
        registry = WorkflowRegistry()
        registry.register(Workflow(id="wf", steps=[fn("a")]))
        with pytest.raises(WorkflowValidationError):
            registry.register(Workflow(id="wf", steps=[fn("a")]), replace=False)

    def test_reference_to_undeclared_step(self):
        workflow = Workflow(id="wf", steps=[fn("a", variables={"x": "$.steps.ghost.output.value"})])
        with pytest.raises(WorkflowValidationError, match="ghost"):
            validate_workflow(workflow)

    def test_output_reference_to_undeclared_step(self):
        workflow = Workflow(id="wf", steps=[fn("a")], output={"x": "$.steps.ghost.output"})
        with pytest.raises(WorkflowValidationError):
            validate_workflow(workflow)

    def test_duplicate_id_inside_loop_body(self):
        workflow = Workflow(id="wf", steps=[
            fn("a"),
            LoopStep(id="loop", body=[fn("a")], max_iterations=2),
        ])
        with pytest.raises(WorkflowValidationError, match="Duplicate"):
            validate_workflow(workflow)

    def test_loop_body_cannot_suspend(self):
        with pytest.raises(WorkflowValidationError):
            LoopStep(id="loop", body=[HumanStep(id="ask", prompt="ok?")])

    def test_bare_step_is_rejected(self):
        with pytest.raises(WorkflowValidationError):
            validate_workflow(Workflow(id="wf", steps=[Step(id="plain")]))
