"""
Per-engine workflow registry
"""
import logging
from typing import Dict, List

from ..exceptions import WorkflowNotFoundError, WorkflowValidationError
from ..models.workflow import Workflow, Step
from .graph import DependencyGraph
from .resolver import FIELD, parse_path


logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Validated workflows and their dependency graphs"""

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}
        self._graphs: Dict[str, DependencyGraph] = {}

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)

    def register(self, workflow: Workflow, replace: bool = True) -> DependencyGraph:
        """Validate and store a workflow"""
        if not workflow.id:
            raise WorkflowValidationError("Workflow id is required")
        if not replace and workflow.id in self._workflows:
            raise WorkflowValidationError(f"Workflow already registered: {workflow.id}")

        graph = validate_workflow(workflow)
        self._workflows[workflow.id] = workflow
        self._graphs[workflow.id] = graph
        logger.info(f"Registered workflow {workflow.id} ({len(workflow.steps)} steps)")
        return graph

    def unregister(self, workflow_id: str) -> bool:
        removed = self._workflows.pop(workflow_id, None)
        self._graphs.pop(workflow_id, None)
        if removed:
            logger.info(f"Unregistered workflow {workflow_id}")
        return removed is not None

    def get(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    def graph(self, workflow_id: str) -> DependencyGraph:
        self.get(workflow_id)
        return self._graphs[workflow_id]

    def list(self) -> List[Workflow]:
        return list(self._workflows.values())


def validate_workflow(workflow: Workflow) -> DependencyGraph:
    """Check a workflow and every nested body; return the top-level graph"""
    all_ids = workflow.all_step_ids()
    seen = set()
    for step_id in all_ids:
        if step_id in seen:
            raise WorkflowValidationError(f"Duplicate step id: {step_id}")
        seen.add(step_id)

    graph = _validate_steps(workflow.steps, seen)

    for name, variable in workflow.output.items():
        _check_reference(f"output '{name}'", variable.path, seen)
    return graph


def _validate_steps(steps: List[Step], known_ids) -> DependencyGraph:
    for step in steps:
        if not hasattr(step, "prepare"):
            raise WorkflowValidationError(
                f"Step '{step.id}' is a bare Step; use one of the step kinds"
            )

    graph = DependencyGraph(steps)
    graph.validate()

    for step in steps:
        for name, variable in step.variables.items():
            _check_reference(f"step '{step.id}' variable '{name}'", variable.path, known_ids)
        carry = getattr(step, "carry", {})
        for name, variable in carry.items():
            _check_reference(f"step '{step.id}' carry '{name}'", variable.path, known_ids)
        nested = step.nested_steps()
        if nested:
            _validate_steps(nested, known_ids)
    return graph


def _check_reference(where: str, path: str, known_ids) -> None:
    """Reject references to steps that are not declared anywhere"""
    try:
        segments = parse_path(path)
    except WorkflowValidationError as e:
        raise WorkflowValidationError(f"{where}: {e}")

    if len(segments) >= 2 and segments[0] == (FIELD, "steps") and segments[1][0] == FIELD:
        step_id = segments[1][1]
        if step_id not in known_ids:
            raise WorkflowValidationError(f"{where} references undeclared step '{step_id}'")
