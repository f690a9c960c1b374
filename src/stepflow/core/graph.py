"""
Dependency graph
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Set

from ..exceptions import CyclicDependencyError, WorkflowValidationError
from ..models.workflow import Step
from .resolver import parse_path


logger = logging.getLogger(__name__)


class DependencyGraph:
    """
    Steps plus their ``after`` edges.

    Branch steps of conditional, human and wait-for-event steps receive an
    implicit edge on the step that selects them.
    """

    def __init__(self, steps: Iterable[Step]):
        self.steps: Dict[str, Step] = {}
        for step in steps:
            if step.id in self.steps:
                raise WorkflowValidationError(f"Duplicate step id: {step.id}")
            self.steps[step.id] = step

        self._predecessors: Dict[str, Set[str]] = {
            step_id: set(step.after) for step_id, step in self.steps.items()
        }
        for step in self.steps.values():
            for target, sources in step.implicit_after().items():
                if target not in self.steps:
                    raise WorkflowValidationError(
                        f"Step '{step.id}' references unknown branch step '{target}'"
                    )
                self._predecessors[target].update(sources)

        self._successors: Dict[str, Set[str]] = defaultdict(set)
        for step_id, preds in self._predecessors.items():
            for pred in preds:
                if pred not in self.steps:
                    raise WorkflowValidationError(
                        f"Step '{step_id}' depends on unknown step '{pred}'"
                    )
                self._successors[pred].add(step_id)

    def __contains__(self, step_id: str) -> bool:
        return step_id in self.steps

    def __len__(self) -> int:
        return len(self.steps)

    def predecessors(self, step_id: str) -> Set[str]:
        return self._predecessors.get(step_id, set())

    def successors(self, step_id: str) -> Set[str]:
        return self._successors.get(step_id, set())

    def descendants(self, step_id: str) -> Set[str]:
        """All steps reachable from ``step_id``"""
        seen: Set[str] = set()
        pending = list(self.successors(step_id))
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.successors(current))
        return seen

    def validate(self) -> None:
        """Reject cycles and malformed variable paths"""
        self._ensure_acyclic()
        for step in self.steps.values():
            for name, variable in step.variables.items():
                try:
                    parse_path(variable.path)
                except WorkflowValidationError as e:
                    raise WorkflowValidationError(
                        f"Step '{step.id}' variable '{name}': {e}"
                    )

    def _ensure_acyclic(self) -> None:
        visited: Dict[str, str] = {}

        def visit(step_id: str, stack: List[str]) -> None:
            state = visited.get(step_id)
            if state == "temp":
                start = stack.index(step_id)
                raise CyclicDependencyError(stack[start:] + [step_id])
            if state == "perm":
                return
            visited[step_id] = "temp"
            for successor in sorted(self.successors(step_id)):
                visit(successor, stack + [step_id])
            visited[step_id] = "perm"

        for step_id in self.steps:
            if step_id not in visited:
                visit(step_id, [])

    def parallel_levels(self) -> List[List[str]]:
        """Topological layers; steps within one layer are independent"""
        in_degree = {step_id: len(preds) for step_id, preds in self._predecessors.items()}
        remaining = set(self.steps)
        levels: List[List[str]] = []

        while remaining:
            current = sorted(step_id for step_id in remaining if in_degree[step_id] == 0)
            if not current:
                self._ensure_acyclic()
                break
            levels.append(current)
            for step_id in current:
                remaining.remove(step_id)
                for successor in self.successors(step_id):
                    in_degree[successor] -= 1

        return levels

    def roots(self) -> List[str]:
        return [step_id for step_id, preds in self._predecessors.items() if not preds]

    def sinks(self) -> List[str]:
        return [step_id for step_id in self.steps if not self.successors(step_id)]
