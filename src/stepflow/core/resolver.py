"""
Variable resolver

Evaluates path expressions such as ``$.steps.fetch.output.items[*].id``
against a workflow context.

Supported segments:

* field:              ``.name`` or ``['name']``
* index:              ``[0]``, ``[-1]``
* wildcard:           ``[*]`` or ``.*`` (list items or mapping values)
* recursive descent:  ``..name``

Paths containing a wildcard or a descent always produce a list.
"""
import logging
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Tuple

from ..exceptions import MissingVariableError, WorkflowValidationError
from ..models.workflow import VariableRef
from ..models.execution import WorkflowContext


logger = logging.getLogger(__name__)

FIELD = "field"
INDEX = "index"
WILDCARD = "wildcard"
DESCENT = "descent"

Segment = Tuple[str, Any]


class _NavigationError(Exception):
    pass


@lru_cache(maxsize=1024)
def parse_path(path: str) -> Tuple[Segment, ...]:
    """Parse a path expression into segments"""
    text = path.strip()
    if not text.startswith("$"):
        text = "$." + text
    segments: List[Segment] = []
    pos = 1
    length = len(text)

    while pos < length:
        char = text[pos]
        if text.startswith("..", pos):
            pos += 2
            name, pos = _read_name(text, pos)
            if not name:
                raise WorkflowValidationError(f"Invalid path '{path}': empty name after '..'")
            segments.append((DESCENT, name))
        elif char == ".":
            pos += 1
            if pos < length and text[pos] == "*":
                segments.append((WILDCARD, None))
                pos += 1
                continue
            name, pos = _read_name(text, pos)
            if not name:
                raise WorkflowValidationError(f"Invalid path '{path}': empty field at {pos}")
            segments.append((FIELD, name))
        elif char == "[":
            end = text.find("]", pos)
            if end == -1:
                raise WorkflowValidationError(f"Invalid path '{path}': unclosed '['")
            body = text[pos + 1:end].strip()
            pos = end + 1
            if body == "*":
                segments.append((WILDCARD, None))
            elif len(body) >= 2 and body[0] == body[-1] and body[0] in ("'", '"'):
                segments.append((FIELD, body[1:-1]))
            else:
                try:
                    segments.append((INDEX, int(body)))
                except ValueError:
                    raise WorkflowValidationError(f"Invalid path '{path}': bad index '{body}'")
        else:
            raise WorkflowValidationError(f"Invalid path '{path}': unexpected '{char}' at {pos}")

    return tuple(segments)


def _read_name(text: str, pos: int) -> Tuple[str, int]:
    start = pos
    while pos < len(text) and text[pos] not in ".[":
        pos += 1
    return text[start:pos].strip(), pos


def is_multi_valued(segments: Tuple[Segment, ...]) -> bool:
    return any(kind in (WILDCARD, DESCENT) for kind, _ in segments)


def _step(node: Any, segment: Segment) -> Any:
    """Apply a single field/index segment"""
    kind, value = segment
    if kind == FIELD:
        if isinstance(node, dict):
            if value in node:
                return node[value]
            raise _NavigationError(f"key '{value}' not found")
        if isinstance(node, (list, tuple)) and value.lstrip("-").isdigit():
            return _step(node, (INDEX, int(value)))
        raise _NavigationError(f"cannot read '{value}' from {type(node).__name__}")
    if kind == INDEX:
        if isinstance(node, (list, tuple)):
            try:
                return node[value]
            except IndexError:
                raise _NavigationError(f"index {value} out of range")
        raise _NavigationError(f"cannot index {type(node).__name__}")
    raise _NavigationError(f"unsupported segment {kind}")


def _children(node: Any) -> List[Any]:
    if isinstance(node, dict):
        return list(node.values())
    if isinstance(node, (list, tuple)):
        return list(node)
    return []


def _descend(node: Any, name: str) -> Iterator[Any]:
    """Pre-order search for every value stored under ``name``"""
    if isinstance(node, dict):
        if name in node:
            yield node[name]
        for child in node.values():
            yield from _descend(child, name)
    elif isinstance(node, (list, tuple)):
        for child in node:
            yield from _descend(child, name)


def _walk(node: Any, segments: Tuple[Segment, ...]) -> Iterator[Any]:
    """Yield every match, skipping branches that fail to navigate"""
    if not segments:
        yield node
        return
    kind, value = segments[0]
    rest = segments[1:]
    if kind == WILDCARD:
        for child in _children(node):
            yield from _walk(child, rest)
    elif kind == DESCENT:
        for match in _descend(node, value):
            yield from _walk(match, rest)
    else:
        try:
            child = _step(node, segments[0])
        except _NavigationError:
            return
        yield from _walk(child, rest)


def navigate(data: Any, path: str) -> Any:
    """
    Navigate plain data with a path; raises MissingVariableError on failure.

    Segments up to the first wildcard or descent must all exist, and the
    node they lead to must be a container. Only elements reached through
    the wildcard are allowed to drop out of the result.
    """
    segments = parse_path(path)
    node = data
    for index, segment in enumerate(segments):
        if segment[0] in (WILDCARD, DESCENT):
            if not isinstance(node, (dict, list, tuple)):
                raise MissingVariableError(
                    path, f"cannot expand {type(node).__name__} with '{segment[1] or '*'}'"
                )
            return list(_walk(node, segments[index:]))
        try:
            node = _step(node, segment)
        except _NavigationError as e:
            raise MissingVariableError(path, str(e))
    return node


class VariableResolver:
    """Resolves variable references against a workflow context"""

    def resolve(self, variable: VariableRef, context: WorkflowContext) -> Any:
        """Resolve one reference"""
        return self.resolve_in(variable, context.as_data())

    def resolve_in(self, variable: VariableRef, data: Dict[str, Any]) -> Any:
        """Resolve one reference against an already-built data view"""
        try:
            value = navigate(data, variable.path)
        except MissingVariableError:
            if variable.has_default:
                return variable.default
            raise

        if variable.transform is not None:
            value = variable.transform(value)
        return value

    def resolve_all(
        self,
        variables: Dict[str, VariableRef],
        context: WorkflowContext
    ) -> Dict[str, Any]:
        """Resolve a name -> reference mapping"""
        data = context.as_data()
        return {
            name: self.resolve_in(variable, data)
            for name, variable in variables.items()
        }

    def validate(self, variable: VariableRef) -> None:
        """Check path syntax without resolving"""
        parse_path(variable.path)
