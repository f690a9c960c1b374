"""
Workflow definition parser

Turns YAML/JSON documents into Workflow objects. Callables are referenced
by name: either a key of the ``functions`` mapping given to the parser or
an import path ``"package.module:attribute"``.
"""
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Union

import yaml
from jsonschema import Draft7Validator

from ..exceptions import WorkflowParseError, WorkflowValidationError
from ..models.workflow import RetryPolicy, Step, StepKind, VariableRef, Workflow
from .conditions import compile_condition
from .steps import (
    AgentStep, ConditionalStep, FunctionStep, HumanStep, LoopStep,
    SubWorkflowStep, WaitForEventStep
)


logger = logging.getLogger(__name__)


_REF_SCHEMA = {
    "oneOf": [
        {"type": "string"},
        {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "default": {},
                "transform": {"type": "string"},
            },
            "required": ["path"],
            "additionalProperties": False,
        },
    ]
}

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "definitions": {
        "ref": _REF_SCHEMA,
        "refs": {"type": "object", "additionalProperties": {"$ref": "#/definitions/ref"}},
        "ids": {"type": "array", "items": {"type": "string"}},
        "step": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "type": {"enum": [kind.value for kind in StepKind]},
                "name": {"type": "string"},
                "description": {"type": "string"},
                "after": {"$ref": "#/definitions/ids"},
                "variables": {"$ref": "#/definitions/refs"},
                "condition": {"type": "string"},
                "retry": {
                    "type": "object",
                    "properties": {
                        "max_attempts": {"type": "integer", "minimum": 1},
                        "backoff": {"enum": ["constant", "linear", "exponential"]},
                        "delay": {"type": "number", "minimum": 0},
                        "max_delay": {"type": "number", "minimum": 0},
                        "factor": {"type": "number", "minimum": 1},
                        "jitter": {"type": "boolean"},
                    },
                    "additionalProperties": False,
                },
                "error_handling": {"enum": ["fail_workflow", "continue_on_error", "ignore_error"]},
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "output_schema": {"type": "object"},
                "metadata": {"type": "object"},
                "agent": {"type": "string"},
                "config": {"type": "object"},
                "function": {"type": "string"},
                "resume_function": {"type": "string"},
                "predicate": {"type": "string"},
                "on_true": {"$ref": "#/definitions/ids"},
                "on_false": {"$ref": "#/definitions/ids"},
                "body": {"type": "array", "items": {"$ref": "#/definitions/step"}, "minItems": 1},
                "max_iterations": {"type": "integer", "minimum": 1},
                "loop_variables": {"type": "object"},
                "carry": {"$ref": "#/definitions/refs"},
                "workflow": {"type": "string"},
                "prompt": {"type": "string"},
                "assignee": {"type": "string"},
                "response_schema": {"type": "object"},
                "timeout_ms": {"type": "integer", "minimum": 0},
                "on_timeout": {"$ref": "#/definitions/ids"},
                "events": {"type": "object", "additionalProperties": {"$ref": "#/definitions/ids"}},
            },
            "required": ["id", "type"],
            "additionalProperties": False,
        },
    },
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "version": {"type": ["string", "number"]},
        "description": {"type": "string"},
        "input_schema": {"type": "object"},
        "variables": {"type": "object"},
        "metadata": {"type": "object"},
        "output": {"$ref": "#/definitions/refs"},
        "steps": {"type": "array", "items": {"$ref": "#/definitions/step"}, "minItems": 1},
    },
    "required": ["id", "steps"],
    "additionalProperties": False,
}


def _first(value):
    return value[0] if value else None


def _last(value):
    return value[-1] if value else None


BUILTIN_TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "len": len,
    "list": list,
    "sorted": sorted,
    "sum": sum,
    "min": min,
    "max": max,
    "upper": lambda value: str(value).upper(),
    "lower": lambda value: str(value).lower(),
    "strip": lambda value: str(value).strip(),
    "json": lambda value: json.dumps(value, ensure_ascii=False),
    "keys": lambda value: list(value.keys()),
    "values": lambda value: list(value.values()),
    "first": _first,
    "last": _last,
}


class WorkflowParser:
    """Parser for YAML/JSON workflow definitions"""

    def __init__(self, functions: Dict[str, Callable] = None):
        self.functions = dict(functions or {})
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self._validator = Draft7Validator(WORKFLOW_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Workflow:
        """
        Parse a workflow definition.

        Args:
            source: a dict, a path to a .yaml/.yml/.json file, or document text

        Returns:
            Workflow: the parsed (not yet registered) workflow
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and source.lower().endswith((".yaml", ".yml", ".json")):
                return self.parse_file(Path(source))
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> Workflow:
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")
        if not file_path.is_file():
            raise WorkflowParseError(f"Workflow file not found: {file_path}")

        content = file_path.read_text(encoding='utf-8')
        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> Workflow:
        """Parse YAML or JSON text (JSON is valid YAML)"""
        return self.parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow document must be a mapping")
        return data

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow document must be an object")
        return data

    def validate_document(self, data: Dict[str, Any]) -> List[str]:
        """Schema errors for a definition document"""
        if 'workflow' in data:
            data = data['workflow']
        return [
            f"{'.'.join(str(p) for p in error.absolute_path) or 'root'}: {error.message}"
            for error in sorted(self._validator.iter_errors(data), key=lambda e: list(e.absolute_path))
        ]

    def parse_dict(self, data: Dict[str, Any]) -> Workflow:
        if 'workflow' in data:
            data = data['workflow']

        errors = self.validate_document(data)
        if errors:
            raise WorkflowValidationError(f"Workflow definition is invalid: {errors}")

        workflow = Workflow(
            id=data['id'],
            name=data.get('name', ''),
            version=str(data.get('version', '1.0.0')),
            description=data.get('description'),
            steps=[self._parse_step(step_data) for step_data in data['steps']],
            output={
                key: self._parse_ref(value)
                for key, value in (data.get('output') or {}).items()
            },
            variables=data.get('variables', {}),
            input_schema=data.get('input_schema'),
            metadata=data.get('metadata', {}),
        )
        logger.debug(f"Parsed workflow {workflow.id} with {len(workflow.steps)} steps")
        return workflow

    def _parse_ref(self, value: Union[str, Dict[str, Any]]) -> VariableRef:
        if isinstance(value, str):
            return VariableRef(path=value)
        ref = VariableRef(path=value['path'])
        if 'default' in value:
            ref.default = value['default']
        if value.get('transform'):
            ref.transform = self._resolve_transform(value['transform'])
        return ref

    def _resolve_transform(self, name: str) -> Callable[[Any], Any]:
        if name in self.functions:
            return self.functions[name]
        if name in BUILTIN_TRANSFORMS:
            return BUILTIN_TRANSFORMS[name]
        return self._import_callable(name)

    def _resolve_function(self, name: str) -> Callable:
        if name in self.functions:
            return self.functions[name]
        return self._import_callable(name)

    def _import_callable(self, reference: str) -> Callable:
        module_name, sep, attribute = reference.partition(':')
        if not sep or not module_name or not attribute:
            raise WorkflowValidationError(
                f"Unknown callable '{reference}' (expected a registered name or 'module:attribute')"
            )
        try:
            target = importlib.import_module(module_name)
            for part in attribute.split('.'):
                target = getattr(target, part)
        except (ImportError, AttributeError) as e:
            raise WorkflowValidationError(f"Cannot import '{reference}': {e}")
        if not callable(target):
            raise WorkflowValidationError(f"'{reference}' is not callable")
        return target

    def _common(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Attributes shared by every step kind"""
        common: Dict[str, Any] = {
            'id': data['id'],
            'name': data.get('name', ''),
            'description': data.get('description'),
            'after': set(data.get('after', [])),
            'variables': {
                key: self._parse_ref(value)
                for key, value in (data.get('variables') or {}).items()
            },
            'error_handling': data.get('error_handling', 'fail_workflow'),
            'timeout': data.get('timeout'),
            'output_schema': data.get('output_schema'),
            'metadata': data.get('metadata', {}),
        }
        if data.get('condition'):
            common['condition'] = compile_condition(data['condition'])
        if data.get('retry'):
            common['retry_policy'] = RetryPolicy(**data['retry'])
        return common

    def _parse_step(self, data: Dict[str, Any]) -> Step:
        kind = StepKind(data['type'])

        try:
            common = self._common(data)
            if kind == StepKind.AGENT:
                return AgentStep(agent_id=data.get('agent', ''), config=data.get('config', {}), **common)
            if kind == StepKind.FUNCTION:
                if 'function' not in data:
                    raise WorkflowValidationError(f"Function step '{data['id']}' requires 'function'")
                return FunctionStep(
                    fn=self._resolve_function(data['function']),
                    resume_fn=self._resolve_function(data['resume_function'])
                    if data.get('resume_function') else None,
                    **common
                )
            if kind == StepKind.CONDITIONAL:
                return ConditionalStep(
                    predicate=data.get('predicate'),
                    on_true=data.get('on_true', []),
                    on_false=data.get('on_false', []),
                    **common
                )
            if kind == StepKind.LOOP:
                return LoopStep(
                    body=[self._parse_step(step_data) for step_data in data.get('body', [])],
                    predicate=data.get('predicate'),
                    max_iterations=data.get('max_iterations', 100),
                    loop_variables=data.get('loop_variables', {}),
                    carry={
                        key: self._parse_ref(value)
                        for key, value in (data.get('carry') or {}).items()
                    },
                    **common
                )
            if kind == StepKind.SUBWORKFLOW:
                return SubWorkflowStep(workflow_id=data.get('workflow', ''), **common)
            if kind == StepKind.HUMAN:
                return HumanStep(
                    prompt=data.get('prompt', ''),
                    timeout_ms=data.get('timeout_ms'),
                    on_timeout=data.get('on_timeout', []),
                    assignee=data.get('assignee'),
                    response_schema=data.get('response_schema'),
                    **common
                )
            return WaitForEventStep(
                events=data.get('events', {}),
                timeout_ms=data.get('timeout_ms'),
                on_timeout=data.get('on_timeout', []),
                **common
            )
        except ValueError as e:
            raise WorkflowValidationError(f"Step '{data['id']}': {e}")
