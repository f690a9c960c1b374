"""
Workflow definition parser tests
"""
import json
import os.path

import pytest

from stepflow.core.parser import WorkflowParser
from stepflow.core.steps import (
    AgentStep, ConditionalStep, FunctionStep, HumanStep, LoopStep,
    SubWorkflowStep, WaitForEventStep
)
from stepflow.exceptions import WorkflowParseError, WorkflowValidationError
from stepflow.models.workflow import BackoffStrategy, ErrorHandlingMode


FULL_DEFINITION = """
workflow:
  id: content-pipeline
  name: Content pipeline
  version: 2
  input_schema:
    type: object
    required: [topic]
  variables:
    attempts: 0
  steps:
    - id: classify
      type: agent
      agent: classifier
      config:
        temperature: 0
      variables:
        text: $.input.topic
      retry:
        max_attempts: 3
        backoff: exponential
        delay: 0.5
      timeout: 30

    - id: gate
      type: conditional
      predicate: $.steps.classify.output.confidence >= 0.8
      on_true: [write]
      on_false: [review]

    - id: write
      type: loop
      max_iterations: 3
      predicate: $.variables.score < 8
      loop_variables:
        score: 0
      carry:
        score: $.steps.score.output.value
      body:
        - id: score
          type: function
          function: score

    - id: review
      type: human
      prompt: Please review
      assignee: editor
      timeout_ms: 60000
      on_timeout: [escalate]
      response_schema:
        type: object

    - id: escalate
      type: subworkflow
      workflow: escalation
      error_handling: continue_on_error

    - id: publish
      type: wait_for_event
      after: [write]
      events:
        approved: [notify]
        rejected: []
      condition: exists $.steps.write.output

    - id: notify
      type: function
      function: os.path:join
  output:
    label: $.steps.classify.output.label
    count:
      path: $.steps.write.output.iterations
      default: 0
"""


def score(step_ctx):
    return {"value": 9}


class TestWorkflowParser:
    """Definition documents become Workflow objects"""

    @pytest.fixture
    def parser(self):
        return WorkflowParser(functions={"score": score})

    def test_parse_every_step_kind(self, parser):
        workflow = parser.parse(FULL_DEFINITION)

        assert workflow.id == "content-pipeline"
        assert workflow.name == "Content pipeline"
        assert workflow.version == "2"
        assert workflow.variables == {"attempts": 0}
        assert workflow.input_schema == {"type": "object", "required": ["topic"]}

        steps = {step.id: step for step in workflow.steps}
        assert isinstance(steps["classify"], AgentStep)
        assert isinstance(steps["gate"], ConditionalStep)
        assert isinstance(steps["write"], LoopStep)
        assert isinstance(steps["review"], HumanStep)
        assert isinstance(steps["escalate"], SubWorkflowStep)
        assert isinstance(steps["publish"], WaitForEventStep)
        assert isinstance(steps["notify"], FunctionStep)

        classify = steps["classify"]
        assert classify.agent_id == "classifier"
        assert classify.config == {"temperature": 0}
        assert classify.variables["text"].path == "$.input.topic"
        assert classify.retry_policy.max_attempts == 3
        assert classify.retry_policy.backoff == BackoffStrategy.EXPONENTIAL
        assert classify.timeout == 30

        assert steps["gate"].on_true == ["write"]
        assert steps["write"].body[0].fn is score
        assert steps["write"].carry["score"].path == "$.steps.score.output.value"
        assert steps["review"].assignee == "editor"
        assert steps["review"].on_timeout == ["escalate"]
        assert steps["escalate"].workflow_id == "escalation"
        assert steps["escalate"].error_handling == ErrorHandlingMode.CONTINUE_ON_ERROR
        assert steps["publish"].events == {"approved": ["notify"], "rejected": []}
        assert steps["publish"].after == {"write"}
        assert steps["notify"].fn is os.path.join

        assert workflow.output["label"].path == "$.steps.classify.output.label"
        assert workflow.output["count"].default == 0

    def test_json_document(self, parser):
        workflow = parser.parse(json.dumps({
            "id": "json-flow",
            "steps": [{"id": "a", "type": "agent", "agent": "writer"}],
        }))

        assert workflow.id == "json-flow"
        assert workflow.steps[0].agent_id == "writer"

    def test_parse_file(self, parser, tmp_path):
        yaml_file = tmp_path / "flow.yml"
        yaml_file.write_text("id: from-file\nsteps:\n  - id: a\n    type: agent\n    agent: x\n", encoding="utf-8")
        json_file = tmp_path / "flow.json"
        json_file.write_text(json.dumps({"id": "from-json", "steps": [{"id": "a", "type": "agent", "agent": "x"}]}),
                             encoding="utf-8")

        assert parser.parse(yaml_file).id == "from-file"
        assert parser.parse(str(json_file)).id == "from-json"

        with pytest.raises(WorkflowParseError):
            parser.parse_file(tmp_path / "flow.txt")
        with pytest.raises(WorkflowParseError):
            parser.parse_file(tmp_path / "missing.yaml")

    def test_transforms_and_defaults(self, parser):
        workflow = parser.parse_dict({
            "id": "transforms",
            "steps": [{
                "id": "a",
                "type": "function",
                "function": "score",
                "variables": {
                    "count": {"path": "$.input.items", "transform": "len"},
                    "name": {"path": "$.input.name", "transform": "upper"},
                    "limit": {"path": "$.input.limit", "default": 10},
                },
            }],
        })

        variables = workflow.steps[0].variables
        assert variables["count"].transform([1, 2, 3]) == 3
        assert variables["name"].transform("ada") == "ADA"
        assert variables["limit"].default == 10
        assert not variables["count"].has_default


class TestParserErrors:
    """Malformed documents are rejected with a clear error"""

    @pytest.fixture
    def parser(self):
        return WorkflowParser()

    def test_invalid_yaml(self, parser):
        with pytest.raises(WorkflowParseError):
            parser.parse_string("id: [unclosed\nsteps: x")

    def test_document_must_be_a_mapping(self, parser):
        with pytest.raises(WorkflowParseError):
            parser.parse_string("- just\n- a list\n")

    def test_missing_step_type(self, parser):
        with pytest.raises(WorkflowValidationError, match="type"):
            parser.parse_dict({"id": "bad", "steps": [{"id": "a"}]})

    def test_unknown_field(self, parser):
        errors = parser.validate_document({
            "id": "bad",
            "steps": [{"id": "a", "type": "agent", "agent": "x", "colour": "blue"}],
        })
        assert len(errors) == 1
        assert "colour" in errors[0]

    def test_unknown_function(self, parser):
        with pytest.raises(WorkflowValidationError, match="Unknown callable"):
            parser.parse_dict({"id": "bad", "steps": [{"id": "a", "type": "function", "function": "nowhere"}]})

    def test_unimportable_function(self, parser):
        with pytest.raises(WorkflowValidationError, match="Cannot import"):
            parser.parse_dict({
                "id": "bad",
                "steps": [{"id": "a", "type": "function", "function": "os.path:no_such_thing"}],
            })

    def test_function_step_needs_function(self, parser):
        with pytest.raises(WorkflowValidationError):
            parser.parse_dict({"id": "bad", "steps": [{"id": "a", "type": "function"}]})

    def test_agent_step_needs_agent(self, parser):
        with pytest.raises(WorkflowValidationError):
            parser.parse_dict({"id": "bad", "steps": [{"id": "a", "type": "agent"}]})

    def test_conditional_target_in_both_branches(self, parser):
        with pytest.raises(WorkflowValidationError, match="both branches"):
            parser.parse_dict({"id": "bad", "steps": [
                {"id": "c", "type": "conditional", "predicate": "$.input.ok", "on_true": ["x"], "on_false": ["x"]},
                {"id": "x", "type": "agent", "agent": "a"},
            ]})

    def test_on_timeout_requires_timeout(self, parser):
        with pytest.raises(WorkflowValidationError, match="timeout_ms"):
            parser.parse_dict({"id": "bad", "steps": [
                {"id": "h", "type": "human", "on_timeout": ["x"]},
                {"id": "x", "type": "agent", "agent": "a"},
            ]})

    def test_reserved_event_name(self, parser):
        with pytest.raises(WorkflowValidationError, match="reserved"):
            parser.parse_dict({"id": "bad", "steps": [
                {"id": "w", "type": "wait_for_event", "events": {"timeout": []}},
            ]})

    def test_bad_retry_policy(self, parser):
        with pytest.raises(WorkflowValidationError):
            parser.parse_dict({"id": "bad", "steps": [
                {"id": "a", "type": "agent", "agent": "x", "retry": {"max_attempts": 0}},
            ]})

    def test_bad_condition(self, parser):
        with pytest.raises(WorkflowValidationError):
            parser.parse_dict({"id": "bad", "steps": [
                {"id": "a", "type": "agent", "agent": "x", "condition": "$.input.a >="},
            ]})
