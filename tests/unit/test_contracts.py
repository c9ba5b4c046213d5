"""Workflow definition and step config validation tests."""

import pytest

from stepwise.contracts import (
    DelayConfig,
    ExecutionStatus,
    HttpRequestConfig,
    Step,
    StepType,
    TransformConfig,
    Workflow,
)
from stepwise.errors import InvalidStepConfig, InvalidWorkflow


def test_step_config_is_decoded_once_by_type():
    step = Step(
        id="s1",
        name="Call",
        type=StepType.API_CALL,
        config={"url": "https://example.test", "headers": {"X-Trace": "1"}},
        order=1,
    )
    assert isinstance(step.settings, HttpRequestConfig)
    assert step.settings.method == "GET"
    assert step.settings.headers == {"X-Trace": "1"}


def test_defaults_for_delay_and_retries():
    step = Step(id="d", name="Wait", type="DELAY", order=1)
    assert isinstance(step.settings, DelayConfig)
    assert step.settings.duration == 1000
    assert step.retries is None

    step = Step(id="d", name="Wait", type="DELAY", order=1, retries=5)
    assert step.retries == 5


def test_missing_required_config_is_rejected():
    with pytest.raises(InvalidStepConfig):
        Step(id="s1", name="Call", type=StepType.API_CALL, config={}, order=1)
    with pytest.raises(InvalidStepConfig):
        Step(id="e", name="Mail", type=StepType.EMAIL, config={"subject": "hi"}, order=1)


def test_unknown_transform_type_is_rejected_at_load_time():
    with pytest.raises(InvalidStepConfig):
        Step(
            id="t",
            name="Transform",
            type=StepType.TRANSFORM,
            config={"source": "s1", "transformations": [{"type": "filter"}]},
            order=1,
        )

    step = Step(
        id="t",
        name="Transform",
        type=StepType.TRANSFORM,
        config={"source": "s1", "transformations": [{"type": "map", "mapping": {"a": "b"}}]},
        order=1,
    )
    assert isinstance(step.settings, TransformConfig)
    assert step.settings.transformations[0].mapping == {"a": "b"}


def test_unknown_step_type_is_rejected():
    with pytest.raises(ValueError):
        Step(id="x", name="X", type="SHELL", order=1)


def test_conditional_branch_fields_are_ignored():
    step = Step(
        id="c",
        name="Branch",
        type=StepType.CONDITIONAL,
        config={
            "condition": {"field": "s1", "operator": "exists"},
            "trueStep": "s3",
            "falseStep": "s4",
        },
        order=1,
    )
    assert step.settings.condition.field == "s1"
    assert not hasattr(step.settings, "trueStep")


def test_workflow_orders_steps_and_validates_positions():
    wf = Workflow(
        id="wf",
        name="Flow",
        steps=[
            Step(id="b", name="B", type="CUSTOM", order=2),
            Step(id="a", name="A", type="CUSTOM", order=1),
        ],
    )
    assert [s.id for s in wf.ordered_steps()] == ["a", "b"]

    with pytest.raises(InvalidWorkflow):
        Workflow(
            id="wf",
            name="Gap",
            steps=[
                Step(id="a", name="A", type="CUSTOM", order=1),
                Step(id="b", name="B", type="CUSTOM", order=3),
            ],
        )
    with pytest.raises(InvalidWorkflow):
        Workflow(
            id="wf",
            name="Dupe",
            steps=[
                Step(id="a", name="A", type="CUSTOM", order=1),
                Step(id="a", name="A2", type="CUSTOM", order=2),
            ],
        )


def test_workflow_json_round_trip_keeps_settings():
    wf = Workflow(
        id="wf",
        name="Flow",
        steps=[
            Step(
                id="s1",
                name="Call",
                type="API_CALL",
                config={"url": "https://example.test", "method": "POST", "body": {"a": 1}},
                order=1,
                conditions={"field": "s0", "operator": "exists"},
            )
        ],
    )
    restored = Workflow.model_validate_json(wf.model_dump_json())
    assert restored == wf
    assert restored.steps[0].settings == wf.steps[0].settings


def test_terminal_statuses():
    assert ExecutionStatus.SUCCESS.is_terminal
    assert ExecutionStatus.FAILED.is_terminal
    assert ExecutionStatus.CANCELLED.is_terminal
    assert not ExecutionStatus.RUNNING.is_terminal
    assert not ExecutionStatus.PENDING.is_terminal
