# tests/unit/test_validator.py
import random

import pytest

from driftly.models.flow import Flow
from driftly.workflows.routing import branch_target, fallback_target, first_step, next_step_id
from driftly.workflows.validator import validate_flow_steps, validate_routing


def _email(step_id, **fields):
    step = {"id": step_id, "type": "email", "subject": "Hello", "body": "<p>Hi</p>"}
    step.update(fields)
    return step


def test_valid_flow_passes():
    steps = [
        _email("welcome", order=0),
        {"id": "wait", "type": "delay", "delayDays": 2, "order": 1},
        {
            "id": "opened", "type": "condition", "order": 2,
            "condition": {"type": "open", "value": "welcome", "timeframe": 48},
            "nextSteps": {"yes": "thanks", "no": "exit"},
        },
        _email("thanks", order=3),
    ]
    assert validate_flow_steps(steps, require_content=True)["is_valid"] is True


@pytest.mark.parametrize("steps, error_code", [
    ([], "NO_STEPS"),
    ([{"type": "email"}], "MISSING_STEP_ID"),
    ([_email("a"), _email("a")], "DUPLICATE_STEP_ID"),
    ([_email("exit")], "RESERVED_STEP_ID"),
    ([{"id": "a", "type": "sms"}], "UNKNOWN_STEP_TYPE"),
    ([_email("a", nextSteps={"default": "ghost"})], "DANGLING_STEP_REFERENCE"),
    ([{"id": "c", "type": "condition", "nextSteps": {"yes": "exit"}}], "INVALID_CONDITION"),
    ([{"id": "c", "type": "condition", "condition": {"type": "tag", "value": "vip"}}], "MISSING_BRANCH"),
    ([{"id": "w", "type": "webhook", "webhookUrl": "ftp://example.com"}], "INVALID_WEBHOOK_URL"),
    ([{"id": "w", "type": "webhook", "webhookUrl": "https://example.com", "webhookMethod": "TRACE"}], "INVALID_WEBHOOK_METHOD"),
    ([{"id": "d", "type": "delay", "delayHours": -1}], "INVALID_DELAY"),
    ([{"id": "a", "type": "delay", "nextSteps": "b"}], "INVALID_NEXT_STEPS"),
    ([{"id": "a", "type": "delay", "nextSteps": ["b"]}], "INVALID_NEXT_STEPS"),
    ([{"id": "a", "type": "delay", "nextSteps": {"default": ["a"]}}], "INVALID_NEXT_STEPS"),
    ([{"id": "c", "type": "condition", "condition": {"type": "tag", "value": "vip"}, "nextSteps": {"yes": {"id": "c"}}}], "INVALID_NEXT_STEPS"),
    ([{"id": "w", "type": "webhook", "webhookUrl": ["https://example.com"]}], "INVALID_WEBHOOK_URL"),
    ([{"id": "w", "type": "webhook", "webhookUrl": "https://example.com", "webhookMethod": 5}], "INVALID_WEBHOOK_METHOD"),
])
def test_invalid_flows_are_rejected(steps, error_code):
    result = validate_flow_steps(steps)
    assert result["is_valid"] is False
    assert result["error_code"] == error_code


def test_email_content_only_required_for_activation():
    steps = [{"id": "draft", "type": "email"}]
    assert validate_flow_steps(steps)["is_valid"] is True

    result = validate_flow_steps(steps, require_content=True)
    assert result["error_code"] == "MISSING_EMAIL_CONTENT"


def test_dangling_reference_message_names_branch_and_target():
    steps = [{
        "id": "check", "name": "Opened?", "type": "condition",
        "condition": {"type": "open", "value": "check"},
        "nextSteps": {"yes": "exit", "no": "gone"},
    }]
    result = validate_routing(steps)
    assert result["message"] == "Step Opened? references non-existent no next step: gone"


@pytest.mark.parametrize("seed", range(20))
def test_routing_closure_matches_reference_set(seed):
    """A random graph is accepted exactly when every reference resolves."""
    rng = random.Random(seed)
    ids = [f"s{i}" for i in range(rng.randint(1, 8))]
    pool = ids + ["exit", "missing-a", "missing-b", None]
    steps = []
    for step_id in ids:
        next_steps = {branch: rng.choice(pool) for branch in ("default", "yes", "no") if rng.random() < 0.5}
        steps.append({"id": step_id, "type": "email", "nextSteps": next_steps})

    dangling = any(
        target and target != "exit" and target not in ids
        for step in steps
        for target in step["nextSteps"].values()
    )
    assert validate_routing(steps)["is_valid"] is (not dangling)


# --- routing ---

def _flow(steps):
    return Flow.model_validate({"_id": "665f1c2e9b1e8a3d4c2b1a01", "name": "f", "steps": steps})


def test_next_step_prefers_explicit_default_then_order():
    flow = _flow([
        _email("a", order=0, nextSteps={"default": "c"}),
        _email("b", order=1),
        _email("c", order=2),
    ])
    a, b, c = flow.steps
    assert next_step_id(flow, a) == "c"
    assert next_step_id(flow, b) == "c"
    assert next_step_id(flow, c) is None


def test_exit_ends_the_flow():
    flow = _flow([_email("a", order=0, nextSteps={"default": "exit"}), _email("b", order=1)])
    assert next_step_id(flow, flow.steps[0]) is None


def test_first_step_uses_order_zero():
    flow = _flow([_email("late", order=3), _email("start", order=0)])
    assert first_step(flow).id == "start"


def test_order_defaults_to_position():
    flow = _flow([_email("a"), _email("b")])
    assert [step.order for step in flow.steps] == [0, 1]
    assert next_step_id(flow, flow.steps[0]) == "b"


def test_condition_branches_fall_back_to_default():
    flow = _flow([
        {"id": "c", "type": "condition", "condition": {"type": "tag", "value": "vip"},
         "nextSteps": {"yes": "vip-mail", "default": "regular"}},
        _email("vip-mail"),
        _email("regular"),
    ])
    step = flow.steps[0]
    assert branch_target(step, True) == "vip-mail"
    assert branch_target(step, False) == "regular"
    assert fallback_target(step) == "regular"


def test_condition_exit_branch_completes():
    flow = _flow([
        {"id": "c", "type": "condition", "condition": {"type": "tag", "value": "vip"}, "nextSteps": {"yes": "exit"}},
    ])
    step = flow.steps[0]
    assert branch_target(step, True) is None
    assert branch_target(step, False) is None
    assert fallback_target(step) is None
