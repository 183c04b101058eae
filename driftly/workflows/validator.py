# /driftly/workflows/validator.py

"""
Pure validation functions for flow step graphs.

These checks run before any flow update is persisted:
- every step has a non-empty id, unique inside the flow
- every step has a known type
- nextSteps is an object whose default|yes|no values are "exit" or the id of a step in the same flow
- per-type configuration is usable (condition descriptor, webhook URL, delays)

All functions are pure and deterministic. No database access, no logging.
"""

from typing import Any, Dict, List, Optional, TypedDict, Union

from driftly.models.flow import EXIT, BaseStep, ConditionType, StepType

StepInput = Union[Dict[str, Any], BaseStep]

VALID_STEP_TYPES = {t.value for t in StepType}
VALID_CONDITION_TYPES = {t.value for t in ConditionType}
VALID_WEBHOOK_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _ok() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _fail(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def _as_dict(step: StepInput) -> Dict[str, Any]:
    if isinstance(step, BaseStep):
        return step.to_document()
    return step if isinstance(step, dict) else {}


def _label(step: Dict[str, Any]) -> str:
    return step.get("name") or step.get("id") or "<unnamed>"


def validate_step_ids(steps: List[StepInput]) -> ValidationResult:
    """Every step needs a non-empty string id that no other step in the flow uses."""
    seen = set()
    for index, raw in enumerate(steps):
        step = _as_dict(raw)
        step_id = step.get("id")
        if not isinstance(step_id, str) or not step_id.strip():
            return _fail("MISSING_STEP_ID", f"Step at position {index} has no id")
        if step_id == EXIT:
            return _fail("RESERVED_STEP_ID", f"Step id '{EXIT}' is reserved")
        if step_id in seen:
            return _fail("DUPLICATE_STEP_ID", f"Step id '{step_id}' is used more than once")
        seen.add(step_id)
    return _ok()


def validate_step_types(steps: List[StepInput]) -> ValidationResult:
    for raw in steps:
        step = _as_dict(raw)
        if step.get("type") not in VALID_STEP_TYPES:
            return _fail(
                "UNKNOWN_STEP_TYPE",
                f"Step {_label(step)} has unknown type '{step.get('type')}'. Allowed types: {sorted(VALID_STEP_TYPES)}"
            )
    return _ok()


def validate_routing(steps: List[StepInput]) -> ValidationResult:
    """Routing closure: every next-step reference resolves inside the flow or is 'exit'."""
    step_ids = {_as_dict(raw).get("id") for raw in steps if isinstance(_as_dict(raw).get("id"), str)}
    for raw in steps:
        step = _as_dict(raw)
        next_steps = step.get("nextSteps") or {}
        if not isinstance(next_steps, dict):
            return _fail("INVALID_NEXT_STEPS", f"Step {_label(step)} has nextSteps that is not an object")
        for branch in ("default", "yes", "no"):
            target = next_steps.get(branch)
            if target is not None and not isinstance(target, str):
                return _fail("INVALID_NEXT_STEPS", f"Step {_label(step)} has a non-string {branch} next step")
            if target and target != EXIT and target not in step_ids:
                return _fail(
                    "DANGLING_STEP_REFERENCE",
                    f"Step {_label(step)} references non-existent {branch} next step: {target}"
                )
    return _ok()


def validate_step_config(raw: StepInput, require_content: bool = False) -> ValidationResult:
    """Per-type configuration checks. require_content enforces email subject/body (activation)."""
    step = _as_dict(raw)
    step_type = step.get("type")

    if step_type in (StepType.EMAIL.value, StepType.DELAY.value):
        for field in ("delayDays", "delayHours"):
            value = step.get(field) or 0
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                return _fail("INVALID_DELAY", f"Step {_label(step)} has an invalid {field}: {value}")

    if step_type == StepType.EMAIL.value and require_content:
        if not step.get("subject") or not step.get("body"):
            return _fail(
                "MISSING_EMAIL_CONTENT",
                f"Email step {step.get('id')} (order {step.get('order')}) is missing subject or body content"
            )

    if step_type == StepType.CONDITION.value:
        condition = step.get("condition")
        if not isinstance(condition, dict) or condition.get("type") not in VALID_CONDITION_TYPES:
            return _fail("INVALID_CONDITION", f"Condition step {_label(step)} has no valid condition")
        next_steps = step.get("nextSteps") or {}
        if not any(next_steps.get(branch) for branch in ("yes", "no", "default")):
            return _fail("MISSING_BRANCH", f"Condition step {_label(step)} has no yes, no or default branch")

    if step_type == StepType.WEBHOOK.value:
        url = step.get("webhookUrl") or ""
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            return _fail("INVALID_WEBHOOK_URL", f"Webhook step {_label(step)} needs an http(s) URL")
        method = step.get("webhookMethod") or "POST"
        if not isinstance(method, str) or method.upper() not in VALID_WEBHOOK_METHODS:
            return _fail("INVALID_WEBHOOK_METHOD", f"Webhook step {_label(step)} uses unsupported method {method}")

    return _ok()


def validate_flow_steps(steps: List[StepInput], require_content: bool = False) -> ValidationResult:
    """
    Validate a complete step list.

    Args:
        steps: Raw step dicts (persisted camelCase shape) or step models
        require_content: Also require subject and body on email steps

    Returns:
        The first failing ValidationResult, or a valid one
    """
    if not isinstance(steps, list) or len(steps) == 0:
        return _fail("NO_STEPS", "Flow must have at least one step")

    for check in (validate_step_ids, validate_step_types, validate_routing):
        result = check(steps)
        if not result["is_valid"]:
            return result

    for step in steps:
        result = validate_step_config(step, require_content=require_content)
        if not result["is_valid"]:
            return result

    return _ok()
