# /driftly/workflows/routing.py

"""
Step lookup and next-step resolution over a flow's step graph.

Pure functions: no database access, no logging.
"""

from typing import Optional

from driftly.models.flow import EXIT, BaseStep, ConditionStep, Flow


def find_step(flow: Flow, step_id: Optional[str]) -> Optional[BaseStep]:
    if not step_id:
        return None
    for step in flow.steps:
        if step.id == step_id:
            return step
    return None


def first_step(flow: Flow) -> Optional[BaseStep]:
    """The step with order 0, else the first listed step."""
    if not flow.steps:
        return None
    for step in flow.steps:
        if step.order == 0:
            return step
    return flow.steps[0]


def step_by_order(flow: Flow, order: Optional[int]) -> Optional[BaseStep]:
    if order is None:
        return None
    for step in flow.steps:
        if step.order == order:
            return step
    return None


def next_step_id(flow: Flow, step: BaseStep) -> Optional[str]:
    """
    Routing rule for every non-branching step.

    Explicit ``nextSteps.default`` wins, then the step whose order follows the
    current one. ``None`` means the end of the flow was reached.
    """
    target = step.next_steps.default
    if target:
        return None if target == EXIT else target

    following = step_by_order(flow, step.order + 1 if step.order is not None else None)
    if following and following.id:
        return following.id
    return None


def branch_target(step: ConditionStep, result: bool) -> Optional[str]:
    """yes/no branch for a condition result, falling back to default. None completes."""
    target = step.next_steps.yes if result else step.next_steps.no
    if not target:
        target = step.next_steps.default
    if not target or target == EXIT:
        return None
    return target


def fallback_target(step: ConditionStep) -> Optional[str]:
    """Where a condition goes when it cannot be evaluated at all: default, then no."""
    for target in (step.next_steps.default, step.next_steps.no):
        if target:
            return target
    return None
