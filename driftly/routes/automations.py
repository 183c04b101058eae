# /driftly/routes/automations.py

from datetime import datetime
from typing import Optional
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from driftly.config.settings import settings
from driftly.exceptions import (
    ContactNotFound,
    ContactNotInErrorState,
    FlowNotFound,
    FlowValidationError,
    MissingStepFailure,
)
from driftly.models.api import APIResponse, EnrollContactRequest, StepTestRequest, UpdateStepsRequest
from driftly.utils.dependencies import get_error_service, get_flow_scheduler, get_flow_service, verify_api_key

# Manual entry points into the flow engine: tick triggers, single-step tests,
# step editing, contact enrolment and the error console.

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/automations",
    tags=["Automations"],
    dependencies=[Depends(verify_api_key)],
)

_STATUS_CODES = (
    (FlowNotFound, 404),
    (ContactNotFound, 404),
    (MissingStepFailure, 404),
    (FlowValidationError, 400),
    (ContactNotInErrorState, 409),
)


def _http_error(e: Exception) -> HTTPException:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(e, exc_type):
            detail = str(e)
            if isinstance(e, FlowValidationError) and e.error_code:
                detail = {"message": str(e), "errorCode": e.error_code}
            return HTTPException(status_code=status_code, detail=detail)
    log.error("automation_request_failed", error=str(e), exc_info=True)
    return HTTPException(status_code=500, detail="Internal server error")


def _ok(message: str, data: Optional[dict] = None) -> APIResponse:
    return APIResponse(success=True, message=message, data=data, version=settings.api_version)


def _contact_data(contact) -> dict:
    return contact.model_dump(mode="json", by_alias=True, exclude_none=True)


# ==================== Processing ====================

@router.post("/process", response_model=APIResponse)
async def process_due_contacts(flow_scheduler=Depends(get_flow_scheduler)):
    """Run one tick now. Identical to the scheduled run."""
    try:
        summary = await flow_scheduler.process_due_contacts()
    except Exception as e:
        raise _http_error(e)
    return _ok("Due contacts processed.", summary.model_dump(mode="json"))


@router.post("/{flow_id}/trigger", response_model=APIResponse)
async def trigger_flow(flow_id: str, flow_scheduler=Depends(get_flow_scheduler)):
    """Make all active contacts of a flow due and process them."""
    try:
        result = await flow_scheduler.trigger_flow(flow_id)
    except Exception as e:
        raise _http_error(e)
    return _ok(
        f"Flow {flow_id} triggered.",
        {"rescheduled": result["rescheduled"], "summary": result["summary"].model_dump(mode="json")},
    )


@router.post("/{flow_id}/test-step/{step_id}", response_model=APIResponse)
async def test_step(
    flow_id: str,
    step_id: str,
    request_data: StepTestRequest,
    flow_scheduler=Depends(get_flow_scheduler)
):
    """Execute one step for a synthetic contact. Nothing is written to the database."""
    try:
        result = await flow_scheduler.test_step(
            flow_id, step_id, contact_data=request_data.contact, deliver=request_data.deliver
        )
    except Exception as e:
        raise _http_error(e)
    return _ok(f"Step {step_id} executed in test mode.", result.model_dump(mode="json"))


# ==================== Flow editing ====================

@router.put("/{flow_id}/steps", response_model=APIResponse)
async def update_steps(flow_id: str, request_data: UpdateStepsRequest, flow_service=Depends(get_flow_service)):
    try:
        flow = await flow_service.update_steps(flow_id, request_data.steps)
    except Exception as e:
        raise _http_error(e)
    return _ok("Flow steps updated.", {"steps": [step.model_dump(mode="json", by_alias=True) for step in flow.steps]})


@router.put("/{flow_id}/activate", response_model=APIResponse)
async def activate_flow(flow_id: str, flow_service=Depends(get_flow_service)):
    try:
        flow = await flow_service.activate(flow_id)
    except Exception as e:
        raise _http_error(e)
    return _ok("Flow activated.", {"id": flow.id, "isActive": flow.is_active})


@router.put("/{flow_id}/deactivate", response_model=APIResponse)
async def deactivate_flow(flow_id: str, flow_service=Depends(get_flow_service)):
    try:
        flow = await flow_service.deactivate(flow_id)
    except Exception as e:
        raise _http_error(e)
    return _ok("Flow deactivated.", {"id": flow.id, "isActive": flow.is_active})


# ==================== Contacts ====================

@router.post("/{flow_id}/contacts", response_model=APIResponse)
async def enroll_contact(flow_id: str, request_data: EnrollContactRequest, flow_service=Depends(get_flow_service)):
    try:
        contact = await flow_service.enroll_contact(flow_id, request_data.identity())
    except Exception as e:
        raise _http_error(e)
    return _ok("Contact added to flow.", _contact_data(contact))


@router.post("/{flow_id}/contacts/{contact_id}/reset", response_model=APIResponse)
async def reset_contact(flow_id: str, contact_id: str, flow_service=Depends(get_flow_service)):
    try:
        contact = await flow_service.reset_contact(flow_id, contact_id)
    except Exception as e:
        raise _http_error(e)
    return _ok("Contact reset to the first step.", _contact_data(contact))


@router.delete("/{flow_id}/contacts/{contact_id}", response_model=APIResponse)
async def remove_contact(flow_id: str, contact_id: str, flow_service=Depends(get_flow_service)):
    try:
        contact = await flow_service.remove_contact(flow_id, contact_id)
    except Exception as e:
        raise _http_error(e)
    return _ok("Contact removed from flow.", _contact_data(contact))


# ==================== Errors ====================

@router.get("/{flow_id}/errors", response_model=APIResponse)
async def get_flow_errors(
    flow_id: str,
    step_id: Optional[str] = Query(default=None, alias="stepId"),
    error_type: Optional[str] = Query(default=None, alias="errorType"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    error_service=Depends(get_error_service)
):
    try:
        errors = await error_service.get_flow_errors(flow_id, step_id, error_type, start_date, end_date)
    except Exception as e:
        raise _http_error(e)
    return _ok(
        f"Found {len(errors)} errors.",
        {"errors": [record.model_dump(mode="json", by_alias=True) for record in errors]},
    )


@router.get("/{flow_id}/error-stats", response_model=APIResponse)
async def get_error_stats(flow_id: str, error_service=Depends(get_error_service)):
    try:
        stats = await error_service.get_error_stats(flow_id)
    except Exception as e:
        raise _http_error(e)
    return _ok("Error statistics retrieved.", stats.model_dump(mode="json", by_alias=True))


@router.get("/{flow_id}/error-contacts", response_model=APIResponse)
async def get_contacts_in_error(flow_id: str, error_service=Depends(get_error_service)):
    try:
        contacts = await error_service.get_contacts_in_error(flow_id)
    except Exception as e:
        raise _http_error(e)
    return _ok(f"Found {len(contacts)} contacts in error.", {"contacts": [_contact_data(c) for c in contacts]})


@router.post("/{flow_id}/error-contacts/retry-all", response_model=APIResponse)
async def retry_all_contacts(flow_id: str, error_service=Depends(get_error_service)):
    try:
        counts = await error_service.retry_all_contacts(flow_id)
    except Exception as e:
        raise _http_error(e)
    return _ok(f"Reset {counts['reset']} contacts for retry.", counts)


@router.post("/{flow_id}/error-contacts/{contact_id}/retry", response_model=APIResponse)
async def retry_contact(flow_id: str, contact_id: str, error_service=Depends(get_error_service)):
    try:
        contact = await error_service.retry_contact(flow_id, contact_id)
    except Exception as e:
        raise _http_error(e)
    return _ok("Contact reset for retry.", _contact_data(contact))
