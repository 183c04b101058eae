# /driftly/services/error_service.py

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from driftly.exceptions import ContactNotFound, ContactNotInErrorState, FlowNotFound, FlowValidationError
from driftly.models.common import ensure_utc, utc_now
from driftly.models.contact import Contact, ContactStatus, FlowPathEntry, LastError
from driftly.models.flow import ErrorRecord, ErrorStats, Flow
from driftly.services.db_service import DatabaseService, db_service
from driftly.utils.metrics import flow_errors_counter
from driftly.workflows.routing import find_step, first_step
from driftly.workflows.updates import UpdateBuilder

logger = logging.getLogger(__name__)

UNKNOWN_STEP_NAME = "Unknown Step"


def _safe_key(value: Optional[str]) -> str:
    """Step ids and error types become field names under errorStats."""
    key = (value or "none").replace(".", "_")
    return "_" + key[1:] if key.startswith("$") else key


class ErrorHandlingService:
    """
    Tracks failures of flow executions and brings errored contacts back.

    Two recording modes:
    - record_flow_error(): append to the flow's error log and error stats only.
      Used for best-effort failures and bounces, where the contact keeps its
      own (non-error) state.
    - log_error(): the above plus halting the contact in the `error` status.
    """

    def __init__(self, db: DatabaseService):
        self.db = db

    # ==================== Recording ====================

    def append_error(
        self,
        flow_update: UpdateBuilder,
        flow: Flow,
        contact_id: Optional[str],
        step_id: Optional[str],
        error_type: str,
        error_message: str,
        additional_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Add one error record and its stat increments to a pending flow update."""
        step = find_step(flow, step_id)
        step_name = (step.name if step and step.name else None) or UNKNOWN_STEP_NAME
        record = ErrorRecord(
            date=now or utc_now(),
            contact_id=contact_id,
            step_id=step_id,
            step_name=step_name,
            error_type=error_type,
            error_message=error_message,
            additional_data=additional_data or {},
        ).to_document()

        step_key = _safe_key(step_id)
        flow_update.push("errors", record)
        flow_update.inc("errorStats.totalErrors")
        flow_update.inc(f"errorStats.byStep.{step_key}.count")
        flow_update.set(f"errorStats.byStep.{step_key}.name", step_name)
        flow_update.inc(f"errorStats.byType.{_safe_key(error_type)}")

        flow_errors_counter.labels(error_type=error_type).inc()
        logger.warning(f"Error in automation {flow.name} ({flow.id}), step {step_name}: {error_message}")
        return record

    async def record_flow_error(
        self,
        flow: Flow,
        contact_id: Optional[str],
        step_id: Optional[str],
        error_type: str,
        error_message: str,
        additional_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        flow_update: Optional[UpdateBuilder] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Record a failure on the flow without touching the contact.

        Args:
            flow_update: Pending flow update to merge into; written here in one call
            dry_run: Build the update but do not persist it

        Returns:
            The error record as stored
        """
        builder = flow_update if flow_update is not None else UpdateBuilder()
        record = self.append_error(builder, flow, contact_id, step_id, error_type, error_message, additional_data, now)
        if not dry_run:
            await self.db.update_flow(flow.id, builder.to_mongo())
        return record

    def halt_contact_update(
        self,
        contact: Contact,
        step_id: Optional[str],
        error_type: str,
        error_message: str,
        now: datetime
    ) -> UpdateBuilder:
        """Contact-side update for a halting failure."""
        last_error = LastError(step_id=step_id, error_type=error_type, error_message=error_message, timestamp=now)
        entry = FlowPathEntry(
            step_id=step_id,
            timestamp=now,
            action="error",
            result={"errorType": error_type, "errorMessage": error_message},
        )
        return (
            UpdateBuilder()
            .set("status", ContactStatus.ERROR.value)
            .set("lastError", last_error.to_document())
            .set("nextProcessingDate", None)
            .set("updatedAt", now)
            .push("flowPath", entry.to_document())
            .unset("leaseExpiresAt", "leaseOwner")
        )

    async def log_error(
        self,
        flow: Optional[Flow],
        contact: Contact,
        step_id: Optional[str],
        error_type: str,
        error_message: str,
        additional_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Halt a contact in the error status and record the failure on its flow.

        Returns:
            {"contact_update": ..., "flow_update": ..., "record": ...} as built
        """
        now = now or utc_now()
        contact_update = self.halt_contact_update(contact, step_id, error_type, error_message, now)
        flow_update = UpdateBuilder()
        record = None

        if flow is not None:
            record = self.append_error(
                flow_update, flow, contact.id, step_id, error_type, error_message, additional_data, now
            )
            if contact.status == ContactStatus.ACTIVE:
                flow_update.inc("stats.failed").inc("stats.active", -1)
        else:
            flow_errors_counter.labels(error_type=error_type).inc()
            logger.error(f"Contact {contact.id} halted without a flow: {error_message}")

        if not dry_run:
            await self.db.update_contact(contact.id, contact_update.to_mongo())
            if flow is not None:
                await self.db.update_flow(flow.id, flow_update.to_mongo())

        return {
            "contact_update": contact_update.to_mongo(),
            "flow_update": flow_update.to_mongo(),
            "record": record,
        }

    # ==================== Retry ====================

    async def retry_contact(self, flow_id: str, contact_id: str, now: Optional[datetime] = None) -> Contact:
        """Put one errored contact back to active, due immediately."""
        now = now or utc_now()
        raw = await self.db.get_contact(contact_id)
        if not raw:
            raise ContactNotFound(f"Contact {contact_id} not found")
        contact = Contact.model_validate(raw)
        if contact.flow != str(flow_id) or contact.status != ContactStatus.ERROR:
            raise ContactNotInErrorState("Contact not found or not in error state")

        update = (
            UpdateBuilder()
            .set("status", ContactStatus.ACTIVE.value)
            .set("nextProcessingDate", now)
            .set("updatedAt", now)
            .unset("lastError")
        )
        step_id = contact.current_step_id
        if not step_id:
            raw_flow = await self.db.get_flow(flow_id)
            if not raw_flow:
                raise FlowNotFound(f"Flow {flow_id} not found")
            start = first_step(Flow.model_validate(raw_flow))
            if start is None:
                raise FlowValidationError("Flow has no steps", error_code="NO_STEPS")
            step_id = start.id
            update.set("currentStepId", start.id).set("currentStep", start.order)
        update.push("flowPath", FlowPathEntry(step_id=step_id, timestamp=now, action="retry").to_document())

        if not await self.db.update_contact(contact_id, update.to_mongo(), expected_status=ContactStatus.ERROR.value):
            raise ContactNotInErrorState("Contact not found or not in error state")
        await self.db.update_flow(flow_id, UpdateBuilder().inc("stats.active").inc("stats.failed", -1).to_mongo())

        logger.info(f"Contact {contact_id} set for retry in flow {flow_id}")
        return Contact.model_validate(await self.db.get_contact(contact_id))

    async def retry_all_contacts(self, flow_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Reset every errored contact of a flow. Returns {"attempted", "reset"}."""
        now = now or utc_now()
        update = (
            UpdateBuilder()
            .set("status", ContactStatus.ACTIVE.value)
            .set("nextProcessingDate", now)
            .set("updatedAt", now)
            .unset("lastError")
            .push("flowPath", FlowPathEntry(timestamp=now, action="retry").to_document())
        )
        matched, modified = await self.db.update_contacts_by_status(
            flow_id, ContactStatus.ERROR.value, update.to_mongo()
        )
        if modified:
            await self.db.update_flow(
                flow_id, UpdateBuilder().inc("stats.active", modified).inc("stats.failed", -modified).to_mongo()
            )

        logger.info(f"Reset {modified} contacts for retry in flow {flow_id}")
        return {"attempted": matched, "reset": modified}

    # ==================== Queries ====================

    async def _load_flow(self, flow_id: str) -> Flow:
        raw = await self.db.get_flow(flow_id)
        if not raw:
            raise FlowNotFound(f"Flow with ID {flow_id} not found")
        return Flow.model_validate(raw)

    async def get_flow_errors(
        self,
        flow_id: str,
        step_id: Optional[str] = None,
        error_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ErrorRecord]:
        """Error log of a flow, filtered, newest first."""
        errors = (await self._load_flow(flow_id)).errors
        if step_id:
            errors = [e for e in errors if e.step_id == step_id]
        if error_type:
            errors = [e for e in errors if e.error_type == error_type]
        if start_date:
            errors = [e for e in errors if e.date >= ensure_utc(start_date)]
        if end_date:
            errors = [e for e in errors if e.date <= ensure_utc(end_date)]
        return sorted(errors, key=lambda e: e.date, reverse=True)

    async def get_error_stats(self, flow_id: str) -> ErrorStats:
        return (await self._load_flow(flow_id)).error_stats

    async def get_contacts_in_error(self, flow_id: str) -> List[Contact]:
        raw_contacts = await self.db.find_contacts(flow_id, status=ContactStatus.ERROR.value)
        return [Contact.model_validate(raw) for raw in raw_contacts]


error_service = ErrorHandlingService(db_service)
