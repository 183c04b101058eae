# /driftly/services/flow_service.py

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from driftly.exceptions import ContactNotFound, FlowNotFound, FlowValidationError
from driftly.models.common import utc_now
from driftly.models.contact import Contact, ContactStatus, FlowPathEntry
from driftly.models.flow import BaseStep, Flow
from driftly.services.db_service import DatabaseService, db_service
from driftly.workflows.routing import first_step
from driftly.workflows.updates import UpdateBuilder
from driftly.workflows.validator import validate_flow_steps

logger = logging.getLogger(__name__)


def new_step_id() -> str:
    return f"step_{uuid.uuid4()}"


def normalize_steps(steps: List[Any]) -> List[Dict[str, Any]]:
    """Give id-less steps a generated id and default `order` to the list position."""
    normalized = []
    for index, raw in enumerate(steps or []):
        step = raw.to_document() if isinstance(raw, BaseStep) else dict(raw)
        if not step.get("id"):
            step["id"] = new_step_id()
        if step.get("order") is None:
            step["order"] = index
        normalized.append(step)
    return normalized


def _require_valid(steps: List[Dict[str, Any]], require_content: bool = False) -> None:
    result = validate_flow_steps(steps, require_content=require_content)
    if not result["is_valid"]:
        raise FlowValidationError(result["message"], error_code=result["error_code"])


class FlowService:
    """Validated flow updates, activation and contact enrolment."""

    def __init__(self, db: DatabaseService):
        self.db = db

    async def get_flow(self, flow_id: str) -> Flow:
        raw = await self.db.get_flow(flow_id)
        if not raw:
            raise FlowNotFound(f"Automation flow {flow_id} not found")
        return Flow.model_validate(raw)

    async def get_contact(self, flow_id: str, contact_id: str) -> Contact:
        raw = await self.db.get_contact(contact_id)
        if not raw:
            raise ContactNotFound(f"Contact {contact_id} not found")
        contact = Contact.model_validate(raw)
        if contact.flow != str(flow_id):
            raise ContactNotFound(f"Contact {contact_id} is not part of flow {flow_id}")
        return contact

    # ==================== Flow lifecycle ====================

    async def create_flow(
        self,
        name: str,
        steps: Optional[List[Any]] = None,
        owner: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Flow:
        now = now or utc_now()
        normalized = normalize_steps(steps or [])
        if normalized:
            _require_valid(normalized)

        document = Flow(
            owner=owner,
            name=name,
            description=description,
            is_active=False,
            created_at=now,
            updated_at=now,
        ).to_document()
        document["steps"] = normalized
        flow_id = await self.db.insert_flow(document)
        logger.info(f"Created flow {flow_id} ({name}) with {len(normalized)} steps")
        return await self.get_flow(flow_id)

    async def update_steps(self, flow_id: str, steps: List[Any], now: Optional[datetime] = None) -> Flow:
        """Replace a flow's steps after id assignment and validation."""
        flow = await self.get_flow(flow_id)
        normalized = normalize_steps(steps)
        _require_valid(normalized, require_content=flow.is_active)

        await self.db.update_flow(
            flow_id, UpdateBuilder().set("steps", normalized).set("updatedAt", now or utc_now()).to_mongo()
        )
        logger.info(f"Updated steps of flow {flow_id}: {len(normalized)} steps")
        return await self.get_flow(flow_id)

    async def activate(self, flow_id: str, now: Optional[datetime] = None) -> Flow:
        """Activation requires a valid graph and subject/body on every email step."""
        flow = await self.get_flow(flow_id)
        _require_valid([step.to_document() for step in flow.steps], require_content=True)
        await self.db.update_flow(
            flow_id, UpdateBuilder().set("isActive", True).set("updatedAt", now or utc_now()).to_mongo()
        )
        logger.info(f"Activated flow {flow_id}")
        return await self.get_flow(flow_id)

    async def deactivate(self, flow_id: str, now: Optional[datetime] = None) -> Flow:
        await self.get_flow(flow_id)
        await self.db.update_flow(
            flow_id, UpdateBuilder().set("isActive", False).set("updatedAt", now or utc_now()).to_mongo()
        )
        logger.info(f"Deactivated flow {flow_id}")
        return await self.get_flow(flow_id)

    # ==================== Contact enrolment ====================

    def _restart_update(self, flow: Flow, now: datetime, action: str, result: Any) -> UpdateBuilder:
        start = first_step(flow)
        if start is None:
            raise FlowValidationError(f"Flow {flow.id} has no steps", error_code="NO_STEPS")
        return (
            UpdateBuilder()
            .set("status", ContactStatus.ACTIVE.value)
            .set("currentStepId", start.id or None)
            .set("currentStep", start.order or 0)
            .set("nextProcessingDate", now)
            .set("updatedAt", now)
            .unset("lastError")
            .push("flowPath", FlowPathEntry(step_id=None, timestamp=now, action=action, result=result).to_document())
        )

    async def add_contact_to_flow(
        self,
        flow_id: str,
        identity: Dict[str, Any],
        now: Optional[datetime] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Put a contact (by email) at the first step of a flow.

        Idempotent: an existing contact with the same email in that flow is
        restarted instead of duplicated.

        Args:
            flow_id: Target flow
            identity: email, firstName, lastName, owner, metadata, tags
            dry_run: Build the writes without executing them

        Returns:
            {"contactId", "created", "contactUpdate" | "contact", "flowUpdate"}
        """
        now = now or utc_now()
        flow = await self.get_flow(flow_id)
        email = identity.get("email")
        if not email:
            raise FlowValidationError("A contact needs an email address", error_code="MISSING_EMAIL")

        existing = await self.db.find_contact_in_flow(flow_id, email)
        if existing:
            current = Contact.model_validate(existing)
            update = self._restart_update(flow, now, "reset", "Contact added to flow again")
            flow_update = UpdateBuilder()
            if current.status != ContactStatus.ACTIVE:
                flow_update.inc("stats.active")
                if current.status == ContactStatus.ERROR:
                    flow_update.inc("stats.failed", -1)
            if not dry_run:
                await self.db.update_contact(current.id, update.to_mongo())
                if flow_update:
                    await self.db.update_flow(flow_id, flow_update.to_mongo())
            logger.info(f"Contact {current.id} re-enrolled in flow {flow_id}")
            return {
                "contactId": current.id,
                "created": False,
                "contactUpdate": update.to_mongo(),
                "flowUpdate": flow_update.to_mongo(),
            }

        start = first_step(flow)
        if start is None:
            raise FlowValidationError(f"Flow {flow_id} has no steps", error_code="NO_STEPS")
        contact = Contact(
            owner=identity.get("owner") or flow.owner,
            flow=flow.id,
            email=email,
            first_name=identity.get("firstName"),
            last_name=identity.get("lastName"),
            status=ContactStatus.ACTIVE,
            current_step_id=start.id or None,
            current_step=start.order or 0,
            next_processing_date=now,
            metadata=dict(identity.get("metadata") or {}),
            tags=list(identity.get("tags") or []),
            flow_path=[FlowPathEntry(step_id=None, timestamp=now, action="enrolled", result="Contact added to flow")],
            created_at=now,
            updated_at=now,
        )
        document = contact.to_document()
        flow_update = UpdateBuilder().inc("stats.triggered").inc("stats.active")

        contact_id = None
        if not dry_run:
            contact_id = await self.db.insert_contact(document)
            await self.db.update_flow(flow_id, flow_update.to_mongo())
            logger.info(f"Contact {contact_id} ({email}) enrolled in flow {flow_id}")
        return {
            "contactId": contact_id,
            "created": True,
            "contact": document,
            "flowUpdate": flow_update.to_mongo(),
        }

    async def enroll_contact(self, flow_id: str, identity: Dict[str, Any], now: Optional[datetime] = None) -> Contact:
        result = await self.add_contact_to_flow(flow_id, identity, now=now)
        return Contact.model_validate(await self.db.get_contact(result["contactId"]))

    async def reset_contact(self, flow_id: str, contact_id: str, now: Optional[datetime] = None) -> Contact:
        """Send a contact back to the first step."""
        now = now or utc_now()
        flow = await self.get_flow(flow_id)
        contact = await self.get_contact(flow_id, contact_id)
        update = self._restart_update(flow, now, "reset", "Contact reset to first step")
        await self.db.update_contact(contact_id, update.to_mongo())
        if contact.status != ContactStatus.ACTIVE:
            flow_update = UpdateBuilder().inc("stats.active")
            if contact.status == ContactStatus.ERROR:
                flow_update.inc("stats.failed", -1)
            await self.db.update_flow(flow_id, flow_update.to_mongo())
        logger.info(f"Contact {contact_id} reset in flow {flow_id}")
        return Contact.model_validate(await self.db.get_contact(contact_id))

    async def remove_contact(self, flow_id: str, contact_id: str, now: Optional[datetime] = None) -> Contact:
        """Detach a contact from its flow."""
        now = now or utc_now()
        contact = await self.get_contact(flow_id, contact_id)
        update = (
            UpdateBuilder()
            .set("flow", None)
            .set("status", ContactStatus.COMPLETED.value)
            .set("currentStepId", None)
            .set("nextProcessingDate", None)
            .set("updatedAt", now)
            .push("flowPath", FlowPathEntry(
                step_id=contact.current_step_id, timestamp=now, action="removed_from_flow",
                result="Contact removed from flow"
            ).to_document())
        )
        await self.db.update_contact(contact_id, update.to_mongo())
        if contact.status == ContactStatus.ACTIVE:
            await self.db.update_flow(flow_id, UpdateBuilder().inc("stats.active", -1).to_mongo())
        logger.info(f"Contact {contact_id} removed from flow {flow_id}")
        return Contact.model_validate(await self.db.get_contact(contact_id))


flow_service = FlowService(db_service)
