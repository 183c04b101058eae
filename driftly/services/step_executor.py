# /driftly/services/step_executor.py

import structlog
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from driftly.config.settings import Settings
from driftly.exceptions import (
    ActionFailure,
    ConditionEvaluationFailure,
    FlowNotFound,
    MissingStepFailure,
    PermanentDeliveryFailure,
    TransientDeliveryFailure,
    WebhookFailure,
)
from driftly.models.common import utc_now
from driftly.models.contact import (
    ENGINE_FIELDS,
    IDENTITY_FIELDS,
    TERMINAL_STATUSES,
    Contact,
    ContactStatus,
    FlowPathEntry,
)
from driftly.models.domain import DeliveryReceipt, WebhookResponse
from driftly.models.execution import ExecutionResult, StepOutcome
from driftly.models.flow import (
    EXIT,
    ActionStep,
    ActionType,
    BaseStep,
    ConditionStep,
    DelayStep,
    EmailStep,
    Flow,
    StepType,
    WebhookStep,
)
from driftly.utils.metrics import steps_executed_counter
from driftly.workflows.conditions import evaluate
from driftly.workflows.routing import branch_target, fallback_target, find_step, first_step, next_step_id
from driftly.workflows.templating import html_to_text, render_html, render_subject
from driftly.workflows.updates import UpdateBuilder
from driftly.services.webhook_service import build_body

log = structlog.get_logger(__name__)

SCALAR_TYPES = (str, int, float, bool, type(None))


def error_type_for(exc: BaseException) -> str:
    """Error type recorded for a failure that reached the per-contact boundary."""
    if isinstance(exc, FlowNotFound):
        return "flow_not_found"
    if isinstance(exc, MissingStepFailure):
        return "missing_step"
    if isinstance(exc, ConditionEvaluationFailure):
        return "condition_error"
    if isinstance(exc, (PermanentDeliveryFailure, TransientDeliveryFailure)):
        return "email_error"
    if isinstance(exc, WebhookFailure):
        return "webhook_error"
    if isinstance(exc, ActionFailure):
        return "action_error"
    return "processing_error"


class StepContext:
    """Everything one step execution decides, collected before a single write."""

    def __init__(self, flow: Flow, contact: Contact, step: BaseStep, now: datetime, dry_run: bool, deliver: bool):
        self.flow = flow
        self.contact = contact
        self.step = step
        self.now = now
        self.dry_run = dry_run
        self.preview = dry_run and not deliver
        self.contact_update = UpdateBuilder()
        self.flow_update = UpdateBuilder()
        self.side_effects: List[Dict[str, Any]] = []
        self.errors: List[Dict[str, Any]] = []
        self.outcome = StepOutcome.ADVANCED
        self.status = contact.status
        self.next_step_id: Optional[str] = contact.current_step_id
        self.next_processing_date: Optional[datetime] = None
        self.action: Optional[str] = None
        self.message: Optional[str] = None

    def audit(self, action: str, result: Any = None) -> None:
        self.action = action
        entry = FlowPathEntry(step_id=self.step.id or None, timestamp=self.now, action=action, result=result)
        self.contact_update.push("flowPath", entry.to_document())

    def note_error(self, error_type: str, message: str, additional_data: Optional[Dict[str, Any]] = None) -> None:
        self.errors.append({
            "stepId": self.step.id or None,
            "errorType": error_type,
            "errorMessage": message,
            "additionalData": additional_data or {},
        })


class StepExecutor:
    """
    Executes exactly one step for one contact and leaves the contact in one
    consistent state: advanced, waiting or terminated.

    process_contact() is the per-contact boundary: whatever goes wrong inside
    is converted into the contact's `error` status and an entry in the flow's
    error log, and never propagates to the batch.
    """

    def __init__(self, db, email_service, webhook_client, error_service, flow_service, settings: Settings):
        self.db = db
        self.email_service = email_service
        self.webhook_client = webhook_client
        self.error_service = error_service
        self.flow_service = flow_service
        self.settings = settings
        self.handlers: Dict[StepType, Callable[[StepContext], Awaitable[None]]] = {
            StepType.EMAIL: self._execute_email,
            StepType.DELAY: self._execute_delay,
            StepType.CONDITION: self._execute_condition,
            StepType.WEBHOOK: self._execute_webhook,
            StepType.ACTION: self._execute_action,
        }
        self.action_handlers: Dict[str, Callable[[StepContext, Dict[str, Any]], Awaitable[Tuple[Any, bool]]]] = {
            ActionType.TAG.value: self._action_tag,
            ActionType.UPDATE_CONTACT.value: self._action_update_contact,
            ActionType.ADD_TO_FLOW.value: self._action_add_to_flow,
            ActionType.REMOVE_FROM_FLOW.value: self._action_remove_from_flow,
            ActionType.CUSTOM.value: self._action_custom,
        }

    # ==================== Boundary ====================

    async def process_contact(
        self,
        contact: Contact,
        flow: Optional[Flow],
        now: Optional[datetime] = None,
        dry_run: bool = False,
        deliver: bool = True
    ) -> ExecutionResult:
        now = now or utc_now()
        logger = log.bind(contact_id=contact.id, flow_id=contact.flow, step_id=contact.current_step_id)
        try:
            if flow is None:
                raise FlowNotFound(f"Flow {contact.flow} does not exist")
            if not flow.steps:
                raise MissingStepFailure(f"Flow {flow.id} has no steps")
            result = await self.execute_step(contact, flow, now, dry_run=dry_run, deliver=deliver)
        except Exception as e:
            logger.error("contact_processing_failed", error_type=error_type_for(e), error=str(e), exc_info=True)
            result = await self.halt(contact, flow, e, now, dry_run=dry_run)

        steps_executed_counter.labels(step_type=result.step_type or "none", outcome=result.outcome.value).inc()
        logger.info("step_executed", outcome=result.outcome.value, action=result.action, next_step_id=result.next_step_id)
        return result

    async def halt(
        self,
        contact: Contact,
        flow: Optional[Flow],
        exc: BaseException,
        now: datetime,
        dry_run: bool = False
    ) -> ExecutionResult:
        """Park a contact in the error status for a failure that cannot be continued past."""
        written = await self.error_service.log_error(
            flow, contact, contact.current_step_id, error_type_for(exc), str(exc),
            {"exception": type(exc).__name__}, now=now, dry_run=dry_run
        )
        return ExecutionResult(
            contact_id=contact.id,
            flow_id=contact.flow,
            step_id=contact.current_step_id,
            action="error",
            outcome=StepOutcome.ERROR,
            status=ContactStatus.ERROR,
            message=str(exc),
            dry_run=dry_run,
            contact_update=written["contact_update"],
            flow_update=written["flow_update"],
            errors=[written["record"]] if written["record"] else [],
        )

    async def execute_step(
        self,
        contact: Contact,
        flow: Flow,
        now: datetime,
        dry_run: bool = False,
        deliver: bool = True
    ) -> ExecutionResult:
        """Resolve the contact's current step and run its handler. Raises on halting failures."""
        step = find_step(flow, contact.current_step_id)
        if step is None:
            return await self._recover(contact, flow, now, dry_run)

        ctx = StepContext(flow, contact, step, now, dry_run, deliver)
        try:
            handler = self.handlers[StepType(step.type)]
        except ValueError:
            handler = self._execute_unknown
        await handler(ctx)
        return await self._commit(ctx)

    async def _commit(self, ctx: StepContext) -> ExecutionResult:
        ctx.contact_update.set("updatedAt", ctx.now)
        records = [
            self.error_service.append_error(
                ctx.flow_update, ctx.flow, ctx.contact.id, note["stepId"], note["errorType"],
                note["errorMessage"], note["additionalData"], now=ctx.now
            )
            for note in ctx.errors
        ]
        contact_doc = ctx.contact_update.to_mongo()
        flow_doc = ctx.flow_update.to_mongo()

        if not ctx.dry_run:
            await self.db.update_contact(ctx.contact.id, contact_doc)
            if flow_doc:
                await self.db.update_flow(ctx.flow.id, flow_doc)

        return ExecutionResult(
            contact_id=ctx.contact.id,
            flow_id=ctx.flow.id,
            step_id=ctx.step.id,
            step_type=ctx.step.type,
            action=ctx.action,
            outcome=ctx.outcome,
            status=ctx.status,
            next_step_id=ctx.next_step_id,
            next_processing_date=ctx.next_processing_date,
            message=ctx.message,
            dry_run=ctx.dry_run,
            contact_update=contact_doc,
            flow_update=flow_doc,
            side_effects=ctx.side_effects,
            errors=records,
        )

    async def _recover(self, contact: Contact, flow: Flow, now: datetime, dry_run: bool) -> ExecutionResult:
        """The current step no longer exists: restart from the first step."""
        start = first_step(flow)
        if start is None or not start.id:
            raise MissingStepFailure(f"Flow {flow.id} has no step to recover to")

        entry = FlowPathEntry(
            step_id=start.id,
            timestamp=now,
            action="recover",
            result={"missingStepId": contact.current_step_id},
        )
        update = (
            UpdateBuilder()
            .set("currentStepId", start.id)
            .set("currentStep", start.order or 0)
            .set("nextProcessingDate", now)
            .set("updatedAt", now)
            .push("flowPath", entry.to_document())
        )
        log.warning("contact_step_recovered", contact_id=contact.id, missing_step_id=contact.current_step_id, reset_to=start.id)
        if not dry_run:
            await self.db.update_contact(contact.id, update.to_mongo())

        return ExecutionResult(
            contact_id=contact.id,
            flow_id=flow.id,
            step_id=contact.current_step_id,
            action="recover",
            outcome=StepOutcome.RECOVERED,
            status=contact.status,
            next_step_id=start.id,
            next_processing_date=now,
            dry_run=dry_run,
            contact_update=update.to_mongo(),
        )

    # ==================== Transitions ====================

    def _advance(self, ctx: StepContext, target_id: Optional[str], delay: timedelta = timedelta(0)) -> None:
        if target_id is None or target_id == EXIT:
            self._complete(ctx)
            return

        target = find_step(ctx.flow, target_id)
        if target is None:
            raise MissingStepFailure(f"Step {ctx.step.id} routes to non-existent step {target_id}")

        resume_at = ctx.now + delay
        ctx.contact_update.set("currentStepId", target.id)
        ctx.contact_update.set("currentStep", target.order or 0)
        ctx.contact_update.set("nextProcessingDate", resume_at)
        ctx.outcome = StepOutcome.ADVANCED
        ctx.next_step_id = target.id
        ctx.next_processing_date = resume_at

    def _complete(self, ctx: StepContext, action: str = "completed", result: Any = "Flow completed") -> None:
        ctx.audit(action, result)
        ctx.contact_update.set("status", ContactStatus.COMPLETED.value)
        ctx.contact_update.set("nextProcessingDate", None)
        ctx.flow_update.inc("stats.completed").inc("stats.active", -1)
        ctx.outcome = StepOutcome.TERMINATED
        ctx.status = ContactStatus.COMPLETED
        ctx.next_step_id = None
        ctx.next_processing_date = None

    def _continue_after_failure(self, ctx: StepContext, exc: Exception) -> None:
        """Best-effort policy: either move on after a failed step or halt the contact."""
        if not self.settings.continue_on_step_failure:
            raise exc
        ctx.message = str(exc)

    # ==================== Step handlers ====================

    async def _execute_email(self, ctx: StepContext) -> None:
        step: EmailStep = ctx.step
        contact = ctx.contact
        subject = render_subject(step.subject, contact)
        html = render_html(step.body, contact)

        if ctx.preview:
            ctx.side_effects.append({"type": "email", "to": contact.email, "subject": subject, "html": html})
            receipt = DeliveryReceipt(to=contact.email, preview=True)
        else:
            try:
                receipt = await self.email_service.send(contact.email, subject, html, html_to_text(html))
            except PermanentDeliveryFailure as e:
                ctx.audit("email_bounced", {"error": str(e), "statusCode": e.status_code})
                ctx.note_error("email_bounce", str(e), {"statusCode": e.status_code, **e.details})
                ctx.contact_update.set("status", ContactStatus.BOUNCED.value)
                ctx.contact_update.set("nextProcessingDate", None)
                ctx.flow_update.inc("stats.failed").inc("stats.active", -1)
                ctx.outcome = StepOutcome.TERMINATED
                ctx.status = ContactStatus.BOUNCED
                ctx.next_processing_date = None
                ctx.message = str(e)
                return
            except TransientDeliveryFailure as e:
                self._continue_after_failure(ctx, e)
                ctx.audit("email_error", {"error": str(e), "statusCode": e.status_code})
                ctx.note_error("email_error", str(e), {"statusCode": e.status_code, **e.details})
                self._advance(ctx, next_step_id(ctx.flow, step))
                return

        ctx.audit("email_sent", {"subject": subject, "messageId": receipt.message_id, "preview": receipt.preview})
        ctx.contact_update.inc("stats.emailsSent")
        ctx.contact_update.set("lastEmailSent", ctx.now)
        ctx.flow_update.inc("stats.emailsSent")

        index = contact.interaction_index(step.id)
        if index is None:
            ctx.contact_update.push("interactions", {
                "stepId": step.id,
                "opened": False,
                "clicked": False,
                "clickedLinks": [],
            })
        else:
            ctx.contact_update.set(f"interactions.{index}.opened", False)
            ctx.contact_update.set(f"interactions.{index}.clicked", False)
            ctx.contact_update.set(f"interactions.{index}.openedAt", None)
            ctx.contact_update.set(f"interactions.{index}.clickedAt", None)

        self._advance(ctx, next_step_id(ctx.flow, step), delay=step.delay)

    async def _execute_delay(self, ctx: StepContext) -> None:
        step: DelayStep = ctx.step
        history = ctx.contact.flow_path
        waited = bool(history) and history[-1].step_id == step.id and history[-1].action == "delay_started"

        if waited or step.delay <= timedelta(0):
            ctx.audit("delay_completed")
            self._advance(ctx, next_step_id(ctx.flow, step))
            return

        resume_at = ctx.now + step.delay
        ctx.audit("delay_started", {"resumeAt": resume_at.isoformat()})
        ctx.contact_update.set("nextProcessingDate", resume_at)
        ctx.outcome = StepOutcome.WAITING
        ctx.next_step_id = step.id
        ctx.next_processing_date = resume_at

    async def _execute_condition(self, ctx: StepContext) -> None:
        step: ConditionStep = ctx.step
        if step.condition is None:
            failure = ConditionEvaluationFailure(f"Condition step {step.id} has no condition to evaluate")
            target = fallback_target(step)
            if target is None:
                raise failure
            ctx.audit("condition_error", {"error": str(failure), "fallback": target})
            ctx.note_error("condition_error", str(failure))
            ctx.message = str(failure)
            self._advance(ctx, target)
            return

        result = evaluate(ctx.contact, step.condition, ctx.now)
        ctx.audit("condition_evaluated", result)
        self._advance(ctx, branch_target(step, result))

    async def _execute_webhook(self, ctx: StepContext) -> None:
        step: WebhookStep = ctx.step
        body = build_body(step.webhook_body, ctx.contact)

        if ctx.preview:
            ctx.side_effects.append({
                "type": "webhook",
                "method": step.webhook_method,
                "url": step.webhook_url,
                "headers": step.webhook_headers,
                "body": body,
            })
            response = WebhookResponse(status=0, body=None)
        else:
            try:
                response = await self.webhook_client.call(
                    step.webhook_method,
                    step.webhook_url,
                    step.webhook_headers,
                    body,
                    timeout=self.settings.webhook_timeout_seconds,
                )
            except WebhookFailure as e:
                self._continue_after_failure(ctx, e)
                ctx.audit("webhook_error", {"error": str(e), "status": e.status_code})
                ctx.note_error("webhook_error", str(e), {"status": e.status_code, "url": step.webhook_url})
                self._advance(ctx, next_step_id(ctx.flow, step))
                return

        ctx.audit("webhook_called", {"status": response.status, "data": response.body})
        ctx.contact_update.inc("stats.webhookCalls")
        ctx.flow_update.inc("stats.webhookCalls")
        self._advance(ctx, next_step_id(ctx.flow, step))

    async def _execute_action(self, ctx: StepContext) -> None:
        step: ActionStep = ctx.step
        handler = self.action_handlers.get(step.action_type)
        try:
            if handler is None:
                raise ActionFailure(f"Unknown action type '{step.action_type}'")
            result, stop = await handler(ctx, step.action_config or {})
        except Exception as e:
            self._continue_after_failure(ctx, e if isinstance(e, ActionFailure) else ActionFailure(str(e)))
            ctx.audit("action_error", {"actionType": step.action_type, "error": str(e)})
            ctx.note_error("action_error", str(e), {"actionType": step.action_type})
            self._advance(ctx, next_step_id(ctx.flow, step))
            return

        if stop:
            return
        ctx.audit(f"action_{step.action_type}", result)
        ctx.contact_update.inc("stats.actionsPerformed")
        ctx.contact_update.set("events.lastAction", ctx.now)
        self._advance(ctx, next_step_id(ctx.flow, step))

    async def _execute_unknown(self, ctx: StepContext) -> None:
        log.warning("unknown_step_type", contact_id=ctx.contact.id, step_id=ctx.step.id, step_type=ctx.step.type)
        ctx.audit("step_skipped", {"reason": f"Unknown step type '{ctx.step.type}'"})
        self._advance(ctx, next_step_id(ctx.flow, ctx.step))

    # ==================== Actions ====================

    async def _action_tag(self, ctx: StepContext, config: Dict[str, Any]) -> Tuple[Any, bool]:
        tags = config.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]
        operation = config.get("operation", "add")
        if operation == "add":
            ctx.contact_update.add_to_set("tags", tags)
        elif operation == "remove":
            ctx.contact_update.pull("tags", tags)
        else:
            raise ActionFailure(f"Unknown tag operation '{operation}'")
        return {"operation": operation, "tags": tags}, False

    async def _action_update_contact(self, ctx: StepContext, config: Dict[str, Any]) -> Tuple[Any, bool]:
        updated, rejected = [], []
        for key, value in (config.get("fields") or {}).items():
            if key.startswith("metadata."):
                meta_key = key[len("metadata."):]
                if meta_key and "$" not in meta_key:
                    ctx.contact_update.set(f"metadata.{meta_key}", value)
                    updated.append(key)
                    continue
            elif (
                key not in IDENTITY_FIELDS
                and key not in ENGINE_FIELDS
                and "." not in key
                and not key.startswith("$")
                and isinstance(value, SCALAR_TYPES)
            ):
                ctx.contact_update.set(key, value)
                updated.append(key)
                continue
            rejected.append(key)

        if rejected:
            log.warning("update_contact_fields_rejected", contact_id=ctx.contact.id, fields=rejected)
        return {"updated": updated, "rejected": rejected}, False

    async def _action_add_to_flow(self, ctx: StepContext, config: Dict[str, Any]) -> Tuple[Any, bool]:
        target_flow_id = config.get("flowId")
        if not target_flow_id:
            raise ActionFailure("add_to_flow needs a flowId")

        contact = ctx.contact
        identity = {
            "owner": contact.owner,
            "email": contact.email,
            "firstName": contact.first_name,
            "lastName": contact.last_name,
            "metadata": contact.metadata,
            "tags": contact.tags,
        }
        if ctx.dry_run:
            ctx.side_effects.append({"type": "add_to_flow", "flowId": target_flow_id, "email": contact.email})
            return {"flowId": target_flow_id, "dryRun": True}, False

        outcome = await self.flow_service.add_contact_to_flow(target_flow_id, identity, now=ctx.now)
        return {"flowId": target_flow_id, "contactId": outcome["contactId"], "created": outcome["created"]}, False

    async def _action_remove_from_flow(self, ctx: StepContext, config: Dict[str, Any]) -> Tuple[Any, bool]:
        if config.get("removeFromCurrent"):
            self._complete(ctx, action="removed_from_flow", result="Contact removed from flow")
            return None, True

        target_flow_id = config.get("flowId")
        if not target_flow_id:
            raise ActionFailure("remove_from_flow needs removeFromCurrent or a flowId")
        if ctx.dry_run:
            ctx.side_effects.append({"type": "remove_from_flow", "flowId": target_flow_id, "email": ctx.contact.email})
            return {"flowId": target_flow_id, "dryRun": True}, False

        raw = await self.db.find_contact_in_flow(target_flow_id, ctx.contact.email)
        if not raw:
            return {"flowId": target_flow_id, "removed": False}, False
        other = Contact.model_validate(raw)
        if other.status in TERMINAL_STATUSES:
            return {"flowId": target_flow_id, "removed": False}, False

        entry = FlowPathEntry(
            step_id=other.current_step_id,
            timestamp=ctx.now,
            action="removed_from_flow",
            result=f"Removed by flow {ctx.flow.id}",
        )
        await self.db.update_contact(other.id, (
            UpdateBuilder()
            .set("status", ContactStatus.COMPLETED.value)
            .set("nextProcessingDate", None)
            .set("updatedAt", ctx.now)
            .push("flowPath", entry.to_document())
            .to_mongo()
        ))
        flow_update = UpdateBuilder().inc("stats.completed")
        if other.status == ContactStatus.ACTIVE:
            flow_update.inc("stats.active", -1)
        await self.db.update_flow(target_flow_id, flow_update.to_mongo())
        return {"flowId": target_flow_id, "removed": True, "contactId": other.id}, False

    async def _action_custom(self, ctx: StepContext, config: Dict[str, Any]) -> Tuple[Any, bool]:
        log.info("custom_action", contact_id=ctx.contact.id, step_id=ctx.step.id, config=config)
        return "success", False
