# /driftly/jobs/legacy_migration.py

import logging
from datetime import datetime, timedelta
from typing import Optional

from driftly.exceptions import PermanentDeliveryFailure, TransientDeliveryFailure
from driftly.models.contact import Contact, ContactStatus, FlowPathEntry
from driftly.models.execution import ExecutionResult, StepOutcome
from driftly.models.flow import Flow
from driftly.utils.metrics import legacy_migrations_counter
from driftly.workflows.routing import first_step, step_by_order
from driftly.workflows.templating import html_to_text, render_html, render_subject
from driftly.workflows.updates import UpdateBuilder

# Contacts enrolled before steps had ids are positioned by the numeric
# `currentStep` and scheduled by `nextEmailDate`. Once their flow has been
# upgraded (every step has an id and a type) they are migrated to
# `currentStepId`; until then they keep receiving the positional email sequence.

logger = logging.getLogger(__name__)

TRANSIENT_RETRY_DELAY = timedelta(minutes=30)
MAX_TRANSIENT_RETRY_DELAY = timedelta(hours=24)


def transient_retry_delay(contact: Contact) -> timedelta:
    """Doubles with every consecutive email_error at the end of flowPath, up to a day."""
    failures = 0
    for entry in reversed(contact.flow_path):
        if entry.action != "email_error":
            break
        failures += 1
    return min(TRANSIENT_RETRY_DELAY * (2 ** min(failures, 6)), MAX_TRANSIENT_RETRY_DELAY)


class LegacyContactProcessor:
    def __init__(self, db, email_service, error_service):
        self.db = db
        self.email_service = email_service
        self.error_service = error_service

    async def migrate(self, contact: Contact, flow: Flow, now: datetime, dry_run: bool = False) -> ExecutionResult:
        """
        Convert a numeric position into a step id. Idempotent: a contact that
        already has a currentStepId is left untouched.
        """
        if contact.current_step_id:
            return ExecutionResult(
                contact_id=contact.id, flow_id=flow.id, step_id=contact.current_step_id,
                outcome=StepOutcome.SKIPPED, status=contact.status, message="Contact already migrated",
                dry_run=dry_run,
            )

        target = step_by_order(flow, contact.current_step) or first_step(flow)
        if target is None or not target.id:
            raise ValueError(f"Cannot find a step for contact {contact.id} in flow {flow.id}")

        entry = FlowPathEntry(
            step_id=target.id,
            timestamp=now,
            action="migrated",
            result=f"Migrated from legacy format. Previous step: {contact.current_step}",
        )
        update = (
            UpdateBuilder()
            .set("currentStepId", target.id)
            .set("currentStep", target.order or 0)
            .set("nextProcessingDate", now)
            .set("updatedAt", now)
            .push("flowPath", entry.to_document())
        )

        applied = True
        if not dry_run:
            # Only a contact that is still unmigrated may be migrated.
            applied = await self.db.update_contact(contact.id, update.to_mongo(), conditions={"currentStepId": None})
        if applied:
            legacy_migrations_counter.inc()
            logger.info(f"Contact {contact.id} migrated to step {target.id} in flow {flow.id}")

        return ExecutionResult(
            contact_id=contact.id,
            flow_id=flow.id,
            step_id=target.id,
            action="migrated",
            outcome=StepOutcome.MIGRATED if applied else StepOutcome.SKIPPED,
            status=contact.status,
            next_step_id=target.id,
            next_processing_date=now,
            dry_run=dry_run,
            contact_update=update.to_mongo(),
        )

    async def process(self, contact: Contact, flow: Flow, now: datetime, dry_run: bool = False) -> ExecutionResult:
        """Send the positional email `steps[currentStep]` of a flow still on the legacy format."""
        position = contact.current_step
        contact_update = UpdateBuilder().set("updatedAt", now)
        flow_update = UpdateBuilder()
        errors = []
        message: Optional[str] = None

        if position >= len(flow.steps):
            contact_update.set("status", ContactStatus.COMPLETED.value)
            contact_update.set("nextEmailDate", None)
            contact_update.set("nextProcessingDate", None)
            contact_update.push("flowPath", FlowPathEntry(timestamp=now, action="completed", result="Flow completed").to_document())
            flow_update.inc("stats.completed").inc("stats.active", -1)
            outcome, status, action = StepOutcome.TERMINATED, ContactStatus.COMPLETED, "completed"
        else:
            step = flow.steps[position]
            subject = render_subject(getattr(step, "subject", ""), contact)
            html = render_html(getattr(step, "body", ""), contact)
            try:
                receipt = await self.email_service.send(contact.email, subject, html, html_to_text(html))
            except PermanentDeliveryFailure as e:
                contact_update.set("status", ContactStatus.BOUNCED.value)
                contact_update.set("nextEmailDate", None)
                contact_update.set("nextProcessingDate", None)
                contact_update.push("flowPath", FlowPathEntry(timestamp=now, action="email_bounced", result=str(e)).to_document())
                flow_update.inc("stats.failed").inc("stats.active", -1)
                errors.append(self.error_service.append_error(
                    flow_update, flow, contact.id, step.id or None, "email_bounce", str(e), now=now
                ))
                outcome, status, action, message = StepOutcome.TERMINATED, ContactStatus.BOUNCED, "email_bounced", str(e)
            except TransientDeliveryFailure as e:
                # Same position, retried after a backoff.
                contact_update.set("nextEmailDate", now + transient_retry_delay(contact))
                contact_update.push("flowPath", FlowPathEntry(timestamp=now, action="email_error", result=str(e)).to_document())
                errors.append(self.error_service.append_error(
                    flow_update, flow, contact.id, step.id or None, "email_error", str(e), now=now
                ))
                outcome, status, action, message = StepOutcome.WAITING, contact.status, "email_error", str(e)
            else:
                contact_update.set("currentStep", position + 1)
                contact_update.set("lastEmailSent", now)
                contact_update.set("nextEmailDate", now + getattr(step, "delay", timedelta(0)))
                contact_update.inc("stats.emailsSent")
                contact_update.push("flowPath", FlowPathEntry(
                    timestamp=now, action="email_sent", result={"subject": subject, "messageId": receipt.message_id}
                ).to_document())
                flow_update.inc("stats.emailsSent")
                outcome, status, action = StepOutcome.ADVANCED, contact.status, "email_sent"
                logger.info(f"Email sent to {contact.email} for flow {flow.id}, step {position + 1}")

        if not dry_run:
            await self.db.update_contact(contact.id, contact_update.to_mongo())
            if flow_update:
                await self.db.update_flow(flow.id, flow_update.to_mongo())

        return ExecutionResult(
            contact_id=contact.id,
            flow_id=flow.id,
            step_type="legacy",
            action=action,
            outcome=outcome,
            status=status,
            message=message,
            dry_run=dry_run,
            contact_update=contact_update.to_mongo(),
            flow_update=flow_update.to_mongo(),
            errors=errors,
        )
