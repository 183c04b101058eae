# /driftly/jobs/flow_processor.py

import asyncio
import os
import socket
import uuid
import structlog
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from driftly.config.settings import Settings
from driftly.exceptions import FlowNotFound, MissingStepFailure
from driftly.models.common import utc_now
from driftly.models.contact import Contact, ContactStatus
from driftly.models.execution import ExecutionResult, StepOutcome, TickSummary
from driftly.models.flow import Flow
from driftly.utils.metrics import contacts_skipped_counter, due_contacts_gauge, tick_duration_histogram
from driftly.workflows.routing import find_step

log = structlog.get_logger(__name__)

JOB_ID = "flow_processor_job"
TEST_CONTACT_EMAIL = "test@example.com"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _still_due(contact: Contact, now: datetime) -> bool:
    if contact.next_processing_date is not None and contact.next_processing_date <= now:
        return True
    return (
        not contact.current_step_id
        and contact.next_email_date is not None
        and contact.next_email_date <= now
    )


class FlowScheduler:
    """
    Drives flow execution: one tick finds every due contact and runs each
    through the step executor with bounded concurrency.

    Built once per process and passed to whatever needs a manual trigger.
    Ticks inside one process never overlap; across processes the per-contact
    lease keeps two workers from processing the same contact at once.
    """

    def __init__(self, db, executor, legacy_processor, settings: Settings, worker_id: Optional[str] = None):
        self.db = db
        self.executor = executor
        self.legacy_processor = legacy_processor
        self.settings = settings
        self.worker_id = worker_id or default_worker_id()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._tick_lock = asyncio.Lock()

    # ==================== Lifecycle ====================

    @property
    def is_running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        if self.is_running:
            log.info("flow_scheduler_already_running")
            return

        self.scheduler = AsyncIOScheduler(timezone=self.settings.scheduler_timezone)
        self.scheduler.add_job(
            self.run_tick,
            'interval',
            minutes=self.settings.scheduler_interval_minutes,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        log.info(
            "flow_scheduler_started",
            interval_minutes=self.settings.scheduler_interval_minutes,
            worker_id=self.worker_id,
        )

    def stop(self) -> None:
        if not self.is_running:
            log.info("flow_scheduler_not_running")
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        log.info("flow_scheduler_stopped")

    async def run_tick(self) -> None:
        """Scheduled job entry point. Never raises into APScheduler."""
        try:
            await self.process_due_contacts()
        except Exception as e:
            log.error("flow_tick_failed", error=str(e), exc_info=True)

    # ==================== Ticks ====================

    async def process_due_contacts(self, now: Optional[datetime] = None) -> TickSummary:
        """Run one tick. Identical for scheduled runs and manual triggers."""
        async with self._tick_lock:
            now = now or utc_now()
            summary = TickSummary(started_at=now)
            limit = self.settings.due_batch_limit

            with tick_duration_histogram.time():
                # Contacts of paused flows are not candidates.
                paused = await self.db.find_paused_flow_ids()
                due = await self.db.find_due_contacts(now, limit, exclude_flows=paused)
                legacy = await self.db.find_legacy_due_contacts(now, limit, exclude_flows=paused)

                candidates: List[Dict[str, Any]] = []
                seen = set()
                for raw in due + legacy:
                    contact_id = str(raw["_id"])
                    if contact_id not in seen:
                        seen.add(contact_id)
                        candidates.append(raw)

                summary.due = len(candidates)
                due_contacts_gauge.set(summary.due)

                flows: Dict[str, Optional[Flow]] = {}
                semaphore = asyncio.Semaphore(self.settings.max_concurrent_contacts)
                await asyncio.gather(*(
                    self._process_candidate(str(raw["_id"]), now, flows, semaphore, summary)
                    for raw in candidates
                ))

            summary.finished_at = utc_now()
            log.info(
                "flow_tick_completed",
                due=summary.due,
                processed=summary.processed,
                skipped=summary.skipped,
                failed=summary.failed,
                migrated=summary.migrated,
                legacy_processed=summary.legacy_processed,
                duration_seconds=summary.duration_seconds,
            )
            return summary

    async def _process_candidate(
        self,
        contact_id: str,
        now: datetime,
        flows: Dict[str, Optional[Flow]],
        semaphore: asyncio.Semaphore,
        summary: TickSummary
    ) -> None:
        async with semaphore:
            lease_until = now + timedelta(seconds=self.settings.contact_lease_seconds)
            claimed = await self.db.claim_contact(contact_id, now, lease_until, self.worker_id)
            if not claimed:
                summary.skipped += 1
                contacts_skipped_counter.labels(reason="leased").inc()
                return

            logger = log.bind(contact_id=contact_id)
            try:
                contact = Contact.model_validate(claimed)
                if contact.status != ContactStatus.ACTIVE:
                    summary.skipped += 1
                    contacts_skipped_counter.labels(reason="not_active").inc()
                    return
                if not _still_due(contact, now):
                    # Another worker finished it between our query and the claim.
                    summary.skipped += 1
                    contacts_skipped_counter.labels(reason="not_due").inc()
                    return

                flow = await self._load_flow(contact.flow, flows)
                if flow is not None and not flow.is_active:
                    summary.skipped += 1
                    contacts_skipped_counter.labels(reason="flow_inactive").inc()
                    return

                summary.processed += 1
                for _ in range(self.settings.max_steps_per_contact):
                    result = await self.run_contact(contact, flow, now)
                    summary.record(result)
                    if result.outcome == StepOutcome.ERROR:
                        summary.failed += 1
                    elif result.outcome == StepOutcome.MIGRATED:
                        summary.migrated += 1
                    elif result.step_type == "legacy":
                        summary.legacy_processed += 1

                    if not result.is_due_again(now):
                        break
                    raw = await self.db.get_contact(contact_id)
                    if not raw:
                        break
                    contact = Contact.model_validate(raw)
                    if contact.status != ContactStatus.ACTIVE:
                        break
            except Exception as e:
                summary.failed += 1
                logger.error("contact_tick_failed", error=str(e), exc_info=True)
            finally:
                try:
                    await self.db.release_contact(contact_id, self.worker_id)
                except Exception as e:
                    logger.error("contact_lease_release_failed", error=str(e))

    async def _load_flow(self, flow_id: Optional[str], flows: Dict[str, Optional[Flow]]) -> Optional[Flow]:
        if not flow_id:
            return None
        if flow_id not in flows:
            raw = await self.db.get_flow(flow_id)
            flows[flow_id] = Flow.model_validate(raw) if raw else None
        return flows[flow_id]

    async def run_contact(
        self,
        contact: Contact,
        flow: Optional[Flow],
        now: datetime,
        dry_run: bool = False,
        deliver: bool = True
    ) -> ExecutionResult:
        """Pick the path for one contact: legacy migration, legacy sending or the step executor."""
        if flow is not None and flow.steps and not contact.current_step_id:
            try:
                if flow.is_id_based:
                    return await self.legacy_processor.migrate(contact, flow, now, dry_run=dry_run)
                return await self.legacy_processor.process(contact, flow, now, dry_run=dry_run)
            except Exception as e:
                log.error("legacy_contact_failed", contact_id=contact.id, error=str(e), exc_info=True)
                return await self.executor.halt(contact, flow, e, now, dry_run=dry_run)
        return await self.executor.process_contact(contact, flow, now, dry_run=dry_run, deliver=deliver)

    # ==================== Manual entry points ====================

    async def trigger_flow(self, flow_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Make every active contact of a flow due now, then run a tick."""
        now = now or utc_now()
        if not await self.db.get_flow(flow_id):
            raise FlowNotFound(f"Automation flow {flow_id} not found")
        rescheduled = await self.db.reschedule_active_contacts(flow_id, now)
        log.info("flow_triggered", flow_id=flow_id, rescheduled=rescheduled)
        summary = await self.process_due_contacts(now)
        return {"rescheduled": rescheduled, "summary": summary}

    async def test_step(
        self,
        flow: Union[Flow, str],
        step_id: str,
        contact_data: Optional[Dict[str, Any]] = None,
        deliver: bool = False,
        now: Optional[datetime] = None
    ) -> ExecutionResult:
        """
        Execute one step for a synthetic contact without touching the store.

        Args:
            flow: Flow model or flow id
            step_id: Step to execute
            contact_data: email, firstName, lastName, metadata, tags, interactions...
            deliver: Actually send the email / call the webhook instead of previewing

        Returns:
            ExecutionResult with the update documents that would have been written
        """
        if not isinstance(flow, Flow):
            raw = await self.db.get_flow(flow)
            if not raw:
                raise FlowNotFound(f"Automation flow {flow} not found")
            flow = Flow.model_validate(raw)
        if find_step(flow, step_id) is None:
            raise MissingStepFailure(f"Step {step_id} not found in flow {flow.id}")

        data = dict(contact_data or {})
        data.setdefault("email", TEST_CONTACT_EMAIL)
        data.update({"flow": flow.id, "currentStepId": step_id, "status": ContactStatus.ACTIVE.value})
        contact = Contact.model_validate(data)
        return await self.executor.process_contact(contact, flow, now or utc_now(), dry_run=True, deliver=deliver)


def build_flow_scheduler(settings: Settings) -> FlowScheduler:
    """Wire the scheduler to the process-wide service instances."""
    from driftly.jobs.legacy_migration import LegacyContactProcessor
    from driftly.services.db_service import db_service
    from driftly.services.email_service import email_service
    from driftly.services.error_service import error_service
    from driftly.services.flow_service import flow_service
    from driftly.services.step_executor import StepExecutor
    from driftly.services.webhook_service import webhook_client

    executor = StepExecutor(db_service, email_service, webhook_client, error_service, flow_service, settings)
    legacy_processor = LegacyContactProcessor(db_service, email_service, error_service)
    return FlowScheduler(db_service, executor, legacy_processor, settings)
