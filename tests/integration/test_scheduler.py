# tests/integration/test_scheduler.py
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from driftly.exceptions import FlowNotFound, MissingStepFailure, PermanentDeliveryFailure, WebhookFailure
from driftly.jobs.flow_processor import FlowScheduler
from driftly.models.execution import StepOutcome
from fakes import make_contact, make_flow


def _email(step_id, **fields):
    step = {"id": step_id, "type": "email", "subject": f"{step_id} for {{{{firstName}}}}", "body": "<p>Hi</p>"}
    step.update(fields)
    return step


def _path(db, contact_id):
    return [entry["action"] for entry in db.contact(contact_id)["flowPath"]]


@pytest.mark.asyncio
async def test_email_delay_email_sequence(flow_scheduler, db, email, engine_settings, now):
    engine_settings.max_steps_per_contact = 5
    steps = [_email("welcome"), {"id": "wait", "type": "delay", "delayDays": 3}, _email("tips")]
    flow_id = db.add_flow(make_flow(steps, stats={"active": 1, "completed": 0, "emailsSent": 0}))
    contact_id = db.add_contact(make_contact(flow_id, "welcome", now))

    summary = await flow_scheduler.process_due_contacts(now)

    # Welcome email goes out and the contact parks on the delay in the same tick.
    assert summary.processed == 1
    assert [m["subject"] for m in email.sent] == ["welcome for Ada"]
    contact = db.contact(contact_id)
    assert contact["currentStepId"] == "wait"
    assert contact["nextProcessingDate"] == now + timedelta(days=3)
    assert "leaseOwner" not in contact

    # Nothing is due in between.
    quiet = await flow_scheduler.process_due_contacts(now + timedelta(days=1))
    assert quiet.due == 0

    later = now + timedelta(days=3)
    await flow_scheduler.process_due_contacts(later)

    assert [m["subject"] for m in email.sent] == ["welcome for Ada", "tips for Ada"]
    assert _path(db, contact_id) == ["email_sent", "delay_started", "delay_completed", "email_sent", "completed"]
    assert db.contact(contact_id)["status"] == "completed"
    assert db.flow(flow_id)["stats"] == {"active": 0, "completed": 1, "emailsSent": 2}


@pytest.mark.asyncio
async def test_one_step_per_tick_by_default(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([_email("a"), _email("b")]))
    contact_id = db.add_contact(make_contact(flow_id, "a", now))

    await flow_scheduler.process_due_contacts(now)

    assert len(email.sent) == 1
    assert db.contact(contact_id)["currentStepId"] == "b"
    assert db.contact(contact_id)["nextProcessingDate"] == now


@pytest.mark.asyncio
async def test_open_within_timeframe_takes_yes_branch(flow_scheduler, db, email, engine_settings, now):
    engine_settings.max_steps_per_contact = 3
    steps = [
        {
            "id": "opened", "type": "condition",
            "condition": {"type": "open", "value": "welcome", "timeframe": 48},
            "nextSteps": {"yes": "thanks", "no": "nudge"},
        },
        _email("thanks", nextSteps={"default": "exit"}),
        _email("nudge"),
    ]
    flow_id = db.add_flow(make_flow(steps))
    opener = db.add_contact(make_contact(
        flow_id, "opened", now, email="opener@example.com",
        interactions=[{"stepId": "welcome", "opened": True, "openedAt": now - timedelta(hours=5)}],
    ))
    late_opener = db.add_contact(make_contact(
        flow_id, "opened", now, email="late@example.com",
        interactions=[{"stepId": "welcome", "opened": True, "openedAt": now - timedelta(hours=50)}],
    ))

    await flow_scheduler.process_due_contacts(now)

    sent = {m["to"]: m["subject"] for m in email.sent}
    assert sent["opener@example.com"].startswith("thanks")
    assert sent["late@example.com"].startswith("nudge")
    assert db.contact(opener)["status"] == "completed"
    assert db.contact(late_opener)["status"] == "completed"


@pytest.mark.asyncio
async def test_permanent_bounce_stops_the_contact(flow_scheduler, db, email, now):
    email.failure = PermanentDeliveryFailure("Recipient bounced", status_code=400)
    flow_id = db.add_flow(make_flow([_email("welcome"), _email("tips")], stats={"active": 1, "failed": 0}))
    contact_id = db.add_contact(make_contact(flow_id, "welcome", now))

    await flow_scheduler.process_due_contacts(now)
    follow_up = await flow_scheduler.process_due_contacts(now + timedelta(days=1))

    assert db.contact(contact_id)["status"] == "bounced"
    assert follow_up.due == 0
    assert db.flow(flow_id)["stats"] == {"active": 0, "failed": 1}
    assert db.flow(flow_id)["errorStats"]["byType"] == {"email_bounce": 1}


@pytest.mark.asyncio
async def test_deleted_step_recovers_then_continues(flow_scheduler, db, email, engine_settings, now):
    engine_settings.max_steps_per_contact = 2
    flow_id = db.add_flow(make_flow([_email("welcome"), _email("tips")]))
    contact_id = db.add_contact(make_contact(flow_id, "removed-step", now))

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.outcomes == {"recovered": 1, "advanced": 1}
    assert _path(db, contact_id) == ["recover", "email_sent"]
    assert db.contact(contact_id)["currentStepId"] == "tips"


@pytest.mark.asyncio
async def test_errors_are_isolated_per_contact(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([_email("welcome"), _email("tips")]))
    healthy = [db.add_contact(make_contact(flow_id, "welcome", now, email=f"ok{i}@example.com")) for i in range(3)]
    broken = db.add_contact(make_contact(flow_id, "welcome", now, email="broken@example.com"))
    orphan = db.add_contact(make_contact("665f1c2e9b1e8a3d4c2b1aff", "welcome", now, email="orphan@example.com"))
    email.failures["broken@example.com"] = RuntimeError("template engine exploded")

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.due == 5
    assert summary.failed == 2
    for contact_id in healthy:
        assert db.contact(contact_id)["currentStepId"] == "tips"
    assert db.contact(broken)["status"] == "error"
    assert db.contact(broken)["lastError"]["errorType"] == "processing_error"
    assert db.contact(orphan)["status"] == "error"
    assert db.contact(orphan)["lastError"]["errorType"] == "flow_not_found"
    assert len(email.sent) == 3


@pytest.mark.asyncio
async def test_retry_all_after_failures(flow_scheduler, error_handler, db, webhooks, engine_settings, now):
    engine_settings.continue_on_step_failure = False
    flow_id = db.add_flow(make_flow(
        [{"id": "hook", "type": "webhook", "webhookUrl": "https://hooks.test/x"}, _email("tips")],
        stats={"active": 3, "failed": 0},
    ))
    contacts = [db.add_contact(make_contact(flow_id, "hook", now, email=f"u{i}@example.com")) for i in range(3)]

    webhooks.failure = WebhookFailure("HTTP 500", status_code=500)
    await flow_scheduler.process_due_contacts(now)
    assert all(db.contact(c)["status"] == "error" for c in contacts)
    assert db.flow(flow_id)["stats"] == {"active": 0, "failed": 3}

    counts = await error_handler.retry_all_contacts(flow_id, now=now + timedelta(minutes=5))
    assert counts == {"attempted": 3, "reset": 3}
    assert db.flow(flow_id)["stats"] == {"active": 3, "failed": 0}

    webhooks.failure = None
    summary = await flow_scheduler.process_due_contacts(now + timedelta(minutes=5))
    assert summary.processed == 3
    assert all(db.contact(c)["currentStepId"] == "tips" for c in contacts)


@pytest.mark.asyncio
async def test_leased_contact_is_skipped(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([_email("welcome")]))
    contact_id = db.add_contact(make_contact(
        flow_id, "welcome", now, leaseOwner="other-worker", leaseExpiresAt=now + timedelta(minutes=10)
    ))

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.skipped == 1
    assert email.sent == []
    assert db.contact(contact_id)["leaseOwner"] == "other-worker"


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([_email("welcome"), _email("tips")]))
    contact_id = db.add_contact(make_contact(
        flow_id, "welcome", now, leaseOwner="crashed-worker", leaseExpiresAt=now - timedelta(minutes=1)
    ))

    await flow_scheduler.process_due_contacts(now)

    assert len(email.sent) == 1
    assert "leaseOwner" not in db.contact(contact_id)


@pytest.mark.asyncio
async def test_two_workers_never_process_the_same_contact_twice(db, executor, legacy, engine_settings, email, now):
    flow_id = db.add_flow(make_flow([_email("welcome", delayDays=1), _email("tips")]))
    for i in range(10):
        db.add_contact(make_contact(flow_id, "welcome", now, email=f"u{i}@example.com"))
    first = FlowScheduler(db, executor, legacy, engine_settings, worker_id="w1")
    second = FlowScheduler(db, executor, legacy, engine_settings, worker_id="w2")

    await asyncio.gather(first.process_due_contacts(now), second.process_due_contacts(now))

    recipients = [m["to"] for m in email.sent]
    assert sorted(recipients) == sorted(set(recipients))
    assert len(recipients) == 10


@pytest.mark.asyncio
async def test_inactive_flow_contacts_wait(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([_email("welcome")], is_active=False))
    contact_id = db.add_contact(make_contact(flow_id, "welcome", now))

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.due == 0
    assert email.sent == []
    assert db.contact(contact_id)["status"] == "active"
    assert db.contact(contact_id)["nextProcessingDate"] == now


@pytest.mark.asyncio
async def test_paused_flow_backlog_does_not_starve_live_flows(flow_scheduler, db, email, engine_settings, now):
    engine_settings.due_batch_limit = 2
    paused_id = db.add_flow(make_flow([_email("welcome")], is_active=False))
    for i in range(3):
        db.add_contact(make_contact(paused_id, "welcome", now - timedelta(days=1), email=f"paused{i}@example.com"))
    live_id = db.add_flow(make_flow([_email("a"), _email("b")]))
    live_contact = db.add_contact(make_contact(live_id, "a", now, email="live@example.com"))

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.due == 1
    assert [m["to"] for m in email.sent] == ["live@example.com"]
    assert db.contact(live_contact)["currentStepId"] == "b"


@pytest.mark.asyncio
async def test_flow_paused_during_a_tick_is_skipped(flow_scheduler, db, email, mocker, now):
    flow_id = db.add_flow(make_flow([_email("welcome")], is_active=False))
    db.add_contact(make_contact(flow_id, "welcome", now))
    # The flow was still active when the due contacts were queried.
    mocker.patch.object(db, "find_paused_flow_ids", new_callable=AsyncMock, return_value=[])

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.due == 1
    assert summary.skipped == 1
    assert email.sent == []


@pytest.mark.asyncio
async def test_legacy_contacts_are_migrated_then_processed(flow_scheduler, db, email, engine_settings, now):
    engine_settings.max_steps_per_contact = 2
    steps = [_email("welcome", order=0), _email("tips", order=1)]
    flow_id = db.add_flow(make_flow(steps))
    contact_id = db.add_contact(make_contact(
        flow_id, None, now, currentStep=1, nextProcessingDate=None, nextEmailDate=now - timedelta(hours=1)
    ))

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.migrated == 1
    assert _path(db, contact_id) == ["migrated", "email_sent", "completed"]
    assert [m["subject"] for m in email.sent] == ["tips for Ada"]


@pytest.mark.asyncio
async def test_positional_flow_keeps_legacy_sending(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([{"subject": "One", "body": "x", "delayDays": 2}, {"subject": "Two", "body": "y"}]))
    contact_id = db.add_contact(make_contact(flow_id, None, now, nextProcessingDate=None, nextEmailDate=now))

    summary = await flow_scheduler.process_due_contacts(now)

    assert summary.legacy_processed == 1
    assert db.contact(contact_id)["currentStep"] == 1
    assert db.contact(contact_id)["nextEmailDate"] == now + timedelta(days=2)


# ==================== Manual entry points ====================

@pytest.mark.asyncio
async def test_trigger_flow_makes_contacts_due_now(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([{"id": "wait", "type": "delay", "delayDays": 1}, _email("tips")]))
    contact_id = db.add_contact(make_contact(
        flow_id, "tips", now + timedelta(days=5), nextProcessingDate=now + timedelta(days=5)
    ))

    result = await flow_scheduler.trigger_flow(flow_id, now)

    assert result["rescheduled"] == 1
    assert result["summary"].processed == 1
    assert db.contact(contact_id)["status"] == "completed"

    with pytest.raises(FlowNotFound):
        await flow_scheduler.trigger_flow("665f1c2e9b1e8a3d4c2b1aff", now)


@pytest.mark.asyncio
async def test_test_step_runs_without_persisting(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([_email("welcome"), _email("tips")]))

    result = await flow_scheduler.test_step(flow_id, "welcome", {"firstName": "Grace", "email": "grace@example.com"}, now=now)

    assert result.dry_run is True
    assert result.outcome == StepOutcome.ADVANCED
    assert result.next_step_id == "tips"
    assert result.side_effects[0]["subject"] == "welcome for Grace"
    assert email.sent == []
    assert db.contacts == {}
    assert db.flow_writes == []

    with pytest.raises(MissingStepFailure):
        await flow_scheduler.test_step(flow_id, "nope", now=now)


@pytest.mark.asyncio
async def test_test_step_can_deliver(flow_scheduler, db, email, now):
    flow_id = db.add_flow(make_flow([_email("welcome")]))

    await flow_scheduler.test_step(flow_id, "welcome", deliver=True, now=now)

    assert [m["to"] for m in email.sent] == ["test@example.com"]
    assert db.flow_writes == []
