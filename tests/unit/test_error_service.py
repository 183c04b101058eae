# tests/unit/test_error_service.py
from datetime import timedelta

import pytest

from driftly.exceptions import ContactNotFound, ContactNotInErrorState
from driftly.models.contact import Contact
from driftly.models.flow import Flow
from driftly.workflows.updates import UpdateBuilder
from fakes import make_contact, make_flow

STEPS = [
    {"id": "welcome", "name": "Welcome email", "type": "email", "subject": "Hi", "body": "Hello"},
    {"id": "followup", "type": "email", "subject": "Again", "body": "Hello again"},
]


def _errored_contact(flow_id, now, step_id="followup", **fields):
    return make_contact(
        flow_id, step_id, now,
        status="error",
        nextProcessingDate=None,
        lastError={"stepId": step_id, "errorType": "webhook_error", "errorMessage": "HTTP 500", "timestamp": now},
        **fields,
    )


def test_append_error_builds_record_and_stat_increments(error_handler, now):
    flow = Flow.model_validate({"_id": "665f1c2e9b1e8a3d4c2b1a01", "name": "Welcome", "steps": STEPS})
    update = UpdateBuilder()

    record = error_handler.append_error(
        update, flow, "665f1c2e9b1e8a3d4c2b1a02", "welcome", "email_error", "timeout", {"statusCode": 504}, now=now
    )

    assert record == {
        "date": now,
        "contactId": "665f1c2e9b1e8a3d4c2b1a02",
        "stepId": "welcome",
        "stepName": "Welcome email",
        "errorType": "email_error",
        "errorMessage": "timeout",
        "additionalData": {"statusCode": 504},
    }
    assert update.to_mongo() == {
        "$set": {"errorStats.byStep.welcome.name": "Welcome email"},
        "$inc": {
            "errorStats.totalErrors": 1,
            "errorStats.byStep.welcome.count": 1,
            "errorStats.byType.email_error": 1,
        },
        "$push": {"errors": {"$each": [record]}},
    }


def test_unknown_step_is_recorded_under_a_placeholder_name(error_handler, now):
    flow = Flow.model_validate({"_id": "665f1c2e9b1e8a3d4c2b1a01", "name": "Welcome", "steps": STEPS})
    update = UpdateBuilder()

    record = error_handler.append_error(update, flow, None, "followup", "webhook_error", "boom", now=now)

    assert record["stepName"] == "Unknown Step"
    assert update.get("errorStats.byStep.followup.name") == "Unknown Step"


@pytest.mark.asyncio
async def test_log_error_halts_contact_and_records_on_flow(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS, stats={"active": 2, "failed": 0}))
    contact_id = db.add_contact(make_contact(flow_id, "welcome", now, leaseOwner="w1", leaseExpiresAt=now))
    flow = Flow.model_validate(await db.get_flow(flow_id))
    contact = Contact.model_validate(await db.get_contact(contact_id))

    written = await error_handler.log_error(flow, contact, "welcome", "processing_error", "boom", now=now)

    stored = db.contact(contact_id)
    assert stored["status"] == "error"
    assert stored["nextProcessingDate"] is None
    assert stored["lastError"]["errorMessage"] == "boom"
    assert stored["flowPath"][-1]["action"] == "error"
    assert "leaseOwner" not in stored
    assert db.flow(flow_id)["stats"] == {"active": 1, "failed": 1}
    assert db.flow(flow_id)["errors"] == [written["record"]]


@pytest.mark.asyncio
async def test_log_error_dry_run_writes_nothing(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS))
    contact_id = db.add_contact(make_contact(flow_id, "welcome", now))
    flow = Flow.model_validate(await db.get_flow(flow_id))
    contact = Contact.model_validate(await db.get_contact(contact_id))

    written = await error_handler.log_error(flow, contact, "welcome", "processing_error", "boom", now=now, dry_run=True)

    assert written["contact_update"]["$set"]["status"] == "error"
    assert db.contact_writes == [] and db.flow_writes == []


# ==================== Retry ====================

@pytest.mark.asyncio
async def test_retry_contact_reactivates_at_current_step(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS, stats={"active": 0, "failed": 1}))
    contact_id = db.add_contact(_errored_contact(flow_id, now - timedelta(hours=1)))

    contact = await error_handler.retry_contact(flow_id, contact_id, now=now)

    assert contact.status == "active"
    assert contact.current_step_id == "followup"
    assert contact.next_processing_date == now
    assert contact.last_error is None
    assert contact.flow_path[-1].action == "retry"
    assert db.flow(flow_id)["stats"] == {"active": 1, "failed": 0}


@pytest.mark.asyncio
async def test_retry_contact_without_step_restarts_at_first_step(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS))
    contact_id = db.add_contact(_errored_contact(flow_id, now, step_id=None))

    contact = await error_handler.retry_contact(flow_id, contact_id, now=now)

    assert contact.current_step_id == "welcome"
    assert contact.current_step == 0


@pytest.mark.asyncio
async def test_retry_rejects_contacts_not_in_error(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS))
    active_id = db.add_contact(make_contact(flow_id, "welcome", now))
    other_flow = db.add_flow(make_flow(STEPS))
    elsewhere_id = db.add_contact(_errored_contact(other_flow, now))

    with pytest.raises(ContactNotInErrorState, match="Contact not found or not in error state"):
        await error_handler.retry_contact(flow_id, active_id, now=now)
    with pytest.raises(ContactNotInErrorState):
        await error_handler.retry_contact(flow_id, elsewhere_id, now=now)
    with pytest.raises(ContactNotFound):
        await error_handler.retry_contact(flow_id, "665f1c2e9b1e8a3d4c2b1aff", now=now)


@pytest.mark.asyncio
async def test_retry_all_resets_every_errored_contact(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS, stats={"active": 1, "failed": 3}))
    errored = [db.add_contact(_errored_contact(flow_id, now, email=f"user{i}@example.com")) for i in range(3)]
    active_id = db.add_contact(make_contact(flow_id, "welcome", now, email="ok@example.com"))

    counts = await error_handler.retry_all_contacts(flow_id, now=now)

    assert counts == {"attempted": 3, "reset": 3}
    for contact_id in errored:
        assert db.contact(contact_id)["status"] == "active"
        assert db.contact(contact_id)["nextProcessingDate"] == now
        assert "lastError" not in db.contact(contact_id)
    assert db.contact(active_id)["flowPath"] == []
    assert db.flow(flow_id)["stats"] == {"active": 4, "failed": 0}


@pytest.mark.asyncio
async def test_retry_all_with_nothing_to_retry(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS))

    assert await error_handler.retry_all_contacts(flow_id, now=now) == {"attempted": 0, "reset": 0}
    assert db.flow_writes == []


# ==================== Queries ====================

@pytest.mark.asyncio
async def test_get_flow_errors_filters_and_sorts_newest_first(error_handler, db, now):
    errors = [
        {"date": now - timedelta(days=2), "stepId": "welcome", "errorType": "email_error", "errorMessage": "a"},
        {"date": now - timedelta(days=1), "stepId": "followup", "errorType": "webhook_error", "errorMessage": "b"},
        {"date": now, "stepId": "welcome", "errorType": "email_error", "errorMessage": "c"},
    ]
    flow_id = db.add_flow(make_flow(STEPS, errors=errors))

    all_errors = await error_handler.get_flow_errors(flow_id)
    assert [e.error_message for e in all_errors] == ["c", "b", "a"]

    by_step = await error_handler.get_flow_errors(flow_id, step_id="welcome")
    assert [e.error_message for e in by_step] == ["c", "a"]

    by_type = await error_handler.get_flow_errors(flow_id, error_type="webhook_error")
    assert [e.error_message for e in by_type] == ["b"]

    windowed = await error_handler.get_flow_errors(
        flow_id, start_date=now - timedelta(days=1, hours=1), end_date=now - timedelta(hours=1)
    )
    assert [e.error_message for e in windowed] == ["b"]


@pytest.mark.asyncio
async def test_contacts_in_error_lists_only_errored(error_handler, db, now):
    flow_id = db.add_flow(make_flow(STEPS))
    errored_id = db.add_contact(_errored_contact(flow_id, now))
    db.add_contact(make_contact(flow_id, "welcome", now, email="ok@example.com"))

    contacts = await error_handler.get_contacts_in_error(flow_id)

    assert [c.id for c in contacts] == [errored_id]
