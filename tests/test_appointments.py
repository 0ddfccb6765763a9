"""
Appointment lifecycle and write-time invariants.

Coverage:
- status updates and their audit rows
- cancellation pair
- check-in / check-out ordering
- reschedule chain (manual and single-transaction)
- enum closure
"""
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from fieldvisits import activity_service, services
from fieldvisits.activity_service import RequestContext
from fieldvisits.db import db_session, engine
from fieldvisits.errors import (
    EnumerationViolation,
    InvariantViolation,
    NotFound,
    ReferentialViolation,
)
from fieldvisits.models import Appointment, AppointmentPriority, AppointmentStatus, utcnow

VISIT_DAY = date(2024, 6, 1)


# =============================================================================
# Creation
# =============================================================================

def test_defaults(appointment):
    a = services.get_appointment(appointment)

    assert a.status == AppointmentStatus.SCHEDULED
    assert a.priority == AppointmentPriority.MEDIUM
    assert a.duration == 60
    assert a.reminder_sent is False
    assert a.scheduled_date == datetime(2024, 6, 1)
    assert a.scheduled_time == "09:00"
    assert len(a.id) == 36


def test_creation_is_logged(appointment, user):
    logs = activity_service.list_for_appointment(appointment)
    assert [log.action for log in logs] == ["created"]
    assert logs[0].user_id == user
    assert logs[0].details["after"]["status"] == "scheduled"


def test_unknown_user_or_organisation(make_appointment, user, org):
    with pytest.raises(NotFound):
        make_appointment("missing-user", org)
    with pytest.raises(NotFound):
        make_appointment(user, "missing-org")


@pytest.mark.parametrize("bad_time", ["9:00", "24:00", "12:60", "noon", ""])
def test_scheduled_time_format(make_appointment, user, org, bad_time):
    with pytest.raises(InvariantViolation):
        make_appointment(user, org, time=bad_time)


def test_duration_must_be_positive(make_appointment, user, org):
    with pytest.raises(InvariantViolation):
        make_appointment(user, org, duration=0)


def test_unknown_priority_rejected(make_appointment, user, org):
    with pytest.raises(EnumerationViolation):
        make_appointment(user, org, priority="critical")


def test_string_tokens_are_accepted(make_appointment, user, org):
    aid = make_appointment(user, org, priority="urgent")
    assert services.get_appointment(aid).priority == AppointmentPriority.URGENT


def test_unknown_token_rejected_by_storage(appointment):
    with pytest.raises(EnumerationViolation):
        with db_session() as s:
            s.execute(text("UPDATE appointments SET status = 'postponed' WHERE id = :id"), {"id": appointment})


def test_unknown_token_rejected_on_read(appointment):
    # a row written before its token was removed from the closed set
    with engine.begin() as conn:
        conn.exec_driver_sql("PRAGMA ignore_check_constraints = ON")
        conn.execute(text("UPDATE appointments SET status = 'postponed' WHERE id = :id"), {"id": appointment})
        conn.exec_driver_sql("PRAGMA ignore_check_constraints = OFF")

    with pytest.raises(EnumerationViolation):
        services.get_appointment(appointment)


# =============================================================================
# Status
# =============================================================================

def test_status_change_is_read_back_and_logged(appointment, user):
    services.update_status(appointment, "confirmed", context=RequestContext("10.0.0.1", "agent-app/2.1"))

    assert services.get_appointment(appointment).status == AppointmentStatus.CONFIRMED
    changed = [log for log in activity_service.list_for_appointment(appointment) if log.action == "status_changed"]
    assert len(changed) == 1
    assert changed[0].details["before"]["status"] == "scheduled"
    assert changed[0].details["after"]["status"] == "confirmed"
    assert changed[0].ip_address == "10.0.0.1"
    assert changed[0].user_agent == "agent-app/2.1"


def test_unknown_status_rejected(appointment):
    with pytest.raises(EnumerationViolation):
        services.update_status(appointment, "postponed")
    assert services.get_appointment(appointment).status == AppointmentStatus.SCHEDULED


def test_every_status_attempt_is_audited(appointment):
    services.update_status(appointment, "confirmed")
    services.update_status(appointment, "in_progress")

    changed = [log for log in activity_service.list_for_appointment(appointment) if log.action == "status_changed"]
    assert {log.details["after"]["status"] for log in changed} == {"confirmed", "in_progress"}
    assert services.get_appointment(appointment).status == AppointmentStatus.IN_PROGRESS


def test_cancel_sets_reason_and_timestamp(appointment):
    a = services.cancel_appointment(appointment, "Client closed")

    assert a.status == AppointmentStatus.CANCELLED
    assert a.cancellation_reason == "Client closed"
    assert a.cancelled_at is not None


def test_cancel_requires_reason(appointment):
    with pytest.raises(InvariantViolation):
        services.update_status(appointment, AppointmentStatus.CANCELLED)


def test_reason_only_when_cancelling(appointment):
    with pytest.raises(InvariantViolation):
        services.update_status(appointment, "confirmed", reason="why not")


def test_leaving_cancelled_clears_cancellation(appointment):
    services.cancel_appointment(appointment, "Client closed")
    a = services.update_status(appointment, "scheduled")

    assert a.cancellation_reason is None
    assert a.cancelled_at is None


def test_cancellation_fields_without_cancelled_status_rejected(appointment):
    with pytest.raises(InvariantViolation):
        with db_session() as s:
            a = s.get(Appointment, appointment)
            a.cancellation_reason = "half set"
            a.cancelled_at = utcnow()

    with pytest.raises(InvariantViolation):
        with db_session() as s:
            a = s.get(Appointment, appointment)
            a.status = AppointmentStatus.CANCELLED
            a.cancelled_at = utcnow()


# =============================================================================
# Check-in / check-out
# =============================================================================

def test_check_in_and_out(appointment):
    start = datetime(2024, 6, 1, 9, 5)
    services.check_in(appointment, at=start)
    a = services.check_out(appointment, at=start + timedelta(minutes=50))

    assert a.check_in_time == start
    assert a.check_out_time == start + timedelta(minutes=50)
    actions = [log.action for log in activity_service.list_for_appointment(appointment)]
    assert "checked_in" in actions and "checked_out" in actions


def test_check_out_before_check_in_rejected(appointment):
    start = datetime(2024, 6, 1, 9, 5)
    services.check_in(appointment, at=start)

    with pytest.raises(InvariantViolation):
        services.check_out(appointment, at=start - timedelta(minutes=1))
    assert services.get_appointment(appointment).check_out_time is None


def test_check_out_without_check_in_rejected(appointment):
    with pytest.raises(InvariantViolation):
        services.check_out(appointment, at=datetime(2024, 6, 1, 10, 0))


def test_aware_timestamps_are_stored_as_naive_utc(appointment):
    services.check_in(appointment, at=datetime(2024, 6, 1, 9, 0))
    rome = timezone(timedelta(hours=2))
    a = services.check_out(appointment, at=datetime(2024, 6, 1, 11, 30, tzinfo=rome))

    assert a.check_out_time == datetime(2024, 6, 1, 9, 30)
    assert a.check_out_time.tzinfo is None

    with pytest.raises(InvariantViolation):
        services.check_out(appointment, at=datetime(2024, 6, 1, 10, 0, tzinfo=rome))


def test_aware_scheduled_date_is_converted(make_appointment, user, org):
    aid = make_appointment(user, org, day=datetime(2024, 6, 2, 1, 0, tzinfo=timezone(timedelta(hours=2))))
    assert services.get_appointment(aid).scheduled_date == datetime(2024, 6, 1, 23, 0)


# =============================================================================
# Editing
# =============================================================================

def test_update_logs_only_changed_fields(appointment):
    services.update_appointment(appointment, title="Visit at 09:00", scheduled_time="10:30", priority="high")

    updated = [log for log in activity_service.list_for_appointment(appointment) if log.action == "updated"]
    assert len(updated) == 1
    assert updated[0].details["before"] == {"scheduled_time": "09:00", "priority": "medium"}
    assert updated[0].details["after"] == {"scheduled_time": "10:30", "priority": "high"}


def test_update_rejects_status_and_unknown_fields(appointment):
    with pytest.raises(InvariantViolation):
        services.update_appointment(appointment, status="completed")


def test_move_to_other_organisation(appointment, make_org):
    other = make_org()
    services.update_appointment(appointment, organisation_id=other)
    assert services.get_appointment(appointment).organisation_id == other

    with pytest.raises(NotFound):
        services.update_appointment(appointment, organisation_id="missing")


# =============================================================================
# Rescheduling
# =============================================================================

def test_manual_reschedule_chain(make_appointment, user, org):
    a1 = make_appointment(user, org)
    a2 = make_appointment(user, org, time="15:00", rescheduled_from=a1)
    services.update_status(a1, "rescheduled")

    first, second = services.get_appointment(a1), services.get_appointment(a2)
    assert first.status == AppointmentStatus.RESCHEDULED
    assert second.status == AppointmentStatus.SCHEDULED
    assert second.rescheduled_from == a1
    assert services.get_appointment(second.rescheduled_from).id == a1
    assert [a.id for a in services.reschedule_history(a2)] == [a2, a1]


def test_reschedule_in_one_transaction(appointment):
    result = services.reschedule_appointment(appointment, date(2024, 6, 3), "11:15")

    old = services.get_appointment(appointment)
    new = services.get_appointment(result.appointment_id)
    assert result.previous_id == appointment
    assert old.status == AppointmentStatus.RESCHEDULED
    assert new.status == AppointmentStatus.SCHEDULED
    assert new.rescheduled_from == appointment
    assert new.scheduled_date == datetime(2024, 6, 3)
    assert new.scheduled_time == "11:15"
    assert new.title == old.title
    assert "rescheduled" in [log.action for log in activity_service.list_for_appointment(appointment)]


def test_reschedule_twice_rejected(appointment):
    services.reschedule_appointment(appointment, date(2024, 6, 3), "11:15")
    with pytest.raises(InvariantViolation):
        services.reschedule_appointment(appointment, date(2024, 6, 4), "11:15")


def test_failed_reschedule_leaves_no_partial_write(appointment, user):
    with pytest.raises(InvariantViolation):
        services.reschedule_appointment(appointment, date(2024, 6, 3), "11:15", duration=0)

    assert services.get_appointment(appointment).status == AppointmentStatus.SCHEDULED
    assert [a.id for a in services.list_appointments(user)] == [appointment]


def test_rescheduled_from_must_exist_and_share_owner(make_appointment, make_user, user, org):
    other_user = make_user()
    foreign = make_appointment(other_user, org)

    with pytest.raises(ReferentialViolation):
        make_appointment(user, org, rescheduled_from="missing")
    with pytest.raises(ReferentialViolation):
        make_appointment(user, org, rescheduled_from=foreign)


def test_reschedule_cycles_rejected(make_appointment, user, org):
    a1 = make_appointment(user, org)
    a2 = make_appointment(user, org, rescheduled_from=a1)

    with pytest.raises(InvariantViolation):
        services.update_appointment(a1, rescheduled_from=a2)
    with pytest.raises(InvariantViolation):
        services.update_appointment(a1, rescheduled_from=a1)


# =============================================================================
# Queries
# =============================================================================

def test_list_by_day_and_status(make_appointment, user, org):
    morning = make_appointment(user, org, time="08:00")
    afternoon = make_appointment(user, org, time="14:00")
    make_appointment(user, org, time="08:00", day=date(2024, 6, 2))
    services.update_status(afternoon, "confirmed")

    assert [a.id for a in services.list_appointments(user, day=VISIT_DAY)] == [morning, afternoon]
    assert [a.id for a in services.list_appointments(user, status="confirmed")] == [afternoon]
    assert len(services.list_appointments(user)) == 3


def test_daily_agenda_skips_cancelled(make_appointment, user, org):
    keep = make_appointment(user, org, time="10:00")
    drop = make_appointment(user, org, time="08:00")
    services.cancel_appointment(drop, "not needed")

    agenda = services.daily_agenda(user, VISIT_DAY)
    assert [row["id"] for row in agenda] == [keep]
    assert agenda[0]["latitude"] == "1.0"
    assert agenda[0]["status"] == "scheduled"


def test_reminders(make_appointment, user, org):
    due = make_appointment(user, org, time="08:00")
    confirmed = make_appointment(user, org, time="09:00")
    cancelled = make_appointment(user, org, time="10:00")
    services.update_status(confirmed, "confirmed")
    services.cancel_appointment(cancelled, "gone")

    assert [a.id for a in services.due_for_reminder(VISIT_DAY)] == [due, confirmed]
    assert services.mark_reminder_sent(due) is True
    assert services.mark_reminder_sent(due) is False
    assert [a.id for a in services.due_for_reminder(VISIT_DAY)] == [confirmed]


def test_list_for_organisation(make_appointment, make_user, org):
    a = make_appointment(make_user(), org)
    b = make_appointment(make_user(), org, time="11:00")
    assert [x.id for x in services.list_for_organisation(org)] == [a, b]
