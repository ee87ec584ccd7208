import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models import AppointmentRescheduleHistory, AppointmentSession
from app.services import events
from app.services.errors import (
    ConflictError,
    InfrastructureError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from app.services.lifecycle import TRANSITIONS, check_transition
from app.services.pricing import appointment_total
from app.utils.time_format import now, today


def active_sessions(db, appointment_id):
    return db.session.scalar(
        select(func.count())
        .select_from(AppointmentSession)
        .where(
            AppointmentSession.appointment_id == appointment_id,
            AppointmentSession.status == "active",
        )
    )


def history_rows(db, appointment_id):
    return db.session.scalars(
        select(AppointmentRescheduleHistory).where(
            AppointmentRescheduleHistory.appointment_id == appointment_id
        )
    ).all()


@pytest.fixture
def started(lifecycle, book, staff_actor, seed):
    """An appointment confirmed, assigned and in progress."""
    appointment = book()
    lifecycle.update_status(appointment.id, "confirmed", staff_actor)
    lifecycle.assign_groomer(appointment.id, seed.groomer.id, staff_actor)
    return lifecycle.update_status(appointment.id, "in_progress", staff_actor)


@pytest.mark.appointments
class TestStateMachine:
    def test_terminal_states_have_no_exits(self):
        for status in ("completed", "cancelled", "no_show"):
            assert TRANSITIONS[status] == ()

    @pytest.mark.parametrize(
        "current, target",
        [
            ("pending", "completed"),
            ("pending", "in_progress"),
            ("waiting", "confirmed"),
            ("completed", "pending"),
            ("no_show", "waiting"),
            ("confirmed", "confirmed"),
        ],
    )
    def test_illegal_moves(self, current, target):
        with pytest.raises(StateError) as exc:
            check_transition(current, target)
        assert exc.value.code == "INVALID_STATUS_TRANSITION"
        assert exc.value.details["current_status"] == current

    def test_legal_moves(self):
        check_transition("pending", "confirmed")
        check_transition("confirmed", "in_progress")
        check_transition("in_progress", "completed")
        check_transition("waiting", "no_show")


@pytest.mark.appointments
class TestCreate:
    def test_create_appointment(self, book, notifications):
        appointment = book()

        assert appointment.status == "pending"
        assert appointment.base_price == Decimal("500.00")
        assert appointment.total_amount == Decimal("500.00")
        assert appointment.preferred_time == datetime.time(10, 0)
        assert appointment.payment_status == "pending"
        assert appointment.payment_method == "cash"
        assert appointment.pet_id == 42
        assert notifications.names() == ["appointment.created"]
        assert notifications.events[0].payload["preferred_time"] == "10:00 AM"

    def test_create_with_add_ons_and_matted_fee(self, book, seed):
        appointment = book(
            additional_services=[seed.nail_trim.id, {"service_id": seed.ear_cleaning.id}],
            matted_coat_fee="75",
        )

        assert [line.price for line in appointment.additional_services] == [
            Decimal("150.00"),
            Decimal("100.00"),
        ]
        assert appointment.total_amount == Decimal("825.00")
        assert appointment.total_amount == appointment_total(appointment)

    def test_failed_create_emits_nothing(self, book, notifications):
        book()
        notifications.clear()

        with pytest.raises(ConflictError):
            book(preferred_time="2:00 PM")

        assert notifications.names() == []


@pytest.mark.appointments
class TestServices:
    def test_add_service_updates_total(self, book, lifecycle, owner_actor, seed, notifications):
        appointment = book()

        updated = lifecycle.add_services(appointment.id, [seed.nail_trim.id], owner_actor)

        assert updated.total_amount == Decimal("650.00")
        assert updated.additional_services[0].service.name == "Nail Trim"
        assert "appointment.services_changed" in notifications.names()

    def test_adding_the_same_service_twice(self, book, lifecycle, staff_actor, seed):
        appointment = book()
        lifecycle.add_services(appointment.id, [seed.nail_trim.id], staff_actor)

        with pytest.raises(ConflictError) as exc:
            lifecycle.add_services(appointment.id, [seed.nail_trim.id], staff_actor)

        assert exc.value.code == "DUPLICATE_SERVICE"
        error = exc.value.details["errors"][0]
        assert error["service_name"] == "Nail Trim"
        assert error["added_at"] is not None
        assert lifecycle.store.get(appointment.id).total_amount == Decimal("650.00")

    def test_adding_the_primary_service(self, book, lifecycle, staff_actor, seed):
        appointment = book()

        with pytest.raises(ConflictError) as exc:
            lifecycle.add_services(appointment.id, [seed.full_groom.id], staff_actor)

        assert exc.value.code == "PRIMARY_SERVICE_CONFLICT"

    def test_one_bad_item_rolls_back_the_whole_request(
        self, book, lifecycle, staff_actor, seed
    ):
        appointment = book()

        with pytest.raises(ValidationError) as exc:
            lifecycle.add_services(
                appointment.id, [seed.nail_trim.id, seed.unpriced.id], staff_actor
            )

        assert exc.value.code == "INVALID_PRICE"
        refreshed = lifecycle.store.get(appointment.id)
        assert refreshed.additional_services == []
        assert refreshed.total_amount == Decimal("500.00")

    def test_unavailable_add_on(self, book, lifecycle, staff_actor, seed):
        appointment = book()

        with pytest.raises(ValidationError) as exc:
            lifecycle.add_services(appointment.id, [seed.spa_bath.id], staff_actor)

        assert exc.value.code == "SERVICE_UNAVAILABLE"

    def test_remove_service(self, book, lifecycle, staff_actor, seed):
        appointment = book(additional_services=[seed.nail_trim.id])
        assert appointment.total_amount == Decimal("650.00")

        updated = lifecycle.remove_service(appointment.id, seed.nail_trim.id, staff_actor)

        assert updated.total_amount == Decimal("500.00")
        assert updated.additional_services == []

    def test_remove_unattached_service(self, book, lifecycle, staff_actor, seed):
        appointment = book()

        with pytest.raises(NotFoundError):
            lifecycle.remove_service(appointment.id, seed.nail_trim.id, staff_actor)

    def test_other_owner_cannot_add_services(self, book, lifecycle, other_owner_actor, seed):
        appointment = book()

        with pytest.raises(PermissionDeniedError):
            lifecycle.add_services(appointment.id, [seed.nail_trim.id], other_owner_actor)


@pytest.mark.pricing
class TestPricingUpdates:
    def test_discount_and_fee(self, book, lifecycle, shop_owner_actor, seed):
        appointment = book(additional_services=[seed.nail_trim.id])

        updated = lifecycle.update_pricing(
            appointment.id, shop_owner_actor, matted_coat_fee=100, discount=50
        )

        assert updated.total_amount == Decimal("700.00")
        assert updated.total_amount == appointment_total(updated)

    def test_discount_larger_than_subtotal(self, book, lifecycle, staff_actor):
        appointment = book()

        with pytest.raises(ValidationError):
            lifecycle.update_pricing(appointment.id, staff_actor, discount=10000)

        assert lifecycle.store.get(appointment.id).total_amount == Decimal("500.00")

    def test_pet_owner_cannot_change_prices(self, book, lifecycle, owner_actor):
        appointment = book()

        with pytest.raises(PermissionDeniedError):
            lifecycle.update_pricing(appointment.id, owner_actor, discount=100)

    @pytest.mark.parametrize("discount", ["fifty", "NaN", "Infinity", True])
    def test_unreadable_discount_is_rejected(self, book, lifecycle, staff_actor, discount):
        appointment = book()

        with pytest.raises(ValidationError) as exc:
            lifecycle.update_pricing(appointment.id, staff_actor, discount=discount)

        assert exc.value.code == "INVALID_PRICE"
        assert exc.value.errors[0]["field"] == "discount_amount"
        assert lifecycle.store.get(appointment.id).total_amount == Decimal("500.00")

    def test_numeric_strings_are_accepted(self, book, lifecycle, staff_actor):
        appointment = book()

        updated = lifecycle.update_pricing(appointment.id, staff_actor, discount=" 75 ")

        assert updated.discount_amount == Decimal("75.00")
        assert updated.total_amount == Decimal("425.00")

    def test_unreadable_matted_coat_fee_on_add_services(
        self, book, lifecycle, staff_actor, seed
    ):
        appointment = book()

        with pytest.raises(ValidationError) as exc:
            lifecycle.add_services(
                appointment.id, [seed.nail_trim.id], staff_actor, matted_coat_fee="lots"
            )

        assert exc.value.code == "INVALID_PRICE"
        refreshed = lifecycle.store.get(appointment.id)
        assert refreshed.total_amount == Decimal("500.00")
        assert refreshed.additional_services == []


@pytest.mark.appointments
class TestStartAndComplete:
    def test_start_requires_groomer(self, book, lifecycle, staff_actor, seed, db):
        appointment = book()
        lifecycle.update_status(appointment.id, "confirmed", staff_actor)

        with pytest.raises(StateError) as exc:
            lifecycle.update_status(appointment.id, "in_progress", staff_actor)
        assert exc.value.code == "GROOMER_REQUIRED"

        lifecycle.assign_groomer(appointment.id, seed.groomer.id, staff_actor)
        started = lifecycle.update_status(appointment.id, "in_progress", staff_actor)

        assert started.status == "in_progress"
        assert started.daily_queue_number == 1
        assert started.queue_date == today()
        assert started.actual_date == today()
        assert active_sessions(db, appointment.id) == 1

    def test_session_already_active(self, book, lifecycle, staff_actor, seed, db):
        appointment = book()
        lifecycle.update_status(appointment.id, "confirmed", staff_actor)
        lifecycle.assign_groomer(appointment.id, seed.groomer.id, staff_actor)
        db.session.add(
            AppointmentSession(
                appointment_id=appointment.id,
                groomer_id=seed.groomer.id,
                start_time=now(),
                status="active",
            )
        )
        db.session.commit()

        with pytest.raises(StateError) as exc:
            lifecycle.update_status(appointment.id, "in_progress", staff_actor)

        assert exc.value.code == "SESSION_ALREADY_ACTIVE"
        assert active_sessions(db, appointment.id) == 1

    def test_complete_closes_session(self, started, lifecycle, staff_actor, db, notifications):
        session = db.session.scalars(
            select(AppointmentSession).where(AppointmentSession.appointment_id == started.id)
        ).one()
        session.start_time = now() - datetime.timedelta(minutes=45)
        db.session.commit()
        notifications.clear()

        completed = lifecycle.update_status(started.id, "completed", staff_actor)

        assert completed.status == "completed"
        assert completed.duration_minutes == 45
        assert active_sessions(db, started.id) == 0
        assert notifications.names() == [
            "appointment.status_changed",
            "appointment.completed",
        ]

    def test_quick_completion_counts_one_minute(self, started, lifecycle, staff_actor):
        completed = lifecycle.update_status(started.id, "completed", staff_actor)
        assert completed.duration_minutes == 1

    def test_complete_without_session_defaults_to_one_minute(
        self, started, lifecycle, staff_actor, db
    ):
        for session in db.session.scalars(select(AppointmentSession)).all():
            db.session.delete(session)
        db.session.commit()

        completed = lifecycle.update_status(started.id, "completed", staff_actor)

        assert completed.duration_minutes == 1

    def test_terminal_appointments_cannot_move(self, started, lifecycle, staff_actor, tomorrow):
        lifecycle.update_status(started.id, "completed", staff_actor)

        with pytest.raises(StateError):
            lifecycle.update_status(started.id, "waiting", staff_actor)
        with pytest.raises(StateError) as exc:
            lifecycle.reschedule(started.id, tomorrow, "3:00 PM", "later", staff_actor)
        assert exc.value.code == "INVALID_STATUS"

    def test_no_show_stamps_time_and_is_final(self, book, lifecycle, staff_actor, tomorrow):
        appointment = book()

        no_show = lifecycle.update_status(appointment.id, "no_show", staff_actor)

        assert no_show.actual_date == today()
        assert no_show.refund_status is None
        with pytest.raises(StateError):
            lifecycle.reschedule(appointment.id, tomorrow, "3:00 PM", None, staff_actor)

    def test_pet_owner_cannot_change_status(self, book, lifecycle, owner_actor):
        appointment = book()

        with pytest.raises(PermissionDeniedError):
            lifecycle.update_status(appointment.id, "confirmed", owner_actor)

    def test_unknown_status(self, book, lifecycle, staff_actor):
        appointment = book()

        with pytest.raises(ValidationError):
            lifecycle.update_status(appointment.id, "teleported", staff_actor)

    def test_bulk_update_reports_each_id(self, book, lifecycle, staff_actor, seed):
        first = book()
        second = book(pet_id=seed.pets[0].id, preferred_time="11:00 AM")
        lifecycle.update_status(second.id, "confirmed", staff_actor)

        results = lifecycle.bulk_update_status(
            [first.id, second.id, 9999], "confirmed", staff_actor
        )

        assert [r["success"] for r in results] == [True, False, False]
        assert results[1]["code"] == "INVALID_STATUS_TRANSITION"
        assert results[2]["code"] == "NOT_FOUND"


@pytest.mark.appointments
class TestAssignGroomer:
    def test_non_groomer_staff_is_invalid(self, book, lifecycle, staff_actor, seed):
        appointment = book()

        with pytest.raises(ValidationError) as exc:
            lifecycle.assign_groomer(appointment.id, seed.receptionist.id, staff_actor)
        assert exc.value.code == "GROOMER_INVALID"

    def test_inactive_groomer_is_invalid(self, book, lifecycle, staff_actor, seed):
        appointment = book()

        with pytest.raises(ValidationError) as exc:
            lifecycle.assign_groomer(appointment.id, seed.inactive_groomer.id, staff_actor)
        assert exc.value.code == "GROOMER_INVALID"

    def test_cancelled_appointment_is_not_eligible(
        self, book, lifecycle, staff_actor, seed
    ):
        appointment = book()
        lifecycle.cancel(appointment.id, "Duplicate booking", staff_actor)

        with pytest.raises(StateError) as exc:
            lifecycle.assign_groomer(appointment.id, seed.groomer.id, staff_actor)
        assert exc.value.code == "STATUS_NOT_ELIGIBLE"

    def test_pet_owner_cannot_assign(self, book, lifecycle, owner_actor, seed):
        appointment = book()

        with pytest.raises(PermissionDeniedError):
            lifecycle.assign_groomer(appointment.id, seed.groomer.id, owner_actor)

    def test_assignment_notifies_groomer(self, book, lifecycle, staff_actor, seed, notifications):
        appointment = book()
        notifications.clear()

        updated = lifecycle.assign_groomer(appointment.id, seed.groomer.id, staff_actor)

        assert updated.groomer.name == "Gina Groomer"
        event = notifications.events[0]
        assert event.name == "appointment.groomer_assigned"
        assert event.recipient_id == seed.groomer.id


@pytest.mark.appointments
class TestReschedule:
    def test_reschedule_writes_history(self, book, lifecycle, owner_actor, tomorrow, db):
        appointment = book()
        new_date = tomorrow + datetime.timedelta(days=1)

        updated = lifecycle.reschedule(
            appointment.id, new_date.isoformat(), "2:00 PM", "Work meeting", owner_actor
        )

        assert updated.preferred_date == new_date
        assert updated.preferred_time == datetime.time(14, 0)
        (entry,) = history_rows(db, appointment.id)
        assert entry.old_preferred_date == tomorrow
        assert entry.old_preferred_time == datetime.time(10, 0)
        assert entry.new_preferred_time == datetime.time(14, 0)
        assert entry.rescheduled_by_role == "pet_owner"
        assert entry.reason == "Work meeting"

    def test_conflict_leaves_no_history(self, book, lifecycle, owner_actor, seed, tomorrow, db, notifications):
        book()
        other = book(pet_id=seed.pets[0].id, preferred_time="11:00 AM")
        notifications.clear()

        with pytest.raises(ConflictError) as exc:
            lifecycle.reschedule(other.id, tomorrow, "10:00 AM", "Earlier please", owner_actor)

        assert exc.value.code == "TIME_SLOT_UNAVAILABLE"
        assert history_rows(db, other.id) == []
        assert lifecycle.store.get(other.id).preferred_time == datetime.time(11, 0)
        assert notifications.names() == []

    def test_past_date(self, book, lifecycle, owner_actor):
        appointment = book()
        yesterday = today() - datetime.timedelta(days=1)

        with pytest.raises(ValidationError) as exc:
            lifecycle.reschedule(appointment.id, yesterday, "10:00 AM", None, owner_actor)
        assert exc.value.code == "PAST_DATE"

    def test_pet_owner_cannot_reschedule_once_waiting(
        self, book, lifecycle, owner_actor, staff_actor, tomorrow
    ):
        appointment = book()
        lifecycle.update_status(appointment.id, "waiting", staff_actor)

        with pytest.raises(StateError) as exc:
            lifecycle.reschedule(appointment.id, tomorrow, "3:00 PM", None, owner_actor)
        assert exc.value.code == "INVALID_STATUS"

        moved = lifecycle.reschedule(appointment.id, tomorrow, "3:00 PM", None, staff_actor)
        assert moved.preferred_time == datetime.time(15, 0)

    def test_cancelled_cannot_be_rescheduled(self, book, lifecycle, owner_actor, tomorrow):
        appointment = book()
        lifecycle.cancel(appointment.id, "Moving away", owner_actor)

        with pytest.raises(StateError):
            lifecycle.reschedule(appointment.id, tomorrow, "3:00 PM", None, owner_actor)


@pytest.mark.appointments
class TestCancel:
    def test_reason_is_required(self, book, lifecycle, owner_actor):
        appointment = book()

        with pytest.raises(ValidationError):
            lifecycle.cancel(appointment.id, "  ", owner_actor)

    def test_owner_self_cancel_unpaid(self, book, lifecycle, owner_actor, notifications):
        appointment = book()
        notifications.clear()

        cancelled = lifecycle.cancel(appointment.id, "Pet is sick", owner_actor)

        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_reason == "Pet is sick"
        assert cancelled.cancelled_by_role == "pet_owner"
        assert cancelled.cancelled_by_user_id == owner_actor.id
        assert cancelled.cancelled_at is not None
        assert cancelled.refund_status == "not_refunded"
        assert notifications.names() == ["appointment.cancelled"]

    def test_paid_self_cancel_forfeits(self, book, lifecycle, payments, owner_actor, staff_actor):
        appointment = book()
        payments.record_payment(appointment.id, {"amount": 500}, staff_actor)

        cancelled = lifecycle.cancel(appointment.id, "Changed my mind", owner_actor)

        assert cancelled.refund_status == "not_refunded"
        assert cancelled.payment_status == "paid"

    @pytest.mark.parametrize("actor_fixture", ["staff_actor", "shop_owner_actor"])
    def test_paid_cancel_by_shop_refunds(
        self, request, book, lifecycle, payments, owner_actor, actor_fixture
    ):
        actor = request.getfixturevalue(actor_fixture)
        appointment = book()
        payments.record_payment(appointment.id, {"amount": 500}, actor)

        cancelled = lifecycle.cancel(appointment.id, "Groomer unavailable", actor)

        assert cancelled.refund_status == "refunded"
        assert cancelled.payment_status == "refunded"
        # read-path sync does not undo the refund
        assert lifecycle.get_by_id(appointment.id, owner_actor).payment_status == "refunded"

    def test_already_cancelled(self, book, lifecycle, owner_actor):
        appointment = book()
        lifecycle.cancel(appointment.id, "First", owner_actor)

        with pytest.raises(StateError) as exc:
            lifecycle.cancel(appointment.id, "Second", owner_actor)
        assert exc.value.code == "ALREADY_CANCELLED"

    def test_completed_cannot_be_cancelled(self, started, lifecycle, staff_actor):
        lifecycle.update_status(started.id, "completed", staff_actor)

        with pytest.raises(StateError) as exc:
            lifecycle.cancel(started.id, "Too late", staff_actor)
        assert exc.value.code == "INVALID_STATUS_TRANSITION"

    def test_other_owner_cannot_cancel(self, book, lifecycle, other_owner_actor):
        appointment = book()

        with pytest.raises(PermissionDeniedError):
            lifecycle.cancel(appointment.id, "Not mine", other_owner_actor)

    def test_cancel_through_status_update_uses_notes_as_reason(
        self, book, lifecycle, staff_actor
    ):
        appointment = book()

        cancelled = lifecycle.update_status(
            appointment.id, "cancelled", staff_actor, notes="Shop closed"
        )

        assert cancelled.cancelled_reason == "Shop closed"
        assert cancelled.cancelled_by_role == "staff"


@pytest.mark.appointments
class TestReads:
    def test_get_by_id_checks_ownership(self, book, lifecycle, other_owner_actor):
        appointment = book()

        with pytest.raises(PermissionDeniedError):
            lifecycle.get_by_id(appointment.id, other_owner_actor)

    def test_get_missing(self, lifecycle, staff_actor, db):
        with pytest.raises(NotFoundError):
            lifecycle.get_by_id(12345, staff_actor)

    def test_projections(self, book, lifecycle, staff_actor, owner_actor, seed, tomorrow):
        first = book()
        second = book(pet_id=seed.pets[0].id, preferred_time="11:00 AM")
        lifecycle.assign_groomer(second.id, seed.groomer.id, staff_actor)
        lifecycle.update_status(first.id, "confirmed", staff_actor)

        assert [a.id for a in lifecycle.get_by_owner(owner_actor.id, owner_actor)] == [
            second.id,
            first.id,
        ]
        assert [a.id for a in lifecycle.get_by_groomer(seed.groomer.id, staff_actor)] == [
            second.id
        ]
        assert [a.id for a in lifecycle.get_by_status("confirmed", staff_actor)] == [first.id]
        in_range = lifecycle.get_by_date_range(today(), tomorrow, staff_actor)
        assert {a.id for a in in_range} == {first.id, second.id}
        assert lifecycle.get_by_date_range(today(), today(), staff_actor) == []

    def test_pet_owner_sees_only_own_list(self, lifecycle, owner_actor, seed):
        with pytest.raises(PermissionDeniedError):
            lifecycle.get_by_owner(seed.other_owner.id, owner_actor)

    def test_available_slots(self, book, lifecycle, tomorrow):
        book()

        slots = lifecycle.get_available_slots(tomorrow)

        assert "10:00 AM" not in slots["available_time_slots"]
        assert "9:00 AM" in slots["available_time_slots"]
        assert slots["booked_time_slots"] == ["10:00 AM"]
        assert len(slots["all_time_slots"]) == 6

    def test_stats(self, book, lifecycle, staff_actor, seed, tomorrow):
        first = book()
        book(pet_id=seed.pets[0].id, preferred_time="11:00 AM")
        lifecycle.cancel(first.id, "No longer needed", staff_actor)

        stats = lifecycle.get_stats(staff_actor, tomorrow)

        assert stats["counts"]["pending"] == 1
        assert stats["counts"]["cancelled"] == 1
        assert stats["counts"]["total"] == 2

    def test_service_summary(self, book, lifecycle, owner_actor, seed):
        appointment = book(additional_services=[seed.nail_trim.id])

        summary = lifecycle.get_service_summary(appointment.id, owner_actor)

        assert summary["service_names"] == "Full Groom, Nail Trim"
        assert summary["additional_total"] == 150.0
        assert summary["total_amount"] == 650.0

    def test_update_notes(self, book, lifecycle, owner_actor):
        appointment = book()

        updated = lifecycle.update_notes(appointment.id, "Sensitive ears", owner_actor)

        assert updated.special_notes == "Sensitive ears"


@pytest.mark.appointments
class TestGroomerDesk:
    def test_available_groomers_are_active_groomers_only(self, lifecycle, staff_actor, seed):
        groomers = lifecycle.get_available_groomers(staff_actor)

        assert [groomer.name for groomer in groomers] == ["Gina Groomer"]

    def test_pet_owner_cannot_list_groomers(self, lifecycle, owner_actor):
        with pytest.raises(PermissionDeniedError):
            lifecycle.get_available_groomers(owner_actor)

    def test_set_actual_schedule(self, book, lifecycle, staff_actor, tomorrow):
        appointment = book()

        updated = lifecycle.set_actual_schedule(
            appointment.id, tomorrow.isoformat(), "2:00 PM", staff_actor
        )

        assert updated.actual_date == tomorrow
        assert updated.actual_time == datetime.time(14, 0)
        assert updated.preferred_time == datetime.time(10, 0)

    def test_actual_schedule_needs_date_and_time(self, book, lifecycle, staff_actor):
        appointment = book()

        with pytest.raises(ValidationError) as exc:
            lifecycle.set_actual_schedule(appointment.id, None, "", staff_actor)

        assert [error["field"] for error in exc.value.errors] == ["actual_date", "actual_time"]

    def test_actual_schedule_rejects_bad_time(self, book, lifecycle, staff_actor, tomorrow):
        appointment = book()

        with pytest.raises(ValidationError):
            lifecycle.set_actual_schedule(
                appointment.id, tomorrow.isoformat(), "teatime", staff_actor
            )

    def test_actual_schedule_cannot_take_a_booked_slot(
        self, book, lifecycle, staff_actor, seed, tomorrow
    ):
        book()
        other = book(pet_id=seed.pets[0].id, preferred_time="11:00 AM")

        with pytest.raises(ConflictError) as exc:
            lifecycle.set_actual_schedule(
                other.id, tomorrow.isoformat(), "10:00 AM", staff_actor
            )

        assert exc.value.code == "TIME_SLOT_UNAVAILABLE"
        assert lifecycle.store.get(other.id).actual_time is None

    def test_pet_owner_cannot_set_actual_schedule(self, book, lifecycle, owner_actor, tomorrow):
        appointment = book()

        with pytest.raises(PermissionDeniedError):
            lifecycle.set_actual_schedule(
                appointment.id, tomorrow.isoformat(), "2:00 PM", owner_actor
            )


class BrokenNotificationPort:
    def __init__(self):
        self.attempts = 0

    def publish(self, event):
        self.attempts += 1
        raise RuntimeError("mail relay down")


def lose_connection(*args, **kwargs):
    raise OperationalError("UPDATE appointments", {}, Exception("lost connection"))


@pytest.mark.appointments
class TestFailurePaths:
    def test_failing_notifications_do_not_undo_the_booking(
        self, lifecycle, booking, owner_actor, monkeypatch
    ):
        port = BrokenNotificationPort()
        monkeypatch.setattr(lifecycle, "notifications", port)

        appointment = lifecycle.create(booking(), owner_actor)

        assert port.attempts == 1
        stored = lifecycle.store.get(appointment.id)
        assert stored is not None
        assert stored.status == "pending"

    def test_failing_notifications_do_not_undo_a_cancel(
        self, book, lifecycle, owner_actor, monkeypatch
    ):
        appointment = book()
        monkeypatch.setattr(lifecycle, "notifications", BrokenNotificationPort())

        lifecycle.cancel(appointment.id, "Vet visit", owner_actor)

        assert lifecycle.store.get(appointment.id).status == "cancelled"

    def test_database_failure_rolls_back_add_services(
        self, book, lifecycle, staff_actor, seed, notifications, monkeypatch
    ):
        appointment = book()
        notifications.clear()
        monkeypatch.setattr(lifecycle.payment_sync, "sync", lose_connection)

        with pytest.raises(InfrastructureError) as exc:
            lifecycle.add_services(appointment.id, [seed.nail_trim.id], staff_actor)

        assert exc.value.code == "DATABASE_ERROR"
        assert exc.value.http_status == 500
        refreshed = lifecycle.store.get(appointment.id)
        assert refreshed.additional_services == []
        assert refreshed.total_amount == Decimal("500.00")
        assert notifications.names() == []

    def test_database_failure_discards_recorded_events(
        self, book, lifecycle, notifications
    ):
        appointment = book()
        notifications.clear()
        outbox_seen = []

        with pytest.raises(InfrastructureError):
            with lifecycle.store.transaction(notifications) as outbox:
                outbox_seen.append(outbox)
                outbox.record(events.APPOINTMENT_STATUS_CHANGED, appointment.id)
                lose_connection()

        assert outbox_seen[0].pending() == []
        assert notifications.names() == []
