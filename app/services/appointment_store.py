"""
Appointment aggregate store.

Owns persisted appointment state (core row, add-on lines, sessions,
reschedule history) and is the only code that writes it. Every mutation runs
inside `transaction()`: the target row is locked, slot and queue invariants are
re-checked against committed state, the change is applied, then committed or
rolled back as a whole.
"""

from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import date, time
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from ..extensions import db
from ..models import (
    Appointment,
    AppointmentRescheduleHistory,
    AppointmentService,
    AppointmentSession,
)
from ..utils.time_format import (
    format_date,
    format_datetime,
    format_time,
    now,
    to_12_hour,
    today,
)
from .errors import (
    AppointmentError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from .events import EventOutbox
from .pricing import appointment_total
from .queue import QueueAssigner

TERMINAL_STATUSES = ("completed", "cancelled", "no_show")
# Statuses that never hold a time slot
SLOT_FREE_STATUSES = TERMINAL_STATUSES
# Statuses that count as the pet's one active appointment
ACTIVE_STATUSES = ("pending", "confirmed", "in_progress")
QUEUE_STATUSES = ("waiting", "in_progress")
PRICE_FIELDS = ("base_price", "matted_coat_fee", "discount_amount")


@dataclass
class AppointmentPatch:
    """
    The fields an operation may change on the appointment row. `None` means
    "leave as is". Queue numbers and total_amount are never patched directly:
    the store derives them.
    """

    preferred_date: Optional[date] = None
    preferred_time: Optional[time] = None
    actual_date: Optional[date] = None
    actual_time: Optional[time] = None
    groomer_id: Optional[int] = None
    base_price: Optional[Decimal] = None
    matted_coat_fee: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    special_notes: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment_method: Optional[str] = None
    duration_minutes: Optional[int] = None
    cancelled_reason: Optional[str] = None
    cancelled_by_role: Optional[str] = None
    cancelled_by_user_id: Optional[int] = None
    cancelled_at: Optional[object] = None
    refund_status: Optional[str] = None

    def changes(self):
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


_DETAIL_OPTIONS = (
    selectinload(Appointment.pet),
    selectinload(Appointment.owner),
    selectinload(Appointment.groomer),
    selectinload(Appointment.service),
    selectinload(Appointment.additional_services).selectinload(AppointmentService.service),
    selectinload(Appointment.reschedule_history),
    selectinload(Appointment.sessions),
    selectinload(Appointment.rating),
)


class AppointmentStore:
    def __init__(self, queue_assigner=None):
        self.queue = queue_assigner or QueueAssigner()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self, notifier=None):
        """
        Unit of work. Yields an EventOutbox; events recorded on it are
        dispatched to `notifier` only after a successful commit.
        """
        outbox = EventOutbox()
        try:
            yield outbox
            db.session.commit()
        except AppointmentError:
            db.session.rollback()
            outbox.discard()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            outbox.discard()
            current_app.logger.error(f"Appointment transaction rolled back: {e}")
            raise InfrastructureError(
                "Database error, no changes were saved", details={"details": str(e)}
            ) from e
        except Exception:
            db.session.rollback()
            outbox.discard()
            raise
        outbox.flush(notifier)

    def lock(self, appointment_id):
        """SELECT ... FOR UPDATE on the appointment row; NotFoundError if missing."""
        stmt = (
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        appointment = db.session.scalar(stmt)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        return appointment

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add(self, appointment):
        db.session.add(appointment)
        db.session.flush()
        return appointment

    def update(self, appointment_id, patch):
        """Lock + apply in the caller's transaction."""
        return self.apply(self.lock(appointment_id), patch)

    def apply(self, appointment, patch):
        """
        The single mutation path for the appointment row. `appointment` must
        already be locked in the current transaction.
        """
        changes = patch.changes()
        if not changes:
            raise ValidationError("No valid fields to update", code="NO_CHANGES")

        slot_date = changes.get("preferred_date", appointment.preferred_date)
        slot_time = changes.get("preferred_time", appointment.preferred_time)

        if "preferred_date" in changes or "preferred_time" in changes:
            conflict = self.find_slot_conflict(slot_date, slot_time, appointment.id)
            if conflict is not None:
                raise ConflictError(
                    "The selected time slot is already booked. Please choose a different time.",
                    code="TIME_SLOT_UNAVAILABLE",
                    conflict=summarize(conflict),
                )

        groomer_id = changes.get("groomer_id")
        if groomer_id is not None and groomer_id != appointment.groomer_id:
            conflict = self.find_groomer_conflict(
                groomer_id, slot_date, slot_time, appointment.id
            )
            if conflict is not None:
                raise ConflictError(
                    "Groomer already has an appointment in this time slot",
                    code="GROOMER_UNAVAILABLE",
                    conflict=summarize(conflict),
                )

        new_status = changes.get("status")
        if new_status in QUEUE_STATUSES:
            self._assign_queue(appointment, new_status)

        for name, value in changes.items():
            setattr(appointment, name, value)

        if any(name in changes for name in PRICE_FIELDS):
            appointment.total_amount = appointment_total(appointment)

        db.session.flush()
        return appointment

    def _assign_queue(self, appointment, new_status):
        queue_date = today()
        if new_status == "waiting":
            needed = self.queue.needs_number(appointment, queue_date)
        else:
            needed = appointment.daily_queue_number is None
        if not needed:
            return

        number = self.queue.assign(appointment, queue_date)
        appointment.daily_queue_number = number
        appointment.queue_date = queue_date
        current_app.logger.info(
            f"Assigned daily queue #{number} to appointment {appointment.id}"
        )

    def add_service_line(self, appointment, service_id, price, payment_method=None):
        line = AppointmentService(
            appointment_id=appointment.id,
            service_id=service_id,
            pet_id=appointment.pet_id,
            price=price,
            payment_method=payment_method,
        )
        appointment.additional_services.append(line)
        db.session.flush()
        self._refresh_total(appointment)
        return line

    def remove_service_line(self, appointment, line):
        appointment.additional_services.remove(line)
        db.session.flush()
        self._refresh_total(appointment)

    def _refresh_total(self, appointment):
        appointment.total_amount = appointment_total(appointment)
        db.session.flush()

    def append_reschedule_history(
        self, appointment, new_date, new_time, reason, actor
    ):
        entry = AppointmentRescheduleHistory(
            appointment_id=appointment.id,
            old_preferred_date=appointment.preferred_date,
            old_preferred_time=appointment.preferred_time,
            new_preferred_date=new_date,
            new_preferred_time=new_time,
            reason=reason,
            rescheduled_by_role=actor.role,
            rescheduled_by_user_id=actor.id,
            rescheduled_at=now(),
        )
        db.session.add(entry)
        db.session.flush()
        return entry

    def open_session(self, appointment, started_at):
        session = AppointmentSession(
            appointment_id=appointment.id,
            groomer_id=appointment.groomer_id,
            start_time=started_at,
            status="active",
        )
        db.session.add(session)
        db.session.flush()
        return session

    def active_session(self, appointment_id):
        stmt = (
            select(AppointmentSession)
            .where(
                AppointmentSession.appointment_id == appointment_id,
                AppointmentSession.status == "active",
            )
            .order_by(AppointmentSession.start_time.desc())
            .with_for_update()
        )
        return db.session.scalars(stmt).first()

    def close_session(self, session, ended_at, duration_minutes):
        session.end_time = ended_at
        session.duration_minutes = duration_minutes
        session.status = "completed"
        db.session.flush()
        return session

    # ------------------------------------------------------------------
    # Invariant queries
    # ------------------------------------------------------------------
    def find_slot_conflict(self, slot_date, slot_time, exclude_id=None):
        stmt = select(Appointment).where(
            or_(
                and_(
                    Appointment.preferred_date == slot_date,
                    Appointment.preferred_time == slot_time,
                ),
                and_(
                    Appointment.actual_date == slot_date,
                    Appointment.actual_time == slot_time,
                ),
            ),
            Appointment.status.not_in(SLOT_FREE_STATUSES),
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        return db.session.scalars(stmt.with_for_update()).first()

    def find_groomer_conflict(self, groomer_id, slot_date, slot_time, exclude_id=None):
        stmt = select(Appointment).where(
            Appointment.groomer_id == groomer_id,
            Appointment.preferred_date == slot_date,
            Appointment.preferred_time == slot_time,
            Appointment.status.not_in(SLOT_FREE_STATUSES),
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        return db.session.scalars(stmt).first()

    def find_active_for_pet(self, pet_id, owner_id):
        stmt = (
            select(Appointment)
            .where(
                Appointment.pet_id == pet_id,
                Appointment.owner_id == owner_id,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Appointment.preferred_date.asc(), Appointment.preferred_time.asc())
        )
        return db.session.scalars(stmt).first()

    def find_service_line(self, appointment_id, service_id):
        stmt = select(AppointmentService).where(
            AppointmentService.appointment_id == appointment_id,
            AppointmentService.service_id == service_id,
        )
        return db.session.scalar(stmt)

    def booked_times(self, slot_date):
        stmt = select(Appointment.preferred_time).where(
            Appointment.preferred_date == slot_date,
            Appointment.status.not_in(SLOT_FREE_STATUSES),
        )
        return sorted(set(db.session.scalars(stmt).all()))

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------
    def get(self, appointment_id):
        stmt = (
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .options(*_DETAIL_OPTIONS)
            .execution_options(populate_existing=True)
        )
        return db.session.scalar(stmt)

    def get_or_404(self, appointment_id):
        appointment = self.get(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        return appointment

    def _list(self, *criteria, order_by=None):
        stmt = select(Appointment).where(*criteria).options(*_DETAIL_OPTIONS)
        if order_by is None:
            order_by = (Appointment.preferred_date.asc(), Appointment.preferred_time.asc())
        return db.session.scalars(stmt.order_by(*order_by)).all()

    def list_by_owner(self, owner_id, status=None):
        criteria = [Appointment.owner_id == owner_id]
        if status:
            criteria.append(Appointment.status == status)
        return self._list(
            *criteria,
            order_by=(Appointment.preferred_date.desc(), Appointment.preferred_time.desc()),
        )

    def list_by_groomer(self, groomer_id, status=None, on_date=None):
        criteria = [Appointment.groomer_id == groomer_id]
        if status:
            criteria.append(Appointment.status == status)
        if on_date:
            criteria.append(Appointment.preferred_date == on_date)
        return self._list(*criteria)

    def list_by_date_range(self, start, end, status=None, groomer_id=None):
        criteria = [
            or_(
                Appointment.preferred_date.between(start, end),
                Appointment.actual_date.between(start, end),
            )
        ]
        if status:
            criteria.append(Appointment.status == status)
        if groomer_id:
            criteria.append(Appointment.groomer_id == groomer_id)
        return self._list(*criteria)

    def list_by_status(self, status):
        return self._list(Appointment.status == status)

    def list_for_day(self, day):
        return self._list(
            or_(Appointment.preferred_date == day, Appointment.actual_date == day),
            Appointment.status != "cancelled",
            order_by=(
                Appointment.daily_queue_number.is_(None),
                Appointment.daily_queue_number.asc(),
                Appointment.preferred_time.asc(),
            ),
        )

    def list_queue(self, queue_date):
        return self._list(
            Appointment.queue_date == queue_date,
            Appointment.status.in_(QUEUE_STATUSES),
            order_by=(Appointment.daily_queue_number.asc(),),
        )

    def status_counts(self, day):
        counts = {status: 0 for status in (
            "pending", "confirmed", "waiting", "in_progress",
            "completed", "cancelled", "no_show",
        )}
        stmt = select(Appointment.status).where(Appointment.preferred_date == day)
        for status in db.session.scalars(stmt):
            counts[status] = counts.get(status, 0) + 1
        counts["total"] = sum(counts.values())
        return counts


# ----------------------------------------------------------------------
# Serialization
# ----------------------------------------------------------------------
def _money(value):
    return float(value) if value is not None else 0.0


def summarize(appointment):
    """Short view of an appointment, attached to conflict errors."""
    return {
        "id": appointment.id,
        "pet_id": appointment.pet_id,
        "pet_name": appointment.pet.name if appointment.pet else None,
        "service_name": appointment.service.name if appointment.service else None,
        "preferred_date": format_date(appointment.preferred_date),
        "preferred_time": format_time(appointment.preferred_time),
        "preferred_time_display": to_12_hour(appointment.preferred_time),
        "status": appointment.status,
    }


def serialize_service_line(line):
    return {
        "id": line.id,
        "service_id": line.service_id,
        "service_name": line.service.name if line.service else None,
        "category": line.service.category if line.service else None,
        "price": _money(line.price),
        "payment_method": line.payment_method,
        "added_at": format_datetime(line.created_at),
    }


def serialize_session(session):
    if session is None:
        return None
    return {
        "id": session.id,
        "groomer_id": session.groomer_id,
        "start_time": format_datetime(session.start_time),
        "end_time": format_datetime(session.end_time),
        "duration_minutes": session.duration_minutes,
        "status": session.status,
    }


def serialize_history(entry):
    return {
        "id": entry.id,
        "old_preferred_date": format_date(entry.old_preferred_date),
        "old_preferred_time": format_time(entry.old_preferred_time),
        "new_preferred_date": format_date(entry.new_preferred_date),
        "new_preferred_time": format_time(entry.new_preferred_time),
        "reason": entry.reason,
        "rescheduled_by_role": entry.rescheduled_by_role,
        "rescheduled_by_user_id": entry.rescheduled_by_user_id,
        "rescheduled_at": format_datetime(entry.rescheduled_at),
    }


def serialize_appointment(apt):
    """Fully joined appointment view returned by every read projection."""
    pet = apt.pet
    owner = apt.owner
    groomer = apt.groomer
    service = apt.service
    current_session = None
    if apt.sessions:
        active = [s for s in apt.sessions if s.status == "active"]
        current_session = active[-1] if active else apt.sessions[-1]

    return {
        "id": apt.id,
        "pet_id": apt.pet_id,
        "owner_id": apt.owner_id,
        "service_id": apt.service_id,
        "groomer_id": apt.groomer_id,
        "preferred_date": format_date(apt.preferred_date),
        "preferred_time": format_time(apt.preferred_time),
        "preferred_time_display": to_12_hour(apt.preferred_time),
        "actual_date": format_date(apt.actual_date),
        "actual_time": format_time(apt.actual_time),
        "daily_queue_number": apt.daily_queue_number,
        "queue_date": format_date(apt.queue_date),
        "base_price": _money(apt.base_price),
        "matted_coat_fee": _money(apt.matted_coat_fee),
        "discount_amount": _money(apt.discount_amount),
        "total_amount": _money(apt.total_amount),
        "status": apt.status,
        "payment_status": apt.payment_status,
        "payment_method": apt.payment_method,
        "cancelled_reason": apt.cancelled_reason,
        "cancelled_by_role": apt.cancelled_by_role,
        "cancelled_by_user_id": apt.cancelled_by_user_id,
        "cancelled_at": format_datetime(apt.cancelled_at),
        "refund_status": apt.refund_status,
        "duration_minutes": apt.duration_minutes,
        "special_notes": apt.special_notes,
        "created_at": format_datetime(apt.created_at),
        "updated_at": format_datetime(apt.updated_at),
        "pet": (
            {
                "id": pet.id,
                "name": pet.name,
                "species": pet.type,
                "breed": pet.breed,
                "size": pet.size,
                "gender": pet.gender,
                "photo": pet.photo_url,
            }
            if pet
            else None
        ),
        "owner": (
            {
                "id": owner.id,
                "name": owner.name,
                "email": owner.email,
                "phone": owner.contact_number,
                "profile_photo_url": owner.profile_photo_url,
            }
            if owner
            else None
        ),
        "service": (
            {
                "id": service.id,
                "name": service.name,
                "category": service.category,
                "description": service.description,
            }
            if service
            else None
        ),
        "groomer": (
            {"id": groomer.id, "name": groomer.name, "email": groomer.email}
            if groomer
            else None
        ),
        "additional_services": [serialize_service_line(line) for line in apt.additional_services],
        "reschedule_history": [serialize_history(entry) for entry in apt.reschedule_history],
        "session": serialize_session(current_session),
        "rating": (
            {"rating": apt.rating.rating, "comment": apt.rating.comment}
            if apt.rating
            else None
        ),
    }
