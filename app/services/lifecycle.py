"""
Appointment lifecycle service.

One role-parameterized service behind every appointment operation. Each
mutating call runs as a single unit of work on the aggregate store and
records domain events that are published only after commit.
"""

from flask import current_app
from sqlalchemy import func, select

from ..extensions import db
from ..models import APPOINTMENT_STATUSES, Appointment, User
from ..utils.time_format import (
    current_time,
    format_date,
    minutes_between,
    now,
    parse_date,
    parse_time,
    to_12_hour,
    today,
)
from . import events
from .appointment_store import (
    TERMINAL_STATUSES,
    AppointmentPatch,
    AppointmentStore,
    summarize,
)
from .booking_validator import BookingValidator
from .errors import (
    AppointmentError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from .payment_ledger import SqlPaymentLedger
from .payment_sync import PaymentStatusSynchronizer
from .pricing import ZERO, compute_total, parse_amount, to_decimal

TRANSITIONS = {
    "pending": ("confirmed", "waiting", "cancelled", "no_show"),
    "confirmed": ("waiting", "in_progress", "cancelled", "no_show"),
    "waiting": ("in_progress", "cancelled", "no_show"),
    "in_progress": ("completed", "cancelled", "no_show"),
    "completed": (),
    "cancelled": (),
    "no_show": (),
}

GROOMER_ELIGIBLE_STATUSES = ("pending", "confirmed", "waiting", "in_progress")
OWNER_RESCHEDULABLE_STATUSES = ("pending", "confirmed")
# Statuses that stamp actual_date/actual_time on entry
STAMPING_STATUSES = ("waiting", "in_progress", "completed", "no_show")
CONFLICT_CODES = ("DUPLICATE_SERVICE", "PRIMARY_SERVICE_CONFLICT")


def check_transition(current, new_status):
    """Raise StateError unless `current -> new_status` is a legal move."""
    if current == new_status:
        raise StateError(
            f"Appointment is already {current}", current_status=current
        )
    if current in TERMINAL_STATUSES:
        raise StateError(
            f"Cannot change the status of a {current} appointment",
            current_status=current,
        )
    if new_status not in TRANSITIONS.get(current, ()):
        raise StateError(
            f"Cannot change status from {current} to {new_status}",
            current_status=current,
        )


class AppointmentLifecycle:
    def __init__(self, notifications=None, payments=None, store=None):
        self.store = store or AppointmentStore()
        self.payments = payments or SqlPaymentLedger()
        self.notifications = notifications
        self.validator = BookingValidator(self.store)
        self.payment_sync = PaymentStatusSynchronizer(self.payments, self.store)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    @staticmethod
    def require_staff(actor):
        if not actor.is_staff:
            raise PermissionDeniedError("Only staff or the shop owner can do this")

    @staticmethod
    def require_access(appointment, actor):
        if actor.is_pet_owner and appointment.owner_id != actor.id:
            raise PermissionDeniedError("You can only access your own appointments")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create(self, data, actor):
        with self.store.transaction(self.notifications) as outbox:
            plan = self.validator.validate(data, actor)
            payment_method = data.get("payment_method") or current_app.config.get(
                "DEFAULT_PAYMENT_METHOD", "cash"
            )

            appointment = Appointment(
                pet_id=plan.pet.id,
                owner_id=plan.owner_id,
                service_id=plan.service.id,
                preferred_date=plan.preferred_date,
                preferred_time=plan.preferred_time,
                base_price=plan.base_price,
                matted_coat_fee=plan.matted_coat_fee,
                discount_amount=ZERO,
                total_amount=compute_total(
                    plan.base_price,
                    plan.matted_coat_fee,
                    [add_on.price for add_on in plan.add_ons],
                ),
                status="pending",
                payment_status="pending",
                payment_method=payment_method,
                special_notes=data.get("special_notes"),
            )
            self.store.add(appointment)
            for add_on in plan.add_ons:
                self.store.add_service_line(
                    appointment, add_on.service.id, add_on.price, payment_method
                )

            outbox.record(
                events.APPOINTMENT_CREATED,
                appointment.id,
                recipient_id=appointment.owner_id,
                pet_name=plan.pet.name,
                service_name=plan.service.name,
                preferred_date=format_date(plan.preferred_date),
                preferred_time=to_12_hour(plan.preferred_time),
                total_amount=float(appointment.total_amount),
            )
            appointment_id = appointment.id

        current_app.logger.info(
            f"Appointment {appointment_id} booked by {actor.role} {actor.id}"
        )
        return self.store.get(appointment_id)

    # ------------------------------------------------------------------
    # Schedule changes
    # ------------------------------------------------------------------
    def reschedule(self, appointment_id, new_date, new_time, reason, actor):
        try:
            new_date = parse_date(new_date)
            new_time = parse_time(new_time)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        if new_date < today():
            raise ValidationError(
                "Cannot reschedule to a date in the past", code="PAST_DATE"
            )

        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            self.require_access(appointment, actor)

            if appointment.status in TERMINAL_STATUSES:
                raise StateError(
                    f"Cannot reschedule a {appointment.status} appointment",
                    code="INVALID_STATUS",
                    current_status=appointment.status,
                )
            if actor.is_pet_owner and appointment.status not in OWNER_RESCHEDULABLE_STATUSES:
                raise StateError(
                    "Only pending or confirmed appointments can be rescheduled",
                    code="INVALID_STATUS",
                    current_status=appointment.status,
                )

            old_date, old_time = appointment.preferred_date, appointment.preferred_time
            self.store.append_reschedule_history(
                appointment, new_date, new_time, reason, actor
            )
            self.store.apply(
                appointment,
                AppointmentPatch(preferred_date=new_date, preferred_time=new_time),
            )

            outbox.record(
                events.APPOINTMENT_RESCHEDULED,
                appointment.id,
                recipient_id=appointment.owner_id,
                old_date=format_date(old_date),
                old_time=to_12_hour(old_time),
                new_date=format_date(new_date),
                new_time=to_12_hour(new_time),
                reason=reason,
                rescheduled_by=actor.role,
            )

        return self.store.get(appointment_id)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    def update_status(self, appointment_id, new_status, actor, notes=None):
        if new_status not in APPOINTMENT_STATUSES:
            raise ValidationError(
                f"Invalid status. Valid statuses are: {', '.join(APPOINTMENT_STATUSES)}",
                code="INVALID_STATUS",
            )
        if new_status == "cancelled":
            return self.cancel(appointment_id, notes, actor)

        self.require_staff(actor)
        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            self._transition(appointment, new_status, outbox, notes)

        return self.store.get(appointment_id)

    def _transition(self, appointment, new_status, outbox, notes=None):
        """Apply one state machine move with its linked side effects."""
        previous = appointment.status
        check_transition(previous, new_status)

        patch = AppointmentPatch(status=new_status)
        if notes:
            patch.special_notes = notes
        if new_status in STAMPING_STATUSES and appointment.actual_date is None:
            patch.actual_date = today()
            patch.actual_time = current_time()

        if new_status == "in_progress":
            if appointment.groomer_id is None:
                raise StateError(
                    "A groomer must be assigned before starting the appointment",
                    code="GROOMER_REQUIRED",
                    current_status=previous,
                )
            if self.store.active_session(appointment.id) is not None:
                raise StateError(
                    "This appointment already has an active grooming session",
                    code="SESSION_ALREADY_ACTIVE",
                    current_status=previous,
                )
            self.store.open_session(appointment, now())

        elif new_status == "completed":
            patch.duration_minutes = self._close_session(appointment)

        self.store.apply(appointment, patch)
        self.payment_sync.sync(appointment)

        outbox.record(
            events.APPOINTMENT_STATUS_CHANGED,
            appointment.id,
            recipient_id=appointment.owner_id,
            old_status=previous,
            new_status=new_status,
            daily_queue_number=appointment.daily_queue_number,
        )
        if new_status == "completed":
            outbox.record(
                events.APPOINTMENT_COMPLETED,
                appointment.id,
                recipient_id=appointment.owner_id,
                duration_minutes=appointment.duration_minutes,
                total_amount=float(appointment.total_amount),
            )
        current_app.logger.info(
            f"Appointment {appointment.id}: {previous} -> {new_status}"
        )

    def _close_session(self, appointment):
        ended_at = now()
        session = self.store.active_session(appointment.id)
        if session is None:
            current_app.logger.warning(
                f"Appointment {appointment.id} completed without an active session, "
                "recording a 1 minute duration"
            )
            return 1

        duration = max(1, minutes_between(session.start_time, ended_at))
        self.store.close_session(session, ended_at, duration)
        return duration

    def cancel(self, appointment_id, reason, actor):
        if not reason or not str(reason).strip():
            raise ValidationError(
                "A cancellation reason is required",
                errors=[{"field": "reason", "message": "This field is required"}],
            )

        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            self.require_access(appointment, actor)

            if appointment.status == "cancelled":
                raise StateError(
                    "Appointment is already cancelled",
                    code="ALREADY_CANCELLED",
                    current_status=appointment.status,
                )
            check_transition(appointment.status, "cancelled")

            # Self-cancellation by the pet owner forfeits payment
            refund_status = "not_refunded"
            patch = AppointmentPatch(
                status="cancelled",
                cancelled_reason=str(reason).strip(),
                cancelled_by_role=actor.role,
                cancelled_by_user_id=actor.id,
                cancelled_at=now(),
            )
            if appointment.payment_status == "paid" and actor.is_staff:
                refund_status = "refunded"
                patch.payment_status = "refunded"
            patch.refund_status = refund_status

            previous = appointment.status
            self.store.apply(appointment, patch)

            outbox.record(
                events.APPOINTMENT_CANCELLED,
                appointment.id,
                recipient_id=appointment.owner_id,
                reason=appointment.cancelled_reason,
                cancelled_by=actor.role,
                refund_status=refund_status,
                previous_status=previous,
            )

        current_app.logger.info(
            f"Appointment {appointment_id} cancelled by {actor.role} {actor.id} ({refund_status})"
        )
        return self.store.get(appointment_id)

    def bulk_update_status(self, appointment_ids, new_status, actor):
        """Each id runs in its own unit of work; failures are reported per id."""
        self.require_staff(actor)
        if not appointment_ids:
            raise ValidationError("appointment_ids must be a non-empty list")

        results = []
        for appointment_id in appointment_ids:
            try:
                appointment = self.update_status(appointment_id, new_status, actor)
                results.append({
                    "id": appointment_id,
                    "success": True,
                    "status": appointment.status,
                })
            except AppointmentError as e:
                results.append({
                    "id": appointment_id,
                    "success": False,
                    "code": e.code,
                    "message": e.message,
                })
        return results

    # ------------------------------------------------------------------
    # Groomer, services, pricing, notes
    # ------------------------------------------------------------------
    def assign_groomer(self, appointment_id, groomer_id, actor):
        self.require_staff(actor)

        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            groomer = db.session.get(User, groomer_id) if groomer_id else None
            if groomer is None or not groomer.is_active_groomer:
                raise ValidationError(
                    "Selected user is not an active groomer", code="GROOMER_INVALID"
                )
            if appointment.status not in GROOMER_ELIGIBLE_STATUSES:
                raise StateError(
                    f"Cannot assign a groomer to a {appointment.status} appointment",
                    code="STATUS_NOT_ELIGIBLE",
                    current_status=appointment.status,
                )

            self.store.apply(appointment, AppointmentPatch(groomer_id=groomer.id))
            outbox.record(
                events.APPOINTMENT_GROOMER_ASSIGNED,
                appointment.id,
                recipient_id=groomer.id,
                groomer_name=groomer.name,
                owner_id=appointment.owner_id,
            )

        return self.store.get(appointment_id)

    def get_available_groomers(self, actor):
        """Active groomers a desk user can pick from when assigning."""
        self.require_staff(actor)
        stmt = (
            select(User)
            .where(
                User.role == "staff",
                func.lower(User.staff_type) == "groomer",
                func.lower(User.status) == "active",
            )
            .order_by(User.name)
        )
        return db.session.scalars(stmt).all()

    def set_actual_schedule(self, appointment_id, actual_date, actual_time, actor):
        """Staff override of when the visit really happened or will happen."""
        self.require_staff(actor)
        if not actual_date or not actual_time:
            raise ValidationError(
                "Both actual date and time are required",
                errors=[
                    {"field": name, "message": "This field is required"}
                    for name, value in (("actual_date", actual_date), ("actual_time", actual_time))
                    if not value
                ],
            )
        try:
            actual_date = parse_date(actual_date)
            actual_time = parse_time(actual_time)
        except ValueError as e:
            raise ValidationError(str(e)) from None

        with self.store.transaction(self.notifications):
            appointment = self.store.lock(appointment_id)
            conflict = self.store.find_slot_conflict(actual_date, actual_time, appointment.id)
            if conflict is not None:
                raise ConflictError(
                    "Another appointment already holds that time slot",
                    code="TIME_SLOT_UNAVAILABLE",
                    conflict=summarize(conflict),
                )
            self.store.apply(
                appointment,
                AppointmentPatch(actual_date=actual_date, actual_time=actual_time),
            )

        current_app.logger.info(
            f"Actual schedule of appointment {appointment_id} set to "
            f"{format_date(actual_date)} {to_12_hour(actual_time)} by {actor.role} {actor.id}"
        )
        return self.store.get(appointment_id)

    def add_services(self, appointment_id, service_ids, actor, matted_coat_fee=None):
        matted_coat_fee = parse_amount("matted_coat_fee", matted_coat_fee)
        if not service_ids and matted_coat_fee is None:
            raise ValidationError("Provide at least one service or a matted coat fee")
        if matted_coat_fee is not None and matted_coat_fee < ZERO:
            raise ValidationError("Matted coat fee cannot be negative")

        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            self.require_access(appointment, actor)
            self._require_open(appointment)

            accepted, errors = self.validator.validate_add_ons(appointment, service_ids or [])
            if errors:
                self._raise_add_on_errors(errors)

            for add_on in accepted:
                self.store.add_service_line(
                    appointment, add_on.service.id, add_on.price, appointment.payment_method
                )
            if matted_coat_fee is not None:
                self.store.apply(appointment, AppointmentPatch(matted_coat_fee=matted_coat_fee))
            self.payment_sync.sync(appointment)

            outbox.record(
                events.APPOINTMENT_SERVICES_CHANGED,
                appointment.id,
                recipient_id=appointment.owner_id,
                added=[add_on.service.name for add_on in accepted],
                total_amount=float(appointment.total_amount),
            )

        return self.store.get(appointment_id)

    @staticmethod
    def _raise_add_on_errors(errors):
        codes = {error["code"] for error in errors}
        code = codes.pop() if len(codes) == 1 else "VALIDATION_ERROR"
        message = "; ".join(error["message"] for error in errors)
        if {error["code"] for error in errors} <= set(CONFLICT_CODES):
            raise ConflictError(message, code=code, details={"errors": errors})
        raise ValidationError(message, code=code, errors=errors)

    def remove_service(self, appointment_id, service_id, actor):
        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            self.require_access(appointment, actor)
            self._require_open(appointment)

            line = self.store.find_service_line(appointment.id, service_id)
            if line is None:
                raise NotFoundError("Service is not attached to this appointment")
            removed_name = line.service.name if line.service else None

            self.store.remove_service_line(appointment, line)
            self.payment_sync.sync(appointment)

            outbox.record(
                events.APPOINTMENT_SERVICES_CHANGED,
                appointment.id,
                recipient_id=appointment.owner_id,
                removed=[removed_name],
                total_amount=float(appointment.total_amount),
            )

        return self.store.get(appointment_id)

    @staticmethod
    def _require_open(appointment):
        if appointment.status in TERMINAL_STATUSES:
            raise StateError(
                f"Cannot change services on a {appointment.status} appointment",
                code="INVALID_STATUS",
                current_status=appointment.status,
            )

    def update_pricing(
        self, appointment_id, actor, base_price=None, matted_coat_fee=None, discount=None
    ):
        self.require_staff(actor)
        values = {
            "base_price": base_price,
            "matted_coat_fee": matted_coat_fee,
            "discount_amount": discount,
        }
        patch = AppointmentPatch()
        for name, value in values.items():
            amount = parse_amount(name, value)
            if amount is None:
                continue
            if amount < ZERO:
                raise ValidationError(f"{name} cannot be negative", code="INVALID_PRICE")
            setattr(patch, name, amount)
        if not patch.changes():
            raise ValidationError("Provide base_price, matted_coat_fee or discount")

        with self.store.transaction(self.notifications):
            appointment = self.store.lock(appointment_id)
            self.store.apply(appointment, patch)
            if appointment.total_amount < ZERO:
                raise ValidationError(
                    "Discount cannot exceed the appointment subtotal", code="INVALID_PRICE"
                )
            self.payment_sync.sync(appointment)

        return self.store.get(appointment_id)

    def update_notes(self, appointment_id, notes, actor):
        if notes is None:
            raise ValidationError("notes is required")
        with self.store.transaction(self.notifications):
            appointment = self.store.lock(appointment_id)
            self.require_access(appointment, actor)
            self.store.apply(appointment, AppointmentPatch(special_notes=notes))
        return self.store.get(appointment_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_by_id(self, appointment_id, actor):
        appointment = self.store.get_or_404(appointment_id)
        self.require_access(appointment, actor)
        self.sync_on_read(appointment_id)
        return self.store.get(appointment_id)

    def sync_on_read(self, appointment_id):
        """Self-heal payment_status for display; never fails the read."""
        try:
            with self.store.transaction(self.notifications):
                self.payment_sync.sync(self.store.lock(appointment_id))
        except AppointmentError as e:
            current_app.logger.error(
                f"Payment status sync failed for appointment {appointment_id}: {e.message}"
            )

    def get_by_owner(self, owner_id, actor, status=None):
        if actor.is_pet_owner and owner_id != actor.id:
            raise PermissionDeniedError("You can only view your own appointments")
        return self.store.list_by_owner(owner_id, status=status)

    def get_by_groomer(self, groomer_id, actor, status=None, on_date=None):
        self.require_staff(actor)
        if on_date:
            (on_date,) = _dates(on_date)
        return self.store.list_by_groomer(groomer_id, status=status, on_date=on_date)

    def get_by_date_range(self, start, end, actor, status=None, groomer_id=None):
        self.require_staff(actor)
        start, end = _dates(start, end)
        if start > end:
            raise ValidationError("start date must be on or before end date")
        return self.store.list_by_date_range(start, end, status=status, groomer_id=groomer_id)

    def get_by_status(self, status, actor):
        self.require_staff(actor)
        if status not in APPOINTMENT_STATUSES:
            raise ValidationError(
                f"Invalid status. Valid statuses are: {', '.join(APPOINTMENT_STATUSES)}",
                code="INVALID_STATUS",
            )
        return self.store.list_by_status(status)

    def get_queue(self, actor, queue_date=None):
        self.require_staff(actor)
        (queue_date,) = _dates(queue_date or today())
        return self.store.list_queue(queue_date)

    def get_todays(self, actor, day=None):
        self.require_staff(actor)
        (day,) = _dates(day or today())
        return self.store.list_for_day(day)

    def get_stats(self, actor, day=None):
        self.require_staff(actor)
        (day,) = _dates(day or today())
        return {"date": format_date(day), "counts": self.store.status_counts(day)}

    def get_available_slots(self, day):
        (day,) = _dates(day)
        slots = current_app.config.get("SHOP_TIME_SLOTS") or []
        booked = set(self.store.booked_times(day))
        available = [slot for slot in slots if parse_time(slot) not in booked]
        return {
            "date": format_date(day),
            "all_time_slots": list(slots),
            "available_time_slots": available,
            "booked_time_slots": [to_12_hour(slot) for slot in sorted(booked)],
        }

    def get_service_summary(self, appointment_id, actor):
        appointment = self.store.get_or_404(appointment_id)
        self.require_access(appointment, actor)

        lines = [
            {
                "service_id": line.service_id,
                "service_name": line.service.name if line.service else None,
                "price": float(line.price),
            }
            for line in appointment.additional_services
        ]
        additional_total = sum(to_decimal(line.price) for line in appointment.additional_services)
        primary_name = appointment.service.name if appointment.service else None
        return {
            "appointment_id": appointment.id,
            "primary_service": {
                "service_id": appointment.service_id,
                "service_name": primary_name,
                "price": float(appointment.base_price),
            },
            "additional_services": lines,
            "base_price": float(appointment.base_price),
            "matted_coat_fee": float(to_decimal(appointment.matted_coat_fee)),
            "additional_total": float(to_decimal(additional_total)),
            "discount_amount": float(to_decimal(appointment.discount_amount)),
            "total_amount": float(appointment.total_amount),
            "service_names": ", ".join(
                name for name in [primary_name] + [line["service_name"] for line in lines] if name
            ),
        }


def _dates(*values):
    try:
        return tuple(parse_date(value) for value in values)
    except ValueError as e:
        raise ValidationError(str(e)) from None
