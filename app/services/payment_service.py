"""
Payment desk operations: recording payments, ledger status callbacks,
refunds, on demand payment-status sync and the receipt snapshot for
completed visits.
"""

from flask import current_app

from ..models import PAYMENT_RECORD_STATUSES
from ..utils.time_format import format_datetime, now
from . import events
from .appointment_store import AppointmentPatch, serialize_appointment
from .errors import ConflictError, NotFoundError, StateError, ValidationError
from .payment_ledger import serialize_payment
from .payment_sync import is_refund
from .pricing import ZERO, parse_amount, to_decimal


def completed_payments(payments, exclude_id=None):
    return [
        p for p in payments
        if p.status == "completed" and not is_refund(p) and p.id != exclude_id
    ]


class PaymentService:
    def __init__(self, lifecycle):
        self.lifecycle = lifecycle
        self.store = lifecycle.store
        self.ledger = lifecycle.payments
        self.payment_sync = lifecycle.payment_sync

    @property
    def notifications(self):
        return self.lifecycle.notifications

    def list_payments(self, appointment_id, actor):
        appointment = self.store.get_or_404(appointment_id)
        self.lifecycle.require_access(appointment, actor)
        return self.ledger.list_for_appointment(appointment_id)

    def record_payment(self, appointment_id, data, actor):
        """
        Cash desk flow. A completed payment is recorded at the appointment
        total, with what was handed over kept in the notes.
        """
        self.lifecycle.require_staff(actor)
        status = data.get("status") or "completed"
        if status not in PAYMENT_RECORD_STATUSES:
            raise ValidationError(
                f"Invalid payment status. Valid statuses are: {', '.join(PAYMENT_RECORD_STATUSES)}"
            )
        payment_method = data.get("payment_method") or current_app.config.get(
            "DEFAULT_PAYMENT_METHOD", "cash"
        )
        received = parse_amount("amount", data.get("amount")) or ZERO
        if received < ZERO:
            raise ValidationError("amount cannot be negative", code="INVALID_PRICE")

        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            if appointment.status == "cancelled":
                raise StateError(
                    "Cannot take payment for a cancelled appointment",
                    code="INVALID_STATUS",
                    current_status=appointment.status,
                )

            self._require_not_paid(appointment.id)

            total = to_decimal(appointment.total_amount)
            notes = data.get("notes")
            amount = received if received > ZERO else total
            if status == "completed":
                if received < total:
                    raise ValidationError(
                        f"Insufficient payment. Required: {total}, Received: {received}",
                        code="INSUFFICIENT_PAYMENT",
                    )
                amount = total
                notes = notes or f"Received: {received}, Change: {received - total}"

            payment = self.ledger.record(
                appointment.id,
                amount,
                payment_method,
                status,
                user_id=appointment.owner_id,
                external_reference=data.get("external_reference")
                or f"{payment_method.upper()}-{int(now().timestamp())}",
                notes=notes,
            )
            self.payment_sync.sync(appointment)

            if status == "completed":
                self._record_received(outbox, appointment, payment)
            payment_id = payment.id

        current_app.logger.info(
            f"Recorded {status} {payment_method} payment {payment_id} for appointment {appointment_id}"
        )
        return self.ledger.get(payment_id), self.store.get(appointment_id)

    def update_payment_status(self, payment_id, status, actor):
        """Gateway callback, manual mark-as-paid or cancellation of a ledger row."""
        self.lifecycle.require_staff(actor)

        with self.store.transaction(self.notifications) as outbox:
            payment = self.ledger.get(payment_id, lock=True)
            if payment is None:
                raise NotFoundError("Payment not found")
            if is_refund(payment):
                raise ValidationError("Refund records cannot change status")
            appointment = self.store.lock(payment.appointment_id)

            was_completed = payment.status == "completed"
            if status == "completed" and not was_completed:
                self._require_not_paid(appointment.id, exclude_id=payment.id)
            self.ledger.set_status(payment, status)
            payment_status = self.payment_sync.sync(appointment)

            if status == "completed" and not was_completed:
                self._record_received(outbox, appointment, payment)
            appointment_id = appointment.id

        return self.ledger.get(payment_id), payment_status, appointment_id

    def refund_payment(self, appointment_id, data, actor):
        """
        Pay back a paid appointment. Writes a completed refund row to the
        ledger and marks the appointment refunded; the amount defaults to
        everything that was paid.
        """
        self.lifecycle.require_staff(actor)
        requested = parse_amount("refund_amount", data.get("refund_amount"))
        if requested is not None and requested <= ZERO:
            raise ValidationError("refund_amount must be positive", code="INVALID_PRICE")
        reason = (data.get("reason") or "").strip() or "Appointment cancelled"

        with self.store.transaction(self.notifications) as outbox:
            appointment = self.store.lock(appointment_id)
            if appointment.payment_status != "paid":
                raise ValidationError(
                    f"Cannot refund an appointment whose payment is {appointment.payment_status}",
                    code="NOT_REFUNDABLE",
                )

            payments = completed_payments(self.ledger.list_for_appointment(appointment.id))
            paid = sum((to_decimal(p.amount) for p in payments), ZERO)
            paid = paid or to_decimal(appointment.total_amount)
            amount = requested if requested is not None else paid
            if amount > paid:
                raise ValidationError(
                    f"Refund of {amount} exceeds the {paid} paid",
                    code="INVALID_PRICE",
                )

            refund_method = data.get("refund_method") or "original"
            if refund_method == "original":
                refund_method = appointment.payment_method or current_app.config.get(
                    "DEFAULT_PAYMENT_METHOD", "cash"
                )

            refund = self.ledger.record(
                appointment.id,
                amount,
                refund_method,
                "completed",
                user_id=appointment.owner_id,
                external_reference=f"REFUND-{int(now().timestamp())}",
                notes=f"Refund processed by {actor.name or actor.role}: {amount}. Reason: {reason}",
                transaction_type="refund",
            )
            self.store.apply(
                appointment,
                AppointmentPatch(payment_status="refunded", refund_status="refunded"),
            )
            outbox.record(
                events.PAYMENT_REFUNDED,
                appointment.id,
                recipient_id=appointment.owner_id,
                payment_id=refund.id,
                amount=float(amount),
                payment_method=refund_method,
                reason=reason,
            )
            refund_id = refund.id

        current_app.logger.info(
            f"Refunded {amount} on appointment {appointment_id} by {actor.role} {actor.id}"
        )
        return self.ledger.get(refund_id), self.store.get(appointment_id)

    def _require_not_paid(self, appointment_id, exclude_id=None):
        if completed_payments(self.ledger.list_for_appointment(appointment_id), exclude_id):
            raise ConflictError(
                "Payment has already been processed for this appointment",
                code="PAYMENT_ALREADY_COMPLETED",
            )

    def sync_payment_status(self, appointment_id, actor):
        appointment = self.store.get_or_404(appointment_id)
        self.lifecycle.require_access(appointment, actor)
        with self.store.transaction(self.notifications):
            return self.payment_sync.sync(self.store.lock(appointment_id))

    @staticmethod
    def _record_received(outbox, appointment, payment):
        outbox.record(
            events.PAYMENT_RECEIVED,
            appointment.id,
            recipient_id=appointment.owner_id,
            payment_id=payment.id,
            amount=float(payment.amount),
            payment_method=payment.payment_method,
        )

    def receipt(self, appointment_id, actor):
        """Finalized snapshot handed to the receipt renderer."""
        appointment = self.store.get_or_404(appointment_id)
        self.lifecycle.require_access(appointment, actor)
        if appointment.status != "completed":
            raise StateError(
                "Receipts are only available for completed appointments",
                code="INVALID_STATUS",
                current_status=appointment.status,
            )

        self.lifecycle.sync_on_read(appointment_id)
        appointment = self.store.get(appointment_id)
        payments = self.ledger.list_for_appointment(appointment_id)
        summary = self.lifecycle.get_service_summary(appointment_id, actor)

        return {
            "receipt_number": f"RCP-{appointment.id:06d}",
            "generated_at": format_datetime(now()),
            "appointment": serialize_appointment(appointment),
            "services": summary,
            "payments": [serialize_payment(payment) for payment in payments],
            "amount_paid": float(
                sum((to_decimal(p.amount) for p in completed_payments(payments)), ZERO)
            ),
            "amount_refunded": float(
                sum(
                    (to_decimal(p.amount) for p in payments
                     if is_refund(p) and p.status == "completed"),
                    ZERO,
                )
            ),
            "payment_status": appointment.payment_status,
            "duration_minutes": appointment.duration_minutes,
        }
