# Payment ledger port and its SQL implementation
from typing import List, Optional, Protocol

from sqlalchemy import select

from ..extensions import db
from ..models import PAYMENT_RECORD_STATUSES, Payment
from ..utils.time_format import now
from .errors import NotFoundError, ValidationError


class PaymentPort(Protocol):
    def list_for_appointment(self, appointment_id: int) -> List[Payment]: ...

    def get(self, payment_id: int, lock: bool = False) -> Optional[Payment]: ...

    def record(self, appointment_id: int, amount, payment_method: str, status: str,
               user_id: Optional[int] = None, external_reference: Optional[str] = None,
               notes: Optional[str] = None, transaction_type: str = "payment") -> Payment: ...

    def set_status(self, payment: Payment, status: str) -> Payment: ...


class SqlPaymentLedger:
    """Payment rows in the shared `payments` table, written on the caller's session."""

    def list_for_appointment(self, appointment_id):
        stmt = (
            select(Payment)
            .where(Payment.appointment_id == appointment_id)
            .order_by(Payment.created_at, Payment.id)
        )
        return db.session.scalars(stmt).all()

    def get(self, payment_id, lock=False):
        stmt = select(Payment).where(Payment.id == payment_id)
        if lock:
            stmt = stmt.with_for_update()
        return db.session.scalar(stmt)

    def record(
        self,
        appointment_id,
        amount,
        payment_method,
        status,
        user_id=None,
        external_reference=None,
        notes=None,
        transaction_type="payment",
    ):
        _check_status(status)
        payment = Payment(
            appointment_id=appointment_id,
            user_id=user_id,
            amount=amount,
            payment_method=payment_method,
            status=status,
            transaction_type=transaction_type,
            external_reference=external_reference,
            notes=notes,
            paid_at=now() if status == "completed" else None,
        )
        db.session.add(payment)
        db.session.flush()
        return payment

    def set_status(self, payment, status):
        _check_status(status)
        if payment is None:
            raise NotFoundError("Payment not found")
        payment.status = status
        if status == "completed" and payment.paid_at is None:
            payment.paid_at = now()
        db.session.flush()
        return payment


def _check_status(status):
    if status not in PAYMENT_RECORD_STATUSES:
        raise ValidationError(
            f"Invalid payment status. Valid statuses are: {', '.join(PAYMENT_RECORD_STATUSES)}"
        )


def serialize_payment(payment):
    return {
        "id": payment.id,
        "appointment_id": payment.appointment_id,
        "user_id": payment.user_id,
        "amount": float(payment.amount) if payment.amount is not None else None,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "transaction_type": payment.transaction_type,
        "external_reference": payment.external_reference,
        "notes": payment.notes,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }
