"""
Derives an appointment's payment_status from its payment ledger rows.

Resolution (first match wins):
    no payments                          -> pending
    any completed                        -> paid (method of that payment)
    failed present, nothing pending      -> failed
    cancelled present, nothing pending   -> cancelled
    otherwise                            -> pending

Refund rows are money going back out and never count toward the status.
"""

from collections import namedtuple

from .appointment_store import AppointmentPatch

PaymentResolution = namedtuple("PaymentResolution", ["payment_status", "payment_method"])


def derive_payment_status(payments):
    """
    Pure function of the payment rows' statuses. `payments` is any iterable of
    objects (or dicts) exposing `status` and `payment_method`.
    """
    rows = [_as_pair(p) for p in payments if not is_refund(p)]
    if not rows:
        return PaymentResolution("pending", None)

    statuses = {status for status, _ in rows}

    if "completed" in statuses:
        method = next(method for status, method in rows if status == "completed")
        return PaymentResolution("paid", method)
    if "pending" in statuses:
        return PaymentResolution("pending", None)
    if "failed" in statuses:
        return PaymentResolution("failed", None)
    if "cancelled" in statuses:
        return PaymentResolution("cancelled", None)
    return PaymentResolution("pending", None)


def is_refund(payment):
    if isinstance(payment, dict):
        return payment.get("transaction_type") == "refund"
    return getattr(payment, "transaction_type", None) == "refund"


def _as_pair(payment):
    if isinstance(payment, dict):
        return payment.get("status"), payment.get("payment_method")
    return payment.status, getattr(payment, "payment_method", None)


class PaymentStatusSynchronizer:
    """Recomputes and stores payment_status through the aggregate store."""

    def __init__(self, ledger, store):
        self.ledger = ledger
        self.store = store

    def resolve(self, appointment_id):
        return derive_payment_status(self.ledger.list_for_appointment(appointment_id))

    def sync(self, appointment):
        """
        Must run inside an open unit of work with `appointment` locked.
        Returns the derived status; writes only when something changed.
        A refund issued on cancellation is final and is never re-derived.
        """
        if appointment.payment_status == "refunded":
            return appointment.payment_status

        resolution = self.resolve(appointment.id)
        patch = AppointmentPatch(payment_status=resolution.payment_status)
        if resolution.payment_method:
            patch.payment_method = resolution.payment_method

        if (
            appointment.payment_status != patch.payment_status
            or (patch.payment_method and appointment.payment_method != patch.payment_method)
        ):
            self.store.apply(appointment, patch)
        return resolution.payment_status
