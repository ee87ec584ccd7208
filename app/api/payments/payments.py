# Payment records and payment-status sync for appointments
from flask import Blueprint, g, request

from ...services.appointment_store import serialize_appointment
from ...services.payment_ledger import serialize_payment
from ...utils.actor import require_actor
from ..common import json_body, payment_service, register_error_handlers, success

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")
register_error_handlers(payments_bp)


@payments_bp.route("/appointment/<int:appointment_id>", methods=["GET"])
@require_actor
def get_appointment_payments(appointment_id):
    """
    List payment records for an appointment
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: appointment_id
        type: integer
        required: true
    responses:
      200:
        description: Payment records, oldest first
      404:
        description: Appointment not found
    """
    payments = payment_service().list_payments(appointment_id, g.actor)
    return success([serialize_payment(p) for p in payments], count=len(payments))


@payments_bp.route("/appointment/<int:appointment_id>", methods=["POST"])
@require_actor
def record_payment(appointment_id):
    """
    Record a payment at the desk
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: appointment_id
        type: integer
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - amount
          properties:
            amount:
              type: number
              description: Amount received
            payment_method:
              type: string
              example: cash
            status:
              type: string
              enum: [pending, completed, failed, cancelled]
              default: completed
            external_reference:
              type: string
            notes:
              type: string
    responses:
      201:
        description: Payment recorded, appointment payment_status re-derived
      400:
        description: INSUFFICIENT_PAYMENT
      409:
        description: PAYMENT_ALREADY_COMPLETED
    """
    payment, appointment = payment_service().record_payment(
        appointment_id, json_body(), g.actor
    )
    return success(
        serialize_appointment(appointment),
        message="Payment recorded successfully",
        status=201,
        payment=serialize_payment(payment),
    )


@payments_bp.route("/<int:payment_id>/status", methods=["PUT"])
@require_actor
def update_payment_status(payment_id):
    """
    Update a payment record's status (gateway callback or manual mark as paid)
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: payment_id
        type: integer
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - status
          properties:
            status:
              type: string
              enum: [pending, completed, failed, cancelled]
    responses:
      200:
        description: Payment updated
      404:
        description: Payment not found
    """
    data = json_body()
    payment, payment_status, appointment_id = payment_service().update_payment_status(
        payment_id, data.get("status"), g.actor
    )
    return success(
        serialize_payment(payment),
        message="Payment status updated",
        appointment_id=appointment_id,
        payment_status=payment_status,
    )


@payments_bp.route("/appointment/<int:appointment_id>/sync", methods=["POST"])
@require_actor
def sync_payment_status(appointment_id):
    """Re-derive an appointment's payment_status from its payment records."""
    payment_status = payment_service().sync_payment_status(appointment_id, g.actor)
    return success(
        {"appointment_id": appointment_id, "payment_status": payment_status}
    )


@payments_bp.route("/appointment/<int:appointment_id>/refund", methods=["POST"])
@require_actor
def refund_payment(appointment_id):
    """
    Refund a paid appointment
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: appointment_id
        type: integer
        required: true
      - in: body
        name: body
        schema:
          type: object
          properties:
            refund_amount:
              type: number
              description: Defaults to everything paid
            reason:
              type: string
            refund_method:
              type: string
              default: original
    responses:
      200:
        description: Refund row written, appointment marked refunded
      400:
        description: NOT_REFUNDABLE or INVALID_PRICE
    """
    data = json_body() if request.get_data() else {}
    refund, appointment = payment_service().refund_payment(appointment_id, data, g.actor)
    return success(
        serialize_appointment(appointment),
        message=f"Refund of {float(refund.amount):.2f} processed successfully",
        refund=serialize_payment(refund),
        processed_by=g.actor.name,
    )
