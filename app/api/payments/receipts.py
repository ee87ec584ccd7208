# Receipt snapshots for completed appointments
from flask import Blueprint, g

from ...utils.actor import require_actor
from ..common import payment_service, register_error_handlers, success

receipts_bp = Blueprint("receipts", __name__, url_prefix="/api/receipts")
register_error_handlers(receipts_bp)


@receipts_bp.route("/appointment/<int:appointment_id>", methods=["GET"])
@require_actor
def get_receipt(appointment_id):
    """
    Finalized receipt data for a completed appointment
    ---
    tags:
      - Receipts
    parameters:
      - in: path
        name: appointment_id
        type: integer
        required: true
    responses:
      200:
        description: Appointment view, service breakdown, payments and duration
      409:
        description: Appointment is not completed yet
        schema:
          $ref: '#/definitions/Error'
    """
    return success(payment_service().receipt(appointment_id, g.actor))
