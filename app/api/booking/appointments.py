# Book, reschedule, queue and cancel grooming appointments
from flask import Blueprint, g, request

from ...services.appointment_store import serialize_appointment
from ...services.booking_validator import requested_service_ids
from ...utils.actor import require_actor
from ..common import json_body, lifecycle, register_error_handlers, success

appointments_bp = Blueprint("appointments", __name__, url_prefix="/api/appointments")
register_error_handlers(appointments_bp)


def _many(appointments):
    return [serialize_appointment(apt) for apt in appointments]


@appointments_bp.route("/", methods=["POST"])
@require_actor
def create_appointment():
    """
    Book a grooming appointment
    ---
    tags:
      - Appointments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - pet_id
            - service_id
            - preferred_date
            - preferred_time
          properties:
            pet_id:
              type: integer
              example: 42
            service_id:
              type: integer
              example: 1
            preferred_date:
              type: string
              format: date
              example: "2026-10-20"
            preferred_time:
              type: string
              example: "10:00 AM"
            additional_services:
              type: array
              items:
                type: integer
            matted_coat_fee:
              type: number
            special_notes:
              type: string
            payment_method:
              type: string
              example: cash
    responses:
      201:
        description: Appointment booked
        schema:
          type: object
          properties:
            status:
              type: string
              example: success
            data:
              $ref: '#/definitions/Appointment'
      400:
        description: Missing fields, unavailable service or past date
        schema:
          $ref: '#/definitions/Error'
      409:
        description: Pet already has an active appointment or the slot is taken
        schema:
          $ref: '#/definitions/Error'
    """
    appointment = lifecycle().create(json_body(), g.actor)
    return success(
        serialize_appointment(appointment),
        message="Appointment booked successfully",
        status=201,
    )


@appointments_bp.route("/<int:appointment_id>", methods=["GET"])
@require_actor
def get_appointment(appointment_id):
    """
    Get one appointment with pet, owner, services, groomer, history and session
    ---
    tags:
      - Appointments
    parameters:
      - in: path
        name: appointment_id
        type: integer
        required: true
    responses:
      200:
        description: Appointment found
        schema:
          type: object
          properties:
            status:
              type: string
            data:
              $ref: '#/definitions/Appointment'
      403:
        description: Appointment belongs to another pet owner
      404:
        description: Appointment not found
    """
    appointment = lifecycle().get_by_id(appointment_id, g.actor)
    return success(serialize_appointment(appointment))


@appointments_bp.route("/owner/<int:owner_id>", methods=["GET"])
@require_actor
def get_owner_appointments(owner_id):
    """
    Appointments booked by one pet owner, newest first
    ---
    tags:
      - Appointments
    parameters:
      - in: path
        name: owner_id
        type: integer
        required: true
      - in: query
        name: status
        type: string
        required: false
    responses:
      200:
        description: List of appointments
    """
    appointments = lifecycle().get_by_owner(
        owner_id, g.actor, status=request.args.get("status")
    )
    return success(_many(appointments), count=len(appointments))


@appointments_bp.route("/groomer/<int:groomer_id>", methods=["GET"])
@require_actor
def get_groomer_appointments(groomer_id):
    """
    Appointments assigned to one groomer
    ---
    tags:
      - Appointments
    parameters:
      - in: path
        name: groomer_id
        type: integer
        required: true
      - in: query
        name: status
        type: string
      - in: query
        name: date
        type: string
        format: date
    responses:
      200:
        description: List of appointments
    """
    appointments = lifecycle().get_by_groomer(
        groomer_id,
        g.actor,
        status=request.args.get("status"),
        on_date=request.args.get("date"),
    )
    return success(_many(appointments), count=len(appointments))


@appointments_bp.route("/range", methods=["GET"])
@require_actor
def get_appointments_in_range():
    """
    Appointments preferred or served between two dates (inclusive)
    ---
    tags:
      - Appointments
    parameters:
      - in: query
        name: start
        type: string
        format: date
        required: true
      - in: query
        name: end
        type: string
        format: date
        required: true
      - in: query
        name: status
        type: string
      - in: query
        name: groomer_id
        type: integer
    responses:
      200:
        description: List of appointments
      400:
        description: Invalid or missing dates
    """
    appointments = lifecycle().get_by_date_range(
        request.args.get("start"),
        request.args.get("end"),
        g.actor,
        status=request.args.get("status"),
        groomer_id=request.args.get("groomer_id", type=int),
    )
    return success(_many(appointments), count=len(appointments))


@appointments_bp.route("/status/<string:status>", methods=["GET"])
@require_actor
def get_appointments_by_status(status):
    """
    Appointments in one status
    ---
    tags:
      - Appointments
    parameters:
      - in: path
        name: status
        type: string
        required: true
        enum: [pending, confirmed, waiting, in_progress, completed, cancelled, no_show]
    responses:
      200:
        description: List of appointments
    """
    appointments = lifecycle().get_by_status(status, g.actor)
    return success(_many(appointments), count=len(appointments))


@appointments_bp.route("/today", methods=["GET"])
@require_actor
def get_todays_appointments():
    """
    Non-cancelled appointments for a day, in queue order
    ---
    tags:
      - Queue
    parameters:
      - in: query
        name: date
        type: string
        format: date
        description: Defaults to today
    responses:
      200:
        description: List of appointments
    """
    appointments = lifecycle().get_todays(g.actor, request.args.get("date"))
    return success(_many(appointments), count=len(appointments))


@appointments_bp.route("/queue", methods=["GET"])
@require_actor
def get_queue():
    """
    Waiting and in-progress appointments ordered by daily queue number
    ---
    tags:
      - Queue
    parameters:
      - in: query
        name: date
        type: string
        format: date
        description: Defaults to today
    responses:
      200:
        description: Ordered queue
    """
    appointments = lifecycle().get_queue(g.actor, request.args.get("date"))
    return success(_many(appointments), count=len(appointments))


@appointments_bp.route("/slots", methods=["GET"])
@require_actor
def get_available_slots():
    """
    Shop time slots still free on a date
    ---
    tags:
      - Queue
    parameters:
      - in: query
        name: date
        type: string
        format: date
        required: true
    responses:
      200:
        description: All, available and booked slots in 12-hour display format
    """
    return success(lifecycle().get_available_slots(request.args.get("date")))


@appointments_bp.route("/stats", methods=["GET"])
@require_actor
def get_appointment_stats():
    """Per-status counts for appointments preferred on a date."""
    return success(lifecycle().get_stats(g.actor, request.args.get("date")))


@appointments_bp.route("/<int:appointment_id>/services/summary", methods=["GET"])
@require_actor
def get_service_summary(appointment_id):
    """Primary service, add-ons and the price breakdown for one appointment."""
    return success(lifecycle().get_service_summary(appointment_id, g.actor))


@appointments_bp.route("/<int:appointment_id>/reschedule", methods=["PUT"])
@require_actor
def reschedule_appointment(appointment_id):
    """
    Move an appointment to a new date and time
    ---
    tags:
      - Appointments
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
            - preferred_date
            - preferred_time
          properties:
            preferred_date:
              type: string
              format: date
            preferred_time:
              type: string
              example: "2:00 PM"
            reason:
              type: string
    responses:
      200:
        description: Appointment rescheduled, history entry written
      409:
        description: TIME_SLOT_UNAVAILABLE or INVALID_STATUS
        schema:
          $ref: '#/definitions/Error'
    """
    data = json_body()
    appointment = lifecycle().reschedule(
        appointment_id,
        data.get("preferred_date"),
        data.get("preferred_time"),
        data.get("reason"),
        g.actor,
    )
    return success(
        serialize_appointment(appointment), message="Appointment rescheduled successfully"
    )


@appointments_bp.route("/<int:appointment_id>/status", methods=["PUT"])
@require_actor
def update_appointment_status(appointment_id):
    """
    Move an appointment through its lifecycle
    ---
    tags:
      - Appointments
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
            - status
          properties:
            status:
              type: string
              enum: [confirmed, waiting, in_progress, completed, cancelled, no_show]
            notes:
              type: string
              description: Required as the reason when cancelling
    responses:
      200:
        description: Status updated
      409:
        description: INVALID_STATUS_TRANSITION, GROOMER_REQUIRED or SESSION_ALREADY_ACTIVE
        schema:
          $ref: '#/definitions/Error'
    """
    data = json_body()
    appointment = lifecycle().update_status(
        appointment_id, data.get("status"), g.actor, notes=data.get("notes")
    )
    return success(
        serialize_appointment(appointment),
        message=f"Appointment marked as {appointment.status}",
    )


@appointments_bp.route("/bulk-status", methods=["PUT"])
@require_actor
def bulk_update_status():
    """
    Apply one status change to many appointments; each succeeds or fails on its own
    ---
    tags:
      - Appointments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - appointment_ids
            - status
          properties:
            appointment_ids:
              type: array
              items:
                type: integer
            status:
              type: string
    responses:
      200:
        description: Per-appointment results
    """
    data = json_body()
    results = lifecycle().bulk_update_status(
        data.get("appointment_ids") or [], data.get("status"), g.actor
    )
    updated = sum(1 for result in results if result["success"])
    return success(
        results,
        message=f"Updated {updated} of {len(results)} appointments",
    )


@appointments_bp.route("/<int:appointment_id>/groomer", methods=["PUT"])
@require_actor
def assign_groomer(appointment_id):
    """
    Assign an active groomer
    ---
    tags:
      - Appointments
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
            - groomer_id
          properties:
            groomer_id:
              type: integer
    responses:
      200:
        description: Groomer assigned
      400:
        description: GROOMER_INVALID
      409:
        description: STATUS_NOT_ELIGIBLE or GROOMER_UNAVAILABLE
    """
    data = json_body()
    appointment = lifecycle().assign_groomer(appointment_id, data.get("groomer_id"), g.actor)
    return success(serialize_appointment(appointment), message="Groomer assigned successfully")


@appointments_bp.route("/groomers", methods=["GET"])
@require_actor
def get_available_groomers():
    """
    Active groomers that can be assigned
    ---
    tags:
      - Appointments
    responses:
      200:
        description: Groomers sorted by name
      403:
        description: Pet owners cannot list staff
    """
    groomers = lifecycle().get_available_groomers(g.actor)
    data = [
        {
            "id": groomer.id,
            "name": groomer.name,
            "email": groomer.email,
            "phone": groomer.contact_number,
            "profile_photo_url": groomer.profile_photo_url,
        }
        for groomer in groomers
    ]
    return success(data, count=len(data))


@appointments_bp.route("/<int:appointment_id>/actual-schedule", methods=["PUT"])
@require_actor
def set_actual_schedule(appointment_id):
    """
    Override the actual date and time of a visit
    ---
    tags:
      - Appointments
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
            - actual_date
            - actual_time
          properties:
            actual_date:
              type: string
              format: date
            actual_time:
              type: string
              example: "11:00 AM"
    responses:
      200:
        description: Actual schedule set
      400:
        description: Missing or malformed date or time
      409:
        description: TIME_SLOT_UNAVAILABLE
    """
    data = json_body()
    appointment = lifecycle().set_actual_schedule(
        appointment_id, data.get("actual_date"), data.get("actual_time"), g.actor
    )
    return success(
        serialize_appointment(appointment),
        message="Actual schedule set successfully",
        updated_by=g.actor.name,
    )


@appointments_bp.route("/<int:appointment_id>/services", methods=["POST"])
@require_actor
def add_services(appointment_id):
    """
    Add add-on services (and optionally a matted coat fee)
    ---
    tags:
      - Appointments
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
          properties:
            services:
              type: array
              items:
                type: integer
            matted_coat_fee:
              type: number
    responses:
      200:
        description: Services added and total recomputed
      409:
        description: DUPLICATE_SERVICE or PRIMARY_SERVICE_CONFLICT, one entry per rejected service
    """
    data = json_body()
    service_ids = data.get("services")
    if service_ids is None:
        service_ids = data.get("service_ids", [])
    appointment = lifecycle().add_services(
        appointment_id,
        requested_service_ids(service_ids),
        g.actor,
        matted_coat_fee=data.get("matted_coat_fee"),
    )
    return success(serialize_appointment(appointment), message="Services added successfully")


@appointments_bp.route("/<int:appointment_id>/services/<int:service_id>", methods=["DELETE"])
@require_actor
def remove_service(appointment_id, service_id):
    """Remove an add-on service line; the total drops by its stored price."""
    appointment = lifecycle().remove_service(appointment_id, service_id, g.actor)
    return success(serialize_appointment(appointment), message="Service removed successfully")


@appointments_bp.route("/<int:appointment_id>/cancel", methods=["PUT"])
@require_actor
def cancel_appointment(appointment_id):
    """
    Cancel with a reason
    ---
    tags:
      - Appointments
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
            - reason
          properties:
            reason:
              type: string
    responses:
      200:
        description: Cancelled; refund_status set from the payment state and who cancelled
      409:
        description: ALREADY_CANCELLED or INVALID_STATUS_TRANSITION
    """
    data = json_body()
    appointment = lifecycle().cancel(appointment_id, data.get("reason"), g.actor)
    return success(
        serialize_appointment(appointment), message="Appointment cancelled successfully"
    )


@appointments_bp.route("/<int:appointment_id>/pricing", methods=["PUT"])
@require_actor
def update_pricing(appointment_id):
    """
    Adjust base price, matted coat fee or discount
    ---
    tags:
      - Appointments
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
          properties:
            base_price:
              type: number
            matted_coat_fee:
              type: number
            discount:
              type: number
    responses:
      200:
        description: Pricing updated and total recomputed
    """
    data = json_body()
    appointment = lifecycle().update_pricing(
        appointment_id,
        g.actor,
        base_price=data.get("base_price"),
        matted_coat_fee=data.get("matted_coat_fee"),
        discount=data.get("discount"),
    )
    return success(serialize_appointment(appointment), message="Pricing updated successfully")


@appointments_bp.route("/<int:appointment_id>/notes", methods=["PUT"])
@require_actor
def update_notes(appointment_id):
    data = json_body()
    appointment = lifecycle().update_notes(appointment_id, data.get("notes"), g.actor)
    return success(serialize_appointment(appointment), message="Notes updated successfully")
