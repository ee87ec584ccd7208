# Shared helpers for the appointment, payment and receipt blueprints
from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from ..services.errors import AppointmentError, ValidationError


def lifecycle():
    return current_app.extensions["appointment_lifecycle"]


def payment_service():
    return current_app.extensions["payment_service"]


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def success(data=None, message=None, status=200, **extra):
    body = {"status": "success"}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return jsonify(body), status


def handle_appointment_error(error):
    if error.http_status >= 500:
        current_app.logger.error(f"{error.code}: {error.message} {error.details}")
    return jsonify(error.to_dict()), error.http_status


def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    current_app.logger.exception(f"Unhandled error: {error}")
    return (
        jsonify(
            {"status": "error", "message": "Internal server error", "details": str(error)}
        ),
        500,
    )


def register_error_handlers(bp):
    bp.register_error_handler(AppointmentError, handle_appointment_error)
    bp.register_error_handler(Exception, handle_unexpected_error)
