"""
Swagger/OpenAPI configuration for the Grooming Appointment API
"""

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec",
            "route": "/apispec.json",
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs",
}

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "Grooming Appointment API",
        "description": "Appointment lifecycle, daily queue, pricing and payment tracking for a pet grooming shop",
        "contact": {"email": "support@groomq.app"},
        "version": "1.0.0",
    },
    "host": "",
    "basePath": "/",
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "Bearer": {
            "type": "apiKey",
            "name": "Authorization",
            "in": "header",
            "description": 'JWT Authorization header using the Bearer scheme. Example: "Authorization: Bearer {token}"',
        }
    },
    "security": [{"Bearer": []}],
    "tags": [
        {"name": "Appointments", "description": "Booking, rescheduling, status changes and cancellation"},
        {"name": "Queue", "description": "Daily queue, today's board and free time slots"},
        {"name": "Payments", "description": "Payment records and payment status sync"},
        {"name": "Receipts", "description": "Receipt data for completed appointments"},
        {"name": "Utility", "description": "Health check"},
    ],
    "definitions": {
        "Error": {
            "type": "object",
            "properties": {
                "status": {"type": "string", "example": "error"},
                "code": {"type": "string", "example": "TIME_SLOT_UNAVAILABLE"},
                "message": {"type": "string"},
                "conflict": {"type": "object"},
                "errors": {"type": "array", "items": {"type": "object"}},
                "current_status": {"type": "string"},
            },
        },
        "Success": {
            "type": "object",
            "properties": {
                "status": {"type": "string", "example": "success"},
                "message": {"type": "string"},
            },
        },
        "ServiceLine": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "service_id": {"type": "integer"},
                "service_name": {"type": "string"},
                "price": {"type": "number", "format": "float"},
                "payment_method": {"type": "string"},
                "added_at": {"type": "string", "format": "date-time"},
            },
        },
        "Appointment": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "pet_id": {"type": "integer"},
                "owner_id": {"type": "integer"},
                "service_id": {"type": "integer"},
                "groomer_id": {"type": "integer"},
                "preferred_date": {"type": "string", "format": "date"},
                "preferred_time": {"type": "string", "example": "10:00:00"},
                "preferred_time_display": {"type": "string", "example": "10:00 AM"},
                "actual_date": {"type": "string", "format": "date"},
                "actual_time": {"type": "string"},
                "daily_queue_number": {"type": "integer"},
                "queue_date": {"type": "string", "format": "date"},
                "base_price": {"type": "number", "format": "float"},
                "matted_coat_fee": {"type": "number", "format": "float"},
                "discount_amount": {"type": "number", "format": "float"},
                "total_amount": {"type": "number", "format": "float"},
                "status": {
                    "type": "string",
                    "enum": [
                        "pending",
                        "confirmed",
                        "waiting",
                        "in_progress",
                        "completed",
                        "cancelled",
                        "no_show",
                    ],
                },
                "payment_status": {
                    "type": "string",
                    "enum": ["pending", "paid", "failed", "cancelled", "refunded"],
                },
                "payment_method": {"type": "string"},
                "refund_status": {"type": "string", "enum": ["not_refunded", "refunded"]},
                "duration_minutes": {"type": "integer"},
                "special_notes": {"type": "string"},
                "additional_services": {
                    "type": "array",
                    "items": {"$ref": "#/definitions/ServiceLine"},
                },
            },
        },
        "Payment": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "appointment_id": {"type": "integer"},
                "amount": {"type": "number", "format": "float"},
                "payment_method": {"type": "string"},
                "status": {
                    "type": "string",
                    "enum": ["pending", "completed", "failed", "cancelled"],
                },
                "transaction_type": {"type": "string", "enum": ["payment", "refund"]},
                "paid_at": {"type": "string", "format": "date-time"},
            },
        },
    },
}
