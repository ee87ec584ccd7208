"""
Booking-time checks for new appointments and add-on service requests.
"""

from collections import namedtuple

from sqlalchemy import select

from ..extensions import db
from ..models import GroomingService, Pet
from ..utils.time_format import format_datetime, parse_date, parse_time, today
from .appointment_store import summarize
from .errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .pricing import ZERO, parse_amount, price_for_size

BookingPlan = namedtuple(
    "BookingPlan",
    [
        "pet",
        "owner_id",
        "service",
        "base_price",
        "add_ons",
        "preferred_date",
        "preferred_time",
        "matted_coat_fee",
    ],
)

# (service, snapshotted price)
AddOn = namedtuple("AddOn", ["service", "price"])

REQUIRED_FIELDS = ("pet_id", "service_id", "preferred_date", "preferred_time")


def requested_service_ids(raw):
    """Accept `[3, 4]` or `[{"service_id": 3}, ...]` and return ints."""
    ids = []
    for item in raw or []:
        if isinstance(item, dict):
            item = item.get("service_id") or item.get("id")
        try:
            ids.append(int(item))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid service id: {item!r}") from None
    return ids


def _as_id(field, value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            errors=[{"field": field, "message": "Must be an integer id"}],
        ) from None


def load_services(service_ids):
    if not service_ids:
        return {}
    stmt = select(GroomingService).where(GroomingService.id.in_(set(service_ids)))
    return {service.id: service for service in db.session.scalars(stmt)}


class BookingValidator:
    def __init__(self, store):
        self.store = store

    def validate(self, data, actor):
        """
        Runs every booking check against `data` and returns a BookingPlan
        with prices resolved for the pet's size tier.
        """
        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                errors=[{"field": name, "message": "This field is required"} for name in missing],
            )

        try:
            preferred_date = parse_date(data["preferred_date"])
            preferred_time = parse_time(data["preferred_time"])
        except ValueError as e:
            raise ValidationError(str(e)) from None

        pet_id = _as_id("pet_id", data["pet_id"])
        primary_id = _as_id("service_id", data["service_id"])

        pet = db.session.get(Pet, pet_id)
        if pet is None:
            raise NotFoundError("Pet not found")
        if actor.is_pet_owner and pet.owner_id != actor.id:
            raise PermissionDeniedError("You can only book appointments for your own pets")

        add_on_ids = requested_service_ids(data.get("additional_services"))
        self.check_distinct(primary_id, add_on_ids)

        services = load_services([primary_id] + add_on_ids)
        self.check_available(services, [primary_id] + add_on_ids)

        if preferred_date < today():
            raise ValidationError(
                "Cannot book an appointment in the past", code="PAST_DATE"
            )

        owner_id = actor.id if actor.is_pet_owner else pet.owner_id
        active = self.store.find_active_for_pet(pet.id, owner_id)
        if active is not None:
            raise ConflictError(
                f"{pet.name} already has an active appointment",
                code="ACTIVE_APPOINTMENT_EXISTS",
                conflict=summarize(active),
            )

        conflict = self.store.find_slot_conflict(preferred_date, preferred_time)
        if conflict is not None:
            raise ConflictError(
                "The selected time slot is already booked. Please choose a different time.",
                code="TIME_SLOT_UNAVAILABLE",
                conflict=summarize(conflict),
            )

        service = services[primary_id]
        base_price = price_for_size(service, pet.size)
        if base_price <= ZERO:
            raise ValidationError(
                f"No valid price configured for {service.name}", code="INVALID_PRICE"
            )

        add_ons = []
        for service_id in add_on_ids:
            add_on = services[service_id]
            price = price_for_size(add_on, pet.size)
            if price <= ZERO:
                raise ValidationError(
                    f"No valid price configured for {add_on.name}", code="INVALID_PRICE"
                )
            add_ons.append(AddOn(add_on, price))

        matted_coat_fee = parse_amount("matted_coat_fee", data.get("matted_coat_fee")) or ZERO
        if matted_coat_fee < ZERO:
            raise ValidationError("Matted coat fee cannot be negative")

        return BookingPlan(
            pet=pet,
            owner_id=owner_id,
            service=service,
            base_price=base_price,
            add_ons=add_ons,
            preferred_date=preferred_date,
            preferred_time=preferred_time,
            matted_coat_fee=matted_coat_fee,
        )

    @staticmethod
    def check_distinct(primary_id, add_on_ids):
        errors = []
        seen = set()
        for service_id in add_on_ids:
            if service_id == primary_id:
                errors.append({
                    "service_id": service_id,
                    "code": "PRIMARY_SERVICE_CONFLICT",
                    "message": "Additional service duplicates the primary service",
                })
            elif service_id in seen:
                errors.append({
                    "service_id": service_id,
                    "code": "DUPLICATE_SERVICE",
                    "message": "Service requested more than once",
                })
            seen.add(service_id)
        if errors:
            raise ConflictError(
                "Additional services must be distinct from each other and from the primary service",
                code="DUPLICATE_SERVICE",
                details={"errors": errors},
            )

    @staticmethod
    def check_available(services, service_ids):
        unavailable = []
        for service_id in dict.fromkeys(service_ids):
            service = services.get(service_id)
            if service is None:
                unavailable.append(f"Service #{service_id}")
            elif not service.is_available:
                unavailable.append(service.name)
        if unavailable:
            raise ValidationError(
                f"The following services are currently unavailable: {', '.join(unavailable)}",
                code="SERVICE_UNAVAILABLE",
                details={"unavailable_services": unavailable},
            )

    def validate_add_ons(self, appointment, service_ids):
        """
        Per-item checks for adding services to an existing appointment.
        Returns `(accepted AddOns, errors)`; errors carry one entry per
        rejected service id.
        """
        services = load_services(service_ids)
        pet_size = appointment.pet.size if appointment.pet else None
        accepted, errors, seen = [], [], set()

        for service_id in service_ids:
            service = services.get(service_id)
            error = None

            if service_id == appointment.service_id:
                error = ("PRIMARY_SERVICE_CONFLICT", "Service is already the primary service")
            elif service_id in seen:
                error = ("DUPLICATE_SERVICE", "Service requested more than once")
            elif service is None:
                error = ("NOT_FOUND", "Service not found")
            elif not service.is_available:
                error = ("SERVICE_UNAVAILABLE", f"{service.name} is currently unavailable")
            else:
                existing = self.store.find_service_line(appointment.id, service_id)
                if existing is not None:
                    errors.append({
                        "service_id": service_id,
                        "service_name": service.name,
                        "code": "DUPLICATE_SERVICE",
                        "message": f"{service.name} was already added to this appointment",
                        "added_at": format_datetime(existing.created_at),
                    })
                    seen.add(service_id)
                    continue

            seen.add(service_id)
            if error is None:
                price = price_for_size(service, pet_size)
                if price <= ZERO:
                    error = ("INVALID_PRICE", f"No valid price configured for {service.name}")
                else:
                    accepted.append(AddOn(service, price))
                    continue

            code, message = error
            errors.append({
                "service_id": service_id,
                "service_name": service.name if service else None,
                "code": code,
                "message": message,
            })

        return accepted, errors
