from typing import List, Optional

from sqlalchemy import (
    DECIMAL,
    Date,
    DateTime,
    Enum,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()
metadata = Base.metadata

USER_ROLES = ("pet_owner", "staff", "owner")
PET_SIZES = ("xs", "small", "medium", "large", "xl", "xxl")
APPOINTMENT_STATUSES = (
    "pending",
    "confirmed",
    "waiting",
    "in_progress",
    "completed",
    "cancelled",
    "no_show",
)
APPOINTMENT_PAYMENT_STATUSES = ("pending", "paid", "failed", "cancelled", "refunded")
PAYMENT_RECORD_STATUSES = ("pending", "completed", "failed", "cancelled")
PAYMENT_TRANSACTION_TYPES = ("payment", "refund")
REFUND_STATUSES = ("not_refunded", "refunded")
SESSION_STATUSES = ("active", "completed")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (Index("email", "email", unique=True),)

    id = mapped_column(Integer, primary_key=True)
    name = mapped_column(String(100), nullable=False)
    email = mapped_column(String(255), nullable=False)
    contact_number = mapped_column(String(50))
    role = mapped_column(Enum(*USER_ROLES, name="user_role"), nullable=False)
    staff_type = mapped_column(String(50))
    status = mapped_column(String(20), nullable=False, server_default=text("'Active'"))
    profile_photo_url = mapped_column(Text)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    pets: Mapped[List["Pet"]] = relationship(
        "Pet", uselist=True, back_populates="owner"
    )

    @property
    def is_active_groomer(self):
        return (
            self.role == "staff"
            and (self.staff_type or "").lower() == "groomer"
            and (self.status or "").lower() == "active"
        )


class Pet(Base):
    __tablename__ = "pets"
    __table_args__ = (
        ForeignKeyConstraint(
            ["owner_id"], ["users.id"], ondelete="CASCADE", name="fk_pet_owner"
        ),
        Index("fk_pet_owner", "owner_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    owner_id = mapped_column(Integer, nullable=False)
    name = mapped_column(String(100), nullable=False)
    type = mapped_column(String(30))
    breed = mapped_column(String(100))
    size = mapped_column(String(10))
    gender = mapped_column(String(10))
    photo_url = mapped_column(Text)

    owner: Mapped["User"] = relationship("User", back_populates="pets")


class GroomingService(Base):
    __tablename__ = "grooming_services"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    name = mapped_column(String(100), nullable=False)
    description = mapped_column(Text)
    category = mapped_column(String(50))
    image_url = mapped_column(Text)
    time_description = mapped_column(String(100))
    status = mapped_column(
        Enum("available", "unavailable", name="service_status"),
        nullable=False,
        server_default=text("'available'"),
    )
    price_xs = mapped_column(DECIMAL(10, 2))
    price_small = mapped_column(DECIMAL(10, 2))
    price_medium = mapped_column(DECIMAL(10, 2))
    price_large = mapped_column(DECIMAL(10, 2))
    price_xl = mapped_column(DECIMAL(10, 2))
    price_xxl = mapped_column(DECIMAL(10, 2))

    @property
    def is_available(self):
        return self.status == "available"


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        ForeignKeyConstraint(["pet_id"], ["pets.id"], name="fk_ap_pet"),
        ForeignKeyConstraint(["owner_id"], ["users.id"], name="fk_ap_owner"),
        ForeignKeyConstraint(["groomer_id"], ["users.id"], name="fk_ap_groomer"),
        ForeignKeyConstraint(
            ["service_id"], ["grooming_services.id"], name="fk_ap_service"
        ),
        UniqueConstraint(
            "queue_date", "daily_queue_number", name="uq_ap_daily_queue"
        ),
        Index("idx_ap_owner", "owner_id", "preferred_date"),
        Index("idx_ap_groomer", "groomer_id", "preferred_date"),
        Index("idx_ap_slot", "preferred_date", "preferred_time"),
        Index("idx_ap_status", "status"),
    )

    id = mapped_column(Integer, primary_key=True)
    pet_id = mapped_column(Integer, nullable=False)
    owner_id = mapped_column(Integer, nullable=False)
    service_id = mapped_column(Integer, nullable=False)
    groomer_id = mapped_column(Integer)

    preferred_date = mapped_column(Date, nullable=False)
    preferred_time = mapped_column(Time, nullable=False)
    actual_date = mapped_column(Date)
    actual_time = mapped_column(Time)
    daily_queue_number = mapped_column(Integer)
    queue_date = mapped_column(Date)

    base_price = mapped_column(DECIMAL(10, 2), nullable=False)
    matted_coat_fee = mapped_column(
        DECIMAL(10, 2), nullable=False, server_default=text("0")
    )
    discount_amount = mapped_column(
        DECIMAL(10, 2), nullable=False, server_default=text("0")
    )
    total_amount = mapped_column(DECIMAL(10, 2), nullable=False)

    status = mapped_column(
        Enum(*APPOINTMENT_STATUSES, name="appointment_status"),
        nullable=False,
        server_default=text("'pending'"),
    )
    payment_status = mapped_column(
        Enum(*APPOINTMENT_PAYMENT_STATUSES, name="appointment_payment_status"),
        nullable=False,
        server_default=text("'pending'"),
    )
    payment_method = mapped_column(String(30))

    cancelled_reason = mapped_column(Text)
    cancelled_by_role = mapped_column(String(20))
    cancelled_by_user_id = mapped_column(Integer)
    cancelled_at = mapped_column(DateTime)
    refund_status = mapped_column(Enum(*REFUND_STATUSES, name="refund_status"))

    duration_minutes = mapped_column(Integer)
    special_notes = mapped_column(Text)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    pet: Mapped["Pet"] = relationship("Pet")
    owner: Mapped["User"] = relationship("User", foreign_keys=[owner_id])
    groomer: Mapped[Optional["User"]] = relationship("User", foreign_keys=[groomer_id])
    service: Mapped["GroomingService"] = relationship("GroomingService")
    additional_services: Mapped[List["AppointmentService"]] = relationship(
        "AppointmentService",
        uselist=True,
        back_populates="appointment",
        order_by="AppointmentService.id",
        cascade="all, delete-orphan",
    )
    sessions: Mapped[List["AppointmentSession"]] = relationship(
        "AppointmentSession",
        uselist=True,
        back_populates="appointment",
        order_by="AppointmentSession.id",
    )
    reschedule_history: Mapped[List["AppointmentRescheduleHistory"]] = relationship(
        "AppointmentRescheduleHistory",
        uselist=True,
        back_populates="appointment",
        order_by="AppointmentRescheduleHistory.id",
    )
    payments: Mapped[List["Payment"]] = relationship(
        "Payment", uselist=True, back_populates="appointment", order_by="Payment.id"
    )
    rating: Mapped[Optional["Rating"]] = relationship(
        "Rating", uselist=False, back_populates="appointment"
    )


class AppointmentService(Base):
    __tablename__ = "appointment_services"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            ondelete="CASCADE",
            name="fk_as_appointment",
        ),
        ForeignKeyConstraint(
            ["service_id"], ["grooming_services.id"], name="fk_as_service"
        ),
        ForeignKeyConstraint(["pet_id"], ["pets.id"], name="fk_as_pet"),
        UniqueConstraint("appointment_id", "service_id", name="uq_as_service"),
    )

    id = mapped_column(Integer, primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    service_id = mapped_column(Integer, nullable=False)
    pet_id = mapped_column(Integer, nullable=False)
    price = mapped_column(DECIMAL(10, 2), nullable=False)
    payment_method = mapped_column(String(30))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="additional_services"
    )
    service: Mapped["GroomingService"] = relationship("GroomingService")


class AppointmentSession(Base):
    __tablename__ = "appointment_sessions"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            ondelete="CASCADE",
            name="fk_sess_appointment",
        ),
        ForeignKeyConstraint(["groomer_id"], ["users.id"], name="fk_sess_groomer"),
        Index("idx_sess_appointment_status", "appointment_id", "status"),
    )

    id = mapped_column(Integer, primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    groomer_id = mapped_column(Integer)
    start_time = mapped_column(DateTime, nullable=False)
    end_time = mapped_column(DateTime)
    duration_minutes = mapped_column(Integer)
    status = mapped_column(
        Enum(*SESSION_STATUSES, name="session_status"),
        nullable=False,
        server_default=text("'active'"),
    )

    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="sessions"
    )


class AppointmentRescheduleHistory(Base):
    __tablename__ = "appointment_reschedule_history"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            ondelete="CASCADE",
            name="fk_rh_appointment",
        ),
        Index("fk_rh_appointment", "appointment_id"),
        {"comment": "Append-only audit of schedule changes."},
    )

    id = mapped_column(Integer, primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    old_preferred_date = mapped_column(Date)
    old_preferred_time = mapped_column(Time)
    new_preferred_date = mapped_column(Date, nullable=False)
    new_preferred_time = mapped_column(Time, nullable=False)
    reason = mapped_column(Text)
    rescheduled_by_role = mapped_column(String(20), nullable=False)
    rescheduled_by_user_id = mapped_column(Integer)
    rescheduled_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="reschedule_history"
    )


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"], ["appointments.id"], name="fk_pay_appointment"
        ),
        Index("fk_pay_appointment", "appointment_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    user_id = mapped_column(Integer)
    amount = mapped_column(DECIMAL(10, 2), nullable=False)
    payment_method = mapped_column(String(30), nullable=False)
    status = mapped_column(
        Enum(*PAYMENT_RECORD_STATUSES, name="payment_status"),
        nullable=False,
        server_default=text("'pending'"),
    )
    transaction_type = mapped_column(
        Enum(*PAYMENT_TRANSACTION_TYPES, name="payment_transaction_type"),
        nullable=False,
        server_default=text("'payment'"),
    )
    external_reference = mapped_column(String(255))
    notes = mapped_column(Text)
    paid_at = mapped_column(DateTime)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="payments"
    )


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            ondelete="CASCADE",
            name="fk_rating_appointment",
        ),
        Index("appointment_id_unique", "appointment_id", unique=True),
    )

    id = mapped_column(Integer, primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    user_id = mapped_column(Integer)
    rating = mapped_column(Integer, nullable=False)
    comment = mapped_column(Text)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="rating"
    )
