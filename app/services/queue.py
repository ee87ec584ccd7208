from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..models import Appointment


class QueueAssigner:
    """
    Hands out daily queue numbers: the smallest positive number not already
    held by another appointment on the same queue date.

    Numbers stay assigned when an appointment is cancelled or marked no-show,
    so a number is never handed out twice for one date.
    """

    def next_number(self, queue_date, exclude_appointment_id=None):
        stmt = (
            select(Appointment.id, Appointment.daily_queue_number)
            .where(
                Appointment.queue_date == queue_date,
                Appointment.daily_queue_number.is_not(None),
            )
            .order_by(Appointment.daily_queue_number.asc())
            .with_for_update()
        )
        if exclude_appointment_id is not None:
            stmt = stmt.where(Appointment.id != exclude_appointment_id)

        taken = [row.daily_queue_number for row in db.session.execute(stmt)]

        candidate = 1
        for number in taken:
            if number == candidate:
                candidate += 1
            elif number > candidate:
                break

        current_app.logger.debug(
            f"Queue {queue_date}: taken={taken} -> assigning #{candidate}"
        )
        return candidate

    @staticmethod
    def needs_number(appointment, queue_date):
        return appointment.daily_queue_number is None or appointment.queue_date != queue_date

    def assign(self, appointment, queue_date):
        """
        Number for `appointment` on `queue_date`. Keeps the current number when
        it already belongs to that date. The caller writes the result through
        the store so the number lands in the same transaction.
        """
        if not self.needs_number(appointment, queue_date):
            return appointment.daily_queue_number
        return self.next_number(queue_date, exclude_appointment_id=appointment.id)
