# Customer notifications for appointment events
from typing import Dict, Optional

import resend
from flask import current_app
from markupsafe import escape

from ..extensions import db
from ..models import User
from . import events


class EmailNotificationService:
    """
    Notification port that turns committed domain events into emails via Resend
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: str = "onboarding@resend.dev",
        frontend_url: str = "http://localhost:3000",
        disabled: bool = False,
    ):
        self.from_email = from_email
        self.frontend_url = frontend_url
        self.disabled = disabled
        if disabled:
            self.api_key = None
            return

        if not api_key:
            raise ValueError("RESEND_API_KEY is required when notifications are enabled")
        self.api_key = api_key
        resend.api_key = api_key

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("RESEND_API_KEY"),
            from_email=config.get("RESEND_FROM_EMAIL", "onboarding@resend.dev"),
            frontend_url=config.get("FRONTEND_URL", "http://localhost:3000"),
            disabled=config.get("TESTING") or not config.get("NOTIFICATIONS_ENABLED"),
        )

    def publish(self, event):
        if self.disabled:
            current_app.logger.debug(f"Notifications disabled, skipping {event.name}")
            return None

        content = self.render(event)
        if content is None:
            return None

        recipient = db.session.get(User, event.recipient_id) if event.recipient_id else None
        if recipient is None or not recipient.email:
            current_app.logger.warning(
                f"No email recipient for {event.name} on appointment {event.appointment_id}"
            )
            return None

        subject, body = content
        return self.send(recipient.email, subject, self.layout(recipient.name, subject, body, event))

    def send(self, to_email: str, subject: str, html: str) -> Dict:
        """
        Send one email.

        Returns:
            Dict with 'success' boolean and 'email_id' or 'error'
        """
        try:
            params = {
                "from": self.from_email,
                "to": [to_email],
                "subject": subject,
                "html": html,
            }
            email_response = resend.Emails.send(params)
            return {"success": True, "email_id": email_response.get("id")}
        except Exception as e:
            current_app.logger.error(f"Resend delivery to {to_email} failed: {e}")
            return {"success": False, "error": str(e)}

    def render(self, event):
        """Subject and HTML body for an event, or None when it is not emailed."""
        # Payload text is typed by customers and staff
        p = {
            key: escape(value) if isinstance(value, str) else value
            for key, value in event.payload.items()
        }

        if event.name == events.APPOINTMENT_CREATED:
            return (
                "Appointment Booked",
                f"""
                <p>Your appointment for <strong>{p.get('pet_name')}</strong> has been booked.</p>
                <p><strong>Service:</strong> {p.get('service_name')}<br>
                   <strong>Date:</strong> {p.get('preferred_date')}<br>
                   <strong>Time:</strong> {p.get('preferred_time')}<br>
                   <strong>Total:</strong> &#8369;{p.get('total_amount', 0):.2f}</p>
                """,
            )

        if event.name == events.APPOINTMENT_RESCHEDULED:
            return (
                "Appointment Rescheduled",
                f"""
                <p>Your appointment moved from {p.get('old_date')} {p.get('old_time')}
                   to <strong>{p.get('new_date')} {p.get('new_time')}</strong>.</p>
                <p><strong>Reason:</strong> {p.get('reason') or 'Not specified'}</p>
                """,
            )

        if event.name == events.APPOINTMENT_CANCELLED:
            refund = (
                "Your payment will be refunded."
                if p.get("refund_status") == "refunded"
                else "No refund applies to this cancellation."
            )
            return (
                "Appointment Cancelled",
                f"""
                <p>Your appointment has been cancelled.</p>
                <p><strong>Reason:</strong> {p.get('reason')}</p>
                <p>{refund}</p>
                """,
            )

        if event.name == events.APPOINTMENT_COMPLETED:
            return (
                "Grooming Complete",
                f"""
                <p>Grooming is done and your pet is ready for pick-up.</p>
                <p><strong>Total:</strong> &#8369;{p.get('total_amount', 0):.2f}</p>
                """,
            )

        if event.name == events.APPOINTMENT_STATUS_CHANGED and p.get("new_status") == "waiting":
            return (
                "You're in the Queue",
                f"<p>You are number <strong>{p.get('daily_queue_number')}</strong> in today's queue.</p>",
            )

        if event.name == events.PAYMENT_RECEIVED:
            return (
                "Payment Received",
                f"""
                <p>We received your payment of &#8369;{p.get('amount', 0):.2f}
                   via {p.get('payment_method')}.</p>
                """,
            )

        if event.name == events.PAYMENT_REFUNDED:
            return (
                "Refund Processed",
                f"""
                <p>We refunded &#8369;{p.get('amount', 0):.2f} via {p.get('payment_method')}.</p>
                <p><strong>Reason:</strong> {p.get('reason')}</p>
                """,
            )

        return None

    def layout(self, name, title, body, event):
        return f"""
        <!DOCTYPE html>
        <html>
        <head><meta charset="UTF-8"></head>
        <body style="margin: 0; padding: 0; font-family: 'Segoe UI', Arial, sans-serif; background-color: #f4f1ea;">
            <table width="100%" cellpadding="0" cellspacing="0" style="padding: 30px 20px;">
                <tr>
                    <td align="center">
                        <table width="600" cellpadding="0" cellspacing="0" style="background-color: #ffffff; border-radius: 16px;">
                            <tr>
                                <td style="padding: 35px 40px; text-align: center; background-color: #5b8a72;">
                                    <h2 style="color: #ffffff; margin: 0;">{title}</h2>
                                </td>
                            </tr>
                            <tr>
                                <td style="padding: 35px 40px; color: #2d3748; font-size: 16px; line-height: 1.6;">
                                    <p>Hi <strong>{escape(name)}</strong>,</p>
                                    {body}
                                    <p style="text-align: center; padding-top: 20px;">
                                        <a href="{self.frontend_url}/appointments/{event.appointment_id}"
                                           style="padding: 14px 40px; background-color: #5b8a72; color: #ffffff; text-decoration: none; border-radius: 10px;">
                                            View Appointment
                                        </a>
                                    </p>
                                </td>
                            </tr>
                        </table>
                    </td>
                </tr>
            </table>
        </body>
        </html>
        """
