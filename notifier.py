import asyncio
import logging
import re
from datetime import datetime
from html import escape
from io import BytesIO

from aiosmtplib import SMTPException
from fastapi import UploadFile
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType
from fastapi_mail.errors import ConnectionErrors

import config
from models import Event, Payment, User
from tickets import ticket_filename
from utils import utcnow

logger = logging.getLogger(__name__)

REGISTRATION = "registration"
PAYMENT = "payment"


class DeliveryError(Exception):
    """Raised when a ticket email could not be handed to the mail relay."""


def _fmt(moment: datetime | None) -> str:
    return moment.strftime("%B %d, %Y %I:%M %p") if moment else "TBD"


def _details(event: Event, ticket_id: str) -> str:
    rows = [
        ("Event", event.title),
        ("Date & Time", f"{_fmt(event.start_date)} - {_fmt(event.end_date)}"),
        ("Location", event.location or "TBD"),
        ("Category", event.category or "General"),
        ("Ticket ID", ticket_id),
    ]
    return "".join(
        f'<div class="details-item"><span class="details-label">{escape(label)}:</span> {escape(str(value))}</div>'
        for label, value in rows
    )


def registration_template(event: Event, user: User, ticket_id: str) -> str:
    """HTML body for a free registration confirmation."""
    return f"""
    <html>
      <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; color: #333;">
        <div style="background-color: #4a90e2; color: #ffffff; padding: 20px; text-align: center;">
          <h1>Event Registration Confirmation</h1>
        </div>
        <div style="padding: 20px; background-color: #f9f9f9;">
          <p>Hello {escape(user.name or 'Attendee')},</p>
          <p>Thank you for registering for <strong>{escape(event.title)}</strong>. Your registration has been confirmed!</p>
          <p>Please find your ticket attached to this email and present it at the event entrance.</p>
          <div style="background-color: #ffffff; padding: 15px; border-radius: 5px;">
            <h3>Event Details:</h3>
            {_details(event, ticket_id)}
          </div>
          <p>Best regards,<br>College Event Management System Team</p>
        </div>
        <p style="text-align: center; font-size: 12px; color: #666;">
          This is an automated email. Please do not reply to this message.
        </p>
      </body>
    </html>
    """


def payment_template(event: Event, user: User, ticket_id: str, payment: Payment | None) -> str:
    """HTML body for a paid registration confirmation."""
    transaction_id = payment.payment_id if payment else "N/A"
    amount = payment.amount if payment else event.price
    paid_on = payment.created_at if payment and payment.created_at else utcnow()
    return f"""
    <html>
      <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; color: #333;">
        <div style="background-color: #2ecc71; color: #ffffff; padding: 20px; text-align: center;">
          <h1>Payment Confirmation</h1>
        </div>
        <div style="padding: 20px; background-color: #f9f9f9;">
          <p>Hello {escape(user.name or 'Attendee')},</p>
          <p>Your payment for <strong>{escape(event.title)}</strong> has been successfully processed.</p>
          <p>Your registration is now confirmed. Please find your ticket attached to this email.</p>
          <div style="background-color: #ffffff; padding: 15px; border-radius: 5px;">
            <h3>Event Details:</h3>
            {_details(event, ticket_id)}
            <h3>Payment Information:</h3>
            <div class="details-item"><span class="details-label">Transaction ID:</span> {escape(transaction_id)}</div>
            <div class="details-item"><span class="details-label">Amount Paid:</span> {amount:.2f}</div>
            <div class="details-item"><span class="details-label">Payment Date:</span> {_fmt(paid_on)}</div>
          </div>
          <p>Best regards,<br>College Event Management System Team</p>
        </div>
        <p style="text-align: center; font-size: 12px; color: #666;">
          This is an automated email. Please do not reply to this message.
        </p>
      </body>
    </html>
    """


def connection_config() -> ConnectionConfig:
    """fastapi-mail connection settings built from the environment."""
    return ConnectionConfig(
        MAIL_USERNAME=config.SMTP_USER,
        MAIL_PASSWORD=config.SMTP_PASSWORD,
        MAIL_FROM=config.EMAIL_FROM,
        MAIL_FROM_NAME=config.EMAIL_FROM_NAME,
        MAIL_SERVER=config.SMTP_HOST,
        MAIL_PORT=config.SMTP_PORT,
        MAIL_STARTTLS=config.SMTP_USE_TLS,
        MAIL_SSL_TLS=False,
        USE_CREDENTIALS=bool(config.SMTP_USER),
        VALIDATE_CERTS=True,
        SUPPRESS_SEND=int(config.MAIL_SUPPRESS_SEND),
        TIMEOUT=config.SMTP_TIMEOUT,
    )


def _header_text(text: str) -> str:
    # Header values may not carry line breaks
    return re.sub(r"[\r\n]+", " ", text).strip()


class Notifier:
    def __init__(self, mail_config: ConnectionConfig | None = None):
        self.mail_config = mail_config or connection_config()
        self.fast_mail = FastMail(self.mail_config)

    def build_message(self, to_address: str, event: Event, user: User, ticket_id: str, variant: str,
                      attachment_path: str | None = None, payment: Payment | None = None) -> MessageSchema:
        if variant == PAYMENT:
            subject = f"Payment Confirmation - {event.title}"
            html = payment_template(event, user, ticket_id, payment)
        elif variant == REGISTRATION:
            subject = f"Your Ticket for {event.title}"
            html = registration_template(event, user, ticket_id)
        else:
            raise ValueError(f"Unknown email variant: {variant}")

        attachments = []
        if attachment_path:
            with open(attachment_path, "rb") as fh:
                pdf = UploadFile(file=BytesIO(fh.read()), filename=ticket_filename(event.title))
            attachments.append({"file": pdf, "mime_type": "application", "mime_subtype": "pdf"})
        return MessageSchema(
            subject=_header_text(subject),
            recipients=[to_address],
            body=html,
            subtype=MessageType.html,
            attachments=attachments,
        )

    def send(self, to_address: str, event: Event, user: User, ticket_id: str, variant: str,
             attachment_path: str | None = None, payment: Payment | None = None):
        """
        Deliver the ticket email once. Raises DeliveryError on any failure.

        The fastapi-mail client is async; it is run to completion here, so
        callers must be on a worker thread, not inside the event loop.
        """
        if not to_address:
            raise DeliveryError("Missing recipient address")
        try:
            message = self.build_message(to_address, event, user, ticket_id, variant, attachment_path, payment)
            asyncio.run(self.fast_mail.send_message(message))
        except (ConnectionErrors, SMTPException, OSError, ValueError, TypeError) as exc:
            raise DeliveryError(f"Could not send ticket to {to_address}: {exc}") from exc
        logger.info(f"Ticket {ticket_id} sent to {to_address} for event {event.id}")
