"""
Ticket rendering.

A ticket is a single A4 page carrying the event details, the attendee
details, the ticket identifier and a QR code whose payload is the JSON
document built by `qr_payload`.
"""
import json
import logging
import os
import re
from datetime import UTC, datetime
from io import BytesIO

import qrcode
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from models import Event, User
from utils import utcnow

logger = logging.getLogger(__name__)

PRIMARY_COLOR = colors.HexColor("#5e72e4")
SECONDARY_COLOR = colors.HexColor("#8254e5")
DARK_TEXT = colors.HexColor("#2d3748")
LIGHT_TEXT = colors.HexColor("#718096")
PANEL_FILL = colors.HexColor("#f8fafc")


class RenderError(Exception):
    """Raised when a ticket cannot be rendered from the data supplied."""


def _epoch_ms(moment: datetime) -> int:
    return int(moment.replace(tzinfo=UTC).timestamp() * 1000)


def qr_payload(event_id: str, user_id: str, ticket_id: str, issued_at: datetime) -> str:
    """The text encoded in the ticket's QR code."""
    return json.dumps({
        "eventId": event_id,
        "userId": user_id,
        "ticketId": ticket_id,
        "timestamp": _epoch_ms(issued_at),
    }, separators=(",", ":"))


def parse_qr_payload(text: str) -> dict:
    """Decode a scanned QR payload back into its fields."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Not a ticket payload: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Not a ticket payload")
    missing = [k for k in ("eventId", "userId", "ticketId", "timestamp") if k not in data]
    if missing:
        raise ValueError(f"Ticket payload is missing {', '.join(missing)}")
    return data


def make_qr(payload: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=10,
        border=1,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    return qr


def _qr_image(payload: str) -> ImageReader:
    img = make_qr(payload).make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    buffer.seek(0)
    return ImageReader(buffer)


def _format_date(moment: datetime) -> str:
    return moment.strftime("%A, %B %d, %Y")


def _format_time(moment: datetime) -> str:
    return moment.strftime("%I:%M %p")


def _detail_rows(pdf, rows, x, y, line_height=25):
    for label, value in rows:
        pdf.setFillColor(DARK_TEXT)
        pdf.setFont("Helvetica-Bold", 12)
        pdf.drawString(x, y, f"{label}:")
        pdf.setFont("Helvetica", 12)
        pdf.drawString(x + 150, y, str(value))
        y -= line_height
    return y


def _panel(pdf, y_top, height, heading):
    width, _ = A4
    pdf.setFillColor(PANEL_FILL)
    pdf.roundRect(50, y_top - height, width - 100, height, 10, stroke=0, fill=1)
    pdf.setFillColor(DARK_TEXT)
    pdf.setFont("Helvetica-Bold", 18)
    pdf.drawString(70, y_top - 30, heading)
    pdf.setFillColor(PRIMARY_COLOR)
    pdf.rect(70, y_top - 40, 30, 3, stroke=0, fill=1)


def render_ticket(event: Event, user: User, ticket_id: str, issued_at: datetime | None = None) -> bytes:
    """
    Render a one-page PDF ticket.

    The output depends only on the arguments: the PDF is written in
    reportlab's invariant mode and the QR timestamp is `issued_at`.
    Title and dates are required; other missing fields print a placeholder.
    """
    if event is None or user is None:
        raise RenderError("Missing required event or user data")
    missing = [name for name in ("title", "start_date", "end_date") if not getattr(event, name, None)]
    if missing:
        raise RenderError(f"Event is missing {', '.join(missing)}")
    if not ticket_id:
        raise RenderError("Missing ticket identifier")

    issued_at = issued_at or utcnow()
    payload = qr_payload(event.id, user.id, ticket_id, issued_at)
    width, height = A4
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4, invariant=1)
    pdf.setTitle(f"Ticket for {event.title}")
    pdf.setAuthor("CEMS - College Event Management System")

    # Header band
    pdf.setFillColor(PRIMARY_COLOR)
    pdf.rect(0, height - 150, width, 150, stroke=0, fill=1)
    pdf.setFillColor(colors.white)
    pdf.setFont("Helvetica-Bold", 30)
    pdf.drawCentredString(width / 2, height - 90, "EVENT TICKET")
    pdf.setFillColor(SECONDARY_COLOR)
    pdf.rect(50, height - 162, width - 100, 2, stroke=0, fill=1)

    pdf.setFillColor(DARK_TEXT)
    pdf.setFont("Helvetica-Bold", 24)
    pdf.drawCentredString(width / 2, height - 200, event.title[:60])

    _panel(pdf, height - 230, 180, "EVENT DETAILS")
    _detail_rows(pdf, [
        ("Date", _format_date(event.start_date)),
        ("Time", f"{_format_time(event.start_date)} - {_format_time(event.end_date)}"),
        ("Location", event.location or "TBD"),
        ("Category", event.category or "General"),
        ("Ticket Type", f"Paid ({event.price:.2f})" if event.is_paid else "Free"),
    ], 70, height - 290)

    _panel(pdf, height - 430, 150, "ATTENDEE INFORMATION")
    _detail_rows(pdf, [
        ("Name", user.name or "Attendee"),
        ("Email", user.email or "N/A"),
        ("Department", user.department or "N/A"),
        ("Year", user.year or "N/A"),
    ], 70, height - 490)

    _panel(pdf, height - 600, 170, "TICKET ID")
    pdf.setFillColor(DARK_TEXT)
    pdf.setFont("Courier-Bold", 14)
    pdf.drawString(70, height - 670, ticket_id)
    pdf.drawImage(_qr_image(payload), width - 200, height - 740, width=120, height=120)
    pdf.setFont("Helvetica", 9)
    pdf.drawCentredString(width - 140, height - 752, "Scan to verify ticket")

    pdf.setFillColor(LIGHT_TEXT)
    pdf.setFont("Helvetica", 10)
    pdf.drawCentredString(width / 2, 60, "This ticket is valid only for the named attendee and is non-transferable.")
    pdf.drawCentredString(width / 2, 45, "Please present this ticket at the event entrance.")
    pdf.drawCentredString(width / 2, 30, f"Issued on: {issued_at:%Y-%m-%d} - College Event Management System")

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def ticket_filename(title: str | None) -> str:
    slug = re.sub(r"[^a-z0-9]", "_", (title or "event").lower())
    return f"{slug}_ticket.pdf"


def write_ticket_file(pdf: bytes, ticket_id: str, directory: str) -> str:
    """Write a rendered ticket into the temporary ticket directory and return its path."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"{re.sub(r'[^A-Za-z0-9_-]', '_', ticket_id)}.pdf")
    with open(path, "wb") as fh:
        fh.write(pdf)
    logger.info(f"Ticket {ticket_id} written to {path}")
    return path


def remove_ticket_file(path: str | None):
    """Delete a temporary ticket file if it still exists."""
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning(f"Could not delete temporary ticket {path}: {exc}")
