import csv
import random
import time
import uuid
from datetime import UTC, datetime
from io import StringIO

from fastapi import HTTPException


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(UTC).replace(tzinfo=None)


def parse_date(date_str: str) -> datetime:
    """Parse a date string into a naive UTC datetime object."""
    try:
        parsed = datetime.fromisoformat(date_str)
    except ValueError:
        try:
            parsed = datetime.strptime(date_str, "%Y-%m-%d %H:%M")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date format")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def new_id() -> str:
    return uuid.uuid4().hex


def new_ticket_id() -> str:
    """Mint a ticket identifier, e.g. TCK-1714557600000-3F9A1C2B."""
    return f"TCK-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


def new_transaction_id() -> str:
    """Mock gateway transaction identifier."""
    return f"PPI{int(time.time() * 1000)}{random.randint(0, 999):03d}"


def check_event_permission(event, current_user):
    """Check if the user has permission to modify or inspect an event."""
    if current_user["role"] == "admin":
        return
    if event.organizer_id != current_user["id"]:
        raise HTTPException(status_code=403, detail="Access denied: you are not the event organizer")


def check_role(current_user, *roles):
    if current_user["role"] not in roles:
        raise HTTPException(status_code=403, detail=f"User role {current_user['role']} is not authorized to access this route")


def generate_csv(participants):
    """Generate a CSV buffer from a list of participants."""
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["ID", "Name", "Email", "Department", "Year", "Registered At", "Ticket ID", "Paid", "Amount"])
    for p in participants:
        writer.writerow([
            p["id"], p["name"], p["email"], p.get("department") or "", p.get("year") or "",
            p["registeredAt"], p.get("ticketId") or "", "yes" if p.get("paid") else "no", p.get("amount", 0),
        ])
    buffer.seek(0)
    return buffer
