import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from jose import JWTError
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.background import BackgroundTask

import config
from auth import (create_access_token, create_refresh_token, decode_token, get_current_user, hash_password,
                  oauth2_scheme, verify_password)
from database import db
from manager import EventManager, Scheduler, payment_from_row, user_from_row
from models import Category, Event, Role, User
from notifier import Notifier
from registration import NotRegistered, RegistrationError, RegistrationWorkflow
from tickets import RenderError, remove_ticket_file, render_ticket, ticket_filename, write_ticket_file
from utils import check_event_permission, check_role, generate_csv, new_id, new_ticket_id, parse_date, utcnow

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# FastAPI App
@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.PAYMENT_SIMULATION:
        logger.warning("Payment simulation is enabled: client-declared payment outcomes are trusted")
    yield
    logger.info("Closing database connection")
    db.close()

app = FastAPI(title="College Event Management System", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Init
scheduler = Scheduler(db)
manager = EventManager(db, scheduler)
notifier = Notifier()
workflow = RegistrationWorkflow(db, manager, notifier)


@app.exception_handler(RegistrationError)
async def registration_error_handler(request: Request, exc: RegistrationError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Server Error"})


# -------------------------------
# Schemas
# -------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserRegister(BaseModel):
    name: str = Field(min_length=1)
    email: str
    password: str = Field(min_length=6)
    role: Role = Role.STUDENT
    department: str = Field(min_length=1)
    year: int

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        value = value.strip().lower()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("Please include a valid email")
        return value


class UserLogin(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: dict


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    department: Optional[str] = None
    year: Optional[int] = None


class PasswordChange(CamelModel):
    current_password: str = Field(alias="currentPassword")
    new_password: str = Field(alias="newPassword", min_length=6)


class UserAdminUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[Role] = None
    department: Optional[str] = None
    year: Optional[int] = None


class EventCreate(CamelModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1)
    start_date: str = Field(alias="startDate")
    end_date: str = Field(alias="endDate")
    location: str = Field(min_length=1)
    category: Category
    is_paid: bool = Field(False, alias="isPaid")
    price: float = Field(0, ge=0)
    capacity: int
    image: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "title": "Python Workshop",
            "description": "Hands-on introduction to FastAPI",
            "startDate": "2025-05-01T10:00:00",
            "endDate": "2025-05-01T12:00:00",
            "location": "Lab 3",
            "category": "workshop",
            "isPaid": True,
            "price": 500,
            "capacity": 50,
        }
    })


class EventUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")
    location: Optional[str] = None
    category: Optional[Category] = None
    is_paid: Optional[bool] = Field(None, alias="isPaid")
    price: Optional[float] = Field(None, ge=0)
    capacity: Optional[int] = None
    image: Optional[str] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


class CompletePayment(CamelModel):
    transaction_id: Optional[str] = Field(None, alias="transactionId")


class InitiatePayment(CamelModel):
    event_id: str = Field(alias="eventId")


class ProcessPayment(CamelModel):
    event_id: str = Field(alias="eventId")
    status: Literal["success", "failed"]


def validate_event_fields(start: datetime, end: datetime, capacity: int, is_paid: bool, price: float):
    if capacity <= 0:
        raise HTTPException(status_code=400, detail="Capacity must be positive")
    if end <= start:
        raise HTTPException(status_code=400, detail="End date must be after start date")
    if is_paid and price <= 0:
        raise HTTPException(status_code=400, detail="Paid events must have a price greater than zero")


def get_event_or_404(event_id: str) -> Event:
    event = manager.get_event(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


# -------------------------------
# Auth Routes
# -------------------------------
@app.post("/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED, summary="Register a new user")
def register(user: UserRegister):
    """Register a new student or organizer account."""
    if user.role == Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin accounts can only be created by an administrator")
    if db.get_user_by_email(user.email):
        raise HTTPException(status_code=400, detail="User already exists")
    user_obj = User(
        id=new_id(),
        name=user.name,
        email=user.email,
        password=hash_password(user.password),
        role=user.role.value,
        department=user.department,
        year=user.year,
        created_at=utcnow(),
    )
    try:
        db.add_user(user_obj)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=400, detail="User already exists")
    logger.info(f"User {user.email} registered with role {user.role.value}")
    return {
        "access_token": create_access_token(data={"sub": user.email}),
        "refresh_token": create_refresh_token(data={"sub": user.email}),
        "user": user_obj.public(),
    }


@app.post("/auth/login", response_model=TokenResponse, summary="Login and receive access/refresh tokens")
def login(user: UserLogin):
    """Authenticate user and return access and refresh tokens."""
    db_user = db.get_user_by_email(user.email.strip().lower())
    if not db_user or not verify_password(user.password, db_user["password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    logger.info(f"User {db_user['email']} logged in")
    return {
        "access_token": create_access_token(data={"sub": db_user["email"]}),
        "refresh_token": create_refresh_token(data={"sub": db_user["email"]}),
        "user": user_from_row(db_user).public(),
    }


@app.post("/auth/refresh", response_model=dict, summary="Refresh access token")
def refresh(token: str = Depends(oauth2_scheme)):
    try:
        token_data = decode_token(token, token_type="refresh")
    except JWTError as e:
        logger.warning(f"Refresh rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid refresh token", headers={"WWW-Authenticate": "Bearer"})
    if db.get_user_by_email(token_data.email) is None:
        raise HTTPException(status_code=401, detail="User not found")
    access_token = create_access_token(data={"sub": token_data.email})
    logger.info(f"Token refreshed for {token_data.email}")
    return {"success": True, "message": "Token refreshed", "data": {"access_token": access_token}}


@app.get("/auth/me", response_model=dict, summary="Current user profile")
def me(current_user=Depends(get_current_user)):
    return {"success": True, "data": user_from_row(current_user).public()}


@app.put("/auth/updateprofile", response_model=dict, summary="Update own profile")
def update_profile(profile: ProfileUpdate, current_user=Depends(get_current_user)):
    db.update_user(current_user["id"], name=profile.name, department=profile.department, year=profile.year)
    return {"success": True, "message": "Profile updated", "data": manager.get_user(current_user["id"]).public()}


@app.put("/auth/changepassword", response_model=dict, summary="Change own password")
def change_password(body: PasswordChange, current_user=Depends(get_current_user)):
    if not verify_password(body.current_password, current_user["password"]):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    db.update_user(current_user["id"], password=hash_password(body.new_password))
    logger.info(f"User {current_user['email']} changed password")
    return {"success": True, "message": "Password updated successfully"}


# -------------------------------
# User Routes
# -------------------------------
@app.get("/users", response_model=dict, summary="List users (admin)")
def list_users(role: Optional[Role] = None, current_user=Depends(get_current_user)):
    check_role(current_user, Role.ADMIN.value)
    users = [user_from_row(u).public() for u in db.list_users(role=role.value if role else None)]
    return {"success": True, "count": len(users), "data": users}


@app.get("/users/registered-events", response_model=dict, summary="Events the current user registered for")
def registered_events(current_user=Depends(get_current_user)):
    events = [manager.get_event(eid) for eid in current_user["registered_events"]]
    data = [e.display_details() for e in events if e is not None]
    return {"success": True, "count": len(data), "data": data}


@app.get("/users/{user_id}", response_model=dict, summary="Get a user (admin)")
def get_user(user_id: str, current_user=Depends(get_current_user)):
    check_role(current_user, Role.ADMIN.value)
    user = manager.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "data": user.public()}


@app.put("/users/{user_id}", response_model=dict, summary="Update a user (admin)")
def update_user(user_id: str, body: UserAdminUpdate, current_user=Depends(get_current_user)):
    check_role(current_user, Role.ADMIN.value)
    if not manager.get_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    db.update_user(user_id, name=body.name, role=body.role.value if body.role else None,
                   department=body.department, year=body.year)
    logger.info(f"User {user_id} updated by {current_user['id']}")
    return {"success": True, "data": manager.get_user(user_id).public()}


@app.delete("/users/{user_id}", response_model=dict, summary="Delete a user (admin)")
def delete_user(user_id: str, current_user=Depends(get_current_user)):
    check_role(current_user, Role.ADMIN.value)
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="Admins cannot delete their own account")
    if not db.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    logger.info(f"User {user_id} deleted by {current_user['id']}")
    return {"success": True, "message": "User removed"}


# -------------------------------
# Event Routes
# -------------------------------
@app.get("/", response_model=dict, summary="API root endpoint")
def root():
    """Welcome message for the College Event Management API."""
    return {"message": "College Event Management System API", "data": {}}


@app.get("/events", response_model=dict, summary="List events")
def list_events(category: Optional[Category] = None, start: Optional[str] = None, end: Optional[str] = None):
    """Retrieve events ordered by start date, optionally within a time window."""
    events = manager.list_events(
        category=category.value if category else None,
        start=parse_date(start) if start else None,
        end=parse_date(end) if end else None,
    )
    data = [e.display_details() for e in events]
    return {"success": True, "count": len(data), "data": data}


@app.get("/scheduler/next", response_model=dict, summary="Get the next scheduled event")
def get_next_event():
    """Retrieve the next event to start."""
    next_event = scheduler.get_next_event()
    if next_event:
        date, event_id = next_event
        event = manager.get_event(event_id)
        if event:
            return {"message": "Next event retrieved", "data": {"id": event.id, "title": event.title, "date": date.isoformat()}}
    return {"message": "No scheduled events", "data": {}}


@app.get("/events/{event_id}", response_model=dict, summary="Get an event")
def get_event(event_id: str):
    return {"success": True, "data": get_event_or_404(event_id).display_details()}


@app.post("/events", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a new event")
def create_event(event: EventCreate, current_user=Depends(get_current_user)):
    """Create a new event (organizers or admins only)."""
    check_role(current_user, Role.ADMIN.value, Role.ORGANIZER.value)
    start, end = parse_date(event.start_date), parse_date(event.end_date)
    validate_event_fields(start, end, event.capacity, event.is_paid, event.price)
    evt = Event(
        id=new_id(),
        title=event.title,
        description=event.description,
        start_date=start,
        end_date=end,
        location=event.location,
        category=event.category.value,
        capacity=event.capacity,
        organizer_id=current_user["id"],
        is_paid=event.is_paid,
        price=event.price if event.is_paid else 0.0,
        image=event.image or "default-event.jpg",
        created_at=utcnow(),
    )
    if not manager.add_event(evt):
        raise HTTPException(status_code=400, detail="Event ID already exists")
    logger.info(f"Event {evt.id} created by {current_user['id']}")
    return {"success": True, "message": "Event created", "data": evt.display_details()}


@app.put("/events/{event_id}", response_model=dict, summary="Update an event")
def update_event(event_id: str, event: EventUpdate, current_user=Depends(get_current_user)):
    """Update an existing event (its organizer or an admin only)."""
    evt = get_event_or_404(event_id)
    check_event_permission(evt, current_user)
    start = parse_date(event.start_date) if event.start_date else evt.start_date
    end = parse_date(event.end_date) if event.end_date else evt.end_date
    capacity = event.capacity if event.capacity is not None else evt.capacity
    is_paid = event.is_paid if event.is_paid is not None else evt.is_paid
    price = event.price if event.price is not None else evt.price
    validate_event_fields(start, end, capacity, is_paid, price)
    if capacity < len(evt.registered_users):
        raise HTTPException(status_code=400, detail="Capacity cannot be lower than the number of registrants")
    manager.update_event(
        event_id,
        title=event.title,
        description=event.description,
        start_date=parse_date(event.start_date) if event.start_date else None,
        end_date=parse_date(event.end_date) if event.end_date else None,
        location=event.location,
        category=event.category.value if event.category else None,
        is_paid=event.is_paid,
        price=price if is_paid else 0.0,
        capacity=event.capacity,
        image=event.image,
        is_active=event.is_active,
    )
    logger.info(f"Event {event_id} updated by {current_user['id']}")
    return {"success": True, "message": f"Event {event_id} updated", "data": manager.get_event(event_id).display_details()}


@app.delete("/events/{event_id}", response_model=dict, summary="Delete an event")
def delete_event(event_id: str, current_user=Depends(get_current_user)):
    """Delete an event (its organizer or an admin only)."""
    evt = get_event_or_404(event_id)
    check_event_permission(evt, current_user)
    if not manager.delete_event(event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    logger.info(f"Event {event_id} deleted by {current_user['id']}")
    return {"success": True, "message": "Event removed"}


# -------------------------------
# Registration Routes
# -------------------------------
@app.post("/events/register/{event_id}", response_model=dict, summary="Register for an event")
def register_for_event(event_id: str, current_user=Depends(get_current_user)):
    result = workflow.register(current_user["id"], event_id)
    if result.payment_required:
        return {
            "success": True,
            "isPaid": True,
            "message": "Payment required for registration",
            "data": {"event": result.event.id, "price": result.price},
        }
    response = {
        "success": True,
        "isPaid": False,
        "message": "Successfully registered for event",
        "data": result.event.display_details(),
        "ticketId": result.payment.ticket_id,
    }
    if result.warning:
        response["warning"] = result.warning
    return response


@app.post("/events/unregister/{event_id}", response_model=dict, summary="Unregister from an event")
def unregister_from_event(event_id: str, current_user=Depends(get_current_user)):
    workflow.unregister(current_user["id"], event_id)
    return {"success": True, "message": "Successfully unregistered from event"}


@app.post("/events/complete-payment/{event_id}", response_model=dict, summary="Complete a paid registration")
def complete_payment(event_id: str, body: CompletePayment, current_user=Depends(get_current_user)):
    result = workflow.complete_payment(current_user["id"], event_id, transaction_id=body.transaction_id)
    response = {
        "success": True,
        "message": "Payment completed and registration confirmed",
        "data": {"event": result.event.display_details(), "payment": result.payment.public()},
    }
    if result.warning:
        response["warning"] = result.warning
    return response


@app.get("/events/{event_id}/ticket", summary="Download the ticket PDF")
def download_ticket(event_id: str, current_user=Depends(get_current_user)):
    try:
        event, user, payment = workflow.ticket_for(current_user["id"], event_id)
    except NotRegistered as exc:
        raise HTTPException(status_code=403, detail=exc.message)
    if payment is None:
        ticket_id, issued_at = new_ticket_id(), None
        logger.warning(f"No payment record behind registration of {user.id} for {event_id}; minted {ticket_id}")
    else:
        ticket_id, issued_at = payment.ticket_id, payment.created_at
    try:
        pdf = render_ticket(event, user, ticket_id, issued_at)
    except RenderError as exc:
        logger.error(f"Ticket for event {event_id} could not be rendered: {exc}")
        raise HTTPException(status_code=500, detail="Could not generate ticket")
    path = write_ticket_file(pdf, ticket_id, workflow.ticket_dir)
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=ticket_filename(event.title),
        background=BackgroundTask(remove_ticket_file, path),
    )


def participants_for(event: Event) -> list[dict]:
    """Registrants of an event merged with their latest successful payment."""
    latest = {}
    for row in db.list_payments(event_id=event.id, status="success"):
        latest.setdefault(row["user_id"], row)  # newest first
    participants = []
    for reg in db.list_registrations(event.id):
        payment = latest.get(reg["id"])
        participants.append({
            "id": reg["id"],
            "name": reg["name"],
            "email": reg["email"],
            "department": reg["department"],
            "year": reg["year"],
            "registeredAt": reg["registered_at"],
            "ticketId": payment["ticket_id"] if payment else None,
            "paymentId": payment["payment_id"] if payment else None,
            "amount": payment["amount"] if payment else 0,
            "paid": bool(payment) and payment["amount"] > 0,
        })
    return participants


@app.get("/events/{event_id}/participants", response_model=dict, summary="List event participants")
def list_participants(event_id: str, current_user=Depends(get_current_user)):
    """Participants of an event (its organizer or an admin only)."""
    event = get_event_or_404(event_id)
    check_event_permission(event, current_user)
    participants = participants_for(event)
    return {"success": True, "count": len(participants), "data": participants}


@app.get("/events/{event_id}/participants/export", response_model=None, summary="Export participants as CSV")
def export_participants(event_id: str, current_user=Depends(get_current_user)):
    """Export the participants of an event as a CSV file (its organizer or an admin only)."""
    event = get_event_or_404(event_id)
    check_event_permission(event, current_user)
    csv_data = generate_csv(participants_for(event))
    logger.info(f"Participants exported for event {event_id} by {current_user['id']}")
    return StreamingResponse(csv_data, media_type="text/csv", headers={"Content-Disposition": "attachment; filename=participants.csv"})


# -------------------------------
# Payment Routes
# -------------------------------
def require_payment_simulation():
    if not config.PAYMENT_SIMULATION:
        raise HTTPException(status_code=404, detail="Payment simulation is disabled")


@app.post("/payments/initiate", response_model=dict, summary="Start a simulated payment",
          dependencies=[Depends(require_payment_simulation)])
def initiate_payment(body: InitiatePayment, current_user=Depends(get_current_user)):
    event = workflow.quote(current_user["id"], body.event_id)
    payment_id = new_id()
    return {
        "success": True,
        "message": "Payment initiated",
        "data": {"paymentId": payment_id, "amount": event.price, "redirectUrl": f"/payment/process/{payment_id}"},
    }


@app.post("/payments/process/{payment_id}", response_model=dict, summary="Simulated gateway callback",
          dependencies=[Depends(require_payment_simulation)])
def process_payment(payment_id: str, body: ProcessPayment, current_user=Depends(get_current_user)):
    """
    Record the outcome of a simulated payment.

    The status comes from the client and is taken at face value. A real
    gateway must confirm outcomes with a signed server-to-server callback.
    """
    logger.warning(f"Accepting client-declared payment status '{body.status}' for {payment_id}")
    result = workflow.complete_payment(
        current_user["id"],
        body.event_id,
        transaction_id=payment_id,
        status=body.status,
        method="simulated",
        details={"gateway": "simulated", "declaredStatus": body.status},
    )
    if body.status == "failed":
        return JSONResponse(status_code=400, content={
            "success": False,
            "message": "Payment failed",
            "data": {"payment": result.payment.public()},
        })
    response = {
        "success": True,
        "message": "Payment successful",
        "data": {"event": result.event.display_details(), "payment": result.payment.public()},
    }
    if result.warning:
        response["warning"] = result.warning
    return response


def _with_event(payment: dict) -> dict:
    data = payment_from_row(payment).public()
    event = db.get_event(payment["event_id"])
    data["eventDetails"] = {"title": event["title"], "startDate": event["start_date"]} if event else None
    return data


@app.get("/payments/history", response_model=dict, summary="Current user's payment history")
def payment_history(current_user=Depends(get_current_user)):
    payments = [_with_event(p) for p in db.list_payments(user_id=current_user["id"])]
    return {"success": True, "count": len(payments), "data": payments}


@app.get("/payments/transactions", response_model=dict, summary="Transactions (admin: all, organizer: own events)")
def transactions(status_filter: Optional[Literal["pending", "success", "failed"]] = Query(None, alias="status"),
                 current_user=Depends(get_current_user)):
    check_role(current_user, Role.ADMIN.value, Role.ORGANIZER.value)
    event_ids = None
    if current_user["role"] == Role.ORGANIZER.value:
        event_ids = [e["id"] for e in db.list_events(organizer_id=current_user["id"])]
    data = []
    for payment in db.list_payments(event_ids=event_ids, status=status_filter):
        item = _with_event(payment)
        user = db.get_user(payment["user_id"])
        item["userDetails"] = {"name": user["name"], "email": user["email"]} if user else None
        data.append(item)
    return {"success": True, "count": len(data), "data": data}


# -------------------------------
# Dashboard
# -------------------------------
@app.get("/dashboard/stats", response_model=dict, summary="Dashboard statistics")
def dashboard_stats(current_user=Depends(get_current_user)):
    check_role(current_user, Role.ADMIN.value, Role.ORGANIZER.value)
    is_admin = current_user["role"] == Role.ADMIN.value
    events = manager.list_events(organizer_id=None if is_admin else current_user["id"])
    event_ids = [e.id for e in events]
    upcoming = scheduler.upcoming() & set(event_ids)
    ongoing = scheduler.ongoing() & set(event_ids)
    payments = db.list_payments(event_ids=None if is_admin else event_ids, status="success")
    stats = {
        "totalEvents": len(events),
        "activeEvents": sum(1 for e in events if e.is_active),
        "upcomingEvents": len(upcoming),
        "ongoingEvents": len(ongoing),
        "pastEvents": len(events) - len(upcoming) - len(ongoing),
        "totalRegistrations": sum(len(e.registered_users) for e in events),
        "totalRevenue": sum(p["amount"] for p in payments),
    }
    if is_admin:
        stats["totalUsers"] = db.count_users()
    return {"success": True, "data": stats}
