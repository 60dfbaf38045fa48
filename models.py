from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    ADMIN = "admin"
    ORGANIZER = "organizer"
    STUDENT = "student"


class Category(str, Enum):
    ACADEMIC = "academic"
    CULTURAL = "cultural"
    SPORTS = "sports"
    TECHNICAL = "technical"
    WORKSHOP = "workshop"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class Event:
    id: str
    title: str
    description: str
    start_date: datetime
    end_date: datetime
    location: str
    category: str
    capacity: int
    organizer_id: str
    is_paid: bool = False
    price: float = 0.0
    image: str = "default-event.jpg"
    is_active: bool = True
    created_at: Optional[datetime] = None
    registered_users: list[str] = field(default_factory=list)

    @property
    def seats_left(self) -> int:
        return max(self.capacity - len(self.registered_users), 0)

    def is_registered(self, user_id: str) -> bool:
        return user_id in self.registered_users

    def display_details(self) -> dict:
        """Return the public representation of the event."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "location": self.location,
            "category": self.category,
            "isPaid": self.is_paid,
            "price": self.price,
            "capacity": self.capacity,
            "seatsLeft": self.seats_left,
            "organizer": self.organizer_id,
            "image": self.image,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "registeredUsers": list(self.registered_users),
        }


@dataclass
class User:
    id: str
    name: str
    email: str
    password: str  # bcrypt hash, never serialized
    role: str = Role.STUDENT.value
    department: Optional[str] = None
    year: Optional[int] = None
    created_at: Optional[datetime] = None
    registered_events: list[str] = field(default_factory=list)

    def public(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "year": self.year,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "registeredEvents": list(self.registered_events),
        }


@dataclass
class Payment:
    id: str
    user_id: str
    event_id: str
    amount: float
    payment_id: str
    ticket_id: str
    status: str = PaymentStatus.PENDING.value
    payment_method: str = "online"
    payment_details: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.SUCCESS.value

    def public(self) -> dict:
        return {
            "id": self.id,
            "user": self.user_id,
            "event": self.event_id,
            "amount": self.amount,
            "paymentId": self.payment_id,
            "ticketId": self.ticket_id,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "paymentDetails": dict(self.payment_details),
            "isPaid": self.is_paid,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
