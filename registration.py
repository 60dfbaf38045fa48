"""
Event registration workflow.

Free events are joined directly; paid events are gated behind a payment
confirmation. Every successful join writes the registrant and a `success`
payment record in one conditional store operation, then renders and emails
the ticket on a best-effort basis.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from config import TICKET_DIR
from database import Database
from manager import EventManager, payment_from_row
from models import Event, Payment, PaymentStatus, User
from notifier import PAYMENT, REGISTRATION, DeliveryError, Notifier
from tickets import RenderError, remove_ticket_file, render_ticket, write_ticket_file
from utils import new_id, new_ticket_id, new_transaction_id, utcnow

logger = logging.getLogger(__name__)

DELIVERY_WARNING = "Registration succeeded but the ticket email could not be sent"


class RegistrationError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(RegistrationError):
    status_code = 404


class Conflict(RegistrationError):
    pass


class CapacityExceeded(RegistrationError):
    pass


class EventInactive(RegistrationError):
    pass


class NotRegistered(RegistrationError):
    pass


class NotPaidEvent(RegistrationError):
    pass


@dataclass
class RegistrationResult:
    event: Event
    is_paid: bool
    price: float
    payment: Optional[Payment] = None
    warning: Optional[str] = None

    @property
    def payment_required(self) -> bool:
        return self.is_paid and self.payment is None


class RegistrationWorkflow:
    def __init__(self, db: Database, manager: EventManager, notifier: Notifier, ticket_dir: str = TICKET_DIR):
        self.db = db
        self.manager = manager
        self.notifier = notifier
        self.ticket_dir = ticket_dir

    def _load(self, user_id: str, event_id: str) -> tuple[Event, User]:
        event = self.manager.get_event(event_id)
        if event is None:
            raise NotFound("Event not found")
        user = self.manager.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        return event, user

    @staticmethod
    def _check_open(event: Event, user_id: str):
        if not event.is_active:
            raise EventInactive("This event is no longer active")
        if event.is_registered(user_id):
            raise Conflict("Already registered for this event")
        if len(event.registered_users) >= event.capacity:
            raise CapacityExceeded("Event capacity reached")

    def _commit(self, event: Event, user: User, payment: Payment):
        if self.db.register_user(event.id, user.id, payment):
            return
        # Someone changed the event between our check and the write
        fresh = self.manager.get_event(event.id)
        if fresh is None:
            raise NotFound("Event not found")
        self._check_open(fresh, user.id)
        raise CapacityExceeded("Event capacity reached")

    def _deliver(self, event: Event, user: User, payment: Payment, variant: str) -> Optional[str]:
        """Render and email the ticket. Failures are logged and returned as a warning."""
        path = None
        try:
            pdf = render_ticket(event, user, payment.ticket_id, payment.created_at)
            path = write_ticket_file(pdf, payment.ticket_id, self.ticket_dir)
            self.notifier.send(user.email, event, user, payment.ticket_id, variant, path, payment)
        except (RenderError, DeliveryError, OSError) as exc:
            logger.warning(f"Ticket {payment.ticket_id} for user {user.id} not delivered: {exc}")
            return DELIVERY_WARNING
        finally:
            remove_ticket_file(path)
        return None

    def register(self, user_id: str, event_id: str) -> RegistrationResult:
        """Register a user for a free event, or report that payment is required."""
        event, user = self._load(user_id, event_id)
        self._check_open(event, user_id)

        if event.is_paid:
            logger.info(f"User {user_id} must pay {event.price} for event {event_id}")
            return RegistrationResult(event=event, is_paid=True, price=event.price)

        payment = Payment(
            id=new_id(),
            user_id=user_id,
            event_id=event_id,
            amount=0.0,
            payment_id=f"FREE-{new_id()}",
            ticket_id=new_ticket_id(),
            status=PaymentStatus.SUCCESS.value,
            payment_method="free",
            created_at=utcnow(),
        )
        self._commit(event, user, payment)
        logger.info(f"User {user_id} registered for event {event_id} with ticket {payment.ticket_id}")
        event = self.manager.get_event(event_id)
        warning = self._deliver(event, user, payment, REGISTRATION)
        return RegistrationResult(event=event, is_paid=False, price=0.0, payment=payment, warning=warning)

    def quote(self, user_id: str, event_id: str) -> Event:
        """Check that a user could pay for and join a paid event right now."""
        event, _ = self._load(user_id, event_id)
        if not event.is_paid:
            raise NotPaidEvent("This is a free event")
        self._check_open(event, user_id)
        return event

    def complete_payment(self, user_id: str, event_id: str, transaction_id: Optional[str] = None,
                         status: str = PaymentStatus.SUCCESS.value, method: str = "online",
                         details: Optional[dict] = None) -> RegistrationResult:
        """
        Finish a paid registration once the gateway has reported an outcome.

        A failed outcome is recorded and nothing else changes. A successful
        one re-checks every registration precondition, because the event may
        have filled up or been deactivated while the user was paying.
        """
        event, user = self._load(user_id, event_id)
        if not event.is_paid:
            raise NotPaidEvent("This is a free event")
        if status not in (PaymentStatus.SUCCESS.value, PaymentStatus.FAILED.value):
            raise RegistrationError(f"Unknown payment status: {status}")

        payment = Payment(
            id=new_id(),
            user_id=user_id,
            event_id=event_id,
            amount=event.price,
            payment_id=transaction_id or new_transaction_id(),
            ticket_id=new_ticket_id(),
            status=status,
            payment_method=method,
            payment_details=dict(details or {}),
            created_at=utcnow(),
        )

        if status == PaymentStatus.FAILED.value:
            self.db.add_payment(payment)
            logger.warning(f"Payment {payment.payment_id} by user {user_id} for event {event_id} failed")
            return RegistrationResult(event=event, is_paid=True, price=event.price, payment=payment)

        self._check_open(event, user_id)
        self._commit(event, user, payment)
        logger.info(f"Payment {payment.payment_id} completed: user {user_id} registered for event {event_id}")
        event = self.manager.get_event(event_id)
        warning = self._deliver(event, user, payment, PAYMENT)
        return RegistrationResult(event=event, is_paid=True, price=event.price, payment=payment, warning=warning)

    def unregister(self, user_id: str, event_id: str) -> Event:
        """Remove a user from an event. Payment records are left untouched."""
        event, _ = self._load(user_id, event_id)
        if not event.is_registered(user_id) or not self.db.unregister_user(event_id, user_id):
            raise NotRegistered("Not registered for this event")
        logger.info(f"User {user_id} unregistered from event {event_id}")
        return self.manager.get_event(event_id)

    def ticket_for(self, user_id: str, event_id: str) -> tuple[Event, User, Optional[Payment]]:
        """The event, attendee and latest successful payment behind a ticket download."""
        event, user = self._load(user_id, event_id)
        if not event.is_registered(user_id):
            raise NotRegistered("You are not registered for this event")
        row = self.db.latest_success_payment(user_id, event_id)
        return event, user, payment_from_row(row) if row else None
