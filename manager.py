import heapq
import threading
from datetime import datetime

from intervaltree import IntervalTree

from database import Database
from models import Event, Payment, User
from utils import parse_date, utcnow


def event_from_row(row: dict) -> Event:
    return Event(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        start_date=parse_date(row["start_date"]),
        end_date=parse_date(row["end_date"]),
        location=row["location"],
        category=row["category"],
        capacity=row["capacity"],
        organizer_id=row["organizer_id"],
        is_paid=row["is_paid"],
        price=row["price"],
        image=row["image"],
        is_active=row["is_active"],
        created_at=parse_date(row["created_at"]),
        registered_users=list(row["registered_users"]),
    )


def user_from_row(row: dict) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        password=row["password"],
        role=row["role"],
        department=row["department"],
        year=row["year"],
        created_at=parse_date(row["created_at"]),
        registered_events=list(row["registered_events"]),
    )


def payment_from_row(row: dict) -> Payment:
    return Payment(
        id=row["id"],
        user_id=row["user_id"],
        event_id=row["event_id"],
        amount=row["amount"],
        payment_id=row["payment_id"],
        ticket_id=row["ticket_id"],
        status=row["status"],
        payment_method=row["payment_method"],
        payment_details=row["payment_details"],
        created_at=parse_date(row["created_at"]),
    )


class EventManager:
    def __init__(self, db: Database, scheduler):
        """Initialize EventManager with database and scheduler."""
        self.db = db
        self.scheduler = scheduler

    def add_event(self, event: Event) -> bool:
        """Add a new event to the database and the calendar."""
        if self.db.add_event(event):
            self.scheduler.schedule_event(event)
            return True
        return False

    def get_event(self, event_id: str) -> Event | None:
        """Retrieve an event by ID."""
        event_data = self.db.get_event(event_id)
        return event_from_row(event_data) if event_data else None

    def get_user(self, user_id: str) -> User | None:
        user_data = self.db.get_user(user_id)
        return user_from_row(user_data) if user_data else None

    def list_events(self, category: str | None = None, organizer_id: str | None = None,
                    start: datetime | None = None, end: datetime | None = None) -> list[Event]:
        """Retrieve events, optionally restricted to those overlapping [start, end)."""
        events = [event_from_row(e) for e in self.db.list_events(category=category, organizer_id=organizer_id)]
        if start or end:
            in_window = self.scheduler.events_between(start, end)
            events = [e for e in events if e.id in in_window]
        return events

    def delete_event(self, event_id: str) -> bool:
        """Delete an event."""
        if self.db.delete_event(event_id):
            self.scheduler.remove_event(event_id)
            return True
        return False

    def update_event(self, event_id: str, **fields) -> bool:
        """Update an event and reschedule if its dates change."""
        if not self.db.update_event(event_id, **fields):
            return False
        if fields.get("start_date") or fields.get("end_date"):
            self.scheduler.remove_event(event_id)
            self.scheduler.schedule_event(self.get_event(event_id))
        return True


class Scheduler:
    """
    Calendar index over event time spans.

    An interval tree answers "which events overlap this window", a min-heap
    of start times answers "what starts next".
    """

    def __init__(self, db: Database):
        """Initialize Scheduler and load existing events."""
        self.db = db
        self.event_queue = []
        self.intervals = IntervalTree()
        self.lock = threading.Lock()
        self.load_schedule()

    def load_schedule(self):
        """Load event spans from the database."""
        for row in self.db.list_events():
            self.schedule_event(event_from_row(row))

    def schedule_event(self, event: Event):
        start_ts = event.start_date.timestamp()
        end_ts = event.end_date.timestamp()
        if end_ts <= start_ts:
            return
        with self.lock:
            self.intervals[start_ts:end_ts] = event.id
            heapq.heappush(self.event_queue, (event.start_date, event.id))

    def remove_event(self, event_id: str):
        """Remove an event from the schedule."""
        with self.lock:
            to_remove = [iv for iv in self.intervals if iv.data == event_id]
            for iv in to_remove:
                self.intervals.remove(iv)
            self.event_queue = [(t, eid) for t, eid in self.event_queue if eid != event_id]
            heapq.heapify(self.event_queue)

    def clear(self):
        with self.lock:
            self.intervals.clear()
            self.event_queue = []

    def get_next_event(self, now: datetime | None = None) -> tuple[datetime, str] | None:
        """Retrieve the next event to start."""
        now = now or utcnow()
        with self.lock:
            while self.event_queue and self.event_queue[0][0] < now:
                heapq.heappop(self.event_queue)  # Remove past events
            return self.event_queue[0] if self.event_queue else None

    def events_between(self, start: datetime | None, end: datetime | None) -> set[str]:
        """IDs of events whose span overlaps [start, end)."""
        start_ts = start.timestamp() if start else float("-inf")
        end_ts = end.timestamp() if end else float("inf")
        with self.lock:
            if start is None and end is None:
                return {iv.data for iv in self.intervals}
            return {iv.data for iv in self.intervals.overlap(start_ts, end_ts)}

    def ongoing(self, now: datetime | None = None) -> set[str]:
        now = now or utcnow()
        with self.lock:
            return {iv.data for iv in self.intervals.at(now.timestamp())}

    def upcoming(self, now: datetime | None = None) -> set[str]:
        now = now or utcnow()
        with self.lock:
            return {eid for start, eid in self.event_queue if start > now}
