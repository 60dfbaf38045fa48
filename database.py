import json
import sqlite3
import threading
from contextlib import contextmanager

from config import DATABASE_PATH
from utils import utcnow

EVENT_COLUMNS = (
    "id", "title", "description", "start_date", "end_date", "location", "category",
    "is_paid", "price", "capacity", "organizer_id", "image", "is_active", "created_at",
)
USER_COLUMNS = ("id", "name", "email", "password", "role", "department", "year", "created_at")
PAYMENT_COLUMNS = (
    "id", "user_id", "event_id", "amount", "payment_id", "ticket_id", "status",
    "payment_method", "payment_details", "created_at",
)

UPDATABLE_EVENT_FIELDS = {
    "title", "description", "start_date", "end_date", "location", "category",
    "is_paid", "price", "capacity", "image", "is_active",
}
UPDATABLE_USER_FIELDS = {"name", "role", "department", "year", "password"}


class Database:
    def __init__(self, db_name=DATABASE_PATH):
        """
        Initialize SQLite database connection.

        One connection is shared by every request thread; the lock makes each
        public method a single serialized transaction.
        """
        self.conn = sqlite3.connect(db_name, check_same_thread=False)
        self.lock = threading.Lock()
        self.create_tables()

    @contextmanager
    def transaction(self):
        """Yield a cursor inside a locked transaction, rolling back on error."""
        with self.lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            finally:
                cursor.close()

    def create_tables(self):
        """Create database tables with appropriate indexes."""
        with self.transaction() as cursor:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    role TEXT NOT NULL CHECK(role IN ('admin', 'organizer', 'student')),
                    department TEXT,
                    year INTEGER,
                    created_at TEXT NOT NULL
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    location TEXT NOT NULL,
                    category TEXT NOT NULL,
                    is_paid INTEGER NOT NULL DEFAULT 0,
                    price REAL NOT NULL DEFAULT 0,
                    capacity INTEGER NOT NULL CHECK(capacity > 0),
                    organizer_id TEXT NOT NULL,
                    image TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            ''')
            # Single source for both Event.registered_users and User.registered_events
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS registrations (
                    event_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    registered_at TEXT NOT NULL,
                    PRIMARY KEY (event_id, user_id)
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS payments (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    amount REAL NOT NULL,
                    payment_id TEXT NOT NULL,
                    ticket_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL CHECK(status IN ('pending', 'success', 'failed')),
                    payment_method TEXT NOT NULL,
                    payment_details TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            ''')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_registrations_user_id ON registrations(user_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_payments_user_event ON payments(user_id, event_id)')

    # -------------------------------
    # Users
    # -------------------------------
    def add_user(self, user):
        """Add a user to the database. Raises sqlite3.IntegrityError on a duplicate email."""
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT INTO users (id, name, email, password, role, department, year, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (user.id, user.name, user.email, user.password, user.role, user.department, user.year,
                  (user.created_at or utcnow()).isoformat()))

    def get_user(self, user_id):
        """Retrieve a user by ID, with the IDs of the events they registered for."""
        with self.transaction() as cursor:
            cursor.execute(f'SELECT {", ".join(USER_COLUMNS)} FROM users WHERE id = ?', (user_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._user_row(cursor, row)

    def get_user_by_email(self, email):
        """Retrieve a user by email."""
        with self.transaction() as cursor:
            cursor.execute(f'SELECT {", ".join(USER_COLUMNS)} FROM users WHERE email = ?', (email,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._user_row(cursor, row)

    def list_users(self, role=None):
        with self.transaction() as cursor:
            if role:
                cursor.execute(f'SELECT {", ".join(USER_COLUMNS)} FROM users WHERE role = ? ORDER BY created_at', (role,))
            else:
                cursor.execute(f'SELECT {", ".join(USER_COLUMNS)} FROM users ORDER BY created_at')
            return [self._user_row(cursor, r) for r in cursor.fetchall()]

    def update_user(self, user_id, **fields):
        """Update a user's details. Only non-None whitelisted fields are written."""
        updates = {k: v for k, v in fields.items() if k in UPDATABLE_USER_FIELDS and v is not None}
        if not updates:
            return False
        set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
        values = list(updates.values()) + [user_id]
        with self.transaction() as cursor:
            cursor.execute(f'UPDATE users SET {set_clause} WHERE id = ?', values)
            return cursor.rowcount > 0

    def delete_user(self, user_id):
        """Delete a user and their registrations. Payment records are kept."""
        with self.transaction() as cursor:
            cursor.execute('DELETE FROM registrations WHERE user_id = ?', (user_id,))
            cursor.execute('DELETE FROM users WHERE id = ?', (user_id,))
            return cursor.rowcount > 0

    def count_users(self):
        with self.transaction() as cursor:
            cursor.execute('SELECT COUNT(*) FROM users')
            return cursor.fetchone()[0]

    def _user_row(self, cursor, row):
        user = dict(zip(USER_COLUMNS, row))
        cursor.execute('SELECT event_id FROM registrations WHERE user_id = ? ORDER BY registered_at', (user["id"],))
        user["registered_events"] = [r[0] for r in cursor.fetchall()]
        return user

    # -------------------------------
    # Events
    # -------------------------------
    def add_event(self, event):
        """Add an event to the database."""
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT OR IGNORE INTO events (id, title, description, start_date, end_date, location, category,
                                              is_paid, price, capacity, organizer_id, image, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (event.id, event.title, event.description, event.start_date.isoformat(), event.end_date.isoformat(),
                  event.location, event.category, int(event.is_paid), event.price, event.capacity,
                  event.organizer_id, event.image, int(event.is_active),
                  (event.created_at or utcnow()).isoformat()))
            return cursor.rowcount > 0

    def get_event(self, event_id):
        """Retrieve an event by ID together with its registrant set."""
        with self.transaction() as cursor:
            cursor.execute(f'SELECT {", ".join(EVENT_COLUMNS)} FROM events WHERE id = ?', (event_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._event_row(cursor, row)

    def list_events(self, category=None, organizer_id=None):
        """Retrieve all events ordered by start date."""
        clauses, params = [], []
        if category:
            clauses.append("category = ?")
            params.append(category)
        if organizer_id:
            clauses.append("organizer_id = ?")
            params.append(organizer_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.transaction() as cursor:
            cursor.execute(f'SELECT {", ".join(EVENT_COLUMNS)} FROM events {where} ORDER BY start_date', params)
            return [self._event_row(cursor, r) for r in cursor.fetchall()]

    def update_event(self, event_id, **fields):
        """Update an event's details. Only non-None whitelisted fields are written."""
        updates = {}
        for key, value in fields.items():
            if key not in UPDATABLE_EVENT_FIELDS or value is None:
                continue
            if key in ("is_paid", "is_active"):
                value = int(value)
            elif hasattr(value, "isoformat"):
                value = value.isoformat()
            updates[key] = value
        if not updates:
            return False
        set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
        values = list(updates.values()) + [event_id]
        with self.transaction() as cursor:
            cursor.execute(f'UPDATE events SET {set_clause} WHERE id = ?', values)
            return cursor.rowcount > 0

    def delete_event(self, event_id):
        """Hard delete an event and its registrations. Payment records are kept."""
        with self.transaction() as cursor:
            cursor.execute('DELETE FROM registrations WHERE event_id = ?', (event_id,))
            cursor.execute('DELETE FROM events WHERE id = ?', (event_id,))
            return cursor.rowcount > 0

    def _event_row(self, cursor, row):
        event = dict(zip(EVENT_COLUMNS, row))
        event["is_paid"] = bool(event["is_paid"])
        event["is_active"] = bool(event["is_active"])
        cursor.execute('SELECT user_id FROM registrations WHERE event_id = ? ORDER BY registered_at', (event["id"],))
        event["registered_users"] = [r[0] for r in cursor.fetchall()]
        return event

    # -------------------------------
    # Registrations
    # -------------------------------
    def register_user(self, event_id, user_id, payment=None):
        """
        Add a user to an event's registrant set if, and only if, the event is
        active, the user is not already registered and a seat is free.

        The capacity check and the insert are one statement, so two requests
        racing for the last seat cannot both succeed. When `payment` is given
        it is recorded in the same transaction. Returns False (nothing
        written) when the condition does not hold.
        """
        now = utcnow().isoformat()
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT INTO registrations (event_id, user_id, registered_at)
                SELECT e.id, ?, ? FROM events e
                WHERE e.id = ?
                  AND e.is_active = 1
                  AND (SELECT COUNT(*) FROM registrations r WHERE r.event_id = e.id) < e.capacity
                  AND NOT EXISTS (SELECT 1 FROM registrations r WHERE r.event_id = e.id AND r.user_id = ?)
            ''', (user_id, now, event_id, user_id))
            if cursor.rowcount == 0:
                return False
            if payment is not None:
                self._insert_payment(cursor, payment)
            return True

    def unregister_user(self, event_id, user_id):
        """Remove a user from an event's registrant set."""
        with self.transaction() as cursor:
            cursor.execute('DELETE FROM registrations WHERE event_id = ? AND user_id = ?', (event_id, user_id))
            return cursor.rowcount > 0

    def list_registrations(self, event_id):
        """Retrieve the registrants of an event with their registration time."""
        with self.transaction() as cursor:
            cursor.execute('''
                SELECT u.id, u.name, u.email, u.role, u.department, u.year, r.registered_at
                FROM registrations r JOIN users u ON u.id = r.user_id
                WHERE r.event_id = ?
                ORDER BY r.registered_at
            ''', (event_id,))
            keys = ("id", "name", "email", "role", "department", "year", "registered_at")
            return [dict(zip(keys, r)) for r in cursor.fetchall()]

    # -------------------------------
    # Payments (append-only)
    # -------------------------------
    def add_payment(self, payment):
        with self.transaction() as cursor:
            self._insert_payment(cursor, payment)

    def _insert_payment(self, cursor, payment):
        cursor.execute(f'''
            INSERT INTO payments ({", ".join(PAYMENT_COLUMNS)})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (payment.id, payment.user_id, payment.event_id, payment.amount, payment.payment_id,
              payment.ticket_id, payment.status, payment.payment_method,
              json.dumps(payment.payment_details or {}), (payment.created_at or utcnow()).isoformat()))

    def list_payments(self, user_id=None, event_id=None, event_ids=None, status=None):
        """Retrieve payment records, newest first."""
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if event_id:
            clauses.append("event_id = ?")
            params.append(event_id)
        if event_ids is not None:
            if not event_ids:
                return []
            clauses.append(f"event_id IN ({', '.join('?' for _ in event_ids)})")
            params.extend(event_ids)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.transaction() as cursor:
            cursor.execute(
                f'SELECT {", ".join(PAYMENT_COLUMNS)} FROM payments {where} ORDER BY created_at DESC, rowid DESC',
                params,
            )
            return [self._payment_row(r) for r in cursor.fetchall()]

    def latest_success_payment(self, user_id, event_id):
        payments = self.list_payments(user_id=user_id, event_id=event_id, status="success")
        return payments[0] if payments else None

    def _payment_row(self, row):
        payment = dict(zip(PAYMENT_COLUMNS, row))
        payment["payment_details"] = json.loads(payment["payment_details"] or "{}")
        return payment

    def close(self):
        """Close the database connection."""
        self.conn.close()


db = Database()
