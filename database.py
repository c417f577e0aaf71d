import itertools
import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import replace
from datetime import date

import config
from models import Event, Profile, Registration, User, ROLE_ADMIN

logger = logging.getLogger(__name__)

PRIMARY_ADMIN_ID = 1


class IdSequence:
    """Monotonic id allocator. Ids are never handed out twice."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)


class Database:
    def __init__(self, admin_password_hash: str = "", seed: bool = True):
        """
        Initialize the in-memory store.
        All state lives for the process lifetime; nothing is written to disk.
        Each table is a dict keyed by id guarded by its own lock, and every
        event gets a lock of its own for operations that must see a stable
        view of that event's registrations.
        """
        self._admin_password_hash = admin_password_hash
        self._seed = seed
        self._users_lock = threading.RLock()
        self._events_lock = threading.RLock()
        self._registrations_lock = threading.RLock()
        self._event_locks_guard = threading.Lock()
        self._event_locks: dict[int, threading.Lock] = {}
        self.create_tables()

    def create_tables(self):
        """Create empty tables with fresh id sequences and load seed data."""
        self.user_ids = IdSequence()
        self.event_ids = IdSequence()
        self.registration_ids = IdSequence()
        self.users: dict[int, User] = {}
        self.events: dict[int, Event] = {}
        self.registrations: dict[int, Registration] = {}
        if self._seed:
            self.seed()

    def reset(self):
        """Drop all records and restart the id sequences, as a process restart would."""
        with self._users_lock, self._events_lock, self._registrations_lock:
            self.create_tables()
        self._forget_event_lock()

    def seed(self):
        """Load the primary administrator and the initial event catalog."""
        admin_id = self.user_ids.next()
        if admin_id == PRIMARY_ADMIN_ID:
            self.users[admin_id] = User(
                id=admin_id,
                username=config.ADMIN_USERNAME,
                email=config.ADMIN_EMAIL.lower(),
                password_hash=self._admin_password_hash,
                role=ROLE_ADMIN,
                profile=Profile(first_name="Admin", last_name="CorvoEvent", phone="999888777"),
            )
        for data in SEED_EVENTS:
            event_id = self.event_ids.next()
            self.events[event_id] = Event(id=event_id, **data)
        logger.info(f"Seeded {len(self.users)} users and {len(self.events)} events")

    # -------------------------------
    # Locking
    # -------------------------------
    def event_lock(self, event_id: int) -> threading.Lock:
        """Return the lock serializing mutations that touch one event.

        Only stored events get a shared lock. An unknown id gets a private
        lock that is never kept, so callers probing bogus ids cannot grow
        the map; ids are never reused, so no later event can need it.
        """
        with self._event_locks_guard:
            lock = self._event_locks.get(event_id)
            if lock is None:
                lock = threading.Lock()
                if self.get_event(event_id) is not None:
                    self._event_locks[event_id] = lock
            return lock

    def tracked_event_locks(self) -> int:
        with self._event_locks_guard:
            return len(self._event_locks)

    def _forget_event_lock(self, event_id: int | None = None):
        with self._event_locks_guard:
            if event_id is None:
                self._event_locks.clear()
            else:
                self._event_locks.pop(event_id, None)

    @contextmanager
    def locked_events(self, *event_ids: int):
        """Hold the locks of several events, always acquired in ascending id order."""
        with ExitStack() as stack:
            for event_id in sorted(set(event_ids)):
                stack.enter_context(self.event_lock(event_id))
            yield

    # -------------------------------
    # Users
    # -------------------------------
    def add_user(self, user: User) -> bool:
        """Add a user unless its username or email is taken (case-insensitive)."""
        with self._users_lock:
            if self.find_user_conflict(user.username, user.email) is not None:
                return False
            self.users[user.id] = user
            return True

    def find_user_conflict(self, username: str | None, email: str | None, exclude_id: int | None = None):
        """Return the first other user holding this username or email."""
        username = username.lower() if username else None
        email = email.lower() if email else None
        with self._users_lock:
            for u in self.users.values():
                if u.id == exclude_id:
                    continue
                if (username and u.username.lower() == username) or (email and u.email.lower() == email):
                    return u
        return None

    def get_user(self, user_id: int) -> User | None:
        with self._users_lock:
            return self.users.get(user_id)

    def get_user_by_identifier(self, identifier: str) -> User | None:
        """Retrieve a user by username or email."""
        identifier = identifier.lower()
        with self._users_lock:
            for u in self.users.values():
                if u.username.lower() == identifier or u.email.lower() == identifier:
                    return u
        return None

    def list_users(self) -> list[User]:
        with self._users_lock:
            return sorted(self.users.values(), key=lambda u: u.id)

    def update_user(self, user: User) -> bool:
        """Replace a stored user, re-checking username/email uniqueness."""
        with self._users_lock:
            if user.id not in self.users:
                return False
            if self.find_user_conflict(user.username, user.email, exclude_id=user.id) is not None:
                return False
            self.users[user.id] = user
            return True

    def delete_user(self, user_id: int) -> User | None:
        with self._users_lock:
            return self.users.pop(user_id, None)

    # -------------------------------
    # Events
    # -------------------------------
    def add_event(self, event: Event):
        with self._events_lock:
            self.events[event.id] = event

    def get_event(self, event_id: int) -> Event | None:
        with self._events_lock:
            return self.events.get(event_id)

    def list_events(self) -> list[Event]:
        with self._events_lock:
            return list(self.events.values())

    def update_event(self, event: Event) -> bool:
        with self._events_lock:
            if event.id not in self.events:
                return False
            self.events[event.id] = event
            return True

    def delete_event(self, event_id: int) -> Event | None:
        """Delete an event and its registrations."""
        with self._events_lock, self._registrations_lock:
            event = self.events.pop(event_id, None)
            if event is not None:
                for reg_id in [r.id for r in self.registrations.values() if r.event_id == event_id]:
                    del self.registrations[reg_id]
        # Taken after the table locks are released; event_lock nests them the other way.
        if event is not None:
            self._forget_event_lock(event_id)
        return event

    # -------------------------------
    # Registrations
    # -------------------------------
    def add_registration(self, registration: Registration):
        with self._registrations_lock:
            self.registrations[registration.id] = registration

    def get_registration(self, registration_id: int) -> Registration | None:
        with self._registrations_lock:
            return self.registrations.get(registration_id)

    def update_registration(self, registration: Registration) -> bool:
        with self._registrations_lock:
            if registration.id not in self.registrations:
                return False
            self.registrations[registration.id] = registration
            return True

    def delete_registration(self, registration_id: int) -> Registration | None:
        with self._registrations_lock:
            return self.registrations.pop(registration_id, None)

    def list_registrations_for_event(self, event_id: int) -> list[Registration]:
        """Retrieve all registrations for an event, oldest first."""
        with self._registrations_lock:
            return sorted((r for r in self.registrations.values() if r.event_id == event_id), key=lambda r: r.id)

    def list_registrations_by_email(self, email: str) -> list[Registration]:
        email = email.lower()
        with self._registrations_lock:
            return [r for r in self.registrations.values() if r.attendee.email.lower() == email]

    def get_confirmed_count(self, event_id: int) -> int:
        """Get the number of confirmed registrations for an event."""
        with self._registrations_lock:
            return sum(1 for r in self.registrations.values() if r.event_id == event_id and r.is_confirmed)

    def find_confirmed_registration(self, event_id: int, email: str, exclude_id: int | None = None) -> Registration | None:
        email = email.lower()
        with self._registrations_lock:
            for r in self.registrations.values():
                if r.id == exclude_id or not r.is_confirmed:
                    continue
                if r.event_id == event_id and r.attendee.email.lower() == email:
                    return r
        return None

    def rename_event_in_registrations(self, event_id: int, name: str):
        """Refresh the event name snapshot carried by registrations."""
        with self._registrations_lock:
            for r in list(self.registrations.values()):
                if r.event_id == event_id and r.event_name != name:
                    self.registrations[r.id] = replace(r, event_name=name)

    def close(self):
        """Release all records."""
        with self._users_lock, self._events_lock, self._registrations_lock:
            self.users.clear()
            self.events.clear()
            self.registrations.clear()


SEED_EVENTS = [
    dict(
        name="¡Temporada digital y Más!",
        description="Evento de tecnología y innovación digital",
        location="Lima",
        date=date(2024, 7, 15),
        end_date=date(2024, 8, 15),
        time="18:00",
        capacity=100,
        price=0,
        category="Tecnología",
        image="img/cards/temporada-digital.jpg",
    ),
    dict(
        name="Dr. Jekyll & Mr. Hyde",
        description="Obra teatral clásica",
        location="Arequipa",
        date=date(2024, 7, 20),
        time="19:00",
        capacity=150,
        price=25,
        category="Teatro",
        image="img/cards/jekyll-hyde.jpg",
    ),
    dict(
        name="Meet & Greet",
        description="Evento de networking y conocimiento",
        location="Trujillo",
        date=date(2024, 7, 30),
        time="17:00",
        capacity=80,
        price=0,
        category="Networking",
        image="img/cards/meet-greet.jpg",
    ),
    dict(
        name="Gastronomicon",
        description="Festival gastronómico",
        location="Lima",
        date=date(2024, 7, 30),
        time="17:00",
        capacity=200,
        price=35,
        category="Gastronomía",
        image="img/cards/gastronomicon.jpg",
    ),
    dict(
        name="Oratoria",
        description="Taller de técnicas de oratoria y comunicación",
        location="Lima",
        date=date(2024, 7, 30),
        time="17:00",
        capacity=60,
        price=20,
        category="Educación",
        image="img/cards/oratoria.jpg",
    ),
]
