import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta

from auth import hash_password, verify_password
from database import Database, PRIMARY_ADMIN_ID
from errors import (
    CapacityExceededError,
    ConflictError,
    DuplicateRegistrationError,
    DuplicateUserError,
    EventNotFoundError,
    ForbiddenError,
    RegistrationNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from models import (
    EVENT_ACTIVE,
    Attendee,
    Event,
    EventFilter,
    EventPatch,
    Registration,
    User,
    UserPatch,
    ROLE_ADMIN,
    ROLE_USER,
)

logger = logging.getLogger(__name__)


class EventManager:
    def __init__(self, db: Database):
        """Initialize EventManager with the shared database."""
        self.db = db

    def get_event(self, event_id: int) -> Event:
        """Retrieve an event by ID, whatever its status."""
        event = self.db.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def find_active_by_id(self, event_id: int) -> Event | None:
        event = self.db.get_event(event_id)
        if event is None or not event.is_active:
            return None
        return event

    def list_events(self, event_filter: EventFilter | None = None) -> list[Event]:
        """Retrieve events matching the filter, earliest date first."""
        f = event_filter or EventFilter()
        events = [e for e in self.db.list_events() if e.status == f.status]
        if f.category:
            needle = f.category.lower()
            events = [e for e in events if needle in e.category.lower()]
        if f.location:
            needle = f.location.lower()
            events = [e for e in events if needle in e.location.lower()]
        if f.date:
            events = [e for e in events if e.date == f.date]
        return sorted(events, key=lambda e: (e.date, e.id))

    def create_event(self, **data) -> Event:
        """Add a new active event to the catalog."""
        event = Event(id=self.db.event_ids.next(), status=EVENT_ACTIVE, created_at=datetime.now(), **data)
        self.db.add_event(event)
        logger.info(f"Event {event.id} created: {event.name}")
        return event

    def update_event(self, event_id: int, patch: EventPatch) -> Event:
        """Apply the fields present in the patch to an event.

        Capacity may not drop below the number of confirmed registrations.
        """
        self.get_event(event_id)
        with self.db.event_lock(event_id):
            event = self.get_event(event_id)
            changes = patch.present()
            if "capacity" in changes:
                occupancy = self.db.get_confirmed_count(event_id)
                if changes["capacity"] < occupancy:
                    raise ConflictError(
                        f"La capacidad no puede ser menor que los inscritos actuales ({occupancy})"
                    )
            updated = replace(event, **changes)
            self.db.update_event(updated)
            if updated.name != event.name:
                self.db.rename_event_in_registrations(event_id, updated.name)
        logger.info(f"Event {event_id} updated: {sorted(changes)}")
        return updated

    def delete_event(self, event_id: int) -> Event:
        """Delete an event together with its registrations."""
        self.get_event(event_id)
        with self.db.event_lock(event_id):
            event = self.db.delete_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        logger.info(f"Event {event_id} deleted")
        return event


class RegistrationLedger:
    """Owns registrations and keeps them consistent with event capacity.

    Every mutation runs while holding the lock of each event it touches, so
    the capacity check and the insert that follows it cannot interleave with
    another request on the same event.
    """

    def __init__(self, db: Database, events: EventManager):
        self.db = db
        self.events = events

    def _require_active_event(self, event_id: int) -> Event:
        event = self.events.find_active_by_id(event_id)
        if event is None:
            raise EventNotFoundError(event_id, active_only=True)
        return event

    def get(self, registration_id: int) -> Registration:
        registration = self.db.get_registration(registration_id)
        if registration is None:
            raise RegistrationNotFoundError(registration_id)
        return registration

    def compute_occupancy(self, event_id: int) -> int:
        """Number of confirmed registrations currently held by the event."""
        return self.db.get_confirmed_count(event_id)

    def enroll(self, event_id: int, attendee: Attendee) -> Registration:
        """Register an attendee for an active event."""
        self._require_active_event(event_id)
        email = attendee.email.lower()
        with self.db.event_lock(event_id):
            # The event may have been deactivated or deleted while we waited.
            event = self._require_active_event(event_id)
            if self.compute_occupancy(event_id) >= event.capacity:
                logger.warning(f"Event {event_id} is full, rejecting {email}")
                raise CapacityExceededError(event_id)
            if self.db.find_confirmed_registration(event_id, email) is not None:
                logger.warning(f"{email} is already registered for event {event_id}")
                raise DuplicateRegistrationError(event_id, email)
            registration = Registration(
                id=self.db.registration_ids.next(),
                event_id=event_id,
                event_name=event.name,
                attendee=replace(attendee, email=email),
                created_at=datetime.now(),
            )
            self.db.add_registration(registration)
        logger.info(f"Registration {registration.id} created for event {event_id}")
        return registration

    def list_by_attendee(self, email: str) -> list[tuple[Registration, Event | None]]:
        """Registrations for an email joined with their event, most recent first."""
        registrations = sorted(
            self.db.list_registrations_by_email(email),
            key=lambda r: (r.created_at, r.id),
            reverse=True,
        )
        return [(r, self.db.get_event(r.event_id)) for r in registrations]

    def list_for_event(self, event_id: int) -> list[Registration]:
        return self.db.list_registrations_for_event(event_id)

    def update(self, registration_id: int, attendee: Attendee, new_event_id: int) -> Registration:
        """Replace the attendee details and target event of a registration.

        Moving to another event re-checks its capacity; keeping the same
        event never does.
        """
        email = attendee.email.lower()
        self.get(registration_id)
        self._require_active_event(new_event_id)
        while True:
            current = self.get(registration_id)
            with self.db.locked_events(current.event_id, new_event_id):
                fresh = self.get(registration_id)
                if fresh.event_id != current.event_id:
                    # Moved by a concurrent update; lock the right pair and retry.
                    continue
                event = self._require_active_event(new_event_id)
                moving = new_event_id != current.event_id
                if moving and self.compute_occupancy(new_event_id) >= event.capacity:
                    logger.warning(f"Event {new_event_id} is full, cannot move registration {registration_id}")
                    raise CapacityExceededError(new_event_id)
                if moving or email != current.attendee.email.lower():
                    if self.db.find_confirmed_registration(new_event_id, email, exclude_id=registration_id):
                        raise DuplicateRegistrationError(new_event_id, email)
                updated = replace(
                    fresh,
                    event_id=new_event_id,
                    event_name=event.name,
                    attendee=replace(attendee, email=email),
                    updated_at=datetime.now(),
                )
                self.db.update_registration(updated)
            logger.info(f"Registration {registration_id} updated (event {current.event_id} -> {new_event_id})")
            return updated

    def delete(self, registration_id: int) -> Registration:
        """Cancel a registration, freeing its place."""
        while True:
            current = self.get(registration_id)
            with self.db.event_lock(current.event_id):
                fresh = self.get(registration_id)
                if fresh.event_id != current.event_id:
                    continue
                self.db.delete_registration(registration_id)
            logger.info(f"Registration {registration_id} deleted from event {current.event_id}")
            return fresh


class UserManager:
    def __init__(self, db: Database):
        """Credential store over the shared database."""
        self.db = db

    def get_user(self, user_id: int) -> User:
        user = self.db.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def find_by_identifier(self, identifier: str) -> User | None:
        return self.db.get_user_by_identifier(identifier)

    def verify_credential(self, plaintext: str, password_hash: str) -> bool:
        return verify_password(plaintext, password_hash)

    def create(self, username: str, email: str, password: str) -> User:
        """Register a new regular user."""
        if self.db.find_user_conflict(username, email) is not None:
            raise DuplicateUserError()
        # Hash outside any lock; bcrypt is slow on purpose.
        password_hash = hash_password(password)
        now = datetime.now()
        user = User(
            id=self.db.user_ids.next(),
            username=username,
            email=email.lower(),
            password_hash=password_hash,
            role=ROLE_USER,
            created_at=now,
            updated_at=now,
        )
        if not self.db.add_user(user):
            raise DuplicateUserError()
        logger.info(f"User {user.username} registered with id {user.id}")
        return user

    def authenticate(self, identifier: str, password: str) -> User:
        user = self.find_by_identifier(identifier)
        if user is None or not self.verify_credential(password, user.password_hash):
            logger.warning(f"Failed login for {identifier}")
            raise UnauthorizedError()
        if not user.is_active:
            raise ForbiddenError("La cuenta está desactivada")
        return user

    def list_users(
        self,
        search: str | None = None,
        role: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[User], dict]:
        """Filter and paginate users. Returns (page_of_users, pagination)."""
        users = self.db.list_users()
        if search:
            needle = search.lower()
            users = [
                u for u in users
                if needle in u.username.lower()
                or needle in u.email.lower()
                or needle in (u.profile.first_name or "").lower()
                or needle in (u.profile.last_name or "").lower()
            ]
        if role:
            users = [u for u in users if u.role == role]
        if status is not None:
            wanted = status == "active"
            users = [u for u in users if u.is_active == wanted]
        total = len(users)
        start = (page - 1) * limit
        pagination = {
            "current": page,
            "pages": math.ceil(total / limit),
            "total": total,
            "limit": limit,
        }
        return users[start:start + limit], pagination

    def update_user(self, user_id: int, patch: UserPatch) -> User:
        """Apply the fields present in the patch; the profile merges field by field."""
        user = self.get_user(user_id)
        changes = patch.present()
        if user_id == PRIMARY_ADMIN_ID and (patch.is_active is False or patch.role == ROLE_USER):
            raise ForbiddenError("No se puede degradar ni desactivar al administrador principal")
        if patch.username and patch.username.lower() != user.username.lower():
            if self.db.find_user_conflict(patch.username, None, exclude_id=user_id):
                raise DuplicateUserError("El nombre de usuario ya está en uso")
        if patch.email:
            changes["email"] = patch.email.lower()
            if changes["email"] != user.email and self.db.find_user_conflict(None, patch.email, exclude_id=user_id):
                raise DuplicateUserError("El email ya está en uso")
        if patch.profile is not None:
            changes["profile"] = user.profile.merge(patch.profile)
        updated = replace(user, **changes, updated_at=datetime.now())
        if not self.db.update_user(updated):
            raise DuplicateUserError()
        logger.info(f"User {user_id} updated: {sorted(changes)}")
        return updated

    def change_password(self, user_id: int, current_password: str, new_password: str) -> User:
        user = self.get_user(user_id)
        if not self.verify_credential(current_password, user.password_hash):
            raise UnauthorizedError("Contraseña actual incorrecta")
        updated = replace(user, password_hash=hash_password(new_password), updated_at=datetime.now())
        self.db.update_user(updated)
        logger.info(f"User {user_id} changed password")
        return updated

    def delete_user(self, user_id: int) -> User:
        if user_id == PRIMARY_ADMIN_ID:
            raise ForbiddenError("No se puede eliminar al administrador principal")
        user = self.db.delete_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        logger.info(f"User {user_id} deleted")
        return user

    def toggle_status(self, user_id: int) -> User:
        if user_id == PRIMARY_ADMIN_ID:
            raise ForbiddenError("No se puede cambiar el estado del administrador principal")
        user = self.get_user(user_id)
        updated = replace(user, is_active=not user.is_active, updated_at=datetime.now())
        self.db.update_user(updated)
        logger.info(f"User {user_id} is_active={updated.is_active}")
        return updated

    def stats(self) -> dict:
        users = self.db.list_users()
        now = datetime.now()
        thirty_days_ago = now - timedelta(days=30)
        active = sum(1 for u in users if u.is_active)
        return {
            "total": len(users),
            "active": active,
            "inactive": len(users) - active,
            "admins": sum(1 for u in users if u.role == ROLE_ADMIN),
            "regular": sum(1 for u in users if u.role == ROLE_USER),
            "recentRegistrations": sum(1 for u in users if u.created_at >= thirty_days_ago),
            "lastUpdated": now.isoformat(),
        }
