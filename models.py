from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from typing import Optional

EVENT_ACTIVE = "activo"
EVENT_INACTIVE = "inactivo"
REGISTRATION_CONFIRMED = "confirmada"
ROLE_ADMIN = "admin"
ROLE_USER = "user"


@dataclass(frozen=True)
class Profile:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None

    def merge(self, patch: ProfilePatch) -> Profile:
        """Return a copy where every field present in the patch overwrites ours."""
        return replace(self, **patch.present())


@dataclass(frozen=True)
class User:
    id: int
    username: str
    email: str
    password_hash: str
    role: str = ROLE_USER  # 'admin' or 'user'
    is_active: bool = True
    profile: Profile = field(default_factory=Profile)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True)
class Event:
    id: int
    name: str
    location: str
    date: date
    time: str  # HH:MM
    capacity: int
    price: float
    category: str
    description: Optional[str] = None
    end_date: Optional[date] = None
    status: str = EVENT_ACTIVE
    image: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.status == EVENT_ACTIVE


@dataclass(frozen=True)
class Attendee:
    name: str
    email: str
    phone: str


@dataclass(frozen=True)
class Registration:
    id: int
    event_id: int
    event_name: str
    attendee: Attendee
    status: str = REGISTRATION_CONFIRMED
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == REGISTRATION_CONFIRMED


@dataclass(frozen=True)
class Claims:
    """Decoded session token payload."""

    id: int
    username: str
    email: str
    role: str
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class _Patch:
    """Optional-field update: None means "keep the existing value"."""

    def present(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass(frozen=True)
class ProfilePatch(_Patch):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None


@dataclass(frozen=True)
class UserPatch(_Patch):
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    profile: Optional[ProfilePatch] = None


@dataclass(frozen=True)
class EventPatch(_Patch):
    name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    date: Optional[date] = None
    end_date: Optional[date] = None
    time: Optional[str] = None
    capacity: Optional[int] = None
    price: Optional[float] = None
    category: Optional[str] = None
    status: Optional[str] = None
    image: Optional[str] = None


@dataclass(frozen=True)
class EventFilter:
    category: Optional[str] = None
    location: Optional[str] = None
    date: Optional[date] = None
    status: str = EVENT_ACTIVE
