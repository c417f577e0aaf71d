from datetime import date, datetime

from errors import ForbiddenError, ValidationError
from models import Claims, Event, Registration, User


def parse_date(date_str: str) -> date:
    """Parse an ISO date (or datetime) string into a date."""
    try:
        return date.fromisoformat(date_str)
    except ValueError:
        try:
            return datetime.fromisoformat(date_str).date()
        except ValueError:
            raise ValidationError("Fecha inválida", [{"field": "fecha", "msg": "Fecha inválida"}])


def check_user_permission(claims: Claims, user_id: int):
    """Only admins may act on another user's account."""
    if claims.is_admin:
        return
    if claims.id != user_id:
        raise ForbiddenError("No tienes permisos para ver este usuario")


def envelope(data=None, message: str | None = None, **extra) -> dict:
    """Wrap a payload in the standard response envelope."""
    body = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_event(event: Event, occupancy: int | None = None) -> dict:
    data = {
        "id": event.id,
        "nombre": event.name,
        "descripcion": event.description,
        "ubicacion": event.location,
        "fecha": _iso(event.date),
        "fechaFin": _iso(event.end_date),
        "hora": event.time,
        "capacidadMaxima": event.capacity,
        "precio": event.price,
        "categoria": event.category,
        "estado": event.status,
        "imagen": event.image,
        "createdAt": _iso(event.created_at),
    }
    if occupancy is not None:
        data["inscritosActuales"] = occupancy
        data["disponible"] = occupancy < event.capacity
    return data


def serialize_registration(registration: Registration, event: Event | None = None, with_event: bool = False) -> dict:
    data = {
        "id": registration.id,
        "eventoId": registration.event_id,
        "eventoNombre": registration.event_name,
        "nombre": registration.attendee.name,
        "email": registration.attendee.email,
        "telefono": registration.attendee.phone,
        "fechaInscripcion": _iso(registration.created_at),
        "fechaActualizacion": _iso(registration.updated_at),
        "estado": registration.status,
    }
    if with_event:
        data["evento"] = serialize_event(event) if event is not None else None
    return data


def serialize_user(user: User) -> dict:
    """Public view of a user; never includes the password hash."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "profile": {
            "firstName": user.profile.first_name,
            "lastName": user.profile.last_name,
            "phone": user.profile.phone,
            "avatar": user.profile.avatar,
        },
        "isActive": user.is_active,
        "createdAt": _iso(user.created_at),
        "updatedAt": _iso(user.updated_at),
    }
