from fastapi import FastAPI, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi import status
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Optional, Literal
from datetime import date
from contextlib import asynccontextmanager
import logging
import re
import time

import config
from auth import (
    create_access_token,
    get_current_user,
    hash_password,
    login_rate_limit,
    require_admin,
)
from database import Database
from errors import DomainError, ErrorCode, RateLimitedError, ValidationError
from manager import EventManager, RegistrationLedger, UserManager
from models import Attendee, Claims, EventFilter, EventPatch, ProfilePatch, UserPatch, EVENT_ACTIVE
from utils import (
    check_user_permission,
    envelope,
    parse_date,
    serialize_event,
    serialize_registration,
    serialize_user,
)

# Logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Database
db = Database(admin_password_hash=hash_password(config.ADMIN_PASSWORD))


# FastAPI App
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Event registration API starting ({config.APP_ENV})")
    yield
    logger.info("Releasing in-memory store")
    db.close()

app = FastAPI(title="CorvoEvents API", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Init
events = EventManager(db)
ledger = RegistrationLedger(db, events)
users = UserManager(db)

# -------------------------------
# Error handling
# -------------------------------
STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.INVALID_TOKEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.EVENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.REGISTRATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CAPACITY_EXCEEDED: status.HTTP_409_CONFLICT,
    ErrorCode.DUPLICATE_REGISTRATION: status.HTTP_409_CONFLICT,
    ErrorCode.DUPLICATE_USER: status.HTTP_409_CONFLICT,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    body = {"success": False, "message": exc.message, "code": exc.code.value}
    headers = None
    if isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = exc.errors
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.code == ErrorCode.UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=STATUS_BY_CODE[exc.code], content=body, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e["loc"] if p not in ("body", "query", "path")), "msg": e["msg"]}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "Datos inválidos", "errors": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Ruta no encontrada" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message})


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = {"success": False, "message": "Error interno del servidor"}
    if config.is_development():
        body["error"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed_ms:.1f}ms")
    return response

# -------------------------------
# Schemas
# -------------------------------
PASSWORD_RULE = re.compile(r"^(?=.*[A-Za-z])(?=.*\d)(?=.*[@_-])")
PHONE_PATTERN = r"^[0-9]{9}$"
PHONE_RULE = re.compile(r"[0-9]{9}")
USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"


def _check_password(value: str) -> str:
    if not PASSWORD_RULE.match(value):
        raise ValueError("La contraseña debe contener letras, números y al menos uno de estos caracteres: @, -, _")
    return value


def _check_phone(value):
    # Runs before whitespace stripping: padded numbers are rejected, not trimmed.
    if value is not None and not (isinstance(value, str) and PHONE_RULE.fullmatch(value)):
        raise ValueError("El teléfono debe tener exactamente 9 dígitos")
    return value


class AttendeeIn(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        json_schema_extra={"example": {"nombre": "Ana Torres", "email": "ana@corvo.pe", "telefono": "987654321"}},
    )

    nombre: str = Field(min_length=2, max_length=100)
    email: EmailStr
    telefono: str = Field(pattern=PHONE_PATTERN)

    @field_validator("telefono", mode="before")
    @classmethod
    def phone_rule(cls, value):
        return _check_phone(value)

    def to_attendee(self) -> Attendee:
        return Attendee(name=self.nombre, email=str(self.email).lower(), phone=self.telefono)


class RegistrationUpdate(AttendeeIn):
    eventoId: int = Field(ge=1)


class EventCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    nombre: str = Field(min_length=3, max_length=200)
    descripcion: Optional[str] = Field(None, max_length=1000)
    ubicacion: str = Field(min_length=2, max_length=100)
    fecha: date
    fechaFin: Optional[date] = None
    hora: str = Field(pattern=r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
    capacidadMaxima: int = Field(ge=1, le=10000)
    precio: float = Field(ge=0)
    categoria: str = Field(min_length=2, max_length=50)
    imagen: Optional[str] = None


class EventUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    nombre: Optional[str] = Field(None, min_length=3, max_length=200)
    descripcion: Optional[str] = Field(None, max_length=1000)
    ubicacion: Optional[str] = Field(None, min_length=2, max_length=100)
    fecha: Optional[date] = None
    fechaFin: Optional[date] = None
    hora: Optional[str] = Field(None, pattern=r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
    capacidadMaxima: Optional[int] = Field(None, ge=1, le=10000)
    precio: Optional[float] = Field(None, ge=0)
    categoria: Optional[str] = Field(None, min_length=2, max_length=50)
    estado: Optional[Literal["activo", "inactivo"]] = None
    imagen: Optional[str] = None


class UserRegister(BaseModel):
    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(min_length=6)

    @field_validator("password")
    @classmethod
    def password_rule(cls, value: str) -> str:
        return _check_password(value)


class UserLogin(BaseModel):
    identifier: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ProfileIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    firstName: Optional[str] = Field(None, min_length=2, max_length=50)
    lastName: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    avatar: Optional[str] = None

    @field_validator("phone", mode="before")
    @classmethod
    def phone_rule(cls, value):
        return _check_phone(value)


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: Optional[EmailStr] = None
    profile: Optional[ProfileIn] = None

    def to_patch(self, **extra) -> UserPatch:
        profile = None
        if self.profile is not None:
            profile = ProfilePatch(
                first_name=self.profile.firstName,
                last_name=self.profile.lastName,
                phone=self.profile.phone,
                avatar=self.profile.avatar,
            )
        return UserPatch(
            username=self.username,
            email=str(self.email) if self.email else None,
            profile=profile,
            **extra,
        )


class AdminUserUpdate(UserUpdate):
    role: Optional[Literal["admin", "user"]] = None
    isActive: Optional[bool] = None


class PasswordChange(BaseModel):
    currentPassword: str = Field(min_length=1)
    newPassword: str = Field(min_length=6)

    @field_validator("newPassword")
    @classmethod
    def password_rule(cls, value: str) -> str:
        return _check_password(value)


def _session_payload(user) -> dict:
    return {
        "user": {"id": user.id, "username": user.username, "email": user.email, "role": user.role},
        "token": create_access_token(user),
    }

# -------------------------------
# Auth Routes
# -------------------------------
@app.get("/", response_model=dict, summary="API root endpoint")
def root():
    """Welcome message for the event registration API."""
    return envelope(message="Welcome to CorvoEvents API", data={})


@app.post("/auth/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register a new user")
def register(body: UserRegister):
    """Create a regular user account and log it in."""
    user = users.create(body.username, str(body.email), body.password)
    return envelope(_session_payload(user), message="Usuario registrado exitosamente")


@app.post("/auth/login", response_model=dict, summary="Login and receive an access token",
          dependencies=[Depends(login_rate_limit)])
def login(body: UserLogin):
    """Authenticate by username or email."""
    user = users.authenticate(body.identifier, body.password)
    logger.info(f"User {user.username} logged in")
    return envelope(_session_payload(user), message="Inicio de sesión exitoso")


@app.get("/auth/me", response_model=dict, summary="Current session claims")
def me(claims: Claims = Depends(get_current_user)):
    return envelope({"user": {
        "id": claims.id,
        "username": claims.username,
        "email": claims.email,
        "role": claims.role,
        "exp": claims.expires_at.isoformat(),
    }})


@app.post("/auth/logout", response_model=dict, summary="Logout")
def logout():
    """Stateless logout: the client discards its token, which stays valid until it expires."""
    return envelope(message="Sesión cerrada exitosamente")

# -------------------------------
# Event Routes
# -------------------------------
@app.get("/events", response_model=dict, summary="List events")
def list_events(
    categoria: Optional[str] = None,
    ubicacion: Optional[str] = None,
    fecha: Optional[str] = None,
    estado: str = EVENT_ACTIVE,
):
    """List events with their current occupancy, earliest first."""
    event_filter = EventFilter(
        category=categoria,
        location=ubicacion,
        date=parse_date(fecha) if fecha else None,
        status=estado,
    )
    data = [serialize_event(e, ledger.compute_occupancy(e.id)) for e in events.list_events(event_filter)]
    return envelope(data, total=len(data))


@app.post("/events", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a new event")
def create_event(body: EventCreate, admin: Claims = Depends(require_admin)):
    """Create a new event (admins only)."""
    event = events.create_event(
        name=body.nombre,
        description=body.descripcion,
        location=body.ubicacion,
        date=body.fecha,
        end_date=body.fechaFin,
        time=body.hora,
        capacity=body.capacidadMaxima,
        price=body.precio,
        category=body.categoria,
        image=body.imagen,
    )
    logger.info(f"Event {event.id} created by {admin.username}")
    return envelope(serialize_event(event, 0), message="Evento creado exitosamente")


# Registration routes under /events/inscripciones come before /events/{event_id}
@app.get("/events/inscripciones/mis-inscripciones", response_model=dict, summary="Registrations of an attendee")
def my_registrations(email: Optional[str] = None):
    if not email:
        raise ValidationError("Email requerido", [{"field": "email", "msg": "Email requerido"}])
    data = [serialize_registration(r, e, with_event=True) for r, e in ledger.list_by_attendee(email)]
    return envelope(data, total=len(data))


@app.get("/events/inscripciones/{registration_id}", response_model=dict, summary="Get a registration")
def get_registration(registration_id: int):
    return envelope(serialize_registration(ledger.get(registration_id)))


@app.put("/events/inscripciones/{registration_id}", response_model=dict, summary="Update a registration")
def update_registration(registration_id: int, body: RegistrationUpdate):
    """Change the attendee details or move the registration to another event."""
    registration = ledger.update(registration_id, body.to_attendee(), body.eventoId)
    return envelope(serialize_registration(registration), message="Inscripción actualizada exitosamente")


@app.delete("/events/inscripciones/{registration_id}", response_model=dict, summary="Cancel a registration")
def delete_registration(registration_id: int):
    registration = ledger.delete(registration_id)
    return envelope(serialize_registration(registration), message="Inscripción eliminada exitosamente")


@app.get("/events/{event_id}", response_model=dict, summary="Get an event")
def get_event(event_id: int):
    """Event details with occupancy and its registrations."""
    event = events.get_event(event_id)
    registrations = ledger.list_for_event(event_id)
    data = serialize_event(event, ledger.compute_occupancy(event_id))
    data["inscripciones"] = [serialize_registration(r) for r in registrations]
    return envelope(data)


@app.put("/events/{event_id}", response_model=dict, summary="Update an event")
def update_event(event_id: int, body: EventUpdate, admin: Claims = Depends(require_admin)):
    """Update an existing event (admins only). Absent fields keep their value."""
    patch = EventPatch(
        name=body.nombre,
        description=body.descripcion,
        location=body.ubicacion,
        date=body.fecha,
        end_date=body.fechaFin,
        time=body.hora,
        capacity=body.capacidadMaxima,
        price=body.precio,
        category=body.categoria,
        status=body.estado,
        image=body.imagen,
    )
    event = events.update_event(event_id, patch)
    logger.info(f"Event {event_id} updated by {admin.username}")
    return envelope(serialize_event(event, ledger.compute_occupancy(event_id)), message="Evento actualizado exitosamente")


@app.delete("/events/{event_id}", response_model=dict, summary="Delete an event")
def delete_event(event_id: int, admin: Claims = Depends(require_admin)):
    """Delete an event and its registrations (admins only)."""
    event = events.delete_event(event_id)
    logger.info(f"Event {event_id} deleted by {admin.username}")
    return envelope(serialize_event(event), message="Evento eliminado exitosamente")


@app.post("/events/{event_id}/inscribirse", response_model=dict, status_code=status.HTTP_201_CREATED,
          summary="Register an attendee for an event")
def enroll(event_id: int, body: AttendeeIn):
    """Register an attendee for an active event with free places."""
    registration = ledger.enroll(event_id, body.to_attendee())
    return envelope(serialize_registration(registration), message="¡Inscripción exitosa!")

# -------------------------------
# User Routes
# -------------------------------
@app.get("/users", response_model=dict, summary="List users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[Literal["admin", "user"]] = None,
    status_filter: Optional[Literal["active", "inactive"]] = Query(None, alias="status"),
    admin: Claims = Depends(require_admin),
):
    page_of_users, pagination = users.list_users(search=search, role=role, status=status_filter, page=page, limit=limit)
    return envelope([serialize_user(u) for u in page_of_users], pagination=pagination)


@app.get("/users/profile", response_model=dict, summary="Current user's profile")
def get_profile(claims: Claims = Depends(get_current_user)):
    return envelope(serialize_user(users.get_user(claims.id)))


@app.put("/users/profile", response_model=dict, summary="Update current user's profile")
def update_profile(body: UserUpdate, claims: Claims = Depends(get_current_user)):
    user = users.update_user(claims.id, body.to_patch())
    return envelope(serialize_user(user), message="Perfil actualizado exitosamente")


@app.put("/users/password", response_model=dict, summary="Change password")
def change_password(body: PasswordChange, claims: Claims = Depends(get_current_user)):
    users.change_password(claims.id, body.currentPassword, body.newPassword)
    return envelope(message="Contraseña actualizada exitosamente")


@app.get("/users/stats/overview", response_model=dict, summary="User statistics")
def user_stats(admin: Claims = Depends(require_admin)):
    return envelope(users.stats())


@app.get("/users/{user_id}", response_model=dict, summary="Get a user")
def get_user(user_id: int, claims: Claims = Depends(get_current_user)):
    """Admins may read any user; everyone else only themselves."""
    check_user_permission(claims, user_id)
    return envelope(serialize_user(users.get_user(user_id)))


@app.put("/users/{user_id}", response_model=dict, summary="Update a user")
def update_user(user_id: int, body: AdminUserUpdate, admin: Claims = Depends(require_admin)):
    user = users.update_user(user_id, body.to_patch(role=body.role, is_active=body.isActive))
    logger.info(f"User {user_id} updated by {admin.username}")
    return envelope(serialize_user(user), message="Usuario actualizado exitosamente")


@app.delete("/users/{user_id}", response_model=dict, summary="Delete a user")
def delete_user(user_id: int, admin: Claims = Depends(require_admin)):
    user = users.delete_user(user_id)
    logger.info(f"User {user_id} deleted by {admin.username}")
    return envelope({"id": user.id, "username": user.username, "email": user.email},
                    message="Usuario eliminado exitosamente")


@app.post("/users/{user_id}/toggle-status", response_model=dict, summary="Activate or deactivate a user")
def toggle_user_status(user_id: int, admin: Claims = Depends(require_admin)):
    user = users.toggle_status(user_id)
    state = "activado" if user.is_active else "desactivado"
    return envelope({"id": user.id, "username": user.username, "isActive": user.is_active},
                    message=f"Usuario {state} exitosamente")
