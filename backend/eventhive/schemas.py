from datetime import datetime, timezone
from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .models import DEFAULT_MAX_ATTENDEES, RegistrationStatus, UserRole

DataT = TypeVar("DataT")

SelfServiceRole = Literal["student", "organizer"]
EventStatus = Literal["upcoming", "past"]


def normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to timezone-aware UTC instances."""
    if not value:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

USERNAME_PATTERN = r"^[A-Za-z0-9]+$"


class Envelope(BaseModel, Generic[DataT]):
    success: bool = True
    message: Optional[str] = None
    data: Optional[DataT] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class UserRegister(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=100)
    role: SelfServiceRole = "student"


class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    id: int
    username: str
    email: EmailStr
    role: UserRole
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "updated_at")
    @classmethod
    def as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return normalize_dt(v)


class AuthData(BaseModel):
    user: UserResponse
    token: str


class UserData(BaseModel):
    user: UserResponse


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: Optional[EmailStr] = None

    @model_validator(mode="after")
    def require_one_field(self):
        if not self.username and not self.email:
            raise ValueError("At least one field (username or email) is required")
        return self


class PasswordChange(BaseModel):
    current_password: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("current_password", "currentPassword")
    )
    new_password: str = Field(
        ..., min_length=6, max_length=100, validation_alias=AliasChoices("new_password", "newPassword")
    )


class TokenData(BaseModel):
    user_id: int
    username: Optional[str] = None
    role: UserRole


class EventWrite(BaseModel):
    """Full set of mutable event fields; used for both create and replace."""

    title: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    date: datetime
    location: Optional[str] = Field(None, max_length=200)
    max_attendees: int = Field(DEFAULT_MAX_ATTENDEES, ge=1, le=10000)

    @field_validator("date")
    @classmethod
    def date_in_future(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        v = v.astimezone(timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("Event date must be in the future")
        return v


class EventResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    date: datetime
    location: Optional[str] = None
    max_attendees: int
    created_by: int
    created_by_username: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    current_attendees: int = 0
    is_full: bool = False
    status: EventStatus


class EventData(BaseModel):
    event: EventResponse


class EventListData(BaseModel):
    events: List[EventResponse]
    pagination: Pagination


class RegistrationCreate(BaseModel):
    event_id: int = Field(..., ge=1)


class RegistrationStatusUpdate(BaseModel):
    status: RegistrationStatus


class BulkStatusUpdate(BaseModel):
    registration_ids: List[int] = Field(..., min_length=1)
    status: RegistrationStatus


class RegistrationResponse(BaseModel):
    id: int
    event_id: int
    user_id: int
    status: RegistrationStatus
    registered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("registered_at", "updated_at")
    @classmethod
    def as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return normalize_dt(v)


class RegistrationData(BaseModel):
    registration: RegistrationResponse


class RegistrationEventSummary(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    date: datetime
    location: Optional[str] = None
    max_attendees: int
    organizer_username: Optional[str] = None


class MyRegistrationResponse(BaseModel):
    id: int
    status: RegistrationStatus
    registered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    event: RegistrationEventSummary


class MyRegistrationListData(BaseModel):
    registrations: List[MyRegistrationResponse]
    pagination: Pagination


class RegistrantSummary(BaseModel):
    id: int
    username: str
    email: EmailStr


class ManagedRegistrationResponse(BaseModel):
    id: int
    status: RegistrationStatus
    registered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    event_id: int
    event_title: str
    event_date: datetime
    user: RegistrantSummary


class ManagedRegistrationListData(BaseModel):
    registrations: List[ManagedRegistrationResponse]
    pagination: Pagination


class BulkStatusData(BaseModel):
    updated_count: int
    status: RegistrationStatus
    registrations: List[RegistrationResponse]
