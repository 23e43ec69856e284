from __future__ import annotations

import re
import unicodedata
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from accountcore.service.errors import ValidationError
from accountcore.storage.models import Role

_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9!#$%&'*+/=?^_`{|}~.-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_PHONE_PATTERN = re.compile(r"^[0-9+\-() ]{10,20}$")
_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class Address(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    street: Optional[str] = Field(default=None, max_length=200)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20, alias="zipCode")
    country: Optional[str] = Field(default=None, max_length=100)


class AvailabilitySlot(BaseModel):
    day: Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _validate_time(cls, value: str) -> str:
        if not _TIME_PATTERN.match(value):
            raise ValueError("time must be HH:MM")
        return value


class BaseProfile(BaseModel):
    """Fields every role shares. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    first_name: str = Field(min_length=1, max_length=50, alias="firstName")
    last_name: str = Field(min_length=1, max_length=50, alias="lastName")
    phone: Optional[str] = None
    address: Optional[Address] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _PHONE_PATTERN.match(value):
            raise ValueError("invalid phone number format")
        return value


class CustomerProfile(BaseProfile):
    role: Literal["customer"] = "customer"
    preferred_contact_method: Literal["email", "phone", "sms"] = Field(
        default="email", alias="preferredContactMethod"
    )


class ProviderProfile(BaseProfile):
    role: Literal["provider"] = "provider"
    skills: List[str] = Field(min_length=1, max_length=50)
    experience_years: int = Field(default=0, ge=0, le=80, alias="experience")
    hourly_rate: Optional[float] = Field(default=None, ge=0, alias="hourlyRate")
    bio: Optional[str] = Field(default=None, max_length=1000)
    certifications: List[str] = Field(default_factory=list)
    availability: List[AvailabilitySlot] = Field(default_factory=list)


class AdminProfile(BaseProfile):
    role: Literal["admin"] = "admin"
    department: Optional[str] = Field(default=None, max_length=100)


Profile = Annotated[
    Union[CustomerProfile, ProviderProfile, AdminProfile],
    Field(discriminator="role"),
]

_PROFILE_ADAPTER: TypeAdapter = TypeAdapter(Profile)


def _errors(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def parse_profile(role: Union[Role, str], data: Optional[dict]) -> BaseProfile:
    """Validate ``data`` against the profile schema of ``role``."""
    try:
        role_value = Role(role).value
    except ValueError:
        raise ValidationError("unknown role", detail={"role": str(role)})
    payload = dict(data or {})
    claimed = payload.pop("role", role_value)
    if claimed != role_value:
        raise ValidationError("profile role does not match account role")
    try:
        return _PROFILE_ADAPTER.validate_python({**payload, "role": role_value})
    except PydanticValidationError as exc:
        raise ValidationError("invalid profile", detail={"errors": _errors(exc)})


def normalize_registration_email(email: str) -> str:
    try:
        return validate_email(email)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "email"})


def dump_profile(profile: BaseProfile) -> dict:
    return profile.model_dump(mode="json", exclude_none=True, exclude={"role"})
