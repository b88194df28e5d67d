from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from models import Program, User
from services.entitlements import subscription_projection


class CamelModel(BaseModel):
    """Wire format is camelCase; unknown fields are dropped."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def envelope(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def body_fields(model: type) -> set:
    """Every accepted spelling (camelCase alias and field name) of a model's fields."""
    names = set()
    for name, field in model.model_fields.items():
        names.add(name)
        names.add(field.alias or to_camel(name))
    return names


# --- Auth ---

class SignupRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=256)
    first_name: str = Field(min_length=1, max_length=80)
    last_name: str = Field(min_length=1, max_length=80)
    phone: Optional[str] = Field(default=None, max_length=40)
    dob: Optional[str] = Field(default=None, max_length=20)
    gender: Optional[str] = Field(default=None, max_length=30)
    activity_status: Optional[str] = Field(default=None, max_length=60)
    goals: Optional[str] = Field(default=None, max_length=1000)
    reason: Optional[str] = Field(default=None, max_length=1000)


class VerifyEmailRequest(CamelModel):
    email: str = Field(max_length=320)
    otp: str = Field(pattern=r"^\d{6}$")


class EmailOnlyRequest(CamelModel):
    email: str = Field(max_length=320)


class LoginRequest(CamelModel):
    email: str = Field(max_length=320)
    password: str = Field(max_length=256)


class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1, max_length=512, validation_alias=AliasChoices("token", "resetToken"))
    new_password: str = Field(max_length=256)


class LogoutRequest(CamelModel):
    everywhere: bool = False


class ProfileUpdateRequest(CamelModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    phone: Optional[str] = Field(default=None, max_length=40)
    dob: Optional[str] = Field(default=None, max_length=20)
    gender: Optional[str] = Field(default=None, max_length=30)
    activity_status: Optional[str] = Field(default=None, max_length=60)
    goals: Optional[str] = Field(default=None, max_length=1000)
    reason: Optional[str] = Field(default=None, max_length=1000)

    def to_patch(self) -> Dict[str, Any]:
        patch = self.model_dump(exclude_unset=True)
        # Names are required columns; a null means "leave as is".
        for required in ("first_name", "last_name"):
            if patch.get(required) is None:
                patch.pop(required, None)
        return patch


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(max_length=256)
    new_password: str = Field(max_length=256)


class UserOut(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    dob: Optional[str] = None
    gender: Optional[str] = None
    activity_status: Optional[str] = None
    goals: Optional[str] = None
    reason: Optional[str] = None
    role: str
    is_email_verified: bool
    active_subscription: Optional[Dict[str, Any]] = None
    purchased_program_slugs: List[str] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> Dict[str, Any]:
        return cls(
            id=str(user.id),
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            dob=user.dob,
            gender=user.gender,
            activity_status=user.activity_status,
            goals=user.goals,
            reason=user.reason,
            role=user.role,
            is_email_verified=user.is_email_verified,
            active_subscription=subscription_projection(user.active_subscription),
            purchased_program_slugs=sorted(user.purchased_program_slugs),
            created_at=user.created_at,
            updated_at=user.updated_at,
        ).model_dump(mode="json", by_alias=True)


# --- Subscriptions / programs ---

class SubscriptionCreateRequest(CamelModel):
    plan: str = Field(max_length=40)
    # Accepted for client compatibility; hosted checkout collects the card.
    payment_method_id: Optional[str] = Field(default=None, max_length=255)


class CancelSubscriptionRequest(CamelModel):
    at_period_end: bool = True


class ProgramOut(CamelModel):
    id: str
    slug: str
    title: str
    author: Optional[str] = None
    description: str = ""
    difficulty: str
    duration: Optional[str] = None

    @classmethod
    def from_program(cls, program: Program) -> Dict[str, Any]:
        return cls(
            id=str(program.id),
            slug=program.slug,
            title=program.title,
            author=program.author,
            description=program.description,
            difficulty=program.difficulty,
            duration=program.duration,
        ).model_dump(mode="json", by_alias=True)


# --- Admin ---

class AdminRoleRequest(CamelModel):
    # Named newRole because "role" is never accepted from a request body.
    new_role: Literal["user", "trainer", "admin"]


class AdminGrantProgramRequest(CamelModel):
    program_slug: str = Field(min_length=1, max_length=100)
