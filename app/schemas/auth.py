"""Authentication schemas."""

from enum import Enum

from pydantic import BaseModel, Field


class UserType(str, Enum):
    """Kind of account behind a token."""

    PATIENT = "PATIENT"
    STAFF = "STAFF"


class StaffRole(str, Enum):
    """Staff roles that influence booking source and permissions."""

    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CENTRE_MANAGER = "CENTRE_MANAGER"
    FRONT_DESK = "FRONT_DESK"
    CARE_COORDINATOR = "CARE_COORDINATOR"
    CLINICIAN = "CLINICIAN"


class TokenPayload(BaseModel):
    """Claims carried by an access token."""

    sub: str
    user_type: UserType
    roles: list[str] = Field(default_factory=list)
    type: str = "access"


class Actor(BaseModel):
    """The authenticated user acting on a request."""

    user_id: int
    user_type: UserType
    roles: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def is_patient(self) -> bool:
        return self.user_type == UserType.PATIENT

    @property
    def is_staff(self) -> bool:
        return self.user_type == UserType.STAFF

    def has_role(self, *roles: str) -> bool:
        """Check whether the actor holds any of the given roles."""
        return any(role in self.roles for role in roles)
