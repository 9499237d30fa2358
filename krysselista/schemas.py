"""Pydantic schemas shared across the API."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    PARENT = "parent"
    EMPLOYEE = "employee"
    ADMIN = "admin"


STAFF_ROLES = (Role.EMPLOYEE, Role.ADMIN)


class PickupStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Profile(BaseModel):
    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None


class UserWithRoles(Profile):
    roles: List[Role] = Field(default_factory=list)


class Child(BaseModel):
    id: str
    name: str
    birth_date: Optional[date] = None
    photo_url: Optional[str] = None
    created_at: Optional[datetime] = None


class ChildWithGuardians(Child):
    guardians: List[str] = Field(default_factory=list, description="Guardian display names")


class GuardianLink(BaseModel):
    id: Optional[str] = None
    parent_id: str
    child_id: str
    relationship: Optional[str] = None
    is_primary: bool = False


class AuthorizedPickupPerson(BaseModel):
    id: str
    child_id: str
    name: str
    relationship: Optional[str] = None
    phone: Optional[str] = None


class PickupOption(BaseModel):
    id: str = Field(description="'parent' for the requesting parent, else the authorized pickup id")
    name: str
    relationship: Optional[str] = None


class PickupRequest(BaseModel):
    id: str
    child_id: str
    parent_id: str
    pickup_person_name: str
    pickup_person_id: Optional[str] = None
    status: PickupStatus
    requested_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    child_name: Optional[str] = None
    parent_name: Optional[str] = None


class LastPickup(BaseModel):
    name: str
    time: datetime


class CreatePickupPayload(BaseModel):
    child_id: Optional[str] = None
    pickup_person_name: Optional[str] = None
    pickup_person_id: Optional[str] = Field(
        default=None,
        description="Authorized pickup id; omit or 'parent' when the parent collects",
    )


class NotificationKind(str, Enum):
    PICKUP_REQUESTED = "pickup_requested"
    PICKUP_APPROVED = "pickup_approved"


class PickupNotification(BaseModel):
    kind: NotificationKind
    title: str
    body: str
    child_name: str
    pickup_person: str
    request_id: str
    tag: str
    created_at: datetime
