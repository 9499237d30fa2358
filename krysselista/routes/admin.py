from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from .. import directory
from ..schemas import (
    AuthorizedPickupPerson,
    Child,
    ChildWithGuardians,
    GuardianLink,
    Role,
    UserWithRoles,
)
from ..supabase import SessionContext, get_session_context

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


class CreateChildPayload(BaseModel):
    name: str
    birth_date: Optional[date] = None
    photo_url: Optional[str] = None


class AssignRolePayload(BaseModel):
    role: Role


class AuthorizedPickupPayload(BaseModel):
    name: str
    relationship: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)


@router.get("/users", response_model=List[UserWithRoles])
async def list_users_endpoint(
    session: SessionContext = Depends(get_session_context),
) -> List[UserWithRoles]:
    return await directory.list_users(session)


@router.post("/users/{user_id}/roles", status_code=204)
async def assign_role_endpoint(
    user_id: str,
    payload: AssignRolePayload,
    session: SessionContext = Depends(get_session_context),
) -> None:
    await directory.assign_role(session, user_id, payload.role)


@router.delete("/users/{user_id}/roles/{role}", status_code=204)
async def revoke_role_endpoint(
    user_id: str,
    role: Role,
    session: SessionContext = Depends(get_session_context),
) -> None:
    await directory.revoke_role(session, user_id, role)


@router.get("/children", response_model=List[ChildWithGuardians])
async def list_children_endpoint(
    session: SessionContext = Depends(get_session_context),
) -> List[ChildWithGuardians]:
    return await directory.list_children(session)


@router.post("/children", response_model=Child, status_code=201)
async def create_child_endpoint(
    payload: CreateChildPayload,
    session: SessionContext = Depends(get_session_context),
) -> Child:
    return await directory.create_child(
        session,
        payload.name,
        birth_date=payload.birth_date,
        photo_url=payload.photo_url,
    )


@router.post("/guardians", response_model=GuardianLink, status_code=201)
async def link_guardian_endpoint(
    payload: GuardianLink,
    session: SessionContext = Depends(get_session_context),
) -> GuardianLink:
    return await directory.link_guardian(session, payload)


@router.post(
    "/children/{child_id}/authorized-pickups",
    response_model=AuthorizedPickupPerson,
    status_code=201,
)
async def add_authorized_pickup_endpoint(
    child_id: str,
    payload: AuthorizedPickupPayload,
    session: SessionContext = Depends(get_session_context),
) -> AuthorizedPickupPerson:
    return await directory.add_authorized_pickup(
        session,
        child_id,
        payload.name,
        relationship=payload.relationship,
        phone=payload.phone,
    )


@router.delete("/authorized-pickups/{pickup_id}", status_code=204)
async def remove_authorized_pickup_endpoint(
    pickup_id: str,
    session: SessionContext = Depends(get_session_context),
) -> None:
    await directory.remove_authorized_pickup(session, pickup_id)
