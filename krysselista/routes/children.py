from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .. import directory, pickups
from ..schemas import Child, LastPickup, PickupOption, Role, UserWithRoles
from ..supabase import SessionContext, get_session_context

router = APIRouter(prefix="/api/v1", tags=["children"])


class ChooseRolePayload(BaseModel):
    role: Role


@router.get("/me", response_model=UserWithRoles)
async def me_endpoint(
    session: SessionContext = Depends(get_session_context),
) -> UserWithRoles:
    return await directory.get_profile(session)


@router.post("/me/roles/refresh", response_model=List[Role])
async def refresh_roles_endpoint(
    session: SessionContext = Depends(get_session_context),
) -> List[Role]:
    roles = await session.refresh_roles()
    return sorted(roles, key=lambda role: role.value)


@router.post("/onboarding/role", response_model=List[Role])
async def choose_role_endpoint(
    payload: ChooseRolePayload,
    session: SessionContext = Depends(get_session_context),
) -> List[Role]:
    return await directory.choose_role(session, payload.role)


@router.get("/children", response_model=List[Child])
async def my_children_endpoint(
    session: SessionContext = Depends(get_session_context),
) -> List[Child]:
    return await directory.list_my_children(session)


@router.get("/children/{child_id}/pickup-options", response_model=List[PickupOption])
async def pickup_options_endpoint(
    child_id: str,
    session: SessionContext = Depends(get_session_context),
) -> List[PickupOption]:
    return await pickups.list_pickup_options(session, child_id)


@router.get("/children/{child_id}/last-pickup", response_model=Optional[LastPickup])
async def last_pickup_endpoint(
    child_id: str,
    session: SessionContext = Depends(get_session_context),
) -> Optional[LastPickup]:
    return await pickups.last_pickup(session, child_id)
