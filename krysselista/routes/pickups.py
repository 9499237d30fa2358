from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from .. import pickups
from ..schemas import CreatePickupPayload, PickupRequest
from ..supabase import SessionContext, get_session_context

router = APIRouter(prefix="/api/v1", tags=["pickups"])


@router.post("/pickups", response_model=PickupRequest, status_code=201)
async def create_pickup_endpoint(
    payload: CreatePickupPayload,
    session: SessionContext = Depends(get_session_context),
) -> PickupRequest:
    return await pickups.create_request(
        session,
        payload.child_id,
        payload.pickup_person_name,
        payload.pickup_person_id,
    )


@router.get("/pickups/pending", response_model=List[PickupRequest])
async def list_pending_endpoint(
    session: SessionContext = Depends(get_session_context),
) -> List[PickupRequest]:
    return await pickups.list_pending(session)


@router.get("/pickups/approved", response_model=List[PickupRequest])
async def list_approved_endpoint(
    limit: Optional[int] = Query(None, description="Number of recent approvals (1-100)"),
    session: SessionContext = Depends(get_session_context),
) -> List[PickupRequest]:
    return await pickups.list_approved(session, limit)


@router.get("/pickups/mine", response_model=List[PickupRequest])
async def list_my_pickups_endpoint(
    limit: int = Query(20, ge=1, le=100),
    session: SessionContext = Depends(get_session_context),
) -> List[PickupRequest]:
    return await pickups.list_parent_requests(session, limit)


@router.post("/pickups/{request_id}/approve", response_model=PickupRequest)
async def approve_pickup_endpoint(
    request_id: str,
    session: SessionContext = Depends(get_session_context),
) -> PickupRequest:
    return await pickups.approve_request(session, request_id)


@router.post("/pickups/{request_id}/reject", response_model=PickupRequest)
async def reject_pickup_endpoint(
    request_id: str,
    session: SessionContext = Depends(get_session_context),
) -> PickupRequest:
    return await pickups.reject_request(session, request_id)
