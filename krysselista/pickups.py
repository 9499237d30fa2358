"""Pickup request workflow: creation, approval/rejection and listings."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .config import get_config
from .errors import AuthorizationError, NotFoundError, StateConflictError, TransportError, ValidationError
from .realtime import ChangeFeed, ChangeType, get_change_feed
from .schemas import (
    STAFF_ROLES,
    LastPickup,
    PickupOption,
    PickupRequest,
    PickupStatus,
    Role,
)
from .supabase import SessionContext, parse_uuid

logger = logging.getLogger(__name__)

PICKUP_TABLE = "pickup_logs"
PICKUP_COLUMNS = (
    "id,child_id,parent_id,pickup_person_name,pickup_person_id,status,"
    "requested_at,approved_by,approved_at"
)
PARENT_OPTION_ID = "parent"
PARENT_OPTION_FALLBACK_NAME = "Meg selv"
PARENT_OPTION_RELATIONSHIP = "Forelder"

TRANSITIONS = {
    PickupStatus.PENDING: frozenset({PickupStatus.APPROVED, PickupStatus.REJECTED}),
    PickupStatus.APPROVED: frozenset(),
    PickupStatus.REJECTED: frozenset(),
}


def can_transition(current: PickupStatus, target: PickupStatus) -> bool:
    return target in TRANSITIONS[PickupStatus(current)]


def ensure_transition(current: PickupStatus, target: PickupStatus) -> None:
    if not can_transition(current, target):
        raise StateConflictError()


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _in_list(values: Iterable[str]) -> str:
    return f"in.({','.join(values)})"


async def is_guardian(session: SessionContext, child_id: str) -> bool:
    rows = await session.supabase.select(
        "parent_children",
        params={
            "select": "id",
            "parent_id": f"eq.{session.user_id}",
            "child_id": f"eq.{child_id}",
            "limit": "1",
        },
    )
    return bool(rows)


async def require_guardian(session: SessionContext, child_id: str) -> None:
    if not await is_guardian(session, child_id):
        logger.info(
            "guardian check failed",
            extra={"user_id": session.user_id, "child_id": child_id},
        )
        raise AuthorizationError("Du er ikke registrert som foresatt for dette barnet.")


async def fetch_request_row(session: SessionContext, request_id: str) -> Optional[Dict[str, Any]]:
    rows = await session.supabase.select(
        PICKUP_TABLE,
        params={"select": PICKUP_COLUMNS, "id": f"eq.{request_id}", "limit": "1"},
    )
    return rows[0] if rows else None


async def fetch_child_name(session: SessionContext, child_id: Optional[str]) -> Optional[str]:
    if not child_id:
        return None
    rows = await session.supabase.select(
        "children",
        params={"select": "id,name", "id": f"eq.{child_id}", "limit": "1"},
    )
    return rows[0].get("name") if rows else None


async def _parent_display_name(session: SessionContext) -> str:
    rows = await session.supabase.select(
        "profiles",
        params={"select": "full_name", "id": f"eq.{session.user_id}", "limit": "1"},
    )
    name = (rows[0].get("full_name") if rows else None) or ""
    return name.strip() or PARENT_OPTION_FALLBACK_NAME


async def _attach_names(session: SessionContext, rows: List[Dict[str, Any]]) -> List[PickupRequest]:
    if not rows:
        return []
    child_ids = sorted({str(row["child_id"]) for row in rows if row.get("child_id")})
    parent_ids = sorted({str(row["parent_id"]) for row in rows if row.get("parent_id")})
    children = await session.supabase.select(
        "children", params={"select": "id,name", "id": _in_list(child_ids)}
    )
    profiles = await session.supabase.select(
        "profiles", params={"select": "id,full_name", "id": _in_list(parent_ids)}
    )
    child_names = {str(item["id"]): item.get("name") for item in children}
    parent_names = {str(item["id"]): item.get("full_name") for item in profiles}
    requests = []
    for row in rows:
        request = PickupRequest.model_validate(row)
        request.child_name = child_names.get(request.child_id)
        request.parent_name = parent_names.get(request.parent_id)
        requests.append(request)
    return requests


async def list_pickup_options(session: SessionContext, child_id: str) -> List[PickupOption]:
    """Return the parent themself followed by the child's authorized pickup persons."""

    session.require_role(Role.PARENT)
    child_uuid = parse_uuid(child_id, "child_id")
    await require_guardian(session, child_uuid)
    rows = await session.supabase.select(
        "authorized_pickups",
        params={"select": "id,name,relationship", "child_id": f"eq.{child_uuid}", "order": "name.asc"},
    )
    options = [
        PickupOption(
            id=PARENT_OPTION_ID,
            name=await _parent_display_name(session),
            relationship=PARENT_OPTION_RELATIONSHIP,
        )
    ]
    options.extend(
        PickupOption(id=str(row["id"]), name=row["name"], relationship=row.get("relationship"))
        for row in rows
    )
    return options


async def _resolve_pickup_person(
    session: SessionContext,
    child_id: str,
    label: str,
    pickup_person_id: Optional[str],
) -> tuple[str, Optional[str]]:
    # A selected option always supplies its own name; free text only stands
    # alone when nothing was selected.
    if not pickup_person_id:
        return label, None
    if pickup_person_id == PARENT_OPTION_ID:
        return await _parent_display_name(session), None
    person_id = parse_uuid(pickup_person_id, "pickup_person_id")
    rows = await session.supabase.select(
        "authorized_pickups",
        params={
            "select": "id,name",
            "id": f"eq.{person_id}",
            "child_id": f"eq.{child_id}",
            "limit": "1",
        },
    )
    if not rows:
        raise ValidationError("Personen har ikke lov til å hente dette barnet.")
    if label and label != rows[0]["name"]:
        logger.info(
            "pickup label replaced by selected person",
            extra={"pickup_person_id": person_id, "child_id": child_id},
        )
    return rows[0]["name"], person_id


async def create_request(
    session: SessionContext,
    child_id: Optional[str],
    pickup_person_label: Optional[str],
    pickup_person_id: Optional[str] = None,
    *,
    change_feed: Optional[ChangeFeed] = None,
) -> PickupRequest:
    """Announce that ``child_id`` will be collected; the new request starts pending.

    The pickup person's name is stored as a snapshot so later edits to the
    authorized list do not rewrite history.
    """

    session.require_role(Role.PARENT)
    if not child_id:
        raise ValidationError("Velg et barn.")
    child_uuid = parse_uuid(child_id, "child_id")
    label = (pickup_person_label or "").strip()
    if not label and not pickup_person_id:
        raise ValidationError("Velg hvem som skal hente.")

    await require_guardian(session, child_uuid)
    label, person_id = await _resolve_pickup_person(session, child_uuid, label, pickup_person_id)
    if not label:
        raise ValidationError("Velg hvem som skal hente.")

    rows = await session.supabase.insert(
        PICKUP_TABLE,
        {
            "child_id": child_uuid,
            "parent_id": session.user_id,
            "pickup_person_name": label,
            "pickup_person_id": person_id,
            "status": PickupStatus.PENDING.value,
            "requested_at": _now_iso(),
        },
        params={"select": PICKUP_COLUMNS},
    )
    if not rows:
        raise TransportError("Kunne ikke sende hentingsvarsel.")
    row = rows[0]
    request = PickupRequest.model_validate(row)
    (change_feed or get_change_feed()).publish(PICKUP_TABLE, ChangeType.INSERT, new=row)
    logger.info(
        "pickup requested",
        extra={"request_id": request.id, "child_id": request.child_id, "parent_id": session.user_id},
    )
    return request


async def _transition(
    session: SessionContext,
    request_id: str,
    target: PickupStatus,
    change_feed: Optional[ChangeFeed],
) -> PickupRequest:
    session.require_role(*STAFF_ROLES)
    request_uuid = parse_uuid(request_id, "request_id")
    updates: Dict[str, Any] = {"status": target.value}
    if target is PickupStatus.APPROVED:
        updates["approved_by"] = session.user_id
        updates["approved_at"] = _now_iso()

    # Only a row that is still pending may change; a concurrent decision
    # leaves nothing to update.
    rows = await session.supabase.update(
        PICKUP_TABLE,
        updates,
        params={
            "id": f"eq.{request_uuid}",
            "status": f"eq.{PickupStatus.PENDING.value}",
            "select": PICKUP_COLUMNS,
        },
    )
    if not rows:
        current = await fetch_request_row(session, request_uuid)
        if current is None:
            raise NotFoundError()
        logger.info(
            "pickup transition conflict",
            extra={
                "request_id": request_uuid,
                "current": current.get("status"),
                "target": target.value,
                "user_id": session.user_id,
            },
        )
        ensure_transition(PickupStatus(current["status"]), target)
        # Still pending yet nothing was updated: the row policy refused the write.
        raise AuthorizationError()

    row = rows[0]
    request = PickupRequest.model_validate(row)
    (change_feed or get_change_feed()).publish(
        PICKUP_TABLE,
        ChangeType.UPDATE,
        new=row,
        old={"id": request.id, "status": PickupStatus.PENDING.value},
    )
    logger.info(
        "pickup decided",
        extra={
            "request_id": request.id,
            "child_id": request.child_id,
            "status": target.value,
            "user_id": session.user_id,
        },
    )
    return request


async def approve_request(
    session: SessionContext,
    request_id: str,
    *,
    change_feed: Optional[ChangeFeed] = None,
) -> PickupRequest:
    return await _transition(session, request_id, PickupStatus.APPROVED, change_feed)


async def reject_request(
    session: SessionContext,
    request_id: str,
    *,
    change_feed: Optional[ChangeFeed] = None,
) -> PickupRequest:
    return await _transition(session, request_id, PickupStatus.REJECTED, change_feed)


async def list_pending(session: SessionContext) -> List[PickupRequest]:
    session.require_role(*STAFF_ROLES)
    rows = await session.supabase.select(
        PICKUP_TABLE,
        params={
            "select": PICKUP_COLUMNS,
            "status": f"eq.{PickupStatus.PENDING.value}",
            "order": "requested_at.desc",
        },
    )
    return await _attach_names(session, rows)


async def list_approved(session: SessionContext, limit: Optional[int] = None) -> List[PickupRequest]:
    session.require_role(*STAFF_ROLES)
    if limit is None:
        limit = get_config().approved_history_limit
    if limit < 1 or limit > 100:
        raise ValidationError("limit må være mellom 1 og 100.")
    rows = await session.supabase.select(
        PICKUP_TABLE,
        params={
            "select": PICKUP_COLUMNS,
            "status": f"eq.{PickupStatus.APPROVED.value}",
            "order": "approved_at.desc",
            "limit": str(limit),
        },
    )
    return await _attach_names(session, rows)


async def list_parent_requests(session: SessionContext, limit: int = 20) -> List[PickupRequest]:
    session.require_role(Role.PARENT)
    rows = await session.supabase.select(
        PICKUP_TABLE,
        params={
            "select": PICKUP_COLUMNS,
            "parent_id": f"eq.{session.user_id}",
            "order": "requested_at.desc",
            "limit": str(limit),
        },
    )
    return await _attach_names(session, rows)


async def last_pickup(session: SessionContext, child_id: str) -> Optional[LastPickup]:
    """Most recent approved pickup of ``child_id``: who collected and when it was approved."""

    child_uuid = parse_uuid(child_id, "child_id")
    if not session.has_role(*STAFF_ROLES):
        session.require_role(Role.PARENT)
        await require_guardian(session, child_uuid)
    rows = await session.supabase.select(
        PICKUP_TABLE,
        params={
            "select": "pickup_person_name,approved_at",
            "child_id": f"eq.{child_uuid}",
            "status": f"eq.{PickupStatus.APPROVED.value}",
            "order": "approved_at.desc",
            "limit": "1",
        },
    )
    if not rows or not rows[0].get("approved_at"):
        return None
    return LastPickup(name=rows[0]["pickup_person_name"], time=rows[0]["approved_at"])
