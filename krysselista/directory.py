"""Profiles, roles, children and guardian data."""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, TransportError, ValidationError
from .schemas import (
    AuthorizedPickupPerson,
    Child,
    ChildWithGuardians,
    GuardianLink,
    Role,
    UserWithRoles,
)
from .supabase import SessionContext, parse_uuid

logger = logging.getLogger(__name__)

CHILD_COLUMNS = "id,name,birth_date,photo_url,created_at"


async def get_profile(session: SessionContext) -> UserWithRoles:
    rows = await session.supabase.select(
        "profiles",
        params={"select": "id,full_name,email,created_at", "id": f"eq.{session.user_id}", "limit": "1"},
    )
    row = rows[0] if rows else {"id": session.user_id, "email": session.user_email}
    return UserWithRoles(**row, roles=sorted(session.roles, key=lambda role: role.value))


async def list_my_children(session: SessionContext) -> List[Child]:
    links = await session.supabase.select(
        "parent_children",
        params={"select": "child_id", "parent_id": f"eq.{session.user_id}"},
    )
    child_ids = sorted({str(link["child_id"]) for link in links if link.get("child_id")})
    if not child_ids:
        return []
    rows = await session.supabase.select(
        "children",
        params={"select": CHILD_COLUMNS, "id": f"in.({','.join(child_ids)})", "order": "name.asc"},
    )
    return [Child.model_validate(row) for row in rows]


async def choose_role(session: SessionContext, role: Role) -> List[Role]:
    """Onboarding: replace the default parent role with the one the user picked."""

    await session.supabase.delete(
        "user_roles",
        params={"user_id": f"eq.{session.user_id}", "role": f"eq.{Role.PARENT.value}"},
    )
    await session.supabase.upsert(
        "user_roles",
        {"user_id": session.user_id, "role": Role(role).value},
        on_conflict="user_id,role",
    )
    roles = await session.refresh_roles()
    logger.info("role chosen", extra={"user_id": session.user_id, "role": Role(role).value})
    return sorted(roles, key=lambda item: item.value)


async def list_users(session: SessionContext) -> List[UserWithRoles]:
    session.require_role(Role.ADMIN)
    profiles = await session.supabase.select(
        "profiles", params={"select": "id,full_name,email,created_at", "order": "full_name.asc"}
    )
    role_rows = await session.supabase.select("user_roles", params={"select": "user_id,role"})
    roles_by_user: Dict[str, List[Role]] = {}
    for row in role_rows:
        try:
            role = Role(row.get("role"))
        except ValueError:
            continue
        roles_by_user.setdefault(str(row.get("user_id")), []).append(role)
    return [
        UserWithRoles(
            **profile,
            roles=sorted(roles_by_user.get(str(profile["id"]), []), key=lambda role: role.value),
        )
        for profile in profiles
    ]


async def list_children(session: SessionContext) -> List[ChildWithGuardians]:
    session.require_role(Role.ADMIN)
    children = await session.supabase.select(
        "children", params={"select": CHILD_COLUMNS, "order": "name.asc"}
    )
    links = await session.supabase.select("parent_children", params={"select": "parent_id,child_id"})
    parent_ids = sorted({str(link["parent_id"]) for link in links if link.get("parent_id")})
    names: Dict[str, Optional[str]] = {}
    if parent_ids:
        profiles = await session.supabase.select(
            "profiles",
            params={"select": "id,full_name", "id": f"in.({','.join(parent_ids)})"},
        )
        names = {str(profile["id"]): profile.get("full_name") for profile in profiles}
    guardians: Dict[str, List[str]] = {}
    for link in links:
        name = names.get(str(link.get("parent_id")))
        if name:
            guardians.setdefault(str(link.get("child_id")), []).append(name)
    return [
        ChildWithGuardians(**child, guardians=guardians.get(str(child["id"]), []))
        for child in children
    ]


async def create_child(
    session: SessionContext,
    name: Optional[str],
    *,
    birth_date: Optional[date] = None,
    photo_url: Optional[str] = None,
) -> Child:
    session.require_role(Role.ADMIN)
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Barnet må ha et navn.")
    payload: Dict[str, Any] = {"name": cleaned}
    if birth_date:
        payload["birth_date"] = birth_date.isoformat()
    if photo_url:
        payload["photo_url"] = photo_url
    rows = await session.supabase.insert("children", payload, params={"select": CHILD_COLUMNS})
    if not rows:
        raise TransportError("Kunne ikke legge til barn.")
    child = Child.model_validate(rows[0])
    logger.info("child created", extra={"child_id": child.id})
    return child


async def assign_role(session: SessionContext, user_id: str, role: Role) -> None:
    session.require_role(Role.ADMIN)
    target = parse_uuid(user_id, "user_id")
    await session.supabase.upsert(
        "user_roles",
        {"user_id": target, "role": Role(role).value},
        on_conflict="user_id,role",
    )
    logger.info("role assigned", extra={"user_id": target, "role": Role(role).value})


async def revoke_role(session: SessionContext, user_id: str, role: Role) -> None:
    session.require_role(Role.ADMIN)
    target = parse_uuid(user_id, "user_id")
    await session.supabase.delete(
        "user_roles",
        params={"user_id": f"eq.{target}", "role": f"eq.{Role(role).value}"},
    )
    logger.info("role revoked", extra={"user_id": target, "role": Role(role).value})


async def link_guardian(session: SessionContext, link: GuardianLink) -> GuardianLink:
    session.require_role(Role.ADMIN)
    payload = {
        "parent_id": parse_uuid(link.parent_id, "parent_id"),
        "child_id": parse_uuid(link.child_id, "child_id"),
        "relationship": link.relationship,
        "is_primary": link.is_primary,
    }
    rows = await session.supabase.upsert("parent_children", payload, on_conflict="parent_id,child_id")
    return GuardianLink.model_validate(rows[0] if rows else payload)


async def add_authorized_pickup(
    session: SessionContext,
    child_id: str,
    name: Optional[str],
    *,
    relationship: Optional[str] = None,
    phone: Optional[str] = None,
) -> AuthorizedPickupPerson:
    session.require_role(Role.ADMIN)
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Navn på hentetillatt person mangler.")
    child_uuid = parse_uuid(child_id, "child_id")
    rows = await session.supabase.insert(
        "authorized_pickups",
        {"child_id": child_uuid, "name": cleaned, "relationship": relationship, "phone": phone},
    )
    if not rows:
        raise NotFoundError("Fant ikke barnet.")
    return AuthorizedPickupPerson.model_validate(rows[0])


async def remove_authorized_pickup(session: SessionContext, pickup_id: str) -> None:
    session.require_role(Role.ADMIN)
    await session.supabase.delete(
        "authorized_pickups",
        params={"id": f"eq.{parse_uuid(pickup_id, 'pickup_id')}"},
    )
