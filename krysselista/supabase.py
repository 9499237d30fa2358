from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
from uuid import UUID

import httpx
import jwt
from fastapi import Header
from jwt import PyJWKClient

from .config import get_config
from .errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    TransportError,
    ValidationError,
)
from .schemas import Role

logger = logging.getLogger(__name__)

RLS_VIOLATION_CODE = "42501"


@lru_cache
def _supabase_config() -> tuple[str, str]:
    config = get_config()
    return config.rest_base_url, config.supabase_anon_key


@lru_cache
def _jwks_client() -> PyJWKClient:
    return PyJWKClient(get_config().jwks_url)


def parse_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthorizationError("Mangler innloggingstoken.", status_code=401)
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthorizationError("Ugyldig innloggingstoken.", status_code=401)
    return parts[1]


def parse_uuid(value: Optional[str], label: str) -> str:
    if not value:
        raise ValidationError(f"Mangler {label}.")
    try:
        return str(UUID(str(value)))
    except ValueError as exc:
        raise ValidationError(f"Ugyldig {label}.") from exc


def resolve_optional_uuid(value: Optional[str], label: str) -> Optional[str]:
    if not value:
        return None
    return parse_uuid(value, label)


def _describe_response(resp: httpx.Response) -> str:
    try:
        return resp.text or "<empty response>"
    except Exception:
        return "<unable to read response>"


def _error_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("code")
    return None


def _raise_supabase_error(
    resp: httpx.Response,
    action: str,
    *,
    object_label: Optional[str] = None,
) -> None:
    detail = _describe_response(resp)
    label = f" ({object_label})" if object_label else ""
    logger.warning(
        "supabase request failed",
        extra={
            "action": action,
            "object": object_label,
            "status": resp.status_code,
            "body": detail[:500],
        },
    )
    status = resp.status_code
    if status in (401, 403) or _error_code(resp) == RLS_VIOLATION_CODE:
        raise AuthorizationError()
    if status == 404:
        raise NotFoundError(f"Fant ikke data{label}.")
    if status == 409:
        raise StateConflictError()
    if 400 <= status < 500:
        raise ValidationError(f"Supabase {action} ble avvist{label}.")
    raise TransportError()


@dataclass
class SupabaseClient:
    base_url: str
    anon_key: str
    access_token: str
    timeout: float = 15.0

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=self._headers(headers),
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "supabase unreachable",
                extra={"method": method, "table": table, "error": str(exc)},
            )
            raise TransportError() from exc

    async def select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = await self.request("GET", table, params=params)
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "select", object_label=f"table={table}")
        return resp.json()

    async def insert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "insert", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def upsert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        on_conflict: str,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=payload,
            headers={
                "Prefer": "resolution=ignore-duplicates,return=representation",
            },
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "upsert", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def update(
        self,
        table: str,
        payload: Dict[str, Any],
        params: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """PATCH every row matching ``params`` and return the rows actually changed.

        An empty list means no row matched, which is how conditional updates
        report that their precondition no longer holds.
        """
        resp = await self.request(
            "PATCH",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "update", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def delete(self, table: str, params: Dict[str, Any]) -> None:
        resp = await self.request("DELETE", table, params=params)
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "delete", object_label=f"table={table}")


def _client_for_token(token: str) -> SupabaseClient:
    base_url, anon_key = _supabase_config()
    return SupabaseClient(
        base_url=base_url,
        anon_key=anon_key,
        access_token=token,
        timeout=get_config().http_timeout,
    )


async def verify_access_token(token: str, *, verify_exp: bool = True) -> Dict[str, Any]:
    """Return the claims of a Supabase access token.

    ``verify_exp=False`` still checks the signature; sign-out uses it so an
    expired session can be identified and torn down.
    """
    config = get_config()
    audience = config.supabase_jwt_aud
    options = {"verify_aud": bool(audience), "verify_exp": verify_exp}
    try:
        signing_key = _jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience=audience if audience else None,
            options=options,
        )
    except jwt.PyJWTError:
        logger.debug("jwks verification unavailable, trying shared secret")

    secret = config.supabase_jwt_secret
    if secret:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                audience=audience if audience else None,
                options=options,
            )
        except jwt.PyJWTError as exc:
            raise AuthorizationError("Ugyldig eller utløpt token.", status_code=401) from exc

    base_url, anon_key = _supabase_config()
    try:
        async with httpx.AsyncClient(timeout=config.http_timeout) as client:
            resp = await client.get(
                f"{base_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": anon_key,
                },
            )
    except httpx.HTTPError as exc:
        raise TransportError() from exc
    if resp.status_code >= 400:
        raise AuthorizationError("Ugyldig eller utløpt token.", status_code=401)
    data = resp.json() if resp.content else {}
    user_id = data.get("id")
    if not user_id:
        raise AuthorizationError("Ugyldig eller utløpt token.", status_code=401)
    return {"sub": user_id, "email": data.get("email")}


def _parse_roles(rows: Iterable[Dict[str, Any]]) -> FrozenSet[Role]:
    roles = set()
    for row in rows:
        try:
            roles.add(Role(row.get("role")))
        except ValueError:
            logger.warning("unknown role ignored", extra={"role": row.get("role")})
    return frozenset(roles)


@dataclass
class SessionContext:
    """Per-session caller identity with a cached role set.

    Roles are read once when the context is built. A role change made
    elsewhere is only visible after ``refresh_roles``.
    """

    user_id: str
    user_email: Optional[str]
    access_token: str
    supabase: SupabaseClient
    roles: FrozenSet[Role] = field(default_factory=frozenset)
    roles_loaded_at: Optional[datetime] = None

    def has_role(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)

    def require_role(self, *roles: Role) -> None:
        if not self.has_role(*roles):
            logger.info(
                "role check failed",
                extra={
                    "user_id": self.user_id,
                    "required": [role.value for role in roles],
                    "held": sorted(role.value for role in self.roles),
                },
            )
            raise AuthorizationError()

    async def refresh_roles(self) -> FrozenSet[Role]:
        rows = await self.supabase.select(
            "user_roles",
            params={"select": "role", "user_id": f"eq.{self.user_id}"},
        )
        self.roles = _parse_roles(rows)
        self.roles_loaded_at = datetime.now(tz=timezone.utc)
        return self.roles


async def build_session_context(token: str) -> SessionContext:
    payload = await verify_access_token(token)
    user_id = parse_uuid(payload.get("sub"), "user_id")
    user_email = payload.get("email") if isinstance(payload, dict) else None
    session = SessionContext(
        user_id=user_id,
        user_email=user_email,
        access_token=token,
        supabase=_client_for_token(token),
    )
    await session.refresh_roles()
    return session


async def get_session_context(
    authorization: Optional[str] = Header(None),
) -> SessionContext:
    token = parse_bearer_token(authorization)
    return await build_session_context(token)
