"""Thin client for the Supabase GoTrue endpoints used by the app."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from .config import get_config
from .errors import AuthorizationError, TransportError, ValidationError

logger = logging.getLogger(__name__)


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None


class AuthSession(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "bearer"
    user: AuthUser


def _user_from_payload(data: Dict[str, Any]) -> AuthUser:
    metadata = data.get("user_metadata") or {}
    return AuthUser(id=data["id"], email=data.get("email"), full_name=metadata.get("full_name"))


def _auth_error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return "Innlogging feilet."
    if isinstance(body, dict):
        return body.get("msg") or body.get("error_description") or body.get("message") or "Innlogging feilet."
    return "Innlogging feilet."


async def _call(
    method: str,
    path: str,
    *,
    json: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, str]] = None,
    access_token: Optional[str] = None,
) -> httpx.Response:
    config = get_config()
    base_url = config.rest_base_url
    headers = {"apikey": config.supabase_anon_key, "Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    try:
        async with httpx.AsyncClient(timeout=config.http_timeout) as client:
            resp = await client.request(
                method,
                f"{base_url}/auth/v1/{path}",
                json=json,
                params=params,
                headers=headers,
            )
    except httpx.HTTPError as exc:
        logger.warning("auth service unreachable", extra={"path": path, "error": str(exc)})
        raise TransportError() from exc
    if resp.status_code >= 500:
        logger.warning("auth service failed", extra={"path": path, "status": resp.status_code})
        raise TransportError()
    if resp.status_code >= 400:
        raise AuthorizationError(_auth_error_message(resp), status_code=resp.status_code if resp.status_code in (401, 403) else 400)
    return resp


def _session_from_payload(data: Dict[str, Any]) -> AuthSession:
    user_payload = data.get("user") or data
    return AuthSession(
        access_token=data.get("access_token"),
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
        token_type=data.get("token_type") or "bearer",
        user=_user_from_payload(user_payload),
    )


async def sign_up(email: str, password: str, full_name: str) -> AuthSession:
    """Create an account; the project's signup trigger gives new users the parent role.

    When email confirmation is enabled GoTrue returns the user without a
    session, so ``access_token`` may be empty.
    """

    full_name = (full_name or "").strip()
    if not email or not password or not full_name:
        raise ValidationError("E-post, passord og navn må fylles ut.")
    resp = await _call(
        "POST",
        "signup",
        json={"email": email, "password": password, "data": {"full_name": full_name}},
    )
    session = _session_from_payload(resp.json())
    logger.info("user signed up", extra={"user_id": session.user.id})
    return session


async def sign_in(email: str, password: str) -> AuthSession:
    if not email or not password:
        raise ValidationError("E-post og passord må fylles ut.")
    resp = await _call(
        "POST",
        "token",
        params={"grant_type": "password"},
        json={"email": email, "password": password},
    )
    return _session_from_payload(resp.json())


async def sign_out(access_token: str) -> None:
    try:
        await _call("POST", "logout", access_token=access_token)
    except AuthorizationError as exc:
        if exc.status_code not in (401, 403):
            raise
        # Expired or unknown session: nothing left to end.
        logger.info("sign-out of expired session", extra={"status": exc.status_code})


async def get_current_user(access_token: str) -> AuthUser:
    resp = await _call("GET", "user", access_token=access_token)
    return _user_from_payload(resp.json())
