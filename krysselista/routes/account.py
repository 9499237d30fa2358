from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from .. import auth
from ..auth import AuthSession, AuthUser
from ..realtime import ChangeFeed, get_change_feed
from ..supabase import parse_bearer_token, verify_access_token

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


class SignUpPayload(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., min_length=1)


class SignInPayload(BaseModel):
    email: str
    password: str


@router.post("/signup", response_model=AuthSession, status_code=201)
async def sign_up_endpoint(payload: SignUpPayload) -> AuthSession:
    return await auth.sign_up(payload.email, payload.password, payload.full_name)


@router.post("/signin", response_model=AuthSession)
async def sign_in_endpoint(payload: SignInPayload) -> AuthSession:
    return await auth.sign_in(payload.email, payload.password)


@router.post("/signout", status_code=204)
async def sign_out_endpoint(
    authorization: Optional[str] = Header(None),
    change_feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    token = parse_bearer_token(authorization)
    claims = await verify_access_token(token, verify_exp=False)
    # Live notification feeds end with the session, even an expired one.
    change_feed.stop_streams(str(claims.get("sub")))
    await auth.sign_out(token)


@router.get("/me", response_model=AuthUser)
async def current_user_endpoint(authorization: Optional[str] = Header(None)) -> AuthUser:
    return await auth.get_current_user(parse_bearer_token(authorization))
