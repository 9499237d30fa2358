from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..errors import PickupError, TransportError
from ..notifications import NotificationInbox, notifications, open_notification_stream
from ..realtime import ChangeFeed, EventStream, get_change_feed
from ..supabase import SessionContext, build_session_context

router = APIRouter(tags=["realtime"])
logger = logging.getLogger(__name__)

CLOSE_UNAUTHORIZED = 4401
CLOSE_NO_FEED = 4403
CLOSE_TRY_AGAIN = 1013
INBOX_SIZE = 200


async def _pump_notifications(websocket: WebSocket, session: SessionContext, stream: EventStream) -> None:
    inbox = NotificationInbox(maxlen=INBOX_SIZE)
    async for note in notifications(session, stream):
        if inbox.push(note):
            await websocket.send_json({"event": "notification", "data": note.model_dump(mode="json")})


async def _listen(websocket: WebSocket) -> None:
    while True:
        data = await websocket.receive_text()
        if data and data.strip().lower() in {"ping", "keepalive"}:
            await websocket.send_text("pong")


@router.websocket("/api/v1/realtime")
async def realtime_feed(
    websocket: WebSocket,
    token: Optional[str] = None,
    change_feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    if not token:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return
    try:
        session = await build_session_context(token)
    except TransportError:
        # Supabase is unreachable; the token may still be good.
        await websocket.close(code=CLOSE_TRY_AGAIN)
        return
    except PickupError:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    stream = open_notification_stream(session, change_feed)
    if stream is None:
        await websocket.close(code=CLOSE_NO_FEED)
        return

    await websocket.accept()
    stream.start()
    await websocket.send_json(
        {
            "event": "subscribed",
            "data": {"roles": sorted(role.value for role in session.roles)},
        }
    )

    pump = asyncio.create_task(_pump_notifications(websocket, session, stream))
    listen = asyncio.create_task(_listen(websocket))
    done: set = set()
    try:
        done, _ = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(
                    "realtime connection failed",
                    exc_info=exc,
                    extra={"user_id": session.user_id},
                )
    finally:
        for task in (pump, listen):
            if not task.done():
                task.cancel()
        stream.stop()

    if pump in done:
        # The stream was stopped elsewhere (sign-out); end the socket too.
        try:
            await websocket.close()
        except RuntimeError:
            logger.debug("realtime socket already closed", extra={"user_id": session.user_id})
