"""Relay Supabase Realtime ``postgres_changes`` into the local change feed.

Without the relay only writes made through this process reach live sessions.
With it, inserts and updates from other workers, other clients or the SQL
editor arrive too. Writes made here are then seen twice; notification
handling re-reads the row and de-duplicates by request id, so that is
harmless.

The relay speaks the Phoenix channel protocol used by Supabase Realtime:
join one channel for the watched tables, send a heartbeat periodically, and
translate each ``postgres_changes`` message into ``ChangeFeed.publish``. A
dropped connection is retried with exponential backoff until ``stop()``.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional, Sequence
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from .config import AppConfig
from .realtime import ChangeFeed, ChangeType

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"


class RelayError(Exception):
    """The Realtime server refused or ended the channel."""


class RealtimeRelay:
    def __init__(
        self,
        feed: ChangeFeed,
        *,
        url: str,
        api_key: str,
        access_token: str,
        tables: Sequence[str] = ("pickup_logs",),
        schema: str = "public",
        heartbeat_interval: float = 25.0,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        connect: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.feed = feed
        self.url = url
        self.api_key = api_key
        self.access_token = access_token
        self.tables = tuple(tables)
        self.schema = schema
        self.heartbeat_interval = heartbeat_interval
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._connect = connect or websockets.connect
        self._refs = itertools.count(1)
        self._join_ref: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.joined = False
        self.connects = 0
        self.relayed = 0

    @property
    def topic(self) -> str:
        return f"realtime:{','.join(self.tables)}"

    @property
    def socket_url(self) -> str:
        query = urlencode({"apikey": self.api_key, "vsn": PROTOCOL_VERSION})
        return f"{self.url}?{query}"

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def join_message(self) -> Dict[str, Any]:
        self._join_ref = self._next_ref()
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {"event": "*", "schema": self.schema, "table": table} for table in self.tables
                    ],
                },
                "access_token": self.access_token,
            },
            "ref": self._join_ref,
        }

    def heartbeat_message(self) -> Dict[str, Any]:
        return {"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    def handle_message(self, message: Dict[str, Any]) -> None:
        """Apply one decoded server message; raise ``RelayError`` when the channel is gone."""
        event = message.get("event")
        payload = message.get("payload") or {}
        topic = message.get("topic")

        if event == "phx_reply":
            if message.get("ref") != self._join_ref:
                return
            if payload.get("status") != "ok":
                raise RelayError(f"channel join refused: {payload.get('response')}")
            self.joined = True
            logger.info("realtime relay joined", extra={"topic": self.topic})
            return

        if event == "postgres_changes":
            data = payload.get("data") or {}
            table = data.get("table")
            if table not in self.tables:
                return
            try:
                change_type = ChangeType(data.get("type"))
            except ValueError:
                logger.warning("realtime relay skipped change", extra={"type": data.get("type")})
                return
            self.feed.publish(
                table,
                change_type,
                new=data.get("record") or {},
                old=data.get("old_record") or {},
            )
            self.relayed += 1
            return

        if event == "system" and payload.get("status") == "error":
            raise RelayError(f"realtime system error: {payload.get('message')}")

        if event in ("phx_error", "phx_close") and topic == self.topic:
            raise RelayError(f"channel ended by server: {event}")

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await ws.send(json.dumps(self.heartbeat_message()))

    async def run_once(self) -> None:
        """Hold one connection until the server closes it or it fails."""
        self.joined = False
        async with self._connect(self.socket_url) as ws:
            self.connects += 1
            await ws.send(json.dumps(self.join_message()))
            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                async for raw in ws:
                    self.handle_message(json.loads(raw))
            finally:
                heartbeat.cancel()

    async def run(self) -> None:
        delay = self.initial_backoff
        while not self._stopping:
            try:
                await self.run_once()
                logger.info("realtime relay connection closed", extra={"topic": self.topic})
            except (OSError, ValueError, RelayError, WebSocketException) as exc:
                logger.warning(
                    "realtime relay disconnected",
                    extra={"topic": self.topic, "error": str(exc), "retry_in": delay},
                )
            if self._stopping:
                break
            if self.joined:
                delay = self.initial_backoff
            await asyncio.sleep(delay)
            delay = min(max(delay * 2, self.initial_backoff), self.max_backoff)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("realtime relay stopped", extra={"relayed": self.relayed, "connects": self.connects})


def build_realtime_relay(config: AppConfig, feed: ChangeFeed) -> Optional[RealtimeRelay]:
    """Return a relay for ``pickup_logs`` or None when it is disabled or cannot see all rows."""
    if not config.realtime_relay:
        return None
    if not config.supabase_url or not config.supabase_anon_key or not config.supabase_service_role_key:
        logger.info("realtime relay disabled: Supabase service role key not configured")
        return None
    return RealtimeRelay(
        feed,
        url=config.realtime_url,
        api_key=config.supabase_anon_key,
        access_token=config.supabase_service_role_key,
        heartbeat_interval=config.realtime_heartbeat_interval,
        max_backoff=config.realtime_max_backoff,
    )
