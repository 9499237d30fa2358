"""Turn pickup change events into user-facing notifications.

An event is only a cue: the request row is re-read before anything is shown,
so duplicated or reordered events cannot produce a stale alert.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from .errors import PickupError
from .pickups import PICKUP_TABLE, fetch_child_name, fetch_request_row
from .realtime import ChangeEvent, ChangeFeed, ChangeFilter, ChangeType, EventStream, get_change_feed
from .schemas import STAFF_ROLES, NotificationKind, PickupNotification, PickupStatus, Role
from .supabase import SessionContext

logger = logging.getLogger(__name__)

REQUESTED_TITLE = "Ny henting meldt!"
APPROVED_TITLE = "Henting godkjent!"
STAFF_CHILD_FALLBACK = "Barn"
PARENT_CHILD_FALLBACK = "Barnet"


def staff_filter() -> ChangeFilter:
    return ChangeFilter(
        table=PICKUP_TABLE,
        event=ChangeType.INSERT.value,
        filter=f"status=eq.{PickupStatus.PENDING.value}",
    )


def parent_filter(user_id: str) -> ChangeFilter:
    return ChangeFilter(
        table=PICKUP_TABLE,
        event=ChangeType.UPDATE.value,
        filter=f"parent_id=eq.{user_id}",
    )


def filters_for_session(session: SessionContext) -> List[ChangeFilter]:
    filters = []
    if session.has_role(*STAFF_ROLES):
        filters.append(staff_filter())
    if session.has_role(Role.PARENT):
        filters.append(parent_filter(session.user_id))
    return filters


def open_notification_stream(
    session: SessionContext,
    change_feed: Optional[ChangeFeed] = None,
) -> Optional[EventStream]:
    """Build (but do not start) the change stream this session should watch."""

    filters = filters_for_session(session)
    if not filters:
        return None
    return (change_feed or get_change_feed()).open_stream(
        *filters, name=f"notifications:{session.user_id}", owner=session.user_id
    )


def requested_notification(request_id: str, child_name: Optional[str], pickup_person: str) -> PickupNotification:
    child = child_name or STAFF_CHILD_FALLBACK
    return PickupNotification(
        kind=NotificationKind.PICKUP_REQUESTED,
        title=REQUESTED_TITLE,
        body=f"{child} skal hentes av {pickup_person}",
        child_name=child,
        pickup_person=pickup_person,
        request_id=request_id,
        tag=request_id,
        created_at=datetime.now(tz=timezone.utc),
    )


def approved_notification(request_id: str, child_name: Optional[str], pickup_person: str) -> PickupNotification:
    child = child_name or PARENT_CHILD_FALLBACK
    return PickupNotification(
        kind=NotificationKind.PICKUP_APPROVED,
        title=APPROVED_TITLE,
        body=f"{child} er klar til henting",
        child_name=child,
        pickup_person=pickup_person,
        request_id=request_id,
        tag=request_id,
        created_at=datetime.now(tz=timezone.utc),
    )


async def notification_for_event(
    session: SessionContext,
    change: ChangeEvent,
) -> Optional[PickupNotification]:
    request_id = change.record_id
    if change.table != PICKUP_TABLE or not request_id:
        return None
    row = await fetch_request_row(session, request_id)
    if row is None:
        return None
    status = row.get("status")
    pickup_person = row.get("pickup_person_name") or ""

    if (
        change.event is ChangeType.INSERT
        and status == PickupStatus.PENDING.value
        and session.has_role(*STAFF_ROLES)
    ):
        child_name = await fetch_child_name(session, row.get("child_id"))
        return requested_notification(request_id, child_name, pickup_person)

    if (
        change.event is ChangeType.UPDATE
        and status == PickupStatus.APPROVED.value
        and str(row.get("parent_id")) == session.user_id
    ):
        child_name = await fetch_child_name(session, row.get("child_id"))
        return approved_notification(request_id, child_name, pickup_person)

    return None


async def notifications(
    session: SessionContext,
    stream: EventStream,
) -> AsyncIterator[PickupNotification]:
    async for change in stream:
        try:
            note = await notification_for_event(session, change)
        except PickupError as exc:
            logger.warning(
                "notification lookup failed",
                extra={"record_id": change.record_id, "error": exc.message_text},
            )
            continue
        if note is not None:
            yield note


class NotificationInbox:
    """Latest notification per tag; a repeat for the same request replaces the old one.

    At most ``maxlen`` tags are kept; the least recently pushed tag is
    forgotten first.
    """

    def __init__(self, maxlen: int = 200) -> None:
        if maxlen < 1:
            raise ValueError("maxlen must be positive")
        self.maxlen = maxlen
        self._items: "OrderedDict[str, PickupNotification]" = OrderedDict()

    def push(self, note: PickupNotification) -> bool:
        """Store ``note``; return False when it repeats what is already shown."""
        existing = self._items.pop(note.tag, None)
        self._items[note.tag] = note
        while len(self._items) > self.maxlen:
            self._items.popitem(last=False)
        return existing is None or existing.kind != note.kind

    def dismiss(self, tag: str) -> None:
        self._items.pop(tag, None)

    def items(self) -> List[PickupNotification]:
        return list(reversed(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)
