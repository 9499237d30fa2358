import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from krysselista import pickups
from krysselista.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from krysselista.realtime import ChangeFeed
from krysselista.schemas import PickupStatus, Role

from .supabase_helpers import InMemorySupabase, make_session, seed_family


def _setup():
    fake = InMemorySupabase()
    parent_id = str(uuid4())
    family = seed_family(fake, parent_id=parent_id)
    parent = make_session(fake, Role.PARENT, user_id=parent_id)
    staff = make_session(fake, Role.EMPLOYEE)
    return fake, family, parent, staff


def test_create_request_starts_pending_with_snapshot_name():
    fake, family, parent, _ = _setup()
    feed = ChangeFeed()

    request = asyncio.run(
        pickups.create_request(parent, family["child_id"], "  Mormor Anne ", change_feed=feed)
    )

    assert request.status is PickupStatus.PENDING
    assert request.pickup_person_name == "Mormor Anne"
    assert request.parent_id == parent.user_id
    assert request.approved_at is None
    insert_calls = [call for call in fake.calls if call[0] == "insert"]
    _, table, payload, _ = insert_calls[0]
    assert table == "pickup_logs"
    assert payload["status"] == "pending"
    assert payload["pickup_person_id"] is None


def test_create_request_resolves_authorized_person_name_from_id():
    fake, family, parent, _ = _setup()
    person = family["authorized_pickups"][0]

    request = asyncio.run(
        pickups.create_request(parent, family["child_id"], None, person["id"], change_feed=ChangeFeed())
    )

    assert request.pickup_person_name == "Mormor Anne"
    assert request.pickup_person_id == person["id"]


def test_selected_person_name_wins_over_free_text():
    fake, family, parent, _ = _setup()
    person = family["authorized_pickups"][0]
    feed = ChangeFeed()

    by_id = asyncio.run(pickups.create_request(parent, family["child_id"], "Ukjent Mann", person["id"], change_feed=feed))
    as_parent = asyncio.run(pickups.create_request(parent, family["child_id"], "Ukjent Mann", "parent", change_feed=feed))

    assert by_id.pickup_person_name == "Mormor Anne"
    assert by_id.pickup_person_id == person["id"]
    assert as_parent.pickup_person_name == "Kari Nordmann"
    assert as_parent.pickup_person_id is None
    assert [row["pickup_person_name"] for row in fake.rows("pickup_logs")] == ["Mormor Anne", "Kari Nordmann"]


def test_create_request_for_parent_option_uses_profile_name():
    _, family, parent, _ = _setup()

    request = asyncio.run(
        pickups.create_request(parent, family["child_id"], "", "parent", change_feed=ChangeFeed())
    )

    assert request.pickup_person_name == "Kari Nordmann"
    assert request.pickup_person_id is None


@pytest.mark.parametrize(
    "child_id,label",
    [(None, "Mormor Anne"), ("", "Mormor Anne"), ("use-child", "   "), ("use-child", None)],
)
def test_create_request_requires_child_and_person(child_id, label):
    _, family, parent, _ = _setup()
    if child_id == "use-child":
        child_id = family["child_id"]

    with pytest.raises(ValidationError) as exc:
        asyncio.run(pickups.create_request(parent, child_id, label, change_feed=ChangeFeed()))

    assert exc.value.status_code == 400


def test_create_request_rejects_person_not_authorized_for_child():
    fake, family, parent, _ = _setup()
    other = seed_family(fake, parent_id=str(uuid4()), child_name="Noah", pickup_names=["Onkel Per"])

    with pytest.raises(ValidationError):
        asyncio.run(
            pickups.create_request(
                parent,
                family["child_id"],
                None,
                other["authorized_pickups"][0]["id"],
                change_feed=ChangeFeed(),
            )
        )


def test_non_guardian_cannot_create_request():
    fake, family, _, _ = _setup()
    stranger = make_session(fake, Role.PARENT)

    with pytest.raises(AuthorizationError) as exc:
        asyncio.run(
            pickups.create_request(stranger, family["child_id"], "Mormor Anne", change_feed=ChangeFeed())
        )

    assert exc.value.status_code == 403
    assert fake.rows("pickup_logs") == []


def test_staff_without_parent_role_cannot_create_request():
    _, family, _, staff = _setup()

    with pytest.raises(AuthorizationError):
        asyncio.run(pickups.create_request(staff, family["child_id"], "Mormor Anne", change_feed=ChangeFeed()))


def test_approve_records_approver_and_time():
    fake, family, parent, staff = _setup()
    feed = ChangeFeed()
    request = asyncio.run(pickups.create_request(parent, family["child_id"], "Mormor Anne", change_feed=feed))

    approved = asyncio.run(pickups.approve_request(staff, request.id, change_feed=feed))

    assert approved.status is PickupStatus.APPROVED
    assert approved.approved_by == staff.user_id
    assert approved.approved_at is not None
    update_calls = [call for call in fake.calls if call[0] == "update"]
    _, _, payload, params = update_calls[0]
    assert params["status"] == "eq.pending"
    assert params["id"] == f"eq.{request.id}"
    assert payload["status"] == "approved"


def test_reject_only_writes_status():
    fake, family, parent, staff = _setup()
    feed = ChangeFeed()
    request = asyncio.run(pickups.create_request(parent, family["child_id"], "Mormor Anne", change_feed=feed))

    rejected = asyncio.run(pickups.reject_request(staff, request.id, change_feed=feed))

    assert rejected.status is PickupStatus.REJECTED
    assert rejected.approved_by is None
    update_calls = [call for call in fake.calls if call[0] == "update"]
    assert update_calls[0][2] == {"status": "rejected"}


def test_parent_cannot_approve_or_reject():
    _, family, parent, _ = _setup()
    feed = ChangeFeed()
    request = asyncio.run(pickups.create_request(parent, family["child_id"], "Mormor Anne", change_feed=feed))

    with pytest.raises(AuthorizationError):
        asyncio.run(pickups.approve_request(parent, request.id, change_feed=feed))
    with pytest.raises(AuthorizationError):
        asyncio.run(pickups.reject_request(parent, request.id, change_feed=feed))


def test_admin_may_decide():
    fake, family, parent, _ = _setup()
    admin = make_session(fake, Role.ADMIN)
    feed = ChangeFeed()
    request = asyncio.run(pickups.create_request(parent, family["child_id"], "Mormor Anne", change_feed=feed))

    approved = asyncio.run(pickups.approve_request(admin, request.id, change_feed=feed))

    assert approved.status is PickupStatus.APPROVED


@pytest.mark.parametrize(
    "first,second",
    [
        (PickupStatus.APPROVED, PickupStatus.PENDING),
        (PickupStatus.APPROVED, PickupStatus.REJECTED),
        (PickupStatus.REJECTED, PickupStatus.APPROVED),
        (PickupStatus.REJECTED, PickupStatus.PENDING),
    ],
)
def test_terminal_states_do_not_transition(first, second):
    assert not pickups.can_transition(first, second)
    with pytest.raises(StateConflictError):
        pickups.ensure_transition(first, second)


def test_pending_transitions():
    assert pickups.can_transition(PickupStatus.PENDING, PickupStatus.APPROVED)
    assert pickups.can_transition(PickupStatus.PENDING, PickupStatus.REJECTED)
    assert not pickups.can_transition(PickupStatus.PENDING, PickupStatus.PENDING)


def test_second_decision_is_a_conflict():
    fake, family, parent, staff = _setup()
    feed = ChangeFeed()
    request = asyncio.run(pickups.create_request(parent, family["child_id"], "Mormor Anne", change_feed=feed))
    asyncio.run(pickups.approve_request(staff, request.id, change_feed=feed))

    with pytest.raises(StateConflictError) as exc:
        asyncio.run(pickups.reject_request(staff, request.id, change_feed=feed))

    assert exc.value.status_code == 409
    assert fake.rows("pickup_logs")[0]["status"] == "approved"


def test_deciding_unknown_request_is_not_found():
    _, _, _, staff = _setup()

    with pytest.raises(NotFoundError):
        asyncio.run(pickups.approve_request(staff, str(uuid4()), change_feed=ChangeFeed()))


def test_list_pending_only_pending_newest_first():
    fake, family, parent, staff = _setup()
    now = datetime.now(tz=timezone.utc)
    rows = fake.rows("pickup_logs")
    for offset, status in [(30, "pending"), (10, "pending"), (5, "approved"), (20, "rejected"), (1, "pending")]:
        rows.append(
            {
                "id": str(uuid4()),
                "child_id": family["child_id"],
                "parent_id": parent.user_id,
                "pickup_person_name": f"Person {offset}",
                "status": status,
                "requested_at": (now - timedelta(minutes=offset)).isoformat(),
                "approved_at": now.isoformat() if status == "approved" else None,
            }
        )

    pending = asyncio.run(pickups.list_pending(staff))

    assert [item.pickup_person_name for item in pending] == ["Person 1", "Person 10", "Person 30"]
    assert all(item.status is PickupStatus.PENDING for item in pending)
    assert pending[0].child_name == "Emma"
    assert pending[0].parent_name == "Kari Nordmann"


def test_list_pending_requires_staff():
    _, _, parent, _ = _setup()

    with pytest.raises(AuthorizationError):
        asyncio.run(pickups.list_pending(parent))


def test_list_approved_limit_and_order():
    fake, family, parent, staff = _setup()
    now = datetime.now(tz=timezone.utc)
    for index in range(5):
        fake.rows("pickup_logs").append(
            {
                "id": str(uuid4()),
                "child_id": family["child_id"],
                "parent_id": parent.user_id,
                "pickup_person_name": f"Person {index}",
                "status": "approved",
                "requested_at": (now - timedelta(hours=index + 1)).isoformat(),
                "approved_at": (now - timedelta(minutes=index)).isoformat(),
            }
        )

    approved = asyncio.run(pickups.list_approved(staff, limit=3))

    assert [item.pickup_person_name for item in approved] == ["Person 0", "Person 1", "Person 2"]
    with pytest.raises(ValidationError):
        asyncio.run(pickups.list_approved(staff, limit=0))


def test_mormor_anne_scenario():
    fake, family, parent, staff = _setup()
    feed = ChangeFeed()

    created = asyncio.run(pickups.create_request(parent, family["child_id"], "Mormor Anne", change_feed=feed))
    pending = asyncio.run(pickups.list_pending(staff))
    assert len(pending) == 1
    assert pending[0].child_id == family["child_id"]
    assert pending[0].pickup_person_name == "Mormor Anne"
    assert pending[0].status is PickupStatus.PENDING

    approved = asyncio.run(pickups.approve_request(staff, created.id, change_feed=feed))
    assert approved.status is PickupStatus.APPROVED
    assert [item.id for item in asyncio.run(pickups.list_approved(staff))] == [created.id]
    assert asyncio.run(pickups.list_pending(staff)) == []

    last = asyncio.run(pickups.last_pickup(parent, family["child_id"]))
    assert last is not None
    assert last.name == "Mormor Anne"
    assert last.time == approved.approved_at


def test_last_pickup_none_without_approvals_and_guarded_for_parents():
    fake, family, parent, staff = _setup()
    stranger = make_session(fake, Role.PARENT)

    assert asyncio.run(pickups.last_pickup(parent, family["child_id"])) is None
    assert asyncio.run(pickups.last_pickup(staff, family["child_id"])) is None
    with pytest.raises(AuthorizationError):
        asyncio.run(pickups.last_pickup(stranger, family["child_id"]))


def test_pickup_options_put_parent_first():
    _, family, parent, _ = _setup()

    options = asyncio.run(pickups.list_pickup_options(parent, family["child_id"]))

    assert options[0].id == "parent"
    assert options[0].name == "Kari Nordmann"
    assert options[0].relationship == "Forelder"
    assert [option.name for option in options[1:]] == ["Mormor Anne"]


def test_pickup_options_fallback_name_without_profile():
    fake = InMemorySupabase()
    parent_id = str(uuid4())
    family = seed_family(fake, parent_id=parent_id, pickup_names=[])
    fake.tables["profiles"] = []
    parent = make_session(fake, Role.PARENT, user_id=parent_id)

    options = asyncio.run(pickups.list_pickup_options(parent, family["child_id"]))

    assert [option.name for option in options] == ["Meg selv"]


def test_parent_sees_own_requests():
    fake, family, parent, staff = _setup()
    feed = ChangeFeed()
    asyncio.run(pickups.create_request(parent, family["child_id"], "Mormor Anne", change_feed=feed))
    other_parent = make_session(fake, Role.PARENT)

    mine = asyncio.run(pickups.list_parent_requests(parent))
    theirs = asyncio.run(pickups.list_parent_requests(other_parent))

    assert [item.pickup_person_name for item in mine] == ["Mormor Anne"]
    assert theirs == []
