import asyncio
from datetime import date
from uuid import uuid4

import pytest

from krysselista import directory
from krysselista.errors import AuthorizationError, ValidationError
from krysselista.schemas import GuardianLink, Role

from .supabase_helpers import InMemorySupabase, make_session, seed_family


def test_admin_operations_require_admin():
    fake = InMemorySupabase()
    employee = make_session(fake, Role.EMPLOYEE)

    with pytest.raises(AuthorizationError):
        asyncio.run(directory.list_users(employee))
    with pytest.raises(AuthorizationError):
        asyncio.run(directory.create_child(employee, "Emma"))
    with pytest.raises(AuthorizationError):
        asyncio.run(directory.assign_role(employee, str(uuid4()), Role.ADMIN))
    assert fake.calls == []


def test_create_child_trims_and_validates_name():
    fake = InMemorySupabase()
    admin = make_session(fake, Role.ADMIN)

    child = asyncio.run(directory.create_child(admin, "  Emma ", birth_date=date(2021, 3, 4)))

    assert child.name == "Emma"
    assert fake.rows("children")[0]["birth_date"] == "2021-03-04"
    with pytest.raises(ValidationError):
        asyncio.run(directory.create_child(admin, "   "))


def test_assign_role_is_idempotent():
    fake = InMemorySupabase()
    admin = make_session(fake, Role.ADMIN)
    target = str(uuid4())

    asyncio.run(directory.assign_role(admin, target, Role.EMPLOYEE))
    asyncio.run(directory.assign_role(admin, target, Role.EMPLOYEE))

    assert [row["role"] for row in fake.rows("user_roles")] == ["employee"]

    asyncio.run(directory.revoke_role(admin, target, Role.EMPLOYEE))
    assert fake.rows("user_roles") == []


def test_choose_role_replaces_parent_and_refreshes_session():
    fake = InMemorySupabase()
    user_id = str(uuid4())
    fake.rows("user_roles").append({"user_id": user_id, "role": "parent"})
    session = make_session(fake, Role.PARENT, user_id=user_id)

    roles = asyncio.run(directory.choose_role(session, Role.EMPLOYEE))

    assert roles == [Role.EMPLOYEE]
    assert session.roles == frozenset({Role.EMPLOYEE})
    assert [row["role"] for row in fake.rows("user_roles")] == ["employee"]


def test_list_users_collects_roles():
    fake = InMemorySupabase()
    parent_id = str(uuid4())
    seed_family(fake, parent_id=parent_id)
    fake.rows("user_roles").append({"user_id": parent_id, "role": "admin"})
    admin = make_session(fake, Role.ADMIN)

    users = asyncio.run(directory.list_users(admin))

    assert len(users) == 1
    assert users[0].full_name == "Kari Nordmann"
    assert users[0].roles == [Role.ADMIN, Role.PARENT]


def test_children_listing_includes_guardian_names():
    fake = InMemorySupabase()
    parent_id = str(uuid4())
    family = seed_family(fake, parent_id=parent_id)
    admin = make_session(fake, Role.ADMIN)
    parent = make_session(fake, Role.PARENT, user_id=parent_id)

    children = asyncio.run(directory.list_children(admin))
    mine = asyncio.run(directory.list_my_children(parent))

    assert [(child.name, child.guardians) for child in children] == [("Emma", ["Kari Nordmann"])]
    assert [child.id for child in mine] == [family["child_id"]]


def test_link_guardian_and_authorized_pickups():
    fake = InMemorySupabase()
    admin = make_session(fake, Role.ADMIN)
    child = asyncio.run(directory.create_child(admin, "Noah"))
    parent_id = str(uuid4())
    link = GuardianLink(parent_id=parent_id, child_id=child.id, relationship="far")

    asyncio.run(directory.link_guardian(admin, link))
    asyncio.run(directory.link_guardian(admin, link))
    person = asyncio.run(
        directory.add_authorized_pickup(admin, child.id, " Onkel Per ", relationship="Onkel")
    )

    assert len(fake.rows("parent_children")) == 1
    assert person.name == "Onkel Per"
    with pytest.raises(ValidationError):
        asyncio.run(directory.add_authorized_pickup(admin, child.id, ""))

    asyncio.run(directory.remove_authorized_pickup(admin, person.id))
    assert fake.rows("authorized_pickups") == []


def test_profile_falls_back_to_token_identity():
    fake = InMemorySupabase()
    session = make_session(fake, Role.EMPLOYEE)

    profile = asyncio.run(directory.get_profile(session))

    assert profile.id == session.user_id
    assert profile.email == "test@example.com"
    assert profile.roles == [Role.EMPLOYEE]
