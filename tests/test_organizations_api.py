"""
HTTP tests for organization and user routes, plus organization resolution
for route guards.
"""
from datetime import timedelta

import pytest
from starlette.requests import Request

from app.features.permissions.defaults import seed_defaults
from app.features.permissions.dependencies import resolve_organization_id
from app.features.organizations.models import OrganizationCategory
from app.features.permissions.models import ContextType, Role
from app.utils import utcnow


@pytest.fixture
async def seeded(db):
    await seed_defaults(db)


@pytest.fixture
async def founder(factory, seeded):
    """A user allowed to create organizations but not a member of any."""
    user = await factory.user("Fay Founder", email="fay@rosecourt.co.uk")
    await factory.grant(user, "create_organization", context_type=ContextType.SYSTEM)
    return user


async def create_org(client, founder, headers_for, name="Rose Court"):
    response = await client.post(
        "/organizations/",
        json={"name": name, "category": "care_home", "email": "office@rosecourt.co.uk"},
        headers=headers_for(founder),
    )
    assert response.status_code == 201
    return response.json()


# ============================================================================
# Organizations
# ============================================================================

async def test_create_organization_makes_creator_primary_owner(client, founder, headers_for):
    organization = await create_org(client, founder, headers_for)

    assert organization["member_count"] == 1
    assert organization["category"] == "care_home"

    mine = await client.get("/organizations/my", headers=headers_for(founder))
    assert mine.json() == [{
        "organization_id": organization["id"],
        "organization_name": "Rose Court",
        "category": "care_home",
        "roles": ["owner"],
        "is_primary": True,
        "is_current": True,
    }]


async def test_create_organization_requires_system_permission(client, factory, seeded, headers_for):
    user = await factory.user()

    response = await client.post(
        "/organizations/",
        json={"name": "Harbour Agency", "category": "agency"},
        headers=headers_for(user),
    )

    assert response.status_code == 403


async def test_invalid_category_is_a_validation_error(client, founder, headers_for):
    response = await client.post(
        "/organizations/",
        json={"name": "Harbour Agency", "category": "hospital"},
        headers=headers_for(founder),
    )

    assert response.status_code == 400
    assert "category" in response.json()


async def test_members_view_and_owners_edit(client, factory, founder, headers_for):
    organization = await create_org(client, founder, headers_for)
    org_id = organization["id"]

    carer = await factory.user("Cal Carer", email="cal@rosecourt.co.uk")
    await client.post(
        f"/permissions/organizations/{org_id}/role-assignments",
        json={"user_id": carer.id, "role_id": "carer"},
        headers=headers_for(founder),
    )

    forbidden = await client.patch(
        f"/organizations/{org_id}", json={"name": "Renamed"}, headers=headers_for(carer)
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "Missing required permission: edit_organization"

    updated = await client.patch(
        f"/organizations/{org_id}", json={"name": "Rose Court Nursing"}, headers=headers_for(founder)
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Rose Court Nursing"
    assert updated.json()["member_count"] == 2

    viewed = await client.get(f"/organizations/{org_id}", headers=headers_for(founder))
    assert viewed.json()["name"] == "Rose Court Nursing"


async def test_outsider_cannot_view_organization(client, factory, founder, headers_for):
    organization = await create_org(client, founder, headers_for)
    outsider = await factory.user("Otto Outsider", email="otto@harbour.co.uk")

    response = await client.get(f"/organizations/{organization['id']}", headers=headers_for(outsider))

    assert response.status_code == 403


async def test_switch_organization(client, factory, founder, headers_for):
    first = await create_org(client, founder, headers_for, name="Rose Court")
    second = await create_org(client, founder, headers_for, name="Harbour Agency")

    switched = await client.post(
        "/organizations/switch", json={"organization_id": second["id"]}, headers=headers_for(founder)
    )
    assert switched.status_code == 200
    assert switched.json()["current_organization_name"] == "Harbour Agency"

    current = await client.get("/organizations/current", headers=headers_for(founder))
    assert current.json()["id"] == second["id"]

    outsider = await factory.user("Otto Outsider", email="otto@harbour.co.uk")
    denied = await client.post(
        "/organizations/switch", json={"organization_id": first["id"]}, headers=headers_for(outsider)
    )
    assert denied.status_code == 403


async def test_deactivated_organization_cannot_be_current(client, founder, headers_for):
    first = await create_org(client, founder, headers_for, name="Rose Court")
    second = await create_org(client, founder, headers_for, name="Harbour Agency")

    closed = await client.patch(f"/organizations/{second['id']}", json={"is_active": False}, headers=headers_for(founder))
    assert closed.json()["is_active"] is False

    refused = await client.post(
        "/organizations/switch", json={"organization_id": second["id"]}, headers=headers_for(founder)
    )
    assert refused.status_code == 400

    mine = await client.get("/organizations/my", headers=headers_for(founder))
    assert [m["organization_id"] for m in mine.json()] == [first["id"]]


async def test_organization_phone_is_validated(client, founder, headers_for):
    response = await client.post(
        "/organizations/",
        json={"name": "Harbour Agency", "category": "agency", "phone": "call us!"},
        headers=headers_for(founder),
    )

    assert response.status_code == 400
    assert "phone" in response.json()

    ok = await client.post(
        "/organizations/",
        json={"name": "Harbour Agency", "category": "agency", "phone": "+44 (0)20 7946 0958"},
        headers=headers_for(founder),
    )
    assert ok.json()["phone"] == "+44 (0)20 7946 0958"


async def test_current_organization_requires_selection(client, factory, seeded, headers_for):
    user = await factory.user()

    response = await client.get("/organizations/current", headers=headers_for(user))

    assert response.status_code == 400


# ============================================================================
# Organization Resolution
# ============================================================================

def make_request(path_params=None, query_string=b"", headers=()):
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers],
        "query_string": query_string,
        "path_params": path_params or {},
    })


async def test_organization_resolution_order(db, factory):
    home = await factory.organization("Rose Court")
    agency = await factory.organization("Harbour Agency")
    await factory.permission("view_staff")
    await factory.role("staff", hierarchy_level=6)
    user = await factory.user(current_organization_id=agency.id)
    await factory.assign(user, home, "staff", is_primary=True)

    from_path = make_request(path_params={"organization_id": "from-path"}, query_string=b"organization_id=from-query")
    from_query = make_request(query_string=b"organization_id=from-query", headers=[("X-Organization-ID", "from-header")])
    from_header = make_request(headers=[("X-Organization-ID", "from-header")])

    assert await resolve_organization_id(from_path, db, user) == "from-path"
    assert await resolve_organization_id(from_query, db, user) == "from-query"
    assert await resolve_organization_id(from_header, db, user) == "from-header"
    assert await resolve_organization_id(make_request(), db, user) == agency.id

    user.current_organization_id = None
    assert await resolve_organization_id(make_request(), db, user) == home.id


async def test_lapsed_primary_assignment_is_not_a_fallback(db, factory):
    home = await factory.organization("Rose Court")
    agency = await factory.organization("Harbour Agency", category=OrganizationCategory.AGENCY)
    await factory.role("staff", hierarchy_level=6)
    user = await factory.user()
    await factory.assign(user, home, "staff", is_primary=True, active_to=utcnow() - timedelta(days=1))
    await factory.assign(user, agency, "staff", is_primary=True)

    assert await resolve_organization_id(make_request(), db, user) == agency.id


# ============================================================================
# Users
# ============================================================================

async def test_get_and_update_profile(client, factory, seeded, headers_for):
    user = await factory.user("Ada Carer", email="ada@rosecourt.co.uk")

    me = await client.get("/users/me", headers=headers_for(user))
    assert me.status_code == 200
    assert me.json()["email"] == "ada@rosecourt.co.uk"
    assert me.json()["last_login_at"] is not None

    updated = await client.patch("/users/me", json={"name": "Ada Lovelace"}, headers=headers_for(user))
    assert updated.json()["name"] == "Ada Lovelace"

    public = await client.get(f"/users/{user.id}", headers=headers_for(user))
    assert public.json() == {"id": user.id, "name": "Ada Lovelace", "avatar_url": None}


async def test_deactivated_user_is_locked_out(client, factory, seeded, headers_for):
    admin = await factory.user("Sam Admin", email="sam@platform.co.uk")
    await factory.grant(admin, "manage_all_users", context_type=ContextType.SYSTEM)
    user = await factory.user("Ada Carer", email="ada@rosecourt.co.uk")

    assert (await client.delete(f"/users/{admin.id}", headers=headers_for(user))).status_code == 403
    assert (await client.delete(f"/users/{admin.id}", headers=headers_for(admin))).status_code == 400

    response = await client.delete(f"/users/{user.id}", headers=headers_for(admin))
    assert response.status_code == 200

    locked = await client.get("/users/me", headers=headers_for(user))
    assert locked.status_code == 403
    assert locked.json()["detail"] == "User account is deactivated"


async def test_service_endpoints(client):
    assert (await client.get("/health")).json() == {"status": "healthy", "database": "ok"}
    assert (await client.get("/")).json()["status"] == "online"


async def test_profile_update_validation(client, factory, seeded, headers_for):
    user = await factory.user("Ada Carer", email="ada@rosecourt.co.uk")

    bad_avatar = await client.patch("/users/me", json={"avatar_url": "ftp://x/a.png"}, headers=headers_for(user))
    assert bad_avatar.status_code == 400
    assert "avatar_url" in bad_avatar.json()

    cleared_name = await client.patch("/users/me", json={"name": None}, headers=headers_for(user))
    assert cleared_name.status_code == 400

    await client.patch("/users/me", json={"avatar_url": "https://cdn.example.com/ada.png"}, headers=headers_for(user))
    cleared = await client.patch("/users/me", json={"avatar_url": None}, headers=headers_for(user))
    assert cleared.json()["avatar_url"] is None
    assert cleared.json()["name"] == "Ada Carer"


async def test_users_only_see_colleagues(client, factory, founder, headers_for):
    organization = await create_org(client, founder, headers_for)
    carer = await factory.user("Cal Carer", email="cal@rosecourt.co.uk")
    outsider = await factory.user("Otto Outsider", email="otto@harbour.co.uk")
    await client.post(
        f"/permissions/organizations/{organization['id']}/role-assignments",
        json={"user_id": carer.id, "role_id": "carer"},
        headers=headers_for(founder),
    )

    listed = await client.get("/users/", headers=headers_for(carer))
    assert [u["name"] for u in listed.json()] == ["Cal Carer", "Fay Founder"]

    assert (await client.get(f"/users/{founder.id}", headers=headers_for(carer))).status_code == 200
    assert (await client.get(f"/users/{outsider.id}", headers=headers_for(carer))).status_code == 404

    alone = await client.get("/users/", headers=headers_for(outsider))
    assert [u["id"] for u in alone.json()] == [outsider.id]


async def test_view_all_users_lists_everyone(client, factory, seeded, headers_for):
    admin = await factory.user("Sam Admin", email="sam@platform.co.uk")
    await factory.grant(admin, "view_all_users", context_type=ContextType.SYSTEM)
    await factory.user("Otto Outsider", email="otto@harbour.co.uk", is_active=False)
    await factory.user("Bea Bank", email="bea@agency.co.uk")

    active = await client.get("/users/", headers=headers_for(admin))
    assert [u["name"] for u in active.json()] == ["Bea Bank", "Sam Admin"]

    everyone = await client.get("/users/", params={"include_inactive": True}, headers=headers_for(admin))
    assert [u["name"] for u in everyone.json()] == ["Bea Bank", "Otto Outsider", "Sam Admin"]
    assert everyone.json()[1]["is_active"] is False


# ============================================================================
# Role Overview
# ============================================================================

@pytest.fixture
async def multi_org_user(db, factory):
    home = await factory.organization("Rose Court")
    agency = await factory.organization("Harbour Agency", category=OrganizationCategory.AGENCY)
    await factory.role("owner", hierarchy_level=1)
    await factory.role("manager", hierarchy_level=3)
    await factory.role("carer", hierarchy_level=5)
    await factory.role("staff", hierarchy_level=6)
    manager = await db.get(Role, "manager")
    manager.display_names = {"agency": "Branch Manager"}
    await db.commit()

    user = await factory.user("Mo Multi", email="mo@harbour.co.uk")
    await factory.assign(user, home, "carer")
    await factory.assign(user, home, "staff", is_primary=True)
    await factory.assign(user, agency, "manager")
    await factory.assign(user, home, "owner", active_to=utcnow() - timedelta(days=1))
    return user, home, agency


async def test_my_roles_ranks_active_roles_by_authority(client, multi_org_user, headers_for):
    user, home, agency = multi_org_user

    response = await client.get("/organizations/my-roles", headers=headers_for(user))

    assert response.status_code == 200
    body = response.json()
    assert (body["highest"]["role_id"], body["highest"]["organization_id"]) == ("manager", agency.id)
    assert body["highest"]["role_name"] == "Branch Manager"
    assert (body["lowest"]["role_id"], body["lowest"]["organization_id"]) == ("staff", home.id)
    assert body["primary"]["role_id"] == "staff"
    assert [r["role_id"] for r in body["roles"]] == ["manager", "carer", "staff"]


async def test_my_roles_falls_back_to_highest_without_primary(client, multi_org_user, headers_for):
    user, home, agency = multi_org_user

    response = await client.get(
        "/organizations/my-roles", params={"organization_id": agency.id}, headers=headers_for(user)
    )

    body = response.json()
    assert body["highest"] == body["lowest"] == body["primary"]
    assert body["primary"]["role_id"] == "manager"
    assert body["primary"]["is_primary"] is False


async def test_my_roles_is_empty_without_assignments(client, factory, headers_for):
    user = await factory.user()

    response = await client.get("/organizations/my-roles", headers=headers_for(user))

    assert response.json() == {"highest": None, "lowest": None, "primary": None, "roles": []}


async def test_blank_names_are_rejected(client, factory, founder, headers_for):
    organization = await create_org(client, founder, headers_for)

    blank_org = await client.patch(
        f"/organizations/{organization['id']}", json={"name": "   "}, headers=headers_for(founder)
    )
    assert blank_org.status_code == 400
    assert "name" in blank_org.json()

    padded = await client.patch(
        f"/organizations/{organization['id']}", json={"name": "  Rose Court Nursing  "}, headers=headers_for(founder)
    )
    assert padded.json()["name"] == "Rose Court Nursing"

    blank_user = await client.patch("/users/me", json={"name": "   "}, headers=headers_for(founder))
    assert blank_user.status_code == 400
    assert "name" in blank_user.json()
