"""
HTTP tests for the permission management routes.
"""
import pytest

from app.core import config
from app.features.permissions.defaults import DEFAULT_PERMISSIONS, seed_defaults
from app.features.permissions.models import ContextType


SYSTEM_PERMISSIONS = [p[0] for p in DEFAULT_PERMISSIONS if p[3] == ContextType.SYSTEM]


@pytest.fixture
async def seeded(db):
    await seed_defaults(db)


@pytest.fixture
async def super_admin(factory, seeded):
    user = await factory.user("Sam Admin", email="sam@platform.co.uk")
    for permission_id in SYSTEM_PERMISSIONS:
        await factory.grant(user, permission_id, context_type=ContextType.SYSTEM)
    return user


@pytest.fixture
async def rose_court(factory, seeded):
    return await factory.organization("Rose Court")


@pytest.fixture
async def owner(factory, rose_court):
    user = await factory.user("Olive Owner", email="olive@rosecourt.co.uk")
    await factory.assign(user, rose_court, "owner", is_primary=True)
    return user


@pytest.fixture
async def carer(factory, rose_court):
    user = await factory.user("Cal Carer", email="cal@rosecourt.co.uk")
    await factory.assign(user, rose_court, "carer", is_primary=True)
    return user


# ============================================================================
# Authentication & Guards
# ============================================================================

async def test_requests_without_token_are_rejected(client, seeded):
    response = await client.get("/permissions/permissions")
    assert response.status_code in (401, 403)


async def test_invalid_token_is_rejected(client, seeded):
    response = await client.get("/permissions/permissions", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


async def test_list_permissions_is_open_to_signed_in_users(client, carer, headers_for):
    response = await client.get("/permissions/permissions?category=staff", headers=headers_for(carer))

    assert response.status_code == 200
    assert {p["id"] for p in response.json()} == {"view_staff", "edit_staff_role", "invite_staff"}


async def test_catalog_writes_need_system_permission(client, owner, headers_for):
    response = await client.post(
        "/permissions/permissions",
        json={"id": "view_rota", "name": "View rota", "category": "scheduling"},
        headers=headers_for(owner),
    )

    assert response.status_code == 403
    assert response.json()["detail"] == "Missing required system permission: manage_permissions"


# ============================================================================
# Permission Catalog
# ============================================================================

async def test_create_permission(client, super_admin, headers_for):
    payload = {"id": "view_rota", "name": "View rota", "category": "Scheduling"}

    response = await client.post("/permissions/permissions", json=payload, headers=headers_for(super_admin))
    assert response.status_code == 201
    body = response.json()
    assert body["category"] == "scheduling"
    assert body["context_type"] == "ORGANIZATION"
    assert body["is_system"] is False

    duplicate = await client.post("/permissions/permissions", json=payload, headers=headers_for(super_admin))
    assert duplicate.status_code == 409


async def test_create_permission_validates_id(client, super_admin, headers_for):
    response = await client.post(
        "/permissions/permissions",
        json={"id": "View Rota", "name": "View rota", "category": "scheduling"},
        headers=headers_for(super_admin),
    )

    assert response.status_code == 400
    assert "id" in response.json()


async def test_delete_referenced_permission_is_refused(client, super_admin, headers_for):
    response = await client.delete("/permissions/permissions/view_staff", headers=headers_for(super_admin))
    assert response.status_code == 400


async def test_delete_unreferenced_permission(client, super_admin, headers_for):
    headers = headers_for(super_admin)
    await client.post(
        "/permissions/permissions",
        json={"id": "view_rota", "name": "View rota", "category": "scheduling"},
        headers=headers,
    )

    assert (await client.delete("/permissions/permissions/view_rota", headers=headers)).status_code == 204
    assert (await client.get("/permissions/permissions/view_rota", headers=headers)).status_code == 404


# ============================================================================
# Implications
# ============================================================================

async def test_implied_permissions_are_transitive(client, carer, headers_for):
    response = await client.get("/permissions/permissions/edit_schedules/implied", headers=headers_for(carer))

    assert response.status_code == 200
    assert response.json()["implied_permissions"] == ["view_schedules", "view_shift"]


async def test_create_implication(client, super_admin, headers_for):
    headers = headers_for(super_admin)

    response = await client.post(
        "/permissions/implications",
        json={"parent_permission_id": "view_dashboard", "child_permission_id": "view_reports"},
        headers=headers,
    )
    assert response.status_code == 201

    implied = await client.get("/permissions/permissions/view_dashboard/implied", headers=headers)
    assert implied.json()["implied_permissions"] == ["view_reports"]

    again = await client.post(
        "/permissions/implications",
        json={"parent_permission_id": "view_dashboard", "child_permission_id": "view_reports"},
        headers=headers,
    )
    assert again.status_code == 409


async def test_implication_cycles_are_rejected(client, super_admin, headers_for):
    headers = headers_for(super_admin)

    cycle = await client.post(
        "/permissions/implications",
        json={"parent_permission_id": "view_shift", "child_permission_id": "edit_schedules"},
        headers=headers,
    )
    itself = await client.post(
        "/permissions/implications",
        json={"parent_permission_id": "view_shift", "child_permission_id": "view_shift"},
        headers=headers,
    )

    assert cycle.status_code == 400
    assert cycle.json()["detail"] == "Implication would create a cycle"
    assert itself.status_code == 400


async def test_delete_implication(client, super_admin, headers_for):
    headers = headers_for(super_admin)

    response = await client.delete("/permissions/implications/edit_invoices/view_invoices", headers=headers)
    assert response.status_code == 204

    missing = await client.delete("/permissions/implications/edit_invoices/view_invoices", headers=headers)
    assert missing.status_code == 404


# ============================================================================
# Roles
# ============================================================================

async def test_role_lifecycle(client, super_admin, headers_for):
    headers = headers_for(super_admin)

    created = await client.post(
        "/permissions/roles",
        json={
            "id": "team_lead",
            "name": "Team Lead",
            "base_role_id": "carer",
            "hierarchy_level": 4,
            "permission_ids": ["view_staff"],
        },
        headers=headers,
    )
    assert created.status_code == 201
    assert created.json()["is_custom"] is True

    role = await client.get("/permissions/roles/team_lead", headers=headers)
    assert [p["id"] for p in role.json()["permissions"]] == ["view_staff"]

    hierarchy = await client.get("/permissions/roles/team_lead/hierarchy", headers=headers)
    assert [r["id"] for r in hierarchy.json()["chain"]] == ["team_lead", "carer", "staff"]

    added = await client.post(
        "/permissions/roles/team_lead/permissions",
        json={"permission_id": "assign_users"},
        headers=headers,
    )
    assert added.status_code == 200

    removed = await client.delete("/permissions/roles/team_lead/permissions/view_staff", headers=headers)
    assert removed.status_code == 204

    assert (await client.delete("/permissions/roles/team_lead", headers=headers)).status_code == 204
    assert (await client.get("/permissions/roles/team_lead", headers=headers)).status_code == 404


async def test_role_inheritance_cycle_is_rejected(client, super_admin, headers_for):
    response = await client.put(
        "/permissions/roles/staff",
        json={"base_role_id": "senior_carer"},
        headers=headers_for(super_admin),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Role inheritance would create a cycle"


async def test_unknown_base_role_is_rejected(client, super_admin, headers_for):
    response = await client.post(
        "/permissions/roles",
        json={"id": "floater", "name": "Floater", "base_role_id": "nobody", "hierarchy_level": 5},
        headers=headers_for(super_admin),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Base role not found"


async def test_base_role_cannot_be_deleted(client, super_admin, headers_for):
    response = await client.delete("/permissions/roles/carer", headers=headers_for(super_admin))

    assert response.status_code == 400
    assert response.json()["detail"] == "Role is the base role of another role"


async def test_assigned_role_cannot_be_deleted(client, super_admin, owner, headers_for):
    response = await client.delete("/permissions/roles/owner", headers=headers_for(super_admin))

    assert response.status_code == 400
    assert response.json()["detail"] == "Role is still assigned to users"


# ============================================================================
# Role Assignments
# ============================================================================

async def test_owner_assigns_and_removes_roles(client, factory, rose_court, owner, headers_for):
    newcomer = await factory.user("Nia Nurse", email="nia@rosecourt.co.uk")
    url = f"/permissions/organizations/{rose_court.id}/role-assignments"

    assigned = await client.post(
        url,
        json={"user_id": newcomer.id, "role_id": "nurse", "is_primary": True},
        headers=headers_for(owner),
    )
    assert assigned.status_code == 201
    assignment = assigned.json()
    assert assignment["assigned_by_id"] == owner.id
    assert assignment["is_primary"] is True

    check = await client.post(
        "/permissions/check",
        json={"permission_id": "view_schedules", "organization_id": rose_court.id},
        headers=headers_for(newcomer),
    )
    assert check.json()["has_permission"] is True

    listed = await client.get(url, headers=headers_for(owner))
    assert {a["role_id"] for a in listed.json()} == {"owner", "nurse"}

    removed = await client.delete(f"{url}/{assignment['id']}", headers=headers_for(owner))
    assert removed.status_code == 204

    check = await client.post(
        "/permissions/check",
        json={"permission_id": "view_schedules", "organization_id": rose_court.id},
        headers=headers_for(newcomer),
    )
    assert check.json()["has_permission"] is False


async def test_carer_cannot_view_staff_assignments(client, rose_court, carer, headers_for):
    response = await client.get(
        f"/permissions/organizations/{rose_court.id}/role-assignments",
        headers=headers_for(carer),
    )

    assert response.status_code == 403
    assert response.json()["detail"] == "Missing required permission: view_staff"


async def test_outsider_is_not_authorized_for_organization(client, factory, rose_court, owner, headers_for):
    outsider = await factory.user("Otto Outsider", email="otto@harbour.co.uk")

    response = await client.get(
        f"/permissions/organizations/{rose_court.id}/role-assignments",
        headers=headers_for(outsider),
    )

    assert response.status_code == 403
    assert response.json()["detail"] == "User not authorized for this organization"


async def test_system_roles_cannot_be_assigned_in_organization(client, rose_court, owner, carer, headers_for):
    response = await client.post(
        f"/permissions/organizations/{rose_court.id}/role-assignments",
        json={"user_id": carer.id, "role_id": "system_admin"},
        headers=headers_for(owner),
    )

    assert response.status_code == 400


# ============================================================================
# Checks & Effective Permissions
# ============================================================================

async def test_check_reports_source(client, rose_court, carer, headers_for):
    granted = await client.post(
        "/permissions/check",
        json={"permission_id": "view_shift", "organization_id": rose_court.id},
        headers=headers_for(carer),
    )
    denied = await client.post(
        "/permissions/check",
        json={"permission_id": "approve_timesheets", "organization_id": rose_court.id},
        headers=headers_for(carer),
    )

    assert granted.json()["has_permission"] is True
    assert granted.json()["source"] == "implication"
    assert denied.json() == {"has_permission": False, "source": None, "reason": "Permission denied"}


async def test_check_system_context(client, super_admin, carer, headers_for):
    payload = {"permission_id": "manage_roles", "context_type": "SYSTEM"}

    admin = await client.post("/permissions/check", json=payload, headers=headers_for(super_admin))
    member = await client.post("/permissions/check", json=payload, headers=headers_for(carer))

    assert admin.json()["source"] == "custom"
    assert member.json()["has_permission"] is False


async def test_user_can_view_own_permissions(client, rose_court, carer, headers_for):
    response = await client.get(
        f"/permissions/users/{carer.id}/permissions?organization_id={rose_court.id}",
        headers=headers_for(carer),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["roles"] == ["carer"]
    assert {"view_schedules", "view_shift", "create_timesheets"} <= set(body["permissions"])
    assert "approve_timesheets" not in body["permissions"]


async def test_viewing_others_permissions_needs_view_staff(client, rose_court, owner, carer, headers_for):
    url = f"/permissions/users/{owner.id}/permissions?organization_id={rose_court.id}"
    assert (await client.get(url, headers=headers_for(carer))).status_code == 403

    url = f"/permissions/users/{carer.id}/permissions?organization_id={rose_court.id}"
    assert (await client.get(url, headers=headers_for(owner))).status_code == 200


# ============================================================================
# Custom Grants
# ============================================================================

async def test_grant_list_and_revoke_custom_permission(client, rose_court, super_admin, carer, headers_for):
    headers = headers_for(super_admin)
    grant = {
        "user_id": carer.id,
        "permission_id": "approve_timesheets",
        "organization_id": rose_court.id,
    }

    granted = await client.post("/permissions/custom-permissions", json=grant, headers=headers)
    assert granted.status_code == 201
    assert granted.json()["context_id"] == rose_court.id

    check = await client.post(
        "/permissions/check",
        json={"permission_id": "approve_timesheets", "organization_id": rose_court.id},
        headers=headers_for(carer),
    )
    assert check.json()["source"] == "custom"

    listed = await client.get(f"/permissions/users/{carer.id}/custom-permissions", headers=headers)
    assert [g["permission_id"] for g in listed.json()] == ["approve_timesheets"]

    revoked = await client.request("DELETE", "/permissions/custom-permissions", json=grant, headers=headers)
    assert revoked.status_code == 200
    again = await client.request("DELETE", "/permissions/custom-permissions", json=grant, headers=headers)
    assert again.status_code == 404


async def test_grant_context_must_match_permission(client, rose_court, super_admin, carer, headers_for):
    response = await client.post(
        "/permissions/custom-permissions",
        json={"user_id": carer.id, "permission_id": "manage_roles", "organization_id": rose_court.id},
        headers=headers_for(super_admin),
    )

    assert response.status_code == 400


async def test_expired_grant_does_not_authorize(client, rose_court, super_admin, carer, headers_for):
    await client.post(
        "/permissions/custom-permissions",
        json={
            "user_id": carer.id,
            "permission_id": "approve_timesheets",
            "organization_id": rose_court.id,
            "expires_at": "2020-01-01T00:00:00Z",
        },
        headers=headers_for(super_admin),
    )

    check = await client.post(
        "/permissions/check",
        json={"permission_id": "approve_timesheets", "organization_id": rose_court.id},
        headers=headers_for(carer),
    )
    assert check.json()["has_permission"] is False


# ============================================================================
# Super Admin Bootstrap & Audit
# ============================================================================

async def test_super_admin_bootstrap(client, monkeypatch, factory, seeded, headers_for):
    user = await factory.user("Fresh Admin", email="fresh@platform.co.uk")

    monkeypatch.setattr(config, "SUPER_ADMIN_SECRET", None)
    disabled = await client.post(
        "/permissions/super-admins", json={"email": user.email, "system_secret": "anything"}
    )
    assert disabled.status_code == 403

    monkeypatch.setattr(config, "SUPER_ADMIN_SECRET", "correct horse")
    wrong = await client.post(
        "/permissions/super-admins", json={"email": user.email, "system_secret": "battery staple"}
    )
    assert wrong.status_code == 401

    promoted = await client.post(
        "/permissions/super-admins", json={"email": user.email, "system_secret": "correct horse"}
    )
    assert promoted.status_code == 201
    assert sorted(promoted.json()["granted_permissions"]) == sorted(SYSTEM_PERMISSIONS)

    response = await client.post(
        "/permissions/permissions",
        json={"id": "view_rota", "name": "View rota", "category": "scheduling"},
        headers=headers_for(user),
    )
    assert response.status_code == 201


async def test_writes_are_audited(client, super_admin, carer, headers_for):
    headers = headers_for(super_admin)
    await client.post(
        "/permissions/permissions",
        json={"id": "view_rota", "name": "View rota", "category": "scheduling"},
        headers=headers,
    )

    response = await client.get("/permissions/audit-logs?resource_type=permission", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    entry = body["items"][0]
    assert (entry["action"], entry["resource_id"], entry["user_id"]) == ("create", "view_rota", super_admin.id)

    forbidden = await client.get("/permissions/audit-logs", headers=headers_for(carer))
    assert forbidden.status_code == 403


# ============================================================================
# Catalog Updates
# ============================================================================

async def test_updates_reject_null_required_fields(client, super_admin, headers_for):
    headers = headers_for(super_admin)

    for url, body in [
        ("/permissions/roles/carer", {"name": None}),
        ("/permissions/roles/carer", {"hierarchy_level": None}),
        ("/permissions/roles/carer", {"organization_categories": None}),
        ("/permissions/permissions/view_staff", {"name": None}),
        ("/permissions/permissions/view_staff", {"category": None}),
        ("/permissions/permissions/view_staff", {"name": "   "}),
    ]:
        response = await client.put(url, json=body, headers=headers)
        assert response.status_code == 400, (url, body)
        assert list(response.json()) == list(body)

    cleared = await client.put("/permissions/roles/carer", json={"description": None}, headers=headers)
    assert cleared.status_code == 200
    assert cleared.json()["description"] is None

    renamed = await client.put("/permissions/permissions/view_staff", json={"name": "  See staff "}, headers=headers)
    assert renamed.json()["name"] == "See staff"


# ============================================================================
# Organization Categories
# ============================================================================

async def test_catalog_defaults_to_every_category(client, carer, headers_for):
    role = await client.get("/permissions/roles/carer", headers=headers_for(carer))

    assert role.json()["organization_categories"] == ["*"]
    assert role.json()["display_names"] is None


async def test_catalog_filters_by_organization_category(client, super_admin, headers_for):
    headers = headers_for(super_admin)
    created = await client.post(
        "/permissions/roles",
        json={
            "id": "booking_coordinator",
            "name": "Booking Coordinator",
            "hierarchy_level": 4,
            "organization_categories": ["agency"],
            "display_names": {"agency": "Placements Coordinator"},
        },
        headers=headers,
    )
    assert created.status_code == 201
    await client.post(
        "/permissions/permissions",
        json={"id": "place_workers", "name": "Place workers", "category": "bookings", "organization_categories": ["agency"]},
        headers=headers,
    )

    agency_roles = await client.get("/permissions/roles?organization_category=agency", headers=headers)
    home_roles = await client.get("/permissions/roles?organization_category=care_home", headers=headers)
    assert "booking_coordinator" in {r["id"] for r in agency_roles.json()}
    assert "booking_coordinator" not in {r["id"] for r in home_roles.json()}
    assert "carer" in {r["id"] for r in home_roles.json()}

    agency_bookings = await client.get(
        "/permissions/permissions?category=bookings&organization_category=agency", headers=headers
    )
    home_bookings = await client.get(
        "/permissions/permissions?category=bookings&organization_category=care_home", headers=headers
    )
    assert [p["id"] for p in agency_bookings.json()] == ["place_workers"]
    assert home_bookings.json() == []


async def test_unknown_organization_category_is_rejected(client, super_admin, headers_for):
    response = await client.post(
        "/permissions/roles",
        json={"id": "ward_clerk", "name": "Ward Clerk", "hierarchy_level": 5, "organization_categories": ["hospital"]},
        headers=headers_for(super_admin),
    )

    assert response.status_code == 400
    assert "organization_categories" in response.json()


async def test_role_outside_organization_category_cannot_be_assigned(
    client, factory, super_admin, rose_court, owner, headers_for
):
    await client.post(
        "/permissions/roles",
        json={"id": "booking_coordinator", "name": "Booking Coordinator", "hierarchy_level": 4,
              "organization_categories": ["agency"]},
        headers=headers_for(super_admin),
    )
    newcomer = await factory.user("Bea Bank", email="bea@rosecourt.co.uk")

    response = await client.post(
        f"/permissions/organizations/{rose_court.id}/role-assignments",
        json={"user_id": newcomer.id, "role_id": "booking_coordinator"},
        headers=headers_for(owner),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Role booking_coordinator is not available for care_home organizations"


async def test_long_user_agent_is_truncated_in_audit_log(client, super_admin, headers_for):
    headers = {**headers_for(super_admin), "User-Agent": "Mozilla/5.0 " + "x" * 300}

    created = await client.post(
        "/permissions/permissions",
        json={"id": "view_rota", "name": "View rota", "category": "scheduling"},
        headers=headers,
    )
    assert created.status_code == 201

    logs = await client.get("/permissions/audit-logs?resource_type=permission", headers=headers)
    user_agent = logs.json()["items"][0]["user_agent"]
    assert len(user_agent) == 255
    assert user_agent.startswith("Mozilla/5.0 x")
