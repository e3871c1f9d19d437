"""Tests for role/permission resolution, role CRUD and idempotent seeding."""

import asyncio

import pytest

from accesscore.service.errors import (
    ConflictError,
    NotFoundError,
    RoleAlreadyAssigned,
    RoleNotFound,
    SystemEntityImmutable,
    ValidationError,
)
from accesscore.service.rbac import (
    DEFAULT_RESOURCES,
    SUPER_ADMIN_ROLE,
    RbacResolver,
    default_role_grants,
    grants_permission,
)
from accesscore.storage.models import PERMISSION_ACTIONS


class RecordingPermissionCache:
    """In-test stand-in exposing the permission-cache half of RedisCache."""

    def __init__(self):
        self.entries = {}
        self.invalidated = []
        self.flushes = 0

    async def get_cached_permissions(self, principal_id):
        cached = self.entries.get(principal_id)
        return set(cached) if cached is not None else None

    async def set_cached_permissions(self, principal_id, permissions, ttl_seconds):
        self.entries[principal_id] = set(permissions)

    async def invalidate_permissions(self, principal_id):
        self.invalidated.append(principal_id)
        self.entries.pop(principal_id, None)

    async def invalidate_all_permissions(self):
        self.flushes += 1
        removed = len(self.entries)
        self.entries.clear()
        return removed


@pytest.fixture
def rbac(store, settings, clock):
    return RbacResolver(store, settings, clock=clock)


@pytest.fixture
def seeded(rbac):
    asyncio.run(rbac.seed())
    return rbac


@pytest.fixture
def principal(store):
    return store.create_principal("rbac@example.com", tenant_id="t1", status="active")


class TestSeeding:
    async def test_seed_creates_default_matrix(self, rbac, store):
        summary = await rbac.seed()

        assert summary["permissions_created"] == len(DEFAULT_RESOURCES) * len(PERMISSION_ACTIONS)
        assert summary["roles_created"] == 6
        assert len(store.list_permissions()) == 132
        assert all(p.is_system for p in store.list_permissions())

    async def test_seed_is_idempotent(self, rbac, store):
        await rbac.seed()
        before = {r.name: set(r.permissions) for r in store.list_roles()}

        summary = await rbac.seed()

        assert summary == {
            "permissions_created": 0,
            "roles_created": 0,
            "super_admin_permissions_added": 0,
        }
        assert {r.name: set(r.permissions) for r in store.list_roles()} == before

    async def test_super_admin_sync_picks_up_new_permissions(self, rbac, store):
        await rbac.seed()
        rbac.create_permission("widgets", "read")

        assert await rbac.sync_super_admin_permissions() == 1
        assert await rbac.sync_super_admin_permissions() == 0
        super_admin = store.get_role_by_name(SUPER_ADMIN_ROLE)
        assert super_admin.permissions == {p.name for p in store.list_permissions()}

    async def test_system_role_grants(self, rbac, store):
        await rbac.seed()
        owner = store.get_role_by_name("Owner")
        viewer = store.get_role_by_name("Viewer")
        admin = store.get_role_by_name("Admin")

        assert "tenants:delete" not in owner.permissions
        assert "tenants:manage" in owner.permissions
        assert not any(p.startswith("system_settings:") for p in owner.permissions)
        assert not any(p.startswith("system_settings:") for p in admin.permissions)
        assert viewer.permissions == {
            f"{r}:{a}" for r in DEFAULT_RESOURCES for a in ("read", "export")
        }
        assert owner.level == 1 and viewer.level == 5

    def test_default_grants_shape(self):
        grants = default_role_grants()

        assert set(grants) == {"Super Admin", "Owner", "Admin", "Manager", "Member", "Viewer"}
        assert len(grants["Super Admin"]) == 132
        assert grants["Member"] >= {"files:create", "sessions:export"}
        assert "files:delete" not in grants["Member"]


class TestResolution:
    def test_manage_fallback(self):
        assert grants_permission({"files:manage"}, "files", "delete")
        assert not grants_permission({"files:manage"}, "billing", "delete")
        assert grants_permission({"files:read"}, "files", "read")
        assert not grants_permission({"files:read"}, "files", "update")

    async def test_role_with_only_manage(self, rbac, principal):
        rbac.create_permission("files", "manage")
        role = rbac.create_role("File Steward", 3, permissions=["files:manage"])
        await rbac.assign_role(principal.id, role.id)

        assert await rbac.has_permission(principal.id, "files", "delete")
        assert not await rbac.has_permission(principal.id, "billing", "delete")

    async def test_union_across_roles(self, rbac, principal):
        rbac.create_permission("files", "read")
        rbac.create_permission("reports", "export")
        reader = rbac.create_role("Reader", 4, permissions=["files:read"])
        exporter = rbac.create_role("Exporter", 4, permissions=["reports:export"])
        await rbac.assign_role(principal.id, reader.id)
        await rbac.assign_role(principal.id, exporter.id)

        assert await rbac.get_effective_permissions(principal.id) == {
            "files:read",
            "reports:export",
        }

    async def test_inherits_ancestor_permissions(self, rbac, principal):
        for name in ("teams:manage", "files:read", "reports:read"):
            resource, action = name.split(":")
            rbac.create_permission(resource, action)
        lead = rbac.create_role("Lead", 2, permissions=["teams:manage"])
        senior = rbac.create_role("Senior", 3, permissions=["reports:read"], parent_role_id=lead.id)
        junior = rbac.create_role("Junior", 4, permissions=["files:read"], parent_role_id=senior.id)
        await rbac.assign_role(principal.id, junior.id)

        assert await rbac.get_effective_permissions(principal.id) == {
            "files:read",
            "reports:read",
            "teams:manage",
        }

    async def test_no_roles_no_permissions(self, rbac, principal):
        assert await rbac.get_effective_permissions(principal.id) == set()
        assert rbac.get_highest_role(principal.id) is None
        assert not rbac.has_role_level(principal.id, 5)

    async def test_highest_role_and_level(self, seeded, principal, store):
        member = store.get_role_by_name("Member")
        admin = store.get_role_by_name("Admin")
        await seeded.assign_role(principal.id, member.id)
        await seeded.assign_role(principal.id, admin.id)

        assert seeded.get_highest_role(principal.id).name == "Admin"
        assert seeded.has_role_level(principal.id, 2)
        assert seeded.has_role_level(principal.id, 3)
        assert not seeded.has_role_level(principal.id, 1)

    async def test_highest_role_prefers_super_admin_on_tie(self, seeded, principal, store):
        await seeded.assign_role(principal.id, store.get_role_by_name("Owner").id)
        await seeded.assign_role(principal.id, store.get_role_by_name(SUPER_ADMIN_ROLE).id)

        assert seeded.get_highest_role(principal.id).name == SUPER_ADMIN_ROLE


class TestAssignments:
    async def test_duplicate_assignment(self, seeded, principal, store):
        viewer = store.get_role_by_name("Viewer")
        await seeded.assign_role(principal.id, viewer.id)

        with pytest.raises(RoleAlreadyAssigned):
            await seeded.assign_role(principal.id, viewer.id)

    async def test_unknown_role_or_principal(self, seeded, principal, store):
        with pytest.raises(RoleNotFound):
            await seeded.assign_role(principal.id, "missing-role")
        with pytest.raises(NotFoundError):
            await seeded.assign_role("missing-principal", store.get_role_by_name("Viewer").id)

    async def test_revoke(self, seeded, principal, store):
        viewer = store.get_role_by_name("Viewer")
        await seeded.assign_role(principal.id, viewer.id)

        await seeded.revoke_role(principal.id, viewer.id)

        assert seeded.list_principal_roles(principal.id) == []
        with pytest.raises(RoleNotFound):
            await seeded.revoke_role(principal.id, viewer.id)

    async def test_cache_is_used_and_invalidated(self, store, settings, clock, principal):
        cache = RecordingPermissionCache()
        rbac = RbacResolver(store, settings, cache=cache, clock=clock)
        await rbac.seed()
        viewer = store.get_role_by_name("Viewer")
        admin = store.get_role_by_name("Admin")
        await rbac.assign_role(principal.id, viewer.id)

        assert not await rbac.has_permission(principal.id, "users", "delete")
        assert principal.id in cache.entries

        await rbac.assign_role(principal.id, admin.id)

        assert principal.id in cache.invalidated
        assert await rbac.has_permission(principal.id, "users", "delete")


class TestRoleManagement:
    def test_custom_role_level_floor(self, rbac):
        with pytest.raises(ValidationError):
            rbac.create_role("Shadow Owner", 1)

    def test_duplicate_role_name(self, rbac):
        rbac.create_role("Auditor", 3)

        with pytest.raises(ConflictError):
            rbac.create_role("Auditor", 4)

    def test_unknown_permissions_rejected(self, rbac):
        with pytest.raises(ValidationError):
            rbac.create_role("Ghost", 3, permissions=["ghosts:read"])

    def test_parent_must_have_lower_level(self, rbac):
        parent = rbac.create_role("Peer", 3)

        with pytest.raises(ValidationError):
            rbac.create_role("Same Level", 3, parent_role_id=parent.id)
        with pytest.raises(RoleNotFound):
            rbac.create_role("Orphan", 4, parent_role_id="missing")

    async def test_self_parent_rejected(self, rbac):
        role = rbac.create_role("Loop", 3)

        with pytest.raises(ValidationError):
            await rbac.update_role(role.id, parent_role_id=role.id)

    async def test_level_change_must_stay_above_children(self, rbac):
        parent = rbac.create_role("Parent", 2)
        rbac.create_role("Child", 3, parent_role_id=parent.id)

        with pytest.raises(ValidationError):
            await rbac.update_role(parent.id, level=3)
        updated = await rbac.update_role(parent.id, description="team leads")
        assert updated.description == "team leads"

    async def test_clear_parent(self, rbac):
        parent = rbac.create_role("Upper", 2)
        child = rbac.create_role("Lower", 3, parent_role_id=parent.id)

        updated = await rbac.update_role(child.id, parent_role_id=None)

        assert updated.parent_role_id is None

    async def test_system_roles_are_immutable(self, seeded, store):
        owner = store.get_role_by_name("Owner")

        with pytest.raises(SystemEntityImmutable):
            await seeded.update_role(owner.id, name="Boss")
        with pytest.raises(SystemEntityImmutable):
            await seeded.delete_role(owner.id)
        with pytest.raises(SystemEntityImmutable):
            await seeded.add_permissions_to_role(owner.id, ["files:read"])
        with pytest.raises(SystemEntityImmutable):
            await seeded.delete_permission("files:read")

    async def test_delete_blocked_while_assigned(self, rbac, principal):
        role = rbac.create_role("Temp", 4)
        await rbac.assign_role(principal.id, role.id)

        with pytest.raises(ConflictError):
            await rbac.delete_role(role.id)
        await rbac.revoke_role(principal.id, role.id)
        await rbac.delete_role(role.id)
        with pytest.raises(RoleNotFound):
            rbac.get_role(role.id)

    async def test_delete_blocked_with_children(self, rbac):
        parent = rbac.create_role("Has Kids", 2)
        rbac.create_role("Kid", 3, parent_role_id=parent.id)

        with pytest.raises(ConflictError):
            await rbac.delete_role(parent.id)

    async def test_role_permission_edits(self, rbac):
        rbac.create_permission("files", "read")
        rbac.create_permission("files", "update")
        role = rbac.create_role("Editor", 3)

        assert await rbac.add_permissions_to_role(role.id, ["files:read", "files:update"]) == 2
        assert await rbac.add_permissions_to_role(role.id, ["files:read"]) == 0
        assert await rbac.remove_permissions_from_role(role.id, ["files:update"]) == 1
        assert rbac.get_role(role.id).permissions == {"files:read"}


class TestPermissionManagement:
    def test_invalid_action_or_resource(self, rbac):
        with pytest.raises(ValidationError):
            rbac.create_permission("files", "obliterate")
        with pytest.raises(ValidationError):
            rbac.create_permission("files:x", "read")

    def test_duplicate_permission(self, rbac):
        rbac.create_permission("widgets", "read")

        with pytest.raises(ConflictError):
            rbac.create_permission("widgets", "read")

    async def test_delete_custom_permission_strips_grants(self, rbac):
        rbac.create_permission("widgets", "read")
        role = rbac.create_role("Widgeteer", 3, permissions=["widgets:read"])

        await rbac.delete_permission("widgets:read")

        assert rbac.get_role(role.id).permissions == set()
        assert rbac.list_permissions("widgets") == []
        with pytest.raises(NotFoundError):
            await rbac.delete_permission("widgets:read")
