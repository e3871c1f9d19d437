from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from accesscore.config import Settings
from accesscore.logging import get_logger
from accesscore.service.clock import Clock, IdGenerator, SystemClock, uuid4_id
from accesscore.service.errors import (
    ConflictError,
    NotFoundError,
    RoleAlreadyAssigned,
    RoleNotFound,
    SystemEntityImmutable,
    ValidationError,
)
from accesscore.storage.errors import ConstraintViolation
from accesscore.storage.models import (
    MANAGE_ACTION,
    PERMISSION_ACTIONS,
    Permission,
    Principal,
    Role,
    RoleAssignment,
)
from accesscore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

SUPER_ADMIN_ROLE = "Super Admin"
OWNER_ROLE = "Owner"
ADMIN_ROLE = "Admin"
MANAGER_ROLE = "Manager"
MEMBER_ROLE = "Member"
VIEWER_ROLE = "Viewer"

HIGHEST_LEVEL = 1
MIN_CUSTOM_ROLE_LEVEL = 2

DEFAULT_RESOURCES: Tuple[str, ...] = (
    "users",
    "roles",
    "permissions",
    "tenants",
    "teams",
    "sessions",
    "billing",
    "subscriptions",
    "files",
    "notifications",
    "reports",
    "system_settings",
)

# (name, level, description); Super Admin and Owner share the top level
SYSTEM_ROLES: Tuple[Tuple[str, int, str], ...] = (
    (SUPER_ADMIN_ROLE, 1, "Platform administrator with every permission across all tenants"),
    (OWNER_ROLE, 1, "Tenant owner with full access to tenant resources"),
    (ADMIN_ROLE, 2, "Administrator with management permissions, no system settings"),
    (MANAGER_ROLE, 3, "Team manager with user and team management permissions"),
    (MEMBER_ROLE, 4, "Regular member with basic operational permissions"),
    (VIEWER_ROLE, 5, "Read-only access"),
)


def permission_name(resource: str, action: str) -> str:
    return f"{resource}:{action}"


def _grants(resources: Iterable[str], actions: Iterable[str]) -> Set[str]:
    actions = tuple(actions)
    return {permission_name(r, a) for r in resources for a in actions}


def default_role_grants() -> Dict[str, Set[str]]:
    """Default permission matrix for the system roles."""
    tenant_scoped = tuple(r for r in DEFAULT_RESOURCES if r != "system_settings")
    owner = _grants((r for r in tenant_scoped if r != "tenants"), PERMISSION_ACTIONS)
    owner |= _grants(("tenants",), ("read", "update", "manage", "export", "import"))
    return {
        SUPER_ADMIN_ROLE: _grants(DEFAULT_RESOURCES, PERMISSION_ACTIONS),
        OWNER_ROLE: owner,
        ADMIN_ROLE: _grants(tenant_scoped, PERMISSION_ACTIONS),
        MANAGER_ROLE: _grants(
            ("users", "teams", "files", "notifications", "reports"), PERMISSION_ACTIONS
        ),
        MEMBER_ROLE: _grants(
            ("files", "notifications", "reports", "sessions"),
            ("create", "read", "update", "export"),
        ),
        VIEWER_ROLE: _grants(DEFAULT_RESOURCES, ("read", "export")),
    }


def grants_permission(permissions: Set[str], resource: str, action: str) -> bool:
    """Exact match, or ``<resource>:manage`` which implies every action on it."""
    return (
        permission_name(resource, action) in permissions
        or permission_name(resource, MANAGE_ACTION) in permissions
    )


class RbacStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def insert_permission(self, permission: Permission) -> Permission: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]: ...

    def delete_permission(self, name: str) -> bool: ...

    def insert_role(self, role: Role) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def save_role(self, role: Role) -> Role: ...

    def delete_role(self, role_id: str) -> bool: ...

    def add_role_permissions(self, role_id: str, names: Iterable[str]) -> int: ...

    def remove_role_permissions(self, role_id: str, names: Iterable[str]) -> int: ...

    def assign_role(self, assignment: RoleAssignment) -> RoleAssignment: ...

    def unassign_role(self, principal_id: str, role_id: str) -> bool: ...

    def list_principal_roles(self, principal_id: str) -> List[Role]: ...

    def count_role_assignments(self, role_id: str) -> int: ...


_UNSET = object()


class RbacResolver:
    """Single entry point for role and permission decisions.

    A principal's effective permissions are the union over its assigned
    roles, each widened with the permissions of its ancestors. Parent links
    always point at a strictly higher-authority (lower level) role, so the
    role graph is a forest and ancestor walks terminate.
    """

    def __init__(
        self,
        store: RbacStore,
        settings: Settings,
        *,
        cache: RedisCache | SyncRedisCache | None = None,
        clock: Optional[Clock] = None,
        id_generator: IdGenerator = uuid4_id,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.clock = clock or SystemClock()
        self._new_id = id_generator

    # resolution
    async def get_effective_permissions(self, principal_id: str) -> Set[str]:
        if self.cache is not None:
            cached = await self.cache.get_cached_permissions(principal_id)
            if cached is not None:
                return cached
        permissions = self._resolve_permissions(principal_id)
        if self.cache is not None and self.settings.permission_cache_ttl_seconds > 0:
            await self.cache.set_cached_permissions(
                principal_id, permissions, self.settings.permission_cache_ttl_seconds
            )
        return permissions

    def _resolve_permissions(self, principal_id: str) -> Set[str]:
        assigned = self.store.list_principal_roles(principal_id)
        if not assigned:
            return set()
        roles_by_id = {role.id: role for role in self.store.list_roles()}
        permissions: Set[str] = set()
        for role in assigned:
            for member in self._with_ancestors(role, roles_by_id):
                permissions |= member.permissions
        return permissions

    @staticmethod
    def _with_ancestors(role: Role, roles_by_id: Mapping[str, Role]) -> List[Role]:
        chain = [role]
        seen = {role.id}
        current = role
        while current.parent_role_id and len(chain) <= len(roles_by_id):
            parent = roles_by_id.get(current.parent_role_id)
            if parent is None or parent.id in seen:
                break
            chain.append(parent)
            seen.add(parent.id)
            current = parent
        return chain

    async def has_permission(self, principal_id: str, resource: str, action: str) -> bool:
        permissions = await self.get_effective_permissions(principal_id)
        return grants_permission(permissions, resource, action)

    def get_highest_role(self, principal_id: str) -> Optional[Role]:
        roles = self.store.list_principal_roles(principal_id)
        if not roles:
            return None
        # On a level tie the cross-tenant role wins so elevation is never masked
        cross_tenant = self.settings.cross_tenant_role
        return min(
            roles, key=lambda r: (r.level, r.name != cross_tenant, not r.is_system, r.name)
        )

    def has_role_level(self, principal_id: str, required_level: int) -> bool:
        highest = self.get_highest_role(principal_id)
        return highest is not None and highest.level <= required_level

    def has_role(self, principal_id: str, role_name: str) -> bool:
        return any(r.name == role_name for r in self.store.list_principal_roles(principal_id))

    def list_principal_roles(self, principal_id: str) -> List[Role]:
        return self.store.list_principal_roles(principal_id)

    # assignments
    async def assign_role(
        self, principal_id: str, role_id: str, *, assigned_by: Optional[str] = None
    ) -> RoleAssignment:
        role = self.get_role(role_id)
        if self.store.get_principal(principal_id) is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        assignment = RoleAssignment(
            principal_id=principal_id,
            role_id=role.id,
            assigned_at=self.clock.now(),
            assigned_by=assigned_by,
        )
        try:
            self.store.assign_role(assignment)
        except ConstraintViolation as exc:
            if exc.field == "assignment":
                raise RoleAlreadyAssigned(
                    detail={"principal_id": principal_id, "role_id": role_id}
                )
            raise
        await self._invalidate(principal_id)
        logger.info(
            "role_assigned",
            principal_id=principal_id,
            role_id=role.id,
            role_name=role.name,
            assigned_by=assigned_by,
        )
        return assignment

    async def revoke_role(self, principal_id: str, role_id: str) -> None:
        if not self.store.unassign_role(principal_id, role_id):
            raise RoleNotFound(
                "role not assigned to principal",
                detail={"principal_id": principal_id, "role_id": role_id},
            )
        await self._invalidate(principal_id)
        logger.info("role_revoked", principal_id=principal_id, role_id=role_id)

    # roles
    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise RoleNotFound(detail={"role_id": role_id})
        return role

    def get_role_by_name(self, name: str) -> Role:
        role = self.store.get_role_by_name(name)
        if role is None:
            raise RoleNotFound(detail={"name": name})
        return role

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def create_role(
        self,
        name: str,
        level: int,
        *,
        permissions: Iterable[str] = (),
        parent_role_id: Optional[str] = None,
        description: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Role:
        name = (name or "").strip()
        if not name:
            raise ValidationError("role name is required")
        if level < MIN_CUSTOM_ROLE_LEVEL:
            raise ValidationError(
                f"custom roles must have level >= {MIN_CUSTOM_ROLE_LEVEL}",
                detail={"level": level},
            )
        if self.store.get_role_by_name(name) is not None:
            raise ConflictError("role name already exists", detail={"name": name})
        role_id = self._new_id()
        if parent_role_id is not None:
            self._validate_parent(role_id, level, parent_role_id)
        grants = set(permissions)
        self._require_known_permissions(grants)
        role = Role(
            id=role_id,
            name=name,
            level=level,
            is_system=False,
            permissions=grants,
            parent_role_id=parent_role_id,
            description=description,
            tenant_id=tenant_id,
            created_at=self.clock.now(),
        )
        try:
            self.store.insert_role(role)
        except ConstraintViolation as exc:
            if exc.field == "name":
                raise ConflictError("role name already exists", detail={"name": name})
            raise
        logger.info("role_created", role_id=role.id, role_name=name, level=level)
        return role

    async def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        level: Optional[int] = None,
        parent_role_id=_UNSET,
        description: Optional[str] = None,
    ) -> Role:
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemEntityImmutable(detail={"role_id": role_id})
        new_level = role.level if level is None else level
        if new_level < MIN_CUSTOM_ROLE_LEVEL:
            raise ValidationError(
                f"custom roles must have level >= {MIN_CUSTOM_ROLE_LEVEL}",
                detail={"level": new_level},
            )
        new_parent = role.parent_role_id if parent_role_id is _UNSET else parent_role_id
        if new_parent is not None:
            self._validate_parent(role.id, new_level, new_parent)
        for child in self.store.list_roles():
            if child.parent_role_id == role.id and child.level <= new_level:
                raise ValidationError(
                    "role level must stay above its child roles",
                    detail={"child_role_id": child.id, "child_level": child.level},
                )
        hierarchy_changed = new_parent != role.parent_role_id
        if name is not None:
            role.name = name.strip()
        role.level = new_level
        role.parent_role_id = new_parent
        if description is not None:
            role.description = description
        role.updated_at = self.clock.now()
        try:
            self.store.save_role(role)
        except ConstraintViolation as exc:
            if exc.field == "name":
                raise ConflictError("role name already exists", detail={"name": role.name})
            raise
        if hierarchy_changed:
            await self._invalidate_all()
        logger.info("role_updated", role_id=role.id, level=role.level)
        return role

    async def delete_role(self, role_id: str) -> None:
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemEntityImmutable(detail={"role_id": role_id})
        holders = self.store.count_role_assignments(role_id)
        if holders:
            raise ConflictError(
                "role is still assigned", detail={"role_id": role_id, "assignments": holders}
            )
        if any(r.parent_role_id == role_id for r in self.store.list_roles()):
            raise ConflictError("role has child roles", detail={"role_id": role_id})
        try:
            self.store.delete_role(role_id)
        except ConstraintViolation:
            raise ConflictError("role is still referenced", detail={"role_id": role_id})
        await self._invalidate_all()
        logger.info("role_deleted", role_id=role_id, role_name=role.name)

    def _validate_parent(self, role_id: str, level: int, parent_role_id: str) -> None:
        if parent_role_id == role_id:
            raise ValidationError("role cannot be its own parent")
        parent = self.store.get_role(parent_role_id)
        if parent is None:
            raise RoleNotFound("parent role not found", detail={"role_id": parent_role_id})
        if parent.level >= level:
            raise ValidationError(
                "parent role must have a strictly lower level",
                detail={"parent_level": parent.level, "level": level},
            )
        # Reject cycles here so resolution never has to detect them
        roles_by_id = {r.id: r for r in self.store.list_roles()}
        for ancestor in self._with_ancestors(parent, roles_by_id):
            if ancestor.id == role_id:
                raise ValidationError(
                    "parent assignment would create a cycle",
                    detail={"role_id": role_id, "parent_role_id": parent_role_id},
                )

    # permissions
    def create_permission(
        self,
        resource: str,
        action: str,
        *,
        description: Optional[str] = None,
        is_system: bool = False,
    ) -> Permission:
        resource = (resource or "").strip()
        if not resource or ":" in resource:
            raise ValidationError("invalid permission resource", detail={"resource": resource})
        if action not in PERMISSION_ACTIONS:
            raise ValidationError(
                "invalid permission action",
                detail={"action": action, "allowed": list(PERMISSION_ACTIONS)},
            )
        permission = Permission(
            id=self._new_id(),
            name=permission_name(resource, action),
            resource=resource,
            action=action,
            is_system=is_system,
            description=description,
            created_at=self.clock.now(),
        )
        try:
            self.store.insert_permission(permission)
        except ConstraintViolation:
            raise ConflictError("permission already exists", detail={"name": permission.name})
        return permission

    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        return self.store.list_permissions(resource)

    async def delete_permission(self, name: str) -> None:
        permission = self.store.get_permission_by_name(name)
        if permission is None:
            raise NotFoundError("permission not found", detail={"name": name})
        if permission.is_system:
            raise SystemEntityImmutable(detail={"name": name})
        self.store.delete_permission(name)
        await self._invalidate_all()
        logger.info("permission_deleted", permission=name)

    async def add_permissions_to_role(self, role_id: str, names: Iterable[str]) -> int:
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemEntityImmutable(detail={"role_id": role_id})
        wanted = set(names)
        self._require_known_permissions(wanted)
        added = self.store.add_role_permissions(role.id, wanted)
        if added:
            await self._invalidate_all()
        return added

    async def remove_permissions_from_role(self, role_id: str, names: Iterable[str]) -> int:
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemEntityImmutable(detail={"role_id": role_id})
        removed = self.store.remove_role_permissions(role.id, set(names))
        if removed:
            await self._invalidate_all()
        return removed

    def _require_known_permissions(self, names: Set[str]) -> None:
        unknown = sorted(n for n in names if self.store.get_permission_by_name(n) is None)
        if unknown:
            raise ValidationError("unknown permissions", detail={"permissions": unknown})

    # seeding
    def seed_default_permissions(self) -> int:
        created = 0
        for resource in DEFAULT_RESOURCES:
            for action in PERMISSION_ACTIONS:
                name = permission_name(resource, action)
                if self.store.get_permission_by_name(name) is not None:
                    continue
                try:
                    self.store.insert_permission(
                        Permission(
                            id=self._new_id(),
                            name=name,
                            resource=resource,
                            action=action,
                            is_system=True,
                            description=f"Can {action} {resource}",
                            created_at=self.clock.now(),
                        )
                    )
                    created += 1
                except ConstraintViolation:
                    # Seeded concurrently by another worker
                    continue
        logger.info("rbac_permissions_seeded", created=created)
        return created

    def seed_system_roles(self) -> int:
        """Create missing system roles and top up their default grants."""
        grants = default_role_grants()
        created = 0
        for name, level, description in SYSTEM_ROLES:
            role = self.store.get_role_by_name(name)
            if role is None:
                role = Role(
                    id=self._new_id(),
                    name=name,
                    level=level,
                    is_system=True,
                    description=description,
                    created_at=self.clock.now(),
                )
                try:
                    self.store.insert_role(role)
                    created += 1
                except ConstraintViolation:
                    role = self.store.get_role_by_name(name)
                    if role is None:
                        raise
            defined = {
                n for n in grants[name] if self.store.get_permission_by_name(n) is not None
            }
            missing = defined - role.permissions
            if missing:
                self.store.add_role_permissions(role.id, missing)
        logger.info("rbac_roles_seeded", created=created)
        return created

    async def sync_super_admin_permissions(self) -> int:
        """Grant every currently defined permission to Super Admin.

        Idempotent and safe to re-run as new permissions are added.
        """
        role = self.store.get_role_by_name(SUPER_ADMIN_ROLE)
        if role is None:
            raise RoleNotFound(detail={"name": SUPER_ADMIN_ROLE})
        every = {p.name for p in self.store.list_permissions()}
        missing = every - role.permissions
        added = self.store.add_role_permissions(role.id, missing) if missing else 0
        if added:
            await self._invalidate_all()
        logger.info("super_admin_permissions_synced", added=added, total=len(every))
        return added

    async def seed(self) -> Dict[str, int]:
        summary = {
            "permissions_created": self.seed_default_permissions(),
            "roles_created": self.seed_system_roles(),
            "super_admin_permissions_added": await self.sync_super_admin_permissions(),
        }
        await self._invalidate_all()
        return summary

    async def _invalidate(self, principal_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_permissions(principal_id)

    async def _invalidate_all(self) -> None:
        if self.cache is not None:
            await self.cache.invalidate_all_permissions()
