from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from accesscore.logging import get_logger
from accesscore.service.errors import (
    MfaRequired,
    PermissionDenied,
    ServiceError,
    TenantMismatch,
)
from accesscore.service.rbac import RbacResolver
from accesscore.service.tenancy import TenantScopeEnforcer
from accesscore.storage.models import Principal

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequireMfa:
    """The caller must have completed MFA in this session."""


@dataclass(frozen=True)
class RequireRole:
    """Highest role at ``level`` or above, or any of ``names``."""

    level: Optional[int] = None
    names: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.level is None and not self.names:
            raise ValueError("RequireRole needs a level or role names")


@dataclass(frozen=True)
class RequirePermission:
    resource: str
    action: str


@dataclass(frozen=True)
class RequireTenantMatch:
    """The target tenant of the request must be reachable by the caller."""


Check = Union[RequireMfa, RequireRole, RequirePermission, RequireTenantMatch]


@dataclass(frozen=True)
class AuthorizationPipeline:
    """Ordered list of checks attached to one operation."""

    checks: Tuple[Check, ...] = ()

    @classmethod
    def of(cls, *checks: Check) -> "AuthorizationPipeline":
        return cls(checks=tuple(checks))

    def then(self, check: Check) -> "AuthorizationPipeline":
        return AuthorizationPipeline(checks=self.checks + (check,))


@dataclass(frozen=True)
class AuthorizationRequest:
    principal: Principal
    tenant_id: Optional[str] = None
    mfa_verified: bool = False


@dataclass(frozen=True)
class AuthorizationOutcome:
    allowed: bool
    failed_check: Optional[Check] = None
    error: Optional[ServiceError] = field(default=None, compare=False)


class PipelineEvaluator:
    """Interprets an :class:`AuthorizationPipeline` against one request.

    Checks run in declaration order and evaluation stops at the first
    failure, so cheaper checks should be listed first.
    """

    def __init__(self, rbac: RbacResolver, tenancy: TenantScopeEnforcer) -> None:
        self.rbac = rbac
        self.tenancy = tenancy

    async def authorize(
        self, pipeline: AuthorizationPipeline, request: AuthorizationRequest
    ) -> AuthorizationOutcome:
        for check in pipeline.checks:
            error = await self._evaluate(check, request)
            if error is not None:
                logger.info(
                    "authorization_denied",
                    principal_id=request.principal.id,
                    check=type(check).__name__,
                    error_code=error.error_code,
                )
                return AuthorizationOutcome(allowed=False, failed_check=check, error=error)
        return AuthorizationOutcome(allowed=True)

    async def enforce(
        self, pipeline: AuthorizationPipeline, request: AuthorizationRequest
    ) -> None:
        outcome = await self.authorize(pipeline, request)
        if not outcome.allowed and outcome.error is not None:
            raise outcome.error

    async def _evaluate(
        self, check: Check, request: AuthorizationRequest
    ) -> Optional[ServiceError]:
        principal = request.principal
        if isinstance(check, RequireMfa):
            if not request.mfa_verified:
                return MfaRequired()
            return None
        if isinstance(check, RequireRole):
            if check.level is not None and self.rbac.has_role_level(principal.id, check.level):
                return None
            if check.names and any(self.rbac.has_role(principal.id, n) for n in check.names):
                return None
            return PermissionDenied(
                "insufficient role",
                detail={"required_level": check.level, "required_roles": list(check.names)},
            )
        if isinstance(check, RequirePermission):
            if await self.rbac.has_permission(principal.id, check.resource, check.action):
                return None
            return PermissionDenied(
                detail={"permission": f"{check.resource}:{check.action}"}
            )
        if isinstance(check, RequireTenantMatch):
            decision = self.tenancy.authorize(principal, request.tenant_id)
            if decision.allowed:
                return None
            return TenantMismatch(decision.reason, detail={"tenant_id": request.tenant_id})
        raise TypeError(f"unsupported authorization check {check!r}")
