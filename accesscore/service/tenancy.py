from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from accesscore.config import Settings
from accesscore.logging import get_logger
from accesscore.service.audit import (
    EVENT_CROSS_TENANT_ACCESS,
    SEVERITY_MEDIUM,
    SecurityAuditLog,
)
from accesscore.service.errors import TenantMismatch
from accesscore.service.rbac import RbacResolver
from accesscore.storage.models import Principal

logger = get_logger(__name__)

REASON_SAME_TENANT = "same tenant"
REASON_CROSS_TENANT_ROLE = "cross-tenant role"
REASON_DIFFERENT_TENANT = "different tenant"
REASON_NO_TENANT_CONTEXT = "no tenant context"


@dataclass(frozen=True)
class TenantScopeDecision:
    tenant_id: Optional[str]
    principal_id: str
    allowed: bool
    reason: str


class TenantScopeEnforcer:
    """Per-request tenant isolation decision.

    Only the configured cross-tenant role bypasses isolation, and every such
    bypass is logged and written to the security trail.
    """

    def __init__(
        self,
        rbac: RbacResolver,
        settings: Settings,
        *,
        audit: Optional[SecurityAuditLog] = None,
    ) -> None:
        self.rbac = rbac
        self.settings = settings
        self.audit = audit

    def authorize(
        self, principal: Principal, target_tenant_id: Optional[str]
    ) -> TenantScopeDecision:
        if principal.tenant_id is not None and principal.tenant_id == target_tenant_id:
            return self._decision(principal, target_tenant_id, True, REASON_SAME_TENANT)

        highest = self.rbac.get_highest_role(principal.id)
        if highest is not None and highest.name == self.settings.cross_tenant_role:
            logger.warning(
                "cross_tenant_access_granted",
                principal_id=principal.id,
                principal_tenant_id=principal.tenant_id,
                target_tenant_id=target_tenant_id,
                role=highest.name,
            )
            if self.audit is not None:
                self.audit.record(
                    EVENT_CROSS_TENANT_ACCESS,
                    SEVERITY_MEDIUM,
                    principal_id=principal.id,
                    tenant_id=principal.tenant_id,
                    target_tenant_id=target_tenant_id,
                    role=highest.name,
                )
            return self._decision(principal, target_tenant_id, True, REASON_CROSS_TENANT_ROLE)

        if principal.tenant_id is None or target_tenant_id is None:
            reason = REASON_NO_TENANT_CONTEXT
        else:
            reason = REASON_DIFFERENT_TENANT
        logger.info(
            "tenant_access_denied",
            principal_id=principal.id,
            principal_tenant_id=principal.tenant_id,
            target_tenant_id=target_tenant_id,
            reason=reason,
        )
        return self._decision(principal, target_tenant_id, False, reason)

    def require(
        self, principal: Principal, target_tenant_id: Optional[str]
    ) -> TenantScopeDecision:
        decision = self.authorize(principal, target_tenant_id)
        if not decision.allowed:
            raise TenantMismatch(
                decision.reason,
                detail={"principal_id": principal.id, "tenant_id": target_tenant_id},
            )
        return decision

    @staticmethod
    def _decision(
        principal: Principal, tenant_id: Optional[str], allowed: bool, reason: str
    ) -> TenantScopeDecision:
        return TenantScopeDecision(
            tenant_id=tenant_id, principal_id=principal.id, allowed=allowed, reason=reason
        )
