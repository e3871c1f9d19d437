"""Tests for the declarative authorization pipeline."""

import asyncio

import pytest

from accesscore.service.errors import MfaRequired, PermissionDenied, TenantMismatch
from accesscore.service.pipeline import (
    AuthorizationPipeline,
    AuthorizationRequest,
    PipelineEvaluator,
    RequireMfa,
    RequirePermission,
    RequireRole,
    RequireTenantMatch,
)
from accesscore.service.rbac import RbacResolver
from accesscore.service.tenancy import TenantScopeEnforcer


@pytest.fixture
def rbac(store, settings, clock):
    resolver = RbacResolver(store, settings, clock=clock)
    asyncio.run(resolver.seed())
    return resolver


@pytest.fixture
def evaluator(rbac, settings):
    return PipelineEvaluator(rbac, TenantScopeEnforcer(rbac, settings))


@pytest.fixture
def manager(store, rbac):
    principal = store.create_principal("manager@example.com", tenant_id="A", status="active")
    asyncio.run(rbac.assign_role(principal.id, store.get_role_by_name("Manager").id))
    return principal


class TestPipeline:
    def test_require_role_needs_criteria(self):
        with pytest.raises(ValueError):
            RequireRole()

    def test_then_appends_in_order(self):
        pipeline = AuthorizationPipeline.of(RequireMfa()).then(RequireTenantMatch())

        assert pipeline.checks == (RequireMfa(), RequireTenantMatch())

    async def test_all_checks_pass(self, evaluator, manager):
        pipeline = AuthorizationPipeline.of(
            RequireTenantMatch(),
            RequireRole(level=3),
            RequirePermission("users", "delete"),
            RequireMfa(),
        )
        request = AuthorizationRequest(principal=manager, tenant_id="A", mfa_verified=True)

        outcome = await evaluator.authorize(pipeline, request)

        assert outcome.allowed
        assert outcome.failed_check is None

    async def test_first_failure_wins(self, evaluator, manager):
        """Checks run in declaration order and stop at the first failure."""
        pipeline = AuthorizationPipeline.of(
            RequirePermission("billing", "read"),
            RequireTenantMatch(),
        )
        request = AuthorizationRequest(principal=manager, tenant_id="B")

        outcome = await evaluator.authorize(pipeline, request)

        assert not outcome.allowed
        assert outcome.failed_check == RequirePermission("billing", "read")
        assert isinstance(outcome.error, PermissionDenied)

    async def test_tenant_mismatch_carries_reason(self, evaluator, manager):
        pipeline = AuthorizationPipeline.of(RequireTenantMatch())

        with pytest.raises(TenantMismatch) as exc:
            await evaluator.enforce(pipeline, AuthorizationRequest(principal=manager, tenant_id="B"))

        assert exc.value.reason == "different tenant"

    async def test_mfa_required(self, evaluator, manager):
        pipeline = AuthorizationPipeline.of(RequireMfa())

        with pytest.raises(MfaRequired):
            await evaluator.enforce(pipeline, AuthorizationRequest(principal=manager, tenant_id="A"))

    async def test_role_by_level_or_name(self, evaluator, manager):
        too_high = AuthorizationPipeline.of(RequireRole(level=2))
        by_name = AuthorizationPipeline.of(RequireRole(names=("Admin", "Manager")))
        request = AuthorizationRequest(principal=manager, tenant_id="A")

        with pytest.raises(PermissionDenied):
            await evaluator.enforce(too_high, request)
        await evaluator.enforce(by_name, request)

    async def test_role_grant_satisfies_permission(self, evaluator, manager):
        pipeline = AuthorizationPipeline.of(RequirePermission("teams", "approve"))

        await evaluator.enforce(pipeline, AuthorizationRequest(principal=manager, tenant_id="A"))

    async def test_empty_pipeline_allows(self, evaluator, manager):
        outcome = await evaluator.authorize(
            AuthorizationPipeline(), AuthorizationRequest(principal=manager)
        )

        assert outcome.allowed
