"""Test plans and static test suites.

Current services expose ``testplan/plans``; older servers only have the
legacy ``test/plans`` surface, which takes the area as ``{"name": ...}``.
Suites are created under the plan's root suite and need the new API.
"""

from __future__ import annotations

from typing import Any, Mapping

from ..endpoints import OperationKind, ResolvedEndpoint
from ..provisioning.models import ProvisioningOutcome, ResourceKind, ResourceRef
from ..provisioning.plan import TestPlanStep, TestSuiteStep
from ..transport.errors import DevOpsNotFoundError
from .base import PreconditionNotMet, ResourceContext, find_named
from .projects import require_project


def _plan_body(step: TestPlanStep, endpoint: ResolvedEndpoint) -> dict[str, Any]:
    body: dict[str, Any] = {'name': step.name}
    area = f'{step.project}\\{step.area_path}' if step.area_path else step.project
    iteration = f'{step.project}\\{step.iteration}' if step.iteration else step.project
    if endpoint.candidate.label == 'legacy':
        body['area'] = {'name': area}
    else:
        body['areaPath'] = area
    body['iteration'] = iteration
    return body


async def find_test_plan(
    ctx: ResourceContext, project: str, name: str,
) -> dict[str, Any] | None:
    """First plan named ``name`` on any available test plan surface."""
    for endpoint in ctx.endpoints(OperationKind.TEST_PLANS, project=project):
        try:
            plans = await ctx.client.list_all(endpoint.path, api_version=endpoint.api_version)
        except DevOpsNotFoundError:
            continue
        return find_named(plans, name)
    return None


async def ensure_test_plan(ctx: ResourceContext, step: TestPlanStep) -> ProvisioningOutcome:
    parent = await require_project(ctx, step.project)
    candidates = ctx.endpoints(OperationKind.TEST_PLANS, project=step.project)

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        plans = await ctx.client.list_all(endpoint.path, api_version=endpoint.api_version)
        return find_named(plans, step.name)

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST', endpoint.path, body=_plan_body(step, endpoint),
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.TEST_PLAN,
        step.name,
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )
    return result.outcome


# ── Suites ───────────────────────────────────────────────────────────


async def _require_plan(ctx: ResourceContext, project: str, name: str) -> dict[str, Any]:
    plan = await find_test_plan(ctx, project, name)
    if plan is None:
        raise PreconditionNotMet(f'test plan {name!r} does not exist')
    return plan


async def gate_test_suite(ctx: ResourceContext, step: TestSuiteStep) -> str | None:
    try:
        await require_project(ctx, step.project)
        await _require_plan(ctx, step.project, step.plan)
    except PreconditionNotMet as exc:
        return exc.reason
    return None


async def ensure_test_suite(ctx: ResourceContext, step: TestSuiteStep) -> ProvisioningOutcome:
    await require_project(ctx, step.project)
    plan = await _require_plan(ctx, step.project, step.plan)
    plan_ref = ResourceRef(kind=ResourceKind.TEST_PLAN, name=step.plan, id=str(plan['id']))
    root_suite = (plan.get('rootSuite') or {}).get('id')
    if root_suite is None:
        raise PreconditionNotMet(f'test plan {step.plan!r} has no root suite')
    candidates = ctx.endpoints(
        OperationKind.TEST_SUITES, project=step.project, plan_id=plan_ref.id,
    )

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        suites = await ctx.client.list_all(endpoint.path, api_version=endpoint.api_version)
        for suite in suites:
            if not isinstance(suite, dict) or suite.get('name') != step.name:
                continue
            if (suite.get('parentSuite') or {}).get('id') == root_suite:
                return suite
        return None

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            endpoint.path,
            body={
                'suiteType': 'staticTestSuite',
                'name': step.name,
                'parentSuite': {'id': root_suite},
            },
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.TEST_SUITE,
        step.name,
        parent=plan_ref,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )
    return result.outcome
