"""Dashboards: team-scoped where the team resolves, project-scoped otherwise."""

from __future__ import annotations

from typing import Any, Mapping

from ..endpoints import EndpointScope, OperationKind, ResolvedEndpoint
from ..provisioning.models import ProvisioningOutcome, ResourceKind
from ..provisioning.plan import DashboardStep
from .base import ResourceContext, find_named
from .projects import find_team, require_project


def dashboard_entries(payload: Any) -> list[Any]:
    """Dashboard listings wrap their items in ``dashboardEntries``."""
    if isinstance(payload, dict):
        entries = payload.get('dashboardEntries')
        return list(entries) if isinstance(entries, list) else []
    if isinstance(payload, list):
        return payload
    return []


def _dashboard_scope(endpoint: ResolvedEndpoint) -> str:
    return 'project_Team' if endpoint.scope is EndpointScope.TEAM else 'project'


async def ensure_dashboard(ctx: ResourceContext, step: DashboardStep) -> ProvisioningOutcome:
    parent = await require_project(ctx, step.project)
    team = await find_team(ctx, step.project, step.team_name)
    candidates = ctx.endpoints(
        OperationKind.DASHBOARDS,
        project=step.project,
        team=step.team_name if team is not None else None,
    )

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        payload = await ctx.client.call('GET', endpoint.path, api_version=endpoint.api_version)
        return find_named(dashboard_entries(payload), step.name)

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            endpoint.path,
            body={
                'name': step.name,
                'description': step.description,
                'dashboardScope': _dashboard_scope(endpoint),
                'widgets': [dict(w) for w in step.widgets],
            },
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.DASHBOARD,
        step.name,
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )
    return result.outcome
