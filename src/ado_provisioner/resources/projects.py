"""Projects and teams.

Project creation is queued by Azure DevOps: the POST answers 202 with an
operation reference, which is polled until the project is well formed.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import quote

from ..endpoints import OperationKind, ResolvedEndpoint
from ..provisioning.models import ProvisioningOutcome, ResourceKind, ResourceRef
from ..provisioning.plan import ProjectStep, TeamStep
from .base import PreconditionNotMet, ResourceContext, find_named

logger = logging.getLogger(__name__)

def projects_cache_key(ctx: ResourceContext) -> str:
    return ctx.cache_key('projects')


def teams_cache_key(ctx: ResourceContext, project: str) -> str:
    return ctx.cache_key('teams', project)


# ── Projects ─────────────────────────────────────────────────────────


async def find_project(ctx: ResourceContext, name: str) -> dict[str, Any] | None:
    endpoint = ctx.endpoint(OperationKind.PROJECTS)
    projects = await ctx.cached_list(projects_cache_key(ctx), endpoint)
    return find_named(projects, name)


async def require_project(ctx: ResourceContext, name: str) -> ResourceRef:
    """Resolve a project ref or fail the gate."""
    known = ctx.ensurer.known(ResourceRef.zero(ResourceKind.PROJECT, name))
    if known is not None:
        return known.ref
    project = await find_project(ctx, name)
    if project is None:
        raise PreconditionNotMet(f'project {name!r} does not exist')
    return ResourceRef(kind=ResourceKind.PROJECT, name=name, id=str(project['id']))


async def gate_project_exists(ctx: ResourceContext, step: Any) -> str | None:
    try:
        await require_project(ctx, step.project)
    except PreconditionNotMet as exc:
        return exc.reason
    return None


async def _resolve_process_id(ctx: ResourceContext, process_name: str) -> str:
    async def fetch() -> list[Any]:
        return await ctx.client.list_all('_apis/process/processes')

    processes = await ctx.cache.get(ctx.cache_key('processes'), fetch, ttl=ctx.cache_ttl)
    match = find_named(processes, process_name, case_insensitive=True)
    if match is None:
        raise ValueError(f'process template {process_name!r} not found')
    return str(match.get('typeId') or match['id'])


def _is_operation_reference(payload: Any) -> bool:
    return (
        isinstance(payload, dict)
        and 'status' in payload
        and '_apis/operations/' in str(payload.get('url', ''))
    )


async def ensure_project(ctx: ResourceContext, step: ProjectStep) -> ProvisioningOutcome:
    candidates = ctx.endpoints(OperationKind.PROJECTS)

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        projects = await ctx.cached_list(projects_cache_key(ctx), endpoint)
        return find_named(projects, step.name)

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        process_id = await _resolve_process_id(ctx, step.process)
        body = {
            'name': step.name,
            'description': step.description,
            'visibility': step.visibility,
            'capabilities': {
                'versioncontrol': {'sourceControlType': step.source_control},
                'processTemplate': {'templateTypeId': process_id},
            },
        }
        queued = await ctx.client.call(
            'POST', endpoint.path, body=body, api_version=endpoint.api_version,
        )
        if _is_operation_reference(queued):
            await ctx.client.wait_for_operation(
                queued,
                poll_interval=ctx.operation_poll_interval,
                timeout_seconds=ctx.operation_timeout_seconds,
            )
        return await ctx.client.call(
            'GET',
            f'{endpoint.path}/{quote(step.name, safe="")}',
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.PROJECT,
        step.name,
        lookup=lookup,
        create=create,
        candidates=candidates,
        cache_key=projects_cache_key(ctx),
    )
    return result.outcome


# ── Teams ────────────────────────────────────────────────────────────


async def find_team(ctx: ResourceContext, project: str, name: str) -> dict[str, Any] | None:
    endpoint = ctx.endpoint(OperationKind.TEAMS, project=project)
    teams = await ctx.cached_list(teams_cache_key(ctx, project), endpoint)
    return find_named(teams, name)


async def ensure_team(ctx: ResourceContext, step: TeamStep) -> ProvisioningOutcome:
    parent = await require_project(ctx, step.project)
    candidates = ctx.endpoints(OperationKind.TEAMS, project=step.project)
    cache_key = teams_cache_key(ctx, step.project)

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        teams = await ctx.cached_list(cache_key, endpoint)
        return find_named(teams, step.name)

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            endpoint.path,
            body={'name': step.name, 'description': step.description},
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.TEAM,
        step.name,
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
        cache_key=cache_key,
    )
    return result.outcome
