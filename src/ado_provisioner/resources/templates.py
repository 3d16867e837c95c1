"""Team-scoped work-item templates."""

from __future__ import annotations

from typing import Any, Mapping

from ..endpoints import OperationKind, ResolvedEndpoint
from ..provisioning.models import ProvisioningOutcome, ResourceKind, ResourceRef
from ..provisioning.plan import TemplateStep
from .base import PreconditionNotMet, ResourceContext, find_named
from .projects import find_team, require_project

# Field that receives the rendered body when a template_id is given.
RENDERED_FIELD = 'System.Description'


async def gate_template(ctx: ResourceContext, step: TemplateStep) -> str | None:
    if step.template_id and ctx.renderer is None:
        return f'no renderer configured for template {step.template_id!r}'
    try:
        await require_project(ctx, step.project)
    except PreconditionNotMet as exc:
        return exc.reason
    if await find_team(ctx, step.project, step.team_name) is None:
        return f'team {step.team_name!r} does not exist'
    return None


async def _template_fields(ctx: ResourceContext, step: TemplateStep) -> dict[str, str]:
    fields = {'System.WorkItemType': step.work_item_type, **step.fields}
    if step.template_id:
        fields[RENDERED_FIELD] = await ctx.render(step.template_id, step.substitutions)
    return fields


async def ensure_template(ctx: ResourceContext, step: TemplateStep) -> ProvisioningOutcome:
    project = await require_project(ctx, step.project)
    team = await find_team(ctx, step.project, step.team_name)
    if team is None:
        raise PreconditionNotMet(f'team {step.team_name!r} does not exist')
    parent = ResourceRef(
        kind=ResourceKind.TEAM,
        name=step.team_name,
        id=str(team['id']),
        parent_kind=project.kind,
        parent_id=project.id,
    )
    candidates = ctx.endpoints(
        OperationKind.WORK_ITEM_TEMPLATES, project=step.project, team=step.team_name,
    )

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        templates = await ctx.client.list_all(
            endpoint.path,
            params={'workitemtypename': step.work_item_type},
            api_version=endpoint.api_version,
        )
        return find_named(templates, step.name)

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            endpoint.path,
            body={
                'name': step.name,
                'description': step.description,
                'workItemTypeName': step.work_item_type,
                'fields': await _template_fields(ctx, step),
            },
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.TEMPLATE,
        f'{step.work_item_type}/{step.name}',
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )
    return result.outcome
