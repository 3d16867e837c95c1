"""Team settings: backlog/default iterations, iteration subscriptions, areas.

Settings are a desired-state update rather than check-then-create: the
current values are read first and only differences are written. A run that
writes anything reports ``Created``; a run that finds everything in place
reports ``Found``.
"""

from __future__ import annotations

import logging
from typing import Any

from ..endpoints import OperationKind
from ..provisioning.models import (
    CAPABILITY_UNAVAILABLE,
    ProvisioningOutcome,
    ResourceKind,
    ResourceRef,
)
from ..provisioning.plan import TeamSettingsStep, normalize_path
from ..transport.errors import DevOpsNotFoundError
from .base import PreconditionNotMet, ResourceContext
from .classification import require_node
from .projects import find_team, require_project

logger = logging.getLogger(__name__)


async def gate_team_settings(ctx: ResourceContext, step: TeamSettingsStep) -> str | None:
    try:
        await require_project(ctx, step.project)
    except PreconditionNotMet as exc:
        return exc.reason
    if await find_team(ctx, step.project, step.team_name) is None:
        return f'team {step.team_name!r} does not exist'
    return None


def _ref_id(value: Any) -> str | None:
    if isinstance(value, dict):
        raw = value.get('id')
        return str(raw) if raw else None
    return None


async def _iteration_id(ctx: ResourceContext, project: str, path: str) -> str:
    node = await require_node(ctx, ResourceKind.ITERATION, project, path)
    return str(node['identifier'])


async def _apply_settings(ctx: ResourceContext, step: TeamSettingsStep) -> list[str]:
    endpoint = ctx.endpoint(OperationKind.TEAM_SETTINGS, project=step.project, team=step.team_name)
    current = await ctx.client.call('GET', endpoint.path, api_version=endpoint.api_version) or {}

    patch: dict[str, Any] = {}
    if step.backlog_iteration:
        wanted = await _iteration_id(ctx, step.project, step.backlog_iteration)
        if _ref_id(current.get('backlogIteration')) != wanted:
            patch['backlogIteration'] = wanted
    if step.default_iteration:
        wanted = await _iteration_id(ctx, step.project, step.default_iteration)
        if _ref_id(current.get('defaultIteration')) != wanted:
            patch['defaultIteration'] = wanted
    if step.working_days and list(current.get('workingDays') or []) != list(step.working_days):
        patch['workingDays'] = list(step.working_days)

    if not patch:
        return []
    await ctx.client.call('PATCH', endpoint.path, body=patch, api_version=endpoint.api_version)
    return sorted(patch)


async def _subscribe_iterations(ctx: ResourceContext, step: TeamSettingsStep) -> list[str]:
    if not step.iterations:
        return []
    endpoint = ctx.endpoint(
        OperationKind.TEAM_ITERATIONS, project=step.project, team=step.team_name,
    )
    subscribed = await ctx.client.list_all(endpoint.path, api_version=endpoint.api_version)
    subscribed_ids = {str(i.get('id')) for i in subscribed if isinstance(i, dict)}

    added: list[str] = []
    for path in step.iterations:
        iteration_id = await _iteration_id(ctx, step.project, path)
        if iteration_id in subscribed_ids:
            continue
        await ctx.client.call(
            'POST', endpoint.path, body={'id': iteration_id}, api_version=endpoint.api_version,
        )
        subscribed_ids.add(iteration_id)
        added.append(path)
    return added


async def _apply_area(ctx: ResourceContext, step: TeamSettingsStep) -> bool:
    if not step.default_area:
        return False
    await require_node(ctx, ResourceKind.AREA, step.project, step.default_area)
    endpoint = ctx.endpoint(
        OperationKind.TEAM_FIELD_VALUES, project=step.project, team=step.team_name,
    )
    area_path = f'{step.project}\\{normalize_path(step.default_area)}'
    desired = {
        'defaultValue': area_path,
        'values': [{'value': area_path, 'includeChildren': step.include_area_children}],
    }
    current = await ctx.client.call('GET', endpoint.path, api_version=endpoint.api_version) or {}
    current_values = [
        {'value': v.get('value'), 'includeChildren': bool(v.get('includeChildren'))}
        for v in current.get('values') or []
        if isinstance(v, dict)
    ]
    if current.get('defaultValue') == area_path and current_values == desired['values']:
        return False
    await ctx.client.call('PATCH', endpoint.path, body=desired, api_version=endpoint.api_version)
    return True


async def ensure_team_settings(
    ctx: ResourceContext, step: TeamSettingsStep,
) -> ProvisioningOutcome:
    project = await require_project(ctx, step.project)
    team = await find_team(ctx, step.project, step.team_name)
    if team is None:
        raise PreconditionNotMet(f'team {step.team_name!r} does not exist')
    ref = ResourceRef(
        kind=ResourceKind.TEAM_SETTING,
        name=step.team_name,
        id=str(team['id']),
        parent_kind=ResourceKind.PROJECT,
        parent_id=project.id,
    )

    try:
        changed = await _apply_settings(ctx, step)
        added = await _subscribe_iterations(ctx, step)
        area_changed = await _apply_area(ctx, step)
    except DevOpsNotFoundError:
        # Team-scoped work settings are absent on some collections.
        logger.info(
            'Team settings unavailable for %s', step.team_name,
            extra={'resource_kind': ResourceKind.TEAM_SETTING.value},
        )
        return ProvisioningOutcome.skipped(
            ResourceRef.zero(ResourceKind.TEAM_SETTING, step.team_name, ResourceKind.PROJECT, project.id),
            CAPABILITY_UNAVAILABLE,
        )

    details = []
    if changed:
        details.append('updated ' + ', '.join(changed))
    if added:
        details.append('subscribed ' + ', '.join(added))
    if area_changed:
        details.append('set default area')
    if details:
        logger.info(
            'Applied team settings for %s: %s', step.team_name, '; '.join(details),
            extra={'resource_kind': ResourceKind.TEAM_SETTING.value, 'resource_id': ref.id},
        )
        return ProvisioningOutcome.created(ref, '; '.join(details))
    return ProvisioningOutcome.found(ref, 'settings already applied')
