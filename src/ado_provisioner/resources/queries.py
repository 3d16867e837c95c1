"""Shared work-item queries.

Queries live under the project's ``Shared Queries`` root folder. The target
folder path is ensured one level at a time before the query itself.
"""

from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import quote

from ..endpoints import OperationKind, ResolvedEndpoint
from ..provisioning.models import (
    OutcomeAction,
    ProvisioningOutcome,
    ResourceKind,
    ResourceRef,
)
from ..provisioning.plan import QueryStep
from .base import ResourceContext
from .projects import require_project

SHARED_QUERIES_ROOT = 'Shared Queries'


def _folder_segments(folder: str) -> list[str]:
    return [s.strip() for s in folder.replace('\\', '/').split('/') if s.strip()]


def _item_path(endpoint: ResolvedEndpoint, segments: list[str]) -> str:
    return endpoint.path + '/' + '/'.join(quote(s, safe='') for s in segments)


async def _ensure_item(
    ctx: ResourceContext,
    parent: ResourceRef,
    candidates: list[ResolvedEndpoint],
    segments: list[str],
    body: Mapping[str, Any],
) -> ProvisioningOutcome:
    """Ensure the query item at ``segments`` (root folder first)."""

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        item = await ctx.client.call(
            'GET',
            _item_path(endpoint, segments),
            params={'$depth': '0'},
            treat_not_found_as_null=True,
            api_version=endpoint.api_version,
        )
        return item if isinstance(item, dict) else None

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            _item_path(endpoint, segments[:-1]),
            body=dict(body),
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.QUERY,
        '/'.join(segments),
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )
    return result.outcome


async def ensure_query(ctx: ResourceContext, step: QueryStep) -> ProvisioningOutcome:
    project = await require_project(ctx, step.project)
    candidates = ctx.endpoints(OperationKind.QUERIES, project=step.project)
    folders = _folder_segments(step.folder)
    leaf_name = '/'.join([SHARED_QUERIES_ROOT, *folders, step.name])

    for depth in range(1, len(folders) + 1):
        segments = [SHARED_QUERIES_ROOT, *folders[:depth]]
        outcome = await _ensure_item(
            ctx, project, candidates, segments,
            {'name': segments[-1], 'isFolder': True},
        )
        if outcome.succeeded:
            continue
        leaf = ResourceRef.zero(ResourceKind.QUERY, leaf_name, project.kind, project.id)
        if outcome.action is OutcomeAction.SKIPPED:
            return ProvisioningOutcome.skipped(leaf, outcome.detail)
        return ProvisioningOutcome(
            resource=leaf,
            action=OutcomeAction.FAILED,
            detail=f'query folder {"/".join(segments)!r}: {outcome.detail}',
            error=outcome.error,
            error_type=outcome.error_type,
        )

    return await _ensure_item(
        ctx, project, candidates,
        [SHARED_QUERIES_ROOT, *folders, step.name],
        {'name': step.name, 'wiql': step.wiql},
    )
