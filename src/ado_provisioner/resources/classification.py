"""Area and iteration classification nodes.

Paths like ``Platform\\Backend`` are created parent-first. Azure DevOps
compares node names case-insensitively, so lookups do too.
"""

from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import quote

from ..endpoints import OperationKind, ResolvedEndpoint
from ..provisioning.ensurer import EnsureResult
from ..provisioning.models import (
    OutcomeAction,
    ProvisioningOutcome,
    ResourceKind,
    ResourceRef,
)
from ..provisioning.plan import AreaStep, IterationStep
from .base import PreconditionNotMet, ResourceContext
from .projects import require_project

_OPERATIONS = {
    ResourceKind.AREA: OperationKind.AREAS,
    ResourceKind.ITERATION: OperationKind.ITERATIONS,
}


def split_path(path: str) -> list[str]:
    return [segment.strip() for segment in path.replace('/', '\\').split('\\') if segment.strip()]


def _node_path(endpoint: ResolvedEndpoint, segments: list[str]) -> str:
    if not segments:
        return endpoint.path
    return endpoint.path + '/' + '/'.join(quote(s, safe='') for s in segments)


async def get_node(
    ctx: ResourceContext, kind: ResourceKind, project: str, path: str,
) -> dict[str, Any] | None:
    """Fetch one node by path, or None when it does not exist."""
    endpoint = ctx.endpoint(_OPERATIONS[kind], project=project)
    node = await ctx.client.call(
        'GET',
        _node_path(endpoint, split_path(path)),
        params={'$depth': '0'},
        treat_not_found_as_null=True,
        api_version=endpoint.api_version,
    )
    return node if isinstance(node, dict) else None


async def require_node(
    ctx: ResourceContext, kind: ResourceKind, project: str, path: str,
) -> dict[str, Any]:
    node = await get_node(ctx, kind, project, path)
    if node is None:
        raise PreconditionNotMet(f'{kind.value.lower()} {path!r} does not exist')
    return node


async def _ensure_level(
    ctx: ResourceContext,
    kind: ResourceKind,
    candidates: list[ResolvedEndpoint],
    parent: ResourceRef,
    segments: list[str],
    attributes: Mapping[str, Any] | None,
) -> EnsureResult:
    """Ensure the node at ``segments`` once its parent node exists."""

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        node = await ctx.client.call(
            'GET',
            _node_path(endpoint, segments),
            params={'$depth': '0'},
            treat_not_found_as_null=True,
            api_version=endpoint.api_version,
        )
        return node if isinstance(node, dict) else None

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        body: dict[str, Any] = {'name': segments[-1]}
        if attributes:
            body['attributes'] = dict(attributes)
        return await ctx.client.call(
            'POST',
            _node_path(endpoint, segments[:-1]),
            body=body,
            api_version=endpoint.api_version,
        )

    return await ctx.ensurer.ensure(
        kind,
        '\\'.join(segments),
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )


def _ancestor_unavailable(
    kind: ResourceKind,
    segments: list[str],
    parent: ResourceRef,
    ancestor: ProvisioningOutcome,
) -> ProvisioningOutcome:
    leaf = ResourceRef.zero(kind, '\\'.join(segments), parent.kind, parent.id)
    if ancestor.action is OutcomeAction.SKIPPED:
        return ProvisioningOutcome.skipped(leaf, ancestor.detail)
    return ProvisioningOutcome(
        resource=leaf,
        action=OutcomeAction.FAILED,
        detail=f'parent node {ancestor.resource.name!r}: {ancestor.detail}',
        error=ancestor.error,
        error_type=ancestor.error_type,
    )


async def _ensure_node(
    ctx: ResourceContext,
    kind: ResourceKind,
    project: str,
    path: str,
    attributes: Mapping[str, Any] | None,
) -> ProvisioningOutcome:
    parent = await require_project(ctx, project)
    candidates = ctx.endpoints(_OPERATIONS[kind], project=project)
    segments = split_path(path)
    if not segments:
        raise ValueError(f'empty {kind.value.lower()} path')

    for depth in range(1, len(segments)):
        ancestor = await _ensure_level(ctx, kind, candidates, parent, segments[:depth], None)
        if not ancestor.outcome.succeeded:
            return _ancestor_unavailable(kind, segments, parent, ancestor.outcome)
        parent = ancestor.ref

    leaf = await _ensure_level(ctx, kind, candidates, parent, segments, attributes)
    return leaf.outcome


async def ensure_area(ctx: ResourceContext, step: AreaStep) -> ProvisioningOutcome:
    return await _ensure_node(ctx, ResourceKind.AREA, step.project, step.path, None)


async def ensure_iteration(ctx: ResourceContext, step: IterationStep) -> ProvisioningOutcome:
    attributes: dict[str, Any] = {}
    if step.start_date:
        attributes['startDate'] = step.start_date
    if step.finish_date:
        attributes['finishDate'] = step.finish_date
    return await _ensure_node(
        ctx, ResourceKind.ITERATION, step.project, step.path, attributes or None,
    )
