"""Project wikis and wiki pages.

Page bodies come from the caller's renderer; the core PUTs whatever string it
returns. Pages are created parent-first because Azure DevOps rejects a page
whose parent path does not exist. Existing pages are left untouched.
"""

from __future__ import annotations

from typing import Any, Mapping

from ..endpoints import OperationKind, ResolvedEndpoint
from ..provisioning.models import (
    OutcomeAction,
    ProvisioningOutcome,
    ResourceKind,
    ResourceRef,
)
from ..provisioning.plan import WikiPageStep, WikiStep
from .base import PreconditionNotMet, ResourceContext, find_named
from .projects import require_project


def wikis_cache_key(ctx: ResourceContext, project: str) -> str:
    return ctx.cache_key('wikis', project)


async def find_wiki(ctx: ResourceContext, project: str, name: str) -> dict[str, Any] | None:
    endpoint = ctx.endpoint(OperationKind.WIKIS, project=project)
    wikis = await ctx.cached_list(wikis_cache_key(ctx, project), endpoint)
    return find_named(wikis, name)


async def require_wiki(ctx: ResourceContext, project: str, name: str) -> ResourceRef:
    parent = await require_project(ctx, project)
    known = ctx.ensurer.known(ResourceRef.zero(ResourceKind.WIKI, name, parent.kind, parent.id))
    if known is not None:
        return known.ref
    wiki = await find_wiki(ctx, project, name)
    if wiki is None:
        raise PreconditionNotMet(f'wiki {name!r} does not exist')
    return ResourceRef(
        kind=ResourceKind.WIKI,
        name=name,
        id=str(wiki['id']),
        parent_kind=parent.kind,
        parent_id=parent.id,
    )


async def ensure_wiki(ctx: ResourceContext, step: WikiStep) -> ProvisioningOutcome:
    parent = await require_project(ctx, step.project)
    candidates = ctx.endpoints(OperationKind.WIKIS, project=step.project)
    cache_key = wikis_cache_key(ctx, step.project)

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        wikis = await ctx.cached_list(cache_key, endpoint)
        return find_named(wikis, step.wiki_name)

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            endpoint.path,
            body={'name': step.wiki_name, 'projectId': parent.id, 'type': 'projectWiki'},
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.WIKI,
        step.wiki_name,
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
        cache_key=cache_key,
    )
    return result.outcome


# ── Pages ────────────────────────────────────────────────────────────


async def gate_wiki_page(ctx: ResourceContext, step: WikiPageStep) -> str | None:
    if ctx.renderer is None:
        return f'no renderer configured for template {step.template_id!r}'
    try:
        await require_wiki(ctx, step.project, step.wiki_name)
    except PreconditionNotMet as exc:
        return exc.reason
    return None


def _page_ancestors(page_path: str) -> list[str]:
    segments = [s for s in page_path.split('/') if s]
    return ['/' + '/'.join(segments[:depth]) for depth in range(1, len(segments))]


async def _ensure_page(
    ctx: ResourceContext,
    step: WikiPageStep,
    wiki: ResourceRef,
    path: str,
    content: str | None,
) -> ProvisioningOutcome:
    candidates = ctx.endpoints(OperationKind.WIKI_PAGES, project=step.project, wiki_id=wiki.id)

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        page = await ctx.client.call(
            'GET',
            endpoint.path,
            params={'path': path, 'includeContent': 'false'},
            treat_not_found_as_null=True,
            api_version=endpoint.api_version,
        )
        return page if isinstance(page, dict) else None

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        # Ancestor pages get an empty body; only the leaf is rendered.
        body = content
        if body is None:
            body = await ctx.render(step.template_id, step.substitutions)
        return await ctx.client.call(
            'PUT',
            endpoint.path,
            params={'path': path},
            body={'content': body},
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.WIKI_PAGE,
        path,
        parent=wiki,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )
    return result.outcome


async def ensure_wiki_page(ctx: ResourceContext, step: WikiPageStep) -> ProvisioningOutcome:
    wiki = await require_wiki(ctx, step.project, step.wiki_name)

    for ancestor in _page_ancestors(step.page_path):
        outcome = await _ensure_page(ctx, step, wiki, ancestor, '')
        if not outcome.succeeded:
            leaf = ResourceRef.zero(ResourceKind.WIKI_PAGE, step.page_path, wiki.kind, wiki.id)
            if outcome.action is OutcomeAction.SKIPPED:
                return ProvisioningOutcome.skipped(leaf, outcome.detail)
            return ProvisioningOutcome(
                resource=leaf,
                action=OutcomeAction.FAILED,
                detail=f'parent page {ancestor!r}: {outcome.detail}',
                error=outcome.error,
                error_type=outcome.error_type,
            )

    return await _ensure_page(ctx, step, wiki, step.page_path, None)
