"""Git repositories and branch policies."""

from __future__ import annotations

from typing import Any, Mapping

from ..endpoints import OperationKind, ResolvedEndpoint
from ..provisioning.models import ProvisioningOutcome, ResourceKind, ResourceRef
from ..provisioning.plan import BRANCH_POLICY_TYPES, BranchPolicyStep, RepositoryStep
from .base import PreconditionNotMet, ResourceContext, find_named
from .projects import require_project


def repositories_cache_key(ctx: ResourceContext, project: str) -> str:
    return ctx.cache_key('repositories', project)


async def find_repository(
    ctx: ResourceContext, project: str, name: str,
) -> dict[str, Any] | None:
    endpoint = ctx.endpoint(OperationKind.REPOSITORIES, project=project)
    repositories = await ctx.cached_list(repositories_cache_key(ctx, project), endpoint)
    return find_named(repositories, name)


async def list_branch_refs(
    ctx: ResourceContext, project: str, repository_id: str,
) -> list[dict[str, Any]]:
    endpoint = ctx.endpoint(OperationKind.REFS, project=project, repository_id=repository_id)
    refs = await ctx.client.list_all(
        endpoint.path, params={'filter': 'heads/'}, api_version=endpoint.api_version,
    )
    return [r for r in refs if isinstance(r, dict)]


# ── Repositories ─────────────────────────────────────────────────────


async def ensure_repository(ctx: ResourceContext, step: RepositoryStep) -> ProvisioningOutcome:
    parent = await require_project(ctx, step.project)
    candidates = ctx.endpoints(OperationKind.REPOSITORIES, project=step.project)
    cache_key = repositories_cache_key(ctx, step.project)

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        repositories = await ctx.cached_list(cache_key, endpoint)
        return find_named(repositories, step.name)

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            endpoint.path,
            body={'name': step.name, 'project': {'id': parent.id}},
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.REPOSITORY,
        step.name,
        parent=parent,
        lookup=lookup,
        create=create,
        candidates=candidates,
        cache_key=cache_key,
    )
    return result.outcome


# ── Branch policies ──────────────────────────────────────────────────


async def _require_repository(ctx: ResourceContext, project: str, name: str) -> ResourceRef:
    repository = await find_repository(ctx, project, name)
    if repository is None:
        raise PreconditionNotMet(f'repository {name!r} does not exist')
    project_ref = await require_project(ctx, project)
    return ResourceRef(
        kind=ResourceKind.REPOSITORY,
        name=name,
        id=str(repository['id']),
        parent_kind=ResourceKind.PROJECT,
        parent_id=project_ref.id,
    )


async def gate_branch_policy(ctx: ResourceContext, step: BranchPolicyStep) -> str | None:
    """Policies attach to a ref, so the repository needs at least one commit."""
    try:
        repository = await _require_repository(ctx, step.project, step.repository)
    except PreconditionNotMet as exc:
        return exc.reason
    refs = await list_branch_refs(ctx, step.project, repository.id)
    if not refs:
        return f'repository {step.repository!r} has no commits'
    if not any(r.get('name') == step.ref_name for r in refs):
        return f'branch {step.ref_name!r} does not exist in {step.repository!r}'
    return None


def _policy_settings(step: BranchPolicyStep, repository_id: str) -> dict[str, Any]:
    settings: dict[str, Any] = {
        'scope': [
            {
                'repositoryId': repository_id,
                'refName': step.ref_name,
                'matchKind': 'exact',
            }
        ],
    }
    if step.policy == 'minimum_reviewers':
        settings.update(
            minimumApproverCount=step.minimum_approver_count,
            creatorVoteCounts=step.creator_vote_counts,
            resetOnSourcePush=step.reset_on_source_push,
        )
    return settings


def _policy_matches(
    configuration: Mapping[str, Any], type_id: str, repository_id: str, ref_name: str,
) -> bool:
    if (configuration.get('type') or {}).get('id') != type_id:
        return False
    scopes = (configuration.get('settings') or {}).get('scope') or []
    return any(
        s.get('repositoryId') == repository_id and s.get('refName') == ref_name
        for s in scopes
        if isinstance(s, dict)
    )


async def ensure_branch_policy(
    ctx: ResourceContext, step: BranchPolicyStep,
) -> ProvisioningOutcome:
    type_id = BRANCH_POLICY_TYPES.get(step.policy)
    if type_id is None:
        raise ValueError(f'unknown branch policy {step.policy!r}')
    repository = await _require_repository(ctx, step.project, step.repository)
    candidates = ctx.endpoints(OperationKind.POLICY_CONFIGURATIONS, project=step.project)

    async def lookup(endpoint: ResolvedEndpoint) -> Mapping[str, Any] | None:
        configurations = await ctx.client.list_all(
            endpoint.path,
            params={
                'repositoryId': repository.id,
                'refName': step.ref_name,
                'policyType': type_id,
            },
            api_version=endpoint.api_version,
        )
        for configuration in configurations:
            if isinstance(configuration, dict) and _policy_matches(
                configuration, type_id, repository.id, step.ref_name,
            ):
                return configuration
        return None

    async def create(endpoint: ResolvedEndpoint) -> Mapping[str, Any]:
        return await ctx.client.call(
            'POST',
            endpoint.path,
            body={
                'isEnabled': True,
                'isBlocking': step.blocking,
                'type': {'id': type_id},
                'settings': _policy_settings(step, repository.id),
            },
            api_version=endpoint.api_version,
        )

    result = await ctx.ensurer.ensure(
        ResourceKind.BRANCH_POLICY,
        step.resource_name,
        parent=repository,
        lookup=lookup,
        create=create,
        candidates=candidates,
    )
    return result.outcome
