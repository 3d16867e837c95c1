"""Shared context for per-resource provisioning functions."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Union

from ..cache import ListCache
from ..endpoints import EndpointResolver, OperationKind, ResolveContext, ResolvedEndpoint
from ..provisioning.ensurer import ResourceEnsurer
from ..transport.client import DevOpsClient

# Caller-supplied template renderer: (template_id, substitutions) -> page/field body.
Renderer = Callable[[str, Mapping[str, str]], Union[str, Awaitable[str]]]


class PreconditionNotMet(Exception):
    """A gate failed; the step is recorded as skipped with ``reason``."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


@dataclass(slots=True)
class ResourceContext:
    """Collaborators shared by every step of one provisioning run."""

    client: DevOpsClient
    cache: ListCache
    ensurer: ResourceEnsurer
    resolver: EndpointResolver
    renderer: Renderer | None = None
    cache_scope: str = ''
    cache_ttl: float | None = None
    operation_poll_interval: float = 2.0
    operation_timeout_seconds: float = 180.0

    def endpoints(
        self,
        operation: OperationKind,
        *,
        project: str | None = None,
        team: str | None = None,
        **values: str,
    ) -> list[ResolvedEndpoint]:
        return self.resolver.resolve(
            operation, ResolveContext(project=project, team=team, values=values),
        )

    def endpoint(
        self,
        operation: OperationKind,
        *,
        project: str | None = None,
        team: str | None = None,
        **values: str,
    ) -> ResolvedEndpoint:
        return self.resolver.first(
            operation, ResolveContext(project=project, team=team, values=values),
        )

    def cache_key(self, *parts: str) -> str:
        """Listing-cache key for ``parts`` within this run's organization.

        The cache outlives a run and may serve several organizations, so the
        organization URL is always part of the key.
        """
        return '|'.join((self.cache_scope, ':'.join(parts)))

    async def cached_list(
        self,
        key: str,
        endpoint: ResolvedEndpoint,
        *,
        params: Mapping[str, str] | None = None,
    ) -> list[Any]:
        async def fetch() -> list[Any]:
            return await self.client.list_all(
                endpoint.path, params=params, api_version=endpoint.api_version,
            )

        return await self.cache.get(key, fetch, ttl=self.cache_ttl)

    async def render(self, template_id: str, substitutions: Mapping[str, str]) -> str:
        if self.renderer is None:
            raise PreconditionNotMet(f'no renderer configured for template {template_id!r}')
        rendered = self.renderer(template_id, substitutions)
        if inspect.isawaitable(rendered):
            rendered = await rendered
        return str(rendered)


def find_named(
    items: list[Any],
    name: str,
    *,
    field: str = 'name',
    case_insensitive: bool = False,
) -> dict[str, Any] | None:
    """Return the first mapping in ``items`` whose ``field`` equals ``name``."""
    wanted = name.casefold() if case_insensitive else name
    for item in items:
        if not isinstance(item, dict):
            continue
        value = item.get(field)
        if value is None:
            continue
        candidate = str(value).casefold() if case_insensitive else str(value)
        if candidate == wanted:
            return item
    return None
