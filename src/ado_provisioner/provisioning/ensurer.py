"""Idempotent check-then-create primitive.

``ResourceEnsurer.ensure`` guarantees that a resource identified by
``(kind, name, parent)`` exists afterwards and returns it either way:

  1. Look up an existing match, probing endpoint candidates in order
     (a 404 on a candidate advances to the next one).
  2. Create it through the first responsive candidate when absent.
  3. A duplicate-name rejection means a concurrent writer won the race:
     invalidate the listing cache, look the resource up again and report
     it ``Found``.
  4. Any other failure becomes a ``Failed`` outcome; authentication
     failures propagate and abort the run.
  5. When every candidate 404s the destination lacks the capability and the
     outcome is ``Skipped``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..cache import ListCache
from ..endpoints import ResolvedEndpoint
from ..transport.errors import (
    DevOpsAuthError,
    DevOpsDuplicateError,
    DevOpsNotFoundError,
)
from .models import (
    CAPABILITY_UNAVAILABLE,
    ProvisioningOutcome,
    ResourceKind,
    ResourceRef,
)

logger = logging.getLogger(__name__)

LookupFn = Callable[[ResolvedEndpoint], Awaitable[Mapping[str, Any] | None]]
CreateFn = Callable[[ResolvedEndpoint], Awaitable[Mapping[str, Any]]]

_DEFAULT_RECOVERY_ATTEMPTS = 3
_DEFAULT_RECOVERY_DELAY = 0.5  # seconds


class CapabilityUnavailable(Exception):
    """Every endpoint candidate for an operation answered 404."""

    def __init__(self, kind: ResourceKind, tried: Sequence[str]) -> None:
        self.kind = kind
        self.tried = tuple(tried)
        super().__init__(
            f'{kind.value}: {CAPABILITY_UNAVAILABLE} (tried {", ".join(tried) or "no endpoints"})'
        )


@dataclass(frozen=True, slots=True)
class EnsureResult:
    """Outcome of one ensure call plus the raw resource for dependent steps."""

    ref: ResourceRef
    outcome: ProvisioningOutcome
    resource: Mapping[str, Any] | None = None
    endpoint: ResolvedEndpoint | None = None


def resource_id(resource: Mapping[str, Any], id_field: str = 'id') -> str:
    value = resource.get(id_field)
    return '' if value is None else str(value)


class ResourceEnsurer:
    """Look-before-create with duplicate-race recovery.

    One ensurer serves one provisioning run. It remembers every identity it
    resolved, so a repeated request inside the run does not hit the
    destination twice, and serializes concurrent requests for the same
    identity within the process.
    """

    def __init__(
        self,
        *,
        cache: ListCache | None = None,
        recovery_attempts: int = _DEFAULT_RECOVERY_ATTEMPTS,
        recovery_delay: float = _DEFAULT_RECOVERY_DELAY,
    ) -> None:
        self._cache = cache
        self._recovery_attempts = max(1, recovery_attempts)
        self._recovery_delay = recovery_delay
        self._resolved: dict[tuple[ResourceKind, str, str | None], EnsureResult] = {}
        self._locks: dict[tuple[ResourceKind, str, str | None], asyncio.Lock] = {}

    def known(self, ref: ResourceRef) -> EnsureResult | None:
        return self._resolved.get(ref.identity())

    async def ensure(
        self,
        kind: ResourceKind,
        name: str,
        *,
        lookup: LookupFn,
        create: CreateFn,
        candidates: Sequence[ResolvedEndpoint],
        parent: ResourceRef | None = None,
        cache_key: str | None = None,
        id_field: str = 'id',
    ) -> EnsureResult:
        zero = ResourceRef.zero(
            kind,
            name,
            parent_kind=parent.kind if parent else None,
            parent_id=parent.id if parent else None,
        )
        identity = zero.identity()
        lock = self._locks.setdefault(identity, asyncio.Lock())
        async with lock:
            previous = self._resolved.get(identity)
            if previous is not None:
                return EnsureResult(
                    ref=previous.ref,
                    outcome=ProvisioningOutcome.found(previous.ref, 'already resolved in this run'),
                    resource=previous.resource,
                    endpoint=previous.endpoint,
                )
            result = await self._ensure(
                zero,
                lookup=lookup,
                create=create,
                candidates=candidates,
                cache_key=cache_key,
                id_field=id_field,
            )
            if result.ref.resolved:
                self._resolved[identity] = result
            return result

    async def _ensure(
        self,
        zero: ResourceRef,
        *,
        lookup: LookupFn,
        create: CreateFn,
        candidates: Sequence[ResolvedEndpoint],
        cache_key: str | None,
        id_field: str,
    ) -> EnsureResult:
        kind = zero.kind
        log_extra = {'resource_kind': kind.value, 'resource_name': zero.name}

        # 1. Look before create.
        try:
            start, endpoint, existing = await self._probe(kind, candidates, lookup)
        except CapabilityUnavailable as exc:
            return self._skipped(zero, exc)
        except DevOpsAuthError:
            raise
        except Exception as exc:
            return self._failed(zero, exc, 'lookup failed')

        if existing is not None:
            ref = self._ref(zero, existing, id_field)
            logger.debug('%s %r already exists', kind.value, zero.name, extra=log_extra)
            return EnsureResult(ref, ProvisioningOutcome.found(ref), existing, endpoint)

        # 2. Create through the first responsive candidate.
        tried: list[str] = []
        for endpoint in candidates[start:]:
            try:
                created = await create(endpoint)
                break
            except DevOpsNotFoundError:
                tried.append(endpoint.path)
            except DevOpsDuplicateError as exc:
                # 3. Lost a create-create race; converge on the winner's resource.
                return await self._recover_duplicate(
                    zero, exc, lookup=lookup, endpoint=endpoint,
                    cache_key=cache_key, id_field=id_field,
                )
            except DevOpsAuthError:
                raise
            except Exception as exc:
                return self._failed(zero, exc, 'create failed')
        else:
            return self._skipped(zero, CapabilityUnavailable(kind, tried))

        self._invalidate(cache_key)
        ref = self._ref(zero, created, id_field)
        logger.info(
            'Created %s %r (id=%s)',
            kind.value,
            zero.name,
            ref.id,
            extra={**log_extra, 'resource_id': ref.id, 'scope': endpoint.scope.value},
        )
        return EnsureResult(ref, ProvisioningOutcome.created(ref), created, endpoint)

    async def _probe(
        self,
        kind: ResourceKind,
        candidates: Sequence[ResolvedEndpoint],
        lookup: LookupFn,
    ) -> tuple[int, ResolvedEndpoint, Mapping[str, Any] | None]:
        tried: list[str] = []
        for index, endpoint in enumerate(candidates):
            try:
                return index, endpoint, await lookup(endpoint)
            except DevOpsNotFoundError:
                tried.append(endpoint.path)
                logger.debug(
                    '%s lookup endpoint absent: %s', kind.value, endpoint.path,
                    extra={'resource_kind': kind.value, 'scope': endpoint.scope.value},
                )
        raise CapabilityUnavailable(kind, tried)

    async def _recover_duplicate(
        self,
        zero: ResourceRef,
        exc: DevOpsDuplicateError,
        *,
        lookup: LookupFn,
        endpoint: ResolvedEndpoint,
        cache_key: str | None,
        id_field: str,
    ) -> EnsureResult:
        logger.info(
            '%s %r created concurrently elsewhere; re-reading',
            zero.kind.value,
            zero.name,
            extra={'resource_kind': zero.kind.value, 'resource_name': zero.name,
                   'type_key': exc.type_key},
        )
        for attempt in range(self._recovery_attempts):
            self._invalidate(cache_key)
            try:
                existing = await lookup(endpoint)
            except DevOpsAuthError:
                raise
            except Exception as lookup_exc:
                return self._failed(zero, lookup_exc, 'lookup after duplicate failed')
            if existing is not None:
                ref = self._ref(zero, existing, id_field)
                return EnsureResult(
                    ref,
                    ProvisioningOutcome.found(ref, 'recovered from concurrent create'),
                    existing,
                    endpoint,
                )
            if attempt + 1 < self._recovery_attempts:
                await asyncio.sleep(self._recovery_delay)
        return self._failed(zero, exc, 'duplicate reported but resource not found')

    def _invalidate(self, cache_key: str | None) -> None:
        if self._cache is not None and cache_key:
            self._cache.invalidate(cache_key)

    @staticmethod
    def _ref(zero: ResourceRef, resource: Mapping[str, Any], id_field: str) -> ResourceRef:
        return ResourceRef(
            kind=zero.kind,
            name=zero.name,
            id=resource_id(resource, id_field),
            parent_kind=zero.parent_kind,
            parent_id=zero.parent_id,
        )

    @staticmethod
    def _skipped(zero: ResourceRef, exc: CapabilityUnavailable) -> EnsureResult:
        logger.info(
            '%s %r skipped: %s',
            zero.kind.value,
            zero.name,
            CAPABILITY_UNAVAILABLE,
            extra={'resource_kind': zero.kind.value, 'tried': list(exc.tried)},
        )
        return EnsureResult(zero, ProvisioningOutcome.skipped(zero, CAPABILITY_UNAVAILABLE))

    @staticmethod
    def _failed(zero: ResourceRef, exc: BaseException, detail: str) -> EnsureResult:
        logger.warning(
            '%s %r failed: %s',
            zero.kind.value,
            zero.name,
            exc,
            extra={'resource_kind': zero.kind.value, 'error_type': type(exc).__name__},
        )
        return EnsureResult(zero, ProvisioningOutcome.failed(zero, exc, detail))
