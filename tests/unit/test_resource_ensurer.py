"""ResourceEnsurer: found/created, duplicate-race recovery, capability skips."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from ado_provisioner.cache import ListCache
from ado_provisioner.endpoints import EndpointCandidate, EndpointScope, ResolvedEndpoint
from ado_provisioner.provisioning.ensurer import ResourceEnsurer
from ado_provisioner.provisioning.models import (
    CAPABILITY_UNAVAILABLE,
    OutcomeAction,
    ResourceKind,
    ResourceRef,
)
from ado_provisioner.transport.client import DevOpsClient
from ado_provisioner.transport.errors import (
    DevOpsAPIError,
    DevOpsAuthError,
    DevOpsDuplicateError,
    DevOpsNotFoundError,
)
from fake_devops import ORG_URL, FakeDevOps

PROJECT = ResourceRef(kind=ResourceKind.PROJECT, name='Alpha', id='proj-1')


def _endpoint(path: str, scope: EndpointScope = EndpointScope.PROJECT) -> ResolvedEndpoint:
    return ResolvedEndpoint(EndpointCandidate(scope, path), path)


TEAM_EP = _endpoint('Alpha/Alpha%20Team/_apis/dashboard/dashboards', EndpointScope.TEAM)
PROJECT_EP = _endpoint('Alpha/_apis/dashboard/dashboards')


def _not_found() -> DevOpsNotFoundError:
    return DevOpsNotFoundError(404, 'The resource cannot be found.')


async def _ensure(ensurer, lookup, create, *, candidates=(PROJECT_EP,), kind=ResourceKind.REPOSITORY,
                  name='code', **kwargs):
    return await ensurer.ensure(
        kind, name, parent=PROJECT, lookup=lookup, create=create,
        candidates=list(candidates), **kwargs,
    )


# ── Found / Created ──────────────────────────────────────────────────


class TestLookBeforeCreate:
    @pytest.mark.asyncio
    async def test_existing_resource_is_found(self):
        lookup = AsyncMock(return_value={'id': 'r1', 'name': 'code'})
        create = AsyncMock()

        result = await _ensure(ResourceEnsurer(), lookup, create)

        assert result.outcome.action is OutcomeAction.FOUND
        assert result.ref.id == 'r1'
        assert result.ref.parent_id == 'proj-1'
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_resource_is_created_and_cache_invalidated(self):
        cache = ListCache()
        await cache.get('repositories:Alpha', AsyncMock(return_value=[]))
        lookup = AsyncMock(return_value=None)
        create = AsyncMock(return_value={'id': 'r2', 'name': 'code'})

        result = await _ensure(
            ResourceEnsurer(cache=cache), lookup, create, cache_key='repositories:Alpha',
        )

        assert result.outcome.action is OutcomeAction.CREATED
        assert result.ref.id == 'r2'
        assert result.resource == {'id': 'r2', 'name': 'code'}
        assert 'repositories:Alpha' not in cache
        create.assert_awaited_once_with(PROJECT_EP)

    @pytest.mark.asyncio
    async def test_custom_id_field(self):
        lookup = AsyncMock(return_value={'identifier': 'guid-1', 'id': 7})

        result = await _ensure(ResourceEnsurer(), lookup, AsyncMock(), id_field='identifier')

        assert result.ref.id == 'guid-1'


# ── Duplicate race ───────────────────────────────────────────────────


class TestDuplicateRecovery:
    @pytest.mark.asyncio
    async def test_duplicate_on_create_converges_to_found(self):
        lookup = AsyncMock(side_effect=[None, {'id': 'r3', 'name': 'code'}])
        create = AsyncMock(side_effect=DevOpsDuplicateError(
            409, 'TF400948: already exists', type_key='GitRepositoryNameAlreadyExistsException',
        ))

        result = await _ensure(ResourceEnsurer(recovery_delay=0), lookup, create)

        assert result.outcome.action is OutcomeAction.FOUND
        assert result.outcome.detail == 'recovered from concurrent create'
        assert result.ref.id == 'r3'

    @pytest.mark.asyncio
    async def test_recovery_invalidates_cache_before_relookup(self):
        cache = ListCache()
        await cache.get('repositories:Alpha', AsyncMock(return_value=[]))
        seen_cached: list[bool] = []

        async def lookup(endpoint):
            seen_cached.append('repositories:Alpha' in cache)
            return None if len(seen_cached) == 1 else {'id': 'r4'}

        create = AsyncMock(side_effect=DevOpsDuplicateError(409, 'exists', type_key='DuplicateNameException'))

        result = await _ensure(
            ResourceEnsurer(cache=cache, recovery_delay=0), lookup, create,
            cache_key='repositories:Alpha',
        )

        assert result.outcome.action is OutcomeAction.FOUND
        assert seen_cached == [True, False]

    @pytest.mark.asyncio
    async def test_duplicate_never_visible_is_failed(self):
        lookup = AsyncMock(return_value=None)
        create = AsyncMock(side_effect=DevOpsDuplicateError(409, 'exists'))

        result = await _ensure(
            ResourceEnsurer(recovery_attempts=3, recovery_delay=0), lookup, create,
        )

        assert result.outcome.action is OutcomeAction.FAILED
        assert result.outcome.error_type == 'DevOpsDuplicateError'
        assert lookup.await_count == 4

    @pytest.mark.asyncio
    async def test_concurrent_ensures_from_two_processes_converge(self, fake: FakeDevOps):
        fake.add_project('Alpha')
        arrived = 0
        both_looked = asyncio.Event()

        def ensurer_for_process():
            client = DevOpsClient(
                organization_url=ORG_URL, credential='pat', http_client=fake.http_client(),
            )
            endpoint = _endpoint('Alpha/_apis/git/repositories')

            async def lookup(ep):
                nonlocal arrived
                repos = await client.list_all(ep.path)
                found = next((r for r in repos if r['name'] == 'code'), None)
                arrived += 1
                if arrived == 2:
                    both_looked.set()
                await both_looked.wait()
                return found

            async def create(ep):
                return await client.call('POST', ep.path, body={'name': 'code'})

            ensurer = ResourceEnsurer(cache=ListCache(), recovery_delay=0)
            return ensurer.ensure(
                ResourceKind.REPOSITORY, 'code', parent=PROJECT,
                lookup=lookup, create=create, candidates=[endpoint],
            )

        first, second = await asyncio.gather(ensurer_for_process(), ensurer_for_process())

        assert len(fake.repositories['Alpha']) == 1
        assert first.ref.id == second.ref.id == fake.repositories['Alpha'][0]['id']
        assert sorted(r.outcome.action.value for r in (first, second)) == ['Created', 'Found']
        assert fake.calls('POST', 'repositories') == 2


# ── Endpoint candidates ──────────────────────────────────────────────


class TestCandidates:
    @pytest.mark.asyncio
    async def test_lookup_404_advances_to_next_candidate(self):
        lookup = AsyncMock(side_effect=[_not_found(), None])
        create = AsyncMock(return_value={'id': 'd1'})

        result = await _ensure(
            ResourceEnsurer(), lookup, create,
            candidates=(TEAM_EP, PROJECT_EP), kind=ResourceKind.DASHBOARD, name='Overview',
        )

        assert result.outcome.action is OutcomeAction.CREATED
        assert result.endpoint == PROJECT_EP
        create.assert_awaited_once_with(PROJECT_EP)

    @pytest.mark.asyncio
    async def test_create_404_advances_to_next_candidate(self):
        lookup = AsyncMock(return_value=None)
        create = AsyncMock(side_effect=[_not_found(), {'id': 'd2'}])

        result = await _ensure(
            ResourceEnsurer(), lookup, create,
            candidates=(TEAM_EP, PROJECT_EP), kind=ResourceKind.DASHBOARD, name='Overview',
        )

        assert result.outcome.action is OutcomeAction.CREATED
        assert [c.args[0] for c in create.await_args_list] == [TEAM_EP, PROJECT_EP]

    @pytest.mark.asyncio
    async def test_every_lookup_404_is_capability_unavailable(self, caplog):
        lookup = AsyncMock(side_effect=_not_found())
        create = AsyncMock()

        with caplog.at_level(logging.DEBUG):
            result = await _ensure(
                ResourceEnsurer(), lookup, create,
                candidates=(TEAM_EP, PROJECT_EP), kind=ResourceKind.DASHBOARD, name='Overview',
            )

        assert result.outcome.action is OutcomeAction.SKIPPED
        assert result.outcome.detail == CAPABILITY_UNAVAILABLE
        assert not result.ref.resolved
        create.assert_not_called()
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    @pytest.mark.asyncio
    async def test_every_create_404_is_capability_unavailable(self):
        lookup = AsyncMock(return_value=None)
        create = AsyncMock(side_effect=_not_found())

        result = await _ensure(
            ResourceEnsurer(), lookup, create, candidates=(TEAM_EP, PROJECT_EP),
        )

        assert result.outcome.action is OutcomeAction.SKIPPED
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_no_candidates_is_capability_unavailable(self):
        result = await _ensure(ResourceEnsurer(), AsyncMock(), AsyncMock(), candidates=())
        assert result.outcome.action is OutcomeAction.SKIPPED


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_create_error_is_failed_not_raised(self):
        lookup = AsyncMock(return_value=None)
        create = AsyncMock(side_effect=DevOpsAPIError(400, 'invalid name'))

        result = await _ensure(ResourceEnsurer(), lookup, create)

        assert result.outcome.action is OutcomeAction.FAILED
        assert result.outcome.detail == 'create failed'
        assert result.outcome.error_type == 'DevOpsAPIError'
        assert 'invalid name' in result.outcome.error
        assert result.ref.id == ''

    @pytest.mark.asyncio
    async def test_lookup_error_is_failed(self):
        lookup = AsyncMock(side_effect=DevOpsAPIError(500, 'boom'))

        result = await _ensure(ResourceEnsurer(), lookup, AsyncMock())

        assert result.outcome.action is OutcomeAction.FAILED
        assert result.outcome.detail == 'lookup failed'

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self):
        lookup = AsyncMock(return_value=None)
        create = AsyncMock(side_effect=DevOpsAuthError(403, 'forbidden'))

        with pytest.raises(DevOpsAuthError):
            await _ensure(ResourceEnsurer(), lookup, create)


# ── In-run registry ──────────────────────────────────────────────────


class TestRegistry:
    @pytest.mark.asyncio
    async def test_repeat_request_in_run_does_not_call_destination(self):
        ensurer = ResourceEnsurer()
        lookup = AsyncMock(return_value=None)
        create = AsyncMock(return_value={'id': 'r5'})

        first = await _ensure(ensurer, lookup, create)
        second = await _ensure(ensurer, lookup, create)

        assert first.outcome.action is OutcomeAction.CREATED
        assert second.outcome.action is OutcomeAction.FOUND
        assert second.outcome.detail == 'already resolved in this run'
        assert second.ref.id == 'r5'
        assert lookup.await_count == 1
        assert ensurer.known(ResourceRef.zero(ResourceKind.REPOSITORY, 'code', ResourceKind.PROJECT, 'proj-1'))

    @pytest.mark.asyncio
    async def test_area_identity_is_case_insensitive(self):
        ensurer = ResourceEnsurer()
        lookup = AsyncMock(return_value={'id': 'n1'})

        await _ensure(ensurer, lookup, AsyncMock(), kind=ResourceKind.AREA, name='Platform')
        again = await _ensure(ensurer, lookup, AsyncMock(), kind=ResourceKind.AREA, name='platform')

        assert again.outcome.detail == 'already resolved in this run'
        assert lookup.await_count == 1

    @pytest.mark.asyncio
    async def test_repository_identity_is_case_sensitive(self):
        ensurer = ResourceEnsurer()
        lookup = AsyncMock(return_value={'id': 'r6'})

        await _ensure(ensurer, lookup, AsyncMock(), name='code')
        await _ensure(ensurer, lookup, AsyncMock(), name='Code')

        assert lookup.await_count == 2

    @pytest.mark.asyncio
    async def test_unresolved_outcomes_are_not_remembered(self):
        ensurer = ResourceEnsurer()
        lookup = AsyncMock(side_effect=[DevOpsAPIError(500, 'boom'), {'id': 'r7'}])

        first = await _ensure(ensurer, lookup, AsyncMock())
        second = await _ensure(ensurer, lookup, AsyncMock())

        assert first.outcome.action is OutcomeAction.FAILED
        assert second.outcome.action is OutcomeAction.FOUND
        assert second.ref.id == 'r7'
