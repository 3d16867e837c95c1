"""End-to-end provisioning runs against the in-memory Azure DevOps fake."""

from __future__ import annotations

import httpx
import pytest

from ado_provisioner import ProvisioningOrchestrator
from ado_provisioner.provisioning.models import OutcomeAction
from ado_provisioner.provisioning.plan import (
    BranchPolicyStep,
    DashboardStep,
    PlanValidationError,
    ProjectStep,
    ProvisioningPlan,
    QueryStep,
    RepositoryStep,
    WikiPageStep,
    WikiStep,
)
from ado_provisioner.settings import ConnectionSettings, ProvisionerSettings
from ado_provisioner.transport.errors import DevOpsAuthError
from fake_devops import ORG_URL, FakeDevOps, error_response

FAST = ProvisionerSettings(base_delay=0, max_delay=0, operation_poll_interval=0)


def _plan(*steps, credential: str = 'pat') -> ProvisioningPlan:
    return ProvisioningPlan(connection=ConnectionSettings(ORG_URL, credential), steps=steps)


def _orchestrator(fake: FakeDevOps, **kwargs) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(FAST, http_client=fake.http_client(), **kwargs)


def _render(template_id, substitutions):
    return f'# {template_id}'


# ── Idempotence ──────────────────────────────────────────────────────


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_fresh_project_then_rerun_finds_everything(self, fake):
        orchestrator = _orchestrator(fake)
        plan = _plan(
            RepositoryStep(project='Alpha', name='code'),
            ProjectStep(name='Alpha'),
        )

        first = await orchestrator.provision(plan)
        second = await orchestrator.provision(plan)

        assert first.actions == [OutcomeAction.CREATED, OutcomeAction.CREATED]
        assert [o.step_key for o in first] == ['project:Alpha', 'repository:Alpha/code']
        assert second.actions == [OutcomeAction.FOUND, OutcomeAction.FOUND]
        assert second.is_idempotent_rerun
        assert fake.calls('POST', 'projects') == 1
        assert fake.calls('POST', 'repositories') == 1
        assert len(fake.repositories['Alpha']) == 1

    @pytest.mark.asyncio
    async def test_project_creation_polls_queued_operation(self, fake):
        report = await _orchestrator(fake).provision(_plan(ProjectStep(name='Alpha')))

        outcome = report.outcomes[0]
        assert outcome.action is OutcomeAction.CREATED
        assert outcome.resource.id == fake.projects['Alpha']['id']
        assert fake.calls('GET', 'operations') >= 1

    @pytest.mark.asyncio
    async def test_ids_are_stable_across_runs(self, fake):
        orchestrator = _orchestrator(fake)
        plan = _plan(ProjectStep(name='Alpha'), RepositoryStep(project='Alpha', name='code'))

        first = await orchestrator.provision(plan)
        second = await orchestrator.provision(plan)

        assert [o.resource.id for o in first] == [o.resource.id for o in second]

    @pytest.mark.asyncio
    async def test_fresh_orchestrator_also_finds_existing_resources(self, fake):
        plan = _plan(ProjectStep(name='Alpha'), RepositoryStep(project='Alpha', name='code'))
        await _orchestrator(fake).provision(plan)

        report = await _orchestrator(fake).provision(plan)

        assert report.is_idempotent_rerun


# ── Shared cache across organizations ────────────────────────────────


def _multi_org_client(*fakes: FakeDevOps) -> httpx.AsyncClient:
    by_org = {f.org_url.rsplit('/', 1)[-1]: f for f in fakes}

    def handle(request: httpx.Request) -> httpx.Response:
        return by_org[request.url.path.split('/')[1]].handle(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handle))


class TestOrganizations:
    @pytest.mark.asyncio
    async def test_listings_never_leak_between_organizations(self, fake):
        other = FakeDevOps('https://dev.azure.com/fabrikam')
        fake.add_project('Alpha')
        orchestrator = ProvisioningOrchestrator(FAST, http_client=_multi_org_client(fake, other))
        steps = (ProjectStep(name='Alpha'), RepositoryStep(project='Alpha', name='code'))

        first = await orchestrator.provision(_plan(*steps))
        second = await orchestrator.provision(ProvisioningPlan(
            connection=ConnectionSettings(other.org_url, 'pat'), steps=steps,
        ))

        assert first.actions == [OutcomeAction.FOUND, OutcomeAction.CREATED]
        assert second.actions == [OutcomeAction.CREATED, OutcomeAction.CREATED]
        assert second.outcomes[0].resource.id == other.projects['Alpha']['id']
        assert other.calls('POST', 'projects') == 1
        assert len(other.repositories['Alpha']) == 1
        assert len(fake.repositories['Alpha']) == 1

    @pytest.mark.asyncio
    async def test_same_organization_shares_listings(self, fake):
        fake.add_project('Alpha')
        orchestrator = _orchestrator(fake)
        plan = _plan(ProjectStep(name='Alpha'))

        await orchestrator.provision(plan)
        await orchestrator.provision(ProvisioningPlan(
            connection=ConnectionSettings(ORG_URL + '/', 'pat'), steps=plan.steps,
        ))

        assert fake.calls('GET', 'projects') == 1


# ── Transport behavior seen through a run ────────────────────────────


class TestThrottling:
    @pytest.mark.asyncio
    async def test_throttled_create_retries_then_succeeds(self, fake):
        fake.add_project('Alpha')
        fake.script(
            'POST', 'repositories',
            error_response(429, 'TF400733: The request has been throttled.'),
            error_response(429, 'TF400733: The request has been throttled.'),
        )

        report = await _orchestrator(fake).provision(
            _plan(RepositoryStep(project='Alpha', name='code')),
        )

        assert report.actions == [OutcomeAction.CREATED]
        assert fake.calls('POST', 'repositories') == 3
        assert len(fake.repositories['Alpha']) == 1


# ── Gates ────────────────────────────────────────────────────────────


class TestGates:
    @pytest.mark.asyncio
    async def test_branch_policy_on_empty_repository_is_skipped(self, fake):
        fake.add_project('Alpha')
        plan = _plan(
            RepositoryStep(project='Alpha', name='code'),
            BranchPolicyStep(project='Alpha', repository='code'),
        )

        report = await _orchestrator(fake).provision(plan)

        assert report.actions == [OutcomeAction.CREATED, OutcomeAction.SKIPPED]
        assert report.outcomes[1].detail == "repository 'code' has no commits"
        assert fake.calls('POST', 'policies') == 0

    @pytest.mark.asyncio
    async def test_branch_policy_on_repository_with_commits(self, fake):
        fake.add_project('Alpha')
        fake.add_repository('Alpha', 'code', branches=('main',))
        plan = _plan(BranchPolicyStep(project='Alpha', repository='code', minimum_approver_count=2))
        orchestrator = _orchestrator(fake)

        first = await orchestrator.provision(plan)
        second = await orchestrator.provision(plan)

        assert first.actions == [OutcomeAction.CREATED]
        assert second.actions == [OutcomeAction.FOUND]
        [policy] = fake.policies['Alpha']
        assert policy['settings']['minimumApproverCount'] == 2
        assert policy['settings']['scope'][0]['refName'] == 'refs/heads/main'

    @pytest.mark.asyncio
    async def test_missing_branch_is_skipped(self, fake):
        fake.add_project('Alpha')
        fake.add_repository('Alpha', 'code', branches=('develop',))

        report = await _orchestrator(fake).provision(
            _plan(BranchPolicyStep(project='Alpha', repository='code')),
        )

        assert report.actions == [OutcomeAction.SKIPPED]
        assert 'refs/heads/main' in report.outcomes[0].detail

    @pytest.mark.asyncio
    async def test_missing_project_outside_plan_is_skipped(self, fake):
        report = await _orchestrator(fake).provision(
            _plan(RepositoryStep(project='Ghost', name='code')),
        )

        assert report.actions == [OutcomeAction.SKIPPED]
        assert report.outcomes[0].detail == "project 'Ghost' does not exist"
        assert fake.calls('POST', 'repositories') == 0


# ── Best-effort continuation ─────────────────────────────────────────


class TestContinuation:
    @pytest.mark.asyncio
    async def test_failed_step_skips_dependents_and_later_steps_run(self, fake):
        fake.add_project('Alpha')
        fake.script('POST', 'wikis', error_response(400, 'VS403xxx: Invalid wiki request.'))
        plan = _plan(
            WikiStep(project='Alpha'),
            WikiPageStep(project='Alpha', path='/Home', template_id='home'),
            DashboardStep(project='Alpha', name='Overview'),
        )

        report = await _orchestrator(fake, renderer=_render).provision(plan)

        assert report.actions == [
            OutcomeAction.FAILED, OutcomeAction.SKIPPED, OutcomeAction.CREATED,
        ]
        failed = report.outcomes[0]
        assert failed.error_type == 'DevOpsAPIError'
        assert 'Invalid wiki request' in failed.error
        assert report.outcomes[1].detail == "dependency 'wiki:Alpha/Alpha.wiki' not available"
        assert len(fake.dashboards[('Alpha', 'Alpha Team')]) == 1

    @pytest.mark.asyncio
    async def test_explicit_dependency_on_failed_step_is_skipped(self, fake):
        fake.add_project('Alpha')
        fake.script('POST', 'repositories', error_response(400, 'TF401019: invalid name'))
        plan = _plan(
            RepositoryStep(project='Alpha', name='code'),
            QueryStep(
                project='Alpha', name='Open bugs', wiql='SELECT [System.Id] FROM WorkItems',
                depends_on=('repository:Alpha/code',),
            ),
        )

        report = await _orchestrator(fake).provision(plan)

        assert report.actions == [OutcomeAction.FAILED, OutcomeAction.SKIPPED]
        assert fake.calls('POST', 'queries') == 0

    @pytest.mark.asyncio
    async def test_unavailable_capability_is_skipped_and_run_continues(self, fake):
        fake.add_project('Alpha')
        fake.unavailable.update({'dashboards', 'team_dashboards'})
        plan = _plan(
            DashboardStep(project='Alpha', name='Overview'),
            RepositoryStep(project='Alpha', name='code'),
        )

        report = await _orchestrator(fake).provision(plan)

        assert report.actions == [OutcomeAction.CREATED, OutcomeAction.SKIPPED]
        assert report.outcomes[1].detail == 'capability not available'


# ── Run-level aborts ─────────────────────────────────────────────────


class TestAborts:
    @pytest.mark.asyncio
    async def test_rejected_credential_aborts_run(self, fake):
        fake.add_project('Alpha')
        fake.reject_auth = True
        plan = _plan(
            ProjectStep(name='Alpha'),
            RepositoryStep(project='Alpha', name='code'),
        )

        with pytest.raises(DevOpsAuthError):
            await _orchestrator(fake).provision(plan)
        assert len(fake.requests) == 1

    @pytest.mark.asyncio
    async def test_invalid_plan_makes_no_calls(self, fake):
        plan = _plan(
            RepositoryStep(project='Alpha', name='code'),
            RepositoryStep(project='Alpha', name='code'),
        )

        with pytest.raises(PlanValidationError) as exc_info:
            await _orchestrator(fake).provision(plan)
        assert "duplicate step 'repository:Alpha/code'" in exc_info.value.problems
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_missing_credential_is_a_plan_error(self, fake):
        with pytest.raises(PlanValidationError):
            await _orchestrator(fake).provision(_plan(ProjectStep(name='Alpha'), credential=''))
        assert fake.requests == []


# ── Report ───────────────────────────────────────────────────────────


class TestReport:
    @pytest.mark.asyncio
    async def test_report_serializes_one_entry_per_step(self, fake):
        fake.add_project('Alpha')
        plan = _plan(
            ProjectStep(name='Alpha'),
            RepositoryStep(project='Alpha', name='code'),
            RepositoryStep(project='Ghost', name='code'),
        )

        report = await _orchestrator(fake).provision(plan)
        data = report.to_dict()

        assert len(data['run_id']) == 12
        assert data['counts'] == {'Created': 1, 'Found': 1, 'Skipped': 1, 'Failed': 0}
        assert [o['step'] for o in data['outcomes']] == [
            'project:Alpha', 'repository:Alpha/code', 'repository:Ghost/code',
        ]
        assert data['outcomes'][1]['parent_id'] == fake.projects['Alpha']['id']
        assert data['outcomes'][2]['id'] is None

    @pytest.mark.asyncio
    async def test_each_run_gets_its_own_run_id(self, fake):
        orchestrator = _orchestrator(fake)
        plan = _plan(ProjectStep(name='Alpha'))

        first = await orchestrator.provision(plan)
        second = await orchestrator.provision(plan)

        assert first.run_id != second.run_id
