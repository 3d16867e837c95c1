"""Provisioning orchestrator: runs a plan in fixed dependency order.

Each step goes through the same pipeline:

  1. Parent/dependency check: a step whose parent step is part of the plan
     and did not leave a resource behind is skipped.
  2. Gate: a kind-specific precondition (e.g. the repository has commits
     before branch policies are attached). Unmet gates skip the step.
  3. Ensure: the kind's check-then-create function.

Failures are contained to their step and recorded in the report; only
authentication failures and structural plan errors abort the run.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

import httpx

from ..cache import ListCache
from ..endpoints import EndpointResolver
from ..observability.logging import run_context
from ..resources import (
    classification,
    dashboards,
    git,
    projects,
    queries,
    team_settings,
    templates,
    testplans,
    wiki,
)
from ..resources.base import PreconditionNotMet, Renderer, ResourceContext
from ..settings import ProvisionerSettings
from ..transport.client import DevOpsClient
from ..transport.errors import DevOpsAuthError
from .ensurer import ResourceEnsurer
from .models import ProvisioningOutcome, Report, ResourceKind, ResourceRef
from .plan import ProvisioningPlan, ProvisioningStep, validate_plan

logger = logging.getLogger(__name__)

RunFn = Callable[[ResourceContext, Any], Awaitable[ProvisioningOutcome]]
GateFn = Callable[[ResourceContext, Any], Awaitable[str | None]]


@dataclass(frozen=True, slots=True)
class StepHandler:
    run: RunFn
    gate: GateFn | None = None


STEP_HANDLERS: Mapping[ResourceKind, StepHandler] = MappingProxyType(
    {
        ResourceKind.PROJECT: StepHandler(projects.ensure_project),
        ResourceKind.REPOSITORY: StepHandler(
            git.ensure_repository, projects.gate_project_exists,
        ),
        ResourceKind.BRANCH_POLICY: StepHandler(
            git.ensure_branch_policy, git.gate_branch_policy,
        ),
        ResourceKind.AREA: StepHandler(
            classification.ensure_area, projects.gate_project_exists,
        ),
        ResourceKind.ITERATION: StepHandler(
            classification.ensure_iteration, projects.gate_project_exists,
        ),
        ResourceKind.TEAM: StepHandler(projects.ensure_team, projects.gate_project_exists),
        ResourceKind.TEAM_SETTING: StepHandler(
            team_settings.ensure_team_settings, team_settings.gate_team_settings,
        ),
        ResourceKind.WIKI: StepHandler(wiki.ensure_wiki, projects.gate_project_exists),
        ResourceKind.WIKI_PAGE: StepHandler(wiki.ensure_wiki_page, wiki.gate_wiki_page),
        ResourceKind.QUERY: StepHandler(queries.ensure_query, projects.gate_project_exists),
        ResourceKind.DASHBOARD: StepHandler(
            dashboards.ensure_dashboard, projects.gate_project_exists,
        ),
        ResourceKind.TEST_PLAN: StepHandler(
            testplans.ensure_test_plan, projects.gate_project_exists,
        ),
        ResourceKind.TEST_SUITE: StepHandler(
            testplans.ensure_test_suite, testplans.gate_test_suite,
        ),
        ResourceKind.TEMPLATE: StepHandler(templates.ensure_template, templates.gate_template),
    }
)


class ProvisioningOrchestrator:
    """Runs provisioning plans against Azure DevOps.

    The listing cache belongs to the orchestrator and is shared by every run
    it executes, with keys scoped to each plan's organization URL. Each run
    gets its own transport client and ensurer.
    """

    def __init__(
        self,
        settings: ProvisionerSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        cache: ListCache | None = None,
        renderer: Renderer | None = None,
        resolver: EndpointResolver | None = None,
    ) -> None:
        self._settings = settings or ProvisionerSettings()
        self._http_client = http_client
        self._cache = cache or ListCache(
            default_ttl=self._settings.cache_ttl_seconds,
            fatal_errors=(DevOpsAuthError,),
        )
        self._renderer = renderer
        self._resolver = resolver or EndpointResolver()

    @property
    def cache(self) -> ListCache:
        return self._cache

    def _client_for(self, plan: ProvisioningPlan) -> DevOpsClient:
        conn = plan.connection
        s = self._settings
        return DevOpsClient(
            organization_url=conn.organization_url,
            credential=conn.credential,
            api_version=conn.api_version,
            auth_scheme=conn.auth_scheme,
            http_client=self._http_client,
            timeout_seconds=s.timeout_seconds,
            max_retries=s.max_retries,
            base_delay=s.base_delay,
            max_delay=s.max_delay,
            retry_budget_seconds=s.retry_budget_seconds,
        )

    def _context_for(self, plan: ProvisioningPlan) -> ResourceContext:
        s = self._settings
        return ResourceContext(
            client=self._client_for(plan),
            cache=self._cache,
            ensurer=ResourceEnsurer(cache=self._cache),
            resolver=self._resolver,
            renderer=self._renderer,
            cache_scope=plan.connection.organization_url.rstrip('/').casefold(),
            cache_ttl=s.cache_ttl_seconds,
            operation_poll_interval=s.operation_poll_interval,
            operation_timeout_seconds=s.operation_timeout_seconds,
        )

    async def provision(self, plan: ProvisioningPlan) -> Report:
        """Run every step of ``plan`` and report one outcome per step.

        Raises:
            PlanValidationError: Structurally invalid plan; nothing was called.
            DevOpsAuthError: Credential rejected; the run stopped at that step.
        """
        ordered = validate_plan(plan)
        with run_context(uuid.uuid4().hex[:12]) as run_id:
            ctx = self._context_for(plan)
            report = Report(run_id=run_id)
            by_key: dict[str, ProvisioningOutcome] = {}
            logger.info(
                'Provisioning run started (%d steps)', len(ordered),
                extra={'organization_url': plan.connection.organization_url},
            )
            for step in ordered:
                outcome = await self._run_step(ctx, step, by_key)
                outcome = dataclasses.replace(outcome, step_key=step.key)
                by_key[step.key] = outcome
                report.add(outcome)

            counts = {action.value: n for action, n in report.counts().items()}
            logger.info(
                'Provisioning run finished',
                extra={'counts': counts, 'transport_attempts': ctx.client.attempts},
            )
            return report

    async def _run_step(
        self,
        ctx: ResourceContext,
        step: ProvisioningStep,
        by_key: Mapping[str, ProvisioningOutcome],
    ) -> ProvisioningOutcome:
        zero = ResourceRef.zero(step.kind, step.resource_name)
        log_extra = {'step': step.key, 'resource_kind': step.kind.value}

        for dep in (*step.parent_keys(), *step.depends_on):
            previous = by_key.get(dep)
            if previous is not None and not previous.succeeded:
                reason = f'dependency {dep!r} not available'
                logger.info('Skipping %s: %s', step.key, reason, extra=log_extra)
                return ProvisioningOutcome.skipped(zero, reason)

        handler = STEP_HANDLERS[step.kind]
        try:
            if handler.gate is not None:
                reason = await handler.gate(ctx, step)
                if reason:
                    logger.info('Gate not met for %s: %s', step.key, reason, extra=log_extra)
                    return ProvisioningOutcome.skipped(zero, reason)
            return await handler.run(ctx, step)
        except PreconditionNotMet as exc:
            logger.info('Precondition not met for %s: %s', step.key, exc.reason, extra=log_extra)
            return ProvisioningOutcome.skipped(zero, exc.reason)
        except DevOpsAuthError:
            logger.error('Authentication rejected during %s; aborting run', step.key, extra=log_extra)
            raise
        except Exception as exc:
            logger.warning(
                'Step %s failed: %s', step.key, exc, exc_info=True,
                extra={**log_extra, 'error_type': type(exc).__name__},
            )
            return ProvisioningOutcome.failed(zero, exc, 'step failed')
