"""Provisioning plan: ordered resource steps with dependency edges.

Steps run in a fixed dependency order that mirrors the Azure DevOps
resource hierarchy:

  Project -> Repository -> Branch policies -> Areas/Iterations -> Teams
  -> Team settings -> Wiki -> Wiki pages -> Shared queries -> Dashboards
  -> Test plans -> Test suites -> Work-item templates

Within one rank the plan's own order is kept. Every step has a stable
``key`` naming the resource it requests; ``depends_on`` adds explicit
edges on top of the implicit parent edges each step declares.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import ClassVar, Mapping

from ..settings import ConnectionSettings
from .models import ResourceKind

KIND_RANK: Mapping[ResourceKind, int] = MappingProxyType(
    {
        ResourceKind.PROJECT: 0,
        ResourceKind.REPOSITORY: 1,
        ResourceKind.BRANCH_POLICY: 2,
        ResourceKind.AREA: 3,
        ResourceKind.ITERATION: 3,
        ResourceKind.TEAM: 4,
        ResourceKind.TEAM_SETTING: 5,
        ResourceKind.WIKI: 6,
        ResourceKind.WIKI_PAGE: 7,
        ResourceKind.QUERY: 8,
        ResourceKind.DASHBOARD: 9,
        ResourceKind.TEST_PLAN: 10,
        ResourceKind.TEST_SUITE: 11,
        ResourceKind.TEMPLATE: 12,
    }
)


class PlanValidationError(ValueError):
    """Raised for structurally invalid plans. Aborts the whole run."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__('invalid provisioning plan: ' + '; '.join(self.problems))


def normalize_path(path: str) -> str:
    return path.strip().replace('/', '\\').strip('\\')


def default_team_name(project: str) -> str:
    return f'{project} Team'


# ── Steps ────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True, kw_only=True)
class ProvisioningStep:
    kind: ClassVar[ResourceKind]

    depends_on: tuple[str, ...] = ()

    @property
    def resource_name(self) -> str:
        raise NotImplementedError

    @property
    def key(self) -> str:
        raise NotImplementedError

    def parent_keys(self) -> tuple[str, ...]:
        """Keys of steps this one needs when they are part of the plan."""
        return ()


@dataclass(frozen=True, slots=True, kw_only=True)
class ProjectStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.PROJECT

    name: str
    description: str = ''
    process: str = 'Agile'
    visibility: str = 'private'
    source_control: str = 'Git'

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return project_key(self.name)


@dataclass(frozen=True, slots=True, kw_only=True)
class RepositoryStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.REPOSITORY

    project: str
    name: str

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return repository_key(self.project, self.name)

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


BRANCH_POLICY_TYPES: Mapping[str, str] = MappingProxyType(
    {
        'minimum_reviewers': 'fa4e907d-c16b-4a4c-9dfa-4906e5d171dd',
        'work_item_linking': '40e92b44-2fe1-4dd6-b3d8-74a9c21d0c6e',
        'comment_requirements': 'c6a1889d-b943-4856-b76f-9e46bb6b0df2',
    }
)


@dataclass(frozen=True, slots=True, kw_only=True)
class BranchPolicyStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.BRANCH_POLICY

    project: str
    repository: str
    policy: str = 'minimum_reviewers'
    branch: str = 'main'
    minimum_approver_count: int = 1
    creator_vote_counts: bool = False
    reset_on_source_push: bool = True
    blocking: bool = True

    @property
    def resource_name(self) -> str:
        return f'{self.policy}@{self.branch}'

    @property
    def ref_name(self) -> str:
        branch = self.branch
        return branch if branch.startswith('refs/') else f'refs/heads/{branch}'

    @property
    def key(self) -> str:
        return f'branch_policy:{self.project}/{self.repository}/{self.branch}/{self.policy}'

    def parent_keys(self) -> tuple[str, ...]:
        return (repository_key(self.project, self.repository),)


@dataclass(frozen=True, slots=True, kw_only=True)
class AreaStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.AREA

    project: str
    path: str

    @property
    def resource_name(self) -> str:
        return normalize_path(self.path)

    @property
    def key(self) -> str:
        return area_key(self.project, self.path)

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


@dataclass(frozen=True, slots=True, kw_only=True)
class IterationStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.ITERATION

    project: str
    path: str
    start_date: str | None = None
    finish_date: str | None = None

    @property
    def resource_name(self) -> str:
        return normalize_path(self.path)

    @property
    def key(self) -> str:
        return iteration_key(self.project, self.path)

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


@dataclass(frozen=True, slots=True, kw_only=True)
class TeamStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.TEAM

    project: str
    name: str
    description: str = ''

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return team_key(self.project, self.name)

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


@dataclass(frozen=True, slots=True, kw_only=True)
class TeamSettingsStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.TEAM_SETTING

    project: str
    team: str | None = None
    backlog_iteration: str | None = None
    default_iteration: str | None = None
    iterations: tuple[str, ...] = ()
    default_area: str | None = None
    include_area_children: bool = True
    working_days: tuple[str, ...] = ()

    @property
    def team_name(self) -> str:
        return self.team or default_team_name(self.project)

    @property
    def resource_name(self) -> str:
        return self.team_name

    @property
    def key(self) -> str:
        return f'team_setting:{self.project}/{self.team_name}'

    def parent_keys(self) -> tuple[str, ...]:
        keys = [project_key(self.project), team_key(self.project, self.team_name)]
        for path in (self.backlog_iteration, self.default_iteration, *self.iterations):
            if path:
                keys.append(iteration_key(self.project, path))
        if self.default_area:
            keys.append(area_key(self.project, self.default_area))
        return tuple(dict.fromkeys(keys))


@dataclass(frozen=True, slots=True, kw_only=True)
class WikiStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.WIKI

    project: str
    name: str | None = None

    @property
    def wiki_name(self) -> str:
        return self.name or f'{self.project}.wiki'

    @property
    def resource_name(self) -> str:
        return self.wiki_name

    @property
    def key(self) -> str:
        return wiki_key(self.project, self.wiki_name)

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


@dataclass(frozen=True, slots=True, kw_only=True)
class WikiPageStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.WIKI_PAGE

    project: str
    path: str
    template_id: str
    wiki: str | None = None
    substitutions: Mapping[str, str] = field(default_factory=dict)

    @property
    def wiki_name(self) -> str:
        return self.wiki or f'{self.project}.wiki'

    @property
    def page_path(self) -> str:
        return '/' + self.path.strip().strip('/')

    @property
    def resource_name(self) -> str:
        return self.page_path

    @property
    def key(self) -> str:
        return f'wiki_page:{self.project}/{self.wiki_name}{self.page_path}'

    def parent_keys(self) -> tuple[str, ...]:
        return (wiki_key(self.project, self.wiki_name),)


@dataclass(frozen=True, slots=True, kw_only=True)
class QueryStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.QUERY

    project: str
    name: str
    wiql: str
    folder: str = ''

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return f'query:{self.project}/{self.folder.strip("/")}/{self.name}'

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


@dataclass(frozen=True, slots=True, kw_only=True)
class DashboardStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.DASHBOARD

    project: str
    name: str
    team: str | None = None
    description: str = ''
    widgets: tuple[Mapping[str, object], ...] = ()

    @property
    def team_name(self) -> str:
        return self.team or default_team_name(self.project)

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return f'dashboard:{self.project}/{self.team_name}/{self.name}'

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


@dataclass(frozen=True, slots=True, kw_only=True)
class TestPlanStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.TEST_PLAN

    project: str
    name: str
    area_path: str | None = None
    iteration: str | None = None

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return test_plan_key(self.project, self.name)

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project),)


@dataclass(frozen=True, slots=True, kw_only=True)
class TestSuiteStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.TEST_SUITE

    project: str
    plan: str
    name: str

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return f'test_suite:{self.project}/{self.plan}/{self.name}'

    def parent_keys(self) -> tuple[str, ...]:
        return (test_plan_key(self.project, self.plan),)


@dataclass(frozen=True, slots=True, kw_only=True)
class TemplateStep(ProvisioningStep):
    kind: ClassVar[ResourceKind] = ResourceKind.TEMPLATE

    project: str
    name: str
    work_item_type: str
    team: str | None = None
    description: str = ''
    fields: Mapping[str, str] = field(default_factory=dict)
    template_id: str | None = None
    substitutions: Mapping[str, str] = field(default_factory=dict)

    @property
    def team_name(self) -> str:
        return self.team or default_team_name(self.project)

    @property
    def resource_name(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return f'template:{self.project}/{self.team_name}/{self.work_item_type}/{self.name}'

    def parent_keys(self) -> tuple[str, ...]:
        return (project_key(self.project), team_key(self.project, self.team_name))


# Test collectors must not mistake these for test classes.
TestPlanStep.__test__ = False  # type: ignore[attr-defined]
TestSuiteStep.__test__ = False  # type: ignore[attr-defined]


# ── Keys ─────────────────────────────────────────────────────────────


def project_key(project: str) -> str:
    return f'project:{project}'


def repository_key(project: str, repository: str) -> str:
    return f'repository:{project}/{repository}'


def area_key(project: str, path: str) -> str:
    return f'area:{project}/{normalize_path(path).casefold()}'


def iteration_key(project: str, path: str) -> str:
    return f'iteration:{project}/{normalize_path(path).casefold()}'


def team_key(project: str, team: str) -> str:
    return f'team:{project}/{team}'


def wiki_key(project: str, wiki: str) -> str:
    return f'wiki:{project}/{wiki}'


def test_plan_key(project: str, plan: str) -> str:
    return f'test_plan:{project}/{plan}'


# ── Plan ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ProvisioningPlan:
    """What to provision, and where."""

    connection: ConnectionSettings
    steps: tuple[ProvisioningStep, ...]


def order_steps(steps: tuple[ProvisioningStep, ...] | list[ProvisioningStep]) -> list[ProvisioningStep]:
    """Sort steps into the fixed dependency order, keeping plan order within a rank."""
    return sorted(steps, key=lambda step: KIND_RANK[step.kind])


def validate_plan(plan: ProvisioningPlan) -> list[ProvisioningStep]:
    """Check plan structure and return the steps in execution order.

    Raises:
        PlanValidationError: Missing connection, duplicate resource identity,
            unknown dependency, or a dependency that cannot run first.
    """
    problems: list[str] = []
    if not plan.connection.organization_url:
        problems.append('connection.organization_url is required')
    if not plan.connection.credential:
        problems.append('connection.credential is required')
    if not plan.steps:
        problems.append('plan has no steps')

    ordered = order_steps(plan.steps)
    position: dict[str, int] = {}
    for index, step in enumerate(ordered):
        if step.key in position:
            problems.append(f'duplicate step {step.key!r}')
            continue
        position[step.key] = index

    for index, step in enumerate(ordered):
        for dep in step.depends_on:
            if dep == step.key:
                problems.append(f'step {step.key!r} depends on itself')
            elif dep not in position:
                problems.append(f'step {step.key!r} depends on unknown step {dep!r}')
            elif position[dep] > index:
                problems.append(
                    f'step {step.key!r} depends on {dep!r}, which runs later in the fixed order'
                )

    if problems:
        raise PlanValidationError(problems)
    return ordered
