"""Parse a plain mapping into a ProvisioningPlan.

The CLI layer loads plan files (JSON/YAML) itself and hands the resulting
mapping over; this module validates its shape with pydantic and builds the
immutable step dataclasses. Shape errors surface as PlanValidationError.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..settings import DEFAULT_API_VERSION, ConnectionSettings
from .plan import (
    AreaStep,
    BranchPolicyStep,
    DashboardStep,
    IterationStep,
    PlanValidationError,
    ProjectStep,
    ProvisioningPlan,
    ProvisioningStep,
    QueryStep,
    RepositoryStep,
    TeamSettingsStep,
    TeamStep,
    TemplateStep,
    TestPlanStep,
    TestSuiteStep,
    WikiPageStep,
    WikiStep,
)


class _StepModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    depends_on: list[str] = Field(default_factory=list)


class ProjectModel(_StepModel):
    kind: Literal['Project']
    name: str = Field(min_length=1)
    description: str = ''
    process: str = 'Agile'
    visibility: Literal['private', 'public'] = 'private'
    source_control: Literal['Git', 'Tfvc'] = 'Git'


class RepositoryModel(_StepModel):
    kind: Literal['Repository']
    project: str = Field(min_length=1)
    name: str = Field(min_length=1)


class BranchPolicyModel(_StepModel):
    kind: Literal['BranchPolicy']
    project: str = Field(min_length=1)
    repository: str = Field(min_length=1)
    policy: Literal['minimum_reviewers', 'work_item_linking', 'comment_requirements'] = (
        'minimum_reviewers'
    )
    branch: str = 'main'
    minimum_approver_count: int = Field(default=1, ge=1, le=10)
    creator_vote_counts: bool = False
    reset_on_source_push: bool = True
    blocking: bool = True


class AreaModel(_StepModel):
    kind: Literal['Area']
    project: str = Field(min_length=1)
    path: str = Field(min_length=1)


class IterationModel(_StepModel):
    kind: Literal['Iteration']
    project: str = Field(min_length=1)
    path: str = Field(min_length=1)
    start_date: str | None = None
    finish_date: str | None = None


class TeamModel(_StepModel):
    kind: Literal['Team']
    project: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ''


class TeamSettingsModel(_StepModel):
    kind: Literal['TeamSetting']
    project: str = Field(min_length=1)
    team: str | None = None
    backlog_iteration: str | None = None
    default_iteration: str | None = None
    iterations: list[str] = Field(default_factory=list)
    default_area: str | None = None
    include_area_children: bool = True
    working_days: list[str] = Field(default_factory=list)


class WikiModel(_StepModel):
    kind: Literal['Wiki']
    project: str = Field(min_length=1)
    name: str | None = None


class WikiPageModel(_StepModel):
    kind: Literal['WikiPage']
    project: str = Field(min_length=1)
    path: str = Field(min_length=1)
    template_id: str = Field(min_length=1)
    wiki: str | None = None
    substitutions: dict[str, str] = Field(default_factory=dict)


class QueryModel(_StepModel):
    kind: Literal['Query']
    project: str = Field(min_length=1)
    name: str = Field(min_length=1)
    wiql: str = Field(min_length=1)
    folder: str = ''


class DashboardModel(_StepModel):
    kind: Literal['Dashboard']
    project: str = Field(min_length=1)
    name: str = Field(min_length=1)
    team: str | None = None
    description: str = ''
    widgets: list[dict[str, Any]] = Field(default_factory=list)


class TestPlanModel(_StepModel):
    __test__ = False

    kind: Literal['TestPlan']
    project: str = Field(min_length=1)
    name: str = Field(min_length=1)
    area_path: str | None = None
    iteration: str | None = None


class TestSuiteModel(_StepModel):
    __test__ = False

    kind: Literal['TestSuite']
    project: str = Field(min_length=1)
    plan: str = Field(min_length=1)
    name: str = Field(min_length=1)


class TemplateModel(_StepModel):
    kind: Literal['Template']
    project: str = Field(min_length=1)
    name: str = Field(min_length=1)
    work_item_type: str = Field(min_length=1)
    team: str | None = None
    description: str = ''
    fields: dict[str, str] = Field(default_factory=dict)
    template_id: str | None = None
    substitutions: dict[str, str] = Field(default_factory=dict)


StepModel = Annotated[
    Union[
        ProjectModel,
        RepositoryModel,
        BranchPolicyModel,
        AreaModel,
        IterationModel,
        TeamModel,
        TeamSettingsModel,
        WikiModel,
        WikiPageModel,
        QueryModel,
        DashboardModel,
        TestPlanModel,
        TestSuiteModel,
        TemplateModel,
    ],
    Field(discriminator='kind'),
]


class ConnectionModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    organization_url: str = Field(min_length=1)
    credential: str = Field(min_length=1, repr=False)
    api_version: str = DEFAULT_API_VERSION
    auth_scheme: Literal['basic', 'bearer'] = 'basic'


class PlanModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    connection: ConnectionModel
    steps: list[StepModel] = Field(min_length=1)


_STEP_TYPES: dict[str, type[ProvisioningStep]] = {
    'Project': ProjectStep,
    'Repository': RepositoryStep,
    'BranchPolicy': BranchPolicyStep,
    'Area': AreaStep,
    'Iteration': IterationStep,
    'Team': TeamStep,
    'TeamSetting': TeamSettingsStep,
    'Wiki': WikiStep,
    'WikiPage': WikiPageStep,
    'Query': QueryStep,
    'Dashboard': DashboardStep,
    'TestPlan': TestPlanStep,
    'TestSuite': TestSuiteStep,
    'Template': TemplateStep,
}


def _to_step(model: BaseModel) -> ProvisioningStep:
    data = model.model_dump(exclude={'kind'})
    step_cls = _STEP_TYPES[model.kind]  # type: ignore[attr-defined]
    converted = {
        name: tuple(value) if isinstance(value, list) else value
        for name, value in data.items()
    }
    return step_cls(**converted)


def parse_plan(data: Mapping[str, Any]) -> ProvisioningPlan:
    """Validate ``data`` and build a ProvisioningPlan.

    Raises:
        PlanValidationError: If the mapping does not describe a valid plan.
    """
    try:
        model = PlanModel.model_validate(data)
    except ValidationError as exc:
        problems = [
            f'{".".join(str(p) for p in err["loc"]) or "<root>"}: {err["msg"]}'
            for err in exc.errors()
        ]
        raise PlanValidationError(problems) from None

    conn = model.connection
    return ProvisioningPlan(
        connection=ConnectionSettings(
            organization_url=conn.organization_url.rstrip('/'),
            credential=conn.credential,
            api_version=conn.api_version,
            auth_scheme=conn.auth_scheme,
        ),
        steps=tuple(_to_step(step) for step in model.steps),
    )
