"""Endpoint resolution across Azure DevOps API surface variants.

The same logical operation is exposed at different URL shapes depending on
server edition and scope: dashboards are team-scoped on current services and
project-scoped on others, test plans moved from ``test/plans`` to
``testplan/plans``, and some collections expose neither. ``EndpointResolver``
turns an operation kind plus context into an ordered list of candidates,
most specific scope first. It performs no I/O; callers try the candidates in
order and treat "every candidate 404s" as the capability being absent.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from string import Formatter
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import quote


class EndpointScope(str, enum.Enum):
    TEAM = 'team'
    PROJECT = 'project'
    COLLECTION = 'collection'


# Most specific first.
SCOPE_PRIORITY: Mapping[EndpointScope, int] = MappingProxyType(
    {
        EndpointScope.TEAM: 0,
        EndpointScope.PROJECT: 1,
        EndpointScope.COLLECTION: 2,
    }
)


class OperationKind(str, enum.Enum):
    PROJECTS = 'projects'
    TEAMS = 'teams'
    REPOSITORIES = 'repositories'
    REFS = 'refs'
    POLICY_CONFIGURATIONS = 'policy_configurations'
    AREAS = 'areas'
    ITERATIONS = 'iterations'
    TEAM_SETTINGS = 'team_settings'
    TEAM_ITERATIONS = 'team_iterations'
    TEAM_FIELD_VALUES = 'team_field_values'
    WIKIS = 'wikis'
    WIKI_PAGES = 'wiki_pages'
    QUERIES = 'queries'
    DASHBOARDS = 'dashboards'
    TEST_PLANS = 'test_plans'
    TEST_SUITES = 'test_suites'
    WORK_ITEM_TEMPLATES = 'work_item_templates'


class EndpointContextError(ValueError):
    """Raised when a candidate needs a context value that was not supplied."""

    def __init__(self, operation: OperationKind, field_name: str) -> None:
        self.operation = operation
        self.field_name = field_name
        super().__init__(
            f'endpoint for {operation.value!r} requires context value {field_name!r}'
        )


@dataclass(frozen=True, slots=True)
class EndpointCandidate:
    """One URL shape for an operation.

    ``url_template`` uses ``str.format`` fields (``{project}``, ``{team}``,
    ...) that are URL-quoted when expanded. ``api_version`` overrides the
    client default for surfaces that only exist as previews.
    """

    scope: EndpointScope
    url_template: str
    api_version: str | None = None
    label: str = ''

    def path(self, **values: Any) -> str:
        quoted = {name: quote(str(value), safe='') for name, value in values.items()}
        return self.url_template.format(**quoted)

    def fields(self) -> tuple[str, ...]:
        return tuple(
            name for _, name, _, _ in Formatter().parse(self.url_template) if name
        )


@dataclass(frozen=True, slots=True)
class ResolveContext:
    """What is known about the current scope when resolving endpoints.

    ``team`` is None when no team identity could be resolved; team-scoped
    candidates are then omitted.
    """

    project: str | None = None
    team: str | None = None
    values: Mapping[str, str] = field(default_factory=dict)

    def as_format_values(self) -> dict[str, str]:
        out = dict(self.values)
        if self.project is not None:
            out['project'] = self.project
        if self.team is not None:
            out['team'] = self.team
        return out


@dataclass(frozen=True, slots=True)
class ResolvedEndpoint:
    """A candidate together with its expanded path."""

    candidate: EndpointCandidate
    path: str

    @property
    def scope(self) -> EndpointScope:
        return self.candidate.scope

    @property
    def api_version(self) -> str | None:
        return self.candidate.api_version


_C = EndpointCandidate
_TEAM, _PROJECT, _COLLECTION = EndpointScope.TEAM, EndpointScope.PROJECT, EndpointScope.COLLECTION

DEFAULT_CANDIDATES: Mapping[OperationKind, tuple[EndpointCandidate, ...]] = MappingProxyType(
    {
        OperationKind.PROJECTS: (_C(_COLLECTION, '_apis/projects'),),
        OperationKind.TEAMS: (_C(_COLLECTION, '_apis/projects/{project}/teams'),),
        OperationKind.REPOSITORIES: (_C(_PROJECT, '{project}/_apis/git/repositories'),),
        OperationKind.REFS: (
            _C(_PROJECT, '{project}/_apis/git/repositories/{repository_id}/refs'),
        ),
        OperationKind.POLICY_CONFIGURATIONS: (
            _C(_PROJECT, '{project}/_apis/policy/configurations'),
        ),
        OperationKind.AREAS: (_C(_PROJECT, '{project}/_apis/wit/classificationnodes/areas'),),
        OperationKind.ITERATIONS: (
            _C(_PROJECT, '{project}/_apis/wit/classificationnodes/iterations'),
        ),
        OperationKind.TEAM_SETTINGS: (_C(_TEAM, '{project}/{team}/_apis/work/teamsettings'),),
        OperationKind.TEAM_ITERATIONS: (
            _C(_TEAM, '{project}/{team}/_apis/work/teamsettings/iterations'),
        ),
        OperationKind.TEAM_FIELD_VALUES: (
            _C(_TEAM, '{project}/{team}/_apis/work/teamsettings/teamfieldvalues'),
        ),
        OperationKind.WIKIS: (_C(_PROJECT, '{project}/_apis/wiki/wikis'),),
        OperationKind.WIKI_PAGES: (_C(_PROJECT, '{project}/_apis/wiki/wikis/{wiki_id}/pages'),),
        OperationKind.QUERIES: (_C(_PROJECT, '{project}/_apis/wit/queries'),),
        OperationKind.DASHBOARDS: (
            _C(_TEAM, '{project}/{team}/_apis/dashboard/dashboards', '7.1-preview.3', 'team'),
            _C(_PROJECT, '{project}/_apis/dashboard/dashboards', '7.1-preview.3', 'project'),
        ),
        OperationKind.TEST_PLANS: (
            _C(_PROJECT, '{project}/_apis/testplan/plans', label='testplan'),
            _C(_PROJECT, '{project}/_apis/test/plans', '5.0', label='legacy'),
        ),
        OperationKind.TEST_SUITES: (
            _C(_PROJECT, '{project}/_apis/testplan/Plans/{plan_id}/suites'),
        ),
        OperationKind.WORK_ITEM_TEMPLATES: (
            _C(_TEAM, '{project}/{team}/_apis/wit/templates'),
        ),
    }
)


class EndpointResolver:
    """Pure mapping of (operation, context) to ordered endpoint candidates."""

    def __init__(
        self,
        candidates: Mapping[OperationKind, tuple[EndpointCandidate, ...]] = DEFAULT_CANDIDATES,
    ) -> None:
        self._candidates = candidates

    def candidates(
        self,
        operation: OperationKind,
        context: ResolveContext,
    ) -> list[EndpointCandidate]:
        """Return the usable candidates for ``operation``, most specific first.

        Team-scoped candidates are dropped when the context has no team.
        """
        usable = [
            c for c in self._candidates.get(operation, ())
            if c.scope is not EndpointScope.TEAM or context.team
        ]
        # Stable sort keeps declaration order within a scope.
        return sorted(usable, key=lambda c: SCOPE_PRIORITY[c.scope])

    def resolve(
        self,
        operation: OperationKind,
        context: ResolveContext,
    ) -> list[ResolvedEndpoint]:
        """Expand the usable candidates into concrete paths.

        Raises:
            EndpointContextError: A candidate needs a value the context lacks.
        """
        values = context.as_format_values()
        resolved: list[ResolvedEndpoint] = []
        for candidate in self.candidates(operation, context):
            for name in candidate.fields():
                if not values.get(name):
                    raise EndpointContextError(operation, name)
            resolved.append(ResolvedEndpoint(candidate, candidate.path(**values)))
        return resolved

    def first(self, operation: OperationKind, context: ResolveContext) -> ResolvedEndpoint:
        """Single-shape convenience for operations with one candidate."""
        resolved = self.resolve(operation, context)
        if not resolved:
            raise EndpointContextError(operation, 'team')
        return resolved[0]
