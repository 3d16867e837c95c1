"""EndpointResolver: scope ordering, team omission, path expansion."""

from __future__ import annotations

import pytest

from ado_provisioner.endpoints import (
    DEFAULT_CANDIDATES,
    EndpointCandidate,
    EndpointContextError,
    EndpointResolver,
    EndpointScope,
    OperationKind,
    ResolveContext,
)


@pytest.fixture
def resolver() -> EndpointResolver:
    return EndpointResolver()


class TestOrdering:
    def test_team_scope_first_when_team_known(self, resolver):
        resolved = resolver.resolve(
            OperationKind.DASHBOARDS, ResolveContext(project='Alpha', team='Alpha Team'),
        )
        assert [r.scope for r in resolved] == [EndpointScope.TEAM, EndpointScope.PROJECT]
        assert resolved[0].path == 'Alpha/Alpha%20Team/_apis/dashboard/dashboards'
        assert resolved[1].path == 'Alpha/_apis/dashboard/dashboards'

    def test_no_team_yields_project_and_collection_only(self, resolver):
        for operation in OperationKind:
            candidates = resolver.candidates(operation, ResolveContext(project='Alpha'))
            assert all(c.scope is not EndpointScope.TEAM for c in candidates), operation

    def test_no_team_dashboards_fall_back_to_project(self, resolver):
        resolved = resolver.resolve(OperationKind.DASHBOARDS, ResolveContext(project='Alpha'))
        assert [r.scope for r in resolved] == [EndpointScope.PROJECT]

    def test_team_only_operation_has_no_candidates_without_team(self, resolver):
        assert resolver.resolve(
            OperationKind.WORK_ITEM_TEMPLATES, ResolveContext(project='Alpha'),
        ) == []

    def test_scope_priority_beats_declaration_order(self):
        resolver = EndpointResolver({
            OperationKind.QUERIES: (
                EndpointCandidate(EndpointScope.COLLECTION, '_apis/wit/queries'),
                EndpointCandidate(EndpointScope.PROJECT, '{project}/_apis/wit/queries'),
                EndpointCandidate(EndpointScope.TEAM, '{project}/{team}/_apis/wit/queries'),
            ),
        })
        candidates = resolver.candidates(
            OperationKind.QUERIES, ResolveContext(project='Alpha', team='T'),
        )
        assert [c.scope for c in candidates] == [
            EndpointScope.TEAM, EndpointScope.PROJECT, EndpointScope.COLLECTION,
        ]

    def test_same_scope_keeps_declaration_order(self, resolver):
        resolved = resolver.resolve(OperationKind.TEST_PLANS, ResolveContext(project='Alpha'))
        assert [r.candidate.label for r in resolved] == ['testplan', 'legacy']
        assert resolved[1].api_version == '5.0'


class TestExpansion:
    def test_values_are_url_quoted(self, resolver):
        endpoint = resolver.first(
            OperationKind.REFS,
            ResolveContext(project='My Project', values={'repository_id': 'r/1'}),
        )
        assert endpoint.path == 'My%20Project/_apis/git/repositories/r%2F1/refs'

    def test_missing_value_is_a_context_error(self, resolver):
        with pytest.raises(EndpointContextError) as exc_info:
            resolver.resolve(OperationKind.REPOSITORIES, ResolveContext())
        assert exc_info.value.field_name == 'project'

    def test_first_without_candidates_raises(self, resolver):
        with pytest.raises(EndpointContextError):
            resolver.first(OperationKind.TEAM_SETTINGS, ResolveContext(project='Alpha'))

    def test_collection_scope_needs_no_context(self, resolver):
        endpoint = resolver.first(OperationKind.PROJECTS, ResolveContext())
        assert endpoint.path == '_apis/projects'
        assert endpoint.api_version is None

    def test_default_context_has_empty_values(self):
        first, second = ResolveContext(), ResolveContext(project='Alpha')
        assert dict(first.values) == {}
        assert first.values is not second.values
        assert second.as_format_values() == {'project': 'Alpha'}

    def test_preview_api_version_carried(self, resolver):
        endpoint = resolver.first(OperationKind.DASHBOARDS, ResolveContext(project='Alpha'))
        assert endpoint.api_version == '7.1-preview.3'

    def test_every_operation_has_candidates(self):
        assert set(DEFAULT_CANDIDATES) == set(OperationKind)
