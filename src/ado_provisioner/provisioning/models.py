"""Resource references, per-step outcomes and the run report."""

from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field
from typing import Any


class ResourceKind(str, enum.Enum):
    PROJECT = 'Project'
    REPOSITORY = 'Repository'
    BRANCH_POLICY = 'BranchPolicy'
    AREA = 'Area'
    ITERATION = 'Iteration'
    TEAM = 'Team'
    TEAM_SETTING = 'TeamSetting'
    WIKI = 'Wiki'
    WIKI_PAGE = 'WikiPage'
    QUERY = 'Query'
    DASHBOARD = 'Dashboard'
    TEST_PLAN = 'TestPlan'
    TEST_SUITE = 'TestSuite'
    TEMPLATE = 'Template'

    @property
    def case_insensitive(self) -> bool:
        """Whether the destination compares names of this kind case-insensitively."""
        return self in (ResourceKind.AREA, ResourceKind.ITERATION)


class OutcomeAction(str, enum.Enum):
    CREATED = 'Created'
    FOUND = 'Found'
    SKIPPED = 'Skipped'
    FAILED = 'Failed'


CAPABILITY_UNAVAILABLE = 'capability not available'


@dataclass(frozen=True, slots=True)
class ResourceRef:
    """Identity of one remote resource.

    ``id`` is the opaque identifier the destination assigned; it is empty on
    the zero ref returned for skipped or failed steps.
    """

    kind: ResourceKind
    name: str
    id: str = ''
    parent_kind: ResourceKind | None = None
    parent_id: str | None = None

    @property
    def resolved(self) -> bool:
        return bool(self.id)

    def identity(self) -> tuple[ResourceKind, str, str | None]:
        name = self.name.casefold() if self.kind.case_insensitive else self.name
        return (self.kind, name, self.parent_id)

    @classmethod
    def zero(
        cls,
        kind: ResourceKind,
        name: str,
        parent_kind: ResourceKind | None = None,
        parent_id: str | None = None,
    ) -> ResourceRef:
        return cls(kind=kind, name=name, parent_kind=parent_kind, parent_id=parent_id)


@dataclass(frozen=True, slots=True)
class ProvisioningOutcome:
    """Result of one requested resource. Every step yields exactly one."""

    resource: ResourceRef
    action: OutcomeAction
    detail: str = ''
    error: str | None = None
    error_type: str | None = None
    step_key: str = ''

    @classmethod
    def created(cls, ref: ResourceRef, detail: str = '') -> ProvisioningOutcome:
        return cls(resource=ref, action=OutcomeAction.CREATED, detail=detail)

    @classmethod
    def found(cls, ref: ResourceRef, detail: str = '') -> ProvisioningOutcome:
        return cls(resource=ref, action=OutcomeAction.FOUND, detail=detail)

    @classmethod
    def skipped(cls, ref: ResourceRef, reason: str) -> ProvisioningOutcome:
        return cls(resource=ref, action=OutcomeAction.SKIPPED, detail=reason)

    @classmethod
    def failed(cls, ref: ResourceRef, exc: BaseException, detail: str = '') -> ProvisioningOutcome:
        return cls(
            resource=ref,
            action=OutcomeAction.FAILED,
            detail=detail or 'unclassified failure',
            error=str(exc),
            error_type=type(exc).__name__,
        )

    @property
    def succeeded(self) -> bool:
        """True when the resource exists on the destination afterwards."""
        return self.action in (OutcomeAction.CREATED, OutcomeAction.FOUND)

    def to_dict(self) -> dict[str, Any]:
        ref = self.resource
        return {
            'step': self.step_key,
            'kind': ref.kind.value,
            'name': ref.name,
            'id': ref.id or None,
            'parent_kind': ref.parent_kind.value if ref.parent_kind else None,
            'parent_id': ref.parent_id,
            'action': self.action.value,
            'detail': self.detail,
            'error': self.error,
            'error_type': self.error_type,
        }


@dataclass(slots=True)
class Report:
    """Ordered outcomes of one provisioning run."""

    run_id: str
    outcomes: list[ProvisioningOutcome] = field(default_factory=list)

    def add(self, outcome: ProvisioningOutcome) -> None:
        self.outcomes.append(outcome)

    def __iter__(self):
        return iter(self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def actions(self) -> list[OutcomeAction]:
        return [o.action for o in self.outcomes]

    def counts(self) -> dict[OutcomeAction, int]:
        counted = Counter(o.action for o in self.outcomes)
        return {action: counted.get(action, 0) for action in OutcomeAction}

    def with_action(self, action: OutcomeAction) -> list[ProvisioningOutcome]:
        return [o for o in self.outcomes if o.action is action]

    @property
    def created(self) -> list[ProvisioningOutcome]:
        return self.with_action(OutcomeAction.CREATED)

    @property
    def failed(self) -> list[ProvisioningOutcome]:
        return self.with_action(OutcomeAction.FAILED)

    @property
    def is_idempotent_rerun(self) -> bool:
        """No step created anything and nothing failed."""
        return all(
            o.action in (OutcomeAction.FOUND, OutcomeAction.SKIPPED) for o in self.outcomes
        )

    def outcome_for(self, step_key: str) -> ProvisioningOutcome | None:
        for outcome in self.outcomes:
            if outcome.step_key == step_key:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            'run_id': self.run_id,
            'counts': {action.value: n for action, n in self.counts().items()},
            'outcomes': [o.to_dict() for o in self.outcomes],
        }
