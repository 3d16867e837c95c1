"""Idempotent provisioning of Azure DevOps projects and their resources."""

from .cache import ListCache
from .endpoints import EndpointResolver, OperationKind, ResolveContext
from .provisioning import (
    OutcomeAction,
    PlanValidationError,
    ProvisioningOutcome,
    ProvisioningPlan,
    Report,
    ResourceEnsurer,
    ResourceKind,
    ResourceRef,
    parse_plan,
)
from .provisioning.orchestrator import ProvisioningOrchestrator
from .settings import ConnectionSettings, ProvisionerSettings

__all__ = [
    "ConnectionSettings",
    "EndpointResolver",
    "ListCache",
    "OperationKind",
    "OutcomeAction",
    "PlanValidationError",
    "ProvisionerSettings",
    "ProvisioningOrchestrator",
    "ProvisioningOutcome",
    "ProvisioningPlan",
    "Report",
    "ResolveContext",
    "ResourceEnsurer",
    "ResourceKind",
    "ResourceRef",
    "parse_plan",
]
