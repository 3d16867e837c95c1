"""Provisioning core: plan model, ensurer and orchestrator."""

from .ensurer import CapabilityUnavailable, EnsureResult, ResourceEnsurer
from .models import (
    CAPABILITY_UNAVAILABLE,
    OutcomeAction,
    ProvisioningOutcome,
    Report,
    ResourceKind,
    ResourceRef,
)
from .plan import (
    PlanValidationError,
    ProvisioningPlan,
    ProvisioningStep,
    order_steps,
    validate_plan,
)
from .plan_schema import parse_plan

__all__ = [
    "CAPABILITY_UNAVAILABLE",
    "CapabilityUnavailable",
    "EnsureResult",
    "OutcomeAction",
    "PlanValidationError",
    "ProvisioningOutcome",
    "ProvisioningPlan",
    "ProvisioningStep",
    "Report",
    "ResourceEnsurer",
    "ResourceKind",
    "ResourceRef",
    "order_steps",
    "parse_plan",
    "validate_plan",
]
