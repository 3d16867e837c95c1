"""Per-kind lookup, create and gate functions."""

from .base import PreconditionNotMet, Renderer, ResourceContext, find_named

__all__ = ["PreconditionNotMet", "Renderer", "ResourceContext", "find_named"]
