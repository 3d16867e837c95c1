"""Observability helpers for the provisioner."""

from .logging import configure_logging, run_context, run_id_ctx

__all__ = ["configure_logging", "run_context", "run_id_ctx"]
