"""Azure DevOps REST transport."""

from .client import DevOpsClient, normalize_payload
from .errors import (
    DevOpsAPIError,
    DevOpsAuthError,
    DevOpsDuplicateError,
    DevOpsNotFoundError,
    DevOpsThrottledError,
    DevOpsTimeoutError,
    OperationFailedError,
)

__all__ = [
    "DevOpsAPIError",
    "DevOpsAuthError",
    "DevOpsClient",
    "DevOpsDuplicateError",
    "DevOpsNotFoundError",
    "DevOpsThrottledError",
    "DevOpsTimeoutError",
    "OperationFailedError",
    "normalize_payload",
]
