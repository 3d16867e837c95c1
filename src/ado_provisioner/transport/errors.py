"""Azure DevOps transport error hierarchy.

Errors carry status, message, typeKey and errorCode only. They never hold an
httpx.Response or the credential, and every resource module shares them.
"""

from __future__ import annotations

import re
from typing import Any

# typeKey values Azure DevOps uses for "a resource with this name already exists".
DUPLICATE_TYPE_KEYS = frozenset(
    {
        'ProjectAlreadyExistsException',
        'ClassificationNodeDuplicateNameException',
        'WikiAlreadyExistsException',
        'WikiPageAlreadyExistsException',
        'GitRepositoryNameAlreadyExistsException',
        'TeamAlreadyExistsException',
        'DuplicateNameException',
        'QueryItemAlreadyExistsException',
        'WorkItemTemplateNameAlreadyExistsException',
        'DashboardNameAlreadyExistsException',
        'DuplicateDashboardNameException',
        'TestSuiteAlreadyExistsException',
    }
)

# Last-resort message matching, used only when the envelope has no known typeKey.
_DUPLICATE_MESSAGE_RE = re.compile(
    r'TF400948|TF237018|VS402371|already exists',
    re.IGNORECASE,
)


class DevOpsAPIError(Exception):
    """Base exception for non-2xx Azure DevOps responses."""

    def __init__(
        self,
        status_code: int,
        message: str = '',
        *,
        response_body: str = '',
        type_key: str | None = None,
        error_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        self.type_key = type_key
        self.error_code = error_code
        super().__init__(f'Azure DevOps API error {status_code}: {message}')


class DevOpsAuthError(DevOpsAPIError):
    """401/403: credential rejected or lacking scope. Fatal for a run."""


class DevOpsNotFoundError(DevOpsAPIError):
    """404: route, resource or capability absent."""


class DevOpsDuplicateError(DevOpsAPIError):
    """A create raced with another create of the same logical resource."""


class DevOpsThrottledError(DevOpsAPIError):
    """429/5xx persisted past the retry budget."""


class DevOpsTimeoutError(DevOpsAPIError):
    """Network-level failure persisted past the retry budget."""

    def __init__(self, message: str = 'Request timed out') -> None:
        super().__init__(0, message)


class OperationFailedError(DevOpsAPIError):
    """A queued long-running operation ended in failed/cancelled state."""

    def __init__(self, operation_id: str, status: str, message: str = '') -> None:
        self.operation_id = operation_id
        self.status = status
        super().__init__(0, message or f'operation {operation_id} ended {status}')


def parse_error_envelope(body: str, payload: Any) -> tuple[str, str | None, int | None]:
    """Extract ``(message, typeKey, errorCode)`` from an error response."""
    message = body[:200] if body else ''
    type_key = None
    error_code = None
    if isinstance(payload, dict):
        message = payload.get('message') or message
        type_key = payload.get('typeKey') or None
        raw_code = payload.get('errorCode')
        if isinstance(raw_code, int) and raw_code:
            error_code = raw_code
    return message, type_key, error_code


def is_duplicate_response(
    status_code: int,
    message: str,
    type_key: str | None,
) -> bool:
    """Classify a failed create as a duplicate-name race.

    A known ``typeKey`` is decisive. Message matching is the last resort for
    envelopes with no or a generic typeKey (older servers wrap TF400948 in
    InvalidArgumentValueException), and only applies to the status codes
    Azure DevOps uses for name conflicts.
    """
    if type_key in DUPLICATE_TYPE_KEYS:
        return True
    if status_code not in (400, 409):
        return False
    return bool(_DUPLICATE_MESSAGE_RE.search(message or ''))
