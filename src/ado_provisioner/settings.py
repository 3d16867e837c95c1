"""Provisioner configuration settings.

ProvisionerSettings is the single configuration object accepted by the
orchestrator. It is a plain dataclass and does not read os.environ unless
``from_env`` is called. Credentials arrive through the caller (CLI or .env
loader); this module only turns a key/value map into settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Mapping
from urllib.parse import urlparse

AuthScheme = Literal['basic', 'bearer']

DEFAULT_API_VERSION = '7.1'


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    """Authenticated address of one Azure DevOps organization or collection."""

    organization_url: str
    credential: str
    api_version: str = DEFAULT_API_VERSION
    auth_scheme: AuthScheme = 'basic'

    def __repr__(self) -> str:
        # Never render the credential.
        return (
            f'ConnectionSettings(organization_url={self.organization_url!r}, '
            f'api_version={self.api_version!r}, auth_scheme={self.auth_scheme!r})'
        )


@dataclass(frozen=True, slots=True)
class ProvisionerSettings:
    """Configuration for the provisioning core.

    All tuning fields have sensible defaults. ``organization_url`` and
    ``credential`` must be supplied before a plan can run.
    """

    # ── Destination ────────────────────────────────────────────────
    organization_url: str = ''
    """Organization or collection URL (e.g. https://dev.azure.com/contoso)."""

    api_version: str = DEFAULT_API_VERSION
    """Default api-version query value. Server generations differ."""

    credential: str = ''
    """Personal access token or bearer token. Never log this."""

    auth_scheme: AuthScheme = 'basic'
    """``basic`` sends the PAT as Basic auth, ``bearer`` as a bearer token."""

    # ── Transport ──────────────────────────────────────────────────
    timeout_seconds: float = 30.0
    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_budget_seconds: float = 90.0
    """Upper bound on total time spent sleeping between retries of one call."""

    # ── Cache ──────────────────────────────────────────────────────
    cache_ttl_seconds: float = 300.0

    # ── Long-running operations ────────────────────────────────────
    operation_poll_interval: float = 2.0
    operation_timeout_seconds: float = 180.0

    def connection(self) -> ConnectionSettings:
        return ConnectionSettings(
            organization_url=self.organization_url,
            credential=self.credential,
            api_version=self.api_version,
            auth_scheme=self.auth_scheme,
        )

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        parsed = urlparse(self.organization_url)
        if not parsed.scheme or not parsed.netloc:
            errors.append(
                f'organization_url must include scheme and host, got {self.organization_url!r}'
            )
        if not self.credential:
            errors.append('credential is required')
        if self.auth_scheme not in ('basic', 'bearer'):
            errors.append(f'auth_scheme must be basic or bearer, got {self.auth_scheme!r}')
        if self.max_retries < 0:
            errors.append('max_retries must be >= 0')
        if self.retry_budget_seconds <= 0:
            errors.append('retry_budget_seconds must be > 0')
        if self.cache_ttl_seconds < 0:
            errors.append('cache_ttl_seconds must be >= 0')
        return errors

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ProvisionerSettings:
        """Build settings from environment variables or a loaded key/value map.

        This is a convenience factory for production use. Tests should
        construct ProvisionerSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        return cls(
            organization_url=env.get('ADO_ORG_URL', '').strip().rstrip('/'),
            api_version=env.get('ADO_API_VERSION', '').strip() or DEFAULT_API_VERSION,
            credential=env.get('ADO_PAT', ''),
            auth_scheme=env.get('ADO_AUTH_SCHEME', 'basic').strip().lower() or 'basic',  # type: ignore[arg-type]
            timeout_seconds=_float(env, 'ADO_TIMEOUT_SECONDS', defaults.timeout_seconds),
            max_retries=int(_float(env, 'ADO_MAX_RETRIES', defaults.max_retries)),
            retry_budget_seconds=_float(
                env, 'ADO_RETRY_BUDGET_SECONDS', defaults.retry_budget_seconds,
            ),
            cache_ttl_seconds=_float(env, 'ADO_CACHE_TTL_SECONDS', defaults.cache_ttl_seconds),
        )


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, '').strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f'{name} must be numeric, got {raw!r}') from None
