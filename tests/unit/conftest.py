"""Shared fixtures for unit tests."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from fake_devops import FakeDevOps


@pytest.fixture
def fake() -> FakeDevOps:
    return FakeDevOps()


@pytest.fixture
def no_sleep():
    """Skip real backoff and polling delays."""
    with patch('ado_provisioner.transport.client.asyncio.sleep', new_callable=AsyncMock) as sleep:
        yield sleep
