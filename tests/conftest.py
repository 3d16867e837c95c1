"""Pytest configuration for ado_provisioner tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest


@pytest.fixture(autouse=True)
def _reset_shared_http_client():
    """Never leak the module-level httpx client between tests."""
    from ado_provisioner.transport.client import _reset_shared_async_client_for_tests

    _reset_shared_async_client_for_tests()
    yield
    _reset_shared_async_client_for_tests()
