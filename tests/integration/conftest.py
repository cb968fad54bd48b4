"""Integration-test conftest — skip guard.

Integration tests spawn real dev servers (python -m http.server) and bind
local ports, so they are opt-in:

    DEVRELAY_TEST_INTEGRATION=1 pytest tests/integration/ -v
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

_HERE = Path(__file__).parent


def pytest_collection_modifyitems(config, items):
    if os.getenv("DEVRELAY_TEST_INTEGRATION"):
        return
    skip = pytest.mark.skip(reason="Set DEVRELAY_TEST_INTEGRATION=1 to run integration tests")
    for item in items:
        if _HERE in Path(str(item.fspath)).parents:
            item.add_marker(skip)
