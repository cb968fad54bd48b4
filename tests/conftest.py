"""Root conftest — shared pytest markers.

Markers
-------
unit        fast, no network, temp-dir filesystem only
integration spawns real dev servers and binds local ports (set DEVRELAY_TEST_INTEGRATION=1)
slow        expected to take > 5 seconds
"""

from __future__ import annotations


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, no network tests")
    config.addinivalue_line("markers", "integration: spawns real dev servers on local ports")
    config.addinivalue_line("markers", "slow: test is expected to take > 5 s")
