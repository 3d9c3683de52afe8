"""
Pytest configuration and shared fixtures for kernelbridge tests.
"""
import importlib.util
import shutil
from pathlib import Path

import pytest


@pytest.fixture(scope="session")
def project_dir():
    """Path to the project root."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def has_notebook():
    """Check if a real jupyter notebook server is available."""
    return importlib.util.find_spec("notebook") is not None and importlib.util.find_spec("ipykernel") is not None


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "requires_jupyter: mark test as requiring a jupyter notebook installation")
    config.addinivalue_line("markers", "e2e: marks tests as end-to-end (deselect with '-m \"not e2e\"')")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers and skips based on dependencies."""
    notebook_missing = importlib.util.find_spec("notebook") is None or shutil.which("jupyter") is None
    for item in items:
        path = str(item.fspath)
        if "/integration/" in path:
            item.add_marker(pytest.mark.integration)
        if "/e2e/" in path:
            item.add_marker(pytest.mark.e2e)
            item.add_marker(pytest.mark.requires_jupyter)

        if item.get_closest_marker("requires_jupyter") and notebook_missing:
            item.add_marker(pytest.mark.skip(reason="jupyter notebook not available"))


def pytest_report_header(config):
    """Add information about available dependencies to test report header."""
    deps = []

    try:
        import aiohttp

        deps.append(f"aiohttp-{aiohttp.__version__}")
    except ImportError:
        deps.append("aiohttp-MISSING")

    try:
        import jupyter_client

        deps.append(f"jupyter_client-{jupyter_client.__version__}")
    except ImportError:
        deps.append("jupyter_client-MISSING")

    try:
        import notebook

        deps.append(f"notebook-{notebook.__version__}")
    except ImportError:
        deps.append("notebook-MISSING")

    return f"dependencies: {', '.join(deps)}"
