"""
Pytest configuration and fixtures for Instantiate tests.

Provides common fixtures and test utilities across all test modules.
"""

import os
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from instantiate.config import InstantiateConfig
from instantiate.logging_config import setup_logging
from instantiate.models import CanonicalEvent, MergeRequestStatus, Provider, StackStatus
from instantiate.store import InMemoryStore


@pytest.fixture(scope="session")
def test_logs_dir() -> Generator[str, None, None]:
    """
    Create temporary directory for test logs that persists for the session.

    Yields:
        Path to temporary logs directory
    """
    temp_dir = tempfile.mkdtemp(prefix="instantiate_test_logs_")
    logs_dir = Path(temp_dir) / "logs"
    logs_dir.mkdir(parents=True)

    yield str(logs_dir)

    shutil.rmtree(temp_dir)


@pytest.fixture
def isolated_test_env(test_logs_dir: str) -> Generator[dict[str, str], None, None]:
    """
    Create isolated test environment with clean environment variables.

    Yields:
        Dictionary of original environment variables
    """
    original_env = os.environ.copy()

    for key in list(os.environ.keys()):
        if key.startswith("INSTANTIATE_"):
            del os.environ[key]

    os.environ.update(
        {
            "INSTANTIATE_LOG_DIR": test_logs_dir,
            "INSTANTIATE_LOG_LEVEL": "DEBUG",
        }
    )

    yield original_env

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_workspace() -> Generator[Path, None, None]:
    """
    Create temporary workspace directory for test files.

    Yields:
        Path to temporary workspace
    """
    temp_dir = tempfile.mkdtemp(prefix="instantiate_workspace_")
    workspace = Path(temp_dir)

    yield workspace

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_config(isolated_test_env: dict[str, str], temp_workspace: Path) -> InstantiateConfig:
    """
    Create test configuration with safe defaults.

    Returns:
        Test configuration instance rooted in the temporary workspace
    """
    return InstantiateConfig(
        log_level="DEBUG",
        verbose=True,
        log_dir=os.environ["INSTANTIATE_LOG_DIR"],
        working_path=str(temp_workspace),
        port_min=20000,
        port_max=20010,
        host_domain="preview.example.com",
        host_scheme="https",
    )


@pytest.fixture
def test_logger(test_config: InstantiateConfig):
    """Configure logging for tests."""
    return setup_logging(
        log_dir=test_config.log_dir,
        verbose=test_config.verbose,
        log_level=test_config.log_level,
        enable_file_logging=False,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def runtime() -> Mock:
    """Container runtime that reports no published ports and runs nothing."""
    runtime = Mock()
    runtime.get_exposed_ports = AsyncMock(return_value=set())
    runtime.get_project_ports = AsyncMock(return_value=set())
    runtime.run_prebuild = AsyncMock()
    return runtime


@pytest.fixture
def sample_event() -> CanonicalEvent:
    return CanonicalEvent(
        project_id="42",
        mr_id="1001",
        mr_display_id="7",
        project_name="acme/shop",
        title="Add checkout page",
        branch="feature/checkout",
        commit_sha="0123456789abcdef0123456789abcdef01234567",
        author="octocat",
        clone_url="https://github.com/acme/shop.git",
        full_name="acme/shop",
        provider=Provider.GITHUB,
        status=MergeRequestStatus.OPEN,
    )


@pytest.fixture
def closed_event(sample_event: CanonicalEvent) -> CanonicalEvent:
    data = sample_event.to_dict()
    data["status"] = "closed"
    return CanonicalEvent.from_dict(data)


def _make_adapter(
    name: str = "compose",
    manifest_name: str = "docker-compose.rendered.yml",
    health=StackStatus.RUNNING,
    subdirectory: str = "",
) -> Mock:
    """Orchestrator adapter double with awaitable up/down/check_health."""
    adapter = Mock()
    adapter.name = name
    adapter.manifest_name = manifest_name
    adapter.stack_directory = Mock(side_effect=lambda config_dir: Path(config_dir) / subdirectory)
    adapter.up = AsyncMock()
    adapter.down = AsyncMock()
    adapter.check_health = AsyncMock(return_value=health)
    return adapter


@pytest.fixture
def make_adapter():
    """Factory for orchestrator adapter doubles."""
    return _make_adapter


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "database: marks tests that require database")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)

        if "database" in item.nodeid:
            item.add_marker(pytest.mark.database)


# Test utilities
class TestHelper:
    """Helper class for common test operations."""

    @staticmethod
    def create_test_file(path: Path, content: str) -> None:
        """Create a test file with given content."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    @staticmethod
    def assert_file_exists(path: Path, message: str = "") -> None:
        """Assert that a file exists."""
        assert path.exists(), f"File does not exist: {path}. {message}"


@pytest.fixture
def test_helper() -> TestHelper:
    """Provide test helper utilities."""
    return TestHelper()
