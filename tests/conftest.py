"""
Pytest configuration and shared fixtures for reconciler tests.
"""

import logging
import pytest
from pathlib import Path

from flink_reconciler.config import OperatorConfiguration
from flink_reconciler.service import FlinkService

from .testing_utils import FakeClusterClient, FakeKubernetesClient, TEST_NAMESPACE

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent


@pytest.fixture
def default_config():
    """Operator default Flink configuration."""
    return {}


@pytest.fixture
def operator_config():
    """Operator configuration with defaults."""
    return OperatorConfiguration()


@pytest.fixture
def cluster_client():
    """Fake Flink cluster."""
    return FakeClusterClient()


@pytest.fixture
def k8s_client():
    """Fake Kubernetes API."""
    return FakeKubernetesClient(namespace=TEST_NAMESPACE)


@pytest.fixture
def cluster_configs():
    """Configurations the service created cluster clients for."""
    return []


@pytest.fixture
def flink_service(k8s_client, operator_config, cluster_client, cluster_configs):
    """FlinkService talking to the fake cluster."""
    def factory(conf):
        cluster_configs.append(conf)
        return cluster_client

    return FlinkService(k8s_client, operator_config, cluster_client_factory=factory)


def pytest_configure(config):
    """Pytest configuration hook."""
    config.addinivalue_line(
        "markers", "scenario: Multi-step reconcile scenario against fakes"
    )
    config.addinivalue_line(
        "markers", "savepoint: Test exercising savepoint handling"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection."""
    for item in items:
        if "scenarios/" in item.nodeid:
            item.add_marker(pytest.mark.scenario)
        if "savepoint" in item.nodeid.lower():
            item.add_marker(pytest.mark.savepoint)


@pytest.fixture(scope="session", autouse=True)
def test_environment_info(request):
    """Print test environment information."""
    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("Flink Reconciler Test Environment")
    logger.info("=" * 60)
    logger.info(f"Project root: {PROJECT_ROOT}")
    logger.info(f"Pytest version: {pytest.__version__}")
    logger.info(f"Namespace: {TEST_NAMESPACE}")
    logger.info("=" * 60)
