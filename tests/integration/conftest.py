"""
Integration test fixtures.

Starts a RabbitMQ container with testcontainers once per session. If
testcontainers or Docker is not available, tests are automatically skipped.
"""

from __future__ import annotations

import subprocess
from collections.abc import Generator
from typing import Any

import pytest

# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.core.container import DockerContainer
    from testcontainers.core.waiting_utils import wait_for_logs

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    DockerContainer = None  # type: ignore[assignment, misc]
    wait_for_logs = None  # type: ignore[assignment]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    try:
        result = subprocess.run(["docker", "info"], capture_output=True, timeout=5)
    except (subprocess.TimeoutExpired, OSError):
        return False
    return result.returncode == 0


DOCKER_AVAILABLE = is_docker_available()


# ============================================================================
# RabbitMQ Container
# ============================================================================


@pytest.fixture(scope="session")
def rabbitmq_container() -> Generator[Any, None, None]:
    """RabbitMQ container shared by every integration test in the session."""
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("RabbitMQ testcontainer not available")

    container = DockerContainer("rabbitmq:3-management")
    container.with_exposed_ports(5672)
    container.with_env("RABBITMQ_DEFAULT_USER", "guest")
    container.with_env("RABBITMQ_DEFAULT_PASS", "guest")
    container.start()

    wait_for_logs(container, "started TCP listener on", timeout=60)

    yield container

    container.stop()


@pytest.fixture(scope="session")
def rabbitmq_url(rabbitmq_container: Any) -> str:
    host = rabbitmq_container.get_container_host_ip()
    port = rabbitmq_container.get_exposed_port(5672)
    return f"amqp://guest:guest@{host}:{port}/"
