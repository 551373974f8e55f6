"""
Pytest configuration for the media pipeline tests.

Unit tests run against the in-memory backends with an injected fake clock.
Integration tests use Redis from environment variables (REDIS_HOST,
REDIS_PORT, REDIS_PASSWORD) and are skipped when Redis is unavailable.
"""

import os
import sys
import uuid

import pytest
import redis

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

from helpers import FakeClock


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: requires Redis connection")


@pytest.fixture(scope="session")
def redis_config():
    """
    Return Redis connection config from environment.

    Returns dict with host, port, password, ssl_enabled, cluster_enabled for
    creating AsyncRedisService instances.
    """
    return {
        "host": os.getenv("REDIS_HOST", "localhost"),
        "port": int(os.getenv("REDIS_PORT", "6379")),
        "password": os.getenv("REDIS_PASSWORD") or None,
        "ssl_enabled": os.getenv("REDIS_TLS_ENABLED", "false").lower() == "true",
        "cluster_enabled": False,
    }


@pytest.fixture(scope="session")
def redis_client(redis_config):
    """
    Session-scoped synchronous Redis client used for setup and cleanup.

    Skips all tests if Redis is unavailable.
    """
    connection_kwargs = {
        "host": redis_config["host"],
        "port": redis_config["port"],
        "password": redis_config["password"],
        "decode_responses": True,
        "socket_timeout": 10,
    }

    if redis_config["ssl_enabled"]:
        connection_kwargs["ssl"] = True
        connection_kwargs["ssl_cert_reqs"] = None

    try:
        client = redis.Redis(**connection_kwargs)
        client.ping()
    except redis.ConnectionError as e:
        pytest.skip(f"Redis not available: {e}")
    except Exception as e:
        pytest.skip(f"Redis connection error: {e}")

    yield client
    client.close()


@pytest.fixture
def test_tag():
    """
    Unique hash-tag prefix for one test, e.g. '{test_1a2b3c4d}'.

    Every Redis-backed component accepts a key_prefix, so tests never touch
    real pipeline keys.
    """
    return f"{{test_{uuid.uuid4().hex[:8]}}}"


@pytest.fixture
def cleanup_tag(redis_client, test_tag):
    """Delete every key under the test's hash tag after the test."""
    yield test_tag

    keys = list(redis_client.scan_iter(match=f"{test_tag}*"))
    keys.extend(redis_client.scan_iter(match=f"job:lock:{test_tag}*"))
    if keys:
        redis_client.delete(*keys)


@pytest.fixture
def clock():
    """Controllable seconds clock starting at 2026-01-01T00:00:00Z."""
    return FakeClock(1767225600.0)
