"""Global test fixtures for the Custodian test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime

import pytest

from custodian.compliance.notifications import RecordingNotifier
from custodian.core.clock import FixedClock
from custodian.crypto.fields import FieldCipher
from custodian.engine import PrivacyEngine
from custodian.storage.artifacts import MemoryArtifactStore
from custodian.storage.repository import InMemoryRepository

# Fixed key so envelopes in failing tests are reproducible
TEST_KEY = bytes(range(32))
T0 = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)

# ============================================================================
# PostgreSQL Availability Detection
# ============================================================================


def _check_postgres_available() -> tuple[bool, str | None]:
    """Check if PostgreSQL is available for integration tests.

    Returns:
        Tuple of (is_available, error_message)
    """
    try:
        import psycopg2
    except ImportError:
        return False, "psycopg2 not installed"

    host = os.environ.get("CUSTODIAN_DB_HOST", "localhost")
    port = int(os.environ.get("CUSTODIAN_DB_PORT", "5432"))
    dbname = os.environ.get("CUSTODIAN_DB_NAME", "custodian")
    user = os.environ.get("CUSTODIAN_DB_USER", "custodian")
    password = os.environ.get("CUSTODIAN_DB_PASSWORD", "")

    try:
        conn = psycopg2.connect(
            host=host,
            port=port,
            database=dbname,
            user=user,
            password=password,
            connect_timeout=3,
        )
        conn.close()
        return True, None
    except psycopg2.OperationalError as e:
        return False, f"PostgreSQL not available: {e}"


POSTGRES_AVAILABLE, POSTGRES_ERROR = _check_postgres_available()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "requires_postgres: test needs a reachable PostgreSQL database")


def pytest_collection_modifyitems(config, items):
    """Skip database tests when PostgreSQL is not reachable."""
    if POSTGRES_AVAILABLE:
        return

    skip_postgres = pytest.mark.skip(reason=POSTGRES_ERROR or "PostgreSQL not available")
    for item in items:
        if "requires_postgres" in item.keywords:
            item.add_marker(skip_postgres)


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all CUSTODIAN_ environment variables and the cached config."""
    from custodian.core.config import clear_config_cache

    for key in list(os.environ.keys()):
        if key.startswith("CUSTODIAN_"):
            monkeypatch.delenv(key, raising=False)
    # A developer .env must not leak into defaults
    monkeypatch.chdir(os.path.dirname(__file__))
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def env_with_key(monkeypatch, clean_env):
    """Set a valid encryption key in the environment."""
    monkeypatch.setenv("CUSTODIAN_ENCRYPTION_KEY", TEST_KEY.hex())


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def clock():
    """Manually advanced clock starting at T0."""
    return FixedClock(T0)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def cipher():
    return FieldCipher(TEST_KEY)


@pytest.fixture
def artifacts():
    return MemoryArtifactStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sleeps():
    """Records every pause the retention enforcer asks for."""
    return []


@pytest.fixture
def engine(repository, cipher, artifacts, notifier, clock, sleeps):
    """In-memory engine with inline export processing and a no-op sleep."""
    with PrivacyEngine(
        repository,
        cipher,
        artifacts,
        notifier=notifier,
        clock=clock,
        sleep=sleeps.append,
    ) as eng:
        yield eng


@pytest.fixture
def user(engine):
    """A registered user with encrypted profile fields."""
    return engine.register_user(
        email="ana@example.com",
        name="Ana Gómez",
        document_number="1020304050",
        phone="+573001234567",
        user_id="user-1",
    )
