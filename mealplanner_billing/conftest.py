# mealplanner_billing/conftest.py
import sys
import os
import pytest
from pathlib import Path

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mealplanner_billing.tests.mocks import TEST_ADMIN_KEY, TEST_WEBHOOK_SECRET  # noqa: E402


@pytest.fixture(scope="session")
def db_url():
    """
    DATABASE_URL for PostgreSQL-only tests.

    Returns the URL from environment when it points at PostgreSQL, else None.
    """
    url = os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql"):
        return url
    return None


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-global; start every test from zero."""
    from mealplanner_billing.core.metrics import METRICS
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def sqlite_db(tmp_path):
    """
    Fresh SQLite database file per test, bound as the global engine.

    SQLite serialises writers with file locks; connections wait on each other
    through the engine's busy timeout, so threaded tests can share the file.
    """
    from mealplanner_billing.core.database import create_all_tables, dispose_engine, init_engine

    dispose_engine()
    init_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def pg_db(db_url):
    """
    PostgreSQL database with truncated billing tables.

    Skips when DATABASE_URL is not a PostgreSQL URL.
    """
    if not db_url:
        pytest.skip("DATABASE_URL (postgresql) not set")

    from sqlalchemy import text
    from mealplanner_billing.core.database import create_all_tables, dispose_engine, get_engine, init_engine, metadata

    dispose_engine()
    init_engine(db_url)
    create_all_tables()
    engine = get_engine()
    table_names = [table.name for table in metadata.sorted_tables]

    def _truncate():
        with engine.connect() as conn:
            for table_name in reversed(table_names):
                conn.execute(text(f"TRUNCATE TABLE {table_name} CASCADE"))
            conn.commit()

    _truncate()
    yield
    _truncate()
    dispose_engine()


@pytest.fixture
def event_source():
    from mealplanner_billing.features.billing.stripe_provider import StripeEventSource
    return StripeEventSource(webhook_secret=TEST_WEBHOOK_SECRET, tolerance_seconds=300)


@pytest.fixture
def memory_container(event_source):
    """In-memory services with inline reconciliation (deterministic)."""
    from mealplanner_billing.container import build_container
    from mealplanner_billing.features.entitlements.cache import InMemoryEntitlementCache

    return build_container(
        use_sql=False,
        dispatch_mode="inline",
        cache=InMemoryEntitlementCache(),
        source=event_source,
    )


@pytest.fixture
def client(memory_container, monkeypatch):
    """TestClient over an app wired to memory_container."""
    from fastapi.testclient import TestClient
    from mealplanner_billing.container import reset_container
    from mealplanner_billing.main import create_app

    monkeypatch.setenv("ADMIN_API_KEY", TEST_ADMIN_KEY)
    app = create_app(memory_container)
    with TestClient(app) as c:
        yield c
    reset_container()
