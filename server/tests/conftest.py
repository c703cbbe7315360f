import os
import sys
from pathlib import Path

import pytest

# Ensure the server/ directory is on sys.path so `import cashsnap_auth.*` works in all runners.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Test-suite guardrails:
# deployments export production-like env (postgres, alembic-managed schema).
# SQLite tests in this suite require local in-memory bootstrap behavior instead.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DB_AUTO_CREATE_TABLES"] = "true"
os.environ["DB_REQUIRE_MIGRATIONS_UP_TO_DATE"] = "false"
os.environ["CRYPTO_ENCRYPTION_KEY"] = "test-crypto-key"
os.environ["ENCRYPTION_ORACLE_URL"] = ""
os.environ["ENCRYPTION_ORACLE_TOKEN"] = ""


@pytest.fixture()
def db():
    """Fresh in-memory database with every table created."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from cashsnap_auth import models

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def user(db):
    from cashsnap_auth.models import AppUser

    u = AppUser(username="alice@example.com", password_hash="x", is_active=True)
    db.add(u)
    db.commit()
    return u
