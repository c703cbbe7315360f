from __future__ import annotations

from pathlib import Path

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine

SERVER_DIR = Path(__file__).resolve().parents[2]  # server/


def alembic_heads() -> set[str]:
    cfg = Config(str(SERVER_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(SERVER_DIR / "alembic"))
    return set(ScriptDirectory.from_config(cfg).get_heads())


def current_revisions(engine: Engine) -> set[str]:
    with engine.connect() as conn:
        return set(MigrationContext.configure(conn).get_current_heads())


def assert_db_up_to_date(engine: Engine) -> None:
    """Fail fast if the database is not stamped or not at head."""

    heads = alembic_heads()
    current = current_revisions(engine)

    if not current:
        raise RuntimeError(
            "Database is not stamped with Alembic (missing alembic_version). "
            "Run: alembic upgrade head"
        )

    if current != heads:
        raise RuntimeError(
            f"Database Alembic revision {sorted(current)} is not at head {sorted(heads)}. "
            "Run: alembic upgrade head"
        )
