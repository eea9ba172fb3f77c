"""Tests for database migration helpers."""
import pytest
from sqlalchemy import create_engine as sa_create_engine, text
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from fmssync.db.migrations import run_migrations
from fmssync.models.sync import FacilitySyncConfig, SyncLog


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    """In-memory SQLite engine with full schema, for testing migrations."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="legacy_engine")
def legacy_engine_fixture():
    """Tables that exist but lack the nullable columns the models declare."""
    engine = sa_create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.connect() as conn:
        conn.execute(text(
            "CREATE TABLE synclog (id INTEGER PRIMARY KEY, facility_id VARCHAR, status VARCHAR)"
        ))
        conn.execute(text(
            "CREATE TABLE facilitysyncconfig (id INTEGER PRIMARY KEY, facility_id VARCHAR, provider_type VARCHAR)"
        ))
        conn.commit()
    yield engine
    engine.dispose()


def _columns(engine, table):
    with engine.connect() as conn:
        return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}


class TestRunMigrations:
    def test_run_migrations_does_not_raise(self, migration_engine):
        """Migration should complete without errors on a fresh DB."""
        run_migrations(migration_engine)

    def test_run_migrations_is_idempotent(self, migration_engine):
        """Running migrations twice must not raise (columns already exist)."""
        run_migrations(migration_engine)
        run_migrations(migration_engine)

    def test_adds_missing_columns(self, legacy_engine):
        run_migrations(legacy_engine)
        assert {"summary_json", "triggered_by_user_id"} <= _columns(legacy_engine, "synclog")
        assert "sync_interval_minutes" in _columns(legacy_engine, "facilitysyncconfig")

    def test_missing_tables_are_left_alone(self, legacy_engine):
        """syncchange does not exist yet; create_all will build it whole."""
        run_migrations(legacy_engine)
        assert _columns(legacy_engine, "syncchange") == set()

    def test_new_columns_queryable_after_migration(self, migration_engine):
        run_migrations(migration_engine)
        with Session(migration_engine) as s:
            s.add(FacilitySyncConfig(facility_id="f", provider_type="simulated", sync_interval_minutes=30))
            s.add(SyncLog(facility_id="f", summary_json='{"errors": []}'))
            s.commit()
            assert s.exec(select(FacilitySyncConfig)).one().sync_interval_minutes == 30
            assert s.exec(select(SyncLog)).one().summary == {"errors": []}
