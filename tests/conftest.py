"""Shared test fixtures."""
import copy
import json
from pathlib import Path
from typing import Any, Callable, Dict, Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from fmssync.config import Settings
# Import all models so SQLModel.metadata knows about them
from fmssync.models.facility import Tenant, Unit  # noqa: F401
from fmssync.models.sync import FacilitySyncConfig, SyncChange, SyncLog  # noqa: F401
from fmssync.sync.history import SyncHistoryStore

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FACILITY_ID = "facility-001"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(engine) -> SyncHistoryStore:
    return SyncHistoryStore(engine)


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Fast retry policy so failure tests don't sleep."""
    return Settings(
        sync_retry_attempts=3,
        sync_retry_backoff_seconds=0.0,
        sync_fetch_timeout_seconds=5.0,
    )


@pytest.fixture(name="demo_data")
def demo_data_fixture() -> Dict[str, Any]:
    """The simulated FMS fixture document (a fresh copy per test)."""
    return copy.deepcopy(json.loads((FIXTURES_DIR / "fms_simulated_data.json").read_text()))


@pytest.fixture(name="data_file")
def data_file_fixture(tmp_path, demo_data) -> Path:
    """A writable copy of the simulated data file."""
    path = tmp_path / "fms.json"
    path.write_text(json.dumps(demo_data))
    return path


@pytest.fixture(name="sim_config")
def sim_config_fixture(store, data_file) -> FacilitySyncConfig:
    """An enabled simulated-provider config reading data_file."""
    return store.save_config(FacilitySyncConfig(
        facility_id=FACILITY_ID,
        provider_type="simulated",
        provider_config_json=json.dumps({"data_file": str(data_file)}),
    ))


@pytest.fixture(name="seed_internal")
def seed_internal_fixture(engine) -> Callable[[Dict[str, Any]], None]:
    """
    Mirror an FMS document into internal Tenant/Unit rows, linked by
    external id, so a sync against the same document finds no changes.
    """

    def seed(data: Dict[str, Any], facility_id: str = FACILITY_ID) -> None:
        with Session(engine) as s:
            tenants = {}
            for raw in data["tenants"]:
                tenant = Tenant(
                    facility_id=facility_id,
                    external_id=raw["id"],
                    first_name=raw.get("firstName"),
                    last_name=raw.get("lastName"),
                    email=raw.get("email"),
                    phone=raw.get("phone"),
                )
                s.add(tenant)
                tenants[raw["id"]] = tenant
            s.flush()
            for raw in data["units"]:
                owner = tenants.get(raw.get("tenantId"))
                s.add(Unit(
                    facility_id=facility_id,
                    external_id=raw["id"],
                    unit_number=raw["unitNumber"],
                    unit_type=raw.get("unitType"),
                    size=raw.get("size"),
                    status=raw.get("status", "available"),
                    monthly_rate=raw.get("monthlyRate"),
                    tenant_id=owner.id if owner else None,
                ))
            s.commit()

    return seed
