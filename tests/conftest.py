"""
Pytest fixtures for the magistral test suite.

Provides:
- A fresh database per test (SQLite file under tmp_path, or DATABASE_URL)
- Module services wired to a DeterministicClock
- Builders for inventory items, lots and prescriptions
- Structured log capture

Environment Variables:
- DATABASE_URL: SQLAlchemy URL of a PostgreSQL test database.  When unset,
  every test gets its own SQLite file.
"""

import json
import logging
import os
from datetime import UTC, date, datetime
from decimal import Decimal
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from magistral_config.schema import MagistralConfig
from magistral_engines.staging import DispatchStaging
from magistral_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from magistral_kernel.domain.clock import DeterministicClock
from magistral_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from magistral_kernel.models.inventory import InventoryItem, InventoryLot
from magistral_kernel.models.prescription import SupplySource
from magistral_modules.dispatch.service import DispatchService
from magistral_modules.prescriptions.models import PrescriptionInput, PrescriptionItemInput
from magistral_modules.prescriptions.service import PrescriptionService
from magistral_services.collaborators import PharmacyMessage

TEST_ACTOR_ID = "staff-test"
PHARMACIST_ID = "qf-test"
PHARMACY_ID = "pharmacy-norte"

START_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture magistral_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, prescription_service):
            ...
            logs = captured_logs()
            assert any(r["message"] == "workflow_transition" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("magistral_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """Engine with freshly created tables, disposed after the test."""
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'magistral.db'}"
    eng = init_engine_from_url(url, echo=False, pool_size=10, max_overflow=10)
    if eng.dialect.name != "sqlite":
        drop_tables()
    create_tables()
    yield eng
    if eng.dialect.name != "sqlite":
        drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    """Factory for extra sessions; one per simulated operator."""
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    s = session_factory()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Clock, config and services
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(START_TIME)


@pytest.fixture
def config() -> MagistralConfig:
    return MagistralConfig()


class RecordingNotifier:
    """Keeps every outbound message so tests can inspect what was sent."""

    def __init__(self) -> None:
        self.sent: list[PharmacyMessage] = []

    def notify(self, message: PharmacyMessage) -> None:
        self.sent.append(message)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def prescription_service(session, config, clock, notifier) -> PrescriptionService:
    return PrescriptionService(session, config=config, clock=clock, notifier=notifier)


@pytest.fixture
def dispatch_service(session, config, clock) -> DispatchService:
    return DispatchService(session, config=config, clock=clock)


@pytest.fixture
def staging() -> DispatchStaging:
    return DispatchStaging()


# =============================================================================
# Builders
# =============================================================================


def build_inventory_item(
    session: Session,
    *,
    name: str = "Metformina 500mg x20",
    dose_value: Decimal | None = Decimal("500"),
    items_per_base_unit: int | None = 20,
    barcode: str | None = "7800001112223",
    lots: tuple[tuple[str, int, date | None], ...] = (("L-001", 10, date(2025, 6, 30)),),
    low_stock_threshold: int = 2,
    quantity: int | None = None,
) -> InventoryItem:
    """Insert and commit an inventory item; quantity defaults to the sum of its lots."""
    item = InventoryItem(
        name=name,
        quantity=quantity if quantity is not None else sum(q for _, q, _ in lots),
        dose_value=dose_value,
        dose_unit="mg",
        items_per_base_unit=items_per_base_unit,
        barcode=barcode,
        low_stock_threshold=low_stock_threshold,
        created_at=START_TIME,
        updated_at=START_TIME,
        created_by_id=TEST_ACTOR_ID,
        lots=[
            InventoryLot(lot_number=number, quantity=qty, expiry_date=expiry)
            for number, qty, expiry in lots
        ],
    )
    session.add(item)
    session.commit()
    return item


def build_item_input(**overrides) -> PrescriptionItemInput:
    values = dict(
        principal_active_ingredient="Metformina",
        concentration_value="50",
        concentration_unit="mg",
        dosage_value="1",
        dosage_unit="capsule",
        frequency="every 12 hours",
        duration_value="30",
        duration_unit="days",
        total_quantity_value="100",
        total_quantity_unit="capsules",
    )
    values.update(overrides)
    return PrescriptionItemInput(**values)


def build_prescription_input(**overrides) -> PrescriptionInput:
    values = dict(
        patient_id="patient-001",
        doctor_id="doctor-001",
        due_date=date(2024, 7, 1),
        supply_source=SupplySource.EXTERNAL_STOCK.value,
        external_pharmacy_id=PHARMACY_ID,
        prescription_folio="RX-1001",
        items=(build_item_input(),),
    )
    values.update(overrides)
    return PrescriptionInput(**values)


@pytest.fixture
def make_inventory_item(session):
    def _make(**kwargs) -> InventoryItem:
        return build_inventory_item(session, **kwargs)

    return _make


@pytest.fixture
def make_prescription(prescription_service):
    """Register a prescription and optionally walk it to Validated."""

    def _make(validated: bool = False, **overrides):
        prescription = prescription_service.register(
            build_prescription_input(**overrides), TEST_ACTOR_ID,
        )
        if validated:
            prescription = prescription_service.validate(prescription.id, PHARMACIST_ID)
        return prescription

    return _make


@pytest.fixture
def make_skol_prescription(make_prescription):
    """Validated, Skol-supplied prescription whose items fractionate ``source``."""

    def _make(source: InventoryItem, items=None, pharmacy_id: str = PHARMACY_ID, **overrides):
        items = items or (
            build_item_input(
                requires_fractionation=True,
                source_inventory_item_id=source.id,
            ),
        )
        return make_prescription(
            validated=True,
            supply_source=SupplySource.SKOL_SUPPLIED.value,
            external_pharmacy_id=pharmacy_id,
            items=tuple(items),
            **overrides,
        )

    return _make
