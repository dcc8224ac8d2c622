"""
Pytest configuration and shared fixtures for the tracker test suite.
"""
import asyncio
import os
import shutil
import tempfile
from datetime import date, timedelta
from pathlib import Path
from typing import Generator

import pytest

from models.inputs import POItemInput, RequirementSelection
from tracker.errors import StoreError
from tracker.store import InMemoryEntityStore

# Run from the project root
PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)

OWNER = "user-1"

# Smallest byte string the blob store accepts as a PDF
PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\ntrailer\n<< /Root 1 0 R >>\n%%EOF"


class FlakyStore(InMemoryEntityStore):
    """
    In-memory store that fails chosen calls.

    ``fail(operation, table, times=1)`` makes the next *times* matching calls
    raise StoreError (``times=None`` fails forever).  ``calls`` records every
    (operation, table, id) for ordering assertions.
    """

    def __init__(self) -> None:
        super().__init__()
        self._failures: dict[tuple[str, str], "int | None"] = {}
        self.calls: list[tuple[str, str, str]] = []

    def fail(self, operation: str, table: str, times: "int | None" = 1) -> None:
        self._failures[(operation, table)] = times

    def heal(self) -> None:
        self._failures.clear()

    async def _maybe_fail(self, operation: str, table: str) -> None:
        # Yield to the loop like a real backend would
        await asyncio.sleep(0)
        key = (operation, table)
        if key not in self._failures:
            return
        remaining = self._failures[key]
        if remaining is not None:
            if remaining <= 1:
                del self._failures[key]
            else:
                self._failures[key] = remaining - 1
        raise StoreError(f"injected {operation} failure on {table}", table=table, operation=operation)

    async def insert(self, table, record):
        self.calls.append(("insert", table, record.get("id")))
        await self._maybe_fail("insert", table)
        return await super().insert(table, record)

    async def update(self, table, record_id, patch):
        self.calls.append(("update", table, record_id))
        await self._maybe_fail("update", table)
        return await super().update(table, record_id, patch)

    async def delete(self, table, record_id):
        self.calls.append(("delete", table, record_id))
        await self._maybe_fail("delete", table)
        return await super().delete(table, record_id)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="tracker_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> "Config":
    """Provide a test configuration with isolated directories."""
    from config import Config

    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    config = Config()
    # Override paths to use temp directory
    config.output_dir = temp_dir / "output"
    config.db_path = temp_dir / "output" / "tracker.db"
    config.storage_dir = temp_dir / "output" / "storage"
    config.backup_dir = temp_dir / "backups"
    config.ensure_output_dir()
    return config


@pytest.fixture
def run() -> Generator:
    """Run a coroutine to completion on one event loop shared by the test."""
    loop = asyncio.new_event_loop()
    yield loop.run_until_complete
    loop.close()


@pytest.fixture
def owner() -> str:
    return OWNER


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def sqlite_store(test_config) -> "SqliteEntityStore":
    from tracker.database import SqliteEntityStore
    return SqliteEntityStore(test_config.db_path)


@pytest.fixture
def blob_store(test_config) -> "LocalBlobStore":
    from tracker.blob_store import LocalBlobStore
    return LocalBlobStore(test_config.storage_dir, "/files", test_config.max_upload_bytes)


@pytest.fixture
def coordinator(run, store, blob_store) -> "MutationCoordinator":
    """An empty coordinator for OWNER over the flaky in-memory store."""
    from tracker.coordinator import MutationCoordinator
    return run(MutationCoordinator.load(store, OWNER, blob_store=blob_store))


@pytest.fixture
def far_delivery() -> date:
    """A delivery date well outside the urgency window."""
    return date.today() + timedelta(days=60)


@pytest.fixture
def po_100(run, coordinator) -> "PurchaseOrder":
    """PO-100 with Brick A (100 pcs) and Mortar B (50 kgs)."""
    return run(coordinator.create_po(
        "PO-100",
        date(2024, 1, 10),
        [
            POItemInput(material_name="Brick A", quantity=100),
            POItemInput(material_name="Mortar B", quantity=50, unit="kgs"),
        ],
        area_of_application="Blast Furnace",
    ))


@pytest.fixture
def req_40(run, coordinator, po_100, far_delivery) -> "Requirement":
    """Requirement for 40 Brick A against PO-100."""
    return run(coordinator.create_requirement(
        "PO-100",
        [RequirementSelection(material_name="Brick A", quantity_required=40)],
        far_delivery,
    ))


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    return PDF_BYTES


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
