from __future__ import annotations

import os
import sys
from pathlib import Path

# Add backend folder to sys.path so `import loyalty...` works in tests when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Settings are read at import time; keep tests off Redis, MinIO and real databases
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DRAMATIQ_BROKER", "stub")
os.environ.setdefault("STORAGE_BACKEND", "filesystem")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio

from factories import FakeOcr, RecordingDispatcher, make_database  # noqa: E402


@pytest_asyncio.fixture
async def db(tmp_path):
    database = await make_database(tmp_path / "loyalty.db")
    try:
        yield database
    finally:
        await database.engine.dispose()


@pytest.fixture
def ocr():
    return FakeOcr()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
