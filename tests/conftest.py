"""Pytest environment isolation for exolix tests.

These tests must never touch the runtime database or model directories.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

import pytest
from sqlalchemy import delete

# Configure an isolated filesystem root before settings are imported.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="exolix-pytest-")).resolve()
_TEST_DB = _TEST_ROOT / "test.db"
_TEST_MODELS = _TEST_ROOT / "models"
_TEST_EXPORTS = _TEST_ROOT / "exports"

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB}"
os.environ["MODEL_DIR"] = str(_TEST_MODELS)
os.environ["EXPORT_DIR"] = str(_TEST_EXPORTS)
os.environ["USE_S3_STORAGE"] = "false"
os.environ["ENCODER_URL"] = "http://encoder.test/encode"
os.environ["LOG_JSON"] = "false"

from exolix.config import get_settings

get_settings.cache_clear()


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_test_environment() -> None:
    """Prepare isolated directories and database schema once per test session."""
    _TEST_MODELS.mkdir(parents=True, exist_ok=True)
    _TEST_EXPORTS.mkdir(parents=True, exist_ok=True)

    from exolix.database import Base, engine, init_db

    init_db(engine)
    yield

    Base.metadata.drop_all(bind=engine)
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture(autouse=True)
def _isolate_each_test() -> None:
    """Clear persisted rows and cached singletons for every test."""
    from exolix.database import Base, SessionLocal
    from exolix.storage import get_storage

    with SessionLocal() as db:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(delete(table))
        db.commit()

    get_storage.cache_clear()
    yield
    get_settings.cache_clear()
    get_storage.cache_clear()
