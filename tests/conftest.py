import sys, pathlib
# Ensure project root is on the path when tests are executed from sub-directories
ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from database import models as db_models
from database.verification_store import VerificationStore


@pytest.fixture
def db():
    """Fresh in-memory Database singleton per test."""
    db_models._instance = None
    instance = db_models.Database(":memory:")
    yield instance
    instance.conn.close()
    db_models._instance = None


@pytest.fixture
def store(db):
    return VerificationStore(db)
