import os

# Settings are read once at import time; point everything at throwaway storage first.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SECRET_STORE_PATH", "/tmp/webar-gate-tests/secret.json")

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from webar_gate.db import Base, make_engine  # noqa: E402
from webar_gate.models.document import Document  # noqa: E402,F401
from webar_gate.store import SqlDocumentStore  # noqa: E402


@pytest.fixture
def store():
    """A document store on its own in-memory database."""
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield SqlDocumentStore(session_factory=factory, unique_collections=["phone_regs"])
    engine.dispose()
