from __future__ import annotations

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="applyflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/applyflow-test.db"
os.environ["DATA_DIR"] = _TEST_DIR
os.environ["APP_ENV"] = "test"
os.environ["OPENAI_API_KEY"] = ""
os.environ["LOCAL_LLM_ENABLED"] = "false"

import pytest  # noqa: E402

from applyflow.db.base import Base  # noqa: E402
from applyflow.db import models  # noqa: E402, F401
from applyflow.db.session import engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
