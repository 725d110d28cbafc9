import os
import tempfile

# must be set before ridedispatch.config is imported anywhere
_tmp = tempfile.mkdtemp(prefix="ridedispatch-test-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmp}/api.db"
os.environ["LOG_DIR"] = _tmp
os.environ["PUSH_GATEWAY_URL"] = "http://push.invalid/send"

import pytest

from support import FixedClock, START


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "dispatch.db")
