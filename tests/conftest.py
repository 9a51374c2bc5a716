from __future__ import annotations

import pytest

from fishplant.db import connect, ensure_schema


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "plant.db"


@pytest.fixture
def conn(db_path):
    c = connect(db_path, retry_base_delay_s=0.0)
    ensure_schema(c)
    yield c
    c.close()
