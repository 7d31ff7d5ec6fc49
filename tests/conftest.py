from __future__ import annotations

from typing import Any, Callable

import pytest
from sqlalchemy.orm import sessionmaker

from devpanel.config.database import build_engine, init_db


@pytest.fixture
def session_factory(tmp_path) -> Callable[[], Any]:
    engine = build_engine(f"sqlite:///{tmp_path / 'devpanel-test.db'}")
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
