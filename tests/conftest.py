from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine  # noqa: TC002
from sqlalchemy.orm import Session, sessionmaker

from eramerge.adapters.sqlalchemy.migrations import upgrade_head
from eramerge.adapters.sqlalchemy.unit_of_work import (
    SqlAlchemyMergeUnitOfWork,
    enable_sqlite_savepoints,
    shutdown,
    startup,
)
from tests.helpers.tables import define_person_tables

os.environ.setdefault("DATABASE_URI", "sqlite+pysqlite:///:memory:")

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    enable_sqlite_savepoints(engine)
    upgrade_head(engine=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def sqlite_session(sqlite_engine: Engine) -> Iterator[Session]:
    session_factory = sessionmaker(bind=sqlite_engine, future=True)
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def person_metadata(sqlite_engine: Engine) -> MetaData:
    metadata = MetaData()
    define_person_tables(metadata)
    metadata.create_all(sqlite_engine)
    return metadata


@pytest.fixture
def sqlite_unit_of_work(
    sqlite_engine: Engine,
    person_metadata: MetaData,
) -> Iterator[Callable[[], SqlAlchemyMergeUnitOfWork]]:
    startup(engine=sqlite_engine, metadata=person_metadata, force=True)

    def factory() -> SqlAlchemyMergeUnitOfWork:
        return SqlAlchemyMergeUnitOfWork()

    try:
        yield factory
    finally:
        shutdown()
