# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("FORMSTR_DATABASE_URL", "sqlite://")

from formstr_core.core.security import secret_key_from_hex
from formstr_core.db.session import Base
from formstr_core.services.relay import RelayConfig
from formstr_core.services.signer import LocalKeySigner
from tests.fakes import AUTHOR_SECRET_HEX, OTHER_SECRET_HEX

TEST_DB_URL = "sqlite://"


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def author_secret() -> bytes:
    return secret_key_from_hex(AUTHOR_SECRET_HEX)


@pytest.fixture()
def author_signer(author_secret: bytes) -> LocalKeySigner:
    return LocalKeySigner(author_secret)


@pytest.fixture()
def other_signer() -> LocalKeySigner:
    return LocalKeySigner(secret_key_from_hex(OTHER_SECRET_HEX))


@pytest.fixture()
def relay_config() -> RelayConfig:
    return RelayConfig(
        connect_timeout_seconds=1.0,
        publish_timeout_seconds=1.0,
        auth_debounce_seconds=0.01,
        auth_retry_delay_seconds=0.0,
        auth_response_timeout_seconds=1.0,
        query_max_wait_seconds=1.0,
    )
