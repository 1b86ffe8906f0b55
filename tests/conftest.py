#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
    tests.conftest
    ~~~~~~~~~~~~~~

    Shared fixtures: a fresh in-memory database per test, a frozen clock
    and a mock notifier wired into a CirculationAPI.

    :copyright: (c) 2025 by Authors.
    :license: see LICENSE for more details.
"""

import os
os.environ.setdefault("TESTING", "true")

import datetime
import pytest
from unittest.mock import MagicMock
from sqlalchemy.orm import scoped_session, sessionmaker
from circa.core.db import Base, make_engine
from circa.core import models  # noqa: F401
from circa.core.api import CirculationAPI
from circa.core.clock import FrozenClock

START = datetime.datetime(2025, 3, 3, 10, 0)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = scoped_session(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    try:
        yield session
    finally:
        session.remove()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def api(db_session, clock, notifier):
    return CirculationAPI(db=db_session, clock=clock, notifier=notifier)


@pytest.fixture
def item(api):
    """One title with a single copy on a 14 day loan period."""
    return api.register_item("The Dispossessed", 1, default_return_period=14)


def sent(notifier, kind):
    """Recipients of every notice of `kind` handed to the mock notifier."""
    return [c.args[0] for c in notifier.send.call_args_list if c.args[1] == kind]
