#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
    tests.test_concurrency
    ~~~~~~~~~~~~~~~~~~~~~~

    Members racing for the last copy from separate threads, each with its
    own session and its own lock registry, so only the database decides.
    SQLite file engines begin every transaction with `BEGIN IMMEDIATE`, so
    the losers wait their turn and find the shelf empty.

    :copyright: (c) 2025 by Authors.
    :license: see LICENSE for more details.
"""

import threading
import pytest
from unittest.mock import MagicMock
from sqlalchemy.orm import scoped_session, sessionmaker
from circa.core.api import CirculationAPI
from circa.core.clock import FrozenClock
from circa.core.db import Base, make_engine
from circa.core.exceptions import ConflictError, Conflict
from circa.core.models import Loan
from tests.conftest import START


@pytest.fixture
def file_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'circa.db'}", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


def test_last_copy_is_issued_once(file_engine):
    session = scoped_session(sessionmaker(autocommit=False, autoflush=False, bind=file_engine))
    clock = FrozenClock(START)
    setup = CirculationAPI(db=session, clock=clock, notifier=MagicMock())
    item_id = setup.register_item("Kindred", 1).id
    setup.release()

    users = ["alice", "bob", "carol", "dave"]
    barrier = threading.Barrier(len(users))
    outcomes = {}

    def borrow(user):
        api = CirculationAPI(db=session, clock=clock, notifier=MagicMock())
        barrier.wait()
        try:
            api.issue(item_id, user)
            outcomes[user] = "issued"
        except ConflictError as e:
            outcomes[user] = e.reason
        finally:
            api.release()

    threads = [threading.Thread(target=borrow, args=(user,)) for user in users]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert len(outcomes) == len(users)
    assert list(outcomes.values()).count("issued") == 1
    losers = [outcome for outcome in outcomes.values() if outcome != "issued"]
    assert losers == [Conflict.NO_COPY_AVAILABLE] * (len(users) - 1)
    assert session.query(Loan).filter(Loan.returned_at.is_(None)).count() == 1
    assert setup.get_item(item_id).available_copies == 0
    assert setup.ledger.check(item_id)
    session.remove()
