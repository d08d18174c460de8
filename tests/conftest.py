import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from docintegrity import CallablePermissionOracle, IntegrityCoordinator

from support import key_store, open_db


@pytest.fixture
def db(tmp_path):
    database = open_db(tmp_path)
    yield database
    database.close()


@pytest.fixture
def keys():
    return key_store()


@pytest.fixture
def denied():
    """(actor, operation) pairs the oracle refuses. Tests add to it."""
    return set()


@pytest.fixture
def oracle(denied):
    return CallablePermissionOracle(lambda actor, operation, document_id: (actor, operation) not in denied)


@pytest.fixture
def core(db, keys, oracle):
    return IntegrityCoordinator(db, keys, oracle)
