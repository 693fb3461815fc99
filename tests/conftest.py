"""
Shared fixtures: the Family schema, its models and a fresh cache.
"""

import pytest

from ovsdb_sdk.api import API
from ovsdb_sdk.cache import TableCache
from ovsdb_sdk.model import ClientDBModel, DatabaseModel
from tests.models import Child, Parent, Recorder, family_schema


@pytest.fixture
def schema():
    """Family database schema."""
    return family_schema()


@pytest.fixture
def client_model():
    """Parent and Child registered for the Family database."""
    return ClientDBModel("Family", {"Parent": Parent, "Child": Child})


@pytest.fixture
def db_model(client_model, schema):
    """Client model bound to the Family schema."""
    return DatabaseModel(client_model, schema)


@pytest.fixture
def cache(db_model):
    """Empty table cache."""
    return TableCache(db_model)


@pytest.fixture
def recorder(cache):
    """Recorder registered on the cache; call process_pending() to deliver."""
    rec = Recorder()
    cache.add_event_handler(rec)
    return rec


@pytest.fixture
def api(cache):
    """API over the cache."""
    return API(cache)
