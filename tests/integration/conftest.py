"""
Integration fixtures: an in-process OVSDB server and connected clients.
"""

import pytest_asyncio

from ovsdb_sdk import Client, ClientOptions, with_endpoint
from tests.integration.fake_server import FakeOvsdbServer
from tests.models import FAMILY_SCHEMA, family_model


@pytest_asyncio.fixture
async def server():
    """Family database server speaking the conditional monitor dialect."""
    srv = await FakeOvsdbServer(FAMILY_SCHEMA).start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def connect(server):
    """Factory for clients connected to the server; closed on teardown."""
    clients = []

    async def factory(*options, **kwargs):
        client = Client(
            family_model(),
            ClientOptions.build(with_endpoint(server.endpoint), *options),
            **kwargs,
        )
        await client.connect()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()
