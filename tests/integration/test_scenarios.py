"""
End-to-end scenarios over the Family database.

Tests cover:
- Named-uuid chaining with server and client side allocation
- Garbage collection of unreferenced children
- Weak reference cleanup
- Predicate-driven mutation
- No-op updates
- Identical cache state and events for both monitor dialects
"""

import itertools
import json

import pytest

from ovsdb_sdk import Client, ClientOptions, Mutation, with_client_side_uuids, with_endpoint
from ovsdb_sdk.model import ref
from tests.integration.fake_server import FakeOvsdbServer, eventually
from tests.models import FAMILY_SCHEMA, Child, Parent, Recorder, family_model


async def monitored(connect, *options):
    """Connected client with a recorder and every table monitored."""
    client = await connect(*options)
    recorder = Recorder()
    client.cache.add_event_handler(recorder)
    await client.monitor_all()
    return client, recorder


_sentinels = itertools.count()


async def settle(client, recorder):
    """Wait until every event up to now has been delivered.

    A uniquely named Parent is inserted and its add event awaited; events
    are delivered in order, so everything before it has arrived too.
    """
    name = f"sentinel-{next(_sentinels)}"
    await client.transact(*client.api().create(Parent(name=name)))
    await eventually(lambda: any(e[0] == "add" and e[2].name == name for e in recorder.events))
    recorder.events[:] = [e for e in recorder.events if not is_sentinel(e[-1])]


def is_sentinel(entity):
    return isinstance(entity, Parent) and entity.name.startswith("sentinel-")


class TestNamedUuids:
    """Scenario: chained inserts."""

    @pytest.mark.asyncio
    async def test_server_side(self, server, connect):
        """The server resolves named-uuid references."""
        client, _ = await monitored(connect)
        ops = client.api().create(Child(uuid="c1", name="c"), Parent(name="p", children=["c1"]))

        results = await client.transact(*ops)

        sent = server.received("transact")[-1]
        assert sent[2]["row"]["children"] == ["named-uuid", "c1"]
        parent = client.api().get(Parent(name="p"))
        assert parent.uuid == results[1].uuid
        assert parent.children == [results[0].uuid]

    @pytest.mark.asyncio
    async def test_client_side(self, server, connect):
        """With client side uuids placeholders are substituted before dispatch."""
        client, _ = await monitored(connect, with_client_side_uuids())
        ops = client.api().create(Child(uuid="c1", name="c"), Parent(name="p", children=["c1"]))

        results = await client.transact(*ops)

        sent = server.received("transact")[-1]
        child_uuid = sent[1]["uuid"]
        assert results[0].uuid == child_uuid
        assert "named-uuid" not in json.dumps(sent)
        assert sent[2]["row"]["children"] == ["uuid", child_uuid]

        parent = client.api().get(Parent(name="p"))
        assert parent.children == [child_uuid]
        assert client.cache.row("Child", child_uuid).name == "c"


class TestReferences:
    """Scenarios: strong and weak references."""

    @pytest.mark.asyncio
    async def test_strong_reference_gc(self, connect):
        """Dropping the last strong reference deletes the child once."""
        client, recorder = await monitored(connect)
        api = client.api()
        results = await client.transact(
            *api.create(Child(uuid="kid", name="c"), Parent(name="p", children=["kid"]))
        )
        child, parent = results[0].uuid, results[1].uuid
        await settle(client, recorder)
        recorder.events.clear()

        await client.transact(*api.where(Parent(uuid=parent)).update(Parent(children=[]), "children"))
        await settle(client, recorder)

        assert client.cache.row("Child", child) is None
        deletes = recorder.of_kind("delete", "Child")
        assert len(deletes) == 1
        assert deletes[0][2].uuid == child
        updates = recorder.of_kind("update", "Parent")
        assert [(old.children, new.children) for _, _, old, new in updates] == [([child], [])]

    @pytest.mark.asyncio
    async def test_weak_reference_cleanup(self, connect):
        """A weak reference to a deleted child disappears."""
        client, recorder = await monitored(connect)
        api = client.api()
        results = await client.transact(
            *api.create(
                Child(uuid="kid", name="c"),
                Parent(name="owner", children=["kid"]),
                Parent(name="fan", backup="kid"),
            )
        )
        child, owner, fan = (r.uuid for r in results)
        assert client.cache.row("Parent", fan).backup == child
        await settle(client, recorder)
        recorder.events.clear()

        proto = Parent(uuid=owner)
        await client.transact(
            *api.where(proto).mutate(
                proto, Mutation(field=ref(proto).children, mutator="delete", value=[child])
            )
        )
        await settle(client, recorder)

        assert client.cache.row("Child", child) is None
        assert client.cache.row("Parent", fan).backup is None
        fan_updates = [e for e in recorder.of_kind("update", "Parent") if e[3].uuid == fan]
        assert len(fan_updates) == 1
        assert (fan_updates[0][2].backup, fan_updates[0][3].backup) == (child, None)


class TestMutation:
    """Scenario: predicate-driven mutation."""

    @pytest.mark.asyncio
    async def test_where_cache_mutate(self, connect):
        """Only rows matching the predicate are mutated."""
        client, _ = await monitored(connect)
        api = client.api()
        results = await client.transact(
            *api.create(Parent(name="p1", extras={"team": "a"}), Parent(name="p2", extras={"team": "b"}))
        )
        p1 = results[0].uuid

        proto = Parent()
        ops = api.where_cache(lambda p: p.extras.get("team") == "a", model=Parent).mutate(
            proto, Mutation(field=ref(proto).extras, mutator="insert", value={"role": "x"})
        )
        assert [op.to_dict() for op in ops] == [
            {
                "op": "mutate",
                "table": "Parent",
                "mutations": [["extras", "insert", ["map", [["role", "x"]]]]],
                "where": [["_uuid", "==", ["uuid", p1]]],
            }
        ]
        await client.transact(*ops)

        assert api.get(Parent(name="p1")).extras == {"team": "a", "role": "x"}
        assert api.get(Parent(name="p2")).extras == {"team": "b"}


class TestNoOpUpdate:
    """Scenario: writing a field's current value."""

    @pytest.mark.asyncio
    async def test_no_events(self, connect):
        """The server's empty delta produces no events."""
        client, recorder = await monitored(connect)
        api = client.api()
        await client.transact(*api.create(Parent(name="p", count=3)))
        await settle(client, recorder)
        recorder.events.clear()

        ops = api.where(Parent(name="p")).update(Parent(name="p", count=3), "count")
        assert ops[0].row == {"count": 3}
        results = await client.transact(*ops)
        assert results[0].count == 1
        await settle(client, recorder)

        assert recorder.events == []
        assert api.get(Parent(name="p")).count == 3


def summarize(event):
    kind, table = event[0], event[1]
    entity = event[-1]
    summary = (kind, table, entity.name)
    if table == "Parent":
        summary += (entity.count, sorted(entity.extras.items()), len(entity.children))
    return summary


async def replay(conditional):
    """Run one fixed sequence of changes and capture its effects."""
    server = await FakeOvsdbServer(FAMILY_SCHEMA, conditional=conditional).start()
    try:
        async with Client(family_model(), ClientOptions.build(with_endpoint(server.endpoint))) as client:
            recorder = Recorder()
            client.cache.add_event_handler(recorder)
            await client.monitor_all()
            api = client.api()

            await client.transact(
                *api.create(Child(uuid="kid", name="c", age=1), Parent(name="p", children=["kid"]))
            )
            await client.transact(*api.where(Parent(name="p")).update(Parent(count=4), "count"))
            proto = Parent(name="p")
            await client.transact(
                *api.where(proto).mutate(
                    proto, Mutation(field="extras", mutator="insert", value={"k": "v"})
                )
            )
            await client.transact(*api.create(Parent(name="q")))
            await client.transact(*api.where(Parent(name="p")).delete())
            await settle(client, recorder)

            state = sorted(
                summarize(("row", table, client.cache.row(table, uuid)))
                for table in ("Parent", "Child")
                for uuid in client.cache.rows(table)
                if not is_sentinel(client.cache.row(table, uuid))
            )
            return [summarize(e) for e in recorder.events], state
    finally:
        await server.stop()


class TestDialectParity:
    """Scenario: both monitor dialects converge."""

    @pytest.mark.asyncio
    async def test_same_events_and_state(self):
        """Conditional and legacy monitors yield identical results."""
        conditional = await replay(conditional=True)
        legacy = await replay(conditional=False)

        assert conditional == legacy
        events, state = conditional
        assert [e[0] for e in events] == ["add", "add", "update", "update", "add", "delete", "delete"]
        assert state == [("row", "Parent", "q", 0, [], 0)]
