"""
Unit tests for the API and ConditionalAPI.

Tests cover:
- Listing and fetching cached rows
- Insert construction with placeholders and real uuids
- Update, mutate and delete operations per condition kind
- Deferred construction errors
- Predicate reentrancy
"""

import pytest

from ovsdb_sdk.api import API
from ovsdb_sdk.conditions import Condition, Mutation
from ovsdb_sdk.errors import (
    IndexUnavailable,
    InvalidFieldReference,
    InvalidMutation,
    ModelNotRegistered,
    NotFound,
    ReentrantAccess,
    SchemaViolation,
    WrongType,
)
from ovsdb_sdk.model import ref
from tests.models import C1, P1, P2, Child, Parent, child_row, parent_row


@pytest.fixture
def populated(cache):
    cache.apply_updates(
        {
            "Parent": {
                P1: {"new": parent_row("p", children=[C1], count=1)},
                P2: {"new": parent_row("q", count=5)},
            },
            "Child": {C1: {"new": child_row("c", age=3)}},
        }
    )
    return cache


class TestReads:
    """Tests for list() and get()."""

    def test_list_all(self, api, populated):
        """list returns every cached row of the type."""
        names = sorted(p.name for p in api.list(Parent))
        assert names == ["p", "q"]

    def test_list_limit(self, api, populated):
        """limit caps the number of rows."""
        assert len(api.list(Parent, limit=1)) == 1

    def test_list_returns_copies(self, api, populated):
        """Changing a listed entity leaves the cache alone."""
        entity = api.list(Child)[0]
        entity.age = 99
        assert populated.row("Child", C1).age == 3

    def test_list_with_conditions(self, api, populated):
        """ConditionalAPI.list filters by its conditions."""
        rows = api.where(Parent(), Condition(field="count", function=">", value=2)).list(Parent)
        assert [p.uuid for p in rows] == [P2]

    def test_list_with_predicate(self, api, populated):
        """where_cache filters by the predicate."""
        rows = api.where_cache(lambda p: p.name == "p", model=Parent).list(Parent)
        assert [p.uuid for p in rows] == [P1]

    def test_list_other_table(self, api, populated):
        """Listing a different table than the conditions target fails."""
        with pytest.raises(WrongType):
            api.where(Parent(name="p")).list(Child)

    def test_list_unregistered(self, api):
        """Unregistered types are rejected."""
        with pytest.raises(ModelNotRegistered):
            api.list(dict)

    def test_get_by_index(self, api, populated):
        """get fills the model from the row matching its index."""
        parent = api.get(Parent(name="q"))
        assert parent.uuid == P2
        assert parent.count == 5

    def test_get_by_uuid(self, api, populated):
        """get prefers the uuid."""
        assert api.get(Child(uuid=C1)).name == "c"

    def test_get_missing(self, api, populated):
        """get raises NotFound when nothing matches."""
        with pytest.raises(NotFound):
            api.get(Parent(name="nobody"))

    def test_get_ignores_non_index_fields(self, api, populated):
        """Fields outside every index never select a row."""
        with pytest.raises(NotFound):
            api.get(Parent(count=5))
        with pytest.raises(NotFound):
            api.get(Child(name="c"))


class TestCreate:
    """Tests for API.create()."""

    def test_placeholder(self, api):
        """A non-uuid _uuid becomes the uuid-name."""
        op = api.create(Parent(uuid="new_parent", name="p"))[0]
        assert op.to_dict() == {
            "op": "insert",
            "table": "Parent",
            "row": {"name": "p"},
            "uuid-name": "new_parent",
        }

    def test_real_uuid(self, api):
        """A real _uuid is sent as the insert's uuid."""
        op = api.create(Child(uuid=C1, name="c"))[0]
        assert op.uuid == C1
        assert op.uuid_name is None

    def test_references_to_placeholders(self, api):
        """Placeholder references encode as named-uuid."""
        ops = api.create(Child(uuid="kid", name="c"), Parent(name="p", children=["kid"]))
        assert len(ops) == 2
        assert ops[1].row["children"] == ["named-uuid", "kid"]

    def test_not_a_model(self, api):
        """Only registered dataclass instances can be created."""
        with pytest.raises(WrongType):
            api.create({"name": "p"})


class TestConditionalOperations:
    """Tests for update, mutate and delete."""

    def test_update_by_index(self, api, populated):
        """Without conditions the model's index selects the row."""
        ops = api.where(Parent(name="p")).update(Parent(name="p", count=3))
        assert [op.to_dict() for op in ops] == [
            {
                "op": "update",
                "table": "Parent",
                "row": {"name": "p", "count": 3},
                "where": [["name", "==", "p"]],
            }
        ]

    def test_update_fields(self, api, populated):
        """Selected fields restrict the row."""
        ops = api.where(Parent(uuid=P1)).update(Parent(name="p", count=0), "count")
        assert ops[0].row == {"count": 0}
        assert ops[0].where == [["_uuid", "==", ["uuid", P1]]]

    def test_update_immutable(self, api, populated):
        """Selecting an immutable field fails."""
        with pytest.raises(SchemaViolation):
            api.where(Parent(uuid=P1)).update(Parent(created="x"), "created")

    def test_update_wrong_table(self, api, populated):
        """The model must belong to the conditions' table."""
        with pytest.raises(WrongType):
            api.where(Parent(uuid=P1)).update(Child(name="c"))

    def test_where_any_of(self, api):
        """where() emits one operation per condition."""
        ops = api.where(
            Parent(),
            Condition(field="count", function="<", value=3),
            Condition(field="name", function="==", value="x"),
        ).delete()
        assert [op.where for op in ops] == [[["count", "<", 3]], [["name", "==", "x"]]]

    def test_where_all_of(self, api):
        """where_all() emits one operation with every condition."""
        ops = api.where_all(
            Parent(),
            Condition(field="count", function="<", value=3),
            Condition(field="name", function="==", value="x"),
        ).delete()
        assert len(ops) == 1
        assert ops[0].to_dict() == {
            "op": "delete",
            "table": "Parent",
            "where": [["count", "<", 3], ["name", "==", "x"]],
        }

    def test_where_cache_mutate(self, api, populated):
        """A predicate selects rows by uuid and every mutation is carried."""
        ops = api.where_cache(lambda p: p.name == "p", model=Parent).mutate(
            Parent(),
            Mutation(field="extras", mutator="insert", value={"role": "x"}),
        )
        assert len(ops) == 1
        assert ops[0].to_dict() == {
            "op": "mutate",
            "table": "Parent",
            "mutations": [["extras", "insert", ["map", [["role", "x"]]]]],
            "where": [["_uuid", "==", ["uuid", P1]]],
        }

    def test_annotated_predicate(self, api, populated):
        """The table is inferred from the predicate's annotation."""

        def adults(child: Child) -> bool:
            return child.age >= 3

        ops = api.where_cache(adults).delete()
        assert [op.where for op in ops] == [[["_uuid", "==", ["uuid", C1]]]]

    def test_mutate_by_field_ref(self, api, populated):
        """Fields may be named by reference."""
        proto = Parent(uuid=P2)
        ops = api.where(proto).mutate(proto, Mutation(field=ref(proto).count, mutator="+=", value=1))
        assert ops[0].mutations == [["count", "+=", 1]]

    def test_mutate_foreign_field_ref(self, api, populated):
        """A reference to another instance's field is rejected."""
        other = Parent()
        with pytest.raises(InvalidFieldReference):
            api.where(Parent(uuid=P2)).mutate(
                Parent(), Mutation(field=ref(other).count, mutator="+=", value=1)
            )

    def test_mutate_needs_mutations(self, api, populated):
        """At least one mutation is required."""
        with pytest.raises(InvalidMutation):
            api.where(Parent(uuid=P1)).mutate(Parent())

    def test_invalid_mutation(self, api, populated):
        """Illegal mutations are rejected."""
        with pytest.raises(InvalidMutation):
            api.where(Parent(uuid=P1)).mutate(
                Parent(), Mutation(field="extras", mutator="+=", value=1)
            )


class TestDeferredErrors:
    """Construction errors surface on first use."""

    def test_wrong_model(self, api):
        """where() on a non-model defers WrongType."""
        conditional = api.where({"name": "p"})
        with pytest.raises(WrongType):
            conditional.delete()

    def test_bad_condition_field(self, api):
        """Unknown condition fields defer InvalidFieldReference."""
        conditional = api.where(Parent(), Condition(field="nickname", function="==", value="x"))
        with pytest.raises(InvalidFieldReference):
            conditional.delete()

    def test_no_index(self, api):
        """A model without a populated index fails on generate."""
        with pytest.raises(IndexUnavailable):
            api.where(Parent(count=3)).delete()

    def test_unannotated_predicate(self, api):
        """Lambdas need model=."""
        conditional = api.where_cache(lambda p: True)
        with pytest.raises(WrongType):
            conditional.delete()


class TestReentrancy:
    """Predicates must not call back into the SDK."""

    def test_predicate_calling_list(self, api, populated):
        """Calling list from a predicate raises ReentrantAccess."""
        inner = API(populated)
        conditional = api.where_cache(lambda p: bool(inner.list(Parent)), model=Parent)
        with pytest.raises(ReentrantAccess):
            conditional.delete()

        # The cache stays usable afterwards
        assert len(api.list(Parent)) == 2

    def test_predicate_sees_live_rows(self, api, populated):
        """Predicates receive the cached entities themselves."""
        seen = []
        api.where_cache(lambda c: seen.append(c) or False, model=Child).delete()
        assert seen[0] is populated.row("Child", C1)
