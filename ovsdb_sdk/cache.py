"""
Table cache for the OVSDB SDK.

The cache is the client's in-memory replica of monitored tables:
- RowCache: Rows of one table, indexed by uuid and by every unique index
- ReferenceGraph: Who references whom, across tables
- TableCache: All RowCaches plus the update pipeline
- EventProcessor: Bounded queue of add/update/delete events and handlers

apply_updates() runs one notification batch in phases under the exclusive
lock, against a staged view of the cache:

    1. Translate every row delta into a RowChange (old must agree with the
       held row, else CacheInconsistent)
    2. Maintain a copy of the reference graph as changes are recorded
    3. Check that newly added strong references resolve
    4. Mark/sweep garbage collection from the root tables
    5. Remove dangling weak references, then check minimum cardinality
    6. Check unique indexes (IndexClash)
    7. Commit rows, indexes and graph, then enqueue events in table order

Nothing is visible to readers until phase 7, so a failing batch leaves the
cache untouched.

Invariants:
    - A non-root row is cached only while reachable by strong references
      from a root row
    - No cached weak reference points to a missing row
    - No two cached rows share the values of a unique index
    - Committed entities are never modified in place

How to change safely:
    - Keep every check before commit; commit itself must not raise
    - Readers must never take the shared lock twice in one thread, a
      waiting writer would deadlock them
"""

from __future__ import annotations

import copy
import logging
import queue
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Protocol, cast

from .errors import (
    ConstraintViolation,
    IndexClash,
    ReentrantAccess,
    ReferentialIntegrityViolation,
    UnknownTable,
)
from .mapper import Mapper
from .model import DatabaseModel, Metadata
from .schema import ColumnSchema
from .updates import (
    KIND_DELETE,
    KIND_INSERT,
    KIND_UPDATE,
    RowChange,
    merge,
    model_difference,
    translate_row_update,
)

logger = logging.getLogger(__name__)

EVENT_ADD = "add"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"

DEFAULT_EVENT_BUFFER_SIZE = 65536

# (to_table, from_table, from_column, value_side)
RefKey = tuple[str, str, str, bool]


class RWLock:
    """Reader/writer lock; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Event:
    """A cache change delivered to handlers.

    Attributes:
        kind: add, update or delete
        table: Table name
        old: Pre-image (update, delete)
        new: Post-image (add, update)
        diff: Column -> differential change (update)
    """

    kind: str
    table: str
    old: Any = None
    new: Any = None
    diff: dict[str, Any] | None = None


class EventHandler(Protocol):
    def on_add(self, table: str, model: Any) -> None: ...

    def on_update(self, table: str, old: Any, new: Any) -> None: ...

    def on_delete(self, table: str, model: Any) -> None: ...


@dataclass
class EventHandlerFuncs:
    """EventHandler built from optional callables."""

    add_func: Callable[[str, Any], None] | None = None
    update_func: Callable[[str, Any, Any], None] | None = None
    delete_func: Callable[[str, Any], None] | None = None

    def on_add(self, table: str, model: Any) -> None:
        if self.add_func is not None:
            self.add_func(table, model)

    def on_update(self, table: str, old: Any, new: Any) -> None:
        if self.update_func is not None:
            self.update_func(table, old, new)

    def on_delete(self, table: str, model: Any) -> None:
        if self.delete_func is not None:
            self.delete_func(table, model)


class EventProcessor:
    """Bounded single-producer, single-consumer event queue.

    The producer never blocks: when the queue is full the event is dropped
    and one warning is logged for it.
    """

    def __init__(self, capacity: int = DEFAULT_EVENT_BUFFER_SIZE) -> None:
        self._events: queue.Queue[Event] = queue.Queue(maxsize=capacity)
        self._handlers: list[EventHandler] = []
        self._handlers_lock = threading.Lock()
        self._dropped = 0
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def dropped(self) -> int:
        """Number of events dropped because the queue was full."""
        return self._dropped

    def pending(self) -> int:
        return self._events.qsize()

    def add_handler(self, handler: EventHandler) -> None:
        with self._handlers_lock:
            self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        with self._handlers_lock:
            self._handlers = [h for h in self._handlers if h is not handler]

    def add_event(
        self,
        kind: str,
        table: str,
        old: Any = None,
        new: Any = None,
        diff: dict[str, Any] | None = None,
    ) -> bool:
        """Enqueue an event; returns False if it was dropped."""
        event = Event(kind=kind, table=table, old=old, new=new, diff=diff)
        try:
            self._events.put_nowait(event)
        except queue.Full:
            self._dropped += 1
            logger.warning(
                "dropping event because event buffer is full",
                extra={"event_kind": kind, "table": table},
            )
            return False
        return True

    def dispatch(self, event: Event) -> None:
        """Deliver one event to every handler in registration order."""
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                if event.kind == EVENT_ADD:
                    handler.on_add(event.table, event.new)
                elif event.kind == EVENT_UPDATE:
                    handler.on_update(event.table, event.old, event.new)
                elif event.kind == EVENT_DELETE:
                    handler.on_delete(event.table, event.old)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"event_kind": event.kind, "table": event.table},
                )

    def process_pending(self) -> int:
        """Dispatch every queued event in the calling thread."""
        count = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return count
            self.dispatch(event)
            count += 1

    def run(self, stop: threading.Event, poll_interval: float = 0.1) -> None:
        """Dispatch events until stop is set."""
        while not stop.is_set():
            try:
                event = self._events.get(timeout=poll_interval)
            except queue.Empty:
                continue
            self.dispatch(event)

    def start(self) -> None:
        """Run the dispatcher on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run, args=(self._stop,), name="ovsdb-event-dispatcher", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


# ---------------------------------------------------------------------------
# Reference graph
# ---------------------------------------------------------------------------


class ReferenceGraph:
    """Edges keyed by (to_table, from_table, from_column, value_side).

    Each key maps a referenced uuid to the uuids of the rows referring to
    it. The graph holds identifiers only, never entities.
    """

    def __init__(self) -> None:
        self._refs: dict[RefKey, dict[str, list[str]]] = {}

    def copy(self) -> ReferenceGraph:
        graph = ReferenceGraph()
        graph._refs = {
            key: {to: list(froms) for to, froms in targets.items()}
            for key, targets in self._refs.items()
        }
        return graph

    def add(self, key: RefKey, to_uuid: str, from_uuid: str) -> None:
        froms = self._refs.setdefault(key, {}).setdefault(to_uuid, [])
        if from_uuid not in froms:
            froms.append(from_uuid)

    def remove(self, key: RefKey, to_uuid: str, from_uuid: str) -> None:
        targets = self._refs.get(key)
        if targets is None:
            return
        froms = targets.get(to_uuid)
        if froms is None:
            return
        if from_uuid in froms:
            froms.remove(from_uuid)
        if not froms:
            del targets[to_uuid]
        if not targets:
            del self._refs[key]

    def get(self, key: RefKey) -> dict[str, list[str]]:
        return {to: list(froms) for to, froms in self._refs.get(key, {}).items()}

    def keys(self) -> list[RefKey]:
        return list(self._refs)

    def referrers(self, to_table: str, to_uuid: str) -> list[tuple[RefKey, str]]:
        """Every (key, from_uuid) pointing at to_uuid of to_table."""
        result = []
        for key, targets in self._refs.items():
            if key[0] != to_table:
                continue
            for from_uuid in targets.get(to_uuid, []):
                result.append((key, from_uuid))
        return result

    def __len__(self) -> int:
        return sum(len(froms) for targets in self._refs.values() for froms in targets.values())


@dataclass(frozen=True)
class _RefColumn:
    column: str
    attr: str
    value_side: bool
    to_table: str
    strong: bool
    schema: ColumnSchema

    def key(self, from_table: str) -> RefKey:
        return (self.to_table, from_table, self.column, self.value_side)

    def targets(self, entity: Any) -> list[str]:
        if entity is None:
            return []
        value = getattr(entity, self.attr)
        if value is None:
            return []
        if self.schema.is_map:
            values = list(value.values()) if self.value_side else list(value)
        elif self.schema.is_set:
            values = list(value)
        else:
            values = [value]
        return [v for v in values if isinstance(v, str) and v]


def _ref_columns(metadata: Metadata) -> list[_RefColumn]:
    result = []
    for column, attr in metadata.fields.items():
        column_schema = metadata.table_schema.columns[column]
        for base, value_side in column_schema.references():
            result.append(
                _RefColumn(
                    column=column,
                    attr=attr,
                    value_side=value_side,
                    to_table=cast(str, base.ref_table),
                    strong=base.is_strong,
                    schema=column_schema,
                )
            )
    return result


def _hashable(value: Any) -> Any:
    if isinstance(value, dict):
        return frozenset(value.items())
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(value)
    return value


# ---------------------------------------------------------------------------
# Row storage
# ---------------------------------------------------------------------------


class RowCache:
    """Rows of one table, by uuid and by every usable unique index."""

    def __init__(self, name: str, metadata: Metadata) -> None:
        self.name = name
        self.metadata = metadata
        self._rows: dict[str, Any] = {}
        self._indexes: dict[tuple[str, ...], dict[Any, str]] = {
            idx: {} for idx in metadata.usable_indexes
        }
        self._lock = threading.RLock()

    @property
    def indexes(self) -> list[tuple[str, ...]]:
        return list(self._indexes)

    def index_key(self, index: tuple[str, ...], entity: Any) -> tuple[Any, ...]:
        return tuple(
            _hashable(getattr(entity, self.metadata.fields[col])) for col in index
        )

    def row(self, uuid: str) -> Any:
        """The cached entity for uuid, or None."""
        with self._lock:
            return self._rows.get(uuid)

    def row_by_index(self, index: tuple[str, ...] | list[str], values: tuple[Any, ...] | list[Any]) -> Any:
        """The cached entity whose index columns equal values, or None.

        An index the entity cannot populate is never maintained and always
        yields None.
        """
        index = tuple(index)
        with self._lock:
            mapping = self._indexes.get(index)
            if mapping is None:
                return None
            uuid = mapping.get(tuple(_hashable(v) for v in values))
            return self._rows.get(uuid) if uuid is not None else None

    def rows(self) -> list[str]:
        """Snapshot of the cached uuids."""
        with self._lock:
            return list(self._rows)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


# ---------------------------------------------------------------------------
# Update batch staging
# ---------------------------------------------------------------------------


class _Batch:
    """Staged view of the cache while one batch is validated."""

    def __init__(self, cache: TableCache, tables: dict[str, RowCache], graph: ReferenceGraph) -> None:
        self.cache = cache
        self.tables = tables
        self.graph = graph
        self.changes: dict[tuple[str, str], RowChange] = {}
        self.collectable = cache._collectable_tables()
        self.gc_needed = False

    def current(self, table: str, uuid: str) -> Any:
        change = self.changes.get((table, uuid))
        if change is not None:
            return change.new
        rows = self.tables.get(table)
        return rows._rows.get(uuid) if rows is not None else None

    def uuids(self, table: str) -> list[str]:
        rows = self.tables.get(table)
        result = list(rows._rows) if rows is not None else []
        seen = set(result)
        for (t, u) in self.changes:
            if t == table and u not in seen:
                result.append(u)
                seen.add(u)
        return [u for u in result if self.current(table, u) is not None]

    def record(self, change: RowChange) -> None:
        key = (change.table, change.uuid)
        prior = self.current(change.table, change.uuid)
        collectable = self.collectable
        for ref in self.cache._refs_by_table.get(change.table, []):
            before = set(ref.targets(prior))
            after = set(ref.targets(change.new))
            for to in before - after:
                self.graph.remove(ref.key(change.table), to, change.uuid)
                if ref.strong and ref.to_table in collectable:
                    self.gc_needed = True
            for to in after - before:
                self.graph.add(ref.key(change.table), to, change.uuid)
        if change.kind == KIND_INSERT and change.table in collectable:
            self.gc_needed = True

        metadata = self.cache._db_model.metadata_for_table(change.table)
        merged = merge(metadata, self.changes.pop(key, None), change)
        if merged is not None:
            self.changes[key] = merged


class TableCache:
    """In-memory replica of the monitored tables.

    Example:
        >>> cache = TableCache(db_model)
        >>> cache.apply_updates({"Bridge": {uuid: {"new": {"name": "br0"}}}})
        >>> cache.table("Bridge").row(uuid).name
        'br0'
    """

    def __init__(self, db_model: DatabaseModel, event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE) -> None:
        self._db_model = db_model
        self._mapper = Mapper(db_model.schema)
        self._lock = RWLock()
        self._local = threading.local()
        self._tables: dict[str, RowCache] = self._empty_tables()
        self._graph = ReferenceGraph()
        self._refs_by_table = {
            table: _ref_columns(db_model.metadata_for_table(table)) for table in db_model.tables()
        }
        self._monitored: set[str] = set()
        self.event_processor = EventProcessor(event_buffer_size)

    def _empty_tables(self) -> dict[str, RowCache]:
        return {
            table: RowCache(table, self._db_model.metadata_for_table(table))
            for table in self._db_model.tables()
        }

    @property
    def db_model(self) -> DatabaseModel:
        return self._db_model

    @property
    def mapper(self) -> Mapper:
        return self._mapper

    # -- reading ------------------------------------------------------------

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold the shared lock for a multi-step read.

        Raises:
            ReentrantAccess: If called from inside a cache predicate
        """
        if getattr(self._local, "in_predicate", False):
            raise ReentrantAccess("cache predicates must not call back into the SDK")
        with self._lock.read():
            yield

    @contextmanager
    def predicate_scope(self) -> Iterator[None]:
        """Mark the calling thread as running a caller-supplied predicate."""
        self._local.in_predicate = True
        try:
            yield
        finally:
            self._local.in_predicate = False

    def check_reentrancy(self) -> None:
        if getattr(self._local, "in_predicate", False):
            raise ReentrantAccess("cache predicates must not call back into the SDK")

    def tables(self) -> list[str]:
        return list(self._tables)

    def table(self, name: str) -> RowCache | None:
        """The RowCache of a table; callers hold read() around multi-step use."""
        return self._tables.get(name)

    def row(self, table: str, uuid: str) -> Any:
        with self.read():
            rows = self._tables.get(table)
            if rows is None:
                raise UnknownTable(table, f"Table '{table}' is not cached")
            return rows.row(uuid)

    def row_by_index(self, table: str, index: tuple[str, ...] | list[str], values: tuple[Any, ...] | list[Any]) -> Any:
        with self.read():
            rows = self._tables.get(table)
            if rows is None:
                raise UnknownTable(table, f"Table '{table}' is not cached")
            return rows.row_by_index(index, values)

    def rows(self, table: str) -> list[str]:
        with self.read():
            rows = self._tables.get(table)
            if rows is None:
                raise UnknownTable(table, f"Table '{table}' is not cached")
            return rows.rows()

    def references(self) -> ReferenceGraph:
        """Copy of the reference graph."""
        with self.read():
            return self._graph.copy()

    # -- events -------------------------------------------------------------

    def add_event_handler(self, handler: EventHandler) -> None:
        self.event_processor.add_handler(handler)

    def run(self, stop: threading.Event) -> None:
        self.event_processor.run(stop)

    # -- writing ------------------------------------------------------------

    def mark_monitored(self, tables: list[str] | set[str]) -> None:
        """Record tables whose full contents are replicated."""
        with self._lock.write():
            self._monitored.update(t for t in tables if t in self._tables)

    def monitored(self) -> set[str]:
        return set(self._monitored)

    def _collectable_tables(self) -> set[str]:
        """Non-root monitored tables whose every strong referrer is visible."""
        schema = self._db_model.schema
        result = set()
        for table in self._monitored:
            if schema.is_root(table):
                continue
            visible = True
            for from_table, table_schema in schema.tables.items():
                for column_schema in table_schema.columns.values():
                    for base, _ in column_schema.references():
                        if base.ref_table != table or not base.is_strong:
                            continue
                        if from_table not in self._monitored:
                            visible = False
                            continue
                        metadata = self._db_model.metadata_for_table(from_table)
                        if column_schema.name not in metadata.fields:
                            visible = False
            if visible:
                result.add(table)
        return result

    def apply_updates(self, updates: dict[str, dict[str, dict[str, Any]]]) -> None:
        """Atomically apply one notification batch of either dialect.

        Args:
            updates: {table: {uuid: row update}}

        Raises:
            CacheInconsistent: If a delta disagrees with the cached state
            ReferentialIntegrityViolation: If a strong reference dangles
            ConstraintViolation: If weak cleanup empties a required column
            IndexClash: If two rows would share a unique index value
        """
        with self._lock.write():
            self._monitored.update(t for t in updates if t in self._tables)
            batch = _Batch(self, self._tables, self._graph.copy())
            plans = self._stage(batch, updates)
            self._commit(batch, plans)
            for change in self._ordered_changes(batch):
                self._emit(change)

    def replace(self, updates: dict[str, dict[str, dict[str, Any]]]) -> None:
        """Rebuild the cache from a full snapshot, emitting only the differences."""
        with self._lock.write():
            self._monitored.update(t for t in updates if t in self._tables)
            fresh = self._empty_tables()
            batch = _Batch(self, fresh, ReferenceGraph())
            plans = self._stage(batch, updates)
            self._commit(batch, plans)
            previous = self._tables
            self._tables = fresh
            self._graph = batch.graph
            for table in self._db_model.tables():
                old_rows = previous[table]._rows
                new_rows = fresh[table]._rows
                metadata = self._db_model.metadata_for_table(table)
                for uuid, old in old_rows.items():
                    if uuid not in new_rows:
                        self.event_processor.add_event(EVENT_DELETE, table, old=old)
                for uuid, new in new_rows.items():
                    old = old_rows.get(uuid)
                    if old is None:
                        self.event_processor.add_event(EVENT_ADD, table, new=new)
                        continue
                    diff = model_difference(metadata, old, new)
                    if diff:
                        self.event_processor.add_event(EVENT_UPDATE, table, old=old, new=new, diff=diff)
            logger.info(
                "Cache rebuilt from snapshot",
                extra={"rows": sum(len(rows) for rows in fresh.values())},
            )

    def purge(self) -> None:
        """Drop every row without emitting events."""
        with self._lock.write():
            self._tables = self._empty_tables()
            self._graph = ReferenceGraph()

    # -- pipeline -----------------------------------------------------------

    def _stage(self, batch: _Batch, updates: dict[str, dict[str, dict[str, Any]]]) -> dict:
        for table, rows in updates.items():
            if table not in self._tables:
                logger.debug("Ignoring update for unmodeled table", extra={"table": table})
                continue
            for uuid, row_update in rows.items():
                change = translate_row_update(
                    self._db_model,
                    self._mapper,
                    table,
                    uuid,
                    row_update,
                    batch.current(table, uuid),
                )
                if change is not None:
                    batch.record(change)

        self._check_strong_references(batch)
        if batch.gc_needed:
            self._collect_garbage(batch)
        self._clean_weak_references(batch)
        self._check_deleted_referents(batch)
        return self._plan_indexes(batch)

    def _check_strong_references(self, batch: _Batch) -> None:
        for (table, uuid), change in list(batch.changes.items()):
            if change.new is None:
                continue
            for ref in self._refs_by_table.get(table, []):
                if not ref.strong or ref.to_table not in self._monitored:
                    continue
                added = set(ref.targets(change.new)) - set(ref.targets(change.old))
                for to in added:
                    if batch.current(ref.to_table, to) is None:
                        raise ReferentialIntegrityViolation(
                            f"Row {uuid} of '{table}' column '{ref.column}' references "
                            f"missing row {to} of '{ref.to_table}'"
                        )

    def _check_deleted_referents(self, batch: _Batch) -> None:
        for (table, uuid), change in batch.changes.items():
            if change.kind != KIND_DELETE:
                continue
            for key, from_uuid in batch.graph.referrers(table, uuid):
                _, from_table, column, value_side = key
                if batch.current(from_table, from_uuid) is None:
                    continue
                for ref in self._refs_by_table.get(from_table, []):
                    if ref.column == column and ref.value_side == value_side and ref.strong:
                        raise ReferentialIntegrityViolation(
                            f"Row {uuid} of '{table}' was deleted but is still referenced "
                            f"by row {from_uuid} of '{from_table}' column '{column}'"
                        )

    def _collect_garbage(self, batch: _Batch) -> None:
        collectable = batch.collectable
        if not collectable:
            return
        marked: set[tuple[str, str]] = set()
        stack = [
            (table, uuid)
            for table in self._monitored
            if table not in collectable
            for uuid in batch.uuids(table)
        ]
        while stack:
            node = stack.pop()
            if node in marked:
                continue
            marked.add(node)
            table, uuid = node
            entity = batch.current(table, uuid)
            for ref in self._refs_by_table.get(table, []):
                if not ref.strong or ref.to_table not in collectable:
                    continue
                for to in ref.targets(entity):
                    target = (ref.to_table, to)
                    if target not in marked and batch.current(ref.to_table, to) is not None:
                        stack.append(target)

        for table in sorted(collectable):
            for uuid in batch.uuids(table):
                if (table, uuid) in marked:
                    continue
                logger.debug(
                    "Collecting unreferenced row", extra={"table": table, "uuid": uuid}
                )
                batch.record(RowChange(table=table, uuid=uuid, old=batch.current(table, uuid)))

    def _clean_weak_references(self, batch: _Batch) -> None:
        dangling: dict[tuple[str, str], set[tuple[str, bool, str]]] = {}
        for key in batch.graph.keys():
            to_table, from_table, column, value_side = key
            if to_table not in self._monitored:
                continue
            weak = any(
                ref.column == column and ref.value_side == value_side and not ref.strong
                for ref in self._refs_by_table.get(from_table, [])
            )
            if not weak:
                continue
            for to, froms in batch.graph.get(key).items():
                if batch.current(to_table, to) is not None:
                    continue
                for from_uuid in froms:
                    if batch.current(from_table, from_uuid) is None:
                        continue
                    dangling.setdefault((from_table, from_uuid), set()).add((column, value_side, to))

        for (table, uuid), targets in dangling.items():
            current = batch.current(table, uuid)
            metadata = self._db_model.metadata_for_table(table)
            new = copy.deepcopy(current)
            for column, value_side, to in targets:
                column_schema = metadata.table_schema.columns[column]
                attr = metadata.fields[column]
                value = getattr(new, attr)
                if column_schema.is_map:
                    if value_side:
                        value = {k: v for k, v in value.items() if v != to}
                    else:
                        value = {k: v for k, v in value.items() if k != to}
                    size = len(value)
                elif column_schema.is_set:
                    value = [v for v in value if v != to]
                    size = len(value)
                elif column_schema.is_optional:
                    value = None if value == to else value
                    size = 0 if value is None else 1
                else:
                    size = 0
                if size < column_schema.type.min:
                    raise ConstraintViolation(
                        f"Removing weak reference {to} from column '{column}' of row "
                        f"{uuid} in '{table}' leaves {size} values, "
                        f"minimum is {column_schema.type.min}"
                    )
                setattr(new, attr, value)
            diff = model_difference(metadata, current, new)
            if diff:
                logger.debug(
                    "Removing dangling weak references", extra={"table": table, "uuid": uuid}
                )
                batch.record(RowChange(table=table, uuid=uuid, old=current, new=new, modify=diff))

    def _plan_indexes(self, batch: _Batch) -> dict:
        plans: dict[str, dict[tuple[str, ...], tuple[set[Any], dict[Any, str]]]] = {}
        for (table, uuid), change in batch.changes.items():
            rows = batch.tables[table]
            table_plan = plans.setdefault(table, {idx: (set(), {}) for idx in rows.indexes})
            for idx, (removed, _) in table_plan.items():
                if change.old is not None and uuid in rows._rows:
                    removed.add(rows.index_key(idx, rows._rows[uuid]))

        for (table, uuid), change in batch.changes.items():
            if change.new is None:
                continue
            rows = batch.tables[table]
            for idx, (removed, added) in plans[table].items():
                key = rows.index_key(idx, change.new)
                holder = added.get(key)
                if holder is not None and holder != uuid:
                    raise IndexClash(table, idx, uuid, holder)
                existing = rows._indexes[idx].get(key)
                if existing is not None and existing != uuid and key not in removed:
                    raise IndexClash(table, idx, uuid, existing)
                added[key] = uuid
        return plans

    def _commit(self, batch: _Batch, plans: dict) -> None:
        for table, table_plan in plans.items():
            rows = batch.tables[table]
            with rows._lock:
                for idx, (removed, added) in table_plan.items():
                    mapping = rows._indexes[idx]
                    for key in removed:
                        mapping.pop(key, None)
                    mapping.update(added)
                for (t, uuid), change in batch.changes.items():
                    if t != table:
                        continue
                    if change.new is None:
                        rows._rows.pop(uuid, None)
                    else:
                        rows._rows[uuid] = change.new
        if batch.tables is self._tables:
            self._graph = batch.graph

    def _ordered_changes(self, batch: _Batch) -> list[RowChange]:
        order = {table: i for i, table in enumerate(self._db_model.tables())}
        indexed = list(enumerate(batch.changes.values()))
        indexed.sort(key=lambda item: (order.get(item[1].table, len(order)), item[0]))
        return [change for _, change in indexed]

    def _emit(self, change: RowChange) -> None:
        kind = change.kind
        if kind == KIND_INSERT:
            self.event_processor.add_event(EVENT_ADD, change.table, new=change.new)
        elif kind == KIND_UPDATE:
            self.event_processor.add_event(
                EVENT_UPDATE, change.table, old=change.old, new=change.new, diff=change.modify
            )
        elif kind == KIND_DELETE:
            self.event_processor.add_event(EVENT_DELETE, change.table, old=change.old)
