"""
store.py - In-Memory Entity Store

InMemoryStore is the reference implementation of the Store protocol and the
only place where persisted state lives in-process.

Key responsibilities:
    - Keeps one table per entity type, keyed by id
    - Hands out deep copies on read and takes deep copies on write, so callers
      can never alias persisted state
    - Answers filtered, ordered and paged queries (FIFO lots are read
      oldest-first straight from storage)
    - Provides atomic() for all-or-nothing application of one event
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence
import copy
import logging
import operator

from .core import FieldFilter, MissingEntity


logger = logging.getLogger(__name__)


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}


def _matches(entity: Any, filters: Sequence[FieldFilter]) -> bool:
    for field_name, op, expected in filters:
        try:
            compare = _OPERATORS[op]
        except KeyError:
            raise ValueError(f"unsupported filter operator {op!r}") from None
        actual = getattr(entity, field_name)
        if actual is None and op not in ("=", "!=", "in"):
            return False
        if not compare(actual, expected):
            return False
    return True


def _sort_key(order_by: Sequence[str]) -> Callable[[Any], tuple]:
    # None sorts first so that unset timestamps never jump the queue.
    def key(entity: Any) -> tuple:
        parts = []
        for name in order_by:
            value = getattr(entity, name)
            parts.append((value is not None, value))
        return tuple(parts)
    return key


class InMemoryStore:
    """
    Dictionary-backed entity store.

    Not thread-safe. The engine processes one event at a time per store.

    Example:
        store = InMemoryStore()
        store.save(Pool(id="pool-1"))
        pool = store.get(Pool, "pool-1")
        lots = store.get_by_fields(
            InvestorPosition,
            [("account_id", "=", "0xabc"), ("tranche_id", "=", "t1")],
            order_by=("timestamp", "id"),
        )
    """

    def __init__(self):
        self._tables: Dict[type, Dict[str, Any]] = defaultdict(dict)
        self._in_transaction = False

    # ========================================================================
    # Store PROTOCOL
    # ========================================================================

    def get(self, entity_type: type, entity_id: str) -> Optional[Any]:
        entity = self._tables[entity_type].get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    def save(self, entity: Any) -> None:
        entity_id = getattr(entity, "id", None)
        if not entity_id:
            raise ValueError(f"cannot save {type(entity).__name__} without an id")
        self._tables[type(entity)][entity_id] = copy.deepcopy(entity)

    def get_by_fields(
        self,
        entity_type: type,
        filters: Sequence[FieldFilter],
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: Sequence[str] = (),
    ) -> List[Any]:
        matches = [e for e in self._tables[entity_type].values() if _matches(e, filters)]
        if order_by:
            matches.sort(key=_sort_key(order_by))
        end = None if limit is None else offset + limit
        return [copy.deepcopy(e) for e in matches[offset:end]]

    def remove(self, entity_type: type, entity_id: str) -> None:
        self._tables[entity_type].pop(entity_id, None)

    # ========================================================================
    # EXTRAS
    # ========================================================================

    def count(self, entity_type: type) -> int:
        return len(self._tables[entity_type])

    def all(self, entity_type: type) -> List[Any]:
        """Every entity of a type, ordered by id."""
        return [copy.deepcopy(e) for _, e in sorted(self._tables[entity_type].items())]

    def clone(self) -> InMemoryStore:
        """Fully independent copy of this store."""
        cloned = InMemoryStore()
        cloned._tables = copy.deepcopy(self._tables)
        return cloned

    @contextmanager
    def atomic(self) -> Iterator[InMemoryStore]:
        """
        Apply every write inside the block or none of them.

        On an exception the tables are restored to their state at entry and
        the exception propagates. Nested blocks join the outer one.
        """
        if self._in_transaction:
            yield self
            return
        snapshot = copy.deepcopy(self._tables)
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._tables = snapshot
            logger.debug("rolled back store to pre-transaction state")
            raise
        finally:
            self._in_transaction = False


def require(store: Any, entity_type: type, entity_id: str) -> Any:
    """Fetch an entity that must exist; raises MissingEntity otherwise."""
    entity = store.get(entity_type, entity_id)
    if entity is None:
        raise MissingEntity(entity_type.__name__, entity_id)
    return entity


def paginated_get(
    store: Any,
    entity_type: type,
    filters: Sequence[FieldFilter],
    page_size: int = 100,
    order_by: Sequence[str] = ("id",),
) -> Iterator[Any]:
    """Iterate every match of a query, fetching `page_size` entities at a time."""
    offset = 0
    while True:
        page = store.get_by_fields(
            entity_type, filters, limit=page_size, offset=offset, order_by=order_by
        )
        yield from page
        if len(page) < page_size:
            return
        offset += page_size
