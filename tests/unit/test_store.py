"""
test_store.py - Unit tests for InMemoryStore

Tests:
- Reads and writes are copies
- Filtered, ordered and paged queries
- atomic() rollback and nesting
- require / paginated_get helpers
"""

import pytest

from poolledger import InMemoryStore, InvestorPosition, MissingEntity, Pool, paginated_get, require

from tests.fakes import at


def _lot(lot_id, ts, quantity=10, account="a", tranche="t"):
    return InvestorPosition(
        id=lot_id, account_id=account, pool_id="1", tranche_id=tranche,
        hash="0x", timestamp=ts, quantity=quantity, price=1,
    )


class TestCopies:
    """Persisted state cannot be aliased by callers."""

    def test_mutating_read_does_not_persist(self, store):
        store.save(Pool(id="p"))
        pool = store.get(Pool, "p")
        pool.sum_debt = 100
        assert store.get(Pool, "p").sum_debt == 0

    def test_mutating_after_save_does_not_persist(self, store):
        pool = Pool(id="p")
        store.save(pool)
        pool.sum_debt = 100
        assert store.get(Pool, "p").sum_debt == 0

    def test_missing_returns_none(self, store):
        assert store.get(Pool, "nope") is None

    def test_save_requires_id(self, store):
        with pytest.raises(ValueError):
            store.save(Pool(id=""))


class TestQueries:

    def test_equality_filters(self, store):
        store.save(_lot("1", at(), account="a"))
        store.save(_lot("2", at(), account="b"))
        found = store.get_by_fields(InvestorPosition, [("account_id", "=", "a")])
        assert [lot.id for lot in found] == ["1"]

    def test_comparison_and_in(self, store):
        for i in range(5):
            store.save(_lot(str(i), at(), quantity=i))
        big = store.get_by_fields(InvestorPosition, [("quantity", ">=", 3)], order_by=("id",))
        assert [lot.id for lot in big] == ["3", "4"]
        some = store.get_by_fields(InvestorPosition, [("id", "in", ("0", "4"))], order_by=("id",))
        assert [lot.id for lot in some] == ["0", "4"]

    def test_none_fails_ordering_filters(self, store):
        store.save(Pool(id="p", created_at_block=None))
        assert store.get_by_fields(Pool, [("created_at_block", ">", 0)]) == []

    def test_unknown_operator(self, store):
        store.save(Pool(id="p"))
        with pytest.raises(ValueError):
            store.get_by_fields(Pool, [("id", "~", "p")])

    def test_order_by_timestamp_then_id(self, store):
        store.save(_lot("b", at(hours=1)))
        store.save(_lot("c", at()))
        store.save(_lot("a", at(hours=1)))
        ordered = store.get_by_fields(InvestorPosition, [], order_by=("timestamp", "id"))
        assert [lot.id for lot in ordered] == ["c", "a", "b"]

    def test_paging(self, store):
        for i in range(5):
            store.save(_lot(f"{i}", at(seconds=i)))
        page = store.get_by_fields(InvestorPosition, [], limit=2, offset=2, order_by=("timestamp",))
        assert [lot.id for lot in page] == ["2", "3"]

    def test_remove(self, store):
        store.save(Pool(id="p"))
        store.remove(Pool, "p")
        store.remove(Pool, "p")
        assert store.count(Pool) == 0


class TestAtomic:
    """All-or-nothing application of a block of writes."""

    def test_commit(self, store):
        with store.atomic():
            store.save(Pool(id="p"))
        assert store.get(Pool, "p") is not None

    def test_rollback_on_error(self, store):
        store.save(Pool(id="p", sum_debt=1))
        with pytest.raises(RuntimeError):
            with store.atomic():
                pool = store.get(Pool, "p")
                pool.sum_debt = 99
                store.save(pool)
                store.save(Pool(id="q"))
                raise RuntimeError("boom")
        assert store.get(Pool, "p").sum_debt == 1
        assert store.get(Pool, "q") is None

    def test_nested_blocks_join_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.atomic():
                store.save(Pool(id="outer"))
                with store.atomic():
                    store.save(Pool(id="inner"))
                raise RuntimeError("boom")
        assert store.count(Pool) == 0

    def test_clone_is_independent(self, store):
        store.save(Pool(id="p"))
        cloned = store.clone()
        cloned.remove(Pool, "p")
        assert store.get(Pool, "p") is not None


class TestHelpers:

    def test_require_raises_missing_entity(self, store):
        with pytest.raises(MissingEntity) as exc:
            require(store, Pool, "nope")
        assert exc.value.entity_type == "Pool"
        assert exc.value.entity_id == "nope"

    def test_paginated_get_reads_everything(self, store):
        for i in range(7):
            store.save(_lot(f"{i:02d}", at(seconds=i)))
        ids = [lot.id for lot in paginated_get(store, InvestorPosition, [], page_size=3)]
        assert ids == [f"{i:02d}" for i in range(7)]

    def test_paginated_get_exact_multiple(self, store):
        for i in range(6):
            store.save(_lot(f"{i}", at(seconds=i)))
        assert len(list(paginated_get(store, InvestorPosition, [], page_size=3))) == 6

    def test_store_satisfies_protocol(self, store):
        from poolledger import Store
        assert isinstance(store, Store)
        assert isinstance(InMemoryStore(), Store)
