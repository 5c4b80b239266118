"""
test_positions.py - Unit tests for the FIFO lot ledger

Tests:
- calculate_fifo_sale: oldest-first matching, exact profit, oversell
- LotQueue: heap ordering and all-or-nothing sells
- Store adapters for investor and asset lots
"""

import pytest

from poolledger import (
    WAD, AssetPosition, InsufficientLots, InvestorPosition, Lot, LotQueue,
    buy, buy_asset, calculate_fifo_sale, sell_asset_fifo, sell_fifo,
)
from poolledger import positions

from tests.fakes import at, wad


class TestCalculateFifoSale:
    """Pure matching of a sale against lots."""

    def test_partial_sale_of_single_lot(self):
        """Buy 100 @ 2, sell 60 @ 3 -> profit 60, 40 left at price 2."""
        lots = [Lot("l1", 100, wad(2), at())]
        sale = calculate_fifo_sale(lots, 60, wad(3))
        assert sale.realized_profit == 60
        assert len(sale.fills) == 1
        assert sale.fills[0].remaining == 40
        assert sale.fills[0].lot.price == wad(2)

    def test_consumes_oldest_first_across_lots(self):
        lots = [Lot("l1", 10, wad(1), at()), Lot("l2", 10, wad(5), at(hours=1))]
        sale = calculate_fifo_sale(lots, 15, wad(3))
        # 10 * (3 - 1) + 5 * (3 - 5)
        assert sale.realized_profit == 20 - 10
        assert [f.consumed for f in sale.fills] == [10, 5]
        assert sale.fills[1].remaining == 5

    def test_round_trip_at_same_price_is_zero(self):
        sale = calculate_fifo_sale([Lot("l1", 100, wad(2), at())], 100, wad(2))
        assert sale.realized_profit == 0

    def test_profit_truncates_once(self):
        # Each fill alone would truncate to 0; together they make exactly 1.
        half = WAD // 2
        lots = [Lot("l1", 1, 0, at()), Lot("l2", 1, 0, at(hours=1))]
        sale = calculate_fifo_sale(lots, 2, half)
        assert sale.realized_profit == 1

    def test_loss_truncates_toward_zero(self):
        sale = calculate_fifo_sale([Lot("l1", 1, WAD, at())], 1, WAD // 2)
        assert sale.realized_profit == 0

    def test_oversell_raises(self):
        with pytest.raises(InsufficientLots) as exc:
            calculate_fifo_sale([Lot("l1", 5, WAD, at())], 6, WAD, owner="alice")
        assert exc.value.requested == 6
        assert exc.value.available == 5

    def test_zero_quantity_lots_skipped(self):
        lots = [Lot("l0", 0, wad(9), at()), Lot("l1", 5, wad(1), at(hours=1))]
        sale = calculate_fifo_sale(lots, 5, wad(1))
        assert [f.lot.id for f in sale.fills] == ["l1"]

    def test_stops_reading_once_covered(self):
        def lots():
            yield Lot("l1", 10, WAD, at())
            raise AssertionError("read past the covering lot")

        sale = calculate_fifo_sale(lots(), 10, WAD)
        assert sale.quantity == 10


class TestLotQueue:

    def test_orders_by_timestamp_then_id(self):
        queue = LotQueue([
            Lot("b", 1, WAD, at(hours=1)),
            Lot("z", 1, WAD, at()),
            Lot("a", 1, WAD, at(hours=1)),
        ])
        assert [lot.id for lot in queue] == ["z", "a", "b"]
        assert queue.peek().id == "z"

    def test_sell_updates_partially_consumed_lot(self):
        queue = LotQueue([Lot("old", 10, WAD, at()), Lot("new", 10, WAD, at(hours=1))])
        queue.sell(15, wad(2))
        assert len(queue) == 1
        assert queue.peek().id == "new"
        assert queue.peek().quantity == 5

    def test_oversell_leaves_queue_untouched(self):
        queue = LotQueue([Lot("only", 10, WAD, at())])
        with pytest.raises(InsufficientLots):
            queue.sell(11, WAD)
        assert queue.total_quantity == 10

    def test_push_ignores_empty_lots(self):
        queue = LotQueue()
        queue.push(Lot("empty", 0, WAD, at()))
        assert len(queue) == 0


class TestInvestorLots:
    """Lots of tranche tokens persisted per (account, tranche)."""

    def test_buy_then_sell(self, store):
        buy(store, "alice", "1", "senior", "0xa", at(), 100, wad(2))
        profit = sell_fifo(store, "alice", "senior", 60, wad(3))
        assert profit == 60
        lots = positions.open_lots(store, "alice", "senior")
        assert len(lots) == 1
        assert lots[0].quantity == 40

    def test_fully_consumed_lots_removed(self, store):
        buy(store, "alice", "1", "senior", "0xa", at(), 10, WAD)
        buy(store, "alice", "1", "senior", "0xb", at(hours=1), 10, WAD)
        sell_fifo(store, "alice", "senior", 10, WAD)
        remaining = positions.open_lots(store, "alice", "senior")
        assert [lot.hash for lot in remaining] == ["0xb"]

    def test_oversell_does_not_touch_lots(self, store):
        buy(store, "alice", "1", "senior", "0xa", at(), 10, WAD)
        with pytest.raises(InsufficientLots):
            sell_fifo(store, "alice", "senior", 11, WAD)
        assert positions.open_lots(store, "alice", "senior")[0].quantity == 10

    def test_lots_are_per_account_and_tranche(self, store):
        buy(store, "alice", "1", "senior", "0xa", at(), 10, WAD)
        buy(store, "bob", "1", "senior", "0xa", at(), 10, WAD)
        buy(store, "alice", "1", "junior", "0xa", at(), 10, WAD)
        sell_fifo(store, "alice", "senior", 10, WAD)
        assert store.count(InvestorPosition) == 2

    def test_zero_quantity_buy_is_noop(self, store):
        assert buy(store, "alice", "1", "senior", "0xa", at(), 0, WAD) is None
        assert store.count(InvestorPosition) == 0

    def test_negative_quantity_rejected(self, store):
        with pytest.raises(ValueError):
            buy(store, "alice", "1", "senior", "0xa", at(), -1, WAD)

    def test_same_hash_gets_distinct_ids(self, store):
        first = buy(store, "alice", "1", "senior", "0xa", at(), 1, WAD)
        second = buy(store, "alice", "1", "senior", "0xa", at(), 1, WAD)
        assert first.id != second.id
        assert store.count(InvestorPosition) == 2

    def test_sale_spans_storage_pages(self, store, monkeypatch):
        monkeypatch.setattr(positions, "LOT_PAGE_SIZE", 2)
        for i in range(5):
            buy(store, "alice", "1", "senior", f"0x{i}", at(seconds=i), 10, wad(1))
        profit = sell_fifo(store, "alice", "senior", 45, wad(2))
        assert profit == 45
        lots = positions.open_lots(store, "alice", "senior")
        assert [(lot.hash, lot.quantity) for lot in lots] == [("0x4", 5)]


class TestAssetLots:

    def test_buy_and_sell_asset(self, store):
        buy_asset(store, "1-7", "0xa", at(), 100, wad(2))
        profit = sell_asset_fifo(store, "1-7", 100, wad(1))
        assert profit == -100
        assert store.count(AssetPosition) == 0
