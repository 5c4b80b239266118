"""
positions.py - FIFO Lot Ledger for Cost Basis and Realized Profit

Tracks acquisitions as lots and matches disposals against them oldest-first.
Used for investor holdings of tranche tokens and for pool holdings of
externally priced assets.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES:
   - Lot: one acquisition (quantity at price, at time)
   - LotFill: how much of one lot a sale consumed
   - FifoSale: the full outcome of matching a sale

2. PURE CALCULATION:
   - calculate_fifo_sale(lots, quantity, price) -> FifoSale
     Walks lots in the order given, never touches storage.

3. IN-MEMORY QUEUE:
   - LotQueue keeps lots heap-ordered by (timestamp, id) with O(log n)
     pop-from-front, for callers that hold lots in memory.

4. STORE ADAPTERS:
   - buy / sell_fifo for InvestorPosition lots keyed by (account, tranche)
   - buy_asset / sell_asset_fifo for AssetPosition lots keyed by asset
   Lots are read oldest-first straight from storage, page by page, and only
   as many pages as the sale needs.

Key Formulas:
    consumed_i      = min(lot_i.quantity, remaining_to_sell)
    realized_profit = sum(consumed_i * (price - lot_i.price)) / WAD

The profit numerator is accumulated exactly and divided once at the end,
truncating toward zero. A sale larger than the open lots is an
InsufficientLots error and leaves every lot untouched.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
import heapq
import logging
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

from .core import WAD, FieldFilter, InsufficientLots, Store, div_trunc
from .entities import AssetPosition, InvestorPosition
from .store import paginated_get


logger = logging.getLogger(__name__)

# Page size used when reading lots oldest-first from storage.
LOT_PAGE_SIZE = 100


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Lot:
    id: str
    quantity: int
    price: int
    timestamp: datetime

    def __lt__(self, other: Lot) -> bool:
        return (self.timestamp, self.id) < (other.timestamp, other.id)


@dataclass(frozen=True, slots=True)
class LotFill:
    lot: Lot
    consumed: int

    @property
    def remaining(self) -> int:
        return self.lot.quantity - self.consumed


@dataclass(frozen=True, slots=True)
class FifoSale:
    quantity: int
    price: int
    realized_profit: int
    fills: Tuple[LotFill, ...]


# ============================================================================
# PURE CALCULATION
# ============================================================================

def calculate_fifo_sale(
    lots: Iterable[Lot],
    quantity: int,
    price: int,
    owner: str = "",
) -> FifoSale:
    """
    Match a sale of `quantity` at `price` against `lots`, consumed in the
    order given (callers pass them oldest-first).

    Stops reading `lots` as soon as the sale is covered. Raises
    InsufficientLots when the lots run out first.
    """
    if quantity < 0:
        raise ValueError(f"sale quantity must be non-negative, got {quantity}")
    remaining = quantity
    numerator = 0
    available = 0
    fills: List[LotFill] = []
    if remaining > 0:
        for lot in lots:
            if lot.quantity <= 0:
                continue
            available += lot.quantity
            consumed = min(lot.quantity, remaining)
            numerator += consumed * (price - lot.price)
            fills.append(LotFill(lot=lot, consumed=consumed))
            remaining -= consumed
            if remaining == 0:
                break
    if remaining > 0:
        raise InsufficientLots(owner, quantity, available)
    return FifoSale(
        quantity=quantity,
        price=price,
        realized_profit=div_trunc(numerator, WAD),
        fills=tuple(fills),
    )


# ============================================================================
# IN-MEMORY QUEUE
# ============================================================================

class LotQueue:
    """
    Lots ordered oldest-first.

    push/pop are O(log n). sell() is all-or-nothing: an oversell raises
    before any lot is consumed.
    """

    def __init__(self, lots: Iterable[Lot] = ()):
        self._heap: List[Lot] = [lot for lot in lots if lot.quantity > 0]
        heapq.heapify(self._heap)

    def __len__(self) -> int:
        return len(self._heap)

    def __iter__(self) -> Iterator[Lot]:
        return iter(sorted(self._heap))

    @property
    def total_quantity(self) -> int:
        return sum(lot.quantity for lot in self._heap)

    def push(self, lot: Lot) -> None:
        if lot.quantity > 0:
            heapq.heappush(self._heap, lot)

    def peek(self) -> Optional[Lot]:
        return self._heap[0] if self._heap else None

    def pop(self) -> Lot:
        return heapq.heappop(self._heap)

    def sell(self, quantity: int, price: int, owner: str = "") -> FifoSale:
        sale = calculate_fifo_sale(iter(self), quantity, price, owner)
        for fill in sale.fills:
            self.pop()
            if fill.remaining > 0:
                self.push(Lot(fill.lot.id, fill.remaining, fill.lot.price, fill.lot.timestamp))
        return sale


# ============================================================================
# STORE ADAPTERS
# ============================================================================

def _unique_id(store: Store, lot_type: type, base: str) -> str:
    candidate, n = base, 1
    while store.get(lot_type, candidate) is not None:
        candidate = f"{base}-{n}"
        n += 1
    return candidate


def _stored_lots(store: Store, lot_type: type, filters: Sequence[FieldFilter]) -> Iterator[Any]:
    return paginated_get(
        store, lot_type, filters, page_size=LOT_PAGE_SIZE, order_by=("timestamp", "id"),
    )


def _sell_stored(
    store: Store,
    lot_type: type,
    filters: Sequence[FieldFilter],
    quantity: int,
    price: int,
    owner: str,
) -> FifoSale:
    records = {}

    def lots() -> Iterator[Lot]:
        for record in _stored_lots(store, lot_type, filters):
            records[record.id] = record
            yield Lot(record.id, record.quantity, record.price, record.timestamp)

    sale = calculate_fifo_sale(lots(), quantity, price, owner)
    for fill in sale.fills:
        record = records[fill.lot.id]
        if fill.remaining == 0:
            store.remove(lot_type, record.id)
        else:
            record.quantity = fill.remaining
            store.save(record)
    logger.debug(
        "%s sold %d at %d across %d lots, realized %d",
        owner, quantity, price, len(sale.fills), sale.realized_profit,
    )
    return sale


def buy(
    store: Store,
    account_id: str,
    pool_id: str,
    tranche_id: str,
    hash: str,
    timestamp: datetime,
    quantity: int,
    price: int,
) -> Optional[InvestorPosition]:
    """Append a lot of tranche tokens to an account's queue. Zero quantity is a no-op."""
    if quantity < 0:
        raise ValueError(f"lot quantity must be non-negative, got {quantity}")
    if quantity == 0:
        return None
    lot = InvestorPosition(
        id=_unique_id(store, InvestorPosition, f"{account_id}-{tranche_id}-{hash}"),
        account_id=account_id,
        pool_id=pool_id,
        tranche_id=tranche_id,
        hash=hash,
        timestamp=timestamp,
        quantity=quantity,
        price=price,
    )
    store.save(lot)
    return lot


def sell_fifo(
    store: Store,
    account_id: str,
    tranche_id: str,
    quantity: int,
    price: int,
) -> int:
    """Consume an account's tranche lots oldest-first. Returns realized profit."""
    filters = [("account_id", "=", account_id), ("tranche_id", "=", tranche_id)]
    sale = _sell_stored(
        store, InvestorPosition, filters, quantity, price, f"{account_id}/{tranche_id}",
    )
    return sale.realized_profit


def open_lots(store: Store, account_id: str, tranche_id: str) -> List[InvestorPosition]:
    filters = [("account_id", "=", account_id), ("tranche_id", "=", tranche_id)]
    return list(_stored_lots(store, InvestorPosition, filters))


def buy_asset(
    store: Store,
    asset_id: str,
    hash: str,
    timestamp: datetime,
    quantity: int,
    price: int,
) -> Optional[AssetPosition]:
    """Append a lot to an externally priced asset's queue."""
    if quantity < 0:
        raise ValueError(f"lot quantity must be non-negative, got {quantity}")
    if quantity == 0:
        return None
    lot = AssetPosition(
        id=_unique_id(store, AssetPosition, f"{asset_id}-{hash}"),
        asset_id=asset_id,
        hash=hash,
        timestamp=timestamp,
        quantity=quantity,
        price=price,
    )
    store.save(lot)
    return lot


def sell_asset_fifo(store: Store, asset_id: str, quantity: int, price: int) -> int:
    sale = _sell_stored(store, AssetPosition, [("asset_id", "=", asset_id)], quantity, price, asset_id)
    return sale.realized_profit
