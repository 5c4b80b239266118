"""
entities.py - Persisted records of the pool ledger

Every record is a mutable slotted dataclass keyed by `id`. Records are read
from and written back to a Store; the store hands out copies, so mutating a
record has no effect until it is saved.

Composite ids follow a fixed scheme so that records can be addressed without
a lookup:

    Tranche          {pool_id}-{tranche_id}
    Epoch            {pool_id}-{index}
    Asset            {pool_id}-{asset_id}
    OutstandingOrder {pool_id}-{tranche_id}-{account_id}
    TrancheBalance   {account_id}-{pool_id}-{tranche_id}
    AssetTransaction {pool_id}-{asset_id}-{hash}-{epoch}-{type}

Small state transitions that belong to a single record (closing a pool,
activating a loan) live on the record itself. Anything that reads more than
one record lives in the engine modules.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .core import (
    WAD, AssetStatus, AssetType, AssetValuationMethod, EpochStatus,
    AssetTransactionType, InvestorTransactionType,
    DataConsistencyFault, div_trunc,
)


# ============================================================================
# CURRENCY
# ============================================================================

@dataclass(slots=True)
class Currency:
    id: str
    decimals: int
    symbol: str = ""
    name: str = ""
    pool_id: Optional[str] = None
    tranche_id: Optional[str] = None
    token_address: Optional[str] = None
    escrow_address: Optional[str] = None


# ============================================================================
# POOL
# ============================================================================

@dataclass(slots=True)
class Pool:
    """
    A lending pool and its running aggregates.

    Aggregates ending in `_by_period` hold the delta observed in the current
    period and are reset at every period boundary; the plain `sum_*` fields
    are running totals.
    """
    id: str
    currency_id: Optional[str] = None
    name: Optional[str] = None
    metadata: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    created_at_block: Optional[int] = None
    closed_at: Optional[datetime] = None
    closed_at_block: Optional[int] = None

    max_reserve: int = 0
    max_nav_age: int = 0
    min_epoch_time: int = 0

    current_epoch: int = 0
    last_epoch_closed: int = 0
    last_epoch_executed: int = 0

    portfolio_valuation: int = 0
    total_reserve: int = 0
    net_asset_value: int = 0
    normalized_nav: int = 0

    sum_debt: int = 0
    sum_borrowed_amount: int = 0
    sum_borrowed_amount_by_period: int = 0
    sum_repaid_amount: int = 0
    sum_repaid_amount_by_period: int = 0
    sum_repaid_principal_amount: int = 0
    sum_repaid_interest_amount: int = 0
    sum_repaid_unscheduled_amount: int = 0
    sum_borrows_count: int = 0
    sum_repays_count: int = 0
    weighted_average_interest_rate_per_sec: int = 0

    sum_invested_amount: int = 0
    sum_invested_amount_by_period: int = 0
    sum_redeemed_amount: int = 0
    sum_redeemed_amount_by_period: int = 0
    sum_pool_fees_paid_amount: int = 0
    sum_realized_profit_fifo_by_period: int = 0
    sum_debt_written_off_by_period: int = 0
    sum_interest_accrued_by_period: int = 0

    number_of_assets: int = 0

    def close(self, timestamp: datetime, block_number: int) -> None:
        """Mark the pool closed. Closure is irreversible; repeat calls keep the first close."""
        if not self.is_active:
            return
        self.is_active = False
        self.closed_at = timestamp
        self.closed_at_block = block_number

    def increase_borrowings(self, amount: int) -> None:
        self.sum_borrowed_amount += amount
        self.sum_borrowed_amount_by_period += amount
        self.sum_borrows_count += 1

    def increase_repayments(self, principal: int, interest: int = 0, unscheduled: int = 0) -> None:
        amount = principal + interest + unscheduled
        self.sum_repaid_amount += amount
        self.sum_repaid_amount_by_period += amount
        self.sum_repaid_principal_amount += principal
        self.sum_repaid_interest_amount += interest
        self.sum_repaid_unscheduled_amount += unscheduled
        self.sum_repays_count += 1

    def reset_period_accumulators(self) -> None:
        self.sum_borrowed_amount_by_period = 0
        self.sum_repaid_amount_by_period = 0
        self.sum_invested_amount_by_period = 0
        self.sum_redeemed_amount_by_period = 0
        self.sum_realized_profit_fifo_by_period = 0
        self.sum_debt_written_off_by_period = 0
        self.sum_interest_accrued_by_period = 0


# ============================================================================
# TRANCHE
# ============================================================================

@dataclass(slots=True)
class Tranche:
    """Ranked slice of a pool. index 0 is junior, higher indices are more senior."""
    id: str
    pool_id: str
    tranche_id: str
    index: int
    is_active: bool = True
    token_price: int = WAD
    token_supply: int = 0
    debt: int = 0
    interest_rate_per_sec: Optional[int] = None
    sum_outstanding_invest_orders: int = 0
    sum_outstanding_redeem_orders: int = 0
    sum_fulfilled_invest_orders: int = 0
    sum_fulfilled_redeem_orders: int = 0
    sum_fulfilled_redeem_orders_currency: int = 0
    price_updated_at_block: Optional[int] = None

    @staticmethod
    def make_id(pool_id: str, tranche_id: str) -> str:
        return f"{pool_id}-{tranche_id}"

    def partial_nav(self) -> int:
        """Contribution of this tranche to pool NAV: supply x price."""
        return div_trunc(self.token_supply * self.token_price, WAD)

    def update_price(self, price: int, block_number: int) -> None:
        self.token_price = price
        self.price_updated_at_block = block_number

    def update_supply(self, supply: int) -> None:
        self.token_supply = supply
        self.debt = self.partial_nav()


# ============================================================================
# EPOCH
# ============================================================================

@dataclass(slots=True)
class EpochState:
    """Per-tranche order book figures for one epoch. Percentages are WAD-scaled."""
    tranche_id: str
    token_price: Optional[int] = None
    sum_outstanding_invest_orders: int = 0
    sum_outstanding_redeem_orders: int = 0
    sum_outstanding_redeem_orders_currency: int = 0
    sum_fulfilled_invest_orders: int = 0
    sum_fulfilled_redeem_orders: int = 0
    sum_fulfilled_redeem_orders_currency: int = 0
    invest_fulfillment_percentage: int = 0
    redeem_fulfillment_percentage: int = 0


@dataclass(slots=True)
class Epoch:
    id: str
    pool_id: str
    index: int
    status: EpochStatus = EpochStatus.OPEN
    opened_at: Optional[datetime] = None
    opened_at_block: Optional[int] = None
    closed_at: Optional[datetime] = None
    closed_at_block: Optional[int] = None
    executed_at: Optional[datetime] = None
    executed_at_block: Optional[int] = None
    sum_borrowed_amount: int = 0
    sum_repaid_amount: int = 0
    sum_invested_amount: int = 0
    sum_redeemed_amount: int = 0
    sum_pool_fees_paid_amount: int = 0
    states: List[EpochState] = field(default_factory=list)

    @staticmethod
    def make_id(pool_id: str, index: int) -> str:
        return f"{pool_id}-{index}"

    def state_for(self, tranche_id: str) -> EpochState:
        for state in self.states:
            if state.tranche_id == tranche_id:
                return state
        state = EpochState(tranche_id=tranche_id)
        self.states.append(state)
        return state

    def increase_borrowings(self, amount: int) -> None:
        self.sum_borrowed_amount += amount

    def increase_repayments(self, amount: int) -> None:
        self.sum_repaid_amount += amount

    def close(self, timestamp: datetime, block_number: int) -> None:
        if self.status is not EpochStatus.OPEN:
            raise DataConsistencyFault(f"epoch {self.id} is {self.status.value}, cannot close")
        self.status = EpochStatus.CLOSED
        self.closed_at = timestamp
        self.closed_at_block = block_number

    def mark_executed(self, timestamp: datetime, block_number: int) -> None:
        if self.status is not EpochStatus.CLOSED:
            raise DataConsistencyFault(f"epoch {self.id} is {self.status.value}, cannot execute")
        self.status = EpochStatus.EXECUTED
        self.executed_at = timestamp
        self.executed_at_block = block_number


# ============================================================================
# ASSET (LOAN)
# ============================================================================

@dataclass(slots=True)
class Asset:
    """
    A loan or cash asset held by a pool.

    Status moves CREATED -> ACTIVE -> CLOSED. Write-off is an annotation
    (percentage and penalty) that does not change status. Per-period fields
    are overwritten on every accrual pass; `total_*` fields only grow.
    """
    id: str
    pool_id: str
    asset_id: str
    asset_type: AssetType = AssetType.OTHER
    valuation_method: AssetValuationMethod = AssetValuationMethod.OUTSTANDING_DEBT
    status: AssetStatus = AssetStatus.CREATED
    is_active: bool = False
    created_at: Optional[datetime] = None
    collateral_class: Optional[str] = None
    collateral_item: Optional[str] = None
    nft_id: Optional[str] = None
    metadata: Optional[str] = None

    outstanding_debt: int = 0
    outstanding_principal: int = 0
    outstanding_interest: int = 0
    interest_rate_per_sec: Optional[int] = None
    rate_group: Optional[int] = None

    total_borrowed: int = 0
    total_repaid: int = 0
    total_repaid_principal: int = 0
    total_repaid_interest: int = 0
    total_repaid_unscheduled: int = 0
    borrowed_amount_by_period: int = 0
    repaid_amount_by_period: int = 0
    borrows_count: int = 0
    repays_count: int = 0

    quantity: Optional[int] = None
    current_price: Optional[int] = None
    notional: Optional[int] = None
    sum_realized_profit_fifo: int = 0

    maturity_date: Optional[datetime] = None
    actual_maturity_date: Optional[datetime] = None
    advance_rate: Optional[int] = None
    collateral_value: Optional[int] = None
    probability_of_default: Optional[int] = None
    loss_given_default: Optional[int] = None
    discount_rate: Optional[int] = None

    written_off_percentage: Optional[int] = None
    written_off_penalty: Optional[int] = None
    written_off_amount_by_period: int = 0

    @staticmethod
    def make_id(pool_id: str, asset_id: str) -> str:
        return f"{pool_id}-{asset_id}"

    @property
    def is_cash(self) -> bool:
        return self.asset_type in (AssetType.ONCHAIN_CASH, AssetType.OFFCHAIN_CASH)

    @property
    def is_external_pricing(self) -> bool:
        return self.quantity is not None

    @property
    def is_written_off(self) -> bool:
        return bool(self.written_off_percentage)

    def activate(self) -> None:
        if self.status is AssetStatus.CLOSED:
            return
        self.status = AssetStatus.ACTIVE
        self.is_active = True

    def close(self) -> None:
        self.status = AssetStatus.CLOSED
        self.is_active = False


# ============================================================================
# POSITIONS AND ORDERS
# ============================================================================

@dataclass(slots=True)
class InvestorPosition:
    """One FIFO lot of tranche tokens held by an account."""
    id: str
    account_id: str
    pool_id: str
    tranche_id: str
    hash: str
    timestamp: datetime
    quantity: int
    price: int


@dataclass(slots=True)
class AssetPosition:
    """One FIFO lot of an externally priced asset held by a pool."""
    id: str
    asset_id: str
    hash: str
    timestamp: datetime
    quantity: int
    price: int


@dataclass(slots=True)
class OutstandingOrder:
    id: str
    account_id: str
    pool_id: str
    tranche_id: str
    hash: str
    timestamp: datetime
    epoch_number: int
    invest_amount: int = 0
    redeem_amount: int = 0

    @staticmethod
    def make_id(pool_id: str, tranche_id: str, account_id: str) -> str:
        return f"{pool_id}-{tranche_id}-{account_id}"

    @property
    def is_empty(self) -> bool:
        return self.invest_amount == 0 and self.redeem_amount == 0


@dataclass(slots=True)
class TrancheBalance:
    """Per-account view of a tranche: pending orders and claimable amounts."""
    id: str
    account_id: str
    pool_id: str
    tranche_id: str
    pending_invest_currency: int = 0
    claimable_tranche_tokens: int = 0
    sum_claimed_tranche_tokens: int = 0
    pending_redeem_tranche_tokens: int = 0
    claimable_currency: int = 0
    sum_claimed_currency: int = 0

    @staticmethod
    def make_id(account_id: str, pool_id: str, tranche_id: str) -> str:
        return f"{account_id}-{pool_id}-{tranche_id}"


# ============================================================================
# TRANSACTION RECORDS
# ============================================================================

@dataclass(slots=True)
class InvestorTransaction:
    id: str
    type: InvestorTransactionType
    account_id: str
    pool_id: str
    tranche_id: str
    hash: str
    timestamp: datetime
    epoch_number: Optional[int] = None
    currency_amount: Optional[int] = None
    token_amount: Optional[int] = None
    token_price: Optional[int] = None
    realized_profit_fifo: Optional[int] = None


@dataclass(slots=True)
class AssetTransaction:
    id: str
    type: AssetTransactionType
    pool_id: str
    asset_id: str
    hash: str
    timestamp: datetime
    epoch_number: Optional[int] = None
    amount: Optional[int] = None
    principal_amount: Optional[int] = None
    interest_amount: Optional[int] = None
    unscheduled_amount: Optional[int] = None
    quantity: Optional[int] = None
    settlement_price: Optional[int] = None
    realized_profit_fifo: Optional[int] = None
    from_asset_id: Optional[str] = None
    to_asset_id: Optional[str] = None

    @staticmethod
    def make_id(
        pool_id: str, asset_id: str, hash: str, epoch_number: int, tx_type: AssetTransactionType,
    ) -> str:
        return f"{pool_id}-{asset_id}-{hash}-{epoch_number}-{tx_type.value}"


@dataclass(slots=True)
class OracleTransaction:
    id: str
    key: str
    value: int
    hash: str
    timestamp: datetime


# ============================================================================
# SNAPSHOTS AND BOOKKEEPING
# ============================================================================

@dataclass(slots=True)
class PoolSnapshot:
    id: str
    pool_id: str
    block_number: int
    timestamp: datetime
    period_start: Optional[datetime] = None
    epoch_id: Optional[str] = None
    portfolio_valuation: int = 0
    total_reserve: int = 0
    net_asset_value: int = 0
    normalized_nav: int = 0
    sum_debt: int = 0
    sum_borrowed_amount: int = 0
    sum_borrowed_amount_by_period: int = 0
    sum_repaid_amount: int = 0
    sum_repaid_amount_by_period: int = 0
    sum_borrows_count: int = 0
    sum_repays_count: int = 0
    sum_invested_amount: int = 0
    sum_redeemed_amount: int = 0
    weighted_average_interest_rate_per_sec: int = 0


@dataclass(slots=True)
class TrancheSnapshot:
    id: str
    tranche_id: str
    pool_id: str
    block_number: int
    timestamp: datetime
    period_start: Optional[datetime] = None
    token_price: int = WAD
    token_supply: int = 0
    debt: int = 0
    sum_fulfilled_invest_orders: int = 0
    sum_fulfilled_redeem_orders: int = 0


@dataclass(slots=True)
class ProcessedEvent:
    """Marker that an event id has been fully applied."""
    id: str
    kind: str
    block_number: int
