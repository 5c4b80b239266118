"""
accrual.py - Loan Debt and Interest Accrual

Per-loan debt state transitions and period-over-period borrow/repay
accumulation.

State machine per loan:

    CREATED --(first strictly positive debt, or a borrow)--> ACTIVE
    ACTIVE  --(collateral unlocked, or debt observed at exactly 0)--> CLOSED

ACTIVE never reverts to CREATED. A write-off annotates the loan with a
percentage and penalty and leaves its status alone.

Two drivers mutate loans:
    1. Discrete events (borrow, repay, debt transfer) via borrow()/repay()
    2. Periodic observations of on-chain debt via apply_debt_observation(),
       one per loan per accrual pass

Key Formulas (accrual pass):
    repaid_by_period   = prev_debt - current_debt          if prev_debt > current_debt
    borrowed_by_period = current_debt - prev_debt          if rate != 0 and
                         prev_debt * (rate // 10**27) * 86400 < current_debt

The borrow test compares against one day of pure interest at the current
rate. The comparison is strict and the rate is integer-divided before the
multiplication; both are kept exactly as observed on chain.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, Iterable, Optional

from .core import (
    WAD, SECONDS_PER_DAY, SPEC_VERSION_SETTLEMENT_PRICE_FIXED, SPEC_VERSION_TRANSFER_INTEREST,
    AssetStatus, RateGroupMissing, DataConsistencyFault, Store, div_trunc, apply_percentage,
)
from .entities import Asset, Pool
from .events import (
    ExternalAmount, LoanDebtTransferred, LoanDebtTransferredLegacy, PrincipalAmount,
)
from . import positions


logger = logging.getLogger(__name__)

RATE_SCALE = 10 ** 27


# ============================================================================
# EVENT-DRIVEN OPERATIONS
# ============================================================================

def borrow(asset: Asset, amount: int) -> None:
    """Draw `amount` on a loan. Activates a CREATED loan."""
    if amount < 0:
        raise ValueError(f"borrow amount must be non-negative, got {amount}")
    if asset.status is AssetStatus.CLOSED:
        raise DataConsistencyFault(f"cannot borrow on closed asset {asset.id}")
    asset.activate()
    asset.outstanding_debt += amount
    asset.outstanding_principal += amount
    asset.total_borrowed += amount
    asset.borrowed_amount_by_period += amount
    asset.borrows_count += 1


def repay(
    asset: Asset,
    amount: int,
    principal: Optional[int] = None,
    interest: int = 0,
    unscheduled: int = 0,
) -> None:
    """
    Repay `amount` on a loan. A loan that was active and now owes exactly
    nothing closes.

    Interest accrued on chain since the last observation is not reflected in
    `outstanding_debt`, so a repayment may exceed it; debt then floors at 0.
    """
    if amount < 0:
        raise ValueError(f"repay amount must be non-negative, got {amount}")
    was_active = asset.status is AssetStatus.ACTIVE
    asset.outstanding_debt = max(0, asset.outstanding_debt - amount)
    repaid_principal = amount if principal is None else principal
    asset.outstanding_principal = max(0, asset.outstanding_principal - repaid_principal)
    asset.total_repaid += amount
    asset.total_repaid_principal += repaid_principal
    asset.total_repaid_interest += interest
    asset.total_repaid_unscheduled += unscheduled
    asset.repaid_amount_by_period += amount
    asset.repays_count += 1
    if was_active and asset.outstanding_debt == 0:
        asset.close()


def update_current_price(asset: Asset, price: int, spec_version: Optional[int]) -> None:
    """Settlement prices drive the asset's current price only on older runtimes."""
    if spec_version is not None and spec_version < SPEC_VERSION_SETTLEMENT_PRICE_FIXED:
        asset.current_price = price


def borrow_external(
    store: Store,
    asset: Asset,
    external: ExternalAmount,
    hash: str,
    timestamp: datetime,
    spec_version: Optional[int] = None,
) -> None:
    """Quantity side of a borrow on an externally priced asset: grow quantity and append a lot."""
    update_current_price(asset, external.settlement_price, spec_version)
    asset.quantity = (asset.quantity or 0) + external.quantity
    positions.buy_asset(store, asset.id, hash, timestamp, external.quantity, external.settlement_price)


def repay_external(
    store: Store,
    asset: Asset,
    external: ExternalAmount,
    spec_version: Optional[int] = None,
) -> int:
    """Quantity side of a repayment: shrink quantity and sell lots FIFO. Returns realized profit."""
    update_current_price(asset, external.settlement_price, spec_version)
    asset.quantity = (asset.quantity or 0) - external.quantity
    if asset.quantity < 0:
        raise DataConsistencyFault(f"asset {asset.id} quantity would go negative")
    profit = positions.sell_asset_fifo(store, asset.id, external.quantity, external.settlement_price)
    asset.sum_realized_profit_fifo += profit
    return profit


def write_off(asset: Asset, percentage: int, penalty: int) -> int:
    """
    Annotate a loan as written off. Returns the additional amount written off
    relative to the previous percentage.
    """
    previous = apply_percentage(asset.outstanding_debt, asset.written_off_percentage or 0)
    current = apply_percentage(asset.outstanding_debt, percentage)
    asset.written_off_percentage = percentage
    asset.written_off_penalty = penalty
    asset.written_off_amount_by_period = current - previous
    return asset.written_off_amount_by_period


# ============================================================================
# ACCRUAL PASS
# ============================================================================

@dataclass(frozen=True, slots=True)
class DebtChange:
    repaid: int = 0
    borrowed: int = 0


def classify_debt_change(prev_debt: int, current_debt: int, rate_per_sec: Optional[int]) -> DebtChange:
    """
    Split an observed change in debt into repayment and new borrowing.

    Growth beyond one day of pure interest at the current rate counts as a
    borrow. Without a rate nothing is classified as borrowed.
    """
    repaid = prev_debt - current_debt if prev_debt > current_debt else 0
    borrowed = 0
    if rate_per_sec and prev_debt * (rate_per_sec // RATE_SCALE) * SECONDS_PER_DAY < current_debt:
        borrowed = current_debt - prev_debt
    return DebtChange(repaid=repaid, borrowed=borrowed)


@dataclass(frozen=True, slots=True)
class DebtObservation:
    """
    One loan's on-chain readings for an accrual pass. None means the read
    produced no result and the stored value stands.
    """
    debt: Optional[int] = None
    nft_locked: Optional[bool] = None
    rate_per_sec: Optional[int] = None


def apply_debt_observation(asset: Asset, observation: DebtObservation) -> DebtChange:
    """
    Apply one accrual-pass observation to a loan.

    Per-period accumulators are overwritten by this pass; totals accumulate.
    """
    prev_debt = asset.outstanding_debt
    new_debt = observation.debt

    if new_debt is None:
        logger.warning("No debt result for asset %s, keeping %d", asset.id, prev_debt)
    elif new_debt > 0:
        asset.activate()
    if asset.status is AssetStatus.ACTIVE and new_debt == 0:
        asset.close()
    if observation.nft_locked is False:
        asset.close()
    if new_debt is not None:
        asset.outstanding_debt = new_debt

    if observation.rate_per_sec is not None:
        asset.interest_rate_per_sec = observation.rate_per_sec

    change = classify_debt_change(prev_debt, asset.outstanding_debt, asset.interest_rate_per_sec)
    asset.repaid_amount_by_period = change.repaid
    asset.borrowed_amount_by_period = change.borrowed
    if change.repaid:
        asset.total_repaid += change.repaid
        asset.repays_count += 1
    if change.borrowed:
        asset.total_borrowed += change.borrowed
        asset.borrows_count += 1
    return change


class RateTable:
    """
    Rate group -> per-second rate, as read from the pile contract.

    A group whose accumulated rate (chi) is zero was never initialised on
    chain and cannot price interest.
    """

    def __init__(self):
        self._rates: Dict[int, Any] = {}

    def add(self, group: int, rates: Any) -> None:
        self._rates[group] = rates

    def __contains__(self, group: int) -> bool:
        return group in self._rates

    def get(self, group: Optional[int]) -> Optional[int]:
        """Per-second rate of a group, or None when unknown or uninitialised."""
        rates = self._rates.get(group) if group is not None else None
        if rates is None or rates.chi == 0:
            return None
        return rates.rate_per_second

    def resolve(self, group: Optional[int], asset_id: str = "") -> int:
        rates = self._rates.get(group) if group is not None else None
        if rates is None or rates.chi == 0:
            raise RateGroupMissing(f"rate group {group} missing for active asset {asset_id}")
        return rates.rate_per_second


@dataclass(frozen=True, slots=True)
class DebtSums:
    sum_debt: int = 0
    sum_borrowed_amount: int = 0
    sum_repaid_amount: int = 0
    sum_borrows_count: int = 0
    sum_repays_count: int = 0
    weighted_average_interest_rate_per_sec: int = 0


def calculate_debt_sums(assets: Iterable[Asset]) -> DebtSums:
    sum_debt = sum_borrowed = sum_repaid = borrows = repays = weighted = 0
    for asset in assets:
        debt = asset.outstanding_debt
        sum_debt += debt
        sum_borrowed += asset.total_borrowed
        sum_repaid += asset.total_repaid
        borrows += asset.borrows_count
        repays += asset.repays_count
        weighted += (asset.interest_rate_per_sec or 0) * debt
    return DebtSums(
        sum_debt=sum_debt,
        sum_borrowed_amount=sum_borrowed,
        sum_repaid_amount=sum_repaid,
        sum_borrows_count=borrows,
        sum_repays_count=repays,
        weighted_average_interest_rate_per_sec=div_trunc(weighted, sum_debt) if sum_debt > 0 else 0,
    )


def recompute_pool_debt_sums(pool: Pool, assets: Iterable[Asset]) -> DebtSums:
    """Replace the pool's debt aggregates with a full fold over `assets`."""
    sums = calculate_debt_sums(assets)
    pool.sum_debt = sums.sum_debt
    pool.sum_borrowed_amount = sums.sum_borrowed_amount
    pool.sum_repaid_amount = sums.sum_repaid_amount
    pool.sum_borrows_count = sums.sum_borrows_count
    pool.sum_repays_count = sums.sum_repays_count
    pool.weighted_average_interest_rate_per_sec = sums.weighted_average_interest_rate_per_sec
    return sums


# ============================================================================
# DEBT TRANSFERS
# ============================================================================

@dataclass(frozen=True, slots=True)
class DebtTransfer:
    """Runtime-independent form of a debt transfer between two assets of a pool."""
    pool_id: str
    from_asset_id: str
    to_asset_id: str
    repaid_principal: int
    repaid_interest: int
    repaid_unscheduled: int
    borrow_principal: int
    repaid_external: Optional[ExternalAmount] = None
    borrow_external: Optional[ExternalAmount] = None

    @property
    def repaid_amount(self) -> int:
        return self.repaid_principal + self.repaid_interest + self.repaid_unscheduled


def _external(principal: PrincipalAmount) -> Optional[ExternalAmount]:
    return principal.external


def normalize_debt_transfer(event: LoanDebtTransferred, spec_version: Optional[int]) -> DebtTransfer:
    # Interest on transfers is only reported from the runtime that introduced it.
    interest = event.repaid_amount.interest
    if spec_version is not None and spec_version < SPEC_VERSION_TRANSFER_INTEREST:
        interest = 0
    return DebtTransfer(
        pool_id=event.pool_id,
        from_asset_id=event.from_loan_id,
        to_asset_id=event.to_loan_id,
        repaid_principal=event.repaid_amount.principal.amount,
        repaid_interest=interest,
        repaid_unscheduled=event.repaid_amount.unscheduled,
        borrow_principal=event.borrow_amount.amount,
        repaid_external=_external(event.repaid_amount.principal),
        borrow_external=_external(event.borrow_amount),
    )


def _quantity_at_price(amount: int, asset: Asset) -> Optional[ExternalAmount]:
    if asset.is_cash or not asset.current_price:
        return None
    return ExternalAmount(quantity=div_trunc(amount * WAD, asset.current_price), settlement_price=asset.current_price)


def normalize_legacy_debt_transfer(
    event: LoanDebtTransferredLegacy,
    from_asset: Asset,
    to_asset: Asset,
) -> DebtTransfer:
    """Single-amount transfers carry no quantity; derive it from each side's current price."""
    return DebtTransfer(
        pool_id=event.pool_id,
        from_asset_id=event.from_loan_id,
        to_asset_id=event.to_loan_id,
        repaid_principal=event.amount,
        repaid_interest=0,
        repaid_unscheduled=0,
        borrow_principal=event.amount,
        repaid_external=_quantity_at_price(event.amount, from_asset),
        borrow_external=_quantity_at_price(event.amount, to_asset),
    )
