"""
epochs.py - Epoch Settlement State Machine

Pool-level settlement of investment and redemption orders:

    OPEN --close_epoch()--> CLOSED --execute_epoch()--> EXECUTED (terminal)

OPEN epochs accumulate order volume per tranche (record_order_update).
Closing freezes the totals and opens the next epoch. Executing applies the
fulfillment percentages decided for each tranche:

1. Tranche price, supply and fulfilled sums are updated.
2. Unfulfilled volume is carried into the next epoch:
       outstanding_next += outstanding_this - fulfilled_this
   separately for invest and redeem. Nothing is retried against the
   executed epoch.
3. Every outstanding order of the tranche is executed at the SAME
   percentage (fulfillment is proportional, not first-come-first-served).
   Invest executions append a FIFO lot; redeem executions sell FIFO and
   carry the realized profit on the transaction. Orders that reach zero on
   both sides are removed.
4. Pool NAV is recomputed as the sum of tranche partial NAVs.
5. Pool counters grow by the epoch totals and the on-chain cash asset
   records the deposits, redemption withdrawals and fee withdrawals.

Units:
    invest amounts          currency
    redeem amounts          tranche tokens
    prices, percentages     WAD-scaled
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from .core import (
    WAD, ONCHAIN_CASH_ASSET_ID, AssetTransactionType, DataConsistencyFault, EpochStatus,
    InvestorTransactionType, ProcessingContext, Store, apply_percentage, wad_div, wad_mul,
)
from .entities import (
    Asset, AssetTransaction, Currency, Epoch, EpochState, InvestorTransaction,
    OutstandingOrder, Pool, Tranche, TrancheBalance,
)
from .events import TrancheOrderSummary, TrancheSolution
from .store import require
from . import positions, snapshots, valuation


logger = logging.getLogger(__name__)


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_fulfillment(amount: int, percentage: int) -> int:
    """Portion of `amount` fulfilled at a WAD-scaled percentage."""
    if not 0 <= percentage <= WAD:
        raise ValueError(f"fulfillment percentage out of range: {percentage}")
    return apply_percentage(amount, percentage)


@dataclass(frozen=True, slots=True)
class InvestExecution:
    currency_amount: int
    token_amount: int


@dataclass(frozen=True, slots=True)
class RedeemExecution:
    token_amount: int
    currency_amount: int


def calculate_invest_execution(invest_amount: int, percentage: int, price: int) -> InvestExecution:
    currency_amount = calculate_fulfillment(invest_amount, percentage)
    return InvestExecution(currency_amount=currency_amount, token_amount=wad_div(currency_amount, price))


def calculate_redeem_execution(redeem_amount: int, percentage: int, price: int) -> RedeemExecution:
    token_amount = calculate_fulfillment(redeem_amount, percentage)
    return RedeemExecution(token_amount=token_amount, currency_amount=wad_mul(token_amount, price))


@dataclass(frozen=True, slots=True)
class CarryOver:
    invest: int
    redeem: int


def calculate_carry_over(state: EpochState) -> CarryOver:
    return CarryOver(
        invest=state.sum_outstanding_invest_orders - state.sum_fulfilled_invest_orders,
        redeem=state.sum_outstanding_redeem_orders - state.sum_fulfilled_redeem_orders,
    )


# ============================================================================
# LOOKUPS
# ============================================================================

def active_tranches(store: Store, pool_id: str) -> List[Tranche]:
    return store.get_by_fields(
        Tranche, [("pool_id", "=", pool_id), ("is_active", "=", True)], order_by=("index",),
    )


def current_epoch(store: Store, pool: Pool) -> Epoch:
    return require(store, Epoch, Epoch.make_id(pool.id, pool.current_epoch))


def _tranche_balance(store: Store, account_id: str, pool_id: str, tranche_id: str) -> TrancheBalance:
    balance_id = TrancheBalance.make_id(account_id, pool_id, tranche_id)
    balance = store.get(TrancheBalance, balance_id)
    if balance is None:
        balance = TrancheBalance(id=balance_id, account_id=account_id, pool_id=pool_id, tranche_id=tranche_id)
    return balance


def _tx_hash(ctx: ProcessingContext) -> str:
    return ctx.extrinsic_hash or f"block-{ctx.block_number}"


# ============================================================================
# TRANSITIONS
# ============================================================================

def open_epoch(
    store: Store,
    ctx: ProcessingContext,
    pool_id: str,
    index: int,
    tranche_ids: Sequence[str],
) -> Epoch:
    epoch_id = Epoch.make_id(pool_id, index)
    epoch = store.get(Epoch, epoch_id)
    if epoch is None:
        epoch = Epoch(
            id=epoch_id,
            pool_id=pool_id,
            index=index,
            opened_at=ctx.timestamp,
            opened_at_block=ctx.block_number,
        )
    for tranche_id in tranche_ids:
        epoch.state_for(tranche_id)
    store.save(epoch)
    logger.info("Opened epoch %d for pool %s", index, pool_id)
    return epoch


def close_epoch(
    store: Store,
    ctx: ProcessingContext,
    pool: Pool,
    epoch_index: int,
    summaries: Iterable[TrancheOrderSummary] = (),
) -> Epoch:
    """Freeze an OPEN epoch and open the next one. Returns the new epoch."""
    epoch = require(store, Epoch, Epoch.make_id(pool.id, epoch_index))
    epoch.close(ctx.timestamp, ctx.block_number)
    for summary in summaries:
        state = epoch.state_for(summary.tranche_id)
        state.sum_outstanding_invest_orders = summary.sum_outstanding_invest_orders
        state.sum_outstanding_redeem_orders = summary.sum_outstanding_redeem_orders
        if summary.token_price is not None:
            state.token_price = summary.token_price
            state.sum_outstanding_redeem_orders_currency = wad_mul(
                summary.sum_outstanding_redeem_orders, summary.token_price
            )
    store.save(epoch)

    tranche_ids = [t.tranche_id for t in active_tranches(store, pool.id)]
    next_epoch = open_epoch(store, ctx, pool.id, epoch_index + 1, tranche_ids)

    pool.current_epoch = epoch_index + 1
    pool.last_epoch_closed = epoch_index
    store.save(pool)
    logger.info("Closed epoch %d for pool %s", epoch_index, pool.id)
    return next_epoch


def record_order_update(
    store: Store,
    ctx: ProcessingContext,
    pool: Pool,
    tranche_id: str,
    account_id: str,
    amount: int,
    is_invest: bool,
) -> Optional[OutstandingOrder]:
    """
    Set an account's pending invest (currency) or redeem (token) order to
    `amount` and move the open epoch's outstanding totals by the difference.
    Returns the order, or None when it was emptied and removed.
    """
    if amount < 0:
        raise ValueError(f"order amount must be non-negative, got {amount}")
    epoch = current_epoch(store, pool)
    if epoch.status is not EpochStatus.OPEN:
        raise DataConsistencyFault(f"epoch {epoch.id} is {epoch.status.value}, cannot take orders")
    order_id = OutstandingOrder.make_id(pool.id, tranche_id, account_id)
    order = store.get(OutstandingOrder, order_id) or OutstandingOrder(
        id=order_id,
        account_id=account_id,
        pool_id=pool.id,
        tranche_id=tranche_id,
        hash=_tx_hash(ctx),
        timestamp=ctx.timestamp,
        epoch_number=epoch.index,
    )
    state = epoch.state_for(tranche_id)
    balance = _tranche_balance(store, account_id, pool.id, tranche_id)
    if is_invest:
        delta = amount - order.invest_amount
        order.invest_amount = amount
        state.sum_outstanding_invest_orders += delta
        balance.pending_invest_currency = amount
        tx_type = (
            InvestorTransactionType.INVEST_ORDER_CANCEL if amount == 0
            else InvestorTransactionType.INVEST_ORDER_UPDATE
        )
    else:
        delta = amount - order.redeem_amount
        order.redeem_amount = amount
        state.sum_outstanding_redeem_orders += delta
        balance.pending_redeem_tranche_tokens = amount
        tx_type = (
            InvestorTransactionType.REDEEM_ORDER_CANCEL if amount == 0
            else InvestorTransactionType.REDEEM_ORDER_UPDATE
        )
    order.hash = _tx_hash(ctx)
    order.timestamp = ctx.timestamp
    order.epoch_number = epoch.index

    store.save(InvestorTransaction(
        id=f"{_tx_hash(ctx)}-{epoch.index}-{tx_type.value}-{account_id}",
        type=tx_type,
        account_id=account_id,
        pool_id=pool.id,
        tranche_id=tranche_id,
        hash=_tx_hash(ctx),
        timestamp=ctx.timestamp,
        epoch_number=epoch.index,
        currency_amount=amount if is_invest else None,
        token_amount=None if is_invest else amount,
    ))
    store.save(epoch)
    store.save(balance)
    if order.is_empty:
        store.remove(OutstandingOrder, order.id)
        return None
    store.save(order)
    return order


def _apply_solution(state: EpochState, tranche: Tranche, solution: Optional[TrancheSolution]) -> None:
    if solution is not None:
        state.token_price = solution.token_price
        state.invest_fulfillment_percentage = solution.invest_fulfillment_percentage
        state.redeem_fulfillment_percentage = solution.redeem_fulfillment_percentage
    if state.token_price is None:
        state.token_price = tranche.token_price
    if state.token_price <= 0:
        raise DataConsistencyFault(f"tranche {tranche.id} has non-positive token price")
    state.sum_fulfilled_invest_orders = calculate_fulfillment(
        state.sum_outstanding_invest_orders, state.invest_fulfillment_percentage
    )
    state.sum_fulfilled_redeem_orders = calculate_fulfillment(
        state.sum_outstanding_redeem_orders, state.redeem_fulfillment_percentage
    )
    state.sum_fulfilled_redeem_orders_currency = wad_mul(state.sum_fulfilled_redeem_orders, state.token_price)
    state.sum_outstanding_redeem_orders_currency = wad_mul(
        state.sum_outstanding_redeem_orders, state.token_price
    )


def _execute_orders(
    store: Store,
    ctx: ProcessingContext,
    pool: Pool,
    epoch: Epoch,
    tranche: Tranche,
    state: EpochState,
) -> None:
    orders = store.get_by_fields(
        OutstandingOrder,
        [("pool_id", "=", pool.id), ("tranche_id", "=", tranche.tranche_id)],
        order_by=("timestamp", "id"),
    )
    logger.info("Fulfilling %d outstanding orders for tranche %s", len(orders), tranche.tranche_id)
    price = state.token_price
    for order in orders:
        balance = _tranche_balance(store, order.account_id, pool.id, tranche.tranche_id)

        if order.invest_amount > 0 and state.invest_fulfillment_percentage > 0:
            execution = calculate_invest_execution(
                order.invest_amount, state.invest_fulfillment_percentage, price
            )
            store.save(InvestorTransaction(
                id=f"{order.hash}-{epoch.index}-{InvestorTransactionType.EXECUTE_INVEST.value}-{order.account_id}",
                type=InvestorTransactionType.EXECUTE_INVEST,
                account_id=order.account_id,
                pool_id=pool.id,
                tranche_id=tranche.tranche_id,
                hash=order.hash,
                timestamp=ctx.timestamp,
                epoch_number=epoch.index,
                currency_amount=execution.currency_amount,
                token_amount=execution.token_amount,
                token_price=price,
            ))
            order.invest_amount -= execution.currency_amount
            balance.pending_invest_currency = max(0, balance.pending_invest_currency - execution.currency_amount)
            balance.claimable_tranche_tokens += execution.token_amount
            positions.buy(
                store, order.account_id, pool.id, tranche.tranche_id, order.hash,
                ctx.timestamp, execution.token_amount, price,
            )

        if order.redeem_amount > 0 and state.redeem_fulfillment_percentage > 0:
            execution = calculate_redeem_execution(
                order.redeem_amount, state.redeem_fulfillment_percentage, price
            )
            profit = positions.sell_fifo(
                store, order.account_id, tranche.tranche_id, execution.token_amount, price,
            )
            store.save(InvestorTransaction(
                id=f"{order.hash}-{epoch.index}-{InvestorTransactionType.EXECUTE_REDEEM.value}-{order.account_id}",
                type=InvestorTransactionType.EXECUTE_REDEEM,
                account_id=order.account_id,
                pool_id=pool.id,
                tranche_id=tranche.tranche_id,
                hash=order.hash,
                timestamp=ctx.timestamp,
                epoch_number=epoch.index,
                currency_amount=execution.currency_amount,
                token_amount=execution.token_amount,
                token_price=price,
                realized_profit_fifo=profit,
            ))
            order.redeem_amount -= execution.token_amount
            balance.pending_redeem_tranche_tokens = max(
                0, balance.pending_redeem_tranche_tokens - execution.token_amount
            )
            balance.claimable_currency += execution.currency_amount
            pool.sum_realized_profit_fifo_by_period += profit

        store.save(balance)
        if order.is_empty:
            store.remove(OutstandingOrder, order.id)
        else:
            store.save(order)


def _record_cash_movements(
    store: Store,
    ctx: ProcessingContext,
    pool: Pool,
    epoch: Epoch,
) -> List[AssetTransaction]:
    require(store, Asset, Asset.make_id(pool.id, ONCHAIN_CASH_ASSET_ID))
    movements = (
        (AssetTransactionType.DEPOSIT_FROM_INVESTMENTS, epoch.sum_invested_amount),
        (AssetTransactionType.WITHDRAWAL_FOR_REDEMPTIONS, epoch.sum_redeemed_amount),
        (AssetTransactionType.WITHDRAWAL_FOR_FEES, epoch.sum_pool_fees_paid_amount),
    )
    recorded = []
    for tx_type, amount in movements:
        if amount <= 0:
            logger.info("No %s for pool %s", tx_type.value, pool.id)
            continue
        tx = AssetTransaction(
            id=AssetTransaction.make_id(pool.id, ONCHAIN_CASH_ASSET_ID, _tx_hash(ctx), epoch.index, tx_type),
            type=tx_type,
            pool_id=pool.id,
            asset_id=ONCHAIN_CASH_ASSET_ID,
            hash=_tx_hash(ctx),
            timestamp=ctx.timestamp,
            epoch_number=epoch.index,
            amount=amount,
        )
        store.save(tx)
        recorded.append(tx)
    return recorded


def execute_epoch(
    store: Store,
    ctx: ProcessingContext,
    pool: Pool,
    epoch_index: int,
    solutions: Iterable[TrancheSolution] = (),
    pool_fees_paid: int = 0,
) -> Epoch:
    """
    Settle a CLOSED epoch. See the module docstring for the steps.

    Raises MissingEntity when the epoch, the next epoch, the pool currency or
    the on-chain cash asset is absent, and DataConsistencyFault when the
    epoch is not CLOSED or a redemption oversells an account's lots.
    """
    epoch = require(store, Epoch, Epoch.make_id(pool.id, epoch_index))
    epoch.mark_executed(ctx.timestamp, ctx.block_number)
    next_epoch = require(store, Epoch, Epoch.make_id(pool.id, epoch_index + 1))
    currency = require(store, Currency, pool.currency_id or "")
    by_tranche: Dict[str, TrancheSolution] = {s.tranche_id: s for s in solutions}

    tranches = active_tranches(store, pool.id)
    for tranche in tranches:
        _apply_solution(epoch.state_for(tranche.tranche_id), tranche, by_tranche.get(tranche.tranche_id))

    epoch.sum_invested_amount = sum(
        epoch.state_for(t.tranche_id).sum_fulfilled_invest_orders for t in tranches
    )
    epoch.sum_redeemed_amount = sum(
        epoch.state_for(t.tranche_id).sum_fulfilled_redeem_orders_currency for t in tranches
    )
    epoch.sum_pool_fees_paid_amount = pool_fees_paid

    pool.last_epoch_executed = epoch_index
    pool.sum_invested_amount += epoch.sum_invested_amount
    pool.sum_invested_amount_by_period += epoch.sum_invested_amount
    pool.sum_redeemed_amount += epoch.sum_redeemed_amount
    pool.sum_redeemed_amount_by_period += epoch.sum_redeemed_amount
    pool.sum_pool_fees_paid_amount += pool_fees_paid

    for tranche in tranches:
        state = epoch.state_for(tranche.tranche_id)
        solution = by_tranche.get(tranche.tranche_id)

        minted = wad_div(state.sum_fulfilled_invest_orders, state.token_price)
        if solution is not None and solution.token_supply is not None:
            supply = solution.token_supply
        else:
            supply = tranche.token_supply + minted - state.sum_fulfilled_redeem_orders
        if supply < 0:
            raise DataConsistencyFault(f"tranche {tranche.id} supply would go negative")
        tranche.update_price(state.token_price, ctx.block_number)
        tranche.update_supply(supply)
        tranche.sum_fulfilled_invest_orders += state.sum_fulfilled_invest_orders
        tranche.sum_fulfilled_redeem_orders += state.sum_fulfilled_redeem_orders
        tranche.sum_fulfilled_redeem_orders_currency += state.sum_fulfilled_redeem_orders_currency
        store.save(tranche)

        carry = calculate_carry_over(state)
        next_state = next_epoch.state_for(tranche.tranche_id)
        next_state.sum_outstanding_invest_orders += carry.invest
        next_state.sum_outstanding_redeem_orders += carry.redeem
        next_state.sum_outstanding_redeem_orders_currency += wad_mul(carry.redeem, state.token_price)

        _execute_orders(store, ctx, pool, epoch, tranche, state)

    store.save(epoch)
    store.save(next_epoch)

    valuation.set_nav_from_tranches(pool, tranches, currency)
    store.save(pool)

    _record_cash_movements(store, ctx, pool, epoch)
    snapshots.snapshot_pool(store, pool, ctx.block_number, ctx.timestamp, epoch_id=epoch.id)
    logger.info(
        "Executed epoch %d for pool %s: invested %d, redeemed %d",
        epoch_index, pool.id, epoch.sum_invested_amount, epoch.sum_redeemed_amount,
    )
    return epoch
