"""
event_handlers.py - Event Handler Functions

One plain function per event kind, registered in DEFAULT_HANDLERS.
Every handler has the same signature:

    handler(store, ctx, event, settings) -> None

Handlers are thin: they load the records an event refers to, call into the
engine modules (accrual, positions, epochs, valuation) and save the results.
A referenced pool, asset, epoch or tranche that does not exist raises
MissingEntity; nothing here retries.

Loan handlers finish by revaluing their pool from its active loans:
portfolio valuation, NAV and the debt-weighted interest rate.
"""

from __future__ import annotations
import logging
from typing import Callable, Dict, Optional

from .core import (
    ONCHAIN_CASH_ASSET_ID, NULL_ADDRESS, AssetStatus, AssetTransactionType, AssetType,
    AssetValuationMethod, InvestorTransactionType, MissingEntity, PoolLedgerError,
    ProcessingContext, Store,
)
from .config import EngineSettings
from .entities import (
    Asset, AssetTransaction, Currency, Epoch, InvestorTransaction, OracleTransaction,
    Pool, Tranche, TrancheBalance,
)
from .events import (
    EpochClosed, EpochExecuted, EvmDeployTranche, EvmTransfer, InvestOrderUpdated,
    LoanBorrowed, LoanClosed, LoanCreated, LoanDebtDecreased, LoanDebtIncreased,
    LoanDebtTransferred, LoanDebtTransferredLegacy, LoanRepaid, LoanWrittenOff,
    MetadataSet, OracleFed, PoolCreated, PoolUpdated, RedeemOrderUpdated,
)
from .store import paginated_get, require
from . import accrual, epochs, positions, snapshots, valuation


logger = logging.getLogger(__name__)


# Handler type: (store, ctx, event, settings) -> None
EventHandler = Callable[[Store, ProcessingContext, object, EngineSettings], None]


# ============================================================================
# HELPERS
# ============================================================================

def _hash(ctx: ProcessingContext) -> str:
    return ctx.extrinsic_hash or f"block-{ctx.block_number}"


def _pool(store: Store, pool_id: str) -> Pool:
    return require(store, Pool, pool_id)


def _asset(store: Store, pool_id: str, asset_id: str) -> Asset:
    return require(store, Asset, Asset.make_id(pool_id, asset_id))


def _asset_tx(
    store: Store,
    ctx: ProcessingContext,
    pool: Pool,
    epoch: Epoch,
    asset_id: str,
    tx_type: AssetTransactionType,
    **fields,
) -> AssetTransaction:
    tx = AssetTransaction(
        id=AssetTransaction.make_id(pool.id, asset_id, _hash(ctx), epoch.index, tx_type),
        type=tx_type,
        pool_id=pool.id,
        asset_id=asset_id,
        hash=_hash(ctx),
        timestamp=ctx.timestamp,
        epoch_number=epoch.index,
        **fields,
    )
    store.save(tx)
    logger.info(
        "Asset transaction %s in pool %s for asset %s amount: %s",
        tx_type.value, pool.id, asset_id, fields.get("amount"),
    )
    return tx


def _external_fields(external) -> dict:
    if external is None:
        return {}
    return {"quantity": external.quantity, "settlement_price": external.settlement_price}


def _revalue(store: Store, pool: Pool) -> None:
    """Portfolio valuation, NAV and debt-weighted rate from the pool's active loans, then save."""
    currency = require(store, Currency, pool.currency_id or "")
    loans = [
        a for a in paginated_get(store, Asset, [("pool_id", "=", pool.id)])
        if a.status is AssetStatus.ACTIVE and not a.is_cash
    ]
    pool.portfolio_valuation = valuation.calculate_portfolio_valuation(loans, currency.decimals)
    sums = accrual.calculate_debt_sums(loans)
    pool.weighted_average_interest_rate_per_sec = sums.weighted_average_interest_rate_per_sec
    valuation.refresh_pool_nav(pool, currency)
    store.save(pool)


# ============================================================================
# POOL HANDLERS
# ============================================================================

def handle_pool_created(store: Store, ctx: ProcessingContext, event: PoolCreated, settings: EngineSettings) -> None:
    logger.info("Creating pool %s with currency %s in block %d", event.pool_id, event.currency_id, ctx.block_number)
    if store.get(Currency, event.currency_id) is None:
        store.save(Currency(
            id=event.currency_id, decimals=event.currency_decimals, symbol=event.currency_symbol,
        ))

    pool = Pool(
        id=event.pool_id,
        currency_id=event.currency_id,
        is_active=True,
        created_at=ctx.timestamp,
        created_at_block=ctx.block_number,
        max_reserve=event.max_reserve,
        max_nav_age=event.max_nav_age,
        min_epoch_time=event.min_epoch_time,
        current_epoch=1,
    )
    store.save(pool)

    for spec in event.tranches:
        store.save(Tranche(
            id=Tranche.make_id(pool.id, spec.tranche_id),
            pool_id=pool.id,
            tranche_id=spec.tranche_id,
            index=spec.index,
            interest_rate_per_sec=spec.interest_rate_per_sec,
        ))
        store.save(Currency(
            id=f"{pool.id}-{spec.tranche_id}",
            decimals=event.currency_decimals,
            pool_id=pool.id,
            tranche_id=spec.tranche_id,
            token_address=spec.token_address,
        ))

    epochs.open_epoch(store, ctx, pool.id, pool.current_epoch, [t.tranche_id for t in event.tranches])

    store.save(Asset(
        id=Asset.make_id(pool.id, ONCHAIN_CASH_ASSET_ID),
        pool_id=pool.id,
        asset_id=ONCHAIN_CASH_ASSET_ID,
        asset_type=AssetType.ONCHAIN_CASH,
        valuation_method=AssetValuationMethod.CASH,
        status=AssetStatus.ACTIVE,
        is_active=True,
        created_at=ctx.timestamp,
    ))
    logger.info("Pool %s successfully created", pool.id)


def handle_pool_updated(store: Store, ctx: ProcessingContext, event: PoolUpdated, settings: EngineSettings) -> None:
    pool = _pool(store, event.pool_id)
    logger.info("Pool %s updated on block %d", pool.id, ctx.block_number)
    if event.max_reserve is not None:
        pool.max_reserve = event.max_reserve
    if event.max_nav_age is not None:
        pool.max_nav_age = event.max_nav_age
    if event.min_epoch_time is not None:
        pool.min_epoch_time = event.min_epoch_time
    store.save(pool)

    if not event.tranches:
        return
    for tranche in epochs.active_tranches(store, pool.id):
        tranche.is_active = False
        store.save(tranche)
    currency = store.get(Currency, pool.currency_id or "")
    for spec in event.tranches:
        tranche_id = Tranche.make_id(pool.id, spec.tranche_id)
        tranche = store.get(Tranche, tranche_id) or Tranche(
            id=tranche_id, pool_id=pool.id, tranche_id=spec.tranche_id, index=spec.index,
        )
        tranche.index = spec.index
        tranche.is_active = True
        if spec.interest_rate_per_sec is not None:
            tranche.interest_rate_per_sec = spec.interest_rate_per_sec
        store.save(tranche)
        if store.get(Currency, f"{pool.id}-{spec.tranche_id}") is None:
            store.save(Currency(
                id=f"{pool.id}-{spec.tranche_id}",
                decimals=currency.decimals if currency else 18,
                pool_id=pool.id,
                tranche_id=spec.tranche_id,
                token_address=spec.token_address,
            ))


def handle_metadata_set(store: Store, ctx: ProcessingContext, event: MetadataSet, settings: EngineSettings) -> None:
    pool = _pool(store, event.pool_id)
    pool.metadata = event.metadata
    store.save(pool)


def handle_epoch_closed(store: Store, ctx: ProcessingContext, event: EpochClosed, settings: EngineSettings) -> None:
    pool = _pool(store, event.pool_id)
    epochs.close_epoch(store, ctx, pool, event.epoch_index, event.tranches)


def handle_epoch_executed(store: Store, ctx: ProcessingContext, event: EpochExecuted, settings: EngineSettings) -> None:
    pool = _pool(store, event.pool_id)
    epochs.execute_epoch(store, ctx, pool, event.epoch_index, event.solutions, event.pool_fees_paid)


def handle_invest_order_updated(
    store: Store, ctx: ProcessingContext, event: InvestOrderUpdated, settings: EngineSettings,
) -> None:
    pool = _pool(store, event.pool_id)
    require(store, Tranche, Tranche.make_id(pool.id, event.tranche_id))
    epochs.record_order_update(store, ctx, pool, event.tranche_id, event.account_id, event.amount, is_invest=True)


def handle_redeem_order_updated(
    store: Store, ctx: ProcessingContext, event: RedeemOrderUpdated, settings: EngineSettings,
) -> None:
    pool = _pool(store, event.pool_id)
    require(store, Tranche, Tranche.make_id(pool.id, event.tranche_id))
    epochs.record_order_update(store, ctx, pool, event.tranche_id, event.account_id, event.amount, is_invest=False)


# ============================================================================
# LOAN HANDLERS
# ============================================================================

def handle_loan_created(store: Store, ctx: ProcessingContext, event: LoanCreated, settings: EngineSettings) -> None:
    logger.info("Loan created event for pool: %s loan: %s", event.pool_id, event.loan_id)
    pool = _pool(store, event.pool_id)
    epoch = epochs.current_epoch(store, pool)

    if event.is_internal:
        valuation_method = AssetValuationMethod(event.valuation_method)
        asset_type = AssetType.OFFCHAIN_CASH if valuation_method is AssetValuationMethod.CASH else AssetType.OTHER
    else:
        valuation_method = AssetValuationMethod.ORACLE
        asset_type = AssetType.OTHER

    asset = Asset(
        id=Asset.make_id(pool.id, event.loan_id),
        pool_id=pool.id,
        asset_id=event.loan_id,
        asset_type=asset_type,
        valuation_method=valuation_method,
        created_at=ctx.timestamp,
        collateral_class=event.collateral_class,
        collateral_item=event.collateral_item,
        advance_rate=event.advance_rate,
        collateral_value=event.collateral_value,
        probability_of_default=event.probability_of_default,
        loss_given_default=event.loss_given_default,
        discount_rate=event.discount_rate,
        maturity_date=event.maturity_date,
        notional=event.notional,
        quantity=None if event.is_internal else 0,
    )
    store.save(asset)
    _asset_tx(store, ctx, pool, epoch, event.loan_id, AssetTransactionType.CREATED)

    pool.number_of_assets += 1
    store.save(pool)


def handle_loan_borrowed(store: Store, ctx: ProcessingContext, event: LoanBorrowed, settings: EngineSettings) -> None:
    pool = _pool(store, event.pool_id)
    amount = event.amount.amount
    logger.info("Loan borrowed event for pool: %s amount: %d", pool.id, amount)
    epoch = epochs.current_epoch(store, pool)
    asset = _asset(store, pool.id, event.loan_id)
    asset.activate()

    tx_fields = dict(amount=amount, principal_amount=amount, **_external_fields(event.amount.external))
    if asset.asset_type is AssetType.OFFCHAIN_CASH:
        _asset_tx(
            store, ctx, pool, epoch, event.loan_id, AssetTransactionType.CASH_TRANSFER,
            from_asset_id=ONCHAIN_CASH_ASSET_ID, to_asset_id=event.loan_id, **tx_fields,
        )
    else:
        accrual.borrow(asset, amount)
        if event.amount.external is not None:
            accrual.borrow_external(
                store, asset, event.amount.external, _hash(ctx), ctx.timestamp, ctx.spec_version,
            )
        _asset_tx(store, ctx, pool, epoch, event.loan_id, AssetTransactionType.BORROWED, **tx_fields)
        pool.increase_borrowings(amount)
        pool.sum_debt += amount
        epoch.increase_borrowings(amount)
        store.save(epoch)
    store.save(asset)
    _revalue(store, pool)


def handle_loan_repaid(store: Store, ctx: ProcessingContext, event: LoanRepaid, settings: EngineSettings) -> None:
    pool = _pool(store, event.pool_id)
    principal = event.amount.principal.amount
    interest = event.amount.interest
    unscheduled = event.amount.unscheduled
    amount = event.amount.total
    logger.info("Loan repaid event for pool: %s amount: %d", pool.id, amount)
    epoch = epochs.current_epoch(store, pool)
    asset = _asset(store, pool.id, event.loan_id)

    tx_fields = dict(
        amount=amount,
        principal_amount=principal,
        interest_amount=interest,
        unscheduled_amount=unscheduled,
        **_external_fields(event.amount.principal.external),
    )
    if asset.asset_type is AssetType.OFFCHAIN_CASH:
        _asset_tx(
            store, ctx, pool, epoch, event.loan_id, AssetTransactionType.CASH_TRANSFER,
            from_asset_id=event.loan_id, to_asset_id=ONCHAIN_CASH_ASSET_ID, **tx_fields,
        )
    else:
        debt_before = asset.outstanding_debt
        accrual.repay(asset, amount, principal, interest, unscheduled)
        profit = None
        if event.amount.principal.external is not None:
            profit = accrual.repay_external(store, asset, event.amount.principal.external, ctx.spec_version)
            pool.sum_realized_profit_fifo_by_period += profit
        _asset_tx(
            store, ctx, pool, epoch, event.loan_id, AssetTransactionType.REPAID,
            realized_profit_fifo=profit, **tx_fields,
        )
        pool.increase_repayments(principal, interest, unscheduled)
        pool.sum_debt = max(0, pool.sum_debt - (debt_before - asset.outstanding_debt))
        epoch.increase_repayments(amount)
        store.save(epoch)
    store.save(asset)
    _revalue(store, pool)


def handle_loan_written_off(store: Store, ctx: ProcessingContext, event: LoanWrittenOff, settings: EngineSettings) -> None:
    logger.info("Loan written off event for pool: %s loan: %s", event.pool_id, event.loan_id)
    asset = _asset(store, event.pool_id, event.loan_id)
    written_off = accrual.write_off(asset, event.percentage, event.penalty)
    store.save(asset)
    pool = _pool(store, event.pool_id)
    pool.sum_debt_written_off_by_period += written_off
    _revalue(store, pool)


def handle_loan_closed(store: Store, ctx: ProcessingContext, event: LoanClosed, settings: EngineSettings) -> None:
    logger.info("Loan closed event for pool: %s loan: %s", event.pool_id, event.loan_id)
    pool = _pool(store, event.pool_id)
    asset = _asset(store, pool.id, event.loan_id)
    asset.close()
    store.save(asset)
    epoch = epochs.current_epoch(store, pool)
    _asset_tx(store, ctx, pool, epoch, event.loan_id, AssetTransactionType.CLOSED)
    _revalue(store, pool)


def apply_debt_transfer(
    store: Store,
    ctx: ProcessingContext,
    transfer: accrual.DebtTransfer,
) -> None:
    """
    Book a debt transfer by direction:
        non-cash -> offchain cash   repayment of the source asset
        offchain cash -> non-cash   borrow on the destination asset
        offchain cash -> cash       cash transfer
    """
    pool = _pool(store, transfer.pool_id)
    from_asset = _asset(store, pool.id, transfer.from_asset_id)
    to_asset = _asset(store, pool.id, transfer.to_asset_id)
    epoch = epochs.current_epoch(store, pool)
    from_cash = from_asset.asset_type is AssetType.OFFCHAIN_CASH
    to_cash = to_asset.asset_type is AssetType.OFFCHAIN_CASH
    logger.info(
        "Asset debt transferred in pool %s from %s to %s amount: %d",
        pool.id, from_asset.asset_id, to_asset.asset_id, transfer.repaid_amount,
    )

    if not from_asset.is_cash and to_cash:
        from_asset.activate()
        debt_before = from_asset.outstanding_debt
        accrual.repay(
            from_asset, transfer.repaid_amount, transfer.repaid_principal,
            transfer.repaid_interest, transfer.repaid_unscheduled,
        )
        profit = None
        if transfer.repaid_external is not None:
            profit = accrual.repay_external(store, from_asset, transfer.repaid_external, ctx.spec_version)
            pool.sum_realized_profit_fifo_by_period += profit
        store.save(from_asset)
        pool.increase_repayments(transfer.repaid_principal, transfer.repaid_interest, transfer.repaid_unscheduled)
        pool.sum_debt = max(0, pool.sum_debt - (debt_before - from_asset.outstanding_debt))
        epoch.increase_repayments(transfer.repaid_amount)
        _asset_tx(
            store, ctx, pool, epoch, from_asset.asset_id, AssetTransactionType.REPAID,
            amount=transfer.repaid_amount,
            principal_amount=transfer.repaid_principal,
            interest_amount=transfer.repaid_interest,
            unscheduled_amount=transfer.repaid_unscheduled,
            from_asset_id=from_asset.asset_id,
            to_asset_id=to_asset.asset_id,
            realized_profit_fifo=profit,
            **_external_fields(transfer.repaid_external),
        )

    if from_cash and not to_asset.is_cash:
        accrual.borrow(to_asset, transfer.borrow_principal)
        if transfer.borrow_external is not None:
            accrual.borrow_external(
                store, to_asset, transfer.borrow_external, _hash(ctx), ctx.timestamp, ctx.spec_version,
            )
        store.save(to_asset)
        pool.increase_borrowings(transfer.borrow_principal)
        pool.sum_debt += transfer.borrow_principal
        epoch.increase_borrowings(transfer.borrow_principal)
        _asset_tx(
            store, ctx, pool, epoch, to_asset.asset_id, AssetTransactionType.BORROWED,
            amount=transfer.borrow_principal,
            principal_amount=transfer.borrow_principal,
            from_asset_id=from_asset.asset_id,
            to_asset_id=to_asset.asset_id,
            **_external_fields(transfer.borrow_external),
        )

    if from_cash and to_cash:
        _asset_tx(
            store, ctx, pool, epoch, to_asset.asset_id, AssetTransactionType.CASH_TRANSFER,
            amount=transfer.borrow_principal,
            principal_amount=transfer.borrow_principal,
            from_asset_id=from_asset.asset_id,
            to_asset_id=to_asset.asset_id,
        )

    store.save(epoch)
    _revalue(store, pool)


def handle_loan_debt_transferred(
    store: Store, ctx: ProcessingContext, event: LoanDebtTransferred, settings: EngineSettings,
) -> None:
    apply_debt_transfer(store, ctx, accrual.normalize_debt_transfer(event, ctx.spec_version))


def handle_loan_debt_transferred_legacy(
    store: Store, ctx: ProcessingContext, event: LoanDebtTransferredLegacy, settings: EngineSettings,
) -> None:
    from_asset = _asset(store, event.pool_id, event.from_loan_id)
    to_asset = _asset(store, event.pool_id, event.to_loan_id)
    apply_debt_transfer(store, ctx, accrual.normalize_legacy_debt_transfer(event, from_asset, to_asset))


def handle_loan_debt_increased(
    store: Store, ctx: ProcessingContext, event: LoanDebtIncreased, settings: EngineSettings,
) -> None:
    pool = _pool(store, event.pool_id)
    amount = event.amount.amount
    logger.info("Asset debt increased event for pool: %s asset: %s amount: %d", pool.id, event.loan_id, amount)
    asset = _asset(store, pool.id, event.loan_id)
    epoch = epochs.current_epoch(store, pool)
    if event.amount.external is not None:
        asset.quantity = (asset.quantity or 0) + event.amount.external.quantity
    store.save(asset)
    _asset_tx(
        store, ctx, pool, epoch, event.loan_id, AssetTransactionType.INCREASE_DEBT,
        amount=amount, principal_amount=amount, **_external_fields(event.amount.external),
    )


def handle_loan_debt_decreased(
    store: Store, ctx: ProcessingContext, event: LoanDebtDecreased, settings: EngineSettings,
) -> None:
    pool = _pool(store, event.pool_id)
    principal = event.amount.principal.amount
    amount = event.amount.total
    logger.info("Asset debt decreased event for pool: %s asset: %s amount: %d", pool.id, event.loan_id, amount)
    asset = _asset(store, pool.id, event.loan_id)
    epoch = epochs.current_epoch(store, pool)

    asset.activate()
    debt_before = asset.outstanding_debt
    accrual.repay(asset, amount, principal, event.amount.interest, event.amount.unscheduled)
    if event.amount.principal.external is not None:
        asset.quantity = (asset.quantity or 0) - event.amount.principal.external.quantity
    store.save(asset)

    pool.increase_repayments(principal, event.amount.interest, event.amount.unscheduled)
    pool.sum_debt = max(0, pool.sum_debt - (debt_before - asset.outstanding_debt))
    epoch.increase_repayments(amount)
    store.save(epoch)
    _revalue(store, pool)
    _asset_tx(
        store, ctx, pool, epoch, event.loan_id, AssetTransactionType.DECREASE_DEBT,
        amount=amount,
        principal_amount=principal,
        interest_amount=event.amount.interest,
        unscheduled_amount=event.amount.unscheduled,
        **_external_fields(event.amount.principal.external),
    )


# ============================================================================
# ORACLE
# ============================================================================

def handle_oracle_fed(store: Store, ctx: ProcessingContext, event: OracleFed, settings: EngineSettings) -> None:
    logger.info("Oracle feed key: %s value: %d", event.key, event.value)
    store.save(OracleTransaction(
        id=f"{_hash(ctx)}-{event.key}",
        key=event.key,
        value=event.value,
        hash=_hash(ctx),
        timestamp=ctx.timestamp,
    ))


# ============================================================================
# EVM HANDLERS
# ============================================================================

def handle_evm_deploy_tranche(
    store: Store, ctx: ProcessingContext, event: EvmDeployTranche, settings: EngineSettings,
) -> None:
    tranche_id = event.tranche_id[:34]
    logger.info(
        "Tracking tranche token %s for %s-%s deployed by %s",
        event.token_address, event.pool_id, tranche_id, event.pool_manager,
    )
    escrow = settings.escrow_for(event.pool_manager)

    pool = store.get(Pool, event.pool_id)
    if pool is None:
        pool = Pool(id=event.pool_id, is_active=False)
        store.save(pool)
    tranche = store.get(Tranche, Tranche.make_id(pool.id, tranche_id))
    if tranche is None:
        index = len(store.get_by_fields(Tranche, [("pool_id", "=", pool.id)]))
        tranche = Tranche(id=Tranche.make_id(pool.id, tranche_id), pool_id=pool.id, tranche_id=tranche_id, index=index)
        store.save(tranche)

    pool_currency = store.get(Currency, pool.currency_id or "")
    store.save(Currency(
        id=f"{ctx.chain_id}-{event.token_address.lower()}",
        decimals=pool_currency.decimals if pool_currency else 18,
        pool_id=pool.id,
        tranche_id=tranche_id,
        token_address=event.token_address.lower(),
        escrow_address=escrow.lower(),
    ))


def _token_currency(store: Store, ctx: ProcessingContext, token_address: str) -> Currency:
    currency = store.get(Currency, f"{ctx.chain_id}-{token_address}")
    if currency is None or not currency.pool_id or not currency.tranche_id:
        raise MissingEntity("TrancheToken", token_address)
    return currency


def handle_evm_transfer(store: Store, ctx: ProcessingContext, event: EvmTransfer, settings: EngineSettings) -> None:
    """
    Track tranche token movements on EVM domains.

    escrow -> user   INVEST_LP_COLLECT (tokens claimed after an executed invest)
    user -> user     TRANSFER_OUT / TRANSFER_IN at the period's tranche price,
                     moving FIFO lots from sender to receiver

    Lot updates on user transfers never abort the event: an account whose
    lots were never observed is logged and its transaction is recorded
    without realized profit. On LP token migration days lots are not moved.
    """
    token = event.token_address.lower()
    from_address = event.from_address.lower()
    to_address = event.to_address.lower()
    logger.info("Transfer %s-%s of %d at block %d", from_address, to_address, event.amount, ctx.block_number)

    currency = _token_currency(store, ctx, token)
    pool = _pool(store, currency.pool_id)
    tranche = require(store, Tranche, Tranche.make_id(pool.id, currency.tranche_id))

    service_addresses = {token, NULL_ADDRESS, (currency.escrow_address or "").lower()}
    from_user = from_address not in service_addresses
    to_user = to_address not in service_addresses
    from_escrow = bool(currency.escrow_address) and from_address == currency.escrow_address.lower()
    tx_hash = _hash(ctx)

    if from_escrow and to_user:
        store.save(InvestorTransaction(
            id=f"{tx_hash}-{event.index}-{InvestorTransactionType.INVEST_LP_COLLECT.value}-{to_address}",
            type=InvestorTransactionType.INVEST_LP_COLLECT,
            account_id=to_address,
            pool_id=pool.id,
            tranche_id=tranche.tranche_id,
            hash=tx_hash,
            timestamp=ctx.timestamp,
            token_amount=event.amount,
        ))
        balance_id = TrancheBalance.make_id(to_address, pool.id, tranche.tranche_id)
        balance = store.get(TrancheBalance, balance_id) or TrancheBalance(
            id=balance_id, account_id=to_address, pool_id=pool.id, tranche_id=tranche.tranche_id,
        )
        balance.claimable_tranche_tokens = max(0, balance.claimable_tranche_tokens - event.amount)
        balance.sum_claimed_tranche_tokens += event.amount
        store.save(balance)

    if from_user and to_user:
        price = snapshots.latest_tranche_price(store, tranche, ctx.period_start)
        migration_day = settings.is_lp_migration_day(ctx.chain_id, ctx.period_start.date())

        profit: Optional[int] = None
        if not migration_day:
            try:
                profit = positions.sell_fifo(store, from_address, tranche.tranche_id, event.amount, price)
            except PoolLedgerError as e:
                logger.error("Unable to sell investor position of %s: %s", from_address, e)
        store.save(InvestorTransaction(
            id=f"{tx_hash}-{event.index}-{InvestorTransactionType.TRANSFER_OUT.value}-{from_address}",
            type=InvestorTransactionType.TRANSFER_OUT,
            account_id=from_address,
            pool_id=pool.id,
            tranche_id=tranche.tranche_id,
            hash=tx_hash,
            timestamp=ctx.timestamp,
            token_amount=event.amount,
            token_price=price,
            realized_profit_fifo=profit,
        ))

        store.save(InvestorTransaction(
            id=f"{tx_hash}-{event.index}-{InvestorTransactionType.TRANSFER_IN.value}-{to_address}",
            type=InvestorTransactionType.TRANSFER_IN,
            account_id=to_address,
            pool_id=pool.id,
            tranche_id=tranche.tranche_id,
            hash=tx_hash,
            timestamp=ctx.timestamp,
            token_amount=event.amount,
            token_price=price,
        ))
        if not migration_day:
            positions.buy(store, to_address, pool.id, tranche.tranche_id, tx_hash, ctx.timestamp, event.amount, price)


# ============================================================================
# HANDLER REGISTRY
# ============================================================================

DEFAULT_HANDLERS: Dict[str, EventHandler] = {
    PoolCreated.kind: handle_pool_created,
    PoolUpdated.kind: handle_pool_updated,
    MetadataSet.kind: handle_metadata_set,
    EpochClosed.kind: handle_epoch_closed,
    EpochExecuted.kind: handle_epoch_executed,
    InvestOrderUpdated.kind: handle_invest_order_updated,
    RedeemOrderUpdated.kind: handle_redeem_order_updated,
    LoanCreated.kind: handle_loan_created,
    LoanBorrowed.kind: handle_loan_borrowed,
    LoanRepaid.kind: handle_loan_repaid,
    LoanWrittenOff.kind: handle_loan_written_off,
    LoanClosed.kind: handle_loan_closed,
    LoanDebtTransferred.kind: handle_loan_debt_transferred,
    LoanDebtTransferredLegacy.kind: handle_loan_debt_transferred_legacy,
    LoanDebtIncreased.kind: handle_loan_debt_increased,
    LoanDebtDecreased.kind: handle_loan_debt_decreased,
    OracleFed.kind: handle_oracle_fed,
    EvmDeployTranche.kind: handle_evm_deploy_tranche,
    EvmTransfer.kind: handle_evm_transfer,
}
